"""
glTF import service — FastAPI + WebSocket front end for GltfImporter.

Uploads arrive base64-encoded (like the editor's file uploads); the import
runs on the event loop via run_async, so progress messages stream out while
the pipeline yields between scheduler ticks.
"""

import asyncio
import base64
import binascii
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gltf_import.capabilities import default_capabilities
from gltf_import.config import load_options
from gltf_import.errors import GltfImportError, ImportIOError
from gltf_import.importer import GltfImporter
from gltf_import.sources import ByteSource

logger = logging.getLogger(__name__)

MAX_UPLOAD_SIZE = 64 * 1024 * 1024  # 64 MB


class UploadOnlySource(ByteSource):
    """Uploads are self-contained (GLB, data URIs or zip); nothing is read from disk."""

    def read(self, uri: str) -> bytes:
        raise ImportIOError(f"External reference {uri!r} is not available for uploads")


_state: dict = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    _state["options"] = load_options()
    _state["capabilities"] = default_capabilities()
    yield
    _state.clear()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(title="glTF import", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _decode_upload(payload: dict) -> tuple[str, bytes]:
    """Validate an upload payload; raises ValueError with a client-facing message."""
    filename = str(payload.get("filename") or "model.glb")
    data_b64 = payload.get("data_b64")
    if not isinstance(data_b64, str) or not data_b64:
        raise ValueError("Missing 'data_b64'")
    try:
        data = base64.b64decode(data_b64, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 data: {e}") from e
    if len(data) > MAX_UPLOAD_SIZE:
        raise ValueError(f"File '{filename}' exceeds upload limit ({len(data)} bytes)")
    return filename, data


def _importer(filename: str, data: bytes, on_progress=None) -> GltfImporter:
    return GltfImporter(
        data=data,
        uri=filename,
        options=_state.get("options") or load_options(),
        capabilities=_state.get("capabilities") or default_capabilities(),
        byte_source=UploadOnlySource(),
        on_progress=on_progress,
    )


# ---------------------------------------------------------------------------
# REST endpoints
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    caps = _state.get("capabilities") or default_capabilities()
    return {
        "status": "ok",
        "geometry_decoder": caps.geometry.name if caps.geometry else None,
        "texture_decoder": caps.texture.name if caps.texture else None,
    }


@app.post("/api/import")
async def import_model(payload: dict):
    """Import an uploaded model and return its summary."""
    try:
        filename, data = _decode_upload(payload)
    except ValueError as e:
        return JSONResponse({"status": "error", "error": str(e)}, status_code=400)

    try:
        result = await _importer(filename, data).run_async()
    except GltfImportError as e:
        logger.warning("Import of %s failed: %s", filename, e)
        return JSONResponse(
            {"status": "error", "error": str(e), "kind": type(e).__name__},
            status_code=422,
        )
    return result.summary()


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------

INVALID_MESSAGE = {"type": "import_error", "error": "Invalid JSON message"}


def _parse_message(text: str) -> dict | None:
    """Decode one client frame; None when it is not a JSON object."""
    try:
        msg = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Malformed WebSocket frame: %.80s", text)
        return None
    return msg if isinstance(msg, dict) else None


async def _watch_for_cancel(ws: WebSocket, importer: GltfImporter) -> None:
    try:
        while True:
            msg = _parse_message(await ws.receive_text())
            if msg is None:
                await ws.send_text(json.dumps(INVALID_MESSAGE))
                continue
            if msg.get("type") == "cancel":
                importer.cancel()
                return
    except WebSocketDisconnect:
        importer.cancel()


async def _run_socket_import(ws: WebSocket, msg: dict) -> None:
    try:
        filename, data = _decode_upload(msg)
    except ValueError as e:
        await ws.send_text(json.dumps({"type": "import_error", "error": str(e)}))
        return

    queue: asyncio.Queue = asyncio.Queue()

    def on_progress(step, completed, total):
        queue.put_nowait({
            "type": "import_progress",
            "stage": step.value,
            "completed": completed,
            "total": total,
        })

    importer = _importer(filename, data, on_progress)
    job = asyncio.create_task(importer.run_async())
    watcher = asyncio.create_task(_watch_for_cancel(ws, importer))
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({job, getter}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                await ws.send_text(json.dumps(getter.result()))
                continue
            getter.cancel()
            break
        while not queue.empty():
            await ws.send_text(json.dumps(queue.get_nowait()))

        try:
            result = job.result()
        except GltfImportError as e:
            logger.warning("Import of %s failed: %s", filename, e)
            await ws.send_text(json.dumps({
                "type": "import_error",
                "error": str(e),
                "kind": type(e).__name__,
            }))
            return

        if result.status == "cancelled":
            await ws.send_text(json.dumps({"type": "import_cancelled"}))
        else:
            await ws.send_text(json.dumps({"type": "import_done", "summary": result.summary()}))
    finally:
        watcher.cancel()


@app.websocket("/ws/import")
async def import_socket(ws: WebSocket):
    await ws.accept()
    try:
        while True:
            msg = _parse_message(await ws.receive_text())
            if msg is None:
                await ws.send_text(json.dumps(INVALID_MESSAGE))
                continue
            msg_type = msg.get("type")
            if msg_type == "import":
                await _run_socket_import(ws, msg)
            elif msg_type == "cancel":
                await ws.send_text(json.dumps({
                    "type": "import_error",
                    "error": "No import is running",
                }))
            else:
                await ws.send_text(json.dumps({
                    "type": "import_error",
                    "error": f"Unknown message type: {msg_type}",
                }))
    except WebSocketDisconnect:
        logger.debug("Import socket disconnected")

