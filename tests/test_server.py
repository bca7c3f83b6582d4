import base64

import pytest
from fastapi.testclient import TestClient

from gltf_import.server import app


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _payload(data: bytes, filename: str = "model.glb") -> dict:
    return {"filename": filename, "data_b64": base64.b64encode(data).decode()}


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert "geometry_decoder" in body


def test_import_returns_summary(client, builder):
    builder.simple_scene(name="box")
    response = client.post("/api/import", json=_payload(builder.to_glb(), "box.glb"))
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["nodes"] == 1
    assert body["vertices"] == 3


@pytest.mark.parametrize("payload", [{}, {"data_b64": "***"}, {"data_b64": 12}])
def test_bad_upload_is_rejected(client, payload):
    response = client.post("/api/import", json=payload)
    assert response.status_code == 400
    assert response.json()["status"] == "error"


def test_bad_document_is_unprocessable(client):
    response = client.post("/api/import", json=_payload(b"glTF" + b"\x00" * 4))
    assert response.status_code == 422
    assert response.json()["kind"] == "ParseError"


def test_upload_cannot_reference_external_files(client, builder):
    builder.simple_scene()
    response = client.post(
        "/api/import", json=_payload(builder.to_gltf_external("scene.bin"), "scene.gltf"))
    assert response.status_code == 422
    assert response.json()["kind"] == "ImportIOError"


def test_websocket_import_streams_progress(client, builder):
    builder.simple_scene()
    with client.websocket_connect("/ws/import") as ws:
        ws.send_json({"type": "import", **_payload(builder.to_glb())})
        messages = []
        while True:
            msg = ws.receive_json()
            messages.append(msg)
            if msg["type"] != "import_progress":
                break

    assert messages[-1]["type"] == "import_done"
    assert messages[-1]["summary"]["status"] == "success"
    stages = [m["stage"] for m in messages[:-1]]
    assert stages[0] == "Parse"
    assert "Mesh" in stages
    assert "Node" in stages


def test_websocket_reports_failures(client):
    with client.websocket_connect("/ws/import") as ws:
        ws.send_json({"type": "import", **_payload(b"{not json")})
        msg = ws.receive_json()
        while msg["type"] == "import_progress":
            msg = ws.receive_json()
        assert msg["type"] == "import_error"
        assert msg["kind"] == "ParseError"


def test_websocket_cancel_without_import(client):
    with client.websocket_connect("/ws/import") as ws:
        ws.send_json({"type": "cancel"})
        assert ws.receive_json() == {"type": "import_error", "error": "No import is running"}
        ws.send_json({"type": "bogus"})
        assert ws.receive_json()["type"] == "import_error"


@pytest.mark.parametrize("frame", ["not json", "[1, 2]"])
def test_websocket_malformed_frame_keeps_connection(client, builder, frame):
    builder.simple_scene()
    with client.websocket_connect("/ws/import") as ws:
        ws.send_text(frame)
        assert ws.receive_json() == {"type": "import_error", "error": "Invalid JSON message"}
        ws.send_json({"type": "import", **_payload(builder.to_glb())})
        msg = ws.receive_json()
        while msg["type"] == "import_progress":
            msg = ws.receive_json()
        assert msg["type"] == "import_done"
