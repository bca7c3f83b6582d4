import base64
import copy
import io
import json
import struct

import numpy as np
import pytest
from PIL import Image

from gltf_import.accessors import AccessorReader
from gltf_import.cache import ImportCache, ResourceKind
from gltf_import.capabilities import (
    KTX2_MAGIC, Capabilities, DecodedGeometry, DecodedImage, GeometryDecoder, TextureDecoder,
)
from gltf_import.coordinates import Handedness
from gltf_import.config import ImportOptions
from gltf_import.context import ImportContext
from gltf_import.document import parse_container
from gltf_import.importer import GltfImporter
from gltf_import.sources import UriResolver, parse_data_uri

COMPONENT_TYPES = {
    np.dtype(np.int8): 5120,
    np.dtype(np.uint8): 5121,
    np.dtype(np.int16): 5122,
    np.dtype(np.uint16): 5123,
    np.dtype(np.uint32): 5125,
    np.dtype(np.float32): 5126,
}
TYPES = {1: "SCALAR", 2: "VEC2", 3: "VEC3", 4: "VEC4", 16: "MAT4"}

TRIANGLE = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0]], dtype=np.float32)
TRIANGLE_UV = np.array([[0, 0], [1, 0], [0, 1]], dtype=np.float32)
KTX2_BYTES = KTX2_MAGIC + b"\x00" * 20


def png_bytes(color=(255, 0, 0, 255), size=(2, 2)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeKtx2Decoder(TextureDecoder):
    name = "fake-ktx2"
    produces_flipped = False

    def decode(self, blob):
        return DecodedImage(width=1, height=1, mode="RGBA",
                            pixels=np.zeros((1, 1, 4), dtype=np.uint8),
                            format="ktx2", is_flipped=False)


class FakeGeometryDecoder(GeometryDecoder):
    name = "fake"

    def __init__(self, native=Handedness.GLTF, uv_converted=False):
        self.native_handedness = native
        self.uv_origin_converted = uv_converted
        self.calls = []

    def decode(self, blob, joints_id, weights_id):
        self.calls.append((blob, joints_id, weights_id))
        return DecodedGeometry(
            positions=TRIANGLE.copy(),
            indices=np.array([0, 1, 2], dtype=np.uint32),
            normals=np.tile([0.0, 0.0, 1.0], (3, 1)).astype(np.float32),
            uvs=[TRIANGLE_UV.copy()],
            joints=np.zeros((3, 4), dtype=np.int32),
            weights=np.tile([1.0, 0, 0, 0], (3, 1)).astype(np.float32),
        )


class GltfBuilder:
    """Assembles small glTF documents with a single binary buffer."""

    def __init__(self):
        self.root = {"asset": {"version": "2.0"}}
        self.bin = bytearray()

    def _append(self, key: str, item: dict) -> int:
        items = self.root.setdefault(key, [])
        items.append(item)
        return len(items) - 1

    # -- binary data --------------------------------------------------------

    def add_view(self, data: bytes, byte_stride: int | None = None) -> int:
        while len(self.bin) % 4:
            self.bin.append(0)
        view = {"buffer": 0, "byteOffset": len(self.bin), "byteLength": len(data)}
        if byte_stride:
            view["byteStride"] = byte_stride
        self.bin.extend(data)
        return self._append("bufferViews", view)

    def add_accessor(self, array, type_: str | None = None, normalized: bool = False) -> int:
        array = np.ascontiguousarray(array)
        if array.ndim == 1:
            array = array[:, None]
        accessor = {
            "bufferView": self.add_view(array.tobytes()),
            "componentType": COMPONENT_TYPES[array.dtype],
            "count": len(array),
            "type": type_ or TYPES[array.shape[1]],
        }
        if normalized:
            accessor["normalized"] = True
        return self._append("accessors", accessor)

    # -- entities -----------------------------------------------------------

    def triangle_primitive(self, material: int | None = None, offset: float = 0.0,
                           **extra) -> dict:
        primitive = {
            "attributes": {
                "POSITION": self.add_accessor(TRIANGLE + offset),
                "TEXCOORD_0": self.add_accessor(TRIANGLE_UV),
            },
            "indices": self.add_accessor(np.array([0, 1, 2], dtype=np.uint16)),
        }
        if material is not None:
            primitive["material"] = material
        primitive.update(extra)
        return primitive

    def add_mesh(self, primitives: list[dict], **fields) -> int:
        return self._append("meshes", {"primitives": primitives, **fields})

    def add_node(self, **fields) -> int:
        return self._append("nodes", fields)

    def add_scene(self, nodes: list[int]) -> int:
        index = self._append("scenes", {"nodes": nodes})
        self.root.setdefault("scene", index)
        return index

    def add_image(self, data: bytes, mime_type: str = "image/png", **fields) -> int:
        return self._append("images", {
            "bufferView": self.add_view(data), "mimeType": mime_type, **fields})

    def add_sampler(self, **fields) -> int:
        return self._append("samplers", fields)

    def add_texture(self, source: int | None, sampler: int | None = None, **fields) -> int:
        texture = dict(fields)
        if source is not None:
            texture["source"] = source
        if sampler is not None:
            texture["sampler"] = sampler
        return self._append("textures", texture)

    def add_material(self, **fields) -> int:
        return self._append("materials", fields)

    def add_skin(self, **fields) -> int:
        return self._append("skins", fields)

    def add_animation(self, channels: list[dict], samplers: list[dict], **fields) -> int:
        return self._append("animations", {"channels": channels, "samplers": samplers, **fields})

    def simple_scene(self, **node_fields) -> int:
        """One node with a one-triangle mesh; returns the node index."""
        mesh = self.add_mesh([self.triangle_primitive()])
        node = self.add_node(mesh=mesh, **node_fields)
        self.add_scene([node])
        return node

    # -- serialization ------------------------------------------------------

    def _root_with_buffer(self, uri: str | None) -> dict:
        root = copy.deepcopy(self.root)
        if self.bin:
            buffer = {"byteLength": len(self.bin)}
            if uri is not None:
                buffer["uri"] = uri
            root["buffers"] = [buffer]
        return root

    def to_gltf(self) -> bytes:
        uri = "data:application/octet-stream;base64," + base64.b64encode(bytes(self.bin)).decode()
        return json.dumps(self._root_with_buffer(uri)).encode("utf-8")

    def to_gltf_external(self, uri: str) -> bytes:
        return json.dumps(self._root_with_buffer(uri)).encode("utf-8")

    def to_glb(self) -> bytes:
        js = json.dumps(self._root_with_buffer(None)).encode("utf-8")
        js += b" " * (-len(js) % 4)
        body = struct.pack("<II", len(js), 0x4E4F534A) + js
        if self.bin:
            data = bytes(self.bin) + b"\x00" * (-len(self.bin) % 4)
            body += struct.pack("<II", len(data), 0x004E4942) + data
        return struct.pack("<III", 0x46546C67, 2, 12 + len(body)) + body


def drain_steps(steps):
    """Run a step generator to completion, returning its result."""
    try:
        while True:
            next(steps)
    except StopIteration as stop:
        return stop.value


def build_context(data: bytes, capabilities=None, options=None) -> ImportContext:
    """Parsed document with its buffers already published, as after the Buffer stage."""
    document = parse_container(data)
    cache = ImportCache()
    for i, buffer in enumerate(document.buffers):
        raw = document.binary_chunk(i) if buffer.uri is None else parse_data_uri(buffer.uri)
        cache.publish(ResourceKind.BUFFER, i, raw)
    return ImportContext(
        document=document,
        cache=cache,
        reader=AccessorReader(document, lambda i: cache.get(ResourceKind.BUFFER, i)),
        resolver=UriResolver(),
        capabilities=capabilities or Capabilities(),
        options=options or ImportOptions(),
    )


@pytest.fixture
def builder():
    return GltfBuilder()


@pytest.fixture
def options():
    return ImportOptions()


@pytest.fixture
def capabilities():
    return Capabilities()


@pytest.fixture
def drain():
    return drain_steps


@pytest.fixture
def make_context():
    return build_context


@pytest.fixture
def run_import(options, capabilities):
    def _run(data: bytes | None = None, **kwargs):
        kwargs.setdefault("options", options)
        kwargs.setdefault("capabilities", capabilities)
        return GltfImporter(data=data, **kwargs).run()
    return _run
