"""
Container parser — .gltf (JSON text) / .glb (binary) → typed Document.

Entities reference each other only by index into the document-level arrays.
Extension objects are decoded through the extension registry while parsing;
resources (buffers, images) are not touched here.
"""

import json
import logging
import struct
from dataclasses import dataclass, field

from gltf_import.errors import ParseError, ReferenceOutOfRange

logger = logging.getLogger(__name__)

GLB_MAGIC = 0x46546C67
GLB_CHUNK_JSON = 0x4E4F534A
GLB_CHUNK_BIN = 0x004E4942
GLB_HEADER_SIZE = 12

MODE_TRIANGLES = 4
WRAP_REPEAT = 10497


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Buffer:
    byte_length: int
    uri: str | None = None
    name: str | None = None


@dataclass
class BufferView:
    buffer: int
    byte_length: int
    byte_offset: int = 0
    byte_stride: int | None = None
    name: str | None = None


@dataclass
class AccessorSparse:
    count: int
    indices_buffer_view: int
    indices_component_type: int
    values_buffer_view: int
    indices_byte_offset: int = 0
    values_byte_offset: int = 0


@dataclass
class Accessor:
    component_type: int
    count: int
    type: str
    buffer_view: int | None = None
    byte_offset: int = 0
    normalized: bool = False
    sparse: AccessorSparse | None = None
    min: list | None = None
    max: list | None = None
    name: str | None = None


@dataclass
class Image:
    uri: str | None = None
    mime_type: str | None = None
    buffer_view: int | None = None
    name: str | None = None


@dataclass
class Sampler:
    mag_filter: int | None = None
    min_filter: int | None = None
    wrap_s: int = WRAP_REPEAT
    wrap_t: int = WRAP_REPEAT


@dataclass
class Texture:
    source: int | None = None
    sampler: int | None = None
    name: str | None = None
    extensions: dict = field(default_factory=dict)


@dataclass
class TextureInfo:
    index: int
    tex_coord: int = 0
    scale: float | None = None      # normalTexture only
    strength: float | None = None   # occlusionTexture only


@dataclass
class PbrMetallicRoughness:
    base_color_factor: list | None = None
    base_color_texture: TextureInfo | None = None
    metallic_factor: float | None = None
    roughness_factor: float | None = None
    metallic_roughness_texture: TextureInfo | None = None


@dataclass
class Material:
    name: str | None = None
    pbr_metallic_roughness: PbrMetallicRoughness | None = None
    normal_texture: TextureInfo | None = None
    occlusion_texture: TextureInfo | None = None
    emissive_texture: TextureInfo | None = None
    emissive_factor: list | None = None
    alpha_mode: str = "OPAQUE"
    alpha_cutoff: float | None = None
    double_sided: bool = False
    extensions: dict = field(default_factory=dict)


@dataclass
class Primitive:
    attributes: dict[str, int]
    indices: int | None = None
    material: int | None = None
    mode: int = MODE_TRIANGLES
    targets: list[dict[str, int]] = field(default_factory=list)
    extensions: dict = field(default_factory=dict)


@dataclass
class Mesh:
    primitives: list[Primitive]
    weights: list[float] | None = None
    name: str | None = None


@dataclass
class Node:
    name: str | None = None
    children: list[int] = field(default_factory=list)
    mesh: int | None = None
    skin: int | None = None
    translation: list | None = None
    rotation: list | None = None
    scale: list | None = None
    matrix: list | None = None
    weights: list[float] | None = None
    extensions: dict = field(default_factory=dict)


@dataclass
class Skin:
    joints: list[int]
    inverse_bind_matrices: int | None = None
    skeleton: int | None = None
    name: str | None = None


@dataclass
class AnimationSampler:
    input: int
    output: int
    interpolation: str = "LINEAR"


@dataclass
class AnimationChannel:
    sampler: int
    target_path: str
    target_node: int | None = None


@dataclass
class Animation:
    channels: list[AnimationChannel]
    samplers: list[AnimationSampler]
    name: str | None = None


@dataclass
class Scene:
    nodes: list[int] = field(default_factory=list)
    name: str | None = None


@dataclass
class Document:
    """Parsed container. Treated as read-only once returned by parse_container."""
    asset: dict = field(default_factory=dict)
    scene: int | None = None
    scenes: list[Scene] = field(default_factory=list)
    nodes: list[Node] = field(default_factory=list)
    meshes: list[Mesh] = field(default_factory=list)
    materials: list[Material] = field(default_factory=list)
    textures: list[Texture] = field(default_factory=list)
    samplers: list[Sampler] = field(default_factory=list)
    images: list[Image] = field(default_factory=list)
    accessors: list[Accessor] = field(default_factory=list)
    buffer_views: list[BufferView] = field(default_factory=list)
    buffers: list[Buffer] = field(default_factory=list)
    skins: list[Skin] = field(default_factory=list)
    animations: list[Animation] = field(default_factory=list)
    extensions_used: list[str] = field(default_factory=list)
    extensions_required: list[str] = field(default_factory=list)
    unsupported_required: list[str] = field(default_factory=list)
    binary_chunks: list[bytes] = field(default_factory=list)
    is_binary: bool = False

    @property
    def is_valid(self) -> bool:
        return not self.unsupported_required

    def get(self, kind: str, index, owner: str | None = None):
        """Look up ``self.<kind>[index]``; raises ReferenceOutOfRange."""
        items = getattr(self, kind)
        if not isinstance(index, int) or isinstance(index, bool) \
                or index < 0 or index >= len(items):
            raise ReferenceOutOfRange(kind, index, owner)
        return items[index]

    def binary_chunk(self, buffer_index: int) -> bytes:
        """Embedded GLB binary chunk backing a URI-less buffer."""
        if buffer_index >= len(self.binary_chunks):
            raise ReferenceOutOfRange(
                "binary chunk", buffer_index, f"buffers[{buffer_index}]",
                "buffer has no uri and the container has no matching BIN chunk")
        return self.binary_chunks[buffer_index]

    def default_scene(self) -> Scene | None:
        if not self.scenes:
            return None
        if self.scene is None:
            return self.scenes[0]
        return self.get("scenes", self.scene, "document.scene")


# ---------------------------------------------------------------------------
# Binary container
# ---------------------------------------------------------------------------

def is_glb(data: bytes) -> bool:
    return len(data) >= 4 and struct.unpack_from("<I", data, 0)[0] == GLB_MAGIC


def split_glb(data: bytes) -> tuple[bytes, list[bytes]]:
    """Return (json_chunk, [bin_chunk, ...]) of a GLB container."""
    if len(data) < GLB_HEADER_SIZE:
        raise ParseError("GLB file too small")
    magic, version, length = struct.unpack_from("<III", data, 0)
    if magic != GLB_MAGIC:
        raise ParseError("Not a valid GLB file (bad magic)")
    if version != 2:
        raise ParseError(f"Unsupported GLB version: {version}")
    if length > len(data):
        raise ParseError(f"GLB header declares {length} bytes, got {len(data)}")

    offset = GLB_HEADER_SIZE
    json_chunk = None
    bin_chunks: list[bytes] = []

    while offset < length:
        if offset + 8 > length:
            raise ParseError("Truncated GLB chunk header")
        chunk_length, chunk_type = struct.unpack_from("<II", data, offset)
        offset += 8
        if offset + chunk_length > length:
            raise ParseError("Truncated GLB chunk")
        chunk_data = data[offset:offset + chunk_length]
        offset += chunk_length

        if chunk_type == GLB_CHUNK_JSON:
            if json_chunk is not None:
                raise ParseError("GLB contains more than one JSON chunk")
            json_chunk = chunk_data
        elif chunk_type == GLB_CHUNK_BIN:
            bin_chunks.append(chunk_data)
        else:
            logger.debug("Skipping unknown GLB chunk type 0x%08X", chunk_type)

    if json_chunk is None:
        raise ParseError("No JSON chunk in GLB")
    return json_chunk, bin_chunks


def load_json(data: bytes) -> dict:
    try:
        text = data.decode("utf-8-sig").rstrip("\x00 \t\r\n")
        root = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"Error parsing JSON in glTF file: {e}") from e
    if not isinstance(root, dict):
        raise ParseError("glTF JSON root must be an object")
    return root


# ---------------------------------------------------------------------------
# JSON → entities
# ---------------------------------------------------------------------------

def parse_texture_info(raw) -> TextureInfo | None:
    if raw is None:
        return None
    return TextureInfo(
        index=raw["index"],
        tex_coord=raw.get("texCoord", 0),
        scale=raw.get("scale"),
        strength=raw.get("strength"),
    )


def _accessor(raw: dict) -> Accessor:
    sparse = None
    if "sparse" in raw:
        s = raw["sparse"]
        sparse = AccessorSparse(
            count=s["count"],
            indices_buffer_view=s["indices"]["bufferView"],
            indices_byte_offset=s["indices"].get("byteOffset", 0),
            indices_component_type=s["indices"]["componentType"],
            values_buffer_view=s["values"]["bufferView"],
            values_byte_offset=s["values"].get("byteOffset", 0),
        )
    return Accessor(
        component_type=raw["componentType"],
        count=raw["count"],
        type=raw["type"],
        buffer_view=raw.get("bufferView"),
        byte_offset=raw.get("byteOffset", 0),
        normalized=raw.get("normalized", False),
        sparse=sparse,
        min=raw.get("min"),
        max=raw.get("max"),
        name=raw.get("name"),
    )


def _material(raw: dict, ext) -> Material:
    pbr = raw.get("pbrMetallicRoughness")
    return Material(
        name=raw.get("name"),
        pbr_metallic_roughness=PbrMetallicRoughness(
            base_color_factor=pbr.get("baseColorFactor"),
            base_color_texture=parse_texture_info(pbr.get("baseColorTexture")),
            metallic_factor=pbr.get("metallicFactor"),
            roughness_factor=pbr.get("roughnessFactor"),
            metallic_roughness_texture=parse_texture_info(
                pbr.get("metallicRoughnessTexture")),
        ) if pbr is not None else None,
        normal_texture=parse_texture_info(raw.get("normalTexture")),
        occlusion_texture=parse_texture_info(raw.get("occlusionTexture")),
        emissive_texture=parse_texture_info(raw.get("emissiveTexture")),
        emissive_factor=raw.get("emissiveFactor"),
        alpha_mode=raw.get("alphaMode", "OPAQUE"),
        alpha_cutoff=raw.get("alphaCutoff"),
        double_sided=raw.get("doubleSided", False),
        extensions=ext(raw),
    )


def _mesh(raw: dict, ext) -> Mesh:
    return Mesh(
        primitives=[
            Primitive(
                attributes=dict(p.get("attributes", {})),
                indices=p.get("indices"),
                material=p.get("material"),
                mode=p.get("mode", MODE_TRIANGLES),
                targets=[dict(t) for t in p.get("targets", [])],
                extensions=ext(p),
            )
            for p in raw["primitives"]
        ],
        weights=raw.get("weights"),
        name=raw.get("name"),
    )


def _animation(raw: dict) -> Animation:
    return Animation(
        channels=[
            AnimationChannel(
                sampler=c["sampler"],
                target_path=c["target"]["path"],
                target_node=c["target"].get("node"),
            )
            for c in raw["channels"]
        ],
        samplers=[
            AnimationSampler(
                input=s["input"],
                output=s["output"],
                interpolation=s.get("interpolation", "LINEAR"),
            )
            for s in raw["samplers"]
        ],
        name=raw.get("name"),
    )


def _parse_list(root: dict, key: str, build):
    items = root.get(key, [])
    if not isinstance(items, list):
        raise ParseError(f"'{key}' must be an array")
    result = []
    for i, raw in enumerate(items):
        try:
            result.append(build(raw))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseError(f"Invalid {key}[{i}]: {e!r}") from e
    return result


def parse_container(data: bytes, registry=None) -> Document:
    """Decode .gltf/.glb bytes into a Document.

    ``registry`` is an ExtensionRegistry; extension objects it does not know
    are left out of the entity's ``extensions`` dict.
    """
    if registry is None:
        from gltf_import.extensions import default_registry
        registry = default_registry()

    if is_glb(data):
        json_chunk, bin_chunks = split_glb(data)
        root = load_json(json_chunk)
        is_binary = True
    else:
        root = load_json(data)
        bin_chunks = []
        is_binary = False

    if "asset" not in root:
        logger.warning("glTF JSON has no 'asset' object")

    def ext(raw: dict) -> dict:
        return registry.decode_all(root, raw.get("extensions"))

    doc = Document(
        asset=root.get("asset", {}),
        scene=root.get("scene"),
        scenes=_parse_list(root, "scenes", lambda r: Scene(
            nodes=list(r.get("nodes", [])), name=r.get("name"))),
        nodes=_parse_list(root, "nodes", lambda r: Node(
            name=r.get("name"),
            children=list(r.get("children", [])),
            mesh=r.get("mesh"),
            skin=r.get("skin"),
            translation=r.get("translation"),
            rotation=r.get("rotation"),
            scale=r.get("scale"),
            matrix=r.get("matrix"),
            weights=r.get("weights"),
            extensions=ext(r),
        )),
        meshes=_parse_list(root, "meshes", lambda r: _mesh(r, ext)),
        materials=_parse_list(root, "materials", lambda r: _material(r, ext)),
        textures=_parse_list(root, "textures", lambda r: Texture(
            source=r.get("source"),
            sampler=r.get("sampler"),
            name=r.get("name"),
            extensions=ext(r),
        )),
        samplers=_parse_list(root, "samplers", lambda r: Sampler(
            mag_filter=r.get("magFilter"),
            min_filter=r.get("minFilter"),
            wrap_s=r.get("wrapS", WRAP_REPEAT),
            wrap_t=r.get("wrapT", WRAP_REPEAT),
        )),
        images=_parse_list(root, "images", lambda r: Image(
            uri=r.get("uri"),
            mime_type=r.get("mimeType"),
            buffer_view=r.get("bufferView"),
            name=r.get("name"),
        )),
        accessors=_parse_list(root, "accessors", _accessor),
        buffer_views=_parse_list(root, "bufferViews", lambda r: BufferView(
            buffer=r["buffer"],
            byte_length=r["byteLength"],
            byte_offset=r.get("byteOffset", 0),
            byte_stride=r.get("byteStride"),
            name=r.get("name"),
        )),
        buffers=_parse_list(root, "buffers", lambda r: Buffer(
            byte_length=r["byteLength"], uri=r.get("uri"), name=r.get("name"))),
        skins=_parse_list(root, "skins", lambda r: Skin(
            joints=list(r["joints"]),
            inverse_bind_matrices=r.get("inverseBindMatrices"),
            skeleton=r.get("skeleton"),
            name=r.get("name"),
        )),
        animations=_parse_list(root, "animations", _animation),
        extensions_used=list(root.get("extensionsUsed", [])),
        extensions_required=list(root.get("extensionsRequired", [])),
        binary_chunks=bin_chunks,
        is_binary=is_binary,
    )

    doc.unsupported_required = [
        name for name in doc.extensions_required if not registry.knows(name)]
    for name in doc.extensions_used:
        if not registry.knows(name) and name not in doc.unsupported_required:
            logger.info("Ignoring unsupported optional extension %s", name)

    return doc
