"""
Geometry decoder — accessor attribute sets or compressed blobs → vertex and
index buffers in the target (left-handed, bottom-left UV origin) convention.
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from gltf_import.cache import ResourceKind
from gltf_import.coordinates import (
    Handedness, flip_tangents, flip_uvs, flip_vectors, mirrors, reverse_winding,
    to_target,
)
from gltf_import.document import MODE_TRIANGLES
from gltf_import.errors import (
    ParseError, ReferenceOutOfRange, RequiredExtensionUnsupported, UnsupportedTopology,
)
from gltf_import.extensions import DRACO_MESH_COMPRESSION, DracoMeshCompression, get_payload
from gltf_import.scheduler import StepGenerator

logger = logging.getLogger(__name__)

MAX_UV_SETS = 4
COMPACT_INDEX_LIMIT = 65535


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class Bounds:
    min: np.ndarray
    max: np.ndarray

    @property
    def center(self) -> np.ndarray:
        return (self.min + self.max) / 2.0

    @property
    def size(self) -> np.ndarray:
        return self.max - self.min


@dataclass
class BlendShape:
    name: str
    delta_positions: np.ndarray
    delta_normals: np.ndarray
    delta_tangents: np.ndarray
    frame_weight: float = 1.0


@dataclass
class MeshPrimitiveData:
    name: str
    positions: np.ndarray                   # (N, 3) float32
    indices: np.ndarray                     # (M,) uint16 or uint32
    normals: np.ndarray | None = None
    tangents: np.ndarray | None = None
    uvs: list[np.ndarray] = field(default_factory=list)
    colors: np.ndarray | None = None
    bounds: Bounds | None = None
    # joints/weights exactly as a compressed stream delivered them; the
    # normalized table lives in the BONE_WEIGHTS cache slot
    bone_indices: np.ndarray | None = None  # (N, 4) int
    bone_weights: np.ndarray | None = None  # (N, 4) float
    compressed: bool = False

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def index_format(self) -> str:
        return "uint16" if self.indices.dtype == np.uint16 else "uint32"


@dataclass
class MeshData:
    """Decoded glTF mesh: one (primitive, material) pair per glTF primitive.

    Unsupported or failed primitives keep their slot as (None, None).
    """
    name: str
    primitives: list[tuple] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def select_index_format(count: int) -> str:
    """16-bit indices up to 65535 vertices/indices, 32-bit beyond."""
    return "uint16" if count <= COMPACT_INDEX_LIMIT else "uint32"


def pack_indices(indices: np.ndarray, vertex_count: int) -> np.ndarray:
    fmt = select_index_format(max(vertex_count, len(indices)))
    return np.ascontiguousarray(indices, dtype=np.uint16 if fmt == "uint16" else np.uint32)


def compute_bounds(positions: np.ndarray) -> Bounds:
    if len(positions) == 0:
        zero = np.zeros(3, dtype=np.float32)
        return Bounds(zero, zero.copy())
    return Bounds(positions.min(axis=0).astype(np.float32),
                  positions.max(axis=0).astype(np.float32))


def _normalize_rows(v: np.ndarray, fallback) -> np.ndarray:
    length = np.linalg.norm(v, axis=1, keepdims=True)
    ok = length[:, 0] > 1e-12
    out = np.empty_like(v)
    out[ok] = v[ok] / length[ok]
    out[~ok] = fallback
    return out


def compute_normals(positions: np.ndarray, indices: np.ndarray) -> np.ndarray:
    """Area-weighted vertex normals."""
    tris = indices.reshape(-1, 3).astype(np.int64)
    p0, p1, p2 = positions[tris[:, 0]], positions[tris[:, 1]], positions[tris[:, 2]]
    face = np.cross(p1 - p0, p2 - p0)
    normals = np.zeros_like(positions, dtype=np.float64)
    for corner in range(3):
        np.add.at(normals, tris[:, corner], face)
    return _normalize_rows(normals, (0.0, 1.0, 0.0)).astype(np.float32)


def compute_tangents(positions: np.ndarray, normals: np.ndarray, uv: np.ndarray,
                     indices: np.ndarray) -> np.ndarray:
    """Per-vertex tangents (xyz + handedness sign w) from UV gradients."""
    tris = indices.reshape(-1, 3).astype(np.int64)
    p = positions.astype(np.float64)
    w = uv.astype(np.float64)
    e1 = p[tris[:, 1]] - p[tris[:, 0]]
    e2 = p[tris[:, 2]] - p[tris[:, 0]]
    d1 = w[tris[:, 1]] - w[tris[:, 0]]
    d2 = w[tris[:, 2]] - w[tris[:, 0]]

    det = d1[:, 0] * d2[:, 1] - d2[:, 0] * d1[:, 1]
    inv = np.zeros_like(det)
    nonzero = np.abs(det) > 1e-12
    inv[nonzero] = 1.0 / det[nonzero]

    sdir = (e1 * d2[:, 1:2] - e2 * d1[:, 1:2]) * inv[:, None]
    tdir = (e2 * d1[:, 0:1] - e1 * d2[:, 0:1]) * inv[:, None]

    tan1 = np.zeros_like(p)
    tan2 = np.zeros_like(p)
    for corner in range(3):
        np.add.at(tan1, tris[:, corner], sdir)
        np.add.at(tan2, tris[:, corner], tdir)

    n = normals.astype(np.float64)
    t = tan1 - n * np.sum(n * tan1, axis=1, keepdims=True)
    t = _normalize_rows(t, (1.0, 0.0, 0.0))
    sign = np.where(np.sum(np.cross(n, t) * tan2, axis=1) < 0.0, -1.0, 1.0)
    return np.hstack([t, sign[:, None]]).astype(np.float32)


def finish_primitive(data: MeshPrimitiveData) -> MeshPrimitiveData:
    """Bounds always; normals/tangents only where the source had none."""
    if data.normals is None and len(data.indices) >= 3:
        data.normals = compute_normals(data.positions, data.indices)
    if data.tangents is None and data.normals is not None and data.uvs \
            and len(data.indices) >= 3:
        data.tangents = compute_tangents(
            data.positions, data.normals, data.uvs[0], data.indices)
    data.bounds = compute_bounds(data.positions)
    return data


def _rgba(colors: np.ndarray) -> np.ndarray:
    colors = colors.astype(np.float32)
    if colors.shape[1] == 3:
        colors = np.hstack([colors, np.ones((len(colors), 1), dtype=np.float32)])
    return colors


# ---------------------------------------------------------------------------
# Standard (accessor-based) primitives
# ---------------------------------------------------------------------------

def decode_standard(reader, primitive, owner: str, name: str) -> MeshPrimitiveData:
    attrs = primitive.attributes
    if "POSITION" not in attrs:
        raise ParseError(f"{owner}: primitive has no POSITION attribute")

    positions = reader.read(attrs["POSITION"], owner).astype(np.float32)
    vertex_count = len(positions)

    normals = tangents = colors = None
    if "NORMAL" in attrs:
        normals = flip_vectors(reader.read(attrs["NORMAL"], owner))
    if "TANGENT" in attrs:
        tangents = flip_tangents(reader.read(attrs["TANGENT"], owner))
    if "COLOR_0" in attrs:
        colors = _rgba(reader.read(attrs["COLOR_0"], owner))

    uvs = []
    for i in range(MAX_UV_SETS):
        key = f"TEXCOORD_{i}"
        if key not in attrs:
            break
        uvs.append(flip_uvs(reader.read(attrs[key], owner)))

    if primitive.indices is not None:
        indices = reader.read(primitive.indices, owner).reshape(-1).astype(np.uint32)
        if len(indices) and int(indices.max()) >= vertex_count:
            raise ReferenceOutOfRange(
                "vertex", int(indices.max()), owner,
                f"index accessor refers past {vertex_count} vertices")
    else:
        indices = np.arange(vertex_count, dtype=np.uint32)

    indices = indices[:len(indices) - len(indices) % 3]

    return MeshPrimitiveData(
        name=name,
        positions=flip_vectors(positions),
        indices=pack_indices(reverse_winding(indices), vertex_count),
        normals=normals,
        tangents=tangents,
        uvs=uvs,
        colors=colors,
    )


# ---------------------------------------------------------------------------
# Compressed primitives
# ---------------------------------------------------------------------------

def from_decoded(decoded, decoder, name: str) -> MeshPrimitiveData:
    """Apply the standard post-processing to a decompressor's output."""
    native: Handedness = decoder.native_handedness
    vertex_count = len(decoded.positions)

    indices = np.asarray(decoded.indices, dtype=np.uint32).reshape(-1)
    indices = indices[:len(indices) - len(indices) % 3]
    if mirrors(native):
        indices = reverse_winding(indices)

    tangents = None
    if decoded.tangents is not None:
        tangents = np.array(decoded.tangents, dtype=np.float32, copy=True)
        tangents[:, :3] = to_target(tangents[:, :3], native)
        if mirrors(native):
            tangents[:, 3] = -tangents[:, 3]

    uvs = [np.asarray(uv, dtype=np.float32) for uv in decoded.uvs[:MAX_UV_SETS]]
    if not decoder.uv_origin_converted:
        uvs = [flip_uvs(uv) for uv in uvs]

    data = MeshPrimitiveData(
        name=name,
        positions=to_target(decoded.positions, native),
        indices=pack_indices(indices, vertex_count),
        normals=(to_target(decoded.normals, native)
                 if decoded.normals is not None else None),
        tangents=tangents,
        uvs=uvs,
        colors=_rgba(decoded.colors) if decoded.colors is not None else None,
        compressed=True,
    )
    if decoded.joints is not None:
        data.bone_indices = np.asarray(decoded.joints, dtype=np.int32).reshape(-1, 4)
    if decoded.weights is not None:
        data.bone_weights = np.asarray(decoded.weights, dtype=np.float32).reshape(-1, 4)
    return data


def decode_compressed_steps(ctx, draco: DracoMeshCompression, owner: str,
                            name: str) -> StepGenerator:
    decoder = ctx.capabilities.geometry
    if decoder is None:
        raise RequiredExtensionUnsupported([DRACO_MESH_COMPRESSION], owner)
    blob = ctx.reader.buffer_view_bytes(draco.buffer_view, owner)
    decoded = yield from ctx.run_external(
        decoder.decode, blob, draco.joints_id, draco.weights_id)
    return from_decoded(decoded, decoder, name)


# ---------------------------------------------------------------------------
# Mesh stage
# ---------------------------------------------------------------------------

def _check_topology(primitive, owner: str) -> None:
    if primitive.mode != MODE_TRIANGLES:
        raise UnsupportedTopology(
            f"{owner}: primitive mode {primitive.mode} is not supported (TRIANGLES only)")


def load_mesh_steps(ctx, mesh_index: int) -> StepGenerator:
    """Decode every primitive of a mesh, suspending between primitives."""
    mesh = ctx.document.meshes[mesh_index]
    result = MeshData(name=ctx.names.assign("mesh", mesh.name, mesh_index))
    several = len(mesh.primitives) > 1

    for p, primitive in enumerate(mesh.primitives):
        owner = f"meshes[{mesh_index}].primitives[{p}]"
        name = f"{result.name}_{p}" if several else result.name
        try:
            _check_topology(primitive, owner)
        except UnsupportedTopology as e:
            ctx.warn(logger, "%s", e)
            result.primitives.append((None, None))
            yield
            continue

        if primitive.material is not None:
            ctx.document.get("materials", primitive.material, owner)
            material = ctx.cache.get(ResourceKind.MATERIAL, primitive.material)
        else:
            material = ctx.cache.default_material

        draco = get_payload(primitive, DracoMeshCompression)
        if draco is not None:
            data = yield from decode_compressed_steps(ctx, draco, owner, name)
        else:
            data = decode_standard(ctx.reader, primitive, owner, name)
        finish_primitive(data)
        logger.debug("%s: %d vertices, %d indices (%s)", owner, data.vertex_count,
                     len(data.indices), data.index_format)
        result.primitives.append((data, material))
        yield
    return result
