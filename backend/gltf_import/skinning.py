"""
Skinning and morph targets: bind poses, bone bindings, normalized bone
weights and named blend shapes, applied to the already-built scene.
"""

import logging
from dataclasses import dataclass

import numpy as np

from gltf_import.cache import ResourceKind
from gltf_import.coordinates import flip_matrices, flip_vectors
from gltf_import.errors import ReferenceOutOfRange, SkinningError
from gltf_import.geometry import BlendShape
from gltf_import.scheduler import StepGenerator

logger = logging.getLogger(__name__)


@dataclass
class SkinBinding:
    index: int
    bones: list                     # SceneObjects, one per joint
    bind_poses: np.ndarray          # (J, 4, 4) in the target convention
    root_bone: object = None


@dataclass
class BoneWeights:
    """Per-vertex influences of one primitive, shared by every skin that uses it."""
    indices: np.ndarray             # (N, 4) int32
    weights: np.ndarray             # (N, 4) float32, rows sum to 1


# ---------------------------------------------------------------------------
# Bone weights
# ---------------------------------------------------------------------------

def normalize_bone_weights(weights) -> np.ndarray:
    """Scale each row of 4 weights to sum to 1.

    Rows already summing to exactly 1 are kept as-is; rows whose sum is zero
    or not finite get all their weight on the first influence.
    """
    w = np.asarray(weights, dtype=np.float64).reshape(-1, 4)
    sums = w.sum(axis=1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = w / sums
    exact = sums[:, 0] == 1.0
    out[exact] = w[exact]
    bad = (sums[:, 0] <= 0.0) | ~np.isfinite(out).all(axis=1)
    out[bad] = (1.0, 0.0, 0.0, 0.0)
    return out.astype(np.float32)


def _read_bone_data(ctx, primitive, data, owner: str) -> BoneWeights | None:
    """Joint/weight table from the compressed stream or JOINTS_0/WEIGHTS_0."""
    indices, weights = data.bone_indices, data.bone_weights
    if indices is None or weights is None:
        attrs = primitive.attributes
        if "JOINTS_0" not in attrs or "WEIGHTS_0" not in attrs:
            return None
        indices = ctx.reader.read(attrs["JOINTS_0"], owner, normalize=False)
        weights = ctx.reader.read(attrs["WEIGHTS_0"], owner)

    n = data.vertex_count
    if len(indices) != n or len(weights) != n:
        raise SkinningError(
            f"{owner}: {len(indices)} joints / {len(weights)} weights for {n} vertices")
    return BoneWeights(
        indices=np.asarray(indices).astype(np.int32),
        weights=normalize_bone_weights(weights),
    )


# ---------------------------------------------------------------------------
# Skins
# ---------------------------------------------------------------------------

def decode_skin(ctx, skin_index: int) -> SkinBinding | None:
    """Bind poses + bones, or None (with a warning) for an invalid skin."""
    skin = ctx.document.skins[skin_index]
    owner = f"skins[{skin_index}]"
    if skin.inverse_bind_matrices is not None:
        matrix_count = ctx.reader.count(skin.inverse_bind_matrices, owner)
    else:
        matrix_count = len(skin.joints)

    if not skin.joints or matrix_count != len(skin.joints):
        ctx.warn(logger, "Skin %d skipped: %d joints but %d inverse bind matrices",
                 skin_index, len(skin.joints), matrix_count)
        return None

    bones = []
    for joint in skin.joints:
        ctx.document.get("nodes", joint, owner)
        if not ctx.cache.contains(ResourceKind.NODE, joint):
            ctx.warn(logger, "Skin %d skipped: joint node %d is not part of the scene",
                     skin_index, joint)
            return None
        bones.append(ctx.cache.get(ResourceKind.NODE, joint))

    if skin.inverse_bind_matrices is not None:
        matrices = ctx.reader.read_matrices(skin.inverse_bind_matrices, owner)
    else:
        matrices = np.tile(np.eye(4, dtype=np.float32), (len(skin.joints), 1, 1))

    root_bone = None
    if skin.skeleton is not None:
        ctx.document.get("nodes", skin.skeleton, owner)
        if ctx.cache.contains(ResourceKind.NODE, skin.skeleton):
            root_bone = ctx.cache.get(ResourceKind.NODE, skin.skeleton)

    return SkinBinding(
        index=skin_index,
        bones=bones,
        bind_poses=flip_matrices(matrices),
        root_bone=root_bone,
    )


def apply_skin_steps(ctx, skin_index: int, binding: SkinBinding) -> StepGenerator:
    """Attach a valid skin to every object of every node that references it.

    Bind poses stay on the binding and bone tables in their own cache slots,
    so nodes sharing a mesh can carry different skins.
    """
    for node_index in ctx.cache.skin_to_nodes.get(skin_index, []):
        node = ctx.document.nodes[node_index]
        if node.mesh is None:
            continue
        mesh = ctx.document.meshes[node.mesh]
        objects = ctx.cache.node_to_primitive_objects.get(node_index, [])
        for p, obj in enumerate(objects):
            if obj is None:
                continue
            owner = f"meshes[{node.mesh}].primitives[{p}]"
            bones = ctx.cache.get_or_decode(
                ResourceKind.BONE_WEIGHTS, (node.mesh, p),
                lambda: _read_bone_data(ctx, mesh.primitives[p], obj.mesh, owner))
            if bones is None:
                ctx.warn(logger, "%s: skinned node %d has no JOINTS_0/WEIGHTS_0",
                         owner, node_index)
                continue
            obj.bone_weights = bones
            obj.skin = binding
        yield


# ---------------------------------------------------------------------------
# Morph targets
# ---------------------------------------------------------------------------

def blend_shape_name(mesh_index: int, target_index: int) -> str:
    return f"Target_{mesh_index}_{target_index}"


def _read_deltas(ctx, target: dict, key: str, count: int, owner: str) -> np.ndarray:
    if key not in target:
        return np.zeros((count, 3), dtype=np.float32)
    deltas = ctx.reader.read(target[key], owner)[:, :3]
    if len(deltas) != count:
        raise ReferenceOutOfRange(
            "accessors", target[key], owner,
            f"{key} target has {len(deltas)} deltas for {count} vertices")
    return flip_vectors(deltas)


def default_weights(ctx, mesh_index: int) -> list[float]:
    """Mesh-level default weights, one per target across all primitives."""
    mesh = ctx.document.meshes[mesh_index]
    total = sum(len(p.targets) for p in mesh.primitives)
    weights = list(mesh.weights or [])
    if weights and len(weights) != total:
        ctx.warn(logger, "Mesh %d: %d default weights for %d morph targets, using 0",
                 mesh_index, len(weights), total)
        weights = []
    return weights or [0.0] * total


def _read_blend_shapes(ctx, mesh_index: int, p: int, primitive, data) -> list[BlendShape]:
    owner = f"meshes[{mesh_index}].primitives[{p}]"
    n = data.vertex_count
    return [
        BlendShape(
            name=blend_shape_name(mesh_index, t),
            delta_positions=_read_deltas(ctx, target, "POSITION", n, owner),
            delta_normals=_read_deltas(ctx, target, "NORMAL", n, owner),
            delta_tangents=_read_deltas(ctx, target, "TANGENT", n, owner),
        )
        for t, target in enumerate(primitive.targets)
    ]


def decode_morph_targets_steps(ctx, mesh_index: int) -> StepGenerator:
    mesh = ctx.document.meshes[mesh_index]
    mesh_data = ctx.cache.get(ResourceKind.MESH, mesh_index)
    defaults = default_weights(ctx, mesh_index)

    per_primitive = []
    cursor = 0
    for p, primitive in enumerate(mesh.primitives):
        data, _ = mesh_data.primitives[p]
        targets = primitive.targets
        per_primitive.append(defaults[cursor:cursor + len(targets)])
        cursor += len(targets)
        if data is None or not targets:
            continue
        if ctx.cache.contains(ResourceKind.BLEND_SHAPES, (mesh_index, p)):
            continue
        ctx.cache.get_or_decode(
            ResourceKind.BLEND_SHAPES, (mesh_index, p),
            lambda: _read_blend_shapes(ctx, mesh_index, p, primitive, data))
        yield

    for node_index in ctx.cache.mesh_to_nodes.get(mesh_index, []):
        node = ctx.document.nodes[node_index]
        node_weights = list(node.weights or [])
        objects = ctx.cache.node_to_primitive_objects.get(node_index, [])
        cursor = 0
        for p, obj in enumerate(objects):
            count = len(per_primitive[p])
            weights = per_primitive[p]
            if len(node_weights) == len(defaults):
                weights = node_weights[cursor:cursor + count]
            cursor += count
            if obj is not None and count:
                obj.blend_shape_weights = list(weights)
                key = (mesh_index, p)
                if ctx.cache.contains(ResourceKind.BLEND_SHAPES, key):
                    obj.blend_shapes = ctx.cache.get(ResourceKind.BLEND_SHAPES, key)

    ctx.cache.meshes_with_morph_targets.append(mesh_index)
