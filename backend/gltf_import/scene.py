"""
Scene graph builder — depth-first instantiation of the default scene.

Nodes become SceneObjects carrying a local TRS transform in the target
convention. A node whose mesh has N primitives gets N renderable objects:
itself for the first primitive and N-1 siblings for the rest.
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from gltf_import.cache import ResourceKind
from gltf_import.coordinates import flip_matrices, flip_rotations, flip_vectors
from gltf_import.errors import ParseError
from gltf_import.names import scene_object_name, unique_name
from gltf_import.scheduler import StepGenerator

logger = logging.getLogger(__name__)

IDENTITY_ROTATION = (0.0, 0.0, 0.0, 1.0)


@dataclass
class SceneObject:
    name: str
    node_index: int | None = None
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float32))
    rotation: np.ndarray = field(
        default_factory=lambda: np.array(IDENTITY_ROTATION, dtype=np.float32))
    scale: np.ndarray = field(default_factory=lambda: np.ones(3, dtype=np.float32))
    parent: "SceneObject | None" = field(default=None, repr=False)
    children: list["SceneObject"] = field(default_factory=list, repr=False)
    mesh: object = None              # MeshPrimitiveData
    material: object = None          # MaterialData
    skin: object = None              # SkinBinding
    bone_weights: object = None      # BoneWeights, shared by every user of the primitive
    blend_shapes: list = field(default_factory=list)
    blend_shape_weights: list[float] = field(default_factory=list)
    active: bool = True

    def add_child(self, child: "SceneObject") -> "SceneObject":
        child.parent = self
        self.children.append(child)
        return child

    def walk(self):
        yield self
        for child in self.children:
            yield from child.walk()

    def path_to(self, descendant: "SceneObject") -> str:
        """Slash-separated hierarchy path from this object to ``descendant``."""
        parts = []
        node = descendant
        while node is not None and node is not self:
            parts.append(node.name)
            node = node.parent
        if node is None:
            raise ValueError(f"{descendant.name} is not below {self.name}")
        return "/".join(reversed(parts))

    def find(self, path: str) -> "SceneObject | None":
        node = self
        for part in filter(None, path.split("/")):
            node = next((c for c in node.children if c.name == part), None)
            if node is None:
                return None
        return node

    def local_matrix(self) -> np.ndarray:
        return compose_trs(self.translation, self.rotation, self.scale)

    def world_matrix(self) -> np.ndarray:
        m = self.local_matrix()
        node = self.parent
        while node is not None:
            m = node.local_matrix() @ m
            node = node.parent
        return m


# ---------------------------------------------------------------------------
# Transform math
# ---------------------------------------------------------------------------

def quaternion_to_matrix(q) -> np.ndarray:
    x, y, z, w = (float(c) for c in q)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ], dtype=np.float64)


def matrix_to_quaternion(r: np.ndarray) -> np.ndarray:
    """Rotation matrix (3x3, orthonormal) → xyzw quaternion."""
    trace = r[0, 0] + r[1, 1] + r[2, 2]
    if trace > 0:
        s = np.sqrt(trace + 1.0) * 2
        q = [(r[2, 1] - r[1, 2]) / s, (r[0, 2] - r[2, 0]) / s,
             (r[1, 0] - r[0, 1]) / s, 0.25 * s]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        s = np.sqrt(1.0 + r[0, 0] - r[1, 1] - r[2, 2]) * 2
        q = [0.25 * s, (r[0, 1] + r[1, 0]) / s,
             (r[0, 2] + r[2, 0]) / s, (r[2, 1] - r[1, 2]) / s]
    elif r[1, 1] > r[2, 2]:
        s = np.sqrt(1.0 + r[1, 1] - r[0, 0] - r[2, 2]) * 2
        q = [(r[0, 1] + r[1, 0]) / s, 0.25 * s,
             (r[1, 2] + r[2, 1]) / s, (r[0, 2] - r[2, 0]) / s]
    else:
        s = np.sqrt(1.0 + r[2, 2] - r[0, 0] - r[1, 1]) * 2
        q = [(r[0, 2] + r[2, 0]) / s, (r[1, 2] + r[2, 1]) / s,
             0.25 * s, (r[1, 0] - r[0, 1]) / s]
    q = np.array(q, dtype=np.float64)
    return (q / np.linalg.norm(q)).astype(np.float32)


def compose_trs(translation, rotation, scale) -> np.ndarray:
    m = np.eye(4, dtype=np.float64)
    m[:3, :3] = quaternion_to_matrix(rotation) * np.asarray(scale, dtype=np.float64)
    m[:3, 3] = translation
    return m


def decompose_matrix(m: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Row-major 4x4 → (translation, xyzw rotation, scale)."""
    m = np.asarray(m, dtype=np.float64)
    translation = m[:3, 3].copy()
    basis = m[:3, :3].copy()
    scale = np.linalg.norm(basis, axis=0)
    if np.linalg.det(basis) < 0:
        scale[0] = -scale[0]
    safe = np.where(np.abs(scale) > 1e-12, scale, 1.0)
    rotation = matrix_to_quaternion(basis / safe)
    return translation.astype(np.float32), rotation, scale.astype(np.float32)


def node_transform(node) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Local TRS of a glTF node, converted to the target convention."""
    if node.matrix is not None:
        m = np.asarray(node.matrix, dtype=np.float32).reshape(4, 4).T
        return decompose_matrix(flip_matrices(m))
    translation = flip_vectors(node.translation if node.translation is not None
                               else (0.0, 0.0, 0.0))
    rotation = flip_rotations(node.rotation if node.rotation is not None
                              else IDENTITY_ROTATION)
    scale = np.array(node.scale if node.scale is not None else (1.0, 1.0, 1.0),
                     dtype=np.float32)
    return translation, rotation, scale


def scene_bounds(root: SceneObject) -> tuple[np.ndarray, np.ndarray] | None:
    """World-space axis-aligned bounds of every renderable below ``root``."""
    lo = hi = None
    for obj in root.walk():
        if obj.mesh is None or obj.mesh.bounds is None:
            continue
        b = obj.mesh.bounds
        corners = np.array([[x, y, z, 1.0] for x in (b.min[0], b.max[0])
                            for y in (b.min[1], b.max[1])
                            for z in (b.min[2], b.max[2])])
        world = (obj.world_matrix() @ corners.T).T[:, :3]
        lo = world.min(axis=0) if lo is None else np.minimum(lo, world.min(axis=0))
        hi = world.max(axis=0) if hi is None else np.maximum(hi, world.max(axis=0))
    if lo is None:
        return None
    return lo, hi


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def _sibling_name(parent: SceneObject, name: str) -> str:
    """Suffix ``name`` so no two children of ``parent`` share it."""
    return unique_name(name, {child.name for child in parent.children})


class SceneBuilder:
    def __init__(self, ctx, root_name: str = "model", on_node=None):
        self.ctx = ctx
        self.root_name = root_name
        self.on_node = on_node
        self.built = 0

    def build_steps(self) -> StepGenerator:
        doc = self.ctx.document
        scene = doc.default_scene()
        if scene is None or not scene.nodes:
            raise ParseError("Document has no scene with root nodes to build")

        root = SceneObject(name=self.root_name, active=False)
        for i, node_index in enumerate(scene.nodes):
            yield from self._node_steps(node_index, root, f"scenes.nodes[{i}]")
        self.ctx.cache.scene = root
        logger.info("Scene built: %d nodes", self.built)
        return root

    def _node_steps(self, node_index: int, parent: SceneObject, owner: str) -> StepGenerator:
        ctx = self.ctx
        node = ctx.document.get("nodes", node_index, owner)
        if ctx.cache.contains(ResourceKind.NODE, node_index):
            raise ParseError(f"nodes[{node_index}] is reachable more than once")

        translation, rotation, scale = node_transform(node)
        name = scene_object_name(node.name or f"GLTFNode_{node_index}")
        obj = parent.add_child(SceneObject(
            name=_sibling_name(parent, name),
            node_index=node_index,
            translation=translation,
            rotation=rotation,
            scale=scale,
        ))
        ctx.cache.publish(ResourceKind.NODE, node_index, obj)

        owner = f"nodes[{node_index}]"
        if node.mesh is not None:
            self._attach_mesh(node_index, node, obj, parent, owner)
        if node.skin is not None:
            ctx.document.get("skins", node.skin, owner)
            ctx.cache.skin_to_nodes.setdefault(node.skin, []).append(node_index)

        self.built += 1
        if self.on_node:
            self.on_node(self.built)
        yield

        for child in node.children:
            yield from self._node_steps(child, obj, owner)

    def _attach_mesh(self, node_index, node, obj, parent, owner) -> None:
        ctx = self.ctx
        ctx.document.get("meshes", node.mesh, owner)
        mesh = ctx.cache.get(ResourceKind.MESH, node.mesh)
        ctx.cache.mesh_to_nodes.setdefault(node.mesh, []).append(node_index)

        objects = []
        for p, (data, material) in enumerate(mesh.primitives):
            if p == 0:
                target = obj
            elif data is None:
                objects.append(None)
                continue
            else:
                target = parent.add_child(SceneObject(
                    name=_sibling_name(parent, f"{obj.name}_{p}"),
                    node_index=node_index,
                    translation=obj.translation.copy(),
                    rotation=obj.rotation.copy(),
                    scale=obj.scale.copy(),
                ))
            target.mesh = data
            target.material = material
            objects.append(target if data is not None else None)
        ctx.cache.node_to_primitive_objects[node_index] = objects
