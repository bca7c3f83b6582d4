"""
Index-addressed store of decoded intermediate resources.

Every slot is written once (single writer, append-only) and read by the
later stages that depend on it. The fixed stage order guarantees that a
slot's prerequisites are already published before it is decoded.
"""

import logging
from enum import Enum
from typing import Any, Callable

from gltf_import.scheduler import WAIT, StepGenerator

logger = logging.getLogger(__name__)


class ResourceKind(Enum):
    BUFFER = "buffer"
    IMAGE = "image"
    TEXTURE = "texture"
    MATERIAL = "material"
    MESH = "mesh"
    NODE = "node"
    SKIN = "skin"
    BONE_WEIGHTS = "bone_weights"      # keyed by (mesh, primitive)
    BLEND_SHAPES = "blend_shapes"      # keyed by (mesh, primitive)
    ANIMATION = "animation"


Key = int | tuple[int, int]

_PENDING = object()


class ImportCache:
    def __init__(self):
        self._slots: dict[tuple[ResourceKind, Key], Any] = {}
        self.decode_counts: dict[ResourceKind, int] = {k: 0 for k in ResourceKind}

        # side tables recorded while building the scene graph
        self.mesh_to_nodes: dict[int, list[int]] = {}
        self.skin_to_nodes: dict[int, list[int]] = {}
        self.node_to_primitive_objects: dict[int, list] = {}
        self.meshes_with_morph_targets: list[int] = []
        self.scene = None
        self.default_material = None

    # -- lookup -------------------------------------------------------------

    def contains(self, kind: ResourceKind, index: Key) -> bool:
        return self._slots.get((kind, index), _PENDING) is not _PENDING

    def is_pending(self, kind: ResourceKind, index: Key) -> bool:
        return self._slots.get((kind, index)) is _PENDING

    def get(self, kind: ResourceKind, index: Key):
        value = self._slots.get((kind, index), _PENDING)
        if value is _PENDING:
            raise KeyError(f"{kind.value} {index} has not been decoded yet")
        return value

    def items(self, kind: ResourceKind) -> list[tuple[Key, Any]]:
        return sorted(
            (index, value) for (k, index), value in self._slots.items()
            if k is kind and value is not _PENDING
        )

    def count(self, kind: ResourceKind) -> int:
        return len(self.items(kind))

    # -- writes -------------------------------------------------------------

    def claim(self, kind: ResourceKind, index: Key) -> None:
        """Mark a slot in-flight so concurrent sub-tasks wait instead of re-decoding."""
        if (kind, index) in self._slots:
            raise RuntimeError(f"{kind.value} {index} is already claimed")
        self._slots[(kind, index)] = _PENDING

    def publish(self, kind: ResourceKind, index: Key, value) -> None:
        current = self._slots.get((kind, index), _PENDING)
        if current is not _PENDING:
            raise RuntimeError(f"{kind.value} {index} is already published")
        self._slots[(kind, index)] = value
        self.decode_counts[kind] += 1

    def get_or_decode(self, kind: ResourceKind, index: Key, decode: Callable[[], Any]):
        """Idempotent per (kind, index): decode on first call, cached afterwards."""
        if self.contains(kind, index):
            logger.debug("Cache hit: %s %s", kind.value, index)
            return self._slots[(kind, index)]
        self.claim(kind, index)
        try:
            value = decode()
        except BaseException:
            del self._slots[(kind, index)]
            raise
        self.publish(kind, index, value)
        return value

    def get_or_decode_steps(self, kind: ResourceKind, index: Key,
                            decode: Callable[[], StepGenerator]) -> StepGenerator:
        """Suspendable get_or_decode for sub-tasks that share a slot."""
        while self.is_pending(kind, index):
            yield WAIT
        if self.contains(kind, index):
            return self._slots[(kind, index)]
        self.claim(kind, index)
        try:
            value = yield from decode()
        except BaseException:
            del self._slots[(kind, index)]
            raise
        self.publish(kind, index, value)
        return value

    def clear(self) -> None:
        """Release everything; used when an import is aborted or cancelled."""
        self._slots.clear()
        self.mesh_to_nodes.clear()
        self.skin_to_nodes.clear()
        self.node_to_primitive_objects.clear()
        self.meshes_with_morph_targets.clear()
        self.scene = None
        self.default_material = None
