"""
Handedness correction between glTF (right-handed, +Y up, +Z forward) and the
left-handed target representation, plus UV-origin remapping.

The target convention negates Z. Decoder adapters may report a different
native convention (e.g. X negated); ``to_target`` applies exactly one
correction from whatever convention the data arrives in.
"""

from enum import Enum

import numpy as np


class Handedness(Enum):
    GLTF = "gltf"             # source format, right-handed
    Z_NEGATED = "z_negated"   # target representation
    X_NEGATED = "x_negated"   # e.g. decoders that mirror X instead of Z


# Axis sign flips taking each convention to the target one.
_TO_TARGET = {
    Handedness.GLTF: np.array([1.0, 1.0, -1.0], dtype=np.float32),
    Handedness.Z_NEGATED: np.array([1.0, 1.0, 1.0], dtype=np.float32),
    Handedness.X_NEGATED: np.array([-1.0, 1.0, -1.0], dtype=np.float32),
}

_FLIP_Z = np.diag([1.0, 1.0, -1.0, 1.0]).astype(np.float32)


def flip_vectors(v: np.ndarray) -> np.ndarray:
    """Negate Z of (..., 3) positions/normals/deltas."""
    out = np.array(v, dtype=np.float32, copy=True)
    out[..., 2] = -out[..., 2]
    return out


def flip_rotations(q: np.ndarray) -> np.ndarray:
    """Negate Z and W of (..., 4) xyzw quaternions."""
    out = np.array(q, dtype=np.float32, copy=True)
    out[..., 2] = -out[..., 2]
    out[..., 3] = -out[..., 3]
    return out


def flip_tangents(t: np.ndarray) -> np.ndarray:
    """Negate Z and the bitangent sign W of (..., 4) tangents."""
    return flip_rotations(t)


def flip_matrices(m: np.ndarray) -> np.ndarray:
    """Change of basis S·M·S with S = diag(1, 1, -1, 1)."""
    return (_FLIP_Z @ np.asarray(m, dtype=np.float32) @ _FLIP_Z).astype(np.float32)


def flip_uvs(uv: np.ndarray) -> np.ndarray:
    """v' = 1 - v (top-left vs bottom-left texture origin)."""
    out = np.array(uv, dtype=np.float32, copy=True)
    out[..., 1] = 1.0 - out[..., 1]
    return out


def reverse_winding(indices: np.ndarray) -> np.ndarray:
    """Swap the 2nd and 3rd corner of each triangle after a mirror flip."""
    tris = np.asarray(indices).reshape(-1, 3)
    return tris[:, [0, 2, 1]].reshape(-1)


def to_target(v: np.ndarray, native: Handedness) -> np.ndarray:
    """Convert (..., 3) vectors from ``native`` convention to the target one."""
    return (np.asarray(v, dtype=np.float32) * _TO_TARGET[native]).astype(np.float32)


def mirrors(native: Handedness) -> bool:
    """True if converting from ``native`` is a reflection (winding must flip)."""
    return native is Handedness.GLTF
