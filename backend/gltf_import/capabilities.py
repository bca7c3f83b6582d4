"""
Optional decoder capabilities behind one narrow interface.

The pipeline only ever calls ``GeometryDecoder.decode`` and
``TextureDecoder.decode``; which adapter backs them is chosen when the
Capabilities object is built. Each adapter reports its own native
conventions so the core applies exactly one, data-driven correction.

Dependencies:
  Required: numpy, Pillow (raster images)
  Optional: DracoPy (KHR_draco_mesh_compression)
"""

import io
import logging
from dataclasses import dataclass, field

import numpy as np
from PIL import Image, UnidentifiedImageError

from gltf_import.coordinates import Handedness

logger = logging.getLogger(__name__)

# Dependency checks
try:
    import DracoPy
    _HAS_DRACOPY = True
except ImportError:
    _HAS_DRACOPY = False

KTX2_MAGIC = bytes([171, 75, 84, 88, 32, 50, 48, 187, 13, 10, 26, 10])


def is_ktx2_data(data: bytes) -> bool:
    return data[:len(KTX2_MAGIC)] == KTX2_MAGIC


# ---------------------------------------------------------------------------
# Decoded intermediate data
# ---------------------------------------------------------------------------

@dataclass
class DecodedGeometry:
    positions: np.ndarray                  # (N, 3) float32
    indices: np.ndarray                    # (M,) triangle list
    normals: np.ndarray | None = None
    tangents: np.ndarray | None = None
    uvs: list[np.ndarray] = field(default_factory=list)
    colors: np.ndarray | None = None
    joints: np.ndarray | None = None       # (N, 4)
    weights: np.ndarray | None = None      # (N, 4)


@dataclass
class DecodedImage:
    width: int
    height: int
    mode: str
    pixels: np.ndarray                     # (H, W, C) uint8
    format: str
    is_flipped: bool                       # rows stored top-first (upside-down for the target)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class GeometryDecoder:
    name: str = "base"
    native_handedness: Handedness = Handedness.GLTF
    uv_origin_converted: bool = False      # True if v is already 1 - v

    @classmethod
    def is_available(cls) -> bool:
        return False

    def decode(self, blob: bytes, joints_id: int, weights_id: int) -> DecodedGeometry:
        """Decompress ``blob``; the ids locate JOINTS_0/WEIGHTS_0, -1 when absent."""
        raise NotImplementedError


class TextureDecoder:
    name: str = "base"
    produces_flipped: bool = False

    @classmethod
    def is_available(cls) -> bool:
        return False

    def decode(self, blob: bytes) -> DecodedImage:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class PillowRasterDecoder(TextureDecoder):
    """PNG/JPEG/... via Pillow. Rows stay in file order, i.e. flipped."""
    name = "pillow"
    produces_flipped = True

    @classmethod
    def is_available(cls) -> bool:
        return True

    def decode(self, blob: bytes) -> DecodedImage:
        try:
            with Image.open(io.BytesIO(blob)) as img:
                fmt = (img.format or "raw").lower()
                if img.mode not in ("RGB", "RGBA", "L", "LA"):
                    img = img.convert("RGBA")
                pixels = np.asarray(img, dtype=np.uint8)
                mode = img.mode
        except (UnidentifiedImageError, OSError) as e:
            raise ValueError(f"Could not decode image: {e}") from e
        if pixels.ndim == 2:
            pixels = pixels[:, :, None]
        return DecodedImage(
            width=pixels.shape[1],
            height=pixels.shape[0],
            mode=mode,
            pixels=pixels,
            format=fmt,
            is_flipped=self.produces_flipped,
        )


def _unit_colors(colors) -> np.ndarray | None:
    if colors is None or not len(colors):
        return None
    colors = np.asarray(colors)
    if np.issubdtype(colors.dtype, np.integer):
        return colors.astype(np.float32) / 255.0
    return colors.astype(np.float32)


class DracoPyGeometryDecoder(GeometryDecoder):
    """KHR_draco_mesh_compression via DracoPy; output is in glTF convention."""
    name = "dracopy"
    native_handedness = Handedness.GLTF

    @classmethod
    def is_available(cls) -> bool:
        return _HAS_DRACOPY

    def _attribute(self, mesh, unique_id: int, width: int):
        if unique_id < 0:
            return None
        attr = mesh.get_attribute_by_unique_id(unique_id)
        if attr is None or attr.get("data") is None:
            return None
        return np.asarray(attr["data"]).reshape(-1, width)

    def decode(self, blob: bytes, joints_id: int, weights_id: int) -> DecodedGeometry:
        mesh = DracoPy.decode(blob)
        points = np.asarray(mesh.points, dtype=np.float32).reshape(-1, 3)
        faces = np.asarray(mesh.faces, dtype=np.uint32).reshape(-1)
        normals = getattr(mesh, "normals", None)
        tex_coord = getattr(mesh, "tex_coord", None)
        colors = getattr(mesh, "colors", None)

        uvs = []
        if tex_coord is not None and len(tex_coord):
            uvs.append(np.asarray(tex_coord, dtype=np.float32).reshape(-1, 2))

        joints = self._attribute(mesh, joints_id, 4)
        weights = self._attribute(mesh, weights_id, 4)

        return DecodedGeometry(
            positions=points,
            indices=faces,
            normals=(np.asarray(normals, dtype=np.float32).reshape(-1, 3)
                     if normals is not None and len(normals) else None),
            uvs=uvs,
            colors=_unit_colors(colors),
            joints=joints,
            weights=weights.astype(np.float32) if weights is not None else None,
        )


# ---------------------------------------------------------------------------
# Capability set
# ---------------------------------------------------------------------------

@dataclass
class Capabilities:
    geometry: GeometryDecoder | None = None      # compressed geometry
    texture: TextureDecoder | None = None        # supercompressed (KTX2) textures
    raster: TextureDecoder = field(default_factory=PillowRasterDecoder)


def default_capabilities() -> Capabilities:
    """Build the capability set from the optional packages that are installed."""
    caps = Capabilities()
    if DracoPyGeometryDecoder.is_available():
        caps.geometry = DracoPyGeometryDecoder()
        logger.info("Geometry decoder available: %s", caps.geometry.name)
    else:
        logger.info("Geometry decoder unavailable (install DracoPy for Draco meshes)")
    return caps
