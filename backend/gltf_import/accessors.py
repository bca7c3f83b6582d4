"""
Typed, strided accessor windows into cached buffers.

Accessors and buffer views are not cached; they are re-read on demand by the
geometry, skinning and animation decoders.
"""

import logging
from typing import Callable

import numpy as np

from gltf_import.errors import ReferenceOutOfRange

logger = logging.getLogger(__name__)

COMPONENT_DTYPES = {
    5120: np.dtype("<i1"),
    5121: np.dtype("<u1"),
    5122: np.dtype("<i2"),
    5123: np.dtype("<u2"),
    5125: np.dtype("<u4"),
    5126: np.dtype("<f4"),
}

TYPE_COMPONENTS = {
    "SCALAR": 1, "VEC2": 2, "VEC3": 3, "VEC4": 4,
    "MAT2": 4, "MAT3": 9, "MAT4": 16,
}

# divisor and lower clamp for normalized integer components
_NORMALIZE = {
    5120: (127.0, -1.0),
    5121: (255.0, 0.0),
    5122: (32767.0, -1.0),
    5123: (65535.0, 0.0),
    5125: (4294967295.0, 0.0),
}


class AccessorReader:
    """Reads accessors of ``document`` from buffers published in the cache."""

    def __init__(self, document, buffer_bytes: Callable[[int], bytes]):
        self.document = document
        self._buffer_bytes = buffer_bytes

    def buffer_view_bytes(self, view_index: int, owner: str | None = None) -> bytes:
        view = self.document.get("buffer_views", view_index, owner)
        data = self._buffer_view_region(view_index, view, owner)
        return bytes(data)

    def _buffer_view_region(self, view_index, view, owner) -> memoryview:
        self.document.get("buffers", view.buffer, f"bufferViews[{view_index}]")
        buf = self._buffer_bytes(view.buffer)
        end = view.byte_offset + view.byte_length
        if view.byte_offset < 0 or end > len(buf):
            raise ReferenceOutOfRange(
                "buffer_views", view_index, owner,
                f"byte range [{view.byte_offset}, {end}) exceeds buffer "
                f"{view.buffer} of length {len(buf)}")
        return memoryview(buf)[view.byte_offset:end]

    def count(self, accessor_index: int, owner: str | None = None) -> int:
        return self.document.get("accessors", accessor_index, owner).count

    def _strided(self, region: memoryview, offset: int, count: int,
                 stride: int, dtype: np.dtype, n: int, index: int) -> np.ndarray:
        elem_size = dtype.itemsize * n
        stride = stride or elem_size
        if count == 0:
            return np.zeros((0, n), dtype=dtype)
        needed = offset + stride * (count - 1) + elem_size
        if offset < 0 or needed > len(region):
            raise ReferenceOutOfRange(
                "accessors", index, None,
                f"needs {needed} bytes, buffer view has {len(region)}")
        raw = np.frombuffer(region, dtype=np.uint8)
        if stride == elem_size:
            chunk = raw[offset:offset + elem_size * count]
            return chunk.view(dtype).reshape(count, n).copy()
        rows = np.lib.stride_tricks.as_strided(
            raw[offset:], shape=(count, elem_size), strides=(stride, 1))
        return rows.copy().view(dtype).reshape(count, n)

    def read(self, accessor_index: int, owner: str | None = None,
             normalize: bool = True) -> np.ndarray:
        """Return accessor data as a (count, components) array.

        Normalized integer accessors come back as float32 in [0, 1] / [-1, 1]
        unless ``normalize`` is False.
        """
        acc = self.document.get("accessors", accessor_index, owner)
        label = f"accessors[{accessor_index}]"
        dtype = COMPONENT_DTYPES.get(acc.component_type)
        n = TYPE_COMPONENTS.get(acc.type)
        if dtype is None or n is None:
            raise ReferenceOutOfRange(
                "accessors", accessor_index, owner,
                f"unsupported componentType/type {acc.component_type}/{acc.type}")

        if acc.buffer_view is None:
            data = np.zeros((acc.count, n), dtype=dtype)
        else:
            view = self.document.get("buffer_views", acc.buffer_view, label)
            region = self._buffer_view_region(acc.buffer_view, view, label)
            data = self._strided(region, acc.byte_offset, acc.count,
                                 view.byte_stride, dtype, n, accessor_index)

        if acc.sparse is not None and acc.sparse.count > 0:
            data = self._apply_sparse(acc, accessor_index, data, dtype, n)

        if normalize and acc.normalized and acc.component_type in _NORMALIZE:
            divisor, low = _NORMALIZE[acc.component_type]
            data = np.maximum(data.astype(np.float32) / divisor, low)
        return data

    def _apply_sparse(self, acc, accessor_index, data, dtype, n) -> np.ndarray:
        sparse = acc.sparse
        label = f"accessors[{accessor_index}]"
        index_dtype = COMPONENT_DTYPES.get(sparse.indices_component_type)
        if index_dtype is None:
            raise ReferenceOutOfRange(
                "accessors", accessor_index, None,
                f"bad sparse index type {sparse.indices_component_type}")
        ind_view = self.document.get("buffer_views", sparse.indices_buffer_view, label)
        val_view = self.document.get("buffer_views", sparse.values_buffer_view, label)
        indices = self._strided(
            self._buffer_view_region(sparse.indices_buffer_view, ind_view, label),
            sparse.indices_byte_offset, sparse.count, 0, index_dtype, 1, accessor_index)[:, 0]
        values = self._strided(
            self._buffer_view_region(sparse.values_buffer_view, val_view, label),
            sparse.values_byte_offset, sparse.count, 0, dtype, n, accessor_index)
        if indices.size and int(indices.max()) >= acc.count:
            raise ReferenceOutOfRange(
                "accessors", accessor_index, None, "sparse index exceeds accessor count")
        data = data.copy()
        data[indices.astype(np.int64)] = values
        return data

    def read_matrices(self, accessor_index: int, owner: str | None = None) -> np.ndarray:
        """MAT4 accessor → (count, 4, 4) row-major matrices (glTF stores columns)."""
        flat = self.read(accessor_index, owner).astype(np.float32)
        return flat.reshape(-1, 4, 4).transpose(0, 2, 1).copy()

    def read_scalars(self, accessor_index: int, owner: str | None = None) -> np.ndarray:
        return self.read(accessor_index, owner).astype(np.float32).reshape(-1)
