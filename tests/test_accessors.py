import numpy as np
import pytest

from gltf_import.errors import ReferenceOutOfRange


def test_reads_typed_accessor(builder, make_context):
    values = np.arange(12, dtype=np.float32).reshape(4, 3)
    index = builder.add_accessor(values)
    ctx = make_context(builder.to_glb())
    np.testing.assert_array_equal(ctx.reader.read(index), values)
    assert ctx.reader.count(index) == 4


def test_reads_interleaved_strided_view(builder, make_context):
    # position (3 floats) + uv (2 floats) per vertex, 20-byte stride
    interleaved = np.array([[0, 1, 2, 10, 11], [3, 4, 5, 12, 13]], dtype=np.float32)
    view = builder.add_view(interleaved.tobytes(), byte_stride=20)
    builder.root.setdefault("accessors", []).extend([
        {"bufferView": view, "componentType": 5126, "count": 2, "type": "VEC3"},
        {"bufferView": view, "byteOffset": 12, "componentType": 5126, "count": 2, "type": "VEC2"},
    ])
    ctx = make_context(builder.to_glb())
    np.testing.assert_array_equal(ctx.reader.read(0), interleaved[:, :3])
    np.testing.assert_array_equal(ctx.reader.read(1), interleaved[:, 3:])


def test_normalized_integers(builder, make_context):
    index = builder.add_accessor(np.array([[0, 255, 51, 255]], dtype=np.uint8), normalized=True)
    signed = builder.add_accessor(np.array([[-128, 127]], dtype=np.int8), normalized=True)
    ctx = make_context(builder.to_glb())
    np.testing.assert_allclose(ctx.reader.read(index), [[0.0, 1.0, 0.2, 1.0]])
    np.testing.assert_allclose(ctx.reader.read(signed), [[-1.0, 1.0]])
    assert ctx.reader.read(index, normalize=False).dtype == np.uint8


def test_sparse_accessor_overrides_values(builder, make_context):
    base = builder.add_accessor(np.zeros((4, 3), dtype=np.float32))
    indices = builder.add_view(np.array([1, 3], dtype=np.uint16).tobytes())
    values = builder.add_view(np.array([[1, 1, 1], [2, 2, 2]], dtype=np.float32).tobytes())
    builder.root["accessors"][base]["sparse"] = {
        "count": 2,
        "indices": {"bufferView": indices, "componentType": 5123},
        "values": {"bufferView": values},
    }
    ctx = make_context(builder.to_glb())
    result = ctx.reader.read(base)
    np.testing.assert_array_equal(result[:, 0], [0, 1, 0, 2])


def test_sparse_without_buffer_view_starts_from_zeros(builder, make_context):
    indices = builder.add_view(np.array([2], dtype=np.uint8).tobytes())
    values = builder.add_view(np.array([5.0], dtype=np.float32).tobytes())
    builder.root.setdefault("accessors", []).append({
        "componentType": 5126, "count": 3, "type": "SCALAR",
        "sparse": {"count": 1, "indices": {"bufferView": indices, "componentType": 5121},
                   "values": {"bufferView": values}},
    })
    ctx = make_context(builder.to_glb())
    np.testing.assert_array_equal(ctx.reader.read_scalars(0), [0, 0, 5])


def test_matrices_are_transposed_to_row_major(builder, make_context):
    m = np.eye(4, dtype=np.float32)
    m[:3, 3] = (1, 2, 3)                       # translation in row-major
    index = builder.add_accessor(m.T.reshape(1, 16), type_="MAT4")
    ctx = make_context(builder.to_glb())
    np.testing.assert_array_equal(ctx.reader.read_matrices(index)[0], m)


def test_view_outside_buffer_is_fatal(builder, make_context):
    index = builder.add_accessor(np.zeros((2, 3), dtype=np.float32))
    builder.root["bufferViews"][0]["byteLength"] = 4096
    ctx = make_context(builder.to_glb())
    with pytest.raises(ReferenceOutOfRange) as info:
        ctx.reader.read(index, "meshes[0]")
    assert info.value.kind == "buffer_views"


def test_missing_accessor_is_fatal(builder, make_context):
    builder.add_accessor(np.zeros(3, dtype=np.float32))
    ctx = make_context(builder.to_glb())
    with pytest.raises(ReferenceOutOfRange):
        ctx.reader.read(9)
