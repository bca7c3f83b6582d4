import numpy as np
import pytest

from gltf_import.capabilities import Capabilities
from gltf_import.errors import ParseError, ReferenceOutOfRange
from gltf_import.importer import GltfImporter
from gltf_import.scene import (
    SceneObject, compose_trs, decompose_matrix, matrix_to_quaternion, quaternion_to_matrix,
)
from gltf_import.scheduler import StepKind


def test_multi_primitive_node_expands_to_siblings(builder, run_import):
    red = builder.add_material(name="red")
    blue = builder.add_material(name="blue")
    mesh = builder.add_mesh([builder.triangle_primitive(material=red),
                             builder.triangle_primitive(material=blue, offset=1.0)],
                            name="body")
    builder.add_node(name="robot", children=[1])
    builder.add_node(name="torso", mesh=mesh, translation=[1, 2, 3],
                     rotation=[0, 0.6, 0, 0.8], scale=[2, 2, 2])
    builder.add_scene([0])

    result = run_import(builder.to_glb())

    robot = result.scene.find("robot")
    assert [c.name for c in robot.children] == ["torso", "torso_1"]
    first, second = robot.children
    assert first.parent is second.parent is robot
    for attr in ("translation", "rotation", "scale"):
        np.testing.assert_array_equal(getattr(first, attr), getattr(second, attr))
    assert first.material.name == "red"
    assert second.material.name == "blue"
    assert first.mesh.name == "body_0"
    assert second.mesh.name == "body_1"
    assert first.node_index == second.node_index == 1


def test_node_transform_is_converted(builder, run_import):
    builder.simple_scene(name="n", translation=[1, 2, 3], rotation=[0.1, 0.2, 0.3, 0.927])
    obj = run_import(builder.to_glb()).scene.find("n")
    np.testing.assert_allclose(obj.translation, [1, 2, -3])
    np.testing.assert_allclose(obj.rotation, [0.1, 0.2, -0.3, -0.927], rtol=1e-6)
    np.testing.assert_allclose(obj.scale, [1, 1, 1])


def test_node_matrix_is_decomposed(builder, run_import):
    m = compose_trs([1, 2, 3], [0, 0.6, 0, 0.8], [2, 3, 4])
    builder.simple_scene(name="n", matrix=m.T.reshape(16).tolist())
    obj = run_import(builder.to_glb()).scene.find("n")
    np.testing.assert_allclose(obj.translation, [1, 2, -3], atol=1e-5)
    np.testing.assert_allclose(obj.scale, [2, 3, 4], atol=1e-5)
    rotation = obj.rotation if obj.rotation[3] >= 0 else -obj.rotation
    np.testing.assert_allclose(rotation, [0, -0.6, 0, 0.8], atol=1e-5)


def test_names_and_root(builder, run_import):
    mesh = builder.add_mesh([builder.triangle_primitive()])
    builder.add_node(name="a/b.c", mesh=mesh)
    builder.add_node(mesh=mesh)
    builder.add_scene([0, 1])
    result = run_import(builder.to_glb(), uri="assets/My Robot.glb")
    assert result.scene.name == "My Robot"
    assert [c.name for c in result.scene.children] == ["a_b_c", "GLTFNode_1"]


def test_sibling_names_are_unique(builder, run_import):
    mesh = builder.add_mesh([builder.triangle_primitive(),
                             builder.triangle_primitive(offset=1.0)])
    builder.add_node(name="part")                     # 0
    builder.add_node(name="part")                     # 1
    builder.add_node(name="X", mesh=mesh)             # 2
    builder.add_node(name="X_1")                      # 3
    builder.add_node(name="part", children=[])        # 4, under 3
    builder.root["nodes"][3]["children"] = [4]
    builder.add_scene([0, 1, 2, 3])

    result = run_import(builder.to_glb())

    names = [c.name for c in result.scene.children]
    assert names == ["part", "part_1", "X", "X_1", "X_1_1"]
    assert result.scene.find("X_1").node_index == 2
    assert result.scene.find("X_1_1/part").node_index == 4


def test_shared_mesh_is_reused_across_nodes(builder, run_import):
    mesh = builder.add_mesh([builder.triangle_primitive()])
    builder.add_node(mesh=mesh)
    builder.add_node(mesh=mesh)
    builder.add_scene([0, 1])
    result = run_import(builder.to_glb())
    first, second = result.scene.children
    assert first.mesh is second.mesh


def test_scene_is_hidden_until_import_finishes(builder, options):
    builder.simple_scene()
    importer = GltfImporter(data=builder.to_glb(), options=options, capabilities=Capabilities())
    task = importer.task()
    seen_inactive = False
    while True:
        step = task.resume()
        if importer.cache.scene is not None and step.kind is not StepKind.DONE:
            seen_inactive = seen_inactive or not importer.cache.scene.active
        if step.finished:
            break
    assert seen_inactive
    assert step.result.scene.active


def test_show_model_can_be_disabled(builder, run_import, options):
    builder.simple_scene()
    options.show_model_after_import = False
    assert not run_import(builder.to_glb()).scene.active


@pytest.mark.parametrize("node_fields", [{"children": [7]}, {"mesh": 4}, {"skin": 2}])
def test_out_of_range_references_are_fatal(builder, run_import, node_fields):
    builder.add_node(**node_fields)
    builder.add_scene([0])
    with pytest.raises(ReferenceOutOfRange):
        run_import(builder.to_glb())


def test_missing_scene_is_fatal(builder, run_import):
    builder.add_node()
    with pytest.raises(ParseError, match="no scene"):
        run_import(builder.to_glb())


def test_empty_scene_is_fatal(builder, run_import):
    builder.add_scene([])
    with pytest.raises(ParseError):
        run_import(builder.to_glb())


def test_node_reachable_twice_is_fatal(builder, run_import):
    builder.add_node(children=[1])
    builder.add_node()
    builder.add_scene([0, 1])
    with pytest.raises(ParseError, match="more than once"):
        run_import(builder.to_glb())


def test_auto_scale_fits_largest_extent(builder, run_import, options):
    builder.simple_scene(scale=[10, 10, 10])
    options.auto_scale = True
    options.auto_scale_size = 2.0
    root = run_import(builder.to_glb()).scene
    np.testing.assert_allclose(root.scale, [0.2, 0.2, 0.2], rtol=1e-6)


# ---------------------------------------------------------------------------
# SceneObject / transform math
# ---------------------------------------------------------------------------

def test_path_to_and_find():
    root = SceneObject("root")
    arm = root.add_child(SceneObject("arm"))
    hand = arm.add_child(SceneObject("hand"))
    assert root.path_to(hand) == "arm/hand"
    assert root.find("arm/hand") is hand
    assert root.find("arm/foot") is None
    with pytest.raises(ValueError):
        hand.path_to(root)


def test_world_matrix_composes_parents():
    root = SceneObject("root")
    root.translation = np.array([1, 0, 0], dtype=np.float32)
    child = root.add_child(SceneObject("child"))
    child.translation = np.array([0, 2, 0], dtype=np.float32)
    np.testing.assert_allclose(child.world_matrix()[:3, 3], [1, 2, 0])


@pytest.mark.parametrize("q", [
    [0, 0, 0, 1], [0, 0.6, 0, 0.8], [0.5, 0.5, 0.5, 0.5], [1, 0, 0, 0], [0, 0, 1, 0],
])
def test_quaternion_matrix_round_trip(q):
    back = matrix_to_quaternion(quaternion_to_matrix(q))
    if np.dot(back, q) < 0:
        back = -back
    np.testing.assert_allclose(back, q, atol=1e-6)


def test_decompose_negative_scale():
    m = compose_trs([0, 0, 0], [0, 0, 0, 1], [-1, 1, 1])
    t, r, s = decompose_matrix(m)
    np.testing.assert_allclose(compose_trs(t, r, s), m, atol=1e-6)
