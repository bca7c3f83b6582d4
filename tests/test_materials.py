import pytest

from gltf_import.capabilities import Capabilities
from gltf_import.materials import (
    METALLIC_ROUGHNESS, SPECULAR_GLOSSINESS, build_material, default_material,
)

from conftest import KTX2_BYTES, FakeKtx2Decoder, png_bytes


def _import_materials(builder, run_import, **kwargs):
    builder.simple_scene()
    return run_import(builder.to_glb(), **kwargs).materials


def test_metallic_roughness_with_defaults(builder, run_import):
    builder.add_material(name="plain")
    (material,) = _import_materials(builder, run_import)
    assert material.name == "plain"
    assert material.shading_model == METALLIC_ROUGHNESS
    assert material.factors["base_color_factor"] == (1.0, 1.0, 1.0, 1.0)
    assert material.factors["metallic_factor"] == 1.0
    assert material.factors["emissive_factor"] == (0.0, 0.0, 0.0)
    assert material.alpha_mode == "OPAQUE"
    assert material.alpha_cutoff is None
    assert material.slots == {}


def test_declared_factors_are_kept(builder, run_import):
    builder.add_material(pbrMetallicRoughness={
        "baseColorFactor": [0.5, 0.25, 1.0, 0.5], "metallicFactor": 0.0,
        "roughnessFactor": 0.3}, emissiveFactor=[1, 1, 0], doubleSided=True)
    (material,) = _import_materials(builder, run_import)
    assert material.factors["base_color_factor"] == (0.5, 0.25, 1.0, 0.5)
    assert material.factors["metallic_factor"] == 0.0
    assert material.factors["roughness_factor"] == pytest.approx(0.3)
    assert material.factors["emissive_factor"] == (1, 1, 0)
    assert material.double_sided


@pytest.mark.parametrize("fields, cutoff", [
    ({"alphaMode": "MASK"}, 0.5),
    ({"alphaMode": "MASK", "alphaCutoff": 0.8}, 0.8),
    ({"alphaMode": "BLEND", "alphaCutoff": 0.8}, None),
])
def test_alpha_cutoff_only_for_mask(builder, run_import, fields, cutoff):
    builder.add_material(**fields)
    (material,) = _import_materials(builder, run_import)
    assert material.alpha_mode == fields["alphaMode"]
    assert material.alpha_cutoff == cutoff


def test_specular_glossiness_takes_precedence(builder, run_import):
    texture = builder.add_texture(builder.add_image(png_bytes()))
    builder.add_material(
        pbrMetallicRoughness={"metallicFactor": 0.1},
        extensions={"KHR_materials_pbrSpecularGlossiness": {
            "diffuseTexture": {"index": texture}, "glossinessFactor": 0.4}},
    )
    (material,) = _import_materials(builder, run_import)
    assert material.shading_model == SPECULAR_GLOSSINESS
    assert "metallic_factor" not in material.factors
    assert material.factors["glossiness_factor"] == pytest.approx(0.4)
    assert material.factors["specular_factor"] == (1.0, 1.0, 1.0)
    assert set(material.slots) == {"diffuse"}


def test_flipped_textures_get_negative_v_scale(builder, run_import):
    texture = builder.add_texture(builder.add_image(png_bytes()))
    builder.add_material(
        pbrMetallicRoughness={"baseColorTexture": {"index": texture, "texCoord": 1}},
        normalTexture={"index": texture, "scale": 0.5},
        occlusionTexture={"index": texture},
    )
    (material,) = _import_materials(builder, run_import)
    base = material.slots["base_color"]
    assert base.scale == (1.0, -1.0)
    assert base.tex_coord == 1
    assert material.slots["normal"].strength == 0.5
    assert material.slots["occlusion"].strength == 1.0


def test_unflipped_textures_keep_unit_scale(builder, run_import):
    texture = builder.add_texture(builder.add_image(KTX2_BYTES))
    builder.add_material(pbrMetallicRoughness={"baseColorTexture": {"index": texture}})
    (material,) = _import_materials(
        builder, run_import, capabilities=Capabilities(texture=FakeKtx2Decoder()))
    assert material.slots["base_color"].scale == (1.0, 1.0)


def test_empty_texture_slot_is_omitted(builder, run_import):
    texture = builder.add_texture(builder.add_image(b"garbage"))
    builder.add_material(emissiveTexture={"index": texture})
    (material,) = _import_materials(builder, run_import)
    assert "emissive" not in material.slots


def test_unnamed_materials_get_unique_legal_names(builder, make_context):
    builder.add_material(name="metal.shiny")
    builder.add_material(name="metal_shiny")
    builder.add_material()
    ctx = make_context(builder.to_glb())
    names = [build_material(ctx, i).name for i in range(3)]
    assert names == ["metal_shiny", "metal_shiny_1", "material_2"]


def test_default_material():
    material = default_material()
    assert material.index is None
    assert material.shading_model == METALLIC_ROUGHNESS
    assert material.factors["base_color_factor"] == (1.0, 1.0, 1.0, 1.0)
