"""
Material assembly — metallic-roughness or specular-glossiness parameters
plus texture slots bound to already-decoded textures.
"""

import logging
from dataclasses import dataclass, field

from gltf_import.cache import ResourceKind
from gltf_import.extensions import PbrSpecularGlossiness, get_payload

logger = logging.getLogger(__name__)

METALLIC_ROUGHNESS = "metallic_roughness"
SPECULAR_GLOSSINESS = "specular_glossiness"

# Declared defaults, consulted whenever the document omits a factor.
MATERIAL_DEFAULTS = {
    "base_color_factor": (1.0, 1.0, 1.0, 1.0),
    "metallic_factor": 1.0,
    "roughness_factor": 1.0,
    "emissive_factor": (0.0, 0.0, 0.0),
    "diffuse_factor": (1.0, 1.0, 1.0, 1.0),
    "specular_factor": (1.0, 1.0, 1.0),
    "glossiness_factor": 1.0,
    "alpha_cutoff": 0.5,
    "normal_scale": 1.0,
    "occlusion_strength": 1.0,
}

FLIPPED_TEXTURE_SCALE = (1.0, -1.0)


@dataclass
class TextureSlot:
    texture: object               # TextureData
    tex_coord: int = 0
    scale: tuple = (1.0, 1.0)     # UV scale; (1, -1) compensates flipped textures
    strength: float = 1.0         # normal scale / occlusion strength


@dataclass
class MaterialData:
    index: int | None
    name: str
    shading_model: str = METALLIC_ROUGHNESS
    alpha_mode: str = "OPAQUE"
    alpha_cutoff: float | None = None
    double_sided: bool = False
    factors: dict = field(default_factory=dict)
    slots: dict[str, TextureSlot] = field(default_factory=dict)


def _factor(value, key: str):
    if value is None:
        value = MATERIAL_DEFAULTS[key]
    return tuple(value) if isinstance(value, (list, tuple)) else float(value)


def _slot(ctx, info, owner: str, strength_key: str | None = None) -> TextureSlot | None:
    if info is None:
        return None
    ctx.document.get("textures", info.index, owner)
    texture = ctx.cache.get(ResourceKind.TEXTURE, info.index)
    if texture.image is None:
        return None
    strength = 1.0
    if strength_key == "normal_scale":
        strength = _factor(info.scale, strength_key)
    elif strength_key == "occlusion_strength":
        strength = _factor(info.strength, strength_key)
    return TextureSlot(
        texture=texture,
        tex_coord=info.tex_coord,
        scale=FLIPPED_TEXTURE_SCALE if texture.is_flipped else (1.0, 1.0),
        strength=strength,
    )


def build_material(ctx, material_index: int) -> MaterialData:
    """Assemble one material. Every referenced texture is already cached."""
    material = ctx.document.materials[material_index]
    owner = f"materials[{material_index}]"
    result = MaterialData(
        index=material_index,
        name=ctx.names.assign("material", material.name, material_index),
        alpha_mode=material.alpha_mode,
        double_sided=material.double_sided,
    )
    if material.alpha_mode == "MASK":
        result.alpha_cutoff = _factor(material.alpha_cutoff, "alpha_cutoff")

    slots = {}
    sg = get_payload(material, PbrSpecularGlossiness)
    if sg is not None:
        result.shading_model = SPECULAR_GLOSSINESS
        result.factors.update(
            diffuse_factor=_factor(sg.diffuse_factor, "diffuse_factor"),
            specular_factor=_factor(sg.specular_factor, "specular_factor"),
            glossiness_factor=_factor(sg.glossiness_factor, "glossiness_factor"),
        )
        slots["diffuse"] = _slot(ctx, sg.diffuse_texture, owner)
        slots["specular_glossiness"] = _slot(ctx, sg.specular_glossiness_texture, owner)
    else:
        pbr = material.pbr_metallic_roughness
        if pbr is None:
            result.factors.update(
                base_color_factor=MATERIAL_DEFAULTS["base_color_factor"],
                metallic_factor=MATERIAL_DEFAULTS["metallic_factor"],
                roughness_factor=MATERIAL_DEFAULTS["roughness_factor"],
            )
        else:
            result.factors.update(
                base_color_factor=_factor(pbr.base_color_factor, "base_color_factor"),
                metallic_factor=_factor(pbr.metallic_factor, "metallic_factor"),
                roughness_factor=_factor(pbr.roughness_factor, "roughness_factor"),
            )
            slots["base_color"] = _slot(ctx, pbr.base_color_texture, owner)
            slots["metallic_roughness"] = _slot(ctx, pbr.metallic_roughness_texture, owner)

    result.factors["emissive_factor"] = _factor(material.emissive_factor, "emissive_factor")
    slots["normal"] = _slot(ctx, material.normal_texture, owner, "normal_scale")
    slots["occlusion"] = _slot(ctx, material.occlusion_texture, owner, "occlusion_strength")
    slots["emissive"] = _slot(ctx, material.emissive_texture, owner)

    result.slots = {name: slot for name, slot in slots.items() if slot is not None}
    return result


def default_material() -> MaterialData:
    """Material for primitives that reference none."""
    return MaterialData(
        index=None,
        name="default",
        factors={
            "base_color_factor": MATERIAL_DEFAULTS["base_color_factor"],
            "metallic_factor": MATERIAL_DEFAULTS["metallic_factor"],
            "roughness_factor": MATERIAL_DEFAULTS["roughness_factor"],
            "emissive_factor": MATERIAL_DEFAULTS["emissive_factor"],
        },
    )
