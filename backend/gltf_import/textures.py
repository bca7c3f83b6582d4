"""
Texture decoding: image bytes → DecodedImage, texture → image + sampler.

Decoded images are cached by image index and textures by texture index, so
two textures sharing pixels but not samplers stay independent resources.
"""

import logging
from dataclasses import dataclass, field

from gltf_import.cache import ResourceKind
from gltf_import.capabilities import DecodedImage, is_ktx2_data
from gltf_import.errors import ImportIOError, MissingOptionalCapability
from gltf_import.extensions import TextureBasisu, get_payload
from gltf_import.scheduler import StepGenerator

logger = logging.getLogger(__name__)

FILTER_NEAREST = 9728
WRAP_CLAMP_TO_EDGE = 33071
WRAP_MIRRORED_REPEAT = 33648


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class SamplerSettings:
    filter_mode: str = "bilinear"
    wrap_u: str = "repeat"
    wrap_v: str = "repeat"


@dataclass
class ImageData:
    index: int
    decoded: DecodedImage
    source: str   # buffer_view | data_uri | archive | external


@dataclass
class TextureData:
    index: int
    name: str
    image: ImageData | None = None
    sampler: SamplerSettings = field(default_factory=SamplerSettings)

    @property
    def is_flipped(self) -> bool:
        return self.image is not None and self.image.decoded.is_flipped


# ---------------------------------------------------------------------------
# Sampler / source selection
# ---------------------------------------------------------------------------

def _wrap_mode(wrap: int) -> str:
    if wrap == WRAP_CLAMP_TO_EDGE:
        return "clamp"
    if wrap == WRAP_MIRRORED_REPEAT:
        return "mirror"
    return "repeat"


def sampler_settings(sampler) -> SamplerSettings:
    if sampler is None:
        return SamplerSettings()
    return SamplerSettings(
        filter_mode="point" if sampler.min_filter == FILTER_NEAREST else "bilinear",
        wrap_u=_wrap_mode(sampler.wrap_s),
        wrap_v=_wrap_mode(sampler.wrap_t),
    )


def select_image_index(ctx, texture_index: int) -> int | None:
    """Image to decode for a texture, honouring the compressed-texture override."""
    texture = ctx.document.textures[texture_index]
    basisu = get_payload(texture, TextureBasisu)
    if basisu is not None:
        if ctx.capabilities.texture is not None:
            return basisu.source
        if texture.source is not None:
            ctx.warn(logger, "Texture %d: no KTX2 decoder installed, "
                     "falling back to image %d", texture_index, texture.source)
        else:
            ctx.warn(logger, "Texture %d: no KTX2 decoder installed and "
                     "no fallback image, slot left empty", texture_index)
    return texture.source


# ---------------------------------------------------------------------------
# Image decoding
# ---------------------------------------------------------------------------

def _image_bytes_steps(ctx, image_index: int) -> StepGenerator:
    """Fixed resolution order: buffer view, data URI, archive entry, external."""
    owner = f"images[{image_index}]"
    image = ctx.document.get("images", image_index, owner)
    if image.buffer_view is not None:
        return ctx.reader.buffer_view_bytes(image.buffer_view, owner), "buffer_view"
    if not image.uri:
        raise ImportIOError(f"{owner}: image has neither bufferView nor uri")

    resolver = ctx.resolver
    data = resolver.inline(image.uri)
    if data is not None:
        return data, "data_uri"
    entry = resolver.archive_entry(image.uri)
    if entry is not None:
        return resolver.archive.read(entry), "archive"
    location = resolver.external(image.uri)
    data = yield from ctx.run_external(resolver.byte_source.read, location)
    return data, "external"


def decode_image_bytes(capabilities, data: bytes) -> DecodedImage:
    if is_ktx2_data(data):
        if capabilities.texture is None:
            raise MissingOptionalCapability("KTX2 texture found but no KTX2 decoder is installed")
        return capabilities.texture.decode(data)
    return capabilities.raster.decode(data)


def decode_image_steps(ctx, image_index: int) -> StepGenerator:
    data, source = yield from _image_bytes_steps(ctx, image_index)
    try:
        decoded = yield from ctx.run_external(decode_image_bytes, ctx.capabilities, data)
    except MissingOptionalCapability as e:
        ctx.warn(logger, "Image %d: %s", image_index, e)
        return None
    except ValueError as e:
        ctx.warn(logger, "Image %d: %s", image_index, e)
        return None
    logger.debug("Image %d decoded from %s: %dx%d %s",
                 image_index, source, decoded.width, decoded.height, decoded.format)
    return ImageData(index=image_index, decoded=decoded, source=source)


# ---------------------------------------------------------------------------
# Texture sub-task
# ---------------------------------------------------------------------------

def load_texture_steps(ctx, texture_index: int) -> StepGenerator:
    """One interleavable sub-pipeline: resolve image, decode (cached), pair with sampler."""
    texture = ctx.document.textures[texture_index]
    owner = f"textures[{texture_index}]"
    sampler = None
    if texture.sampler is not None:
        sampler = ctx.document.get("samplers", texture.sampler, owner)

    image = None
    image_index = select_image_index(ctx, texture_index)
    if image_index is not None:
        ctx.document.get("images", image_index, owner)
        image = yield from ctx.cache.get_or_decode_steps(
            ResourceKind.IMAGE, image_index,
            lambda: decode_image_steps(ctx, image_index))

    name = texture.name
    if not name and image_index is not None:
        name = ctx.document.images[image_index].name
    return TextureData(
        index=texture_index,
        name=ctx.names.assign("texture", name, texture_index),
        image=image,
        sampler=sampler_settings(sampler),
    )
