"""
Maps glTF extension names to structural decoders.

Decoding is syntax only: a payload records indices and factors, it never
resolves or decompresses resources. Whether the pipeline can *execute* an
extension (e.g. has a Draco decompressor) is a separate question answered
by ``is_executable`` against the active Capabilities.
"""

import logging
from dataclasses import dataclass, field
from typing import ClassVar

from gltf_import.document import TextureInfo, parse_texture_info
from gltf_import.errors import RequiredExtensionUnsupported

logger = logging.getLogger(__name__)

DRACO_MESH_COMPRESSION = "KHR_draco_mesh_compression"
TEXTURE_BASISU = "KHR_texture_basisu"
PBR_SPECULAR_GLOSSINESS = "KHR_materials_pbrSpecularGlossiness"


# ---------------------------------------------------------------------------
# Payloads (tagged by extension name)
# ---------------------------------------------------------------------------

@dataclass
class ExtensionPayload:
    name: ClassVar[str] = ""


@dataclass
class DracoMeshCompression(ExtensionPayload):
    name: ClassVar[str] = DRACO_MESH_COMPRESSION
    buffer_view: int
    attributes: dict[str, int] = field(default_factory=dict)

    @property
    def joints_id(self) -> int:
        return self.attributes.get("JOINTS_0", -1)

    @property
    def weights_id(self) -> int:
        return self.attributes.get("WEIGHTS_0", -1)


@dataclass
class TextureBasisu(ExtensionPayload):
    name: ClassVar[str] = TEXTURE_BASISU
    source: int


@dataclass
class PbrSpecularGlossiness(ExtensionPayload):
    name: ClassVar[str] = PBR_SPECULAR_GLOSSINESS
    diffuse_factor: list | None = None
    diffuse_texture: TextureInfo | None = None
    specular_factor: list | None = None
    glossiness_factor: float | None = None
    specular_glossiness_texture: TextureInfo | None = None


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

class BaseExtension:
    name: str = "base"
    payload_type: type[ExtensionPayload] = ExtensionPayload

    @classmethod
    def decode(cls, root: dict, raw: dict) -> ExtensionPayload | None:
        raise NotImplementedError

    @classmethod
    def is_executable(cls, capabilities) -> bool:
        """True if the pipeline can act on this extension, not just parse it."""
        return True


class DracoMeshCompressionExtension(BaseExtension):
    name = DRACO_MESH_COMPRESSION
    payload_type = DracoMeshCompression

    @classmethod
    def decode(cls, root, raw):
        buffer_view = raw.get("bufferView")
        attributes = raw.get("attributes")
        if buffer_view is None or not isinstance(attributes, dict):
            return None
        return DracoMeshCompression(
            buffer_view=int(buffer_view),
            attributes={k: int(v) for k, v in attributes.items()},
        )

    @classmethod
    def is_executable(cls, capabilities) -> bool:
        return capabilities is not None and capabilities.geometry is not None


class TextureBasisuExtension(BaseExtension):
    name = TEXTURE_BASISU
    payload_type = TextureBasisu

    @classmethod
    def decode(cls, root, raw):
        source = raw.get("source")
        if source is None:
            return None
        return TextureBasisu(source=int(source))

    # A missing KTX2 decoder falls back to the plain image source, so the
    # extension always counts as executable.


class PbrSpecularGlossinessExtension(BaseExtension):
    name = PBR_SPECULAR_GLOSSINESS
    payload_type = PbrSpecularGlossiness

    @classmethod
    def decode(cls, root, raw):
        return PbrSpecularGlossiness(
            diffuse_factor=raw.get("diffuseFactor"),
            diffuse_texture=parse_texture_info(raw.get("diffuseTexture")),
            specular_factor=raw.get("specularFactor"),
            glossiness_factor=raw.get("glossinessFactor"),
            specular_glossiness_texture=parse_texture_info(
                raw.get("specularGlossinessTexture")),
        )


_EXTENSIONS: list[type[BaseExtension]] = [
    DracoMeshCompressionExtension,
    TextureBasisuExtension,
    PbrSpecularGlossinessExtension,
]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ExtensionRegistry:
    def __init__(self):
        self._decoders: dict[str, type[BaseExtension]] = {}

    def register(self, extension: type[BaseExtension]) -> None:
        self._decoders[extension.name] = extension
        logger.debug("Extension registered: %s", extension.name)

    def knows(self, name: str) -> bool:
        return name in self._decoders

    def get(self, name: str) -> type[BaseExtension] | None:
        return self._decoders.get(name)

    def decode(self, root: dict, name: str, raw) -> ExtensionPayload | None:
        ext = self._decoders.get(name)
        if ext is None or not isinstance(raw, dict):
            return None
        return ext.decode(root, raw)

    def decode_all(self, root: dict, extensions) -> dict[str, ExtensionPayload]:
        """Decode an entity's ``extensions`` object, dropping unknown names."""
        result = {}
        if not extensions:
            return result
        for name, raw in extensions.items():
            payload = self.decode(root, name, raw)
            if payload is not None:
                result[name] = payload
        return result

    def unexecutable_required(self, document, capabilities) -> list[str]:
        missing = list(document.unsupported_required)
        for name in document.extensions_required:
            ext = self._decoders.get(name)
            if ext is not None and not ext.is_executable(capabilities):
                missing.append(name)
        return missing

    def check_required(self, document, capabilities, source: str = "glTF file") -> None:
        """Fail fast before any resource work if a required extension can't run."""
        missing = self.unexecutable_required(document, capabilities)
        if missing:
            raise RequiredExtensionUnsupported(missing, source)


def default_registry() -> ExtensionRegistry:
    registry = ExtensionRegistry()
    for ext in _EXTENSIONS:
        registry.register(ext)
    return registry


def get_payload(entity, payload_type: type[ExtensionPayload]):
    """Return the decoded payload of ``payload_type`` attached to ``entity``."""
    payload = entity.extensions.get(payload_type.name)
    return payload if isinstance(payload, payload_type) else None
