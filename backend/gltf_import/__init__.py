"""
Progressive glTF 2.0 importer.

Parses .gltf/.glb containers (optionally zipped) and decodes them stage by
stage into an engine-agnostic scene graph, yielding to the caller whenever
a stage has run for longer than the scheduler quantum.
"""

from gltf_import.capabilities import (
    Capabilities, DecodedGeometry, DecodedImage, GeometryDecoder, TextureDecoder,
    default_capabilities,
)
from gltf_import.config import ImportOptions, load_options
from gltf_import.errors import (
    AnimationChannelError, GltfImportError, ImportIOError, MissingOptionalCapability,
    ParseError, ReferenceOutOfRange, RequiredExtensionUnsupported, SkinningError,
    UnsupportedTopology,
)
from gltf_import.importer import GltfImporter, ImportResult, ImportStep

__all__ = [
    "AnimationChannelError",
    "Capabilities",
    "DecodedGeometry",
    "DecodedImage",
    "GeometryDecoder",
    "GltfImportError",
    "GltfImporter",
    "ImportIOError",
    "ImportOptions",
    "ImportResult",
    "ImportStep",
    "MissingOptionalCapability",
    "ParseError",
    "ReferenceOutOfRange",
    "RequiredExtensionUnsupported",
    "SkinningError",
    "TextureDecoder",
    "UnsupportedTopology",
    "default_capabilities",
    "load_options",
]
