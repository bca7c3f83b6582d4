"""
Exception taxonomy for the glTF import pipeline.

Fatal errors unwind to the caller of ``GltfImporter.run()``. Recoverable ones
are raised inside a single unit of work, caught by the owning stage, logged,
and turned into a warning plus a null placeholder.
"""


class GltfImportError(Exception):
    """Base class for every error raised by the importer."""


class ParseError(GltfImportError):
    """Malformed container: bad JSON, bad GLB header, missing chunk."""


class RequiredExtensionUnsupported(GltfImportError):
    def __init__(self, names: list[str], source: str = "glTF file"):
        self.names = list(names)
        super().__init__(
            f"Failed to load {source}: required extension(s) "
            f"{', '.join(self.names)} cannot be decoded by this importer"
        )


class ReferenceOutOfRange(GltfImportError):
    """An index into a document-level array does not exist."""

    def __init__(self, kind: str, index, owner: str | None = None, detail: str | None = None):
        self.kind = kind
        self.index = index
        self.owner = owner
        msg = f"{kind} index {index} is out of range"
        if owner:
            msg = f"{owner}: {msg}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class ImportIOError(GltfImportError):
    """Bytes for a referenced resource could not be read or fetched."""


class SkinningError(GltfImportError):
    """Joint/weight arrays do not line up with the mesh vertices."""


class AnimationChannelError(GltfImportError):
    """A channel could not be decoded; discards its whole clip."""


class UnsupportedTopology(GltfImportError):
    """Primitive mode other than TRIANGLES."""


class MissingOptionalCapability(GltfImportError):
    """An optional decoder (e.g. KTX2) is not installed."""
