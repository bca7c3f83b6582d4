"""
Byte-source collaborators: "given a reference, return its bytes".

The importer never implements transport itself; it calls a ByteSource for
external references and an ArchiveSource when the input is a zip archive.
"""

import base64
import binascii
import io
import logging
import re
import zipfile
from pathlib import Path
from urllib.parse import unquote, urljoin, urlparse

from gltf_import.errors import ImportIOError

logger = logging.getLogger(__name__)

_CONTAINER_ENTRY = re.compile(r"\.(gltf|glb)$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# URI helpers
# ---------------------------------------------------------------------------

def parse_data_uri(uri: str) -> bytes | None:
    """Decode a ``data:`` URI, or return None if ``uri`` is not one."""
    if not uri.startswith("data:"):
        return None
    try:
        header, encoded = uri.split(",", 1)
    except ValueError:
        raise ImportIOError("Malformed data URI (no ',')") from None
    if header.endswith(";base64"):
        try:
            return base64.b64decode(encoded)
        except binascii.Error as e:
            raise ImportIOError(f"Malformed base64 data URI: {e}") from e
    return unquote(encoded).encode("latin-1")


def is_remote(uri: str) -> bool:
    return urlparse(uri).scheme in ("http", "https")


def is_absolute(uri: str) -> bool:
    parsed = urlparse(uri)
    return (bool(parsed.scheme) and len(parsed.scheme) > 1) or uri.startswith("/")


def resolve_uri(uri: str, base: str | None) -> str:
    """Resolve ``uri`` against the location of the container (if relative)."""
    if is_absolute(uri) or not base:
        return uri
    if is_remote(base) or base.startswith("file:"):
        return urljoin(base, uri)
    return str(Path(base).parent / unquote(uri))


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class ByteSource:
    def read(self, uri: str) -> bytes:
        raise NotImplementedError


class FileSource(ByteSource):
    """Local files (plain paths or file:// URIs). Remote URIs need a host fetcher."""

    def read(self, uri: str) -> bytes:
        if is_remote(uri):
            raise ImportIOError(f"No network fetcher configured for {uri}")
        path = Path(unquote(urlparse(uri).path)) if uri.startswith("file:") else Path(uri)
        try:
            return path.read_bytes()
        except OSError as e:
            raise ImportIOError(f"Failed to read {path}: {e}") from e


class ArchiveSource:
    """Read-only view of a zip archive holding the container and its files."""

    def __init__(self, data: bytes):
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise ImportIOError(f"Invalid zip archive: {e}") from e
        self._names = [n for n in self._zip.namelist() if not n.endswith("/")]

    @staticmethod
    def is_zip_data(data: bytes) -> bool:
        return data[:4] == b"PK\x03\x04"

    def contains(self, name: str) -> bool:
        return name in self._names

    def read(self, name: str) -> bytes:
        if not self.contains(name):
            raise ImportIOError(f"Entry {name!r} not found in zip archive")
        return self._zip.read(name)

    def container_entry(self) -> str:
        for name in self._names:
            if _CONTAINER_ENTRY.search(name):
                return name
        raise ImportIOError("No .gltf/.glb file found in zip archive")

    def resolve(self, uri: str) -> str:
        """Resolve ``uri`` relative to the container entry's directory."""
        entry = self.container_entry()
        uri = unquote(uri)
        if "/" not in entry:
            return uri
        return entry.rsplit("/", 1)[0] + "/" + uri


# ---------------------------------------------------------------------------
# Resolution policy
# ---------------------------------------------------------------------------

class UriResolver:
    """Bytes for a buffer/image ``uri``: data URI, then archive entry, then external."""

    def __init__(self, base: str | None = None, byte_source: ByteSource | None = None,
                 archive: ArchiveSource | None = None):
        self.base = base
        self.byte_source = byte_source or FileSource()
        self.archive = archive

    def inline(self, uri: str) -> bytes | None:
        return parse_data_uri(uri)

    def archive_entry(self, uri: str) -> str | None:
        if self.archive is None or is_absolute(uri):
            return None
        name = self.archive.resolve(uri)
        return name if self.archive.contains(name) else None

    def external(self, uri: str) -> str:
        return resolve_uri(uri, self.base)

    def read(self, uri: str) -> bytes:
        data = self.inline(uri)
        if data is not None:
            return data
        entry = self.archive_entry(uri)
        if entry is not None:
            logger.debug("Reading %s from archive entry %s", uri, entry)
            return self.archive.read(entry)
        return self.byte_source.read(self.external(uri))
