"""Unique, filesystem-legal names for decoded assets and scene objects."""

INVALID_FILENAME_CHARS = set(
    [chr(c) for c in range(0x20)] + ['"', "<", ">", "|", ":", "*", "?", "\\", "/"]
)


def legal_asset_name(name: str) -> str:
    """Mask characters that are illegal in filenames; '.' too, as names double as paths."""
    result = "".join("_" if c in INVALID_FILENAME_CHARS else c for c in name)
    return result.replace(".", "_")


def scene_object_name(name: str) -> str:
    return name.replace("\\", "_").replace("/", "_").replace(".", "_")


def unique_name(name: str, seen: set[str]) -> str:
    """Append _1, _2, ... until the name is unused, then record it in ``seen``."""
    candidate = name
    suffix = 1
    while candidate in seen:
        candidate = f"{name}_{suffix}"
        suffix += 1
    seen.add(candidate)
    return candidate


class NameRegistry:
    """Per-category seen-name sets (textures, materials, meshes, animations)."""

    def __init__(self):
        self._seen: dict[str, set[str]] = {}

    def assign(self, category: str, name: str | None, index: int) -> str:
        base = legal_asset_name(name) if name else f"{category}_{index}"
        return unique_name(base, self._seen.setdefault(category, set()))
