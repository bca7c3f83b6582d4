"""
Import options for the glTF pipeline.

Reads GLTF_IMPORT_* overrides from a .env file using python-dotenv.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


@dataclass
class ImportOptions:
    quantum_ms: float = 10.0           # scheduler fairness quantum
    import_animations: bool = True
    auto_scale: bool = False
    auto_scale_size: float = 1.0
    show_model_after_import: bool = True
    max_workers: int = 2               # external worker pool (decompression, fetch)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, cast):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default


def load_options(env_path: Path | None = None) -> ImportOptions:
    """Load .env into os.environ and build ImportOptions from GLTF_IMPORT_* vars."""
    load_dotenv(env_path or ENV_PATH, override=False)
    defaults = ImportOptions()
    return ImportOptions(
        quantum_ms=_env_number("GLTF_IMPORT_QUANTUM_MS", defaults.quantum_ms, float),
        import_animations=_env_bool("GLTF_IMPORT_ANIMATIONS", defaults.import_animations),
        auto_scale=_env_bool("GLTF_IMPORT_AUTO_SCALE", defaults.auto_scale),
        auto_scale_size=_env_number(
            "GLTF_IMPORT_AUTO_SCALE_SIZE", defaults.auto_scale_size, float),
        show_model_after_import=_env_bool(
            "GLTF_IMPORT_SHOW_MODEL", defaults.show_model_after_import),
        max_workers=_env_number("GLTF_IMPORT_MAX_WORKERS", defaults.max_workers, int),
    )
