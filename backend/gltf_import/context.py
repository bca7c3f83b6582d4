"""Per-import state shared by the pipeline stages."""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Callable

from gltf_import.accessors import AccessorReader
from gltf_import.cache import ImportCache
from gltf_import.capabilities import Capabilities
from gltf_import.config import ImportOptions
from gltf_import.document import Document
from gltf_import.names import NameRegistry
from gltf_import.scheduler import StepGenerator, await_future
from gltf_import.sources import UriResolver


@dataclass
class ImportContext:
    document: Document
    cache: ImportCache
    reader: AccessorReader
    resolver: UriResolver
    capabilities: Capabilities
    options: ImportOptions
    names: NameRegistry = field(default_factory=NameRegistry)
    executor: Executor | None = None
    warnings: list[str] = field(default_factory=list)

    def warn(self, log: logging.Logger, message: str, *args) -> None:
        """Log a recoverable condition and keep it for the import result."""
        log.warning(message, *args)
        self.warnings.append(message % args if args else message)

    def run_external(self, fn: Callable, *args) -> StepGenerator:
        """Run ``fn`` on the worker pool and poll it; inline when there is none."""
        if self.executor is None:
            return fn(*args)
        result = yield from await_future(self.executor.submit(fn, *args))
        return result
