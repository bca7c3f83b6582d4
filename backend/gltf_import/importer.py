"""
GltfImporter — the staged, resumable import pipeline.

Stage order (fixed; each stage only reads slots published by earlier ones):
  Read/Download → Parse → required-extension check → Buffer → Texture
  (interleaved) → Material → Mesh → Node → Skin → MorphTarget → Animation
  → auto-scale → show model.

Usage:
    importer = GltfImporter(uri="scene.glb", on_progress=print)
    result = importer.run()            # or: await importer.run_async()
"""

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Callable
from urllib.parse import unquote, urlparse

import numpy as np

from gltf_import.accessors import AccessorReader
from gltf_import.animation import (
    STATIC_POSE_NAME, animation_label, decode_animation_steps, static_pose_clip,
)
from gltf_import.cache import ImportCache, ResourceKind
from gltf_import.capabilities import Capabilities, default_capabilities
from gltf_import.config import ImportOptions, load_options
from gltf_import.context import ImportContext
from gltf_import.document import parse_container
from gltf_import.errors import ImportIOError, RequiredExtensionUnsupported
from gltf_import.extensions import (
    DRACO_MESH_COMPRESSION, DracoMeshCompression, ExtensionRegistry, default_registry,
    get_payload,
)
from gltf_import.geometry import load_mesh_steps
from gltf_import.materials import build_material, default_material
from gltf_import.scene import SceneBuilder, scene_bounds
from gltf_import.scheduler import (
    CancellationToken, CooperativeScheduler, InterleavedTaskSet, StepGenerator, StepKind,
    Task, await_future,
)
from gltf_import.skinning import apply_skin_steps, decode_morph_targets_steps, decode_skin
from gltf_import.sources import ArchiveSource, ByteSource, FileSource, UriResolver, is_remote
from gltf_import.textures import load_texture_steps

logger = logging.getLogger(__name__)


class ImportStep(Enum):
    READ = "Read"
    DOWNLOAD = "Download"
    PARSE = "Parse"
    BUFFER = "Buffer"
    TEXTURE = "Texture"
    MATERIAL = "Material"
    MESH = "Mesh"
    NODE = "Node"
    SKIN = "Skin"
    MORPH_TARGET = "MorphTarget"
    ANIMATION = "Animation"


ProgressCallback = Callable[[ImportStep, int, int], None]


@dataclass
class ImportResult:
    status: str                      # success | partial | cancelled
    scene: object = None             # SceneObject root
    meshes: list = field(default_factory=list)
    materials: list = field(default_factory=list)
    textures: list = field(default_factory=list)
    skins: list = field(default_factory=list)
    animations: list = field(default_factory=list)
    animation_names: list[str] = field(default_factory=list)
    static_pose_index: int | None = None
    default_material: object = None
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> dict:
        primitives = [p for mesh in self.meshes if mesh is not None
                      for p, _ in mesh.primitives if p is not None]
        nodes = sum(1 for obj in self.scene.walk() if obj.node_index is not None) \
            if self.scene is not None else 0
        return {
            "status": self.status,
            "nodes": nodes,
            "meshes": len(self.meshes),
            "primitives": len(primitives),
            "vertices": sum(p.vertex_count for p in primitives),
            "materials": len(self.materials),
            "textures": len(self.textures),
            "skins": sum(1 for s in self.skins if s is not None),
            "animations": self.animation_names,
            "warnings": list(self.warnings),
        }


def _source_stem(uri: str | None) -> str:
    if not uri:
        return "model"
    path = unquote(urlparse(uri).path) if is_remote(uri) or uri.startswith("file:") else uri
    stem = PurePosixPath(path.replace("\\", "/")).stem
    return stem or "model"


class GltfImporter:
    """One import of one container. Not reusable; build a new importer per file."""

    def __init__(self, data: bytes | None = None, uri: str | None = None,
                 base: str | None = None, options: ImportOptions | None = None,
                 capabilities: Capabilities | None = None,
                 registry: ExtensionRegistry | None = None,
                 byte_source: ByteSource | None = None,
                 on_progress: ProgressCallback | None = None,
                 executor: Executor | None = None,
                 clock: Callable[[], float] = time.perf_counter):
        if data is None and uri is None:
            raise ValueError("GltfImporter needs either data or a uri")
        self.data = data
        self.uri = uri
        self.base = base or uri
        self.options = options or load_options()
        self.capabilities = capabilities or default_capabilities()
        self.registry = registry or default_registry()
        self.byte_source = byte_source or FileSource()
        self.on_progress = on_progress
        self.cache = ImportCache()
        self.token = CancellationToken()
        self.scheduler = CooperativeScheduler(self.options.quantum_ms, clock, self.token)
        self._executor = executor
        self._owns_executor = False
        self.ctx: ImportContext | None = None

    # -- public API ---------------------------------------------------------

    def task(self) -> Task:
        return self.scheduler.task(self._pipeline(), name=self.uri or "gltf")

    def cancel(self) -> None:
        self.token.cancel()

    def run(self) -> ImportResult:
        """Import synchronously; fatal errors propagate as GltfImportError."""
        try:
            return self._finish(self.scheduler.run(self.task()))
        finally:
            self._shutdown_executor()

    async def run_async(self) -> ImportResult:
        """Import on the running event loop, yielding to it between ticks."""
        try:
            return self._finish(await self.scheduler.run_async(self.task()))
        finally:
            self._shutdown_executor()

    # -- plumbing -----------------------------------------------------------

    def _finish(self, step) -> ImportResult:
        if step.kind is StepKind.CANCELLED:
            logger.info("Import cancelled after %d ticks", self.scheduler.ticks)
            self.cache.clear()
            return ImportResult(status="cancelled")
        if step.kind is StepKind.FAILED:
            self.cache.clear()
            raise step.error
        return step.result

    def _get_executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.options.max_workers, thread_name_prefix="gltf-import")
            self._owns_executor = True
        return self._executor

    def _shutdown_executor(self) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            self._owns_executor = False

    def _progress(self, step: ImportStep, completed: int, total: int) -> None:
        logger.debug("%s %d/%d", step.value, completed, total)
        if self.on_progress:
            self.on_progress(step, completed, total)

    # -- stages -------------------------------------------------------------

    def _pipeline(self) -> StepGenerator:
        data = yield from self._read_stage()

        archive = None
        if ArchiveSource.is_zip_data(data):
            archive = ArchiveSource(data)
            entry = archive.container_entry()
            logger.info("Zip archive input, container entry %s", entry)
            data = archive.read(entry)

        self._progress(ImportStep.PARSE, 0, 1)
        document = parse_container(data, self.registry)
        self._check_capabilities(document)
        self._progress(ImportStep.PARSE, 1, 1)
        yield

        self.ctx = ctx = ImportContext(
            document=document,
            cache=self.cache,
            reader=AccessorReader(
                document, lambda i: self.cache.get(ResourceKind.BUFFER, i)),
            resolver=UriResolver(self.base, self.byte_source, archive),
            capabilities=self.capabilities,
            options=self.options,
            executor=self._get_executor(),
        )

        yield from self._buffer_stage(ctx)
        yield from self._texture_stage(ctx)
        yield from self._material_stage(ctx)
        yield from self._mesh_stage(ctx)
        root = yield from self._scene_stage(ctx)
        skins = yield from self._skin_stage(ctx)
        yield from self._morph_target_stage(ctx)

        animations = []
        static_pose_index = None
        if self.options.import_animations:
            animations = yield from self._animation_stage(ctx, root)
            static_pose_index = len(animations) - 1

        if self.options.auto_scale:
            self._scale_model(root)
        if self.options.show_model_after_import:
            root.active = True

        result = ImportResult(
            status="partial" if ctx.warnings else "success",
            scene=root,
            meshes=[m for _, m in self.cache.items(ResourceKind.MESH)],
            materials=[m for _, m in self.cache.items(ResourceKind.MATERIAL)],
            textures=[t for _, t in self.cache.items(ResourceKind.TEXTURE)],
            skins=skins,
            animations=animations,
            animation_names=[
                clip.name if clip is not None
                else animation_label(ctx.document.animations[i], i)
                for i, clip in enumerate(animations)
            ],
            static_pose_index=static_pose_index,
            default_material=self.cache.default_material,
            warnings=ctx.warnings,
        )
        logger.info("Import finished (%s): %s", result.status,
                    {k: v for k, v in result.summary().items() if k != "warnings"})
        return result

    def _read_stage(self) -> StepGenerator:
        if self.data is not None:
            return self.data
        step = ImportStep.DOWNLOAD if is_remote(self.uri) else ImportStep.READ
        self._progress(step, 0, 1)
        if step is ImportStep.DOWNLOAD:
            data = yield from await_future(
                self._get_executor().submit(self.byte_source.read, self.uri))
        else:
            data = self.byte_source.read(self.uri)
        self._progress(step, 1, 1)
        yield
        return data

    def _check_capabilities(self, document) -> None:
        """Fail before any resource work when the document can't be executed."""
        source = self.uri or "glTF file"
        self.registry.check_required(document, self.capabilities, source)
        if self.capabilities.geometry is None:
            for mesh in document.meshes:
                if any(get_payload(p, DracoMeshCompression) for p in mesh.primitives):
                    raise RequiredExtensionUnsupported([DRACO_MESH_COMPRESSION], source)

    def _buffer_stage(self, ctx) -> StepGenerator:
        buffers = ctx.document.buffers
        for i, buffer in enumerate(buffers):
            yield from ctx.cache.get_or_decode_steps(
                ResourceKind.BUFFER, i, lambda i=i, buffer=buffer: self._load_buffer(ctx, i, buffer))
            self._progress(ImportStep.BUFFER, i + 1, len(buffers))
            yield

    def _load_buffer(self, ctx, index: int, buffer) -> StepGenerator:
        if buffer.uri is None:
            data = ctx.document.binary_chunk(index)
        elif ctx.resolver.inline(buffer.uri) is not None or ctx.resolver.archive_entry(buffer.uri):
            data = ctx.resolver.read(buffer.uri)
        else:
            data = yield from ctx.run_external(
                ctx.resolver.byte_source.read, ctx.resolver.external(buffer.uri))
        if len(data) < buffer.byte_length:
            raise ImportIOError(
                f"buffers[{index}]: expected {buffer.byte_length} bytes, got {len(data)}")
        return data

    def _texture_stage(self, ctx) -> StepGenerator:
        total = len(ctx.document.textures)
        if not total:
            return
        tasks = InterleavedTaskSet()
        tasks.on_completed = lambda i, _: self._progress(
            ImportStep.TEXTURE, tasks.num_completed, total)
        for i in range(total):
            tasks.add(ctx.cache.get_or_decode_steps(
                ResourceKind.TEXTURE, i, lambda i=i: load_texture_steps(ctx, i)))
        yield from tasks.run()

    def _material_stage(self, ctx) -> StepGenerator:
        self.cache.default_material = default_material()
        materials = ctx.document.materials
        for i in range(len(materials)):
            ctx.cache.get_or_decode(ResourceKind.MATERIAL, i, lambda i=i: build_material(ctx, i))
            self._progress(ImportStep.MATERIAL, i + 1, len(materials))
            yield

    def _mesh_stage(self, ctx) -> StepGenerator:
        meshes = ctx.document.meshes
        for i in range(len(meshes)):
            yield from ctx.cache.get_or_decode_steps(
                ResourceKind.MESH, i, lambda i=i: load_mesh_steps(ctx, i))
            self._progress(ImportStep.MESH, i + 1, len(meshes))

    def _scene_stage(self, ctx) -> StepGenerator:
        total = len(ctx.document.nodes)
        builder = SceneBuilder(
            ctx, root_name=_source_stem(self.uri),
            on_node=lambda n: self._progress(ImportStep.NODE, n, total))
        root = yield from builder.build_steps()
        yield
        return root

    def _skin_stage(self, ctx) -> StepGenerator:
        skins = ctx.document.skins
        bindings = []
        for i in range(len(skins)):
            binding = ctx.cache.get_or_decode(ResourceKind.SKIN, i, lambda i=i: decode_skin(ctx, i))
            if binding is not None:
                yield from apply_skin_steps(ctx, i, binding)
            bindings.append(binding)
            self._progress(ImportStep.SKIN, i + 1, len(skins))
            yield
        return bindings

    def _morph_target_stage(self, ctx) -> StepGenerator:
        morphed = [i for i, mesh in enumerate(ctx.document.meshes)
                   if any(p.targets for p in mesh.primitives)]
        for n, mesh_index in enumerate(morphed):
            yield from decode_morph_targets_steps(ctx, mesh_index)
            self._progress(ImportStep.MORPH_TARGET, n + 1, len(morphed))
            yield

    def _animation_stage(self, ctx, root) -> StepGenerator:
        animations = ctx.document.animations
        clips = []
        for i in range(len(animations)):
            clip = yield from ctx.cache.get_or_decode_steps(
                ResourceKind.ANIMATION, i, lambda i=i: decode_animation_steps(ctx, i, root))
            clips.append(clip)
            self._progress(ImportStep.ANIMATION, i + 1, len(animations))
            yield
        clips.append(static_pose_clip(ctx, root))
        logger.debug("%s appended at index %d", STATIC_POSE_NAME, len(clips) - 1)
        return clips

    def _scale_model(self, root) -> None:
        bounds = scene_bounds(root)
        if bounds is None:
            return
        extent = float(np.max(bounds[1] - bounds[0]))
        if extent <= 0:
            return
        factor = self.options.auto_scale_size / extent
        root.scale = (root.scale * factor).astype(np.float32)
        logger.info("Auto-scaled model by %.4f (largest extent %.4f)", factor, extent)
