"""
Animation decoder: channels to property curves keyed by hierarchy path.

A clip that fails on any channel is discarded as a whole (None at its
slot); other clips are unaffected. A synthetic "Static Pose" clip is always
appended after the imported ones.
"""

import logging
from dataclasses import dataclass, field

import numpy as np

from gltf_import.cache import ResourceKind
from gltf_import.coordinates import flip_rotations, flip_vectors
from gltf_import.errors import AnimationChannelError, GltfImportError
from gltf_import.scheduler import StepGenerator

logger = logging.getLogger(__name__)

STATIC_POSE_NAME = "Static Pose"

STEP = "STEP"
LINEAR = "LINEAR"
CUBICSPLINE = "CUBICSPLINE"

_COMPONENTS = {"translation": 3, "rotation": 4, "scale": 3}


@dataclass
class Curve:
    path: str                       # hierarchy path of the animated object
    property: str                   # translation | rotation | scale | weights.<i>
    times: np.ndarray               # (K,)
    values: np.ndarray              # (K, C)
    interpolation: str = LINEAR
    in_tangents: np.ndarray | None = None
    out_tangents: np.ndarray | None = None

    @property
    def is_rotation(self) -> bool:
        return self.property == "rotation"

    def evaluate(self, t: float) -> np.ndarray:
        times, values = self.times, self.values
        if len(times) == 1 or t <= times[0]:
            return values[0].copy()
        if t >= times[-1]:
            return values[-1].copy()

        i = int(np.searchsorted(times, t, side="right")) - 1
        t0, t1 = float(times[i]), float(times[i + 1])
        dt = t1 - t0
        u = (t - t0) / dt if dt > 0 else 0.0

        if self.interpolation == STEP:
            return values[i].copy()
        if self.interpolation == CUBICSPLINE:
            u2, u3 = u * u, u * u * u
            result = ((2 * u3 - 3 * u2 + 1) * values[i]
                      + (u3 - 2 * u2 + u) * dt * self.out_tangents[i]
                      + (-2 * u3 + 3 * u2) * values[i + 1]
                      + (u3 - u2) * dt * self.in_tangents[i + 1])
            if self.is_rotation:
                result = result / np.linalg.norm(result)
            return result.astype(np.float32)
        if self.is_rotation:
            return slerp(values[i], values[i + 1], u)
        return ((1 - u) * values[i] + u * values[i + 1]).astype(np.float32)


@dataclass
class AnimationClip:
    index: int | None
    name: str
    curves: list[Curve] = field(default_factory=list)

    @property
    def duration(self) -> float:
        ends = [float(c.times[-1]) for c in self.curves if len(c.times)]
        return max(ends, default=0.0)

    def curve(self, path: str, prop: str) -> Curve | None:
        return next((c for c in self.curves if c.path == path and c.property == prop), None)


# ---------------------------------------------------------------------------
# Quaternion helpers
# ---------------------------------------------------------------------------

def slerp(a, b, u: float) -> np.ndarray:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    dot = float(np.dot(a, b))
    if dot < 0.0:
        b, dot = -b, -dot
    if dot > 0.9995:
        q = a + u * (b - a)
    else:
        theta = np.arccos(dot)
        q = (np.sin((1 - u) * theta) * a + np.sin(u * theta) * b) / np.sin(theta)
    return (q / np.linalg.norm(q)).astype(np.float32)


def ensure_quaternion_continuity(q: np.ndarray, *tangents) -> np.ndarray:
    """Negate keys whose hemisphere differs from their predecessor (in place)."""
    for k in range(1, len(q)):
        if float(np.dot(q[k - 1], q[k])) < 0.0:
            q[k] = -q[k]
            for tangent in tangents:
                if tangent is not None:
                    tangent[k] = -tangent[k]
    return q


# ---------------------------------------------------------------------------
# Channel decoding
# ---------------------------------------------------------------------------

def _split_cubic(values: np.ndarray, keys: int):
    """CUBICSPLINE output holds (in-tangent, value, out-tangent) per key."""
    grouped = values.reshape(keys, 3, -1)
    return grouped[:, 1].copy(), grouped[:, 0].copy(), grouped[:, 2].copy()


def _convert(prop: str, values: np.ndarray) -> np.ndarray:
    if prop == "translation":
        return flip_vectors(values)
    if prop == "rotation":
        return flip_rotations(values)
    return values.astype(np.float32)


def _target_object(ctx, channel, owner: str):
    node_index = channel.target_node
    if (not isinstance(node_index, int) or isinstance(node_index, bool)
            or not 0 <= node_index < len(ctx.document.nodes)
            or not ctx.cache.contains(ResourceKind.NODE, node_index)):
        raise AnimationChannelError(f"{owner}: target node {node_index} does not exist")
    return node_index, ctx.cache.get(ResourceKind.NODE, node_index)


def _morph_target_count(ctx, node_index: int, owner: str) -> int:
    node = ctx.document.nodes[node_index]
    if node.mesh is None or not ctx.document.meshes[node.mesh].primitives:
        raise AnimationChannelError(f"{owner}: weights channel on node {node_index} without mesh")
    count = len(ctx.document.meshes[node.mesh].primitives[0].targets)
    if count == 0:
        raise AnimationChannelError(f"{owner}: node {node_index} mesh has no morph targets")
    return count


def decode_channel(ctx, animation, animation_index: int, c: int, root) -> list[Curve]:
    owner = f"animations[{animation_index}].channels[{c}]"
    channel = animation.channels[c]
    if not 0 <= channel.sampler < len(animation.samplers):
        raise AnimationChannelError(f"{owner}: sampler {channel.sampler} does not exist")
    sampler = animation.samplers[channel.sampler]
    node_index, obj = _target_object(ctx, channel, owner)
    path = root.path_to(obj)

    times = ctx.reader.read_scalars(sampler.input, owner)
    keys = len(times)
    if keys == 0:
        raise AnimationChannelError(f"{owner}: sampler has no keyframes")
    cubic = sampler.interpolation == CUBICSPLINE
    raw = ctx.reader.read(sampler.output, owner).astype(np.float32)
    stride = 3 if cubic else 1

    prop = channel.target_path
    if prop == "weights":
        targets = _morph_target_count(ctx, node_index, owner)
        flat = raw.reshape(-1)
        if len(flat) != keys * targets * stride:
            raise AnimationChannelError(
                f"{owner}: {len(flat)} weight values for {keys} keys x {targets} targets")
        per_key = flat.reshape(keys * stride, targets)
        curves = []
        for t in range(targets):
            column = per_key[:, t:t + 1]
            in_t = out_t = None
            values = column
            if cubic:
                values, in_t, out_t = _split_cubic(column, keys)
            curves.append(Curve(path, f"weights.{t}", times, values,
                                sampler.interpolation, in_t, out_t))
        return curves

    if prop not in _COMPONENTS:
        raise AnimationChannelError(f"{owner}: unknown target path {prop!r}")
    if len(raw) != keys * stride or raw.shape[1] != _COMPONENTS[prop]:
        raise AnimationChannelError(
            f"{owner}: {len(raw)} {prop} values for {keys} keyframes")

    in_t = out_t = None
    values = raw
    if cubic:
        values, in_t, out_t = _split_cubic(raw, keys)
        in_t, out_t = _convert(prop, in_t), _convert(prop, out_t)
    values = _convert(prop, values)
    if prop == "rotation":
        ensure_quaternion_continuity(values, in_t, out_t)
    return [Curve(path, prop, times, values, sampler.interpolation, in_t, out_t)]


def animation_label(animation, animation_index: int) -> str:
    return animation.name or f"animation_{animation_index}"


def decode_animation_steps(ctx, animation_index: int, root) -> StepGenerator:
    """Decode one clip, suspending between channels; None if any channel fails.

    A bad reference or malformed accessor inside a clip only discards that
    clip. The clip's name is reserved once every channel has decoded.
    """
    animation = ctx.document.animations[animation_index]
    curves = []
    try:
        for c in range(len(animation.channels)):
            curves.extend(decode_channel(ctx, animation, animation_index, c, root))
            yield
    except (GltfImportError, ValueError) as e:
        ctx.warn(logger, "Animation %d discarded: %s", animation_index, e)
        return None
    return AnimationClip(
        index=animation_index,
        name=ctx.names.assign("animation", animation.name, animation_index),
        curves=curves,
    )


def static_pose_clip(ctx, root) -> AnimationClip:
    """Single-key clip holding every node's default transform and zero weights."""
    clip = AnimationClip(index=None, name=STATIC_POSE_NAME)
    zero = np.zeros(1, dtype=np.float32)
    for node_index, obj in ctx.cache.items(ResourceKind.NODE):
        path = root.path_to(obj)
        clip.curves.append(Curve(path, "translation", zero, obj.translation[None].copy(), STEP))
        clip.curves.append(Curve(path, "rotation", zero, obj.rotation[None].copy(), STEP))
        clip.curves.append(Curve(path, "scale", zero, obj.scale[None].copy(), STEP))
        node = ctx.document.nodes[node_index]
        if node.mesh is not None and node.mesh in ctx.cache.meshes_with_morph_targets:
            primitives = ctx.document.meshes[node.mesh].primitives
            for t in range(len(primitives[0].targets) if primitives else 0):
                clip.curves.append(Curve(path, f"weights.{t}", zero,
                                         np.zeros((1, 1), dtype=np.float32), STEP))
    return clip
