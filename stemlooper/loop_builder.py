"""
Loop Builder - extends a short clip into a long, seamlessly repeating buffer.

ALGORITHM:
    stride      = max(1, clip_frames - crossfade_frames)
    repeats     = max(1, ceil((target_frames - clip_frames) / stride) + 1)
    final_frames = clip_frames + (repeats - 1) * stride

The clip is copied verbatim as the first segment. Every further repeat
overlaps the last `crossfade_frames` of what has been built with the head of
the clip, weighted by an equal-power window (outgoing cos(t*pi/2), incoming
sin(t*pi/2)), then appends the rest of the clip after the overlap.

Equal-power weights keep sin^2 + cos^2 = 1 across the blend, so the seam has
neither a click nor the loudness dip a linear crossfade produces between
uncorrelated material. A crossfade of 0 is plain tiling.
"""

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from stemlooper.decoder import DecodedBuffer
from stemlooper.log import get_logger

logger = get_logger("loop")


@dataclass(frozen=True)
class LoopBuffer:
    """Read-only loop buffer built once per clip at load time.

    Attributes:
        data: float32 array, shape (frames, channels), not writeable
        sample_rate: Engine sample rate
        crossfade_frames: Overlap length actually used between repeats
        clip_frames: Frame count of the source clip
        repeats: Number of clip repetitions in the buffer
    """
    data: np.ndarray
    sample_rate: int
    crossfade_frames: int
    clip_frames: int
    repeats: int

    @property
    def frames(self) -> int:
        return self.data.shape[0]

    @property
    def channels(self) -> int:
        return self.data.shape[1]

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate


def equal_power_weights(t) -> Tuple[np.ndarray, np.ndarray]:
    """Equal-power crossfade weights for position t in [0, 1].

    Args:
        t: Scalar or array of blend positions (0 = all outgoing, 1 = all incoming)

    Returns:
        Tuple of (incoming, outgoing) = (sin(t*pi/2), cos(t*pi/2))
    """
    angle = np.asarray(t, dtype=np.float64) * (np.pi / 2.0)
    return np.sin(angle), np.cos(angle)


def crossfade_frames(crossfade_ms: float, sample_rate: int) -> int:
    """Convert a crossfade length in milliseconds to whole frames."""
    return max(0, int(math.floor((crossfade_ms / 1000.0) * sample_rate)))


def loop_geometry(clip_frames: int, target_frames: int, xfade_frames: int) -> Tuple[int, int, int]:
    """Compute (stride, repeats, final_frames) for a loop buffer.

    Args:
        clip_frames: Frames in one clip
        target_frames: Minimum frames the loop must cover
        xfade_frames: Overlap between consecutive repeats

    Returns:
        Tuple of (stride, repeats, final_frames)
    """
    target_frames = max(clip_frames, target_frames)
    stride = max(1, clip_frames - xfade_frames)
    repeats = max(1, math.ceil((target_frames - clip_frames) / stride) + 1)
    final_frames = clip_frames + (repeats - 1) * stride
    return stride, repeats, final_frames


def build_loop_buffer(clip: DecodedBuffer, target_duration_sec: float, xfade_frames: int) -> LoopBuffer:
    """Build a seamless loop buffer at least `target_duration_sec` long.

    Args:
        clip: Decoded clip at the engine sample rate
        target_duration_sec: Minimum loop duration in seconds
        xfade_frames: Crossfade length in frames; clamped to clip_frames - 1

    Returns:
        LoopBuffer whose duration is >= max(target, clip duration)

    Examples:
        >>> clip = DecodedBuffer(np.ones((200, 1), dtype=np.float32), 100)
        >>> build_loop_buffer(clip, 10.0, 0).frames
        1000
    """
    sr = clip.sample_rate
    clip_frames = clip.frames
    source = clip.data

    xfade = max(0, int(xfade_frames))
    if xfade >= clip_frames:
        clamped = max(0, clip_frames - 1)
        logger.warning(f"Crossfade ({xfade} frames) not shorter than clip ({clip_frames} frames), "
                       f"clamping to {clamped}")
        xfade = clamped

    target_frames = int(round(target_duration_sec * sr))
    stride, repeats, final_frames = loop_geometry(clip_frames, target_frames, xfade)

    out = np.zeros((final_frames, clip.channels), dtype=np.float32)
    out[:clip_frames] = source

    if xfade:
        # t runs (1/xfade .. 1] so the last overlap frame is fully the new repeat
        t = np.arange(1, xfade + 1, dtype=np.float64) / xfade
        incoming, outgoing = equal_power_weights(t)
        incoming = incoming[:, np.newaxis]
        outgoing = outgoing[:, np.newaxis]
        head = source[:xfade].astype(np.float64)

    write_pos = clip_frames
    for _ in range(1, repeats):
        overlap_start = write_pos - xfade

        if xfade:
            tail = out[overlap_start:write_pos].astype(np.float64)
            out[overlap_start:write_pos] = (tail * outgoing + head * incoming).astype(np.float32)

        out[write_pos:overlap_start + clip_frames] = source[xfade:]
        write_pos = overlap_start + clip_frames

    out.setflags(write=False)

    logger.debug(f"Built loop buffer: {clip_frames} frames x {repeats} repeats "
                 f"(stride {stride}, crossfade {xfade}) → {final_frames} frames "
                 f"({final_frames / sr:.2f}s)")

    return LoopBuffer(
        data=out,
        sample_rate=sr,
        crossfade_frames=xfade,
        clip_frames=clip_frames,
        repeats=repeats,
    )
