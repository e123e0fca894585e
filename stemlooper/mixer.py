"""
Gain Mixer - owns the track gain stages and the master bus.

GRAPH:
    PlaybackInstance(s) → TrackSlot.gain (x8) → master → output device

The mixer holds exactly 8 TrackSlots in a fixed tuple indexed 0-7. Each slot
has one GainParam; the master bus has another. Control code never writes a
gain directly: it schedules Ramps (see automation.py) at "now or later", and
the device callback evaluates them per frame in render().

EQUAL-POWER MIXING:
    With N active tracks each track targets 1/sqrt(N), so N uncorrelated
    stems sum to roughly constant power as tracks come and go. Whenever the
    active set changes size, every active track is re-ramped from its
    current value to the new target over a short ramp (80ms default).

THREADING:
    render() runs on the audio callback thread; scheduling runs on the control
    thread. Both take `lock` (re-entrant, so the scheduler can group several
    mixer calls into one atomic change).
"""

import math
import threading
from typing import Iterable, List, Optional, Sequence, Set

import numpy as np

from stemlooper.automation import GainParam
from stemlooper.config import TRACK_COUNT
from stemlooper.loop_builder import LoopBuffer
from stemlooper.log import get_logger

logger = get_logger("mixer")


def fit_channels(block: np.ndarray, channels: int) -> np.ndarray:
    """Map a (frames, c) block onto `channels` output channels.

    Mono is copied to every output channel, extra channels are dropped and
    missing channels repeat the last source channel.
    """
    source_channels = block.shape[1]
    if source_channels == channels:
        return block
    if source_channels > channels:
        return block[:, :channels]
    extra = np.repeat(block[:, -1:], channels - source_channels, axis=1)
    return np.concatenate([block, extra], axis=1)


class PlaybackInstance:
    """One scheduled playback of a loop buffer.

    Begins at device frame `start_frame`, reading the buffer from
    `offset_frames`. Ends at `stop_frame` once stopped, or at the end of the
    buffer unless `endless` wraps it around.

    Attributes:
        track: Track index (0-7) this instance plays on
        buffer: Shared, read-only loop buffer
        start_frame: Device frame at which audio begins
        offset_frames: Buffer position heard at start_frame
        stop_frame: Device frame at which audio ends (None = not stopped)
        endless: Wrap at the end of the buffer
    """

    def __init__(self, track: int, buffer: LoopBuffer, start_frame: int, offset_frames: int,
                 endless: bool = False):
        self.track = track
        self.buffer = buffer
        self.start_frame = int(start_frame)
        self.offset_frames = int(offset_frames) % buffer.frames
        self.stop_frame: Optional[int] = None
        self.endless = endless

    @property
    def end_frame(self) -> Optional[int]:
        """Device frame after the last audible frame, None if unbounded."""
        natural = None if self.endless else self.start_frame + (self.buffer.frames - self.offset_frames)
        if self.stop_frame is None:
            return natural
        if natural is None:
            return self.stop_frame
        return min(natural, self.stop_frame)

    def stop(self, frame: int) -> None:
        """Schedule the end of playback; an earlier stop is never pushed back."""
        frame = int(frame)
        if self.stop_frame is None or frame < self.stop_frame:
            self.stop_frame = frame

    def finished(self, frame: int) -> bool:
        end = self.end_frame
        return end is not None and frame >= end

    def mix_into(self, out: np.ndarray, block_start: int, frames: int) -> None:
        """Add this instance's samples for block [block_start, block_start + frames)."""
        first = max(block_start, self.start_frame)
        last = block_start + frames
        end = self.end_frame
        if end is not None:
            last = min(last, end)
        if last <= first:
            return

        count = last - first
        position = self.offset_frames + (first - self.start_frame)
        data = self.buffer.data

        if self.endless:
            chunk = data[(position + np.arange(count)) % self.buffer.frames]
        else:
            chunk = data[position:position + count]

        out[first - block_start:last - block_start] += fit_channels(chunk, out.shape[1])


class TrackSlot:
    """One of the 8 fixed track slots.

    Attributes:
        index: Track index (0-7)
        buffer: Loop buffer for this track (None until loaded)
        active: True while the track is started
        instance: Currently running playback instance, if any
        gain: Track gain parameter
        releasing: Stopped instances still sounding through their fade-out
    """

    def __init__(self, index: int):
        self.index = index
        self.buffer: Optional[LoopBuffer] = None
        self.active = False
        self.instance: Optional[PlaybackInstance] = None
        self.gain = GainParam(0.0)
        self.releasing: List[PlaybackInstance] = []

    def instances(self) -> List[PlaybackInstance]:
        current = [self.instance] if self.instance is not None else []
        return current + self.releasing


class GainMixer:
    """Per-track and master gain stages plus block rendering.

    Attributes:
        sample_rate: Engine sample rate
        channels: Output channel count
        slots: Exactly 8 TrackSlots
        master: Master bus gain parameter
        active: Indices of active tracks
        auto_mix: Equal-power rebalancing enabled
        rebalance_ramp_sec: Ramp used when the active set changes size
        master_ramp_sec: Ramp used for master gain changes
        lock: Re-entrant lock shared with the audio callback
    """

    def __init__(self, sample_rate: int, channels: int, master_gain: float = 1.0,
                 auto_mix: bool = True, rebalance_ramp_sec: float = 0.08,
                 master_ramp_sec: float = 0.05):
        self.sample_rate = sample_rate
        self.channels = channels
        self.slots = tuple(TrackSlot(i) for i in range(TRACK_COUNT))
        self.master = GainParam(master_gain)
        self.active: Set[int] = set()
        self.auto_mix = auto_mix
        self.rebalance_ramp_sec = rebalance_ramp_sec
        self.master_ramp_sec = master_ramp_sec
        self.lock = threading.RLock()

    def install_buffers(self, buffers: Sequence[LoopBuffer]) -> None:
        """Attach the 8 loop buffers to their slots."""
        if len(buffers) != TRACK_COUNT:
            raise ValueError(f"Expected {TRACK_COUNT} loop buffers, got {len(buffers)}")
        with self.lock:
            for slot, buffer in zip(self.slots, buffers):
                slot.buffer = buffer

    def target_gain(self, count: Optional[int] = None) -> float:
        """Equal-power per-track target for `count` (default: current) active tracks."""
        if not self.auto_mix:
            return 1.0
        if count is None:
            count = len(self.active)
        return 1.0 / math.sqrt(max(1, count))

    def attach(self, index: int, instance: PlaybackInstance) -> None:
        """Make `instance` the running instance of track `index` and mark it active."""
        with self.lock:
            slot = self.slots[index]
            slot.instance = instance
            slot.active = True
            self.active.add(index)

    def detach(self, index: int) -> Optional[PlaybackInstance]:
        """Mark track `index` inactive; its instance keeps sounding until it stops."""
        with self.lock:
            slot = self.slots[index]
            instance = slot.instance
            slot.instance = None
            slot.active = False
            self.active.discard(index)
            if instance is not None:
                slot.releasing.append(instance)
            return instance

    def fade_in(self, index: int, at: float, duration: float, target: float) -> None:
        """Ramp track gain to target, starting at `at`.

        A silent track ramps 0 → target. A track restarted during its
        fade-out continues from the gain it has at `at`.
        """
        with self.lock:
            self.slots[index].gain.ramp_to(target, at, duration)

    def fade_out(self, index: int, at: float, duration: float) -> None:
        """Ramp track gain from its value at `at` to 0."""
        with self.lock:
            self.slots[index].gain.ramp_to(0.0, at, duration)

    def rebalance(self, at: float, exclude: Iterable[int] = ()) -> float:
        """Re-ramp every active track (except `exclude`) to the equal-power target.

        Supersedes any ramp still scheduled for those tracks, continuing from
        the gain each one has at `at`.

        Returns:
            The new per-track target
        """
        with self.lock:
            target = self.target_gain()
            if not self.auto_mix:
                return target
            skip = set(exclude)
            for index in sorted(self.active - skip):
                self.slots[index].gain.ramp_to(target, at, self.rebalance_ramp_sec)
            logger.debug(f"Rebalance at {at:.3f}s: {len(self.active)} active → {target:.3f}")
            return target

    def set_master_gain(self, value: float, at: float) -> float:
        """Ramp the master gain to `value` clamped to [0, 1].

        Returns:
            The clamped value
        """
        value = min(1.0, max(0.0, float(value)))
        with self.lock:
            self.master.ramp_to(value, at, self.master_ramp_sec)
        return value

    def render(self, block_start: int, frames: int) -> np.ndarray:
        """Mix one output block.

        Args:
            block_start: Device frame of the block's first frame
            frames: Block length

        Returns:
            float32 array, shape (frames, channels)
        """
        t = block_start / self.sample_rate
        block_end = block_start + frames
        out = np.zeros((frames, self.channels), dtype=np.float32)

        with self.lock:
            for slot in self.slots:
                instances = slot.instances()
                if instances:
                    track_mix = np.zeros((frames, self.channels), dtype=np.float32)
                    for instance in instances:
                        instance.mix_into(track_mix, block_start, frames)
                    gain = slot.gain.render(t, frames, self.sample_rate)
                    out += track_mix * gain[:, np.newaxis]
                    slot.releasing = [i for i in slot.releasing if not i.finished(block_end)]
                slot.gain.prune(t)

            out *= self.master.render(t, frames, self.sample_rate)[:, np.newaxis]
            self.master.prune(t)

        return out

    def clear(self) -> None:
        """Drop every instance and buffer reference (session teardown)."""
        with self.lock:
            for slot in self.slots:
                slot.instance = None
                slot.releasing = []
                slot.active = False
                slot.buffer = None
            self.active.clear()
