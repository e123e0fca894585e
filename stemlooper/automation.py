"""
Scheduled gain automation.

Gain changes are never applied step by step from the control thread. Each
change is a Ramp descriptor (start value at start time, linear to end value
at end time) placed on a GainParam timeline; the audio callback evaluates the
timeline per frame when it renders a block.

Scheduling a new ramp supersedes everything at or after its start time: a
ramp still in flight at that instant is cut short at the value it had reached,
so the new ramp always continues from the actual gain without a jump.
"""

from dataclasses import dataclass
from typing import List

import numpy as np


@dataclass(frozen=True)
class Ramp:
    """Linear gain ramp from (start_time, start_value) to (end_time, end_value).

    A ramp with end_time == start_time is an instantaneous set. After
    end_time the ramp holds end_value.
    """
    start_time: float
    start_value: float
    end_time: float
    end_value: float

    def value_at(self, t: float) -> float:
        if self.end_time <= self.start_time or t >= self.end_time:
            return self.end_value
        if t <= self.start_time:
            return self.start_value
        frac = (t - self.start_time) / (self.end_time - self.start_time)
        return self.start_value + (self.end_value - self.start_value) * frac

    def truncated(self, t: float) -> 'Ramp':
        """Copy of this ramp cut short at time t."""
        return Ramp(self.start_time, self.start_value, t, self.value_at(t))


class GainParam:
    """Gain parameter driven by a timeline of non-overlapping ramps.

    Attributes:
        base_value: Value before the first ramp
        ramps: Scheduled ramps, sorted by start time
    """

    def __init__(self, value: float = 0.0):
        self.base_value = float(value)
        self.ramps: List[Ramp] = []

    def value_at(self, t: float) -> float:
        """Gain the timeline yields at time t (past or future)."""
        value = self.base_value
        for ramp in self.ramps:
            if ramp.start_time > t:
                break
            value = ramp.value_at(t)
        return value

    def cancel_scheduled_values(self, t: float) -> None:
        """Drop every event starting at or after t; truncate a ramp crossing t."""
        kept = []
        for ramp in self.ramps:
            if ramp.start_time >= t:
                break
            if ramp.end_time > t:
                kept.append(ramp.truncated(t))
            else:
                kept.append(ramp)
        self.ramps = kept

    def schedule(self, start_time: float, start_value: float, end_time: float, end_value: float) -> Ramp:
        """Supersede the timeline from start_time on with a single ramp.

        Args:
            start_time: When the ramp begins
            start_value: Gain at start_time
            end_time: When the ramp reaches end_value (clamped to >= start_time)
            end_value: Gain held after end_time

        Returns:
            The scheduled Ramp
        """
        self.cancel_scheduled_values(start_time)
        ramp = Ramp(float(start_time), float(start_value),
                    float(max(end_time, start_time)), float(end_value))
        self.ramps.append(ramp)
        return ramp

    def ramp_to(self, value: float, start_time: float, duration: float) -> Ramp:
        """Ramp from whatever the gain is at start_time to value over duration."""
        current = self.value_at(start_time)
        return self.schedule(start_time, current, start_time + max(0.0, duration), value)

    def set_value_at_time(self, value: float, t: float) -> Ramp:
        return self.schedule(t, value, t, value)

    def prune(self, t: float) -> None:
        """Fold ramps that finished at or before t into base_value."""
        done = 0
        while done < len(self.ramps) and self.ramps[done].end_time <= t:
            done += 1
        if done:
            self.base_value = self.ramps[done - 1].end_value
            self.ramps = self.ramps[done:]

    def render(self, start_time: float, frames: int, sample_rate: int) -> np.ndarray:
        """Per-frame gain for a block starting at start_time.

        Args:
            start_time: Time of the block's first frame
            frames: Block length
            sample_rate: Frames per second

        Returns:
            float32 array of length `frames`
        """
        times = start_time + np.arange(frames, dtype=np.float64) / sample_rate
        values = np.full(frames, self.base_value, dtype=np.float64)

        for ramp in self.ramps:
            mask = times >= ramp.start_time
            if not mask.any():
                break
            if ramp.end_time > ramp.start_time:
                frac = np.clip((times[mask] - ramp.start_time) / (ramp.end_time - ramp.start_time), 0.0, 1.0)
                values[mask] = ramp.start_value + (ramp.end_value - ramp.start_value) * frac
            else:
                values[mask] = ramp.end_value

        return values.astype(np.float32)
