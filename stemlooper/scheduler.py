"""
Playback Scheduler - phase-aligned, faded starts and stops.

PHASE ALIGNMENT:
    Every track is measured against one reference time t0, set when the
    engine becomes ready. A track started at instant `at` begins reading its
    loop buffer at

        offset = (at - t0) mod loop_duration

    so it sounds exactly as if it had been playing since t0, in phase with
    every other track regardless of when each was started.

TIMING:
    Starts and stops always take effect at least `start_delay_sec` after the
    call (never at or before 'now'), so nothing is scheduled in the past and
    in-flight ramps are only ever superseded from the present onwards.
"""

from typing import Callable, Optional

from stemlooper.config import EngineConfig
from stemlooper.log import get_logger
from stemlooper.mixer import GainMixer, PlaybackInstance

logger = get_logger("scheduler")


def compute_phase_offset(at: float, t0: Optional[float], duration: float) -> float:
    """Position within a loop of `duration` seconds heard at instant `at`.

    Args:
        at: Scheduled start time
        t0: Reference time (None before the engine is ready)
        duration: Loop buffer duration in seconds

    Returns:
        Offset in seconds, in [0, duration)

    Examples:
        >>> compute_phase_offset(at=25.0, t0=1.0, duration=10.0)
        4.0
        >>> compute_phase_offset(at=0.5, t0=1.0, duration=10.0)
        0.0
    """
    if t0 is None or duration <= 0:
        return 0.0
    elapsed = max(0.0, at - t0)
    return elapsed % duration


class PlaybackScheduler:
    """Schedules playback instances and their fades on the mixer.

    Attributes:
        clock: Callable returning the device time in seconds
        mixer: GainMixer owning the gain stages
        config: Engine configuration (fade and delay defaults)
        t0: Shared reference time, None until set_reference()
    """

    def __init__(self, clock: Callable[[], float], mixer: GainMixer, config: EngineConfig):
        self.clock = clock
        self.mixer = mixer
        self.config = config
        self.t0: Optional[float] = None

    def set_reference(self, t0: float) -> None:
        """Fix the reference time. Only the first call has an effect."""
        if self.t0 is None:
            self.t0 = t0

    def start_instant(self, at: Optional[float] = None) -> float:
        """Earliest legal instant for a change requested at `at` (default: now)."""
        earliest = self.clock() + self.config.start_delay_sec
        if at is None:
            return earliest
        return max(earliest, at)

    def start(self, index: int, at: Optional[float] = None,
              fade_in: Optional[float] = None) -> Optional[PlaybackInstance]:
        """Start track `index` phase-aligned to t0 with a fade-in.

        Args:
            index: Track index (0-7), already validated
            at: Requested start time (clamped to now + start_delay_sec)
            fade_in: Fade-in seconds (default: config.fade_in_sec)

        Returns:
            The new PlaybackInstance, or None if the track was already active
        """
        fade = self.config.fade_in_sec if fade_in is None else max(0.0, fade_in)
        sample_rate = self.mixer.sample_rate

        with self.mixer.lock:
            slot = self.mixer.slots[index]
            if slot.active:
                logger.debug(f"Track {index} already active, ignoring start")
                return None

            when = self.start_instant(at)
            buffer = slot.buffer
            offset = compute_phase_offset(when, self.t0, buffer.duration)

            instance = PlaybackInstance(
                track=index,
                buffer=buffer,
                start_frame=round(when * sample_rate),
                offset_frames=round(offset * sample_rate),
                endless=self.config.endless,
            )
            # A fading-out instance is phase-identical to the new one; hand over at start_frame
            for releasing in slot.releasing:
                releasing.stop(instance.start_frame)
            self.mixer.attach(index, instance)

            target = self.mixer.target_gain()
            self.mixer.fade_in(index, when, fade, target)
            self.mixer.rebalance(when, exclude=(index,))

        logger.info(f"TRACK START: {index} at {when:.3f}s, phase {offset:.3f}s/{buffer.duration:.1f}s, "
                    f"gain → {target:.3f} ({len(self.mixer.active)} active)")
        return instance

    def stop(self, index: int, at: Optional[float] = None,
             fade_out: Optional[float] = None) -> Optional[PlaybackInstance]:
        """Fade track `index` out and end its instance once the fade completes.

        Args:
            index: Track index (0-7), already validated
            at: Requested stop time (clamped to now + start_delay_sec)
            fade_out: Fade-out seconds (default: config.fade_out_sec)

        Returns:
            The stopped PlaybackInstance, or None if the track was not active
        """
        fade = self.config.fade_out_sec if fade_out is None else max(0.0, fade_out)
        sample_rate = self.mixer.sample_rate

        with self.mixer.lock:
            slot = self.mixer.slots[index]
            if not slot.active:
                logger.debug(f"Track {index} not active, ignoring stop")
                return None

            when = self.start_instant(at)
            self.mixer.fade_out(index, when, fade)

            instance = self.mixer.detach(index)
            if instance is not None:
                instance.stop(round((when + fade + self.config.stop_tail_sec) * sample_rate))

            target = self.mixer.rebalance(when) if self.mixer.active else 0.0

        logger.info(f"TRACK STOP: {index} at {when:.3f}s (fade {fade * 1000:.0f}ms), "
                    f"{len(self.mixer.active)} active, gain → {target:.3f}")
        return instance
