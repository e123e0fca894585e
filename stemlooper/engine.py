"""
Engine Controller - the public EngineSession façade.

LIFECYCLE:
    UNINITIALIZED → LOADING → READY      (load succeeded, t0 fixed)
    LOADING → UNINITIALIZED              (load failed, nothing installed)
    any state → DESTROYED                (terminal)

USAGE:
    session = EngineSession(config, device=StreamDevice(...))
    session.load(on_ready=lambda: session.start_track(0)).result()
    session.start_track(3)            # phase-aligned with track 0
    session.set_master_gain(0.5)
    session.stop_track(0)
    session.destroy()

CONCURRENCY:
    Control calls come from one logical thread. load() runs the clip pipeline
    on a single background worker and resolves the returned Future; the
    device callback only renders. Gain and playback changes are scheduled
    for "now or later" on the mixer, never applied retroactively.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, FrozenSet, List, Optional

from stemlooper.config import EngineConfig, TRACK_COUNT
from stemlooper.decoder import ClipLoader
from stemlooper.device import OfflineDevice, OutputDevice
from stemlooper.errors import (
    ConfigurationError, InvalidArgumentError, InvalidStateError, LoadFailure,
)
from stemlooper.log import get_logger
from stemlooper.loop_builder import LoopBuffer, build_loop_buffer, crossfade_frames
from stemlooper.mixer import GainMixer
from stemlooper.scheduler import PlaybackScheduler

logger = get_logger("engine")


class EngineState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    DESTROYED = "destroyed"


class EngineSession:
    """Eight phase-aligned seamless loops with equal-power auto-mixing.

    Attributes:
        config: Engine configuration
        device: Output device providing the clock
        sample_rate: Engine sample rate (the device's)
        mixer: Gain stages and rendering
        scheduler: Phase-aligned start/stop scheduling
        state: Current EngineState
    """

    def __init__(self, config: EngineConfig, device: Optional[OutputDevice] = None):
        config.validate()
        self.config = config
        self.device = device or OfflineDevice(config.sample_rate, config.channels, config.blocksize)
        self.sample_rate = self.device.sample_rate

        self.mixer = GainMixer(
            sample_rate=self.sample_rate,
            channels=self.device.channels,
            master_gain=config.master_gain,
            auto_mix=config.auto_mix,
            rebalance_ramp_sec=config.rebalance_ramp_sec,
            master_ramp_sec=config.master_ramp_sec,
        )
        self.scheduler = PlaybackScheduler(self.now, self.mixer, config)
        self.device.attach(self.mixer.render)

        self.state = EngineState.UNINITIALIZED
        self._loop_buffers: List[LoopBuffer] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._state_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.destroy()
        return False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def now(self) -> float:
        """Current device time in seconds."""
        return self.device.time

    @property
    def t0(self) -> Optional[float]:
        return self.scheduler.t0

    @property
    def buffers_ready(self) -> bool:
        """True once all 8 loop buffers are built."""
        return len(self._loop_buffers) == TRACK_COUNT

    @property
    def ready(self) -> bool:
        return self.state is EngineState.READY

    @property
    def active_tracks(self) -> FrozenSet[int]:
        with self.mixer.lock:
            return frozenset(self.mixer.active)

    def loop_buffer(self, index: int) -> LoopBuffer:
        self._check_index(index)
        if not self.buffers_ready:
            raise InvalidStateError("Loop buffers are not built yet")
        return self._loop_buffers[index]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, on_ready: Optional[Callable[[], None]] = None,
             on_error: Optional[Callable[[Exception], None]] = None) -> Future:
        """Decode, resample and loop-build all 8 clips in order.

        Validation happens synchronously; the pipeline runs on a background
        worker. Not re-entrant: a second call while loading is rejected.

        Args:
            on_ready: Called with no arguments once the engine is READY
            on_error: Called with the LoadFailure if any clip fails

        Returns:
            Future resolving to True on success, False on failure

        Raises:
            ConfigurationError: If the config does not list exactly 8 clips
            InvalidStateError: If not UNINITIALIZED (loading, ready or destroyed)
        """
        files = list(self.config.files)
        if len(files) != TRACK_COUNT:
            raise ConfigurationError(f"Expected exactly {TRACK_COUNT} clip sources, got {len(files)}")

        with self._state_lock:
            if self.state is not EngineState.UNINITIALIZED:
                raise InvalidStateError(f"Cannot load while {self.state.value}")
            self.state = EngineState.LOADING

        try:
            self.device.start()
        except Exception:
            with self._state_lock:
                self.state = EngineState.UNINITIALIZED
            raise

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="stemlooper-load")

        logger.info(f"Loading {TRACK_COUNT} clips @ {self.sample_rate}Hz "
                    f"(target {self.config.target_duration_sec:.0f}s, crossfade {self.config.crossfade_ms:.0f}ms)")
        return self._executor.submit(self._run_load, files, on_ready, on_error)

    def _run_load(self, files, on_ready, on_error) -> bool:
        loader = ClipLoader(files, self.sample_rate)
        xfade = crossfade_frames(self.config.crossfade_ms, self.sample_rate)
        loop_buffers = []

        try:
            while not loader.done:
                decoded = loader.step()
                index = loader.index - 1
                try:
                    loop_buffers.append(build_loop_buffer(decoded, self.config.target_duration_sec, xfade))
                except Exception as e:
                    raise LoadFailure(index, files[index], e) from e
        except LoadFailure as e:
            with self._state_lock:
                if self.state is EngineState.LOADING:
                    self.state = EngineState.UNINITIALIZED
            logger.error(f"Load aborted at clip {e.clip_index}: {e.cause}")
            if on_error:
                on_error(e)
            return False

        with self._state_lock:
            if self.state is not EngineState.LOADING:
                # destroy() ran while the clips were loading
                logger.warning("Session destroyed during load, discarding loop buffers")
                error = InvalidStateError("Session destroyed during load")
            else:
                error = None
                self._loop_buffers = loop_buffers
                self.mixer.install_buffers(loop_buffers)
                self.scheduler.set_reference(self.now())
                self.state = EngineState.READY

        if error is not None:
            if on_error:
                on_error(error)
            return False

        logger.info(f"Engine ready: {TRACK_COUNT}/{TRACK_COUNT} loop buffers, t0={self.t0:.3f}s, "
                    f"loop durations {min(b.duration for b in loop_buffers):.1f}-"
                    f"{max(b.duration for b in loop_buffers):.1f}s")
        if on_ready:
            on_ready()
        return True

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _check_index(self, index) -> None:
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < TRACK_COUNT:
            raise InvalidArgumentError(f"Track index must be 0..{TRACK_COUNT - 1}, got {index!r}")

    def _require_ready(self, operation: str) -> None:
        if self.state is not EngineState.READY:
            raise InvalidStateError(f"{operation} requires a ready engine (state: {self.state.value})")

    def start_track(self, index: int, fade_in_sec: Optional[float] = None,
                    at: Optional[float] = None) -> bool:
        """Start a track phase-aligned to t0, fading in.

        Args:
            index: Track index 0-7
            fade_in_sec: Fade-in override (default: config.fade_in_sec)
            at: Requested start time in device seconds (clamped to the future)

        Returns:
            True if the track was started, False if it was already active

        Raises:
            InvalidArgumentError: If index is outside 0-7
            InvalidStateError: If the engine is not READY
        """
        self._check_index(index)
        self._require_ready("start_track")
        return self.scheduler.start(index, at=at, fade_in=fade_in_sec) is not None

    def stop_track(self, index: int, fade_out_sec: Optional[float] = None,
                   at: Optional[float] = None) -> bool:
        """Fade a track out and stop it once the fade completes.

        Returns:
            True if the track was stopped, False if it was not active

        Raises:
            InvalidArgumentError: If index is outside 0-7
            InvalidStateError: If the engine is not READY
        """
        self._check_index(index)
        self._require_ready("stop_track")
        return self.scheduler.stop(index, at=at, fade_out=fade_out_sec) is not None

    def stop_all(self, fade_out_sec: Optional[float] = None) -> List[int]:
        """Stop every active track.

        Returns:
            Indices of the tracks that were stopped
        """
        self._require_ready("stop_all")
        return self._stop_active(fade_out_sec)

    def _stop_active(self, fade_out_sec: Optional[float]) -> List[int]:
        stopped = []
        for index in sorted(self.active_tracks):
            if self.scheduler.stop(index, fade_out=fade_out_sec) is not None:
                stopped.append(index)
        return stopped

    def set_master_gain(self, value: float) -> float:
        """Ramp the master gain to `value` clamped to [0, 1].

        Allowed before the engine is ready (the master bus exists from
        construction); rejected once destroyed.

        Returns:
            The clamped gain
        """
        if self.state is EngineState.DESTROYED:
            raise InvalidStateError("set_master_gain on a destroyed session")
        at = self.scheduler.start_instant()
        gain = self.mixer.set_master_gain(value, at)
        logger.info(f"MASTER GAIN: → {gain:.2f}")
        return gain

    def destroy(self) -> None:
        """Stop all tracks, release the device and end the session (idempotent)."""
        with self._state_lock:
            if self.state is EngineState.DESTROYED:
                return
            was_ready = self.state is EngineState.READY
            self.state = EngineState.DESTROYED

        if was_ready and self._stop_active(self.config.destroy_fade_sec):
            # Let the short fade play out before the device goes away
            fade_end = (self.now() + self.config.start_delay_sec
                        + self.config.destroy_fade_sec + self.config.stop_tail_sec)
            try:
                self.device.drain_until(fade_end)
            except Exception as e:
                logger.warning(f"Failed to drain device: {e}")

        try:
            self.device.close()
        except Exception as e:
            logger.warning(f"Failed to close device: {e}")

        self.mixer.clear()
        self._loop_buffers = []
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

        logger.info("Engine destroyed")
