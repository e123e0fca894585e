"""
Tests for EngineSession: lifecycle, loading, phase-aligned playback,
equal-power mixing, master gain and teardown.

All sessions run on an OfflineDevice, so the clock only moves when a test
renders audio with device.advance().
"""

import math
import threading
from unittest.mock import patch

import numpy as np
import pytest

from stemlooper import decoder
from stemlooper import engine as engine_module
from stemlooper.config import EngineConfig
from stemlooper.decoder import ClipLoader
from stemlooper.device import OfflineDevice
from stemlooper.engine import EngineSession, EngineState
from stemlooper.errors import (
    ConfigurationError,
    InvalidArgumentError,
    InvalidStateError,
    LoadFailure,
)

from conftest import TEST_SAMPLE_RATE, write_sine


def settle_time(session, fade=None):
    """Instant by which every ramp scheduled 'now' has finished."""
    config = session.config
    fade = config.fade_in_sec if fade is None else fade
    return session.now() + config.start_delay_sec + max(fade, config.rebalance_ramp_sec) + 1e-3


def track_gain(session, index, t):
    return session.mixer.slots[index].gain.value_at(t)


class TestConstruction:
    """Test session construction."""

    def test_initial_state(self, session):
        assert session.state is EngineState.UNINITIALIZED
        assert not session.ready
        assert not session.buffers_ready
        assert session.t0 is None
        assert session.active_tracks == frozenset()
        assert isinstance(session.device, OfflineDevice)
        assert session.sample_rate == TEST_SAMPLE_RATE

    def test_invalid_config_rejected(self, clip_files):
        with pytest.raises(ConfigurationError):
            EngineSession(EngineConfig(files=clip_files, crossfade_ms=-1))

    def test_context_manager_destroys(self, small_config):
        with EngineSession(small_config) as session:
            pass
        assert session.state is EngineState.DESTROYED


class TestLoad:
    """Test the asynchronous clip pipeline."""

    def test_wrong_clip_count(self, small_config):
        """Test a 7-clip config fails synchronously with no work started."""
        small_config.files = small_config.files[:7]
        session = EngineSession(small_config)

        with patch.object(engine_module, "ClipLoader") as mock_loader:
            with pytest.raises(ConfigurationError):
                session.load()

        mock_loader.assert_not_called()
        assert session.state is EngineState.UNINITIALIZED
        assert session._executor is None
        session.destroy()

    def test_successful_load(self, session):
        ready_calls = []
        future = session.load(on_ready=lambda: ready_calls.append(session.state))

        assert future.result(timeout=30) is True
        assert ready_calls == [EngineState.READY]
        assert session.ready
        assert session.buffers_ready
        assert session.t0 == 0.0

    def test_loop_buffers_cover_target(self, ready_session):
        for index in range(8):
            loop = ready_session.loop_buffer(index)
            assert loop.sample_rate == TEST_SAMPLE_RATE
            assert loop.duration >= ready_session.config.target_duration_sec
            assert loop.crossfade_frames == 80
            assert not loop.data.flags.writeable

    def test_clips_resampled_to_engine_rate(self, small_config, tmp_path):
        small_config.files[4] = write_sine(tmp_path / "hires.wav", sample_rate=16000)
        session = EngineSession(small_config)

        assert session.load().result(timeout=30) is True
        loop = session.loop_buffer(4)
        assert loop.sample_rate == TEST_SAMPLE_RATE
        assert loop.clip_frames == 4000
        session.destroy()

    def test_failure_aborts_load(self, small_config, tmp_path):
        """Test one bad clip fails the whole load with its index."""
        missing = str(tmp_path / "missing.wav")
        small_config.files[2] = missing
        session = EngineSession(small_config)
        errors = []
        ready_calls = []

        with patch("stemlooper.decoder.fetch_clip", wraps=decoder.fetch_clip) as mock_fetch:
            result = session.load(on_ready=lambda: ready_calls.append(True),
                                  on_error=errors.append).result(timeout=30)

        assert result is False
        assert ready_calls == []
        assert len(errors) == 1
        assert isinstance(errors[0], LoadFailure)
        assert errors[0].clip_index == 2
        assert mock_fetch.call_count == 3
        assert session.state is EngineState.UNINITIALIZED
        assert not session.buffers_ready
        assert session.t0 is None
        with pytest.raises(InvalidStateError):
            session.start_track(0)
        session.destroy()

    def test_retry_after_failure(self, small_config, tmp_path):
        missing = tmp_path / "late.wav"
        small_config.files[7] = str(missing)
        session = EngineSession(small_config)

        assert session.load().result(timeout=30) is False
        write_sine(missing)
        assert session.load().result(timeout=30) is True
        assert session.ready
        session.destroy()

    def test_load_when_ready_rejected(self, ready_session):
        with pytest.raises(InvalidStateError):
            ready_session.load()

    def test_load_is_not_reentrant(self, session):
        """Test a second load while the first is running is rejected."""
        release = threading.Event()

        def slow_loader(*args, **kwargs):
            release.wait(timeout=10)
            return ClipLoader(*args, **kwargs)

        with patch.object(engine_module, "ClipLoader", side_effect=slow_loader):
            future = session.load()
            assert session.state is EngineState.LOADING
            with pytest.raises(InvalidStateError):
                session.load()
            release.set()
            assert future.result(timeout=30) is True

    def test_destroy_during_load(self, session):
        """Test buffers built after destroy() are discarded."""
        release = threading.Event()
        errors = []

        def slow_loader(*args, **kwargs):
            release.wait(timeout=10)
            return ClipLoader(*args, **kwargs)

        with patch.object(engine_module, "ClipLoader", side_effect=slow_loader):
            future = session.load(on_error=errors.append)
            session.destroy()
            release.set()
            assert future.result(timeout=30) is False

        assert session.state is EngineState.DESTROYED
        assert isinstance(errors[0], InvalidStateError)
        assert not session.buffers_ready

    def test_loop_buffer_before_ready(self, session):
        with pytest.raises(InvalidStateError):
            session.loop_buffer(0)


class TestArgumentsAndState:
    """Test rejected calls have no side effects."""

    @pytest.mark.parametrize("index", [-1, 8, 100, True, 1.0, "1", None])
    def test_invalid_index(self, ready_session, index):
        with pytest.raises(InvalidArgumentError):
            ready_session.start_track(index)
        with pytest.raises(InvalidArgumentError):
            ready_session.stop_track(index)
        assert ready_session.active_tracks == frozenset()

    def test_control_before_ready(self, session):
        with pytest.raises(InvalidStateError):
            session.start_track(0)
        with pytest.raises(InvalidStateError):
            session.stop_track(0)
        with pytest.raises(InvalidStateError):
            session.stop_all()

    def test_master_gain_allowed_before_ready(self, session):
        assert session.set_master_gain(0.5) == 0.5


class TestPlayback:
    """Test starting and stopping tracks."""

    def test_start_and_stop(self, ready_session):
        assert ready_session.start_track(0) is True
        assert ready_session.active_tracks == frozenset({0})
        assert ready_session.stop_track(0) is True
        assert ready_session.active_tracks == frozenset()

    def test_start_active_track_is_noop(self, ready_session):
        ready_session.start_track(3)
        slot = ready_session.mixer.slots[3]
        instance = slot.instance
        ramps = list(slot.gain.ramps)

        assert ready_session.start_track(3) is False
        assert slot.instance is instance
        assert slot.gain.ramps == ramps

    def test_stop_inactive_track_is_noop(self, ready_session):
        assert ready_session.stop_track(6) is False
        assert ready_session.mixer.slots[6].gain.ramps == []

    def test_restart_during_fade_out(self, ready_session):
        """Test a track restarted while fading out neither clicks nor doubles up."""
        device = ready_session.device
        slot = ready_session.mixer.slots[0]
        ready_session.start_track(0)
        steady_peak = np.abs(device.advance(0.8)[800:]).max()

        when = ready_session.now() + ready_session.config.start_delay_sec
        ready_session.stop_track(0)
        old = slot.releasing[-1]
        ready_session.start_track(0)
        new = slot.instance

        assert old.stop_frame == new.start_frame
        assert abs((new.offset_frames - new.start_frame) - (old.offset_frames - old.start_frame)) <= 1

        before = track_gain(ready_session, 0, when - 1 / TEST_SAMPLE_RATE)
        assert track_gain(ready_session, 0, when) == pytest.approx(before)
        assert track_gain(ready_session, 0, when) == pytest.approx(1.0)

        restart = device.advance(0.2)
        assert np.abs(restart).max() <= steady_peak * 1.01 + 1e-6

    def test_phase_alignment(self, ready_session):
        """Test a track started T after t0 plays from T mod loop duration."""
        sr = ready_session.sample_rate
        tolerance = ready_session.config.start_delay_sec + 1 / sr

        ready_session.device.advance(1.3)
        ready_session.start_track(5)
        ready_session.device.advance(1.7)
        ready_session.start_track(6)

        for index, started_at in ((5, 1.3), (6, 3.0)):
            instance = ready_session.mixer.slots[index].instance
            duration = ready_session.loop_buffer(index).duration
            expected = (started_at - ready_session.t0) % duration
            assert abs(instance.offset_frames / sr - expected) <= tolerance

    def test_tracks_share_reference(self, ready_session):
        """Test every instance maps buffer frame 0 onto t0 (mod loop length)."""
        for index, delay in ((0, 0.0), (1, 0.37), (2, 1.91), (3, 2.6)):
            ready_session.device.advance(delay)
            ready_session.start_track(index)

        t0_frame = round(ready_session.t0 * ready_session.sample_rate)
        for index in range(4):
            instance = ready_session.mixer.slots[index].instance
            frames = instance.buffer.frames
            drift = (instance.start_frame - instance.offset_frames - t0_frame) % frames
            assert min(drift, frames - drift) <= 1

    def test_start_never_in_past(self, ready_session):
        ready_session.device.advance(0.5)
        now = ready_session.now()
        ready_session.start_track(0, at=0.1)
        instance = ready_session.mixer.slots[0].instance
        assert instance.start_frame / ready_session.sample_rate >= now + ready_session.config.start_delay_sec - 1e-9

    def test_scheduled_start(self, ready_session):
        ready_session.start_track(2, at=1.0)
        instance = ready_session.mixer.slots[2].instance
        assert instance.start_frame == ready_session.sample_rate

    def test_audio_output(self, ready_session):
        """Test a started track is audible and silent again after its stop."""
        ready_session.start_track(0)
        audio = ready_session.device.advance(0.5)
        assert audio.shape == (4000, 2)
        assert np.abs(audio[800:]).max() > 0.1

        ready_session.stop_track(0)
        audio = ready_session.device.advance(0.5)
        assert not audio[800:].any()
        assert ready_session.mixer.slots[0].releasing == []

    def test_stop_all(self, ready_session):
        for index in (1, 4, 7):
            ready_session.start_track(index)
        assert ready_session.stop_all() == [1, 4, 7]
        assert ready_session.active_tracks == frozenset()
        assert ready_session.stop_all() == []


class TestEqualPowerMixing:
    """Test per-track gains converge to 1/sqrt(N)."""

    @pytest.mark.parametrize("count", [1, 2, 4, 8])
    def test_convergence(self, ready_session, count):
        for index in range(count):
            ready_session.start_track(index)
        t = settle_time(ready_session)

        for index in range(count):
            assert track_gain(ready_session, index, t) == pytest.approx(1 / math.sqrt(count))

        # Rendering past the ramps keeps the settled values
        ready_session.device.advance(0.2)
        for index in range(count):
            assert track_gain(ready_session, index, ready_session.now()) == pytest.approx(1 / math.sqrt(count))

    def test_staggered_starts(self, ready_session):
        ready_session.start_track(0)
        ready_session.device.advance(0.3)
        ready_session.start_track(1)
        ready_session.device.advance(0.3)
        ready_session.start_track(2)
        t = settle_time(ready_session)
        for index in range(3):
            assert track_gain(ready_session, index, t) == pytest.approx(1 / math.sqrt(3))

    def test_stop_rebalances_remaining(self, ready_session):
        for index in range(4):
            ready_session.start_track(index)
        ready_session.device.advance(0.2)
        ready_session.stop_track(2)

        t = settle_time(ready_session, fade=ready_session.config.fade_out_sec)
        assert track_gain(ready_session, 2, t) == 0.0
        for index in (0, 1, 3):
            assert track_gain(ready_session, index, t) == pytest.approx(1 / math.sqrt(3))

    def test_auto_mix_disabled(self, small_config):
        small_config.auto_mix = False
        session = EngineSession(small_config)
        session.load().result(timeout=30)
        for index in range(3):
            session.start_track(index)
        t = settle_time(session)
        for index in range(3):
            assert track_gain(session, index, t) == 1.0
        session.destroy()

    def test_gain_never_jumps(self, ready_session):
        """Test a new start continues each running track from its current gain."""
        ready_session.start_track(0)
        ready_session.device.advance(0.2)
        now = ready_session.now()
        before = track_gain(ready_session, 0, now + ready_session.config.start_delay_sec)

        ready_session.start_track(1)
        after = track_gain(ready_session, 0, now + ready_session.config.start_delay_sec)
        assert after == pytest.approx(before)


class TestMasterGain:
    """Test master gain ramping and clamping."""

    @pytest.mark.parametrize("requested,expected", [(0.5, 0.5), (1.5, 1.0), (-0.3, 0.0), (0, 0.0)])
    def test_clamped(self, ready_session, requested, expected):
        assert ready_session.set_master_gain(requested) == expected
        t = ready_session.now() + ready_session.config.start_delay_sec + ready_session.config.master_ramp_sec
        assert ready_session.mixer.master.value_at(t + 1e-3) == pytest.approx(expected)

    def test_ramped_not_stepped(self, ready_session):
        ready_session.set_master_gain(0.0)
        start = ready_session.now() + ready_session.config.start_delay_sec
        mid = start + ready_session.config.master_ramp_sec / 2
        assert ready_session.mixer.master.value_at(start) == pytest.approx(1.0)
        assert ready_session.mixer.master.value_at(mid) == pytest.approx(0.5)

    def test_scales_output(self, ready_session):
        """Test settled output equals the loop buffer times the master gain."""
        ready_session.start_track(0)
        ready_session.device.advance(0.5)
        ready_session.set_master_gain(0.5)
        ready_session.device.advance(0.1)

        block_start = ready_session.device.frame
        quiet = ready_session.device.advance(0.5)

        instance = ready_session.mixer.slots[0].instance
        position = instance.offset_frames + (block_start - instance.start_frame)
        expected = ready_session.loop_buffer(0).data[position:position + len(quiet), 0] * 0.5
        np.testing.assert_allclose(quiet[:, 0], expected, atol=1e-6)
        np.testing.assert_allclose(quiet[:, 1], expected, atol=1e-6)


class TestDestroy:
    """Test teardown."""

    def test_destroy(self, ready_session):
        ready_session.start_track(0)
        ready_session.start_track(1)
        ready_session.destroy()

        assert ready_session.state is EngineState.DESTROYED
        assert ready_session.device.closed
        assert ready_session.active_tracks == frozenset()
        assert not ready_session.buffers_ready

    def test_destroy_renders_fade_out(self, ready_session):
        """Test destroy plays the short fade before closing the device."""
        ready_session.start_track(0)
        ready_session.device.advance(0.5)
        config = ready_session.config
        fade_end = (ready_session.now() + config.start_delay_sec
                    + config.destroy_fade_sec + config.stop_tail_sec)

        ready_session.destroy()
        assert ready_session.device.frame >= round(fade_end * TEST_SAMPLE_RATE)
        assert ready_session.device.closed

    def test_destroy_idle_does_not_drain(self, ready_session):
        frame = ready_session.device.frame
        ready_session.destroy()
        assert ready_session.device.frame == frame

    def test_destroy_twice(self, ready_session):
        ready_session.destroy()
        ready_session.destroy()
        assert ready_session.state is EngineState.DESTROYED

    def test_destroy_unloaded(self, session):
        session.destroy()
        assert session.state is EngineState.DESTROYED

    def test_calls_after_destroy(self, ready_session):
        ready_session.destroy()
        with pytest.raises(InvalidStateError):
            ready_session.start_track(0)
        with pytest.raises(InvalidStateError):
            ready_session.stop_track(0)
        with pytest.raises(InvalidStateError):
            ready_session.load()
        with pytest.raises(InvalidStateError):
            ready_session.set_master_gain(0.5)
