"""
Shared fixtures for stem looper tests.

Clips are short sine WAVs written with soundfile into a temp directory; the
engine runs on an OfflineDevice at a low sample rate so whole loop buffers
stay small and the clock is advanced by hand.
"""

import numpy as np
import pytest
import soundfile as sf

from stemlooper.config import EngineConfig, TRACK_COUNT
from stemlooper.engine import EngineSession

TEST_SAMPLE_RATE = 8000


def write_sine(path, duration_sec=0.5, sample_rate=TEST_SAMPLE_RATE, freq=220.0, channels=1,
               amplitude=0.3):
    """Write a sine WAV and return its path as a string."""
    num_samples = int(sample_rate * duration_sec)
    t = np.arange(num_samples) / sample_rate
    wave_data = amplitude * np.sin(2 * np.pi * freq * t)
    if channels > 1:
        wave_data = np.column_stack([wave_data] * channels)
    sf.write(str(path), wave_data, sample_rate)
    return str(path)


@pytest.fixture
def clip_files(tmp_path):
    """Eight mono sine clips, 0.5s each, 220Hz..920Hz."""
    clips_dir = tmp_path / "clips"
    clips_dir.mkdir()
    return [
        write_sine(clips_dir / f"{i + 1:02d}.wav", freq=220.0 + 100 * i)
        for i in range(TRACK_COUNT)
    ]


@pytest.fixture
def small_config(clip_files):
    """Config with 2s loop buffers at the test sample rate."""
    return EngineConfig(
        files=list(clip_files),
        target_duration_sec=2.0,
        crossfade_ms=10.0,
        sample_rate=TEST_SAMPLE_RATE,
        channels=2,
        blocksize=256,
    )


@pytest.fixture
def session(small_config):
    """Unloaded session on an OfflineDevice."""
    session = EngineSession(small_config)
    yield session
    session.destroy()


@pytest.fixture
def ready_session(session):
    """Session that finished loading all 8 clips."""
    assert session.load().result(timeout=30) is True
    return session
