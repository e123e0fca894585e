"""
Output devices and the shared playback clock.

Both devices count rendered frames; `time` is that count divided by the
sample rate. This is the single clock every schedule (t0, starts, stops,
gain ramps) is expressed in, so scheduling stays sample accurate.

- OfflineDevice: manual clock advanced by render()/advance(). Used for tests
  and offline bouncing; needs no audio hardware.
- StreamDevice: sounddevice OutputStream whose callback pulls blocks from the
  mixer. sounddevice is imported on first use so the offline path works on
  machines without PortAudio.
"""

import time
from typing import Callable, Optional

import numpy as np

from stemlooper.log import get_logger

logger = get_logger("device")

# Upper bound on how long drain_until() waits for a running stream
DRAIN_TIMEOUT_SEC = 1.0

# Renderer signature: (block_start_frame, frames) -> float32 (frames, channels)
Renderer = Callable[[int, int], np.ndarray]


def find_audio_device(substring):
    """Find the first output device matching a substring.

    Args:
        substring (str): Substring to search for in device names (case-insensitive)

    Returns:
        int: Device index of first match, or None if no match found

    Examples:
        >>> find_audio_device("pulse")
        6
    """
    import sounddevice as sd

    devices = sd.query_devices()
    substring_lower = substring.lower()

    logger.info(f"Searching for device matching '{substring}'...")
    for i, device in enumerate(devices):
        marker = "*" if i == sd.default.device[1] else " "
        logger.info(f"{marker}{i:2d} {device['name']}")

    for i, device in enumerate(devices):
        if substring_lower in device['name'].lower() and device.get('max_output_channels', 0) > 0:
            logger.info(f"Selected device {i}: {device['name']}")
            return i

    logger.warning(f"No output device found matching '{substring}', using default device")
    return None


class OutputDevice:
    """Frame-counting output device base.

    Attributes:
        sample_rate: Output sample rate
        channels: Output channel count
        blocksize: Frames per rendered block
        frame: Frames rendered so far (the clock)
        closed: True once close() was called
    """

    def __init__(self, sample_rate: int = 48000, channels: int = 2, blocksize: int = 512):
        self.sample_rate = sample_rate
        self.channels = channels
        self.blocksize = blocksize
        self.frame = 0
        self.closed = False
        self.renderer: Optional[Renderer] = None

    @property
    def time(self) -> float:
        """Device clock in seconds."""
        return self.frame / self.sample_rate

    def attach(self, renderer: Renderer) -> None:
        self.renderer = renderer

    def _pull(self, frames: int) -> np.ndarray:
        """Render the next block and advance the clock."""
        if self.renderer is None:
            block = np.zeros((frames, self.channels), dtype=np.float32)
        else:
            block = self.renderer(self.frame, frames)
        self.frame += frames
        return block

    def drain_until(self, t: float) -> None:
        """Wait for the clock to reach `t` seconds. Nothing to wait for here."""

    def start(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True
        self.renderer = None


class OfflineDevice(OutputDevice):
    """Device with a manually advanced clock.

    Examples:
        >>> device = OfflineDevice(sample_rate=1000, channels=1)
        >>> device.advance(0.5).shape
        (500, 1)
        >>> device.time
        0.5
    """

    def render(self, frames: int) -> np.ndarray:
        """Render `frames` frames as one block."""
        if self.closed:
            raise RuntimeError("Device is closed")
        return self._pull(frames)

    def drain_until(self, t: float) -> None:
        """Render whatever is left up to `t` seconds (e.g. a final fade-out)."""
        if self.closed:
            return
        remaining = t - self.time
        if remaining > 0:
            self.advance(remaining)

    def advance(self, seconds: float) -> np.ndarray:
        """Render `seconds` of audio in blocksize chunks.

        Returns:
            The rendered audio, shape (frames, channels)
        """
        remaining = int(round(seconds * self.sample_rate))
        blocks = []
        while remaining > 0:
            frames = min(self.blocksize, remaining)
            blocks.append(self.render(frames))
            remaining -= frames
        if not blocks:
            return np.zeros((0, self.channels), dtype=np.float32)
        return np.concatenate(blocks, axis=0)


class StreamDevice(OutputDevice):
    """sounddevice output stream driven by the mixer.

    Attributes:
        device: sounddevice device index or None for the default
        stream: Open OutputStream once started
        underflows: Count of output underflows reported by PortAudio
    """

    def __init__(self, sample_rate: int = 48000, channels: int = 2, blocksize: int = 512,
                 device: Optional[int] = None):
        super().__init__(sample_rate, channels, blocksize)
        self.device = device
        self.stream = None
        self.underflows = 0

    def _callback(self, outdata, frames, time_info, status):
        if status.output_underflow:
            self.underflows += 1
        outdata[:] = self._pull(frames)

    def start(self) -> None:
        """Open and start the output stream (idempotent)."""
        if self.stream is not None:
            return
        if self.closed:
            raise RuntimeError("Device is closed")

        import sounddevice as sd

        try:
            self.stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.blocksize,
                dtype='float32',
                device=self.device,
                callback=self._callback,
            )
            self.stream.start()
        except Exception as e:
            self.stream = None
            raise RuntimeError(f"Failed to open output stream: {e}") from e

        logger.info(f"Output stream started: {self.sample_rate}Hz, {self.channels}ch, "
                    f"block {self.blocksize} (~{1000 * self.blocksize / self.sample_rate:.1f}ms)")

    def drain_until(self, t: float, timeout: float = DRAIN_TIMEOUT_SEC) -> None:
        """Block until the stream has played up to `t` seconds.

        Returns early after `timeout` seconds of wall time, or at once when
        no stream is running.
        """
        if self.stream is None:
            return
        deadline = time.monotonic() + timeout
        while self.time < t and time.monotonic() < deadline:
            time.sleep(self.blocksize / self.sample_rate)

    def close(self) -> None:
        """Stop and close the stream."""
        if self.stream is not None:
            try:
                self.stream.stop()
                self.stream.close()
            except Exception as e:
                logger.warning(f"Failed to close output stream: {e}")
            finally:
                self.stream = None
        if self.underflows:
            logger.warning(f"Output underflows during session: {self.underflows}")
        super().close()
