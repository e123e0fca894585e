"""
Decoder/Resampler - turns encoded clips into engine-rate PCM buffers.

PIPELINE (per clip, strictly in index order):
1. fetch_clip(): read raw bytes from a local path, file:// URI or http(s) URL
   (requests)
2. decode_clip(): decode to float32 PCM at the clip's native rate (soundfile)
3. resample_buffer(): polyphase resample to the engine sample rate (scipy)

ClipLoader drives the pipeline as a small state machine ("loading clip k of
8"). The first failure raises LoadFailure carrying the clip index; clips after
it are never fetched, so no partial engine state ever becomes visible.
"""

import io
import math
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import requests
import soundfile as sf
from scipy.signal import resample_poly

from stemlooper.errors import LoadFailure
from stemlooper.log import get_logger

logger = get_logger("decoder")

# Network fetch timeout for http(s) clip sources
FETCH_TIMEOUT_SEC = 30


@dataclass(frozen=True)
class DecodedBuffer:
    """PCM audio at a known sample rate.

    Attributes:
        data: float32 array, shape (frames, channels)
        sample_rate: Samples per second
    """
    data: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return self.data.shape[1]

    @property
    def frames(self) -> int:
        return self.data.shape[0]

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    def channel(self, index: int) -> np.ndarray:
        """Sample data of one channel."""
        return self.data[:, index]


def fetch_clip(source: str, timeout: float = FETCH_TIMEOUT_SEC) -> bytes:
    """Read the raw encoded bytes of a clip.

    Args:
        source: Local path, file:// URI or http(s):// URL
        timeout: Network timeout in seconds (URLs only)

    Returns:
        Encoded clip bytes

    Raises:
        FileNotFoundError: If a local clip does not exist
        requests.RequestException: If a remote clip cannot be fetched or the
            server answers with an error status
    """
    parsed = urllib.parse.urlparse(source)

    if parsed.scheme in ('http', 'https'):
        response = requests.get(source, timeout=timeout)
        response.raise_for_status()
        return response.content

    if parsed.scheme == 'file':
        path = Path(urllib.request.url2pathname(parsed.path))
    else:
        path = Path(source)

    if not path.exists():
        raise FileNotFoundError(f"Clip not found: {path}")
    return path.read_bytes()


def decode_clip(data: bytes) -> DecodedBuffer:
    """Decode encoded audio bytes to float32 PCM at the native rate.

    Args:
        data: Encoded audio (WAV, FLAC, OGG, ... anything libsndfile reads)

    Returns:
        DecodedBuffer with shape (frames, channels)

    Raises:
        ValueError: If the clip decodes to zero frames
        soundfile.LibsndfileError: If the bytes are not decodable audio
    """
    samples, sr = sf.read(io.BytesIO(data), dtype='float32', always_2d=True)

    if samples.shape[0] == 0:
        raise ValueError("Clip contains no audio frames")

    return DecodedBuffer(data=np.ascontiguousarray(samples), sample_rate=int(sr))


def resample_buffer(buffer: DecodedBuffer, sample_rate: int) -> DecodedBuffer:
    """Resample a decoded buffer to the engine sample rate.

    Uses scipy's polyphase resampler with the up/down ratio reduced by gcd,
    then trims or zero-pads to exactly max(1, round(duration * sample_rate))
    frames so every clip's duration is preserved at the new rate.

    Args:
        buffer: Decoded clip at its native rate
        sample_rate: Target (engine) sample rate

    Returns:
        The same buffer if rates already match, else a new DecodedBuffer
    """
    if buffer.sample_rate == sample_rate:
        return buffer

    divisor = math.gcd(buffer.sample_rate, sample_rate)
    up = sample_rate // divisor
    down = buffer.sample_rate // divisor

    resampled = resample_poly(buffer.data, up, down, axis=0).astype(np.float32)

    target_frames = max(1, round(buffer.duration * sample_rate))
    if resampled.shape[0] > target_frames:
        resampled = resampled[:target_frames]
    elif resampled.shape[0] < target_frames:
        pad = np.zeros((target_frames - resampled.shape[0], buffer.channels), dtype=np.float32)
        resampled = np.concatenate([resampled, pad], axis=0)

    logger.debug(f"Resampled {buffer.frames} frames @ {buffer.sample_rate}Hz "
                 f"→ {target_frames} frames @ {sample_rate}Hz")

    return DecodedBuffer(data=np.ascontiguousarray(resampled), sample_rate=sample_rate)


class ClipLoader:
    """Sequential fetch → decode → resample state machine.

    Processes clips strictly in index order. Each step() handles exactly one
    clip; a failure raises LoadFailure and leaves the loader stopped at that
    index, so later clips are never attempted.

    Attributes:
        sources: Clip source identifiers, in track order
        sample_rate: Engine sample rate every clip is resampled to
        index: Index of the next clip to load
        buffers: Buffers loaded so far
        failed: LoadFailure that stopped the loader, if any
    """

    def __init__(self, sources: Sequence[str], sample_rate: int):
        self.sources = list(sources)
        self.sample_rate = sample_rate
        self.index = 0
        self.buffers: List[DecodedBuffer] = []
        self.failed: Optional[LoadFailure] = None

    @property
    def done(self) -> bool:
        return self.failed is not None or self.index >= len(self.sources)

    def step(self) -> DecodedBuffer:
        """Load the next clip.

        Returns:
            The resampled buffer for clip `index`

        Raises:
            LoadFailure: If fetching, decoding or resampling fails
            RuntimeError: If the loader already finished or failed
        """
        if self.done:
            raise RuntimeError("ClipLoader has no clips left to load")

        index = self.index
        source = self.sources[index]
        logger.info(f"Loading clip {index + 1}/{len(self.sources)}: {source}")

        try:
            raw = fetch_clip(source)
            decoded = decode_clip(raw)
            buffer = resample_buffer(decoded, self.sample_rate)
        except Exception as e:
            self.failed = LoadFailure(index, source, e)
            raise self.failed from e

        self.buffers.append(buffer)
        self.index += 1
        return buffer

    def run(self) -> List[DecodedBuffer]:
        """Load every remaining clip in order.

        Returns:
            All buffers, one per source

        Raises:
            LoadFailure: On the first clip that fails
        """
        while not self.done:
            self.step()
        return list(self.buffers)
