"""
Error taxonomy for the stem looper engine.

The engine is fail-fast and never retries on its own:

- ConfigurationError: wrong clip count or malformed settings. Raised
  synchronously, before any asynchronous work is started.
- LoadFailure: fetch/decode/resample failed for one clip. The whole load is
  aborted and the session stays UNINITIALIZED.
- InvalidArgumentError: track index outside 0-7. No side effect.
- InvalidStateError: control call before READY or after DESTROYED. No side
  effect.
"""

from typing import Optional


class LooperError(Exception):
    """Base class for every error raised by the looper engine."""


class ConfigurationError(LooperError, ValueError):
    """Engine configuration is unusable (e.g. not exactly 8 clips)."""


class LoadFailure(LooperError, RuntimeError):
    """A clip could not be fetched, decoded or resampled.

    Attributes:
        clip_index: Index (0-7) of the clip that failed
        source: Source identifier of the failing clip
        cause: Underlying exception
    """

    def __init__(self, clip_index: int, source: str, cause: Optional[BaseException] = None):
        self.clip_index = clip_index
        self.source = source
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to load clip {clip_index} ({source}){detail}")


class InvalidArgumentError(LooperError, ValueError):
    """Track index outside 0-7."""


class InvalidStateError(LooperError, RuntimeError):
    """Operation not allowed in the session's current lifecycle state."""
