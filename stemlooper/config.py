"""
Engine configuration.

Defaults are the stem looper's tuning: 10 minute loop buffers,
60ms equal-power crossfade, 20ms/30ms track fades and an 80ms rebalancing
ramp whenever the number of active tracks changes.

YAML FORMAT:
    files:                      # exactly 8 clip sources (paths or URLs)
      - tracks/01.wav
      - ...
    looper:
      target_duration_sec: 600
      crossfade_ms: 60
      fade_in_sec: 0.02
      fade_out_sec: 0.03
      master_gain: 1.0
      auto_mix: true

Relative clip paths are resolved against the directory of the YAML file.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List

import yaml

from stemlooper.errors import ConfigurationError

TRACK_COUNT = 8


@dataclass
class EngineConfig:
    """Settings consumed by EngineSession at construction.

    Attributes:
        files: Ordered clip sources, one per track (must be 8 at load time)
        target_duration_sec: Minimum duration of every loop buffer
        crossfade_ms: Overlap crossfade length between repeats
        fade_in_sec: Default track fade-in
        fade_out_sec: Default track fade-out
        master_gain: Initial master gain (0.0-1.0)
        auto_mix: Rebalance active tracks to 1/sqrt(N)
        rebalance_ramp_sec: Ramp used when the active set changes size
        master_ramp_sec: Ramp used by set_master_gain
        start_delay_sec: Minimum lead between a control call and its effect
        stop_tail_sec: Extra time a stopped instance lives after its fade-out
        destroy_fade_sec: Fade-out used by destroy()
        sample_rate: Engine (device) sample rate every clip is resampled to
        channels: Output channel count
        blocksize: Device block size in frames
        endless: Wrap playback at the end of a loop buffer
    """
    files: List[str] = field(default_factory=list)
    target_duration_sec: float = 600.0
    crossfade_ms: float = 60.0
    fade_in_sec: float = 0.02
    fade_out_sec: float = 0.03
    master_gain: float = 1.0
    auto_mix: bool = True
    rebalance_ramp_sec: float = 0.08
    master_ramp_sec: float = 0.05
    start_delay_sec: float = 0.01
    stop_tail_sec: float = 0.01
    destroy_fade_sec: float = 0.01
    sample_rate: int = 48000
    channels: int = 2
    blocksize: int = 512
    endless: bool = False

    def validate(self) -> None:
        """Reject malformed values.

        The clip count is not checked here; EngineSession.load() owns that
        rule so a wrong count fails at load time, before any work starts.

        Raises:
            ConfigurationError: If any value is out of range
        """
        non_negative = (
            'target_duration_sec', 'crossfade_ms', 'fade_in_sec', 'fade_out_sec',
            'rebalance_ramp_sec', 'master_ramp_sec', 'start_delay_sec',
            'stop_tail_sec', 'destroy_fade_sec',
        )
        for name in non_negative:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value < 0:
                raise ConfigurationError(f"{name} must be a non-negative number, got {value!r}")

        if self.start_delay_sec <= 0:
            raise ConfigurationError(
                f"start_delay_sec must be positive (events are never scheduled at 'now'), "
                f"got {self.start_delay_sec}"
            )

        for name in ('sample_rate', 'channels', 'blocksize'):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive int, got {value!r}")

        if not 0.0 <= self.master_gain <= 1.0:
            raise ConfigurationError(f"master_gain must be in [0.0, 1.0], got {self.master_gain}")

        if not isinstance(self.files, (list, tuple)):
            raise ConfigurationError(f"files must be a list, got {type(self.files).__name__}")


def load_config(config_path) -> EngineConfig:
    """Load an EngineConfig from a YAML file.

    Args:
        config_path: Path to YAML config file

    Returns:
        Validated EngineConfig

    Raises:
        FileNotFoundError: If config file not found
        ConfigurationError: If YAML is invalid or contains unknown keys
    """
    config_path = Path(config_path)
    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse config {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError("Config root must be a mapping")

    section = raw.get('looper', {}) or {}
    if not isinstance(section, dict):
        raise ConfigurationError("'looper' section must be a mapping")

    values = dict(section)
    if 'files' in raw:
        values['files'] = raw['files']

    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown config keys: {', '.join(unknown)}")

    files = values.get('files') or []
    if not isinstance(files, list):
        raise ConfigurationError("'files' must be a list of clip sources")
    values['files'] = [_resolve_source(str(f), config_path.parent) for f in files]

    config = EngineConfig(**values)
    config.validate()
    return config


def _resolve_source(source: str, base_dir: Path) -> str:
    """Resolve a relative clip path against the config directory; URLs pass through."""
    if "://" in source or os.path.isabs(source):
        return source
    return str(base_dir / source)
