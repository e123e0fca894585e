"""
Dispatcher command surface.

The upstream dispatcher (a function-calling language model in the full
installation) emits named commands with a single argument. CommandRouter maps
them onto EngineSession operations:

    start_default_music  any    start tracks 0-3 (argument ignored)
    play_track           int    one track per decimal digit, 1-8 → index 0-7
    stop_track           int    same digit decoding as play_track
    set_master_gain      float  0.0-1.0
    stop_all             -      stop every active track

Examples of digit decoding: 1 → [0], 45 → [3, 4], 12345678 → all tracks.
Digits 0 and 9 are ignored.

Any other command (e.g. start_party) is not the engine's business and is
forwarded untouched to the UI layer.
"""

from typing import Any, Callable, Dict, List, Optional

from stemlooper.config import TRACK_COUNT
from stemlooper.errors import LooperError
from stemlooper.log import get_logger

logger = get_logger("commands")

DEFAULT_MUSIC_TRACKS = (0, 1, 2, 3)


def decode_track_digits(value) -> List[int]:
    """Decode an integer whose decimal digits are track numbers 1-8.

    Args:
        value: Integer (or numeric string) such as 45 or 12345678

    Returns:
        Track indices (digit - 1) in digit order, without duplicates

    Raises:
        ValueError: If value is not an integer

    Examples:
        >>> decode_track_digits(45)
        [3, 4]
        >>> decode_track_digits(190)
        [0]
    """
    if isinstance(value, bool):
        raise ValueError(f"Track value must be an integer, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Track value must be an integer, got {value!r}")
        value = int(value)
    number = int(value)

    indices = []
    for digit in str(abs(number)):
        index = int(digit) - 1
        if 0 <= index < TRACK_COUNT and index not in indices:
            indices.append(index)
    return indices


class CommandRouter:
    """Routes dispatcher commands to an EngineSession.

    Engine rejections (InvalidState, InvalidArgument) are logged and never
    propagated back to the dispatcher.

    Attributes:
        session: EngineSession receiving the commands
        ui_forward: Callable(name, arg) for commands outside the engine
    """

    def __init__(self, session, ui_forward: Optional[Callable[[str, Any], None]] = None):
        self.session = session
        self.ui_forward = ui_forward
        self._handlers: Dict[str, Callable[[Any], Any]] = {
            'start_default_music': self.start_default_music,
            'play_track': self.play_track,
            'stop_track': self.stop_track,
            'set_master_gain': self.set_master_gain,
            'stop_all': self.stop_all,
        }

    @property
    def commands(self) -> List[str]:
        return sorted(self._handlers)

    def dispatch(self, name: str, arg: Any = None) -> Any:
        """Run one named command.

        Returns:
            The handler's result, or None for forwarded/rejected commands
        """
        handler = self._handlers.get(name)
        if handler is None:
            if self.ui_forward is not None:
                self.ui_forward(name, arg)
            else:
                logger.info(f"Forwarding '{name}' to UI layer (no UI attached)")
            return None

        try:
            return handler(arg)
        except LooperError as e:
            logger.warning(f"Command {name}({arg!r}) rejected: {e}")
        except (ValueError, TypeError) as e:
            logger.warning(f"Command {name}({arg!r}) has an invalid argument: {e}")
        return None

    def _start_tracks(self, indices) -> List[int]:
        return [i for i in indices if self.session.start_track(i)]

    def _stop_tracks(self, indices) -> List[int]:
        return [i for i in indices if self.session.stop_track(i)]

    def start_default_music(self, _arg=None) -> List[int]:
        """Start the default tracks 0-3. The argument is ignored."""
        return self._start_tracks(DEFAULT_MUSIC_TRACKS)

    def play_track(self, value) -> List[int]:
        indices = decode_track_digits(value)
        logger.info(f"Playing track(s) {value}: {[i + 1 for i in indices]}")
        return self._start_tracks(indices)

    def stop_track(self, value) -> List[int]:
        indices = decode_track_digits(value)
        logger.info(f"Stopping track(s) {value}: {[i + 1 for i in indices]}")
        return self._stop_tracks(indices)

    def set_master_gain(self, value) -> float:
        return self.session.set_master_gain(float(value))

    def stop_all(self, _arg=None) -> List[int]:
        return self.session.stop_all()
