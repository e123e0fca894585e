#!/usr/bin/env python3
"""
Stem looper OSC infrastructure - control bus for the loop engine.

Classes:
    - ReusePortBlockingOSCUDPServer: Blocking OSC server with SO_REUSEPORT
    - BroadcastUDPClient: UDP client with SO_BROADCAST
    - MessageStatistics: Thread-safe message counter with formatted output
    - ControlServer: Maps control addresses onto a CommandRouter

Functions:
    - validate_port(port): Validate port in range 1-65535
    - validate_command_address(address): Validate /<command> address pattern

Constants:
    - PORT_CONTROL: Control message bus (8003)

OSC PROTOCOL (PORT_CONTROL 8003):
    /start_default_music [flag]   # start tracks 1-4 (flag ignored)
    /play_track [digits]          # 45 → start tracks 4 and 5
    /stop_track [digits]          # 45 → stop tracks 4 and 5
    /master_gain [gain]           # 0.0-1.0, ramped
    /stop_all                     # stop every active track
    /<anything else> ...          # forwarded untouched to the UI layer
"""

import re
import socket
import threading
from typing import Any, Optional, Tuple
from pythonosc import dispatcher
from pythonosc import osc_server
from pythonosc import udp_client

from stemlooper.log import get_logger

logger = get_logger("osc")


# ============================================================================
# CONSTANTS
# ============================================================================

# Control bus (dispatcher → looper); broadcast + SO_REUSEPORT for 1:N delivery
PORT_CONTROL = 8003

# Port validation range
PORT_MIN = 1
PORT_MAX = 65535

# Single-segment command addresses, e.g. /play_track
COMMAND_ADDRESS_PATTERN = re.compile(r'^/([a-z][a-z0-9_]*)$')

# OSC address → (router command, expected argument count)
CONTROL_ADDRESSES = {
    "/start_default_music": ("start_default_music", 1),
    "/play_track": ("play_track", 1),
    "/stop_track": ("stop_track", 1),
    "/master_gain": ("set_master_gain", 1),
    "/stop_all": ("stop_all", 0),
}


# ============================================================================
# SO_REUSEPORT SERVER CLASSES
# ============================================================================

class ReusePortBlockingOSCUDPServer(osc_server.BlockingOSCUDPServer):
    """BlockingOSCUDPServer with SO_REUSEPORT socket option enabled.

    Allows several processes (looper, UI, monitors) to bind the same control
    port and all receive the broadcast commands. On systems without
    SO_REUSEPORT, binding proceeds without it.
    """

    def server_bind(self):
        if hasattr(socket, 'SO_REUSEPORT'):
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        self.socket.bind(self.server_address)
        self.server_address = self.socket.getsockname()


# ============================================================================
# BROADCAST UDP CLIENT
# ============================================================================

class BroadcastUDPClient(udp_client.SimpleUDPClient):
    """UDP client with SO_BROADCAST enabled for broadcasting OSC messages.

    Args:
        address: Target IP address (use "255.255.255.255" for broadcast)
        port: Target UDP port
    """

    def __init__(self, address: str, port: int):
        super().__init__(address, port)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)

    def close(self):
        """Close the UDP socket."""
        if hasattr(self, '_sock') and self._sock:
            self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_port(port: int) -> None:
    """Validate UDP port number is in valid range.

    Raises:
        ValueError: If port is outside range 1-65535

    Examples:
        >>> validate_port(8003)  # OK
        >>> validate_port(0)  # Raises ValueError
    """
    if port < PORT_MIN or port > PORT_MAX:
        raise ValueError(f"Port must be in range {PORT_MIN}-{PORT_MAX}, got {port}")


def validate_command_address(address: str) -> Tuple[bool, Optional[str], Optional[str]]:
    """Validate a single-segment command address and extract the command name.

    Returns:
        Tuple of (is_valid, command, error_message)

    Examples:
        >>> validate_command_address("/start_party")
        (True, 'start_party', None)
        >>> validate_command_address("/led/0/0")
        (False, None, 'Invalid address pattern: /led/0/0')
    """
    match = COMMAND_ADDRESS_PATTERN.match(address)
    if not match:
        return False, None, f"Invalid address pattern: {address}"
    return True, match.group(1), None


# ============================================================================
# MESSAGE STATISTICS
# ============================================================================

class MessageStatistics:
    """Thread-safe message statistics tracker with formatted output.

    Typical counters:
        - total_messages: All received OSC messages
        - valid_messages: Messages routed to the engine
        - invalid_messages: Messages that failed validation
        - forwarded_messages: Messages handed to the UI layer

    Examples:
        >>> stats = MessageStatistics()
        >>> stats.increment('total_messages')
        >>> stats.get('total_messages')
        1
    """

    def __init__(self):
        self.counters = {}
        self.lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        with self.lock:
            self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    def get(self, counter_name: str) -> int:
        with self.lock:
            return self.counters.get(counter_name, 0)

    def print_stats(self, title: str = "STATISTICS") -> None:
        """Print formatted statistics to console.

        Output format:
            ============================================================
            TITLE
            ============================================================
            Counter Name: value
            ...
            ============================================================
        """
        print("\n" + "=" * 60)
        print(title)
        print("=" * 60)

        # Snapshot counters under lock, print without it
        with self.lock:
            snapshot = dict(self.counters)

        for name in sorted(snapshot.keys()):
            display_name = name.replace('_', ' ').title()
            print(f"{display_name}: {snapshot[name]}")

        print("=" * 60)


# ============================================================================
# CONTROL SERVER
# ============================================================================

class ControlServer:
    """OSC control server feeding a CommandRouter.

    Attributes:
        router: CommandRouter receiving validated commands
        port: UDP port to listen on
        stats: MessageStatistics for received messages
        server: Bound OSC server (created by bind())
    """

    def __init__(self, router, port: int = PORT_CONTROL, host: str = "0.0.0.0"):
        validate_port(port)
        self.router = router
        self.port = port
        self.host = host
        self.stats = MessageStatistics()
        self.server: Optional[ReusePortBlockingOSCUDPServer] = None

    def build_dispatcher(self) -> dispatcher.Dispatcher:
        disp = dispatcher.Dispatcher()
        for address in CONTROL_ADDRESSES:
            disp.map(address, self.handle_command_message)
        disp.set_default_handler(self.handle_forward_message)
        return disp

    def handle_command_message(self, address: str, *args: Any) -> None:
        """Validate a control message and route it to the engine."""
        self.stats.increment('total_messages')
        command, expected = CONTROL_ADDRESSES[address]

        if len(args) != expected:
            logger.warning(f"Expected {expected} argument(s) for {address}, got {len(args)}")
            self.stats.increment('invalid_messages')
            return

        arg = args[0] if args else None
        if isinstance(arg, str):
            logger.warning(f"Invalid argument type for {address}: {arg!r}")
            self.stats.increment('invalid_messages')
            return

        self.stats.increment('valid_messages')
        self.router.dispatch(command, arg)

    def handle_forward_message(self, address: str, *args: Any) -> None:
        """Forward any other command untouched to the UI layer."""
        self.stats.increment('total_messages')
        is_valid, command, error = validate_command_address(address)
        if not is_valid:
            logger.debug(error)
            self.stats.increment('invalid_messages')
            return

        self.stats.increment('forwarded_messages')
        self.router.dispatch(command, args[0] if len(args) == 1 else (list(args) or None))

    def bind(self) -> ReusePortBlockingOSCUDPServer:
        self.server = ReusePortBlockingOSCUDPServer((self.host, self.port), self.build_dispatcher())
        logger.info(f"Control server listening on {self.server.server_address[0]}:{self.server.server_address[1]}")
        return self.server

    def serve_forever(self) -> None:
        """Serve until shutdown() or KeyboardInterrupt propagates."""
        if self.server is None:
            self.bind()
        self.server.serve_forever()

    def shutdown(self) -> None:
        if self.server is not None:
            self.server.server_close()
            self.server = None
