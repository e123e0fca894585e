#!/usr/bin/env python3
"""
Command-line tool for sending control commands to a running looper.

Usage:
    python -m stemlooper.cli <address> [arg1] [arg2] ...

Examples:
    python -m stemlooper.cli /play_track 45
    python -m stemlooper.cli /stop_track 4
    python -m stemlooper.cli /master_gain 0.5
    python -m stemlooper.cli /start_default_music 1
"""

import sys
from stemlooper.osc import BroadcastUDPClient, PORT_CONTROL


def parse_argument(arg: str):
    """Parse a command-line argument to int, then float, else keep the string."""
    try:
        return int(arg)
    except ValueError:
        pass
    try:
        return float(arg)
    except ValueError:
        pass
    return arg


def send_osc_message(address: str, args: list, port: int = PORT_CONTROL, host: str = "255.255.255.255"):
    """Send one OSC command on the control bus."""
    with BroadcastUDPClient(host, port) as client:
        client.send_message(address, args)
        print(f"Sent to {host}:{port} → {address} {args}")


def main(argv=None):
    """CLI entry point for sending OSC commands."""
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) < 1:
        print("Usage: python -m stemlooper.cli <address> [arg1] [arg2] ...")
        print()
        print("Examples:")
        print("  python -m stemlooper.cli /play_track 45")
        print("  python -m stemlooper.cli /stop_track 4")
        print("  python -m stemlooper.cli /master_gain 0.5")
        print("  python -m stemlooper.cli /stop_all")
        sys.exit(1)

    address = argv[0]
    args = [parse_argument(arg) for arg in argv[1:]]

    send_osc_message(address, args)


if __name__ == "__main__":
    main()
