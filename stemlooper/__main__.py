#!/usr/bin/env python3
"""
Run the stem looper: load 8 clips, then serve OSC control commands.

Usage:
    python -m stemlooper --config config/tracks.yaml
    python -m stemlooper --config config/tracks.yaml --device pulse --port 8003
    python -m stemlooper --config config/tracks.yaml --start-default

Blocks until Ctrl+C, then destroys the session (short fade on every active
track) and prints command statistics.
"""

import argparse
import os
import sys

from stemlooper import osc
from stemlooper.commands import CommandRouter
from stemlooper.config import load_config
from stemlooper.device import StreamDevice, find_audio_device
from stemlooper.engine import EngineSession
from stemlooper.errors import ConfigurationError, LoadFailure
from stemlooper.log import LOG_LEVEL_ENV, get_logger

logger = get_logger("main")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Stem looper - phase-aligned seamless loop engine")
    parser.add_argument(
        "--config",
        type=str,
        default="config/tracks.yaml",
        help="Path to YAML config file (default: config/tracks.yaml)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=osc.PORT_CONTROL,
        help=f"UDP port to listen for control commands (default: {osc.PORT_CONTROL})",
    )
    parser.add_argument(
        "--device",
        type=str,
        default=None,
        help="Audio device substring to match (e.g., 'pulse', 'MobilePre'). First matching output device is used.",
    )
    parser.add_argument(
        "--start-default",
        action="store_true",
        help="Start the default tracks (1-4) as soon as the engine is ready",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv(LOG_LEVEL_ENV, "INFO"),
        help="Logging verbosity (default: INFO)",
    )
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point.

    Exits with code 1 if the config is invalid, the port is out of range or
    in use, or any clip fails to load.
    """
    args = parse_args(argv)
    logger.setLevel(args.log_level)

    try:
        osc.validate_port(args.port)
    except ValueError as e:
        logger.error(f"{e}")
        sys.exit(1)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        logger.error(f"{e}")
        sys.exit(1)

    device_index = find_audio_device(args.device) if args.device else None
    device = StreamDevice(config.sample_rate, config.channels, config.blocksize, device=device_index)

    session = EngineSession(config, device=device)
    router = CommandRouter(session)

    try:
        on_ready = (lambda: router.dispatch('start_default_music', True)) if args.start_default else None
        loaded = session.load(on_ready=on_ready).result()
    except (ConfigurationError, LoadFailure, RuntimeError) as e:
        logger.error(f"{e}")
        session.destroy()
        sys.exit(1)

    if not loaded:
        session.destroy()
        sys.exit(1)

    control = osc.ControlServer(router, port=args.port)
    try:
        control.bind()
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {args.port} already in use")
        else:
            logger.error(f"{e}")
        session.destroy()
        sys.exit(1)

    logger.info("Waiting for commands... (Ctrl+C to stop)")
    try:
        control.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        control.shutdown()
        session.destroy()
        control.stats.print_stats("STEM LOOPER STATISTICS")


if __name__ == "__main__":
    main()
