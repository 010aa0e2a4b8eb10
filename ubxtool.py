#!/usr/bin/env python3
"""UBX GPS receiver configuration tool."""

from __future__ import annotations

import argparse
import logging
import sys

import serial

from connection import UbxConnection
from ubx import UbxCommandError, build_cmd, format_hex


def read_command_file(path: str) -> list[str]:
    """Read commands from a script file, one per line.

    Blank lines and lines starting with '#' are ignored.
    """
    commands = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            commands.append(line)
    return commands


def compile_commands(commands: list[str], log: logging.Logger) -> list[bytes]:
    """Compile all commands before anything is sent.

    Raises:
        ValueError: naming the first command that cannot be compiled
    """
    frames = []
    for command in commands:
        try:
            frame = build_cmd(command)
        except UbxCommandError as e:
            raise ValueError(f"{command}: {e}") from e
        log.debug(f"compiled {command} -> {format_hex(frame)}")
        frames.append(frame)
    return frames


def main() -> int:
    """Main entry point for ubxtool CLI."""
    parser = argparse.ArgumentParser(
        description="UBX GPS receiver configuration tool",
        prog="ubxtool",
    )

    parser.add_argument(
        "commands",
        nargs="*",
        metavar="COMMAND",
        help='Configuration command, e.g. "CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 1"',
    )
    parser.add_argument(
        "-d", "--device", default="/dev/ttyUSB0", help="Serial device (default: /dev/ttyUSB0)"
    )
    parser.add_argument(
        "-s", "--speed", type=int, default=9600, help="Baud rate (default: 9600)"
    )
    parser.add_argument(
        "-f",
        "--file",
        metavar="FILE",
        help="Read commands from FILE, one per line ('#' starts a comment line)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the encoded frames as hex instead of sending them",
    )
    parser.add_argument(
        "--packet-log", metavar="FILE", help="Append sent frames to FILE as JSON lines"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug messages"
    )

    args = parser.parse_args()

    logging.basicConfig(
        format="%(levelname)s: %(message)s",
        level=logging.DEBUG if args.verbose else logging.WARNING,
    )
    log = logging.getLogger("ubxtool")

    commands = list(args.commands)
    if args.file:
        try:
            commands.extend(read_command_file(args.file))
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if not commands:
        parser.print_help()
        return 0

    try:
        frames = compile_commands(commands, log)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.dry_run:
        for command, frame in zip(commands, frames):
            print(f"{command}: {format_hex(frame)}")
        return 0

    try:
        with UbxConnection(
            args.device, baudrate=args.speed, packet_log=args.packet_log, log=log
        ) as conn:
            for command, frame in zip(commands, frames):
                conn.send_frame(frame)
                log.info(f"sent {command}")
    except serial.SerialException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Sent {len(frames)} command(s) to {args.device}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
