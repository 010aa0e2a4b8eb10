"""UBX serial connection: send configuration frames over a serial port."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING

import serial

from ubx import CFG_VALSET, MsgID, compile_command, config_key_name, msg_name, pack_msg

if TYPE_CHECKING:
    from serial import Serial


def _valset_key_name(data: bytes) -> str | None:
    """Return the configuration item name carried by a CFG-VALSET frame."""
    if MsgID(data[2], data[3]) != CFG_VALSET or len(data) < 14:
        return None
    return config_key_name(int.from_bytes(data[10:14], "little"))


class UbxConnection:
    """Serial connection that transmits UBX frames.

    Only the outbound direction is handled; replies from the receiver are
    not read.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        timeout: float = 2.0,
        packet_log: str | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self._serial: Serial = serial.Serial(port, baudrate=baudrate, timeout=timeout)
        self._serial.reset_input_buffer()
        self._packet_log: IO[str] | None = None
        if packet_log:
            self._packet_log = open(packet_log, "a")
        self._log = log

    def close(self) -> None:
        if self._packet_log:
            self._packet_log.close()
            self._packet_log = None
        self._serial.close()

    def _log_ubx_packet(self, data: bytes, ts: float, out: bool) -> None:
        """Log a UBX binary packet to the packet log."""
        if not self._packet_log:
            return
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
        entry: dict[str, object] = {
            "t": dt.strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z",
            "tag": "UBX",
            "msg": msg_name(data[2], data[3]),
            "bin": data.hex(),
            "out": out,
        }
        key = _valset_key_name(data)
        if key:
            entry["key"] = key
        self._packet_log.write(json.dumps(entry) + "\n")
        self._packet_log.flush()

    def __enter__(self) -> UbxConnection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    def send_frame(self, frame: bytes) -> None:
        """Write a complete UBX frame."""
        ts = time.time()
        self._serial.write(frame)
        self._serial.flush()
        self._log_ubx_packet(frame, ts, out=True)
        if self._log:
            self._log.debug(f"TX {msg_name(frame[2], frame[3])} ({len(frame) - 8} bytes)")

    def send(self, cls: int, id: int, payload: bytes = b"") -> None:
        """Send a UBX message."""
        self.send_frame(pack_msg(cls, id, payload))

    def send_command(self, command: str) -> None:
        """Compile a textual CFG command and send it.

        Raises:
            UbxCommandError: if the command cannot be compiled
        """
        msg = compile_command(command)
        self.send(msg.cls, msg.id, msg.payload)
