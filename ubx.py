"""UBX protocol implementation: CFG command compiler, framing, and checksum."""

from __future__ import annotations

import logging
import math
import re
import struct
from dataclasses import dataclass
from enum import Enum

from ubx_keys import CONFIG_ITEM_ROWS

# Sync bytes
SYNC1 = 0xB5
SYNC2 = 0x62

# Message classes
CLS_CFG = 0x06

# Command text limits
CMD_PREFIX = "CFG-"
MAX_ARGS = 32  # tokens kept per command; the rest are dropped
VALSET_ARGS = 7  # CFG-VALSET ver layer res0 res1 key value
STR_FIELD_LEN = 32

# Output buffer size callers normally provide to gen_cmd()
CMD_BUFFER_SIZE = 128

# Header (sync, class, id, length) plus checksum
FRAME_OVERHEAD = 8


class MsgID:
    """Combined class/id identifier for UBX messages."""

    def __init__(self, cls: int, id: int) -> None:
        self.cls = cls
        self.id = id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MsgID):
            return NotImplemented
        return self.cls == other.cls and self.id == other.id

    def __hash__(self) -> int:
        return hash((self.cls, self.id))

    def __repr__(self) -> str:
        return f"MsgID(0x{self.cls:02X}, 0x{self.id:02X})"


# ============================================================================
# Errors
# ============================================================================


class UbxCommandError(ValueError):
    """A command string could not be compiled into a UBX frame."""


class InvalidInput(UbxCommandError):
    """Missing or empty command, or no usable output buffer."""


class UnknownCommand(UbxCommandError):
    """First token is not CFG-<NAME> for a known command."""


class UnknownConfigKey(UbxCommandError):
    """CFG-VALSET key is not in the configuration item database."""


class InvalidArgumentCount(UbxCommandError):
    """CFG-VALSET was not given exactly one key/value pair."""


# ============================================================================
# Field Types
# ============================================================================


class FieldType(Enum):
    """UBX field types. Values are the vendor type codes."""

    U1 = "U1"
    U2 = "U2"
    U4 = "U4"
    U8 = "U8"
    I1 = "I1"
    I2 = "I2"
    I4 = "I4"
    R4 = "R4"
    R8 = "R8"
    S32 = "S32"

    @property
    def size(self) -> int:
        return _FIELD_SIZES[self]

    @property
    def is_float(self) -> bool:
        return self in _FLOAT_FORMATS


_FIELD_SIZES: dict[FieldType, int] = {
    FieldType.U1: 1,
    FieldType.U2: 2,
    FieldType.U4: 4,
    FieldType.U8: 8,
    FieldType.I1: 1,
    FieldType.I2: 2,
    FieldType.I4: 4,
    FieldType.R4: 4,
    FieldType.R8: 8,
    FieldType.S32: STR_FIELD_LEN,
}

_FLOAT_FORMATS: dict[FieldType, str] = {
    FieldType.R4: "<f",
    FieldType.R8: "<d",
}

U1 = FieldType.U1
U2 = FieldType.U2
U4 = FieldType.U4
I1 = FieldType.I1
I2 = FieldType.I2
I4 = FieldType.I4
R4 = FieldType.R4
R8 = FieldType.R8
S32 = FieldType.S32


# ============================================================================
# Schemas
# ============================================================================


@dataclass(frozen=True)
class CommandSchema:
    """Wire layout of a CFG command: message id and ordered field types."""

    name: str
    msg_id: int
    fields: tuple[FieldType, ...]

    @property
    def msg(self) -> MsgID:
        return MsgID(CLS_CFG, self.msg_id)


@dataclass(frozen=True)
class ConfigItem:
    """Configuration item addressed by CFG-VALSET."""

    name: str
    key: int
    type: FieldType

    @property
    def size(self) -> int:
        """Value size encoded in bits 28..30 of the key."""
        return {1: 1, 2: 1, 3: 2, 4: 4, 5: 8}.get((self.key >> 28) & 0x07, 0)


# Argument order follows the receiver documentation, e.g.
#   CFG-PRT   portid res0 res1 mode baudrate inmask outmask flags
#   CFG-RATE  meas nav time
#   CFG-TMODE tmode posx posy posz posvar svinmindur svinvarlimit
#   CFG-VALSET ver layer res0 res1 key value
_SCHEMAS: tuple[CommandSchema, ...] = (
    CommandSchema("PRT", 0x00, (U1, U1, U2, U4, U4, U2, U2, U2, U2)),
    CommandSchema("USB", 0x1B, (U2, U2, U2, U2, U2, U2, S32, S32, S32)),
    CommandSchema("MSG", 0x01, (U1, U1, U1, U1, U1, U1, U1, U1)),
    CommandSchema("NMEA", 0x17, (U1, U1, U1, U1)),
    CommandSchema("RATE", 0x08, (U2, U2, U2)),
    CommandSchema("CFG", 0x09, (U4, U4, U4, U1)),
    CommandSchema("TP", 0x07, (U4, U4, I1, U1, U2, I2, I2, I4)),
    CommandSchema(
        "NAV2",
        0x1A,
        (U1, U1, U2, U1, U1, U1, U1, I4, U1, U1, U1, U1, U1, U1, U2, U2, U2, U2, U2, U1, U1, U2, U4, U4),
    ),
    CommandSchema("DAT", 0x06, (R8, R8, R4, R4, R4, R4, R4, R4, R4)),
    CommandSchema("INF", 0x02, (U1, U1, U1, U1, U1, U1, U1, U1, U1, U1)),
    CommandSchema("RST", 0x04, (U2, U1, U1)),
    CommandSchema("RXM", 0x11, (U1, U1)),
    CommandSchema("ANT", 0x13, (U2, U2)),
    CommandSchema("FXN", 0x0E, (U4, U4, U4, U4, U4, U4, U4, U4)),
    CommandSchema("SBAS", 0x16, (U1, U1, U1, U1, U4)),
    CommandSchema("LIC", 0x80, (U2, U2, U2, U2, U2, U2)),
    CommandSchema("TM", 0x10, (U4, U4, U4)),
    CommandSchema("TM2", 0x19, (U1, U1, U2, U4, U4)),
    CommandSchema("TMODE", 0x1D, (U4, I4, I4, I4, U4, U4, U4)),
    CommandSchema("EKF", 0x12, (U1, U1, U1, U1, U4, U2, U2, U1, U1, U2)),
    CommandSchema("GNSS", 0x3E, (U1, U1, U1, U1, U1, U1, U1, U1, U4)),
    CommandSchema("ITFM", 0x39, (U4, U4)),
    CommandSchema("LOGFILTER", 0x47, (U1, U1, U2, U2, U2, U4)),
    CommandSchema(
        "NAV5",
        0x24,
        (U2, U1, U1, I4, U4, I1, U1, U2, U2, U2, U2, U1, U1, U1, U1, U1, U1, U2, U1, U1, U1, U1, U1, U1),
    ),
    CommandSchema(
        "NAVX5",
        0x23,
        (U2, U2, U4, U1, U1, U1, U1, U1, U1, U1, U1, U1, U1, U2, U1, U1, U1, U1, U1, U1, U1, U1, U1, U1, U2),
    ),
    CommandSchema("ODO", 0x1E, (U1, U1, U1, U1, U1, U1, U1, U1, U1)),
    CommandSchema("PM2", 0x3B, (U1, U1, U1, U1, U4, U4, U4, U4, U2, U2)),
    CommandSchema("PWR", 0x57, (U1, U1, U1, U1, U4)),
    CommandSchema("RINV", 0x34, (U1, U1)),
    CommandSchema("SMGR", 0x62, (U1, U1, U2, U2, U1, U1, U2, U2, U2, U2, U4)),
    CommandSchema("TMODE2", 0x36, (U1, U1, U2, I4, I4, I4, U4, U4, U4)),
    CommandSchema("TMODE3", 0x71, (U1, U1, U2, I4, I4, I4, U4, U4, U4)),
    CommandSchema("TPS", 0x31, (U1, U1, U1, U1, I2, I2, U4, U4, U4, U4, I4, U4)),
    CommandSchema("TXSLOT", 0x53, (U1, U1, U1, U1, U4, U4, U4, U4, U4)),
    CommandSchema("VALDEL", 0x8C, (U1, U1, U1, U1)),
    CommandSchema("VALGET", 0x8B, (U1, U1, U2)),
    CommandSchema("VALSET", 0x8A, (U1, U1, U1, U1)),
)

COMMAND_SCHEMAS: dict[str, CommandSchema] = {schema.name: schema for schema in _SCHEMAS}

CONFIG_ITEMS: dict[str, ConfigItem] = {
    name: ConfigItem(name=name, key=key, type=FieldType(code)) for name, key, code in CONFIG_ITEM_ROWS
}

CONFIG_KEY_NAMES: dict[int, str] = {item.key: name for name, item in CONFIG_ITEMS.items()}

CFG_VALSET = COMMAND_SCHEMAS["VALSET"].msg

MSG_NAMES: dict[MsgID, str] = {schema.msg: CMD_PREFIX + schema.name for schema in _SCHEMAS}


def msg_name(cls: int, id: int) -> str:
    """Return the message name for a class/id pair (e.g. 'CFG-VALSET')."""
    return MSG_NAMES.get(MsgID(cls, id), f"0x{cls:02X}-0x{id:02X}")


def config_item(name: str) -> ConfigItem | None:
    """Look up a configuration item by name, without the 'CFG-' prefix."""
    return CONFIG_ITEMS.get(name)


def config_key_name(key: int) -> str | None:
    """Return 'CFG-<NAME>' for a configuration item key, or None."""
    name = CONFIG_KEY_NAMES.get(key)
    if name is None:
        return None
    return CMD_PREFIX + name


# ============================================================================
# Checksum and Framing
# ============================================================================


def calc_checksum(data: bytes) -> tuple[int, int]:
    """Calculate UBX checksum (8-bit Fletcher) over class, id, length and payload."""
    cka = 0
    ckb = 0
    for b in data:
        cka = (cka + b) & 0xFF
        ckb = (ckb + cka) & 0xFF
    return cka, ckb


def check_checksum(frame: bytes) -> bool:
    """Verify the checksum of a complete UBX frame."""
    if len(frame) < FRAME_OVERHEAD:
        return False
    cka, ckb = calc_checksum(frame[2:-2])
    return frame[-2] == cka and frame[-1] == ckb


def pack_msg(cls: int, id: int, payload: bytes) -> bytes:
    """Pack a complete UBX message with header and checksum."""
    msg = bytearray()
    msg.append(SYNC1)
    msg.append(SYNC2)
    msg.append(cls)
    msg.append(id)
    msg.extend(len(payload).to_bytes(2, "little"))
    msg.extend(payload)
    msg.extend(calc_checksum(msg[2:]))

    return bytes(msg)


def format_hex(data: bytes) -> str:
    """Format bytes as lower-case space separated hex ('b5 62 06 ...')."""
    return " ".join(f"{b:02x}" for b in data)


@dataclass
class UbxMessage:
    """A CFG message ready to be framed."""

    cls: int
    id: int
    payload: bytes

    @property
    def name(self) -> str:
        return msg_name(self.cls, self.id)

    @property
    def checksum(self) -> tuple[int, int]:
        header = bytes([self.cls, self.id]) + len(self.payload).to_bytes(2, "little")
        return calc_checksum(header + self.payload)

    def to_bytes(self) -> bytes:
        return pack_msg(self.cls, self.id, self.payload)

    def __len__(self) -> int:
        return FRAME_OVERHEAD + len(self.payload)


# ============================================================================
# Tokenizing and Field Packing
# ============================================================================

_HEX_RE = re.compile(r"0x([0-9A-Fa-f]+)")
_INT_RE = re.compile(r"\s*([+-]?\d+)")
_FLOAT_RE = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

# Decimal strings longer than this are converted in chunks, modulo 2**64.
# Every field is at most 64 bits wide, so the packed bytes are unchanged.
_DIGIT_CHUNK = 1000
_WIDEST_MASK = (1 << 64) - 1


def _parse_decimal(text: str) -> int:
    """Convert a signed decimal string of any length to an int."""
    sign = -1 if text[0] == "-" else 1
    digits = text.lstrip("+-")
    if len(digits) <= _DIGIT_CHUNK:
        return sign * int(digits)
    value = 0
    for i in range(0, len(digits), _DIGIT_CHUNK):
        chunk = digits[i : i + _DIGIT_CHUNK]
        value = (value * 10 ** len(chunk) + int(chunk)) & _WIDEST_MASK
    return sign * value


def tokenize(msg: str) -> list[str]:
    """Split a command on whitespace, keeping at most MAX_ARGS tokens."""
    return msg.split()[:MAX_ARGS]


def parse_int(token: str) -> int:
    """Parse '0x'-prefixed hex or decimal. Unparsable text gives 0.

    Only the leading numeric part is used, so '12abc' parses as 12.
    """
    m = _HEX_RE.match(token)
    if m:
        return int(m.group(1), 16)
    m = _INT_RE.match(token)
    if m:
        return _parse_decimal(m.group(1))
    return 0


def parse_float(token: str) -> float:
    """Parse a decimal or scientific literal. Unparsable text gives 0.0."""
    m = _FLOAT_RE.match(token)
    if m:
        return float(m.group(1))
    return 0.0


def pack_field(ftype: FieldType, token: str | None = None) -> bytes:
    """Pack one field. A missing token packs as zero or an empty string."""
    if ftype is FieldType.S32:
        text = (token or "").encode("utf-8")
        return text[:STR_FIELD_LEN].ljust(STR_FIELD_LEN, b" ")

    if ftype.is_float:
        value = parse_float(token) if token is not None else 0.0
        fmt = _FLOAT_FORMATS[ftype]
        try:
            return struct.pack(fmt, value)
        except OverflowError:
            # Out of R4 range
            return struct.pack(fmt, math.copysign(math.inf, value))

    # Integers are truncated to the field width; negatives end up two's complement.
    number = parse_int(token) if token is not None else 0
    size = ftype.size
    return (number & ((1 << (8 * size)) - 1)).to_bytes(size, "little")


def pack_fields(fields: tuple[FieldType, ...], args: list[str]) -> bytes:
    """Pack arguments in schema order.

    Missing trailing arguments are packed as defaults. Arguments past the
    last schema field are packed as one U1 each.
    """
    payload = bytearray()
    for i, ftype in enumerate(fields):
        payload.extend(pack_field(ftype, args[i] if i < len(args) else None))
    for token in args[len(fields) :]:
        payload.extend(pack_field(FieldType.U1, token))
    return bytes(payload)


# ============================================================================
# Command Compiler
# ============================================================================


def resolve_schema(token: str) -> CommandSchema:
    """Resolve 'CFG-<NAME>' to its command schema."""
    if not token.startswith(CMD_PREFIX):
        raise UnknownCommand(f"not a CFG command: {token}")
    schema = COMMAND_SCHEMAS.get(token[len(CMD_PREFIX) :])
    if schema is None:
        raise UnknownCommand(f"unknown command: {token}")
    return schema


def resolve_config_item(token: str) -> ConfigItem:
    """Resolve a 'CFG-<GROUP>-<ITEM>' key token to its configuration item."""
    item = None
    if token.startswith(CMD_PREFIX):
        item = config_item(token[len(CMD_PREFIX) :])
    if item is None:
        raise UnknownConfigKey(f"unknown configuration key: {token}")
    return item


def pack_valset(args: list[str]) -> bytes:
    """Build CFG-VALSET payload for a single key/value pair.

    Args:
        args: All command tokens: CFG-VALSET ver layer res0 res1 key value

    Returns:
        4-byte prefix, 4-byte key (little-endian), then the value packed as
        the configuration item's type
    """
    if len(args) != VALSET_ARGS:
        raise InvalidArgumentCount(
            f"CFG-VALSET takes ver layer res0 res1 key value ({len(args) - 1} arguments given)"
        )
    schema = COMMAND_SCHEMAS["VALSET"]
    item = resolve_config_item(args[5])

    payload = bytearray(pack_fields(schema.fields, args[1:5]))
    payload.extend(item.key.to_bytes(4, "little"))
    value = pack_field(item.type, args[6])
    if len(value) != item.size:
        raise UnknownConfigKey(
            f"{args[5]}: {item.type.value} value does not match key size {item.size}"
        )
    payload.extend(value)
    return bytes(payload)


def compile_command(msg: str | None) -> UbxMessage:
    """Compile a textual CFG command into a UbxMessage.

    Raises:
        UbxCommandError: if the command cannot be compiled
    """
    if not msg:
        raise InvalidInput("empty command")
    args = tokenize(msg)
    if not args:
        raise UnknownCommand("no command given")

    schema = resolve_schema(args[0])
    if schema.msg == CFG_VALSET:
        payload = pack_valset(args)
    else:
        payload = pack_fields(schema.fields, args[1:])
    return UbxMessage(CLS_CFG, schema.msg_id, payload)


def build_cmd(msg: str | None) -> bytes:
    """Compile a textual CFG command into a complete UBX frame."""
    return compile_command(msg).to_bytes()


def gen_cmd(
    msg: str | None,
    buff: bytearray | memoryview | bytes | None,
    log: logging.Logger | None = None,
) -> int:
    """Compile a CFG command into the caller's buffer.

    Returns the frame length, or 0 if the command could not be compiled, the
    buffer is missing or read-only, or the frame does not fit. Nothing is
    written to the buffer on failure.
    """
    try:
        if buff is None or len(buff) == 0:
            raise InvalidInput("no output buffer")
        view = memoryview(buff)
        if view.readonly:
            raise InvalidInput("output buffer is read-only")
        frame = build_cmd(msg)
        if len(frame) > len(view):
            raise InvalidInput(f"frame is {len(frame)} bytes, buffer holds {len(view)}")
    except UbxCommandError as e:
        if log:
            log.debug(f"cannot encode {msg!r}: {e}")
        return 0

    view[: len(frame)] = frame
    return len(frame)
