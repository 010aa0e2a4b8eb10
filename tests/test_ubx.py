"""Tests for the UBX CFG command compiler."""

import logging
import math
import struct

import pytest

from ubx import (
    CFG_VALSET,
    CLS_CFG,
    CMD_BUFFER_SIZE,
    COMMAND_SCHEMAS,
    CONFIG_ITEMS,
    MAX_ARGS,
    MSG_NAMES,
    ConfigItem,
    FieldType,
    InvalidArgumentCount,
    InvalidInput,
    MsgID,
    UnknownCommand,
    UnknownConfigKey,
    build_cmd,
    calc_checksum,
    check_checksum,
    compile_command,
    format_hex,
    gen_cmd,
    msg_name,
    pack_field,
    pack_msg,
    parse_float,
    parse_int,
    resolve_schema,
    tokenize,
)

GOLDEN_VECTORS = [
    (
        "CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 0",
        "B5 62 06 8A 09 00 00 01 00 00 01 00 03 20 00 BE 7F",
    ),
    (
        "CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 2",
        "B5 62 06 8A 09 00 00 01 00 00 01 00 03 20 02 C0 81",
    ),
    (
        "CFG-VALSET 0 1 0 0 CFG-TMODE-POS_TYPE 1",
        "B5 62 06 8A 09 00 00 01 00 00 02 00 03 20 01 C0 85",
    ),
    (
        "CFG-VALSET 0 1 0 0 CFG-TMODE-HEIGHT -100",
        "B5 62 06 8A 0C 00 00 01 00 00 0B 00 03 40 9C FF FF FF 84 3D",
    ),
    (
        "CFG-VALSET 0 1 0 0 CFG-TMODE-LAT 209600040",
        "b5 62 06 8a 0c 00 00 01 00 00 09 00 03 40 28 3e 7e 0c d9 25",
    ),
    (
        "CFG-VALSET 0 1 0 0 CFG-TMODE-LON 1057684480",
        "b5 62 06 8a 0c 00 00 01 00 00 0a 00 03 40 00 fc 0a 3f 2f 12",
    ),
]

SAMPLE_COMMANDS = [
    "CFG-PRT 1 0 0 0x8D0 115200 1 1 0 0",
    "CFG-USB 0x1546 0x01A8 0 0 100 0 u-blox AG - www.u-blox.com u-blox GNSS receiver",
    "CFG-MSG 0xF0 0x00 0 1 0 1 0 0",
    "CFG-RATE 1000 1 1",
    "CFG-CFG 0 0xFFFF 0 0x17",
    "CFG-TP 1000000 100000 1 1 0 50 0 0",
    "CFG-DAT 6378137.0 298.257223563 0 0 0 0 0 0 0",
    "CFG-RST 0xFFFF 1 0",
    "CFG-TMODE 2 -1144698 6090335 1504171 100 3600 400",
    "CFG-TMODE3 0 0 2 -114469805 609033541 150417139 10000 60 5000",
    "CFG-VALSET 0 1 0 0 CFG-RATE-MEAS 1000",
    "CFG-VALSET 0 1 0 0 CFG-NAVSPG-USRDAT_MAJA 6378137.0",
    "CFG-VALSET 0 1 0 0 CFG-SBAS-PRNSCANMASK 0x3AA",
]


def frame_hex(text: str) -> bytes:
    return bytes.fromhex(text)


class TestMsgID:
    def test_equality(self) -> None:
        a = MsgID(0x06, 0x8A)
        b = MsgID(0x06, 0x8A)
        c = MsgID(0x06, 0x8B)
        assert a == b
        assert a != c

    def test_hash(self) -> None:
        d = {MsgID(0x06, 0x8A): "valset"}
        assert d[MsgID(0x06, 0x8A)] == "valset"

    def test_repr(self) -> None:
        assert repr(MsgID(0x06, 0x8A)) == "MsgID(0x06, 0x8A)"

    def test_inequality_with_other_types(self) -> None:
        assert MsgID(0x06, 0x8A) != (0x06, 0x8A)


class TestMessageNames:
    def test_valset(self) -> None:
        assert CFG_VALSET == MsgID(CLS_CFG, 0x8A)
        assert MSG_NAMES[CFG_VALSET] == "CFG-VALSET"

    def test_msg_name(self) -> None:
        assert msg_name(0x06, 0x08) == "CFG-RATE"
        assert msg_name(0x06, 0x00) == "CFG-PRT"

    def test_unknown_msg_name(self) -> None:
        assert msg_name(0x0A, 0x04) == "0x0A-0x04"


class TestSchemas:
    def test_schema_count(self) -> None:
        assert len(COMMAND_SCHEMAS) == 37

    def test_msg_ids_unique(self) -> None:
        ids = [schema.msg_id for schema in COMMAND_SCHEMAS.values()]
        assert len(ids) == len(set(ids))

    def test_known_ids(self) -> None:
        assert COMMAND_SCHEMAS["PRT"].msg_id == 0x00
        assert COMMAND_SCHEMAS["RATE"].msg_id == 0x08
        assert COMMAND_SCHEMAS["TMODE3"].msg_id == 0x71
        assert COMMAND_SCHEMAS["VALDEL"].msg_id == 0x8C
        assert COMMAND_SCHEMAS["VALGET"].msg_id == 0x8B
        assert COMMAND_SCHEMAS["VALSET"].msg_id == 0x8A

    def test_valset_prefix(self) -> None:
        assert COMMAND_SCHEMAS["VALSET"].fields == (FieldType.U1,) * 4

    def test_field_sizes(self) -> None:
        assert FieldType.U1.size == 1
        assert FieldType.I2.size == 2
        assert FieldType.R4.size == 4
        assert FieldType.U8.size == 8
        assert FieldType.R8.size == 8
        assert FieldType.S32.size == 32

    def test_float_types(self) -> None:
        assert FieldType.R4.is_float
        assert FieldType.R8.is_float
        assert not FieldType.I4.is_float


class TestChecksum:
    def test_empty(self) -> None:
        assert calc_checksum(b"") == (0, 0)

    def test_running_sum(self) -> None:
        # cka: 1, 3; ckb: 1, 4
        assert calc_checksum(bytes([0x01, 0x02])) == (0x03, 0x04)

    def test_wraparound(self) -> None:
        # cka: 0xFF, 0x101 -> 0x01; ckb: 0xFF, 0x100 -> 0x00
        assert calc_checksum(bytes([0xFF, 0x02])) == (0x01, 0x00)

    def test_check_checksum(self) -> None:
        frame = build_cmd("CFG-RATE 1000 1 1")
        assert check_checksum(frame)
        corrupted = frame[:-1] + bytes([frame[-1] ^ 0xFF])
        assert not check_checksum(corrupted)

    def test_check_checksum_too_short(self) -> None:
        assert not check_checksum(bytes([0xB5, 0x62, 0x06]))


class TestPackMsg:
    def test_pack_empty_payload(self) -> None:
        msg = pack_msg(0x06, 0x08, b"")
        # cka: 06, 0E, 0E, 0E; ckb: 06, 14, 22, 30
        assert msg == bytes([0xB5, 0x62, 0x06, 0x08, 0x00, 0x00, 0x0E, 0x30])

    def test_pack_with_payload(self) -> None:
        payload = bytes([0x01, 0x02, 0x03, 0x04])
        msg = pack_msg(0x06, 0x01, payload)
        assert msg[:2] == bytes([0xB5, 0x62])
        assert msg[2:4] == bytes([0x06, 0x01])
        assert msg[4:6] == bytes([0x04, 0x00])
        assert msg[6:10] == payload
        assert len(msg) == 12

    def test_checksum_excludes_sync(self) -> None:
        msg = pack_msg(0x06, 0x01, b"\x10")
        assert tuple(msg[-2:]) == calc_checksum(msg[2:-2])

    def test_format_hex(self) -> None:
        assert format_hex(bytes([0xB5, 0x62, 0x06])) == "b5 62 06"


class TestGoldenVectors:
    @pytest.mark.parametrize("command,expected", GOLDEN_VECTORS)
    def test_build_cmd(self, command: str, expected: str) -> None:
        assert build_cmd(command) == frame_hex(expected)

    @pytest.mark.parametrize("command,expected", GOLDEN_VECTORS)
    def test_gen_cmd(self, command: str, expected: str) -> None:
        buff = bytearray(CMD_BUFFER_SIZE)
        n = gen_cmd(command, buff)
        assert n == len(frame_hex(expected))
        assert bytes(buff[:n]) == frame_hex(expected)


class TestFrameInvariants:
    @pytest.mark.parametrize("command", SAMPLE_COMMANDS)
    def test_length_field(self, command: str) -> None:
        frame = build_cmd(command)
        assert int.from_bytes(frame[4:6], "little") == len(frame) - 8

    @pytest.mark.parametrize("command", SAMPLE_COMMANDS)
    def test_checksum(self, command: str) -> None:
        frame = build_cmd(command)
        assert tuple(frame[-2:]) == calc_checksum(frame[2:-2])

    @pytest.mark.parametrize("command", SAMPLE_COMMANDS)
    def test_header(self, command: str) -> None:
        frame = build_cmd(command)
        assert frame[:3] == bytes([0xB5, 0x62, CLS_CFG])
        assert frame[3] == resolve_schema(command.split()[0]).msg_id

    def test_deterministic(self) -> None:
        for command in SAMPLE_COMMANDS:
            assert build_cmd(command) == build_cmd(command)

    def test_message_checksum_matches_frame(self) -> None:
        msg = compile_command("CFG-RATE 1000 1 1")
        frame = msg.to_bytes()
        assert msg.checksum == tuple(frame[-2:])
        assert len(msg) == len(frame)
        assert msg.name == "CFG-RATE"


class TestTokenize:
    def test_split_whitespace(self) -> None:
        assert tokenize("CFG-RATE  1000\t1 1\n") == ["CFG-RATE", "1000", "1", "1"]

    def test_empty(self) -> None:
        assert tokenize("") == []
        assert tokenize("   ") == []

    def test_token_cap(self) -> None:
        tokens = tokenize("CFG-MSG " + " ".join(["1"] * 40))
        assert len(tokens) == MAX_ARGS

    def test_excess_tokens_dropped(self) -> None:
        # CFG-MSG has 8 U1 fields; 31 arguments survive the cap
        frame = build_cmd("CFG-MSG " + " ".join(["1"] * 40))
        assert len(frame) == 8 + MAX_ARGS - 1


class TestParseNumbers:
    def test_decimal(self) -> None:
        assert parse_int("26") == 26
        assert parse_int("-100") == -100
        assert parse_int("+7") == 7

    def test_hex(self) -> None:
        assert parse_int("0x1A") == 26
        assert parse_int("0xdeadBEEF") == 0xDEADBEEF

    def test_hex_prefix_is_lowercase_only(self) -> None:
        assert parse_int("0X1A") == 0

    def test_leading_digits_only(self) -> None:
        assert parse_int("12abc") == 12

    def test_unparsable(self) -> None:
        assert parse_int("abc") == 0
        assert parse_int("0xZZ") == 0
        assert parse_int("") == 0

    def test_very_long_decimal(self) -> None:
        # Past the interpreter's int/str digit limit; only the low 64 bits matter
        huge = 10**5000 - 1
        assert parse_int("9" * 5000) % 2**64 == huge % 2**64
        assert parse_int("-" + "9" * 5000) % 2**64 == -huge % 2**64
        assert pack_field(FieldType.U2, "9" * 5000) == (huge % 2**16).to_bytes(2, "little")

    def test_long_decimal_exact_below_chunk(self) -> None:
        assert parse_int("1" + "0" * 999) == 10**999

    def test_float(self) -> None:
        assert parse_float("1.5") == 1.5
        assert parse_float("-2.5e3") == -2500.0
        assert parse_float(".25") == 0.25
        assert parse_float("7") == 7.0

    def test_float_unparsable(self) -> None:
        assert parse_float("abc") == 0.0
        assert parse_float("1.5m") == 1.5


class TestPackField:
    def test_unsigned(self) -> None:
        assert pack_field(FieldType.U1, "200") == bytes([200])
        assert pack_field(FieldType.U2, "1000") == bytes([0xE8, 0x03])
        assert pack_field(FieldType.U4, "0xDEADBEEF") == bytes([0xEF, 0xBE, 0xAD, 0xDE])
        assert pack_field(FieldType.U8, "1") == bytes([1, 0, 0, 0, 0, 0, 0, 0])

    def test_signed_twos_complement(self) -> None:
        assert pack_field(FieldType.I1, "-1") == bytes([0xFF])
        assert pack_field(FieldType.I2, "-2") == bytes([0xFE, 0xFF])
        assert pack_field(FieldType.I4, "-100") == bytes([0x9C, 0xFF, 0xFF, 0xFF])

    def test_truncated_to_width(self) -> None:
        assert pack_field(FieldType.U1, "256") == bytes([0x00])
        assert pack_field(FieldType.U2, "0x12345") == bytes([0x45, 0x23])

    def test_missing_token_is_zero(self) -> None:
        assert pack_field(FieldType.U4) == bytes(4)
        assert pack_field(FieldType.R8) == bytes(8)

    def test_floats(self) -> None:
        assert pack_field(FieldType.R4, "1.5") == struct.pack("<f", 1.5)
        assert pack_field(FieldType.R8, "-2.5e3") == struct.pack("<d", -2500.0)

    def test_r4_out_of_range(self) -> None:
        (value,) = struct.unpack("<f", pack_field(FieldType.R4, "-1e40"))
        assert math.isinf(value) and value < 0

    def test_string_padded(self) -> None:
        assert pack_field(FieldType.S32, "abc") == b"abc" + b" " * 29

    def test_string_truncated(self) -> None:
        assert pack_field(FieldType.S32, "x" * 40) == b"x" * 32

    def test_string_missing(self) -> None:
        assert pack_field(FieldType.S32) == b" " * 32


class TestLegacyCommands:
    def test_rate(self) -> None:
        frame = build_cmd("CFG-RATE 1000 1 1")
        assert frame[3] == 0x08
        assert frame[6:-2] == struct.pack("<HHH", 1000, 1, 1)

    def test_missing_arguments_default_to_zero(self) -> None:
        frame = build_cmd("CFG-RATE 1000")
        assert frame[6:-2] == struct.pack("<HHH", 1000, 0, 0)

    def test_no_arguments(self) -> None:
        frame = build_cmd("CFG-CFG")
        assert frame[4:6] == bytes([13, 0])
        assert frame[6:-2] == bytes(13)

    def test_extra_arguments_packed_as_u1(self) -> None:
        frame = build_cmd("CFG-RST 0xFFFF 1 0 7 300")
        assert frame[6:-2] == bytes([0xFF, 0xFF, 0x01, 0x00, 0x07, 0x2C])

    def test_hex_decimal_equivalence(self) -> None:
        assert build_cmd("CFG-RATE 0x1A 1 1") == build_cmd("CFG-RATE 26 1 1")

    def test_signed_fields(self) -> None:
        frame = build_cmd("CFG-TMODE 2 -1144698 6090335 1504171 100 3600 400")
        assert frame[6:-2] == struct.pack("<IiiiIII", 2, -1144698, 6090335, 1504171, 100, 3600, 400)

    def test_float_fields(self) -> None:
        frame = build_cmd("CFG-DAT 6378137.0 298.257223563")
        assert frame[6:14] == struct.pack("<d", 6378137.0)
        assert frame[14:22] == struct.pack("<d", 298.257223563)
        assert frame[22:-2] == bytes(28)

    def test_string_fields(self) -> None:
        frame = build_cmd("CFG-USB 0x1546 0x01A8 0 0 100 0 vendor product serial")
        payload = frame[6:-2]
        assert len(payload) == 12 + 3 * 32
        assert payload[12:44] == b"vendor".ljust(32, b" ")
        assert payload[44:76] == b"product".ljust(32, b" ")
        assert payload[76:108] == b"serial".ljust(32, b" ")

    def test_usb_fits_default_buffer(self) -> None:
        buff = bytearray(CMD_BUFFER_SIZE)
        assert gen_cmd("CFG-USB 0x1546 0x01A8 0 0 100 0 a b c", buff) == 116


class TestSchemaResolution:
    def test_unknown_command(self) -> None:
        with pytest.raises(UnknownCommand):
            build_cmd("CFG-NOPE 1 2 3")

    def test_missing_prefix(self) -> None:
        with pytest.raises(UnknownCommand):
            build_cmd("RATE 1000 1 1")

    def test_case_sensitive(self) -> None:
        with pytest.raises(UnknownCommand):
            build_cmd("cfg-rate 1000 1 1")
        with pytest.raises(UnknownCommand):
            build_cmd("CFG-Rate 1000 1 1")

    def test_prefix_only(self) -> None:
        with pytest.raises(UnknownCommand):
            build_cmd("CFG-")

    def test_whitespace_only(self) -> None:
        with pytest.raises(UnknownCommand):
            build_cmd("   ")

    def test_empty(self) -> None:
        with pytest.raises(InvalidInput):
            build_cmd("")
        with pytest.raises(InvalidInput):
            build_cmd(None)


class TestValset:
    def test_payload_layout(self) -> None:
        frame = build_cmd("CFG-VALSET 0 1 0 0 CFG-RATE-MEAS 1000")
        payload = frame[6:-2]
        assert payload[:4] == bytes([0x00, 0x01, 0x00, 0x00])
        assert payload[4:8] == (0x30210001).to_bytes(4, "little")
        assert payload[8:] == struct.pack("<H", 1000)

    def test_u8_value(self) -> None:
        frame = build_cmd("CFG-VALSET 0 1 0 0 CFG-SBAS-PRNSCANMASK 0x1FFFF")
        payload = frame[6:-2]
        assert len(payload) == 16
        assert payload[4:8] == (0x50360006).to_bytes(4, "little")
        assert payload[8:] == (0x1FFFF).to_bytes(8, "little")

    def test_r8_value(self) -> None:
        frame = build_cmd("CFG-VALSET 0 1 0 0 CFG-NAVSPG-USRDAT_MAJA 6378137.0")
        assert frame[14:-2] == struct.pack("<d", 6378137.0)

    def test_i1_value(self) -> None:
        frame = build_cmd("CFG-VALSET 0 1 0 0 CFG-TMODE-ECEF_X_HP -5")
        assert frame[14:-2] == bytes([0xFB])

    def test_hex_decimal_value_equivalence(self) -> None:
        assert build_cmd("CFG-VALSET 0 1 0 0 CFG-RATE-MEAS 0x1A") == build_cmd(
            "CFG-VALSET 0 1 0 0 CFG-RATE-MEAS 26"
        )

    def test_unparsable_value_is_zero(self) -> None:
        assert build_cmd("CFG-VALSET 0 1 0 0 CFG-TMODE-MODE fixed") == build_cmd(
            "CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 0"
        )

    @pytest.mark.parametrize(
        "command",
        [
            "CFG-VALSET",
            "CFG-VALSET 0 1 0 0",
            "CFG-VALSET 0 1 0 0 CFG-TMODE-MODE",
            "CFG-VALSET 0 1 0 CFG-TMODE-MODE 0",
            "CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 0 1",
            "CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 0 CFG-TMODE-POS_TYPE 1",
        ],
    )
    def test_argument_count(self, command: str) -> None:
        with pytest.raises(InvalidArgumentCount):
            build_cmd(command)
        assert gen_cmd(command, bytearray(CMD_BUFFER_SIZE)) == 0

    def test_unknown_key(self) -> None:
        with pytest.raises(UnknownConfigKey):
            build_cmd("CFG-VALSET 0 1 0 0 CFG-TMODE-NOPE 0")

    def test_key_requires_prefix(self) -> None:
        with pytest.raises(UnknownConfigKey):
            build_cmd("CFG-VALSET 0 1 0 0 TMODE-MODE 0")

    def test_key_case_sensitive(self) -> None:
        with pytest.raises(UnknownConfigKey):
            build_cmd("CFG-VALSET 0 1 0 0 CFG-tmode-mode 0")

    def test_value_width_checked_against_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        # TMODE-MODE's key says 1-byte value; a U2 type must be rejected
        monkeypatch.setitem(
            CONFIG_ITEMS, "TMODE-MODE", ConfigItem("TMODE-MODE", 0x20030001, FieldType.U2)
        )
        with pytest.raises(UnknownConfigKey, match="key size"):
            build_cmd("CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 0")


class TestGenCmd:
    def test_returns_length(self) -> None:
        buff = bytearray(CMD_BUFFER_SIZE)
        n = gen_cmd("CFG-RATE 1000 1 1", buff)
        assert n == 14
        assert bytes(buff[:n]) == build_cmd("CFG-RATE 1000 1 1")

    def test_unknown_command_returns_zero(self) -> None:
        buff = bytearray(CMD_BUFFER_SIZE)
        assert gen_cmd("CFG-NOPE 1 2 3", buff) == 0
        assert buff == bytearray(CMD_BUFFER_SIZE)

    def test_empty_command(self) -> None:
        buff = bytearray(CMD_BUFFER_SIZE)
        assert gen_cmd("", buff) == 0
        assert gen_cmd(None, buff) == 0
        assert gen_cmd("  ", buff) == 0

    def test_missing_buffer(self) -> None:
        assert gen_cmd("CFG-RATE 1000 1 1", None) == 0
        assert gen_cmd("CFG-RATE 1000 1 1", bytearray()) == 0

    def test_buffer_too_small(self) -> None:
        buff = bytearray(10)
        assert gen_cmd("CFG-RATE 1000 1 1", buff) == 0
        assert buff == bytearray(10)

    def test_memoryview_buffer(self) -> None:
        backing = bytearray(CMD_BUFFER_SIZE)
        n = gen_cmd("CFG-VALSET 0 1 0 0 CFG-TMODE-MODE 2", memoryview(backing)[4:])
        assert n == 17
        assert backing[4 : 4 + n] == frame_hex(GOLDEN_VECTORS[1][1])

    def test_read_only_buffer(self) -> None:
        assert gen_cmd("CFG-RATE 1000 1 1", bytes(CMD_BUFFER_SIZE)) == 0
        backing = bytearray(CMD_BUFFER_SIZE)
        assert gen_cmd("CFG-RATE 1000 1 1", memoryview(backing).toreadonly()) == 0
        assert backing == bytearray(CMD_BUFFER_SIZE)

    def test_oversized_decimal_argument(self) -> None:
        huge = 10**5000 - 1
        buff = bytearray(CMD_BUFFER_SIZE)
        n = gen_cmd("CFG-RATE " + "9" * 5000, buff)
        assert n == 14
        assert buff[6:8] == (huge % 2**16).to_bytes(2, "little")

    def test_oversized_decimal_valset_value(self) -> None:
        huge = 10**5000 - 1
        buff = bytearray(CMD_BUFFER_SIZE)
        n = gen_cmd("CFG-VALSET 0 1 0 0 CFG-RATE-MEAS " + "9" * 5000, buff)
        assert n == 18
        assert buff[14:16] == (huge % 2**16).to_bytes(2, "little")

    def test_failure_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        log = logging.getLogger("test_ubx")
        with caplog.at_level(logging.DEBUG, logger="test_ubx"):
            assert gen_cmd("CFG-NOPE 1 2 3", bytearray(CMD_BUFFER_SIZE), log) == 0
        assert "CFG-NOPE" in caplog.text
