"""Control-point wire format for the Legacy, Secure and Buttonless protocols.

Pure functions only: request encoders, response decoders and CRC32.  Every
decoder raises :class:`~nrf_dfu.errors.ProtocolViolationError` on bytes that
do not follow the protocol.
"""

from __future__ import annotations

import enum
import struct
import zlib
from dataclasses import dataclass
from typing import NamedTuple

from .errors import ProtocolViolationError

PACKET_SIZE: int = 20

# ── Legacy op-codes ───────────────────────────────────────────────────────────

LEGACY_OP_START_DFU: int = 0x01
LEGACY_OP_INIT_DFU_PARAMS: int = 0x02
LEGACY_OP_RECEIVE_FIRMWARE_IMAGE: int = 0x03
LEGACY_OP_VALIDATE: int = 0x04
LEGACY_OP_ACTIVATE_AND_RESET: int = 0x05
LEGACY_OP_RESET: int = 0x06
LEGACY_OP_PACKET_RECEIPT_NOTIF_REQ: int = 0x08
LEGACY_RESPONSE_CODE: int = 0x10
LEGACY_PACKET_RECEIPT_NOTIF: int = 0x11

LEGACY_INIT_START: int = 0x00
LEGACY_INIT_COMPLETE: int = 0x01

# ── Secure op-codes ───────────────────────────────────────────────────────────

SECURE_OP_CREATE: int = 0x01
SECURE_OP_SET_PRN: int = 0x02
SECURE_OP_CALCULATE_CHECKSUM: int = 0x03
SECURE_OP_EXECUTE: int = 0x04
SECURE_OP_READ_OBJECT: int = 0x05
SECURE_OP_SELECT_OBJECT: int = 0x06
SECURE_RESPONSE_CODE: int = 0x60

OBJECT_COMMAND: int = 0x01
OBJECT_DATA: int = 0x02

# ── Buttonless op-codes ───────────────────────────────────────────────────────

BUTTONLESS_OP_ENTER_BOOTLOADER: int = 0x01
BUTTONLESS_RESPONSE_CODE: int = 0x20


class LegacyStatus(enum.IntEnum):
    SUCCESS = 0x01
    INVALID_STATE = 0x02
    NOT_SUPPORTED = 0x03
    DATA_SIZE_EXCEEDS_LIMIT = 0x04
    CRC_ERROR = 0x05
    OPERATION_FAILED = 0x06


class SecureStatus(enum.IntEnum):
    SUCCESS = 0x01
    OP_CODE_NOT_SUPPORTED = 0x02
    INVALID_PARAM = 0x03
    INSUFFICIENT_RESOURCES = 0x04
    INVALID_OBJECT = 0x05
    UNSUPPORTED_TYPE = 0x07
    OPERATION_NOT_PERMITTED = 0x08
    OPERATION_FAILED = 0x0A
    EXTENDED_ERROR = 0x0B


class ButtonlessStatus(enum.IntEnum):
    SUCCESS = 0x01
    OP_CODE_NOT_SUPPORTED = 0x02
    OPERATION_FAILED = 0x04


EXTENDED_ERRORS: dict[int, str] = {
    0x02: "Wrong command format",
    0x03: "Unknown command",
    0x04: "Init command invalid",
    0x05: "FW version failure",
    0x06: "HW version failure",
    0x07: "SD version failure",
    0x08: "Signature missing",
    0x09: "Wrong hash type",
    0x0A: "Hash failed",
    0x0B: "Wrong signature type",
    0x0C: "Verification failed",
    0x0D: "Insufficient space",
}


@dataclass(frozen=True)
class Dialect:
    """Response framing of one control-point protocol."""

    name: str
    response_code: int
    statuses: type[enum.IntEnum]
    exact_length: int | None = None

    def reason(self, status: int) -> str:
        try:
            return self.statuses(status).name.replace("_", " ").lower()
        except ValueError:
            return f"unknown status {status:#04x}"


LEGACY = Dialect("legacy", LEGACY_RESPONSE_CODE, LegacyStatus, exact_length=3)
SECURE = Dialect("secure", SECURE_RESPONSE_CODE, SecureStatus)
BUTTONLESS = Dialect("buttonless", BUTTONLESS_RESPONSE_CODE, ButtonlessStatus)


class Response(NamedTuple):
    """A decoded control-point response."""

    response_code: int
    request_op: int
    status: int
    payload: bytes = b""

    @property
    def success(self) -> bool:
        return self.status == 0x01


class ObjectInfo(NamedTuple):
    max_size: int
    offset: int
    crc32: int


class ObjectChecksum(NamedTuple):
    offset: int
    crc32: int


def crc32(data: bytes, value: int = 0) -> int:
    """CRC-32 (IEEE 802.3), the checksum Secure DFU reports for objects."""
    return zlib.crc32(data, value) & 0xFFFFFFFF


# ── Responses ─────────────────────────────────────────────────────────────────


def decode_response(data: bytes, dialect: Dialect, request_op: int) -> Response:
    """Decode *data* as the response to *request_op*.

    Raises:
        ProtocolViolationError: wrong length, response code, request op-code,
            or a status the dialect does not define.
    """
    data = bytes(data)
    if len(data) < 3 or (dialect.exact_length is not None and len(data) != dialect.exact_length):
        raise ProtocolViolationError("Invalid response length", data, request_op)
    if data[0] != dialect.response_code:
        raise ProtocolViolationError("Invalid response code", data, request_op)
    if data[1] != request_op:
        raise ProtocolViolationError("Response to a different request", data, request_op)
    try:
        dialect.statuses(data[2])
    except ValueError:
        raise ProtocolViolationError("Unknown status", data, request_op) from None
    return Response(data[0], data[1], data[2], data[3:])


def encode_response(response: Response) -> bytes:
    return bytes([response.response_code, response.request_op, response.status]) + response.payload


def decode_legacy_receipt(data: bytes) -> int | None:
    """Return the byte count of a Legacy Packet Receipt Notification, else ``None``."""
    if len(data) == 5 and data[0] == LEGACY_PACKET_RECEIPT_NOTIF:
        return struct.unpack_from("<I", data, 1)[0]
    return None


def decode_secure_receipt(data: bytes) -> int | None:
    """Return the offset of a Secure Packet Receipt Notification, else ``None``.

    Secure DFU reports receipts as an unsolicited Calculate Checksum response.
    """
    if (
        len(data) == 11
        and data[0] == SECURE_RESPONSE_CODE
        and data[1] == SECURE_OP_CALCULATE_CHECKSUM
        and data[2] == SecureStatus.SUCCESS
    ):
        return struct.unpack_from("<I", data, 3)[0]
    return None


def decode_object_info(response: Response) -> ObjectInfo:
    if len(response.payload) < 12:
        raise ProtocolViolationError(
            "Object info too short", encode_response(response), SECURE_OP_SELECT_OBJECT
        )
    return ObjectInfo(*struct.unpack_from("<III", response.payload))


def decode_checksum(response: Response) -> ObjectChecksum:
    if len(response.payload) < 8:
        raise ProtocolViolationError(
            "Checksum too short", encode_response(response), SECURE_OP_CALCULATE_CHECKSUM
        )
    return ObjectChecksum(*struct.unpack_from("<II", response.payload))


def decode_extended_error(response: Response) -> int | None:
    if response.status == SecureStatus.EXTENDED_ERROR and response.payload:
        return response.payload[0]
    return None


# ── Legacy requests ───────────────────────────────────────────────────────────


def legacy_start_dfu(mode: int | None) -> bytes:
    """Start DFU; the original single-image protocol carries no mode byte."""
    if mode is None:
        return bytes([LEGACY_OP_START_DFU])
    return bytes([LEGACY_OP_START_DFU, mode])


def legacy_image_sizes(softdevice: int, bootloader: int, application: int) -> bytes:
    return struct.pack("<III", softdevice, bootloader, application)


def legacy_image_size(size: int) -> bytes:
    return struct.pack("<I", size)


def legacy_init_params(state: int | None = None) -> bytes:
    if state is None:
        return bytes([LEGACY_OP_INIT_DFU_PARAMS])
    return bytes([LEGACY_OP_INIT_DFU_PARAMS, state])


def legacy_prn_request(packets: int) -> bytes:
    return struct.pack("<BH", LEGACY_OP_PACKET_RECEIPT_NOTIF_REQ, packets)


def legacy_op(op: int) -> bytes:
    return bytes([op])


# ── Secure requests ───────────────────────────────────────────────────────────


def secure_create(object_type: int, size: int) -> bytes:
    return struct.pack("<BBI", SECURE_OP_CREATE, object_type, size)


def secure_set_prn(packets: int) -> bytes:
    return struct.pack("<BH", SECURE_OP_SET_PRN, packets)


def secure_select(object_type: int) -> bytes:
    return bytes([SECURE_OP_SELECT_OBJECT, object_type])


def secure_op(op: int) -> bytes:
    return bytes([op])


def decode_error_detail(fragments: list[bytes]) -> tuple[int, str]:
    """Join Read Object error-detail fragments.

    The first fragment starts with the uint16-LE length of the UTF-8 text;
    later fragments carry continuation bytes only.

    Returns:
        ``(total_length, text_so_far)``.
    """
    if not fragments or len(fragments[0]) < 2:
        raise ProtocolViolationError("Error detail too short", fragments[0] if fragments else b"")
    (length,) = struct.unpack_from("<H", fragments[0])
    raw = (fragments[0][2:] + b"".join(fragments[1:]))[:length]
    return length, raw.decode("utf-8", errors="replace")


def error_detail_complete(fragments: list[bytes]) -> bool:
    length, _ = decode_error_detail(fragments)
    return len(fragments[0]) - 2 + sum(len(f) for f in fragments[1:]) >= length


# ── Buttonless requests ───────────────────────────────────────────────────────


def buttonless_enter_bootloader() -> bytes:
    return bytes([BUTTONLESS_OP_ENTER_BOOTLOADER])


def legacy_buttonless_enter_bootloader() -> bytes:
    """Legacy buttonless jump: Start DFU with the application upload mode."""
    return bytes([LEGACY_OP_START_DFU, 0x04])


def chunks(data: bytes, size: int = PACKET_SIZE) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]
