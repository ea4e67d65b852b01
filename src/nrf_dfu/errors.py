"""Exceptions raised by the DFU engine.

Every failure surfaces as a :class:`DFUError` subclass carrying enough context
(status byte, op code, variant) to render a diagnostic message.
"""

from __future__ import annotations


class DFUError(Exception):
    """Raised when the DFU process cannot complete."""


# ── Transport ─────────────────────────────────────────────────────────────────


class TransportError(DFUError):
    """The BLE link failed.  ``status`` holds the raw GATT / HCI code if known."""

    def __init__(self, message: str, status: int | None = None) -> None:
        if status is not None:
            message = f"{message} (status {status:#04x})"
        super().__init__(message)
        self.status = status


class ConnectionFailedError(TransportError):
    """Connecting to the device or discovering its services failed."""


class DeviceDisconnectedError(TransportError):
    """The link dropped while a request was outstanding."""


class GattError(TransportError):
    """A characteristic read or write was rejected at the GATT layer."""


class ResponseTimeoutError(TransportError):
    """No event arrived from the peer within the response timeout."""


# ── Protocol ──────────────────────────────────────────────────────────────────


class ProtocolViolationError(DFUError):
    """The peer sent a malformed or unexpected response."""

    def __init__(self, message: str, data: bytes | None = None, expected_op: int | None = None) -> None:
        if data is not None:
            message = f"{message}: {bytes(data).hex(' ') or '<empty>'}"
        if expected_op is not None:
            message = f"{message} (expected response to op {expected_op:#04x})"
        super().__init__(message)
        self.data = data
        self.expected_op = expected_op


class ChecksumMismatchError(DFUError):
    """The CRC32 reported by the peer kept disagreeing with the local one."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"CRC does not match: expected {expected:08X}, peer reported {received:08X}")
        self.expected = expected
        self.received = received


class RemoteRejectedError(DFUError):
    """The peer answered a request with a non-success DFU status code."""

    def __init__(
        self,
        message: str,
        status: int,
        *,
        op: int | None = None,
        reason: str | None = None,
        extended: int | None = None,
        detail: str | None = None,
    ) -> None:
        text = f"{message}: {reason or 'status'} ({status:#04x})"
        if extended is not None:
            text += f", extended error {extended:#04x}"
        if detail:
            text += f" ({detail})"
        super().__init__(text)
        self.message = message
        self.status = status
        self.op = op
        self.reason = reason
        self.extended = extended
        self.detail = detail

    def with_detail(self, detail: str | None) -> RemoteRejectedError:
        """Return a copy of this error with the peer's error detail attached."""
        return RemoteRejectedError(
            self.message,
            self.status,
            op=self.op,
            reason=self.reason,
            extended=self.extended,
            detail=detail,
        )


# ── Session ───────────────────────────────────────────────────────────────────


class UploadAbortedError(DFUError):
    """The upload was aborted on request.  Not a failure of the device."""

    def __init__(self, message: str = "Upload aborted") -> None:
        super().__init__(message)


class ConfigurationError(DFUError):
    """The session cannot start with the given firmware or device state."""


class UnalignedFirmwareError(ConfigurationError):
    """A firmware component is not a whole number of 32-bit words."""


class InitPacketRequiredError(ConfigurationError):
    """The bootloader requires an init packet but none was supplied."""


class DeviceNotBondedError(ConfigurationError):
    """Buttonless DFU with bond sharing requires an existing bond."""


class ServiceNotFoundError(ConfigurationError):
    """None of the supported DFU services was found on the device."""


class DeviceNotFoundError(DFUError):
    """Raised when the target BLE device cannot be located."""
