"""Per-session configuration."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field

from .errors import ConfigurationError
from .uuids import VariantUuidTable

# macOS CoreBluetooth write-without-response flow control rejects firmware
# transfers at PRN≥10 (status 0x06).  PRN=8 is confirmed stable on macOS.
DEFAULT_PRN: int = 8 if sys.platform == "darwin" else 10

DEFAULT_RESPONSE_TIMEOUT: float = 30.0
DEFAULT_RECONNECT_TIMEOUT: float = 30.0
DEFAULT_MAX_RESTARTS: int = 3


@dataclass(frozen=True)
class DfuConfig:
    """Options that stay fixed for the lifetime of a :class:`~nrf_dfu.session.DfuSession`.

    Attributes:
        packets_receipt_notification: Packets sent before the bootloader must
            confirm receipt.  ``0`` disables Packet Receipt Notifications.
        enable_experimental_buttonless: Also probe the unauthenticated SDK 12
            experimental buttonless service (off by default).
        force_dfu: Treat a legacy device without a DFU Version characteristic
            as a bootloader even if it exposes additional services.
        response_timeout: Seconds to wait for any single peer event.
        reconnect_timeout: Seconds to scan for the bootloader after a reboot.
        max_restarts: Upper bound on reconnect-and-restart cycles in one run.
        uuids: Service / characteristic UUIDs for every variant.
    """

    packets_receipt_notification: int = DEFAULT_PRN
    enable_experimental_buttonless: bool = False
    force_dfu: bool = False
    response_timeout: float = DEFAULT_RESPONSE_TIMEOUT
    reconnect_timeout: float = DEFAULT_RECONNECT_TIMEOUT
    max_restarts: int = DEFAULT_MAX_RESTARTS
    uuids: VariantUuidTable = field(default_factory=VariantUuidTable)

    def __post_init__(self) -> None:
        if not 0 <= self.packets_receipt_notification <= 0xFFFF:
            raise ConfigurationError(
                f"packets_receipt_notification must be within 0..65535, got {self.packets_receipt_notification}"
            )
        if self.response_timeout <= 0:
            raise ConfigurationError("response_timeout must be positive")
        if self.max_restarts < 0:
            raise ConfigurationError("max_restarts must not be negative")
