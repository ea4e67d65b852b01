"""Buttonless DFU: switch a device running its application into the bootloader.

The application exposes a characteristic that reboots it into DFU mode.  The
reboot drops the link, usually before the write is acknowledged, so a link
loss after Enter Bootloader counts as success.  The session then reconnects
to the bootloader and starts the real upload.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from . import codec
from .config import DfuConfig
from .errors import DeviceNotBondedError, RemoteRejectedError
from .link import DfuLink
from .model import DfuState, EngineResult, Outcome, Session, Variant
from .transport import NotifyKind
from .uuids import ButtonlessUuids

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
StateCallback = Callable[[DfuState], None]


def increment_address(address: str) -> str:
    """Return the address a Nordic bootloader advertises with after a buttonless jump.

    The last byte of the Bluetooth MAC is incremented by 1, wrapping at 0xFF
    without carrying into the other bytes.
    Example: ``AA:BB:CC:DD:EE:FF`` → ``AA:BB:CC:DD:EE:00``.

    Addresses that are not MACs (CoreBluetooth UUIDs on macOS) stay stable
    across the reboot and are returned unchanged.
    """
    mac_parts = address.split(":")
    if len(mac_parts) != 6:
        return address
    new_last = (int(mac_parts[-1], 16) + 1) % 256
    return ":".join(mac_parts[:-1] + [f"{new_last:02X}"])


class ButtonlessDfu:
    """Enter-bootloader switch of the Secure DFU buttonless services."""

    def __init__(
        self,
        link: DfuLink,
        session: Session,
        config: DfuConfig,
        variant: Variant,
        *,
        on_log: LogCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> None:
        self.link = link
        self.session = session
        self.config = config
        self.variant = variant
        self.uuids: ButtonlessUuids = {
            Variant.SECURE_BUTTONLESS_WITH_BOND_SHARING: config.uuids.buttonless_with_bond_sharing,
            Variant.SECURE_BUTTONLESS_WITHOUT_BOND_SHARING: config.uuids.buttonless_without_bond_sharing,
            Variant.EXPERIMENTAL_BUTTONLESS: config.uuids.experimental_buttonless,
        }[variant]
        self._on_log: LogCallback = on_log or (lambda _: None)
        self._on_state: StateCallback = on_state or (lambda _: None)

    @property
    def shares_bond(self) -> bool:
        return self.variant is Variant.SECURE_BUTTONLESS_WITH_BOND_SHARING

    async def initialize(self) -> None:
        if self.shares_bond and not await self.link.is_bonded():
            raise DeviceNotBondedError(
                "Buttonless DFU with bond sharing requires the device to be bonded first"
            )
        # The experimental service from SDK 12 notifies; the released ones indicate.
        kind = NotifyKind.NOTIFY if self.variant is Variant.EXPERIMENTAL_BUTTONLESS else NotifyKind.INDICATE
        await self.link.enable_notifications(self.uuids.characteristic, kind)

    async def perform(self) -> EngineResult:
        self._on_state(DfuState.ENABLING_DFU_MODE)
        self._on_log("Found Buttonless DFU characteristic, switching to bootloader…")
        await self.link.write(self.uuids.characteristic, codec.buttonless_enter_bootloader(), reset=True)

        value = await self.link.notification()
        if value is not None:
            response = codec.decode_response(value, codec.BUTTONLESS, codec.BUTTONLESS_OP_ENTER_BOOTLOADER)
            if not response.success:
                raise RemoteRejectedError(
                    "Entering bootloader failed",
                    response.status,
                    op=response.request_op,
                    reason=codec.BUTTONLESS.reason(response.status),
                )
            await self.link.wait_for_disconnect()
        else:
            logger.debug("Device reset before answering Enter Bootloader")

        self._on_log("Device is rebooting into the DFU bootloader")
        # Without a shared bond the bootloader may advertise on address + 1.
        return EngineResult(Outcome.BOOTLOADER, rescan=not self.shares_bond)


class LegacyButtonlessDfu:
    """Legacy DFU application mode: Start DFU on the application's DFU service reboots it."""

    def __init__(
        self,
        link: DfuLink,
        session: Session,
        config: DfuConfig,
        *,
        version: int = 0,
        on_log: LogCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> None:
        self.link = link
        self.session = session
        self.config = config
        self.uuids = config.uuids.legacy
        self.version = version
        self._on_log: LogCallback = on_log or (lambda _: None)
        self._on_state: StateCallback = on_state or (lambda _: None)

    async def initialize(self) -> None:
        await self.link.enable_notifications(self.uuids.control_point)

    async def perform(self) -> EngineResult:
        self._on_state(DfuState.ENABLING_DFU_MODE)
        self._on_log("Device is in application mode, sending reboot command…")
        await self.link.write(self.uuids.control_point, codec.legacy_buttonless_enter_bootloader(), reset=True)
        await self.link.wait_for_disconnect()
        self._on_log("Reboot trigger accepted (device disconnected as expected).")
        # Only applications without the DFU Version characteristic change address.
        return EngineResult(Outcome.BOOTLOADER, rescan=self.version == 0)
