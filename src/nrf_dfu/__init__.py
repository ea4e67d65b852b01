"""nrf-dfu: Nordic DFU over BLE (Legacy, Secure and Buttonless).

Typical usage::

    from nrf_dfu import perform_dfu, scan_for_devices

    devices = await scan_for_devices(timeout=5)
    await perform_dfu("firmware.zip", devices[0], on_progress=lambda p: print(f"{p.percent}%"))

The protocol engine does not depend on bleak; any object implementing
:class:`~nrf_dfu.transport.Transport` can drive a :class:`DfuSession`.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from bleak.backends.device import BLEDevice

from .bleak_transport import BleakTransport
from .config import DEFAULT_PRN, DfuConfig
from .errors import (
    ChecksumMismatchError,
    ConfigurationError,
    ConnectionFailedError,
    DeviceDisconnectedError,
    DeviceNotBondedError,
    DeviceNotFoundError,
    DFUError,
    GattError,
    InitPacketRequiredError,
    ProtocolViolationError,
    RemoteRejectedError,
    ResponseTimeoutError,
    ServiceNotFoundError,
    TransportError,
    UnalignedFirmwareError,
    UploadAbortedError,
)
from .firmware import Component, FirmwareComponents, parse_dfu_zip, read_init_packet_version
from .model import DfuState, Variant
from .progress import ProgressCallback, ProgressInfo
from .scan import find_dfu_target, scan_for_devices
from .session import DfuSession
from .uuids import VariantUuidTable

LogCallback = Callable[[str], None]
StateCallback = Callable[[DfuState], None]

__version__ = "0.3.0"

__all__ = [
    "perform_dfu",
    "scan_for_devices",
    "find_dfu_target",
    "parse_dfu_zip",
    "BleakTransport",
    "DfuSession",
    "DfuConfig",
    "DfuState",
    "Variant",
    "VariantUuidTable",
    "Component",
    "FirmwareComponents",
    "ProgressInfo",
    "DFUError",
    "TransportError",
    "ConnectionFailedError",
    "DeviceDisconnectedError",
    "GattError",
    "ResponseTimeoutError",
    "ProtocolViolationError",
    "ChecksumMismatchError",
    "RemoteRejectedError",
    "UploadAbortedError",
    "ConfigurationError",
    "UnalignedFirmwareError",
    "InitPacketRequiredError",
    "DeviceNotBondedError",
    "ServiceNotFoundError",
    "DeviceNotFoundError",
]


def describe_firmware(firmware: FirmwareComponents) -> str:
    parts = []
    for name, image in (
        ("SoftDevice", firmware.softdevice),
        ("Bootloader", firmware.bootloader),
        ("Application", firmware.application),
    ):
        if image:
            parts.append(f"{name} ({len(image):,} bytes)")
    text = " + ".join(parts)
    version = read_init_packet_version(firmware.application_init or b"")
    if version is not None:
        text += f", version {version}"
    return text


async def perform_dfu(
    zip_path: str,
    device: BLEDevice | str,
    *,
    on_progress: ProgressCallback | None = None,
    on_log: LogCallback | None = None,
    on_state: StateCallback | None = None,
    packets_per_notification: int = DEFAULT_PRN,
    enable_experimental_buttonless: bool = False,
    force_dfu: bool = False,
    bonded: Iterable[str] = (),
) -> None:
    """Perform a Nordic DFU firmware update over BLE.

    Handles the full flow: variant detection, bootloader triggering for
    buttonless devices, DFU-target discovery, connection retries, and the
    Legacy or Secure upload itself.

    Args:
        zip_path: Path to the Nordic DFU ZIP file.
        device: Target device, either a :class:`bleak.BLEDevice` (as returned
            by :func:`scan_for_devices`) or a raw Bluetooth address string.
            Passing a string will trigger a scan to resolve the device first.
        on_progress: Optional callback invoked with a :class:`ProgressInfo`
            whenever the upload percentage changes.
        on_log: Optional callback for human-readable status messages.
        on_state: Optional callback for :class:`DfuState` transitions.
        packets_per_notification: How many 20-byte BLE packets to send before
            waiting for a receipt notification from the bootloader.  Default: 8
            on macOS (CoreBluetooth flow-control limit), 10 elsewhere.  ``0``
            disables receipts.
        enable_experimental_buttonless: Also accept the unauthenticated SDK 12
            experimental buttonless service.
        force_dfu: Treat a Legacy DFU device without a version characteristic
            as a bootloader.
        bonded: Addresses already bonded with this host (required by
            buttonless DFU with bond sharing).

    Raises:
        DFUError: If any step of the DFU process fails.
        DeviceNotFoundError: If the DFU-mode bootloader cannot be found after
            triggering a reboot.
        FileNotFoundError: If *zip_path* does not exist.
    """
    log: LogCallback = on_log or (lambda _: None)

    firmware = parse_dfu_zip(zip_path)
    log(f"Firmware: {describe_firmware(firmware)}")

    transport = BleakTransport(bonded=bonded, on_log=log)
    if isinstance(device, str):
        address = device
    else:
        transport.remember(device)
        address = device.address

    config = DfuConfig(
        packets_receipt_notification=packets_per_notification,
        enable_experimental_buttonless=enable_experimental_buttonless,
        force_dfu=force_dfu,
    )
    session = DfuSession(
        transport,
        firmware,
        config=config,
        on_progress=on_progress,
        on_log=log,
        on_state=on_state,
    )
    await session.run(address)
