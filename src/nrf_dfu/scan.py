"""BLE device discovery helpers for Nordic DFU."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Sequence
from typing import Any

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from .errors import DeviceNotFoundError
from .uuids import VariantUuidTable

LogCallback = Callable[[str], None]

# On macOS, retrieve real Bluetooth MAC addresses via the private IOBluetooth API so
# app-mode and DFU-mode devices are distinct CBPeripheral objects (no GATT cache clash).
_CB_MACOS: dict[str, Any] = {"cb": {"use_bdaddr": True}} if sys.platform == "darwin" else {}

_DFU_NAME_MARKERS = ("DFUTARG", "DFU")


async def scan_for_devices(timeout: float = 5.0) -> list[BLEDevice]:
    """Discover nearby BLE devices that have a name.

    Args:
        timeout: Scan duration in seconds.

    Returns:
        List of :class:`bleak.BLEDevice` objects, filtered to named devices.
    """
    devices = await BleakScanner.discover(timeout=timeout, **_CB_MACOS)
    return [d for d in devices if d.name]


def looks_like_bootloader(
    device: BLEDevice,
    adv_data: AdvertisementData,
    service_uuids: Sequence[str],
) -> bool:
    """Whether the advertisement is that of a device in DFU bootloader mode."""
    live_name = (adv_data.local_name or "").upper()
    cached_name = (device.name or "").upper()
    if any(marker in live_name or marker in cached_name for marker in _DFU_NAME_MARKERS):
        return True
    advertised = [s.lower() for s in (adv_data.service_uuids or [])]
    return any(uuid.lower() in advertised for uuid in service_uuids)


async def find_dfu_target(
    candidates: Sequence[str],
    timeout: float = 30.0,
    on_log: LogCallback | None = None,
    service_uuids: Sequence[str] | None = None,
) -> BLEDevice:
    """Scan for a device that has rebooted into Nordic DFU bootloader mode.

    After a reboot, Nordic bootloaders advertise either on the original
    address or on one whose last byte is incremented by 1 (wrapping at 0xFF),
    so the caller passes both as *candidates*.  Name and service-UUID matching
    serve as fallbacks for bootloaders that pick another address.

    On macOS the address is a CoreBluetooth UUID unless ``use_bdaddr`` is
    honoured; such UUIDs are stable across the reboot and match directly.

    Args:
        candidates: Addresses the bootloader is expected to advertise on.
        timeout: Total seconds to keep scanning before giving up.
        on_log: Optional callback for progress messages.
        service_uuids: DFU service UUIDs a bootloader advertises.  Defaults to
            the Legacy and Secure DFU services.

    Returns:
        The :class:`bleak.BLEDevice` found in DFU bootloader mode.

    Raises:
        DeviceNotFoundError: If no matching device is found within *timeout* seconds.
    """
    log: LogCallback = on_log or (lambda _: None)
    wanted = {address.upper() for address in candidates}
    uuids = service_uuids if service_uuids is not None else VariantUuidTable().advertised_services()

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempt = 0
    while loop.time() < deadline:
        results = await BleakScanner.discover(timeout=2, return_adv=True, **_CB_MACOS)
        fallback: BLEDevice | None = None
        for device, adv_data in results.values():
            if device.address.upper() in wanted:
                return device
            if fallback is None and looks_like_bootloader(device, adv_data, uuids):
                fallback = device
        if fallback is not None:
            return fallback
        attempt += 1
        log(f"Scan {attempt}: DFU target not found yet, retrying…")
        await asyncio.sleep(1)

    raise DeviceNotFoundError(f"DFU target not found after {timeout:.0f} s")
