"""Firmware component set and Nordic DFU ZIP reading."""

from __future__ import annotations

import enum
import json
import struct
import zipfile
from dataclasses import dataclass, replace
from typing import Any

from .errors import ConfigurationError, DFUError, UnalignedFirmwareError


class Component(enum.IntFlag):
    """Upload-mode bits used by the Legacy Start DFU command."""

    NONE = 0x00
    SOFT_DEVICE = 0x01
    BOOTLOADER = 0x02
    APPLICATION = 0x04

    @property
    def has_system_part(self) -> bool:
        return bool(self & (Component.SOFT_DEVICE | Component.BOOTLOADER))

    @property
    def has_application(self) -> bool:
        return bool(self & Component.APPLICATION)


SYSTEM_COMPONENTS = Component.SOFT_DEVICE | Component.BOOTLOADER


@dataclass(frozen=True)
class FirmwareComponents:
    """Raw firmware images plus their init packets.

    ``system_init`` covers the SoftDevice and/or Bootloader part,
    ``application_init`` covers the application.
    """

    softdevice: bytes | None = None
    bootloader: bytes | None = None
    application: bytes | None = None
    system_init: bytes | None = None
    application_init: bytes | None = None

    @property
    def components(self) -> Component:
        present = Component.NONE
        if self.softdevice:
            present |= Component.SOFT_DEVICE
        if self.bootloader:
            present |= Component.BOOTLOADER
        if self.application:
            present |= Component.APPLICATION
        return present

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` unless the set can be uploaded."""
        if self.components == Component.NONE:
            raise ConfigurationError("No firmware component supplied")
        for name in ("softdevice", "bootloader", "application"):
            image = getattr(self, name)
            if image and len(image) % 4:
                raise UnalignedFirmwareError(
                    f"The {name} image size ({len(image)} bytes) is not a multiple of 4 bytes"
                )

    def sizes(self, components: Component) -> tuple[int, int, int]:
        """Return ``(softdevice, bootloader, application)`` byte sizes selected by *components*."""
        return (
            len(self.softdevice or b"") if components & Component.SOFT_DEVICE else 0,
            len(self.bootloader or b"") if components & Component.BOOTLOADER else 0,
            len(self.application or b"") if components & Component.APPLICATION else 0,
        )

    def image(self, components: Component) -> bytes:
        """Concatenate the selected images in SoftDevice, Bootloader, Application order."""
        parts = []
        if components & Component.SOFT_DEVICE and self.softdevice:
            parts.append(self.softdevice)
        if components & Component.BOOTLOADER and self.bootloader:
            parts.append(self.bootloader)
        if components & Component.APPLICATION and self.application:
            parts.append(self.application)
        return b"".join(parts)

    def init_packet(self, components: Component) -> bytes | None:
        if components.has_system_part:
            return self.system_init
        return self.application_init

    def application_only(self) -> FirmwareComponents:
        return replace(self, softdevice=None, bootloader=None, system_init=None)


# ── ZIP parsing ───────────────────────────────────────────────────────────────


def _crc16_ccitt(data: bytes) -> int:
    """CRC-16/CCITT-FALSE, the variant Nordic uses in DFU manifest init_packet_data."""
    crc = 0xFFFF
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            crc = ((crc << 1) ^ 0x1021) if crc & 0x8000 else (crc << 1)
            crc &= 0xFFFF
    return crc


def _read_entry(z: zipfile.ZipFile, entry: dict[str, Any], key: str) -> tuple[bytes, bytes | None]:
    try:
        bin_file: str = entry["bin_file"]
    except KeyError as exc:
        raise DFUError(f"Invalid manifest.json: '{key}' has no bin_file") from exc
    dat_file: str | None = entry.get("dat_file")
    try:
        firmware = z.read(bin_file)
        init_packet = z.read(dat_file) if dat_file else None
    except KeyError as exc:
        raise DFUError(f"Manifest references a file not in the archive: {exc}") from exc
    if not firmware:
        raise DFUError(f"Firmware file '{bin_file}' is empty")
    return firmware, init_packet


def parse_dfu_zip(path: str) -> FirmwareComponents:
    """Parse a Nordic DFU ZIP file into a :class:`FirmwareComponents`.

    Reads ``manifest.json`` and loads every ``application``, ``bootloader``,
    ``softdevice`` and ``softdevice_bootloader`` entry it lists.  A combined
    SoftDevice+Bootloader image is split using the ``sd_size`` / ``bl_size``
    fields.  The application is checked against the CRC16 stored in a legacy
    manifest, when present.

    Args:
        path: Filesystem path to the ``.zip`` produced by nRF5 SDK tools.

    Raises:
        DFUError: If the ZIP is malformed, missing ``manifest.json``, or the
            firmware CRC does not match.
        FileNotFoundError: If *path* does not exist.
    """
    try:
        with zipfile.ZipFile(path, "r") as z:
            if "manifest.json" not in z.namelist():
                raise DFUError("Not a Nordic DFU ZIP: manifest.json not found")

            try:
                manifest: dict[str, Any] = json.loads(z.read("manifest.json"))["manifest"]
            except (ValueError, KeyError) as exc:
                raise DFUError(f"Invalid manifest.json: {exc}") from exc

            fields: dict[str, bytes | None] = {}

            if "softdevice_bootloader" in manifest:
                entry = manifest["softdevice_bootloader"]
                combined, fields["system_init"] = _read_entry(z, entry, "softdevice_bootloader")
                sizes = entry.get("info_read_only_metadata", entry)
                try:
                    sd_size, bl_size = int(sizes["sd_size"]), int(sizes["bl_size"])
                except (KeyError, ValueError) as exc:
                    raise DFUError(f"Invalid manifest.json: softdevice_bootloader sizes: {exc}") from exc
                if sd_size + bl_size != len(combined):
                    raise DFUError(
                        f"SoftDevice+Bootloader image is {len(combined)} bytes, "
                        f"manifest declares {sd_size} + {bl_size}"
                    )
                fields["softdevice"] = combined[:sd_size]
                fields["bootloader"] = combined[sd_size:]
            else:
                for key in ("softdevice", "bootloader"):
                    if key in manifest:
                        fields[key], init_packet = _read_entry(z, manifest[key], key)
                        fields["system_init"] = fields.get("system_init") or init_packet

            if "application" in manifest:
                app = manifest["application"]
                firmware, fields["application_init"] = _read_entry(z, app, "application")
                crc_expected: int | None = app.get("init_packet_data", {}).get("firmware_crc16")
                if crc_expected is not None:
                    crc_computed = _crc16_ccitt(firmware)
                    if crc_computed != crc_expected:
                        raise DFUError(
                            f"Firmware CRC mismatch: expected {crc_expected:#06x}, "
                            f"got {crc_computed:#06x}, ZIP may be corrupt"
                        )
                fields["application"] = firmware

            if not any(fields.get(k) for k in ("softdevice", "bootloader", "application")):
                raise DFUError("manifest.json lists no firmware images")

            return FirmwareComponents(**fields)
    except zipfile.BadZipFile as exc:
        raise DFUError(f"Invalid ZIP file: {exc}") from exc


def read_init_packet_version(init_packet: bytes) -> int | None:
    """Return the application version stored in a legacy init packet, if any.

    Legacy init packets start with ``device_type``, ``device_rev`` (uint16 each)
    followed by a uint32 ``application_version``; ``0xFFFFFFFF`` means unset.
    """
    if len(init_packet) < 8:
        return None
    (version,) = struct.unpack_from("<I", init_packet, 4)
    return None if version == 0xFFFFFFFF else version
