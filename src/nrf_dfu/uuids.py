"""GATT UUIDs of every supported DFU variant.

The defaults match the Nordic nRF5 SDK.  Devices with custom UUIDs can be
served by passing a modified :class:`VariantUuidTable` in the session config.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ── Legacy DFU (nRF5 SDK ≤ 11) ────────────────────────────────────────────────

LEGACY_DFU_SERVICE_UUID = "00001530-1212-efde-1523-785feabcd123"
LEGACY_DFU_CONTROL_POINT_UUID = "00001531-1212-efde-1523-785feabcd123"
LEGACY_DFU_PACKET_UUID = "00001532-1212-efde-1523-785feabcd123"
LEGACY_DFU_VERSION_UUID = "00001534-1212-efde-1523-785feabcd123"

# ── Secure DFU (nRF5 SDK ≥ 12) ────────────────────────────────────────────────

SECURE_DFU_SERVICE_UUID = "0000fe59-0000-1000-8000-00805f9b34fb"
SECURE_DFU_CONTROL_POINT_UUID = "8ec90001-f315-4f60-9fb8-838830daea50"
SECURE_DFU_PACKET_UUID = "8ec90002-f315-4f60-9fb8-838830daea50"

# ── Buttonless ────────────────────────────────────────────────────────────────

BUTTONLESS_WITHOUT_BOND_SHARING_UUID = "8ec90003-f315-4f60-9fb8-838830daea50"
BUTTONLESS_WITH_BOND_SHARING_UUID = "8ec90004-f315-4f60-9fb8-838830daea50"
# SDK 12 experimental service: the characteristic shares the service UUID.
EXPERIMENTAL_BUTTONLESS_SERVICE_UUID = "8e400001-f315-4f60-9fb8-838830daea50"
EXPERIMENTAL_BUTTONLESS_UUID = "8e400001-f315-4f60-9fb8-838830daea50"


@dataclass(frozen=True)
class LegacyUuids:
    service: str = LEGACY_DFU_SERVICE_UUID
    control_point: str = LEGACY_DFU_CONTROL_POINT_UUID
    packet: str = LEGACY_DFU_PACKET_UUID
    version: str = LEGACY_DFU_VERSION_UUID


@dataclass(frozen=True)
class SecureUuids:
    service: str = SECURE_DFU_SERVICE_UUID
    control_point: str = SECURE_DFU_CONTROL_POINT_UUID
    packet: str = SECURE_DFU_PACKET_UUID


@dataclass(frozen=True)
class ButtonlessUuids:
    service: str
    characteristic: str


@dataclass(frozen=True)
class VariantUuidTable:
    """Service and characteristic UUIDs probed for each protocol variant."""

    legacy: LegacyUuids = field(default_factory=LegacyUuids)
    secure: SecureUuids = field(default_factory=SecureUuids)
    buttonless_with_bond_sharing: ButtonlessUuids = field(
        default_factory=lambda: ButtonlessUuids(SECURE_DFU_SERVICE_UUID, BUTTONLESS_WITH_BOND_SHARING_UUID)
    )
    buttonless_without_bond_sharing: ButtonlessUuids = field(
        default_factory=lambda: ButtonlessUuids(SECURE_DFU_SERVICE_UUID, BUTTONLESS_WITHOUT_BOND_SHARING_UUID)
    )
    experimental_buttonless: ButtonlessUuids = field(
        default_factory=lambda: ButtonlessUuids(EXPERIMENTAL_BUTTONLESS_SERVICE_UUID, EXPERIMENTAL_BUTTONLESS_UUID)
    )

    def advertised_services(self) -> tuple[str, ...]:
        """Service UUIDs a device in bootloader mode may advertise."""
        return (self.legacy.service, self.secure.service)
