"""Pytest configuration and shared fixtures.

:class:`FakeTransport` implements the Transport Port in memory.  Each address
maps to a simulated peer that reacts to writes with the events a real DFU
bootloader (or buttonless application) would produce.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import struct
import zipfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from bleak import BleakClient

from nrf_dfu.codec import OBJECT_COMMAND, OBJECT_DATA, crc32
from nrf_dfu.errors import ConnectionFailedError, DeviceDisconnectedError, DeviceNotFoundError, GattError
from nrf_dfu.firmware import FirmwareComponents, _crc16_ccitt
from nrf_dfu.link import DfuLink, SessionSignals
from nrf_dfu.transport import LinkDropped, LinkHandle, Notification, NotifyKind, TransportEvent, WriteAck, WriteType
from nrf_dfu.uuids import (
    BUTTONLESS_WITHOUT_BOND_SHARING_UUID,
    LEGACY_DFU_CONTROL_POINT_UUID,
    LEGACY_DFU_PACKET_UUID,
    LEGACY_DFU_SERVICE_UUID,
    LEGACY_DFU_VERSION_UUID,
    SECURE_DFU_CONTROL_POINT_UUID,
    SECURE_DFU_PACKET_UUID,
    SECURE_DFU_SERVICE_UUID,
)

GAP_SERVICE_UUID = "00001800-0000-1000-8000-00805f9b34fb"
GATT_SERVICE_UUID = "00001801-0000-1000-8000-00805f9b34fb"
HEART_RATE_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"

ADDRESS = "AA:BB:CC:DD:EE:0F"
NEXT_ADDRESS = "AA:BB:CC:DD:EE:10"

_FIRMWARE = b"\xde\xad\xbe\xef" * 64
_INIT_PACKET = b"\x01\x02\x03\x04"


# ── Simulated peers ───────────────────────────────────────────────────────────


class FakePeer:
    """A device with a fixed GATT table that acknowledges every write."""

    #: Whether a bootloader scan would report this peer.
    is_bootloader = True

    def __init__(
        self,
        services: dict[str, set[str]],
        *,
        reads: dict[str, bytes] | None = None,
        after_reset: FakePeer | None = None,
    ) -> None:
        self.services = services
        self.reads = dict(reads or {})
        self.after_reset = after_reset
        self.writes: list[tuple[str, bytes]] = []
        self.subscriptions: dict[str, NotifyKind] = {}

    def on_connect(self) -> None:
        pass

    def read(self, characteristic: str) -> bytes:
        return self.reads[characteristic]

    def on_write(self, characteristic: str, data: bytes) -> list[TransportEvent]:
        self.writes.append((characteristic, data))
        return [WriteAck(characteristic), *self.handle_write(characteristic, data)]

    def handle_write(self, characteristic: str, data: bytes) -> list[TransportEvent]:
        return []

    def written_to(self, characteristic: str) -> list[bytes]:
        return [data for char, data in self.writes if char == characteristic]


class LegacyPeer(FakePeer):
    """Legacy DFU bootloader."""

    def __init__(
        self,
        *,
        version: int | None = 8,
        start_statuses: list[int] | None = None,
        supports_combined: bool = True,
        single_image_only: bool = False,
        receive_status: int = 1,
        validate_status: int = 1,
        after_reset: FakePeer | None = None,
    ) -> None:
        chars = {LEGACY_DFU_CONTROL_POINT_UUID, LEGACY_DFU_PACKET_UUID}
        reads = {}
        if version is not None:
            chars.add(LEGACY_DFU_VERSION_UUID)
            reads[LEGACY_DFU_VERSION_UUID] = struct.pack("<H", version)
        super().__init__(
            {GAP_SERVICE_UUID: set(), GATT_SERVICE_UUID: set(), LEGACY_DFU_SERVICE_UUID: chars},
            reads=reads,
            after_reset=after_reset,
        )
        self.start_statuses = list(start_statuses or [])
        self.supports_combined = supports_combined
        self.single_image_only = single_image_only
        self.receive_status = receive_status
        self.validate_status = validate_status
        self.start_requests: list[bytes] = []
        self.size_payloads: list[bytes] = []
        self.init_packet = b""
        self.firmware = b""
        self.prn = 0
        self.mode = "idle"
        self.expected_size = 0
        self.packets_since_receipt = 0

    def on_connect(self) -> None:
        self.mode = "idle"

    @staticmethod
    def response(op: int, status: int) -> Notification:
        return Notification(LEGACY_DFU_CONTROL_POINT_UUID, bytes([0x10, op, status]))

    def _start_status(self, start: bytes) -> int:
        if self.start_statuses:
            return self.start_statuses.pop(0)
        if len(start) == 1:
            return 1
        if self.single_image_only:
            return 3
        mode = start[1]
        if mode & 0x04 and mode & 0x03 and not self.supports_combined:
            return 3
        return 1

    def handle_write(self, characteristic: str, data: bytes) -> list[TransportEvent]:
        if characteristic == LEGACY_DFU_CONTROL_POINT_UUID:
            op = data[0]
            if op == 0x01:
                self.start_requests.append(data)
                self.mode = "sizes"
                return []
            if op == 0x02:
                if len(data) > 1 and data[1] == 0x01:
                    self.mode = "idle"
                    return [self.response(0x02, 1)]
                self.init_packet = b""
                self.mode = "init"
                return []
            if op == 0x08:
                (self.prn,) = struct.unpack_from("<H", data, 1)
                return []
            if op == 0x03:
                self.mode = "firmware"
                self.firmware = b""
                self.packets_since_receipt = 0
                return []
            if op == 0x04:
                return [self.response(0x04, self.validate_status)]
            if op in (0x05, 0x06):
                self.mode = "reset"
                return [LinkDropped()]
            return [self.response(op, 3)]

        if self.mode == "sizes":
            self.size_payloads.append(data)
            self.mode = "idle"
            status = self._start_status(self.start_requests[-1])
            self.expected_size = sum(struct.unpack(f"<{len(data) // 4}I", data))
            return [self.response(0x01, status)]
        if self.mode == "init":
            self.init_packet += data
            return []
        if self.mode == "firmware":
            self.firmware += data
            events: list[TransportEvent] = []
            self.packets_since_receipt += 1
            if self.prn and self.packets_since_receipt >= self.prn:
                self.packets_since_receipt = 0
                receipt = bytes([0x11]) + struct.pack("<I", len(self.firmware))
                events.append(Notification(LEGACY_DFU_CONTROL_POINT_UUID, receipt))
            if len(self.firmware) >= self.expected_size:
                self.mode = "idle"
                events.append(self.response(0x03, self.receive_status))
            return events
        return []


class SecurePeer(FakePeer):
    """Secure DFU bootloader keeping its objects across connections."""

    def __init__(
        self,
        firmware_size: int,
        *,
        command_max: int = 256,
        data_max: int = 64,
        command: bytes = b"",
        executed: bytes = b"",
        partial: bytes = b"",
        corrupt_checksums: int = 0,
        reject: dict[int, bytes] | None = None,
        error_detail: str | None = None,
        after_reset: FakePeer | None = None,
    ) -> None:
        super().__init__(
            {
                GAP_SERVICE_UUID: set(),
                GATT_SERVICE_UUID: set(),
                SECURE_DFU_SERVICE_UUID: {SECURE_DFU_CONTROL_POINT_UUID, SECURE_DFU_PACKET_UUID},
            },
            after_reset=after_reset,
        )
        self.firmware_size = firmware_size
        self.command_max = command_max
        self.data_max = data_max
        self.command = command
        self.command_executed = False
        self.executed = executed
        self.current = partial
        self.selected = OBJECT_DATA if partial else OBJECT_COMMAND
        self.corrupt_checksums = corrupt_checksums
        self.reject = dict(reject or {})
        self.error_detail = error_detail
        self.control_ops: list[int] = []
        self.creates: list[tuple[int, int]] = []
        self.prn_values: list[int] = []
        self.prn = 0
        self.packets_since_receipt = 0
        self._detail_fragments: list[bytes] | None = None

    @staticmethod
    def response(op: int, status: int = 1, payload: bytes = b"") -> Notification:
        return Notification(SECURE_DFU_CONTROL_POINT_UUID, bytes([0x60, op, status]) + payload)

    def _data(self) -> bytes:
        return self.executed + self.current

    def _read_object(self) -> Notification:
        if self.error_detail is None:
            return self.response(0x05, 0x02)
        if self._detail_fragments is None:
            text = self.error_detail.encode()
            raw = struct.pack("<H", len(text)) + text
            self._detail_fragments = [raw[i : i + 12] for i in range(0, len(raw), 12)]
        if not self._detail_fragments:
            return self.response(0x05, 0x08)
        return self.response(0x05, 1, self._detail_fragments.pop(0))

    def handle_write(self, characteristic: str, data: bytes) -> list[TransportEvent]:
        if characteristic == SECURE_DFU_CONTROL_POINT_UUID:
            op = data[0]
            self.control_ops.append(op)
            if op in self.reject:
                return [Notification(SECURE_DFU_CONTROL_POINT_UUID, bytes([0x60, op]) + self.reject.pop(op))]
            if op == 0x02:
                (self.prn,) = struct.unpack_from("<H", data, 1)
                self.prn_values.append(self.prn)
                return [self.response(0x02)]
            if op == 0x06:
                self.selected = data[1]
                if self.selected == OBJECT_COMMAND:
                    info = struct.pack("<III", self.command_max, len(self.command), crc32(self.command))
                else:
                    info = struct.pack("<III", self.data_max, len(self._data()), crc32(self._data()))
                return [self.response(0x06, 1, info)]
            if op == 0x01:
                object_type, size = struct.unpack_from("<BI", data, 1)
                self.creates.append((object_type, size))
                self.selected = object_type
                self.packets_since_receipt = 0
                if object_type == OBJECT_COMMAND:
                    self.command = b""
                    self.command_executed = False
                else:
                    self.current = b""
                return [self.response(0x01)]
            if op == 0x03:
                written = self.command if self.selected == OBJECT_COMMAND else self._data()
                crc = crc32(written)
                if self.selected == OBJECT_DATA and self.corrupt_checksums:
                    self.corrupt_checksums -= 1
                    crc ^= 0xFFFFFFFF
                return [self.response(0x03, 1, struct.pack("<II", len(written), crc))]
            if op == 0x04:
                if self.selected == OBJECT_COMMAND:
                    self.command_executed = True
                    return [self.response(0x04)]
                self.executed += self.current
                self.current = b""
                events: list[TransportEvent] = [self.response(0x04)]
                if len(self.executed) >= self.firmware_size:
                    events.append(LinkDropped())
                return events
            if op == 0x05:
                return [self._read_object()]
            return [self.response(op, 0x02)]

        if self.selected == OBJECT_COMMAND:
            self.command += data
            return []
        self.current += data
        self.packets_since_receipt += 1
        if self.prn and self.packets_since_receipt >= self.prn:
            self.packets_since_receipt = 0
            received = self._data()
            return [self.response(0x03, 1, struct.pack("<II", len(received), crc32(received)))]
        return []


class ButtonlessPeer(FakePeer):
    """Application exposing a Secure DFU buttonless characteristic."""

    is_bootloader = False

    def __init__(
        self,
        characteristic: str = BUTTONLESS_WITHOUT_BOND_SHARING_UUID,
        *,
        service: str = SECURE_DFU_SERVICE_UUID,
        behaviour: str = "respond",
        after_reset: FakePeer | None = None,
    ) -> None:
        super().__init__(
            {
                GAP_SERVICE_UUID: set(),
                GATT_SERVICE_UUID: set(),
                HEART_RATE_SERVICE_UUID: set(),
                service: {characteristic},
            },
            after_reset=after_reset,
        )
        self.characteristic = characteristic
        self.behaviour = behaviour

    def on_write(self, characteristic: str, data: bytes) -> list[TransportEvent]:
        self.writes.append((characteristic, data))
        if self.behaviour == "drop":
            return [LinkDropped()]
        if self.behaviour == "reject":
            return [WriteAck(characteristic), Notification(characteristic, b"\x20\x01\x04")]
        return [WriteAck(characteristic), Notification(characteristic, b"\x20\x01\x01"), LinkDropped()]


class LegacyButtonlessPeer(FakePeer):
    """Application exposing the Legacy DFU service next to its own services."""

    is_bootloader = False

    def __init__(self, *, version: int | None = None, after_reset: FakePeer | None = None) -> None:
        chars = {LEGACY_DFU_CONTROL_POINT_UUID, LEGACY_DFU_PACKET_UUID}
        reads = {}
        if version is not None:
            chars.add(LEGACY_DFU_VERSION_UUID)
            reads[LEGACY_DFU_VERSION_UUID] = struct.pack("<H", version)
        super().__init__(
            {
                GAP_SERVICE_UUID: set(),
                GATT_SERVICE_UUID: set(),
                HEART_RATE_SERVICE_UUID: set(),
                LEGACY_DFU_SERVICE_UUID: chars,
            },
            reads=reads,
            after_reset=after_reset,
        )

    def handle_write(self, characteristic: str, data: bytes) -> list[TransportEvent]:
        if characteristic == LEGACY_DFU_CONTROL_POINT_UUID and data[:1] == b"\x01":
            return [LinkDropped()]
        return []


# ── Fake transport ────────────────────────────────────────────────────────────


class _FakeLink:
    def __init__(self, peer: FakePeer) -> None:
        self.peer = peer
        self.queue: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self.connected = True


class FakeTransport:
    """In-memory Transport Port.  ``calls`` records every port call in order."""

    def __init__(self, peers: dict[str, FakePeer] | None = None) -> None:
        self.peers = dict(peers or {})
        self.calls: list[tuple[object, ...]] = []
        self.fail_connects = 0
        self.bonded: set[str] = set()
        self._links: dict[int, _FakeLink] = {}
        self._tokens = itertools.count(1)

    def _link(self, handle: LinkHandle) -> _FakeLink:
        return self._links[handle.token]

    def calls_named(self, name: str) -> list[tuple[object, ...]]:
        return [call for call in self.calls if call[0] == name]

    async def connect(self, address: str) -> LinkHandle:
        self.calls.append(("connect", address))
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ConnectionFailedError(f"Simulated connection failure to {address}")
        peer = self.peers.get(address)
        if peer is None:
            raise ConnectionFailedError(f"No device at {address}")
        peer.on_connect()
        handle = LinkHandle(address, next(self._tokens))
        self._links[handle.token] = _FakeLink(peer)
        return handle

    async def discover(self, handle: LinkHandle) -> dict[str, frozenset[str]]:
        self.calls.append(("discover", handle.address))
        services = self._link(handle).peer.services
        return {service.lower(): frozenset(c.lower() for c in chars) for service, chars in services.items()}

    async def write(self, handle: LinkHandle, characteristic: str, data: bytes, kind: WriteType) -> None:
        self.calls.append(("write", characteristic, bytes(data), kind))
        link = self._link(handle)
        if not link.connected:
            raise DeviceDisconnectedError("Simulated link is down")
        for event in link.peer.on_write(characteristic, bytes(data)):
            if isinstance(event, LinkDropped):
                link.connected = False
                if link.peer.after_reset is not None:
                    self.peers[handle.address] = link.peer.after_reset
            link.queue.put_nowait(event)

    async def read(self, handle: LinkHandle, characteristic: str) -> bytes:
        self.calls.append(("read", characteristic))
        try:
            return self._link(handle).peer.read(characteristic)
        except KeyError:
            raise GattError(f"Characteristic {characteristic} not readable") from None

    async def set_notifications(
        self, handle: LinkHandle, characteristic: str, enabled: bool, kind: NotifyKind
    ) -> None:
        self.calls.append(("set_notifications", characteristic, enabled, kind))
        self._link(handle).peer.subscriptions[characteristic] = kind

    async def await_event(self, handle: LinkHandle) -> TransportEvent:
        return await self._link(handle).queue.get()

    async def disconnect(self, handle: LinkHandle) -> None:
        self.calls.append(("disconnect", handle.address))
        self._link(handle).connected = False

    async def is_bonded(self, handle: LinkHandle) -> bool:
        return handle.address in self.bonded

    async def refresh_cache(self, handle: LinkHandle) -> None:
        self.calls.append(("refresh_cache", handle.address))

    async def find_bootloader(self, candidates: list[str], timeout: float) -> str:
        self.calls.append(("find_bootloader", tuple(candidates)))
        for address in candidates:
            peer = self.peers.get(address)
            if peer is not None and peer.is_bootloader:
                return address
        raise DeviceNotFoundError(f"DFU target not found after {timeout:.0f} s")


async def open_link(transport: FakeTransport, address: str = ADDRESS, *, timeout: float = 2.0) -> DfuLink:
    """Connect to *address* the way the session controller does."""
    handle = await transport.connect(address)
    services = await transport.discover(handle)
    return DfuLink(transport, handle, services, SessionSignals(), timeout=timeout)


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def application() -> FirmwareComponents:
    """A word-aligned application with its init packet."""
    return FirmwareComponents(application=bytes(range(200)), application_init=b"\x01\x02\x03\x04" * 5)


@pytest.fixture
def full_firmware() -> FirmwareComponents:
    """SoftDevice, Bootloader and application with both init packets."""
    return FirmwareComponents(
        softdevice=b"\x5d" * 48,
        bootloader=b"\xb1" * 32,
        application=bytes(range(100)),
        system_init=b"\x0a" * 8,
        application_init=b"\x0b" * 8,
    )


@pytest.fixture
def dfu_zip(tmp_path: Path) -> Path:
    """A minimal but valid Nordic DFU ZIP with manifest, .bin, and .dat."""
    zip_path = tmp_path / "firmware.zip"
    manifest = json.dumps({
        "manifest": {
            "application": {
                "bin_file": "application.bin",
                "dat_file": "application.dat",
                "init_packet_data": {"firmware_crc16": _crc16_ccitt(_FIRMWARE)},
            }
        }
    })
    with zipfile.ZipFile(zip_path, "w") as z:
        z.writestr("manifest.json", manifest)
        z.writestr("application.bin", _FIRMWARE)
        z.writestr("application.dat", _INIT_PACKET)
    return zip_path


@pytest.fixture
def mock_ble_client() -> MagicMock:
    """A MagicMock of BleakClient with async GATT methods stubbed out."""
    client = MagicMock(spec=BleakClient)
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.write_gatt_char = AsyncMock()
    client.read_gatt_char = AsyncMock(return_value=bytearray(b"\x08\x00"))
    client.start_notify = AsyncMock()
    client.stop_notify = AsyncMock()
    client.is_connected = True
    client.services = []
    return client
