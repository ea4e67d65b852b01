"""Transport Port implementation on top of bleak."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Iterable, Sequence

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from .errors import ConnectionFailedError, DeviceDisconnectedError, GattError
from .scan import _CB_MACOS, find_dfu_target
from .transport import (
    LinkDropped,
    LinkHandle,
    Notification,
    NotifyKind,
    ServiceMap,
    TransportEvent,
    WriteAck,
    WriteType,
)

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]

#: Status reported for a write bleak rejected while the link stayed up
#: (ATT "Unlikely Error", what most stacks return when the peer resets mid-write).
GATT_UNLIKELY_ERROR: int = 0x0E


class _Link:
    def __init__(self, client: BleakClient, queue: asyncio.Queue[TransportEvent]) -> None:
        self.client = client
        self.queue = queue


class BleakTransport:
    """Connects to devices with :class:`bleak.BleakClient`.

    Notifications and disconnects are delivered by bleak callbacks and queued
    per link, so :meth:`await_event` sees them in arrival order.  A write is
    awaited to completion by bleak; its :class:`WriteAck` is queued right after.

    bleak cannot query the OS bond table, so bonded addresses must be declared
    up front via *bonded*.
    """

    def __init__(
        self,
        *,
        bonded: Iterable[str] = (),
        scan_timeout: float = 10.0,
        connect_timeout: float = 30.0,
        service_uuids: Sequence[str] | None = None,
        on_log: LogCallback | None = None,
    ) -> None:
        self.bonded = {address.upper() for address in bonded}
        self.scan_timeout = scan_timeout
        self.connect_timeout = connect_timeout
        self.service_uuids = service_uuids
        self._on_log: LogCallback = on_log or (lambda _: None)
        self._devices: dict[str, BLEDevice] = {}
        self._links: dict[int, _Link] = {}
        self._tokens = itertools.count(1)

    def remember(self, device: BLEDevice) -> None:
        """Use *device* for the next connection to its address instead of scanning."""
        self._devices[device.address.upper()] = device

    async def _resolve(self, address: str) -> BLEDevice:
        device = self._devices.get(address.upper())
        if device is not None:
            return device
        device = await BleakScanner.find_device_by_address(address, timeout=self.scan_timeout, **_CB_MACOS)
        if device is None:
            raise ConnectionFailedError(f"Could not locate device with address {address}")
        self.remember(device)
        return device

    def _link(self, handle: LinkHandle) -> _Link:
        try:
            return self._links[handle.token]
        except KeyError:
            raise DeviceDisconnectedError(f"Not connected to {handle.address}") from None

    # ── Transport Port ────────────────────────────────────────────────────────

    async def connect(self, address: str) -> LinkHandle:
        device = await self._resolve(address)
        handle = LinkHandle(device.address, next(self._tokens))
        queue: asyncio.Queue[TransportEvent] = asyncio.Queue()

        def _on_disconnect(client: BleakClient) -> None:
            logger.debug("Disconnected from %s", handle.address)
            queue.put_nowait(LinkDropped())

        client = BleakClient(device, disconnected_callback=_on_disconnect)
        try:
            await client.connect(timeout=self.connect_timeout)
        except (asyncio.TimeoutError, BleakError, OSError) as exc:
            await _safe_disconnect(client)
            raise ConnectionFailedError(f"Failed to connect to {address}: {exc}") from exc

        self._links[handle.token] = _Link(client, queue)
        return handle

    async def discover(self, handle: LinkHandle) -> ServiceMap:
        client = self._link(handle).client
        try:
            services = client.services
            return {
                str(service.uuid).lower(): frozenset(str(char.uuid).lower() for char in service.characteristics)
                for service in services
            }
        except BleakError as exc:
            raise ConnectionFailedError(f"Service discovery failed: {exc}") from exc

    async def write(self, handle: LinkHandle, characteristic: str, data: bytes, kind: WriteType) -> None:
        link = self._link(handle)
        try:
            await link.client.write_gatt_char(characteristic, data, response=kind is WriteType.WITH_RESPONSE)
        except (EOFError, ConnectionError) as exc:
            raise DeviceDisconnectedError(f"Writing to {characteristic} failed: {exc}") from exc
        except (BleakError, OSError) as exc:
            if not link.client.is_connected:
                raise DeviceDisconnectedError(f"Writing to {characteristic} failed: {exc}") from exc
            logger.debug("Write to %s failed: %s", characteristic, exc)
            link.queue.put_nowait(WriteAck(characteristic, GATT_UNLIKELY_ERROR))
            return
        link.queue.put_nowait(WriteAck(characteristic))

    async def read(self, handle: LinkHandle, characteristic: str) -> bytes:
        client = self._link(handle).client
        try:
            return bytes(await client.read_gatt_char(characteristic))
        except BleakError as exc:
            raise GattError(f"Reading {characteristic} failed: {exc}") from exc

    async def set_notifications(
        self, handle: LinkHandle, characteristic: str, enabled: bool, kind: NotifyKind
    ) -> None:
        link = self._link(handle)

        def _on_notify(sender: BleakGATTCharacteristic, data: bytearray) -> None:
            link.queue.put_nowait(Notification(characteristic, bytes(data)))

        try:
            if enabled:
                # bleak picks notify or indicate from the characteristic's properties.
                logger.debug("Subscribing to %s (%s)", characteristic, kind.value)
                await link.client.start_notify(characteristic, _on_notify)
            else:
                await link.client.stop_notify(characteristic)
        except BleakError as exc:
            raise GattError(f"Enabling notifications on {characteristic} failed: {exc}") from exc

    async def await_event(self, handle: LinkHandle) -> TransportEvent:
        return await self._link(handle).queue.get()

    async def disconnect(self, handle: LinkHandle) -> None:
        link = self._links.pop(handle.token, None)
        if link is not None:
            await _safe_disconnect(link.client)

    async def is_bonded(self, handle: LinkHandle) -> bool:
        return handle.address.upper() in self.bonded

    async def refresh_cache(self, handle: LinkHandle) -> None:
        # A stale BLEDevice keeps the pre-reboot GATT table on some backends.
        self._devices.pop(handle.address.upper(), None)

    async def find_bootloader(self, candidates: Sequence[str], timeout: float) -> str:
        device = await find_dfu_target(
            candidates, timeout=timeout, on_log=self._on_log, service_uuids=self.service_uuids
        )
        self._on_log(f"Found DFU target: {device.name} ({device.address})")
        self.remember(device)
        return device.address


async def _safe_disconnect(client: BleakClient) -> None:
    try:
        await client.disconnect()
    except (BleakError, OSError, EOFError) as exc:
        logger.debug("Ignoring error while disconnecting: %s", exc)
