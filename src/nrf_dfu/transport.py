"""Transport Port: the BLE GATT operations the DFU engine consumes."""

from __future__ import annotations

import enum
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol, Union


class WriteType(enum.Enum):
    WITH_RESPONSE = "with-response"
    WITHOUT_RESPONSE = "without-response"


class NotifyKind(enum.Enum):
    NOTIFY = "notify"
    INDICATE = "indicate"


@dataclass(frozen=True)
class LinkHandle:
    """Opaque handle of one connection, returned by :meth:`Transport.connect`."""

    address: str
    token: int = 0


@dataclass(frozen=True)
class WriteAck:
    characteristic: str
    status: int = 0


@dataclass(frozen=True)
class Notification:
    characteristic: str
    value: bytes


@dataclass(frozen=True)
class LinkDropped:
    status: int = 0


@dataclass(frozen=True)
class Cancelled:
    """Produced by the link layer when the session is aborted mid-wait."""


TransportEvent = Union[WriteAck, Notification, LinkDropped]
LinkEvent = Union[WriteAck, Notification, LinkDropped, Cancelled]

#: ``{service_uuid: frozenset(characteristic_uuids)}``, all lower-case.
ServiceMap = Mapping[str, frozenset[str]]


def has_characteristics(services: ServiceMap, service: str, *characteristics: str) -> bool:
    chars = services.get(service.lower())
    if chars is None:
        return False
    return all(c.lower() in chars for c in characteristics)


class Transport(Protocol):
    async def connect(self, address: str) -> LinkHandle:
        """Connect to *address*.  Raises ``ConnectionFailedError``."""

    async def discover(self, handle: LinkHandle) -> ServiceMap:
        """Return the device's services.  Raises ``ConnectionFailedError``."""

    async def write(self, handle: LinkHandle, characteristic: str, data: bytes, kind: WriteType) -> None:
        """Queue a write; completion is reported by a :class:`WriteAck` event."""

    async def read(self, handle: LinkHandle, characteristic: str) -> bytes:
        """Read the current value of *characteristic*."""

    async def set_notifications(
        self, handle: LinkHandle, characteristic: str, enabled: bool, kind: NotifyKind
    ) -> None:
        """Enable or disable notifications / indications on *characteristic*."""

    async def await_event(self, handle: LinkHandle) -> TransportEvent:
        """Block until the next write ack, notification, or link drop."""

    async def disconnect(self, handle: LinkHandle) -> None:
        """Close the link.  Never raises."""

    async def is_bonded(self, handle: LinkHandle) -> bool:
        """Whether the link is bonded (required by bond-sharing buttonless DFU)."""

    async def refresh_cache(self, handle: LinkHandle) -> None:
        """Forget cached services / device objects for this peer."""

    async def find_bootloader(self, candidates: Sequence[str], timeout: float) -> str:
        """Scan for a device in bootloader mode; return its address.

        Raises ``DeviceNotFoundError`` after *timeout* seconds.
        """
