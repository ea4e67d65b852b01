"""The engine's single suspension point.

:class:`DfuLink` wraps one transport connection.  Every wait in the protocol
engines goes through :meth:`DfuLink.next_event`, which resolves to the first
of: a write acknowledgement, a notification, a link drop, or an abort.  Pause
parks the worker after that event until :meth:`SessionSignals.resume`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from .errors import DeviceDisconnectedError, GattError, ResponseTimeoutError, UploadAbortedError
from .transport import (
    Cancelled,
    LinkDropped,
    LinkEvent,
    LinkHandle,
    Notification,
    NotifyKind,
    ServiceMap,
    Transport,
    WriteAck,
    WriteType,
)

logger = logging.getLogger(__name__)


class SessionSignals:
    """Cooperative pause / resume / abort requests from the host application."""

    def __init__(self) -> None:
        self._running = asyncio.Event()
        self._running.set()
        self._aborted = asyncio.Event()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def pause(self) -> None:
        if not self.aborted:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def abort(self) -> None:
        self._aborted.set()
        self._running.set()

    async def wait_aborted(self) -> None:
        await self._aborted.wait()

    async def wait_running(self) -> None:
        await self._running.wait()

    async def checkpoint(self) -> None:
        """Park while paused; raise :class:`UploadAbortedError` once aborted."""
        await self._running.wait()
        if self.aborted:
            raise UploadAbortedError()


class DfuLink:
    """Sequential request / event helper over one connection.

    Notifications that arrive while a write acknowledgement is awaited are
    kept in order and handed out by :meth:`notification`.
    """

    def __init__(
        self,
        transport: Transport,
        handle: LinkHandle,
        services: ServiceMap,
        signals: SessionSignals,
        *,
        timeout: float = 30.0,
    ) -> None:
        self.transport = transport
        self.handle = handle
        self.services = services
        self.signals = signals
        self.timeout = timeout
        self.connected = True
        #: A Reset / Activate+Reset / Enter-Bootloader write is outstanding;
        #: a link drop now is the expected outcome, not an error.
        self.reset_in_flight = False
        self._pending: deque[bytes] = deque()

    @property
    def address(self) -> str:
        return self.handle.address

    # ── Waiting ───────────────────────────────────────────────────────────────

    async def next_event(self, *, cancellable: bool = True, timeout: float | None = None) -> LinkEvent:
        """Wait for the next transport event, or :class:`Cancelled` on abort."""
        if cancellable and self.signals.aborted:
            return Cancelled()

        waiters: set[asyncio.Future[object]] = set()
        getter = asyncio.ensure_future(self.transport.await_event(self.handle))
        waiters.add(getter)
        aborter: asyncio.Future[object] | None = None
        if cancellable:
            aborter = asyncio.ensure_future(self.signals.wait_aborted())
            waiters.add(aborter)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout if timeout is None else timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if getter in done:
            event: LinkEvent = getter.result()  # type: ignore[assignment]
        elif aborter is not None and aborter in done:
            return Cancelled()
        else:
            raise ResponseTimeoutError("Timeout waiting for DFU response")

        if cancellable and self.signals.paused:
            logger.debug("Paused")
            await self.signals.wait_running()
            if self.signals.aborted:
                return Cancelled()
        return event

    def _handle_drop(self, event: LinkDropped) -> bool:
        """Mark the link down.  Returns ``True`` if the drop was expected."""
        self.connected = False
        if self.reset_in_flight:
            logger.debug("Link dropped after reset request, as expected")
            return True
        raise DeviceDisconnectedError("Device disconnected", event.status or None)

    # ── Requests ──────────────────────────────────────────────────────────────

    async def write(
        self,
        characteristic: str,
        data: bytes,
        *,
        with_response: bool = True,
        reset: bool = False,
        cancellable: bool = True,
    ) -> None:
        """Write *data* and wait for its acknowledgement.

        With ``reset=True`` the write is expected to reboot the peer: a link
        drop or a failed acknowledgement completes the call instead of raising.
        """
        if cancellable:
            await self.signals.checkpoint()
        if not self.connected:
            raise DeviceDisconnectedError("Unable to write: device disconnected")

        self.reset_in_flight = reset
        kind = WriteType.WITH_RESPONSE if with_response else WriteType.WITHOUT_RESPONSE
        if with_response:
            logger.debug("TX %s: %s", characteristic, data.hex(" "))
        try:
            await self.transport.write(self.handle, characteristic, bytes(data), kind)
        except DeviceDisconnectedError:
            self.connected = False
            if reset:
                logger.debug("Link dropped while sending reset request, as expected")
                return
            raise

        while True:
            event = await self.next_event(cancellable=cancellable)
            if isinstance(event, Cancelled):
                raise UploadAbortedError()
            if isinstance(event, LinkDropped):
                self._handle_drop(event)
                return
            if isinstance(event, Notification):
                logger.debug("RX %s: %s", event.characteristic, event.value.hex(" "))
                self._pending.append(event.value)
                continue
            if event.characteristic.lower() != characteristic.lower():
                logger.debug("Ignoring stray write ack for %s", event.characteristic)
                continue
            if event.status != 0:
                if reset:
                    return
                raise GattError(f"Writing to {characteristic} failed", event.status)
            return

    async def notification(self, *, cancellable: bool = True) -> bytes | None:
        """Return the next notification value.

        Returns ``None`` only when the link dropped after a reset request.
        """
        if self._pending:
            return self._pending.popleft()
        if not self.connected:
            if self.reset_in_flight:
                return None
            raise DeviceDisconnectedError("Unable to read response: device disconnected")
        while True:
            event = await self.next_event(cancellable=cancellable)
            if isinstance(event, Cancelled):
                raise UploadAbortedError()
            if isinstance(event, LinkDropped):
                self._handle_drop(event)
                return None
            if isinstance(event, Notification):
                logger.debug("RX %s: %s", event.characteristic, event.value.hex(" "))
                return event.value

    def pending_notification(self) -> bytes | None:
        """Pop an already-received notification without waiting."""
        return self._pending.popleft() if self._pending else None

    def push_back(self, value: bytes) -> None:
        self._pending.appendleft(value)

    async def read(self, characteristic: str) -> bytes:
        await self.signals.checkpoint()
        if not self.connected:
            raise DeviceDisconnectedError("Unable to read: device disconnected")
        value = await self.transport.read(self.handle, characteristic)
        logger.debug("READ %s: %s", characteristic, bytes(value).hex(" "))
        return bytes(value)

    async def enable_notifications(self, characteristic: str, kind: NotifyKind = NotifyKind.NOTIFY) -> None:
        await self.signals.checkpoint()
        await self.transport.set_notifications(self.handle, characteristic, True, kind)

    async def is_bonded(self) -> bool:
        return await self.transport.is_bonded(self.handle)

    async def wait_for_disconnect(self, timeout: float | None = None) -> bool:
        """Wait for the peer to drop the link after a reset.

        Returns ``False`` if the link was still up after *timeout* seconds.
        Notifications arriving meanwhile are discarded.
        """
        self.reset_in_flight = True
        while self.connected:
            try:
                event = await self.next_event(cancellable=False, timeout=timeout)
            except ResponseTimeoutError:
                logger.warning("Device did not disconnect after reset request")
                return False
            if isinstance(event, LinkDropped):
                self._handle_drop(event)
        return True
