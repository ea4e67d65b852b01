"""End-to-end DFU session: connect, select the variant, upload, finalize.

A run may span several connections.  A buttonless switch reboots the device
into its bootloader, a SoftDevice/Bootloader part is followed by the
application part, and an interrupted Legacy upload restarts after a Reset.
Each connection gets a fresh engine; nothing but the :class:`Session`
record is carried over.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from .buttonless import ButtonlessDfu, LegacyButtonlessDfu, increment_address
from .config import DfuConfig
from .errors import ConfigurationError, ConnectionFailedError, DFUError, UploadAbortedError
from .firmware import Component, FirmwareComponents
from .legacy import LegacyDfu
from .link import DfuLink, SessionSignals
from .model import DfuState, EngineResult, Outcome, Session, Variant
from .progress import ProgressCallback
from .secure import SecureDfu
from .selector import Selection, select_variant
from .transport import Transport

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
StateCallback = Callable[[DfuState], None]
ErrorCallback = Callable[[DFUError], None]


class Engine(Protocol):
    async def initialize(self) -> None: ...

    async def perform(self) -> EngineResult: ...


class DfuSession:
    """Drives one firmware update against one device.

    :meth:`pause`, :meth:`resume` and :meth:`abort` may be called from any
    task on the same event loop while :meth:`run` is in progress.  They take
    effect at the engine's next wait; a packet already handed to the
    transport is never interrupted.
    """

    def __init__(
        self,
        transport: Transport,
        firmware: FirmwareComponents,
        *,
        config: DfuConfig | None = None,
        on_progress: ProgressCallback | None = None,
        on_log: LogCallback | None = None,
        on_state: StateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.transport = transport
        self.firmware = firmware
        self.config = config or DfuConfig()
        self.signals = SessionSignals()
        self.session: Session | None = None
        self.state: DfuState | None = None
        self._on_progress = on_progress
        self._on_log: LogCallback = on_log or (lambda _: None)
        self._on_state: StateCallback = on_state or (lambda _: None)
        self._on_error: ErrorCallback = on_error or (lambda _: None)

    # ── Host controls ─────────────────────────────────────────────────────────

    def pause(self) -> None:
        self.signals.pause()

    def resume(self) -> None:
        self.signals.resume()

    def abort(self) -> None:
        self.signals.abort()

    @property
    def paused(self) -> bool:
        return self.signals.paused

    @property
    def aborted(self) -> bool:
        return self.signals.aborted

    # ── Internals ─────────────────────────────────────────────────────────────

    def _set_state(self, state: DfuState) -> None:
        if state is not self.state:
            logger.debug("State: %s", state.value)
            self.state = state
            self._on_state(state)

    async def _connect(self, address: str) -> DfuLink:
        """Connect and discover services, retrying exactly once on a connection error."""
        for attempt in range(2):
            handle = None
            try:
                handle = await self.transport.connect(address)
                services = await self.transport.discover(handle)
            except ConnectionFailedError as exc:
                if handle is not None:
                    await self.transport.disconnect(handle)
                if attempt == 1:
                    raise
                self._on_log(f"Connection failed: {exc}, retrying…")
                continue
            return DfuLink(self.transport, handle, services, self.signals, timeout=self.config.response_timeout)
        raise ConnectionFailedError(f"Failed to connect to {address}")  # unreachable, but satisfies mypy

    def _engine(self, link: DfuLink, session: Session, selection: Selection) -> Engine:
        callbacks = {"on_log": self._on_log, "on_state": self._set_state}
        variant = selection.variant
        if variant is Variant.SECURE:
            return SecureDfu(link, session, self.config, on_progress=self._on_progress, **callbacks)
        if variant in (Variant.LEGACY_V1, Variant.LEGACY_V2):
            return LegacyDfu(
                link, session, self.config, version=selection.version, on_progress=self._on_progress, **callbacks
            )
        if variant is Variant.LEGACY_BUTTONLESS:
            return LegacyButtonlessDfu(link, session, self.config, version=selection.version, **callbacks)
        return ButtonlessDfu(link, session, self.config, variant, **callbacks)

    async def _finalize(self, link: DfuLink) -> None:
        await self.transport.disconnect(link.handle)
        await self.transport.refresh_cache(link.handle)

    async def _run_once(self, session: Session) -> EngineResult:
        await self.signals.checkpoint()
        self._set_state(DfuState.CONNECTING)
        self._on_log(f"Connecting to {session.address}…")
        link = await self._connect(session.address)
        try:
            selection = await select_variant(link, self.config)
            session.variant = selection.variant
            self._on_log(f"Selected {selection.variant.value} DFU")
            engine = self._engine(link, session, selection)
            await engine.initialize()
            return await engine.perform()
        finally:
            await self._finalize(link)

    # ── Entry point ───────────────────────────────────────────────────────────

    async def run(self, address: str) -> None:
        """Update the device at *address*.

        Raises:
            ConfigurationError: Before any transport call, if the firmware
                cannot be uploaded as given.
            UploadAbortedError: If :meth:`abort` was called.
            DFUError: If any step of the DFU process fails.
        """
        try:
            self.firmware.validate()
        except ConfigurationError as exc:
            self._fail(exc)
            raise

        session = Session(address, self.firmware, self.firmware.components)
        self.session = session
        restarts = 0
        try:
            while True:
                result = await self._run_once(session)
                if result.outcome is Outcome.COMPLETED:
                    break

                restarts += 1
                if restarts > self.config.max_restarts:
                    raise DFUError(f"Giving up after {self.config.max_restarts} restarts")

                if result.outcome is Outcome.NEXT_PART:
                    session = Session(
                        session.address,
                        self.firmware.application_only(),
                        Component.APPLICATION,
                        part=session.part + 1,
                        total_parts=session.total_parts,
                    )
                    self.session = session

                if result.rescan:
                    self._on_log("Waiting for device to reboot into DFU mode…")
                    session.address = await self.transport.find_bootloader(
                        [session.address, increment_address(session.address)],
                        self.config.reconnect_timeout,
                    )
        except UploadAbortedError:
            self._on_log("DFU aborted")
            self._set_state(DfuState.ABORTED)
            raise
        except DFUError as exc:
            self._fail(exc)
            raise

        self._set_state(DfuState.COMPLETED)
        self._on_log("DFU complete, device is rebooting with new firmware.")

    def _fail(self, exc: DFUError) -> None:
        if self.session is not None:
            self.session.last_error = exc
        self._set_state(DfuState.FAILED)
        self._on_error(exc)
