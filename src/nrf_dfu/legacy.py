"""Nordic Legacy DFU transfer engine (nRF5 SDK ≤ 11).

Two op-code dialects share the control point: the original single-image
protocol (``LEGACY_V1``: Start DFU carries no mode byte, one image size) and
the multi-image protocol (``LEGACY_V2``: mode byte plus three image sizes and
START/COMPLETE framed init packets).  The engine always starts with V2 and
downgrades when the bootloader answers ``NotSupported``.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable

from . import codec
from .config import DfuConfig
from .errors import (
    DeviceDisconnectedError,
    DFUError,
    InitPacketRequiredError,
    RemoteRejectedError,
    UploadAbortedError,
)
from .firmware import SYSTEM_COMPONENTS, Component
from .flow import PacketReceiptFlow, stream
from .link import DfuLink
from .model import DfuState, EngineResult, Outcome, Session, Variant
from .progress import ProgressCallback, ProgressTracker

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
StateCallback = Callable[[DfuState], None]

#: Seconds to wait for the link to drop after a best-effort Reset.
_RESET_DISCONNECT_TIMEOUT: float = 5.0


class Step(enum.Enum):
    START_REQUESTED = "start-requested"
    SIZE_SENT = "size-sent"
    INIT_PACKET_SENT = "init-packet-sent"
    PRN_CONFIGURED = "prn-configured"
    RECEIVING_MODE = "receiving-mode"
    TRANSFERRING = "transferring"
    VALIDATING = "validating"
    ACTIVATING_RESET = "activating-reset"
    DISCONNECTED = "disconnected"


class LegacyDfu:
    """Uploads one part of the firmware to a Legacy DFU bootloader.

    The caller connects, selects the variant and passes the connected
    :class:`DfuLink`; the engine never connects or disconnects on its own
    except through the Reset and Activate commands that reboot the peer.
    """

    def __init__(
        self,
        link: DfuLink,
        session: Session,
        config: DfuConfig,
        *,
        version: int = 0,
        on_progress: ProgressCallback | None = None,
        on_log: LogCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> None:
        self.link = link
        self.session = session
        self.config = config
        self.uuids = config.uuids.legacy
        self.version = version
        self.dialect = Variant.LEGACY_V2
        self.step: Step | None = None
        self._on_progress = on_progress
        self._on_log: LogCallback = on_log or (lambda _: None)
        self._on_state: StateCallback = on_state or (lambda _: None)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _advance(self, step: Step) -> None:
        logger.debug("Legacy DFU step: %s", step.value)
        self.step = step

    async def _control(self, data: bytes, *, reset: bool = False, cancellable: bool = True) -> None:
        await self.link.write(self.uuids.control_point, data, reset=reset, cancellable=cancellable)

    async def _packet(self, data: bytes) -> None:
        await self.link.write(self.uuids.packet, data, with_response=False)

    async def _read_response(self, op: int) -> codec.Response:
        """Wait for the response to *op*, skipping stale packet receipts."""
        while True:
            value = await self.link.notification()
            if value is None:
                raise DeviceDisconnectedError("Device disconnected before responding")
            if codec.decode_legacy_receipt(value) is None:
                return codec.decode_response(value, codec.LEGACY, op)
            logger.debug("Skipping packet receipt while waiting for op %#04x", op)

    @staticmethod
    def _check(response: codec.Response, message: str) -> None:
        if not response.success:
            raise RemoteRejectedError(
                message,
                response.status,
                op=response.request_op,
                reason=codec.LEGACY.reason(response.status),
            )

    async def _send_image_sizes(self) -> None:
        if self.dialect is Variant.LEGACY_V1:
            await self._packet(codec.legacy_image_size(len(self.session.image)))
        else:
            await self._packet(codec.legacy_image_sizes(*self.session.firmware.sizes(self.session.components)))
        self._advance(Step.SIZE_SENT)

    async def _start_dfu(self, components: Component) -> codec.Response:
        mode = None if self.dialect is Variant.LEGACY_V1 else int(components)
        self._advance(Step.START_REQUESTED)
        await self._control(codec.legacy_start_dfu(mode))
        await self._send_image_sizes()
        return await self._read_response(codec.LEGACY_OP_START_DFU)

    async def reset(self) -> None:
        """Best-effort Reset: ask the bootloader to drop the upload and reboot."""
        if not self.link.connected:
            return
        try:
            await self._control(codec.legacy_op(codec.LEGACY_OP_RESET), reset=True, cancellable=False)
            await self.link.wait_for_disconnect(_RESET_DISCONNECT_TIMEOUT)
        except DFUError as exc:
            logger.warning("Reset request failed: %s", exc)

    # ── Phases ────────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Subscribe to the control point and check the init-packet requirement."""
        if self.version >= 5 and not self.session.init_packet:
            raise InitPacketRequiredError(
                f"Init packet required by DFU bootloader version {self.version >> 8}.{self.version & 0xFF}"
            )
        await self.link.enable_notifications(self.uuids.control_point)

    async def _negotiate(self) -> bool:
        """Send Start DFU, downgrading as needed.  Returns ``False`` if the peer was reset."""
        session = self.session
        response = await self._start_dfu(session.components)

        if response.status == codec.LegacyStatus.INVALID_STATE:
            self._on_log("Previous upload was interrupted; resetting the device…")
            await self._control(codec.legacy_op(codec.LEGACY_OP_RESET), reset=True)
            await self.link.wait_for_disconnect()
            return False

        if (
            response.status == codec.LegacyStatus.NOT_SUPPORTED
            and session.components.has_application
            and session.components.has_system_part
        ):
            self._on_log("Bootloader cannot take the application together with SoftDevice/Bootloader; splitting")
            session.components &= SYSTEM_COMPONENTS
            session.total_parts = 2
            response = await self._start_dfu(session.components)

        if response.status == codec.LegacyStatus.NOT_SUPPORTED and session.components == Component.APPLICATION:
            self._on_log("Falling back to the single-image DFU protocol")
            self.dialect = Variant.LEGACY_V1
            session.variant = Variant.LEGACY_V1
            response = await self._start_dfu(session.components)

        self._check(response, "Starting DFU failed")
        return True

    async def _send_init_packet(self, init_packet: bytes) -> None:
        if self.dialect is Variant.LEGACY_V1:
            await self._control(codec.legacy_init_params())
        else:
            await self._control(codec.legacy_init_params(codec.LEGACY_INIT_START))
        for chunk in codec.chunks(init_packet):
            await self._packet(chunk)
        if self.dialect is Variant.LEGACY_V2:
            await self._control(codec.legacy_init_params(codec.LEGACY_INIT_COMPLETE))
        response = await self._read_response(codec.LEGACY_OP_INIT_DFU_PARAMS)
        self._check(response, "Init packet rejected")
        self._advance(Step.INIT_PACKET_SENT)

    async def _transfer(self, image: bytes) -> None:
        prn = self.config.packets_receipt_notification
        if prn > 0:
            await self._control(codec.legacy_prn_request(prn))
        self._advance(Step.PRN_CONFIGURED)

        await self._control(codec.legacy_op(codec.LEGACY_OP_RECEIVE_FIRMWARE_IMAGE))
        self._advance(Step.RECEIVING_MODE)

        session = self.session
        tracker = ProgressTracker(
            len(image), part=session.part, total_parts=session.total_parts, listener=self._on_progress
        )
        tracker.start()
        self._on_state(DfuState.UPLOADING)
        self._on_log(f"Sending firmware ({len(image):,} bytes)…")
        self._advance(Step.TRANSFERRING)
        await stream(
            self.link,
            self.uuids.packet,
            image,
            flow=PacketReceiptFlow(prn),
            progress=tracker,
            parse_receipt=codec.decode_legacy_receipt,
        )

        response = await self._read_response(codec.LEGACY_OP_RECEIVE_FIRMWARE_IMAGE)
        self._check(response, "Firmware upload failed")
        self._on_log(f"Sent {tracker.bytes_sent:,} bytes")

    async def _validate_and_activate(self) -> None:
        self._on_state(DfuState.VALIDATING)
        self._advance(Step.VALIDATING)
        await self._control(codec.legacy_op(codec.LEGACY_OP_VALIDATE))
        response = await self._read_response(codec.LEGACY_OP_VALIDATE)
        self._check(response, "Firmware validation failed")

        self._on_state(DfuState.DISCONNECTING)
        self._advance(Step.ACTIVATING_RESET)
        await self._control(codec.legacy_op(codec.LEGACY_OP_ACTIVATE_AND_RESET), reset=True)
        await self.link.wait_for_disconnect()
        self._advance(Step.DISCONNECTED)

    async def perform(self) -> EngineResult:
        """Run the upload.  Any failure triggers a best-effort Reset before propagating."""
        session = self.session
        self._on_state(DfuState.STARTING)
        try:
            if not await self._negotiate():
                return EngineResult(Outcome.RESTART)

            init_packet = session.init_packet
            if init_packet:
                await self._send_init_packet(init_packet)
            elif self.version >= 5:
                raise InitPacketRequiredError("Init packet required after protocol negotiation")

            await self._transfer(session.image)
            await self._validate_and_activate()
        except UploadAbortedError:
            self._on_log("Upload aborted; resetting the device")
            await self.reset()
            raise
        except DFUError:
            await self.reset()
            raise

        if session.total_parts > session.part:
            self._on_log("SoftDevice/Bootloader updated; the application follows after reboot")
            return EngineResult(Outcome.NEXT_PART, rescan=True)
        return EngineResult(Outcome.COMPLETED)
