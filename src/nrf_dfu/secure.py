"""Nordic Secure DFU transfer engine (nRF5 SDK ≥ 12).

Firmware travels in peer-allocated objects: one Command object carrying the
signed init packet, then a sequence of Data objects no larger than the size
the bootloader reports.  Every object is created, filled, checksummed and
executed before the next one is created.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from . import codec
from .config import DfuConfig
from .errors import (
    ChecksumMismatchError,
    DeviceDisconnectedError,
    DFUError,
    InitPacketRequiredError,
    ProtocolViolationError,
    RemoteRejectedError,
    UploadAbortedError,
)
from .firmware import SYSTEM_COMPONENTS
from .flow import PacketReceiptFlow, stream
from .link import DfuLink
from .model import DfuState, EngineResult, Outcome, Session
from .progress import ProgressCallback, ProgressTracker

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]
StateCallback = Callable[[DfuState], None]

#: Attempts per object before a CRC mismatch becomes fatal.
MAX_ATTEMPTS: int = 3

#: Upper bound on Read Object requests when collecting the error detail.
_MAX_DETAIL_FRAGMENTS: int = 32


class SecureDfu:
    """Uploads one part of the firmware to a Secure DFU bootloader.

    A bootloader that was interrupted keeps its objects across connections;
    matching offsets and CRCs let the upload resume where it stopped.
    """

    def __init__(
        self,
        link: DfuLink,
        session: Session,
        config: DfuConfig,
        *,
        on_progress: ProgressCallback | None = None,
        on_log: LogCallback | None = None,
        on_state: StateCallback | None = None,
    ) -> None:
        self.link = link
        self.session = session
        self.config = config
        self.uuids = config.uuids.secure
        self._on_progress = on_progress
        self._on_log: LogCallback = on_log or (lambda _: None)
        self._on_state: StateCallback = on_state or (lambda _: None)

    # ── Requests ──────────────────────────────────────────────────────────────

    @staticmethod
    def _rejected(response: codec.Response, message: str) -> RemoteRejectedError:
        extended = codec.decode_extended_error(response)
        if extended is not None:
            reason = codec.EXTENDED_ERRORS.get(extended, "extended error")
        else:
            reason = codec.SECURE.reason(response.status)
        return RemoteRejectedError(
            message, response.status, op=response.request_op, reason=reason, extended=extended
        )

    async def _read_response(self, op: int) -> codec.Response:
        value = await self.link.notification()
        if value is None:
            raise DeviceDisconnectedError("Device disconnected before responding")
        return codec.decode_response(value, codec.SECURE, op)

    async def _request(self, data: bytes, message: str) -> codec.Response:
        """Write *data* to the control point and return its successful response."""
        op = data[0]
        await self.link.write(self.uuids.control_point, data)
        response = await self._read_response(op)
        if not response.success:
            raise self._rejected(response, message)
        return response

    async def set_prn(self, packets: int) -> None:
        await self._request(codec.secure_set_prn(packets), "Setting PRN value failed")

    async def select(self, object_type: int) -> codec.ObjectInfo:
        response = await self._request(codec.secure_select(object_type), "Selecting object failed")
        info = codec.decode_object_info(response)
        logger.debug("Object %d: max size %d, offset %d, CRC %08X", object_type, *info)
        return info

    async def create(self, object_type: int, size: int) -> None:
        await self._request(codec.secure_create(object_type, size), "Creating object failed")

    async def checksum(self) -> codec.ObjectChecksum:
        response = await self._request(
            codec.secure_op(codec.SECURE_OP_CALCULATE_CHECKSUM), "Calculating checksum failed"
        )
        return codec.decode_checksum(response)

    async def execute(self) -> None:
        await self._request(codec.secure_op(codec.SECURE_OP_EXECUTE), "Executing object failed")

    async def read_error_detail(self) -> str | None:
        """Fetch the bootloader's last error message.  Best effort: ``None`` on any failure."""
        if not self.link.connected:
            return None
        fragments: list[bytes] = []
        try:
            for _ in range(_MAX_DETAIL_FRAGMENTS):
                await self.link.write(
                    self.uuids.control_point, codec.secure_op(codec.SECURE_OP_READ_OBJECT), cancellable=False
                )
                response = await self._read_response(codec.SECURE_OP_READ_OBJECT)
                if not response.success or not response.payload:
                    break
                fragments.append(response.payload)
                if codec.error_detail_complete(fragments):
                    break
            if not fragments:
                return None
            return codec.decode_error_detail(fragments)[1] or None
        except DFUError as exc:
            logger.warning("Reading error detail failed: %s", exc)
            return None

    async def _write_object(self, data: bytes, flow: PacketReceiptFlow, tracker: ProgressTracker) -> None:
        await stream(
            self.link,
            self.uuids.packet,
            data,
            flow=flow,
            progress=tracker,
            parse_receipt=codec.decode_secure_receipt,
        )

    # ── Phases ────────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Split a combined upload into two parts and subscribe to the control point."""
        session = self.session
        if session.components.has_system_part and session.components.has_application:
            self._on_log("SoftDevice/Bootloader and application are sent as two parts")
            session.components &= SYSTEM_COMPONENTS
            session.total_parts = 2
        if not session.init_packet:
            raise InitPacketRequiredError("Secure DFU requires an init packet")
        await self.link.enable_notifications(self.uuids.control_point)

    async def _send_init_packet(self, init_packet: bytes) -> None:
        info = await self.select(codec.OBJECT_COMMAND)

        offset = 0
        if 0 < info.offset <= len(init_packet):
            if codec.crc32(init_packet[: info.offset]) == info.crc32:
                offset = info.offset
            else:
                logger.debug("Stored command object does not match the init packet")

        if offset == len(init_packet):
            self._on_log("Init packet already received")
        else:
            tracker = ProgressTracker(len(init_packet))
            resume = offset > 0
            for attempt in range(1, MAX_ATTEMPTS + 1):
                if resume:
                    self._on_log(f"Resuming init packet at byte {offset}")
                else:
                    offset = 0
                    await self.create(codec.OBJECT_COMMAND, len(init_packet))
                tracker.start(offset)
                await self._write_object(init_packet[offset:], PacketReceiptFlow(0), tracker)
                checksum = await self.checksum()
                expected = codec.crc32(init_packet)
                if checksum.offset == len(init_packet) and checksum.crc32 == expected:
                    break
                if attempt == MAX_ATTEMPTS:
                    raise ChecksumMismatchError(expected, checksum.crc32)
                self._on_log(f"Init packet CRC mismatch, retrying ({attempt}/{MAX_ATTEMPTS})")
                resume = False

        await self.execute()

    async def _send_firmware(self, image: bytes) -> None:
        session = self.session
        size = len(image)
        prn = self.config.packets_receipt_notification
        if prn > 0:
            await self.set_prn(prn)
        info = await self.select(codec.OBJECT_DATA)
        if info.max_size == 0:
            raise ProtocolViolationError("Bootloader reported a maximum data object size of 0")
        max_size = info.max_size

        tracker = ProgressTracker(
            size, part=session.part, total_parts=session.total_parts, listener=self._on_progress
        )
        object_start, resume_at = self._resume_point(image, info)
        if resume_at is not None and resume_at == object_start + min(size - object_start, max_size):
            self._on_log(f"Executing data object received before the interruption ({resume_at} bytes)")
            await self.execute()
            object_start, resume_at = resume_at, None
        tracker.start(resume_at if resume_at is not None else object_start)

        self._on_state(DfuState.UPLOADING)
        self._on_log(f"Sending firmware ({size:,} bytes)…")
        flow = PacketReceiptFlow(prn)
        while object_start < size:
            object_size = min(size - object_start, max_size - object_start % max_size)
            object_end = object_start + object_size
            expected = codec.crc32(image[:object_end])

            for attempt in range(1, MAX_ATTEMPTS + 1):
                if resume_at is not None:
                    sent_from, resume_at = resume_at, None
                else:
                    # Re-creating the object discards whatever was written to it.
                    await self.create(codec.OBJECT_DATA, object_size)
                    sent_from = object_start
                tracker.update(sent_from)
                await self._write_object(image[sent_from:object_end], flow, tracker)

                checksum = await self.checksum()
                if checksum.offset == object_end and checksum.crc32 == expected:
                    break
                if attempt == MAX_ATTEMPTS:
                    raise ChecksumMismatchError(expected, checksum.crc32)
                self._on_log(f"CRC mismatch at offset {object_start}, retrying ({attempt}/{MAX_ATTEMPTS})")

            if object_end == size:
                self._on_state(DfuState.VALIDATING)
            await self.execute()
            object_start = object_end

    def _resume_point(self, image: bytes, info: codec.ObjectInfo) -> tuple[int, int | None]:
        """Work out where a previously interrupted upload can continue.

        Returns ``(object_start, resume_at)``: the start of the first object
        that is not known to be executed, and the offset inside it to resume
        writing at (``None`` to create it afresh).
        """
        if info.offset == 0 or info.offset > len(image) or info.max_size == 0:
            return 0, None
        executed = info.offset - info.offset % info.max_size
        if executed == info.offset:
            # A full object may have been written but not executed yet.
            executed -= info.max_size
        if codec.crc32(image[: info.offset]) != info.crc32:
            self._on_log(f"Stored data does not match the image, restarting at byte {executed}")
            return executed, None
        self._on_log(f"Resuming upload at byte {info.offset}")
        return executed, info.offset

    async def perform(self) -> EngineResult:
        session = self.session
        self._on_state(DfuState.STARTING)
        try:
            # Residual PRN values persist on the peer across connections.
            await self.set_prn(0)
            await self._send_init_packet(session.init_packet or b"")
            await self._send_firmware(session.image)
        except RemoteRejectedError as exc:
            detail = await self.read_error_detail()
            if detail:
                raise exc.with_detail(detail) from exc
            raise
        except UploadAbortedError:
            self._on_log("Upload aborted")
            raise

        self._on_state(DfuState.DISCONNECTING)
        await self.link.wait_for_disconnect()

        if session.total_parts > session.part:
            self._on_log("SoftDevice/Bootloader updated; the application follows after reboot")
            return EngineResult(Outcome.NEXT_PART, rescan=True)
        return EngineResult(Outcome.COMPLETED)
