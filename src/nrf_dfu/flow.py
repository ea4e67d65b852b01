"""Packet Receipt Notification (PRN) flow control shared by both transfer engines.

The bootloader writes flash far slower than the link can queue packets.  With
PRN enabled the sender stops after every ``packets_before_notification``
packets until the peer confirms what it has received.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .codec import PACKET_SIZE, chunks
from .errors import ConfigurationError
from .link import DfuLink
from .progress import ProgressTracker

logger = logging.getLogger(__name__)

#: Decodes a notification into the peer's received byte count, or ``None``
#: if the notification is not a packet receipt.
ReceiptParser = Callable[[bytes], "int | None"]


class PacketReceiptFlow:
    def __init__(self, packets_before_notification: int = 0) -> None:
        if not 0 <= packets_before_notification <= 0xFFFF:
            raise ConfigurationError(f"Invalid PRN value: {packets_before_notification}")
        self.packets_before_notification = packets_before_notification
        self.packets_sent_since_notification = 0

    @property
    def enabled(self) -> bool:
        return self.packets_before_notification > 0

    def packet_sent(self) -> bool:
        """Count one packet.  Returns ``True`` if a receipt must be awaited now."""
        self.packets_sent_since_notification += 1
        return self.enabled and self.packets_sent_since_notification >= self.packets_before_notification

    def notification_received(self) -> None:
        self.packets_sent_since_notification = 0

    def object_boundary(self) -> None:
        self.packets_sent_since_notification = 0


async def stream(
    link: DfuLink,
    characteristic: str,
    data: bytes,
    *,
    flow: PacketReceiptFlow,
    progress: ProgressTracker,
    parse_receipt: ReceiptParser,
    packet_size: int = PACKET_SIZE,
) -> bool:
    """Write *data* to the packet characteristic in flow-controlled chunks.

    Progress is advanced by every chunk written.

    Returns:
        ``True`` when every byte was sent; ``False`` when a non-receipt
        notification (a control-point response) interrupted the transfer.  That
        notification is left for the caller to read.
    """
    try:
        for chunk in chunks(data, packet_size):
            await link.write(characteristic, chunk, with_response=False)
            progress.add(len(chunk))

            if flow.packet_sent():
                value = await link.notification()
                received = parse_receipt(value) if value is not None else None
                if received is None:
                    if value is not None:
                        link.push_back(value)
                    return False
                progress.bytes_received = received
                flow.notification_received()
                continue

            value = link.pending_notification()
            if value is not None:
                if parse_receipt(value) is None:
                    link.push_back(value)
                    return False
                logger.debug("Ignoring unexpected packet receipt: %s", value.hex(" "))
        return True
    finally:
        flow.object_boundary()
