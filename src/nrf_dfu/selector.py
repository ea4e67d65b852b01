"""Pick the DFU protocol variant from the services a device exposes."""

from __future__ import annotations

import logging
import struct
from typing import NamedTuple

from .config import DfuConfig
from .errors import ServiceNotFoundError
from .link import DfuLink
from .model import Variant
from .transport import has_characteristics
from .uuids import ButtonlessUuids, LegacyUuids

logger = logging.getLogger(__name__)

#: An application exposing the Legacy DFU service next to its own services
#: (GAP, GATT and DFU are all a bootloader has).
_BOOTLOADER_SERVICE_COUNT: int = 3


class Selection(NamedTuple):
    variant: Variant
    #: Legacy DFU Version characteristic value, ``0`` when absent.
    version: int = 0


async def read_legacy_version(link: DfuLink, uuids: LegacyUuids) -> int:
    """Read the Legacy DFU Version characteristic; ``0`` if the device has none.

    The value is ``major << 8 | minor``; ``1`` (0.1) marks an application with
    buttonless support and ``5`` (0.5) or newer requires an init packet.
    """
    if not has_characteristics(link.services, uuids.service, uuids.version):
        return 0
    data = await link.read(uuids.version)
    if len(data) < 2:
        return data[0] if data else 0
    return struct.unpack_from("<H", data)[0]


def _has_buttonless(link: DfuLink, uuids: ButtonlessUuids) -> bool:
    return has_characteristics(link.services, uuids.service, uuids.characteristic)


async def select_variant(link: DfuLink, config: DfuConfig) -> Selection:
    """Probe the variants in priority order; the first compatible one wins.

    Raises:
        ServiceNotFoundError: If the device exposes none of the DFU services.
    """
    uuids = config.uuids
    services = link.services

    if _has_buttonless(link, uuids.buttonless_with_bond_sharing):
        return Selection(Variant.SECURE_BUTTONLESS_WITH_BOND_SHARING)
    if _has_buttonless(link, uuids.buttonless_without_bond_sharing):
        return Selection(Variant.SECURE_BUTTONLESS_WITHOUT_BOND_SHARING)
    if has_characteristics(services, uuids.secure.service, uuids.secure.control_point, uuids.secure.packet):
        return Selection(Variant.SECURE)

    legacy = uuids.legacy
    if has_characteristics(services, legacy.service, legacy.control_point, legacy.packet):
        version = await read_legacy_version(link, legacy)
        logger.debug("Legacy DFU version %d.%d", version >> 8, version & 0xFF)
        in_application = version == 1 or (
            version == 0 and len(services) > _BOOTLOADER_SERVICE_COUNT and not config.force_dfu
        )
        if in_application:
            return Selection(Variant.LEGACY_BUTTONLESS, version)
        return Selection(Variant.LEGACY_V2, version)

    if config.enable_experimental_buttonless and _has_buttonless(link, uuids.experimental_buttonless):
        return Selection(Variant.EXPERIMENTAL_BUTTONLESS)

    raise ServiceNotFoundError("DFU service not found on device")
