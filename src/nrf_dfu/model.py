"""Session data shared by the controller and the protocol engines."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from .errors import DFUError
from .firmware import Component, FirmwareComponents


class Variant(enum.Enum):
    """Protocol variant chosen once per connection by capability probing."""

    LEGACY_V1 = "legacy-v1"
    LEGACY_V2 = "legacy-v2"
    SECURE_BUTTONLESS_WITH_BOND_SHARING = "secure-buttonless-with-bond-sharing"
    SECURE_BUTTONLESS_WITHOUT_BOND_SHARING = "secure-buttonless-without-bond-sharing"
    EXPERIMENTAL_BUTTONLESS = "experimental-buttonless"
    LEGACY_BUTTONLESS = "legacy-buttonless"
    SECURE = "secure"

    @property
    def is_buttonless(self) -> bool:
        return self in (
            Variant.SECURE_BUTTONLESS_WITH_BOND_SHARING,
            Variant.SECURE_BUTTONLESS_WITHOUT_BOND_SHARING,
            Variant.EXPERIMENTAL_BUTTONLESS,
            Variant.LEGACY_BUTTONLESS,
        )


class DfuState(enum.Enum):
    CONNECTING = "connecting"
    STARTING = "starting"
    ENABLING_DFU_MODE = "enabling-dfu-mode"
    UPLOADING = "uploading"
    VALIDATING = "validating"
    DISCONNECTING = "disconnecting"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class Outcome(enum.Enum):
    COMPLETED = "completed"
    #: SoftDevice/Bootloader flashed; the application is sent in a new session.
    NEXT_PART = "next-part"
    #: The peer was reset to recover from an interrupted upload.
    RESTART = "restart"
    #: The application rebooted into its DFU bootloader.
    BOOTLOADER = "bootloader"


@dataclass(frozen=True)
class EngineResult:
    outcome: Outcome
    #: The next connection must scan for the bootloader (address may be +1).
    rescan: bool = False


@dataclass
class Session:
    """One firmware-update attempt against one device address."""

    address: str
    firmware: FirmwareComponents
    components: Component
    part: int = 1
    total_parts: int = 1
    variant: Variant | None = None
    last_error: DFUError | None = None

    @property
    def is_last_part(self) -> bool:
        return self.part >= self.total_parts

    @property
    def image(self) -> bytes:
        return self.firmware.image(self.components)

    @property
    def init_packet(self) -> bytes | None:
        return self.firmware.init_packet(self.components)
