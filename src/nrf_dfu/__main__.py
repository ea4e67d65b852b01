"""Command line front end: ``nrf-dfu`` / ``python -m nrf_dfu``.

Scans for named BLE devices, lets the user pick the one to update (or takes
``--device``), then runs :func:`nrf_dfu.perform_dfu` against it.  Buttonless
devices are switched into their bootloader automatically.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from bleak import BleakScanner, BLEDevice

from . import DfuState, perform_dfu
from .config import DEFAULT_PRN
from .errors import DFUError, UploadAbortedError
from .progress import ProgressInfo
from .scan import _CB_MACOS

Candidate = tuple[BLEDevice, str]

_BAR_WIDTH = 40


def main() -> None:
    """Console script entry point."""
    asyncio.run(_async_main())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nrf-dfu",
        description=(
            "Update an nRF5 device over BLE from a Nordic DFU package. "
            "Legacy, Secure and buttonless DFU are detected automatically."
        ),
    )
    parser.add_argument("package", metavar="ZIP", help="DFU package produced by nrfutil (manifest.json inside)")
    parser.add_argument(
        "--device",
        metavar="ADDRESS|NAME",
        help="Update this device without prompting; matched against address or advertised name.",
    )
    parser.add_argument(
        "--scan-time",
        type=float,
        default=5.0,
        metavar="SECONDS",
        help="How long to listen for advertisements before listing devices (default: %(default)s).",
    )
    parser.add_argument(
        "--prn",
        type=int,
        default=DEFAULT_PRN,
        metavar="N",
        help="Ask the bootloader for a receipt every N data packets; 0 turns receipts off "
        "(default: %(default)s here).",
    )
    parser.add_argument(
        "--experimental-buttonless",
        action="store_true",
        help="Also accept the unauthenticated SDK 12 experimental buttonless service.",
    )
    parser.add_argument(
        "--force-dfu",
        action="store_true",
        help="Treat a Legacy DFU device without a version characteristic as a bootloader.",
    )
    parser.add_argument(
        "--bonded",
        action="store_true",
        help="The device is bonded with this host (buttonless DFU with bond sharing).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every control point exchange.")
    return parser


async def _scan(seconds: float) -> list[Candidate]:
    """Discover advertising devices that carry a name.

    The live advertisement name wins over ``device.name``, which the OS may
    still have cached from the bootloader.
    """
    found = await BleakScanner.discover(timeout=seconds, return_adv=True, **_CB_MACOS)
    return [(dev, adv.local_name or dev.name) for dev, adv in found.values() if adv.local_name or dev.name]


def _match(candidates: list[Candidate], wanted: str) -> Candidate | None:
    key = wanted.strip().casefold()
    for dev, name in candidates:
        if key in (dev.address.casefold(), name.casefold()):
            return dev, name
    return None


def _prompt(candidates: list[Candidate]) -> Candidate | None:
    """Ask for a list index; ``None`` when the user gives up."""
    last = len(candidates) - 1
    while True:
        try:
            answer = input(f"\nDevice to update [0-{last}]: ").strip()
        except (EOFError, KeyboardInterrupt):
            return None
        if answer.isdigit() and int(answer) <= last:
            return candidates[int(answer)]
        print(f"  Enter an index between 0 and {last}.")


def _format_speed(bytes_per_second: float) -> str:
    if bytes_per_second >= 1024:
        return f"{bytes_per_second / 1024:5.1f} kB/s"
    return f"{bytes_per_second:5.0f} B/s"


def _show_progress(info: ProgressInfo) -> None:
    done = _BAR_WIDTH * info.percent // 100
    part = f" part {info.part}/{info.total_parts}" if info.total_parts > 1 else ""
    bar = "#" * done + "." * (_BAR_WIDTH - done)
    print(f"\r  |{bar}| {info.percent:3d}%  {_format_speed(info.avg_speed)}{part}", end="", flush=True)
    if info.percent >= 100:
        print()


def _show_state(state: DfuState) -> None:
    if state is DfuState.VALIDATING:
        print("\n  Bootloader is validating the image…", flush=True)


async def _async_main() -> None:
    args = _build_parser().parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    print(f"Listening for advertisements for {args.scan_time:g} s…")
    candidates = await _scan(args.scan_time)
    if not candidates:
        sys.exit("Nothing with a name is advertising nearby.")

    if args.device:
        choice = _match(candidates, args.device)
        if choice is None:
            print(f"'{args.device}' is not among the devices seen:", file=sys.stderr)
            for dev, name in candidates:
                print(f"  {dev.address}  {name}", file=sys.stderr)
            sys.exit(1)
    else:
        for index, (dev, name) in enumerate(candidates):
            print(f"  {index:>2}  {dev.address}  {name}")
        choice = _prompt(candidates)
        if choice is None:
            print("\nNothing selected.")
            sys.exit(0)

    target, label = choice
    print(f"Updating {label} ({target.address})\n")

    try:
        await perform_dfu(
            args.package,
            target,
            on_progress=_show_progress,
            on_log=lambda msg: print(f"  {msg}", flush=True),
            on_state=_show_state,
            packets_per_notification=args.prn,
            enable_experimental_buttonless=args.experimental_buttonless,
            force_dfu=args.force_dfu,
            bonded=[target.address] if args.bonded else (),
        )
    except (KeyboardInterrupt, UploadAbortedError):
        print("\nUpdate aborted.")
        sys.exit(130)
    except (DFUError, OSError) as exc:
        print(f"\nUpdate failed: {exc}", file=sys.stderr)
        sys.exit(1)
    print("\nDevice updated.")


if __name__ == "__main__":
    main()
