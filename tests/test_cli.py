"""Tests for the nrf-dfu command line front end with BLE mocked out."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nrf_dfu.__main__ import _async_main, _match, _prompt
from nrf_dfu.errors import RemoteRejectedError

ADDRESS = "AA:BB:CC:DD:EE:0F"


def _make_ble_device(address: str, name: str | None) -> MagicMock:
    d = MagicMock()
    d.address = address
    d.name = name
    return d


def _scan_result(*entries: tuple[str, str | None, str | None]) -> dict[str, tuple[MagicMock, MagicMock]]:
    """Build a ``return_adv=True`` discover result from (address, cached name, live name)."""
    return {
        address: (_make_ble_device(address, cached), MagicMock(local_name=live))
        for address, cached, live in entries
    }


def test_match_by_address_or_name() -> None:
    sensor = _make_ble_device(ADDRESS, "Sensor")
    lamp = _make_ble_device("11:22:33:44:55:66", "Lamp")
    candidates = [(sensor, "Sensor"), (lamp, "Lamp")]

    assert _match(candidates, "aa:bb:cc:dd:ee:0f") == (sensor, "Sensor")
    assert _match(candidates, " LAMP ") == (lamp, "Lamp")
    assert _match(candidates, "Thermostat") is None


def test_prompt_repeats_until_valid_index(capsys: pytest.CaptureFixture[str]) -> None:
    candidates = [(_make_ble_device(ADDRESS, "A"), "A"), (_make_ble_device("11:22:33:44:55:66", "B"), "B")]

    with patch("builtins.input", side_effect=["x", "7", "1"]):
        assert _prompt(candidates) == candidates[1]
    assert capsys.readouterr().out.count("Enter an index between 0 and 1") == 2


def test_prompt_gives_up_on_eof() -> None:
    with patch("builtins.input", side_effect=EOFError):
        assert _prompt([(_make_ble_device(ADDRESS, "A"), "A")]) is None


async def test_device_option_runs_update(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "sys.argv", ["nrf-dfu", "fw.zip", "--device", "sensor", "--prn", "4", "--bonded", "--force-dfu"]
    )
    found = _scan_result((ADDRESS, "DfuTarg", "Sensor"), ("11:22:33:44:55:66", None, None))

    with (
        patch("nrf_dfu.__main__.BleakScanner.discover", new=AsyncMock(return_value=found)),
        patch("nrf_dfu.__main__.perform_dfu", new=AsyncMock()) as update,
    ):
        await _async_main()

    (package, target), kwargs = update.await_args
    assert package == "fw.zip"
    assert target.address == ADDRESS
    assert kwargs["packets_per_notification"] == 4
    assert kwargs["bonded"] == [ADDRESS]
    assert kwargs["force_dfu"] is True
    assert kwargs["enable_experimental_buttonless"] is False


async def test_unknown_device_exits_with_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.argv", ["nrf-dfu", "fw.zip", "--device", "Lamp"])
    found = _scan_result((ADDRESS, "Sensor", "Sensor"))

    with (
        patch("nrf_dfu.__main__.BleakScanner.discover", new=AsyncMock(return_value=found)),
        patch("nrf_dfu.__main__.perform_dfu", new=AsyncMock()) as update,
    ):
        with pytest.raises(SystemExit) as excinfo:
            await _async_main()

    assert excinfo.value.code == 1
    update.assert_not_awaited()


async def test_failed_update_exits_with_error(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.argv", ["nrf-dfu", "fw.zip", "--device", ADDRESS])
    found = _scan_result((ADDRESS, "Sensor", None))
    failure = RemoteRejectedError("Executing object failed", 0x05)

    with (
        patch("nrf_dfu.__main__.BleakScanner.discover", new=AsyncMock(return_value=found)),
        patch("nrf_dfu.__main__.perform_dfu", new=AsyncMock(side_effect=failure)),
    ):
        with pytest.raises(SystemExit) as excinfo:
            await _async_main()

    assert excinfo.value.code == 1
    assert "Update failed: Executing object failed" in capsys.readouterr().err


async def test_nothing_advertising_exits(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.argv", ["nrf-dfu", "fw.zip"])

    with patch("nrf_dfu.__main__.BleakScanner.discover", new=AsyncMock(return_value={})):
        with pytest.raises(SystemExit) as excinfo:
            await _async_main()

    assert excinfo.value.code == "Nothing with a name is advertising nearby."
