import types
from unittest.mock import AsyncMock

import pytest

import blelight_core.ble_gateway as ble_gateway
from tests.helpers.util import assert_contains_log


def dummy(address, name="Desk Lamp", rssi=-60):
    return types.SimpleNamespace(address=address, name=name), types.SimpleNamespace(rssi=rssi)


class FakeScanner:
    adverts = []
    kwargs = None

    def __init__(self, detection_callback=None, **kwargs):
        self.callback = detection_callback
        FakeScanner.kwargs = kwargs

    async def __aenter__(self):
        for device, adv in self.adverts:
            self.callback(device, adv)
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def scanner(monkeypatch):
    FakeScanner.adverts = []
    FakeScanner.kwargs = None
    monkeypatch.setattr(ble_gateway, "BleakScanner", FakeScanner)
    return FakeScanner


@pytest.mark.asyncio
async def test_scan_filters_on_light_service(monkeypatch):
    found = {
        "AA:BB:CC:DD:EE:FF": dummy("AA:BB:CC:DD:EE:FF"),
        "11:22:33:44:55:66": dummy("11:22:33:44:55:66", name=None, rssi=-80),
    }
    discover = AsyncMock(return_value=found)
    monkeypatch.setattr(ble_gateway, "BleakScanner", types.SimpleNamespace(discover=discover))

    result = await ble_gateway.BleGateway(adapter="hci1").scan(seconds=2)

    assert {"name": "Desk Lamp", "address": "AA:BB:CC:DD:EE:FF", "rssi": -60} in result
    assert len(result) == 2
    kwargs = discover.await_args.kwargs
    assert kwargs["service_uuids"] == [ble_gateway.SCAN_SERVICE_UUID]
    assert kwargs["adapter"] == "hci1"
    assert kwargs["timeout"] == 2
    assert kwargs["return_adv"] is True


@pytest.mark.asyncio
async def test_find_devices_returns_allow_list_order(scanner):
    scanner.adverts = [dummy("11:22:33:44:55:66"), dummy("AA:BB:CC:DD:EE:FF"), dummy("99:99:99:99:99:99")]
    gateway = ble_gateway.BleGateway()

    found = await gateway.find_devices(["aa:bb:cc:dd:ee:ff", "11:22:33:44:55:66"], seconds=1)

    assert [d.address for d in found] == ["AA:BB:CC:DD:EE:FF", "11:22:33:44:55:66"]
    assert "adapter" not in scanner.kwargs


@pytest.mark.asyncio
async def test_find_devices_reports_missing(scanner, caplog):
    scanner.adverts = [dummy("AA:BB:CC:DD:EE:FF")]
    gateway = ble_gateway.BleGateway()

    found = await gateway.find_devices(["AA:BB:CC:DD:EE:FF", "11:22:33:44:55:66"], seconds=0.01)

    assert [d.address for d in found] == ["AA:BB:CC:DD:EE:FF"]
    assert_contains_log(caplog, "ble_devices_missing")


@pytest.mark.asyncio
async def test_find_devices_with_empty_allow_list(scanner):
    assert await ble_gateway.BleGateway().find_devices([]) == []


@pytest.mark.asyncio
async def test_report_devices_logs_only_new(monkeypatch, caplog):
    first = {"AA": dummy("AA")}
    second = {"AA": dummy("AA"), "BB": dummy("BB", name="Hall")}
    discover = AsyncMock(side_effect=[first, second])
    monkeypatch.setattr(ble_gateway, "BleakScanner", types.SimpleNamespace(discover=discover))
    gateway = ble_gateway.BleGateway()

    assert [d["address"] for d in await gateway.report_devices(1)] == ["AA"]
    assert [d["address"] for d in await gateway.report_devices(1)] == ["BB"]
    assert_contains_log(caplog, "ble_device_discovered")
