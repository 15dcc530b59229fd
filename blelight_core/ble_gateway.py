"""BLE gateway helpers: adapter selection and light scanning.

Lights advertise a dedicated scan service; only advertisements carrying
it are considered.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterable
from typing import Any

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from .common import object_id
from .logging_setup import ble_logger as logger

SCAN_SERVICE_UUID = "dd649f02-14fe-11e5-b60b-1697f925ecdd"
DEFAULT_SCAN_TIMEOUT = 10.0


class BleGateway:
    def __init__(self, adapter: str | None = None, scan_timeout: float = DEFAULT_SCAN_TIMEOUT) -> None:
        self.adapter = adapter
        self.scan_timeout = scan_timeout
        self._reported: set[str] = set()
        logger.info({"event": "ble_gateway_init", "adapter": self.adapter, "scan_timeout": scan_timeout})

    def _scanner_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"service_uuids": [SCAN_SERVICE_UUID]}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        return kwargs

    async def scan(self, seconds: float | None = None) -> list[dict]:
        """Scan once and describe every light heard (address, name, rssi)."""
        seconds = seconds or self.scan_timeout
        logger.debug({"event": "ble_scan_start", "seconds": seconds})
        found = await BleakScanner.discover(timeout=seconds, return_adv=True, **self._scanner_kwargs())
        result = [
            {"name": device.name, "address": device.address, "rssi": adv.rssi}
            for device, adv in found.values()
        ]
        logger.info({"event": "ble_scan_complete", "count": len(result), "devices": result})
        return result

    async def find_devices(
        self,
        ids: Iterable[str],
        seconds: float | None = None,
    ) -> list[BLEDevice]:
        """Scan until every id in ``ids`` was seen or the timeout passes.

        Ids are matched case-insensitively with or without separators.
        Returns the devices found, in the order of ``ids``.
        """
        wanted = {object_id(i): i for i in ids}
        found: dict[str, BLEDevice] = {}
        complete = asyncio.Event()

        def _on_detect(device: BLEDevice, adv: AdvertisementData) -> None:
            key = object_id(device.address)
            if key not in wanted or key in found:
                return
            found[key] = device
            logger.info({"event": "ble_device_found", "device": device.address, "name": device.name, "rssi": adv.rssi})
            if len(found) == len(wanted):
                complete.set()

        if not wanted:
            return []
        seconds = seconds or self.scan_timeout
        logger.debug({"event": "ble_scan_start", "seconds": seconds, "wanted": list(wanted.values())})
        async with BleakScanner(_on_detect, **self._scanner_kwargs()):
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(complete.wait(), timeout=seconds)

        missing = [orig for key, orig in wanted.items() if key not in found]
        if missing:
            logger.warning({"event": "ble_devices_missing", "missing": missing})
        return [found[key] for key in wanted if key in found]

    async def report_devices(self, seconds: float | None = None) -> list[dict]:
        """Discovery mode: log lights not seen before so their ids can be configured.

        Returns the newly seen devices only.
        """
        fresh = [d for d in await self.scan(seconds) if d["address"] not in self._reported]
        for d in fresh:
            self._reported.add(d["address"])
            logger.info({"event": "ble_device_discovered", **d})
        return fresh


__all__ = ["DEFAULT_SCAN_TIMEOUT", "SCAN_SERVICE_UUID", "BleGateway"]
