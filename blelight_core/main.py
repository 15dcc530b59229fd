"""Main entrypoint for the BLE light bridge.

Without configured device ids the process only scans and logs the lights
it hears, so their ids can be copied into the configuration.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
from collections.abc import Awaitable
from typing import Any

from .addon_config import device_ids, load_config
from .ble_gateway import BleGateway
from .ble_transport import BleakPeripheral
from .bridge_controller import Bridge
from .device import Device
from .logging_setup import logger, setup_logging
from .mqtt_dispatcher import MqttClient

RESCAN_DELAY = 5.0


def _flush_logs() -> None:
    for h in getattr(logger, "handlers", []):
        if hasattr(h, "flush"):
            with contextlib.suppress(OSError):
                h.flush()


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        logger.info({"event": "signal_received", "signum": signum})
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _on_signal, signum)


async def _discovery_mode(gateway: BleGateway, stop: asyncio.Event) -> None:
    logger.info({"event": "discovery_mode", "hint": "set DEVICE_IDS to bridge lights"})
    while not stop.is_set():
        await gateway.report_devices()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=RESCAN_DELAY)


async def _find_all(gateway: BleGateway, ids: list[str], stop: asyncio.Event) -> list[Any]:
    while not stop.is_set():
        found = await gateway.find_devices(ids)
        if len(found) == len(ids):
            return found
        logger.info({"event": "ble_rescan", "found": len(found), "wanted": len(ids)})
    return []


async def _unless_stopped(coro: Awaitable[Any], stop: asyncio.Event) -> bool:
    """Run ``coro`` until it finishes or ``stop`` is set; True if it finished."""
    task = asyncio.ensure_future(coro)
    stopper = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    if task.cancelled():
        return False
    task.result()
    return True


async def run(cfg: dict[str, Any], stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    gateway = BleGateway(cfg.get("BLE_ADAPTER"), float(cfg.get("SCAN_TIMEOUT") or 10))

    ids = device_ids(cfg)
    if not ids:
        await _discovery_mode(gateway, stop)
        return

    ble_devices = await _find_all(gateway, ids, stop)
    if stop.is_set():
        return

    connect_lock = asyncio.Lock()
    devices = [Device(BleakPeripheral(d), connect_lock) for d in ble_devices]
    for device in devices:
        await device.init()

    bridge = Bridge(
        devices,
        MqttClient.from_config(cfg),
        base=cfg.get("MQTT_BASE") or "blelight",
        discovery_prefix=cfg.get("DISCOVERY_PREFIX") or "homeassistant",
        manufacturer=cfg.get("MANUFACTURER") or "BLE Light",
    )
    try:
        # the broker retry loop only ends on success
        if not await _unless_stopped(bridge.init(), stop):
            logger.info({"event": "bridge_init_aborted"})
            return
        logger.info({"event": "bridge_running", "pid": os.getpid()})
        await stop.wait()
    finally:
        await bridge.disconnect()
        for device in devices:
            await device.disconnect()
        logger.info({"event": "bridge_exited"})


async def _main(cfg: dict[str, Any]) -> None:
    stop = asyncio.Event()
    _install_signal_handlers(stop)
    await run(cfg, stop)


def main() -> None:
    """Load config, set up logging and run until SIGINT/SIGTERM."""
    cfg, src = load_config()
    setup_logging(cfg.get("LOG_LEVEL"), cfg.get("LOG_PATH"))
    logger.info({"event": "main_started", "config_source": str(src) if src else None})
    try:
        asyncio.run(_main(cfg))
    except Exception:
        logger.exception({"event": "main_fatal"})
        _flush_logs()
        sys.exit(1)


if __name__ == "__main__":
    main()
