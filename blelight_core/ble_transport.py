"""bleak-backed implementation of the BlePeripheral port."""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterable
from typing import Any

from bleak import BleakClient
from bleak.backends.client import BaseBleakClient
from bleak.backends.device import BLEDevice
from bleak_retry_connector import establish_connection

from .core_types import NotifyCallback
from .device import CharacteristicNotFoundError, DeviceConnectionError
from .logging_setup import ble_logger as logger

CONNECT_ATTEMPTS = 3

Listener = Callable[[Exception | None], None]


class _Registration:
    def __init__(self, owner: BleakPeripheral, event: str, key: int) -> None:
        self._owner = owner
        self._event = event
        self._key = key

    def cancel(self) -> None:
        self._owner._listeners.get(self._event, {}).pop(self._key, None)


class BleakPeripheral:
    """One light reached through a BleakClient.

    Connection results are also emitted as ``"connect"``/``"disconnect"``
    events; a disconnect reported by a client other than the current one
    is ignored.
    """

    def __init__(self, device: BLEDevice, max_attempts: int = CONNECT_ATTEMPTS) -> None:
        self._device = device
        self._max_attempts = max_attempts
        self._client: BleakClient | None = None
        self._listeners: dict[str, dict[int, Listener]] = {}
        self._keys = itertools.count()

    def __repr__(self) -> str:
        return f"<BleakPeripheral {self.id}>"

    @property
    def id(self) -> str:
        return self._device.address

    @property
    def name(self) -> str | None:
        return self._device.name

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    def once(self, event: str, cb: Listener) -> _Registration:
        key = next(self._keys)
        self._listeners.setdefault(event, {})[key] = cb
        return _Registration(self, event, key)

    def _emit(self, event: str, error: Exception | None = None) -> None:
        listeners = self._listeners.pop(event, {})
        for cb in listeners.values():
            try:
                cb(error)
            except Exception:  # noqa: BLE001
                logger.exception({"event": "ble_listener_error", "device": self.id, "for": event})

    async def connect(self) -> None:
        try:
            client = await establish_connection(
                BleakClient,
                self._device,
                self.id,
                disconnected_callback=self._on_disconnected,
                max_attempts=self._max_attempts,
            )
        except Exception as exc:
            self._emit("connect", exc)
            raise
        self._client = client
        logger.debug({"event": "ble_client_ready", "device": self.id, "client": repr(client)})
        self._emit("connect")

    def _on_disconnected(self, client: BaseBleakClient) -> None:
        if client is not self._client:
            logger.debug({"event": "ble_stale_disconnect_ignored", "device": self.id})
            return
        self._client = None
        self._emit("disconnect")

    async def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        await client.disconnect()

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise DeviceConnectionError(f"Not connected to {self.id}")
        return self._client

    async def discover(
        self,
        service_uuid: str,
        characteristic_uuids: Iterable[str],
    ) -> dict[str, Any]:
        client = self._require_client()
        service = client.services.get_service(service_uuid)
        if service is None:
            raise CharacteristicNotFoundError(f"Service {service_uuid} not offered by {self.id}")
        found: dict[str, Any] = {}
        for uuid in characteristic_uuids:
            char = service.get_characteristic(uuid)
            if char is not None:
                found[uuid] = char
        return found

    async def read(self, uuid: str) -> bytes:
        return bytes(await self._require_client().read_gatt_char(uuid))

    async def write(self, uuid: str, data: bytes, response: bool = True) -> None:
        await self._require_client().write_gatt_char(uuid, data, response=response)

    async def start_notify(self, uuid: str, cb: NotifyCallback) -> None:
        def _handler(_char: Any, data: bytearray) -> None:
            cb(bytes(data))

        await self._require_client().start_notify(uuid, _handler)


__all__ = ["BleakPeripheral"]
