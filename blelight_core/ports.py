"""Protocol definitions for external ports used by the bridge.

These small Protocols document the minimal methods the runtime
infrastructure (BLE peripheral, MQTT bus, clock) must provide. The
concrete implementations live in ``ble_transport`` and
``mqtt_dispatcher``; tests substitute fakes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, Protocol, runtime_checkable

from .core_types import MessageHandler, NotifyCallback, ReconnectHandler


@runtime_checkable
class Registration(Protocol):
    """Handle for a listener registered on a peripheral."""

    def cancel(self) -> None:
        """Remove the listener. Safe to call more than once."""


@runtime_checkable
class BlePeripheral(Protocol):
    """One BLE peripheral as seen by a Device.

    Connect and disconnect completion are delivered as events
    (``"connect"`` with an optional error, ``"disconnect"``), not as
    call results.
    """

    @property
    def id(self) -> str:
        """Stable transport identifier (BLE address)."""

    @property
    def name(self) -> str | None:
        """Advertised local name, if any."""

    @property
    def is_connected(self) -> bool:
        """True while the transport believes the link is up."""

    def once(self, event: str, cb: Callable[[Exception | None], None]) -> Registration:
        """Register a one-shot listener for ``event``."""

    async def connect(self) -> None:
        """Open the link."""

    async def disconnect(self) -> None:
        """Close the link."""

    async def discover(
        self,
        service_uuid: str,
        characteristic_uuids: Iterable[str],
    ) -> dict[str, Any]:
        """Resolve characteristics of a service, keyed by UUID."""

    async def read(self, uuid: str) -> bytes:
        """Read a characteristic value."""

    async def write(self, uuid: str, data: bytes, response: bool = True) -> None:
        """Write a characteristic value."""

    async def start_notify(self, uuid: str, cb: NotifyCallback) -> None:
        """Arm notifications for a characteristic."""


@runtime_checkable
class MqttBus(Protocol):
    """Lightweight MQTT bus protocol used by the bridge."""

    @property
    def is_connected(self) -> bool:
        """True while a broker session is up."""

    async def connect(self) -> None:
        """Make one connection attempt; raise on failure."""

    async def publish(
        self,
        topic: str,
        payload: Any,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a payload to the given MQTT topic."""

    async def subscribe(self, topics: Iterable[str]) -> None:
        """Subscribe to command topics."""

    def set_message_handler(self, handler: MessageHandler) -> None:
        """Route inbound messages; handler gets (topic, payload)."""

    def set_reconnect_handler(self, handler: ReconnectHandler) -> None:
        """Called after the session is re-established."""

    async def disconnect(self) -> None:
        """Close the MQTT connection and release resources."""


@runtime_checkable
class Clock(Protocol):
    """Clock protocol providing monotonic time."""

    def __call__(self) -> float:
        """Return a monotonic clock value (seconds)."""
