"""
bridge_controller.py

Wires Devices to the broker:
- publishes availability, retained state and discovery for every light
- turns command messages into debounced Device setter calls
- relays pushed light state to the matching state topics
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Iterable
from functools import partial
from typing import Any

from .color_temperature import MAX_MIREDS, mireds_to_percent, percent_to_mireds
from .common import (
    DEFAULT_BASE,
    DEFAULT_DISCOVERY_PREFIX,
    PAYLOAD_OFF,
    PAYLOAD_OFFLINE,
    PAYLOAD_ON,
    PAYLOAD_ONLINE,
    DeviceTopics,
    availability_topic,
)
from .core_types import Power, Unsubscribe, level_value
from .device import Device
from .discovery import discovery_message
from .logging_setup import bridge_logger as logger
from .logging_setup import log_command_received
from .ports import Clock, MqttBus
from .util import Debouncer

COMMAND_DEBOUNCE = 0.5
RETRY_DELAY = 5.0
DEFAULT_BRIGHTNESS = 100


def format_state(name: str, value: Any) -> str | None:
    """Payload for a state topic; None while the value is unknown."""
    if name == "on":
        if value is Power.ON:
            return PAYLOAD_ON
        if value is Power.OFF:
            return PAYLOAD_OFF
        return None
    n = level_value(value)
    if n is None:
        return None
    if name == "temperature":
        return str(percent_to_mireds(n))
    return str(n)


def parse_int(payload: str, default: int) -> int:
    try:
        return int(payload.strip(), 10)
    except (TypeError, ValueError):
        logger.warning({"event": "command_payload_invalid", "payload": payload, "default": default})
        return default


class Bridge:
    def __init__(
        self,
        devices: Iterable[Device],
        mqtt: MqttBus,
        *,
        base: str = DEFAULT_BASE,
        discovery_prefix: str = DEFAULT_DISCOVERY_PREFIX,
        manufacturer: str = "BLE Light",
        command_window: float = COMMAND_DEBOUNCE,
        retry_delay: float = RETRY_DELAY,
        clock: Clock = time.monotonic,
    ) -> None:
        self.devices = list(devices)
        self.mqtt = mqtt
        self.base = base
        self.discovery_prefix = discovery_prefix
        self.manufacturer = manufacturer
        self.availability_topic = availability_topic(base)
        self._command_window = command_window
        self._retry_delay = retry_delay
        self._clock = clock

        self._handlers: dict[str, Debouncer[str]] = {}
        self._unsubscribes: list[Unsubscribe] = []
        self._tasks: set[asyncio.Task[Any]] = set()

        mqtt.set_message_handler(self.dispatch)
        mqtt.set_reconnect_handler(self._on_reconnect)

    def topics(self, device: Device) -> DeviceTopics:
        return DeviceTopics(device.id, self.base)

    async def init(self) -> None:
        """Connect to the broker and announce every device."""
        await self._connect_broker()
        await self.mqtt.publish(self.availability_topic, PAYLOAD_ONLINE, retain=True)

        for device in self.devices:
            topics = self.topics(device)
            self._register_commands(device, topics)
            await self.mqtt.subscribe(list(topics.command_topics()))
            self._register_relays(device, topics)
            await self._publish_snapshot(device, topics)

        for device in self.devices:
            await self._publish_discovery(device)
        logger.info({"event": "bridge_started", "devices": [d.id for d in self.devices]})

    async def _connect_broker(self) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.mqtt.connect()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    {
                        "event": "mqtt_connect_retry",
                        "attempt": attempt,
                        "error": repr(exc),
                        "retry_in": self._retry_delay,
                    }
                )
                await asyncio.sleep(self._retry_delay)
                continue
            logger.info({"event": "mqtt_ready", "attempts": attempt})
            return

    async def disconnect(self) -> None:
        """Announce offline and close the broker session."""
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
        if not self.mqtt.is_connected:
            return
        await self.mqtt.publish(self.availability_topic, PAYLOAD_OFFLINE, retain=True)
        await self.mqtt.disconnect()
        logger.info({"event": "bridge_stopped"})

    async def wait_background(self) -> None:
        """Wait for command and relay tasks still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---- state -> broker ----

    def _register_relays(self, device: Device, topics: DeviceTopics) -> None:
        for name, topic in topics.state_topics().items():
            self._unsubscribes.append(device.subscribe(name, partial(self._relay, topic, name)))

    def _relay(self, topic: str, name: str, value: Any) -> None:
        payload = format_state(name, value)
        if payload is None:
            return
        self._spawn(self.mqtt.publish(topic, payload, retain=True))

    async def _publish_snapshot(self, device: Device, topics: DeviceTopics) -> None:
        state = device.state
        for name, topic in topics.state_topics().items():
            payload = format_state(name, getattr(state, name))
            if payload is not None:
                await self.mqtt.publish(topic, payload, retain=True)

    async def _publish_discovery(self, device: Device) -> None:
        topic, payload = discovery_message(
            device.id,
            device.display_name,
            self.topics(device),
            self.availability_topic,
            prefix=self.discovery_prefix,
            manufacturer=self.manufacturer,
        )
        await self.mqtt.publish(topic, payload, retain=True)
        logger.info({"event": "discovery_published", "device": device.id, "topic": topic})

    async def _on_reconnect(self) -> None:
        logger.info({"event": "mqtt_session_restored"})
        await self.mqtt.publish(self.availability_topic, PAYLOAD_ONLINE, retain=True)
        for device in self.devices:
            await self._publish_snapshot(device, self.topics(device))
        for device in self.devices:
            await self._publish_discovery(device)

    # ---- broker -> device ----

    def _register_commands(self, device: Device, topics: DeviceTopics) -> None:
        handlers = {
            "on": self._handle_power,
            "brightness": self._handle_brightness,
            "temperature": self._handle_temperature,
        }
        for topic, name in topics.command_topics().items():
            self._handlers[topic] = Debouncer(
                partial(handlers[name], device), self._command_window, self._clock
            )

    async def dispatch(self, topic: str, payload: str) -> None:
        log_command_received(topic, payload)
        handler = self._handlers.get(topic)
        if handler is None:
            logger.warning({"event": "command_unknown_topic", "topic": topic})
            return
        if not handler(payload):
            logger.debug({"event": "command_debounced", "topic": topic, "payload": payload})

    def _handle_power(self, device: Device, payload: str) -> None:
        if payload == PAYLOAD_ON:
            self._spawn(device.set_on(True))
        elif payload == PAYLOAD_OFF:
            self._spawn(device.set_on(False))
        else:
            logger.warning({"event": "command_power_ignored", "device": device.id, "payload": payload})

    def _handle_brightness(self, device: Device, payload: str) -> None:
        self._spawn(device.set_brightness(parse_int(payload, DEFAULT_BRIGHTNESS)))

    def _handle_temperature(self, device: Device, payload: str) -> None:
        mireds = parse_int(payload, MAX_MIREDS)
        if mireds <= 0:
            logger.warning({"event": "command_payload_invalid", "payload": payload, "default": MAX_MIREDS})
            mireds = MAX_MIREDS
        self._spawn(device.set_temperature(mireds_to_percent(mireds)))


__all__ = ["Bridge", "format_state", "parse_int"]
