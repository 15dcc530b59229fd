"""
mqtt_dispatcher.py

Broker client for the bridge: connects to MQTT with a last will on the
availability topic, keeps command subscriptions across reconnects and
hands inbound messages to the asyncio loop.
"""

from __future__ import annotations

import asyncio
import json
import socket
from collections.abc import Iterable
from typing import Any

import paho.mqtt.client as mqtt

from .addon_config import broker_credentials, parse_broker_url
from .common import DEFAULT_BASE, PAYLOAD_OFFLINE, availability_topic
from .core_types import MessageHandler, ReconnectHandler
from .logging_setup import bridge_logger as logger
from .logging_setup import log_state_published

CONNECT_TIMEOUT = 10.0
DRAIN_DELAY = 0.5


class MqttConnectError(Exception):
    """Raised when the broker refuses or never answers a connection."""


class MqttClient:
    def __init__(
        self,
        host: str,
        port: int = 1883,
        *,
        client_id: str = "blelight-bridge",
        username: str | None = None,
        password: str | None = None,
        tls: bool = False,
        will_topic: str | None = None,
        keepalive: int = 60,
        qos: int = 1,
        connect_timeout: float = CONNECT_TIMEOUT,
        drain_delay: float = DRAIN_DELAY,
    ) -> None:
        self.host = host
        self.port = port
        self.client_id = client_id
        self.keepalive = keepalive
        self.qos = qos
        self.tls = tls
        self._connect_timeout = connect_timeout
        self._drain_delay = drain_delay

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if username is not None:
            self._client.username_pw_set(username=username, password=(password or ""))
        if tls:
            self._client.tls_set()
        # LWT/availability
        self._client.will_set(
            will_topic or availability_topic(DEFAULT_BASE),
            payload=PAYLOAD_OFFLINE,
            qos=qos,
            retain=True,
        )
        # Reconnect backoff (let paho handle retries)
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        self._loop: asyncio.AbstractEventLoop | None = None
        self._connack: asyncio.Future[None] | None = None
        self._connected = False
        self._sessions = 0
        self._topics: list[str] = []
        self._message_handler: MessageHandler | None = None
        self._reconnect_handler: ReconnectHandler | None = None

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> MqttClient:
        host, port, tls = parse_broker_url(str(cfg.get("MQTT_URL") or "localhost"))
        username, password = broker_credentials(cfg)
        return cls(
            host,
            port,
            client_id=cfg.get("MQTT_CLIENT_ID") or "blelight-bridge",
            username=username,
            password=password,
            tls=tls,
            will_topic=availability_topic(cfg.get("MQTT_BASE") or DEFAULT_BASE),
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def set_reconnect_handler(self, handler: ReconnectHandler) -> None:
        self._reconnect_handler = handler

    async def connect(self) -> None:
        """One connection attempt; returns once the broker accepted it."""
        self._loop = asyncio.get_running_loop()
        self._connack = self._loop.create_future()

        try:
            resolved = socket.gethostbyname(self.host)
        except OSError:
            resolved = "unresolved"
        logger.info(
            {
                "event": "mqtt_connect_attempt",
                "host": self.host,
                "port": self.port,
                "resolved": resolved,
                "client_id": self.client_id,
                "tls": self.tls,
            }
        )

        try:
            await self._loop.run_in_executor(
                None, self._client.connect, self.host, self.port, self.keepalive
            )
        except Exception as exc:
            raise MqttConnectError(f"Cannot reach {self.host}:{self.port}: {exc}") from exc

        self._client.loop_start()
        try:
            await asyncio.wait_for(self._connack, timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._loop.run_in_executor(None, self._client.loop_stop)
            raise MqttConnectError(f"No CONNACK from {self.host}:{self.port}") from exc
        except MqttConnectError:
            await self._loop.run_in_executor(None, self._client.loop_stop)
            raise

    def _resolve_connack(self, error: Exception | None) -> None:
        fut = self._connack
        if fut is None or fut.done():
            return
        if error is not None:
            fut.set_exception(error)
        else:
            fut.set_result(None)

    # ---- paho callbacks (network thread) ----

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code != 0:
            logger.error({"event": "mqtt_connect_failed", "reason": str(reason_code)})
            if self._loop is not None:
                self._loop.call_soon_threadsafe(
                    self._resolve_connack, MqttConnectError(f"Broker refused: {reason_code}")
                )
            return

        self._connected = True
        self._sessions += 1
        logger.info({"event": "mqtt_connected", "session": self._sessions})
        if self._topics:
            client.subscribe([(t, self.qos) for t in self._topics])
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._resolve_connack, None)
        if self._sessions > 1 and self._reconnect_handler is not None:
            asyncio.run_coroutine_threadsafe(self._run_reconnect_handler(), self._loop)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected = False
        # rc==0 = clean; anything else and paho reconnects by itself
        logger.warning({"event": "mqtt_disconnected", "reason": str(reason_code)})

    def _on_message(self, client, userdata, msg):
        payload = msg.payload.decode("utf-8", errors="replace")
        if self._loop is None or self._message_handler is None:
            logger.debug({"event": "mqtt_message_unhandled", "topic": msg.topic})
            return
        asyncio.run_coroutine_threadsafe(self._dispatch(msg.topic, payload), self._loop)

    async def _dispatch(self, topic: str, payload: str) -> None:
        try:
            await self._message_handler(topic, payload)
        except Exception:  # noqa: BLE001
            logger.exception({"event": "mqtt_handler_error", "topic": topic})

    async def _run_reconnect_handler(self) -> None:
        try:
            await self._reconnect_handler()
        except Exception:  # noqa: BLE001
            logger.exception({"event": "mqtt_reconnect_handler_error"})

    # ---- bus operations ----

    async def publish(
        self,
        topic: str,
        payload: Any,
        retain: bool = False,
        qos: int | None = None,
    ) -> None:
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        info = self._client.publish(
            topic, payload, qos=self.qos if qos is None else qos, retain=retain
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning({"event": "mqtt_publish_queued", "topic": topic, "rc": info.rc})
        log_state_published(topic, str(payload))

    async def subscribe(self, topics: Iterable[str]) -> None:
        new = [t for t in topics if t not in self._topics]
        self._topics.extend(new)
        if new and self._connected:
            self._client.subscribe([(t, self.qos) for t in new])
        logger.debug({"event": "mqtt_subscribed", "topics": new})

    async def disconnect(self) -> None:
        # Allow pending publishes to drain
        await asyncio.sleep(self._drain_delay)
        self._client.disconnect()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._client.loop_stop)
        self._connected = False
        logger.info({"event": "mqtt_closed"})


__all__ = ["MqttClient", "MqttConnectError"]
