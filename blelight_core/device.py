"""BLE light device: connection lifecycle, state cache and retries.

A Device owns one peripheral. It connects on demand, keeps the link up
to receive notifications, reconnects by itself when the link drops
without being asked to, and re-runs an operation that was in flight when
that happened (up to ``DEFAULT_RETRIES`` times).

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> SUBSCRIBED
         ^                                        |
         +------------ disconnect event ----------+

All ``connect()`` calls across devices share one lock: the radio only
handles one connection negotiation at a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from .core_types import (
    ConnectionState,
    Level,
    LightState,
    Power,
    StateCallback,
    Unsubscribe,
    Value,
)
from .logging_setup import ble_logger as logger
from .logging_setup import log_ble_connected
from .ports import BlePeripheral, Clock, Registration
from .util import Debouncer, clamp

SERVICE_UUID = "ffe8badc-e1cb-46c6-9ad9-631ea7cbadff"
POWER_UUID = "00a26834-5cf4-48e5-ae1c-9e1234c03e00"
BRIGHTNESS_UUID = "bbe8badc-e1cb-46c6-9ad9-631ea7cba2bb"
TEMPERATURE_UUID = "cce8badc-e1cb-46c6-9ad9-631ea7cba2cc"

LEVEL_MIN = 1
LEVEL_MAX = 100

DEFAULT_RETRIES = 5
# connectAsync resolves before the link is stable
SETTLE_DELAY = 1.0
# firmware drops reads issued back to back
READ_SPACING = 0.5
NOTIFY_DEBOUNCE = 1.0
# a GATT error can arrive before the disconnect callback
LINK_GRACE = 2.0


@dataclass(frozen=True)
class Characteristic:
    uuid: str
    name: str
    is_bool: bool = False


POWER = Characteristic(POWER_UUID, "on", is_bool=True)
BRIGHTNESS = Characteristic(BRIGHTNESS_UUID, "brightness")
TEMPERATURE = Characteristic(TEMPERATURE_UUID, "temperature")
CHARACTERISTICS = (POWER, BRIGHTNESS, TEMPERATURE)
BY_NAME = {c.name: c for c in CHARACTERISTICS}


class DeviceError(Exception):
    """Base exception for device operations."""


class DeviceConnectionError(DeviceError):
    """Raised when a connection cannot be established or was lost."""


class CharacteristicNotFoundError(DeviceError):
    """Raised when the light service lacks one of its characteristics."""


class RetriesExhaustedError(DeviceError):
    """Raised to the caller of an operation that ran out of retries."""


def encode_level(value: int) -> bytes:
    """Clamp a brightness/temperature level and pack it as one byte."""
    return bytes([clamp(int(value), LEVEL_MIN, LEVEL_MAX)])


def decode(characteristic: Characteristic, data: bytes | bytearray) -> Power | Level:
    """Turn a single-byte payload into the cached representation."""
    if not data:
        raise DeviceError(f"Empty value for {characteristic.name}")
    raw = data[0]
    if characteristic.is_bool:
        return Power.from_bool(raw == 1)
    return Value(clamp(raw, LEVEL_MIN, LEVEL_MAX))


class PendingOperation:
    """An operation in flight, its retry budget and the caller's future."""

    def __init__(self, func: Callable[[], Awaitable[Any]], retries: int) -> None:
        self.func = func
        self.retries_remaining = retries
        self.interrupted = False
        self.attempts = 0
        self.parked: BaseException | None = None
        self._grace: asyncio.TimerHandle | None = None
        self.future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self.future.done()

    def park(self, exc: BaseException, grace: asyncio.TimerHandle) -> None:
        """Hold a link error until the disconnect event shows up."""
        self.unpark()
        self.parked = exc
        self._grace = grace

    def unpark(self) -> BaseException | None:
        exc, self.parked = self.parked, None
        if self._grace is not None:
            self._grace.cancel()
            self._grace = None
        return exc

    def finish(self, result: Any = None, exc: BaseException | None = None) -> None:
        self.unpark()
        if self.future.done():
            return
        if exc is not None:
            self.future.set_exception(exc)
        else:
            self.future.set_result(result)


class Device:
    """One BLE light."""

    def __init__(
        self,
        peripheral: BlePeripheral,
        connect_lock: asyncio.Lock | None = None,
        *,
        retries: int = DEFAULT_RETRIES,
        settle_delay: float = SETTLE_DELAY,
        read_spacing: float = READ_SPACING,
        notify_window: float = NOTIFY_DEBOUNCE,
        link_grace: float = LINK_GRACE,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize a device. Does not connect.

        Args:
            peripheral: Transport handle for the light.
            connect_lock: Lock shared by all devices to serialize connection
                negotiation. A private lock is used when omitted.
            retries: Retry budget for an operation interrupted by an
                unexpected disconnect.
            link_grace: How long an operation that failed with a link error
                waits for the disconnect event before the error is final.
        """
        self._peripheral = peripheral
        self._id = peripheral.id
        self._connect_lock = connect_lock or asyncio.Lock()
        self._retries = retries
        self._settle_delay = settle_delay
        self._read_spacing = read_spacing
        self._notify_window = notify_window
        self._link_grace = link_grace
        self._clock = clock

        self._name: str | None = None
        self._state = LightState()
        # firmware reports brightness 0 while off; the cache holds 1
        self._brightness_reported_zero = False
        self._connection_state = ConnectionState.DISCONNECTED
        self._link_up = False
        self._requested_disconnect = False
        self._stopped = False
        self._listeners: list[Registration] = []
        self._connect_task: asyncio.Task[None] | None = None
        self._pending: PendingOperation | None = None
        self._op_lock = asyncio.Lock()
        self._subscribers: dict[str, list[Debouncer[Any]]] = {
            c.name: [] for c in CHARACTERISTICS
        }
        self._tasks: set[asyncio.Task[Any]] = set()

    def __repr__(self) -> str:
        return f"<Device {self._id} {self._connection_state.value}>"

    # --- Accessors (cached, never I/O) ---

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def display_name(self) -> str:
        return self._name or self._id

    @property
    def state(self) -> LightState:
        return self._state

    @property
    def on(self) -> Power:
        return self._state.on

    @property
    def brightness(self) -> Level:
        return self._state.brightness

    @property
    def temperature(self) -> Level:
        return self._state.temperature

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    @property
    def is_connected(self) -> bool:
        return self._connection_state in (
            ConnectionState.CONNECTED,
            ConnectionState.SUBSCRIBED,
        )

    # --- Lifecycle ---

    async def init(self) -> None:
        """Connect and load the initial state."""
        await self.refresh()

    async def connect(self) -> None:
        """Connect, discover and arm notifications.

        No-op when already connected; joins the attempt in flight when one
        is running. Raises DeviceConnectionError on failure. Re-enables
        automatic reconnects after an explicit ``disconnect()``.
        """
        self._stopped = False
        if self.is_connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.get_running_loop().create_task(
                self._connect()
            )
        await asyncio.shield(self._connect_task)

    async def _connect(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            self._set_connection_state(ConnectionState.CONNECTING)
            self._requested_disconnect = False
            self._arm_listeners()
            try:
                await self._peripheral.connect()
            except Exception as exc:
                self._release_listeners()
                self._set_connection_state(ConnectionState.DISCONNECTED)
                err = DeviceConnectionError(f"Connection to {self._id} failed: {exc}")
                self._fail_pending(err)
                raise err from exc
            self._link_up = True

            await asyncio.sleep(self._settle_delay)
            try:
                await self._discover()
            except Exception as exc:
                logger.error(
                    {"event": "ble_discovery_failed", "device": self._id, "error": repr(exc)}
                )
                await self._teardown()
                err = DeviceConnectionError(f"Discovery on {self._id} failed: {exc}")
                self._fail_pending(err)
                raise err from exc

        self._resume_pending()

    async def _discover(self) -> None:
        if not self._link_up:
            raise DeviceConnectionError("Link lost while settling")
        self._name = self._peripheral.name or self._name
        log_ble_connected(self._id, self._name)

        found = await self._peripheral.discover(
            SERVICE_UUID, [c.uuid for c in CHARACTERISTICS]
        )
        missing = [c.name for c in CHARACTERISTICS if c.uuid not in found]
        if missing:
            raise CharacteristicNotFoundError(
                f"Missing characteristics on {self._id}: {', '.join(missing)}"
            )
        self._set_connection_state(ConnectionState.CONNECTED)

        for c in CHARACTERISTICS:
            await self._peripheral.start_notify(c.uuid, partial(self._on_notify, c))
        self._set_connection_state(ConnectionState.SUBSCRIBED)

    async def _teardown(self) -> None:
        """Drop a half-open link without triggering a reconnect."""
        self._set_connection_state(ConnectionState.DISCONNECTED)
        if not self._link_up:
            return
        self._requested_disconnect = True
        try:
            await self._peripheral.disconnect()
        except Exception as exc:  # noqa: BLE001
            logger.error({"event": "ble_teardown_error", "device": self._id, "error": repr(exc)})

    async def disconnect(self) -> None:
        """Disconnect on purpose; no automatic reconnect follows.

        Stays down until the next ``connect()``, even when a reconnect for
        an earlier drop is already scheduled. An operation waiting for that
        reconnect fails with DeviceConnectionError.
        """
        self._stopped = True
        if self._connect_task is not None and not self._connect_task.done():
            with contextlib.suppress(Exception):
                await asyncio.shield(self._connect_task)
        if not self._link_up:
            self._set_connection_state(ConnectionState.DISCONNECTED)
        else:
            self._requested_disconnect = True
            try:
                await self._peripheral.disconnect()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    {"event": "ble_disconnect_error", "device": self._id, "error": repr(exc)}
                )
        self._fail_pending(DeviceConnectionError(f"{self._id} was disconnected"))

    async def wait_background(self) -> None:
        """Wait for reconnect/retry tasks spawned by link events."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Link events ---

    def _arm_listeners(self) -> None:
        self._release_listeners()
        self._listeners = [
            self._peripheral.once("connect", self._on_connect_event),
            self._peripheral.once("disconnect", self._on_disconnect_event),
        ]

    def _release_listeners(self) -> None:
        listeners, self._listeners = self._listeners, []
        for registration in listeners:
            registration.cancel()

    def _on_connect_event(self, error: Exception | None = None) -> None:
        if error is not None:
            logger.error({"event": "ble_connect_error", "device": self._id, "error": repr(error)})
            return
        logger.info({"event": "ble_link_up", "device": self._id})

    def _on_disconnect_event(self, error: Exception | None = None) -> None:
        was = self._connection_state
        self._link_up = False
        self._release_listeners()
        self._set_connection_state(ConnectionState.DISCONNECTED)
        if error is not None:
            logger.error({"event": "ble_disconnect_error", "device": self._id, "error": repr(error)})
        else:
            logger.info({"event": "ble_disconnected", "device": self._id})

        if self._requested_disconnect:
            self._requested_disconnect = False
            return

        logger.warning({"event": "ble_unexpected_disconnect", "device": self._id})
        self._interrupt_pending()
        if was is ConnectionState.CONNECTING:
            # the negotiation in flight reports the failure itself
            return
        if self._stopped:
            return
        self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        if self._stopped:
            logger.info({"event": "ble_reconnect_skipped", "device": self._id})
            return
        logger.info({"event": "ble_reconnect", "device": self._id})
        try:
            await self.connect()
        except Exception as exc:  # noqa: BLE001
            logger.error({"event": "ble_reconnect_failed", "device": self._id, "error": repr(exc)})

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --- Operation retry envelope ---

    async def run_operation(self, op: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``op``, re-running it after each unexpected reconnect.

        Operations on one device run one at a time. Raises the operation's
        own error, RetriesExhaustedError once the retry budget is spent, or
        DeviceConnectionError when the reconnect itself fails.
        """
        async with self._op_lock:
            pending = PendingOperation(op, self._retries)
            self._pending = pending
            try:
                self._start_attempt(pending)
                return await pending.future
            finally:
                if self._pending is pending:
                    self._pending = None

    def _start_attempt(self, pending: PendingOperation) -> None:
        pending.attempts += 1
        self._spawn(self._attempt(pending, pending.attempts))

    async def _attempt(self, pending: PendingOperation, attempt: int) -> None:
        try:
            result = await pending.func()
        except Exception as exc:  # noqa: BLE001
            if pending.done:
                return
            # superseded by a retry, or the retry is waiting on a reconnect
            if pending.interrupted or attempt != pending.attempts:
                logger.debug(
                    {"event": "ble_operation_interrupted", "device": self._id, "error": repr(exc)}
                )
                return
            if not self._stopped and self._is_link_error(exc):
                self._park(pending, exc)
                return
            pending.finish(exc=exc)
            return
        pending.finish(result)

    def _is_link_error(self, exc: Exception) -> bool:
        if isinstance(exc, (ConnectionError, DeviceConnectionError)):
            return True
        return not self._link_up or not self._peripheral.is_connected

    def _park(self, pending: PendingOperation, exc: Exception) -> None:
        logger.debug({"event": "ble_operation_parked", "device": self._id, "error": repr(exc)})
        grace = asyncio.get_running_loop().call_later(
            self._link_grace, self._release_parked, pending
        )
        pending.park(exc, grace)

    def _release_parked(self, pending: PendingOperation) -> None:
        # no disconnect event followed; the error stands
        exc = pending.unpark()
        if exc is not None and not pending.interrupted:
            pending.finish(exc=exc)

    def _interrupt_pending(self) -> None:
        pending = self._pending
        if pending is None or pending.done:
            return
        pending.unpark()
        if pending.retries_remaining <= 0:
            logger.warning({"event": "ble_operation_abandoned", "device": self._id})
            pending.finish(
                exc=RetriesExhaustedError(f"Operation on {self._id} ran out of retries")
            )
            return
        pending.interrupted = True

    def _resume_pending(self) -> None:
        pending = self._pending
        if pending is None or pending.done or not pending.interrupted:
            return
        pending.retries_remaining -= 1
        pending.interrupted = False
        logger.info(
            {
                "event": "ble_operation_retry",
                "device": self._id,
                "retries_remaining": pending.retries_remaining,
            }
        )
        self._start_attempt(pending)

    def _fail_pending(self, exc: DeviceConnectionError) -> None:
        """Fail an operation that is waiting on a reconnect."""
        pending = self._pending
        if pending is None or pending.done:
            return
        if pending.interrupted or pending.parked is not None:
            pending.finish(exc=exc)

    # --- State ---

    async def refresh(self) -> bool:
        """Read all three characteristics into the cache.

        Never raises; on failure the cache keeps its previous values and
        False is returned. Subscribers are not notified.
        """
        try:
            await self.connect()
            values = await self.run_operation(self._read_all)
        except Exception as exc:  # noqa: BLE001
            logger.error({"event": "ble_refresh_failed", "device": self._id, "error": repr(exc)})
            return False
        self._state = LightState(**values)
        logger.info(
            {
                "event": "ble_state_refreshed",
                "device": self._id,
                "name": self._name,
                "state": repr(self._state),
            }
        )
        return True

    async def _read_all(self) -> dict[str, Power | Level]:
        values: dict[str, Power | Level] = {}
        for c in CHARACTERISTICS:
            values[c.name] = await self._read(c)
        return values

    async def _read(self, characteristic: Characteristic) -> Power | Level:
        await asyncio.sleep(self._read_spacing)
        data = await self._peripheral.read(characteristic.uuid)
        return self._decode(characteristic, data)

    def _decode(self, characteristic: Characteristic, data: bytes | bytearray) -> Power | Level:
        value = decode(characteristic, data)
        if characteristic is BRIGHTNESS:
            self._brightness_reported_zero = data[0] == 0
        return value

    def _store(self, name: str, value: Power | Level) -> None:
        self._state = self._state.with_field(name, value)

    async def set_characteristic(
        self,
        target: Characteristic,
        raw_value: bytes,
        without_response: bool = False,
    ) -> bool:
        """Write ``raw_value`` and read back what the light actually did.

        Never raises; returns False when the write could not be confirmed.
        """
        logger.info(
            {
                "event": "ble_set_characteristic",
                "device": self._id,
                "characteristic": target.name,
                "value": raw_value.hex(),
            }
        )
        try:
            await self.connect()
            await self.run_operation(
                partial(self._write_and_confirm, target, raw_value, without_response)
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                {
                    "event": "ble_set_failed",
                    "device": self._id,
                    "characteristic": target.name,
                    "error": repr(exc),
                }
            )
            return False
        return True

    async def _write_and_confirm(
        self,
        target: Characteristic,
        raw_value: bytes,
        without_response: bool,
    ) -> None:
        # powering on restores a firmware-chosen brightness; a level the
        # user set to 1 reads back as 1, not 0
        brightness_was_off = self._brightness_reported_zero

        await self._peripheral.write(target.uuid, raw_value, response=not without_response)
        value = await self._read(target)
        self._store(target.name, value)
        self._fan_out(target.name, value)

        if target is POWER and brightness_was_off:
            brightness = await self._read(BRIGHTNESS)
            self._store(BRIGHTNESS.name, brightness)
            self._fan_out(BRIGHTNESS.name, brightness)

    async def set_on(self, on: bool) -> bool:
        return await self.set_characteristic(POWER, bytes([1 if on else 0]))

    async def set_brightness(self, value: int) -> bool:
        """Set brightness, 1 (dimmest) to 100 (brightest)."""
        return await self.set_characteristic(BRIGHTNESS, encode_level(value), True)

    async def set_temperature(self, value: int) -> bool:
        """Set color temperature, 1 (warmest) to 100 (coolest)."""
        return await self.set_characteristic(TEMPERATURE, encode_level(value), True)

    # --- Notifications ---

    def subscribe(self, name: str, callback: StateCallback) -> Unsubscribe:
        """Call ``callback(value)`` when the light pushes a new ``name`` value.

        Identical values within the debounce window are delivered once.
        """
        if name not in self._subscribers:
            raise ValueError(f"Unknown characteristic: {name!r}")
        debounced = Debouncer(callback, self._notify_window, self._clock)
        self._subscribers[name].append(debounced)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers[name].remove(debounced)

        return unsubscribe

    def _on_notify(self, characteristic: Characteristic, data: bytes | bytearray) -> None:
        try:
            value = self._decode(characteristic, data)
        except DeviceError as exc:
            logger.warning({"event": "ble_bad_notification", "device": self._id, "error": str(exc)})
            return
        logger.debug(
            {
                "event": "ble_notification",
                "device": self._id,
                "characteristic": characteristic.name,
                "value": repr(value),
            }
        )
        self._store(characteristic.name, value)
        self._fan_out(characteristic.name, value)

    def _fan_out(self, name: str, value: Power | Level) -> None:
        for debounced in list(self._subscribers[name]):
            try:
                debounced(value)
            except Exception:  # noqa: BLE001
                logger.exception(
                    {"event": "subscriber_error", "device": self._id, "characteristic": name}
                )

    def _set_connection_state(self, state: ConnectionState) -> None:
        if state is not self._connection_state:
            logger.debug(
                {
                    "event": "ble_connection_state",
                    "device": self._id,
                    "from": self._connection_state.value,
                    "to": state.value,
                }
            )
            self._connection_state = state


__all__ = [
    "BRIGHTNESS",
    "CHARACTERISTICS",
    "POWER",
    "SERVICE_UUID",
    "TEMPERATURE",
    "CharacteristicNotFoundError",
    "Device",
    "DeviceConnectionError",
    "DeviceError",
    "RetriesExhaustedError",
    "decode",
    "encode_level",
]
