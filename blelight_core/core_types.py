"""Small stable value types and callback aliases used across blelight_core.

Light state is tri-state: every field starts out unknown until the light
reports it. Consumers must handle ``UNKNOWN`` explicitly instead of testing
for ``None``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Final

# ---------------------------
# Tri-state values
# ---------------------------


class Unknown:
    """Marker for a level the light has not reported yet."""

    _instance: Unknown | None = None

    def __new__(cls) -> Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __bool__(self) -> bool:
        return False


UNKNOWN: Final = Unknown()


@dataclass(frozen=True)
class Value:
    """A known numeric level."""

    n: int


Level = Unknown | Value


class Power(Enum):
    UNKNOWN = "unknown"
    ON = "ON"
    OFF = "OFF"

    @classmethod
    def from_bool(cls, on: bool) -> Power:
        return cls.ON if on else cls.OFF


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"


@dataclass(frozen=True)
class LightState:
    """Cached light state. Replaced as a whole on every update."""

    on: Power = Power.UNKNOWN
    brightness: Level = UNKNOWN
    temperature: Level = UNKNOWN

    def with_field(self, name: str, value: Power | Level) -> LightState:
        return replace(self, **{name: value})


def level_value(level: Level) -> int | None:
    """Return the number inside a known level, ``None`` for ``UNKNOWN``."""
    if isinstance(level, Value):
        return level.n
    return None


# ---------------------------
# Callback signatures
# ---------------------------
StateCallback = Callable[[Any], None]
Unsubscribe = Callable[[], None]
NotifyCallback = Callable[[bytes], None]
MessageHandler = Callable[[str, str], Awaitable[None]]
ReconnectHandler = Callable[[], Awaitable[None]]


__all__ = [
    "UNKNOWN",
    "ConnectionState",
    "Level",
    "LightState",
    "MessageHandler",
    "NotifyCallback",
    "Power",
    "ReconnectHandler",
    "StateCallback",
    "Unknown",
    "Unsubscribe",
    "Value",
    "level_value",
]
