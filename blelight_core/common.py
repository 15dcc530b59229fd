"""MQTT topic scheme shared by the bridge and the discovery builder.

Per device, under ``<base>/<device_id>/``::

    light/status        light/switch
    brightness/status   brightness/set
    temperature/status  temperature/set

plus one ``<base>/availability`` topic shared by every device.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_BASE = "blelight"
DEFAULT_DISCOVERY_PREFIX = "homeassistant"

PAYLOAD_ON = "ON"
PAYLOAD_OFF = "OFF"
PAYLOAD_ONLINE = "online"
PAYLOAD_OFFLINE = "offline"

# characteristic name -> topic segment
TOPIC_SEGMENTS = {
    "on": "light",
    "brightness": "brightness",
    "temperature": "temperature",
}


def availability_topic(base: str = DEFAULT_BASE) -> str:
    return f"{base}/availability"


def object_id(device_id: str) -> str:
    """Topic/entity-safe form of a device id (colons dropped, lower case)."""
    return device_id.replace(":", "").replace("-", "").lower()


def unique_id(device_id: str) -> str:
    return f"blelight_{object_id(device_id)}"


def discovery_topic(device_id: str, prefix: str = DEFAULT_DISCOVERY_PREFIX) -> str:
    return f"{prefix}/light/{unique_id(device_id)}/config"


@dataclass(frozen=True)
class DeviceTopics:
    """The six topics of one device."""

    device_id: str
    base: str = DEFAULT_BASE

    @property
    def root(self) -> str:
        return f"{self.base}/{self.device_id}"

    def state(self, characteristic: str) -> str:
        return f"{self.root}/{TOPIC_SEGMENTS[characteristic]}/status"

    def command(self, characteristic: str) -> str:
        suffix = "switch" if characteristic == "on" else "set"
        return f"{self.root}/{TOPIC_SEGMENTS[characteristic]}/{suffix}"

    @property
    def power_state(self) -> str:
        return self.state("on")

    @property
    def power_command(self) -> str:
        return self.command("on")

    @property
    def brightness_state(self) -> str:
        return self.state("brightness")

    @property
    def brightness_command(self) -> str:
        return self.command("brightness")

    @property
    def temperature_state(self) -> str:
        return self.state("temperature")

    @property
    def temperature_command(self) -> str:
        return self.command("temperature")

    def command_topics(self) -> dict[str, str]:
        """Command topic -> characteristic name."""
        return {self.command(name): name for name in TOPIC_SEGMENTS}

    def state_topics(self) -> dict[str, str]:
        """Characteristic name -> state topic."""
        return {name: self.state(name) for name in TOPIC_SEGMENTS}
