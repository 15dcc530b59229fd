"""Home Assistant MQTT discovery documents for lights."""

from __future__ import annotations

import json

from .color_temperature import MAX_MIREDS, MIN_MIREDS
from .common import (
    DEFAULT_DISCOVERY_PREFIX,
    PAYLOAD_OFF,
    PAYLOAD_OFFLINE,
    PAYLOAD_ON,
    PAYLOAD_ONLINE,
    DeviceTopics,
    discovery_topic,
    unique_id,
)

BRIDGE_ID = "blelight_bridge"


def discovery_payload(
    device_id: str,
    name: str,
    topics: DeviceTopics,
    availability_topic: str,
    manufacturer: str = "BLE Light",
    via_device: str = BRIDGE_ID,
) -> dict:
    uid = unique_id(device_id)
    return {
        "name": name,
        "unique_id": uid,
        "availability_topic": availability_topic,
        "payload_available": PAYLOAD_ONLINE,
        "payload_not_available": PAYLOAD_OFFLINE,
        "command_topic": topics.power_command,
        "state_topic": topics.power_state,
        "payload_on": PAYLOAD_ON,
        "payload_off": PAYLOAD_OFF,
        "brightness_command_topic": topics.brightness_command,
        "brightness_state_topic": topics.brightness_state,
        "brightness_scale": 100,
        "color_temp_command_topic": topics.temperature_command,
        "color_temp_state_topic": topics.temperature_state,
        "min_mireds": MIN_MIREDS,
        "max_mireds": MAX_MIREDS,
        "retain": True,
        "device": {
            "identifiers": [uid],
            "name": name,
            "manufacturer": manufacturer,
            "connections": [["mac", device_id]],
            "via_device": via_device,
        },
    }


def discovery_message(
    device_id: str,
    name: str,
    topics: DeviceTopics,
    availability_topic: str,
    prefix: str = DEFAULT_DISCOVERY_PREFIX,
    manufacturer: str = "BLE Light",
) -> tuple[str, str]:
    """(topic, JSON payload) ready to publish retained."""
    payload = discovery_payload(device_id, name, topics, availability_topic, manufacturer)
    return discovery_topic(device_id, prefix), json.dumps(payload)


__all__ = ["BRIDGE_ID", "discovery_message", "discovery_payload"]
