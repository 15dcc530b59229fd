import json

from blelight_core.common import (
    DeviceTopics,
    availability_topic,
    discovery_topic,
    object_id,
    unique_id,
)
from blelight_core.discovery import discovery_message, discovery_payload
from tests.helpers.util import assert_json_schema


def test_topic_scheme():
    topics = DeviceTopics("abc", "lights")
    assert topics.power_state == "lights/abc/light/status"
    assert topics.power_command == "lights/abc/light/switch"
    assert topics.brightness_state == "lights/abc/brightness/status"
    assert topics.brightness_command == "lights/abc/brightness/set"
    assert topics.temperature_state == "lights/abc/temperature/status"
    assert topics.temperature_command == "lights/abc/temperature/set"
    assert topics.command_topics()["lights/abc/light/switch"] == "on"
    assert availability_topic("lights") == "lights/availability"


def test_ids_drop_separators():
    assert object_id("AA:BB:CC:DD:EE:FF") == "aabbccddeeff"
    assert unique_id("AA:BB:CC:DD:EE:FF") == "blelight_aabbccddeeff"
    assert discovery_topic("abc") == "homeassistant/light/blelight_abc/config"
    assert discovery_topic("abc", "ha") == "ha/light/blelight_abc/config"


def test_discovery_document_for_abc():
    topics = DeviceTopics("abc")
    payload = discovery_payload("abc", "Desk Lamp", topics, "blelight/availability")

    assert "abc" in payload["unique_id"]
    assert payload["availability_topic"] == "blelight/availability"
    assert payload["command_topic"] == "blelight/abc/light/switch"
    assert payload["state_topic"] == "blelight/abc/light/status"
    assert (payload["payload_on"], payload["payload_off"]) == ("ON", "OFF")
    assert payload["brightness_command_topic"] == "blelight/abc/brightness/set"
    assert payload["brightness_state_topic"] == "blelight/abc/brightness/status"
    assert payload["brightness_scale"] == 100
    assert payload["color_temp_command_topic"] == "blelight/abc/temperature/set"
    assert payload["color_temp_state_topic"] == "blelight/abc/temperature/status"
    assert (payload["min_mireds"], payload["max_mireds"]) == (200, 370)
    assert payload["device"]["manufacturer"] == "BLE Light"
    assert payload["device"]["via_device"] == "blelight_bridge"
    assert payload["device"]["identifiers"] == [payload["unique_id"]]


def test_discovery_message_is_json():
    topic, raw = discovery_message(
        "AA:BB", "Lamp", DeviceTopics("AA:BB"), "blelight/availability",
        prefix="ha", manufacturer="Acme",
    )
    assert topic == "ha/light/blelight_aabb/config"
    obj = assert_json_schema(raw, ["unique_id", "device", "availability_topic"])
    assert obj["device"]["manufacturer"] == "Acme"
    assert json.loads(raw)["name"] == "Lamp"
