import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from blelight_core import mqtt_dispatcher
from blelight_core.mqtt_dispatcher import MqttClient, MqttConnectError
from tests.helpers.fakes import FakeMessage
from tests.helpers.util import assert_contains_log, wait_until


@pytest.fixture
def paho_client(monkeypatch):
    monkeypatch.setattr(mqtt_dispatcher.socket, "gethostbyname", lambda host: "127.0.0.1")
    mock_client = MagicMock()
    mock_client.publish.return_value = MagicMock(rc=0)
    with patch("blelight_core.mqtt_dispatcher.mqtt.Client") as mock_mqtt_class:
        mock_mqtt_class.return_value = mock_client
        yield mock_client, mock_mqtt_class


def accept_on_loop_start(bus, mock_client, reason_code=0):
    mock_client.loop_start.side_effect = lambda: bus._on_connect(
        mock_client, None, {}, reason_code, None
    )


def test_client_setup_lwt_auth_and_backoff(paho_client):
    mock_client, mock_mqtt_class = paho_client

    MqttClient(
        "broker",
        client_id="bridge-test",
        username="user",
        password="pw",
        tls=True,
        will_topic="lights/availability",
    )

    assert mock_mqtt_class.call_args.kwargs["client_id"] == "bridge-test"
    mock_client.username_pw_set.assert_called_once_with(username="user", password="pw")
    mock_client.tls_set.assert_called_once()
    mock_client.will_set.assert_called_once_with(
        "lights/availability", payload="offline", qos=1, retain=True
    )
    mock_client.reconnect_delay_set.assert_called_once_with(min_delay=1, max_delay=30)


def test_from_config(paho_client):
    mock_client, _ = paho_client
    bus = MqttClient.from_config(
        {"MQTT_URL": "mqtts://u:p@broker.local", "MQTT_BASE": "lights", "MQTT_CLIENT_ID": "x"}
    )
    assert (bus.host, bus.port, bus.tls) == ("broker.local", 8883, True)
    mock_client.username_pw_set.assert_called_once_with(username="u", password="p")
    assert mock_client.will_set.call_args.args[0] == "lights/availability"


@pytest.mark.asyncio
async def test_connect_waits_for_connack(paho_client):
    mock_client, _ = paho_client
    bus = MqttClient("broker", port=1884)
    accept_on_loop_start(bus, mock_client)

    await bus.connect()

    mock_client.connect.assert_called_once_with("broker", 1884, 60)
    assert bus.is_connected


@pytest.mark.asyncio
async def test_connect_refused(paho_client, caplog):
    mock_client, _ = paho_client
    bus = MqttClient("broker")
    accept_on_loop_start(bus, mock_client, reason_code=5)

    with pytest.raises(MqttConnectError):
        await bus.connect()
    mock_client.loop_stop.assert_called_once()
    assert not bus.is_connected
    assert_contains_log(caplog, "mqtt_connect_failed")


@pytest.mark.asyncio
async def test_connect_timeout(paho_client):
    mock_client, _ = paho_client
    bus = MqttClient("broker", connect_timeout=0.01)

    with pytest.raises(MqttConnectError):
        await bus.connect()
    mock_client.loop_stop.assert_called_once()


@pytest.mark.asyncio
async def test_connect_unreachable(paho_client):
    mock_client, _ = paho_client
    mock_client.connect.side_effect = ConnectionRefusedError("nope")
    bus = MqttClient("broker")

    with pytest.raises(MqttConnectError):
        await bus.connect()
    mock_client.loop_start.assert_not_called()


@pytest.mark.asyncio
async def test_subscriptions_survive_reconnect(paho_client):
    mock_client, _ = paho_client
    bus = MqttClient("broker")
    await bus.subscribe(["a/set", "b/set"])
    mock_client.subscribe.assert_not_called()

    accept_on_loop_start(bus, mock_client)
    await bus.connect()
    mock_client.subscribe.assert_called_with([("a/set", 1), ("b/set", 1)])

    await bus.subscribe(["b/set", "c/set"])
    mock_client.subscribe.assert_called_with([("c/set", 1)])

    handler = AsyncMock()
    bus.set_reconnect_handler(handler)
    bus._on_disconnect(mock_client, None, {}, 7, None)
    assert not bus.is_connected
    bus._on_connect(mock_client, None, {}, 0, None)

    mock_client.subscribe.assert_called_with([("a/set", 1), ("b/set", 1), ("c/set", 1)])
    await wait_until(lambda: handler.await_count == 1)


@pytest.mark.asyncio
async def test_first_session_does_not_call_reconnect_handler(paho_client):
    mock_client, _ = paho_client
    bus = MqttClient("broker")
    handler = AsyncMock()
    bus.set_reconnect_handler(handler)
    accept_on_loop_start(bus, mock_client)

    await bus.connect()
    await asyncio.sleep(0)

    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_messages_dispatched_on_loop(paho_client, caplog):
    mock_client, _ = paho_client
    bus = MqttClient("broker")
    accept_on_loop_start(bus, mock_client)
    await bus.connect()
    handler = AsyncMock(side_effect=[None, RuntimeError("boom")])
    bus.set_message_handler(handler)

    bus._on_message(mock_client, None, FakeMessage("blelight/AA/light/switch", "ON"))
    bus._on_message(mock_client, None, FakeMessage("blelight/AA/light/switch", b"OFF"))
    await wait_until(lambda: handler.await_count == 2)
    await asyncio.sleep(0)

    handler.assert_any_await("blelight/AA/light/switch", "ON")
    handler.assert_any_await("blelight/AA/light/switch", "OFF")
    assert_contains_log(caplog, "mqtt_handler_error")


@pytest.mark.asyncio
async def test_publish_encodes_dicts(paho_client):
    mock_client, _ = paho_client
    bus = MqttClient("broker")

    await bus.publish("blelight/availability", "online", retain=True)
    await bus.publish("homeassistant/light/x/config", {"name": "Lamp"}, retain=True)

    mock_client.publish.assert_any_call("blelight/availability", "online", qos=1, retain=True)
    topic, payload = mock_client.publish.call_args.args
    assert topic == "homeassistant/light/x/config"
    assert json.loads(payload) == {"name": "Lamp"}


@pytest.mark.asyncio
async def test_disconnect_drains_then_stops(paho_client):
    mock_client, _ = paho_client
    bus = MqttClient("broker", drain_delay=0)
    accept_on_loop_start(bus, mock_client)
    await bus.connect()

    await bus.disconnect()

    mock_client.disconnect.assert_called_once()
    mock_client.loop_stop.assert_called_once()
    assert not bus.is_connected
