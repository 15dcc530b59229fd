from __future__ import annotations


class FakeMessage:
    def __init__(self, topic, payload, qos=0, retain=False):
        self.topic = topic
        self.payload = payload if isinstance(payload, bytes) else str(payload).encode()
        self.qos = qos
        self.retain = retain


class FakeMQTT:
    """In-memory MqttBus. ``events`` keeps every call in order."""

    def __init__(self, fail_connects=0):
        self.events = []
        self.published = []
        self.subscribed = []
        self.connected = False
        self.connect_calls = 0
        self.fail_connects = fail_connects
        self.message_handler = None
        self.reconnect_handler = None

    @property
    def is_connected(self):
        return self.connected

    async def connect(self):
        self.connect_calls += 1
        if self.connect_calls <= self.fail_connects:
            raise ConnectionRefusedError("broker down")
        self.connected = True
        self.events.append(("connect",))

    async def publish(self, topic, payload, retain=False, qos=1):
        self.published.append((topic, payload, retain))
        self.events.append(("publish", topic, payload))

    async def subscribe(self, topics):
        topics = list(topics)
        self.subscribed.extend(topics)
        self.events.append(("subscribe", tuple(topics)))

    def set_message_handler(self, handler):
        self.message_handler = handler

    def set_reconnect_handler(self, handler):
        self.reconnect_handler = handler

    async def disconnect(self):
        self.connected = False
        self.events.append(("disconnect",))

    async def deliver(self, topic, payload):
        await self.message_handler(topic, payload)

    def payloads(self, topic):
        return [p for t, p, _ in self.published if t == topic]

    def topics(self):
        return [t for t, _, _ in self.published]
