"""In-memory stand-ins for the MQTT broker, capture devices and telemetry.

FakeBroker implements the part of the aiomqtt.Client surface RelayClient
uses, so relay and session tests run without a network.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import aiomqtt
from PIL import Image

from session_relay.schemas import CaptureUnavailableError, TelemetryPayload, utc_timestamp

_DROP = object()


@dataclass
class FakeMessage:
    """Inbound message as seen by RelayClient (topic, raw payload)."""

    topic: str
    payload: bytes


@dataclass
class PublishedMessage:
    """One message accepted by the fake broker."""

    topic: str
    payload: str
    qos: int
    identifier: str


class FakeMqttClient:
    """Single broker connection."""

    def __init__(self, broker: FakeBroker, identifier: str) -> None:
        self.broker = broker
        self.identifier = identifier
        self.subscriptions: dict[str, int] = {}
        self.connected = False
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> FakeMqttClient:
        self.broker.identifiers.append(self.identifier)
        if self.broker.fail_connects > 0:
            self.broker.fail_connects -= 1
            raise aiomqtt.MqttError("Connection refused")
        self.connected = True
        self.broker.clients.append(self)
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        self.connected = False
        self.closed = True
        return False

    async def subscribe(self, topic: str, qos: int = 0, **kwargs: Any) -> None:
        if topic in self.broker.refused_topics:
            raise aiomqtt.MqttError(f"Subscribe refused: {topic}")
        self.subscriptions[topic] = qos

    async def publish(self, topic: str, payload: Any = None, qos: int = 0, **kwargs: Any) -> None:
        if not self.connected:
            raise aiomqtt.MqttError("Not connected")
        if self.broker.hang_publish:
            await asyncio.Event().wait()
        self.broker.published.append(PublishedMessage(topic, payload, qos, self.identifier))
        self.broker.deliver(topic, payload)

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._queue.get()
            if item is _DROP:
                raise aiomqtt.MqttError("Connection lost")
            yield item

    def receive(self, message: FakeMessage) -> None:
        self._queue.put_nowait(message)

    def drop(self) -> None:
        self._queue.put_nowait(_DROP)


class FakeBroker:
    """Routes published messages to every open connection subscribed to the topic."""

    def __init__(self) -> None:
        self.clients: list[FakeMqttClient] = []
        self.identifiers: list[str] = []
        self.published: list[PublishedMessage] = []
        self.fail_connects = 0
        self.hang_publish = False
        self.refused_topics: set[str] = set()

    def factory(self, identifier: str) -> FakeMqttClient:
        return FakeMqttClient(self, identifier)

    @property
    def open_clients(self) -> list[FakeMqttClient]:
        return [client for client in self.clients if client.connected]

    def deliver(self, topic: str, payload: Any) -> None:
        raw = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
        for client in self.open_clients:
            if topic in client.subscriptions:
                client.receive(FakeMessage(topic, raw))

    def drop_all(self) -> None:
        for client in self.open_clients:
            client.drop()

    def published_on(self, topic: str) -> list[PublishedMessage]:
        return [message for message in self.published if message.topic == topic]


class FakeSource:
    """Capture device that counts acquire/release calls."""

    def __init__(
        self,
        fail: bool = False,
        size: tuple[int, int] = (64, 48),
        acquire_delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.fail = fail
        self.size = size
        self.acquire_delay = acquire_delay
        self.error = error
        self.acquired = 0
        self.released = 0
        self.reads = 0

    async def acquire(self) -> None:
        if self.acquire_delay:
            await asyncio.sleep(self.acquire_delay)
        if self.error is not None:
            raise self.error
        if self.fail:
            raise CaptureUnavailableError("Permission denied")
        self.acquired += 1

    async def read_frame(self) -> Image.Image | None:
        self.reads += 1
        return Image.new("RGB", self.size, (200, 30, 30))

    async def release(self) -> None:
        self.released += 1


class StaticCollector:
    """Telemetry collector returning a fixed snapshot."""

    def __init__(self, ip: str = "203.0.113.7", platform: str = "Linux x86_64") -> None:
        self.ip = ip
        self.platform = platform
        self.calls: list[bool] = []

    async def collect(self, reduced: bool = False) -> TelemetryPayload:
        self.calls.append(reduced)
        return TelemetryPayload(
            ip=self.ip,
            user_agent="SessionRelay/test",
            platform=self.platform,
            language="en-US",
            screen_width=1280,
            screen_height=720,
            vendor="CPython",
            timestamp=utc_timestamp(),
            battery=80,
            is_reduced=reduced,
        )
