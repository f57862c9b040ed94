"""In-memory transport for tests.

Pass :func:`mock_transport_factory` (or a factory returning a prepared
:class:`MockTransport`) as ``transport_factory`` when building a
:class:`~pyiotcore.thing.Thing`::

    transport = MockTransport()
    thing = Thing(options, transport_factory=lambda _t, _o: transport)
    await thing.connect("ssl://broker:8883")
    await transport.receive(config_topic(identity), b"{}")
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

from pyiotcore.transport import CredentialsProvider, MessageHandler, TransportClient

if TYPE_CHECKING:
    from pyiotcore.config import LeveledLogger, ThingOptions
    from pyiotcore.thing import Thing


class MockTransport:
    """Records every call instead of talking to a broker.

    ``publish_error``, when set, is raised by every subsequent publish.
    """

    def __init__(self) -> None:
        self.connected = False
        self.connected_to: list[str] = []
        self.client_id = ""
        self.credentials_provider: CredentialsProvider | None = None
        self.logger: LeveledLogger | None = None
        self.on_connect_handler: Callable[[TransportClient], Awaitable[None]] | None = None
        self.subscriptions: dict[str, MessageHandler] = {}
        self.subscription_qos: dict[str, int] = {}
        self.messages: dict[str, list[bytes]] = {}
        self.published_qos: dict[str, list[int]] = {}
        self.publish_error: Exception | None = None
        self.connect_calls = 0
        self.disconnect_calls = 0

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, brokers: Sequence[str]) -> None:
        self.connect_calls += 1
        self.connected = True
        self.connected_to = list(brokers)
        if self.on_connect_handler is not None:
            await self.on_connect_handler(self)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self.connected_to = []

    async def publish(self, topic: str, qos: int, payload: bytes) -> None:
        if self.publish_error is not None:
            raise self.publish_error
        self.messages.setdefault(topic, []).append(payload)
        self.published_qos.setdefault(topic, []).append(qos)

    async def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> None:
        self.subscriptions[topic] = handler
        self.subscription_qos[topic] = qos

    async def unsubscribe(self, topic: str) -> None:
        self.subscriptions.pop(topic, None)
        self.subscription_qos.pop(topic, None)

    def set_client_id(self, client_id: str) -> None:
        self.client_id = client_id

    def set_credentials_provider(self, provider: CredentialsProvider) -> None:
        self.credentials_provider = provider

    def set_logger(self, logger: LeveledLogger) -> None:
        self.logger = logger

    def set_on_connect_handler(self, handler: Callable[[TransportClient], Awaitable[None]]) -> None:
        self.on_connect_handler = handler

    async def receive(self, topic: str, payload: bytes) -> None:
        """Deliver *payload* as if the broker had sent it on *topic*."""
        handler = self.subscriptions.get(topic)
        if handler is not None:
            await handler(topic, payload)


def mock_transport_factory(thing: Thing, options: ThingOptions) -> MockTransport:
    """Transport factory returning a fresh :class:`MockTransport`."""
    return MockTransport()
