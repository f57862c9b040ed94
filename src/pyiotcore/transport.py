"""Structural interface of the MQTT transport used by :class:`Thing`.

The transport owns the wire protocol: sockets, TLS, MQTT framing, QoS
retransmission, reconnection and offline queueing. ``Thing`` only drives it
through the operations below, which makes it easy to pass test doubles
(see :class:`pyiotcore.mock.MockTransport`) while keeping the production
implementation (:class:`pyiotcore._paho.PahoTransport`) concrete.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pyiotcore.config import LeveledLogger, ThingOptions
    from pyiotcore.thing import Thing

#: Returns the ``(username, password)`` pair for the next connection attempt.
CredentialsProvider = Callable[[], tuple[str, str]]

#: Receives ``(topic, payload)`` for every message on a subscription.
MessageHandler = Callable[[str, bytes], Awaitable[None]]


class TransportClient(Protocol):
    """Operations ``Thing`` needs from an MQTT client."""

    def is_connected(self) -> bool:
        """Whether the client currently holds a session with a broker."""
        ...

    async def connect(self, brokers: Sequence[str]) -> None:
        """Connect to the first reachable broker in *brokers*."""
        ...

    async def disconnect(self) -> None:
        """Disconnect and release all client resources."""
        ...

    async def publish(self, topic: str, qos: int, payload: bytes) -> None:
        """Publish *payload* and wait for the broker acknowledgement."""
        ...

    async def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> None:
        """Subscribe *handler* to *topic* and wait for the acknowledgement."""
        ...

    async def unsubscribe(self, topic: str) -> None:
        ...

    def set_client_id(self, client_id: str) -> None:
        ...

    def set_credentials_provider(self, provider: CredentialsProvider) -> None:
        """Install the provider called before every (re)connection attempt."""
        ...

    def set_logger(self, logger: LeveledLogger) -> None:
        """Route the client's internal logging through *logger*."""
        ...

    def set_on_connect_handler(self, handler: Callable[[TransportClient], Awaitable[None]]) -> None:
        """Install a coroutine run after every successful (re)connection."""
        ...


#: Builds the transport for one connection attempt of a ``Thing``.
TransportFactory = Callable[["Thing", "ThingOptions"], TransportClient]
