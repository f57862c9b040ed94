"""The device runtime: connection lifecycle, publishing and config updates."""

from __future__ import annotations

import asyncio
import enum
import threading
from collections.abc import Awaitable
from typing import Any, TypeVar

from pyiotcore._dispatch import ConfigDispatcher
from pyiotcore._paho import PahoTransport
from pyiotcore._ratelimit import RateGate
from pyiotcore.config import ThingOptions
from pyiotcore.credentials import Credentials
from pyiotcore.exceptions import (
    IotCancelledError,
    IotConfigError,
    IotNotConnectedError,
    IotSigningError,
)
from pyiotcore.identity import DeviceIdentity, config_topic, events_topic, state_topic
from pyiotcore.token import clamp_expiration, issue_token
from pyiotcore.transport import CredentialsProvider, TransportClient, TransportFactory

T = TypeVar("T")

#: Username sent with every connection; the bridge only checks the password.
MQTT_USERNAME = "unused"


class ConnectionState(enum.StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _default_transport_factory(thing: Thing, options: ThingOptions) -> TransportClient:
    return PahoTransport(credentials=options.credentials, queue_directory=options.queue_directory)


class Thing:
    """A device connected to the cloud IoT bridge.

    Usage::

        options = ThingOptions(identity=identity, credentials=credentials)
        async with Thing(options) as thing:
            await thing.connect("ssl://mqtt.googleapis.com:8883")
            await thing.publish_event(b"21.5", "temperature")

    Lifecycle contract:

    - ``connect()`` is idempotent while connected.
    - ``disconnect()`` is idempotent and never raises.
    - ``connect()`` and ``disconnect()`` are serialized; publishes may run
      concurrently and share one rate gate.

    Every blocking operation accepts a ``timeout`` in seconds. When it
    expires while waiting, :class:`IotCancelledError` is raised; an
    operation already handed to the transport is not aborted.
    """

    def __init__(
        self,
        options: ThingOptions,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._options = options
        self._transport_factory = transport_factory or _default_transport_factory
        self._logger = options.resolved_logger()
        self._transport: TransportClient | None = None
        self._connecting = False
        self._lifecycle_lock = asyncio.Lock()
        self._token_lock = threading.Lock()
        self._gate = RateGate(options.publish_interval)
        self._dispatcher = ConfigDispatcher(self, options.config_handler, self._logger)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Thing:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    @property
    def options(self) -> ThingOptions:
        return self._options

    @property
    def state(self) -> ConnectionState:
        if self._connecting:
            return ConnectionState.CONNECTING
        if self.is_connected():
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    def is_connected(self) -> bool:
        """Whether a transport exists and reports itself connected."""
        return self._transport is not None and self._transport.is_connected()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, *brokers: str, timeout: float | None = None) -> None:
        """Connect to the given broker(s).

        Parameters
        ----------
        *brokers
            Broker addresses, e.g. ``"ssl://mqtt.googleapis.com:8883"``.
        timeout
            Seconds to wait for the connection to be established.

        Raises
        ------
        IotConfigError
            If the identity or the credentials are missing.
        IotCancelledError
            If *timeout* expired while waiting.
        """
        deadline = self._deadline(timeout)
        await self._until(self._lifecycle_lock.acquire(), deadline, "connect")
        try:
            if self.is_connected():
                return
            identity = self._options.identity
            credentials = self._options.credentials
            if identity is None or credentials is None:
                raise IotConfigError("Device identity and credentials are required to connect")
            self._connecting = True
            try:
                await self._connect_locked(identity, credentials, brokers, deadline)
            finally:
                self._connecting = False
        finally:
            self._lifecycle_lock.release()

    async def _connect_locked(
        self,
        identity: DeviceIdentity,
        credentials: Credentials,
        brokers: tuple[str, ...],
        deadline: float | None,
    ) -> None:
        options = self._options
        expiration = clamp_expiration(options.auth_token_expiration)

        transport = self._transport_factory(self, options)
        transport.set_client_id(identity.client_id)
        transport.set_credentials_provider(self._credentials_provider(credentials, identity, expiration))
        if options.log_mqtt:
            transport.set_logger(self._logger)
        transport.set_on_connect_handler(self._on_transport_connect)

        previous = self._transport
        self._logger.debug("Connecting client_id=%s brokers=%s", identity.client_id, list(brokers))
        try:
            await self._until(transport.connect(brokers), deadline, "connect")
        except (IotCancelledError, asyncio.CancelledError):
            # The attempt keeps running inside the transport; keep it owned
            # so a later disconnect() can tear it down.
            self._transport = transport
            if previous is not transport:
                await self._close_quietly(previous)
            raise
        except Exception:
            if transport is not previous:
                await self._close_quietly(transport)
            raise

        self._transport = transport
        if previous is not transport:
            await self._close_quietly(previous)
        self._logger.info("Connected client_id=%s", identity.client_id)

    async def _on_transport_connect(self, client: TransportClient) -> None:
        identity = self._options.identity
        if identity is None:
            return
        topic = config_topic(identity)
        try:
            await client.subscribe(topic, self._options.config_qos, self._dispatcher)
        except Exception:
            self._logger.error("Subscribing to %s failed", topic, exc_info=True)

    def _credentials_provider(
        self,
        credentials: Credentials,
        identity: DeviceIdentity,
        expiration: float,
    ) -> CredentialsProvider:
        def provide() -> tuple[str, str]:
            with self._token_lock:
                try:
                    token = issue_token(credentials, identity, expiration)
                except IotSigningError as exc:
                    self._logger.error("Error generating auth token: %s", exc)
                    return "", ""
            return MQTT_USERNAME, token.token

        return provide

    async def disconnect(self, *, timeout: float | None = None) -> None:
        """Unsubscribe from config updates and disconnect. Never raises.

        A transport that exists but has lost its session (or whose connect
        was cancelled) is still torn down; only a Thing without a transport
        makes this a no-op.
        """
        deadline = self._deadline(timeout)
        try:
            await self._until(self._lifecycle_lock.acquire(), deadline, "disconnect")
        except IotCancelledError:
            self._logger.debug("Disconnect gave up waiting for a pending connect")
            return
        try:
            transport = self._transport
            if transport is None:
                return
            self._transport = None

            identity = self._options.identity
            if identity is not None and transport.is_connected():
                try:
                    await self._until(transport.unsubscribe(config_topic(identity)), deadline, "unsubscribe")
                except Exception:
                    self._logger.debug("Unsubscribe failed during disconnect", exc_info=True)

            self._logger.info("Disconnecting")
            try:
                await self._until(transport.disconnect(), deadline, "disconnect")
            except Exception:
                self._logger.debug("Transport disconnect failed", exc_info=True)
        finally:
            self._lifecycle_lock.release()

    async def _close_quietly(self, transport: TransportClient | None) -> None:
        if transport is None:
            return
        try:
            await transport.disconnect()
        except Exception:
            self._logger.debug("Closing previous transport failed", exc_info=True)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish_state(self, payload: bytes | str, *, timeout: float | None = None) -> None:
        """Publish the current device state.

        Raises
        ------
        IotNotConnectedError
            If the client is not connected.
        IotCancelledError
            If *timeout* expired while waiting.
        """
        identity = self._require_identity()
        await self._publish(state_topic(identity), payload, self._options.state_qos, timeout)

    async def publish_event(
        self,
        payload: bytes | str,
        *segments: str,
        timeout: float | None = None,
    ) -> None:
        """Publish a telemetry event, optionally below a folder hierarchy.

        ``publish_event(b"21.5", "sensors", "temperature")`` publishes to
        ``/devices/{device}/events/sensors/temperature``.
        """
        identity = self._require_identity()
        await self._publish(events_topic(identity, *segments), payload, self._options.event_qos, timeout)

    async def _publish(self, topic: str, payload: bytes | str, qos: int, timeout: float | None) -> None:
        if timeout is not None and timeout <= 0:
            raise IotCancelledError(f"Publish to {topic} cancelled: deadline already expired")
        deadline = self._deadline(timeout)
        data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)

        await self._until(self._gate.wait(), deadline, "publish")

        transport = self._transport
        if transport is None or not transport.is_connected():
            raise IotNotConnectedError("not connected")

        try:
            await self._until(transport.publish(topic, qos, data), deadline, "publish")
        except Exception as exc:
            self._logger.debug(
                "SEND FAILED - Topic: %s, Message Length: %d bytes, Error: %s",
                topic,
                len(data),
                exc,
            )
            raise
        self._logger.debug("SENT - Topic: %s, Message Length: %d bytes", topic, len(data))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_identity(self) -> DeviceIdentity:
        identity = self._options.identity
        if identity is None:
            raise IotNotConnectedError("not connected: no device identity configured")
        return identity

    @staticmethod
    def _deadline(timeout: float | None) -> float | None:
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    @staticmethod
    async def _until(aw: Awaitable[T], deadline: float | None, what: str) -> T:
        """Await *aw*, raising :class:`IotCancelledError` once *deadline* passes."""
        if deadline is None:
            return await aw
        try:
            async with asyncio.timeout_at(deadline) as scope:
                return await aw
        except TimeoutError as exc:
            if scope.expired():
                raise IotCancelledError(f"{what} was cancelled or timed out") from exc
            raise
