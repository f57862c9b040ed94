"""Default MQTT transport backed by a threaded paho-mqtt client."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import threading
from collections.abc import Awaitable, Callable, Iterator, Sequence
from concurrent.futures import Future as ConcurrentFuture
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyiotcore._store import FileStore, StoredMessage
from pyiotcore.config import LeveledLogger
from pyiotcore.credentials import Credentials, apply_client_certificate
from pyiotcore.exceptions import (
    IotError,
    IotNotConnectedError,
    IotPublishFailedError,
    IotTransportError,
)
from pyiotcore.transport import CredentialsProvider, MessageHandler, TransportClient

DEFAULT_PORT = 8883

_TLS_SCHEMES = frozenset({"ssl", "tls", "mqtts"})
_PLAIN_SCHEMES = frozenset({"tcp", "mqtt"})
_NO_ACK = object()


@dataclass(frozen=True)
class BrokerAddress:
    host: str
    port: int
    tls: bool


def parse_broker(raw_broker: str) -> BrokerAddress:
    """Parse ``ssl://host:port``, ``tcp://host:port`` or ``host[:port]``.

    Addresses without a scheme use TLS; the port defaults to 8883.
    """
    value = raw_broker.strip()
    if not value:
        raise ValueError("Broker value is empty")

    tls = True
    if "://" in value:
        scheme, value = value.split("://", 1)
        scheme = scheme.lower()
        if scheme in _PLAIN_SCHEMES:
            tls = False
        elif scheme not in _TLS_SCHEMES:
            raise ValueError(f"Unsupported broker scheme: {scheme}")
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return BrokerAddress(host, int(maybe_port), tls)
    return BrokerAddress(value, DEFAULT_PORT, tls)


def _settle(future: asyncio.Future[None], error: BaseException | None) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


class PahoTransport:
    """paho-mqtt transport that resolves acknowledgements on an asyncio loop.

    The paho network thread reconnects on its own and asks the credentials
    provider for a fresh password before every attempt. Once a session has
    been established the transport reports itself connected until
    :meth:`disconnect`; QoS 1/2 publishes made while paho is reconnecting
    are queued and sent when the link is back. Acknowledgements are matched
    to waiting coroutines by message id.

    Parameters
    ----------
    credentials : Credentials or None
        When they carry a certificate, the pair is presented as TLS client
        certificate on ``ssl://`` brokers.
    tls_context : ssl.SSLContext or None
        TLS settings for ``ssl://`` brokers, used as given. Defaults to
        ``ssl.create_default_context()`` (system CA store, verification on)
        plus the client certificate from *credentials*.
    keepalive : int
        MQTT keepalive in seconds.
    ack_timeout : float
        Seconds to wait for a PUBACK/SUBACK/UNSUBACK.
    max_reconnect_delay : int
        Upper bound of paho's reconnect backoff, in seconds.
    retain : bool
        Retain flag used for every publish.
    queue_directory : str or None
        Directory in which QoS 1/2 publishes are kept until acknowledged.
        Messages left there by an earlier transport are replayed after the
        next successful connect. ``None`` keeps queues in memory only.
    """

    def __init__(
        self,
        *,
        credentials: Credentials | None = None,
        tls_context: ssl.SSLContext | None = None,
        keepalive: int = 60,
        ack_timeout: float = 30.0,
        max_reconnect_delay: int = 120,
        retain: bool = True,
        queue_directory: str | None = None,
    ) -> None:
        self._credentials = credentials
        self._tls_context = tls_context
        self._keepalive = keepalive
        self._ack_timeout = ack_timeout
        self._max_reconnect_delay = max_reconnect_delay
        self._retain = retain
        self._store = FileStore(queue_directory) if queue_directory else None
        self._logger: LeveledLogger = logging.getLogger(__name__)
        self._mqtt_logger: LeveledLogger | None = None
        self._client_id = ""
        self._credentials_provider: CredentialsProvider | None = None
        self._on_connect_handler: Callable[[TransportClient], Awaitable[None]] | None = None

        self._client: mqtt.Client | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connect_future: asyncio.Future[None] | None = None
        self._session_up = False
        self._closing = False
        self._replay_task: asyncio.Task[None] | None = None
        self._pending_keys: set[str] = set()

        self._ack_lock = threading.Lock()
        self._acks: dict[int, asyncio.Future[None]] = {}
        self._early_acks: dict[int, BaseException | None] = {}
        self._issuing_calls = 0

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_client_id(self, client_id: str) -> None:
        self._client_id = client_id

    def set_credentials_provider(self, provider: CredentialsProvider) -> None:
        self._credentials_provider = provider

    def set_logger(self, logger: LeveledLogger) -> None:
        self._logger = logger
        self._mqtt_logger = logger

    def set_on_connect_handler(self, handler: Callable[[TransportClient], Awaitable[None]]) -> None:
        self._on_connect_handler = handler

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        """True from the first accepted session until :meth:`disconnect`, reconnects included."""
        return self._client is not None and self._session_up

    async def connect(self, brokers: Sequence[str]) -> None:
        """Connect to the first broker in *brokers* that accepts the session."""
        if not brokers:
            raise IotTransportError("No broker address given")

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._closing = False
        last_error: IotError | None = None

        for broker in brokers:
            try:
                address = parse_broker(broker)
            except ValueError as exc:
                last_error = IotTransportError(f"Invalid broker address {broker!r}: {exc}")
                continue

            client = self._build_client(address)
            connected: asyncio.Future[None] = loop.create_future()
            self._connect_future = connected
            self._logger.debug(
                "MQTT connect requested host=%s port=%s client_id=%s",
                address.host,
                address.port,
                self._client_id,
            )
            try:
                await loop.run_in_executor(None, client.connect, address.host, address.port, self._keepalive)
            except (OSError, ValueError) as exc:
                self._logger.debug("MQTT connect to %s failed", broker, exc_info=True)
                last_error = IotTransportError(f"Connecting to {broker} failed: {exc}")
                continue

            client.loop_start()
            self._client = client
            try:
                await connected
            except IotTransportError as exc:
                last_error = exc
                await self._stop_client()
                continue
            if self._store is not None:
                self._replay_task = loop.create_task(self._replay_stored())
            return

        assert last_error is not None  # noqa: S101
        raise last_error

    async def disconnect(self) -> None:
        """Disconnect and stop the network thread."""
        await self._stop_client()

    async def _stop_client(self) -> None:
        client = self._client
        self._client = None
        self._session_up = False
        self._closing = True
        replay = self._replay_task
        self._replay_task = None
        if replay is not None and not replay.done():
            replay.cancel()
        self._fail_pending(IotNotConnectedError("not connected"))
        if client is None:
            return
        loop = self._loop or asyncio.get_running_loop()
        try:
            if client.is_connected():
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            await loop.run_in_executor(None, client.loop_stop)
            self._logger.debug("MQTT network loop stopped")

    def _ssl_context(self) -> ssl.SSLContext:
        if self._tls_context is None:
            context = ssl.create_default_context()
            credentials = self._credentials
            if credentials is not None and credentials.certificate is not None:
                apply_client_certificate(context, credentials)
            self._tls_context = context
        return self._tls_context

    def _build_client(self, address: BrokerAddress) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            clean_session=False,
            protocol=mqtt.MQTTv311,
        )
        if self._mqtt_logger is not None:
            client.enable_logger(cast(logging.Logger, self._mqtt_logger))
        if address.tls:
            client.tls_set_context(self._ssl_context())
        client.reconnect_delay_set(min_delay=1, max_delay=self._max_reconnect_delay)

        client.on_pre_connect = self._on_pre_connect
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_publish = self._on_publish
        client.on_subscribe = self._on_subscribe
        client.on_unsubscribe = self._on_unsubscribe
        return client

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def publish(self, topic: str, qos: int, payload: bytes) -> None:
        client = self._require_client(allow_offline=qos > 0)
        store = self._store if qos > 0 else None
        if store is None:
            await self._send(client, topic, qos, payload, self._retain)
            return

        key = store.put(StoredMessage.build(topic, qos, self._retain, payload))
        self._pending_keys.add(key)
        try:
            await self._send(client, topic, qos, payload, self._retain)
            store.delete(key)
        finally:
            self._pending_keys.discard(key)

    async def _send(self, client: mqtt.Client, topic: str, qos: int, payload: bytes, retain: bool) -> None:
        with self._issuing():
            info = client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc == mqtt.MQTT_ERR_NO_CONN and qos == 0:
                raise IotNotConnectedError("not connected")
            if info.rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
                raise IotPublishFailedError(
                    f"Publish to {topic} failed: {mqtt.error_string(info.rc)}",
                    topic=topic,
                )
            if info.rc == mqtt.MQTT_ERR_NO_CONN:
                self._logger.debug("Publish to %s queued until the connection is restored", topic)
            future = self._track(info.mid)
        try:
            await self._settled(info.mid, future)
        except TimeoutError as exc:
            raise IotPublishFailedError(
                f"Publish to {topic} not acknowledged within {self._ack_timeout}s",
                topic=topic,
            ) from exc

    async def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> None:
        client = self._require_client()
        loop = self._loop or asyncio.get_running_loop()

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._logger.debug("RECEIVED - Topic: %s, Message Length: %d bytes", msg.topic, len(msg.payload))
            future = asyncio.run_coroutine_threadsafe(handler(msg.topic, msg.payload), loop)
            future.add_done_callback(self._log_callback_failure)

        client.message_callback_add(topic, on_message)
        with self._issuing():
            result, mid = client.subscribe(topic, qos=qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise IotTransportError(f"Subscribe to {topic} failed: {mqtt.error_string(result)}")
            future = self._track(mid)
        try:
            await self._settled(mid, future)
        except TimeoutError as exc:
            raise IotTransportError(f"Subscribe to {topic} not acknowledged within {self._ack_timeout}s") from exc

    async def unsubscribe(self, topic: str) -> None:
        client = self._require_client()
        client.message_callback_remove(topic)
        with self._issuing():
            result, mid = client.unsubscribe(topic)
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise IotTransportError(f"Unsubscribe from {topic} failed: {mqtt.error_string(result)}")
            future = self._track(mid)
        try:
            await self._settled(mid, future)
        except TimeoutError as exc:
            raise IotTransportError(f"Unsubscribe from {topic} not acknowledged within {self._ack_timeout}s") from exc

    def _require_client(self, *, allow_offline: bool = False) -> mqtt.Client:
        client = self._client
        if client is None or not self._session_up:
            raise IotNotConnectedError("not connected")
        if not allow_offline and not client.is_connected():
            raise IotNotConnectedError("not connected")
        return client

    async def _replay_stored(self) -> None:
        """Resend messages queued on disk that no running publish owns."""
        store = self._store
        if store is None:
            return
        for key, message in store.items():
            client = self._client
            if client is None:
                return
            if key in self._pending_keys:
                continue
            self._pending_keys.add(key)
            try:
                await self._send(client, message.topic, message.qos, message.payload, message.retain)
            except IotError as exc:
                self._logger.warning("Replaying queued message to %s failed: %s", message.topic, exc)
                return
            finally:
                self._pending_keys.discard(key)
            store.delete(key)
            self._logger.debug("Replayed queued message to %s", message.topic)

    # ------------------------------------------------------------------
    # Acknowledgement bookkeeping
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _issuing(self) -> Iterator[None]:
        """Mark a client call whose mid is not known yet.

        Acks for unknown mids are only parked while such a call is running;
        once none is, parked acks are stale and discarded.
        """
        with self._ack_lock:
            self._issuing_calls += 1
        try:
            yield
        finally:
            with self._ack_lock:
                self._issuing_calls -= 1
                if not self._issuing_calls:
                    self._early_acks.clear()

    def _track(self, mid: int) -> asyncio.Future[None]:
        loop = self._loop or asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        with self._ack_lock:
            early = self._early_acks.pop(mid, _NO_ACK)
            if early is _NO_ACK:
                self._acks[mid] = future
        if early is not _NO_ACK:
            _settle(future, cast(BaseException | None, early))
        return future

    async def _settled(self, mid: int, future: asyncio.Future[None]) -> None:
        try:
            await asyncio.wait_for(future, self._ack_timeout)
        finally:
            with self._ack_lock:
                if self._acks.get(mid) is future:
                    del self._acks[mid]

    def _ack(self, mid: int, error: BaseException | None) -> None:
        """Resolve the waiter for *mid*; called from the network thread."""
        with self._ack_lock:
            future = self._acks.pop(mid, None)
            if future is None:
                if self._issuing_calls:
                    self._early_acks[mid] = error
                else:
                    self._logger.debug("Dropping acknowledgement for unknown mid %s", mid)
                return
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(_settle, future, error)

    def _fail_pending(self, error: BaseException) -> None:
        with self._ack_lock:
            pending = list(self._acks.values())
            self._acks.clear()
            self._early_acks.clear()
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        for future in pending:
            loop.call_soon_threadsafe(_settle, future, error)

    def _resolve_connect(self, error: BaseException | None) -> None:
        future = self._connect_future
        loop = self._loop
        if future is None or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(_settle, future, error)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_pre_connect(self, client: mqtt.Client, _userdata: Any) -> None:
        provider = self._credentials_provider
        if provider is None:
            return
        username, password = provider()
        client.username_pw_set(username, password)

    def _on_connect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.is_failure:
            self._logger.warning("MQTT connect refused: %s", reason_code)
            self._resolve_connect(IotTransportError(f"Connection refused: {reason_code}", reason_code=reason_code.value))
            return
        self._logger.info("Connected")
        self._session_up = True
        self._resolve_connect(None)

        handler = self._on_connect_handler
        loop = self._loop
        if handler is not None and loop is not None and not loop.is_closed():
            future = asyncio.run_coroutine_threadsafe(handler(self), loop)
            future.add_done_callback(self._log_callback_failure)

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._closing:
            self._logger.debug("MQTT disconnected: %s", reason_code)
            return
        self._logger.error("Connection Lost. Error: %s", reason_code)

    def _on_publish(self, _client: mqtt.Client, _userdata: Any, mid: int, reason_code: Any, _properties: Any) -> None:
        error = None
        if reason_code.is_failure:
            error = IotPublishFailedError(f"Publish rejected: {reason_code}")
        self._ack(mid, error)

    def _on_subscribe(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        mid: int,
        reason_code_list: list[Any],
        _properties: Any,
    ) -> None:
        error = None
        failed = [rc for rc in reason_code_list if rc.is_failure]
        if failed:
            error = IotTransportError(f"Subscription rejected: {failed[0]}", reason_code=failed[0].value)
        self._ack(mid, error)

    def _on_unsubscribe(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        mid: int,
        _reason_code_list: list[Any],
        _properties: Any,
    ) -> None:
        self._ack(mid, None)

    def _log_callback_failure(self, future: ConcurrentFuture[None]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._logger.error("MQTT callback failed: %s", exc, exc_info=exc)
