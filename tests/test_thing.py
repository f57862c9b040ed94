from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

import jwt
import pytest

from pyiotcore.config import ThingOptions
from pyiotcore.credentials import Credentials, KeyType
from pyiotcore.exceptions import (
    IotCancelledError,
    IotConfigError,
    IotNotConnectedError,
    IotPublishFailedError,
    IotTransportError,
)
from pyiotcore.identity import DeviceIdentity, config_topic
from pyiotcore.mock import MockTransport
from pyiotcore.thing import ConnectionState, Thing

BROKER = "ssl://mqtt.example.com:8883"


def _options(identity: DeviceIdentity, credentials: Credentials, **overrides: Any) -> ThingOptions:
    overrides.setdefault("publish_interval", 0)
    return ThingOptions(identity=identity, credentials=credentials, **overrides)


def _thing(options: ThingOptions, transport: MockTransport) -> Thing:
    return Thing(options, transport_factory=lambda _thing, _options: transport)


class _SlowTransport(MockTransport):
    async def connect(self, brokers: Sequence[str]) -> None:
        self.connect_calls += 1
        await asyncio.sleep(10)


class _RefusingTransport(MockTransport):
    async def connect(self, brokers: Sequence[str]) -> None:
        self.connect_calls += 1
        raise IotTransportError("Connection refused", reason_code=5)


class _BrokenDisconnectTransport(MockTransport):
    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        raise RuntimeError("socket already closed")


@pytest.mark.asyncio
async def test_connect_configures_transport(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)

    assert thing.state is ConnectionState.DISCONNECTED
    await thing.connect(BROKER)

    assert thing.is_connected()
    assert thing.state is ConnectionState.CONNECTED
    assert transport.connected_to == [BROKER]
    assert transport.client_id == identity.client_id
    assert transport.subscription_qos == {config_topic(identity): 2}
    assert transport.logger is None


@pytest.mark.asyncio
async def test_connect_is_idempotent(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)

    await thing.connect(BROKER)
    await thing.connect("ssl://other:8883")

    assert transport.connect_calls == 1
    assert transport.connected_to == [BROKER]


@pytest.mark.asyncio
async def test_connect_requires_identity_and_credentials(
    identity: DeviceIdentity, rsa_credentials: Credentials
) -> None:
    transport = MockTransport()

    with pytest.raises(IotConfigError):
        await _thing(ThingOptions(credentials=rsa_credentials), transport).connect(BROKER)
    with pytest.raises(IotConfigError):
        await _thing(ThingOptions(identity=identity), transport).connect(BROKER)
    assert transport.connect_calls == 0


@pytest.mark.asyncio
async def test_credentials_provider_issues_fresh_token(
    identity: DeviceIdentity, rsa_credentials: Credentials
) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials, auth_token_expiration=60), transport)
    await thing.connect(BROKER)

    assert transport.credentials_provider is not None
    username, password = transport.credentials_provider()

    assert username == "unused"
    claims = jwt.decode(
        password,
        rsa_credentials.private_key.public_key(),
        algorithms=["RS256"],
        audience=identity.project_id,
    )
    # Clamped to the ten minute minimum.
    assert claims["exp"] - claims["iat"] == 600


@pytest.mark.asyncio
async def test_credentials_provider_signing_failure(
    identity: DeviceIdentity, ec_key, caplog: pytest.LogCaptureFixture
) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, Credentials(KeyType.RSA, ec_key)), transport)
    await thing.connect(BROKER)

    assert transport.credentials_provider is not None
    with caplog.at_level(logging.ERROR):
        assert transport.credentials_provider() == ("", "")
    assert "Error generating auth token" in caplog.text


@pytest.mark.asyncio
async def test_log_mqtt_forwards_logger(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    logger = logging.getLogger("device")
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials, logger=logger, log_mqtt=True), transport)

    await thing.connect(BROKER)

    assert transport.logger is logger


@pytest.mark.asyncio
async def test_publish_state_and_events(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials, event_qos=0), transport)
    await thing.connect(BROKER)

    await thing.publish_state(b"state")
    await thing.publish_event("21.5")
    await thing.publish_event(b"55", "sensors", "humidity")

    assert transport.messages == {
        "/devices/test-device/state": [b"state"],
        "/devices/test-device/events": [b"21.5"],
        "/devices/test-device/events/sensors/humidity": [b"55"],
    }
    assert transport.published_qos["/devices/test-device/state"] == [1]
    assert transport.published_qos["/devices/test-device/events"] == [0]


@pytest.mark.asyncio
async def test_publish_before_connect(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)

    with pytest.raises(IotNotConnectedError, match="not connected"):
        await thing.publish_state(b"state")
    with pytest.raises(IotNotConnectedError):
        await thing.publish_event(b"event")
    assert transport.messages == {}


@pytest.mark.asyncio
async def test_publish_with_expired_timeout(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)
    await thing.connect(BROKER)

    with pytest.raises(IotCancelledError):
        await thing.publish_event(b"late", timeout=0)
    assert transport.messages == {}


@pytest.mark.asyncio
async def test_publish_waits_for_rate_gate(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials, publish_interval=5.0), transport)
    await thing.connect(BROKER)

    await thing.publish_event(b"first")
    with pytest.raises(IotCancelledError):
        await thing.publish_event(b"second", timeout=0.05)

    assert transport.messages == {"/devices/test-device/events": [b"first"]}


@pytest.mark.asyncio
async def test_publish_failure_propagates(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)
    await thing.connect(BROKER)
    transport.publish_error = IotPublishFailedError("no ack", topic="/devices/test-device/state")

    with pytest.raises(IotPublishFailedError) as excinfo:
        await thing.publish_state(b"state")
    assert excinfo.value.topic == "/devices/test-device/state"


@pytest.mark.asyncio
async def test_config_handler_receives_updates(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    received: list[bytes] = []

    async def on_config(thing: Thing, payload: bytes) -> None:
        received.append(payload)
        await thing.publish_state(b"Config: " + payload)

    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials, config_handler=on_config), transport)
    await thing.connect(BROKER)

    await transport.receive(config_topic(identity), b'{"interval": 15}')
    await transport.receive(config_topic(identity), b'{"interval": 15}')

    assert received == [b'{"interval": 15}', b'{"interval": 15}']
    assert transport.messages["/devices/test-device/state"] == [
        b'Config: {"interval": 15}',
        b'Config: {"interval": 15}',
    ]


@pytest.mark.asyncio
async def test_sync_config_handler_errors_are_logged(
    identity: DeviceIdentity, rsa_credentials: Credentials, caplog: pytest.LogCaptureFixture
) -> None:
    def on_config(thing: Thing, payload: bytes) -> None:
        raise ValueError("bad config")

    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials, config_handler=on_config), transport)
    await thing.connect(BROKER)

    with caplog.at_level(logging.ERROR):
        await transport.receive(config_topic(identity), b"{}")
    assert "Config handler failed" in caplog.text


@pytest.mark.asyncio
async def test_disconnect_unsubscribes_and_is_idempotent(
    identity: DeviceIdentity, rsa_credentials: Credentials
) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)
    await thing.connect(BROKER)

    await thing.disconnect()
    await thing.disconnect()

    assert not thing.is_connected()
    assert thing.state is ConnectionState.DISCONNECTED
    assert transport.subscriptions == {}
    assert transport.disconnect_calls == 1


@pytest.mark.asyncio
async def test_disconnect_never_raises(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = _BrokenDisconnectTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)
    await thing.connect(BROKER)

    await thing.disconnect()

    assert transport.disconnect_calls == 1
    assert not thing.is_connected()


@pytest.mark.asyncio
async def test_reconnect_after_disconnect(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)

    await thing.connect(BROKER)
    await thing.disconnect()
    await thing.connect(BROKER)

    assert thing.is_connected()
    assert transport.connect_calls == 2
    assert config_topic(identity) in transport.subscriptions


@pytest.mark.asyncio
async def test_connect_timeout_keeps_transport_for_disconnect(
    identity: DeviceIdentity, rsa_credentials: Credentials
) -> None:
    transport = _SlowTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)

    with pytest.raises(IotCancelledError):
        await thing.connect(BROKER, timeout=0.05)
    assert thing.state is ConnectionState.DISCONNECTED

    await thing.disconnect()
    assert transport.disconnect_calls == 1


@pytest.mark.asyncio
async def test_connect_failure_closes_transport(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = _RefusingTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)

    with pytest.raises(IotTransportError) as excinfo:
        await thing.connect(BROKER)

    assert excinfo.value.reason_code == 5
    assert transport.disconnect_calls == 1
    assert not thing.is_connected()


@pytest.mark.asyncio
async def test_async_context_manager_disconnects(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()

    async with _thing(_options(identity, rsa_credentials), transport) as thing:
        await thing.connect(BROKER)
        assert thing.is_connected()

    assert not transport.connected


@pytest.mark.asyncio
async def test_publishes_are_spaced_by_interval(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = MockTransport()
    thing = _thing(_options(identity, rsa_credentials, publish_interval=0.05), transport)
    await thing.connect(BROKER)
    loop = asyncio.get_running_loop()

    start = loop.time()
    await asyncio.gather(*(thing.publish_event(str(index)) for index in range(4)))

    assert loop.time() - start >= 0.14
    assert len(transport.messages["/devices/test-device/events"]) == 4


class _DelayedTransport(MockTransport):
    async def connect(self, brokers: Sequence[str]) -> None:
        await asyncio.sleep(0.05)
        await super().connect(brokers)


class _BrokenUnsubscribeTransport(MockTransport):
    async def unsubscribe(self, topic: str) -> None:
        raise IotTransportError("Unsubscribe not acknowledged")


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_session(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    transport = _DelayedTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)

    results = await asyncio.gather(*(thing.connect(BROKER) for _ in range(5)))

    assert results == [None] * 5
    assert transport.connect_calls == 1
    assert thing.is_connected()


@pytest.mark.asyncio
async def test_disconnect_survives_failing_unsubscribe(
    identity: DeviceIdentity, rsa_credentials: Credentials
) -> None:
    transport = _BrokenUnsubscribeTransport()
    thing = _thing(_options(identity, rsa_credentials), transport)
    await thing.connect(BROKER)

    await thing.disconnect()

    assert transport.disconnect_calls == 1
    assert not transport.connected
    assert not thing.is_connected()
