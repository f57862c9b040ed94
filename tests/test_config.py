from __future__ import annotations

import logging
from pathlib import Path

import pytest

from pyiotcore.config import DEFAULT_PUBLISH_INTERVAL, ThingOptions, default_options
from pyiotcore.credentials import Credentials, KeyType
from pyiotcore.exceptions import IotConfigError
from pyiotcore.identity import DeviceIdentity

_IOT_ENV = (
    "IOT_PROJECT_ID",
    "IOT_LOCATION",
    "IOT_REGISTRY",
    "IOT_DEVICE_ID",
    "IOT_CONFIG_QOS",
    "IOT_STATE_QOS",
    "IOT_EVENT_QOS",
    "IOT_AUTH_TOKEN_EXPIRATION",
    "IOT_PUBLISH_INTERVAL",
    "IOT_LOG_MQTT",
    "IOT_QUEUE_DIRECTORY",
    "IOT_CERTIFICATE_PATH",
    "IOT_PRIVATE_KEY_PATH",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _IOT_ENV:
        monkeypatch.delenv(name, raising=False)


def test_default_options(identity: DeviceIdentity, rsa_credentials: Credentials) -> None:
    options = default_options(identity, rsa_credentials)

    assert options.config_qos == 2
    assert options.state_qos == 1
    assert options.event_qos == 1
    assert options.auth_token_expiration == 3600.0
    assert options.publish_interval == DEFAULT_PUBLISH_INTERVAL
    assert options.log_mqtt is False
    assert options.queue_directory is None


def test_default_logger_is_package_logger() -> None:
    assert ThingOptions().resolved_logger() is logging.getLogger("pyiotcore")
    custom = logging.getLogger("custom")
    assert ThingOptions(logger=custom).resolved_logger() is custom


@pytest.mark.parametrize("field", ["config_qos", "state_qos", "event_qos"])
def test_invalid_qos_rejected(field: str) -> None:
    with pytest.raises(IotConfigError, match=field):
        ThingOptions(**{field: 3})


def test_negative_durations_rejected() -> None:
    with pytest.raises(IotConfigError):
        ThingOptions(auth_token_expiration=-1)
    with pytest.raises(IotConfigError):
        ThingOptions(publish_interval=-0.5)


def test_from_env(monkeypatch: pytest.MonkeyPatch, rsa_files: tuple[Path, Path]) -> None:
    cert_path, key_path = rsa_files
    monkeypatch.setenv("IOT_PROJECT_ID", "p")
    monkeypatch.setenv("IOT_LOCATION", "l")
    monkeypatch.setenv("IOT_REGISTRY", "r")
    monkeypatch.setenv("IOT_DEVICE_ID", "d")
    monkeypatch.setenv("IOT_CERTIFICATE_PATH", str(cert_path))
    monkeypatch.setenv("IOT_PRIVATE_KEY_PATH", str(key_path))
    monkeypatch.setenv("IOT_STATE_QOS", "0")
    monkeypatch.setenv("IOT_PUBLISH_INTERVAL", "0.5")
    monkeypatch.setenv("IOT_LOG_MQTT", "yes")
    monkeypatch.setenv("IOT_QUEUE_DIRECTORY", "/tmp/queue")

    options = ThingOptions.from_env(event_qos=0)

    assert options.identity is not None
    assert options.identity.device_id == "d"
    assert options.credentials is not None
    assert options.credentials.key_type is KeyType.RSA
    assert options.state_qos == 0
    assert options.event_qos == 0
    assert options.publish_interval == 0.5
    assert options.log_mqtt is True
    assert options.queue_directory == "/tmp/queue"


def test_from_env_without_identity() -> None:
    options = ThingOptions.from_env()
    assert options.identity is None
    assert options.credentials is None


def test_from_env_invalid_number(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IOT_CONFIG_QOS", "two")
    with pytest.raises(IotConfigError, match="Invalid numeric"):
        ThingOptions.from_env()
