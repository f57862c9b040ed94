"""pyiotcore - Async Python device client for an MQTT cloud IoT bridge."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyiotcore")
except PackageNotFoundError:
    __version__ = "0+local"
from pyiotcore._paho import PahoTransport
from pyiotcore.config import DEFAULT_PUBLISH_INTERVAL, ConfigHandler, LeveledLogger, ThingOptions, default_options
from pyiotcore.credentials import (
    Credentials,
    EcSigner,
    KeyType,
    RsaSigner,
    apply_client_certificate,
    load_credentials,
    load_ec_credentials,
    load_rsa_credentials,
)
from pyiotcore.exceptions import (
    IotCancelledError,
    IotConfigError,
    IotCredentialsError,
    IotError,
    IotNotConnectedError,
    IotPublishFailedError,
    IotSigningError,
    IotTransportError,
)
from pyiotcore.identity import DeviceIdentity, TopicKind, client_id, config_topic, events_topic, state_topic, topic
from pyiotcore.mock import MockTransport, mock_transport_factory
from pyiotcore.thing import ConnectionState, Thing
from pyiotcore.token import BearerToken, TokenClaims, clamp_expiration, issue_token
from pyiotcore.transport import CredentialsProvider, MessageHandler, TransportClient, TransportFactory

__all__ = [
    "__version__",
    "BearerToken",
    "ConfigHandler",
    "ConnectionState",
    "Credentials",
    "CredentialsProvider",
    "DEFAULT_PUBLISH_INTERVAL",
    "DeviceIdentity",
    "EcSigner",
    "IotCancelledError",
    "IotConfigError",
    "IotCredentialsError",
    "IotError",
    "IotNotConnectedError",
    "IotPublishFailedError",
    "IotSigningError",
    "IotTransportError",
    "KeyType",
    "LeveledLogger",
    "MessageHandler",
    "MockTransport",
    "PahoTransport",
    "RsaSigner",
    "Thing",
    "ThingOptions",
    "TokenClaims",
    "TopicKind",
    "TransportClient",
    "TransportFactory",
    "apply_client_certificate",
    "clamp_expiration",
    "client_id",
    "config_topic",
    "default_options",
    "events_topic",
    "issue_token",
    "load_credentials",
    "load_ec_credentials",
    "load_rsa_credentials",
    "mock_transport_factory",
    "state_topic",
    "topic",
]
