"""Thing configuration for pyiotcore."""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, Protocol

from pyiotcore.credentials import Credentials, load_credentials
from pyiotcore.exceptions import IotConfigError
from pyiotcore.identity import DeviceIdentity
from pyiotcore.token import DEFAULT_AUTH_TOKEN_EXPIRATION

if TYPE_CHECKING:
    from pyiotcore.thing import Thing

#: Minimum spacing between two publishes, in seconds.
DEFAULT_PUBLISH_INTERVAL: float = 2.0

_VALID_QOS = (0, 1, 2)


class LeveledLogger(Protocol):
    """Minimal logger interface; :class:`logging.Logger` satisfies it."""

    def log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None: ...


class ConfigHandler(Protocol):
    """Receives configuration documents pushed to the device.

    May be a plain function or a coroutine function. It is free to call
    :meth:`Thing.publish_state` to acknowledge the new configuration.
    """

    def __call__(self, thing: Thing, payload: bytes) -> Awaitable[None] | None: ...


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class ThingOptions:
    """Options used to build a :class:`~pyiotcore.thing.Thing`.

    Parameters
    ----------
    identity : DeviceIdentity or None
        Identifies the device. Required by ``connect()``.
    credentials : Credentials or None
        Key pair used to sign auth tokens. Required by ``connect()``.
    logger : LeveledLogger or None
        Receives debug/info/error output. Defaults to the ``pyiotcore``
        package logger; levels are controlled through standard logging
        configuration.
    log_mqtt : bool
        Also route the transport's internal logging through ``logger``.
    queue_directory : str or None
        Directory in which the transport persists queued messages.
        ``None`` keeps queues in memory only.
    config_handler : ConfigHandler or None
        Called for every configuration document received from the server.
    config_qos : int
        QoS for the configuration subscription. Suggested value is 2.
    state_qos : int
        QoS for state publishes. The bridge does not accept 2.
    event_qos : int
        QoS for event publishes. The bridge does not accept 2.
    auth_token_expiration : float
        Auth token lifetime in seconds, clamped to 10 minutes .. 24 hours.
        ``0`` selects the default of one hour.
    publish_interval : float
        Minimum spacing in seconds between two publishes.
    """

    identity: DeviceIdentity | None = None
    credentials: Credentials | None = None
    logger: LeveledLogger | None = None
    log_mqtt: bool = False
    queue_directory: str | None = None
    config_handler: ConfigHandler | None = None
    config_qos: int = 2
    state_qos: int = 1
    event_qos: int = 1
    auth_token_expiration: float = DEFAULT_AUTH_TOKEN_EXPIRATION
    publish_interval: float = DEFAULT_PUBLISH_INTERVAL

    def __post_init__(self) -> None:
        for name in ("config_qos", "state_qos", "event_qos"):
            value = getattr(self, name)
            if value not in _VALID_QOS:
                raise IotConfigError(f"{name} must be 0, 1 or 2 (got {value!r})")
        if self.auth_token_expiration < 0:
            raise IotConfigError("auth_token_expiration must not be negative")
        if self.publish_interval < 0:
            raise IotConfigError("publish_interval must not be negative")

    def resolved_logger(self) -> LeveledLogger:
        """The configured logger, or the ``pyiotcore`` package logger when none is set.

        The package logger stays silent until the application configures logging.
        """
        return self.logger if self.logger is not None else logging.getLogger("pyiotcore")

    @classmethod
    def from_env(cls, **overrides: Any) -> ThingOptions:
        """Create options from environment variables.

        Reads the ``IOT_*`` identity variables (see
        :meth:`DeviceIdentity.from_env`), ``IOT_CERTIFICATE_PATH`` and
        ``IOT_PRIVATE_KEY_PATH`` for the credentials, and the optional
        ``IOT_CONFIG_QOS``, ``IOT_STATE_QOS``, ``IOT_EVENT_QOS``,
        ``IOT_AUTH_TOKEN_EXPIRATION``, ``IOT_PUBLISH_INTERVAL``,
        ``IOT_LOG_MQTT`` and ``IOT_QUEUE_DIRECTORY``. Explicit keyword
        arguments override environment values.

        Returns
        -------
        ThingOptions
            Populated options.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        if "identity" not in overrides and env.get("IOT_DEVICE_ID") is not None:
            config_kwargs["identity"] = DeviceIdentity.from_env()

        cert_path = env.get("IOT_CERTIFICATE_PATH")
        key_path = env.get("IOT_PRIVATE_KEY_PATH")
        if "credentials" not in overrides and cert_path and key_path:
            config_kwargs["credentials"] = load_credentials(cert_path, key_path)

        _ENV_INT_MAP = {
            "IOT_CONFIG_QOS": "config_qos",
            "IOT_STATE_QOS": "state_qos",
            "IOT_EVENT_QOS": "event_qos",
        }
        _ENV_FLOAT_MAP = {
            "IOT_AUTH_TOKEN_EXPIRATION": "auth_token_expiration",
            "IOT_PUBLISH_INTERVAL": "publish_interval",
        }
        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise IotConfigError(f"Invalid numeric environment value: {exc}") from exc

        if "log_mqtt" not in overrides:
            config_kwargs["log_mqtt"] = _env_bool(env.get("IOT_LOG_MQTT"), False)

        queue_dir = env.get("IOT_QUEUE_DIRECTORY")
        if queue_dir and "queue_directory" not in overrides:
            config_kwargs["queue_directory"] = queue_dir

        config_kwargs.update(overrides)
        return cls(**config_kwargs)


def default_options(identity: DeviceIdentity, credentials: Credentials, **overrides: Any) -> ThingOptions:
    """Options with the recommended QoS levels and token lifetime."""
    return ThingOptions(identity=identity, credentials=credentials, **overrides)
