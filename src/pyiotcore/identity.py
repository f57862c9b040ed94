"""Device identity and the topic/client-id naming derived from it."""

from __future__ import annotations

import enum
import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pyiotcore.exceptions import IotConfigError


class TopicKind(enum.StrEnum):
    """The three canonical topics of a device."""

    CONFIG = "config"
    STATE = "state"
    EVENTS = "events"


class DeviceIdentity(BaseModel):
    """The identifiers that uniquely name a device.

    Parameters
    ----------
    project_id : str
        Cloud project that owns the registry. Also used as the token audience.
    location : str
        Cloud region of the registry (e.g. ``"us-central1"``).
    registry : str
        Device registry id.
    device_id : str
        Device id within the registry.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    project_id: str = Field(min_length=1)
    location: str = Field(min_length=1)
    registry: str = Field(min_length=1)
    device_id: str = Field(min_length=1)

    @property
    def client_id(self) -> str:
        """Transport client identifier for this device."""
        return client_id(self)

    @classmethod
    def from_env(cls, **overrides: Any) -> DeviceIdentity:
        """Create an identity from ``IOT_*`` environment variables.

        Reads ``IOT_PROJECT_ID``, ``IOT_LOCATION``, ``IOT_REGISTRY`` and
        ``IOT_DEVICE_ID``. Explicit keyword arguments override environment
        values.
        """
        env = os.environ
        _ENV_MAP = {
            "IOT_PROJECT_ID": "project_id",
            "IOT_LOCATION": "location",
            "IOT_REGISTRY": "registry",
            "IOT_DEVICE_ID": "device_id",
        }
        kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_MAP.items():
            val = env.get(env_key)
            if val is not None:
                kwargs[field_name] = val
        kwargs.update(overrides)

        missing = [name for name in _ENV_MAP.values() if not kwargs.get(name)]
        if missing:
            raise IotConfigError(f"Missing device identity fields: {', '.join(missing)}")
        return cls(**kwargs)


def client_id(identity: DeviceIdentity) -> str:
    """Build the transport client id.

    Format: ``projects/{project}/locations/{location}/registries/{registry}/devices/{device}``
    """
    return (
        f"projects/{identity.project_id}"
        f"/locations/{identity.location}"
        f"/registries/{identity.registry}"
        f"/devices/{identity.device_id}"
    )


def topic(kind: TopicKind, identity: DeviceIdentity, *segments: str) -> str:
    """Build a device topic.

    ``segments`` only apply to :attr:`TopicKind.EVENTS`, where they form a
    sub-folder hierarchy below the events topic. Segment contents are not
    validated.
    """
    base = f"/devices/{identity.device_id}/{TopicKind(kind).value}"
    if kind != TopicKind.EVENTS or not segments:
        return base
    return f"{base}/{'/'.join(segments)}"


def config_topic(identity: DeviceIdentity) -> str:
    return topic(TopicKind.CONFIG, identity)


def state_topic(identity: DeviceIdentity) -> str:
    return topic(TopicKind.STATE, identity)


def events_topic(identity: DeviceIdentity, *segments: str) -> str:
    return topic(TopicKind.EVENTS, identity, *segments)
