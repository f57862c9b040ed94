"""Custom exception hierarchy for pyiotcore."""

from __future__ import annotations


class IotError(Exception):
    """Base exception for all pyiotcore errors."""


class IotConfigError(IotError):
    """Invalid or missing configuration.

    Raised by :meth:`Thing.connect` when the device identity or the
    credentials have not been provided.
    """


class IotCredentialsError(IotError):
    """Key or certificate material could not be loaded."""


class IotSigningError(IotCredentialsError):
    """The auth token could not be signed (malformed or mismatched key)."""


class IotNotConnectedError(IotError):
    """A message was published while the client is not connected."""


class IotPublishFailedError(IotError):
    """The transport could not deliver the message.

    Raised when the broker acknowledgement was not obtained within the
    transport's bound or the publish was rejected.
    """

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class IotCancelledError(IotError):
    """The caller's deadline expired while waiting.

    The underlying transport operation is not aborted; a publish may still
    reach the broker after this is raised.
    """


class IotTransportError(IotError):
    """Transport-level failure (connection refused, broker unreachable)."""

    def __init__(self, message: str, *, reason_code: int | None = None) -> None:
        self.reason_code = reason_code
        super().__init__(message)
