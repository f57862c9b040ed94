"""Short-lived bearer tokens presented as the MQTT password."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict

from pyiotcore.credentials import Credentials
from pyiotcore.identity import DeviceIdentity

_logger = logging.getLogger(__name__)

#: Token lifetime used when no expiration is configured (1 hour).
DEFAULT_AUTH_TOKEN_EXPIRATION: float = 3600.0
#: Shortest lifetime accepted by the bridge (10 minutes).
MIN_AUTH_TOKEN_EXPIRATION: float = 10 * 60.0
#: Longest lifetime accepted by the bridge (24 hours).
MAX_AUTH_TOKEN_EXPIRATION: float = 24 * 3600.0


class TokenClaims(BaseModel):
    """Registered JWT claims of a device token."""

    model_config = ConfigDict(frozen=True)

    iat: int
    exp: int
    aud: str


class BearerToken(BaseModel):
    """A signed token together with the claims it was built from.

    Parameters
    ----------
    token : str
        Compact JWT string.
    issued_at : datetime
        UTC issue time (``iat``).
    expires_at : datetime
        UTC expiry time (``exp``).
    audience : str
        Token audience (``aud``), always the project id.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    issued_at: datetime
    expires_at: datetime
    audience: str

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at

    def __str__(self) -> str:
        return self.token


def clamp_expiration(seconds: float) -> float:
    """Clamp a token lifetime to the accepted bounds; ``0`` means the default."""
    if not seconds:
        return DEFAULT_AUTH_TOKEN_EXPIRATION
    return max(MIN_AUTH_TOKEN_EXPIRATION, min(MAX_AUTH_TOKEN_EXPIRATION, float(seconds)))


def issue_token(
    credentials: Credentials,
    identity: DeviceIdentity,
    expiration: float,
    *,
    now: datetime | None = None,
) -> BearerToken:
    """Issue a freshly signed bearer token.

    Parameters
    ----------
    credentials : Credentials
        Key pair whose signer produces the signature.
    identity : DeviceIdentity
        Device identity; ``project_id`` becomes the audience.
    expiration : float
        Token lifetime in seconds. ``0`` selects
        :data:`DEFAULT_AUTH_TOKEN_EXPIRATION`. The value is otherwise used
        as given; callers clamp it with :func:`clamp_expiration`.
    now : datetime or None
        Issue time, defaults to the current UTC time.

    Returns
    -------
    BearerToken
        The signed token. Tokens are never cached.

    Raises
    ------
    IotSigningError
        If the private key is malformed or signing fails.
    """
    issued = (now or datetime.now(UTC)).replace(microsecond=0)
    lifetime = timedelta(seconds=expiration or DEFAULT_AUTH_TOKEN_EXPIRATION)
    expires = issued + lifetime

    claims = TokenClaims(
        iat=int(issued.timestamp()),
        exp=int(expires.timestamp()),
        aud=identity.project_id,
    )
    _logger.debug("Auth token claims: %s", claims.model_dump())

    payload: dict[str, Any] = claims.model_dump()
    signed = credentials.signer.sign(payload)
    return BearerToken(
        token=signed,
        issued_at=issued,
        expires_at=expires,
        audience=identity.project_id,
    )
