"""Device credentials and the JWT signers selected by key type.

A device authenticates with a long-lived key pair. The private key never
leaves the process; it only signs the short-lived bearer tokens issued by
:func:`pyiotcore.token.issue_token`.
"""

from __future__ import annotations

import dataclasses
import enum
import ssl
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar, Protocol

import jwt
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from pyiotcore.exceptions import IotCredentialsError, IotSigningError


class KeyType(enum.StrEnum):
    """Key algorithm family of the device key pair."""

    RSA = "RSA"
    EC = "EC"


class Signer(Protocol):
    """Signs a claim set into a compact JWT."""

    algorithm: str

    def sign(self, claims: Mapping[str, Any]) -> str: ...


class _JwtSigner:
    """PyJWT-backed signer for one algorithm."""

    algorithm: ClassVar[str]

    def __init__(self, private_key: Any) -> None:
        self._private_key = private_key

    def sign(self, claims: Mapping[str, Any]) -> str:
        """Sign *claims* with the private key.

        Raises
        ------
        IotSigningError
            If the key is malformed, of the wrong type, or signing fails.
        """
        try:
            return jwt.encode(dict(claims), self._private_key, algorithm=self.algorithm)
        except Exception as exc:
            raise IotSigningError(f"{self.algorithm} signing failed: {exc}") from exc


class RsaSigner(_JwtSigner):
    algorithm = "RS256"


class EcSigner(_JwtSigner):
    algorithm = "ES256"


_SIGNERS: dict[KeyType, type[_JwtSigner]] = {
    KeyType.RSA: RsaSigner,
    KeyType.EC: EcSigner,
}


@dataclasses.dataclass(frozen=True)
class Credentials:
    """Key pair used for transport authentication and token signing.

    Parameters
    ----------
    key_type : KeyType
        Selects the signing algorithm (RSA → RS256, EC → ES256).
    private_key : Any
        Parsed private key (normally a ``cryptography`` key object).
        Treated as opaque; a mismatch with ``key_type`` surfaces as
        :class:`IotSigningError` at signing time.
    certificate : x509.Certificate or None
        Public certificate matching the key, if available.
    """

    key_type: KeyType
    private_key: Any = dataclasses.field(repr=False)
    certificate: x509.Certificate | None = None
    signer: Signer = dataclasses.field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        key_type = KeyType(self.key_type)
        object.__setattr__(self, "key_type", key_type)
        object.__setattr__(self, "signer", _SIGNERS[key_type](self.private_key))

    @classmethod
    def rsa(cls, private_key: Any, certificate: x509.Certificate | None = None) -> Credentials:
        return cls(KeyType.RSA, private_key, certificate)

    @classmethod
    def ec(cls, private_key: Any, certificate: x509.Certificate | None = None) -> Credentials:
        return cls(KeyType.EC, private_key, certificate)


def _read_bytes(path: str | Path, what: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise IotCredentialsError(f"Could not read {what} {path}: {exc}") from exc


def _load_private_key(path: str | Path) -> Any:
    data = _read_bytes(path, "private key")
    try:
        return serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise IotCredentialsError(f"Invalid PEM private key {path}: {exc}") from exc


def _load_certificate(path: str | Path) -> x509.Certificate:
    data = _read_bytes(path, "certificate")
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as exc:
        raise IotCredentialsError(f"Invalid PEM certificate {path}: {exc}") from exc


def _key_type_of(private_key: Any) -> KeyType:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return KeyType.RSA
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return KeyType.EC
    raise IotCredentialsError(f"Unsupported private key type: {type(private_key).__name__}")


def load_credentials(certificate_path: str | Path, private_key_path: str | Path) -> Credentials:
    """Load a PEM certificate and private key, detecting the key type.

    Raises
    ------
    IotCredentialsError
        If either file cannot be read or parsed, or the certificate was not
        issued for the private key.
    """
    private_key = _load_private_key(private_key_path)
    certificate = _load_certificate(certificate_path)
    key_type = _key_type_of(private_key)
    _check_key_pair(certificate, private_key)
    return Credentials(key_type, private_key, certificate)


def load_rsa_credentials(certificate_path: str | Path, private_key_path: str | Path) -> Credentials:
    """Load RSA credentials; fails if the key is not an RSA key."""
    credentials = load_credentials(certificate_path, private_key_path)
    if credentials.key_type != KeyType.RSA:
        raise IotCredentialsError(f"{private_key_path} is not an RSA private key")
    return credentials


def load_ec_credentials(certificate_path: str | Path, private_key_path: str | Path) -> Credentials:
    """Load EC credentials; fails if the key is not an elliptic curve key."""
    credentials = load_credentials(certificate_path, private_key_path)
    if credentials.key_type != KeyType.EC:
        raise IotCredentialsError(f"{private_key_path} is not an EC private key")
    return credentials


def _public_key_der(key: Any) -> bytes:
    return key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)


def _check_key_pair(certificate: x509.Certificate, private_key: Any) -> None:
    if _public_key_der(certificate.public_key()) != _public_key_der(private_key.public_key()):
        raise IotCredentialsError("Certificate does not match the private key")


def apply_client_certificate(context: ssl.SSLContext, credentials: Credentials) -> None:
    """Load the credentials' certificate and key into *context* for client authentication.

    Raises
    ------
    IotCredentialsError
        If there is no certificate or the pair cannot be loaded.
    """
    if credentials.certificate is None:
        raise IotCredentialsError("Credentials carry no certificate")
    try:
        key_pem = credentials.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        cert_pem = credentials.certificate.public_bytes(serialization.Encoding.PEM)
    except (AttributeError, TypeError, ValueError) as exc:
        raise IotCredentialsError(f"Could not serialize client certificate: {exc}") from exc

    # ssl only loads key material from files; the directory is private (0700).
    with tempfile.TemporaryDirectory(prefix="pyiotcore-") as tmp:
        chain_path = Path(tmp) / "client.pem"
        chain_path.write_bytes(key_pem + cert_pem)
        try:
            context.load_cert_chain(chain_path)
        except (ssl.SSLError, OSError) as exc:
            raise IotCredentialsError(f"Could not load client certificate: {exc}") from exc
