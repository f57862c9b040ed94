from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from pyiotcore.credentials import Credentials, KeyType
from pyiotcore.identity import DeviceIdentity


def _self_signed(private_key, subject: str) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)])
    now = dt.datetime.now(dt.UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )


def _write_pem(directory: Path, stem: str, private_key, certificate: x509.Certificate) -> tuple[Path, Path]:
    key_path = directory / f"{stem}_private.pem"
    cert_path = directory / f"{stem}_cert.pem"
    key_path.write_bytes(
        private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    return cert_path, key_path


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def rsa_files(tmp_path: Path, rsa_key: rsa.RSAPrivateKey) -> tuple[Path, Path]:
    return _write_pem(tmp_path, "rsa", rsa_key, _self_signed(rsa_key, "rsa-device"))


@pytest.fixture
def ec_files(tmp_path: Path, ec_key: ec.EllipticCurvePrivateKey) -> tuple[Path, Path]:
    return _write_pem(tmp_path, "ec", ec_key, _self_signed(ec_key, "ec-device"))


@pytest.fixture
def identity() -> DeviceIdentity:
    return DeviceIdentity(
        project_id="test-project",
        location="test-location",
        registry="test-registry",
        device_id="test-device",
    )


@pytest.fixture
def rsa_credentials(rsa_key: rsa.RSAPrivateKey) -> Credentials:
    return Credentials(KeyType.RSA, rsa_key)


@pytest.fixture
def ec_credentials(ec_key: ec.EllipticCurvePrivateKey) -> Credentials:
    return Credentials(KeyType.EC, ec_key)
