from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from clinical_signing.auth import AuthContext
from clinical_signing.loader import ContainerLoader, InMemoryBlobStore
from clinical_signing.session import KeySession

PASSWORD = "correct-pass"
OBJECT_ID = "signing-certificate.pfx"
SIGNER_CN = "Dra. Test Signer"


def _self_signed(key, common_name: str) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def signing_cert(rsa_key):
    return _self_signed(rsa_key, SIGNER_CN)


@pytest.fixture(scope="session")
def pfx_bytes(rsa_key, signing_cert) -> bytes:
    """Password-protected container: shrouded key bag + certificate."""
    return pkcs12.serialize_key_and_certificates(
        name=b"signer",
        key=rsa_key,
        cert=signing_cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(PASSWORD.encode("utf-8")),
    )


@pytest.fixture(scope="session")
def pfx_plain_key_bag(rsa_key, signing_cert) -> bytes:
    """Unencrypted container: the key sits in a plain key bag."""
    return pkcs12.serialize_key_and_certificates(
        name=b"signer",
        key=rsa_key,
        cert=signing_cert,
        cas=None,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def pfx_cert_only(signing_cert) -> bytes:
    """Unencrypted container holding only a certificate."""
    return pkcs12.serialize_key_and_certificates(
        name=b"cert-only",
        key=None,
        cert=signing_cert,
        cas=None,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def pfx_cert_only_encrypted(signing_cert) -> bytes:
    """Password-protected container holding only a certificate."""
    return pkcs12.serialize_key_and_certificates(
        name=b"cert-only",
        key=None,
        cert=signing_cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(PASSWORD.encode("utf-8")),
    )


@pytest.fixture(scope="session")
def ec_pfx_bytes() -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    cert = _self_signed(key, "EC Signer")
    return pkcs12.serialize_key_and_certificates(
        name=b"ec-signer",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(PASSWORD.encode("utf-8")),
    )


@pytest.fixture
def blob_store(pfx_bytes) -> InMemoryBlobStore:
    return InMemoryBlobStore({OBJECT_ID: pfx_bytes})


@pytest.fixture
def loader(blob_store) -> ContainerLoader:
    return ContainerLoader(blob_store, OBJECT_ID, AuthContext.authenticated_as("dr_test"))


@pytest.fixture
def key_session(loader) -> KeySession:
    return KeySession(loader)


class SlowBlobStore(InMemoryBlobStore):
    """In-memory store whose downloads block long enough to race against."""

    def __init__(self, objects=None, delay: float = 0.2):
        super().__init__(objects)
        self.delay = delay

    def download(self, object_id: str) -> bytes:
        time.sleep(self.delay)
        return super().download(object_id)
