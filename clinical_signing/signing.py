"""Detached signatures over canonical clinical documents.

sign_document() digests the UTF-8 bytes of a canonical document and signs
them with the key's native scheme:

- RSA:      PKCS#1 v1.5 (deterministic) over the digest
- EC:       ECDSA over the digest
- DSA:      DSA over the digest
- Ed25519 / Ed448: pure EdDSA over the document bytes

The raw signature is returned base64-encoded for storage in a string field.
All failures raise SigningError; an empty signature is never returned, since
a blank signature on a clinical record cannot be told apart from "not yet
signed".

verify_document_signature() is the matching detached verification using the
certificate (or public key) of the signer.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union, runtime_checkable

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, padding, rsa

from .canonical import ClinicalDocument
from .config import LOGGER_NAME, SUPPORTED_DIGESTS
from .errors import SigningError
from .unlocker import UnlockedKey

logger = logging.getLogger(LOGGER_NAME)

Document = Union[str, bytes, ClinicalDocument]

_HASHES = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


def _hash_algorithm(digest: str) -> hashes.HashAlgorithm:
    name = (digest or "sha256").lower()
    if name not in SUPPORTED_DIGESTS:
        raise SigningError(message=f"unsupported digest {digest!r}", details={"digest": digest})
    return _HASHES[name]()


def document_bytes(document: Document) -> bytes:
    """UTF-8 bytes of a canonical document."""
    if isinstance(document, ClinicalDocument):
        return document.canonical().encode("utf-8")
    if isinstance(document, bytes):
        return document
    if isinstance(document, str):
        try:
            return document.encode("utf-8")
        except UnicodeEncodeError as e:
            raise SigningError(message="document is not valid UTF-8 text", details={"reason": "encoding"}) from e
    raise SigningError(message="document must be str, bytes or ClinicalDocument", details={"got": type(document).__name__})


def _raw_private_key(key: Any):
    if isinstance(key, UnlockedKey):
        return key.private_key
    return key


def sign_message(private_key: Any, message: bytes, *, digest: str = "sha256") -> bytes:
    """Sign raw bytes with the key's native scheme."""
    algorithm = _hash_algorithm(digest)
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(message, padding.PKCS1v15(), algorithm)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(message, ec.ECDSA(algorithm))
    if isinstance(private_key, dsa.DSAPrivateKey):
        return private_key.sign(message, algorithm)
    if isinstance(private_key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return private_key.sign(message)
    raise SigningError(message="unsupported private key type", details={"key_type": type(private_key).__name__})


def sign_document(key: Any, document: Document, *, digest: str = "sha256") -> str:
    """Sign a canonical document and return base64(signature).

    `key` is an UnlockedKey or a cryptography private key object.
    """
    private_key = _raw_private_key(key)
    if private_key is None:
        raise SigningError(message="no private key available", details={"reason": "missing_key"})

    message = document_bytes(document)
    if not message:
        raise SigningError(message="refusing to sign an empty document", details={"reason": "empty_document"})

    try:
        signature = sign_message(private_key, message, digest=digest)
    except SigningError:
        raise
    except Exception as e:
        logger.error("Signature primitive failed: %s", type(e).__name__)
        raise SigningError(message=f"signature primitive failed: {type(e).__name__}") from e

    if not signature:
        raise SigningError(message="signature primitive returned no bytes")
    return base64.b64encode(signature).decode("ascii")


def verify_document_signature(
    public_key_or_cert: Any,
    document: Document,
    signature_b64: str,
    *,
    digest: str = "sha256",
) -> bool:
    """Verify a detached signature produced by sign_document()."""
    if isinstance(public_key_or_cert, x509.Certificate):
        public_key = public_key_or_cert.public_key()
    elif isinstance(public_key_or_cert, UnlockedKey):
        public_key = public_key_or_cert.public_key()
    else:
        public_key = public_key_or_cert

    try:
        signature = base64.b64decode((signature_b64 or "").encode("ascii"), validate=True)
        message = document_bytes(document)
        algorithm = _hash_algorithm(digest)
    except (binascii.Error, ValueError, SigningError):
        return False
    if not signature:
        return False

    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, message, padding.PKCS1v15(), algorithm)
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, message, ec.ECDSA(algorithm))
        elif isinstance(public_key, dsa.DSAPublicKey):
            public_key.verify(signature, message, algorithm)
        elif isinstance(public_key, (ed25519.Ed25519PublicKey, ed448.Ed448PublicKey)):
            public_key.verify(signature, message)
        else:
            return False
        return True
    except InvalidSignature:
        return False


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends.

    KeySession signs through this, so a backend holding the key elsewhere
    (token, HSM, remote signer) can replace the in-process KeySigner.
    """

    key_id: str

    def sign(self, message: bytes) -> bytes: ...

    def sign_document(self, document: Document) -> str: ...


@dataclass
class KeySigner:
    """Signer that wraps an unlocked PKCS#12 key (in-process signing)."""

    key: UnlockedKey
    digest: str = "sha256"

    @property
    def key_id(self) -> str:
        return self.key.key_id

    def sign(self, message: bytes) -> bytes:
        return sign_message(self.key.private_key, bytes(message), digest=self.digest)

    def sign_document(self, document: Document) -> str:
        return sign_document(self.key, document, digest=self.digest)
