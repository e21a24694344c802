"""PKCS#12 certificate container unlock.

unlock_container() turns the raw bytes of a .pfx/.p12 container plus the
user's password into an in-memory private key handle.

Steps:
1. Parse the buffer as a PKCS#12 PFX structure (ASN.1 DER).
2. If the readable parts of the structure prove there is no key bag at all,
   fail with KeyNotFound without looking at the password.
3. Verify the MAC and decrypt the bag contents with the password.
4. Search bags in priority order: PKCS#8 shrouded key bags, then plain key
   bags. Nested safe-contents bags are searched as well.
5. Fall back to the key the decrypted container yields when the key sits in
   an encrypted safe the structural walk cannot read.

Wrong password and corrupt/tampered containers both fail the integrity check
and raise InvalidPassword; a well-formed container without a key raises
KeyNotFound. The password is used as typed (UTF-8, no normalization) and is
never logged or attached to error details.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from asn1crypto import pkcs12 as asn1_pkcs12
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from .config import LOGGER_NAME
from .errors import InvalidPassword, KeyNotFound

logger = logging.getLogger(LOGGER_NAME)

SHROUDED_KEY_BAG = "pkcs8_shrouded_key_bag"
KEY_BAG = "key_bag"
_KEY_BAG_PRIORITY = (SHROUDED_KEY_BAG, KEY_BAG)


@dataclass(frozen=True)
class UnlockedKey:
    """Private key handle extracted from a PKCS#12 container.

    Lives only in memory, owned by a KeySession. The repr never includes key
    material.
    """

    private_key: PrivateKeyTypes = field(repr=False)
    certificate: Optional[x509.Certificate] = field(default=None, repr=False)
    additional_certificates: Tuple[x509.Certificate, ...] = field(default=(), repr=False)
    bag_type: str = SHROUDED_KEY_BAG
    key_id: str = ""

    @property
    def subject_common_name(self) -> Optional[str]:
        if self.certificate is None:
            return None
        attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return str(attrs[0].value) if attrs else None

    def public_key(self):
        return self.private_key.public_key()


@dataclass(frozen=True)
class _ContainerLayout:
    """What can be learned about a PFX without the password."""

    key_bags: Tuple[Tuple[str, bytes], ...]
    has_opaque_content: bool


def compute_key_id(private_key: PrivateKeyTypes) -> str:
    """SHA-256 fingerprint of the DER SubjectPublicKeyInfo."""
    spki = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(spki).hexdigest()


def _password_bytes(password: Optional[str]) -> Optional[bytes]:
    if password is None or password == "":
        return None
    return password.encode("utf-8")


def _iter_safe_bags(safe_contents: asn1_pkcs12.SafeContents) -> Iterator[asn1_pkcs12.SafeBag]:
    for bag in safe_contents:
        if bag["bag_id"].native == "safe_contents":
            yield from _iter_safe_bags(bag["bag_value"])
        else:
            yield bag


def _inspect_layout(container: bytes) -> _ContainerLayout:
    """Parse the PFX structure and collect key bags stored in plain safes.

    Raises ValueError (or another asn1crypto parse error) if the buffer is not
    a PKCS#12 structure.
    """
    pfx = asn1_pkcs12.Pfx.load(container, strict=True)
    # asn1crypto maps the integer 3 to "v3"
    version = pfx["version"].native
    if version not in (3, "v3"):
        raise ValueError(f"unsupported PFX version {version}")

    key_bags: List[Tuple[str, bytes]] = []
    opaque = False
    for content_info in pfx.authenticated_safe:
        content_type = content_info["content_type"].native
        if content_type != "data":
            # encrypted_data / enveloped_data: readable only after decryption
            opaque = True
            continue
        safe = asn1_pkcs12.SafeContents.load(content_info["content"].native)
        for bag in _iter_safe_bags(safe):
            bag_id = bag["bag_id"].native
            if bag_id in _KEY_BAG_PRIORITY:
                key_bags.append((bag_id, bag["bag_value"].untag().dump()))

    return _ContainerLayout(key_bags=tuple(key_bags), has_opaque_content=opaque)


def inspect_container(container: bytes) -> _ContainerLayout:
    """Check the PFX structure without the password.

    Raises InvalidPassword (reason "malformed") if the bytes are not a
    PKCS#12 container.
    """
    try:
        return _inspect_layout(bytes(container or b""))
    except Exception as e:
        logger.warning("Certificate container is not a valid PKCS#12 structure: %s", type(e).__name__)
        raise InvalidPassword(
            message="certificate container is malformed",
            details={"reason": "malformed"},
        ) from None


def _load_bag_key(bag_type: str, der: bytes, password: Optional[bytes]) -> Optional[PrivateKeyTypes]:
    try:
        if bag_type == SHROUDED_KEY_BAG:
            return serialization.load_der_private_key(der, password=password)
        return serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        logger.debug("Could not load %s from container: %s", bag_type, e)
        return None


def _search_key_bags(
    layout: _ContainerLayout, password: Optional[bytes]
) -> Tuple[Optional[PrivateKeyTypes], Optional[str]]:
    for bag_type in _KEY_BAG_PRIORITY:
        for found_type, der in layout.key_bags:
            if found_type != bag_type:
                continue
            key = _load_bag_key(bag_type, der, password)
            if key is not None:
                return key, bag_type
    return None, None


def unlock_container(container: bytes, password: str) -> UnlockedKey:
    """Unlock a PKCS#12 container and return its private key.

    Raises:
        InvalidPassword: not a PKCS#12 structure, MAC check failed, or the
            contents could not be decrypted with this password.
        KeyNotFound: the container holds no usable private key.
    """
    data = bytes(container or b"")
    layout = inspect_container(data)

    if not layout.key_bags and not layout.has_opaque_content:
        raise KeyNotFound(details={"reason": "no_key_bags"})

    pw = _password_bytes(password)
    try:
        decrypted = pkcs12.load_pkcs12(data, pw)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        # OpenSSL error text stays out of the chain.
        raise InvalidPassword(details={"reason": "mac_or_decrypt"}) from None

    key, bag_type = _search_key_bags(layout, pw)
    if key is None and decrypted.key is not None:
        present = [t for t in _KEY_BAG_PRIORITY if any(found == t for found, _ in layout.key_bags)]
        # No readable key bag: it sits inside an encrypted safe.
        key, bag_type = decrypted.key, (present[0] if present else SHROUDED_KEY_BAG)
    if key is None:
        raise KeyNotFound(details={"reason": "no_private_key"})

    cert = decrypted.cert.certificate if decrypted.cert is not None else None
    extra = tuple(c.certificate for c in decrypted.additional_certs)
    logger.debug("Private key loaded from %s", bag_type)
    return UnlockedKey(
        private_key=key,
        certificate=cert,
        additional_certificates=extra,
        bag_type=str(bag_type),
        key_id=compute_key_id(key),
    )


class CertificateUnlocker:
    """Object form of unlock_container() for injection into sessions."""

    def unlock(self, container: bytes, password: str) -> UnlockedKey:
        return unlock_container(container, password)
