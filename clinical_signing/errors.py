"""Stable error taxonomy for the clinical signing core.

This module defines machine-readable error codes and the exception types used
across the loader, unlocker, signature engine, session and HTTP adapter.

Design goals:
- Stable `code` string suitable for programmatic handling.
- A distinct user-facing message per code, so callers never conflate
  "wrong password" with "no certificate configured".
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages. Details must
  never carry passwords or key material.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Certificate container / unlock
CS_E_CONTAINER_UNAVAILABLE = "CS_E_CONTAINER_UNAVAILABLE"
CS_E_INVALID_PASSWORD = "CS_E_INVALID_PASSWORD"
CS_E_KEY_NOT_FOUND = "CS_E_KEY_NOT_FOUND"
CS_E_UNLOCK_FAILED = "CS_E_UNLOCK_FAILED"

# Signing
CS_E_SIGNING = "CS_E_SIGNING"
CS_E_NOT_UNLOCKED = "CS_E_NOT_UNLOCKED"

# Prompt / caller
CS_E_PROMPT_CANCELLED = "CS_E_PROMPT_CANCELLED"
CS_E_PROMPT_NOT_FOUND = "CS_E_PROMPT_NOT_FOUND"
CS_E_AUTH_REQUIRED = "CS_E_AUTH_REQUIRED"

# Canonicalization
CS_E_CANON_NON_JSON = "CS_E_CANON_NON_JSON"
CS_E_CANON_DEPTH = "CS_E_CANON_DEPTH"
CS_E_CANON_NONFINITE = "CS_E_CANON_NONFINITE"
CS_E_CANON_KEY_TYPE = "CS_E_CANON_KEY_TYPE"
CS_E_CANON_KEY_COLLISION = "CS_E_CANON_KEY_COLLISION"
CS_E_CANON_INT_TOO_LARGE = "CS_E_CANON_INT_TOO_LARGE"

# Persistence collaborator
CS_E_RECORD_STORAGE = "CS_E_RECORD_STORAGE"


_USER_MESSAGES: Dict[str, str] = {
    CS_E_CONTAINER_UNAVAILABLE: "Certificate not available. Check your connection and permissions.",
    CS_E_INVALID_PASSWORD: "Incorrect certificate password.",
    CS_E_KEY_NOT_FOUND: "The configured certificate does not contain a private key.",
    CS_E_UNLOCK_FAILED: "The certificate could not be opened due to an internal error. Try again or contact support.",
    CS_E_SIGNING: "The document could not be signed. Nothing was saved.",
    CS_E_NOT_UNLOCKED: "Certificate is locked. Enter the certificate password to sign.",
    CS_E_PROMPT_CANCELLED: "Signing cancelled. Nothing was saved.",
    CS_E_PROMPT_NOT_FOUND: "No pending signature with this id.",
    CS_E_AUTH_REQUIRED: "Authentication required.",
    CS_E_RECORD_STORAGE: "The signed record could not be stored.",
}


def user_message(code: str) -> str:
    """Return the user-facing message for an error code."""
    if code.startswith("CS_E_CANON_"):
        return "The document contains data that cannot be signed."
    return _USER_MESSAGES.get(code, "Unexpected signing error.")


@dataclass
class SigningCoreError(Exception):
    """Base exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_message(self) -> str:
        return user_message(self.code)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ContainerUnavailable(SigningCoreError):
    """The certificate blob could not be retrieved (no session, network, missing object)."""

    code: str = CS_E_CONTAINER_UNAVAILABLE
    message: str = "certificate container unavailable"
    http_status: int = 503


@dataclass
class InvalidPassword(SigningCoreError):
    """PKCS#12 MAC check or decryption failed (wrong password or corrupt container)."""

    code: str = CS_E_INVALID_PASSWORD
    message: str = "invalid certificate password"
    retryable: bool = True
    http_status: int = 401


@dataclass
class KeyNotFound(SigningCoreError):
    """The container decrypted fine but holds no usable private key."""

    code: str = CS_E_KEY_NOT_FOUND
    message: str = "no private key in certificate container"
    http_status: int = 422


@dataclass
class SigningError(SigningCoreError):
    """Signing was requested without a valid key, or the primitive failed."""

    code: str = CS_E_SIGNING
    message: str = "signing failed"
    http_status: int = 500


@dataclass
class PromptCancelled(SigningCoreError):
    """The caller abandoned the password prompt; the pending sign is aborted."""

    code: str = CS_E_PROMPT_CANCELLED
    message: str = "unlock prompt cancelled"
    http_status: int = 409


@dataclass
class AuthRequired(SigningCoreError):
    code: str = CS_E_AUTH_REQUIRED
    message: str = "authenticated caller required"
    http_status: int = 401


def not_unlocked_error() -> SigningError:
    return SigningError(code=CS_E_NOT_UNLOCKED, message="certificate not unlocked", http_status=409)


def signing_core_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> SigningCoreError:
    return SigningCoreError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
