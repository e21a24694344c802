"""KeySession: unlock-once / sign-many key lifecycle for one user session.

State machine:

    LOCKED --unlock()--> UNLOCKING --ok--> UNLOCKED --logout()--> LOCKED
                             |
                             +--fail/cancel--> LOCKED (+ session error)

The unlocked key lives only on this object. It is never persisted, and
logout() drops it together with the cached certificate container.

Failures never escape unlock(): they are recorded as a session-scoped error
(`error`, `error_message`) so every caller path can show the message and
re-prompt. sign() returns None with an error instead of an empty signature;
sign_or_raise() is the exception-raising variant for save paths.

There is no automatic unlock: the password is always supplied
interactively per session.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from .config import LOGGER_NAME
from .errors import (
    InvalidPassword,
    KeyNotFound,
    ContainerUnavailable,
    SigningCoreError,
    SigningError,
    not_unlocked_error,
    signing_core_error,
    CS_E_UNLOCK_FAILED,
)
from .loader import ContainerLoader
from .metrics import record_signature, record_unlock, session_locked, session_unlocked
from .signing import Document, KeySigner, Signer
from .unlocker import CertificateUnlocker, UnlockedKey

logger = logging.getLogger(LOGGER_NAME)

SignerFactory = Callable[[UnlockedKey, str], Signer]


class SessionState(str, Enum):
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"


def _unlock_outcome(err: SigningCoreError) -> str:
    if isinstance(err, InvalidPassword):
        return "invalid_password"
    if isinstance(err, KeyNotFound):
        return "key_not_found"
    if isinstance(err, ContainerUnavailable):
        return "container_unavailable"
    return "error"


class KeySession:
    """Holds the unlocked signing key for the lifetime of a user session."""

    def __init__(
        self,
        loader: ContainerLoader,
        *,
        unlocker: Optional[CertificateUnlocker] = None,
        digest: str = "sha256",
        signer_factory: SignerFactory = KeySigner,
    ):
        self.loader = loader
        self.unlocker = unlocker or CertificateUnlocker()
        self.digest = digest
        self.signer_factory = signer_factory
        self._key: Optional[UnlockedKey] = None
        self._signer: Optional[Signer] = None
        self._state = SessionState.LOCKED
        self._error: Optional[SigningCoreError] = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"KeySession(state={self._state.value!r}, object_id={self.loader.object_id!r})"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def error(self) -> Optional[SigningCoreError]:
        return self._error

    @property
    def error_message(self) -> Optional[str]:
        return self._error.user_message if self._error is not None else None

    @property
    def is_loading(self) -> bool:
        return self._state is SessionState.UNLOCKING

    @property
    def key_id(self) -> Optional[str]:
        return self._key.key_id if self._key is not None else None

    @property
    def signer_identity(self) -> Optional[str]:
        """Common name of the signing certificate, if the container has one."""
        return self._key.subject_common_name if self._key is not None else None

    @property
    def certificate(self):
        return self._key.certificate if self._key is not None else None

    def is_unlocked(self) -> bool:
        return self._key is not None

    async def unlock(self, password: str) -> bool:
        """Unlock the session's certificate with `password`.

        Returns True when the session is unlocked (including when it already
        was). Returns False and sets `error` on any failure; the session stays
        LOCKED. Concurrent calls are serialized so only one key handle is ever
        created.
        """
        if self._key is not None:
            return True

        async with self._lock:
            if self._key is not None:
                return True

            self._state = SessionState.UNLOCKING
            self._error = None
            try:
                container = await self.loader.fetch()
                key = self.unlocker.unlock(container, password)
            except SigningCoreError as e:
                self._error = e
                record_unlock(_unlock_outcome(e))
                logger.warning("Certificate unlock failed: %s", e.code)
                return False
            except Exception as e:
                self._error = signing_core_error(
                    CS_E_UNLOCK_FAILED,
                    "certificate could not be processed",
                    retryable=True,
                    http_status=500,
                    reason="unexpected",
                    error_type=type(e).__name__,
                )
                record_unlock("error")
                logger.error("Unexpected certificate unlock failure: %s", type(e).__name__)
                return False
            finally:
                if self._key is None:
                    self._state = SessionState.LOCKED

            self._key = key
            self._signer = self.signer_factory(key, self.digest)
            self._state = SessionState.UNLOCKED
            record_unlock("ok")
            session_unlocked()
            logger.info("Certificate unlocked (key_id=%s)", key.key_id[:16])
            return True

    def sign_or_raise(self, document: Document) -> str:
        """Sign `document` with the unlocked key.

        Raises SigningError (code CS_E_NOT_UNLOCKED when locked) or a
        canonicalization error; the error is also kept on the session.
        """
        signer = self._signer
        if self._key is None or signer is None:
            err = not_unlocked_error()
            self._error = err
            record_signature("not_unlocked")
            raise err
        try:
            signature = signer.sign_document(document)
        except SigningCoreError as e:
            self._error = e
            record_signature("error")
            raise
        except Exception as e:
            err = SigningError(message=f"signer failed: {type(e).__name__}", details={"key_id": signer.key_id})
            self._error = err
            record_signature("error")
            raise err from e
        if not signature:
            err = SigningError(message="signer returned an empty signature", details={"key_id": signer.key_id})
            self._error = err
            record_signature("error")
            raise err
        record_signature("ok")
        return signature

    def sign(self, document: Document) -> Optional[str]:
        """Sign `document`; returns None (never "") on failure with `error` set."""
        try:
            return self.sign_or_raise(document)
        except SigningCoreError:
            return None

    def clear_error(self) -> None:
        self._error = None

    def logout(self) -> None:
        """Drop the key and the cached container; back to LOCKED."""
        was_unlocked = self._key is not None
        self._key = None
        self._signer = None
        self._error = None
        self._state = SessionState.LOCKED
        self.loader.clear()
        if was_unlocked:
            session_locked()
            logger.info("Key session closed")
