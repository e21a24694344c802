"""Interactive unlock prompt around a pending signing action.

When a document has to be signed while the KeySession is locked, the caller
keeps the document pending and asks the user for the certificate password:

    PENDING --begin()--> AWAITING_PASSWORD --submit(ok)--> SIGNED
       |                   |      ^
       |                   |      +--submit(fail): error shown, retry
       |                   +--cancel()--> CANCELLED
       |                   +--attempts exhausted--> FAILED
       +--begin() while unlocked--> SIGNED

On a successful unlock the *original* pending document is signed, and the
optional `on_signed` callback (typically "save the record") runs with the
signature. A cancelled prompt never signs and never calls `on_signed`, so no
unsigned or partial record can come out of it.
"""

from __future__ import annotations

import abc
import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .config import LOGGER_NAME
from .errors import CS_E_RECORD_STORAGE, PromptCancelled, SigningCoreError
from .session import KeySession
from .signing import Document

logger = logging.getLogger(LOGGER_NAME)

PASSWORD_REQUEST_MESSAGE = "Enter the certificate password to sign this document."


class PromptState(str, Enum):
    PENDING = "pending"
    AWAITING_PASSWORD = "awaiting_password"
    SIGNED = "signed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL = (PromptState.SIGNED, PromptState.CANCELLED, PromptState.FAILED)


@dataclass(frozen=True)
class PromptResult:
    prompt_id: str
    state: PromptState
    signature: Optional[str] = None
    outcome: Any = None
    error: Optional[SigningCoreError] = None
    attempts: int = 0

    @property
    def done(self) -> bool:
        return self.state in _TERMINAL

    @property
    def error_message(self) -> Optional[str]:
        return self.error.user_message if self.error is not None else None


class UnlockPrompt:
    """One pending signing action waiting for the certificate password."""

    def __init__(
        self,
        session: KeySession,
        document: Document,
        *,
        max_attempts: Optional[int] = None,
        on_signed: Optional[Callable[[str], Any]] = None,
        prompt_id: Optional[str] = None,
    ):
        self.session = session
        self.document = document
        self.max_attempts = max_attempts if max_attempts and max_attempts > 0 else None
        self.on_signed = on_signed
        self.prompt_id = prompt_id or f"pend_{secrets.token_urlsafe(12)}"
        self.attempts = 0
        self._state = PromptState.PENDING
        self._error: Optional[SigningCoreError] = None
        self._signature: Optional[str] = None
        self._outcome: Any = None

    @property
    def state(self) -> PromptState:
        return self._state

    @property
    def error_message(self) -> Optional[str]:
        return self._error.user_message if self._error is not None else None

    def result(self) -> PromptResult:
        return PromptResult(
            prompt_id=self.prompt_id,
            state=self._state,
            signature=self._signature,
            outcome=self._outcome,
            error=self._error,
            attempts=self.attempts,
        )

    def _fail(self, error: SigningCoreError) -> PromptResult:
        self._error = error
        self._state = PromptState.FAILED
        return self.result()

    def _complete(self) -> PromptResult:
        try:
            signature = self.session.sign_or_raise(self.document)
            outcome = self.on_signed(signature) if self.on_signed is not None else None
        except SigningCoreError as e:
            return self._fail(e)
        except Exception as e:
            logger.error("Saving the signed document failed: %s", type(e).__name__)
            return self._fail(
                SigningCoreError(
                    code=CS_E_RECORD_STORAGE,
                    message=f"on_signed callback failed: {type(e).__name__}",
                    retryable=True,
                    http_status=503,
                    details={"prompt_id": self.prompt_id},
                )
            )
        self._signature = signature
        self._outcome = outcome
        self._error = None
        self._state = PromptState.SIGNED
        return self.result()

    async def begin(self) -> PromptResult:
        """Sign right away if unlocked, otherwise request a password."""
        if self._state is not PromptState.PENDING:
            return self.result()
        if self.session.is_unlocked():
            return self._complete()
        self.session.clear_error()
        self._state = PromptState.AWAITING_PASSWORD
        return self.result()

    async def submit(self, password: str) -> PromptResult:
        """Try one password; on success sign the pending document."""
        if self._state in _TERMINAL:
            return self.result()
        self._state = PromptState.AWAITING_PASSWORD
        self.attempts += 1

        ok = await self.session.unlock(password)
        if self._state in _TERMINAL:
            # cancel() or an overlapping submit() finished the prompt meanwhile.
            return self.result()
        if ok:
            return self._complete()

        self._error = self.session.error
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            self._state = PromptState.FAILED
        return self.result()

    def cancel(self) -> PromptResult:
        """Abort the pending sign. No-op once the prompt is finished."""
        if self._state in _TERMINAL:
            return self.result()
        self._state = PromptState.CANCELLED
        self._error = PromptCancelled()
        return self.result()


class PasswordSource(abc.ABC):
    """Where passwords come from (a dialog, a terminal, an HTTP round-trip)."""

    @abc.abstractmethod
    async def ask(self, message: str, error_message: Optional[str] = None) -> Optional[str]:
        """Return the password the user typed, or None if they cancelled."""
        raise NotImplementedError


async def sign_interactively(
    session: KeySession,
    document: Document,
    source: PasswordSource,
    *,
    max_attempts: Optional[int] = None,
    on_signed: Optional[Callable[[str], Any]] = None,
) -> PromptResult:
    """Drive an UnlockPrompt to completion with `source`.

    Returns the SIGNED result; raises PromptCancelled when the user cancels,
    or the last error when the prompt fails.
    """
    prompt = UnlockPrompt(session, document, max_attempts=max_attempts, on_signed=on_signed)
    result = await prompt.begin()
    while result.state is PromptState.AWAITING_PASSWORD:
        password = await source.ask(PASSWORD_REQUEST_MESSAGE, prompt.error_message)
        if password is None:
            result = prompt.cancel()
            break
        result = await prompt.submit(password)

    if result.state is PromptState.SIGNED:
        return result
    raise result.error or PromptCancelled()


class PendingSignatures:
    """Pending prompts for one session, oldest evicted (and cancelled) first."""

    def __init__(self, max_pending: int = 32):
        self.max_pending = max(1, int(max_pending))
        self._prompts: "OrderedDict[str, UnlockPrompt]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._prompts)

    def add(self, prompt: UnlockPrompt) -> UnlockPrompt:
        while len(self._prompts) >= self.max_pending:
            _, oldest = self._prompts.popitem(last=False)
            oldest.cancel()
        self._prompts[prompt.prompt_id] = prompt
        return prompt

    def get(self, prompt_id: str) -> Optional[UnlockPrompt]:
        return self._prompts.get(prompt_id)

    def discard(self, prompt_id: str) -> Optional[UnlockPrompt]:
        return self._prompts.pop(prompt_id, None)

    def cancel_all(self) -> None:
        for prompt in self._prompts.values():
            prompt.cancel()
        self._prompts.clear()

    def snapshot(self) -> Dict[str, str]:
        return {pid: p.state.value for pid, p in self._prompts.items()}
