"""
Clinical signing HTTP adapter.

FastAPI rendering of the interactive unlock protocol, for UIs that talk to
the signing core over HTTP:

    POST /v1/documents/sign              -> 200 signed record
                                         -> 423 password required (pending_id)
    POST /v1/unlock {password, pending_id}
                                         -> 200 unlocked / signed record
                                         -> 401 wrong password (pending kept, retry)
    POST /v1/pending/{pending_id}/cancel -> 200 cancelled, nothing saved
    POST /v1/logout                      -> key dropped
    GET  /v1/session, /v1/health, /metrics

Security Properties:
- One KeySession per authenticated signer (X-Api-Key); unauthenticated
  callers never reach the certificate container.
- Passwords are accepted as secrets, used once, never echoed or logged.
- A record is written only after a successful signature.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, SecretStr

from . import __version__
from .auth import ApiKeyAuth, AuthContext
from .canonical import ClinicalDocument
from .config import LOGGER_NAME, SigningConfig, configure_logging
from .errors import (
    AuthRequired,
    SigningCoreError,
    signing_core_error,
    CS_E_PROMPT_NOT_FOUND,
)
from .loader import BlobStore, ContainerLoader, build_blob_store
from .metrics import instrument_fastapi
from .prompt import PASSWORD_REQUEST_MESSAGE, PendingSignatures, PromptState, UnlockPrompt
from .records import JsonlRecordSink, RecordSink, SignedRecord, build_signed_record
from .session import KeySession

logger = logging.getLogger(LOGGER_NAME)


# ---------------------------
# Request Models
# ---------------------------

class SignRequest(BaseModel):
    """Document to sign and persist."""
    patient_id: str = Field(min_length=1)
    document_type: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    author: Optional[str] = None


class UnlockRequest(BaseModel):
    password: SecretStr
    pending_id: Optional[str] = None


# ---------------------------
# Per-signer sessions
# ---------------------------

@dataclass
class SignerSession:
    signer_id: str
    keys: KeySession
    pending: PendingSignatures

    def describe(self) -> Dict[str, Any]:
        return {
            "signer_id": self.signer_id,
            "state": self.keys.state.value,
            "unlocked": self.keys.is_unlocked(),
            "key_id": self.keys.key_id,
            "certificate_subject": self.keys.signer_identity,
            "error": self.keys.error_message,
            "pending": self.pending.snapshot(),
        }


class SessionRegistry:
    """Maps authenticated signers to their KeySession."""

    def __init__(self, store: BlobStore, config: SigningConfig):
        self.store = store
        self.config = config
        self._sessions: Dict[str, SignerSession] = {}

    def get_or_create(self, auth: AuthContext) -> SignerSession:
        if not auth.authenticated or not auth.signer_id:
            raise AuthRequired(details={"reason": auth.error or "unauthenticated"})
        existing = self._sessions.get(auth.signer_id)
        if existing is not None:
            return existing
        loader = ContainerLoader(self.store, self.config.container_object, auth)
        created = SignerSession(
            signer_id=auth.signer_id,
            keys=KeySession(loader, digest=self.config.digest),
            pending=PendingSignatures(),
        )
        self._sessions[auth.signer_id] = created
        return created

    def end(self, signer_id: str) -> bool:
        s = self._sessions.pop(signer_id, None)
        if s is None:
            return False
        s.pending.cancel_all()
        s.keys.logout()
        return True

    def __len__(self) -> int:
        return len(self._sessions)


def _record_body(record: SignedRecord) -> Dict[str, Any]:
    return {"status": "signed", "signature": record.signature, "record": record.as_dict()}


def create_app(
    config: Optional[SigningConfig] = None,
    *,
    store: Optional[BlobStore] = None,
    sink: Optional[RecordSink] = None,
    auth: Optional[ApiKeyAuth] = None,
) -> FastAPI:
    """Create the FastAPI application."""
    config = config or SigningConfig.from_env()
    store = store or build_blob_store(config)
    sink = sink or JsonlRecordSink(config.records_path)
    api_auth = auth or ApiKeyAuth.load_from_env()
    registry = SessionRegistry(store, config)

    app = FastAPI(
        title="Clinical Signing",
        description="PKCS#12 certificate unlock and detached signing of clinical documents",
        version=__version__,
    )
    app.state.registry = registry
    app.state.sink = sink

    @app.exception_handler(SigningCoreError)
    async def _signing_error_handler(request: Request, exc: SigningCoreError):
        return JSONResponse(status_code=int(exc.http_status), content={"error": exc.as_dict()})

    instrument_fastapi(app)

    def _caller(x_api_key: Optional[str] = Header(None, alias="X-Api-Key")) -> SignerSession:
        return registry.get_or_create(api_auth.resolve_context(x_api_key))

    def _pending_or_404(signer: SignerSession, pending_id: str) -> UnlockPrompt:
        prompt = signer.pending.get(pending_id)
        if prompt is None:
            raise signing_core_error(CS_E_PROMPT_NOT_FOUND, "unknown pending signature", http_status=404, pending_id=pending_id)
        return prompt

    def _password_required(prompt: UnlockPrompt, error: Optional[SigningCoreError], status: int) -> JSONResponse:
        body: Dict[str, Any] = {
            "status": "password_required",
            "pending_id": prompt.prompt_id,
            "message": PASSWORD_REQUEST_MESSAGE,
            "attempts": prompt.attempts,
        }
        if error is not None:
            body["error"] = error.as_dict()
        return JSONResponse(status_code=status, content=body)

    @app.get("/v1/session")
    async def session_info(signer: SignerSession = Depends(_caller)):
        return signer.describe()

    @app.post("/v1/documents/sign")
    async def sign_document(request: SignRequest, signer: SignerSession = Depends(_caller)):
        """Sign and persist a document, or park it until the certificate is unlocked."""
        document = ClinicalDocument.create(
            request.patient_id,
            request.document_type,
            request.data,
            author=request.author or signer.signer_id,
        )

        def _save(signature: str) -> SignedRecord:
            record = build_signed_record(
                document,
                signature,
                signer=signer.keys.signer_identity or document.author,
                key_id=signer.keys.key_id,
                digest=signer.keys.digest,
                title=request.title,
            )
            sink.save(record)
            return record

        prompt = UnlockPrompt(
            signer.keys,
            document,
            max_attempts=config.max_unlock_attempts,
            on_signed=_save,
        )
        result = await prompt.begin()
        if result.state is PromptState.SIGNED:
            return _record_body(result.outcome)
        if result.state is PromptState.AWAITING_PASSWORD:
            signer.pending.add(prompt)
            return _password_required(prompt, None, 423)
        raise result.error

    @app.post("/v1/unlock")
    async def unlock(request: UnlockRequest, signer: SignerSession = Depends(_caller)):
        """Submit the certificate password, optionally completing a pending signature."""
        password = request.password.get_secret_value()
        if not request.pending_id:
            if await signer.keys.unlock(password):
                return signer.describe()
            raise signer.keys.error

        prompt = _pending_or_404(signer, request.pending_id)
        result = await prompt.submit(password)
        if result.state is PromptState.SIGNED:
            signer.pending.discard(prompt.prompt_id)
            return _record_body(result.outcome)
        if result.state is PromptState.AWAITING_PASSWORD:
            status = int(result.error.http_status) if result.error is not None else 401
            return _password_required(prompt, result.error, status)
        signer.pending.discard(prompt.prompt_id)
        raise result.error

    @app.post("/v1/pending/{pending_id}/cancel")
    async def cancel_pending(pending_id: str, signer: SignerSession = Depends(_caller)):
        prompt = _pending_or_404(signer, pending_id)
        signer.pending.discard(pending_id)
        result = prompt.cancel()
        return {"status": result.state.value, "pending_id": pending_id}

    @app.post("/v1/logout")
    async def logout(signer: SignerSession = Depends(_caller)):
        registry.end(signer.signer_id)
        return {"status": "logged_out"}

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": __version__, "sessions": len(registry)}

    return app


def main():
    """
    Main entry point for the clinical-signing-server CLI.

    Usage:
        clinical-signing-server                    # Start on default port 8000
        clinical-signing-server --port 9000        # Start on custom port
        clinical-signing-server --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Clinical Signing - PKCS#12 unlock and document signing service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    CS_API_KEYS_JSON     JSON object mapping API key -> signer id
    CS_BLOB_BACKEND      file | http | memory (default: file)
    CS_BLOB_ROOT         Directory holding the certificate container
    CS_BLOB_URL          Base URL of the object store (http backend)
    CS_CONTAINER_OBJECT  Object id of the .pfx container
    CS_RECORDS_PATH      JSONL file receiving signed records
        """,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default=None, help="Log level (default: env CS_LOG_LEVEL or INFO)")
    args = parser.parse_args()

    import uvicorn

    configure_logging(args.log_level)
    config = SigningConfig.from_env()
    logger.info("Starting clinical signing service on %s:%s (container=%s)", args.host, args.port, config.container_object)
    if not os.getenv("CS_API_KEYS_JSON") and not os.getenv("CS_API_KEYS_FILE"):
        logger.warning("No API keys configured; every request will be rejected")

    app = create_app(config)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
