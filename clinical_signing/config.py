"""Environment-driven configuration for the signing core.

Environment variables:
- CS_BLOB_BACKEND: where the certificate container lives (memory|file|http).
- CS_BLOB_ROOT: root directory for the file backend.
- CS_BLOB_URL: base URL for the http backend.
- CS_BLOB_TOKEN: bearer token sent to the http backend (optional).
- CS_CONTAINER_OBJECT: fixed object id of the PKCS#12 container.
- CS_FETCH_TIMEOUT_SECONDS: blob store timeout.
- CS_DIGEST: sha256 (default), sha384 or sha512.
- CS_MAX_UNLOCK_ATTEMPTS: password attempts per prompt before it fails (0 = unlimited).
- CS_RECORDS_PATH: JSONL file for signed records (HTTP adapter only).
- CS_LOG_LEVEL: log level for the `clinical_signing` logger.

Malformed values fall back to defaults instead of failing startup; values
that would weaken the signing path (unknown digests) fall back to sha256.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

SUPPORTED_DIGESTS = ("sha256", "sha384", "sha512")
SUPPORTED_BACKENDS = ("memory", "file", "http")

LOGGER_NAME = "clinical_signing"


@dataclass
class SigningConfig:
    blob_backend: str = "file"
    blob_root: str = "."
    blob_url: Optional[str] = None
    blob_token: Optional[str] = None
    container_object: str = "signing-certificate.pfx"
    fetch_timeout_seconds: float = 10.0
    digest: str = "sha256"
    max_unlock_attempts: int = 0
    records_path: str = "signed_records.jsonl"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SigningConfig":
        def _get_str(name: str, default: Optional[str]) -> Optional[str]:
            v = (os.getenv(name, "") or "").strip()
            return v or default

        def _get_int(name: str, default: int) -> int:
            try:
                return int(os.getenv(name, str(default)).strip())
            except Exception:
                return default

        def _get_float(name: str, default: float) -> float:
            try:
                return float(os.getenv(name, str(default)).strip())
            except Exception:
                return default

        backend = (_get_str("CS_BLOB_BACKEND", cls.blob_backend) or cls.blob_backend).lower()
        digest = (_get_str("CS_DIGEST", cls.digest) or cls.digest).lower()
        timeout = _get_float("CS_FETCH_TIMEOUT_SECONDS", cls.fetch_timeout_seconds)
        attempts = _get_int("CS_MAX_UNLOCK_ATTEMPTS", cls.max_unlock_attempts)
        level = (_get_str("CS_LOG_LEVEL", cls.log_level) or cls.log_level).upper()

        # Clamp
        if backend not in SUPPORTED_BACKENDS:
            backend = cls.blob_backend
        if digest not in SUPPORTED_DIGESTS:
            digest = cls.digest
        if timeout <= 0:
            timeout = cls.fetch_timeout_seconds
        if attempts < 0:
            attempts = 0

        return cls(
            blob_backend=backend,
            blob_root=_get_str("CS_BLOB_ROOT", cls.blob_root) or cls.blob_root,
            blob_url=_get_str("CS_BLOB_URL", None),
            blob_token=_get_str("CS_BLOB_TOKEN", None),
            container_object=_get_str("CS_CONTAINER_OBJECT", cls.container_object) or cls.container_object,
            fetch_timeout_seconds=timeout,
            digest=digest,
            max_unlock_attempts=attempts,
            records_path=_get_str("CS_RECORDS_PATH", cls.records_path) or cls.records_path,
            log_level=level,
        )


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a stream handler to the package logger (idempotent)."""
    logger = logging.getLogger(LOGGER_NAME)
    lvl = (level or os.getenv("CS_LOG_LEVEL", "") or "INFO").strip().upper()
    logger.setLevel(getattr(logging, lvl, logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
    return logger
