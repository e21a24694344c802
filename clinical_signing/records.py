"""Signed clinical records and the persistence boundary.

The database that stores clinical history is an external collaborator; this
module only defines what gets handed to it and the invariant it relies on:
a record is never built, let alone saved, without a non-empty signature.

RecordSink implementations:
- InMemoryRecordSink: tests and embedding
- JsonlRecordSink: append-only local JSONL file
"""

from __future__ import annotations

import abc
import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .canonical import ClinicalDocument, format_timestamp
from .errors import CS_E_RECORD_STORAGE, SigningCoreError, SigningError
from .session import KeySession
from .signing import document_bytes


@dataclass(frozen=True)
class SignedRecord:
    """A clinical record with its detached signature and signer metadata."""

    canonical_document: str
    signature: str
    signed_at_utc: str
    signer: Optional[str] = None
    key_id: Optional[str] = None
    digest: str = "sha256"
    patient_id: Optional[str] = None
    document_type: Optional[str] = None
    title: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_signed_record(
    document: Union[str, ClinicalDocument],
    signature: Optional[str],
    *,
    signer: Optional[str] = None,
    key_id: Optional[str] = None,
    digest: str = "sha256",
    title: Optional[str] = None,
    signed_at: Optional[datetime] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> SignedRecord:
    """Assemble a record; refuses a missing or blank signature."""
    if not signature or not str(signature).strip():
        raise SigningError(message="refusing to build a record without a signature", details={"reason": "blank_signature"})

    patient_id = document_type = None
    if isinstance(document, ClinicalDocument):
        patient_id = document.patient_id
        document_type = document.document_type
        signer = signer or document.author or None
    canonical = document_bytes(document).decode("utf-8")

    return SignedRecord(
        canonical_document=canonical,
        signature=str(signature),
        signed_at_utc=format_timestamp(signed_at or datetime.now(timezone.utc)),
        signer=signer,
        key_id=key_id,
        digest=digest,
        patient_id=patient_id,
        document_type=document_type,
        title=title,
        extra=dict(extra or {}),
    )


class RecordSink(abc.ABC):
    """Persistence collaborator for signed records."""

    @abc.abstractmethod
    def save(self, record: SignedRecord) -> None:
        raise NotImplementedError


class InMemoryRecordSink(RecordSink):
    def __init__(self):
        self.records: List[SignedRecord] = []

    def save(self, record: SignedRecord) -> None:
        if not record.signature:
            raise SigningError(message="unsigned record rejected", details={"reason": "blank_signature"})
        self.records.append(record)


class JsonlRecordSink(RecordSink):
    """Append records to a local JSONL file."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def save(self, record: SignedRecord) -> None:
        if not record.signature:
            raise SigningError(message="unsigned record rejected", details={"reason": "blank_signature"})
        line = json.dumps(record.as_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        try:
            with self._lock, open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")
        except OSError as e:
            raise SigningCoreError(
                code=CS_E_RECORD_STORAGE,
                message=f"record write failed: {e}",
                retryable=True,
                http_status=503,
            ) from e


def sign_and_save(
    session: KeySession,
    document: Union[str, ClinicalDocument],
    sink: RecordSink,
    *,
    title: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> SignedRecord:
    """Sign with the session key and hand the record to `sink`.

    Any signing failure aborts before the sink is touched.
    """
    signature = session.sign_or_raise(document)
    record = build_signed_record(
        document,
        signature,
        signer=session.signer_identity,
        key_id=session.key_id,
        digest=session.digest,
        title=title,
        extra=extra,
    )
    sink.save(record)
    return record
