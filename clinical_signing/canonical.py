"""Canonical document serialization.

A signature is only meaningful if the signed bytes can be reproduced exactly.
Clinical documents are therefore serialized with a strict canonical JSON
encoding before they are digested:

- sort_keys: deterministic key order
- separators: no whitespace ambiguity
- ensure_ascii=False: preserve unicode deterministically (UTF-8)
- NFC normalization of strings and keys, so visually identical text is
  byte-identical
- strict JSON only: no NaN/Infinity, no stringified unknown types
- bounded nesting depth and integer size
"""

from __future__ import annotations

import json
import math
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import (
    signing_core_error,
    CS_E_CANON_NON_JSON,
    CS_E_CANON_DEPTH,
    CS_E_CANON_NONFINITE,
    CS_E_CANON_KEY_TYPE,
    CS_E_CANON_KEY_COLLISION,
    CS_E_CANON_INT_TOO_LARGE,
)


_MAX_DEPTH = 64
_MAX_INT_DIGITS = 128


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _nfc(text: str) -> str:
    return unicodedata.normalize("NFC", text)


def _canonicalize(obj: Any, depth: int = 0) -> Any:
    """Return a JSON-ready copy of `obj` with every string NFC-normalized."""
    if depth > _MAX_DEPTH:
        raise signing_core_error(CS_E_CANON_DEPTH, "document nested too deeply", max_depth=_MAX_DEPTH)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return _nfc(obj)
    if isinstance(obj, int):
        if len(str(abs(obj))) > _MAX_INT_DIGITS:
            raise signing_core_error(CS_E_CANON_INT_TOO_LARGE, "integer too large", max_int_digits=_MAX_INT_DIGITS)
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise signing_core_error(CS_E_CANON_NONFINITE, "NaN and Infinity cannot be signed")
        return obj
    if isinstance(obj, (list, tuple)):
        return [_canonicalize(item, depth + 1) for item in obj]
    if isinstance(obj, dict):
        fields: Dict[str, Any] = {}
        for key, value in obj.items():
            if not isinstance(key, str):
                raise signing_core_error(CS_E_CANON_KEY_TYPE, "field names must be strings", got=type(key).__name__)
            name = _nfc(key)
            # Composed and decomposed accents map to the same field name.
            if name in fields:
                raise signing_core_error(CS_E_CANON_KEY_COLLISION, "field names collide after normalization", field=name)
            fields[name] = _canonicalize(value, depth + 1)
        return fields

    raise signing_core_error(CS_E_CANON_NON_JSON, "value is not JSON data", got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Serialize `obj` to canonical JSON text.

    Raises SigningCoreError with a CS_E_CANON_* code if the object cannot be
    represented canonically.
    """
    normalized = _canonicalize(obj)
    try:
        return json.dumps(
            normalized,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise signing_core_error(CS_E_CANON_NON_JSON, f"canonical encoding failed: {e}") from e


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a 'Z' suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class ClinicalDocument:
    """A clinical document awaiting a signature.

    The canonical form uses the field names stored next to signed records:
    `patientId`, `date`, `type`, `data` and `doctor`.
    """

    patient_id: str
    document_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    author: str = ""
    timestamp_utc: Optional[str] = None

    @classmethod
    def create(
        cls,
        patient_id: str,
        document_type: str,
        data: Optional[Dict[str, Any]] = None,
        *,
        author: str = "",
        at: Optional[datetime] = None,
    ) -> "ClinicalDocument":
        """Build a document stamped with the current (or given) UTC time."""
        return cls(
            patient_id=str(patient_id),
            document_type=str(document_type),
            data=dict(data or {}),
            author=str(author),
            timestamp_utc=format_timestamp(at or _now_utc()),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "patientId": self.patient_id,
            "date": self.timestamp_utc,
            "type": self.document_type,
            "data": self.data,
            "doctor": self.author,
        }

    def canonical(self) -> str:
        return canonical_json_dumps(self.to_payload())
