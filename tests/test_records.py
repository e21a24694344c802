import json
from datetime import datetime, timezone

import pytest

from clinical_signing.canonical import ClinicalDocument
from clinical_signing.errors import SigningCoreError, SigningError, CS_E_NOT_UNLOCKED, CS_E_RECORD_STORAGE
from clinical_signing.records import (
    InMemoryRecordSink,
    JsonlRecordSink,
    SignedRecord,
    build_signed_record,
    sign_and_save,
)
from clinical_signing.signing import verify_document_signature

from conftest import PASSWORD, SIGNER_CN

AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _doc():
    return ClinicalDocument.create("123", "anamnese-facial", {"queixa": "acne"}, author="Dra. Test", at=AT)


@pytest.mark.parametrize("signature", [None, "", "   "])
def test_blank_signature_is_refused(signature):
    with pytest.raises(SigningError) as ei:
        build_signed_record("{}", signature)
    assert ei.value.details["reason"] == "blank_signature"


def test_sinks_reject_unsigned_records(tmp_path):
    record = SignedRecord(canonical_document="{}", signature="", signed_at_utc="2024-01-01T00:00:00.000Z")
    with pytest.raises(SigningError):
        InMemoryRecordSink().save(record)
    with pytest.raises(SigningError):
        JsonlRecordSink(str(tmp_path / "r.jsonl")).save(record)


def test_record_carries_document_metadata():
    record = build_signed_record(_doc(), "c2ln", key_id="abc", title="Facial", signed_at=AT)
    assert record.patient_id == "123"
    assert record.document_type == "anamnese-facial"
    assert record.signer == "Dra. Test"
    assert record.signed_at_utc == "2024-01-01T00:00:00.000Z"
    assert record.canonical_document == _doc().canonical()


def test_jsonl_sink_appends_one_line_per_record(tmp_path):
    path = tmp_path / "records.jsonl"
    sink = JsonlRecordSink(str(path))
    sink.save(build_signed_record("{\"a\":1}", "c2ln", signed_at=AT))
    sink.save(build_signed_record("{\"a\":2}", "c2lnMg==", signed_at=AT))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[1])["signature"] == "c2lnMg=="


def test_jsonl_sink_storage_error(tmp_path):
    sink = JsonlRecordSink(str(tmp_path / "missing-dir" / "records.jsonl"))
    with pytest.raises(SigningCoreError) as ei:
        sink.save(build_signed_record("{}", "c2ln"))
    assert ei.value.code == CS_E_RECORD_STORAGE
    assert ei.value.retryable is True


@pytest.mark.asyncio
async def test_sign_and_save_requires_unlocked_session(key_session):
    sink = InMemoryRecordSink()
    with pytest.raises(SigningError) as ei:
        sign_and_save(key_session, _doc(), sink)
    assert ei.value.code == CS_E_NOT_UNLOCKED
    assert sink.records == []


@pytest.mark.asyncio
async def test_sign_and_save_persists_verifiable_record(key_session):
    await key_session.unlock(PASSWORD)
    sink = InMemoryRecordSink()
    record = sign_and_save(key_session, _doc(), sink, title="Facial")

    assert sink.records == [record]
    assert record.key_id == key_session.key_id
    assert record.signer == SIGNER_CN
    assert verify_document_signature(key_session.certificate, record.canonical_document, record.signature)
