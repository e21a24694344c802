import math
from datetime import datetime, timezone

import pytest

from clinical_signing.canonical import ClinicalDocument, canonical_json_dumps, format_timestamp
from clinical_signing.errors import (
    SigningCoreError,
    CS_E_CANON_DEPTH,
    CS_E_CANON_INT_TOO_LARGE,
    CS_E_CANON_KEY_COLLISION,
    CS_E_CANON_KEY_TYPE,
    CS_E_CANON_NON_JSON,
    CS_E_CANON_NONFINITE,
)


def test_key_order_does_not_change_bytes():
    a = {"patientId": "123", "date": "2024-01-01", "data": {"b": 1, "a": [1, 2]}}
    b = {"data": {"a": [1, 2], "b": 1}, "date": "2024-01-01", "patientId": "123"}
    assert canonical_json_dumps(a) == canonical_json_dumps(b)
    assert canonical_json_dumps(a) == '{"data":{"a":[1,2],"b":1},"date":"2024-01-01","patientId":"123"}'


def test_unicode_is_utf8_and_nfc_normalized():
    composed = "Jos\u00e9"
    decomposed = "Jose\u0301"
    assert canonical_json_dumps({"n": composed}) == canonical_json_dumps({"n": decomposed})
    assert canonical_json_dumps({"n": composed}) == "{\"n\":\"Jos\u00e9\"}"


@pytest.mark.parametrize(
    "obj,code",
    [
        ({"x": math.nan}, CS_E_CANON_NONFINITE),
        ({"x": math.inf}, CS_E_CANON_NONFINITE),
        ({1: "x"}, CS_E_CANON_KEY_TYPE),
        ({"x": object()}, CS_E_CANON_NON_JSON),
        ({"x": 10 ** 200}, CS_E_CANON_INT_TOO_LARGE),
        ({"Jos\u00e9": 1, "Jose\u0301": 2}, CS_E_CANON_KEY_COLLISION),
    ],
)
def test_non_canonical_values_are_rejected(obj, code):
    with pytest.raises(SigningCoreError) as ei:
        canonical_json_dumps(obj)
    assert ei.value.code == code


def test_depth_limit():
    obj = current = {}
    for _ in range(80):
        current["n"] = {}
        current = current["n"]
    with pytest.raises(SigningCoreError) as ei:
        canonical_json_dumps(obj)
    assert ei.value.code == CS_E_CANON_DEPTH


def test_key_collision_names_the_field():
    with pytest.raises(SigningCoreError) as ei:
        canonical_json_dumps({"data": {"Jos\u00e9": 1, "Jose\u0301": 2}})
    assert ei.value.details == {"field": "Jos\u00e9"}


def test_timestamp_format_is_fixed_width_utc():
    dt = datetime(2024, 1, 1, 12, 30, 5, 123456, tzinfo=timezone.utc)
    assert format_timestamp(dt) == "2024-01-01T12:30:05.123Z"
    assert format_timestamp(datetime(2024, 1, 1)) == "2024-01-01T00:00:00.000Z"


def test_clinical_document_payload_uses_record_field_names():
    at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    doc = ClinicalDocument.create("123", "anamnese-facial", {"queixa": "acne"}, author="Dra. Test", at=at)
    assert doc.canonical() == (
        '{"data":{"queixa":"acne"},"date":"2024-01-01T00:00:00.000Z",'
        '"doctor":"Dra. Test","patientId":"123","type":"anamnese-facial"}'
    )


def test_same_logical_document_serializes_identically():
    at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    d1 = ClinicalDocument.create("123", "evolucao", {"a": 1, "b": [1, 2]}, author="X", at=at)
    d2 = ClinicalDocument.create("123", "evolucao", {"b": [1, 2], "a": 1}, author="X", at=at)
    assert d1.canonical() == d2.canonical()
