import pytest

from clinical_signing.errors import InvalidPassword, KeyNotFound
from clinical_signing.loader import FileBlobStore, InMemoryBlobStore
from clinical_signing.provision import main, provision_container

from conftest import OBJECT_ID, PASSWORD, SIGNER_CN


def test_provision_uploads_a_valid_container(pfx_bytes):
    store = InMemoryBlobStore()
    assert provision_container(store, OBJECT_ID, pfx_bytes) is None
    assert store.objects[OBJECT_ID] == pfx_bytes


def test_provision_with_password_check_returns_the_key(pfx_bytes):
    store = InMemoryBlobStore()
    key = provision_container(store, OBJECT_ID, pfx_bytes, check_password=PASSWORD)
    assert key.subject_common_name == SIGNER_CN
    assert OBJECT_ID in store.objects


def test_provision_refuses_malformed_bytes():
    store = InMemoryBlobStore({OBJECT_ID: b"previous"})
    with pytest.raises(InvalidPassword) as ei:
        provision_container(store, OBJECT_ID, b"definitely not pkcs12")
    assert ei.value.details["reason"] == "malformed"
    assert store.objects[OBJECT_ID] == b"previous"


def test_provision_wrong_password_uploads_nothing(pfx_bytes):
    store = InMemoryBlobStore()
    with pytest.raises(InvalidPassword):
        provision_container(store, OBJECT_ID, pfx_bytes, check_password="wrong-pass")
    assert store.objects == {}


def test_provision_check_rejects_container_without_key(pfx_cert_only):
    store = InMemoryBlobStore()
    with pytest.raises(KeyNotFound):
        provision_container(store, OBJECT_ID, pfx_cert_only, check_password=PASSWORD)
    assert store.objects == {}


def test_cli_uploads_to_file_backend(monkeypatch, tmp_path, capsys, pfx_bytes):
    src = tmp_path / "cert.pfx"
    src.write_bytes(pfx_bytes)
    root = tmp_path / "blobs"
    monkeypatch.setenv("CS_BLOB_BACKEND", "file")
    monkeypatch.setenv("CS_BLOB_ROOT", str(root))
    monkeypatch.setenv("CS_CONTAINER_OBJECT", OBJECT_ID)

    assert main([str(src)]) == 0
    assert FileBlobStore(str(root)).download(OBJECT_ID) == pfx_bytes
    assert capsys.readouterr().out.startswith("OK: ")


def test_cli_reports_invalid_file(monkeypatch, tmp_path, capsys):
    src = tmp_path / "cert.pfx"
    src.write_bytes(b"garbage")
    monkeypatch.setenv("CS_BLOB_BACKEND", "file")
    monkeypatch.setenv("CS_BLOB_ROOT", str(tmp_path / "blobs"))

    assert main([str(src), "--object-id", "x.pfx"]) == 1
    assert "CS_E_INVALID_PASSWORD" in capsys.readouterr().out
    assert not (tmp_path / "blobs" / "x.pfx").exists()
