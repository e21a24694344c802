import json

from clinical_signing.auth import ApiKeyAuth, AuthContext, ENV_API_KEYS_JSON, ENV_API_KEYS_FILE


def test_auth_not_configured_authenticates_nobody(monkeypatch):
    monkeypatch.delenv(ENV_API_KEYS_JSON, raising=False)
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)

    auth = ApiKeyAuth.load_from_env()
    assert auth.enabled() is False

    ctx = auth.resolve_context("anything")
    assert ctx.authenticated is False
    assert ctx.error == "API_KEY_AUTH_NOT_CONFIGURED"


def test_auth_configured_requires_api_key(monkeypatch):
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps({"k1": "dr_alice"}))
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)

    auth = ApiKeyAuth.load_from_env()
    assert auth.enabled() is True

    ctx = auth.resolve_context(None)
    assert ctx.authenticated is False
    assert ctx.error == "API_KEY_REQUIRED"


def test_auth_valid_key_resolves_signer(monkeypatch):
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps({"k1": "dr_alice"}))
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)

    ctx = ApiKeyAuth.load_from_env().resolve_context("k1")
    assert ctx == AuthContext.authenticated_as("dr_alice")


def test_auth_invalid_key_rejected(monkeypatch):
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps({"k1": "dr_alice"}))
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)

    ctx = ApiKeyAuth.load_from_env().resolve_context("nope")
    assert ctx.signer_id is None
    assert ctx.error == "API_KEY_INVALID"


def test_auth_malformed_config_fails_closed(monkeypatch):
    # If the deployer sets env but it's malformed, fail closed.
    monkeypatch.setenv(ENV_API_KEYS_JSON, "not json")
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)

    auth = ApiKeyAuth.load_from_env()
    assert auth.enabled() is True

    ctx = auth.resolve_context("k1")
    assert ctx.authenticated is False
    assert ctx.error == "API_KEY_CONFIG_INVALID"


def test_auth_non_object_json_fails_closed(monkeypatch):
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps(["k1"]))
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)

    assert ApiKeyAuth.load_from_env().resolve_context("k1").error == "API_KEY_CONFIG_INVALID"


def test_auth_file_config(monkeypatch, tmp_path):
    p = tmp_path / "keys.json"
    p.write_text(json.dumps({"k2": "dr_carol"}), encoding="utf-8")

    monkeypatch.delenv(ENV_API_KEYS_JSON, raising=False)
    monkeypatch.setenv(ENV_API_KEYS_FILE, str(p))

    auth = ApiKeyAuth.load_from_env()
    assert auth.enabled() is True
    assert auth.resolve_context("k2").signer_id == "dr_carol"


def test_auth_missing_file_fails_closed(monkeypatch, tmp_path):
    monkeypatch.delenv(ENV_API_KEYS_JSON, raising=False)
    monkeypatch.setenv(ENV_API_KEYS_FILE, str(tmp_path / "absent.json"))

    assert ApiKeyAuth.load_from_env().resolve_context("k2").error == "API_KEY_CONFIG_INVALID"


def test_auth_blank_entries_fail_closed(monkeypatch):
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps({"k1": "dr_alice", "k2": "  "}))
    monkeypatch.delenv(ENV_API_KEYS_FILE, raising=False)

    auth = ApiKeyAuth.load_from_env()
    assert auth.enabled() is True
    assert auth.resolve_context("k1").error == "API_KEY_CONFIG_INVALID"
