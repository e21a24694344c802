"""Caller authentication helpers.

The certificate container may only be fetched on behalf of an authenticated
caller. This module provides a simple API-key based identity mechanism for the
HTTP adapter; embedding applications can construct an `AuthContext` from their
own session management instead.

Env vars:
  - CS_API_KEYS_JSON: JSON dict mapping api_key -> signer_id
  - CS_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

ENV_API_KEYS_JSON = "CS_API_KEYS_JSON"
ENV_API_KEYS_FILE = "CS_API_KEYS_FILE"


def _signer_map(data: Any) -> Dict[str, str]:
    """Validate an {api_key: signer_id} object; blank entries are invalid."""
    if not isinstance(data, dict):
        raise ValueError("API key config must be a JSON object")
    signers = {str(k).strip(): str(v).strip() for k, v in data.items()}
    if any(not k or not v for k, v in signers.items()):
        raise ValueError("API key config has blank keys or signer ids")
    return signers


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity context."""

    signer_id: Optional[str]
    authenticated: bool
    error: Optional[str] = None

    @classmethod
    def authenticated_as(cls, signer_id: str) -> "AuthContext":
        return cls(signer_id=str(signer_id), authenticated=True)

    @classmethod
    def anonymous(cls, error: Optional[str] = None) -> "AuthContext":
        return cls(signer_id=None, authenticated=False, error=error)


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    api_key_to_signer: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Build the key map from CS_API_KEYS_JSON, else CS_API_KEYS_FILE.

        Present-but-broken configuration yields an instance with
        config_error set, so every caller is rejected.
        """
        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        if not raw_json and not file_path:
            return cls(api_key_to_signer={})

        try:
            if raw_json:
                data = json.loads(raw_json)
            else:
                data = json.loads(Path(file_path).read_text(encoding="utf-8"))
            signers = _signer_map(data)
        except (OSError, ValueError):
            return cls(api_key_to_signer={}, configured=True, config_error="API_KEY_CONFIG_INVALID")
        return cls(api_key_to_signer=signers, configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve_context(self, api_key: Optional[str]) -> AuthContext:
        """Resolve the caller behind an API key.

        Unlike a best-effort identity header, signing always requires a key:
        without configuration no caller is authenticated.
        """
        if self.config_error:
            return AuthContext.anonymous(self.config_error)
        if not self.enabled():
            return AuthContext.anonymous("API_KEY_AUTH_NOT_CONFIGURED")
        if not api_key:
            return AuthContext.anonymous("API_KEY_REQUIRED")
        signer_id = self.api_key_to_signer.get(api_key)
        if not signer_id:
            return AuthContext.anonymous("API_KEY_INVALID")
        return AuthContext.authenticated_as(signer_id)
