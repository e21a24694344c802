"""Clinical signing package.

Certificate-based digital signing of clinical documents:

- Unlock a password-protected PKCS#12 (.pfx) container in memory
- Sign canonical document text with the container's private key
- Keep the unlocked key in an explicit per-user KeySession
- Drive the interactive password prompt for deferred signatures

Convenience imports
------------------
The package intentionally avoids heavy import-time side effects. For convenience,
these are available as top-level imports:

    from clinical_signing import KeySession, ContainerLoader, unlock_container

All of them are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "ClinicalDocument",
    "ContainerLoader",
    "KeySession",
    "SessionState",
    "UnlockPrompt",
    "UnlockedKey",
    "create_app",
    "provision_container",
    "sign_document",
    "unlock_container",
    "verify_document_signature",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "ClinicalDocument": ("clinical_signing.canonical", "ClinicalDocument"),
    "ContainerLoader": ("clinical_signing.loader", "ContainerLoader"),
    "KeySession": ("clinical_signing.session", "KeySession"),
    "SessionState": ("clinical_signing.session", "SessionState"),
    "UnlockPrompt": ("clinical_signing.prompt", "UnlockPrompt"),
    "UnlockedKey": ("clinical_signing.unlocker", "UnlockedKey"),
    "create_app": ("clinical_signing.server", "create_app"),
    "provision_container": ("clinical_signing.provision", "provision_container"),
    "sign_document": ("clinical_signing.signing", "sign_document"),
    "unlock_container": ("clinical_signing.unlocker", "unlock_container"),
    "verify_document_signature": ("clinical_signing.signing", "verify_document_signature"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'clinical_signing' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
