"""Certificate container retrieval.

A BlobStore is the external storage holding the PKCS#12 container under a
fixed, known object id. Stores can be in-memory (tests/embedding), a local
directory, or a remote HTTP object endpoint.

ContainerLoader sits in front of a store on behalf of one session:
- fails closed: no authenticated caller -> ContainerUnavailable, never a crash
- at most one successful store round-trip per session (bytes are cached)
- concurrent fetches are coalesced
- the blocking store call runs in a worker thread

Store failures are not retried automatically; the user retries by submitting
the unlock again.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Dict, Optional

from .auth import AuthContext
from .config import LOGGER_NAME, SigningConfig
from .errors import ContainerUnavailable
from .metrics import record_container_fetch

logger = logging.getLogger(LOGGER_NAME)

PKCS12_CONTENT_TYPE = "application/x-pkcs12"


class BlobStore(abc.ABC):
    """Object storage holding the certificate container."""

    @abc.abstractmethod
    def download(self, object_id: str) -> bytes:
        """Return the object's bytes or raise ContainerUnavailable."""
        raise NotImplementedError

    @abc.abstractmethod
    def upload(self, object_id: str, data: bytes) -> None:
        """Store `data` under `object_id`, replacing any previous object."""
        raise NotImplementedError


class InMemoryBlobStore(BlobStore):
    def __init__(self, objects: Optional[Dict[str, bytes]] = None):
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.downloads = 0

    def upload(self, object_id: str, data: bytes) -> None:
        self.objects[object_id] = bytes(data)

    def download(self, object_id: str) -> bytes:
        self.downloads += 1
        try:
            return self.objects[object_id]
        except KeyError:
            raise ContainerUnavailable(message="object not found", details={"object_id": object_id}) from None


class FileBlobStore(BlobStore):
    """Objects are files below a root directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _resolve(self, object_id: str) -> Path:
        root = self.root.resolve()
        p = (root / object_id).resolve()
        if p != root and root not in p.parents:
            raise ContainerUnavailable(message="object id escapes blob root", details={"object_id": object_id})
        return p

    def download(self, object_id: str) -> bytes:
        p = self._resolve(object_id)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            raise ContainerUnavailable(message="object not found", details={"object_id": object_id}) from None
        except OSError as e:
            raise ContainerUnavailable(message=f"object read failed: {e}", details={"object_id": object_id}) from e

    def upload(self, object_id: str, data: bytes) -> None:
        p = self._resolve(object_id)
        tmp = p.with_name(p.name + ".tmp")
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(bytes(data))
            os.replace(tmp, p)
        except OSError as e:
            raise ContainerUnavailable(message=f"object write failed: {e}", details={"object_id": object_id}) from e


class HttpBlobStore(BlobStore):
    """GET/PUT {base_url}/{object_id}, optionally with a bearer token."""

    def __init__(self, base_url: str, *, token: Optional[str] = None, timeout_s: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = float(timeout_s)

    def _url(self, object_id: str) -> str:
        return f"{self.base_url}/{urllib.parse.quote(object_id)}"

    def download(self, object_id: str) -> bytes:
        headers = {"Accept": "application/octet-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(self._url(object_id), headers=headers, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:
            status = int(getattr(e, "code", 0) or 0)
            msg = "object not found" if status == 404 else f"blob store HTTP {status}"
            raise ContainerUnavailable(message=msg, details={"object_id": object_id, "status": status}) from e
        except (urllib.error.URLError, OSError) as e:
            raise ContainerUnavailable(message=f"blob store network error: {e}", details={"object_id": object_id}) from e

    def upload(self, object_id: str, data: bytes) -> None:
        headers = {"Content-Type": PKCS12_CONTENT_TYPE, "x-upsert": "true"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = urllib.request.Request(self._url(object_id), data=bytes(data), headers=headers, method="PUT")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            status = int(getattr(e, "code", 0) or 0)
            raise ContainerUnavailable(
                message=f"blob store HTTP {status}", details={"object_id": object_id, "status": status}
            ) from e
        except (urllib.error.URLError, OSError) as e:
            raise ContainerUnavailable(message=f"blob store network error: {e}", details={"object_id": object_id}) from e


def build_blob_store(config: SigningConfig) -> BlobStore:
    if config.blob_backend == "http":
        if not config.blob_url:
            raise RuntimeError("CS_BLOB_URL must be set when CS_BLOB_BACKEND=http")
        return HttpBlobStore(config.blob_url, token=config.blob_token, timeout_s=config.fetch_timeout_seconds)
    if config.blob_backend == "memory":
        return InMemoryBlobStore()
    return FileBlobStore(config.blob_root)


class ContainerLoader:
    """Fetches and caches the certificate container for one session."""

    def __init__(self, store: BlobStore, object_id: str, auth: AuthContext):
        self.store = store
        self.object_id = object_id
        self.auth = auth
        self.fetch_count = 0
        self._cached: Optional[bytes] = None
        self._lock = asyncio.Lock()

    @property
    def is_cached(self) -> bool:
        return self._cached is not None

    async def fetch(self) -> bytes:
        """Return the container bytes, fetching them on first use.

        Raises ContainerUnavailable for every failure mode.
        """
        if self._cached is not None:
            return self._cached
        if not self.auth.authenticated:
            record_container_fetch("unauthenticated")
            raise ContainerUnavailable(message="no authenticated session", details={"reason": "unauthenticated"})

        async with self._lock:
            if self._cached is not None:
                return self._cached
            self.fetch_count += 1
            try:
                data = await asyncio.to_thread(self.store.download, self.object_id)
            except ContainerUnavailable as e:
                record_container_fetch("unavailable")
                logger.warning("Certificate container %r unavailable: %s", self.object_id, e.message)
                raise
            except Exception as e:
                record_container_fetch("error")
                logger.warning("Certificate container %r fetch failed: %s", self.object_id, e)
                raise ContainerUnavailable(message=f"fetch failed: {e}", details={"object_id": self.object_id}) from e

            if not data:
                record_container_fetch("empty")
                raise ContainerUnavailable(message="certificate container is empty", details={"object_id": self.object_id})

            record_container_fetch("ok")
            self._cached = bytes(data)
            return self._cached

    def clear(self) -> None:
        self._cached = None
