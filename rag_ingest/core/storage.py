"""
Supabase Storage client for transient RAG uploads.

The browser uploads straight to the bucket under "{user_id}/..."; the backend
only downloads the object once and removes it when the request finishes.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol
from urllib.parse import quote

import requests

from rag_ingest.core.errors import StorageError, StorageReadError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def download(self, path: str, timeout: Optional[float] = None) -> bytes: ...

    def remove(self, path: str) -> None: ...

    def discard(self, path: str) -> None: ...


class SupabaseStorage:
    """Object access for one bucket using the service-role key (bypasses RLS)."""

    def __init__(
        self,
        url: str,
        service_key: Optional[str],
        bucket: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base = f"{url.rstrip('/')}/storage/v1/object"
        self._bucket = bucket
        self._timeout = timeout
        self._configured = bool(service_key)
        self._session = session or requests.Session()
        if service_key:
            self._session.headers.update(
                {"Authorization": f"Bearer {service_key}", "apikey": service_key}
            )

    def _require_configured(self) -> None:
        if not self._configured:
            raise StorageError(
                "Storage is not configured. Set SUPABASE_SERVICE_ROLE_KEY in .env.",
                step="storage",
            )

    def _object_url(self, path: str) -> str:
        return f"{self._base}/{self._bucket}/{quote(path.lstrip('/'))}"

    def download(self, path: str, timeout: Optional[float] = None) -> bytes:
        self._require_configured()
        try:
            response = self._session.get(self._object_url(path), timeout=timeout or self._timeout)
        except requests.Timeout:
            raise StorageReadError("Failed to download file from storage: request timed out")
        except requests.RequestException as e:
            raise StorageReadError(f"Failed to download file from storage: {str(e)}")

        if response.status_code in (400, 404):
            raise StorageReadError("Failed to download file from storage: object not found")
        if not response.ok:
            raise StorageReadError(
                f"Failed to download file from storage: HTTP {response.status_code}"
            )
        return response.content

    def remove(self, path: str) -> None:
        self._require_configured()
        response = self._session.delete(
            f"{self._base}/{self._bucket}",
            json={"prefixes": [path]},
            timeout=self._timeout,
        )
        response.raise_for_status()

    def discard(self, path: str) -> None:
        """Best-effort remove: failures are logged, never raised."""
        try:
            self.remove(path)
        except Exception:
            logger.exception("Failed to remove transient blob %s", path)


@contextmanager
def transient_blob(store: BlobStore, path: str, timeout: Optional[float] = None) -> Iterator[bytes]:
    """
    Download `path` and guarantee its removal however the caller exits.

    Nothing is removed if the download itself fails, since there is then no
    blob this request has taken ownership of.
    """
    data = store.download(path, timeout=timeout)
    try:
        yield data
    finally:
        store.discard(path)
