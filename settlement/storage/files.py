"""
File storage for generated batch CSVs and uploaded verification results.
Blobs are addressed by relative path and held in memory; the object-store
backend is an external collaborator, so only its contract lives here.
Retrieval references are HMAC-signed URLs with an expiry.
"""

import hashlib
import hmac
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
from urllib.parse import urlencode

import structlog

from settlement.config import settings
from settlement.errors import NotFound, StorageUnavailable
from settlement.models import utcnow

logger = structlog.get_logger(__name__)


def batch_csv_path(business_id: str, year: int, week: int, batch_id: str) -> str:
    """Path for the downloadable batch CSV."""
    return f"{business_id}/{year}-W{week:02d}/{batch_id}/batch.csv"


def upload_path(business_id: str, session_id: str, upload_id: str) -> str:
    """Path for an uploaded verification-results CSV."""
    return f"{business_id}/sessions/{session_id}/uploads/{upload_id}.csv"


@dataclass(frozen=True)
class SignedUrl:
    url: str
    path: str
    expires_at: datetime


class FileStore:
    """Save and load opaque blobs, and hand out expiring references to them."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self.base_url = (base_url or settings.SIGNED_URL_BASE).rstrip("/")
        self._secret = (secret or settings.SIGNED_URL_SECRET).encode("utf-8")
        self.ttl_seconds = ttl_seconds or settings.SIGNED_URL_TTL_SECONDS
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        # Flipped by operators (and tests) to simulate an outage
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StorageUnavailable("File storage is unavailable", code="FILE_STORAGE_UNAVAILABLE")

    def save_bytes(self, relative_path: str, data: bytes) -> str:
        """Save raw bytes. Returns the relative path."""
        self._check_available()
        with self._lock:
            self._blobs[relative_path] = bytes(data)
        logger.info("file_saved", path=relative_path, size_bytes=len(data))
        return relative_path

    def save_text(self, relative_path: str, text: str) -> str:
        return self.save_bytes(relative_path, text.encode("utf-8"))

    def load_bytes(self, relative_path: str) -> bytes:
        self._check_available()
        with self._lock:
            data = self._blobs.get(relative_path)
        if data is None:
            raise NotFound(f"File not found: {relative_path}", code="FILE_NOT_FOUND")
        return data

    def load_text(self, relative_path: str) -> str:
        return self.load_bytes(relative_path).decode("utf-8")

    def exists(self, relative_path: str) -> bool:
        with self._lock:
            return relative_path in self._blobs

    def _signature(self, relative_path: str, expires: int) -> str:
        message = f"{relative_path}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def signed_url(
        self,
        relative_path: str,
        ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SignedUrl:
        """Return an expiring reference to a stored file."""
        if not self.exists(relative_path):
            raise NotFound(f"File not found: {relative_path}", code="FILE_NOT_FOUND")
        now = now or utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds or self.ttl_seconds)
        expires = int(expires_at.timestamp())
        query = urlencode({"expires": expires, "signature": self._signature(relative_path, expires)})
        return SignedUrl(
            url=f"{self.base_url}/{relative_path}?{query}",
            path=relative_path,
            expires_at=expires_at,
        )

    def verify_signature(
        self,
        relative_path: str,
        expires: int,
        signature: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """True when the signature matches and the reference has not expired."""
        now = now or utcnow()
        if now.timestamp() > expires:
            return False
        return hmac.compare_digest(self._signature(relative_path, expires), signature)
