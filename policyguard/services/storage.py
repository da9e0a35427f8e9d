"""RedactedTextStorage - de-identified text storage behind signed URLs.

The pipeline hands the redacted copy of a document's text to
:meth:`RedactedTextStorage.save`, which writes it under ``storage_dir`` and
returns a time-limited download URL for the ``GET /v1/redacted/{file_id}``
endpoint.  The URL is what gets persisted as ``pii_redacted_url``; the raw
extracted text is never stored.

Signed URLs have the form::

    {base_url}/v1/redacted/{file_id}?expires={unix_ts}&sig={hex_digest}

where ``sig`` is HMAC-SHA256 over ``"{file_id}:{expires}"`` keyed with the
application secret.  :meth:`verify_signature` rejects expired or tampered
URLs using a constant-time comparison.

Usage::

    from policyguard.services.storage import RedactedTextStorage

    storage = RedactedTextStorage.from_settings(get_settings())
    url = await storage.save("upload-1", "Contact [EMAIL REDACTED]")
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
import re
import time
import uuid
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from policyguard.config import Settings

logger = logging.getLogger(__name__)

_SIGN_SEP = ":"
_UNSAFE_ID_RE = re.compile(r"[^A-Za-z0-9_-]")


class RedactedTextStorage:
    """Local-directory store for redacted text with HMAC-signed URLs.

    Args:
        storage_dir: Directory where ``{file_id}.txt`` files are written.
        base_url: Base URL prepended to download paths.
        secret_key: HMAC signing key.
        ttl_seconds: Lifetime of URLs returned by :meth:`save`.
    """

    def __init__(
        self,
        storage_dir: str,
        base_url: str,
        secret_key: str,
        ttl_seconds: int = 3600,
    ) -> None:
        self._storage_dir = storage_dir
        self._base_url = base_url.rstrip("/")
        self._secret_key = secret_key.encode("utf-8")
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RedactedTextStorage":
        return cls(
            storage_dir=settings.redacted_files_dir,
            base_url=settings.redacted_base_url,
            secret_key=settings.secret_key,
            ttl_seconds=settings.redacted_url_ttl_seconds,
        )

    async def save(self, upload_id: str, redacted_text: str) -> str:
        """Persist *redacted_text* for *upload_id* and return a signed URL."""
        file_id = f"{_safe_id(upload_id)}-{uuid.uuid4().hex[:8]}"
        await asyncio.to_thread(self._write, file_id, redacted_text)

        url = self.signed_url(file_id)
        logger.info(
            "Redacted text stored: upload_id=%s file_id=%s ttl=%ds",
            upload_id,
            file_id,
            self._ttl_seconds,
        )
        return url

    def signed_url(self, file_id: str, ttl_seconds: int | None = None) -> str:
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl_seconds
        expires = int(time.time()) + ttl
        return f"{self._base_url}/v1/redacted/{file_id}?expires={expires}&sig={self._sign(file_id, expires)}"

    def verify_signature(self, file_id: str, expires: int, sig: str) -> bool:
        if time.time() > expires:
            logger.warning("Redacted text URL expired for file_id=%s", file_id)
            return False

        valid = hmac.compare_digest(self._sign(file_id, expires), sig)
        if not valid:
            logger.warning("Invalid redacted text URL signature for file_id=%s", file_id)
        return valid

    def retrieve(self, file_id: str) -> bytes | None:
        """Return the stored bytes for *file_id*, or ``None`` if absent."""
        path = self._file_path(file_id)
        if not os.path.exists(path):
            logger.warning("Redacted text not found: file_id=%s", file_id)
            return None
        with open(path, "rb") as fh:
            return fh.read()

    def _write(self, file_id: str, content: str) -> None:
        os.makedirs(self._storage_dir, exist_ok=True)
        with open(self._file_path(file_id), "w", encoding="utf-8") as fh:
            fh.write(content)

    def _file_path(self, file_id: str) -> str:
        return os.path.join(self._storage_dir, f"{_safe_id(file_id)}.txt")

    def _sign(self, file_id: str, expires: int) -> str:
        message = f"{file_id}{_SIGN_SEP}{expires}".encode("utf-8")
        return hmac.new(self._secret_key, message, hashlib.sha256).hexdigest()


def _safe_id(value: str) -> str:
    # Keeps identifiers inside storage_dir.
    return _UNSAFE_ID_RE.sub("", value)
