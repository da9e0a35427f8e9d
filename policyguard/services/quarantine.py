"""FileQuarantineService - encrypted quarantine copies of rejected uploads.

When the virus-scan stage finds a detection recommending ``quarantine`` or
``block``, the pipeline hands the file bytes to
:meth:`FileQuarantineService.quarantine`.  The service:

* encrypts the bytes with AES-256-GCM under a key derived from the
  application secret via HKDF-SHA-256,
* writes the blob to ``quarantine_dir/{quarantine_id}.bin``, next to a
  ``{quarantine_id}.json`` metadata file (upload id, SHA-256, detections),
* emits a ``FILE_QUARANTINED`` security event as a JSON log line.

Blob format: ``<12-byte nonce> || <ciphertext+GCM-tag>``.  Tampering with the
blob is detected by :meth:`retrieve`.

Usage::

    from policyguard.services.quarantine import FileQuarantineService

    svc = FileQuarantineService(quarantine_dir="/var/quarantine", secret_key=key)
    quarantine_id = await svc.quarantine("upload-1", raw_bytes, scan_result)
    raw = await svc.retrieve(quarantine_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from prometheus_client import Counter

from policyguard.core.threat_scanner import ThreatScanResult

if TYPE_CHECKING:
    from policyguard.config import Settings

logger = logging.getLogger(__name__)

_QUARANTINE_OPS = Counter(
    "policyguard_quarantine_operations_total",
    "Total quarantine operations by type",
    ["operation"],  # quarantine | retrieve | release
)

_QUARANTINE_ERRORS = Counter(
    "policyguard_quarantine_errors_total",
    "Total quarantine operation errors by type",
    ["operation"],
)

# Changing this value invalidates all existing quarantined blobs.
_HKDF_INFO = b"policyguard:quarantine:aes256gcm:v1"

_NONCE_LEN = 12
_TAG_LEN = 16
_ID_RE = re.compile(r"^[0-9a-f]{32}$")


class QuarantineError(Exception):
    """Raised when a quarantine operation fails."""


class QuarantineNotFoundError(QuarantineError):
    """Raised when no quarantined blob exists for an id."""


class FileQuarantineService:
    """AES-256-GCM quarantine on the local filesystem.

    Args:
        quarantine_dir: Directory holding blobs and metadata files.
        secret_key: Secret used for key derivation.
    """

    def __init__(self, quarantine_dir: str, secret_key: str) -> None:
        self._dir = quarantine_dir
        self._aes_key = self._derive_key(secret_key)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "FileQuarantineService":
        return cls(quarantine_dir=settings.quarantine_dir, secret_key=settings.secret_key)

    @staticmethod
    def _derive_key(secret: str) -> bytes:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_HKDF_INFO)
        return hkdf.derive(secret.encode("utf-8"))

    def _encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(_NONCE_LEN)
        return nonce + AESGCM(self._aes_key).encrypt(nonce, plaintext, None)

    def _decrypt(self, blob: bytes) -> bytes:
        if len(blob) < _NONCE_LEN + _TAG_LEN:
            raise QuarantineError("Encrypted blob is too short; possible corruption.")
        try:
            return AESGCM(self._aes_key).decrypt(blob[:_NONCE_LEN], blob[_NONCE_LEN:], None)
        except Exception as exc:
            raise QuarantineError(
                "AES-GCM decryption failed; blob may be tampered or key mismatch."
            ) from exc

    def _paths(self, quarantine_id: str) -> tuple[str, str]:
        if not _ID_RE.match(quarantine_id):
            raise QuarantineNotFoundError(f"Invalid quarantine id {quarantine_id!r}")
        base = os.path.join(self._dir, quarantine_id)
        return f"{base}.bin", f"{base}.json"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def quarantine(self, upload_id: str, data: bytes, scan_result: ThreatScanResult) -> str:
        """Encrypt and store *data*; return the new quarantine id.

        Raises:
            QuarantineError: If encryption or the filesystem write fails.
        """
        quarantine_id = uuid.uuid4().hex
        metadata: dict[str, Any] = {
            "quarantine_id": quarantine_id,
            "upload_id": upload_id,
            "file_hash": scan_result.file_hash,
            "file_size": scan_result.file_size,
            "engine": scan_result.engine,
            "detections": [
                {"name": t.name, "category": t.category, "severity": t.severity, "action": t.action}
                for t in scan_result.threats
            ],
            "quarantined_at": datetime.now(tz=timezone.utc).isoformat(),
        }

        try:
            blob = self._encrypt(data)
            await asyncio.to_thread(self._write, quarantine_id, blob, metadata)
        except Exception as exc:
            _QUARANTINE_ERRORS.labels(operation="quarantine").inc()
            raise QuarantineError(f"Failed to quarantine upload {upload_id}: {exc}") from exc

        _QUARANTINE_OPS.labels(operation="quarantine").inc()
        logger.warning(
            json.dumps(
                {
                    "event": "security_event",
                    "type": "FILE_QUARANTINED",
                    "quarantine_id": quarantine_id,
                    "upload_id": upload_id,
                    "file_hash": scan_result.file_hash,
                    "reason": ", ".join(sorted({t.category for t in scan_result.threats})),
                }
            )
        )
        return quarantine_id

    async def retrieve(self, quarantine_id: str) -> bytes:
        """Return the decrypted bytes of a quarantined file.

        Raises:
            QuarantineNotFoundError: If the blob does not exist.
            QuarantineError: If decryption fails.
        """
        blob_path, _ = self._paths(quarantine_id)
        try:
            blob = await asyncio.to_thread(_read_bytes, blob_path)
        except FileNotFoundError as exc:
            _QUARANTINE_ERRORS.labels(operation="retrieve").inc()
            raise QuarantineNotFoundError(f"Quarantined blob {quarantine_id} not found") from exc

        try:
            plaintext = self._decrypt(blob)
        except QuarantineError:
            _QUARANTINE_ERRORS.labels(operation="retrieve").inc()
            raise

        _QUARANTINE_OPS.labels(operation="retrieve").inc()
        return plaintext

    async def metadata(self, quarantine_id: str) -> dict[str, Any]:
        _, meta_path = self._paths(quarantine_id)
        try:
            raw = await asyncio.to_thread(_read_bytes, meta_path)
        except FileNotFoundError as exc:
            raise QuarantineNotFoundError(f"Quarantine metadata {quarantine_id} not found") from exc
        return json.loads(raw)

    async def release(self, quarantine_id: str) -> None:
        """Delete the blob and metadata for *quarantine_id*."""
        blob_path, meta_path = self._paths(quarantine_id)
        if not os.path.exists(blob_path):
            raise QuarantineNotFoundError(f"Quarantined blob {quarantine_id} not found")
        for path in (blob_path, meta_path):
            if os.path.exists(path):
                os.remove(path)
        _QUARANTINE_OPS.labels(operation="release").inc()
        logger.info(json.dumps({"event": "security_event", "type": "FILE_RELEASED", "quarantine_id": quarantine_id}))

    def _write(self, quarantine_id: str, blob: bytes, metadata: dict[str, Any]) -> None:
        os.makedirs(self._dir, exist_ok=True)
        blob_path, meta_path = self._paths(quarantine_id)
        with open(blob_path, "wb") as fh:
            fh.write(blob)
        with open(meta_path, "w", encoding="utf-8") as fh:
            json.dump(metadata, fh)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()
