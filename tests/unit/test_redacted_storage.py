"""Unit tests for policyguard.services.storage.RedactedTextStorage."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from policyguard.services.storage import RedactedTextStorage

_BASE_URL = "https://policyguard.test/"


@pytest.fixture
def storage(tmp_path: Path) -> RedactedTextStorage:
    return RedactedTextStorage(
        storage_dir=str(tmp_path),
        base_url=_BASE_URL,
        secret_key="storage-test-secret",
        ttl_seconds=600,
    )


def _parse(url: str) -> tuple[str, int, str]:
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    return parsed.path.rsplit("/", 1)[-1], int(query["expires"][0]), query["sig"][0]


@pytest.mark.asyncio
async def test_save_writes_file_and_returns_signed_url(storage) -> None:
    url = await storage.save("upload-1", "Contact [EMAIL REDACTED]")

    assert url.startswith("https://policyguard.test/v1/redacted/upload-1-")
    file_id, expires, sig = _parse(url)
    assert storage.verify_signature(file_id, expires, sig)
    assert storage.retrieve(file_id) == b"Contact [EMAIL REDACTED]"


@pytest.mark.asyncio
async def test_each_save_gets_a_new_file(storage) -> None:
    first = _parse(await storage.save("upload-1", "a"))[0]
    second = _parse(await storage.save("upload-1", "b"))[0]
    assert first != second


def test_url_expiry_uses_ttl(storage) -> None:
    with patch("policyguard.services.storage.time.time", return_value=1_000_000):
        _, expires, _ = _parse(storage.signed_url("file-1"))
    assert expires == 1_000_600


def test_expired_url_rejected(storage) -> None:
    file_id, expires, sig = _parse(storage.signed_url("file-1", ttl_seconds=-1))
    assert not storage.verify_signature(file_id, expires, sig)


def test_tampered_signature_rejected(storage) -> None:
    file_id, expires, sig = _parse(storage.signed_url("file-1"))
    assert not storage.verify_signature(file_id, expires, "0" * len(sig))
    assert not storage.verify_signature("file-2", expires, sig)
    assert not storage.verify_signature(file_id, expires + 1, sig)


def test_different_secret_rejected(storage, tmp_path) -> None:
    file_id, expires, sig = _parse(storage.signed_url("file-1"))
    other = RedactedTextStorage(str(tmp_path), _BASE_URL, "another-secret")
    assert not other.verify_signature(file_id, expires, sig)


def test_retrieve_missing_returns_none(storage) -> None:
    assert storage.retrieve("missing") is None


@pytest.mark.asyncio
async def test_path_traversal_stripped(storage, tmp_path) -> None:
    url = await storage.save("../../etc/passwd", "x")
    file_id, _, _ = _parse(url)
    assert file_id.startswith("etcpasswd-")
    assert storage.retrieve("../" + file_id) == b"x"
    assert len(list(tmp_path.iterdir())) == 1


def test_from_settings(tmp_path) -> None:
    from policyguard.config import Settings

    settings = Settings(
        redacted_files_dir=str(tmp_path),
        redacted_base_url="http://api.local",
        redacted_url_ttl_seconds=30,
    )
    storage = RedactedTextStorage.from_settings(settings)
    with patch("policyguard.services.storage.time.time", return_value=100):
        url = storage.signed_url("f")
    assert url.startswith("http://api.local/v1/redacted/f?expires=130&sig=")
