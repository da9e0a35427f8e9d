"""Unit tests for GET /v1/redacted/{file_id}."""

from __future__ import annotations

from urllib.parse import urlparse

import pytest
from fastapi.testclient import TestClient

from policyguard.api.dependencies import get_redacted_storage
from policyguard.main import app
from policyguard.services.storage import RedactedTextStorage


@pytest.fixture
def storage(tmp_path) -> RedactedTextStorage:
    return RedactedTextStorage(
        storage_dir=str(tmp_path),
        base_url="http://testserver",
        secret_key="redacted-api-secret",
    )


@pytest.fixture
def client(storage):
    app.dependency_overrides[get_redacted_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


def _path(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.path}?{parsed.query}"


def test_valid_url_serves_text(client, storage) -> None:
    storage._write("upload-1-abc", "SSN [SSN REDACTED] on file")
    url = storage.signed_url("upload-1-abc")

    response = client.get(_path(url))

    assert response.status_code == 200
    assert response.text == "SSN [SSN REDACTED] on file"
    assert response.headers["content-type"].startswith("text/plain")


def test_bad_signature_forbidden(client, storage) -> None:
    url = storage.signed_url("upload-1-abc")
    response = client.get(_path(url).replace("sig=", "sig=0"))
    assert response.status_code == 403


def test_expired_url_forbidden(client, storage) -> None:
    url = storage.signed_url("upload-1-abc", ttl_seconds=-10)
    assert client.get(_path(url)).status_code == 403


def test_missing_file_not_found(client, storage) -> None:
    url = storage.signed_url("never-written")
    assert client.get(_path(url)).status_code == 404


def test_missing_query_parameters(client) -> None:
    assert client.get("/v1/redacted/upload-1-abc").status_code == 422
