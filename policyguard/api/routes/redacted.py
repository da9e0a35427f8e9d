"""API route for serving de-identified document text via signed URLs.

Endpoint
--------
GET /v1/redacted/{file_id}?expires=<unix_ts>&sig=<hex_hmac>
    Verify the HMAC-SHA256 signature and expiry timestamp, then return the
    stored redacted text as ``text/plain``.

    Returns:
        ``200 OK`` with the redacted text.
        ``403 Forbidden`` if the signature is invalid or the URL has expired.
        ``404 Not Found`` if the file does not exist in storage.

The signed-URL parameters act as a short-lived bearer credential for one
file; the URL itself is what the pipeline persists as ``pii_redacted_url``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from policyguard.api.dependencies import get_redacted_storage
from policyguard.services.storage import RedactedTextStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/redacted", tags=["redacted"])


@router.get("/{file_id}", response_class=PlainTextResponse)
async def download_redacted(
    file_id: str,
    expires: int = Query(..., description="Unix UTC expiry timestamp embedded in the signed URL"),
    sig: str = Query(..., description="HMAC-SHA256 hex digest for signature verification"),
    storage: RedactedTextStorage = Depends(get_redacted_storage),
) -> PlainTextResponse:
    if not storage.verify_signature(file_id, expires, sig):
        raise HTTPException(status_code=403, detail="Invalid or expired signed URL")

    content_bytes = storage.retrieve(file_id)
    if content_bytes is None:
        raise HTTPException(status_code=404, detail="Redacted text not found")

    logger.info("Serving redacted text file_id=%s", file_id)
    return PlainTextResponse(content=content_bytes.decode("utf-8"), status_code=200)
