"""Pydantic schemas for the upload processing API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class ProcessUploadRequest(BaseModel):
    """Optional body of ``POST /v1/uploads/{upload_id}/process``."""

    priority: Literal["low", "normal", "high"] = "normal"


class ProcessUploadResponse(BaseModel):
    upload_id: str
    task_id: str
    status: Literal["queued"] = "queued"


class UploadStatusResponse(BaseModel):
    """Processing status of one upload.

    Attributes:
        upload_id: Upload identifier.
        status: ``UPLOADED``, ``PROCESSING``, ``COMPLETE`` or ``FAILED``.
        pii_detected: Whether the PII stage found personal data; ``None``
            until that stage has run.
        processed_at: UTC completion timestamp of the last successful run.
        error_message: Error recorded by the last failed run.
        frameworks: Applicable frameworks from the last run.
    """

    upload_id: str
    status: str
    pii_detected: bool | None = None
    processed_at: datetime | None = None
    error_message: str | None = None
    frameworks: list[str] = []
