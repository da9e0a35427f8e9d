"""API routes for upload processing.

Endpoints
---------
POST /v1/uploads/{upload_id}/process
    Queue the upload for the document processing pipeline.  Returns
    ``202 Accepted`` with the Celery task id.  ``404`` when the upload does
    not exist, ``409`` when it is already being processed.

GET  /v1/uploads/{upload_id}/status
    Current upload status, PII flag, completion timestamp, applicable
    frameworks and the error recorded by the last failed run.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from policyguard.api.dependencies import get_processing_store
from policyguard.core.contracts import UploadStatus
from policyguard.core.processing_context import ProcessingContext
from policyguard.repositories.processing_store import SqlAlchemyProcessingStore
from policyguard.schemas.upload import (
    ProcessUploadRequest,
    ProcessUploadResponse,
    UploadStatusResponse,
)
from policyguard.workers.process_worker import process_upload_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/uploads", tags=["uploads"])

# Celery message priority per processing priority (Redis transport: 0 is highest).
_TASK_PRIORITY: dict[str, int] = {"high": 0, "normal": 5, "low": 9}


@router.post("/{upload_id}/process", status_code=202, response_model=ProcessUploadResponse)
async def process_upload(
    upload_id: str,
    body: ProcessUploadRequest | None = None,
    store: SqlAlchemyProcessingStore = Depends(get_processing_store),
) -> ProcessUploadResponse:
    """Queue *upload_id* for processing.

    Raises:
        :class:`~fastapi.HTTPException`: ``404`` if the upload is unknown or
            has no stored file; ``409`` if it is already processing; ``422``
            if its document type is not processable.
    """
    upload = await store.get_upload(upload_id)
    if upload is None or not upload.file_path:
        raise HTTPException(status_code=404, detail="Upload not found")
    if upload.status == UploadStatus.PROCESSING:
        raise HTTPException(status_code=409, detail="Upload is already being processed")

    priority = body.priority if body is not None else "normal"
    try:
        context = ProcessingContext(
            upload_id=upload.id,
            file_path=upload.file_path,
            document_type=upload.document_type,  # type: ignore[arg-type]
            institution_id=upload.institution_id,
            user_id=upload.user_id or "",
            priority=priority,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    task = process_upload_task.apply_async(
        kwargs={"context": context.to_dict()},
        priority=_TASK_PRIORITY[priority],
    )
    logger.info("Upload queued for processing: upload_id=%s task_id=%s priority=%s", upload_id, task.id, priority)
    return ProcessUploadResponse(upload_id=upload_id, task_id=task.id)


@router.get("/{upload_id}/status", response_model=UploadStatusResponse)
async def upload_status(
    upload_id: str,
    store: SqlAlchemyProcessingStore = Depends(get_processing_store),
) -> UploadStatusResponse:
    upload = await store.get_upload(upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")

    result = await store.get_processing_result(upload_id)
    return UploadStatusResponse(
        upload_id=upload.id,
        status=upload.status.value,
        pii_detected=upload.pii_detected,
        processed_at=upload.processed_at,
        error_message=result.error_message if result is not None else None,
        frameworks=list(result.frameworks) if result is not None else [],
    )
