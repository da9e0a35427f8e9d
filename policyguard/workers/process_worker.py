"""Celery processing worker - runs one upload through the pipeline.

:func:`process_upload_task` wraps
:class:`~policyguard.core.pipeline.DocumentProcessingPipeline` in a Celery
task routed to the ``policyguard`` queue.  The task payload is a
:class:`~policyguard.core.processing_context.ProcessingContext` serialised
with :meth:`~policyguard.core.processing_context.ProcessingContext.to_dict`
so that it travels cleanly over the JSON transport.

**At most one run per upload**

Before running the pipeline the task takes the Redis
:class:`~policyguard.workers.upload_lock.UploadLock` for the upload.  If
another worker holds it the task returns immediately with
``skipped=True``; the running job owns the upload's status.

**Retry policy**

Only Redis errors while taking the lock are retried, with exponential
back-off:

* Retry 1 - 2 s
* Retry 2 - 4 s
* Retry 3 - 8 s (max)

Pipeline failures are *not* retried: the pipeline already recorded the
failed stage and set the upload to ``FAILED``, and the returned dict
carries the user-facing error.

**Pipeline construction**

The pipeline is built inside each task invocation from the current
settings.  A fresh database engine is created per run and disposed
afterwards because every run gets its own event loop via
:func:`asyncio.run`.  ClamAV is included only when ``clamav_enabled`` is
set.

**Usage**::

    from policyguard.workers.process_worker import process_upload_task

    result = process_upload_task.apply_async(
        kwargs={"context": context.to_dict()},
        priority=5,
    )
    print(result.get())  # {"upload_id": "...", "success": True, "stages": [...], ...}

**Starting a worker**::

    celery -A policyguard.celery_app worker --loglevel=info -Q policyguard
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import redis

from policyguard.celery_app import celery_app
from policyguard.config import get_settings
from policyguard.core.artifact_generator import FileArtifactGenerator
from policyguard.core.entities import RegexEntityRecognizer
from policyguard.core.framework_mapper import KeywordFrameworkMapper
from policyguard.core.gap_analyzer import RequirementGapAnalyzer
from policyguard.core.pii_scanner import PiiScanner
from policyguard.core.pipeline import DocumentProcessingPipeline, PipelineOutcome
from policyguard.core.policy_redliner import TemplatePolicyRedliner
from policyguard.core.processing_context import ProcessingContext
from policyguard.core.text_extractor import DocumentTextExtractor
from policyguard.core.threat_scanner import ThreatScanner, ThreatScannerConfig
from policyguard.db.session import create_engine, create_sessionmaker
from policyguard.repositories.processing_store import SqlAlchemyProcessingStore
from policyguard.services.quarantine import FileQuarantineService
from policyguard.services.storage import RedactedTextStorage
from policyguard.workers.upload_lock import UploadLock

if TYPE_CHECKING:
    from policyguard.config import Settings
    from policyguard.core.contracts import ProcessingStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Maximum number of automatic retries for lock acquisition failures.
_MAX_RETRIES: int = 3

#: Base retry countdown in seconds; doubles on each successive attempt
#: (2 s, 4 s, 8 s).
_RETRY_BASE_SECONDS: int = 2


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _redis_client(settings: "Settings") -> redis.Redis:
    return redis.Redis.from_url(str(settings.redis_url))


def _build_pipeline(
    settings: "Settings",
    *,
    store: "ProcessingStore",
    text_extractor: DocumentTextExtractor,
) -> DocumentProcessingPipeline:
    """Construct a :class:`DocumentProcessingPipeline` from settings.

    Args:
        settings: Application settings.
        store: Persistence for this run.
        text_extractor: Extractor whose thread pool the caller owns.
    """
    av_engine = None
    if settings.clamav_enabled:
        from policyguard.core.clamav_adapter import ClamAVAdapter

        av_engine = ClamAVAdapter(
            host=settings.clamav_host,
            port=settings.clamav_port,
            timeout=settings.clamav_timeout,
        )

    return DocumentProcessingPipeline(
        store=store,
        threat_scanner=ThreatScanner(ThreatScannerConfig.from_settings(settings), av_engine=av_engine),
        pii_scanner=PiiScanner.from_settings(settings),
        text_extractor=text_extractor,
        entity_recognizer=RegexEntityRecognizer(),
        framework_mapper=KeywordFrameworkMapper(),
        gap_analyzer=RequirementGapAnalyzer(),
        policy_redliner=TemplatePolicyRedliner(),
        artifact_generator=FileArtifactGenerator(output_dir=settings.artifacts_dir),
        redacted_text_store=RedactedTextStorage.from_settings(settings),
        quarantine_service=FileQuarantineService.from_settings(settings),
        min_extracted_chars=settings.min_extracted_chars,
        default_institution_type=settings.default_institution_type,
    )


async def _run(context: ProcessingContext, settings: "Settings") -> PipelineOutcome:
    engine = create_engine(settings.database_url)
    try:
        store = SqlAlchemyProcessingStore(create_sessionmaker(engine))
        with DocumentTextExtractor(max_workers=settings.extractor_max_workers) as extractor:
            pipeline = _build_pipeline(settings, store=store, text_extractor=extractor)
            return await pipeline.process(context)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Celery task
# ---------------------------------------------------------------------------


@celery_app.task(
    name="policyguard.workers.process_worker.process_upload_task",
    bind=True,
    max_retries=_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_upload_task(self: Any, *, context: dict[str, Any]) -> dict[str, Any]:
    """Celery task: process one upload.

    Args:
        context: :meth:`ProcessingContext.to_dict` payload.

    Returns:
        :meth:`PipelineOutcome.to_dict` plus ``upload_id``.  When the upload
        is already being processed elsewhere the dict has ``skipped=True``
        and ``success=False``.  An invalid payload yields ``success=False``
        with the validation error.

    Raises:
        :exc:`celery.exceptions.Retry`: When Redis is unreachable while taking
            the upload lock (up to :data:`_MAX_RETRIES` retries).
    """
    try:
        ctx = ProcessingContext.from_dict(context)
    except (KeyError, TypeError, ValueError) as exc:
        logger.error("process_upload_task: invalid context: %r", exc)
        return {
            "upload_id": context.get("upload_id") if isinstance(context, dict) else None,
            "success": False,
            "error": f"Invalid processing context: {exc}",
        }

    settings = get_settings()
    lock = UploadLock(_redis_client(settings), ctx.upload_id, ttl_seconds=settings.upload_lock_ttl_seconds)

    try:
        acquired = lock.acquire()
    except redis.RedisError as exc:
        countdown = _RETRY_BASE_SECONDS * (2 ** self.request.retries)
        logger.warning(
            "process_upload_task: lock unavailable, retry %d/%d in %ds: upload_id=%s error=%r",
            self.request.retries + 1,
            _MAX_RETRIES,
            countdown,
            ctx.upload_id,
            exc,
        )
        raise self.retry(exc=exc, countdown=countdown)

    if not acquired:
        logger.info("process_upload_task: upload already in flight, skipping: upload_id=%s", ctx.upload_id)
        return {
            "upload_id": ctx.upload_id,
            "success": False,
            "skipped": True,
            "error": "Upload is already being processed",
        }

    try:
        outcome = asyncio.run(_run(ctx, settings))
    finally:
        lock.release()

    result = outcome.to_dict()
    result["upload_id"] = ctx.upload_id
    if outcome.success:
        logger.info(
            "process_upload_task: complete upload_id=%s frameworks=%d gaps=%d duration_ms=%d",
            ctx.upload_id,
            len(outcome.frameworks),
            len(outcome.gap_analyses),
            outcome.total_time_ms,
        )
    else:
        logger.warning(
            "process_upload_task: failed upload_id=%s stage=%s",
            ctx.upload_id,
            outcome.failed_stage,
        )
    return result
