"""SqlAlchemyProcessingStore - pipeline persistence on SQLAlchemy async sessions.

Implements :class:`~policyguard.core.contracts.ProcessingStore` over the ORM
models in :mod:`policyguard.models`.  Every method runs in its own
transaction, so a failure in one pipeline stage never leaves a half-written
row behind for the next.

``upsert_processing_result`` is idempotent per upload: the first call
inserts the row and later calls update it in place.  A fresh analysis
(``extracted_text_hash`` given) also clears the previous error and drops
the previous run's artifacts.  Two workers racing on
the first insert collide on the unique ``upload_id`` constraint; the loser
retries once as an update.

Usage::

    from policyguard.db.session import get_sessionmaker
    from policyguard.repositories.processing_store import SqlAlchemyProcessingStore

    store = SqlAlchemyProcessingStore(get_sessionmaker())
    upload = await store.get_upload(upload_id)
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from policyguard.core.contracts import (
    GapAnalysis,
    GeneratedArtifact,
    InstitutionInfo,
    PolicyRedline,
    ProcessingResultData,
    StoredProcessingResult,
    UploadInfo,
    UploadStatus,
)
from policyguard.models.document_upload import DocumentUpload
from policyguard.models.generated_artifact import GeneratedArtifactRecord
from policyguard.models.institution import Institution
from policyguard.models.processing_result import (
    GapAnalysisRecord,
    PolicyRedlineRecord,
    ProcessingResult,
)

logger = logging.getLogger(__name__)

_UPDATABLE_UPLOAD_FIELDS = frozenset({"status", "pii_detected", "pii_redacted_url", "processed_at"})


class StoreError(Exception):
    """Raised when a database operation fails."""


class UploadNotFoundError(StoreError, LookupError):
    """Raised when an update targets an upload that does not exist."""


class SqlAlchemyProcessingStore:
    """:class:`ProcessingStore` backed by an ``async_sessionmaker``.

    Args:
        session_factory: Factory producing :class:`AsyncSession` objects.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Uploads and institutions
    # ------------------------------------------------------------------

    async def get_upload(self, upload_id: str) -> UploadInfo | None:
        async with self._session_factory() as session:
            upload = await session.get(DocumentUpload, upload_id)
            return _upload_info(upload) if upload is not None else None

    async def update_upload(self, upload_id: str, **fields: Any) -> None:
        """Update status and PII columns of an upload.

        Raises:
            ValueError: If *fields* names a column that may not be updated.
            UploadNotFoundError: If no upload has *upload_id*.
            StoreError: On any database failure.
        """
        unknown = set(fields) - _UPDATABLE_UPLOAD_FIELDS
        if unknown:
            raise ValueError(f"Cannot update upload field(s): {', '.join(sorted(unknown))}")

        values = dict(fields)
        if isinstance(values.get("status"), UploadStatus):
            values["status"] = values["status"].value

        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(DocumentUpload).where(DocumentUpload.id == upload_id).values(**values)
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to update upload {upload_id}: {exc}") from exc

        if result.rowcount == 0:
            raise UploadNotFoundError(f"Upload {upload_id} not found")
        logger.debug("Upload updated: upload_id=%s fields=%s", upload_id, sorted(values))

    async def get_institution(self, institution_id: str) -> InstitutionInfo | None:
        async with self._session_factory() as session:
            institution = await session.get(Institution, institution_id)
            if institution is None:
                return None
            return InstitutionInfo(id=institution.id, name=institution.name, type=institution.type)

    # ------------------------------------------------------------------
    # Processing results
    # ------------------------------------------------------------------

    async def get_processing_result(self, upload_id: str) -> StoredProcessingResult | None:
        async with self._session_factory() as session:
            record = await self._load_result(session, upload_id)
            return _stored_result(record) if record is not None else None

    async def upsert_processing_result(
        self, upload_id: str, data: ProcessingResultData
    ) -> StoredProcessingResult:
        """Create or update the single processing result of *upload_id*.

        Raises:
            StoreError: On any database failure.
        """
        try:
            return await self._upsert(upload_id, data)
        except IntegrityError:
            # Another writer inserted the row first; the retry takes the update path.
            logger.info("Processing result insert raced; retrying as update: upload_id=%s", upload_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save processing result for {upload_id}: {exc}") from exc

        try:
            return await self._upsert(upload_id, data)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save processing result for {upload_id}: {exc}") from exc

    async def _upsert(self, upload_id: str, data: ProcessingResultData) -> StoredProcessingResult:
        async with self._session_factory() as session, session.begin():
            record = await self._load_result(session, upload_id)
            if record is None:
                record = ProcessingResult(
                    upload_id=upload_id,
                    entities={},
                    frameworks=[],
                    gap_analyses=[],
                    policy_redlines=[],
                    artifacts=[],
                )
                session.add(record)

            for name in (
                "extracted_text",
                "extracted_text_hash",
                "processing_time_ms",
                "error_message",
            ):
                value = getattr(data, name)
                if value is not None:
                    setattr(record, name, value)

            if data.extracted_text_hash is not None:
                record.error_message = data.error_message
                record.artifacts = []

            if data.entities is not None:
                record.entities = {key: list(values) for key, values in data.entities.items()}
            if data.frameworks is not None:
                record.frameworks = list(data.frameworks)
            if data.gap_analyses is not None:
                record.gap_analyses = [
                    _gap_record(gap, index) for index, gap in enumerate(data.gap_analyses)
                ]
            if data.policy_redlines is not None:
                record.policy_redlines = [
                    _redline_record(redline, index)
                    for index, redline in enumerate(data.policy_redlines)
                ]

            await session.flush()
            return _stored_result(record)

    async def create_artifact(self, result_id: str, artifact: GeneratedArtifact) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    GeneratedArtifactRecord(
                        result_id=result_id,
                        type=artifact.type,
                        format=artifact.format,
                        title=artifact.title,
                        description=artifact.description,
                        storage_url=artifact.storage_url,
                        file_size=artifact.file_size,
                        attributes=dict(artifact.metadata),
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save {artifact.type} artifact: {exc}") from exc

    async def list_artifacts(self, result_id: str) -> list[GeneratedArtifact]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(GeneratedArtifactRecord)
                .where(GeneratedArtifactRecord.result_id == result_id)
                .order_by(GeneratedArtifactRecord.created_at)
            )
            return [
                GeneratedArtifact(
                    type=row.type,
                    format=row.format,
                    title=row.title,
                    description=row.description,
                    storage_url=row.storage_url,
                    file_size=row.file_size,
                    metadata=dict(row.attributes or {}),
                )
                for row in rows
            ]

    @staticmethod
    async def _load_result(session: AsyncSession, upload_id: str) -> ProcessingResult | None:
        return await session.scalar(
            select(ProcessingResult)
            .where(ProcessingResult.upload_id == upload_id)
            .options(
                selectinload(ProcessingResult.gap_analyses),
                selectinload(ProcessingResult.policy_redlines),
                selectinload(ProcessingResult.artifacts),
            )
        )


# ---------------------------------------------------------------------------
# Row <-> contract conversion
# ---------------------------------------------------------------------------


def _upload_info(upload: DocumentUpload) -> UploadInfo:
    return UploadInfo(
        id=upload.id,
        institution_id=upload.institution_id,
        filename=upload.filename,
        document_type=upload.document_type,
        status=UploadStatus(upload.status),
        pii_detected=upload.pii_detected,
        pii_redacted_url=upload.pii_redacted_url,
        processed_at=upload.processed_at,
        file_path=upload.file_path,
        user_id=upload.user_id,
    )


def _gap_record(gap: GapAnalysis, index: int) -> GapAnalysisRecord:
    return GapAnalysisRecord(
        sort_order=index,
        framework=gap.framework,
        section=gap.section,
        requirement=gap.requirement,
        current_state=gap.current_state,
        gap=gap.gap,
        risk_level=gap.risk_level,
        remediation=gap.remediation,
        confidence=gap.confidence,
    )


def _redline_record(redline: PolicyRedline, index: int) -> PolicyRedlineRecord:
    return PolicyRedlineRecord(
        sort_order=index,
        section=redline.section,
        original_text=redline.original_text,
        suggested_text=redline.suggested_text,
        rationale=redline.rationale,
        framework=redline.framework,
        confidence_score=redline.confidence_score,
    )


def _stored_result(record: ProcessingResult) -> StoredProcessingResult:
    return StoredProcessingResult(
        id=record.id,
        upload_id=record.upload_id,
        extracted_text_hash=record.extracted_text_hash,
        entities={key: list(values) for key, values in (record.entities or {}).items()},
        frameworks=list(record.frameworks or []),
        gap_analyses=tuple(
            GapAnalysis(
                framework=row.framework,
                section=row.section,
                requirement=row.requirement,
                current_state=row.current_state,
                gap=row.gap,
                risk_level=row.risk_level,
                remediation=row.remediation,
                confidence=row.confidence,
            )
            for row in record.gap_analyses
        ),
        policy_redlines=tuple(
            PolicyRedline(
                section=row.section,
                original_text=row.original_text,
                suggested_text=row.suggested_text,
                rationale=row.rationale,
                framework=row.framework,
                confidence_score=row.confidence_score,
            )
            for row in record.policy_redlines
        ),
        processing_time_ms=record.processing_time_ms,
        error_message=record.error_message,
    )
