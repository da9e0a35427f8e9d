"""Integration tests for SqlAlchemyProcessingStore against a real database.

An **in-memory SQLite** database (``aiosqlite`` + ``StaticPool``) stands in
for PostgreSQL.  ``JSONType`` falls back to plain JSON and the
``upload_status`` enum becomes a VARCHAR column, so the repository runs its
real ORM code paths: inserts, in-place updates, child-row replacement and
``UPDATE ... WHERE`` row counts.

Each test gets a fresh database so results never leak between tests.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure all ORM models are registered with Base.metadata so create_all is complete
import policyguard.models  # noqa: F401
from policyguard.core.contracts import (
    GapAnalysis,
    GeneratedArtifact,
    PolicyRedline,
    ProcessingResultData,
    UploadStatus,
)
from policyguard.db.base import Base
from policyguard.models.document_upload import DocumentUpload
from policyguard.models.institution import Institution
from policyguard.models.generated_artifact import GeneratedArtifactRecord
from policyguard.models.processing_result import GapAnalysisRecord, PolicyRedlineRecord
from policyguard.repositories.processing_store import SqlAlchemyProcessingStore, UploadNotFoundError

UPLOAD_ID = "6f1d2c1e-0000-4000-8000-000000000001"
INSTITUTION_ID = "6f1d2c1e-0000-4000-8000-0000000000aa"


def _gap(section: str, risk_level: str = "critical") -> GapAnalysis:
    return GapAnalysis(
        framework="FERPA",
        section=section,
        requirement=f"{section} requirement",
        current_state="No evidence found.",
        gap="Missing required elements",
        risk_level=risk_level,
        remediation="Strengthen data protection measures.",
        confidence=0.3,
    )


def _redline(section: str) -> PolicyRedline:
    return PolicyRedline(
        section=section,
        original_text="",
        suggested_text=f"The institution shall address {section.lower()}.",
        rationale="Addresses FERPA requirement.",
        framework="FERPA",
        confidence_score=0.9,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session, session.begin():
        session.add(Institution(id=INSTITUTION_ID, name="Lakeside District", type="K12"))
        session.add(
            DocumentUpload(
                id=UPLOAD_ID,
                institution_id=INSTITUTION_ID,
                user_id="user-1",
                filename="policy.pdf",
                file_path="/data/uploads/policy.pdf",
                document_type="policy",
            )
        )

    yield factory
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlAlchemyProcessingStore:
    return SqlAlchemyProcessingStore(session_factory)


# ---------------------------------------------------------------------------
# Uploads and institutions
# ---------------------------------------------------------------------------


class TestUploads:
    @pytest.mark.asyncio
    async def test_get_upload(self, store) -> None:
        upload = await store.get_upload(UPLOAD_ID)

        assert upload is not None
        assert upload.status is UploadStatus.UPLOADED
        assert upload.file_path == "/data/uploads/policy.pdf"
        assert upload.user_id == "user-1"
        assert upload.pii_detected is None

    @pytest.mark.asyncio
    async def test_get_missing_upload(self, store) -> None:
        assert await store.get_upload("missing") is None

    @pytest.mark.asyncio
    async def test_update_status_and_pii(self, store) -> None:
        await store.update_upload(UPLOAD_ID, status=UploadStatus.PROCESSING)
        await store.update_upload(
            UPLOAD_ID,
            pii_detected=True,
            pii_redacted_url="https://policyguard.test/v1/redacted/x?expires=1&sig=00",
        )
        await store.update_upload(
            UPLOAD_ID,
            status=UploadStatus.COMPLETE,
            processed_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )

        upload = await store.get_upload(UPLOAD_ID)
        assert upload.status is UploadStatus.COMPLETE
        assert upload.pii_detected is True
        assert upload.pii_redacted_url.startswith("https://policyguard.test/v1/redacted/x")
        assert upload.processed_at is not None

    @pytest.mark.asyncio
    async def test_update_missing_upload(self, store) -> None:
        with pytest.raises(UploadNotFoundError):
            await store.update_upload("missing", status=UploadStatus.FAILED)

    @pytest.mark.asyncio
    async def test_update_rejects_other_columns(self, store) -> None:
        with pytest.raises(ValueError, match="filename"):
            await store.update_upload(UPLOAD_ID, filename="other.pdf")

    @pytest.mark.asyncio
    async def test_get_institution(self, store) -> None:
        institution = await store.get_institution(INSTITUTION_ID)
        assert institution.name == "Lakeside District"
        assert institution.type == "K12"
        assert await store.get_institution("missing") is None


# ---------------------------------------------------------------------------
# Processing results
# ---------------------------------------------------------------------------


class TestProcessingResults:
    @pytest.mark.asyncio
    async def test_first_upsert_inserts(self, store) -> None:
        stored = await store.upsert_processing_result(
            UPLOAD_ID,
            ProcessingResultData(
                extracted_text="Policy text",
                extracted_text_hash="a" * 64,
                entities={"roles": ["Principal"]},
                frameworks=["FERPA", "COPPA"],
                gap_analyses=[_gap("Student Record Access"), _gap("Consent", "high")],
                policy_redlines=[_redline("Student Record Access")],
                processing_time_ms=120,
            ),
        )

        assert stored.upload_id == UPLOAD_ID
        assert stored.extracted_text_hash == "a" * 64
        assert stored.entities == {"roles": ["Principal"]}
        assert stored.frameworks == ["FERPA", "COPPA"]
        assert [g.section for g in stored.gap_analyses] == ["Student Record Access", "Consent"]
        assert stored.policy_redlines == (_redline("Student Record Access"),)
        assert stored.processing_time_ms == 120

        reloaded = await store.get_processing_result(UPLOAD_ID)
        assert reloaded == stored

    @pytest.mark.asyncio
    async def test_repeated_upsert_updates_single_row(self, store) -> None:
        first = await store.upsert_processing_result(
            UPLOAD_ID, ProcessingResultData(frameworks=["FERPA"], processing_time_ms=10)
        )
        second = await store.upsert_processing_result(
            UPLOAD_ID, ProcessingResultData(frameworks=["COPPA"], processing_time_ms=20)
        )

        assert second.id == first.id
        assert second.frameworks == ["COPPA"]
        assert second.processing_time_ms == 20

    @pytest.mark.asyncio
    async def test_none_fields_left_untouched(self, store) -> None:
        await store.upsert_processing_result(
            UPLOAD_ID,
            ProcessingResultData(
                extracted_text_hash="b" * 64,
                frameworks=["FERPA"],
                gap_analyses=[_gap("Consent")],
            ),
        )
        stored = await store.upsert_processing_result(
            UPLOAD_ID, ProcessingResultData(error_message="render failed")
        )

        assert stored.error_message == "render failed"
        assert stored.extracted_text_hash == "b" * 64
        assert stored.frameworks == ["FERPA"]
        assert [g.section for g in stored.gap_analyses] == ["Consent"]

    @pytest.mark.asyncio
    async def test_child_rows_replaced_not_appended(self, store, session_factory) -> None:
        await store.upsert_processing_result(
            UPLOAD_ID,
            ProcessingResultData(
                gap_analyses=[_gap("A"), _gap("B")],
                policy_redlines=[_redline("A"), _redline("B")],
            ),
        )
        stored = await store.upsert_processing_result(
            UPLOAD_ID,
            ProcessingResultData(gap_analyses=[_gap("C")], policy_redlines=[]),
        )

        assert [g.section for g in stored.gap_analyses] == ["C"]
        assert stored.policy_redlines == ()
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(GapAnalysisRecord)) == 1
            assert await session.scalar(select(func.count()).select_from(PolicyRedlineRecord)) == 0

    @pytest.mark.asyncio
    async def test_fresh_analysis_clears_previous_error(self, store) -> None:
        await store.upsert_processing_result(
            UPLOAD_ID, ProcessingResultData(error_message="boom", processing_time_ms=5)
        )
        stored = await store.upsert_processing_result(
            UPLOAD_ID,
            ProcessingResultData(
                extracted_text_hash="e" * 64,
                frameworks=["FERPA"],
                processing_time_ms=40,
            ),
        )

        assert stored.error_message is None
        assert (await store.get_processing_result(UPLOAD_ID)).error_message is None

    @pytest.mark.asyncio
    async def test_missing_result(self, store) -> None:
        assert await store.get_processing_result(UPLOAD_ID) is None


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


class TestArtifacts:
    @pytest.mark.asyncio
    async def test_create_and_list(self, store) -> None:
        result = await store.upsert_processing_result(UPLOAD_ID, ProcessingResultData(frameworks=["FERPA"]))
        artifact = GeneratedArtifact(
            type="gap-report",
            format="pdf",
            title="AI Readiness Gap Analysis Report",
            description="1 gap(s) across 1 framework(s)",
            storage_url="file:///tmp/artifacts/u/gap-report.pdf",
            file_size=2048,
            metadata={"version": "1.0"},
        )

        await store.create_artifact(result.id, artifact)

        assert await store.list_artifacts(result.id) == [artifact]
        assert await store.list_artifacts("other-result") == []

    @pytest.mark.asyncio
    async def test_fresh_analysis_drops_previous_artifacts(self, store, session_factory) -> None:
        artifact = GeneratedArtifact(
            type="gap-report",
            format="pdf",
            title="AI Readiness Gap Analysis Report",
            description="",
            storage_url="file:///tmp/artifacts/u/gap-report.pdf",
            file_size=2048,
        )
        for _ in range(2):
            result = await store.upsert_processing_result(
                UPLOAD_ID, ProcessingResultData(extracted_text_hash="c" * 64, frameworks=["FERPA"])
            )
            await store.create_artifact(result.id, artifact)

        assert await store.list_artifacts(result.id) == [artifact]
        async with session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(GeneratedArtifactRecord))
        assert count == 1

    @pytest.mark.asyncio
    async def test_error_only_upsert_keeps_artifacts(self, store) -> None:
        result = await store.upsert_processing_result(
            UPLOAD_ID, ProcessingResultData(extracted_text_hash="d" * 64)
        )
        artifact = GeneratedArtifact(
            type="policy-redline",
            format="docx",
            title="AI Policy Redlines",
            description="",
            storage_url="file:///tmp/artifacts/u/policy-redline.docx",
            file_size=512,
        )
        await store.create_artifact(result.id, artifact)

        await store.upsert_processing_result(UPLOAD_ID, ProcessingResultData(error_message="late failure"))

        assert await store.list_artifacts(result.id) == [artifact]
