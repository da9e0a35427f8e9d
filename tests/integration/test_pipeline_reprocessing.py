"""Integration tests: running the pipeline repeatedly for one upload.

The default components run for real against a policy file in ``tmp_path``
and an **in-memory SQLite** store, so re-running an upload exercises the
actual upsert, child-row replacement and artifact bookkeeping.
"""
from __future__ import annotations

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import policyguard.models  # noqa: F401
from policyguard.core.artifact_generator import FileArtifactGenerator
from policyguard.core.contracts import UploadStatus
from policyguard.core.entities import RegexEntityRecognizer
from policyguard.core.framework_mapper import KeywordFrameworkMapper
from policyguard.core.gap_analyzer import RequirementGapAnalyzer
from policyguard.core.pii_scanner import PiiScanner
from policyguard.core.pipeline import DocumentProcessingPipeline
from policyguard.core.policy_redliner import TemplatePolicyRedliner
from policyguard.core.processing_context import ProcessingContext
from policyguard.core.text_extractor import DocumentTextExtractor
from policyguard.core.threat_scanner import ThreatScanner
from policyguard.db.base import Base
from policyguard.models.document_upload import DocumentUpload
from policyguard.models.generated_artifact import GeneratedArtifactRecord
from policyguard.models.institution import Institution
from policyguard.models.processing_result import ProcessingResult
from policyguard.repositories.processing_store import SqlAlchemyProcessingStore
from policyguard.services.storage import RedactedTextStorage

UPLOAD_ID = "7a2e3d2f-0000-4000-8000-000000000001"
INSTITUTION_ID = "7a2e3d2f-0000-4000-8000-0000000000aa"

POLICY_TEXT = (
    "This acceptable use policy governs artificial intelligence tools in our schools. "
    "Student records and educational records are protected under FERPA and require "
    "consent before any disclosure. The district will review every AI system for bias "
    "and fairness. Parental consent is required for children under 13 before any tool "
    "collects personal information. A sample record lists SSN 123-45-6789 for a test account."
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    path = tmp_path / "policy.txt"
    path.write_text(POLICY_TEXT, encoding="ascii")
    return path


@pytest_asyncio.fixture
async def session_factory(policy_file) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
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
                filename="policy.txt",
                file_path=str(policy_file),
                document_type="policy",
            )
        )

    yield factory
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlAlchemyProcessingStore:
    return SqlAlchemyProcessingStore(session_factory)


@pytest.fixture
def context(policy_file) -> ProcessingContext:
    return ProcessingContext(
        upload_id=UPLOAD_ID,
        file_path=str(policy_file),
        document_type="policy",
        institution_id=INSTITUTION_ID,
        user_id="user-1",
    )


async def _process(
    store: SqlAlchemyProcessingStore,
    context: ProcessingContext,
    tmp_path: Path,
    *,
    min_extracted_chars: int = 100,
):
    with DocumentTextExtractor(max_workers=1) as extractor:
        pipeline = DocumentProcessingPipeline(
            store=store,
            threat_scanner=ThreatScanner(),
            pii_scanner=PiiScanner(),
            text_extractor=extractor,
            entity_recognizer=RegexEntityRecognizer(),
            framework_mapper=KeywordFrameworkMapper(),
            gap_analyzer=RequirementGapAnalyzer(),
            policy_redliner=TemplatePolicyRedliner(),
            artifact_generator=FileArtifactGenerator(output_dir=str(tmp_path / "artifacts")),
            redacted_text_store=RedactedTextStorage(
                storage_dir=str(tmp_path / "redacted"),
                base_url="https://policyguard.test",
                secret_key="reprocess-secret",
            ),
            min_extracted_chars=min_extracted_chars,
        )
        return await pipeline.process(context)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


# ---------------------------------------------------------------------------
# Re-processing
# ---------------------------------------------------------------------------


class TestReprocessing:
    @pytest.mark.asyncio
    async def test_second_run_updates_single_result(self, store, session_factory, context, tmp_path) -> None:
        first = await _process(store, context, tmp_path)
        second = await _process(store, context, tmp_path)

        assert first.success is True, first.error
        assert second.success is True, second.error
        assert await _count(session_factory, ProcessingResult) == 1
        assert await _count(session_factory, GeneratedArtifactRecord) == len(second.artifacts)

        result = await store.get_processing_result(UPLOAD_ID)
        assert list(result.frameworks) == list(second.frameworks)
        assert len(result.gap_analyses) == len(second.gap_analyses)

        upload = await store.get_upload(UPLOAD_ID)
        assert upload.status is UploadStatus.COMPLETE
        assert upload.pii_detected is True

    @pytest.mark.asyncio
    async def test_successful_rerun_clears_failure(self, store, context, tmp_path) -> None:
        failed = await _process(store, context, tmp_path, min_extracted_chars=10_000)
        assert failed.failed_stage == "text-extraction"
        assert (await store.get_upload(UPLOAD_ID)).status is UploadStatus.FAILED
        assert (await store.get_processing_result(UPLOAD_ID)).error_message == (
            "Insufficient text content extracted from document"
        )

        rerun = await _process(store, context, tmp_path)

        assert rerun.success is True, rerun.error
        assert (await store.get_upload(UPLOAD_ID)).status is UploadStatus.COMPLETE
        assert (await store.get_processing_result(UPLOAD_ID)).error_message is None
