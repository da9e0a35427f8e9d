"""Unit tests for policyguard.core.pipeline.DocumentProcessingPipeline.

Collaborators are mocks except the threat and PII scanners, which are pure
and run for real.  The last class wires every default component together
against files in tmp_path with only the store mocked.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from unittest.mock import ANY, AsyncMock, MagicMock, call

import pytest

from policyguard.core.artifact_generator import FileArtifactGenerator
from policyguard.core.av_engine import AVEngineAdapter
from policyguard.core.contracts import (
    ExtractionResult,
    GapAnalysis,
    GeneratedArtifact,
    InstitutionInfo,
    PolicyRedline,
    ProcessingResultData,
    StoredProcessingResult,
    UploadInfo,
    UploadStatus,
)
from policyguard.core.entities import RegexEntityRecognizer
from policyguard.core.framework_mapper import KeywordFrameworkMapper
from policyguard.core.gap_analyzer import RequirementGapAnalyzer
from policyguard.core.pii_scanner import PiiScanner
from policyguard.core.pipeline import DocumentProcessingPipeline, PipelineOutcome
from policyguard.core.policy_redliner import TemplatePolicyRedliner
from policyguard.core.processing_context import ProcessingContext
from policyguard.core.stages import StageStatus
from policyguard.core.text_extractor import DocumentTextExtractor
from policyguard.core.threat_scanner import ThreatScanner
from policyguard.services.storage import RedactedTextStorage

EICAR = rb"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"

POLICY_TEXT = (
    "This acceptable use policy governs artificial intelligence tools in our schools. "
    "Student records and educational records are protected under FERPA and require "
    "consent before any disclosure. The district will review every AI system for bias "
    "and fairness. Parental consent is required for children under 13 before any tool "
    "collects personal information. Staff contact for records requests is the main "
    "office. A sample record lists SSN 123-45-6789 for a test account."
)

CLEAN_TEXT = (
    "This acceptable use policy governs artificial intelligence tools in our schools "
    "and applies to every member of staff who uses them with students."
)

REDACTED_URL = "https://policyguard.test/v1/redacted/u-1-abc?expires=1&sig=00"

GAP = GapAnalysis(
    framework="FERPA",
    section="Student Record Access",
    requirement="Provide students and parents access to educational records",
    current_state="No evidence found of student record access implementation.",
    gap="Missing required elements: access procedures",
    risk_level="critical",
    remediation="Strengthen data protection measures.",
)

REDLINE = PolicyRedline(
    section="Student Record Access",
    original_text="",
    suggested_text="Students and parents may inspect educational records.",
    rationale="Addresses FERPA requirement.",
    framework="FERPA",
    confidence_score=0.9,
)

ARTIFACT = GeneratedArtifact(
    type="gap-report",
    format="pdf",
    title="AI Readiness Gap Analysis Report",
    description="1 gap(s) across 1 framework(s)",
    storage_url="file:///tmp/artifacts/u-1/gap-report.pdf",
    file_size=1024,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stored(upload_id: str, data: ProcessingResultData) -> StoredProcessingResult:
    return StoredProcessingResult(
        id="result-1",
        upload_id=upload_id,
        extracted_text_hash=data.extracted_text_hash,
        entities=data.entities or {},
        frameworks=list(data.frameworks or []),
        gap_analyses=tuple(data.gap_analyses or ()),
        policy_redlines=tuple(data.policy_redlines or ()),
        processing_time_ms=data.processing_time_ms,
        error_message=data.error_message,
    )


def _store(institution_type: str | None = "K12") -> MagicMock:
    store = MagicMock()
    store.update_upload = AsyncMock(return_value=None)
    store.upsert_processing_result = AsyncMock(side_effect=_stored)
    store.get_upload = AsyncMock(
        return_value=UploadInfo(
            id="u-1",
            institution_id="inst-1",
            filename="policy.txt",
            document_type="policy",
            status=UploadStatus.PROCESSING,
        )
    )
    store.get_institution = AsyncMock(
        return_value=InstitutionInfo(id="inst-1", name="Lakeside District", type=institution_type)
    )
    store.create_artifact = AsyncMock(return_value=None)
    return store


def _context(file_path: Path) -> ProcessingContext:
    return ProcessingContext(
        upload_id="u-1",
        file_path=str(file_path),
        document_type="policy",
        institution_id="inst-1",
        user_id="user-1",
    )


def _pipeline(**overrides) -> DocumentProcessingPipeline:
    text_extractor = MagicMock()
    text_extractor.extract = AsyncMock(return_value=ExtractionResult(text=POLICY_TEXT))
    entity_recognizer = MagicMock()
    entity_recognizer.detect_entities = AsyncMock(return_value={"roles": ["Principal"]})
    framework_mapper = MagicMock()
    framework_mapper.map_frameworks = AsyncMock(return_value=["FERPA"])
    gap_analyzer = MagicMock()
    gap_analyzer.analyze = AsyncMock(return_value=[GAP])
    policy_redliner = MagicMock()
    policy_redliner.generate_redlines = AsyncMock(return_value=[REDLINE])
    artifact_generator = MagicMock()
    artifact_generator.generate_all = AsyncMock(return_value=[ARTIFACT])
    redacted_text_store = MagicMock()
    redacted_text_store.save = AsyncMock(return_value=REDACTED_URL)
    quarantine_service = MagicMock()
    quarantine_service.quarantine = AsyncMock(return_value="f" * 32)

    kwargs = dict(
        store=_store(),
        threat_scanner=ThreatScanner(),
        pii_scanner=PiiScanner(),
        text_extractor=text_extractor,
        entity_recognizer=entity_recognizer,
        framework_mapper=framework_mapper,
        gap_analyzer=gap_analyzer,
        policy_redliner=policy_redliner,
        artifact_generator=artifact_generator,
        redacted_text_store=redacted_text_store,
        quarantine_service=quarantine_service,
    )
    kwargs.update(overrides)
    return DocumentProcessingPipeline(**kwargs)


def _statuses(outcome: PipelineOutcome) -> dict[str, StageStatus]:
    return {s.name.value: s.status for s in outcome.stages}


@pytest.fixture
def policy_file(tmp_path: Path) -> Path:
    path = tmp_path / "policy.txt"
    path.write_text(POLICY_TEXT, encoding="ascii")
    return path


# ---------------------------------------------------------------------------
# Successful runs
# ---------------------------------------------------------------------------


class TestSuccess:
    @pytest.mark.asyncio
    async def test_all_stages_completed(self, policy_file) -> None:
        pipeline = _pipeline()
        outcome = await pipeline.process(_context(policy_file))

        assert outcome.success is True
        assert outcome.failed_stage is None
        assert outcome.error is None
        assert all(s.status is StageStatus.COMPLETED for s in outcome.stages)
        assert len(outcome.stages) == 8
        assert outcome.frameworks == ("FERPA",)
        assert outcome.gap_analyses == (GAP,)
        assert outcome.policy_redlines == (REDLINE,)
        assert outcome.artifacts == (ARTIFACT,)
        assert outcome.threat_scan_result is not None
        assert outcome.threat_scan_result.infected is False

    @pytest.mark.asyncio
    async def test_upload_status_transitions(self, policy_file) -> None:
        pipeline = _pipeline()
        await pipeline.process(_context(policy_file))

        assert pipeline._store.update_upload.await_args_list == [
            call("u-1", status=UploadStatus.PROCESSING),
            call("u-1", pii_detected=True, pii_redacted_url=REDACTED_URL),
            call("u-1", status=UploadStatus.COMPLETE, processed_at=ANY),
        ]

    @pytest.mark.asyncio
    async def test_downstream_stages_see_redacted_text(self, policy_file) -> None:
        pipeline = _pipeline()
        await pipeline.process(_context(policy_file))

        saved_text = pipeline._redacted_text_store.save.await_args.args[1]
        assert "123-45-6789" not in saved_text
        assert "[SSN REDACTED]" in saved_text

        entity_text = pipeline._entity_recognizer.detect_entities.await_args.args[0]
        mapper_text = pipeline._framework_mapper.map_frameworks.await_args.args[0]
        gap_text = pipeline._gap_analyzer.analyze.await_args.args[0]
        assert entity_text == mapper_text == gap_text == saved_text

    @pytest.mark.asyncio
    async def test_result_persisted_before_artifacts(self, policy_file) -> None:
        pipeline = _pipeline()
        await pipeline.process(_context(policy_file))

        data: ProcessingResultData = pipeline._store.upsert_processing_result.await_args.args[1]
        assert "123-45-6789" not in data.extracted_text
        assert data.extracted_text_hash == hashlib.sha256(POLICY_TEXT.encode("utf-8")).hexdigest()
        assert data.entities == {"roles": ["Principal"]}
        assert data.frameworks == ["FERPA"]
        assert list(data.gap_analyses) == [GAP]
        assert list(data.policy_redlines) == [REDLINE]
        assert data.error_message is None

        pipeline._store.create_artifact.assert_awaited_once_with("result-1", ARTIFACT)
        request = pipeline._artifact_generator.generate_all.await_args.args[0]
        assert request.processing_result.id == "result-1"
        assert request.institution.name == "Lakeside District"

    @pytest.mark.asyncio
    async def test_document_without_pii(self, tmp_path) -> None:
        path = tmp_path / "clean.txt"
        path.write_text(CLEAN_TEXT)
        extractor = MagicMock()
        extractor.extract = AsyncMock(return_value=ExtractionResult(text=CLEAN_TEXT))
        pipeline = _pipeline(text_extractor=extractor)

        outcome = await pipeline.process(_context(path))

        assert outcome.success is True
        pipeline._redacted_text_store.save.assert_not_awaited()
        assert call("u-1", pii_detected=False, pii_redacted_url=None) in pipeline._store.update_upload.await_args_list
        assert pipeline._entity_recognizer.detect_entities.await_args.args[0] == CLEAN_TEXT

    @pytest.mark.asyncio
    async def test_institution_type_fallback(self, policy_file) -> None:
        pipeline = _pipeline(store=_store(institution_type=None), default_institution_type="HigherEd")
        await pipeline.process(_context(policy_file))

        assert pipeline._framework_mapper.map_frameworks.await_args.args[1:] == ("policy", "HigherEd")

    @pytest.mark.asyncio
    async def test_unavailable_engine_quarantines_but_continues(self, policy_file) -> None:
        engine = MagicMock(spec=AVEngineAdapter)
        engine.scan_bytes = AsyncMock(side_effect=ConnectionError("clamd down"))
        pipeline = _pipeline(threat_scanner=ThreatScanner(av_engine=engine))

        outcome = await pipeline.process(_context(policy_file))

        assert outcome.success is True
        pipeline._quarantine_service.quarantine.assert_awaited_once()
        assert pipeline._quarantine_service.quarantine.await_args.args[0] == "u-1"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_infected_file_rejected(self, tmp_path) -> None:
        path = tmp_path / "payload.txt"
        path.write_bytes(EICAR)
        pipeline = _pipeline()

        outcome = await pipeline.process(_context(path))

        assert outcome.success is False
        assert outcome.failed_stage == "virus-scan"
        assert "Known Malware" in outcome.error
        assert "Known Malware" not in outcome.user_message
        assert "malware" in outcome.user_message
        assert "block" in outcome.user_message
        statuses = _statuses(outcome)
        assert statuses["virus-scan"] is StageStatus.FAILED
        assert all(s is StageStatus.PENDING for name, s in statuses.items() if name != "virus-scan")

        pipeline._quarantine_service.quarantine.assert_awaited_once()
        pipeline._text_extractor.extract.assert_not_awaited()
        assert pipeline._store.update_upload.await_args_list[-1] == call("u-1", status=UploadStatus.FAILED)
        error_data = pipeline._store.upsert_processing_result.await_args.args[1]
        assert error_data.error_message == outcome.error
        assert error_data.extracted_text is None

    @pytest.mark.asyncio
    async def test_insufficient_content(self, policy_file) -> None:
        extractor = MagicMock()
        extractor.extract = AsyncMock(return_value=ExtractionResult(text="Too short."))
        pipeline = _pipeline(text_extractor=extractor)

        outcome = await pipeline.process(_context(policy_file))

        assert outcome.failed_stage == "text-extraction"
        assert outcome.error == "Insufficient text content extracted from document"
        assert outcome.user_message == outcome.error

    @pytest.mark.asyncio
    async def test_min_extracted_chars_configurable(self, policy_file) -> None:
        extractor = MagicMock()
        extractor.extract = AsyncMock(return_value=ExtractionResult(text="Too short."))
        pipeline = _pipeline(text_extractor=extractor, min_extracted_chars=5)

        outcome = await pipeline.process(_context(policy_file))

        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_missing_file_fails_virus_scan(self, tmp_path) -> None:
        outcome = await _pipeline().process(_context(tmp_path / "gone.txt"))
        assert outcome.failed_stage == "virus-scan"

    @pytest.mark.asyncio
    async def test_stage_ordering_on_mid_pipeline_failure(self, policy_file) -> None:
        redacted_store = MagicMock()
        redacted_store.save = AsyncMock(side_effect=RuntimeError("disk full"))
        pipeline = _pipeline(redacted_text_store=redacted_store)

        outcome = await pipeline.process(_context(policy_file))

        assert outcome.failed_stage == "pii-detection"
        assert [(s.name.value, s.status) for s in outcome.stages] == [
            ("virus-scan", StageStatus.COMPLETED),
            ("text-extraction", StageStatus.COMPLETED),
            ("pii-detection", StageStatus.FAILED),
            ("entity-recognition", StageStatus.PENDING),
            ("framework-mapping", StageStatus.PENDING),
            ("gap-analysis", StageStatus.PENDING),
            ("policy-redlining", StageStatus.PENDING),
            ("artifact-generation", StageStatus.PENDING),
        ]
        failed = outcome.stages[2]
        assert failed.error == "disk full"
        assert failed.ended_at is not None
        pipeline._entity_recognizer.detect_entities.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_artifact_failure_keeps_analysis(self, policy_file) -> None:
        generator = MagicMock()
        generator.generate_all = AsyncMock(side_effect=RuntimeError("render failed"))
        pipeline = _pipeline(artifact_generator=generator)

        outcome = await pipeline.process(_context(policy_file))

        assert outcome.failed_stage == "artifact-generation"
        first, second = pipeline._store.upsert_processing_result.await_args_list
        assert list(first.args[1].gap_analyses) == [GAP]
        assert second.args[1].error_message == "render failed"

    @pytest.mark.asyncio
    async def test_failure_before_first_stage(self, policy_file) -> None:
        store = _store()
        store.update_upload = AsyncMock(side_effect=[RuntimeError("db down"), None])
        pipeline = _pipeline(store=store)

        outcome = await pipeline.process(_context(policy_file))

        assert outcome.success is False
        assert outcome.failed_stage is None
        assert outcome.error == "db down"
        assert all(s.status is StageStatus.PENDING for s in outcome.stages)

    @pytest.mark.asyncio
    async def test_bookkeeping_failures_do_not_mask_outcome(self, policy_file) -> None:
        async def update_upload(upload_id, **fields):
            if fields.get("status") is UploadStatus.FAILED:
                raise RuntimeError("db down")

        store = _store()
        store.update_upload = AsyncMock(side_effect=update_upload)
        store.upsert_processing_result = AsyncMock(side_effect=RuntimeError("db down"))
        gap_analyzer = MagicMock()
        gap_analyzer.analyze = AsyncMock(side_effect=ValueError("bad requirement table"))
        pipeline = _pipeline(store=store, gap_analyzer=gap_analyzer)

        outcome = await pipeline.process(_context(policy_file))

        assert outcome.success is False
        assert outcome.failed_stage == "gap-analysis"
        assert outcome.error == "bad requirement table"


# ---------------------------------------------------------------------------
# Outcome serialisation
# ---------------------------------------------------------------------------


class TestOutcomeToDict:
    @pytest.mark.asyncio
    async def test_success_dict_has_no_raw_pii(self, policy_file) -> None:
        outcome = await _pipeline().process(_context(policy_file))
        payload = outcome.to_dict()

        serialised = json.dumps(payload)
        assert "123-45-6789" not in serialised
        assert payload["success"] is True
        assert payload["pii"]["has_pii"] is True
        assert payload["pii"]["types_found"] == ["ssn"]
        assert payload["threat_scan"]["infected"] is False
        assert [s["status"] for s in payload["stages"]] == ["completed"] * 8

    @pytest.mark.asyncio
    async def test_rejection_dict_hides_threat_names(self, tmp_path) -> None:
        path = tmp_path / "payload.txt"
        path.write_bytes(EICAR)
        outcome = await _pipeline().process(_context(path))
        payload = outcome.to_dict()

        assert "Known Malware" not in json.dumps(payload)
        assert payload["error"] == outcome.user_message
        assert payload["stages"][0]["status"] == "failed"
        assert payload["stages"][0]["error"] == outcome.user_message
        assert payload["threat_scan"]["categories"] == ["malware"]
        assert payload["pii"] is None
        # The in-memory snapshot keeps the verbatim message for operators.
        assert "Known Malware" in outcome.stages[0].error

    @pytest.mark.asyncio
    async def test_failed_stage_error_in_dict(self, policy_file) -> None:
        gap_analyzer = MagicMock()
        gap_analyzer.analyze = AsyncMock(side_effect=ValueError("bad requirement table"))
        outcome = await _pipeline(gap_analyzer=gap_analyzer).process(_context(policy_file))
        payload = outcome.to_dict()

        stages = {s["name"]: s for s in payload["stages"]}
        assert stages["gap-analysis"]["error"] == "bad requirement table"
        assert all(s["error"] is None for name, s in stages.items() if name != "gap-analysis")


# ---------------------------------------------------------------------------
# Default components end to end
# ---------------------------------------------------------------------------


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_default_components(self, policy_file, tmp_path) -> None:
        store = _store()
        storage = RedactedTextStorage(
            storage_dir=str(tmp_path / "redacted"),
            base_url="https://policyguard.test",
            secret_key="e2e-secret",
        )
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
                redacted_text_store=storage,
            )
            outcome = await pipeline.process(_context(policy_file))

        assert outcome.success is True, outcome.error
        assert "FERPA" in outcome.frameworks
        assert "COPPA" in outcome.frameworks
        assert outcome.gap_analyses
        assert len(outcome.policy_redlines) == len(outcome.gap_analyses)

        redacted_files = list((tmp_path / "redacted").iterdir())
        assert len(redacted_files) == 1
        redacted = redacted_files[0].read_text()
        assert "123-45-6789" not in redacted
        assert redacted.endswith("lists SSN [SSN REDACTED] for a test account.")

        assert (tmp_path / "artifacts" / "u-1" / "gap-report.pdf").read_bytes().startswith(b"%PDF")
        assert (tmp_path / "artifacts" / "u-1" / "policy-redline.docx").read_bytes().startswith(b"PK")
        assert store.create_artifact.await_count == 2

    @pytest.mark.asyncio
    async def test_five_hundred_character_policy(self, tmp_path) -> None:
        document = POLICY_TEXT + " The school board reviews it yearly."
        assert len(document) == 500
        path = tmp_path / "policy.txt"
        path.write_text(document, encoding="ascii")
        store = _store()

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
                    secret_key="e2e-secret",
                ),
            )
            outcome = await pipeline.process(_context(path))

        statuses = _statuses(outcome)
        assert statuses["virus-scan"] is StageStatus.COMPLETED
        assert outcome.threat_scan_result.infected is False

        assert statuses["text-extraction"] is StageStatus.COMPLETED
        persisted = store.upsert_processing_result.await_args_list[0].args[1]
        assert persisted.extracted_text_hash == hashlib.sha256(document.encode("ascii")).hexdigest()

        assert statuses["pii-detection"] is StageStatus.COMPLETED
        assert outcome.pii_scan_result.has_pii is True
        assert outcome.pii_scan_result.summary.total_findings == 1
        assert outcome.pii_scan_result.summary.critical_findings == 1

        assert outcome.success is True, outcome.error
        assert outcome.frameworks
