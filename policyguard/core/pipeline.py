"""DocumentProcessingPipeline - orchestration of the eight processing stages.

:class:`DocumentProcessingPipeline` drives one uploaded document through:

1. **virus-scan**          - layered threat scan; infected files are rejected
2. **text-extraction**     - file to plain text; too little text is an error
3. **pii-detection**       - PII scan; redacted copy stored, flag persisted
4. **entity-recognition**  - entities from the de-identified text
5. **framework-mapping**   - applicable compliance frameworks
6. **gap-analysis**        - requirement gaps per framework
7. **policy-redlining**    - suggested policy changes; result persisted
8. **artifact-generation** - report documents rendered and persisted

Stages 4-7 always receive the de-identified text when PII was found, so raw
PII never leaves stage 3.

Every stage runs through :meth:`_run_stage`, which moves the stage through
the :class:`~policyguard.core.stages.StageTracker` state machine inside an
OpenTelemetry child span and wraps any exception in :class:`PipelineError`.

**Failure contract**: :meth:`process` never raises for stage or collaborator
failures.  The first failing stage is marked ``failed``, later stages stay
``pending``, the upload is set to ``FAILED``, an error-only processing result
is upserted, and a :class:`PipelineOutcome` with ``success=False`` is
returned.  Failures of that bookkeeping are logged and do not mask the
outcome.

Usage::

    from policyguard.core.pipeline import DocumentProcessingPipeline

    pipeline = DocumentProcessingPipeline(
        store=store,
        threat_scanner=ThreatScanner(),
        pii_scanner=PiiScanner(),
        text_extractor=DocumentTextExtractor(),
        entity_recognizer=RegexEntityRecognizer(),
        framework_mapper=KeywordFrameworkMapper(),
        gap_analyzer=RequirementGapAnalyzer(),
        policy_redliner=TemplatePolicyRedliner(),
        artifact_generator=FileArtifactGenerator(output_dir="/tmp/artifacts"),
        redacted_text_store=RedactedTextStorage.from_settings(settings),
    )
    outcome = await pipeline.process(context)
    if not outcome.success:
        print(outcome.failed_stage, outcome.user_message)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter, Histogram

from policyguard.core.contracts import (
    ArtifactGenerator,
    ArtifactRequest,
    EntityRecognizer,
    FrameworkMapper,
    GapAnalysis,
    GapAnalyzer,
    GeneratedArtifact,
    PolicyRedline,
    PolicyRedliner,
    ProcessingResultData,
    ProcessingStore,
    QuarantineService,
    RedactedTextStore,
    StoredProcessingResult,
    TextExtractor,
    UploadStatus,
)
from policyguard.core.pii_scanner import PiiScanner, PiiScanResult
from policyguard.core.processing_context import ProcessingContext
from policyguard.core.stages import ProcessingStage, StageName, StageTracker
from policyguard.core.threat_scanner import ThreatDetection, ThreatScanner, ThreatScanResult

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "policyguard.pipeline",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

_RUNS = Counter(
    "policyguard_pipeline_runs_total",
    "Total pipeline runs by outcome",
    ["outcome"],  # success | failure
)

_STAGE_FAILURES = Counter(
    "policyguard_pipeline_stage_failures_total",
    "Total stage failures by stage and error type",
    ["stage", "error"],
)

_RUN_DURATION = Histogram(
    "policyguard_pipeline_duration_seconds",
    "Wall-clock duration of pipeline runs",
)

_QUARANTINE_ACTIONS = frozenset({"quarantine", "block"})

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Raised by the stage wrapper when a stage fails.

    Attributes:
        step_name: Name of the failing stage (e.g. ``"virus-scan"``).
        original: The exception raised inside the stage.
    """

    def __init__(self, step_name: str, original: Exception) -> None:
        super().__init__(f"Pipeline stage '{step_name}' failed: {original}")
        self.step_name = step_name
        self.original = original


class SecurityRejectionError(Exception):
    """Raised by the virus-scan stage when the file is infected.

    The message names the detections and is meant for operators and the
    persisted error; :attr:`user_message` lists only categories and actions.
    """

    def __init__(self, detections: Sequence[ThreatDetection]) -> None:
        self.detections = tuple(detections)
        names = ", ".join(d.name for d in self.detections)
        super().__init__(f"Security threat detected: {names}")

    @property
    def user_message(self) -> str:
        categories = ", ".join(dict.fromkeys(d.category for d in self.detections))
        actions = ", ".join(dict.fromkeys(d.action for d in self.detections))
        return f"The document was rejected by the security scan (categories: {categories}; actions: {actions})."


class InsufficientContentError(Exception):
    """Raised by the text-extraction stage when too little text was extracted."""

    def __init__(self, character_count: int, minimum: int) -> None:
        super().__init__("Insufficient text content extracted from document")
        self.character_count = character_count
        self.minimum = minimum


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineOutcome:
    """Result of one :meth:`DocumentProcessingPipeline.process` call.

    Attributes:
        success: ``True`` when all eight stages completed.
        stages: Stage snapshot in pipeline order.
        total_time_ms: Wall-clock time from entry to return.
        threat_scan_result: Set once the virus-scan stage produced a result.
        pii_scan_result: Set once the pii-detection stage produced a result.
        frameworks: Applicable frameworks, highest confidence first.
        entities: Recognized entities by category.
        gap_analyses: Gaps found.
        policy_redlines: Suggested changes.
        artifacts: Rendered artifacts.
        failed_stage: Name of the failing stage, ``None`` on success or when
            the failure happened outside any stage.
        error: Verbatim error message.
        user_message: Error summary safe to show to end users.
    """

    success: bool
    stages: tuple[ProcessingStage, ...]
    total_time_ms: int
    threat_scan_result: ThreatScanResult | None = None
    pii_scan_result: PiiScanResult | None = None
    frameworks: tuple[str, ...] = ()
    entities: dict[str, list[str]] = field(default_factory=dict)
    gap_analyses: tuple[GapAnalysis, ...] = ()
    policy_redlines: tuple[PolicyRedline, ...] = ()
    artifacts: tuple[GeneratedArtifact, ...] = ()
    failed_stage: str | None = None
    error: str | None = None
    user_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable summary; PII values and threat names are omitted."""
        pii = self.pii_scan_result
        threat = self.threat_scan_result
        stages = [s.to_dict() for s in self.stages]
        for stage in stages:
            if stage["error"] is not None and stage["name"] == self.failed_stage:
                stage["error"] = self.user_message
        return {
            "success": self.success,
            "total_time_ms": self.total_time_ms,
            "stages": stages,
            "failed_stage": self.failed_stage,
            "error": self.user_message if self.error else None,
            "threat_scan": None
            if threat is None
            else {
                "infected": threat.infected,
                "file_hash": threat.file_hash,
                "categories": sorted({t.category for t in threat.threats}),
                "actions": list(threat.recommended_actions),
            },
            "pii": None
            if pii is None
            else {
                "has_pii": pii.has_pii,
                "confidence": pii.confidence,
                "total_findings": pii.summary.total_findings,
                "critical_findings": pii.summary.critical_findings,
                "types_found": list(pii.summary.types_found),
            },
            "frameworks": list(self.frameworks),
            "entities": self.entities,
            "gap_analyses": [g.to_dict() for g in self.gap_analyses],
            "policy_redlines": [r.to_dict() for r in self.policy_redlines],
            "artifacts": [a.to_dict() for a in self.artifacts],
        }


@dataclass
class _RunState:
    """Per-run results collected while stages execute."""

    start_ms: int
    threat_scan_result: ThreatScanResult | None = None
    pii_scan_result: PiiScanResult | None = None


def _elapsed_ms(start_ms: int) -> int:
    return int(time.monotonic() * 1000) - start_ms


# ---------------------------------------------------------------------------
# DocumentProcessingPipeline
# ---------------------------------------------------------------------------


class DocumentProcessingPipeline:
    """Runs uploaded documents through the eight processing stages.

    All collaborators are injected so tests can substitute mocks.  The
    pipeline keeps no per-run state on the instance and may be shared by
    concurrent runs for different uploads.

    Args:
        store: Persistence for uploads, results and artifacts.
        threat_scanner: Scanner for stage 1.
        pii_scanner: Scanner for stage 3.
        text_extractor: Extractor for stage 2.
        entity_recognizer: Recognizer for stage 4.
        framework_mapper: Mapper for stage 5.
        gap_analyzer: Analyzer for stage 6.
        policy_redliner: Redliner for stage 7.
        artifact_generator: Generator for stage 8.
        redacted_text_store: Where redacted text is saved in stage 3.
        quarantine_service: Optional; receives files whose detections
            recommend quarantine or block.
        min_extracted_chars: Minimum extracted text length.
        default_institution_type: Used when the institution or its type is
            unknown.
    """

    def __init__(
        self,
        *,
        store: ProcessingStore,
        threat_scanner: ThreatScanner,
        pii_scanner: PiiScanner,
        text_extractor: TextExtractor,
        entity_recognizer: EntityRecognizer,
        framework_mapper: FrameworkMapper,
        gap_analyzer: GapAnalyzer,
        policy_redliner: PolicyRedliner,
        artifact_generator: ArtifactGenerator,
        redacted_text_store: RedactedTextStore,
        quarantine_service: QuarantineService | None = None,
        min_extracted_chars: int = 100,
        default_institution_type: str = "K12",
    ) -> None:
        self._store = store
        self._threat_scanner = threat_scanner
        self._pii_scanner = pii_scanner
        self._text_extractor = text_extractor
        self._entity_recognizer = entity_recognizer
        self._framework_mapper = framework_mapper
        self._gap_analyzer = gap_analyzer
        self._policy_redliner = policy_redliner
        self._artifact_generator = artifact_generator
        self._redacted_text_store = redacted_text_store
        self._quarantine_service = quarantine_service
        self._min_extracted_chars = min_extracted_chars
        self._default_institution_type = default_institution_type

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process(self, context: ProcessingContext) -> PipelineOutcome:
        """Process the upload described by *context*.

        Returns:
            A :class:`PipelineOutcome`.  Stage and collaborator failures are
            reported through ``success=False``, never raised.
        """
        state = _RunState(start_ms=int(time.monotonic() * 1000))
        tracker = StageTracker()

        with tracer.start_as_current_span(
            "policyguard.process",
            kind=trace.SpanKind.INTERNAL,
        ) as root_span:
            root_span.set_attribute("upload.id", context.upload_id)
            root_span.set_attribute("upload.document_type", context.document_type)
            root_span.set_attribute("upload.institution_id", context.institution_id)

            try:
                outcome = await self._execute(context, tracker, state)
            except PipelineError as exc:
                root_span.record_exception(exc.original)
                root_span.set_status(Status(StatusCode.ERROR, str(exc.original)))
                root_span.set_attribute("pipeline.failed_stage", exc.step_name)
                outcome = await self._handle_failure(context, tracker, state, exc.original, exc.step_name)
            except Exception as exc:
                root_span.record_exception(exc)
                root_span.set_status(Status(StatusCode.ERROR, str(exc)))
                outcome = await self._handle_failure(context, tracker, state, exc, None)

            root_span.set_attribute("pipeline.success", outcome.success)
            root_span.set_attribute("pipeline.duration_ms", outcome.total_time_ms)

        _RUNS.labels(outcome="success" if outcome.success else "failure").inc()
        _RUN_DURATION.observe(outcome.total_time_ms / 1000)
        return outcome

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    async def _execute(
        self,
        context: ProcessingContext,
        tracker: StageTracker,
        state: _RunState,
    ) -> PipelineOutcome:
        await self._store.update_upload(context.upload_id, status=UploadStatus.PROCESSING)

        state.threat_scan_result = await self._run_stage(
            tracker, context, StageName.VIRUS_SCAN, self._virus_scan, context
        )
        text = await self._run_stage(
            tracker, context, StageName.TEXT_EXTRACTION, self._extract_text, context
        )
        state.pii_scan_result = await self._run_stage(
            tracker, context, StageName.PII_DETECTION, self._detect_pii, context, text
        )
        safe_text = state.pii_scan_result.redacted_text or text

        entities = await self._run_stage(
            tracker, context, StageName.ENTITY_RECOGNITION,
            self._entity_recognizer.detect_entities, safe_text,
        )
        frameworks = await self._run_stage(
            tracker, context, StageName.FRAMEWORK_MAPPING, self._map_frameworks, context, safe_text
        )
        gap_analyses = await self._run_stage(
            tracker, context, StageName.GAP_ANALYSIS,
            self._gap_analyzer.analyze, safe_text, frameworks, entities,
        )
        redlines, result = await self._run_stage(
            tracker, context, StageName.POLICY_REDLINING,
            self._redline_and_persist, context, state, text, safe_text, frameworks, entities, gap_analyses,
        )
        artifacts = await self._run_stage(
            tracker, context, StageName.ARTIFACT_GENERATION,
            self._generate_artifacts, context, result,
        )

        total_ms = _elapsed_ms(state.start_ms)
        logger.info(
            "Pipeline complete: upload_id=%s frameworks=%d gaps=%d redlines=%d artifacts=%d duration_ms=%d",
            context.upload_id,
            len(frameworks),
            len(gap_analyses),
            len(redlines),
            len(artifacts),
            total_ms,
        )
        return PipelineOutcome(
            success=True,
            stages=tracker.snapshot(),
            total_time_ms=total_ms,
            threat_scan_result=state.threat_scan_result,
            pii_scan_result=state.pii_scan_result,
            frameworks=tuple(frameworks),
            entities=entities,
            gap_analyses=tuple(gap_analyses),
            policy_redlines=tuple(redlines),
            artifacts=tuple(artifacts),
        )

    async def _handle_failure(
        self,
        context: ProcessingContext,
        tracker: StageTracker,
        state: _RunState,
        error: Exception,
        failed_stage: str | None,
    ) -> PipelineOutcome:
        message = str(error) or type(error).__name__
        total_ms = _elapsed_ms(state.start_ms)

        logger.error(
            "Pipeline failed: upload_id=%s stage=%s error=%s",
            context.upload_id,
            failed_stage,
            message,
        )

        try:
            await self._store.update_upload(context.upload_id, status=UploadStatus.FAILED)
        except Exception:
            logger.exception("Failed to mark upload %s as FAILED", context.upload_id)

        try:
            await self._store.upsert_processing_result(
                context.upload_id,
                ProcessingResultData(error_message=message, processing_time_ms=total_ms),
            )
        except Exception:
            logger.exception("Failed to record error result for upload %s", context.upload_id)

        user_message = error.user_message if isinstance(error, SecurityRejectionError) else message
        return PipelineOutcome(
            success=False,
            stages=tracker.snapshot(),
            total_time_ms=total_ms,
            threat_scan_result=state.threat_scan_result,
            pii_scan_result=state.pii_scan_result,
            failed_stage=failed_stage,
            error=message,
            user_message=user_message,
        )

    # ------------------------------------------------------------------
    # Stage wrapper
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        tracker: StageTracker,
        context: ProcessingContext,
        stage: StageName,
        step_fn: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        """Run one stage inside a child span and the stage state machine.

        Raises:
            PipelineError: Wrapping any exception raised by *step_fn*.
        """
        with tracer.start_as_current_span(f"policyguard.{stage.value}") as span:
            span.set_attribute("stage.name", stage.value)
            span.set_attribute("upload.id", context.upload_id)
            tracker.start(stage)
            stage_start_ms = int(time.monotonic() * 1000)

            try:
                result = await step_fn(*args)
            except Exception as exc:
                elapsed_ms = _elapsed_ms(stage_start_ms)
                tracker.fail(stage, str(exc) or type(exc).__name__)
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                span.set_attribute("stage.duration_ms", elapsed_ms)
                span.set_attribute("stage.error", type(exc).__name__)
                _STAGE_FAILURES.labels(stage=stage.value, error=type(exc).__name__).inc()
                raise PipelineError(stage.value, exc) from exc

            tracker.complete(stage)
            elapsed_ms = _elapsed_ms(stage_start_ms)
            span.set_attribute("stage.duration_ms", elapsed_ms)
            logger.debug(
                "Stage '%s' complete: upload_id=%s duration_ms=%d",
                stage.value,
                context.upload_id,
                elapsed_ms,
            )
            return result

    # ------------------------------------------------------------------
    # Stage bodies
    # ------------------------------------------------------------------

    async def _virus_scan(self, context: ProcessingContext) -> ThreatScanResult:
        buffer = await asyncio.to_thread(Path(context.file_path).read_bytes)
        declared_mime_type, _ = mimetypes.guess_type(context.file_path)
        result = await self._threat_scanner.scan(buffer, declared_mime_type)

        if self._quarantine_service is not None and _QUARANTINE_ACTIONS.intersection(
            result.recommended_actions
        ):
            quarantine_id = await self._quarantine_service.quarantine(context.upload_id, buffer, result)
            logger.warning(
                "Upload quarantined: upload_id=%s quarantine_id=%s",
                context.upload_id,
                quarantine_id,
            )

        if result.infected:
            raise SecurityRejectionError(
                [t for t in result.threats if t.severity in ("high", "critical")]
            )
        return result

    async def _extract_text(self, context: ProcessingContext) -> str:
        extraction = await self._text_extractor.extract(context.file_path)
        if len(extraction.text) < self._min_extracted_chars:
            raise InsufficientContentError(len(extraction.text), self._min_extracted_chars)
        return extraction.text

    async def _detect_pii(self, context: ProcessingContext, text: str) -> PiiScanResult:
        result = self._pii_scanner.scan(text)

        redacted_url: str | None = None
        if result.redacted_text is not None:
            redacted_url = await self._redacted_text_store.save(context.upload_id, result.redacted_text)

        await self._store.update_upload(
            context.upload_id,
            pii_detected=result.has_pii,
            pii_redacted_url=redacted_url,
        )
        if result.has_pii:
            logger.info(
                "PII detected: upload_id=%s findings=%d types=%s",
                context.upload_id,
                result.summary.total_findings,
                ",".join(result.summary.types_found),
            )
        return result

    async def _map_frameworks(self, context: ProcessingContext, text: str) -> list[str]:
        institution = await self._store.get_institution(context.institution_id)
        institution_type = (institution.type if institution else None) or self._default_institution_type
        return await self._framework_mapper.map_frameworks(text, context.document_type, institution_type)

    async def _redline_and_persist(
        self,
        context: ProcessingContext,
        state: _RunState,
        text: str,
        safe_text: str,
        frameworks: list[str],
        entities: dict[str, list[str]],
        gap_analyses: list[GapAnalysis],
    ) -> tuple[list[PolicyRedline], StoredProcessingResult]:
        redlines = await self._policy_redliner.generate_redlines(safe_text, frameworks, gap_analyses)
        # Persisted before artifact generation so analysis survives a render failure.
        result = await self._store.upsert_processing_result(
            context.upload_id,
            ProcessingResultData(
                extracted_text=safe_text,
                extracted_text_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
                entities=entities,
                frameworks=list(frameworks),
                gap_analyses=list(gap_analyses),
                policy_redlines=list(redlines),
                processing_time_ms=_elapsed_ms(state.start_ms),
            ),
        )
        return redlines, result

    async def _generate_artifacts(
        self,
        context: ProcessingContext,
        result: StoredProcessingResult,
    ) -> list[GeneratedArtifact]:
        request = ArtifactRequest(
            upload=await self._store.get_upload(context.upload_id),
            processing_result=result,
            institution=await self._store.get_institution(context.institution_id),
        )
        artifacts = await self._artifact_generator.generate_all(request)
        for artifact in artifacts:
            await self._store.create_artifact(result.id, artifact)

        await self._store.update_upload(
            context.upload_id,
            status=UploadStatus.COMPLETE,
            processed_at=datetime.now(tz=timezone.utc),
        )
        return artifacts
