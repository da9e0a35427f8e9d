"""Collaborator contracts for the document processing pipeline.

The pipeline depends only on the protocols below.  Default implementations
live beside this module (text extractor, framework mapper, gap analyzer,
policy redliner, artifact generator), in :mod:`policyguard.services` (redacted
text store, quarantine) and in :mod:`policyguard.repositories` (persistence).
Tests substitute :class:`unittest.mock.AsyncMock` objects or small fakes.

Data passed across the seams is carried in frozen dataclasses so that no
collaborator can mutate another's view of a run.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, Sequence, runtime_checkable

from policyguard.core.threat_scanner import ThreatScanResult


class UploadStatus(str, enum.Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstitutionInfo:
    id: str
    name: str
    type: str | None = None


@dataclass(frozen=True)
class UploadInfo:
    id: str
    institution_id: str
    filename: str
    document_type: str
    status: UploadStatus
    pii_detected: bool | None = None
    pii_redacted_url: str | None = None
    processed_at: datetime | None = None
    file_path: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class ExtractionResult:
    """Text extracted from a document.

    Attributes:
        text: Normalised plain text; empty for documents without text.
        metadata: Format details such as ``format``, ``word_count``,
            ``character_count`` and ``page_count``.
    """

    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GapAnalysis:
    """One compliance gap between a document and a framework requirement."""

    framework: str
    section: str
    requirement: str
    current_state: str
    gap: str
    risk_level: str
    remediation: str
    confidence: float = 0.0
    evidence: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "framework": self.framework,
            "section": self.section,
            "requirement": self.requirement,
            "current_state": self.current_state,
            "gap": self.gap,
            "risk_level": self.risk_level,
            "remediation": self.remediation,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
        }


@dataclass(frozen=True)
class PolicyRedline:
    """One suggested change to the policy text."""

    section: str
    original_text: str
    suggested_text: str
    rationale: str
    framework: str
    confidence_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "section": self.section,
            "original_text": self.original_text,
            "suggested_text": self.suggested_text,
            "rationale": self.rationale,
            "framework": self.framework,
            "confidence_score": self.confidence_score,
        }


@dataclass(frozen=True)
class ProcessingResultData:
    """Fields written by :meth:`ProcessingStore.upsert_processing_result`.

    ``None`` means "leave unchanged" on update and "use the column default"
    on create.  ``gap_analyses`` and ``policy_redlines``, when given, replace
    the existing child rows as a whole.

    A payload with ``extracted_text_hash`` set describes a fresh analysis:
    ``error_message`` is written even when ``None`` and artifacts from earlier
    runs are removed.
    """

    extracted_text: str | None = None
    extracted_text_hash: str | None = None
    entities: dict[str, list[str]] | None = None
    frameworks: list[str] | None = None
    gap_analyses: Sequence[GapAnalysis] | None = None
    policy_redlines: Sequence[PolicyRedline] | None = None
    processing_time_ms: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class StoredProcessingResult:
    """A persisted processing result as returned by the store."""

    id: str
    upload_id: str
    extracted_text_hash: str | None
    entities: dict[str, list[str]]
    frameworks: list[str]
    gap_analyses: tuple[GapAnalysis, ...] = ()
    policy_redlines: tuple[PolicyRedline, ...] = ()
    processing_time_ms: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class GeneratedArtifact:
    """A rendered output document.

    Attributes:
        type: ``"gap-report"`` or ``"policy-redline"``.
        format: ``"pdf"`` or ``"docx"``.
        title: Human-readable title.
        description: One-line summary.
        storage_url: Where the rendered file was written.
        file_size: Size in bytes.
        metadata: Generator details (``generated_at``, ``version``, ...).
    """

    type: str
    format: str
    title: str
    description: str
    storage_url: str
    file_size: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "format": self.format,
            "title": self.title,
            "description": self.description,
            "storage_url": self.storage_url,
            "file_size": self.file_size,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class ArtifactRequest:
    upload: UploadInfo | None
    processing_result: StoredProcessingResult
    institution: InstitutionInfo | None


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ProcessingStore(Protocol):
    """Persistence used by the pipeline.

    ``upsert_processing_result`` must be idempotent per upload id: repeated
    calls with equal data leave exactly one equal record.
    """

    async def get_upload(self, upload_id: str) -> UploadInfo | None: ...

    async def update_upload(self, upload_id: str, **fields: Any) -> None: ...

    async def upsert_processing_result(
        self, upload_id: str, data: ProcessingResultData
    ) -> StoredProcessingResult: ...

    async def create_artifact(self, result_id: str, artifact: GeneratedArtifact) -> None: ...

    async def get_institution(self, institution_id: str) -> InstitutionInfo | None: ...


@runtime_checkable
class TextExtractor(Protocol):
    async def extract(self, file_path: str) -> ExtractionResult: ...


@runtime_checkable
class EntityRecognizer(Protocol):
    async def detect_entities(self, text: str) -> dict[str, list[str]]: ...


@runtime_checkable
class FrameworkMapper(Protocol):
    async def map_frameworks(
        self, text: str, document_type: str, institution_type: str
    ) -> list[str]: ...


@runtime_checkable
class GapAnalyzer(Protocol):
    async def analyze(
        self, text: str, frameworks: Sequence[str], entities: dict[str, list[str]]
    ) -> list[GapAnalysis]: ...


@runtime_checkable
class PolicyRedliner(Protocol):
    async def generate_redlines(
        self, text: str, frameworks: Sequence[str], gap_analyses: Sequence[GapAnalysis]
    ) -> list[PolicyRedline]: ...


@runtime_checkable
class ArtifactGenerator(Protocol):
    async def generate_all(self, request: ArtifactRequest) -> list[GeneratedArtifact]: ...


@runtime_checkable
class RedactedTextStore(Protocol):
    async def save(self, upload_id: str, redacted_text: str) -> str: ...


@runtime_checkable
class QuarantineService(Protocol):
    async def quarantine(
        self, upload_id: str, data: bytes, scan_result: ThreatScanResult
    ) -> str: ...
