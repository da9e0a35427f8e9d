"""ProcessingContext - immutable description of one pipeline run.

Created once per job by the caller (the Celery task or a test) and passed to
:meth:`~policyguard.core.pipeline.DocumentProcessingPipeline.process`.  The
pipeline never mutates it; per-run state lives in the
:class:`~policyguard.core.stages.StageTracker` and the returned outcome.

Usage::

    from policyguard.core.processing_context import ProcessingContext

    ctx = ProcessingContext(
        upload_id="u-1",
        file_path="/data/uploads/u-1/policy.pdf",
        document_type="policy",
        institution_id="inst-1",
        user_id="user-1",
    )
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Literal

DocumentType = Literal["policy", "handbook", "contract"]
Priority = Literal["low", "normal", "high"]

DOCUMENT_TYPES: frozenset[str] = frozenset({"policy", "handbook", "contract"})
PRIORITIES: frozenset[str] = frozenset({"low", "normal", "high"})


@dataclass(frozen=True)
class ProcessingContext:
    """Inputs of one processing run.

    Attributes:
        upload_id: Identifier of the ``document_upload`` row being processed.
        file_path: Local path of the uploaded file.
        document_type: ``"policy"``, ``"handbook"`` or ``"contract"``.
        institution_id: Owning institution.
        user_id: User who submitted the upload.
        priority: Scheduling hint only; the pipeline does not act on it.
    """

    upload_id: str
    file_path: str
    document_type: DocumentType
    institution_id: str
    user_id: str
    priority: Priority = "normal"

    def __post_init__(self) -> None:
        if not self.upload_id:
            raise ValueError("upload_id must not be empty")
        if self.document_type not in DOCUMENT_TYPES:
            raise ValueError(
                f"document_type must be one of {sorted(DOCUMENT_TYPES)}, got {self.document_type!r}"
            )
        if self.priority not in PRIORITIES:
            raise ValueError(f"priority must be one of {sorted(PRIORITIES)}, got {self.priority!r}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessingContext":
        return cls(
            upload_id=str(data["upload_id"]),
            file_path=str(data["file_path"]),
            document_type=data["document_type"],
            institution_id=str(data["institution_id"]),
            user_id=str(data["user_id"]),
            priority=data.get("priority", "normal"),
        )
