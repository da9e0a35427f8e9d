import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from policyguard.db.base import Base, JSONType


class ProcessingResult(Base):
    """Analysis output for one upload.

    At most one row exists per upload (``upload_id`` is unique); reprocessing
    updates it in place.  Gap analyses and redlines are child rows kept in
    pipeline order via ``sort_order``.
    """

    __tablename__ = "processing_result"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    upload_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("document_upload.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    extracted_text_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entities: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    frameworks: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    upload: Mapped["DocumentUpload"] = relationship(  # noqa: F821
        "DocumentUpload", back_populates="processing_result"
    )
    gap_analyses: Mapped[list["GapAnalysisRecord"]] = relationship(
        "GapAnalysisRecord",
        cascade="all, delete-orphan",
        order_by="GapAnalysisRecord.sort_order",
    )
    policy_redlines: Mapped[list["PolicyRedlineRecord"]] = relationship(
        "PolicyRedlineRecord",
        cascade="all, delete-orphan",
        order_by="PolicyRedlineRecord.sort_order",
    )
    artifacts: Mapped[list["GeneratedArtifactRecord"]] = relationship(  # noqa: F821
        "GeneratedArtifactRecord",
        cascade="all, delete-orphan",
        order_by="GeneratedArtifactRecord.created_at",
    )


class GapAnalysisRecord(Base):
    __tablename__ = "gap_analysis"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    result_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("processing_result.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    framework: Mapped[str] = mapped_column(String(64), nullable=False)
    section: Mapped[str] = mapped_column(Text, nullable=False)
    requirement: Mapped[str] = mapped_column(Text, nullable=False)
    current_state: Mapped[str] = mapped_column(Text, nullable=False)
    gap: Mapped[str] = mapped_column(Text, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(16), nullable=False)
    remediation: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class PolicyRedlineRecord(Base):
    __tablename__ = "policy_redline"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    result_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("processing_result.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    section: Mapped[str] = mapped_column(Text, nullable=False)
    original_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    suggested_text: Mapped[str] = mapped_column(Text, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    framework: Mapped[str] = mapped_column(String(64), nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
