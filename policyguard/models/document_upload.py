import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from policyguard.db.base import Base

UploadStatusEnum = Enum("UPLOADED", "PROCESSING", "COMPLETE", "FAILED", name="upload_status")


class DocumentUpload(Base):
    """A document submitted for processing and its lifecycle status."""

    __tablename__ = "document_upload"
    __table_args__ = (
        Index("ix_document_upload_institution_id", "institution_id"),
        Index("ix_document_upload_status", "status"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    institution_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("institution.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    document_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(UploadStatusEnum, nullable=False, default="UPLOADED")
    pii_detected: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    pii_redacted_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    institution: Mapped["Institution"] = relationship(  # noqa: F821
        "Institution", back_populates="uploads"
    )
    processing_result: Mapped["ProcessingResult | None"] = relationship(  # noqa: F821
        "ProcessingResult", back_populates="upload", uselist=False, cascade="all, delete-orphan"
    )
