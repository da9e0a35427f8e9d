import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from policyguard.db.base import Base, JSONType


class Institution(Base):
    """An education institution that owns uploaded documents.

    ``type`` (``K12``, ``HigherEd``, ...) drives which frameworks apply to
    its documents.
    """

    __tablename__ = "institution"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # "metadata" is reserved on declarative classes
    attributes: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    uploads: Mapped[list["DocumentUpload"]] = relationship(  # noqa: F821
        "DocumentUpload", back_populates="institution", cascade="all, delete-orphan"
    )
