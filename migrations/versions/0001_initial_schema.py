"""Initial schema: institution, document_upload, processing_result and children

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        sa.String(36),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()::text"),
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    op.execute(
        "CREATE TYPE upload_status AS ENUM ('UPLOADED', 'PROCESSING', 'COMPLETE', 'FAILED')"
    )
    upload_status = postgresql.ENUM(
        "UPLOADED", "PROCESSING", "COMPLETE", "FAILED",
        name="upload_status", create_type=False,
    )

    # --- institution ---
    op.create_table(
        "institution",
        _id_column(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("type", sa.String(32), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _timestamp("created_at"),
    )

    # --- document_upload ---
    op.create_table(
        "document_upload",
        _id_column(),
        sa.Column(
            "institution_id",
            sa.String(36),
            sa.ForeignKey("institution.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("filename", sa.Text(), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("document_type", sa.String(32), nullable=False),
        sa.Column(
            "status", upload_status, nullable=False, server_default="UPLOADED"
        ),
        sa.Column("pii_detected", sa.Boolean(), nullable=True),
        sa.Column("pii_redacted_url", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_document_upload_institution_id", "document_upload", ["institution_id"])
    op.create_index("ix_document_upload_status", "document_upload", ["status"])

    # --- processing_result ---
    op.create_table(
        "processing_result",
        _id_column(),
        sa.Column(
            "upload_id",
            sa.String(36),
            sa.ForeignKey("document_upload.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("extracted_text_hash", sa.String(64), nullable=True),
        sa.Column(
            "entities",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column(
            "frameworks",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'"),
        ),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("upload_id", name="uq_processing_result_upload_id"),
    )

    # --- gap_analysis ---
    op.create_table(
        "gap_analysis",
        _id_column(),
        sa.Column(
            "result_id",
            sa.String(36),
            sa.ForeignKey("processing_result.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("framework", sa.String(64), nullable=False),
        sa.Column("section", sa.Text(), nullable=False),
        sa.Column("requirement", sa.Text(), nullable=False),
        sa.Column("current_state", sa.Text(), nullable=False),
        sa.Column("gap", sa.Text(), nullable=False),
        sa.Column("risk_level", sa.String(16), nullable=False),
        sa.Column("remediation", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
    )
    op.create_index("ix_gap_analysis_result_id", "gap_analysis", ["result_id"])

    # --- policy_redline ---
    op.create_table(
        "policy_redline",
        _id_column(),
        sa.Column(
            "result_id",
            sa.String(36),
            sa.ForeignKey("processing_result.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("section", sa.Text(), nullable=False),
        sa.Column("original_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("suggested_text", sa.Text(), nullable=False),
        sa.Column("rationale", sa.Text(), nullable=False),
        sa.Column("framework", sa.String(64), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False, server_default="0"),
    )
    op.create_index("ix_policy_redline_result_id", "policy_redline", ["result_id"])

    # --- generated_artifact ---
    op.create_table(
        "generated_artifact",
        _id_column(),
        sa.Column(
            "result_id",
            sa.String(36),
            sa.ForeignKey("processing_result.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("format", sa.String(16), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("storage_url", sa.Text(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_generated_artifact_result_id", "generated_artifact", ["result_id"])


def downgrade() -> None:
    op.drop_table("generated_artifact")
    op.drop_table("policy_redline")
    op.drop_table("gap_analysis")
    op.drop_table("processing_result")
    op.drop_table("document_upload")
    op.drop_table("institution")
    op.execute("DROP TYPE IF EXISTS upload_status")
