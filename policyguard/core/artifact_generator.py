"""Default artifact generator: gap report PDF and policy redline DOCX.

:class:`FileArtifactGenerator` renders two documents for every successful
processing run and writes them under ``artifacts_dir/<upload_id>/``:

* ``gap-report`` / ``pdf`` - "AI Readiness Gap Analysis Report", built with
  ReportLab: summary table, frameworks, and one table row per gap.
* ``policy-redline`` / ``docx`` - "AI Policy Redlines", built with
  python-docx: one section per suggested change with original text, the
  suggested replacement and its rationale.

Rendering is synchronous and runs via :func:`asyncio.to_thread`.  Any
rendering or write failure is raised as :class:`ArtifactGenerationError`.

Usage::

    from policyguard.core.artifact_generator import FileArtifactGenerator

    generator = FileArtifactGenerator(output_dir="/var/lib/policyguard/artifacts")
    artifacts = await generator.generate_all(request)
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
from datetime import datetime, timezone
from typing import Any
from xml.sax.saxutils import escape

import docx

from policyguard.core.contracts import ArtifactRequest, GeneratedArtifact

logger = logging.getLogger(__name__)

ARTIFACT_VERSION = "1.0"

GAP_REPORT_TITLE = "AI Readiness Gap Analysis Report"
REDLINE_TITLE = "AI Policy Redlines"


class ArtifactGenerationError(Exception):
    """Raised when an artifact cannot be rendered or written.

    Attributes:
        artifact_type: ``"gap-report"`` or ``"policy-redline"``.
    """

    def __init__(self, message: str, *, artifact_type: str) -> None:
        super().__init__(message)
        self.artifact_type = artifact_type


class FileArtifactGenerator:
    """Renders artifacts to the local filesystem.

    Args:
        output_dir: Root directory for rendered files.
    """

    def __init__(self, output_dir: str) -> None:
        self._output_dir = output_dir

    async def generate_all(self, request: ArtifactRequest) -> list[GeneratedArtifact]:
        generated_at = datetime.now(tz=timezone.utc)
        artifacts = [
            await self._generate(
                request,
                artifact_type="gap-report",
                fmt="pdf",
                title=GAP_REPORT_TITLE,
                description=(
                    f"{len(request.processing_result.gap_analyses)} gap(s) across "
                    f"{len(request.processing_result.frameworks)} framework(s)"
                ),
                render=self.render_gap_report,
                generated_at=generated_at,
            ),
            await self._generate(
                request,
                artifact_type="policy-redline",
                fmt="docx",
                title=REDLINE_TITLE,
                description=f"{len(request.processing_result.policy_redlines)} suggested change(s)",
                render=self.render_redlines,
                generated_at=generated_at,
            ),
        ]
        logger.info(
            "Artifacts generated: upload_id=%s count=%d",
            request.processing_result.upload_id,
            len(artifacts),
        )
        return artifacts

    async def _generate(
        self,
        request: ArtifactRequest,
        *,
        artifact_type: str,
        fmt: str,
        title: str,
        description: str,
        render: Any,
        generated_at: datetime,
    ) -> GeneratedArtifact:
        upload_id = request.processing_result.upload_id
        try:
            content: bytes = await asyncio.to_thread(render, request, generated_at)
            path = await asyncio.to_thread(self._write, upload_id, f"{artifact_type}.{fmt}", content)
        except Exception as exc:
            raise ArtifactGenerationError(
                f"Failed to generate {artifact_type} artifact: {exc}",
                artifact_type=artifact_type,
            ) from exc

        return GeneratedArtifact(
            type=artifact_type,
            format=fmt,
            title=title,
            description=description,
            storage_url=f"file://{path}",
            file_size=len(content),
            metadata={"generated_at": generated_at.isoformat(), "version": ARTIFACT_VERSION},
        )

    def _write(self, upload_id: str, filename: str, content: bytes) -> str:
        directory = os.path.join(self._output_dir, upload_id)
        os.makedirs(directory, exist_ok=True)
        file_path = os.path.join(directory, filename)
        with open(file_path, "wb") as fh:
            fh.write(content)
        return file_path

    # ------------------------------------------------------------------
    # Renderers
    # ------------------------------------------------------------------

    @staticmethod
    def render_gap_report(request: ArtifactRequest, generated_at: datetime) -> bytes:
        """Render the gap analysis report as A4 PDF bytes."""
        from reportlab.lib import colors  # type: ignore[import-untyped]
        from reportlab.lib.pagesizes import A4  # type: ignore[import-untyped]
        from reportlab.lib.styles import getSampleStyleSheet  # type: ignore[import-untyped]
        from reportlab.lib.units import cm  # type: ignore[import-untyped]
        from reportlab.platypus import (  # type: ignore[import-untyped]
            Paragraph,
            SimpleDocTemplate,
            Spacer,
            Table,
            TableStyle,
        )

        result = request.processing_result
        buf = io.BytesIO()
        doc = SimpleDocTemplate(buf, pagesize=A4, title=GAP_REPORT_TITLE)
        styles = getSampleStyleSheet()
        cell = styles["BodyText"]
        story: list[Any] = []

        story.append(Paragraph(GAP_REPORT_TITLE, styles["Title"]))
        story.append(Spacer(1, 0.4 * cm))
        if request.institution is not None:
            story.append(Paragraph(f"Institution: {escape(request.institution.name)}", styles["Normal"]))
        if request.upload is not None:
            story.append(Paragraph(f"Document: {escape(request.upload.filename)}", styles["Normal"]))
        story.append(
            Paragraph(f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}", styles["Normal"])
        )
        story.append(Spacer(1, 0.5 * cm))

        header_style = TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#4A4A4A")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#F5F5F5")]),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#CCCCCC")),
            ]
        )

        risk_counts: dict[str, int] = {}
        for gap in result.gap_analyses:
            risk_counts[gap.risk_level] = risk_counts.get(gap.risk_level, 0) + 1

        story.append(Paragraph("Summary", styles["Heading2"]))
        summary = Table(
            [
                ["Metric", "Value"],
                ["Applicable frameworks", ", ".join(result.frameworks) or "None"],
                ["Total gaps", str(len(result.gap_analyses))],
                *[[f"{level.title()} risk", str(risk_counts.get(level, 0))] for level in ("critical", "high", "medium", "low")],
            ],
            colWidths=[7 * cm, 9 * cm],
        )
        summary.setStyle(header_style)
        story.append(summary)
        story.append(Spacer(1, 0.5 * cm))

        if result.gap_analyses:
            story.append(Paragraph("Gap Analysis", styles["Heading2"]))
            rows: list[list[Any]] = [["Framework", "Section", "Risk", "Gap", "Remediation"]]
            for gap in result.gap_analyses:
                rows.append(
                    [
                        Paragraph(escape(gap.framework), cell),
                        Paragraph(escape(gap.section), cell),
                        gap.risk_level,
                        Paragraph(escape(gap.gap), cell),
                        Paragraph(escape(gap.remediation), cell),
                    ]
                )
            gaps_table = Table(rows, colWidths=[2.6 * cm, 3 * cm, 1.6 * cm, 4.4 * cm, 4.4 * cm], repeatRows=1)
            gaps_table.setStyle(header_style)
            story.append(gaps_table)
        else:
            story.append(Paragraph("No gaps were identified.", styles["Normal"]))

        doc.build(story)
        return buf.getvalue()

    @staticmethod
    def render_redlines(request: ArtifactRequest, generated_at: datetime) -> bytes:
        """Render the policy redlines as DOCX bytes."""
        result = request.processing_result
        document = docx.Document()
        document.core_properties.title = REDLINE_TITLE
        document.add_heading(REDLINE_TITLE, level=0)
        if request.institution is not None:
            document.add_paragraph(f"Institution: {request.institution.name}")
        document.add_paragraph(f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")

        if not result.policy_redlines:
            document.add_paragraph("No changes are suggested for this document.")

        for index, redline in enumerate(result.policy_redlines, start=1):
            document.add_heading(f"{index}. {redline.section} ({redline.framework})", level=1)
            original = document.add_paragraph()
            original.add_run("Original: ").bold = True
            removed = original.add_run(redline.original_text or "(no existing text; insertion)")
            removed.font.strike = bool(redline.original_text)
            suggested = document.add_paragraph()
            suggested.add_run("Suggested: ").bold = True
            suggested.add_run(redline.suggested_text).underline = True
            rationale = document.add_paragraph()
            rationale.add_run("Rationale: ").bold = True
            rationale.add_run(redline.rationale)

        buf = io.BytesIO()
        document.save(buf)
        return buf.getvalue()
