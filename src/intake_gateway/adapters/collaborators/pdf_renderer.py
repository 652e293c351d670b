"""Intake Document Renderer.

Renders a canonical intake into a PDF for the patient chart using ReportLab.
Identity values come from the canonical record (plain text, in memory only);
the stored patient record contributes its patient number.
"""

import io
import logging
from datetime import timezone
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from intake_gateway.domain.canonical import CanonicalIntake
from intake_gateway.domain.models import Patient
from intake_gateway.domain.ports import DocumentRendererPort

logger = logging.getLogger(__name__)


class ReportLabIntakeRenderer(DocumentRendererPort):
    """Render intake sections as a simple titled PDF."""

    file_extension = "pdf"

    def __init__(self, title: str = "Patient Intake"):
        self._title = title

    def render(self, intake: CanonicalIntake, patient: Patient) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=LETTER, title=f"{self._title} {patient.patient_number}")
        styles = getSampleStyleSheet()
        submitted = intake.submitted_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")

        story = [
            Paragraph(f"<b>{escape(self._title)}</b>", styles["Title"]),
            Paragraph(
                f"Patient {escape(patient.patient_number)} | Source: {escape(intake.source)} | "
                f"Submitted {submitted} | {'Complete' if intake.is_complete else 'Partial'}",
                styles["Normal"]
            ),
            Spacer(1, 16),
        ]

        for section in intake.sections:
            if not section.answers:
                continue
            story.append(Paragraph(escape(section.title), styles["Heading2"]))
            for answer in section.answers:
                story.append(Paragraph(
                    f"<b>{escape(answer.label)}:</b> {escape(answer.value)}",
                    styles["BodyText"]
                ))
            story.append(Spacer(1, 12))

        doc.build(story)
        data = buffer.getvalue()
        logger.debug(f"Rendered intake {intake.submission_id} ({len(data)} bytes)")
        return data
