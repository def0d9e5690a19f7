"""PDF report service — fixed-layout daily HACCP compliance report (reportlab)."""

import io
import logging
from typing import List, Dict, Any, Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, PageBreak,
)
from xml.sax.saxutils import escape

from cleandoc_export.core.exceptions import GenerationError
from cleandoc_export.services.artifacts import Artifact
from cleandoc_export.services.csv_export_service import format_iso8601, calculate_duration_minutes

logger = logging.getLogger("cleandoc_export")

PDF_CONTENT_TYPE = "application/pdf"

QA_CHECKLIST = [
    "Alle Reinigungsschritte dokumentiert",
    "Einwirkzeiten der Reinigungsmittel eingehalten",
    "Fotodokumentation vollständig",
    "Abweichungen mit Korrekturmaßnahme vermerkt",
    "Protokoll durch Verantwortliche unterzeichnet",
]

_GRID = TableStyle([
    ("GRID", (0, 0), (-1, -1), 0.4, colors.grey),
    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1e40af")),
    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
    ("FONTSIZE", (0, 0), (-1, -1), 8),
    ("VALIGN", (0, 0), (-1, -1), "TOP"),
])


def _text(value) -> str:
    return escape("" if value is None else str(value))


class PDFReportService:
    """Renders one day's activity records into the compliance PDF."""

    def __init__(self):
        styles = getSampleStyleSheet()
        self.title_style = styles["Title"]
        self.heading_style = styles["Heading2"]
        self.sub_style = styles["Heading4"]
        self.body_style = styles["BodyText"]

    def _summary_table(self, records: Sequence[Dict[str, Any]]) -> Table:
        rows = [["Kunde", "Bereich", "Status", "Beginn", "Ende", "Dauer (min)"]]
        for log in records:
            customer = log.get("customer") or {}
            rows.append([
                _text(customer.get("name")),
                _text(log.get("area_name")),
                _text(log.get("status") or "pending"),
                format_iso8601(log.get("started_at")),
                format_iso8601(log.get("completed_at")),
                str(calculate_duration_minutes(log.get("started_at"), log.get("completed_at"))),
            ])
        table = Table(rows, repeatRows=1)
        table.setStyle(_GRID)
        return table

    def _step_table(self, log: Dict[str, Any]) -> Table:
        rows = [["#", "Schritt", "Mittel", "Einwirkzeit (s)", "Status", "Fotos"]]
        for index, step in enumerate(log.get("steps") or []):
            photos = step.get("photos") or []
            thumbs = [
                f"[{p.get('width') or '?'}x{p.get('height') or '?'} {(p.get('sha256') or '')[:8]}]"
                for p in photos
            ]
            rows.append([
                str(step.get("sequence") or index + 1),
                Paragraph(_text(step.get("name")), self.body_style),
                _text(step.get("chemical")),
                _text(step.get("dwell_time")),
                _text(step.get("status") or "pending"),
                Paragraph(_text(" ".join(thumbs)) or "-", self.body_style),
            ])
        table = Table(rows, repeatRows=1, colWidths=[10 * mm, 50 * mm, 35 * mm, 25 * mm, 20 * mm, 40 * mm])
        table.setStyle(_GRID)
        return table

    def _signature_block(self, log: Dict[str, Any]) -> List:
        signatures = log.get("signatures") or []
        if not signatures:
            return [Paragraph("Keine Unterschriften erfasst.", self.body_style)]
        rows = [["Rolle", "Unterzeichnet von", "Zeitpunkt"]]
        for sig in signatures:
            rows.append([
                _text(sig.get("role")),
                _text(sig.get("signer_name") or "Unbekannt"),
                format_iso8601(sig.get("signed_at")),
            ])
        table = Table(rows)
        table.setStyle(_GRID)
        return [table]

    def render(
        self,
        tenant_id: str,
        report_date: str,
        records: Sequence[Dict[str, Any]],
        tenant_settings=None,
        stats: Dict[str, int] = None,
    ) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            topMargin=12 * mm,
            bottomMargin=14 * mm,
            leftMargin=15 * mm,
            rightMargin=15 * mm,
            title=f"HACCP-Protokoll {report_date}",
            author="CleaniDoc Export System",
            invariant=1,
        )
        company = getattr(tenant_settings, "company_name", None) or "CleaniDoc Kunde"
        story = [
            Paragraph(f"HACCP-Reinigungsprotokoll {_text(report_date)}", self.title_style),
            Paragraph(f"{_text(company)} &middot; Mandant {_text(tenant_id)}", self.body_style),
            Spacer(1, 6 * mm),
        ]
        if stats:
            story.append(Paragraph(
                "Protokolle: %d &middot; Abgeschlossen: %d &middot; Fehlgeschlagen: %d "
                "&middot; Schritte: %d &middot; Fotos: %d" % (
                    stats["total_logs"], stats["completed_logs"], stats["failed_logs"],
                    stats["total_steps"], stats["total_photos"],
                ),
                self.body_style,
            ))
            story.append(Spacer(1, 4 * mm))

        story.append(Paragraph("Übersicht", self.heading_style))
        if records:
            story.append(self._summary_table(records))
        else:
            story.append(Paragraph("Für diesen Tag liegen keine Protokolle vor.", self.body_style))

        for log in records:
            story.append(PageBreak())
            story.append(Paragraph(
                f"Protokoll {_text(log['id'])} &middot; {_text(log.get('area_name'))}",
                self.heading_style,
            ))
            story.append(self._step_table(log))
            story.append(Spacer(1, 4 * mm))
            story.append(Paragraph("Unterschriften", self.sub_style))
            story.extend(self._signature_block(log))

        story.append(Spacer(1, 6 * mm))
        story.append(Paragraph("QS-Checkliste", self.heading_style))
        for item in QA_CHECKLIST:
            story.append(Paragraph(f"[ ] {escape(item)}", self.body_style))

        doc.build(story)
        return buffer.getvalue()

    def generate_pdf_report(
        self,
        tenant_id: str,
        report_date: str,
        records: Sequence[Dict[str, Any]],
        tenant_settings=None,
        stats: Dict[str, int] = None,
    ) -> Artifact:
        """Render and hash the daily report."""
        try:
            content = self.render(tenant_id, report_date, records, tenant_settings, stats)
        except GenerationError:
            raise
        except Exception as e:
            logger.error("PDF generation failed for %s/%s: %s", tenant_id, report_date, e)
            raise GenerationError(f"PDF generation failed: {e}")
        return Artifact(f"cleandoc_daily_report_{report_date}.pdf", content, PDF_CONTENT_TYPE)


pdf_report_service = PDFReportService()
