import io
from decimal import Decimal
from typing import Any, Dict, List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

WATERMARK = "Informative document - not an official AEAT filing. Review before submitting."


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        s = format(value.quantize(Decimal("0.01")) if abs(value) >= 1 else value, "f")
        return s
    text = str(value)
    # Paragraph parses a mini-HTML; escape so asset names/notes can't break it
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _column_widths(rows: List[List[str]], usable_width: float) -> List[float]:
    """
    Column widths proportional to text length (header + up to 50 rows),
    clamped so no column gets unreadably narrow or greedy, then rescaled to
    fill the usable width.
    """
    ncols = len(rows[0])
    weights = [0] * ncols
    for row in rows[:51]:
        for i, cell in enumerate(row):
            weights[i] += max(1, min(len(cell), 60))
    total = sum(weights) or ncols
    widths = [max(0.7 * inch, min(2.4 * inch, usable_width * w / total)) for w in weights]
    scale = usable_width / sum(widths)
    return [w * scale for w in widths]


def _make_wrapped_table(data: List[List[Any]], styles, usable_width: float) -> Table:
    """data[0] is the header row; every cell is wrapped in a Paragraph."""
    wrap_style = ParagraphStyle(
        "WrapSmall",
        parent=styles["Normal"],
        fontSize=8,
        leading=10,
        wordWrap="CJK",
    )
    text_rows = [[_cell_text(c) for c in row] for row in data]
    wrapped = [[Paragraph(c, wrap_style) for c in row] for row in text_rows]

    if not text_rows or not text_rows[0]:
        t = Table(wrapped, hAlign="LEFT")
        t.setStyle(TableStyle([("GRID", (0, 0), (-1, -1), 0.25, colors.black)]))
        return t

    t = Table(wrapped, hAlign="LEFT", colWidths=_column_widths(text_rows, usable_width), repeatRows=1)
    t.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.black),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
                ("TOPPADDING", (0, 0), (-1, -1), 3),
            ]
        )
    )
    return t


def build_report_pdf(report: Dict[str, Any], sections: Optional[List[Any]] = None) -> bytes:
    """
    Render a compiled report to PDF bytes.

    `report` is the structured report (title, fiscal_year, taxpayer, totals,
    per_asset, notes); `sections` are the form's tables (objects with
    title/header/rows). Wide tables switch the page to landscape.
    """
    sections = sections or []
    widest = max([len(s.header) for s in sections] + [7])
    page_size = A4 if widest <= 7 else landscape(A4)

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=page_size,
        leftMargin=0.5 * inch,
        rightMargin=0.5 * inch,
        topMargin=0.5 * inch,
        bottomMargin=0.5 * inch,
        title=report.get("title", "Crypto tax report"),
    )
    styles = getSampleStyleSheet()
    usable = doc.width
    story: List[Any] = []

    story.append(Paragraph(_cell_text(report.get("title", "Crypto tax report")), styles["Title"]))
    story.append(Paragraph(f"Fiscal year: {report.get('fiscal_year')}", styles["Normal"]))
    taxpayer = report.get("taxpayer") or {}
    if taxpayer.get("nif"):
        name = " ".join(p for p in (taxpayer.get("name"), taxpayer.get("surname")) if p)
        story.append(Paragraph(_cell_text(f"Taxpayer: {name} ({taxpayer['nif']})".replace("  ", " ")), styles["Normal"]))
    story.append(Paragraph(f"Cost-basis method: {report.get('lot_method')}", styles["Normal"]))
    story.append(Paragraph(f"<i>{WATERMARK}</i>", styles["Normal"]))
    story.append(Spacer(1, 12))

    totals = report.get("totals") or {}
    story.append(Paragraph("Summary", styles["Heading2"]))
    story.append(_make_wrapped_table(
        [["Field", "Value (EUR)"],
         ["Transactions in year", totals.get("total_transactions", 0)],
         ["Total gains", totals.get("total_gains")],
         ["Total losses", totals.get("total_losses")],
         ["Net result", totals.get("net_result")]],
        styles, usable,
    ))
    story.append(Spacer(1, 10))

    for section in sections:
        story.append(Paragraph(_cell_text(section.title), styles["Heading2"]))
        if section.rows:
            story.append(_make_wrapped_table([section.header] + section.rows, styles, usable))
        else:
            story.append(Paragraph("No entries.", styles["Normal"]))
        story.append(Spacer(1, 10))

    notes = report.get("notes") or []
    if notes:
        story.append(Paragraph("Notes", styles["Heading2"]))
        for note in notes:
            story.append(Paragraph(f"- {_cell_text(note)}", styles["Normal"]))

    doc.build(story)
    return buffer.getvalue()
