"""Render the suggested resume markdown to a downloadable PDF."""

import io
import re
from xml.sax.saxutils import escape

import structlog
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Flowable, Paragraph, SimpleDocTemplate, Spacer

logger = structlog.get_logger()

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.*)$")
BULLET_PATTERN = re.compile(r"^\s*([-*+•])\s+(.*)$")
NUMBERED_PATTERN = re.compile(r"^\s*(\d+)[.)]\s+(.*)$")
RULE_PATTERN = re.compile(r"^\s*([-*_])(\s*\1){2,}\s*$")

# Inline markup, applied after XML escaping
INLINE_RULES = [
    (re.compile(r"`([^`]+)`"), r'<font face="Courier">\1</font>'),
    (re.compile(r"\*\*(.+?)\*\*|__(.+?)__"), lambda m: f"<b>{m.group(1) or m.group(2)}</b>"),
    (
        re.compile(r"(?<![*\w])\*(?!\s)(.+?)(?<!\s)\*(?![*\w])|(?<!\w)_(?!\s)(.+?)(?<!\s)_(?!\w)"),
        lambda m: f"<i>{m.group(1) or m.group(2)}</i>",
    ),
    (re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)"), r"\1"),
]


class PdfExportError(Exception):
    """Raised when markdown cannot be rendered."""

    pass


def _build_styles() -> dict[str, ParagraphStyle]:
    styles = getSampleStyleSheet()
    body = ParagraphStyle(name="Body", parent=styles["Normal"], fontName="Helvetica", fontSize=10, leading=14)
    return {
        "h1": ParagraphStyle(name="H1", parent=styles["Heading1"], fontSize=18, leading=22, spaceAfter=6),
        "h2": ParagraphStyle(name="H2", parent=styles["Heading2"], fontSize=14, leading=18, spaceBefore=8, spaceAfter=4),
        "h3": ParagraphStyle(name="H3", parent=styles["Heading3"], fontSize=12, leading=15, spaceBefore=6, spaceAfter=3),
        "body": ParagraphStyle(name="BodyText", parent=body, spaceAfter=6),
        "bullet": ParagraphStyle(name="Bullet", parent=body, leftIndent=14, bulletIndent=4, spaceAfter=2),
    }


def format_inline(text: str) -> str:
    """Escape text for reportlab and translate inline markdown emphasis."""
    text = escape(text.strip())
    for pattern, replacement in INLINE_RULES:
        text = pattern.sub(replacement, text)
    return text


def markdown_to_flowables(markdown: str, styles: dict[str, ParagraphStyle] | None = None) -> list[Flowable]:
    """Convert resume markdown (headings, lists, paragraphs, rules) to flowables."""
    styles = styles or _build_styles()
    flowables: list[Flowable] = []
    paragraph: list[str] = []

    def flush() -> None:
        if paragraph:
            flowables.append(Paragraph(format_inline(" ".join(paragraph)), styles["body"]))
            paragraph.clear()

    for line in markdown.splitlines():
        if line.strip().startswith("```"):
            continue
        if not line.strip():
            flush()
            continue
        if RULE_PATTERN.match(line):
            flush()
            flowables.append(Spacer(1, 4 * mm))
            continue

        heading = HEADING_PATTERN.match(line)
        if heading:
            flush()
            level = min(len(heading.group(1)), 3)
            flowables.append(Paragraph(format_inline(heading.group(2)), styles[f"h{level}"]))
            continue

        bullet = BULLET_PATTERN.match(line)
        if bullet:
            flush()
            flowables.append(Paragraph(format_inline(bullet.group(2)), styles["bullet"], bulletText="•"))
            continue

        numbered = NUMBERED_PATTERN.match(line)
        if numbered:
            flush()
            flowables.append(
                Paragraph(format_inline(numbered.group(2)), styles["bullet"], bulletText=f"{numbered.group(1)}.")
            )
            continue

        paragraph.append(line)

    flush()
    return flowables


def render_markdown_pdf(markdown: str, title: str = "Resume") -> bytes:
    """Render markdown to PDF bytes.

    Raises:
        PdfExportError: If there is no content to render.
    """
    if not markdown or not markdown.strip():
        raise PdfExportError("No markdown content to render.")

    flowables = markdown_to_flowables(markdown)
    if not flowables:
        raise PdfExportError("No markdown content to render.")

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=20 * mm,
        leftMargin=20 * mm,
        topMargin=20 * mm,
        bottomMargin=20 * mm,
        title=title,
    )
    doc.build(flowables)
    pdf = buffer.getvalue()
    logger.info("Resume PDF rendered", flowables=len(flowables), size_bytes=len(pdf))
    return pdf


def pdf_file_name(file_name: str | None) -> str:
    """Safe attachment name ending in .pdf."""
    base = (file_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    base = re.sub(r"\.pdf$", "", base, flags=re.IGNORECASE)
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return f"{base or 'resume'}.pdf"
