"""Text extraction from uploaded resumes and job-posting web pages."""

import io
import re
from pathlib import PurePath

import httpx
import structlog
from bs4 import BeautifulSoup
from docx import Document
from PyPDF2 import PdfReader

from autocv_api.config import get_settings

logger = structlog.get_logger()

PDF_TYPE = "application/pdf"
DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_TYPES = {"text/plain", "text/markdown"}

EXTENSION_TYPES = {
    ".pdf": PDF_TYPE,
    ".docx": DOCX_TYPE,
    ".txt": "text/plain",
    ".md": "text/markdown",
}

# Page elements that never carry job-posting content
STRIPPED_TAGS = ["script", "style", "noscript", "iframe", "img", "svg", "header", "footer", "nav", "aside"]

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class TextExtractionError(Exception):
    """Base exception for resume text extraction failures."""

    def __init__(self, message: str, file_name: str, file_type: str | None = None):
        super().__init__(message)
        self.file_name = file_name
        self.file_type = file_type


class UnsupportedFormatError(TextExtractionError):
    """Raised when the uploaded file is not a supported document type."""

    pass


class EmptyContentError(TextExtractionError):
    """Raised when no text could be extracted from the uploaded file."""

    pass


def resolve_content_type(file_name: str, content_type: str | None) -> str | None:
    """Resolve the document type, falling back to the file extension.

    Browsers frequently send ``application/octet-stream`` for documents, so
    an unknown MIME type is not conclusive on its own.
    """
    if content_type:
        base_type = content_type.split(";", 1)[0].strip().lower()
        if base_type in (PDF_TYPE, DOCX_TYPE) or base_type in TEXT_TYPES:
            return base_type
    return EXTENSION_TYPES.get(PurePath(file_name).suffix.lower())


def _pdf_text(content: bytes) -> str:
    reader = PdfReader(io.BytesIO(content))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


def _docx_text(content: bytes) -> str:
    document = Document(io.BytesIO(content))
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


def extract_text_from_file(content: bytes, file_name: str, content_type: str | None) -> str:
    """Extract plain text from an uploaded resume.

    Blocking (PDF/DOCX parsing); run it off the event loop.

    Args:
        content: Raw file bytes.
        file_name: Client-side file name, used for messages and type fallback.
        content_type: MIME type reported by the client.

    Returns:
        The extracted, non-empty text.

    Raises:
        UnsupportedFormatError: The file is not PDF, DOCX or plain text, or
            cannot be parsed as its declared type.
        EmptyContentError: The document holds no extractable text.
    """
    resolved = resolve_content_type(file_name, content_type)
    if resolved is None:
        raise UnsupportedFormatError(
            "Unsupported file type. Please upload a PDF or DOCX file.",
            file_name=file_name,
            file_type=content_type,
        )

    try:
        if resolved == PDF_TYPE:
            text = _pdf_text(content)
        elif resolved == DOCX_TYPE:
            text = _docx_text(content)
        else:
            text = content.decode("utf-8", errors="replace")
    except Exception as e:
        logger.warning(
            "Failed to parse uploaded document",
            file_name=file_name,
            file_type=resolved,
            error=str(e),
        )
        raise UnsupportedFormatError(
            "The file could not be read. Please upload a valid PDF or DOCX file.",
            file_name=file_name,
            file_type=resolved,
        ) from e

    if not text.strip():
        raise EmptyContentError(
            "No text could be extracted from the file.",
            file_name=file_name,
            file_type=resolved,
        )

    logger.info("Extracted resume text", file_name=file_name, file_type=resolved, chars=len(text))
    return text


def html_to_text(html: str) -> str:
    """Reduce an HTML page to its visible body text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(STRIPPED_TAGS):
        tag.decompose()
    body = soup.body or soup
    return re.sub(r"\s\s+", " ", body.get_text(separator=" ")).strip()


async def extract_text_from_url(url: str, client: httpx.AsyncClient | None = None) -> str:
    """Fetch a job posting page and return its text.

    Best-effort enrichment: any fetch or parse failure yields an empty string.

    Args:
        url: Job posting URL (http or https).
        client: Optional shared HTTP client.

    Returns:
        Visible page text truncated to the configured limit, or "".
    """
    settings = get_settings()
    if not url or not url.lower().startswith(("http://", "https://")):
        logger.warning("Ignoring job posting URL with unsupported scheme", url=url[:200])
        return ""

    headers = {"User-Agent": BROWSER_USER_AGENT}
    try:
        if client is not None:
            response = await client.get(url, headers=headers, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=settings.job_posting_fetch_timeout) as owned:
                response = await owned.get(url, headers=headers, follow_redirects=True)
        response.raise_for_status()
        text = html_to_text(response.text)
    except Exception as e:
        logger.error("Error fetching job posting", url=url[:200], error=str(e))
        return ""

    text = text[: settings.job_posting_max_chars]
    logger.info("Extracted job posting text", url=url[:200], chars=len(text), preview=text[:200])
    return text
