import re
from io import BytesIO
from typing import List, Tuple, Union

from pypdf import PdfReader

from docflow.exceptions import ExtractionError

PDF_MIME = "application/pdf"
TEXT_MIME_PREFIXES = ("text/",)

PAGE_MARKER_RE = re.compile(r"\[Page (\d+)\]")


def clean_text(text: str) -> str:
    """Collapse blank runs and strip each line."""
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = (line.strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def extract_text_from_pdf(data: bytes) -> Tuple[str, int]:
    """Return (text with [Page N] markers, page count)."""
    try:
        reader = PdfReader(BytesIO(data))
    except Exception as e:
        raise ExtractionError(f"Could not read PDF: {e}") from e

    parts: List[str] = []
    for number, page in enumerate(reader.pages, start=1):
        t = clean_text(page.extract_text() or "")
        if t:
            parts.append(f"[Page {number}]\n{t}")

    text = "\n\n".join(parts).strip()
    if not text:
        raise ExtractionError("No extractable text found in PDF (scanned document?)")
    return text, len(reader.pages)


def extract_text_from_textlike(data: Union[bytes, str]) -> Tuple[str, int]:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            data = data.decode("latin-1", errors="replace")
    text = data.strip()
    if not text:
        raise ExtractionError("Text content is empty")
    return text, 1


def extract_text_any(*, mime: str, data: Union[bytes, str]) -> Tuple[str, int]:
    if mime == PDF_MIME:
        if isinstance(data, str):
            raise ExtractionError("PDF content must be bytes")
        return extract_text_from_pdf(data)
    if mime.startswith(TEXT_MIME_PREFIXES):
        return extract_text_from_textlike(data)
    raise ExtractionError(f"Unsupported content type: {mime}")
