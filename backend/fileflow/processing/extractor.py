"""
Content Extraction
══════════════════

bytes + filename  →  ExtractionResult {text, fingerprint, file_type, ...}

Classification is extension-based:

  pdf          .pdf                        → PyMuPDF text layer (thread executor)
  text         .txt .md .markdown .rtf     → UTF-8 decode
  code         source / config extensions  → UTF-8 decode
  spreadsheet  .csv .tsv                   → UTF-8 decode
               .xlsx .xls                  → no text, warning
  image        .png .jpg ...               → no text, warning (no OCR)
  other        anything else               → no text, warning

Files with no extractable text still succeed: the compressor then describes
the file from its name alone. Empty input, oversize input and unreadable
PDFs raise ExtractionFailed.

The fingerprint is the SHA-256 hex digest of the raw bytes and is the
per-owner dedup key.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field

from fileflow.core.config import settings
from fileflow.schemas.files import FileType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Extension tables
# ---------------------------------------------------------------------------

TEXT_EXTENSIONS = frozenset({"txt", "md", "markdown", "rtf"})

CODE_EXTENSIONS = frozenset({
    "js", "jsx", "ts", "tsx", "py", "java", "cpp", "c", "h", "cs",
    "rb", "go", "rs", "php", "swift", "kt", "scala", "sh", "bash",
    "sql", "html", "css", "scss", "sass", "json", "xml", "yaml", "yml",
    "toml", "ini", "conf", "config", "env",
})

IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "webp", "bmp", "svg", "ico"})

SPREADSHEET_EXTENSIONS = frozenset({"xlsx", "xls", "csv", "tsv"})

_PLAIN_SPREADSHEETS = frozenset({"csv", "tsv"})


class ExtractionFailed(Exception):
    """Raised when a file cannot be read at all (not when it merely has no text)."""

    def __init__(self, message: str, reason: str = "UNKNOWN", details: dict | None = None) -> None:
        super().__init__(message)
        self.reason  = reason      # EMPTY_FILE | FILE_TOO_LARGE | PDF_PARSE_ERROR | UNKNOWN
        self.details = details or {}


@dataclass
class ExtractionResult:
    """
    text        : extracted text ("" when the type is not text-extractable)
    fingerprint : SHA-256 hex digest of the raw bytes
    file_type   : classified type
    size_bytes  : raw byte length
    word_count  : whitespace-delimited words in text
    extension   : lowercased extension without the dot ("" if none)
    warnings    : non-fatal notes (unsupported type, empty text layer, ...)
    """
    text:        str
    fingerprint: str
    file_type:   FileType
    size_bytes:  int
    word_count:  int
    extension:   str
    elapsed_ms:  float = 0.0
    warnings:    list[str] = field(default_factory=list)

    @property
    def char_count(self) -> int:
        return len(self.text)


def get_extension(filename: str) -> str:
    """Lowercased extension without the dot; "" when there is none."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    parts = basename.rsplit(".", 1)
    return parts[1].lower() if len(parts) == 2 and parts[1] else ""


def classify_file_type(extension: str) -> FileType:
    if extension == "pdf":
        return FileType.PDF
    if extension in IMAGE_EXTENSIONS:
        return FileType.IMAGE
    if extension in TEXT_EXTENSIONS:
        return FileType.TEXT
    if extension in CODE_EXTENSIONS:
        return FileType.CODE
    if extension in SPREADSHEET_EXTENSIONS:
        return FileType.SPREADSHEET
    return FileType.OTHER


def compute_fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def count_words(text: str) -> int:
    return len(text.split())


class ContentExtractor:
    """
    Stateless extractor: safe to share across concurrent pipeline runs.

    Usage:
        result = await ContentExtractor().extract(data, "report.pdf")
    """

    def __init__(self, max_bytes: int | None = None) -> None:
        self._max_bytes = max_bytes or settings.max_upload_bytes

    async def extract(self, data: bytes, filename: str) -> ExtractionResult:
        t0 = time.monotonic()

        if not data:
            raise ExtractionFailed("File is empty", reason="EMPTY_FILE")
        if len(data) > self._max_bytes:
            raise ExtractionFailed(
                f"File exceeds the {self._max_bytes:,} byte limit",
                reason="FILE_TOO_LARGE",
                details={"size_bytes": len(data), "limit_bytes": self._max_bytes},
            )

        extension   = get_extension(filename)
        file_type   = classify_file_type(extension)
        fingerprint = compute_fingerprint(data)
        warnings: list[str] = []

        if file_type == FileType.PDF:
            text = await self._extract_pdf(data)
        elif file_type in (FileType.TEXT, FileType.CODE):
            text = self._decode(data)
        elif file_type == FileType.SPREADSHEET and extension in _PLAIN_SPREADSHEETS:
            text = self._decode(data)
        elif file_type == FileType.SPREADSHEET:
            warnings.append("Binary spreadsheets are not parsed; convert to CSV for text extraction.")
            text = ""
        elif file_type == FileType.IMAGE:
            warnings.append("Image files are not OCR'd; only the filename will be described.")
            text = ""
        else:
            warnings.append(f"Unsupported file type '.{extension}'; only the filename will be described.")
            text = ""

        if not text.strip() and file_type in (FileType.PDF, FileType.TEXT, FileType.CODE):
            warnings.append("Extracted text is empty; the file may be corrupted, protected or blank.")

        result = ExtractionResult(
            text=text,
            fingerprint=fingerprint,
            file_type=file_type,
            size_bytes=len(data),
            word_count=count_words(text),
            extension=extension,
            elapsed_ms=(time.monotonic() - t0) * 1000,
            warnings=warnings,
        )
        logger.info(
            "Extraction | file=%s type=%s size=%d chars=%d words=%d elapsed_ms=%.0f",
            filename, file_type.value, result.size_bytes,
            result.char_count, result.word_count, result.elapsed_ms,
        )
        for warning in warnings:
            logger.warning("Extraction warning | file=%s %s", filename, warning)
        return result

    @staticmethod
    def _decode(data: bytes) -> str:
        return data.decode("utf-8", errors="replace")

    async def _extract_pdf(self, data: bytes) -> str:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._extract_pdf_sync, data)
        except Exception as exc:
            logger.warning("PyMuPDF extraction failed: %s", exc)
            raise ExtractionFailed(
                f"Could not read PDF: {exc}",
                reason="PDF_PARSE_ERROR",
            ) from exc

    @staticmethod
    def _extract_pdf_sync(data: bytes) -> str:
        """Blocking extraction: runs in thread executor."""
        import fitz  # PyMuPDF

        pages: list[str] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page in doc:
                raw = page.get_text("text") or ""
                if raw.strip():
                    pages.append(raw.strip())
        return "\n\n".join(pages)
