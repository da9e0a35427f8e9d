"""Default file-to-text extractor for the processing pipeline.

:class:`DocumentTextExtractor` reads an uploaded file from disk, picks a
format handler by file extension and returns an
:class:`~policyguard.core.contracts.ExtractionResult` holding cleaned plain
text plus format metadata.

**Supported formats**

+-----------------+------------------+-------------------------------------+
| Extension       | Format label     | Library                             |
+=================+==================+=====================================+
| ``.pdf``        | PDF              | pdfminer.six                        |
+-----------------+------------------+-------------------------------------+
| ``.docx``       | DOCX             | python-docx                         |
+-----------------+------------------+-------------------------------------+
| ``.txt``        | TXT              | raw decode                          |
+-----------------+------------------+-------------------------------------+
| ``.md``         | Markdown         | regex markup stripping              |
+-----------------+------------------+-------------------------------------+
| ``.html/.htm``  | HTML             | regex tag stripping                 |
+-----------------+------------------+-------------------------------------+

**Cleaning**: whitespace runs collapse to one space, characters outside
printable ASCII are dropped and the result is stripped.  A document without
text yields an empty string rather than an error; deciding whether that is
enough content is the caller's job.

**Thread-pool execution**: parsing is CPU-bound, so handlers run in a
:class:`concurrent.futures.ThreadPoolExecutor` and the file read goes through
:func:`asyncio.to_thread`.

Usage::

    from policyguard.core.text_extractor import DocumentTextExtractor

    extractor = DocumentTextExtractor(max_workers=2)
    result = await extractor.extract("/data/uploads/u-1/policy.pdf")
    result.metadata["word_count"]
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable

import docx
from pdfminer.high_level import extract_pages

from policyguard.core.contracts import ExtractionResult

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
_NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7E\n\t]")

_MARKDOWN_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^#+\s+", re.MULTILINE), ""),
    (re.compile(r"\*\*(.*?)\*\*"), r"\1"),
    (re.compile(r"\*(.*?)\*"), r"\1"),
    (re.compile(r"\[(.*?)\]\(.*?\)"), r"\1"),
    (re.compile(r"`(.*?)`"), r"\1"),
    (re.compile(r"^>\s+", re.MULTILINE), ""),
    (re.compile(r"^[-*+]\s+", re.MULTILINE), ""),
    (re.compile(r"^\d+\.\s+", re.MULTILINE), ""),
)

_HTML_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE), ""),
    (re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE), ""),
    (re.compile(r"<[^>]*>"), " "),
    (re.compile(r"&[a-zA-Z0-9#]+;"), " "),
)


class ExtractionError(Exception):
    """Raised when a document cannot be read or parsed.

    Attributes:
        file_path: The path passed to :meth:`DocumentTextExtractor.extract`.
        original: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        file_path: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.file_path = file_path
        self.original = original


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def clean_text(text: str) -> str:
    text = _WS_RE.sub(" ", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split())


def strip_markdown(text: str) -> str:
    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return text


def strip_html(html: str) -> str:
    for pattern, replacement in _HTML_RULES:
        html = pattern.sub(replacement, html)
    return html


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


# ---------------------------------------------------------------------------
# Format handlers (synchronous, run in the thread pool)
# ---------------------------------------------------------------------------


def _extract_pdf(data: bytes) -> tuple[str, dict[str, Any]]:
    page_texts: list[str] = []
    for page_layout in extract_pages(io.BytesIO(data)):
        page_texts.append(
            "".join(
                element.get_text()
                for element in page_layout
                if callable(getattr(element, "get_text", None))
            )
        )
    return " ".join(page_texts), {"format": "PDF", "page_count": len(page_texts)}


def _extract_docx(data: bytes) -> tuple[str, dict[str, Any]]:
    document = docx.Document(io.BytesIO(data))
    paragraphs = [p.text for p in document.paragraphs if p.text.strip()]
    return " ".join(paragraphs), {"format": "DOCX"}


def _extract_txt(data: bytes) -> tuple[str, dict[str, Any]]:
    return _decode(data), {"format": "TXT"}


def _extract_markdown(data: bytes) -> tuple[str, dict[str, Any]]:
    return strip_markdown(_decode(data)), {"format": "Markdown"}


def _extract_html(data: bytes) -> tuple[str, dict[str, Any]]:
    return strip_html(_decode(data)), {"format": "HTML"}


_HANDLERS: dict[str, Callable[[bytes], tuple[str, dict[str, Any]]]] = {
    ".pdf": _extract_pdf,
    ".docx": _extract_docx,
    ".txt": _extract_txt,
    ".md": _extract_markdown,
    ".html": _extract_html,
    ".htm": _extract_html,
}

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(_HANDLERS)


def _dispatch_sync(data: bytes, extension: str, file_path: str) -> ExtractionResult:
    handler = _HANDLERS[extension]
    try:
        raw_text, metadata = handler(data)
    except Exception as exc:
        raise ExtractionError(
            f"Failed to extract text from {extension} document: {exc}",
            file_path=file_path,
            original=exc,
        ) from exc

    text = clean_text(raw_text)
    metadata["word_count"] = count_words(text)
    metadata["character_count"] = len(text)
    return ExtractionResult(text=text, metadata=metadata)


# ---------------------------------------------------------------------------
# DocumentTextExtractor
# ---------------------------------------------------------------------------


class DocumentTextExtractor:
    """Async, thread-pooled document text extractor.

    Args:
        max_workers: Thread-pool size when no *executor* is supplied.
        executor: Externally owned executor; not shut down by
            :meth:`shutdown`.
    """

    def __init__(
        self,
        max_workers: int = 4,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        if executor is not None:
            self._executor = executor
            self._owns_executor = False
        else:
            self._executor = ThreadPoolExecutor(max_workers=max_workers)
            self._owns_executor = True

    def __enter__(self) -> "DocumentTextExtractor":
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    def shutdown(self, *, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    async def extract(self, file_path: str) -> ExtractionResult:
        """Read *file_path* and return its cleaned text.

        Raises:
            ExtractionError: If the extension is unsupported, the file cannot
                be read, or the format handler fails to parse it.
        """
        path = Path(file_path)
        extension = path.suffix.lower()
        if extension not in _HANDLERS:
            raise ExtractionError(
                f"Unsupported file format: {extension or '(none)'}",
                file_path=file_path,
            )

        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise ExtractionError(
                f"Failed to read document: {exc}",
                file_path=file_path,
                original=exc,
            ) from exc

        loop = asyncio.get_running_loop()
        logger.debug("Dispatching extraction to thread pool: ext=%s size=%d bytes", extension, len(data))
        result: ExtractionResult = await loop.run_in_executor(
            self._executor, _dispatch_sync, data, extension, file_path
        )
        logger.debug("Extraction complete: %d chars extracted", len(result.text))
        return result
