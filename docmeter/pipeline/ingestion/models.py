"""
Core models for the document ingestion engine.

Defines the closed set of supported formats, the transient upload
container, the extracted-content result and the abstract BaseExtractor
interface that every format handler implements.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from docmeter.core.exceptions import CorruptSignatureError, ExtractionCancelledError

logger = logging.getLogger(__name__)


class DocumentFormat(str, Enum):
    """Supported document formats."""
    PDF = "pdf"
    DOCX = "docx"
    XLSX = "xlsx"
    PPTX = "pptx"
    TXT = "txt"
    CSV = "csv"
    RTF = "rtf"

    @property
    def mime_type(self) -> str:
        return _CANONICAL_MIME[self]


_CANONICAL_MIME = {
    DocumentFormat.PDF: "application/pdf",
    DocumentFormat.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    DocumentFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    DocumentFormat.PPTX: "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    DocumentFormat.TXT: "text/plain",
    DocumentFormat.CSV: "text/csv",
    DocumentFormat.RTF: "application/rtf",
}


@dataclass(frozen=True)
class SourceDocument:
    """Raw upload handed over by the transport layer.

    Attributes:
        data: The file's bytes.
        filename: Name declared by the uploader.
        declared_mime: MIME type reported by the client (untrusted).
    """

    data: bytes
    filename: str
    declared_mime: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return (
            f"SourceDocument(filename='{self.filename}', size={self.size}, "
            f"declared_mime={self.declared_mime!r})"
        )


@dataclass
class ExtractedContent:
    """Normalized text pulled out of a document.

    Attributes:
        text: Clean text. Never starts with a binary signature and never
            contains NUL or control characters.
        page_count: Pages, sheets or slides (estimated for flowing text).
        format: The format the text was decoded from.
        metadata: Format-specific details (warnings, sheet/slide names...).
        word_count: Whitespace-delimited word count of ``text``.
    """

    text: str
    page_count: int
    format: DocumentFormat
    metadata: dict[str, Any] = field(default_factory=dict)
    word_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "page_count": self.page_count,
            "format": self.format.value,
            "metadata": self.metadata,
            "word_count": self.word_count,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ExtractedContent":
        return cls(
            text=payload["text"],
            page_count=payload["page_count"],
            format=DocumentFormat(payload["format"]),
            metadata=dict(payload.get("metadata") or {}),
            word_count=payload.get("word_count", 0),
        )

    def __repr__(self) -> str:
        snippet = self.text[:80] + "..." if len(self.text) > 80 else self.text
        return (
            f"ExtractedContent(format={self.format.value}, pages={self.page_count}, "
            f"text='{snippet}')"
        )


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


class BaseExtractor(ABC):
    """Abstract base class for all format handlers.

    Subclasses declare the :class:`DocumentFormat` they handle and
    optionally a magic-byte ``signature``. ``decode`` returns raw text plus
    metadata; normalization and validation happen once, in the
    ContentExtractor, for every handler alike.
    """

    format: DocumentFormat
    signature: Optional[bytes] = None

    def __init__(self, settings=None) -> None:
        if settings is None:
            from docmeter.config import get_settings
            settings = get_settings()
        self.settings = settings

    def check_signature(self, data: bytes) -> None:
        """Fail fast when the leading bytes do not match the format.

        Raises:
            CorruptSignatureError: If ``data`` does not start with ``signature``.
        """
        if self.signature is not None and not data.startswith(self.signature):
            raise CorruptSignatureError(
                f"Invalid {self.format.value.upper()} file signature - "
                f"file may be corrupted or not a valid {self.format.value.upper()}",
                details={"format": self.format.value, "leading_bytes": data[:8].hex()},
            )

    @staticmethod
    def checkpoint(cancel_event: Optional[threading.Event], where: str) -> None:
        """Raise if the caller asked extraction to stop."""
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Extraction cancelled at %s", where)
            raise ExtractionCancelledError(f"Extraction cancelled at {where}")

    @abstractmethod
    def decode(
        self,
        data: bytes,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractedContent:
        """Decode ``data`` into text.

        Args:
            data: Raw file bytes; the signature has already been checked.
            cancel_event: Set by the caller to request a cooperative stop.

        Returns:
            ExtractedContent holding un-normalized text.

        Raises:
            ProcessingError: For any format-level failure.
        """
        ...  # pragma: no cover
