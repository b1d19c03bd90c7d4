"""
Format router for the document ingestion engine.

Provides :class:`ExtractorFactory`, which resolves an upload's
:class:`DocumentFormat` from its filename (and, as a fallback, its declared
MIME type) and hands back the registered :class:`BaseExtractor`.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Type

from docmeter.core.exceptions import UnsupportedFormatError
from docmeter.pipeline.ingestion.extractors import (
    CSVExtractor,
    DOCXExtractor,
    ExcelExtractor,
    PDFExtractor,
    PowerPointExtractor,
    RTFExtractor,
    TextExtractor,
)
from docmeter.pipeline.ingestion.models import BaseExtractor, DocumentFormat

logger = logging.getLogger(__name__)


EXTENSION_FORMATS: dict[str, DocumentFormat] = {
    ".pdf": DocumentFormat.PDF,
    ".docx": DocumentFormat.DOCX,
    ".xlsx": DocumentFormat.XLSX,
    ".pptx": DocumentFormat.PPTX,
    ".txt": DocumentFormat.TXT,
    ".text": DocumentFormat.TXT,
    ".md": DocumentFormat.TXT,
    ".log": DocumentFormat.TXT,
    ".csv": DocumentFormat.CSV,
    ".rtf": DocumentFormat.RTF,
}

# Recognised, but there is no decoder for these containers
LEGACY_EXTENSIONS = frozenset({".doc", ".xls", ".ppt", ".odt", ".ods", ".odp"})

MIME_FORMATS: dict[str, DocumentFormat] = {
    "application/pdf": DocumentFormat.PDF,
    DocumentFormat.DOCX.mime_type: DocumentFormat.DOCX,
    DocumentFormat.XLSX.mime_type: DocumentFormat.XLSX,
    DocumentFormat.PPTX.mime_type: DocumentFormat.PPTX,
    "text/csv": DocumentFormat.CSV,
    "application/csv": DocumentFormat.CSV,
    "text/markdown": DocumentFormat.TXT,
    "application/rtf": DocumentFormat.RTF,
    "text/rtf": DocumentFormat.RTF,
}

GENERIC_MIME_TYPES = frozenset({
    "application/octet-stream",
    "binary/octet-stream",
    "text/plain",
})


class ExtractorFactory:
    """Registry-based factory mapping each :class:`DocumentFormat` to a handler.

    The registry must cover every format; a missing entry is reported when
    the factory is built rather than on the first upload that needs it.

    Example::

        factory = ExtractorFactory()
        doc_format = factory.resolve_format("q1-report.pdf", "application/pdf")
        extractor = factory.get_extractor(doc_format)
    """

    _registry: dict[DocumentFormat, Type[BaseExtractor]] = {
        DocumentFormat.PDF: PDFExtractor,
        DocumentFormat.DOCX: DOCXExtractor,
        DocumentFormat.XLSX: ExcelExtractor,
        DocumentFormat.PPTX: PowerPointExtractor,
        DocumentFormat.TXT: TextExtractor,
        DocumentFormat.CSV: CSVExtractor,
        DocumentFormat.RTF: RTFExtractor,
    }

    def __init__(self, settings=None) -> None:
        missing = [fmt.value for fmt in DocumentFormat if fmt not in self._registry]
        if missing:
            raise RuntimeError(f"No extractor registered for: {', '.join(missing)}")
        self._extractors = {
            fmt: extractor_cls(settings) for fmt, extractor_cls in self._registry.items()
        }

    @classmethod
    def register(cls, doc_format: DocumentFormat, extractor_cls: Type[BaseExtractor]) -> None:
        """Replace the handler for a format.

        Raises:
            TypeError: If *extractor_cls* is not a subclass of
                :class:`BaseExtractor`.
        """
        if not (isinstance(extractor_cls, type) and issubclass(extractor_cls, BaseExtractor)):
            raise TypeError(
                f"extractor_cls must be a subclass of BaseExtractor, "
                f"got {extractor_cls!r}"
            )
        cls._registry[DocumentFormat(doc_format)] = extractor_cls
        logger.info("Registered extractor %s for format '%s'", extractor_cls.__name__, doc_format)

    @staticmethod
    def resolve_format(filename: str, declared_mime: Optional[str] = None) -> DocumentFormat:
        """Determine the document format of an upload.

        The extension wins. The declared MIME type is consulted only when the
        extension is unknown or missing, and only if it is specific.

        Raises:
            UnsupportedFormatError: If neither source names a supported format.
        """
        _, ext = os.path.splitext(filename or "")
        ext = ext.lower()

        if ext in EXTENSION_FORMATS:
            return EXTENSION_FORMATS[ext]
        if ext in LEGACY_EXTENSIONS:
            raise UnsupportedFormatError(
                f"Legacy format '{ext}' is not supported. Please save the file "
                f"as {', '.join(sorted(EXTENSION_FORMATS))}.",
                details={"extension": ext},
            )

        mime = (declared_mime or "").split(";", 1)[0].strip().lower()
        if mime and mime not in GENERIC_MIME_TYPES and mime in MIME_FORMATS:
            logger.debug("Resolved '%s' by declared MIME type %s", filename, mime)
            return MIME_FORMATS[mime]

        raise UnsupportedFormatError(
            f"Unsupported file type: {ext or 'no extension'} ({declared_mime or 'no MIME type'}). "
            f"Supported extensions: {', '.join(ExtractorFactory.supported_extensions())}",
            details={"extension": ext, "declared_mime": declared_mime},
        )

    def get_extractor(self, doc_format: DocumentFormat) -> BaseExtractor:
        """Return the handler instance for a resolved format."""
        extractor = self._extractors[doc_format]
        logger.debug("Routing %s to %s", doc_format.value, type(extractor).__name__)
        return extractor

    @staticmethod
    def supported_extensions() -> list[str]:
        """Return a sorted list of currently supported file extensions."""
        return sorted(EXTENSION_FORMATS)

    @staticmethod
    def supported_formats() -> list[str]:
        return [fmt.value for fmt in DocumentFormat]
