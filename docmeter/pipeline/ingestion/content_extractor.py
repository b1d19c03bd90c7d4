"""
Entry point of the ingestion engine: bytes in, clean validated text out.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from docmeter.core.exceptions import (
    BinaryLeakageDetected,
    ExtractionFailedError,
    ExtractionTimeoutError,
    ProcessingError,
)
from docmeter.pipeline.ingestion.factory import ExtractorFactory
from docmeter.pipeline.ingestion.models import DocumentFormat, ExtractedContent, SourceDocument, count_words
from docmeter.pipeline.ingestion.validation import normalize_text, validate_extracted_text

logger = logging.getLogger(__name__)


class ContentExtractor:
    """
    Turns an upload into :class:`ExtractedContent`.

    Every handler's output goes through the same normalization and strict
    validation, so no format can leak container bytes to a caller.
    Synchronous extraction is CPU bound; :meth:`extract_async` runs it on a
    bounded worker pool under a timeout.
    """

    def __init__(self, settings=None, factory: Optional[ExtractorFactory] = None):
        if settings is None:
            from docmeter.config import get_settings
            settings = get_settings()
        self.settings = settings
        self.factory = factory or ExtractorFactory(settings)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_extractions,
            thread_name_prefix="docmeter-extract",
        )

    def extract(
        self,
        data: bytes,
        filename: str,
        declared_mime: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractedContent:
        """
        Extract normalized text from raw file bytes.

        Args:
            data: Raw file content
            filename: Declared filename; its extension selects the handler
            declared_mime: Client-reported MIME type, used only as a fallback
            cancel_event: Set to stop the handler at its next checkpoint

        Returns:
            ExtractedContent with validated text

        Raises:
            ProcessingError: A typed failure (unsupported, corrupt, timeout...)
        """
        doc_format = self.factory.resolve_format(filename, declared_mime)
        extractor = self.factory.get_extractor(doc_format)
        extractor.check_signature(data)

        logger.info("Extracting %s content from '%s' (%d bytes)", doc_format.value, filename, len(data))

        try:
            raw = extractor.decode(data, cancel_event)
        except ProcessingError:
            raise
        except Exception as exc:
            logger.error("%s extraction failed for '%s': %s", doc_format.value.upper(), filename, exc, exc_info=True)
            raise ExtractionFailedError(
                f"{doc_format.value.upper()} extraction failed: {exc}",
                details={"format": doc_format.value},
            ) from exc

        text = normalize_text(raw.text, self.settings.max_text_length)
        metadata = dict(raw.metadata)
        if len(raw.text) > self.settings.max_text_length:
            logger.warning(
                "Text truncated from %d to %d characters", len(raw.text), self.settings.max_text_length
            )
            metadata["truncated"] = True

        if not text:
            text = self._empty_placeholder(doc_format)
            metadata["extraction_note"] = "Document contains no extractable text"

        try:
            validate_extracted_text(text)
        except BinaryLeakageDetected as exc:
            logger.critical(
                "Binary data leaked from %s extractor for '%s': %s (leading=%s)",
                doc_format.value, filename, exc.reason, exc.leading,
            )
            raise ExtractionFailedError(
                "Text extraction failed - the document could not be converted to readable text",
                details={"format": doc_format.value},
            ) from exc

        word_count = count_words(text)
        metadata["word_count"] = word_count
        logger.info(
            "Extracted %d characters (%d words) from %s", len(text), word_count, doc_format.value
        )
        return ExtractedContent(
            text=text,
            page_count=max(1, raw.page_count),
            format=doc_format,
            metadata=metadata,
            word_count=word_count,
        )

    def extract_document(
        self, source: SourceDocument, cancel_event: Optional[threading.Event] = None
    ) -> ExtractedContent:
        """Extract a :class:`SourceDocument` handed over by the transport layer."""
        logger.debug("Extracting %r", source)
        return self.extract(source.data, source.filename, source.declared_mime, cancel_event)

    async def extract_async(
        self,
        data: bytes,
        filename: str,
        declared_mime: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ExtractedContent:
        """
        Run :meth:`extract_document` on the worker pool.

        On timeout or task cancellation the worker is signalled to stop at
        its next checkpoint.

        Raises:
            ExtractionTimeoutError: If extraction exceeds ``timeout`` seconds
        """
        timeout = timeout or self.settings.extraction_timeout_seconds
        source = SourceDocument(data, filename, declared_mime)
        cancel_event = threading.Event()
        loop = asyncio.get_running_loop()

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    self._executor,
                    self.extract_document,
                    source,
                    cancel_event,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            cancel_event.set()
            logger.warning("Extraction of '%s' timed out after %ss", filename, timeout)
            raise ExtractionTimeoutError(
                f"File processing timeout after {timeout:g} seconds",
                details={"timeout_seconds": timeout},
            ) from exc
        except asyncio.CancelledError:
            cancel_event.set()
            logger.info("Extraction of '%s' cancelled by caller", filename)
            raise

    def stats(self) -> dict[str, Any]:
        """Supported formats and the limits currently in force."""
        s = self.settings
        return {
            "supported_formats": self.factory.supported_formats(),
            "supported_extensions": self.factory.supported_extensions(),
            "limits": {
                "max_text_length": s.max_text_length,
                "min_text_length": s.min_text_length,
                "max_pdf_pages": s.max_pdf_pages,
                "max_xlsx_sheets": s.max_xlsx_sheets,
                "max_xlsx_rows": s.max_xlsx_rows,
                "max_sheet_chars": s.max_sheet_chars,
                "max_pptx_slides": s.max_pptx_slides,
                "max_slide_chars": s.max_slide_chars,
                "extraction_timeout_seconds": s.extraction_timeout_seconds,
                "max_concurrent_extractions": s.max_concurrent_extractions,
            },
        }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _empty_placeholder(doc_format: DocumentFormat) -> str:
        return (
            f"{doc_format.value.upper()} Document\n\n"
            f"This document appears to be empty or contains no readable text content."
        )
