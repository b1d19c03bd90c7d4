"""
Typed errors raised by the ingestion pipeline.

Everything the caller may see derives from :class:`ProcessingError` and
carries a stable :class:`~docmeter.core.error_codes.ErrorCode`.
:class:`BinaryLeakageDetected` and :class:`StoreError` are internal and are
converted or swallowed before they reach a caller.
"""
from typing import Any, Dict, Optional

from docmeter.core.error_codes import ErrorCode


class ProcessingError(Exception):
    """Base class for caller-facing pipeline failures."""

    code: str = ErrorCode.PROCESSING_ERROR
    error: str = "File processing failed"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class UnsupportedFormatError(ProcessingError):
    code = ErrorCode.UNSUPPORTED_FILE_TYPE
    error = "Unsupported file type"


class CorruptSignatureError(ProcessingError):
    """The file's magic bytes do not match its format."""
    code = ErrorCode.CORRUPT_SIGNATURE
    error = "Corrupt or mislabeled file"


class NonTextContentError(CorruptSignatureError):
    """A text-format upload that is actually binary."""
    code = ErrorCode.NON_TEXT_CONTENT
    error = "File does not contain text"


class ExtractionTimeoutError(ProcessingError):
    code = ErrorCode.EXTRACTION_TIMEOUT
    error = "Extraction timed out"


class ExtractionCancelledError(ProcessingError):
    code = ErrorCode.EXTRACTION_CANCELLED
    error = "Extraction cancelled"


class ExtractionFailedError(ProcessingError):
    code = ErrorCode.EXTRACTION_FAILED
    error = "Extraction failed"


class CapacityExceededError(ProcessingError):
    """Too many extractions in flight; the caller should retry later."""
    code = ErrorCode.CAPACITY_EXCEEDED
    error = "Server busy"


class NotFoundError(ProcessingError):
    code = ErrorCode.NOT_FOUND
    error = "Not found"


class InvalidInputError(ProcessingError):
    code = ErrorCode.INVALID_INPUT
    error = "Invalid request"


class BinaryLeakageDetected(Exception):
    """A decoder produced binary data where text was expected.

    This is a defect in the extractor, not bad user input.
    """

    def __init__(self, reason: str, leading: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.leading = leading


class StoreError(Exception):
    """A cache or persistence tier failed to read or write."""
