"""
Standardized error codes for pipeline responses.
"""


class ErrorCode:
    """Error codes used in processing responses for programmatic handling."""

    UNSUPPORTED_FILE_TYPE = "UNSUPPORTED_FILE_TYPE"
    CORRUPT_SIGNATURE = "CORRUPT_SIGNATURE"
    NON_TEXT_CONTENT = "NON_TEXT_CONTENT"
    EXTRACTION_TIMEOUT = "EXTRACTION_TIMEOUT"
    EXTRACTION_CANCELLED = "EXTRACTION_CANCELLED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    PROCESSING_ERROR = "PROCESSING_ERROR"
