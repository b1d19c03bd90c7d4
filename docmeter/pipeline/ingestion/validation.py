"""Text normalization and binary-content guards."""

import re
from typing import Tuple

from docmeter.core.exceptions import BinaryLeakageDetected

TRUNCATION_MARKER = "\n\n[...text truncated for length...]"

# Leading bytes that mean a decoder handed back a container instead of text
BINARY_TEXT_PREFIXES = ("PK", "%PDF")

# Printable ASCII + common whitespace
_TEXT_BYTES = (frozenset(range(32, 256)) - {127}) | {9, 10, 13}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_EXCESS_NEWLINES = re.compile(r"\n{4,}")
_EXCESS_SPACES = re.compile(r"[ \t]{3,}")
_BLANK_LINES = re.compile(r"^[ \t]+$", re.MULTILINE)


def count_non_text_bytes(content: bytes, sample_size: int) -> Tuple[int, int]:
    """Count NUL and control bytes in the first ``sample_size`` bytes.

    Returns:
        (non_text_bytes, sampled_bytes)
    """
    sample = content[:sample_size]
    non_text = sum(1 for byte in sample if byte not in _TEXT_BYTES)
    return non_text, len(sample)


def is_binary_content(content: bytes, sample_size: int = 2000, max_ratio: float = 0.01) -> bool:
    """Detect binary data by the share of NUL/control bytes in a sample.

    Args:
        content: Raw file content
        sample_size: Number of bytes to sample from the start
        max_ratio: Largest tolerated share of non-text bytes

    Returns:
        True if content appears to be binary
    """
    if not content:
        return False

    non_text, sampled = count_non_text_bytes(content, sample_size)
    return non_text > sampled * max_ratio


def normalize_text(text: str, max_length: int) -> str:
    """Clean decoder output into the canonical text form.

    Truncates to ``max_length`` characters (with a visible marker), unifies
    line endings, strips control characters and collapses runs of blank
    lines and spaces.
    """
    if not text:
        return ""

    if len(text) > max_length:
        text = text[:max_length] + TRUNCATION_MARKER

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _EXCESS_NEWLINES.sub("\n\n\n", text)
    text = _EXCESS_SPACES.sub("  ", text)
    text = _BLANK_LINES.sub("", text)
    return text.strip()


def validate_extracted_text(text: str) -> None:
    """Reject text that still carries binary content.

    Raises:
        BinaryLeakageDetected: If the text starts with a ZIP/PDF signature
            or contains NUL or other control characters.
    """
    leading = repr(text[:50])
    if text.startswith(BINARY_TEXT_PREFIXES):
        raise BinaryLeakageDetected("text starts with a binary container signature", leading)
    if "\x00" in text:
        raise BinaryLeakageDetected("text contains NUL bytes", leading)
    if _CONTROL_CHARS.search(text):
        raise BinaryLeakageDetected("text contains control characters", leading)
