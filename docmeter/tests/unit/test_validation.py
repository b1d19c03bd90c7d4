"""
Tests for text normalization and the binary-content guards.
"""
import pytest

from docmeter.core.exceptions import BinaryLeakageDetected
from docmeter.pipeline.ingestion.validation import (
    TRUNCATION_MARKER,
    count_non_text_bytes,
    is_binary_content,
    normalize_text,
    validate_extracted_text,
)


# =========================================================================
# Binary sampling
# =========================================================================


class TestBinarySampling:

    def test_plain_text_is_not_binary(self):
        assert is_binary_content(b"Hello, world!\nSecond line\twith tab\r\n") is False

    def test_empty_content_is_not_binary(self):
        assert is_binary_content(b"") is False

    def test_nul_heavy_content_is_binary(self):
        assert is_binary_content(b"abc\x00\x00\x00def" * 10) is True

    def test_high_bytes_count_as_text(self):
        # Latin-1 / UTF-8 continuation bytes are not control bytes
        assert is_binary_content("Café naïve résumé".encode("utf-8")) is False

    def test_ratio_threshold(self):
        # 1 control byte in 200 is 0.5%, under the 1% threshold
        content = b"a" * 199 + b"\x01"
        assert is_binary_content(content) is False
        # 3 in 200 is 1.5%
        content = b"a" * 197 + b"\x01\x02\x03"
        assert is_binary_content(content) is True

    def test_only_sample_is_inspected(self):
        content = b"a" * 2000 + b"\x00" * 500
        non_text, sampled = count_non_text_bytes(content, 2000)
        assert (non_text, sampled) == (0, 2000)
        assert is_binary_content(content, sample_size=2000) is False


# =========================================================================
# Normalization
# =========================================================================


class TestNormalizeText:

    def test_empty(self):
        assert normalize_text("", 100) == ""

    def test_line_endings_unified(self):
        assert normalize_text("a\r\nb\rc", 100) == "a\nb\nc"

    def test_control_characters_removed(self):
        assert normalize_text("a\x00b\x07c\x1fd", 100) == "abcd"

    def test_tabs_and_newlines_kept(self):
        assert normalize_text("a\tb\nc", 100) == "a\tb\nc"

    def test_excess_blank_lines_collapsed(self):
        assert normalize_text("a\n\n\n\n\n\nb", 100) == "a\n\n\nb"

    def test_excess_spaces_collapsed(self):
        assert normalize_text("a      b", 100) == "a  b"

    def test_whitespace_only_lines_blanked(self):
        assert normalize_text("a\n   \nb", 100) == "a\n\nb"

    def test_trimmed(self):
        assert normalize_text("  \n hello \n ", 100) == "hello"

    def test_truncation_marker_appended(self):
        text = normalize_text("x" * 50, 20)
        assert text.startswith("x" * 20)
        assert text.endswith(TRUNCATION_MARKER.strip())
        assert "x" * 21 not in text


# =========================================================================
# Strict validator
# =========================================================================


class TestValidateExtractedText:

    def test_clean_text_passes(self):
        validate_extracted_text("Normal document text.\n\tIndented line.")

    @pytest.mark.parametrize("text", ["PK\x03\x04rest", "%PDF-1.7 something"])
    def test_binary_signature_prefix_rejected(self, text):
        with pytest.raises(BinaryLeakageDetected, match="signature"):
            validate_extracted_text(text)

    def test_nul_rejected(self):
        with pytest.raises(BinaryLeakageDetected, match="NUL"):
            validate_extracted_text("abc\x00def")

    def test_control_character_rejected(self):
        with pytest.raises(BinaryLeakageDetected, match="control"):
            validate_extracted_text("abc\x1bdef")

    def test_leading_bytes_recorded(self):
        with pytest.raises(BinaryLeakageDetected) as exc_info:
            validate_extracted_text("PK\x03\x04garbage")
        assert "PK" in exc_info.value.leading
