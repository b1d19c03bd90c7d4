"""
Tests for settings, logging setup and error payloads.
"""
import json
import logging

import pytest
from pydantic import ValidationError

from docmeter.config import Settings, get_settings
from docmeter.core.error_codes import ErrorCode
from docmeter.core.exceptions import (
    CorruptSignatureError,
    NonTextContentError,
    NotFoundError,
    ProcessingError,
)
from docmeter.core.logging import JSONFormatter, get_logger, setup_logging


# =========================================================================
# Settings
# =========================================================================


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.default_model == "gpt-4"
        assert settings.default_max_tokens_per_chunk == 6000
        assert settings.max_text_length == 10 * 1024 * 1024
        assert settings.max_pdf_pages == 1000
        assert settings.extraction_timeout_seconds == 120.0
        assert settings.cache_ttl_seconds == 3600
        assert settings.store_ttl_hours == 24

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MAX_PDF_PAGES", "25")
        monkeypatch.setenv("DEFAULT_MODEL", "claude-3")
        settings = get_settings()
        assert settings.max_pdf_pages == 25
        assert settings.default_model == "claude-3"

    def test_log_level_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError):
            Settings(log_format="xml")

    def test_limits_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(max_pptx_slides=0)


# =========================================================================
# Logging
# =========================================================================


class TestLogging:

    def test_json_formatter_includes_extras(self):
        record = logging.LogRecord("docmeter.test", logging.INFO, __file__, 10, "hello %s", ("world",), None)
        record.processing_id = "abcd1234"
        record.file_hash = "f00d"
        payload = json.loads(JSONFormatter().format(record))
        assert payload["message"] == "hello world"
        assert payload["level"] == "INFO"
        assert payload["processing_id"] == "abcd1234"
        assert payload["file_hash"] == "f00d"

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "docmeter.log"
        settings = Settings(log_level="WARNING", log_format="text", log_file=str(log_file))
        root = setup_logging(settings)
        try:
            assert root.level == logging.WARNING
            assert len(root.handlers) == 2
            get_logger("docmeter.test").warning("written to file")
            for handler in root.handlers:
                handler.flush()
            line = log_file.read_text().strip().splitlines()[-1]
            assert json.loads(line)["message"] == "written to file"
        finally:
            for handler in list(root.handlers):
                handler.close()
                root.removeHandler(handler)


# =========================================================================
# Error payloads
# =========================================================================


class TestProcessingErrors:

    def test_to_dict(self):
        error = NotFoundError("gone", details={"file_hash": "abc"})
        assert error.to_dict() == {
            "success": False,
            "error": "Not found",
            "message": "gone",
            "code": ErrorCode.NOT_FOUND,
            "details": {"file_hash": "abc"},
        }

    def test_hierarchy(self):
        error = NonTextContentError("binary")
        assert isinstance(error, CorruptSignatureError)
        assert isinstance(error, ProcessingError)
        assert error.code == ErrorCode.NON_TEXT_CONTENT
