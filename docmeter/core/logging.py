"""
Structured logging configuration for the ingestion pipeline.
"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pathlib import Path


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        if hasattr(record, "processing_id"):
            log_data["processing_id"] = record.processing_id

        if hasattr(record, "file_hash"):
            log_data["file_hash"] = record.file_hash

        return json.dumps(log_data)


def setup_logging(settings=None) -> logging.Logger:
    """
    Configure application logging.

    Console output uses JSON or plain text depending on ``log_format``;
    the optional log file is always JSON.

    Args:
        settings: Settings instance. Loaded from the environment if omitted.

    Returns:
        Configured root logger
    """
    if settings is None:
        # Import here to avoid circular dependency
        from docmeter.config import get_settings
        settings = get_settings()

    level = getattr(logging, settings.log_level)

    # Get root logger
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if settings.log_format == "json":
        console_formatter = JSONFormatter()
    else:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler
    log_file_path = _resolve_log_file(settings.log_file)
    if log_file_path is not None:
        file_handler = logging.FileHandler(str(log_file_path))
        file_handler.setLevel(level)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    return logger


def _resolve_log_file(log_file: Optional[str]) -> Optional[Path]:
    if not log_file:
        return None

    log_file_path = Path(log_file)
    if not log_file_path.is_absolute():
        # Relative paths resolve against the project root (parent of docmeter/)
        log_file_path = (Path(__file__).parent.parent.parent / log_file).resolve()

    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    return log_file_path


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
