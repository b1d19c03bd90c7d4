"""
Configuration management using Pydantic Settings.
Loads and validates environment variables with type safety.
"""
from typing import Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parent / ".env"),  # Look for .env in docmeter/ directory
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================
    # Model Defaults
    # ============================================
    default_model: str = Field(default="gpt-4", description="Model used when a request names none")
    default_max_tokens_per_chunk: int = Field(default=6000, gt=0)
    chunk_overlap_tokens: int = Field(default=200, ge=0)
    pricing_config_path: Optional[str] = Field(
        default=None,
        description="Optional YAML file that replaces the built-in model catalog"
    )

    # ============================================
    # Extraction Limits
    # ============================================
    max_text_length: int = Field(default=10 * 1024 * 1024, gt=0)
    min_text_length: int = Field(default=10, ge=0)
    max_pdf_pages: int = Field(default=1000, gt=0)
    max_xlsx_sheets: int = Field(default=50, gt=0)
    max_xlsx_rows: int = Field(default=10000, gt=0)
    max_sheet_chars: int = Field(default=50000, gt=0)
    max_pptx_slides: int = Field(default=500, gt=0)
    max_slide_chars: int = Field(default=5000, gt=0)
    pptx_max_xml_depth: int = Field(default=32, gt=0)
    pptx_max_nodes: int = Field(default=20000, gt=0)
    text_sample_bytes: int = Field(default=2000, gt=0)
    binary_byte_ratio: float = Field(default=0.01, ge=0.0, le=1.0)
    extraction_timeout_seconds: float = Field(default=120.0, gt=0)

    # ============================================
    # Concurrency
    # ============================================
    max_concurrent_extractions: int = Field(default=4, gt=0)

    # ============================================
    # Cache & Store
    # ============================================
    cache_ttl_seconds: int = Field(default=3600, gt=0)  # 1 hour
    cache_max_entries: int = Field(default=256, gt=0)
    store_ttl_hours: int = Field(default=24, gt=0)
    store_db_path: str = Field(default="./data/processed_files.db")
    enable_durable_store: bool = Field(default=True)

    # ============================================
    # Logging Configuration
    # ============================================
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in ("json", "text"):
            raise ValueError("Invalid log format. Must be 'json' or 'text'")
        return v.lower()


def get_settings() -> Settings:
    """
    Get settings instance.
    Use this function throughout the application to access settings.

    Note: Not cached so that environment changes take effect on reload.
    """
    return Settings()
