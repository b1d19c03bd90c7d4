"""
Document ingestion engine.

Turns uploaded files (.pdf, .docx, .xlsx, .pptx, .txt, .csv, .rtf) into
normalized, validated text through one handler per format.
"""

from docmeter.pipeline.ingestion.models import (
    BaseExtractor,
    DocumentFormat,
    ExtractedContent,
    SourceDocument,
)
from docmeter.pipeline.ingestion.extractors import (
    CSVExtractor,
    DOCXExtractor,
    ExcelExtractor,
    PDFExtractor,
    PowerPointExtractor,
    RTFExtractor,
    TextExtractor,
)
from docmeter.pipeline.ingestion.factory import ExtractorFactory
from docmeter.pipeline.ingestion.content_extractor import ContentExtractor

__all__ = [
    "BaseExtractor",
    "DocumentFormat",
    "ExtractedContent",
    "SourceDocument",
    "PDFExtractor",
    "DOCXExtractor",
    "ExcelExtractor",
    "PowerPointExtractor",
    "TextExtractor",
    "CSVExtractor",
    "RTFExtractor",
    "ExtractorFactory",
    "ContentExtractor",
]
