"""
Concrete format handlers for the document ingestion engine.

Each handler implements :class:`BaseExtractor` for one
:class:`DocumentFormat` and decodes an in-memory upload into raw text plus
metadata. Per-page/sheet/slide failures are logged and recorded as warnings
rather than aborting the whole document; container-level failures raise a
typed :class:`ProcessingError`.
"""

from __future__ import annotations

import csv
import io
import logging
import math
import posixpath
import re
import threading
import zipfile
from datetime import date, datetime, time
from typing import Any, Iterable, Optional
from xml.etree import ElementTree as ET

from docmeter.core.exceptions import (
    ExtractionFailedError,
    NonTextContentError,
    ProcessingError,
)
from docmeter.pipeline.ingestion.models import (
    BaseExtractor,
    DocumentFormat,
    ExtractedContent,
    count_words,
)
from docmeter.pipeline.ingestion.validation import count_non_text_bytes, is_binary_content

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK\x03\x04"
CHARS_PER_PAGE = 2000
MAX_RUN_CHARS = 500


def estimate_pages(text: str) -> int:
    """Rough page count for flowing text formats."""
    return max(1, math.ceil(len(text) / CHARS_PER_PAGE))


# ---------------------------------------------------------------------------
# Bounded XML traversal shared by the Office handlers
# ---------------------------------------------------------------------------

W_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"
A_NS = "{http://schemas.openxmlformats.org/drawingml/2006/main}"
REL_NS = "{http://schemas.openxmlformats.org/package/2006/relationships}"

_UNSAFE_XML_MARKERS = (b"<!DOCTYPE", b"<!ENTITY")


def parse_xml_part(payload: bytes, part_name: str) -> ET.Element:
    """Parse one XML part of an OOXML package.

    Raises:
        ValueError: If the part declares a DTD or entities, or is not XML.
    """
    if any(marker in payload for marker in _UNSAFE_XML_MARKERS):
        raise ValueError(f"'{part_name}' contains unsafe XML declarations")
    try:
        return ET.fromstring(payload)
    except ET.ParseError as exc:
        raise ValueError(f"'{part_name}' is not well-formed XML: {exc}") from exc


def collect_paragraphs(
    root: ET.Element,
    *,
    paragraph_tag: str,
    text_tag: str,
    break_tags: Iterable[str] = (),
    tab_tags: Iterable[str] = (),
    skip_tags: Iterable[str] = (),
    max_depth: int,
    max_nodes: int,
) -> tuple[list[str], bool]:
    """Walk an XML tree iteratively and gather text per paragraph.

    The walk is depth-first in document order, descends at most
    ``max_depth`` levels and visits at most ``max_nodes`` elements.

    Returns:
        (paragraph_texts, truncated) where ``truncated`` is True when either
        budget cut the walk short.
    """
    break_tags = frozenset(break_tags)
    tab_tags = frozenset(tab_tags)
    skip_tags = frozenset(skip_tags)

    paragraphs: dict[int, list[str]] = {}
    stack: list[tuple[ET.Element, int, Optional[int]]] = [(root, 0, None)]
    visited = 0
    truncated = False

    while stack:
        node, depth, paragraph = stack.pop()
        visited += 1
        if visited > max_nodes:
            truncated = True
            break

        tag = node.tag
        if tag in skip_tags:
            continue
        if tag == paragraph_tag:
            paragraph = id(node)
            paragraphs.setdefault(paragraph, [])
        elif paragraph is not None:
            if tag == text_tag and node.text:
                paragraphs[paragraph].append(node.text[:MAX_RUN_CHARS])
            elif tag in break_tags:
                paragraphs[paragraph].append("\n")
            elif tag in tab_tags:
                paragraphs[paragraph].append("\t")

        children = list(node)
        if not children:
            continue
        if depth >= max_depth:
            truncated = True
            continue
        stack.extend((child, depth + 1, paragraph) for child in reversed(children))

    return ["".join(parts).strip() for parts in paragraphs.values()], truncated


def minimal_content(
    doc_format: DocumentFormat,
    text: str,
    page_count: int,
    metadata: dict[str, Any],
) -> ExtractedContent:
    """Build the descriptive result for a document without readable text."""
    metadata = dict(metadata)
    metadata.update(extraction_note="Minimal text content detected", word_count=0)
    return ExtractedContent(
        text=text,
        page_count=page_count,
        format=doc_format,
        metadata=metadata,
        word_count=count_words(text),
    )


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PDFExtractor(BaseExtractor):
    """Extracts text from every page of a PDF, up to the page cap.

    Uses `pdfplumber` for robust text extraction including tables and
    complex layouts.
    """

    format = DocumentFormat.PDF
    signature = b"%PDF"

    _INFO_KEYS = {
        "Title": "title",
        "Author": "author",
        "Subject": "subject",
        "Creator": "creator",
        "Producer": "producer",
        "CreationDate": "creation_date",
    }

    def decode(self, data: bytes, cancel_event: Optional[threading.Event] = None) -> ExtractedContent:
        import pdfplumber

        max_pages = self.settings.max_pdf_pages
        warnings: list[str] = []
        page_texts: list[str] = []

        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                total_pages = len(pdf.pages)
                info = self._sanitize_info(pdf.metadata or {})
                for page_num, page in enumerate(pdf.pages[:max_pages], start=1):
                    self.checkpoint(cancel_event, f"PDF page {page_num}")
                    try:
                        text = (page.extract_text() or "").strip()
                    except Exception as exc:
                        logger.error("Error extracting page %d of PDF: %s", page_num, exc)
                        warnings.append(f"Page {page_num} could not be read: {exc}")
                        continue
                    if text:
                        page_texts.append(text)
        except ProcessingError:
            raise
        except Exception as exc:
            logger.error("Failed to open PDF: %s", exc)
            raise ExtractionFailedError(f"Cannot parse PDF file: {exc}") from exc

        if total_pages == 0:
            raise ExtractionFailedError("PDF appears to be empty or corrupted - no pages found")

        metadata: dict[str, Any] = {
            "format": "pdf",
            "pages": total_pages,
            "info": info,
            "pages_with_text": len(page_texts),
            "processing_limited": total_pages > max_pages,
        }
        if warnings:
            metadata["warnings"] = warnings

        text = "\n\n".join(page_texts)
        if len(text.strip()) < self.settings.min_text_length:
            logger.warning("PDF extraction returned minimal text: %d chars", len(text))
            placeholder = (
                f"PDF Document ({total_pages} pages)\n\n"
                f"This PDF contains mostly images, scanned content, or formatting "
                f"that cannot be extracted as text. The document has {total_pages} "
                f"pages but minimal readable text content."
            )
            return minimal_content(self.format, placeholder, total_pages, metadata)

        metadata["word_count"] = count_words(text)
        return ExtractedContent(
            text=text,
            page_count=min(total_pages, max_pages),
            format=self.format,
            metadata=metadata,
            word_count=metadata["word_count"],
        )

    @classmethod
    def _sanitize_info(cls, info: dict) -> dict[str, str]:
        sanitized = {}
        for key, name in cls._INFO_KEYS.items():
            value = info.get(key)
            if isinstance(value, bytes):
                value = value.decode("utf-8", errors="ignore")
            if isinstance(value, str) and value.strip():
                sanitized[name] = value.strip()[:100]
        return sanitized


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

class DOCXExtractor(BaseExtractor):
    """Extracts body text from a Word document, one line per paragraph."""

    format = DocumentFormat.DOCX
    signature = ZIP_SIGNATURE

    def decode(self, data: bytes, cancel_event: Optional[threading.Event] = None) -> ExtractedContent:
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                payload = archive.read("word/document.xml")
        except (zipfile.BadZipFile, KeyError) as exc:
            logger.error("Failed to open DOCX package: %s", exc)
            raise ExtractionFailedError(f"DOCX text extraction failed: {exc}") from exc

        self.checkpoint(cancel_event, "DOCX body")

        try:
            root = parse_xml_part(payload, "word/document.xml")
        except ValueError as exc:
            raise ExtractionFailedError(f"DOCX text extraction failed: {exc}") from exc

        paragraphs, truncated = collect_paragraphs(
            root,
            paragraph_tag=f"{W_NS}p",
            text_tag=f"{W_NS}t",
            break_tags=(f"{W_NS}br", f"{W_NS}cr"),
            tab_tags=(f"{W_NS}tab",),
            max_depth=self.settings.pptx_max_xml_depth,
            max_nodes=self.settings.pptx_max_nodes * 10,
        )

        warnings: list[str] = []
        images = sum(1 for _ in root.iter(f"{W_NS}drawing"))
        if images:
            warnings.append(f"{images} embedded image(s) skipped")
        if truncated:
            warnings.append("Document structure exceeded traversal limits; text may be incomplete")

        text = "\n".join(paragraphs)
        metadata: dict[str, Any] = {
            "format": "docx",
            "paragraphs": sum(1 for p in paragraphs if p),
            "warnings": warnings,
            "warning_count": len(warnings),
        }

        if len(text.strip()) < self.settings.min_text_length:
            logger.warning("DOCX extraction returned minimal text: %d chars", len(text))
            placeholder = (
                "Word Document\n\n"
                "This document contains mostly formatting, images, or complex layouts "
                "that cannot be extracted as plain text. Please ensure the document "
                "contains readable text content."
            )
            return minimal_content(self.format, placeholder, 1, metadata)

        metadata["word_count"] = count_words(text)
        return ExtractedContent(
            text=text,
            page_count=estimate_pages(text),
            format=self.format,
            metadata=metadata,
            word_count=metadata["word_count"],
        )


# ---------------------------------------------------------------------------
# XLSX
# ---------------------------------------------------------------------------

class ExcelExtractor(BaseExtractor):
    """Serializes each worksheet of an Excel workbook as CSV text.

    Uses ``openpyxl`` in **read-only** mode to stream rows without loading
    the full workbook into memory.
    """

    format = DocumentFormat.XLSX
    signature = ZIP_SIGNATURE

    def decode(self, data: bytes, cancel_event: Optional[threading.Event] = None) -> ExtractedContent:
        from openpyxl import load_workbook

        try:
            wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        except Exception as exc:
            logger.error("Failed to open Excel file: %s", exc)
            raise ExtractionFailedError(f"Excel file reading failed: {exc}") from exc

        try:
            sheet_names = list(wb.sheetnames)
            if not sheet_names:
                raise ExtractionFailedError("Excel file contains no worksheets")

            processed = sheet_names[: self.settings.max_xlsx_sheets]
            blocks: list[str] = []
            total_rows = 0
            rows_limited = False

            for sheet_name in processed:
                self.checkpoint(cancel_event, f"sheet '{sheet_name}'")
                label = self._sanitize_sheet_name(sheet_name)
                try:
                    csv_text, rows, limited = self._sheet_to_csv(wb[sheet_name])
                except Exception as exc:
                    logger.warning("Error processing sheet '%s': %s", sheet_name, exc)
                    blocks.append(f"=== Excel Sheet: {label} ===\nError processing this sheet: {exc}")
                    continue

                total_rows += rows
                rows_limited = rows_limited or limited
                if not csv_text.strip():
                    logger.debug("Sheet '%s' has no text content", sheet_name)
                    continue
                blocks.append(
                    f"=== Excel Sheet: {label} ({rows} rows) ===\n"
                    f"{csv_text[: self.settings.max_sheet_chars]}"
                )
        finally:
            wb.close()

        text = "\n\n".join(blocks)
        metadata: dict[str, Any] = {
            "format": "xlsx",
            "total_sheets": len(sheet_names),
            "processed_sheets": len(processed),
            "sheet_names": [self._sanitize_sheet_name(name) for name in processed],
            "total_rows": total_rows,
            "processing_limited": len(sheet_names) > len(processed) or rows_limited,
        }

        if len(text.strip()) < self.settings.min_text_length:
            placeholder = (
                f"Excel Spreadsheet ({len(sheet_names)} sheets)\n\n"
                f"This spreadsheet contains mostly formatting, formulas, or data that "
                f"cannot be extracted as readable text. Total sheets: {len(sheet_names)}, "
                f"processed: {len(processed)}."
            )
            return minimal_content(self.format, placeholder, len(processed), metadata)

        metadata["word_count"] = count_words(text)
        return ExtractedContent(
            text=text,
            page_count=len(processed),
            format=self.format,
            metadata=metadata,
            word_count=metadata["word_count"],
        )

    def _sheet_to_csv(self, worksheet) -> tuple[str, int, bool]:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        rows = 0
        limited = False
        for row in worksheet.iter_rows(values_only=True):
            if rows >= self.settings.max_xlsx_rows:
                limited = True
                break
            rows += 1
            values = [self._format_cell(cell) for cell in row]
            while values and not values[-1]:
                values.pop()
            if not any(value.strip() for value in values):
                continue
            writer.writerow(values)
        return buffer.getvalue(), rows, limited

    @staticmethod
    def _format_cell(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        return str(value)

    @staticmethod
    def _sanitize_sheet_name(name: str) -> str:
        return re.sub(r"[<>:\"']", "", str(name))[:30]


# ---------------------------------------------------------------------------
# PPTX
# ---------------------------------------------------------------------------

class PowerPointExtractor(BaseExtractor):
    """Extracts slide text and speaker notes from a PowerPoint deck."""

    format = DocumentFormat.PPTX
    signature = ZIP_SIGNATURE

    _SLIDE_PATH = re.compile(r"^ppt/slides/slide(\d+)\.xml$")
    _NOTES_REL_TYPE = "/notesSlide"

    def decode(self, data: bytes, cancel_event: Optional[threading.Event] = None) -> ExtractedContent:
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as exc:
            logger.error("PPTX ZIP reading failed: %s", exc)
            raise ExtractionFailedError(f"PowerPoint file reading failed: {exc}") from exc

        with archive:
            names = set(archive.namelist())
            slide_paths = sorted(
                (int(match.group(1)), name)
                for name in names
                if (match := self._SLIDE_PATH.match(name))
            )
            total_slides = len(slide_paths)
            slide_paths = slide_paths[: self.settings.max_pptx_slides]

            blocks: list[str] = []
            titles: list[str] = []
            warnings: list[str] = []
            with_notes = 0

            for position, (_, slide_path) in enumerate(slide_paths, start=1):
                self.checkpoint(cancel_event, f"slide {position}")
                try:
                    slide_text = self._part_text(archive, slide_path)
                    notes_text = self._notes_text(archive, names, slide_path)
                except (KeyError, ValueError) as exc:
                    logger.warning("Error processing slide %d: %s", position, exc)
                    warnings.append(f"Slide {position}: {exc}")
                    blocks.append(f"=== PowerPoint Slide {position} ===\nError processing this slide: {exc}")
                    continue

                slide_text = slide_text[: self.settings.max_slide_chars]
                if not slide_text and not notes_text:
                    continue

                block = f"=== PowerPoint Slide {position} ==="
                if slide_text:
                    block += f"\n{slide_text}"
                    titles.append(slide_text.splitlines()[0][:100])
                if notes_text:
                    with_notes += 1
                    block += f"\nSpeaker notes: {notes_text[: self.settings.max_slide_chars]}"
                blocks.append(block)

        slide_count = len(slide_paths)
        text = "\n\n".join(blocks)
        metadata: dict[str, Any] = {
            "format": "pptx",
            "slides": slide_count,
            "slide_titles": titles,
            "slides_with_notes": with_notes,
            "processing_limited": total_slides > slide_count,
        }
        if warnings:
            metadata["warnings"] = warnings

        if len(text.strip()) < self.settings.min_text_length:
            placeholder = (
                f"PowerPoint Presentation ({slide_count} slides)\n\n"
                f"This presentation contains mostly images, graphics, or formatting "
                f"that cannot be extracted as text. Total slides processed: {slide_count}."
            )
            return minimal_content(self.format, placeholder, slide_count, metadata)

        metadata["word_count"] = count_words(text)
        return ExtractedContent(
            text=text,
            page_count=slide_count,
            format=self.format,
            metadata=metadata,
            word_count=metadata["word_count"],
        )

    def _part_text(self, archive: zipfile.ZipFile, part_name: str, skip_fields: bool = False) -> str:
        root = parse_xml_part(archive.read(part_name), part_name)
        paragraphs, truncated = collect_paragraphs(
            root,
            paragraph_tag=f"{A_NS}p",
            text_tag=f"{A_NS}t",
            break_tags=(f"{A_NS}br",),
            skip_tags=(f"{A_NS}fld",) if skip_fields else (),
            max_depth=self.settings.pptx_max_xml_depth,
            max_nodes=self.settings.pptx_max_nodes,
        )
        if truncated:
            logger.warning("'%s' exceeded XML traversal limits; text truncated", part_name)
        return "\n".join(p for p in paragraphs if p)

    def _notes_text(self, archive: zipfile.ZipFile, names: set[str], slide_path: str) -> str:
        slide_dir, slide_file = posixpath.split(slide_path)
        rels_path = f"{slide_dir}/_rels/{slide_file}.rels"
        if rels_path not in names:
            return ""

        rels = parse_xml_part(archive.read(rels_path), rels_path)
        for rel in rels.iter(f"{REL_NS}Relationship"):
            if not rel.get("Type", "").endswith(self._NOTES_REL_TYPE):
                continue
            target = posixpath.normpath(posixpath.join(slide_dir, rel.get("Target", "")))
            if target in names:
                return " ".join(self._part_text(archive, target, skip_fields=True).split())
        return ""


# ---------------------------------------------------------------------------
# Plain text / CSV
# ---------------------------------------------------------------------------

class TextExtractor(BaseExtractor):
    """Decodes plain-text uploads after screening a sample for binary bytes."""

    format = DocumentFormat.TXT
    _ENCODINGS = ("utf-8-sig", "cp1252")

    def decode(self, data: bytes, cancel_event: Optional[threading.Event] = None) -> ExtractedContent:
        if is_binary_content(data, self.settings.text_sample_bytes, self.settings.binary_byte_ratio):
            non_text, sampled = count_non_text_bytes(data, self.settings.text_sample_bytes)
            raise NonTextContentError(
                f"File appears to contain binary data "
                f"({non_text}/{sampled} non-text bytes detected)",
                details={"non_text_bytes": non_text, "sampled_bytes": sampled},
            )

        text, encoding = self._decode_bytes(data)
        metadata: dict[str, Any] = {
            "format": self.format.value,
            "encoding": encoding,
            "file_size": len(data),
        }
        if encoding != "utf-8-sig":
            metadata["warnings"] = [f"File is not valid UTF-8; decoded as {encoding}"]
        metadata.update(self._describe(text))

        metadata["word_count"] = count_words(text)
        return ExtractedContent(
            text=text,
            page_count=estimate_pages(text),
            format=self.format,
            metadata=metadata,
            word_count=metadata["word_count"],
        )

    def _decode_bytes(self, data: bytes) -> tuple[str, str]:
        for encoding in self._ENCODINGS:
            try:
                return data.decode(encoding), encoding
            except UnicodeDecodeError:
                logger.debug("Text is not valid %s, trying next encoding", encoding)
        # latin-1 maps every byte
        return data.decode("latin-1"), "latin-1"

    def _describe(self, text: str) -> dict[str, Any]:
        return {"lines": text.count("\n") + 1 if text else 0}


class CSVExtractor(TextExtractor):
    """Plain-text handling plus a column summary from the header row."""

    format = DocumentFormat.CSV

    def _describe(self, text: str) -> dict[str, Any]:
        lines = [line for line in text.splitlines() if line.strip()]
        if not lines:
            return {"rows": 0, "columns": []}
        try:
            header = next(csv.reader([lines[0]]))
        except csv.Error as exc:
            logger.warning("Could not parse CSV header: %s", exc)
            header = []
        return {
            "rows": max(0, len(lines) - 1),
            "columns": [column.strip() for column in header],
        }


# ---------------------------------------------------------------------------
# RTF
# ---------------------------------------------------------------------------

class RTFExtractor(BaseExtractor):
    """Best-effort RTF to text conversion by stripping control groups and words."""

    format = DocumentFormat.RTF
    signature = b"{\\rtf"

    _DESTINATIONS = (
        "fonttbl", "colortbl", "stylesheet", "info", "pict", "header", "footer",
        "headerl", "headerr", "footerl", "footerr", "listtable", "listoverridetable",
        "rsidtbl", "generator", "xmlnstbl", "themedata", "colorschememapping",
        "latentstyles", "datastore", "object",
    )
    _DESTINATION_START = re.compile(r"\{\\(\*|(?:%s)\b)" % "|".join(_DESTINATIONS))
    _TOKEN = re.compile(
        r"\\'([0-9a-fA-F]{2})"                          # hex escape
        r"|\\u(-?\d+) ?(?:\\'[0-9a-fA-F]{2}|[^\\{}])?"   # unicode escape + fallback char
        r"|\\([a-zA-Z]+)(-?\d+)? ?"                      # control word
        r"|\\([\\{}])"                                   # escaped literal
        r"|\\~"                                          # non-breaking space
        r"|[{}]"
    )
    _CONTROL_TEXT = {"par": "\n", "line": "\n", "tab": "\t", "page": "\n\n", "sect": "\n\n"}

    def decode(self, data: bytes, cancel_event: Optional[threading.Event] = None) -> ExtractedContent:
        source = data.decode("latin-1")
        # Raw line breaks are not content in RTF; an escaped one is a paragraph
        source = re.sub(r"\\\r?\n", r"\\par ", source).replace("\r", "").replace("\n", "")
        source = self._strip_destinations(source)
        text = self._TOKEN.sub(self._replace_token, source)

        metadata: dict[str, Any] = {
            "format": "rtf",
            "original_size": len(data),
        }
        metadata["word_count"] = count_words(text)
        return ExtractedContent(
            text=text,
            page_count=estimate_pages(text),
            format=self.format,
            metadata=metadata,
            word_count=metadata["word_count"],
        )

    def _strip_destinations(self, source: str) -> str:
        """Drop whole groups that hold formatting tables rather than text."""
        pieces: list[str] = []
        position = 0
        while True:
            match = self._DESTINATION_START.search(source, position)
            if match is None:
                pieces.append(source[position:])
                break
            pieces.append(source[position:match.start()])
            position = self._group_end(source, match.start())
        return "".join(pieces)

    @staticmethod
    def _group_end(source: str, start: int) -> int:
        depth = 0
        index = start
        while index < len(source):
            char = source[index]
            if char == "\\":
                index += 2
                continue
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return index + 1
            index += 1
        return len(source)

    def _replace_token(self, match: re.Match) -> str:
        hex_code, unicode_code, word, _, literal = match.groups()
        if hex_code is not None:
            return bytes([int(hex_code, 16)]).decode("cp1252", errors="replace")
        if unicode_code is not None:
            code = int(unicode_code)
            if code < 0:
                code += 65536
            return chr(code)
        if word is not None:
            return self._CONTROL_TEXT.get(word, "")
        if literal is not None:
            return literal
        if match.group(0) == "\\~":
            return " "
        return ""
