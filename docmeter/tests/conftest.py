"""
Pytest configuration and shared fixtures.

Document fixtures are built in memory so the suite needs no binary files.
"""
import io
import math
import os
import zipfile
from typing import Optional

import pytest

# Keep tests independent of any developer .env
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("ENABLE_DURABLE_STORE", "false")

from docmeter.config import Settings
from docmeter.services.token_meter import ModelCatalog, TokenMeter


# =========================================================================
# Settings & meters
# =========================================================================


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing every file path into the test's temp dir."""
    return Settings(
        store_db_path=str(tmp_path / "processed_files.db"),
        enable_durable_store=False,
        pricing_config_path=None,
        log_file=None,
    )


class CharMeter(TokenMeter):
    """Deterministic meter counting one token per ``chars_per_token`` characters."""

    def __init__(self, chars_per_token: int = 4):
        super().__init__(catalog=ModelCatalog.from_defaults())
        self.chars_per_token = chars_per_token

    def count_tokens(self, text: str, model_id: Optional[str] = None) -> int:
        return math.ceil(len(text or "") / self.chars_per_token)

    def _count(self, text, profile):
        return self.count_tokens(text), True


class WordMeter(TokenMeter):
    """Deterministic meter counting whitespace-delimited words."""

    def __init__(self):
        super().__init__(catalog=ModelCatalog.from_defaults())

    def count_tokens(self, text: str, model_id: Optional[str] = None) -> int:
        return len((text or "").split())

    def _count(self, text, profile):
        return self.count_tokens(text), True


@pytest.fixture
def word_meter():
    return WordMeter()


@pytest.fixture
def char_meter():
    return CharMeter(chars_per_token=2)


# =========================================================================
# Document builders
# =========================================================================


def build_pdf(page_texts: list) -> bytes:
    """Build a PDF with one page per entry; ``None`` entries are blank pages."""
    page_count = len(page_texts)
    objects = []

    first_page = 4
    page_ids = []
    next_id = first_page
    layout = []
    for text in page_texts:
        page_id = next_id
        content_id = next_id + 1 if text else None
        page_ids.append(page_id)
        layout.append((page_id, content_id, text))
        next_id += 2 if text else 1

    kids = " ".join(f"{pid} 0 R" for pid in page_ids)
    objects.append((1, b"<</Type/Catalog/Pages 2 0 R>>"))
    objects.append((2, f"<</Type/Pages/Kids[{kids}]/Count {page_count}>>".encode()))
    objects.append((3, b"<</Type/Font/Subtype/Type1/BaseFont/Helvetica>>"))

    for page_id, content_id, text in layout:
        if content_id is None:
            objects.append((
                page_id,
                b"<</Type/Page/MediaBox[0 0 612 792]/Parent 2 0 R/Resources<<>>>>",
            ))
            continue
        objects.append((
            page_id,
            f"<</Type/Page/MediaBox[0 0 612 792]/Parent 2 0 R"
            f"/Resources<</Font<</F1 3 0 R>>>>/Contents {content_id} 0 R>>".encode(),
        ))
        stream = f"BT /F1 12 Tf 72 720 Td ({text}) Tj ET".encode()
        objects.append((
            content_id,
            b"<</Length " + str(len(stream)).encode() + b">>\nstream\n" + stream + b"\nendstream",
        ))

    objects.sort()
    out = bytearray(b"%PDF-1.4\n")
    offsets = {}
    for obj_id, body in objects:
        offsets[obj_id] = len(out)
        out += f"{obj_id} 0 obj\n".encode() + body + b"\nendobj\n"

    xref_pos = len(out)
    size = max(offsets) + 1
    out += f"xref\n0 {size}\n".encode()
    out += b"0000000000 65535 f \n"
    for obj_id in range(1, size):
        out += f"{offsets[obj_id]:010d} 00000 n \n".encode()
    out += f"trailer\n<</Size {size}/Root 1 0 R>>\nstartxref\n{xref_pos}\n%%EOF\n".encode()
    return bytes(out)


W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
A_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
P_NS = "http://schemas.openxmlformats.org/presentationml/2006/main"
REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"


def build_docx(paragraphs: list, body_xml: Optional[str] = None) -> bytes:
    """Build a minimal DOCX package from paragraph strings."""
    if body_xml is None:
        body_xml = "".join(
            f"<w:p><w:r><w:t xml:space=\"preserve\">{text}</w:t></w:r></w:p>" for text in paragraphs
        )
    document = (
        f'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<w:document xmlns:w="{W_NS}"><w:body>{body_xml}</w:body></w:document>'
    )
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        archive.writestr("word/document.xml", document)
    return buffer.getvalue()


def _slide_xml(lines: list) -> str:
    paragraphs = "".join(f"<a:p><a:r><a:t>{line}</a:t></a:r></a:p>" for line in lines)
    return (
        f'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<p:sld xmlns:a="{A_NS}" xmlns:p="{P_NS}"><p:cSld><p:spTree><p:sp><p:txBody>'
        f"{paragraphs}"
        f"</p:txBody></p:sp></p:spTree></p:cSld></p:sld>"
    )


def build_pptx(slides: dict, notes: Optional[dict] = None, raw_parts: Optional[dict] = None) -> bytes:
    """Build a minimal PPTX package.

    Args:
        slides: slide number -> list of text lines
        notes: slide number -> speaker notes text
        raw_parts: extra part name -> raw XML, written verbatim
    """
    notes = notes or {}
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        for number, lines in slides.items():
            archive.writestr(f"ppt/slides/slide{number}.xml", _slide_xml(lines))
        for number, text in notes.items():
            archive.writestr(
                f"ppt/slides/_rels/slide{number}.xml.rels",
                f'<?xml version="1.0" encoding="UTF-8"?><Relationships xmlns="{REL_NS}">'
                f'<Relationship Id="rId2" Type="http://schemas.openxmlformats.org/'
                f'officeDocument/2006/relationships/notesSlide" '
                f'Target="../notesSlides/notesSlide{number}.xml"/></Relationships>',
            )
            archive.writestr(
                f"ppt/notesSlides/notesSlide{number}.xml",
                f'<?xml version="1.0" encoding="UTF-8"?>'
                f'<p:notes xmlns:a="{A_NS}" xmlns:p="{P_NS}"><p:cSld><p:spTree><p:sp><p:txBody>'
                f"<a:p><a:r><a:t>{text}</a:t></a:r></a:p>"
                f'<a:p><a:fld id="1" type="slidenum"><a:t>{number}</a:t></a:fld></a:p>'
                f"</p:txBody></p:sp></p:spTree></p:cSld></p:notes>",
            )
        for name, xml in (raw_parts or {}).items():
            archive.writestr(name, xml)
    return buffer.getvalue()


def build_xlsx(sheets: dict) -> bytes:
    """Build an XLSX workbook with openpyxl; sheets maps title -> rows."""
    from openpyxl import Workbook

    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title=title)
        for row in rows:
            ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


SAMPLE_RTF = (
    rb"{\rtf1\ansi{\fonttbl{\f0 Arial;}}{\colortbl;\red0\green0\blue0;}"
    rb"\f0 Hello \b world\b0 .\par Caf\'e9 na\u239?ve\par}"
)


def prose(sentence_count: int, words_per_sentence: int = 12, paragraph_every: int = 5) -> str:
    """Readable English-like text with sentence and paragraph structure."""
    vocabulary = [
        "revenue", "growth", "market", "customer", "product", "quarter", "team",
        "strategy", "report", "analysis", "service", "pipeline", "budget", "region",
    ]
    sentences = []
    for i in range(sentence_count):
        words = [vocabulary[(i * 7 + j) % len(vocabulary)] for j in range(words_per_sentence)]
        words[0] = words[0].capitalize()
        sentences.append(" ".join(words) + f" item{i}.")
    paragraphs = [
        " ".join(sentences[i:i + paragraph_every])
        for i in range(0, len(sentences), paragraph_every)
    ]
    return "\n\n".join(paragraphs)


@pytest.fixture
def five_page_blank_pdf():
    return build_pdf([None] * 5)


@pytest.fixture
def text_pdf():
    return build_pdf([
        "Quarterly revenue grew by twelve percent across all regions",
        "Customer retention improved after the product launch",
    ])


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def make_docx():
    return build_docx


@pytest.fixture
def make_pptx():
    return build_pptx


@pytest.fixture
def make_xlsx():
    return build_xlsx


@pytest.fixture
def make_prose():
    return prose


@pytest.fixture
def sample_rtf():
    return SAMPLE_RTF
