"""
Token-budgeted, boundary-aware document chunking.

Text is broken down hierarchically (sections, then sentences, then clauses,
then character windows) only as far as needed for every unit to fit the
token budget. Units are then packed in order into chunks, and a short tail
of each closed chunk is carried into the next one for continuity.
"""
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from docmeter.services.token_meter import TokenMeter

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 6000
DEFAULT_OVERLAP_TOKENS = 200
CONTEXT_SAFETY_RATIO = 0.8
CLAUSE_GROUP_CHARS = 500
PREVIEW_CHARS = 200

SECTION_SEPARATOR = "\n\n"

_SECTION_SPLIT = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[\"'“‘(\[]?[A-Z0-9])")
_ABBREVIATION_END = re.compile(
    r"(?:\b(?:Mr|Mrs|Ms|Dr|Prof|Sr|Jr|St|Mt|vs|Fig|Figs|No|Nos|Vol|Inc|Ltd|Co|Corp|"
    r"Dept|Gen|Gov|Rev|Sgt|Capt|Lt|Col|approx|Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)\."
    r"|\b(?:e\.g|i\.e|U\.S|U\.K|a\.m|p\.m|Ph\.D)\."
    r"|(?:^|\s)[A-Z]\.)$"
)
_CLAUSE_SPLIT = re.compile(r"(?<=[,;:])\s+")


def split_sentences(text: str) -> List[str]:
    """Split text into sentences without breaking after common abbreviations.

    English-tuned heuristic; every character of input ends up in some sentence.
    """
    sentences = []
    start = 0
    for match in _SENTENCE_BOUNDARY.finditer(text):
        candidate = text[start:match.start()]
        if _ABBREVIATION_END.search(candidate):
            continue
        if candidate.strip():
            sentences.append(candidate.strip())
        start = match.end()

    tail = text[start:].strip()
    if tail:
        sentences.append(tail)
    return sentences


@dataclass
class Chunk:
    """One slice of a document sized to a token budget."""
    index: int
    total_chunks: int
    text: str
    token_count: int
    character_count: int
    word_count: int
    preview: str
    sentences: int
    fits_in_context: bool
    overlap_characters: int = 0
    overlap_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Chunk":
        return cls(**payload)


@dataclass
class _Unit:
    text: str
    tokens: int
    separator: str


class DocumentChunker:
    """
    Splits text into ordered chunks of at most ``max_tokens_per_chunk``
    tokens as counted by the injected :class:`TokenMeter`.

    A unit that cannot be split any further (a single character) is emitted
    on its own even when it exceeds the budget.
    """

    def __init__(self, token_meter: TokenMeter, overlap_tokens: int = DEFAULT_OVERLAP_TOKENS):
        if overlap_tokens < 0:
            raise ValueError("overlap_tokens must be >= 0")
        self.token_meter = token_meter
        self.overlap_tokens = overlap_tokens

    def chunk(
        self,
        text: str,
        max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS,
        model_id: Optional[str] = None,
        context_limit: Optional[int] = None,
    ) -> List[Chunk]:
        """
        Split ``text`` into chunks.

        Args:
            text: Normalized document text
            max_tokens_per_chunk: Token budget per chunk
            model_id: Model whose tokenizer does the counting
            context_limit: Limit used for ``fits_in_context``; defaults to the
                model's context window

        Returns:
            Ordered chunks; empty for empty or whitespace-only text
        """
        if max_tokens_per_chunk < 1:
            raise ValueError("max_tokens_per_chunk must be at least 1")
        if not text or not text.strip():
            return []

        if context_limit is None:
            context_limit = self.token_meter.context_limit(model_id)

        units = self._units(text.strip(), max_tokens_per_chunk, model_id)
        pieces = self._pack(units, max_tokens_per_chunk, model_id)

        total = len(pieces)
        chunks = []
        for position, (chunk_text, overlap_characters, overlap_tokens) in enumerate(pieces, start=1):
            token_count = self._count(chunk_text, model_id)
            chunks.append(Chunk(
                index=position,
                total_chunks=total,
                text=chunk_text,
                token_count=token_count,
                character_count=len(chunk_text),
                word_count=len(chunk_text.split()),
                preview=chunk_text[:PREVIEW_CHARS] + ("..." if len(chunk_text) > PREVIEW_CHARS else ""),
                sentences=len(split_sentences(chunk_text)),
                fits_in_context=token_count <= context_limit * CONTEXT_SAFETY_RATIO,
                overlap_characters=overlap_characters,
                overlap_tokens=overlap_tokens,
            ))

        logger.info(
            "Created %d chunks from %d characters (budget %d tokens)",
            total, len(text), max_tokens_per_chunk,
        )
        return chunks

    def chunking_stats(self, chunks: List[Chunk]) -> Dict[str, Any]:
        if not chunks:
            return {
                "totalChunks": 0,
                "totalTokens": 0,
                "averageTokens": 0,
                "minTokens": 0,
                "maxTokens": 0,
                "totalCharacters": 0,
                "totalWords": 0,
            }
        tokens = [c.token_count for c in chunks]
        return {
            "totalChunks": len(chunks),
            "totalTokens": sum(tokens),
            "averageTokens": round(sum(tokens) / len(chunks)),
            "minTokens": min(tokens),
            "maxTokens": max(tokens),
            "totalCharacters": sum(c.character_count for c in chunks),
            "totalWords": sum(c.word_count for c in chunks),
        }

    def optimize_for_model(
        self,
        chunks: List[Chunk],
        model_id: Optional[str] = None,
        context_limit: Optional[int] = None,
    ) -> List[Chunk]:
        """Chunks that fit the model's context with the safety margin."""
        limit = context_limit or self.token_meter.context_limit(model_id)
        return [c for c in chunks if c.token_count <= limit * CONTEXT_SAFETY_RATIO]

    # ------------------------------------------------------------------
    # Hierarchical descent
    # ------------------------------------------------------------------

    def _count(self, text: str, model_id: Optional[str]) -> int:
        return self.token_meter.count_tokens(text, model_id)

    def _units(self, text: str, budget: int, model_id: Optional[str]) -> List[_Unit]:
        units: List[_Unit] = []
        for section in _SECTION_SPLIT.split(text):
            section = section.strip()
            if not section:
                continue
            separator = SECTION_SEPARATOR
            tokens = self._count(section, model_id)
            if tokens <= budget:
                units.append(_Unit(section, tokens, separator))
                continue

            for sentence in split_sentences(section):
                tokens = self._count(sentence, model_id)
                if tokens <= budget:
                    units.append(_Unit(sentence, tokens, separator))
                    separator = " "
                    continue
                for clause in self._clauses(sentence):
                    tokens = self._count(clause, model_id)
                    if tokens <= budget:
                        units.append(_Unit(clause, tokens, separator))
                        separator = " "
                        continue
                    for window, tokens in self._windows(clause, budget, model_id):
                        units.append(_Unit(window, tokens, separator))
                        separator = " "
        return units

    @staticmethod
    def _clauses(sentence: str) -> List[str]:
        """Split after , ; : and regroup pieces up to the clause size cap."""
        groups: List[str] = []
        current = ""
        for piece in _CLAUSE_SPLIT.split(sentence):
            if current and len(current) + 1 + len(piece) > CLAUSE_GROUP_CHARS:
                groups.append(current)
                current = piece
            else:
                current = f"{current} {piece}" if current else piece
        if current:
            groups.append(current)
        return groups

    def _windows(self, text: str, budget: int, model_id: Optional[str]) -> List[tuple]:
        """Fixed-size character windows snapped back to a word boundary."""
        windows = []
        position = 0
        length = len(text)
        while position < length:
            size = 3 * budget
            while True:
                end = min(length, position + size)
                cut = end
                if end < length:
                    space = text.rfind(" ", position, end)
                    if space > position + (end - position) // 2:
                        cut = space
                piece = text[position:cut]
                tokens = self._count(piece, model_id)
                if tokens <= budget or size == 1:
                    break
                size = max(1, size // 2)

            piece = piece.strip()
            if piece:
                if tokens > budget:
                    logger.warning("Emitting indivisible unit of %d tokens over budget %d", tokens, budget)
                windows.append((piece, self._count(piece, model_id)))
            position = cut
            while position < length and text[position].isspace():
                position += 1
        return windows

    # ------------------------------------------------------------------
    # Packing
    # ------------------------------------------------------------------

    def _pack(self, units: List[_Unit], budget: int, model_id: Optional[str]) -> List[tuple]:
        """Greedy in-order packing; returns (text, overlap_chars, overlap_tokens) per chunk.

        The running total charges each unit after the first for its joining
        separator, so it tracks the count of the joined text closely and
        ``_close`` rarely has to hand units back.
        """
        pieces = []
        overlap_limit = min(self.overlap_tokens, budget // 4)
        separator_tokens: Dict[str, int] = {}

        def separator_cost(separator: str) -> int:
            if separator not in separator_tokens:
                separator_tokens[separator] = self._count(separator, model_id)
            return separator_tokens[separator]

        current: List[_Unit] = []
        running = 0
        overlap = ""
        i = 0

        while i < len(units) or current:
            if i < len(units):
                unit = units[i]
                cost = unit.tokens + (separator_cost(unit.separator) if current else 0)
                if not current or running + cost <= budget:
                    current.append(unit)
                    running += cost
                    i += 1
                    continue

            piece, keep = self._close(current, overlap, budget, model_id)
            pieces.append(piece)
            # Units that did not fit go back on the stream
            i -= len(current) - keep
            last = current[keep - 1]
            current = []

            overlap, running = "", 0
            if i < len(units):
                overlap, overlap_tokens = self._tail_overlap(last.text, overlap_limit, model_id)
                if overlap:
                    running = overlap_tokens + separator_cost(SECTION_SEPARATOR)
                    if running + units[i].tokens > budget:
                        overlap, running = "", 0

        return pieces

    def _close(self, current: List[_Unit], overlap: str, budget: int, model_id: Optional[str]) -> tuple:
        """Join units, keeping the longest prefix whose exact count fits the budget.

        The prefix is found by bisection; the first unit is always kept.

        Returns:
            ((text, overlap_characters, overlap_tokens), units_kept)
        """
        def render(keep: int) -> tuple:
            body = self._join(current[:keep])
            return body, (f"{overlap}{SECTION_SEPARATOR}{body}" if overlap else body)

        keep = len(current)
        body, text = render(keep)
        fits = self._count(text, model_id) <= budget
        if not fits and keep > 1:
            low, high = 1, keep - 1
            while low < high:
                middle = (low + high + 1) // 2
                if self._count(render(middle)[1], model_id) <= budget:
                    low = middle
                else:
                    high = middle - 1
            keep = low
            body, text = render(keep)
            fits = keep > 1 or self._count(text, model_id) <= budget

        if overlap and not fits:
            overlap = ""
            text = body

        if not overlap:
            return (text, 0, 0), keep
        return (text, len(overlap) + len(SECTION_SEPARATOR), self._count(overlap, model_id)), keep

    @staticmethod
    def _join(units: List[_Unit]) -> str:
        parts = []
        for position, unit in enumerate(units):
            if position:
                parts.append(unit.separator)
            parts.append(unit.text)
        return "".join(parts)

    def _tail_overlap(self, text: str, limit: int, model_id: Optional[str]) -> tuple:
        """Trailing sentences of ``text`` totalling at most ``limit`` tokens."""
        if limit <= 0:
            return "", 0
        selected: List[str] = []
        for sentence in reversed(split_sentences(text)):
            candidate = " ".join([sentence] + selected)
            if self._count(candidate, model_id) > limit:
                break
            selected.insert(0, sentence)
        if not selected:
            return "", 0
        overlap = " ".join(selected)
        return overlap, self._count(overlap, model_id)
