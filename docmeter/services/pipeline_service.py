"""
Document processing pipeline: extraction, token metering and chunking
behind a content-addressed, two-tier result store.
"""
import asyncio
import hashlib
import logging
import math
import time
import uuid
from typing import Any, Dict, Optional

from docmeter.core.exceptions import InvalidInputError, NotFoundError, StoreError
from docmeter.models.schemas import (
    ChunkModel,
    ExtractedContentModel,
    ProcessingInfo,
    ProcessingResult,
    Recommendation,
    ReoptimizeResult,
    TokenAnalysis,
)
from docmeter.pipeline.chunking import CONTEXT_SAFETY_RATIO, Chunk, DocumentChunker
from docmeter.pipeline.ingestion import ContentExtractor, ExtractedContent
from docmeter.services.admission import AdmissionController
from docmeter.services.content_store import (
    ContentStore,
    InMemoryContentStore,
    LayeredContentStore,
    SQLiteContentStore,
)
from docmeter.services.token_meter import TokenMeter, TokenProfile

logger = logging.getLogger(__name__)


class ProcessingLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the processing id and attaches it as a record field."""

    def process(self, msg, kwargs):
        kwargs.setdefault("extra", {}).update(self.extra)
        return f"[{self.extra['processing_id']}] {msg}", kwargs


def result_key(file_hash: str, model_id: str, max_tokens_per_chunk: int) -> str:
    return f"result:{file_hash}:{model_id}:{max_tokens_per_chunk}"


def extracted_key(file_hash: str) -> str:
    return f"extracted:{file_hash}"


class PipelineOrchestrator:
    """
    Composes ContentExtractor -> TokenMeter -> DocumentChunker.

    Results are keyed by the SHA-256 of the raw bytes plus model and chunk
    budget. A store hit skips the whole pipeline. The extracted text is kept
    under its own key so another model can be tried without re-extracting.
    """

    def __init__(
        self,
        settings=None,
        extractor: Optional[ContentExtractor] = None,
        token_meter: Optional[TokenMeter] = None,
        chunker: Optional[DocumentChunker] = None,
        store: Optional[ContentStore] = None,
        admission: Optional[AdmissionController] = None,
    ):
        if settings is None:
            from docmeter.config import get_settings
            settings = get_settings()
        self.settings = settings
        self.extractor = extractor or ContentExtractor(settings)
        self.token_meter = token_meter or TokenMeter(settings=settings)
        self.chunker = chunker or DocumentChunker(
            self.token_meter, overlap_tokens=settings.chunk_overlap_tokens
        )
        self.store = store or self._build_store(settings)
        self.admission = admission or AdmissionController(settings.max_concurrent_extractions)

    @staticmethod
    def _build_store(settings) -> LayeredContentStore:
        tiers = [(InMemoryContentStore(settings.cache_max_entries), settings.cache_ttl_seconds)]
        if settings.enable_durable_store:
            try:
                tiers.append(
                    (SQLiteContentStore(settings.store_db_path), settings.store_ttl_hours * 3600)
                )
            except (StoreError, OSError) as e:
                logger.warning("Durable store unavailable, continuing with memory cache only: %s", e)
        return LayeredContentStore(tiers)

    async def process(
        self,
        data: bytes,
        filename: str,
        declared_mime: Optional[str] = None,
        model_id: Optional[str] = None,
        max_tokens_per_chunk: Optional[int] = None,
    ) -> ProcessingResult:
        """
        Process one upload.

        Args:
            data: Raw file bytes
            filename: Declared filename
            declared_mime: Client-reported MIME type (untrusted)
            model_id: Target model; defaults to ``settings.default_model``
            max_tokens_per_chunk: Chunk budget; defaults to 6000

        Returns:
            ProcessingResult, with ``cached=True`` when served from the store

        Raises:
            ProcessingError: Typed failure from admission or extraction
        """
        start_time = time.perf_counter()
        processing_id = uuid.uuid4().hex[:8]
        model_id = (model_id or self.settings.default_model).strip()
        budget = (
            max_tokens_per_chunk
            if max_tokens_per_chunk is not None
            else self.settings.default_max_tokens_per_chunk
        )
        if budget < 1:
            raise InvalidInputError(
                "maxTokensPerChunk must be a positive integer",
                details={"max_tokens_per_chunk": budget},
            )

        file_hash = hashlib.sha256(data).hexdigest()
        log = ProcessingLogAdapter(logger, {"processing_id": processing_id, "file_hash": file_hash})
        log.info("Processing file: %s (%d bytes) for %s", filename, len(data), model_id)

        key = result_key(file_hash, model_id, budget)
        cached = await asyncio.to_thread(self.store.get, key)
        if cached is not None:
            result = ProcessingResult.model_validate(cached)
            result.cached = True
            result.processing.processing_time_ms = self._elapsed_ms(start_time)
            log.info("Returning cached result for %s", file_hash[:12])
            return result

        log.info("Step 1: Extracting content...")
        async with self.admission.slot():
            content = await self.extractor.extract_async(data, filename, declared_mime)
        log.info("Extracted %d characters from %s", len(content.text), content.format.value)

        log.info("Step 2: Analyzing tokens and chunking...")
        analysis, chunks = await asyncio.to_thread(self._meter_and_chunk, content.text, model_id, budget)
        optimal = [c for c in chunks if c.fits_in_context]
        if not optimal and chunks:
            log.warning("No chunks fit in %s context window (%d tokens)", model_id, analysis.context_limit)
        chunking_stats = self.chunker.chunking_stats(chunks)
        log.info(
            "Chunking stats: %d chunks, avg %d tokens",
            chunking_stats["totalChunks"], chunking_stats["averageTokens"],
        )

        result = ProcessingResult(
            original_file_name=filename,
            file_size=len(data),
            mime_type=content.format.mime_type,
            detected_format=content.format.value,
            file_hash=file_hash,
            extracted_content=ExtractedContentModel(
                text=content.text,
                page_count=content.page_count,
                metadata=content.metadata,
                word_count=content.word_count,
            ),
            token_analysis=self._token_analysis(analysis, model_id),
            chunks=[self._chunk_model(c) for c in chunks],
            optimal_chunks=len(optimal),
            processing=ProcessingInfo(
                recommended_approach="chunked" if analysis.exceeds_context else "single",
                chunk_count=len(chunks),
                processing_time_ms=self._elapsed_ms(start_time),
                extraction_method=str(content.metadata.get("format", content.format.value)),
                chunking_stats=chunking_stats,
                processing_id=processing_id,
            ),
            cached=False,
        )

        await asyncio.to_thread(self._persist, key, result, content)
        log.info("Processing completed in %dms", result.processing.processing_time_ms)
        return result

    async def reoptimize(
        self,
        file_hash: str,
        target_model: str,
        max_context_tokens: Optional[int] = None,
        max_tokens_per_chunk: Optional[int] = None,
    ) -> ReoptimizeResult:
        """
        Re-derive token analysis and chunks of a processed file for another model.

        Runs no extraction and writes nothing.

        Raises:
            NotFoundError: If the extracted text expired from every tier
            InvalidInputError: If the hash or model is missing
        """
        start_time = time.perf_counter()
        if not file_hash or not target_model:
            raise InvalidInputError("fileHash and targetModel are required")
        if max_context_tokens is not None and max_context_tokens < 1:
            raise InvalidInputError("maxContextTokens must be a positive integer")

        file_hash = file_hash.strip().lower()
        record = await asyncio.to_thread(self.store.get, extracted_key(file_hash))
        if record is None:
            raise NotFoundError(
                "Processed file not found or expired. Please reprocess the file.",
                details={"file_hash": file_hash},
            )

        content = ExtractedContent.from_dict(record["content"])
        context_limit = max_context_tokens or self.token_meter.context_limit(target_model)
        if max_tokens_per_chunk is not None:
            budget = max_tokens_per_chunk
        else:
            budget = max(1, math.floor(context_limit * CONTEXT_SAFETY_RATIO))
        if budget < 1:
            raise InvalidInputError("maxTokensPerChunk must be a positive integer")

        analysis, chunks = await asyncio.to_thread(
            self._meter_and_chunk, content.text, target_model, budget, context_limit
        )
        optimal = self.chunker.optimize_for_model(chunks, target_model, context_limit)

        if not optimal:
            approach = "file_too_large"
        elif len(optimal) == 1:
            approach = "single_chunk"
        else:
            approach = "multiple_chunks"

        logger.info(
            "Reoptimized %s for %s: %d chunks, %d usable (%s)",
            file_hash[:12], target_model, len(chunks), len(optimal), approach,
        )
        return ReoptimizeResult(
            file_hash=file_hash,
            original_file_name=record.get("original_file_name"),
            target_model=target_model,
            context_limit=context_limit,
            max_tokens_per_chunk=budget,
            total_chunks=len(chunks),
            optimal_chunks=[self._chunk_model(c) for c in optimal],
            token_analysis=self._token_analysis(analysis, target_model),
            recommendation=Recommendation(
                approach=approach,
                usable_chunks=len(optimal),
                total_tokens_in_optimal_chunks=sum(c.token_count for c in optimal),
            ),
            processing_time_ms=self._elapsed_ms(start_time),
        )

    def stats(self) -> Dict[str, Any]:
        store_stats = self.store.stats() if isinstance(self.store, LayeredContentStore) else {}
        return {
            "extractor": self.extractor.stats(),
            "token_meter": self.token_meter.usage_stats(),
            "admission": self.admission.stats(),
            "store": store_stats,
        }

    def shutdown(self) -> None:
        self.extractor.shutdown()

    def _meter_and_chunk(
        self, text: str, model_id: str, budget: int, context_limit: Optional[int] = None
    ) -> tuple[TokenProfile, list[Chunk]]:
        analysis = self.token_meter.analyze(text, model_id)
        chunks = self.chunker.chunk(text, budget, model_id, context_limit or analysis.context_limit)
        return analysis, chunks

    def _persist(self, key: str, result: ProcessingResult, content: ExtractedContent) -> None:
        """Write the result and the extracted record through every tier."""
        self.store.set(key, result.model_dump())
        self.store.set(
            extracted_key(result.file_hash),
            {
                "file_hash": result.file_hash,
                "original_file_name": result.original_file_name,
                "file_size": result.file_size,
                "mime_type": result.mime_type,
                "content": content.to_dict(),
            },
        )

    @staticmethod
    def _token_analysis(analysis: TokenProfile, model_id: str) -> TokenAnalysis:
        return TokenAnalysis(
            total_tokens=analysis.token_count,
            context_limit=analysis.context_limit,
            estimated_cost=f"${analysis.estimated_cost:.4f}",
            model=model_id,
            exceeds_context=analysis.exceeds_context,
            utilization_percent=analysis.utilization_percent,
            chunks_needed=analysis.chunks_needed,
        )

    @staticmethod
    def _chunk_model(chunk: Chunk) -> ChunkModel:
        return ChunkModel(
            index=chunk.index,
            total_chunks=chunk.total_chunks,
            text=chunk.text,
            token_count=chunk.token_count,
            character_count=chunk.character_count,
            word_count=chunk.word_count,
            preview=chunk.preview,
            sentences=chunk.sentences,
            fits_in_context=chunk.fits_in_context,
        )

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.perf_counter() - start_time) * 1000)
