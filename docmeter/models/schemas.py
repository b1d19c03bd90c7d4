"""
Pydantic schemas for pipeline results.
Field names are snake_case in Python and camelCase when dumped by alias,
which is the shape consumers of the processing API expect.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serializing to camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================
# Processing Result Schemas
# ============================================

class ExtractedContentModel(CamelModel):
    """Normalized text and what was learned while extracting it."""
    text: str
    page_count: int = Field(..., ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    word_count: int = Field(default=0, ge=0)


class TokenAnalysis(CamelModel):
    """Token cost of the extracted text for one model."""
    total_tokens: int = Field(..., ge=0)
    context_limit: int = Field(..., gt=0)
    estimated_cost: str = Field(..., description="USD, formatted as $0.0000")
    model: str
    exceeds_context: bool
    utilization_percent: int
    chunks_needed: int = Field(..., ge=0)


class ChunkModel(CamelModel):
    """One chunk as exposed to callers."""
    index: int = Field(..., ge=1)
    total_chunks: int = Field(..., ge=1)
    text: str
    token_count: int
    character_count: int
    word_count: int
    preview: str
    sentences: int
    fits_in_context: bool


class ProcessingInfo(CamelModel):
    """Diagnostics about how a result was produced."""
    recommended_approach: str = Field(..., description="'single' or 'chunked'")
    chunk_count: int
    processing_time_ms: int
    extraction_method: str
    chunking_stats: Dict[str, Any] = Field(default_factory=dict)
    processing_id: str


class ProcessingResult(CamelModel):
    """Full result of processing one upload."""
    success: bool = True
    original_file_name: str
    file_size: int
    mime_type: str
    detected_format: str
    file_hash: str
    extracted_content: ExtractedContentModel
    token_analysis: TokenAnalysis
    chunks: List[ChunkModel] = Field(default_factory=list)
    optimal_chunks: int = Field(..., ge=0, description="Number of chunks fitting the model context")
    processing: ProcessingInfo
    cached: bool = False


# ============================================
# Reoptimize Schemas
# ============================================

class Recommendation(CamelModel):
    approach: str = Field(..., description="file_too_large, single_chunk or multiple_chunks")
    usable_chunks: int
    total_tokens_in_optimal_chunks: int


class ReoptimizeResult(CamelModel):
    """Chunks of a previously processed file, re-derived for another model."""
    success: bool = True
    file_hash: str
    original_file_name: Optional[str] = None
    target_model: str
    context_limit: int
    max_tokens_per_chunk: int
    total_chunks: int
    optimal_chunks: List[ChunkModel] = Field(default_factory=list)
    token_analysis: TokenAnalysis
    recommendation: Recommendation
    processing_time_ms: int
