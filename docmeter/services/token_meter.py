"""
Token counting, context limits and cost estimation per AI model.

Model ids are normalized through an alias table onto canonical profiles held
in an immutable :class:`ModelCatalog`. Exact counts come from ``tiktoken``
where the profile names an encoding; everything else uses a ~4 chars/token
heuristic, so counting always returns a usable integer.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
COST_QUANTUM = Decimal("0.0001")
DEFAULT_MODEL = "gpt-4"


@dataclass(frozen=True)
class ModelProfile:
    """Canonical tokenizer/pricing/context family for a model."""
    model_id: str
    encoding: Optional[str]
    context_limit: int
    cost_per_token: Decimal

    @property
    def cost_per_1k_tokens(self) -> Decimal:
        return self.cost_per_token * 1000


# (encoding, context window, USD per 1K input tokens)
_DEFAULT_PROFILES = {
    "gpt-4": ("cl100k_base", 8192, "0.03"),
    "gpt-4-32k": ("cl100k_base", 32768, "0.03"),
    "gpt-4-turbo": ("cl100k_base", 128000, "0.01"),
    "gpt-4o": ("o200k_base", 128000, "0.005"),
    "gpt-3.5-turbo": ("cl100k_base", 4096, "0.002"),
    "gpt-3.5-turbo-16k": ("cl100k_base", 16384, "0.002"),
    "claude": (None, 100000, "0.008"),
    "claude-3": (None, 200000, "0.008"),
    "gemini": (None, 30720, "0.001"),
    "gemini-1.5-pro": (None, 1000000, "0.001"),
    "deepseek": (None, 32000, "0.0014"),
    "deepseek-coder": (None, 16000, "0.0014"),
}

_DEFAULT_ALIASES = {
    "gpt4": "gpt-4",
    "gpt-4-0613": "gpt-4",
    "gpt-4-turbo-preview": "gpt-4-turbo",
    "gpt-4-1106-preview": "gpt-4-turbo",
    "gpt-4o-mini": "gpt-4o",
    "gpt3.5": "gpt-3.5-turbo",
    "gpt-3.5": "gpt-3.5-turbo",
    "gpt-3.5-turbo-1106": "gpt-3.5-turbo",
    "gpt-3.5-turbo-0613": "gpt-3.5-turbo",
    "claude-3-opus": "claude-3",
    "claude-3-sonnet": "claude-3",
    "claude-3-haiku": "claude-3",
    "gemini-pro": "gemini",
    "deepseek-chat": "deepseek",
}


class ModelCatalog:
    """
    Immutable table of model profiles plus the alias map.

    Build one with :meth:`from_defaults` or :meth:`from_yaml`; replace it
    wholesale through :meth:`TokenMeter.update_pricing`.
    """

    def __init__(
        self,
        profiles: Mapping[str, ModelProfile],
        aliases: Optional[Mapping[str, str]] = None,
        default_model: str = DEFAULT_MODEL,
    ):
        profiles = {key.lower().strip(): profile for key, profile in profiles.items()}
        aliases = {
            key.lower().strip(): value.lower().strip()
            for key, value in (aliases or {}).items()
        }
        default_model = default_model.lower().strip()

        if not profiles:
            raise ValueError("Model catalog must define at least one profile")
        if default_model not in profiles:
            raise ValueError(f"Default model '{default_model}' has no profile")
        for alias, target in aliases.items():
            if target not in profiles:
                raise ValueError(f"Alias '{alias}' points to unknown model '{target}'")
        for model_id, profile in profiles.items():
            if profile.context_limit <= 0:
                raise ValueError(f"Model '{model_id}' has a non-positive context limit")
            if profile.cost_per_token < 0:
                raise ValueError(f"Model '{model_id}' has a negative cost")

        self._profiles = MappingProxyType(profiles)
        self._aliases = MappingProxyType(aliases)
        self.default_model = default_model

    @property
    def profiles(self) -> Mapping[str, ModelProfile]:
        return self._profiles

    @property
    def aliases(self) -> Mapping[str, str]:
        return self._aliases

    def canonical(self, model_id: Optional[str]) -> str:
        """Map any model id onto a canonical profile key."""
        name = (model_id or "").lower().strip()
        name = self._aliases.get(name, name)
        return name if name in self._profiles else self.default_model

    def profile(self, model_id: Optional[str]) -> ModelProfile:
        return self._profiles[self.canonical(model_id)]

    @classmethod
    def from_defaults(cls) -> "ModelCatalog":
        return cls.from_dict({
            "default_model": DEFAULT_MODEL,
            "models": {
                model_id: {
                    "encoding": encoding,
                    "context_limit": limit,
                    "cost_per_1k_tokens": cost,
                }
                for model_id, (encoding, limit, cost) in _DEFAULT_PROFILES.items()
            },
            "aliases": _DEFAULT_ALIASES,
        })

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ModelCatalog":
        """
        Build a catalog from a plain mapping.

        Expected shape::

            default_model: gpt-4
            models:
              gpt-4: {encoding: cl100k_base, context_limit: 8192, cost_per_1k_tokens: 0.03}
            aliases:
              gpt4: gpt-4
        """
        models = config.get("models") or {}
        if not isinstance(models, dict):
            raise ValueError("'models' must be a mapping of model id to profile")

        profiles = {}
        for model_id, entry in models.items():
            try:
                profiles[model_id] = ModelProfile(
                    model_id=model_id.lower().strip(),
                    encoding=entry.get("encoding"),
                    context_limit=int(entry["context_limit"]),
                    cost_per_token=Decimal(str(entry["cost_per_1k_tokens"])) / 1000,
                )
            except (KeyError, TypeError, ArithmeticError, ValueError) as exc:
                raise ValueError(f"Invalid profile for model '{model_id}': {exc}") from exc

        return cls(
            profiles,
            aliases=config.get("aliases") or {},
            default_model=config.get("default_model", DEFAULT_MODEL),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "ModelCatalog":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Pricing config not found at {config_path}")

        logger.info("Loading model catalog from %s", config_path)
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        return cls.from_dict(config)


@dataclass(frozen=True)
class TokenProfile:
    """Token analysis of one text against one model."""
    model_id: str
    canonical_model: str
    token_count: int
    character_count: int
    word_count: int
    context_limit: int
    estimated_cost: Decimal
    exceeds_context: bool
    utilization_percent: int
    recommended_chunk_size: int
    chunks_needed: int
    estimated: bool


class TokenMeter:
    """
    Token counting service.

    Stateless apart from the lazily loaded encoder cache (guarded by a lock)
    and the catalog reference, which is only ever swapped whole.
    """

    def __init__(self, catalog: Optional[ModelCatalog] = None, settings=None):
        if catalog is None:
            if settings is None:
                from docmeter.config import get_settings
                settings = get_settings()
            if settings.pricing_config_path:
                catalog = ModelCatalog.from_yaml(settings.pricing_config_path)
            else:
                catalog = ModelCatalog.from_defaults()
        self._catalog = catalog
        self._encoders: Dict[str, Any] = {}
        self._encoder_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._exact_counts = 0
        self._estimated_counts = 0

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    def canonical_model(self, model_id: Optional[str]) -> str:
        return self._catalog.canonical(model_id)

    def context_limit(self, model_id: Optional[str]) -> int:
        return self._catalog.profile(model_id).context_limit

    def count_tokens(self, text: str, model_id: Optional[str] = None) -> int:
        """Count tokens in ``text`` for ``model_id``. Never raises."""
        return self._count(text, self._catalog.profile(model_id))[0]

    def is_exact(self, model_id: Optional[str]) -> bool:
        """Whether ``model_id`` is counted with a real tokenizer."""
        profile = self._catalog.profile(model_id)
        return profile.encoding is not None and self._get_encoder(profile.encoding) is not None

    def estimate_cost(self, tokens: int, model_id: Optional[str] = None) -> Decimal:
        profile = self._catalog.profile(model_id)
        return (Decimal(tokens) * profile.cost_per_token).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)

    def recommended_chunk_size(self, model_id: Optional[str] = None, buffer_ratio: float = 0.2) -> int:
        """Chunk size that leaves ``buffer_ratio`` of the context for the prompt."""
        if not 0 <= buffer_ratio < 1:
            raise ValueError("buffer_ratio must be in [0, 1)")
        return max(1, math.floor(self.context_limit(model_id) * (1 - buffer_ratio)))

    def analyze(self, text: str, model_id: Optional[str] = None) -> TokenProfile:
        catalog = self._catalog
        canonical = catalog.canonical(model_id)
        profile = catalog.profiles[canonical]

        token_count, estimated = self._count(text, profile)
        recommended = max(1, math.floor(profile.context_limit * 0.8))

        return TokenProfile(
            model_id=model_id or catalog.default_model,
            canonical_model=canonical,
            token_count=token_count,
            character_count=len(text or ""),
            word_count=len((text or "").split()),
            context_limit=profile.context_limit,
            estimated_cost=(Decimal(token_count) * profile.cost_per_token).quantize(
                COST_QUANTUM, rounding=ROUND_HALF_UP
            ),
            exceeds_context=token_count > profile.context_limit,
            utilization_percent=round(token_count / profile.context_limit * 100),
            recommended_chunk_size=recommended,
            chunks_needed=math.ceil(token_count / recommended),
            estimated=estimated,
        )

    def update_pricing(self, catalog: ModelCatalog) -> None:
        """Replace the whole model catalog in one step."""
        if not isinstance(catalog, ModelCatalog):
            raise TypeError(f"catalog must be a ModelCatalog, got {type(catalog).__name__}")
        self._catalog = catalog
        logger.info("Model catalog replaced (%d profiles)", len(catalog.profiles))

    def usage_stats(self) -> Dict[str, Any]:
        catalog = self._catalog
        with self._encoder_lock:
            loaded = sorted(name for name, enc in self._encoders.items() if enc is not None)
        return {
            "default_model": catalog.default_model,
            "models": sorted(catalog.profiles),
            "aliases": len(catalog.aliases),
            "loaded_encodings": loaded,
            "exact_counts": self._exact_counts,
            "estimated_counts": self._estimated_counts,
        }

    def _count(self, text: str, profile: ModelProfile) -> tuple[int, bool]:
        if not text:
            return 0, profile.encoding is None

        encoder = self._get_encoder(profile.encoding) if profile.encoding else None
        if encoder is not None:
            try:
                count = len(encoder.encode(text, disallowed_special=()))
                self._record(exact=True)
                return count, False
            except Exception as exc:
                logger.warning("Token encoding failed for %s, using estimate: %s", profile.model_id, exc)

        self._record(exact=False)
        return math.ceil(len(text) / CHARS_PER_TOKEN), True

    def _record(self, exact: bool) -> None:
        with self._stats_lock:
            if exact:
                self._exact_counts += 1
            else:
                self._estimated_counts += 1

    def _get_encoder(self, encoding_name: str):
        """Load a tiktoken encoding once; failures are cached as ``None``."""
        with self._encoder_lock:
            if encoding_name in self._encoders:
                return self._encoders[encoding_name]
            try:
                import tiktoken
                encoder = tiktoken.get_encoding(encoding_name)
                logger.info("Loaded tiktoken encoding %s", encoding_name)
            except Exception as exc:
                logger.warning("Could not load tiktoken encoding %s, using estimates: %s", encoding_name, exc)
                encoder = None
            self._encoders[encoding_name] = encoder
            return encoder
