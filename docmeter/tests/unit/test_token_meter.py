"""
Tests for the token meter and model catalog.

Exact tiktoken counts depend on the encoding files being available, so the
assertions here hold whether the meter counts exactly or falls back to the
character heuristic.
"""
import math
import threading
from decimal import Decimal

import pytest

from docmeter.services.token_meter import ModelCatalog, ModelProfile, TokenMeter


@pytest.fixture
def meter():
    return TokenMeter(catalog=ModelCatalog.from_defaults())


# =========================================================================
# Catalog
# =========================================================================


class TestModelCatalog:

    def test_defaults_contain_known_models(self):
        catalog = ModelCatalog.from_defaults()
        for model_id in ("gpt-4", "gpt-4-turbo", "gpt-4o", "gpt-3.5-turbo", "claude-3", "gemini", "deepseek"):
            assert model_id in catalog.profiles

    @pytest.mark.parametrize(
        "model_id,expected",
        [
            ("gpt-4", "gpt-4"),
            ("GPT-4 ", "gpt-4"),
            ("gpt4", "gpt-4"),
            ("gpt-4-turbo-preview", "gpt-4-turbo"),
            ("claude-3-opus", "claude-3"),
            ("gemini-pro", "gemini"),
            ("deepseek-chat", "deepseek"),
            ("some-unknown-model", "gpt-4"),
            (None, "gpt-4"),
        ],
    )
    def test_alias_normalization(self, model_id, expected):
        assert ModelCatalog.from_defaults().canonical(model_id) == expected

    def test_profiles_are_read_only(self):
        catalog = ModelCatalog.from_defaults()
        with pytest.raises(TypeError):
            catalog.profiles["gpt-4"] = None

    def test_default_model_must_exist(self):
        with pytest.raises(ValueError, match="Default model"):
            ModelCatalog({"a": ModelProfile("a", None, 10, Decimal("0"))}, default_model="b")

    def test_alias_target_must_exist(self):
        with pytest.raises(ValueError, match="unknown model"):
            ModelCatalog(
                {"a": ModelProfile("a", None, 10, Decimal("0"))},
                aliases={"x": "missing"},
                default_model="a",
            )

    def test_invalid_profile_rejected(self):
        with pytest.raises(ValueError, match="Invalid profile"):
            ModelCatalog.from_dict({"default_model": "a", "models": {"a": {"encoding": None}}})

    def test_from_yaml(self, tmp_path):
        config = tmp_path / "models.yaml"
        config.write_text(
            "default_model: local\n"
            "models:\n"
            "  local:\n"
            "    encoding: null\n"
            "    context_limit: 2048\n"
            "    cost_per_1k_tokens: 0.5\n"
            "aliases:\n"
            "  local-v2: local\n"
        )
        catalog = ModelCatalog.from_yaml(str(config))
        assert catalog.default_model == "local"
        assert catalog.profile("local-v2").context_limit == 2048
        assert catalog.profile("local").cost_per_1k_tokens == Decimal("0.5")

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ModelCatalog.from_yaml(str(tmp_path / "nope.yaml"))


# =========================================================================
# Counting
# =========================================================================


class TestTokenCounting:

    def test_empty_text_is_zero(self, meter):
        assert meter.count_tokens("", "gpt-4") == 0
        assert meter.count_tokens(None, "claude-3") == 0

    def test_heuristic_for_models_without_encoding(self, meter):
        text = "x" * 101
        assert meter.count_tokens(text, "claude-3") == math.ceil(101 / 4)
        assert meter.is_exact("claude-3") is False

    def test_counts_are_positive_for_any_model(self, meter):
        for model_id in ("gpt-4", "gpt-4o", "gemini-1.5-pro", "not-a-model"):
            assert meter.count_tokens("Hello world, this is a test.", model_id) > 0

    def test_special_tokens_do_not_raise(self, meter):
        assert meter.count_tokens("<|endoftext|> and <|im_start|>", "gpt-4") > 0

    def test_monotonic_under_append(self, meter):
        text = ""
        previous = 0
        for i in range(300):
            text += "abc def. "[i % 9]
            count = meter.count_tokens(text, "claude-3")
            assert count >= previous
            previous = count

    @pytest.mark.parametrize("model_id", ["gpt-4", "gpt-4o"])
    def test_monotonic_under_word_append_with_encoding(self, meter, model_id):
        # BPE counts only hold steady at pre-token boundaries, so append whole words
        if not meter.is_exact(model_id):
            pytest.skip(f"tiktoken encoding for {model_id} unavailable")
        words = "Quarterly revenue grew 12 percent, driven by renewals. Costs fell sharply!".split()
        text = "Summary"
        previous = meter.count_tokens(text, model_id)
        for i in range(200):
            text += " " + words[i % len(words)]
            count = meter.count_tokens(text, model_id)
            assert count > previous
            previous = count

    def test_encoder_load_failure_falls_back(self, meter, monkeypatch):
        import tiktoken

        def broken(name):
            raise RuntimeError("no network")

        monkeypatch.setattr(tiktoken, "get_encoding", broken)
        fresh = TokenMeter(catalog=ModelCatalog.from_defaults())
        assert fresh.count_tokens("x" * 40, "gpt-4") == 10
        assert fresh.is_exact("gpt-4") is False

    def test_concurrent_counting(self, meter):
        results = []

        def work():
            results.append(meter.count_tokens("The quick brown fox jumps over the lazy dog.", "gpt-4"))

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(set(results)) == 1


# =========================================================================
# Limits, cost, analysis
# =========================================================================


class TestLimitsAndCost:

    @pytest.mark.parametrize(
        "model_id,limit",
        [
            ("gpt-4", 8192),
            ("gpt-4-turbo", 128000),
            ("gpt-4o", 128000),
            ("gpt-3.5-turbo", 4096),
            ("claude-3-sonnet", 200000),
            ("gemini-1.5-pro", 1000000),
            ("deepseek-coder", 16000),
            ("mystery", 8192),
        ],
    )
    def test_context_limits(self, meter, model_id, limit):
        assert meter.context_limit(model_id) == limit

    def test_recommended_chunk_size(self, meter):
        assert meter.recommended_chunk_size("gpt-4") == math.floor(8192 * 0.8)
        assert meter.recommended_chunk_size("gpt-4", buffer_ratio=0) == 8192

    def test_recommended_chunk_size_rejects_bad_ratio(self, meter):
        with pytest.raises(ValueError):
            meter.recommended_chunk_size("gpt-4", buffer_ratio=1.0)

    def test_cost_is_decimal_with_four_places(self, meter):
        cost = meter.estimate_cost(1000, "gpt-4")
        assert cost == Decimal("0.0300")
        assert cost.as_tuple().exponent == -4

    def test_cost_for_alias(self, meter):
        assert meter.estimate_cost(2000, "gpt-4-turbo-preview") == Decimal("0.0200")

    def test_analyze(self, meter):
        text = "word " * 400
        profile = meter.analyze(text, "claude-3")
        assert profile.canonical_model == "claude-3"
        assert profile.token_count == math.ceil(len(text) / 4)
        assert profile.character_count == len(text)
        assert profile.word_count == 400
        assert profile.context_limit == 200000
        assert profile.exceeds_context is False
        assert profile.utilization_percent == round(profile.token_count / 200000 * 100)
        assert profile.chunks_needed == 1
        assert profile.estimated is True

    def test_analyze_exceeding_context(self):
        catalog = ModelCatalog.from_dict({
            "default_model": "tiny",
            "models": {"tiny": {"encoding": None, "context_limit": 10, "cost_per_1k_tokens": 1}},
        })
        profile = TokenMeter(catalog=catalog).analyze("x" * 100, "tiny")
        assert profile.token_count == 25
        assert profile.exceeds_context is True
        assert profile.utilization_percent == 250
        assert profile.chunks_needed == math.ceil(25 / 8)


class TestUpdatePricing:

    def test_swap_replaces_whole_table(self, meter):
        catalog = ModelCatalog.from_dict({
            "default_model": "gpt-4",
            "models": {"gpt-4": {"encoding": None, "context_limit": 1000, "cost_per_1k_tokens": 1}},
        })
        meter.update_pricing(catalog)
        assert meter.context_limit("gpt-4") == 1000
        # Models absent from the new table fall back to its default
        assert meter.context_limit("claude-3") == 1000
        assert meter.estimate_cost(1000, "gpt-4") == Decimal("1.0000")

    def test_rejects_non_catalog(self, meter):
        with pytest.raises(TypeError):
            meter.update_pricing({"gpt-4": 1})
        assert meter.context_limit("gpt-4") == 8192

    def test_usage_stats(self, meter):
        meter.count_tokens("hello", "claude-3")
        stats = meter.usage_stats()
        assert stats["default_model"] == "gpt-4"
        assert "gpt-4" in stats["models"]
        assert stats["estimated_counts"] >= 1
