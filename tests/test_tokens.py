import pytest

from novel_engine.tokens import (
    DEFAULT_CONTEXT_TOKENS,
    DEFAULT_MAX_OUTPUT_TOKENS,
    ELLIPSIS,
    TokenEstimator,
)


@pytest.fixture
def estimator():
    return TokenEstimator()


class TestEstimate:
    def test_empty_and_none(self, estimator):
        assert estimator.estimate("") == 0
        assert estimator.estimate(None) == 0

    def test_rounds_up(self, estimator):
        assert estimator.estimate("abcd") == 1
        assert estimator.estimate("abcde") == 2
        assert estimator.estimate("a") == 1

    def test_estimate_many(self, estimator):
        assert estimator.estimate_many(["abcd", None, "abcdefgh"]) == 3


class TestModelTables:
    def test_known_model(self, estimator):
        assert estimator.get_max_context_tokens("gpt-4o") == 128000
        assert estimator.get_max_output_tokens("gpt-4o") == 16384

    def test_lookup_is_case_insensitive(self, estimator):
        assert estimator.get_max_context_tokens("GPT-4O") == 128000

    def test_unknown_model_defaults(self, estimator):
        assert estimator.get_max_context_tokens("mystery-model") == DEFAULT_CONTEXT_TOKENS
        assert estimator.get_max_output_tokens(None) == DEFAULT_MAX_OUTPUT_TOKENS

    def test_injected_tables(self):
        estimator = TokenEstimator(context_sizes={"tiny": 1000}, max_output={"tiny": 300})
        assert estimator.get_max_context_tokens("tiny") == 1000
        assert estimator.get_max_context_tokens("gpt-4o") == DEFAULT_CONTEXT_TOKENS

    def test_tables_are_read_only(self, estimator):
        with pytest.raises(TypeError):
            estimator._context_sizes["gpt-4o"] = 1

    def test_remaining_output_capped_by_model_limit(self, estimator):
        assert estimator.get_remaining_output_tokens("gpt-4o", 1000) == 16384

    def test_remaining_output_capped_by_context(self):
        estimator = TokenEstimator(context_sizes={"m": 1000}, max_output={"m": 800})
        assert estimator.get_remaining_output_tokens("m", 500) == 500
        assert estimator.get_remaining_output_tokens("m", 1500) == 0

    def test_fits_in_context(self):
        estimator = TokenEstimator(context_sizes={"m": 100})
        assert estimator.fits_in_context("a" * 200, "m", reserved_output=50)
        assert not estimator.fits_in_context("a" * 204, "m", reserved_output=50)


class TestTruncate:
    def test_short_text_unchanged(self, estimator):
        assert estimator.truncate_to_limit("short text", 100) == "short text"

    def test_empty(self, estimator):
        assert estimator.truncate_to_limit("", 10) == ""
        assert estimator.truncate_to_limit(None, 10) == ""

    def test_result_fits_budget_with_ellipsis(self, estimator):
        text = " ".join(f"word{i}" for i in range(200))
        out = estimator.truncate_to_limit(text, 20)
        assert out.endswith(ELLIPSIS)
        assert len(out) <= 20 * 4
        assert estimator.estimate(out) <= 20

    def test_cuts_at_word_boundary(self, estimator):
        text = "alpha beta gamma delta epsilon zeta eta theta iota kappa lambda"
        out = estimator.truncate_to_limit(text, 5)
        body = out[: -len(ELLIPSIS)]
        assert text.startswith(body)
        assert body.split()[-1] in text.split()

    def test_tiny_budget_returns_empty(self, estimator):
        assert estimator.truncate_to_limit("a long piece of text", 0) == ""
