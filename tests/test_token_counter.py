"""
Test suite for TokenCounter

TokenCounter estimates request size before a provider call (for the daily
budget check) and actual usage after it (for the ledger).
"""
import pytest

from app.core.token_counter import TokenCounter


class TestTokenCounterBasics:

    @pytest.fixture
    def token_counter(self):
        return TokenCounter()

    def test_empty_string_returns_zero(self, token_counter):
        assert token_counter.estimate_tokens("") == 0

    def test_rounds_up(self, token_counter):
        """5 chars / 4 -> 2 tokens."""
        assert token_counter.estimate_tokens("hello") == 2

    def test_exact_multiple(self, token_counter):
        assert token_counter.estimate_tokens("a" * 400) == 100


class TestRequestEstimates:

    def test_estimate_includes_output_allowance(self):
        counter = TokenCounter(expected_output_tokens=500)

        estimate = counter.estimate_request("a" * 40, "b" * 80)

        assert estimate.query_tokens == 10
        assert estimate.context_tokens == 20
        assert estimate.total == 530

    def test_actual_usage(self):
        usage = TokenCounter().actual_usage("a" * 100, "b" * 20)

        assert usage.input_tokens == 25
        assert usage.output_tokens == 5
        assert usage.total == 30


class TestUnicodeWeighting:

    def test_default_treats_unicode_like_ascii(self):
        assert TokenCounter().estimate_tokens("नमस्ते") == TokenCounter().estimate_tokens("abcdef")

    def test_multiplier_weights_non_ascii(self):
        counter = TokenCounter(unicode_multiplier=2.0)

        assert counter.estimate_tokens("ab") == 1
        assert counter.estimate_tokens("éé") == 1
        assert counter.estimate_tokens("éééé") == 2
        assert counter.estimate_tokens("éééé") > counter.estimate_tokens("ab")
