"""
Tests for ScopeClassifier and query normalization.
"""
import pytest

from app.core.normalizer import normalize
from app.core.scope_classifier import (
    OUT_OF_SCOPE_CONFIDENCE,
    OUT_OF_SCOPE_DOMAIN,
    ScopeClassifier,
)
from app.core.tables import load_routing_tables


@pytest.fixture
def classifier():
    return ScopeClassifier(load_routing_tables())


class TestOutOfScope:

    @pytest.mark.parametrize("query", [
        "What's the weather today?",
        "Who will win the election?",
        "Best crypto right now",
        "Recommend a movie for tonight",
    ])
    def test_out_of_scope_keywords(self, classifier, query):
        result = classifier.classify(query)

        assert result.domain == OUT_OF_SCOPE_DOMAIN
        assert result.confidence == OUT_OF_SCOPE_CONFIDENCE
        assert result.is_in_scope is False

    def test_keyword_needs_word_boundary(self, classifier):
        assert classifier.find_out_of_scope_keyword("tips for weathered skin") is None

    def test_follow_ups_are_copies(self, classifier):
        follow_ups = classifier.out_of_scope_follow_ups()
        follow_ups.clear()

        assert classifier.out_of_scope_follow_ups()


class TestDomainScoring:

    def test_two_keywords_beat_default(self, classifier):
        result = classifier.classify("My blood test shows high cholesterol")

        assert result.domain == "health_reports"
        assert result.confidence == pytest.approx(0.4)
        assert result.is_in_scope

    def test_single_keyword_stays_general(self, classifier):
        # 1/6 of the fitness keywords is below the 0.3 default
        result = classifier.classify("I like my workout")

        assert result.domain == "general_wellness"
        assert result.confidence == pytest.approx(0.3)

    def test_matching_is_case_insensitive(self, classifier):
        result = classifier.classify("WORKOUT and EXERCISE for STRENGTH")

        assert result.domain == "fitness"

    @pytest.mark.parametrize("query", ["", "   ", "12345", "?!"])
    def test_garbage_input_is_general(self, classifier, query):
        result = classifier.classify(query)

        assert result.domain == "general_wellness"
        assert result.is_in_scope


class TestNormalize:

    def test_collapses_whitespace(self):
        assert normalize("  how   much\n protein  ").text == "how much protein"

    def test_english_tag(self):
        assert normalize("How much protein do I need?").language_tag == "en"

    def test_no_letters_is_undetermined(self):
        assert normalize("123 456").language_tag == "und"

    def test_hinglish_words_translated(self):
        result = normalize("mujhe roz kitna paani chahiye")

        assert result.language_tag == "hi-en"
        assert "water" in result.text
        assert "daily" in result.text

    def test_devanagari_tagged(self):
        assert normalize("मुझे protein चाहिए").language_tag == "hi-en"
