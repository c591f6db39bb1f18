"""
Tests for SmartQueryCache - local answers to personal-data questions.
"""
import pytest

from app.memory.smart_query_cache import (
    SmartQueryCache,
    bmi_category,
    match_question,
    normalize_query,
)


@pytest.fixture
def cache(clock):
    return SmartQueryCache(follow_ups=lambda category: [f"{category} follow-up"], clock=clock)


class TestMatching:

    def test_normalize_query(self):
        assert normalize_query("  How MANY steps, today?! ") == "how many steps today"

    def test_half_the_keywords_is_enough(self):
        question, ratio = match_question("how many steps today")

        assert question.id == "daily_steps"
        assert ratio == pytest.approx(2 / 3)

    def test_best_ratio_wins(self):
        question, _ = match_question("how many calories burned today")

        assert question.id == "daily_calories"

    def test_no_match(self):
        assert match_question("what should I cook tonight") is None
        assert match_question("") is None

    @pytest.mark.parametrize("bmi,label", [
        (17.0, "underweight"),
        (22.0, "normal weight"),
        (27.5, "overweight"),
        (31.0, "obese"),
    ])
    def test_bmi_category(self, bmi, label):
        assert bmi_category(bmi) == label


class TestLookup:

    def test_no_metrics_no_answer(self, cache):
        assert cache.lookup("user_1", "how many steps today") is None

    def test_local_answer_from_metrics(self, cache):
        cache.load_metrics("user_1", {"steps": 8421})

        answer = cache.lookup("user_1", "how many steps today")

        assert answer.data_source == "local"
        assert "8421" in answer.answer
        assert answer.confidence == 0.95
        assert answer.follow_ups == ["fitness follow-up"]

    def test_bmi_computed_from_weight_and_height(self, cache):
        cache.load_metrics("user_1", {"weight": 80, "height_cm": 180})

        answer = cache.lookup("user_1", "what is my bmi (body mass index)")

        assert "24.7" in answer.answer
        assert "normal weight" in answer.answer
        assert answer.confidence == 0.9

    def test_missing_metric_no_answer(self, cache):
        cache.load_metrics("user_1", {"steps": 100})

        assert cache.lookup("user_1", "did I drink enough water today") is None

    def test_recorded_answer_served_from_cache(self, cache):
        cache.load_metrics("user_1", {"steps": 100})
        first = cache.lookup("user_1", "how many steps today")
        cache.record("user_1", "how many steps today", True, first)

        second = cache.lookup("user_1", "steps today?")

        assert second.data_source == "cache"

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.load_metrics("user_1", {"steps": 100})
        cache.record("user_1", "q", True, cache.lookup("user_1", "how many steps today"))
        clock.advance(hours=2)

        # Falls back to rendering from the snapshot
        assert cache.lookup("user_1", "how many steps today").data_source == "local"


class TestInvalidation:

    def test_material_change_invalidates(self, cache):
        cache.load_metrics("user_1", {"steps": 1000})
        cache.record("user_1", "q", True, cache.lookup("user_1", "how many steps today"))

        dropped = cache.load_metrics("user_1", {"steps": 1500})

        assert dropped == ["daily_steps"]
        assert cache.get_entry("user_1", "daily_steps") is None

    def test_tiny_change_keeps_entry(self, cache):
        cache.load_metrics("user_1", {"steps": 1000})
        cache.record("user_1", "q", True, cache.lookup("user_1", "how many steps today"))

        assert cache.load_metrics("user_1", {"steps": 1005}) == []

    def test_profile_change_listener(self, cache):
        cache.load_metrics("user_1", {"weight": 80, "height_cm": 180})
        cache.record("user_1", "q", True, cache.lookup("user_1", "what is my bmi (body mass index)"))

        cache.on_profile_change("user_1", ["Weight"])

        assert cache.get_entry("user_1", "bmi_status") is None


class TestMaintenanceAndAnalytics:

    def test_precompute(self, cache):
        cache.load_metrics("user_1", {"steps": 100, "water_intake": 1.5, "sleep_minutes": 420})

        assert cache.precompute_common_responses("user_1") == 3
        assert cache.get_entry("user_1", "sleep_last_night") is not None

    def test_precompute_all_users(self, cache):
        cache.load_metrics("a", {"steps": 1})
        cache.load_metrics("b", {"steps": 2})

        assert cache.precompute_all() == 2

    def test_cleanup_stale_entries(self, cache, clock):
        cache.load_metrics("user_1", {"steps": 100, "weight": 70})
        cache.precompute_common_responses("user_1")
        clock.advance(hours=2)

        removed = cache.cleanup_stale_entries()

        assert removed == 1
        assert cache.get_entry("user_1", "current_weight") is not None

    def test_analytics(self, cache):
        cache.load_metrics("user_1", {"steps": 100})
        cache.record("user_1", "how many steps today", True, cache.lookup("user_1", "how many steps today"))
        cache.record("user_1", "steps today", True, cache.lookup("user_1", "steps today"))
        cache.record("user_1", "what about protein", False)

        analytics = cache.get_analytics("user_1")
        assert analytics["total_queries"] == 3
        assert analytics["local_answers"] == 2
        assert analytics["cache_hits"] == 1
        assert analytics["local_data_coverage"] == pytest.approx(2 / 3)
