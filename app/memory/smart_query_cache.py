"""
Smart Query Cache - zero-cost answers for common personal-data questions
=========================================================================

"How many steps did I take today?" never needs a model: the answer is a
template filled from the user's own tracked metrics.

Flow:
1. ``load_metrics`` installs the user's metrics snapshot (tracker/profile data)
2. ``lookup`` matches the query to a common question:
   fresh stored entry -> data_source=cache, else render from the snapshot
   -> data_source=local, else None
3. ``record`` updates analytics and stores locally answered responses

``lookup`` is pure (no writes, no I/O) and never raises. Entries are
invalidated when a metric they depend on changes by more than 1%.
"""
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.5
MATERIAL_CHANGE = 0.01
HYDRATION_GOAL_LITERS = 2.5


# =============================================================================
# COMMON QUESTIONS
# =============================================================================

@dataclass(frozen=True)
class CommonQuestion:
    id: str
    question: str
    keywords: Tuple[str, ...]
    category: str
    freshness_ttl: int  # seconds
    depends_on: Tuple[str, ...]


COMMON_QUESTIONS: Tuple[CommonQuestion, ...] = (
    CommonQuestion(
        "daily_calories", "how many calories did i burn today",
        ("calories", "burned", "today", "burnt"), "fitness", 3600,
        ("calories_burned",),
    ),
    CommonQuestion(
        "daily_steps", "how many steps did i take today",
        ("steps", "walked", "today"), "fitness", 3600,
        ("steps",),
    ),
    CommonQuestion(
        "current_weight", "what is my current weight",
        ("weight", "current", "weigh"), "health", 86400,
        ("weight",),
    ),
    CommonQuestion(
        "weekly_activity", "how active was i this week",
        ("active", "activity", "week", "exercise"), "fitness", 21600,
        ("active_minutes", "weekly_steps"),
    ),
    CommonQuestion(
        "heart_rate_today", "what is my heart rate today",
        ("heart rate", "pulse", "today", "current"), "health", 1800,
        ("heart_rates",),
    ),
    CommonQuestion(
        "sleep_last_night", "how did i sleep last night",
        ("sleep", "last night", "slept", "rest"), "health", 43200,
        ("sleep_minutes", "sleep_quality"),
    ),
    CommonQuestion(
        "bmi_status", "what is my bmi",
        ("bmi", "body mass index", "weight status"), "health", 86400,
        ("bmi", "weight", "height_cm"),
    ),
    CommonQuestion(
        "hydration_reminder", "did i drink enough water today",
        ("water", "hydration", "drink", "fluid"), "nutrition", 3600,
        ("water_intake",),
    ),
)

QUESTIONS_BY_ID = {q.id: q for q in COMMON_QUESTIONS}

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lower-case, strip punctuation, collapse whitespace."""
    text = _PUNCTUATION.sub(" ", (query or "").lower())
    return _WHITESPACE.sub(" ", text).strip()


def match_question(query: str) -> Optional[Tuple[CommonQuestion, float]]:
    """Best common question with >= 50% of its keywords in the query."""
    normalized = normalize_query(query)
    if not normalized:
        return None

    best: Optional[Tuple[CommonQuestion, float]] = None
    for question in COMMON_QUESTIONS:
        matched = sum(1 for kw in question.keywords if kw in normalized)
        ratio = matched / len(question.keywords)
        if ratio >= MATCH_THRESHOLD and (best is None or ratio > best[1]):
            best = (question, ratio)
    return best


def bmi_category(bmi: float) -> str:
    if bmi < 18.5:
        return "underweight"
    if bmi < 25:
        return "normal weight"
    if bmi < 30:
        return "overweight"
    return "obese"


# =============================================================================
# ENTRIES
# =============================================================================

@dataclass
class LocalAnswer:
    question_id: str
    category: str
    answer: str
    data_source: str        # "local" | "cache"
    confidence: float
    follow_ups: List[str] = field(default_factory=list)


@dataclass
class SmartCacheEntry:
    question_id: str
    category: str
    answer: str
    data_source: str
    confidence: float
    created_at: datetime
    last_used_at: datetime
    hit_count: int = 0
    depends_on: Tuple[str, ...] = ()

    def is_fresh(self, now: datetime, ttl: int) -> bool:
        return (now - self.created_at).total_seconds() < ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "category": self.category,
            "answer": self.answer,
            "data_source": self.data_source,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "hit_count": self.hit_count,
            "depends_on": list(self.depends_on),
        }


@dataclass
class QueryAnalytics:
    total_queries: int = 0
    local_answers: int = 0
    cache_hits: int = 0
    question_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        total = self.total_queries
        return {
            "total_queries": total,
            "local_answers": self.local_answers,
            "cache_hits": self.cache_hits,
            "local_data_coverage": self.local_answers / total if total else 0.0,
            "cache_hit_rate": self.cache_hits / total if total else 0.0,
            "question_counts": dict(self.question_counts),
        }


# =============================================================================
# RENDERING
# =============================================================================

def _render(question: CommonQuestion, metrics: Dict[str, Any]) -> Optional[Tuple[str, float]]:
    """(answer, confidence) from a metrics snapshot, or None when data is missing."""
    qid = question.id

    if qid == "daily_calories":
        calories = metrics.get("calories_burned")
        if calories is None:
            return None
        return (
            f"You burned approximately {round(calories)} calories today based on your activity data.",
            0.95,
        )

    if qid == "daily_steps":
        steps = metrics.get("steps")
        if steps is None:
            return None
        return f"You have taken {round(steps)} steps today according to your fitness tracker.", 0.95

    if qid == "current_weight":
        weight = metrics.get("weight")
        if weight is None:
            return None
        recorded = metrics.get("weight_recorded_at")
        date = recorded.strftime("%Y-%m-%d") if isinstance(recorded, datetime) else (recorded or "today")
        return f"Your most recent recorded weight is {weight:g} kg as of {date}.", 0.95

    if qid == "weekly_activity":
        active = metrics.get("active_minutes")
        weekly_steps = metrics.get("weekly_steps") or []
        if active is None and not weekly_steps:
            return None
        avg_steps = sum(weekly_steps) / len(weekly_steps) if weekly_steps else 0
        return (
            f"This week you have been active for {round(active or 0)} minutes "
            f"with an average of {round(avg_steps)} steps per day.",
            0.9,
        )

    if qid == "heart_rate_today":
        rates = metrics.get("heart_rates") or []
        if not rates:
            return None
        avg = sum(rates) / len(rates)
        return (
            f"Your average heart rate today is {round(avg)} bpm, "
            f"with a range of {round(min(rates))} - {round(max(rates))} bpm.",
            0.9,
        )

    if qid == "sleep_last_night":
        minutes = metrics.get("sleep_minutes")
        if minutes is None:
            return None
        quality = metrics.get("sleep_quality", 7)
        return (
            f"Last night you slept for {minutes / 60:.1f} hours "
            f"with a sleep quality score of {round(quality)}/10.",
            0.95,
        )

    if qid == "bmi_status":
        bmi = metrics.get("bmi")
        if bmi is None and metrics.get("weight") and metrics.get("height_cm"):
            height_m = metrics["height_cm"] / 100
            bmi = metrics["weight"] / (height_m * height_m)
        if bmi is None:
            return None
        return f"Your current BMI is {bmi:.1f}, which falls in the {bmi_category(bmi)} range.", 0.9

    if qid == "hydration_reminder":
        water = metrics.get("water_intake")
        if water is None:
            return None
        return (
            f"You have consumed {water:g} liters of water today. "
            f"Your daily goal is {HYDRATION_GOAL_LITERS:g} liters.",
            0.95,
        )

    return None


def _changed_materially(old: Any, new: Any) -> bool:
    if old == new:
        return False
    if isinstance(old, (int, float)) and isinstance(new, (int, float)) \
            and not isinstance(old, bool) and not isinstance(new, bool):
        if old == 0:
            return new != 0
        return abs(new - old) / abs(old) > MATERIAL_CHANGE
    return True


# =============================================================================
# CACHE
# =============================================================================

class SmartQueryCache:
    """
    Process-local, thread-safe.

    Usage:
        cache = SmartQueryCache(follow_ups=tables.cache_follow_ups_for)
        cache.load_metrics(user_id, {"steps": 8400})
        answer = cache.lookup(user_id, "how many steps today?")
        cache.record(user_id, query, answer is not None, answer)
    """

    def __init__(
        self,
        follow_ups: Optional[Callable[[str], List[str]]] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.follow_ups = follow_ups or (lambda category: [])
        self.clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, Dict[str, SmartCacheEntry]] = {}
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._analytics: Dict[str, QueryAnalytics] = {}

    # -------------------------------------------------------------------------
    # Metrics snapshot
    # -------------------------------------------------------------------------

    def load_metrics(self, user_id: str, metrics: Dict[str, Any]) -> List[str]:
        """
        Install a metrics snapshot. Returns the ids of invalidated entries.
        """
        with self._lock:
            previous = self._metrics.get(user_id, {})
            changed = [
                key for key in set(previous) | set(metrics)
                if _changed_materially(previous.get(key), metrics.get(key))
            ]
            self._metrics[user_id] = dict(metrics)
            return self._invalidate(user_id, changed)

    def get_metrics(self, user_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._metrics.get(user_id, {}))

    def invalidate_metrics(self, user_id: str, metric_names: List[str]) -> List[str]:
        with self._lock:
            return self._invalidate(user_id, metric_names)

    def on_profile_change(self, user_id: str, changed_metrics: List[str]) -> None:
        """Health Profile Store listener: drop entries that depend on changed metrics."""
        keys = [name.lower().replace(" ", "_") for name in changed_metrics]
        self.invalidate_metrics(user_id, keys + list(changed_metrics))

    def _invalidate(self, user_id: str, changed: List[str]) -> List[str]:
        if not changed:
            return []
        entries = self._entries.get(user_id, {})
        dropped = [
            qid for qid, entry in entries.items()
            if any(dep in changed for dep in entry.depends_on)
        ]
        for qid in dropped:
            del entries[qid]
        if dropped:
            logger.info(f"♻️ Smart cache invalidated for {user_id}: {dropped}")
        return dropped

    # -------------------------------------------------------------------------
    # Lookup / record
    # -------------------------------------------------------------------------

    def lookup(self, user_id: str, query: str) -> Optional[LocalAnswer]:
        try:
            match = match_question(query)
            if match is None:
                return None
            question = match[0]

            with self._lock:
                entry = self._entries.get(user_id, {}).get(question.id)
                if entry and entry.is_fresh(self.clock(), question.freshness_ttl):
                    return LocalAnswer(
                        question_id=question.id,
                        category=question.category,
                        answer=entry.answer,
                        data_source="cache",
                        confidence=entry.confidence,
                        follow_ups=self.follow_ups(question.category),
                    )
                metrics = self._metrics.get(user_id)

            if not metrics:
                return None
            rendered = _render(question, metrics)
            if rendered is None:
                return None
            answer, confidence = rendered
            return LocalAnswer(
                question_id=question.id,
                category=question.category,
                answer=answer,
                data_source="local",
                confidence=confidence,
                follow_ups=self.follow_ups(question.category),
            )
        except Exception as e:
            logger.warning(f"Smart cache lookup failed for {user_id}: {e}")
            return None

    def record(
        self,
        user_id: str,
        query: str,
        was_answered_locally: bool,
        answer: Optional[LocalAnswer] = None
    ) -> None:
        with self._lock:
            analytics = self._analytics.setdefault(user_id, QueryAnalytics())
            analytics.total_queries += 1
            if not was_answered_locally:
                return

            analytics.local_answers += 1
            if answer is None:
                return
            analytics.question_counts[answer.question_id] = (
                analytics.question_counts.get(answer.question_id, 0) + 1
            )
            if answer.data_source == "cache":
                analytics.cache_hits += 1
            self._store(user_id, answer)

    def _store(self, user_id: str, answer: LocalAnswer) -> SmartCacheEntry:
        now = self.clock()
        entries = self._entries.setdefault(user_id, {})
        entry = entries.get(answer.question_id)
        if entry is None or answer.data_source == "local":
            # A freshly rendered answer restarts the freshness window
            previous_hits = entry.hit_count if entry else 0
            entry = SmartCacheEntry(
                question_id=answer.question_id,
                category=answer.category,
                answer=answer.answer,
                data_source=answer.data_source,
                confidence=answer.confidence,
                created_at=now,
                last_used_at=now,
                hit_count=previous_hits,
                depends_on=QUESTIONS_BY_ID[answer.question_id].depends_on,
            )
            entries[answer.question_id] = entry
        entry.hit_count += 1
        entry.last_used_at = now
        return entry

    # -------------------------------------------------------------------------
    # Scheduled maintenance
    # -------------------------------------------------------------------------

    def precompute_common_responses(self, user_id: str) -> int:
        """Render and store every question answerable from the snapshot."""
        with self._lock:
            metrics = self._metrics.get(user_id)
            if not metrics:
                return 0
            count = 0
            now = self.clock()
            entries = self._entries.setdefault(user_id, {})
            for question in COMMON_QUESTIONS:
                rendered = _render(question, metrics)
                if rendered is None:
                    continue
                answer, confidence = rendered
                existing = entries.get(question.id)
                entries[question.id] = SmartCacheEntry(
                    question_id=question.id,
                    category=question.category,
                    answer=answer,
                    data_source="local",
                    confidence=confidence,
                    created_at=now,
                    last_used_at=existing.last_used_at if existing else now,
                    hit_count=existing.hit_count if existing else 0,
                    depends_on=question.depends_on,
                )
                count += 1
            logger.debug(f"Precomputed {count} smart cache answers for {user_id}")
            return count

    def precompute_all(self) -> int:
        with self._lock:
            users = list(self._metrics)
        return sum(self.precompute_common_responses(u) for u in users)

    def cleanup_stale_entries(self) -> int:
        """Drop entries past their question's freshness TTL."""
        with self._lock:
            now = self.clock()
            removed = 0
            for entries in self._entries.values():
                for qid in list(entries):
                    if not entries[qid].is_fresh(now, QUESTIONS_BY_ID[qid].freshness_ttl):
                        del entries[qid]
                        removed += 1
            if removed:
                logger.info(f"🧹 Removed {removed} stale smart cache entries")
            return removed

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_entry(self, user_id: str, question_id: str) -> Optional[SmartCacheEntry]:
        with self._lock:
            return self._entries.get(user_id, {}).get(question_id)

    def get_analytics(self, user_id: str) -> Dict[str, Any]:
        with self._lock:
            return self._analytics.get(user_id, QueryAnalytics()).to_dict()

    def __repr__(self) -> str:
        with self._lock:
            total = sum(len(e) for e in self._entries.values())
        return f"SmartQueryCache(users={len(self._metrics)}, entries={total})"
