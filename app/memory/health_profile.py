"""
Health Profile Store
====================

Per-user longitudinal map of micronutrients, biomarkers and conditions,
built from paid L1 analyses so the same question is answered for free next
time.

Design:
- ``extract_and_store`` parses a model response against fixed metric
  patterns (name synonyms, unit, status keywords)
- each matched metric: trend vs previous value -> append history ->
  replace current value -> one timeline event per extraction
- ``get_insight_for_query`` answers from non-stale entries only; stale
  entries fall through so the caller pays for a fresh analysis
- extraction for one user is serialized (read-modify-write under a
  per-user lock)
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.keyed_lock import KeyedLock
from app.memory.stores import KeyedStore

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS & DOCUMENTS
# =============================================================================

class MetricCategory(Enum):
    MICRONUTRIENT = "micronutrient"
    BIOMARKER = "biomarker"
    CONDITION = "condition"


class MetricStatus(Enum):
    OPTIMAL = "optimal"
    NORMAL = "normal"
    LOW = "low"
    DEFICIENT = "deficient"
    HIGH = "high"
    UNKNOWN = "unknown"


class Trend(Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    UNKNOWN = "unknown"


class DataSource(Enum):
    AI_ANALYSIS = "ai_analysis"
    HEALTH_REPORT = "health_report"
    USER_INPUT = "user_input"


HISTORY_LIMIT = 10          # historical values kept per metric
TIMELINE_LIMIT = 50         # analysis events kept per profile
RECOMMENDATION_LIMIT = 20

# Entries older than this are stale: the caller falls through to a real analysis
FRESHNESS_WINDOWS = {
    MetricCategory.BIOMARKER: timedelta(days=90),
    MetricCategory.MICRONUTRIENT: timedelta(days=120),
    MetricCategory.CONDITION: timedelta(days=365),
}

STATUS_SCORES = {
    MetricStatus.OPTIMAL: 100,
    MetricStatus.NORMAL: 85,
    MetricStatus.LOW: 60,
    MetricStatus.DEFICIENT: 30,
    MetricStatus.HIGH: 50,
    MetricStatus.UNKNOWN: 70,
}

UNRESOLVED_STATUSES = (MetricStatus.DEFICIENT, MetricStatus.LOW, MetricStatus.HIGH)


@dataclass
class HealthProfileEntry:
    metric: str
    category: MetricCategory
    status: MetricStatus = MetricStatus.UNKNOWN
    current_value: Optional[float] = None
    unit: str = ""
    trend: Trend = Trend.UNKNOWN
    ideal_range: Optional[Tuple[float, float]] = None
    last_measured: Optional[datetime] = None
    data_source: DataSource = DataSource.AI_ANALYSIS
    historical_values: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    # Conditions only
    severity: Optional[str] = None
    condition_status: Optional[str] = None

    def is_fresh(self, now: datetime) -> bool:
        if self.last_measured is None:
            return False
        return now - self.last_measured <= FRESHNESS_WINDOWS[self.category]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "category": self.category.value,
            "status": self.status.value,
            "current_value": self.current_value,
            "unit": self.unit,
            "trend": self.trend.value,
            "ideal_range": list(self.ideal_range) if self.ideal_range else None,
            "last_measured": self.last_measured,
            "data_source": self.data_source.value,
            "historical_values": list(self.historical_values),
            "recommendations": list(self.recommendations),
            "severity": self.severity,
            "condition_status": self.condition_status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthProfileEntry":
        ideal = data.get("ideal_range")
        return cls(
            metric=data["metric"],
            category=MetricCategory(data["category"]),
            status=MetricStatus(data.get("status", "unknown")),
            current_value=data.get("current_value"),
            unit=data.get("unit", ""),
            trend=Trend(data.get("trend", "unknown")),
            ideal_range=(ideal[0], ideal[1]) if ideal else None,
            last_measured=data.get("last_measured"),
            data_source=DataSource(data.get("data_source", "ai_analysis")),
            historical_values=list(data.get("historical_values") or []),
            recommendations=list(data.get("recommendations") or []),
            severity=data.get("severity"),
            condition_status=data.get("condition_status"),
        )


# =============================================================================
# METRIC PATTERNS
# =============================================================================

@dataclass(frozen=True)
class MetricPattern:
    name: str
    category: MetricCategory
    synonyms: Tuple[str, ...]
    unit: str = ""
    ideal_range: Optional[Tuple[float, float]] = None
    improvement_days: int = 30
    # Micronutrients improve upward, risk biomarkers improve downward
    higher_is_better: bool = True
    significance: str = ""
    recommendations: Tuple[str, ...] = ()
    dietary_focus: Tuple[str, ...] = ()
    restrictions: Tuple[str, ...] = ()
    default_severity: str = "moderate"
    related_biomarkers: Tuple[str, ...] = ()

    def synonym_regex(self) -> "re.Pattern":
        alternatives = "|".join(re.escape(s) for s in self.synonyms)
        return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


MICRONUTRIENT_PATTERNS = (
    MetricPattern(
        name="Vitamin D",
        category=MetricCategory.MICRONUTRIENT,
        synonyms=("vitamin d", "vit d", "vitamin-d", "vitamin d3"),
        unit="ng/mL",
        ideal_range=(30, 100),
        improvement_days=45,
        recommendations=(
            "Get 15-20 minutes of midday sunlight when possible.",
            "Include fatty fish, egg yolks and fortified dairy in your meals.",
        ),
        dietary_focus=("fatty_fish", "egg_yolks", "fortified_dairy", "mushrooms"),
    ),
    MetricPattern(
        name="Iron",
        category=MetricCategory.MICRONUTRIENT,
        synonyms=("iron", "ferritin"),
        unit="ng/mL",
        ideal_range=(12, 150),
        improvement_days=60,
        recommendations=(
            "Eat iron-rich foods such as lentils, spinach and lean red meat.",
            "Pair iron sources with vitamin C to improve absorption.",
        ),
        dietary_focus=("lean_red_meat", "lentils", "spinach", "vitamin_c_foods"),
    ),
    MetricPattern(
        name="Vitamin B12",
        category=MetricCategory.MICRONUTRIENT,
        synonyms=("vitamin b12", "b12", "cobalamin"),
        unit="pg/mL",
        ideal_range=(200, 900),
        improvement_days=30,
        recommendations=(
            "Include eggs, dairy, fish or fortified cereals daily.",
        ),
        dietary_focus=("eggs", "dairy", "fish", "fortified_cereals"),
    ),
    MetricPattern(
        name="Magnesium",
        category=MetricCategory.MICRONUTRIENT,
        synonyms=("magnesium",),
        unit="mg/dL",
        ideal_range=(1.7, 2.2),
        improvement_days=21,
        recommendations=(
            "Snack on nuts and seeds and add leafy greens and whole grains.",
        ),
        dietary_focus=("nuts", "seeds", "leafy_greens", "whole_grains"),
    ),
    MetricPattern(
        name="Calcium",
        category=MetricCategory.MICRONUTRIENT,
        synonyms=("calcium",),
        unit="mg/dL",
        ideal_range=(8.5, 10.2),
        improvement_days=30,
        recommendations=(
            "Include dairy, fortified plant milks, almonds and leafy greens.",
        ),
        dietary_focus=("dairy", "fortified_plant_milk", "almonds", "leafy_greens"),
    ),
)

BIOMARKER_PATTERNS = (
    MetricPattern(
        name="Total Cholesterol",
        category=MetricCategory.BIOMARKER,
        synonyms=("total cholesterol", "cholesterol"),
        unit="mg/dL",
        ideal_range=(100, 200),
        improvement_days=90,
        higher_is_better=False,
        significance="Elevated cholesterol increases cardiovascular risk.",
        recommendations=(
            "Favor oats, legumes and olive oil over saturated fats.",
        ),
        dietary_focus=("oats", "legumes", "olive_oil"),
        restrictions=("limit_saturated_fat", "avoid_trans_fats"),
    ),
    MetricPattern(
        name="HbA1c",
        category=MetricCategory.BIOMARKER,
        synonyms=("hba1c", "glycated hemoglobin", "a1c"),
        unit="%",
        ideal_range=(4.0, 5.6),
        improvement_days=90,
        higher_is_better=False,
        significance="HbA1c reflects average blood sugar over roughly three months.",
        recommendations=(
            "Choose low glycemic index foods and keep added sugars low.",
        ),
        dietary_focus=("low_glycemic_foods", "high_fiber_foods"),
        restrictions=("reduce_added_sugars",),
    ),
    MetricPattern(
        name="Blood Pressure",
        category=MetricCategory.BIOMARKER,
        synonyms=("blood pressure", "bp"),
        unit="mmHg",
        ideal_range=(90, 140),
        improvement_days=60,
        higher_is_better=False,
        significance="Sustained high blood pressure strains the heart and arteries.",
        recommendations=(
            "Reduce sodium and follow a DASH-style eating pattern.",
        ),
        dietary_focus=("potassium_rich_foods", "dash_diet"),
        restrictions=("limit_sodium",),
    ),
    MetricPattern(
        name="ALT",
        category=MetricCategory.BIOMARKER,
        synonyms=("alt", "alanine aminotransferase", "sgpt"),
        unit="U/L",
        ideal_range=(7, 40),
        improvement_days=60,
        higher_is_better=False,
        significance="ALT is a liver enzyme; elevated levels can indicate liver stress.",
        recommendations=(
            "Limit alcohol and refined sugar to support liver health.",
        ),
        dietary_focus=("vegetables", "whole_grains"),
        restrictions=("avoid_alcohol",),
    ),
)

CONDITION_PATTERNS = (
    MetricPattern(
        name="Fatty Liver",
        category=MetricCategory.CONDITION,
        synonyms=("fatty liver", "hepatic steatosis", "nafld"),
        default_severity="mild",
        recommendations=(
            "Reduce refined carbohydrates and added sugars.",
            "Avoid alcohol.",
            "Aim for gradual weight loss through regular activity.",
        ),
        dietary_focus=("vegetables", "lean_protein", "whole_grains"),
        restrictions=("avoid_alcohol", "reduce_added_sugars"),
        related_biomarkers=("ALT",),
    ),
    MetricPattern(
        name="Diabetes",
        category=MetricCategory.CONDITION,
        synonyms=("diabetes", "diabetic", "prediabetes", "type 2 diabetes"),
        default_severity="moderate",
        recommendations=(
            "Keep carbohydrate portions consistent across meals.",
            "Walk for 10-15 minutes after meals.",
            "Monitor blood sugar as advised by your doctor.",
        ),
        dietary_focus=("low_glycemic_foods", "high_fiber_foods", "lean_protein"),
        restrictions=("reduce_added_sugars", "limit_refined_carbs"),
        related_biomarkers=("HbA1c",),
    ),
    MetricPattern(
        name="Hypertension",
        category=MetricCategory.CONDITION,
        synonyms=("hypertension", "high blood pressure"),
        default_severity="moderate",
        recommendations=(
            "Keep sodium under 2,300 mg per day.",
            "Include potassium-rich foods such as bananas and beans.",
            "Get regular aerobic exercise.",
        ),
        dietary_focus=("potassium_rich_foods", "dash_diet"),
        restrictions=("limit_sodium",),
        related_biomarkers=("Blood Pressure",),
    ),
)

ALL_PATTERNS = MICRONUTRIENT_PATTERNS + BIOMARKER_PATTERNS + CONDITION_PATTERNS
PATTERNS_BY_NAME = {p.name: p for p in ALL_PATTERNS}

DIET_RECOMMENDATION_PHRASES = (
    "increase protein intake",
    "reduce sugar consumption",
    "increase fiber intake",
    "reduce sodium intake",
    "increase omega-3 fatty acids",
    "mediterranean diet",
    "dash diet",
    "low glycemic index foods",
    "avoid processed foods",
    "limit alcohol",
)

CONDITION_IMPROVEMENT_DAYS = {"mild": 60, "moderate": 90, "severe": 120}

# Status keywords, matched near the metric mention (nearest wins)
_STATUS_KEYWORDS = (
    (re.compile(r"\b(?:deficien\w*|insufficien\w*)", re.IGNORECASE), MetricStatus.DEFICIENT),
    (re.compile(r"\b(?:low|below)\b", re.IGNORECASE), MetricStatus.LOW),
    (re.compile(r"\b(?:high|elevated|excess\w*|above)\b", re.IGNORECASE), MetricStatus.HIGH),
    (re.compile(r"\boptimal\b", re.IGNORECASE), MetricStatus.OPTIMAL),
    (re.compile(r"\b(?:normal|adequate|within (?:the )?(?:normal |healthy |reference )?range)\b", re.IGNORECASE), MetricStatus.NORMAL),
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ExtractionResult:
    metrics_updated: List[str] = field(default_factory=list)
    recommendations_added: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def extracted_anything(self) -> bool:
        return bool(self.metrics_updated or self.recommendations_added)


@dataclass
class ProfileInsight:
    """Zero-cost answer rendered from the stored profile."""
    answer: str
    metrics: List[str]
    confidence: float
    follow_ups: List[str] = field(default_factory=list)


@dataclass
class DeficiencyTarget:
    """An unresolved finding the diet-plan machine can target."""
    name: str
    category: MetricCategory
    status: str
    improvement_days: int
    dietary_focus: List[str] = field(default_factory=list)
    restrictions: List[str] = field(default_factory=list)
    current_value: Optional[float] = None
    unit: str = ""


# =============================================================================
# PARSING HELPERS
# =============================================================================

def _sentences_with_spans(text: str) -> List[Tuple[int, int]]:
    spans = []
    start = 0
    for match in _SENTENCE_SPLIT.finditer(text):
        spans.append((start, match.start()))
        start = match.end()
    spans.append((start, len(text)))
    return spans


def _nearest_status(sentence: str, mention_start: int, mention_end: int) -> Optional[MetricStatus]:
    """Status keyword closest to the mention; keywords after it are preferred."""
    best: Optional[Tuple[float, MetricStatus]] = None
    for regex, status in _STATUS_KEYWORDS:
        for m in regex.finditer(sentence):
            if m.start() >= mention_end:
                distance = m.start() - mention_end
            elif m.end() <= mention_start:
                distance = (mention_start - m.end()) * 1.5
            else:
                continue
            if best is None or distance < best[0]:
                best = (distance, status)
    return best[1] if best else None


def _status_from_value(value: float, pattern: MetricPattern) -> MetricStatus:
    if not pattern.ideal_range:
        return MetricStatus.UNKNOWN
    low, high = pattern.ideal_range
    if value < low:
        return MetricStatus.DEFICIENT if value < low * 0.67 else MetricStatus.LOW
    if value > high:
        return MetricStatus.HIGH
    return MetricStatus.NORMAL


# -----------------------------------------------------------------------------
# Structured health reports
# -----------------------------------------------------------------------------
#
# A report carries ``micronutrients`` and ``biomarkers`` as lists of
# ``{"name", "value"?, "unit"?, "status"?}`` and ``conditions`` as lists of
# ``{"name", "severity"?}``. A ``{name: value}`` mapping is accepted for any
# section and read as the list form.

REPORT_SECTIONS = ("micronutrients", "biomarkers", "conditions")

_REPORT_STATUS_SYNONYMS = {
    "elevated": MetricStatus.HIGH,
    "raised": MetricStatus.HIGH,
    "above range": MetricStatus.HIGH,
    "above normal": MetricStatus.HIGH,
    "insufficient": MetricStatus.LOW,
    "below range": MetricStatus.LOW,
    "below normal": MetricStatus.LOW,
    "very low": MetricStatus.DEFICIENT,
    "severely low": MetricStatus.DEFICIENT,
    "in range": MetricStatus.NORMAL,
    "within range": MetricStatus.NORMAL,
    "healthy": MetricStatus.NORMAL,
    "ok": MetricStatus.NORMAL,
    "ideal": MetricStatus.OPTIMAL,
}

_LEADING_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def report_items(report: Dict[str, Any], section: str) -> List[Dict[str, Any]]:
    """One section of a report as a list of item dicts (malformed entries dropped)."""
    raw = report.get(section) or []
    if isinstance(raw, dict):
        items = []
        for name, value in raw.items():
            if isinstance(value, dict):
                items.append({"name": name, **value})
            elif section == "conditions":
                items.append({"name": name, "severity": value})
            else:
                items.append({"name": name, "value": value})
        return items
    if isinstance(raw, (list, tuple)):
        return [
            item if isinstance(item, dict) else {"name": str(item)}
            for item in raw
            if item
        ]
    return []


def parse_report_value(raw: Any) -> Optional[float]:
    """Numeric part of a report value (``6.1``, ``"6.1"``, ``"6.1 %"``)."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    match = _LEADING_NUMBER.search(str(raw))
    return float(match.group(0)) if match else None


def parse_report_status(
    raw: Any,
    value: Optional[float],
    pattern: MetricPattern
) -> MetricStatus:
    """Report vocabulary -> MetricStatus; unknown words fall back to the value."""
    label = str(raw or "").strip().lower()
    if label:
        try:
            return MetricStatus(label)
        except ValueError:
            if label in _REPORT_STATUS_SYNONYMS:
                return _REPORT_STATUS_SYNONYMS[label]
            logger.debug(f"Unrecognized report status '{label}', using value")
    if value is not None:
        return _status_from_value(value, pattern)
    return MetricStatus.UNKNOWN


def _extract_value(sentence: str, pattern: MetricPattern) -> Optional[float]:
    if not pattern.unit:
        return None
    alternatives = "|".join(re.escape(s) for s in pattern.synonyms)
    regex = re.compile(
        rf"\b(?:{alternatives})\b[^\d\n]{{0,60}}?(\d+(?:\.\d+)?)(?:/\d+)?\s*{re.escape(pattern.unit)}",
        re.IGNORECASE,
    )
    match = regex.search(sentence)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _compute_trend(previous: Optional[float], current: Optional[float], higher_is_better: bool) -> Trend:
    if previous is None or current is None:
        return Trend.UNKNOWN
    if current == previous:
        return Trend.STABLE
    went_up = current > previous
    return Trend.IMPROVING if went_up == higher_is_better else Trend.DECLINING


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"{value:g}"


# =============================================================================
# STORE
# =============================================================================

class HealthProfileStore:
    """
    Usage:
        profiles = HealthProfileStore(store)
        await profiles.extract_and_store(user_id, ai_text, "biomarker_analysis", 0.95, 0.02, "gemini")
        insight = await profiles.get_insight_for_query(user_id, "how's my vitamin d?")
    """

    def __init__(
        self,
        store: KeyedStore,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.locks = locks or KeyedLock()
        self.clock = clock
        self._listeners: List[Callable[[str, List[str]], None]] = []

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def _empty_profile(self, user_id: str) -> Dict[str, Any]:
        now = self.clock()
        return {
            "user_id": user_id,
            "metrics": {},
            "diet_recommendations": [],
            "dietary_restrictions": [],
            "analysis_history": [],
            "total_analyses": 0,
            "total_cost_savings": 0.0,
            "created_at": now,
            "updated_at": now,
        }

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(user_id)

    async def get_entries(self, user_id: str) -> Dict[str, HealthProfileEntry]:
        profile = await self.store.get(user_id)
        if not profile:
            return {}
        return {
            name: HealthProfileEntry.from_dict(data)
            for name, data in profile.get("metrics", {}).items()
        }

    def add_change_listener(self, listener: Callable[[str, List[str]], None]) -> None:
        """Called with (user_id, changed metric names) after every profile write."""
        self._listeners.append(listener)

    def _notify(self, user_id: str, changed: List[str]) -> None:
        for listener in self._listeners:
            try:
                listener(user_id, changed)
            except Exception as e:
                logger.warning(f"Profile change listener failed: {e}")

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    async def get_insight_for_query(self, user_id: str, query: str) -> Optional[ProfileInsight]:
        """
        Render an answer from fresh profile entries the query mentions.

        Returns None on no match or when every matching entry is stale.
        """
        entries = await self.get_entries(user_id)
        if not entries:
            return None

        now = self.clock()
        answers: List[str] = []
        matched: List[str] = []
        stale: List[str] = []

        for name, entry in entries.items():
            pattern = PATTERNS_BY_NAME.get(name)
            synonyms = pattern.synonym_regex() if pattern else re.compile(
                rf"\b{re.escape(name)}\b", re.IGNORECASE
            )
            if not synonyms.search(query):
                continue
            if not entry.is_fresh(now):
                stale.append(name)
                continue
            matched.append(name)
            answers.append(self._render_entry(entry, pattern))

        if stale and not matched:
            logger.info(f"Profile entries stale for {user_id}: {stale} - falling through")
        if not matched:
            return None

        return ProfileInsight(
            answer=" ".join(answers),
            metrics=matched,
            confidence=0.9,
            follow_ups=self._follow_ups_for(entries, matched),
        )

    def _render_entry(self, entry: HealthProfileEntry, pattern: Optional[MetricPattern]) -> str:
        recs = " ".join(entry.recommendations or (pattern.recommendations if pattern else ()))

        if entry.category == MetricCategory.CONDITION:
            text = (
                f"Based on your health profile, you have {entry.metric} "
                f"({entry.severity or 'unspecified'} severity, "
                f"{entry.condition_status or 'active'} status)."
            )
            return f"{text} {recs}".strip()

        if entry.current_value is not None:
            reading = f"{_fmt(entry.current_value)} {entry.unit}".strip()
        else:
            reading = "no recorded value"

        if entry.category == MetricCategory.MICRONUTRIENT:
            text = (
                f"According to your health profile, your {entry.metric} levels are "
                f"{entry.status.value} ({reading})."
            )
        else:
            text = f"Your {entry.metric} levels are {entry.status.value} at {reading}."

        if entry.ideal_range:
            low, high = entry.ideal_range
            label = "The ideal range is" if entry.category == MetricCategory.MICRONUTRIENT else "Reference range:"
            text += f" {label} {_fmt(low)}-{_fmt(high)} {entry.unit}."
        if entry.category == MetricCategory.BIOMARKER and pattern and pattern.significance:
            text += f" {pattern.significance}"
        if entry.trend in (Trend.IMPROVING, Trend.DECLINING, Trend.STABLE):
            text += f" Compared to your previous measurement, this is {entry.trend.value}."
        if entry.status in UNRESOLVED_STATUSES and recs:
            text += f" {recs}"
        return text

    def _follow_ups_for(self, entries: Dict[str, HealthProfileEntry], matched: List[str]) -> List[str]:
        follow_ups = []
        if any(entries[m].status in (MetricStatus.DEFICIENT, MetricStatus.LOW) for m in matched):
            follow_ups.append("Would you like a specific meal plan to address these deficiencies?")
        if any(entries[m].category == MetricCategory.CONDITION or entries[m].status == MetricStatus.HIGH
               for m in matched):
            follow_ups.append("What lifestyle changes would you like to focus on first?")
        follow_ups.append("When was your last comprehensive health check?")
        return follow_ups

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def parse_response(self, text: str) -> Tuple[List[Dict[str, Any]], List[str]]:
        """
        Parse a model response into metric findings and diet recommendations.

        Pure: no store access. Each pattern yields at most one finding
        (first mention that carries a value or a status keyword).
        """
        findings: List[Dict[str, Any]] = []
        spans = _sentences_with_spans(text)

        for pattern in ALL_PATTERNS:
            regex = pattern.synonym_regex()
            for start, end in spans:
                sentence = text[start:end]
                mention = regex.search(sentence)
                if not mention:
                    continue
                finding = self._finding_from_sentence(pattern, sentence, mention)
                if finding:
                    findings.append(finding)
                    break

        lowered = text.lower()
        recommendations = [p for p in DIET_RECOMMENDATION_PHRASES if p in lowered]
        return findings, recommendations

    def _finding_from_sentence(
        self,
        pattern: MetricPattern,
        sentence: str,
        mention: "re.Match"
    ) -> Optional[Dict[str, Any]]:
        if pattern.category == MetricCategory.CONDITION:
            lowered = sentence.lower()
            if "severe" in lowered or "advanced" in lowered:
                severity, condition_status = "severe", "active"
            elif "mild" in lowered or "early" in lowered:
                severity, condition_status = "mild", "monitoring"
            else:
                severity, condition_status = pattern.default_severity, "active"
            return {
                "pattern": pattern,
                "value": None,
                "status": MetricStatus.UNKNOWN,
                "severity": severity,
                "condition_status": condition_status,
            }

        value = _extract_value(sentence, pattern)
        status = _nearest_status(sentence, mention.start(), mention.end())
        if status is None and value is None:
            return None
        if status is None:
            status = _status_from_value(value, pattern)
        return {"pattern": pattern, "value": value, "status": status}

    async def extract_and_store(
        self,
        user_id: str,
        ai_response_text: str,
        analysis_type: str,
        confidence: float,
        cost: float,
        source: str,
        data_source: DataSource = DataSource.AI_ANALYSIS
    ) -> ExtractionResult:
        """
        Parse a paid analysis into the profile.

        Never raises: a parsing or persistence failure is logged and reported
        in ``ExtractionResult.error``; the caller's answer is unaffected.
        """
        try:
            findings, recommendations = self.parse_response(ai_response_text or "")
        except Exception as e:
            logger.error(f"❌ Profile extraction failed for {user_id}: {e}", exc_info=True)
            return ExtractionResult(error=str(e))

        if not findings and not recommendations:
            logger.debug(f"No profile data found in {analysis_type} response for {user_id}")
            return ExtractionResult()

        try:
            result = await self._apply_findings(
                user_id, findings, recommendations,
                event={
                    "analysis_type": analysis_type,
                    "confidence": confidence,
                    "cost": cost,
                    "source": source,
                },
                data_source=data_source,
            )
        except Exception as e:
            logger.error(f"❌ Profile update failed for {user_id}: {e}", exc_info=True)
            return ExtractionResult(error=str(e))

        logger.info(
            f"🧬 Profile updated for {user_id}: {result.metrics_updated} "
            f"(+{len(result.recommendations_added)} recommendations)"
        )
        return result

    async def _apply_findings(
        self,
        user_id: str,
        findings: List[Dict[str, Any]],
        recommendations: List[str],
        event: Dict[str, Any],
        data_source: DataSource
    ) -> ExtractionResult:
        result = ExtractionResult()

        async with self.locks.hold(f"profile:{user_id}"):
            profile = await self.store.get(user_id) or self._empty_profile(user_id)
            now = self.clock()

            for finding in findings:
                entry = self._apply_finding(profile, finding, now, data_source)
                result.metrics_updated.append(entry.metric)

            existing = profile.setdefault("diet_recommendations", [])
            for rec in recommendations:
                if rec not in existing:
                    existing.append(rec)
                    result.recommendations_added.append(rec)
            profile["diet_recommendations"] = existing[-RECOMMENDATION_LIMIT:]
            profile["dietary_restrictions"] = [
                r for r in profile["diet_recommendations"]
                if any(word in r for word in ("reduce", "avoid", "limit"))
            ]

            history = profile.setdefault("analysis_history", [])
            history.append({
                **event,
                "metrics_extracted": list(result.metrics_updated),
                "created_at": now,
            })
            profile["analysis_history"] = history[-TIMELINE_LIMIT:]
            profile["total_analyses"] = profile.get("total_analyses", 0) + 1
            profile["updated_at"] = now

            await self.store.put(user_id, profile)

        if result.metrics_updated:
            self._notify(user_id, result.metrics_updated)
        return result

    def _apply_finding(
        self,
        profile: Dict[str, Any],
        finding: Dict[str, Any],
        now: datetime,
        data_source: DataSource
    ) -> HealthProfileEntry:
        pattern: MetricPattern = finding["pattern"]
        metrics = profile.setdefault("metrics", {})
        previous = metrics.get(pattern.name)

        if previous:
            entry = HealthProfileEntry.from_dict(previous)
        else:
            entry = HealthProfileEntry(
                metric=pattern.name,
                category=pattern.category,
                unit=pattern.unit,
                ideal_range=pattern.ideal_range,
            )

        value = finding.get("value")
        # 1. trend from the previous stored value
        entry.trend = _compute_trend(entry.current_value, value, pattern.higher_is_better)
        # 2. history (one entry per extraction)
        entry.historical_values.append({
            "value": value,
            "status": finding["status"].value,
            "severity": finding.get("severity"),
            "recorded_at": now,
            "data_source": data_source.value,
        })
        entry.historical_values = entry.historical_values[-HISTORY_LIMIT:]
        # 3. latest wins
        if value is not None:
            entry.current_value = value
        entry.status = finding["status"]
        entry.unit = pattern.unit or entry.unit
        entry.last_measured = now
        entry.data_source = data_source
        entry.recommendations = list(pattern.recommendations)
        if pattern.category == MetricCategory.CONDITION:
            entry.severity = finding.get("severity")
            entry.condition_status = finding.get("condition_status")

        metrics[pattern.name] = entry.to_dict()
        return entry

    async def update_from_health_report(self, user_id: str, report: Dict[str, Any]) -> ExtractionResult:
        """
        Write structured report values (``data_source=health_report``).

        See ``report_items`` for the accepted report shape.
        """
        findings: List[Dict[str, Any]] = []
        for section in ("micronutrients", "biomarkers"):
            for item in report_items(report, section):
                pattern = self._pattern_for_name(str(item.get("name", "")))
                if pattern is None:
                    logger.debug(f"Unknown report metric skipped: {item.get('name')}")
                    continue
                value = parse_report_value(item.get("value"))
                status = parse_report_status(item.get("status"), value, pattern)
                findings.append({"pattern": pattern, "value": value, "status": status})

        for item in report_items(report, "conditions"):
            pattern = self._pattern_for_name(str(item.get("name", "")))
            if pattern is None or pattern.category != MetricCategory.CONDITION:
                continue
            severity = item.get("severity") or pattern.default_severity
            findings.append({
                "pattern": pattern,
                "value": None,
                "status": MetricStatus.UNKNOWN,
                "severity": severity,
                "condition_status": "monitoring" if severity == "mild" else "active",
            })

        if not findings:
            return ExtractionResult()

        return await self._apply_findings(
            user_id, findings, [],
            event={
                "analysis_type": "health_report",
                "confidence": 1.0,
                "cost": 0.0,
                "source": report.get("report_id", "health_report"),
            },
            data_source=DataSource.HEALTH_REPORT,
        )

    @staticmethod
    def _pattern_for_name(name: str) -> Optional[MetricPattern]:
        if name in PATTERNS_BY_NAME:
            return PATTERNS_BY_NAME[name]
        for pattern in ALL_PATTERNS:
            if pattern.synonym_regex().search(name):
                return pattern
        return None

    async def record_cost_savings(self, user_id: str, amount: float) -> None:
        """Credit the cost avoided by a zero-cost profile answer."""
        async with self.locks.hold(f"profile:{user_id}"):
            profile = await self.store.get(user_id)
            if not profile:
                return
            profile["total_cost_savings"] = round(profile.get("total_cost_savings", 0.0) + amount, 6)
            await self.store.put(user_id, profile)

    # -------------------------------------------------------------------------
    # Consumers (diet plan, RAG, stats)
    # -------------------------------------------------------------------------

    async def get_nutrition_deficiencies(self, user_id: str) -> List[DeficiencyTarget]:
        """Unresolved findings, shortest improvement timeline first."""
        targets = []
        for name, entry in (await self.get_entries(user_id)).items():
            pattern = PATTERNS_BY_NAME.get(name)
            if entry.category == MetricCategory.CONDITION:
                if entry.condition_status == "resolved":
                    continue
                days = CONDITION_IMPROVEMENT_DAYS.get(entry.severity or "moderate", 90)
                status = entry.severity or "moderate"
            elif entry.status in UNRESOLVED_STATUSES:
                days = pattern.improvement_days if pattern else 30
                status = entry.status.value
            else:
                continue
            targets.append(DeficiencyTarget(
                name=name,
                category=entry.category,
                status=status,
                improvement_days=days,
                dietary_focus=list(pattern.dietary_focus) if pattern else [],
                restrictions=list(pattern.restrictions) if pattern else [],
                current_value=entry.current_value,
                unit=entry.unit,
            ))
        targets.sort(key=lambda t: (t.improvement_days, t.name))
        return targets

    async def get_profile_summary(self, user_id: str) -> Optional[str]:
        """One-paragraph profile text used as a RAG candidate."""
        entries = await self.get_entries(user_id)
        if not entries:
            return None
        parts = []
        for name, entry in sorted(entries.items()):
            if entry.category == MetricCategory.CONDITION:
                parts.append(f"{name} ({entry.severity} condition)")
            else:
                reading = f", {_fmt(entry.current_value)} {entry.unit}" if entry.current_value is not None else ""
                parts.append(f"{name}: {entry.status.value}{reading}")
        return "User health profile - " + "; ".join(parts) + "."

    @staticmethod
    def calculate_health_score(entries: Dict[str, HealthProfileEntry]) -> Dict[str, int]:
        def average(names: List[str]) -> int:
            scores = [STATUS_SCORES[entries[n].status] for n in names if n in entries]
            return round(sum(scores) / len(scores)) if scores else 85

        nutritional = average([p.name for p in MICRONUTRIENT_PATTERNS])
        metabolic = average(["HbA1c", "ALT"])
        cardiovascular = average(["Total Cholesterol", "Blood Pressure"])
        # Active conditions pull the overall score down
        condition_penalty = sum(
            10 if e.severity == "severe" else 5
            for e in entries.values()
            if e.category == MetricCategory.CONDITION and e.condition_status != "resolved"
        )
        overall = max(0, round((nutritional + metabolic + cardiovascular) / 3) - condition_penalty)
        return {
            "overall": overall,
            "nutritional": nutritional,
            "metabolic": metabolic,
            "cardiovascular": cardiovascular,
        }

    async def get_stats(self, user_id: str) -> Dict[str, Any]:
        profile = await self.store.get(user_id)
        if not profile:
            return {
                "total_metrics": 0,
                "deficient_nutrients": 0,
                "active_conditions": 0,
                "total_analyses": 0,
                "total_cost_savings": 0.0,
                "timeline_events": 0,
                "health_score": None,
            }
        entries = {n: HealthProfileEntry.from_dict(d) for n, d in profile.get("metrics", {}).items()}
        return {
            "total_metrics": len(entries),
            "deficient_nutrients": sum(
                1 for e in entries.values()
                if e.category == MetricCategory.MICRONUTRIENT
                and e.status in (MetricStatus.DEFICIENT, MetricStatus.LOW)
            ),
            "active_conditions": sum(
                1 for e in entries.values()
                if e.category == MetricCategory.CONDITION and e.condition_status != "resolved"
            ),
            "total_analyses": profile.get("total_analyses", 0),
            "total_cost_savings": profile.get("total_cost_savings", 0.0),
            "timeline_events": len(profile.get("analysis_history", [])),
            "health_score": self.calculate_health_score(entries),
        }
