"""
Context Retriever - keyword-ranked RAG context for routed calls
================================================================

Collects candidate documents for a query, scores them by keyword overlap,
and renders the top ones into a context block for the provider prompt.

Candidate sources (fetched concurrently, each allowed to fail on its own):
1. stored per-user context snippets (``index_user_data``), newest first, max 20
2. the user's health profile summary
3. domain records from registered ``RagSource`` callables
4. the static knowledge base (max 3 articles)

A failed source is logged and listed in ``metadata["failed_sources"]``;
retrieval itself never raises.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from app.core.types import new_id
from app.memory.health_profile import REPORT_SECTIONS, report_items
from app.memory.stores import KeyedStore
from app.rag.knowledge_base import search_knowledge_base

logger = logging.getLogger(__name__)

# (user_id, limit) -> raw domain records (dicts)
RagSource = Callable[[str, int], Awaitable[List[Dict[str, Any]]]]

MAX_USER_CONTEXTS = 20
SOURCE_EXCERPT_LENGTH = 150
CONTEXT_EXCERPT_LENGTH = 200
RECENCY_BONUS = 0.1
DOMAIN_BONUS = 0.2

# Request domain -> (record type, how many records to pull)
DOMAIN_RECORD_SOURCES: Dict[str, Tuple[str, int]] = {
    "health_reports": ("health_report", 3),
    "nutrition": ("meal_plan", 2),
    "meal_planning": ("meal_plan", 2),
    "fitness": ("fitness_plan", 2),
    "workout_planning": ("fitness_plan", 2),
    "recipe": ("recipe", 5),
}

CONTEXT_EXPIRATION = {
    "health_report": timedelta(days=180),
    "meal_plan": timedelta(days=90),
    "fitness_plan": timedelta(days=90),
    "nutrition_log": timedelta(days=30),
    "workout_log": timedelta(days=30),
    "user_profile": timedelta(days=365),
}
DEFAULT_EXPIRATION = timedelta(days=90)

FEEDBACK_BOOST = {"useful": 0.1, "cited": 0.05, "viewed": 0.01}


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class RetrievalOptions:
    max_documents: int = 5
    relevance_threshold: float = 0.7
    context_types: List[str] = field(default_factory=list)
    include_user_profile: bool = True
    include_knowledge_base: bool = True


@dataclass
class ContextSource:
    source_id: str
    source_type: str
    title: str
    excerpt: str
    relevance_score: float
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_type": self.source_type,
            "title": self.title,
            "excerpt": self.excerpt,
            "relevance_score": self.relevance_score,
            "url": self.url,
        }


@dataclass
class RankedContext:
    sources: List[ContextSource] = field(default_factory=list)
    context_text: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sources": [s.to_dict() for s in self.sources],
            "context_text": self.context_text,
            "metadata": dict(self.metadata),
        }


def empty_context() -> RankedContext:
    return RankedContext(metadata={
        "total_documents": 0,
        "documents_retrieved": 0,
        "retrieval_time_ms": 0,
        "avg_relevance_score": 0.0,
        "context_types": [],
        "failed_sources": [],
    })


# =============================================================================
# SCORING & RENDERING
# =============================================================================

def calculate_relevance_score(query: str, content: str, domain: str) -> float:
    """
    Keyword-overlap score in [0, 1].

    base = matched query words (> 2 chars) / all query words,
    +0.2 when the content names the domain, +0.1 recency.
    """
    query_words = (query or "").lower().split()
    content_lower = (content or "").lower()
    content_words = content_lower.split()

    matches = 0
    for word in query_words:
        if len(word) > 2 and any(cw in word or word in cw for cw in content_words):
            matches += 1

    base = matches / len(query_words) if query_words else 0.0
    domain_boost = DOMAIN_BONUS if domain and domain in content_lower else 0.0
    return min(1.0, base + domain_boost + RECENCY_BONUS)


def create_excerpt(content: str, max_length: int) -> str:
    """Cut at the last whitespace before ``max_length`` and append '...'."""
    if len(content) <= max_length:
        return content
    truncated = content[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > 0:
        return truncated[:last_space] + "..."
    return truncated + "..."


def build_context_text(candidates: List[Dict[str, Any]]) -> str:
    if not candidates:
        return ""
    parts = ["RELEVANT CONTEXT:\n\n"]
    for index, candidate in enumerate(candidates, start=1):
        parts.append(f"{index}. {candidate['title']}\n")
        parts.append(f"{create_excerpt(candidate['content'], CONTEXT_EXCERPT_LENGTH)}\n\n")
    return "".join(parts)


# -----------------------------------------------------------------------------
# Content rendering per record type
# -----------------------------------------------------------------------------

def _report_item_line(item: Dict[str, Any]) -> str:
    value = item.get("value")
    text = f"- {item.get('name', '')}"
    if value is not None:
        text += f": {value}"
        if item.get("unit"):
            text += f" {item['unit']}"
    if item.get("status"):
        text += f" ({item['status']})"
    if item.get("severity"):
        text += f" ({item['severity']})"
    return text


def _health_report_content(data: Dict[str, Any]) -> str:
    lines = [f"Health Report from {data.get('report_date') or data.get('test_date') or 'Unknown Date'}", ""]
    for section in REPORT_SECTIONS:
        items = report_items(data, section)
        if items:
            lines.append(f"{section.capitalize()}:")
            lines.extend(_report_item_line(item) for item in items)
    if data.get("summary"):
        lines.append(f"Summary: {data['summary']}")
    if data.get("interpretation"):
        lines.append(f"Interpretation: {data['interpretation']}")
    if data.get("recommendations"):
        lines.append(f"Recommendations: {data['recommendations']}")
    return "\n".join(lines)


def _meal_plan_content(data: Dict[str, Any]) -> str:
    lines = [f"Meal Plan for Week {data.get('week_number') or 'Current'}", ""]
    for meal in data.get("meals") or []:
        lines.append(f"{meal.get('type', 'meal')}: {meal.get('name', '')}")
        if meal.get("ingredients"):
            lines.append(f"Ingredients: {', '.join(meal['ingredients'])}")
        if meal.get("nutrition"):
            lines.append(f"Nutrition: {json.dumps(meal['nutrition'], default=str)}")
    return "\n".join(lines)


def _fitness_plan_content(data: Dict[str, Any]) -> str:
    lines = [f"Fitness Plan - Week {data.get('current_week') or 'Current'}", ""]
    for workout in data.get("workouts") or []:
        lines.append(f"{workout.get('name', 'Workout')}: {workout.get('description', '')}")
        for exercise in workout.get("exercises") or []:
            amount = exercise.get("reps") or exercise.get("duration") or ""
            lines.append(f"- {exercise.get('name', '')}: {exercise.get('sets', 1)}x{amount}")
    return "\n".join(lines)


def _nutrition_log_content(data: Dict[str, Any]) -> str:
    return (
        f"Nutrition Log - {data.get('date') or 'Recent'}\n"
        f"Food: {data.get('food_name', '')}\n"
        f"Calories: {data.get('calories', 0)}\n"
        f"Macros: P:{data.get('protein', 0)}g C:{data.get('carbs', 0)}g F:{data.get('fat', 0)}g"
    )


def _workout_log_content(data: Dict[str, Any]) -> str:
    return (
        f"Workout Log - {data.get('date') or 'Recent'}\n"
        f"Workout: {data.get('workout_name', '')}\n"
        f"Duration: {data.get('duration', 0)} minutes\n"
        f"Intensity: {data.get('intensity', 'Medium')}"
    )


def _recipe_content(data: Dict[str, Any]) -> str:
    lines = [f"Recipe: {data.get('name', '')}", ""]
    if data.get("description"):
        lines.append(f"Description: {data['description']}")
    ingredients = data.get("ingredients") or []
    if ingredients:
        lines.append("Ingredients:")
        for ingredient in ingredients:
            if isinstance(ingredient, dict):
                lines.append(
                    f"- {ingredient.get('name', '')}: {ingredient.get('quantity', '')} {ingredient.get('unit', '')}".rstrip()
                )
            else:
                lines.append(f"- {ingredient}")
    for index, step in enumerate(data.get("instructions") or [], start=1):
        lines.append(f"{index}. {step}")
    return "\n".join(lines)


CONTENT_RENDERERS: Dict[str, Tuple[Callable[[Dict[str, Any]], str], Callable[[Dict[str, Any]], str]]] = {
    # type: (content, title)
    "health_report": (
        _health_report_content,
        lambda d: f"Health Report - {d.get('report_date') or d.get('test_date') or 'Recent'}",
    ),
    "meal_plan": (_meal_plan_content, lambda d: f"Meal Plan - {d.get('name') or 'Week ' + str(d.get('week_number') or 'Current')}"),
    "fitness_plan": (_fitness_plan_content, lambda d: f"Fitness Plan - Week {d.get('current_week') or 'Current'}"),
    "nutrition_log": (_nutrition_log_content, lambda d: f"Nutrition Log - {d.get('date') or 'Recent'}"),
    "workout_log": (_workout_log_content, lambda d: f"Workout Log - {d.get('date') or 'Recent'}"),
    "recipe": (_recipe_content, lambda d: f"Recipe - {d.get('name', '')}"),
}


def render_record(context_type: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """(title, content) for a domain record; unknown types fall back to JSON."""
    renderers = CONTENT_RENDERERS.get(context_type)
    if renderers is None:
        return f"{context_type} - {data.get('id', 'record')}", json.dumps(data, default=str, sort_keys=True)
    content_fn, title_fn = renderers
    return title_fn(data), content_fn(data)


# =============================================================================
# RETRIEVER
# =============================================================================

class ContextRetriever:
    """
    Usage:
        retriever = ContextRetriever(stores.rag_contexts, profiles)
        retriever.register_source("recipe", recipe_source)
        ctx = await retriever.retrieve(user_id, query, "nutrition")
    """

    def __init__(
        self,
        store: KeyedStore,
        profiles=None,
        sources: Optional[Dict[str, RagSource]] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.store = store
        self.profiles = profiles
        self.sources: Dict[str, RagSource] = dict(sources or {})
        self.clock = clock

    def register_source(self, record_type: str, source: RagSource) -> None:
        self.sources[record_type] = source

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    async def retrieve(
        self,
        user_id: str,
        query: str,
        domain: str,
        options: Optional[RetrievalOptions] = None
    ) -> RankedContext:
        options = options or RetrievalOptions()
        start = time.time()

        fetchers: List[Tuple[str, Awaitable[List[Dict[str, Any]]]]] = [
            ("user_context", self._user_contexts(user_id, options.context_types)),
        ]
        if options.include_user_profile and self.profiles is not None:
            fetchers.append(("user_profile", self._profile_context(user_id)))
        record_source = DOMAIN_RECORD_SOURCES.get(domain)
        if record_source and record_source[0] in self.sources:
            fetchers.append((record_source[0], self._domain_records(user_id, *record_source)))
        if options.include_knowledge_base:
            fetchers.append(("knowledge_base", self._knowledge_base(query, domain)))

        results = await asyncio.gather(*(f for _, f in fetchers), return_exceptions=True)

        candidates: List[Dict[str, Any]] = []
        failed: List[str] = []
        for (name, _), result in zip(fetchers, results):
            if isinstance(result, BaseException):
                logger.warning(f"⚠️ RAG source '{name}' failed for {user_id}: {result}")
                failed.append(name)
                continue
            candidates.extend(result)

        for candidate in candidates:
            candidate["relevance_score"] = calculate_relevance_score(query, candidate["content"], domain)

        relevant = sorted(
            (c for c in candidates if c["relevance_score"] >= options.relevance_threshold),
            key=lambda c: c["relevance_score"],
            reverse=True,
        )[:options.max_documents]

        sources = [
            ContextSource(
                source_id=c["id"],
                source_type=c["source_type"],
                title=c["title"],
                excerpt=create_excerpt(c["content"], SOURCE_EXCERPT_LENGTH),
                relevance_score=c["relevance_score"],
                url=c.get("url"),
            )
            for c in relevant
        ]
        avg = sum(s.relevance_score for s in sources) / len(sources) if sources else 0.0
        context_types: List[str] = []
        for s in sources:
            if s.source_type not in context_types:
                context_types.append(s.source_type)

        elapsed_ms = int((time.time() - start) * 1000)
        logger.debug(
            f"RAG for {user_id} [{domain}]: {len(sources)}/{len(candidates)} docs in {elapsed_ms}ms"
        )
        return RankedContext(
            sources=sources,
            context_text=build_context_text(relevant),
            metadata={
                "total_documents": len(candidates),
                "documents_retrieved": len(sources),
                "retrieval_time_ms": elapsed_ms,
                "avg_relevance_score": avg,
                "context_types": context_types,
                "failed_sources": failed,
            },
        )

    async def _user_contexts(self, user_id: str, context_types: List[str]) -> List[Dict[str, Any]]:
        now = self.clock()
        docs = await self.store.query_by_user(user_id, {"is_active": True})
        docs = [
            d for d in docs
            if (not context_types or d.get("context_type") in context_types)
            and (d.get("expires_at") is None or d["expires_at"] > now)
        ]
        docs.sort(
            key=lambda d: (d.get("last_accessed_at") or d["created_at"], d["created_at"]),
            reverse=True,
        )
        return [
            {
                "id": d["id"],
                "source_type": d["context_type"],
                "title": d["title"],
                "content": d["content"],
            }
            for d in docs[:MAX_USER_CONTEXTS]
        ]

    async def _profile_context(self, user_id: str) -> List[Dict[str, Any]]:
        summary = await self.profiles.get_profile_summary(user_id)
        if not summary:
            return []
        return [{
            "id": f"user_profile_{user_id}",
            "source_type": "user_profile",
            "title": "User Profile",
            "content": summary,
        }]

    async def _domain_records(self, user_id: str, record_type: str, limit: int) -> List[Dict[str, Any]]:
        records = await self.sources[record_type](user_id, limit)
        candidates = []
        for record in records[:limit]:
            title, content = render_record(record_type, record)
            candidates.append({
                "id": f"{record_type}_{record.get('id', new_id())}",
                "source_type": record_type,
                "title": title,
                "content": content,
                "url": record.get("url"),
            })
        return candidates

    async def _knowledge_base(self, query: str, domain: str) -> List[Dict[str, Any]]:
        return [
            {
                "id": article.id,
                "source_type": "knowledge_base",
                "title": article.title,
                "content": article.content,
            }
            for article in search_knowledge_base(query, domain)
        ]

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------

    async def index_user_data(
        self,
        user_id: str,
        context_type: str,
        payload: Dict[str, Any]
    ) -> Optional[str]:
        """
        Store a rendered snippet of a domain record for later retrieval.

        Returns the context id, or None when the payload renders empty.
        """
        title, content = render_record(context_type, payload)
        if not content:
            return None

        now = self.clock()
        context_id = new_id()
        await self.store.put(context_id, {
            "id": context_id,
            "user_id": user_id,
            "context_type": context_type,
            "title": title,
            "content": content,
            "metadata": {"source_id": payload.get("id"), "source_type": context_type},
            "is_active": True,
            "relevance_score": 0.5,
            "access_count": 0,
            "created_at": now,
            "last_accessed_at": None,
            "expires_at": now + CONTEXT_EXPIRATION.get(context_type, DEFAULT_EXPIRATION),
        })
        logger.info(f"📚 Indexed {context_type} for {user_id} ({context_id})")
        return context_id

    async def update_relevance_score(
        self,
        user_id: str,
        context_id: str,
        feedback: str
    ) -> Optional[float]:
        """Boost a stored snippet after user interaction (useful/cited/viewed)."""
        if feedback not in FEEDBACK_BOOST:
            raise ValueError(f"Unknown feedback type: {feedback}")

        doc = await self.store.get(context_id)
        if not doc or doc.get("user_id") != user_id:
            return None

        doc["relevance_score"] = min(1.0, doc.get("relevance_score", 0.5) + FEEDBACK_BOOST[feedback])
        doc["access_count"] = doc.get("access_count", 0) + 1
        doc["last_accessed_at"] = self.clock()
        await self.store.put(context_id, doc)
        return doc["relevance_score"]
