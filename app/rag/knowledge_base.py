"""
Static health and wellness knowledge base.

A handful of curated articles served as RAG candidates. Matching is keyword
based: an article qualifies when it belongs to the query's domain (or to
"general") and a topic keyword appears in both the query and the article.
"""
from dataclasses import dataclass
from typing import Dict, List, Tuple

MAX_ARTICLES = 3


@dataclass(frozen=True)
class KnowledgeArticle:
    id: str
    title: str
    content: str
    domain: str


ARTICLES: Tuple[KnowledgeArticle, ...] = (
    KnowledgeArticle(
        id="nutrition_basics",
        title="Nutrition Basics",
        content=(
            "Macronutrients include proteins, carbohydrates, and fats. Proteins help build "
            "and repair tissues. Carbohydrates provide energy. Healthy fats support brain "
            "function and hormone production. Vitamins and minerals regulate metabolism, "
            "and fiber supports digestion and steady blood sugar. Total calories still "
            "matter for weight management."
        ),
        domain="nutrition",
    ),
    KnowledgeArticle(
        id="exercise_principles",
        title="Exercise Principles",
        content=(
            "Progressive overload is key to fitness improvement. Start with manageable "
            "weights and gradually increase intensity. Combine strength training with "
            "cardio for heart health. Rest and recovery are as important as the workout "
            "itself because muscle adapts between sessions."
        ),
        domain="fitness",
    ),
    KnowledgeArticle(
        id="understanding_biomarkers",
        title="Understanding Biomarkers",
        content=(
            "HbA1c measures average blood sugar over 2-3 months. Normal is below 5.7%. "
            "Cholesterol levels include LDL (bad) and HDL (good). A blood test panel also "
            "reports vitamin and iron status. Regular monitoring of biomarkers helps track "
            "health progress and spot symptoms of health conditions early."
        ),
        domain="health",
    ),
)

# Topic keywords per article domain
DOMAIN_TOPICS: Dict[str, Tuple[str, ...]] = {
    "nutrition": ("protein", "carbs", "carbohydrate", "fat", "vitamins", "minerals", "calories", "fiber"),
    "fitness": ("strength", "cardio", "muscle", "training", "recovery", "workout"),
    "health": ("biomarkers", "biomarker", "blood test", "hba1c", "cholesterol", "health conditions", "symptoms"),
}

# Request domains served by an article domain
DOMAIN_ALIASES: Dict[str, str] = {
    "health_reports": "health",
    "meal_planning": "nutrition",
    "recipe": "nutrition",
    "workout_planning": "fitness",
}


def search_knowledge_base(query: str, domain: str) -> List[KnowledgeArticle]:
    """Articles for ``domain`` whose topic keywords appear in query and content."""
    article_domain = DOMAIN_ALIASES.get(domain, domain)
    keywords = DOMAIN_TOPICS.get(article_domain, ())
    query_lower = (query or "").lower()

    results = []
    for article in ARTICLES:
        if article.domain not in (article_domain, "general"):
            continue
        content = article.content.lower()
        if any(kw in query_lower and kw in content for kw in keywords):
            results.append(article)
    return results[:MAX_ARTICLES]
