"""
ScopeClassifier - keyword domain classification

Decides whether a query belongs to the health/nutrition/fitness coach at all,
and if so which domain it is about.

Rules:
1. Any out-of-scope keyword (word-boundary match) -> out_of_scope, 0.9
2. Else score each domain: matched keywords / domain keywords
3. A domain wins only when its score is strictly above the default
   (general_wellness at 0.3); ties keep the first domain in table order

Pure and total: garbage or empty input classifies as general_wellness.
"""
import re
from typing import List, Optional, Tuple
import logging

from app.core.tables import RoutingTables
from app.core.types import DomainClassification

logger = logging.getLogger(__name__)

OUT_OF_SCOPE_DOMAIN = "out_of_scope"
OUT_OF_SCOPE_CONFIDENCE = 0.9

OUT_OF_SCOPE_RESPONSE = (
    "I'm a health and wellness coach focused on nutrition, fitness, and health topics. "
    "I can help you with meal planning, workout routines, health reports, and wellness "
    "questions. Could you please ask something related to your health and fitness goals?"
)


class ScopeClassifier:
    """
    Usage:
        classifier = ScopeClassifier(load_routing_tables())
        result = classifier.classify("what's the weather like")
        # -> DomainClassification(domain="out_of_scope", confidence=0.9, is_in_scope=False)
    """

    def __init__(self, tables: RoutingTables):
        self.tables = tables
        self._out_of_scope: List[Tuple[str, "re.Pattern"]] = [
            (kw, re.compile(rf"\b{re.escape(kw)}\b")) for kw in tables.out_of_scope_keywords
        ]

    def find_out_of_scope_keyword(self, text: str) -> Optional[str]:
        lowered = (text or "").lower()
        for keyword, pattern in self._out_of_scope:
            if pattern.search(lowered):
                return keyword
        return None

    def classify(self, text: str) -> DomainClassification:
        lowered = (text or "").lower()

        keyword = self.find_out_of_scope_keyword(lowered)
        if keyword:
            logger.info(f"🚫 Out-of-scope keyword '{keyword}'")
            return DomainClassification(
                domain=OUT_OF_SCOPE_DOMAIN,
                confidence=OUT_OF_SCOPE_CONFIDENCE,
                is_in_scope=False,
            )

        best_domain = self.tables.default_domain
        best_score = self.tables.default_domain_score
        for domain, keywords in self.tables.domain_keywords.items():
            if not keywords:
                continue
            matches = sum(1 for kw in keywords if kw in lowered)
            score = matches / len(keywords)
            if score > best_score:
                best_domain, best_score = domain, score

        return DomainClassification(
            domain=best_domain,
            confidence=best_score,
            is_in_scope=best_domain in self.tables.allowed_domains,
        )

    def out_of_scope_follow_ups(self) -> List[str]:
        return list(self.tables.out_of_scope_follow_ups)
