"""
Keyword tables for classification and tier routing.

Loaded from JSON so they can be tuned without code changes. The packaged
default lives in ``app/data/routing_tables.json``; ``ROUTING_TABLES_PATH``
points at a replacement file.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TABLES_PATH = Path(__file__).resolve().parent.parent / "data" / "routing_tables.json"


@dataclass
class TierTables:
    l1_keywords: List[str]
    l2_keywords: List[str]
    l1_domains: List[str]
    l2_domains: List[str]
    health_adjacent_domains: List[str]


@dataclass
class RoutingTables:
    out_of_scope_keywords: List[str]
    domain_keywords: Dict[str, List[str]]
    default_domain: str
    default_domain_score: float
    allowed_domains: List[str]
    tiers: TierTables
    diet_planning_keywords: List[str]
    domain_context_types: Dict[str, List[str]]
    domain_prompts: Dict[str, str]
    domain_follow_ups: Dict[str, List[str]]
    cache_follow_ups: Dict[str, List[str]]
    out_of_scope_follow_ups: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingTables":
        tiers = data["tiers"]
        return cls(
            out_of_scope_keywords=[k.lower() for k in data["out_of_scope_keywords"]],
            domain_keywords={
                domain: [k.lower() for k in keywords]
                for domain, keywords in data["domain_keywords"].items()
            },
            default_domain=data.get("default_domain", "general_wellness"),
            default_domain_score=float(data.get("default_domain_score", 0.3)),
            allowed_domains=list(data["allowed_domains"]),
            tiers=TierTables(
                l1_keywords=[k.lower() for k in tiers["l1_keywords"]],
                l2_keywords=[k.lower() for k in tiers["l2_keywords"]],
                l1_domains=list(tiers["l1_domains"]),
                l2_domains=list(tiers["l2_domains"]),
                health_adjacent_domains=list(tiers["health_adjacent_domains"]),
            ),
            diet_planning_keywords=[k.lower() for k in data["diet_planning_keywords"]],
            domain_context_types=dict(data["domain_context_types"]),
            domain_prompts=dict(data["domain_prompts"]),
            domain_follow_ups=dict(data["domain_follow_ups"]),
            cache_follow_ups=dict(data["cache_follow_ups"]),
            out_of_scope_follow_ups=list(data.get("out_of_scope_follow_ups", [])),
        )

    def context_types_for(self, domain: str) -> List[str]:
        return list(self.domain_context_types.get(domain) or self.domain_context_types["default"])

    def follow_ups_for(self, domain: str) -> List[str]:
        return list(self.domain_follow_ups.get(domain) or self.domain_follow_ups["default"])

    def cache_follow_ups_for(self, category: str) -> List[str]:
        return list(self.cache_follow_ups.get(category) or self.cache_follow_ups["general"])


_cached: Dict[str, RoutingTables] = {}


def load_routing_tables(path: Optional[str] = None) -> RoutingTables:
    """Load (and memoize per path) the routing tables."""
    resolved = Path(path) if path else DEFAULT_TABLES_PATH
    key = str(resolved)
    if key not in _cached:
        with open(resolved, encoding="utf-8") as fh:
            _cached[key] = RoutingTables.from_dict(json.load(fh))
        logger.info(f"Loaded routing tables from {resolved}")
    return _cached[key]
