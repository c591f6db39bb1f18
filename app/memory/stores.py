"""
Keyed document store interface.

Every persistent concern (sessions, messages, health profiles, ledger,
diet plans, RAG contexts, routing audit) goes through this narrow
interface so the process-local and MongoDB implementations are
interchangeable. Documents are plain dicts and must carry ``user_id`` to be
found by ``query_by_user``.
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class KeyedStore(ABC):
    """get / put / delete by key, equality query by user (and extra fields)."""

    name: str = "store"

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(self, key: str, doc: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def query(self, where: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose fields equal every value in ``where``."""

    async def query_by_user(
        self,
        user_id: str,
        where: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        return await self.query({"user_id": user_id, **(where or {})})


class InMemoryKeyedStore(KeyedStore):
    """
    Process-local store for tests and single-instance dev runs.

    Copies on the way in and out so callers never share mutable state
    with the store, matching what a real database round-trip gives.
    """

    def __init__(self, name: str = "memory"):
        self.name = name
        self._docs: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, key: str, doc: Dict[str, Any]) -> None:
        self._docs[key] = copy.deepcopy(doc)

    async def delete(self, key: str) -> bool:
        return self._docs.pop(key, None) is not None

    async def query(self, where: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(doc)
            for doc in self._docs.values()
            if all(doc.get(field) == value for field, value in where.items())
        ]

    def __len__(self) -> int:
        return len(self._docs)

    def __repr__(self) -> str:
        return f"InMemoryKeyedStore(name={self.name!r}, docs={len(self._docs)})"


# =============================================================================
# STORE BUNDLE
# =============================================================================

STORE_NAMES = (
    "sessions",
    "messages",
    "health_profiles",
    "usage_ledger",
    "diet_plans",
    "rag_contexts",
    "routing_decisions",
)


@dataclass
class StoreBundle:
    """One store per persistent concern, wired into the components at startup."""
    sessions: KeyedStore
    messages: KeyedStore
    health_profiles: KeyedStore
    usage_ledger: KeyedStore
    diet_plans: KeyedStore
    rag_contexts: KeyedStore
    routing_decisions: KeyedStore


def create_memory_stores() -> StoreBundle:
    return StoreBundle(**{name: InMemoryKeyedStore(name) for name in STORE_NAMES})
