"""
TokenCounter - budget estimation for routed calls

Estimates token counts without an API call so the Usage Ledger can be
consulted before a provider request is made.

Token Estimation Strategy:
- Heuristic: ceil(chars / 4) per text
- Request estimate: query + retrieved context + fixed expected-output allowance
- Actual usage (after the call): ceil(input / 4) + ceil(output / 4)
"""
import math
from dataclasses import dataclass
from typing import Any, Dict
import logging

logger = logging.getLogger(__name__)


@dataclass
class TokenEstimate:
    """Pre-call estimate with its breakdown."""
    query_tokens: int
    context_tokens: int
    output_allowance: int

    @property
    def total(self) -> int:
        return self.query_tokens + self.context_tokens + self.output_allowance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_tokens": self.query_tokens,
            "context_tokens": self.context_tokens,
            "output_allowance": self.output_allowance,
            "total": self.total,
        }


@dataclass
class TokenUsage:
    """Post-call usage computed from input and output lengths."""
    input_tokens: int
    output_tokens: int

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class TokenCounter:
    """
    Heuristic token counter for budget checks.

    Usage:
        counter = TokenCounter()
        estimate = counter.estimate_request(query, rag_context_text)
        if ledger_remaining < estimate.total:
            # force the free tier
    """

    def __init__(
        self,
        chars_per_token: float = 4.0,
        expected_output_tokens: int = 500,
        unicode_multiplier: float = 1.0
    ):
        """
        Args:
            chars_per_token: Base ratio for text
            expected_output_tokens: Fixed allowance added to every estimate
            unicode_multiplier: Extra weight for non-ASCII characters
                (1.0 keeps the plain chars/4 rule)
        """
        self.chars_per_token = chars_per_token
        self.expected_output_tokens = expected_output_tokens
        self.unicode_multiplier = unicode_multiplier

    def estimate_tokens(self, text: str) -> int:
        """Estimate token count for a text string (rounded up)."""
        if not text:
            return 0

        if self.unicode_multiplier == 1.0:
            return math.ceil(len(text) / self.chars_per_token)

        ascii_chars = sum(1 for c in text if ord(c) < 128)
        unicode_chars = len(text) - ascii_chars
        weighted = ascii_chars + unicode_chars * self.unicode_multiplier
        return math.ceil(weighted / self.chars_per_token)

    def estimate_request(self, query: str, context_text: str = "") -> TokenEstimate:
        """Estimate a provider call before it is made."""
        return TokenEstimate(
            query_tokens=self.estimate_tokens(query),
            context_tokens=self.estimate_tokens(context_text),
            output_allowance=self.expected_output_tokens,
        )

    def actual_usage(self, input_text: str, output_text: str) -> TokenUsage:
        """Usage after the call, from what was actually sent and received."""
        return TokenUsage(
            input_tokens=self.estimate_tokens(input_text),
            output_tokens=self.estimate_tokens(output_text),
        )

    def __repr__(self) -> str:
        return (
            f"TokenCounter(chars_per_token={self.chars_per_token}, "
            f"expected_output_tokens={self.expected_output_tokens})"
        )
