"""
Per-call cost calculation for inference backends.

Backends either carry a flat per-call estimate or per-1K token prices;
token pricing wins whenever the backend reports usage.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by a backend for one completion."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class BackendPricing:
    """Per-token pricing for a metered backend."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens

    def __post_init__(self):
        if self.prompt_cost_per_1k < 0 or self.completion_cost_per_1k < 0:
            raise ValueError("token prices cannot be negative")


def calculate_cost(
    cost_per_call: float,
    pricing: Optional[BackendPricing] = None,
    usage: Optional[TokenUsage] = None,
) -> float:
    """Calculate the billed amount of one successful call.

    Token pricing is rounded UP to 4 decimal places so the ledger never
    under-reports spend; without pricing or usage the flat per-call
    estimate is returned unchanged.

    Args:
        cost_per_call: Flat per-call estimate of the backend
        pricing: Optional per-token prices
        usage: Optional token usage reported by the backend

    Returns:
        Cost of the call
    """
    if pricing is None or usage is None:
        return cost_per_call

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    total_cost = prompt_cost + completion_cost
    rounded_cost = total_cost.quantize(Decimal("0.0001"), rounding=ROUND_UP)

    return float(rounded_cost)
