"""
Backend selection strategy.

Filters healthy backends by complexity tier, ranks them by the active
objective and returns the chosen backend plus up to two alternates.
"""

from typing import Callable, Dict, List, Optional, Sequence

from .types import (
    BackendDescriptor,
    BackendKind,
    ComplexityLevel,
    ComplexityProfile,
    Objective,
    SelectionDecision,
)

# Reference ceilings for normalizing balanced sub-scores to 0-1
REFERENCE_COST_PER_CALL = 0.03
REFERENCE_LATENCY_MS = 5000.0

BALANCED_WEIGHTS = {"cost": 0.3, "quality": 0.4, "speed": 0.3}

MAX_ALTERNATES = 2

# Lower value = preferred within a tier
_SIMPLE_PREFERENCE = {
    BackendKind.LOCAL_ECONOMY: 0,
    BackendKind.LOCAL_ZERO_COST: 1,
}
_MEDIUM_PREFERENCE = {
    BackendKind.LOCAL_ZERO_COST: 0,
    BackendKind.LOCAL_ECONOMY: 1,
}


def balanced_score(backend: BackendDescriptor) -> float:
    """Weighted 0-1 score; higher is better."""
    cost_score = 1 - min(backend.cost_per_call / REFERENCE_COST_PER_CALL, 1)
    quality_score = backend.success_rate / 100
    speed_score = 1 - min(backend.avg_latency_ms / REFERENCE_LATENCY_MS, 1)
    return (
        cost_score * BALANCED_WEIGHTS["cost"]
        + quality_score * BALANCED_WEIGHTS["quality"]
        + speed_score * BALANCED_WEIGHTS["speed"]
    )


# Sort keys: ascending sort puts the best candidate first
_RANK_KEYS: Dict[Objective, Callable[[BackendDescriptor], float]] = {
    Objective.COST: lambda b: b.cost_per_call,
    Objective.AGGRESSIVE: lambda b: b.cost_per_call,
    Objective.QUALITY: lambda b: -b.success_rate,
    Objective.SPEED: lambda b: b.avg_latency_ms,
    Objective.BALANCED: lambda b: -balanced_score(b),
}

_REASONS = {
    Objective.COST: "selected for minimum cost",
    Objective.AGGRESSIVE: "selected for minimum cost (aggressive)",
    Objective.QUALITY: "selected for best quality",
    Objective.SPEED: "selected for fastest response",
    Objective.BALANCED: "selected for balanced performance",
}


class SelectionStrategy:
    """Picks a backend for a request from the healthy pool."""

    def __init__(
        self,
        premium_backend_id: str,
        premium_cost_estimate: float = REFERENCE_COST_PER_CALL,
        premium_latency_estimate_ms: float = 3000.0,
    ):
        self.premium_backend_id = premium_backend_id
        self.premium_cost_estimate = premium_cost_estimate
        self.premium_latency_estimate_ms = premium_latency_estimate_ms

    def candidates(
        self,
        profile: ComplexityProfile,
        backends: Sequence[BackendDescriptor],
    ) -> List[BackendDescriptor]:
        """Filter and order candidates by complexity tier.

        Simple tasks prefer paid-economy then zero-cost local backends;
        medium tasks prefer zero-cost then paid-economy local backends and
        only consider premium when the profile recommends it; complex tasks
        consider every healthy backend including premium.
        """
        local = [b for b in backends if b.id != self.premium_backend_id and b.kind != BackendKind.PREMIUM]
        premium = [b for b in backends if b.id == self.premium_backend_id]

        if profile.level == ComplexityLevel.SIMPLE:
            return sorted(local, key=lambda b: _SIMPLE_PREFERENCE.get(b.kind, 2))

        if profile.level == ComplexityLevel.MEDIUM:
            ordered = sorted(local, key=lambda b: _MEDIUM_PREFERENCE.get(b.kind, 2))
            if profile.recommended_kind == BackendKind.PREMIUM:
                return premium + ordered
            return ordered

        return premium + local

    def rank(self, candidates: Sequence[BackendDescriptor], objective: Objective) -> List[BackendDescriptor]:
        """Stable sort by objective; ties keep tier order."""
        return sorted(candidates, key=_RANK_KEYS[objective])

    def select(
        self,
        profile: ComplexityProfile,
        backends: Sequence[BackendDescriptor],
        objective: Objective = Objective.BALANCED,
        cost_ceiling: Optional[float] = None,
    ) -> SelectionDecision:
        """Choose a backend for the request.

        Args:
            profile: Complexity profile of the request
            backends: Currently healthy backends
            objective: Active objective
            cost_ceiling: Optional hard per-call cost ceiling

        Returns:
            SelectionDecision with chosen backend and ranked alternates
        """
        candidates = self.candidates(profile, backends)

        if not candidates:
            return SelectionDecision(
                backend_id=self.premium_backend_id,
                reason="no local backend available",
                alternates=(),
                estimated_cost=self.premium_cost_estimate,
                estimated_latency_ms=self.premium_latency_estimate_ms,
                confidence=profile.confidence,
                objective=objective,
            )

        ranked = self.rank(candidates, objective)
        reason = _REASONS[objective]

        if cost_ceiling is not None and ranked[0].cost_per_call > cost_ceiling:
            within = [b for b in ranked if b.cost_per_call <= cost_ceiling]
            if within:
                outside = [b for b in ranked if b.cost_per_call > cost_ceiling]
                ranked = within + outside
                reason = f"selected within cost ceiling ${cost_ceiling:.4f}"
            else:
                reason = f"{reason}; no candidate within cost ceiling ${cost_ceiling:.4f}"

        chosen = ranked[0]
        return SelectionDecision(
            backend_id=chosen.id,
            reason=reason,
            alternates=tuple(b.id for b in ranked[1:1 + MAX_ALTERNATES]),
            estimated_cost=chosen.cost_per_call,
            estimated_latency_ms=chosen.avg_latency_ms,
            confidence=profile.confidence,
            objective=objective,
        )
