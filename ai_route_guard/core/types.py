"""
Shared routing types.

Backend descriptors, complexity buckets, objectives and the selection
decision passed between the routing components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from .pricing import BackendPricing


class BackendKind(Enum):
    """Kind of inference backend, ordered by the quality it is trusted with."""
    PREMIUM = "premium"
    LOCAL_ECONOMY = "local-economy"
    LOCAL_ZERO_COST = "local-zero-cost"
    CUSTOM = "custom"


# Guardrail floors compare kinds by rank; custom backends count as paid local
KIND_RANK = {
    BackendKind.LOCAL_ZERO_COST: 0,
    BackendKind.LOCAL_ECONOMY: 1,
    BackendKind.CUSTOM: 1,
    BackendKind.PREMIUM: 2,
}


class BackendStatus(Enum):
    """Health state of a registered backend."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class ComplexityLevel(Enum):
    """Complexity bucket derived from the 0-100 score."""
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class Objective(Enum):
    """Optimization goal governing backend selection."""
    COST = "cost"
    QUALITY = "quality"
    SPEED = "speed"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class BudgetState(Enum):
    """Spend-to-date classification against the period budget."""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class BackendDescriptor:
    """Registered inference backend.

    Only the health registry mutates descriptors; every other component
    works on the snapshots it hands out.
    """
    id: str
    name: str
    kind: BackendKind
    endpoint: str
    credential: Optional[str] = None
    cost_per_call: float = 0.0
    status: BackendStatus = BackendStatus.OFFLINE
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    model: Optional[str] = None
    pricing: Optional[BackendPricing] = None
    active: bool = True
    last_probe_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate identity and cost fields."""
        if not self.id or not self.id.strip():
            raise ValueError("backend id is required and cannot be empty")
        if self.cost_per_call < 0:
            raise ValueError("cost_per_call cannot be negative")

    @property
    def rank(self) -> int:
        return KIND_RANK[self.kind]


@dataclass(frozen=True)
class ComplexityProfile:
    """Per-request complexity estimate."""
    score: int
    level: ComplexityLevel
    confidence: float
    recommended_kind: BackendKind
    requires_high_quality: bool = False
    requires_creativity: bool = False
    requires_reasoning: bool = False
    requires_analysis: bool = False
    has_code: bool = False
    prompt_length: int = 0
    task_type: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class SelectionDecision:
    """Chosen backend plus ranked alternates for one request."""
    backend_id: str
    reason: str
    alternates: Tuple[str, ...] = field(default_factory=tuple)
    estimated_cost: float = 0.0
    estimated_latency_ms: float = 0.0
    confidence: float = 0.0
    objective: Objective = Objective.BALANCED
