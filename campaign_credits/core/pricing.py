"""
Credit pricing for generation tasks.

Static lookup from (provider, model, task kind) to an integer credit cost.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from .tasks import Capability, Task, TaskKind

# Model key matching any model of a provider without its own entry.
WILDCARD_MODEL = "*"


class UnknownCostError(ValueError):
    """Raised when no cost is configured for a provider/model/task."""


@dataclass(frozen=True)
class ModelCost:
    """Credit costs for one model.

    ``text`` and ``image`` are capability defaults; ``overrides`` price
    individual task kinds.
    """
    text: Optional[int] = None
    image: Optional[int] = None
    overrides: Dict[TaskKind, int] = field(default_factory=dict)

    def __post_init__(self):
        """Validate every configured cost is a positive integer."""
        values = [("text", self.text), ("image", self.image)]
        values += [(kind.value, cost) for kind, cost in self.overrides.items()]
        for name, cost in values:
            if cost is None:
                continue
            if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
                raise ValueError(f"cost '{name}' must be a positive integer, got {cost!r}")

    def for_kind(self, kind: TaskKind) -> Optional[int]:
        if kind in self.overrides:
            return self.overrides[kind]
        if kind.capability is Capability.IMAGE:
            return self.image
        return self.text


@dataclass(frozen=True)
class TaskCostTable:
    """Credit costs by provider and model."""
    prices: Dict[str, Dict[str, ModelCost]]

    def cost(self, provider_id: str, model_id: str, kind: TaskKind) -> int:
        """Get the credit cost of one task.

        Args:
            provider_id: Provider identifier (e.g. "openai")
            model_id: Model identifier
            kind: Task kind

        Returns:
            Credit cost as a positive integer

        Raises:
            UnknownCostError: If no entry prices this task
        """
        models = self.prices.get(provider_id)
        if models is None:
            raise UnknownCostError(f"Unsupported provider: {provider_id}")

        for key in (model_id, WILDCARD_MODEL):
            entry = models.get(key)
            if entry is None:
                continue
            cost = entry.for_kind(kind)
            if cost is not None:
                return cost

        raise UnknownCostError(
            f"No {kind.capability.value} cost configured for {provider_id}/{model_id} ({kind.value})"
        )


# Credit costs per task; flash-tier image models are cheaper than pro-tier ones.
DEFAULT_COST_TABLE = TaskCostTable({
    "openai": {
        "gpt-4o": ModelCost(text=5),
        "gpt-4-turbo": ModelCost(text=5),
        "gpt-4o-mini": ModelCost(text=1),
        WILDCARD_MODEL: ModelCost(text=1),
    },
    "gemini": {
        "gemini-2.5-flash-image": ModelCost(text=1, image=3),
        "gemini-2.5-flash": ModelCost(text=1, image=3),
        "gemini-2.5-pro": ModelCost(text=1, image=10),
        "gemini-3-pro-image-preview": ModelCost(text=1, image=10),
        WILDCARD_MODEL: ModelCost(text=1, image=3),
    },
})


@dataclass(frozen=True)
class CostEstimate:
    """Credits a planned run would need against the current balance."""
    copy_credits: int
    image_credits: int
    current_balance: int

    @property
    def total_credits(self) -> int:
        return self.copy_credits + self.image_credits

    @property
    def can_afford(self) -> bool:
        return self.current_balance >= self.total_credits


def estimate_campaign_cost(tasks: Iterable[Task], current_balance: int) -> CostEstimate:
    """Sum the plan-time costs of ``tasks`` by capability.

    The estimate is advisory: the balance can change before the run, and
    each task still reserves its own credits when it executes.
    """
    copy_credits = 0
    image_credits = 0
    for task in tasks:
        if task.kind.capability is Capability.IMAGE:
            image_credits += task.cost_credits
        else:
            copy_credits += task.cost_credits
    return CostEstimate(
        copy_credits=copy_credits,
        image_credits=image_credits,
        current_balance=current_balance,
    )
