"""
Generation tasks and planning.

A generation request expands into a fixed, ordered list of tasks. Planning
is a pure function: it resolves every task's cost once, so a cost table
reloaded mid-run cannot change what an in-flight run charges or refunds.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .pricing import TaskCostTable


class Capability(Enum):
    """What a provider has to be able to do for a task."""
    TEXT = "text"
    IMAGE = "image"


class TaskKind(Enum):
    """Every kind of metered generation task."""
    SUBJECT_LINE = "subject_line"
    PREVIEW_TEXT = "preview_text"
    MAIN_HEADLINE = "main_headline"
    MAIN_DESCRIPTION = "main_description"
    PRODUCT_COPY = "product_copy"
    COUPON_SUGGESTION = "coupon_suggestion"
    MAIN_IMAGE = "main_image"
    PRODUCT_IMAGE = "product_image"

    @property
    def capability(self) -> Capability:
        return TASK_CAPABILITY[self]

    @property
    def per_product(self) -> bool:
        return self in (TaskKind.PRODUCT_COPY, TaskKind.PRODUCT_IMAGE)


TASK_CAPABILITY: Dict[TaskKind, Capability] = {
    TaskKind.SUBJECT_LINE: Capability.TEXT,
    TaskKind.PREVIEW_TEXT: Capability.TEXT,
    TaskKind.MAIN_HEADLINE: Capability.TEXT,
    TaskKind.MAIN_DESCRIPTION: Capability.TEXT,
    TaskKind.PRODUCT_COPY: Capability.TEXT,
    TaskKind.COUPON_SUGGESTION: Capability.TEXT,
    TaskKind.MAIN_IMAGE: Capability.IMAGE,
    TaskKind.PRODUCT_IMAGE: Capability.IMAGE,
}

if set(TASK_CAPABILITY) != set(TaskKind):
    raise RuntimeError("TASK_CAPABILITY must map every TaskKind")

CAMPAIGN_COPY_KINDS = (
    TaskKind.SUBJECT_LINE,
    TaskKind.PREVIEW_TEXT,
    TaskKind.MAIN_HEADLINE,
    TaskKind.MAIN_DESCRIPTION,
)


class TaskStatus(Enum):
    """Lifecycle of a task inside one run."""
    PLANNED = "planned"
    RESERVED = "reserved"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class Product:
    """Store product the campaign promotes."""
    name: str
    price: str = ""
    short_description: str = ""
    category: str = ""
    regular_price: str = ""
    sale_price: str = ""
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        if not data.get("name"):
            raise ValueError("Product name is required")
        return cls(
            name=str(data["name"]),
            price=str(data.get("price") or ""),
            short_description=str(data.get("short_description") or ""),
            category=str(data.get("category") or ""),
            regular_price=str(data.get("regular_price") or ""),
            sale_price=str(data.get("sale_price") or ""),
            id=int(data["id"]) if data.get("id") is not None else None,
        )


@dataclass(frozen=True)
class GenerationRequest:
    """Everything the operator chose for one campaign generation."""
    campaign_ref: str
    account_id: str
    products: Tuple[Product, ...]
    theme: str = ""
    tone: str = "Professional"
    language: str = "English"
    image_style: str = "Photorealistic"
    campaign_brief: str = ""
    store_context: str = ""
    product_context: str = ""
    currency: str = "GBP"
    currency_symbol: str = "£"
    # Subject line to build preview text from when it is not generated in the same run.
    subject_line: str = ""
    generate_images: bool = False
    generate_product_images: bool = True
    generate_coupon: bool = False
    text_provider: str = "openai"
    text_model: str = "gpt-4o-mini"
    image_provider: str = "gemini"
    image_model: str = "gemini-2.5-flash-image"

    def provider_for(self, kind: TaskKind) -> Tuple[str, str]:
        """(provider, model) configured for the task's capability."""
        if kind.capability is Capability.IMAGE:
            return self.image_provider, self.image_model
        return self.text_provider, self.text_model


@dataclass
class Task:
    """One metered unit of pipeline work.

    ``cost_credits`` is fixed at plan time and is the exact amount both
    reserved and, on provider failure, refunded.
    """
    kind: TaskKind
    provider_id: str
    model_id: str
    cost_credits: int
    product_index: Optional[int] = None
    status: TaskStatus = TaskStatus.PLANNED
    artifact: Any = None
    error: Optional[str] = None

    @property
    def key(self) -> str:
        if self.product_index is None:
            return self.kind.value
        return f"{self.kind.value}[{self.product_index}]"

    @property
    def provider_ref(self) -> str:
        return f"{self.provider_id}:{self.model_id}:{self.key}"


@dataclass(frozen=True)
class PlannedKind:
    kind: TaskKind
    product_index: Optional[int] = None


def planned_sequence(request: GenerationRequest) -> List[PlannedKind]:
    """Expand a request into the fixed task order.

    [campaign copy] -> [product copy x N] -> [coupon] -> [main image]
    -> [product image x N]
    """
    product_count = len(request.products)
    sequence = [PlannedKind(kind) for kind in CAMPAIGN_COPY_KINDS]
    sequence += [PlannedKind(TaskKind.PRODUCT_COPY, i) for i in range(product_count)]
    if request.generate_coupon:
        sequence.append(PlannedKind(TaskKind.COUPON_SUGGESTION))
    if request.generate_images:
        sequence.append(PlannedKind(TaskKind.MAIN_IMAGE))
        if request.generate_product_images:
            sequence += [PlannedKind(TaskKind.PRODUCT_IMAGE, i) for i in range(product_count)]
    return sequence


def _build_task(
    request: GenerationRequest,
    cost_table: "TaskCostTable",
    kind: TaskKind,
    product_index: Optional[int],
) -> Task:
    provider_id, model_id = request.provider_for(kind)
    return Task(
        kind=kind,
        provider_id=provider_id,
        model_id=model_id,
        cost_credits=cost_table.cost(provider_id, model_id, kind),
        product_index=product_index,
    )


def plan_tasks(request: GenerationRequest, cost_table: "TaskCostTable") -> List[Task]:
    """Build the ordered task list with costs resolved from ``cost_table``.

    Raises:
        ValueError: If the request has no products or a cost is unknown
    """
    if not request.products:
        raise ValueError("At least one product is required to generate a campaign")
    return [
        _build_task(request, cost_table, planned.kind, planned.product_index)
        for planned in planned_sequence(request)
    ]


def plan_single_task(
    request: GenerationRequest,
    cost_table: "TaskCostTable",
    kind: TaskKind,
    product_index: Optional[int] = None,
) -> List[Task]:
    """Plan a one-task run that regenerates a single field."""
    if kind.per_product:
        if product_index is None:
            raise ValueError(f"{kind.value} needs a product index")
        if not 0 <= product_index < len(request.products):
            raise ValueError(f"Product index {product_index} out of range")
    elif product_index is not None:
        raise ValueError(f"{kind.value} does not take a product index")
    elif not request.products:
        raise ValueError("At least one product is required to generate a campaign")
    return [_build_task(request, cost_table, kind, product_index)]
