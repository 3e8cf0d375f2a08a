"""
Generation pipeline orchestrator.

Runs a planned task list one task at a time. Every task reserves its
credits before its provider call, keeps them on success and gets exactly
the reserved amount back on provider failure. One task's failure never
touches another task's credits or artifact.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from campaign_credits.sdk.base import PromptContext, ProviderAdapter
from campaign_credits.sdk.errors import ProviderError
from campaign_credits.storage.campaigns import CampaignUnavailableError

from .ledger import CreditLedger, InsufficientCredits, LedgerStoreError
from .pricing import DEFAULT_COST_TABLE, CostEstimate, TaskCostTable, estimate_campaign_cost
from .tasks import (
    Capability,
    GenerationRequest,
    Task,
    TaskKind,
    TaskStatus,
    plan_single_task,
    plan_tasks,
)

logger = logging.getLogger(__name__)

PROVIDER_LABELS = {
    "openai": "OpenAI",
    "gemini": "Gemini",
}

# Adapter method serving each capability.
CAPABILITY_CALLS = {
    Capability.TEXT: "generate_text",
    Capability.IMAGE: "generate_image",
}

AdapterResolver = Callable[[str, str], ProviderAdapter]


class RunStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"


class RunPolicy(Enum):
    """What a run does after a task cannot be afforded."""
    BEST_EFFORT = "best_effort"
    HALT_ON_INSUFFICIENT_CREDITS = "halt_on_insufficient_credits"


@dataclass(frozen=True)
class TaskReport:
    """Outcome of one task, as shown to the operator."""
    key: str
    kind: TaskKind
    status: TaskStatus
    cost_credits: int
    error: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.status is TaskStatus.PLANNED


@dataclass
class GenerationRun:
    """One execution of a task list for one account."""
    request: GenerationRequest
    tasks: List[Task]
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.RUNNING
    abort_reason: Optional[str] = None

    def tasks_with(self, status: TaskStatus) -> List[Task]:
        return [task for task in self.tasks if task.status is status]

    @property
    def credits_spent(self) -> int:
        return sum(task.cost_credits for task in self.tasks_with(TaskStatus.SUCCEEDED))

    @property
    def credits_refunded(self) -> int:
        return sum(task.cost_credits for task in self.tasks_with(TaskStatus.REFUNDED))

    def subject_line(self) -> str:
        for task in self.tasks_with(TaskStatus.SUCCEEDED):
            if task.kind is TaskKind.SUBJECT_LINE:
                return task.artifact.fields.get(TaskKind.SUBJECT_LINE.value, "")
        return self.request.subject_line

    def report(self) -> List[TaskReport]:
        return [
            TaskReport(
                key=task.key,
                kind=task.kind,
                status=task.status,
                cost_credits=task.cost_credits,
                error=task.error,
            )
            for task in self.tasks
        ]

    def finish(self) -> None:
        if all(task.status is TaskStatus.SUCCEEDED for task in self.tasks):
            self.status = RunStatus.COMPLETED
        else:
            self.status = RunStatus.COMPLETED_WITH_ERRORS


class GenerationOrchestrator:
    """Sequential executor of generation tasks against the credit ledger.

    Args:
        ledger: Credit ledger to reserve and refund through
        adapter_for: Returns the adapter for a (provider, model) pair
        cost_table: Cost table used when planning
        policy: Behaviour after an unaffordable task
        campaigns: Optional campaign store that receives each outcome as it happens
    """

    def __init__(
        self,
        ledger: CreditLedger,
        adapter_for: AdapterResolver,
        cost_table: TaskCostTable = DEFAULT_COST_TABLE,
        policy: RunPolicy = RunPolicy.BEST_EFFORT,
        campaigns=None,
    ):
        self.ledger = ledger
        self.adapter_for = adapter_for
        self.cost_table = cost_table
        self.policy = policy
        self.campaigns = campaigns

    def plan(self, request: GenerationRequest) -> List[Task]:
        return plan_tasks(request, self.cost_table)

    def estimate(self, request: GenerationRequest) -> CostEstimate:
        """Advisory cost of a full run against the current balance."""
        return estimate_campaign_cost(
            self.plan(request), self.ledger.get_balance(request.account_id)
        )

    def regenerate(
        self,
        request: GenerationRequest,
        kind: TaskKind,
        product_index: Optional[int] = None,
    ) -> GenerationRun:
        """Run a single field again under the same reserve/refund rules."""
        return self.run(request, plan_single_task(request, self.cost_table, kind, product_index))

    def run(self, request: GenerationRequest, tasks: Optional[List[Task]] = None) -> GenerationRun:
        """Execute ``tasks`` (planned from ``request`` when omitted) in order.

        Per-task failures end up in the run report. Ledger store failures
        and an unavailable campaign abort the run; any live reservation is
        refunded before returning.

        Returns:
            The finished run
        """
        if not request.account_id:
            raise ValueError("account_id is required")
        if tasks is None:
            tasks = self.plan(request)

        run = GenerationRun(request=request, tasks=tasks)
        logger.info(
            "Run %s started for campaign %s (%d tasks)",
            run.run_id, request.campaign_ref, len(tasks),
        )

        try:
            for task in run.tasks:
                if not self._execute(run, task):
                    logger.info("Run %s halted after insufficient credits", run.run_id)
                    break
        except (LedgerStoreError, CampaignUnavailableError) as e:
            self._abort(run, str(e))
            return run
        except BaseException as e:
            self._abort(run, f"interrupted: {e!r}")
            raise

        run.finish()
        logger.info(
            "Run %s %s: %d succeeded, %d refunded, %d failed, %d skipped",
            run.run_id, run.status.value,
            len(run.tasks_with(TaskStatus.SUCCEEDED)),
            len(run.tasks_with(TaskStatus.REFUNDED)),
            len(run.tasks_with(TaskStatus.FAILED)),
            len(run.tasks_with(TaskStatus.PLANNED)),
        )
        return run

    def _execute(self, run: GenerationRun, task: Task) -> bool:
        """Run one task. Returns False when the run must stop."""
        account_id = run.request.account_id
        try:
            reservation = self.ledger.reserve(
                account_id, task.cost_credits, self._usage_description(task), task.provider_ref
            )
        except InsufficientCredits as e:
            task.status = TaskStatus.FAILED
            task.error = str(e)
            logger.warning("Task %s not run: %s", task.key, e)
            self._mark_error(run, task)
            return self.policy is not RunPolicy.HALT_ON_INSUFFICIENT_CREDITS

        task.status = TaskStatus.RESERVED

        try:
            artifact = self._call_provider(run, task)
        except ProviderError as e:
            logger.warning("Task %s failed (%s): %s", task.key, e.kind, e.message)
            self._refund_failed(run, task, e.user_message())
            return True
        except Exception as e:
            logger.exception("Task %s failed with an unexpected error", task.key)
            self._refund_failed(run, task, f"Unexpected error: {e}")
            return True

        if self.campaigns is not None:
            self.campaigns.write_generated_field(run.request.campaign_ref, task.key, artifact.as_value())

        task.artifact = artifact
        task.status = TaskStatus.SUCCEEDED
        self.ledger.commit(reservation)
        return True

    def _call_provider(self, run: GenerationRun, task: Task):
        adapter = self.adapter_for(task.provider_id, task.model_id)
        generate = getattr(adapter, CAPABILITY_CALLS[task.kind.capability])
        return generate(task.kind, self._prompt_context(run, task))

    def _prompt_context(self, run: GenerationRun, task: Task) -> PromptContext:
        request = run.request
        product = None
        if task.product_index is not None:
            product = request.products[task.product_index]
        return PromptContext(
            products=request.products,
            theme=request.theme,
            tone=request.tone,
            language=request.language,
            image_style=request.image_style,
            campaign_brief=request.campaign_brief,
            store_context=request.store_context,
            product_context=request.product_context,
            currency=request.currency,
            currency_symbol=request.currency_symbol,
            campaign_ref=request.campaign_ref,
            product=product,
            subject_line=run.subject_line() if task.kind is TaskKind.PREVIEW_TEXT else "",
        )

    def _refund_failed(self, run: GenerationRun, task: Task, message: str) -> None:
        task.error = message
        self.ledger.refund(
            run.request.account_id,
            task.cost_credits,
            f"Refund for failed {task.key}: {message}",
            task.provider_ref,
        )
        task.status = TaskStatus.REFUNDED
        self._mark_error(run, task)

    def _mark_error(self, run: GenerationRun, task: Task) -> None:
        if self.campaigns is not None:
            self.campaigns.mark_generation_error(run.request.campaign_ref, task.key, task.error or "")

    def _abort(self, run: GenerationRun, reason: str) -> None:
        run.abort_reason = reason
        run.status = RunStatus.ABORTED
        logger.error("Run %s aborted: %s", run.run_id, reason)

        for task in run.tasks_with(TaskStatus.RESERVED):
            message = task.error or f"run aborted ({reason})"
            try:
                self.ledger.refund(
                    run.request.account_id,
                    task.cost_credits,
                    f"Refund for failed {task.key}: {message}",
                    task.provider_ref,
                )
            except LedgerStoreError as e:
                logger.critical(
                    "Reconciliation alert: could not refund %d credits to %s for %s (%s): %s",
                    task.cost_credits, run.request.account_id, task.key, task.provider_ref, e,
                )
                task.status = TaskStatus.FAILED
                task.error = f"Refund failed after abort: {e}"
                continue
            task.status = TaskStatus.REFUNDED
            task.error = message

    @staticmethod
    def _usage_description(task: Task) -> str:
        label = PROVIDER_LABELS.get(task.provider_id, task.provider_id)
        return f"{label} ({task.model_id}): {task.key}"
