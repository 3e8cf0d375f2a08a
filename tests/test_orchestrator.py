"""
Unit tests for the generation pipeline orchestrator.

Runs planned tasks against a real temporary ledger with in-process fake
provider adapters.
"""

import logging
import os
import tempfile

import pytest

from campaign_credits.core.ledger import CreditLedger, LedgerStoreError
from campaign_credits.core.orchestrator import GenerationOrchestrator, RunPolicy, RunStatus
from campaign_credits.core.pricing import WILDCARD_MODEL, ModelCost, TaskCostTable
from campaign_credits.core.tasks import (
    Capability,
    GenerationRequest,
    Product,
    Task,
    TaskKind,
    TaskStatus
)
from campaign_credits.sdk.base import ImageArtifact, ProviderAdapter, TextArtifact
from campaign_credits.sdk.errors import (
    ProviderPermanentError,
    ProviderRateLimitedError,
    ProviderTransientError
)
from campaign_credits.storage.campaigns import CampaignUnavailableError, FileCampaignStore
from campaign_credits.storage.models import TransactionFilter, TransactionKind
from campaign_credits.storage.repository import LedgerRepository, initialize_schema

COSTS = TaskCostTable({"fake": {WILDCARD_MODEL: ModelCost(text=2, image=4)}})


class FakeAdapter(ProviderAdapter):
    """Adapter returning canned artifacts, failing on chosen call numbers."""

    provider_id = "fake"
    label = "Fake"
    capabilities = frozenset({Capability.TEXT, Capability.IMAGE})

    def __init__(self, failures=None):
        super().__init__("fake-model")
        self.failures = dict(failures or {})
        self.calls = []

    def _record(self, kind, ctx):
        index = len(self.calls)
        self.calls.append((kind, ctx))
        if index in self.failures:
            raise self.failures[index]

    def complete(self, system, user, temperature, max_tokens, json_output=False):
        raise AssertionError("FakeAdapter builds artifacts directly")

    def generate_text(self, kind, ctx):
        self._record(kind, ctx)
        if kind is TaskKind.PRODUCT_COPY:
            return TextArtifact({
                "headline": f"{ctx.product.name} headline",
                "short_description": f"{ctx.product.name} description",
            })
        return TextArtifact({kind.value: f"generated {kind.value}"})

    def generate_image(self, kind, ctx):
        self._record(kind, ctx)
        return ImageArtifact(ref=f"images/{ctx.campaign_ref}/{kind.value}.png")


class RepricingAdapter(FakeAdapter):
    """Adapter that raises every price in the cost table on its first call."""

    def __init__(self, table, failures=None):
        super().__init__(failures)
        self.table = table

    def _record(self, kind, ctx):
        if not self.calls:
            self.table.prices["fake"][WILDCARD_MODEL] = ModelCost(text=9, image=9)
        super()._record(kind, ctx)


class FlakyRefundLedger(CreditLedger):
    """Ledger whose refunds fail a given number of times."""

    def __init__(self, repository, refund_failures):
        super().__init__(repository)
        self.refund_failures = refund_failures

    def refund(self, account_id, amount, description, provider_ref=None):
        if self.refund_failures > 0:
            self.refund_failures -= 1
            raise LedgerStoreError("database is locked")
        return super().refund(account_id, amount, description, provider_ref)


class VanishingCampaigns:
    """Campaign store whose record disappears after some writes."""

    def __init__(self, writes_before_failure):
        self.writes_before_failure = writes_before_failure
        self.fields = {}
        self.errors = {}

    def write_generated_field(self, campaign_ref, task_key, value):
        if len(self.fields) >= self.writes_before_failure:
            raise CampaignUnavailableError(campaign_ref, "campaign not found")
        self.fields[task_key] = value

    def mark_generation_error(self, campaign_ref, task_key, error_summary):
        self.errors[task_key] = error_summary


def _request(product_count=1, **overrides) -> GenerationRequest:
    values = dict(
        campaign_ref="spring-sale",
        account_id="acct",
        products=tuple(Product(name=f"Product {i}", price="10.00") for i in range(product_count)),
        text_provider="fake",
        text_model="fake-model",
        image_provider="fake",
        image_model="fake-model",
    )
    values.update(overrides)
    return GenerationRequest(**values)


class OrchestratorTestCase:
    """Shared temporary ledger and fake adapter."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = LedgerRepository(self.db_path)
        self.ledger = CreditLedger(self.repository)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _orchestrator(self, adapter, ledger=None, **kwargs):
        return GenerationOrchestrator(
            ledger or self.ledger,
            lambda provider_id, model_id: adapter,
            cost_table=COSTS,
            **kwargs
        )

    def _transactions(self, kind):
        return self.ledger.history(
            "acct", TransactionFilter(kind=kind), per_page=100, ascending=True
        ).items

    def assert_reconciles(self):
        balance, ledger_sum = self.ledger.reconcile("acct")
        assert balance == ledger_sum
        assert balance >= 0


class TestAcceptanceScenarios(OrchestratorTestCase):
    """End-to-end credit accounting scenarios."""

    def test_provider_failure_on_third_of_five_tasks(self):
        """Four successes are charged, the failed third task is refunded."""
        self.ledger.top_up("acct", 10)
        adapter = FakeAdapter(failures={2: ProviderTransientError("Timed out.", "fake")})

        run = self._orchestrator(adapter).run(_request())

        assert [t.cost_credits for t in run.tasks] == [2, 2, 2, 2, 2]
        assert run.status is RunStatus.COMPLETED_WITH_ERRORS
        assert len(run.tasks_with(TaskStatus.SUCCEEDED)) == 4
        assert [t.key for t in run.tasks_with(TaskStatus.REFUNDED)] == ["main_headline"]
        assert run.credits_spent == 8
        assert self.ledger.get_balance("acct") == 2
        assert len(self._transactions(TransactionKind.USAGE)) == 5
        refunds = self._transactions(TransactionKind.REFUND)
        assert [r.amount for r in refunds] == [2]
        assert refunds[0].description == "Refund for failed main_headline: Timed out. Please try again."
        self.assert_reconciles()

    def test_unaffordable_task_is_not_charged(self):
        """Balance 3 against a task costing 5 fails without any transaction."""
        self.ledger.top_up("acct", 3)
        adapter = FakeAdapter()
        task = Task(kind=TaskKind.SUBJECT_LINE, provider_id="fake", model_id="fake-model", cost_credits=5)

        run = self._orchestrator(adapter).run(_request(), [task])

        assert task.status is TaskStatus.FAILED
        assert "requires 5 credits but your balance is 3" in task.error
        assert adapter.calls == []
        assert self.ledger.get_balance("acct") == 3
        assert self.ledger.history("acct").total == 1
        assert self._transactions(TransactionKind.REFUND) == []
        assert run.status is RunStatus.COMPLETED_WITH_ERRORS

    def test_top_up_then_reserve(self):
        """0 -> 100 -> 60 with one top-up and one usage entry."""
        assert self.ledger.get_balance("acct") == 0
        assert self.ledger.top_up("acct", 100) == 100
        assert self.ledger.reserve("acct", 40, "usage").balance_after == 60

        kinds = [t.kind for t in self.ledger.history("acct", ascending=True).items]
        assert kinds == [TransactionKind.TOP_UP, TransactionKind.USAGE]


class TestRunExecution(OrchestratorTestCase):
    """Test the per-task state machine."""

    def test_all_tasks_succeed(self):
        """A fully funded run completes and streams nothing without a store."""
        self.ledger.top_up("acct", 100)
        adapter = FakeAdapter()

        run = self._orchestrator(adapter).run(
            _request(product_count=2, generate_images=True, generate_coupon=True)
        )

        assert run.status is RunStatus.COMPLETED
        assert all(t.status is TaskStatus.SUCCEEDED for t in run.tasks)
        assert run.credits_spent == 7 * 2 + 3 * 4
        assert self.ledger.get_balance("acct") == 100 - run.credits_spent
        image_task = run.tasks[-1]
        assert image_task.artifact.ref == "images/spring-sale/product_image.png"
        self.assert_reconciles()

    def test_failure_does_not_affect_other_tasks(self):
        """Artifacts of succeeded tasks are kept when others fail."""
        self.ledger.top_up("acct", 100)
        adapter = FakeAdapter(failures={
            0: ProviderRateLimitedError("Rate limited.", "fake", 429),
            4: ProviderPermanentError("Invalid API key.", "fake", 401),
        })

        run = self._orchestrator(adapter).run(_request(product_count=2))

        statuses = [t.status for t in run.tasks]
        assert statuses == [
            TaskStatus.REFUNDED,
            TaskStatus.SUCCEEDED,
            TaskStatus.SUCCEEDED,
            TaskStatus.SUCCEEDED,
            TaskStatus.REFUNDED,
            TaskStatus.SUCCEEDED,
        ]
        assert run.tasks[5].artifact.fields["headline"] == "Product 1 headline"
        assert run.tasks[4].error == "Invalid API key."
        assert "wait a moment" in run.tasks[0].error
        assert run.credits_refunded == 4
        assert self.ledger.get_balance("acct") == 100 - 8
        self.assert_reconciles()

    def test_preview_text_receives_subject_line(self):
        """The subject line generated earlier feeds the preview text prompt."""
        self.ledger.top_up("acct", 100)
        adapter = FakeAdapter()

        self._orchestrator(adapter).run(_request())

        kind, ctx = adapter.calls[1]
        assert kind is TaskKind.PREVIEW_TEXT
        assert ctx.subject_line == "generated subject_line"
        assert adapter.calls[0][1].subject_line == ""

    def test_preview_text_without_subject_line(self):
        """A failed subject line leaves preview text without one."""
        self.ledger.top_up("acct", 100)
        adapter = FakeAdapter(failures={0: ProviderTransientError("Timed out.", "fake")})

        self._orchestrator(adapter).run(_request())

        assert adapter.calls[1][1].subject_line == ""

    def test_product_context_passed_to_product_tasks(self):
        """Per-product tasks get their own product."""
        self.ledger.top_up("acct", 100)
        adapter = FakeAdapter()

        self._orchestrator(adapter).run(_request(product_count=2))

        products = [ctx.product.name for kind, ctx in adapter.calls if kind is TaskKind.PRODUCT_COPY]
        assert products == ["Product 0", "Product 1"]

    def test_unexpected_adapter_error_is_refunded(self, caplog):
        """An adapter bug is logged and refunded like a provider failure."""
        self.ledger.top_up("acct", 10)
        adapter = FakeAdapter(failures={0: KeyError("candidates")})

        with caplog.at_level(logging.ERROR):
            run = self._orchestrator(adapter).run(_request())

        assert run.tasks[0].status is TaskStatus.REFUNDED
        assert run.tasks[0].error.startswith("Unexpected error:")
        assert "unexpected error" in caplog.text
        self.assert_reconciles()

    def test_usage_description_names_provider_and_task(self):
        """Usage rows describe provider, model and task."""
        self.ledger.top_up("acct", 10)
        adapter = FakeAdapter()
        request = _request()
        task = Task(kind=TaskKind.SUBJECT_LINE, provider_id="openai", model_id="gpt-4o", cost_credits=1)

        self._orchestrator(adapter).run(request, [task])

        usage = self._transactions(TransactionKind.USAGE)[0]
        assert usage.description == "OpenAI (gpt-4o): subject_line"
        assert usage.provider_ref == "openai:gpt-4o:subject_line"

    def test_missing_account_rejected(self):
        """A run needs an account to charge."""
        with pytest.raises(ValueError, match="account_id"):
            self._orchestrator(FakeAdapter()).run(_request(account_id=""))

    def test_repricing_mid_run_keeps_planned_costs(self):
        """Usage and refund rows carry the cost fixed when the run was planned."""
        self.ledger.top_up("acct", 10)
        table = TaskCostTable({"fake": {WILDCARD_MODEL: ModelCost(text=2, image=4)}})
        adapter = RepricingAdapter(table, failures={2: ProviderTransientError("Timed out.", "fake")})
        orchestrator = GenerationOrchestrator(
            self.ledger, lambda provider_id, model_id: adapter, cost_table=table
        )

        run = orchestrator.run(_request())

        assert table.cost("fake", "fake-model", TaskKind.SUBJECT_LINE) == 9
        assert [t.cost_credits for t in run.tasks] == [2, 2, 2, 2, 2]
        assert [u.amount for u in self._transactions(TransactionKind.USAGE)] == [-2] * 5
        assert [r.amount for r in self._transactions(TransactionKind.REFUND)] == [2]
        assert self.ledger.get_balance("acct") == 2
        self.assert_reconciles()

    def test_store_and_product_context_reach_prompts(self):
        """Store and product context from the request are passed to every task."""
        self.ledger.top_up("acct", 100)
        adapter = FakeAdapter()

        self._orchestrator(adapter).run(
            _request(store_context="Family-run pottery", product_context="All items are handmade")
        )

        assert {ctx.store_context for kind, ctx in adapter.calls} == {"Family-run pottery"}
        assert {ctx.product_context for kind, ctx in adapter.calls} == {"All items are handmade"}


class TestRunPolicy(OrchestratorTestCase):
    """Test behaviour after an unaffordable task."""

    def test_best_effort_attempts_every_task(self):
        """Later tasks are still attempted after running out of credits."""
        self.ledger.top_up("acct", 9)
        adapter = FakeAdapter()

        run = self._orchestrator(adapter).run(_request(product_count=1, generate_images=True))

        statuses = [t.status for t in run.tasks]
        assert statuses[:4] == [TaskStatus.SUCCEEDED] * 4
        assert statuses[4:] == [TaskStatus.FAILED] * 3
        assert self.ledger.get_balance("acct") == 1
        assert self._transactions(TransactionKind.REFUND) == []

    def test_halt_on_insufficient_credits(self):
        """Remaining tasks stay planned and are reported as skipped."""
        self.ledger.top_up("acct", 5)
        adapter = FakeAdapter()

        run = self._orchestrator(
            adapter, policy=RunPolicy.HALT_ON_INSUFFICIENT_CREDITS
        ).run(_request(product_count=2))

        statuses = [t.status for t in run.tasks]
        assert statuses[:3] == [TaskStatus.SUCCEEDED, TaskStatus.SUCCEEDED, TaskStatus.FAILED]
        assert statuses[3:] == [TaskStatus.PLANNED] * 3
        assert [r.skipped for r in run.report()] == [False, False, False, True, True, True]
        assert run.status is RunStatus.COMPLETED_WITH_ERRORS
        assert len(adapter.calls) == 2


class TestRunAbort(OrchestratorTestCase):
    """Test fatal errors that stop a run."""

    def test_refund_store_failure_aborts_and_retries_refund(self):
        """A failed refund aborts the run; the live reservation is refunded on abort."""
        self.ledger.top_up("acct", 10)
        ledger = FlakyRefundLedger(self.repository, refund_failures=1)
        adapter = FakeAdapter(failures={1: ProviderTransientError("Timed out.", "fake")})

        run = self._orchestrator(adapter, ledger=ledger).run(_request())

        assert run.status is RunStatus.ABORTED
        assert run.abort_reason == "database is locked"
        statuses = [t.status for t in run.tasks]
        assert statuses == [
            TaskStatus.SUCCEEDED,
            TaskStatus.REFUNDED,
            TaskStatus.PLANNED,
            TaskStatus.PLANNED,
            TaskStatus.PLANNED,
        ]
        assert self.ledger.get_balance("acct") == 8
        self.assert_reconciles()

    def test_unrecoverable_refund_logged_as_alert(self, caplog):
        """When the abort refund also fails the task is failed and alerted."""
        self.ledger.top_up("acct", 10)
        ledger = FlakyRefundLedger(self.repository, refund_failures=2)
        adapter = FakeAdapter(failures={0: ProviderTransientError("Timed out.", "fake")})

        with caplog.at_level(logging.CRITICAL):
            run = self._orchestrator(adapter, ledger=ledger).run(_request())

        assert run.status is RunStatus.ABORTED
        assert run.tasks[0].status is TaskStatus.FAILED
        assert "Reconciliation alert" in caplog.text
        assert self.ledger.get_balance("acct") == 8
        self.assert_reconciles()

    def test_reserve_store_failure_aborts(self):
        """A store failure during reserve ends the run with nothing charged."""
        self.ledger.top_up("acct", 10)
        broken = CreditLedger(LedgerRepository(os.path.join(self.temp_dir, "no", "such", "dir.db")))
        adapter = FakeAdapter()

        run = self._orchestrator(adapter, ledger=broken).run(_request())

        assert run.status is RunStatus.ABORTED
        assert all(t.status is TaskStatus.PLANNED for t in run.tasks)
        assert adapter.calls == []

    def test_campaign_deleted_mid_run(self):
        """An unavailable campaign aborts and refunds the undelivered task."""
        self.ledger.top_up("acct", 10)
        campaigns = VanishingCampaigns(writes_before_failure=1)
        adapter = FakeAdapter()

        run = self._orchestrator(adapter, campaigns=campaigns).run(_request())

        assert run.status is RunStatus.ABORTED
        assert "campaign not found" in run.abort_reason
        assert [t.status for t in run.tasks[:3]] == [
            TaskStatus.SUCCEEDED,
            TaskStatus.REFUNDED,
            TaskStatus.PLANNED,
        ]
        assert list(campaigns.fields) == ["subject_line"]
        assert self.ledger.get_balance("acct") == 8
        self.assert_reconciles()

    def test_interrupt_refunds_reservation(self):
        """An interrupt during a provider call refunds before propagating."""
        self.ledger.top_up("acct", 10)
        adapter = FakeAdapter(failures={0: KeyboardInterrupt()})
        orchestrator = self._orchestrator(adapter)

        with pytest.raises(KeyboardInterrupt):
            orchestrator.run(_request())

        assert self.ledger.get_balance("acct") == 10
        self.assert_reconciles()


class TestCampaignStreaming(OrchestratorTestCase):
    """Test outcomes written to the campaign store."""

    def test_fields_and_errors_written(self):
        """Succeeded fields are stored, failures are marked."""
        self.ledger.top_up("acct", 100)
        store = FileCampaignStore(os.path.join(self.temp_dir, "campaigns"))
        store.create("spring-sale")
        adapter = FakeAdapter(failures={3: ProviderPermanentError("Blocked.", "fake")})

        self._orchestrator(adapter, campaigns=store).run(_request())

        document = store.load("spring-sale")
        assert document["fields"]["subject_line"] == {"subject_line": "generated subject_line"}
        assert document["fields"]["product_copy[0]"]["headline"] == "Product 0 headline"
        assert "main_description" not in document["fields"]
        assert document["errors"] == {"main_description": "Blocked."}


class TestRegenerateAndEstimate(OrchestratorTestCase):
    """Test single-field runs and estimates."""

    def test_regenerate_single_product_field(self):
        """Regeneration charges exactly one task."""
        self.ledger.top_up("acct", 10)
        adapter = FakeAdapter()

        run = self._orchestrator(adapter).regenerate(_request(product_count=3), TaskKind.PRODUCT_COPY, 2)

        assert [t.key for t in run.tasks] == ["product_copy[2]"]
        assert run.status is RunStatus.COMPLETED
        assert adapter.calls[0][1].product.name == "Product 2"
        assert self.ledger.get_balance("acct") == 8

    def test_regenerate_preview_text_uses_known_subject(self):
        """A stored subject line is used when regenerating preview text."""
        self.ledger.top_up("acct", 10)
        adapter = FakeAdapter()

        self._orchestrator(adapter).regenerate(
            _request(subject_line="Spring is here"), TaskKind.PREVIEW_TEXT
        )

        assert adapter.calls[0][1].subject_line == "Spring is here"

    def test_estimate(self):
        """Estimate sums plan-time costs against the balance."""
        self.ledger.top_up("acct", 10)

        estimate = self._orchestrator(FakeAdapter()).estimate(
            _request(product_count=2, generate_images=True)
        )

        assert estimate.copy_credits == 12
        assert estimate.image_credits == 12
        assert estimate.current_balance == 10
        assert not estimate.can_afford
