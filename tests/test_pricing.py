"""
Unit tests for task pricing.

Tests cost lookup order, validation and campaign estimates.
"""

import pytest

from campaign_credits.core.pricing import (
    DEFAULT_COST_TABLE,
    WILDCARD_MODEL,
    ModelCost,
    TaskCostTable,
    UnknownCostError,
    estimate_campaign_cost
)
from campaign_credits.core.tasks import Task, TaskKind


class TestDefaultCosts:
    """Test the built-in cost table."""

    @pytest.mark.parametrize("model,expected", [
        ("gpt-4o", 5),
        ("gpt-4-turbo", 5),
        ("gpt-4o-mini", 1),
        ("gpt-5-unknown", 1),
    ])
    def test_openai_text_costs(self, model, expected):
        """OpenAI text costs by model, unknown models use the wildcard."""
        assert DEFAULT_COST_TABLE.cost("openai", model, TaskKind.SUBJECT_LINE) == expected

    def test_gemini_image_costs_by_tier(self):
        """Flash image models are cheaper than pro models."""
        assert DEFAULT_COST_TABLE.cost("gemini", "gemini-2.5-flash-image", TaskKind.MAIN_IMAGE) == 3
        assert DEFAULT_COST_TABLE.cost("gemini", "gemini-3-pro-image-preview", TaskKind.PRODUCT_IMAGE) == 10

    def test_openai_has_no_image_cost(self):
        """Image tasks cannot be priced on a text-only provider."""
        with pytest.raises(UnknownCostError, match="No image cost"):
            DEFAULT_COST_TABLE.cost("openai", "gpt-4o", TaskKind.MAIN_IMAGE)

    def test_unknown_provider(self):
        """Unknown providers are rejected."""
        with pytest.raises(UnknownCostError, match="Unsupported provider"):
            DEFAULT_COST_TABLE.cost("anthropic", "claude", TaskKind.SUBJECT_LINE)

    def test_unknown_cost_is_value_error(self):
        """Callers can treat pricing failures as invalid input."""
        assert issubclass(UnknownCostError, ValueError)


class TestCostTableLookup:
    """Test override and wildcard resolution."""

    def test_override_wins_over_capability_default(self):
        """Per-kind overrides take precedence."""
        table = TaskCostTable({
            "openai": {"gpt-4o": ModelCost(text=5, overrides={TaskKind.PRODUCT_COPY: 7})}
        })

        assert table.cost("openai", "gpt-4o", TaskKind.PRODUCT_COPY) == 7
        assert table.cost("openai", "gpt-4o", TaskKind.MAIN_HEADLINE) == 5

    def test_model_without_capability_falls_back_to_wildcard(self):
        """A model entry without an image price uses the wildcard's."""
        table = TaskCostTable({
            "gemini": {
                "gemini-2.5-flash": ModelCost(text=2),
                WILDCARD_MODEL: ModelCost(image=4),
            }
        })

        assert table.cost("gemini", "gemini-2.5-flash", TaskKind.MAIN_IMAGE) == 4
        assert table.cost("gemini", "gemini-2.5-flash", TaskKind.SUBJECT_LINE) == 2

    def test_missing_model_without_wildcard(self):
        """No wildcard means unknown models cannot be priced."""
        table = TaskCostTable({"openai": {"gpt-4o": ModelCost(text=5)}})

        with pytest.raises(UnknownCostError):
            table.cost("openai", "gpt-4o-mini", TaskKind.SUBJECT_LINE)


class TestModelCostValidation:
    """Test cost values are positive integers."""

    @pytest.mark.parametrize("value", [0, -1, 2.5, True, "3"])
    def test_invalid_costs_rejected(self, value):
        """Zero, negative, fractional and non-integer costs are invalid."""
        with pytest.raises(ValueError, match="positive integer"):
            ModelCost(text=value)

    def test_invalid_override_rejected(self):
        """Overrides are validated like defaults."""
        with pytest.raises(ValueError, match="main_image"):
            ModelCost(image=3, overrides={TaskKind.MAIN_IMAGE: 0})


class TestCampaignEstimate:
    """Test campaign cost estimates."""

    def _task(self, kind: TaskKind, cost: int) -> Task:
        return Task(kind=kind, provider_id="p", model_id="m", cost_credits=cost)

    def test_estimate_splits_copy_and_images(self):
        """Copy and image credits are summed separately."""
        tasks = [
            self._task(TaskKind.SUBJECT_LINE, 1),
            self._task(TaskKind.PRODUCT_COPY, 2),
            self._task(TaskKind.MAIN_IMAGE, 3),
            self._task(TaskKind.PRODUCT_IMAGE, 3),
        ]

        estimate = estimate_campaign_cost(tasks, current_balance=10)

        assert estimate.copy_credits == 3
        assert estimate.image_credits == 6
        assert estimate.total_credits == 9
        assert estimate.can_afford

    def test_estimate_cannot_afford(self):
        """Balance below the total is reported."""
        estimate = estimate_campaign_cost([self._task(TaskKind.MAIN_IMAGE, 10)], current_balance=9)

        assert not estimate.can_afford
