"""Tests for cost accounting."""

import logging

import pytest

from promptdag.accounting import (
    DEFAULT_PRICING,
    CostAccountant,
    ModelRate,
    PricingTable,
    UsageReport,
    estimate_units,
)


@pytest.fixture
def accountant() -> CostAccountant:
    return CostAccountant(PricingTable({"m": ModelRate(0.01, 0.02)}))


class TestPricingTable:
    def test_defaults(self) -> None:
        table = PricingTable()

        assert table.models() == sorted(DEFAULT_PRICING)
        assert table.rate_for("gpt-4.1-2025-04-14") == ModelRate(0.00003, 0.00006)
        assert table.rate_for("unknown") is None

    def test_default_rate(self) -> None:
        table = PricingTable({}, default_rate=ModelRate(1, 1))

        assert table.rate_for("anything") == ModelRate(1, 1)

    def test_from_dict(self) -> None:
        table = PricingTable.from_dict({"m": {"input": 0.1, "output": 0.2}})

        assert table.rate_for("m") == ModelRate(0.1, 0.2)


class TestEstimateUnits:
    def test_rounds_up(self) -> None:
        assert estimate_units("") == 0
        assert estimate_units("abcd") == 1
        assert estimate_units("abcde") == 2
        assert estimate_units("abcdef", chars_per_unit=3) == 2


class TestCostAccountant:
    """Test CostAccountant functionality."""

    def test_reported_units(self, accountant: CostAccountant) -> None:
        record = accountant.record("llm", UsageReport("m", input_units=10, output_units=5))

        assert record.cost == pytest.approx(0.2)
        assert not record.estimated
        assert accountant.total_cost == pytest.approx(0.2)

    def test_estimated_units(self, accountant: CostAccountant) -> None:
        record = accountant.record(
            "llm", UsageReport("m", input_text="a" * 8, output_text="b" * 4)
        )

        assert record.estimated
        assert (record.input_units, record.output_units) == (2, 1)
        assert record.cost == pytest.approx(0.04)

    def test_unknown_model_costs_nothing(
        self, accountant: CostAccountant, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="promptdag.accounting"):
            record = accountant.record("llm", UsageReport("mystery", 100, 100))

        assert record.cost == 0.0
        assert "mystery" in caplog.text

    def test_total_grows(self, accountant: CostAccountant) -> None:
        totals = []
        for units in (1, 0, 3):
            accountant.record("llm", UsageReport("m", units, units))
            totals.append(accountant.total_cost)

        assert totals == sorted(totals)

    def test_summary_and_reset(self, accountant: CostAccountant) -> None:
        accountant.record("a", UsageReport("m", 1, 1))
        accountant.record("a", UsageReport("m", 1, 1))
        accountant.record_latency("a", 5.0)
        accountant.record_latency("b", 7.0)

        summary = accountant.summary()

        assert summary["nodes"]["a"]["input_units"] == 2
        assert summary["nodes"]["a"]["latency_ms"] == 5.0
        assert summary["nodes"]["b"]["cost"] == 0.0
        assert summary["total_latency_ms"] == 12.0
        assert accountant.node_cost("a") == pytest.approx(0.06)

        accountant.reset()

        assert accountant.total_cost == 0
        assert accountant.records == []
