"""Tests for cost accounting."""

from datetime import datetime, timedelta, timezone

import pytest

from llm.cost_tracking import (
    DEFAULT_PRICING,
    CostAccountant,
    CostLedger,
    CostRecord,
    InMemoryCostLedger,
    RequestType,
    calculate_cost,
    get_pricing,
)


class TestPricing:

    def test_exact_model(self):
        assert get_pricing("gpt-4o") == (0.0025, 0.01)

    def test_logical_alias_uses_base_model(self):
        assert get_pricing("claude-sonnet-4-5") == get_pricing("claude-sonnet-4-5-20250929")

    def test_google_prefix_is_stripped(self):
        assert get_pricing("models/gemini-2.5-flash") == (0.0003, 0.0025)

    def test_unknown_model_uses_default(self):
        assert get_pricing("mystery-model") == DEFAULT_PRICING

    def test_cost_is_rounded(self):
        input_cost, output_cost, total = calculate_cost("gpt-4o", 1000, 500)

        assert input_cost == 0.0025
        assert output_cost == 0.005
        assert total == 0.0075


class TestCostAccountant:

    @pytest.mark.asyncio
    async def test_record_is_appended(self):
        ledger = InMemoryCostLedger()
        accountant = CostAccountant(ledger)

        record = await accountant.record(
            tenant_id="tenant-1",
            agent_id="agent-1",
            session_id=None,
            user_id="user-1",
            provider="openai",
            model="gpt-4o",
            input_tokens=300,
            output_tokens=70,
            duration_ms=1200,
            tool_call_count=1,
            request_type=RequestType.STATELESS,
        )

        assert ledger.records["tenant-1"] == [record]
        assert record.total_tokens == 370
        assert record.request_type == RequestType.STATELESS

    @pytest.mark.asyncio
    async def test_ledger_failure_is_swallowed(self):
        class BrokenLedger(CostLedger):
            async def append(self, record):
                raise ConnectionError("ledger down")

        record = await CostAccountant(BrokenLedger()).record(
            "tenant-1", None, None, None, "openai", "gpt-4o", 10, 10, 5,
        )

        assert record.total_tokens == 20


class TestInMemoryCostLedger:

    @pytest.mark.asyncio
    async def test_summary_groups_by_model_and_provider(self):
        ledger = InMemoryCostLedger()
        accountant = CostAccountant(ledger)
        await accountant.record("tenant-1", "a", None, None, "openai", "gpt-4o", 1000, 0, 10)
        await accountant.record("tenant-1", "a", None, None, "openai", "gpt-4o", 1000, 0, 10)
        await accountant.record("tenant-1", "a", None, None, "google", "models/gemini-2.5-flash", 100, 100, 10)
        await accountant.record("tenant-2", "b", None, None, "openai", "gpt-4o", 1000, 0, 10)

        summary = await ledger.summarize("tenant-1")

        assert summary["totals"]["requests"] == 3
        assert summary["by_model"]["gpt-4o"]["requests"] == 2
        assert summary["by_model"]["gpt-4o"]["cost"] == pytest.approx(0.005)
        assert summary["by_provider"]["google"]["tokens"] == 200

    @pytest.mark.asyncio
    async def test_summary_window(self):
        ledger = InMemoryCostLedger()
        await ledger.append(CostRecord(
            tenant_id="tenant-1",
            provider="openai",
            model="gpt-4o",
            total_tokens=10,
            created_at=datetime.now(timezone.utc) - timedelta(days=45),
        ))

        summary = await ledger.summarize("tenant-1", days=30)

        assert summary["totals"]["requests"] == 0
