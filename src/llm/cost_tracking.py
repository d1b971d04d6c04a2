"""Cost and usage tracking for LLM operations."""

import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .providers import MODEL_CONFIGS, base_model_name

logger = logging.getLogger(__name__)


class RequestType(str, Enum):
    STREAMING = "streaming"
    NON_STREAMING = "non-streaming"
    STATELESS = "stateless"


# Price per 1K tokens: (input, output)
MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    # OpenAI
    "gpt-5.2": (0.00175, 0.014),
    "gpt-5.2-pro": (0.021, 0.168),
    "gpt-5.1": (0.00125, 0.01),
    "gpt-5": (0.00125, 0.01),
    "gpt-5-mini": (0.00025, 0.002),
    "gpt-5-nano": (0.00005, 0.0004),
    "o3": (0.002, 0.008),
    "o3-pro": (0.02, 0.08),
    "o4-mini": (0.0011, 0.0044),
    "o3-mini": (0.0011, 0.0044),
    "gpt-4.1": (0.0025, 0.01),
    "gpt-4.1-mini": (0.00005, 0.0002),
    "gpt-4.1-nano": (0.0001, 0.0004),
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    # Anthropic
    "claude-opus-4-5-20251101": (0.005, 0.025),
    "claude-sonnet-4-5-20250929": (0.003, 0.015),
    "claude-sonnet-4-20250514": (0.003, 0.015),
    "claude-haiku-4-5-20251001": (0.001, 0.005),
    # Google
    "gemini-3-pro-preview": (0.00125, 0.01),
    "gemini-3-flash-preview": (0.0003, 0.0025),
    "gemini-2.5-pro": (0.00125, 0.01),
    "gemini-2.5-flash": (0.0003, 0.0025),
    "gemini-2.5-flash-lite": (0.00015, 0.001),
}

DEFAULT_PRICING: Tuple[float, float] = (0.001, 0.002)


def get_pricing(model: str) -> Tuple[float, float]:
    """Price lookup: exact model, logical alias target, base name, then default."""
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]

    config = MODEL_CONFIGS.get(model)
    if config and config.base_model in MODEL_PRICING:
        return MODEL_PRICING[config.base_model]

    base = base_model_name(model)
    if base in MODEL_PRICING:
        return MODEL_PRICING[base]
    config = MODEL_CONFIGS.get(base)
    if config and config.base_model in MODEL_PRICING:
        return MODEL_PRICING[config.base_model]

    return DEFAULT_PRICING


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> Tuple[float, float, float]:
    """Return (input_cost, output_cost, total_cost) rounded to 6 decimals."""
    input_price, output_price = get_pricing(model)
    input_cost = round(input_tokens / 1000 * input_price, 6)
    output_cost = round(output_tokens / 1000 * output_price, 6)
    return input_cost, output_cost, round(input_cost + output_cost, 6)


class CostRecord(BaseModel):
    """One usage event, produced once per orchestration turn."""
    model_config = ConfigDict(protected_namespaces=())

    tenant_id: str
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    duration_ms: int = 0
    tool_call_count: int = 0
    request_type: RequestType = RequestType.NON_STREAMING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CostLedger(ABC):
    """External sink for cost records."""

    @abstractmethod
    async def append(self, record: CostRecord) -> None:
        ...


class InMemoryCostLedger(CostLedger):
    """
    Keep cost records in process memory.

    Records are kept per tenant; summaries aggregate them by model and
    provider the way usage dashboards expect.
    """

    def __init__(self):
        self.records: Dict[str, List[CostRecord]] = defaultdict(list)

    async def append(self, record: CostRecord) -> None:
        self.records[record.tenant_id].append(record)

    async def summarize(self, tenant_id: str, days: int = 30) -> Dict[str, object]:
        """
        Aggregate usage for a tenant.

        Args:
            tenant_id: Tenant identifier
            days: Look-back window in days

        Returns:
            Totals plus per-model and per-provider breakdowns
        """
        since = datetime.now(timezone.utc) - timedelta(days=days)
        by_model = defaultdict(lambda: {"requests": 0, "tokens": 0, "cost": 0.0})
        by_provider = defaultdict(lambda: {"requests": 0, "tokens": 0, "cost": 0.0})
        totals = {"requests": 0, "input_tokens": 0, "output_tokens": 0, "tokens": 0, "cost": 0.0}

        for record in self.records.get(tenant_id, []):
            if record.created_at < since:
                continue
            totals["requests"] += 1
            totals["input_tokens"] += record.input_tokens
            totals["output_tokens"] += record.output_tokens
            totals["tokens"] += record.total_tokens
            totals["cost"] += record.total_cost

            by_model[record.model]["requests"] += 1
            by_model[record.model]["tokens"] += record.total_tokens
            by_model[record.model]["cost"] += record.total_cost

            by_provider[record.provider]["requests"] += 1
            by_provider[record.provider]["tokens"] += record.total_tokens
            by_provider[record.provider]["cost"] += record.total_cost

        totals["cost"] = round(totals["cost"], 6)
        return {
            "tenant_id": tenant_id,
            "days": days,
            "totals": totals,
            "by_model": dict(by_model),
            "by_provider": dict(by_provider),
        }


class CostAccountant:
    """Price token usage and forward one record per turn to the ledger."""

    def __init__(self, ledger: CostLedger):
        self.ledger = ledger

    async def record(
        self,
        tenant_id: str,
        agent_id: Optional[str],
        session_id: Optional[str],
        user_id: Optional[str],
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        duration_ms: int,
        tool_call_count: int = 0,
        request_type: RequestType = RequestType.NON_STREAMING,
    ) -> CostRecord:
        """
        Compute cost and append it to the ledger.

        Token counts must already be aggregated across every step of the
        turn. A ledger failure is logged and does not propagate.
        """
        input_cost, output_cost, total_cost = calculate_cost(model, input_tokens, output_tokens)
        record = CostRecord(
            tenant_id=tenant_id,
            agent_id=agent_id,
            session_id=session_id,
            user_id=user_id,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=total_cost,
            duration_ms=duration_ms,
            tool_call_count=tool_call_count,
            request_type=request_type,
        )

        try:
            await self.ledger.append(record)
        except Exception as e:
            logger.error(f"Failed to write cost record for tenant {tenant_id}, model {model}: {e}")

        logger.debug(
            f"Tracked usage for {tenant_id}: {model} ({provider}), "
            f"{record.total_tokens} tokens, ${total_cost:.6f}"
        )
        return record


def elapsed_ms(started: float) -> int:
    """Milliseconds since a `time.monotonic()` reading."""
    return int((time.monotonic() - started) * 1000)
