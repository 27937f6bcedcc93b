"""
Cost and usage bookkeeping for billed backends.

Rates are per unit (token) in USD. When a backend does not report unit
counts, they are estimated at ``DEFAULT_CHARS_PER_UNIT`` characters per unit.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHARS_PER_UNIT = 4


@dataclass(frozen=True)
class ModelRate:
    """Per-unit input and output price for one model."""

    input_rate: float
    output_rate: float


DEFAULT_PRICING: dict[str, ModelRate] = {
    "gpt-4.1-2025-04-14": ModelRate(0.00003, 0.00006),
    "gpt-4.1-mini-2025-04-14": ModelRate(0.00000015, 0.0000006),
    "o3-2025-04-16": ModelRate(0.000015, 0.00006),
    "o4-mini-2025-04-16": ModelRate(0.0000003, 0.0000012),
    "claude-opus-4-20250514": ModelRate(0.000015, 0.000075),
    "claude-sonnet-4-20250514": ModelRate(0.000003, 0.000015),
    "claude-3-5-haiku-20241022": ModelRate(0.00000025, 0.00000125),
}


class PricingTable:
    """
    Model id to rate mapping.

    Injected into the accountant so tests can supply deterministic rates.
    """

    def __init__(
        self,
        rates: Optional[Mapping[str, ModelRate]] = None,
        default_rate: Optional[ModelRate] = None,
    ) -> None:
        self._rates = dict(DEFAULT_PRICING if rates is None else rates)
        self.default_rate = default_rate

    @classmethod
    def from_dict(cls, raw: Mapping[str, Mapping[str, float]]) -> "PricingTable":
        """
        Build a table from ``{"model": {"input": 0.1, "output": 0.2}}``.
        """
        return cls({
            model: ModelRate(float(rate["input"]), float(rate["output"]))
            for model, rate in raw.items()
        })

    def rate_for(self, model: str) -> Optional[ModelRate]:
        return self._rates.get(model, self.default_rate)

    def models(self) -> list[str]:
        return sorted(self._rates)


def estimate_units(text: str, chars_per_unit: int = DEFAULT_CHARS_PER_UNIT) -> int:
    """Estimate unit count from text length, rounding up."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_unit)


@dataclass
class UsageReport:
    """Usage of a billed backend by one node invocation."""

    model: str
    input_units: Optional[int] = None
    output_units: Optional[int] = None
    input_text: str = ""
    output_text: str = ""


@dataclass(frozen=True)
class CostRecord:
    """Cost attributed to one node invocation."""

    node_id: str
    model: str
    input_units: int
    output_units: int
    cost: float
    estimated: bool = False


@dataclass
class CostAccountant:
    """
    Running cost and latency totals for one session.

    The total only grows until ``reset`` is called at the start of a new
    session.
    """

    pricing: PricingTable = field(default_factory=PricingTable)
    chars_per_unit: int = DEFAULT_CHARS_PER_UNIT
    _records: list[CostRecord] = field(default_factory=list, init=False)
    _latency_ms: dict[str, float] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def record(self, node_id: str, usage: UsageReport) -> CostRecord:
        """
        Price a usage report and add it to the running total.

        Provider-reported unit counts are used as-is; missing counts are
        estimated from the request and response text.

        Args:
            node_id: Node that consumed the backend
            usage: Usage reported by the executor

        Returns:
            The recorded CostRecord
        """
        estimated = usage.input_units is None or usage.output_units is None
        input_units = usage.input_units
        if input_units is None:
            input_units = estimate_units(usage.input_text, self.chars_per_unit)
        output_units = usage.output_units
        if output_units is None:
            output_units = estimate_units(usage.output_text, self.chars_per_unit)

        rate = self.pricing.rate_for(usage.model)
        if rate is None:
            logger.warning("No pricing for model %r, recording zero cost", usage.model)
            cost = 0.0
        else:
            cost = input_units * rate.input_rate + output_units * rate.output_rate

        record = CostRecord(
            node_id=node_id,
            model=usage.model,
            input_units=input_units,
            output_units=output_units,
            cost=cost,
            estimated=estimated,
        )
        with self._lock:
            self._records.append(record)
        return record

    def record_latency(self, node_id: str, duration_ms: float) -> None:
        with self._lock:
            self._latency_ms[node_id] = duration_ms

    @property
    def total_cost(self) -> float:
        with self._lock:
            return sum(r.cost for r in self._records)

    @property
    def records(self) -> list[CostRecord]:
        with self._lock:
            return list(self._records)

    def node_cost(self, node_id: str) -> float:
        with self._lock:
            return sum(r.cost for r in self._records if r.node_id == node_id)

    def summary(self) -> dict[str, Any]:
        """Per-node and aggregate figures for reporting."""
        with self._lock:
            records = list(self._records)
            latency = dict(self._latency_ms)
        nodes: dict[str, dict[str, Any]] = {}
        for record in records:
            entry = nodes.setdefault(
                record.node_id, {"cost": 0.0, "input_units": 0, "output_units": 0}
            )
            entry["cost"] += record.cost
            entry["input_units"] += record.input_units
            entry["output_units"] += record.output_units
        for node_id, duration_ms in latency.items():
            nodes.setdefault(
                node_id, {"cost": 0.0, "input_units": 0, "output_units": 0}
            )["latency_ms"] = duration_ms
        return {
            "total_cost": sum(r.cost for r in records),
            "total_latency_ms": sum(latency.values()),
            "nodes": nodes,
        }

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._latency_ms.clear()
