"""
Cost Ledger - Running cost estimate from per-task usage counters

One entry is appended per finalized task. The cumulative cost is defined
as the sum of all entries' estimated costs; it is computed with
math.fsum so the total does not depend on the order entries were tracked
in (within COST_EPSILON).
"""
from __future__ import annotations
import math
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from batch_engine.utils.logging_config import log_cost
from batch_engine.utils.unit_pricing import (
    DEFAULT_MODEL,
    UnitPrice,
    get_unit_price,
    is_expensive_model,
)

logger = logging.getLogger(__name__)

# Maximum drift between get_cumulative_cost() and the sum of entry costs
COST_EPSILON = 1e-9


@dataclass(frozen=True)
class UnitUsage:
    """Resource-usage counters reported for one task"""

    input_units: int = 0
    output_units: int = 0
    auxiliary_units: int = 0

    @property
    def total_units(self) -> int:
        return self.input_units + self.output_units + self.auxiliary_units

    @classmethod
    def from_value(cls, value: Any) -> Optional[UnitUsage]:
        """
        Build usage from a UnitUsage or a mapping

        Mappings may use input_units/output_units/auxiliary_units or the
        provider-style input_tokens/output_tokens/image_tokens keys.
        """
        if value is None:
            return None
        if isinstance(value, UnitUsage):
            return value
        if isinstance(value, dict):
            return cls(
                input_units=int(value.get('input_units', value.get('input_tokens', 0))),
                output_units=int(value.get('output_units', value.get('output_tokens', 0))),
                auxiliary_units=int(value.get('auxiliary_units', value.get('image_tokens', 0))),
            )
        return None


@dataclass(frozen=True)
class CostBreakdown:
    """Cost split by usage counter"""

    input_cost: float = 0.0
    output_cost: float = 0.0
    auxiliary_cost: float = 0.0
    currency: str = "USD"

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost + self.auxiliary_cost


@dataclass(frozen=True)
class CostLedgerEntry:
    """One tracked task's usage and its estimated cost"""

    units: UnitUsage
    estimated_cost: float
    task_id: Optional[str] = None


def extract_usage(value: Any) -> Optional[UnitUsage]:
    """
    Default usage extractor for work-function results

    Looks for a `usage` attribute or key on the result.
    """
    if value is None:
        return None
    usage = value.get('usage') if isinstance(value, dict) else getattr(value, 'usage', None)
    return UnitUsage.from_value(usage)


class CostLedger:
    """
    Accumulates per-task usage into a running cost estimate

    Uses a pluggable price table (model id -> UnitPrice). Appends are
    synchronized; the entry list is append-only.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        price_table: Optional[Dict[str, UnitPrice]] = None,
    ):
        """
        Initialize cost ledger

        Args:
            model: Model whose pricing applies
            price_table: Custom price table (built-in table if omitted)
        """
        self.model = model
        self.price_table = price_table
        self.pricing = get_unit_price(model, price_table)
        self._entries: List[CostLedgerEntry] = []
        self._lock = threading.Lock()

    def calculate_cost(self, usage: UnitUsage) -> CostBreakdown:
        """Cost of a usage record under this ledger's pricing"""
        return CostBreakdown(
            input_cost=(usage.input_units / 1_000_000) * self.pricing.input_per_million,
            output_cost=(usage.output_units / 1_000_000) * self.pricing.output_per_million,
            auxiliary_cost=(usage.auxiliary_units / 1_000_000) * self.pricing.auxiliary_per_million,
        )

    def track_usage(self, usage: UnitUsage, task_id: Optional[str] = None) -> CostLedgerEntry:
        """
        Append one task's usage to the ledger

        Args:
            usage: Usage counters for the task
            task_id: Optional task identifier

        Returns:
            The appended entry
        """
        entry = CostLedgerEntry(
            units=usage,
            estimated_cost=self.calculate_cost(usage).total_cost,
            task_id=task_id,
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    @property
    def entries(self) -> List[CostLedgerEntry]:
        with self._lock:
            return list(self._entries)

    def get_cumulative_cost(self) -> float:
        """Sum of all entries' estimated costs"""
        return math.fsum(entry.estimated_cost for entry in self.entries)

    def get_total_usage(self) -> UnitUsage:
        entries = self.entries
        return UnitUsage(
            input_units=sum(e.units.input_units for e in entries),
            output_units=sum(e.units.output_units for e in entries),
            auxiliary_units=sum(e.units.auxiliary_units for e in entries),
        )

    def get_cost_breakdown(self) -> CostBreakdown:
        return self.calculate_cost(self.get_total_usage())

    def estimate_batch_cost(
        self,
        count: int,
        avg_input_units: int,
        avg_output_units: int,
        avg_auxiliary_units: int = 0,
    ) -> CostBreakdown:
        """
        Project the cost of a batch before running it

        Args:
            count: Number of tasks
            avg_input_units: Expected input units per task
            avg_output_units: Expected output units per task
            avg_auxiliary_units: Expected auxiliary units per task

        Returns:
            CostBreakdown for the whole batch
        """
        single = self.calculate_cost(UnitUsage(avg_input_units, avg_output_units, avg_auxiliary_units))
        return CostBreakdown(
            input_cost=single.input_cost * count,
            output_cost=single.output_cost * count,
            auxiliary_cost=single.auxiliary_cost * count,
        )

    def get_optimization_tips(self) -> List[str]:
        """Heuristic suggestions based on tracked usage"""
        tips = []
        usage = self.get_total_usage()

        if usage.output_units > usage.input_units * 2:
            tips.append("Output units dominate cost: consider reducing max output length")

        if is_expensive_model(self.model, price_table=self.price_table):
            tips.append(f"{self.model} is a premium model: a cheaper tier could cut cost by 80-95%")

        if usage.total_units > 100_000:
            tips.append("Use prompt caching for repeated prompts to reduce input cost")

        return tips

    @staticmethod
    def format_cost(cost: float) -> str:
        if 0 < cost < 0.01:
            return f"{cost * 100:.4f}¢"
        return f"${cost:.4f}"

    def log_summary(self) -> None:
        """Log a cost summary with optimization tips"""
        usage = self.get_total_usage()
        breakdown = self.get_cost_breakdown()

        log_cost(logger, self.model, usage.input_units, usage.output_units, self.get_cumulative_cost())
        logger.info(
            f"Cost breakdown: input {self.format_cost(breakdown.input_cost)}, "
            f"output {self.format_cost(breakdown.output_cost)}, "
            f"aux {self.format_cost(breakdown.auxiliary_cost)} "
            f"({usage.auxiliary_units:,} aux units)"
        )
        for tip in self.get_optimization_tips():
            logger.info(f"Tip: {tip}")

    def reset(self) -> None:
        with self._lock:
            self._entries = []
