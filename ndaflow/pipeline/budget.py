"""Token usage accounting for a run.

Usage is stored per step in the step ledger, so the run totals are always
recomputed from the ledger rather than incremented. A step that was retried or
replayed on resume therefore counts exactly once.
"""

from typing import Any, Dict, Iterable, Optional

from ndaflow.core.config import settings
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Share of the document budget at which a warning is logged
WARNING_THRESHOLD = 0.8


class BudgetTracker:
    """Aggregates per-step usage into per-stage and total figures."""

    def __init__(
        self,
        token_budget: Optional[int] = None,
        input_price_per_million: Optional[float] = None,
        output_price_per_million: Optional[float] = None,
    ):
        self.token_budget = token_budget or settings.pipeline.document_token_budget
        self.input_price = (
            input_price_per_million
            if input_price_per_million is not None
            else settings.llm.input_price_per_million
        )
        self.output_price = (
            output_price_per_million
            if output_price_per_million is not None
            else settings.llm.output_price_per_million
        )
        self._by_stage: Dict[str, Dict[str, int]] = {}

    def record(self, stage: str, usage: Optional[Dict[str, int]]) -> None:
        if not usage:
            return
        bucket = self._by_stage.setdefault(stage, {"input_tokens": 0, "output_tokens": 0})
        bucket["input_tokens"] += int(usage.get("input_tokens", 0))
        bucket["output_tokens"] += int(usage.get("output_tokens", 0))

    @classmethod
    def from_steps(cls, steps: Iterable[Any], **kwargs: Any) -> "BudgetTracker":
        """Build a tracker from ledger rows carrying ``stage_name`` and ``token_usage``."""
        tracker = cls(**kwargs)
        for step in steps:
            tracker.record(step.stage_name, step.token_usage)
        return tracker

    @property
    def total_input(self) -> int:
        return sum(stage["input_tokens"] for stage in self._by_stage.values())

    @property
    def total_output(self) -> int:
        return sum(stage["output_tokens"] for stage in self._by_stage.values())

    @property
    def total_tokens(self) -> int:
        return self.total_input + self.total_output

    @property
    def estimated_cost(self) -> float:
        cost = (self.total_input * self.input_price + self.total_output * self.output_price) / 1_000_000
        return round(cost, 6)

    @property
    def is_exceeded(self) -> bool:
        return self.total_tokens > self.token_budget

    def usage(self) -> Dict[str, Any]:
        """Usage snapshot stored on the run."""
        if self.total_tokens >= self.token_budget * WARNING_THRESHOLD:
            LOGGER.warning(
                "Token usage approaching document budget",
                extra={"total_tokens": self.total_tokens, "budget": self.token_budget},
            )
        return {
            "by_stage": {name: dict(values) for name, values in sorted(self._by_stage.items())},
            "total": {
                "input_tokens": self.total_input,
                "output_tokens": self.total_output,
                "total_tokens": self.total_tokens,
                "estimated_cost": self.estimated_cost,
            },
            "budget": self.token_budget,
            "exceeded": self.is_exceeded,
        }
