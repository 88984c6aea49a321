"""Contract shared by every analytical stage.

A stage splits its work into steps (``plan``) and executes one step at a time
(``execute``), returning exactly one of the three outcome variants. Stages never
touch run status; they describe the records a step produced and leave
persistence, retries, progress and cancellation to the orchestrator.
"""

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Type, Union
from uuid import UUID

from pydantic import BaseModel

from ndaflow.pipeline.state import DEFAULT_PERSPECTIVE, StageName
from ndaflow.pipeline.usage import TokenUsage


@dataclass(frozen=True)
class StageRecord:
    """A row a step wants persisted, addressed by its natural key."""

    table: str
    key: Mapping[str, Any]
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class StepSpec:
    """One unit of retryable work inside a stage.

    ``key`` must be stable for the same inputs, since it is how a resumed run
    recognizes steps that already completed.
    """

    key: str
    label: str
    provider: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Success:
    result: Dict[str, Any]
    progress_delta: float = 0.0
    records: Sequence[StageRecord] = ()
    usage: Optional[TokenUsage] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ValidationFailed:
    reason: str
    code: str = "VALIDATION_FAILED"
    suggestion: Optional[str] = None


@dataclass(frozen=True)
class Retryable:
    error: str
    retry_after: Optional[float] = None


StageOutcome = Union[Success, ValidationFailed, Retryable]


async def _never_cancelled() -> bool:
    return False


@dataclass(frozen=True)
class StageContext:
    """Everything a step may read.

    Attributes:
        analysis_id: Run being executed.
        tenant_id: Tenant owning the run.
        document_id: Document under analysis.
        inputs: Merged outputs of earlier stages, keyed by stage name.
        is_cancelled: Query for the run's cancellation flag.
        step: Step being executed; None while planning.
        step_outputs: Outputs of this stage's already completed steps.
        attempt: 1-based attempt number of the current step.
        perspective: Party whose interests risk is scored from.
    """

    analysis_id: UUID
    tenant_id: UUID
    document_id: UUID
    inputs: Mapping[str, Dict[str, Any]] = field(default_factory=dict)
    is_cancelled: Callable[[], Awaitable[bool]] = _never_cancelled
    step: Optional[StepSpec] = None
    step_outputs: Mapping[str, Dict[str, Any]] = field(default_factory=dict)
    attempt: int = 1
    perspective: str = DEFAULT_PERSPECTIVE

    def for_step(self, step: StepSpec, attempt: int = 1) -> "StageContext":
        return dataclasses.replace(self, step=step, attempt=attempt)

    def input(self, stage: StageName) -> Dict[str, Any]:
        return self.inputs.get(stage.value, {})


class Stage(ABC):
    """Base class for the closed set of pipeline stages."""

    name: ClassVar[StageName]
    progress_range: ClassVar[Tuple[int, int]]

    # Pydantic model every Success.result of this stage must satisfy
    result_model: ClassVar[Optional[Type[BaseModel]]] = None

    # Steps of this stage that may run at the same time
    max_concurrency: int = 1

    @abstractmethod
    async def plan(self, context: StageContext) -> List[StepSpec]:
        """Return the stage's steps given earlier outputs.

        Called again after each completed step with ``context.step_outputs``
        filled in, so later steps may depend on earlier ones.
        """

    @abstractmethod
    async def execute(self, context: StageContext) -> StageOutcome:
        """Execute ``context.step``."""

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        """Combine the step results into the stage output seen by later stages."""
        return {"steps": dict(step_outputs)}

    def validate(self, output: Dict[str, Any]) -> Optional[ValidationFailed]:
        """Validation gate applied to the merged output."""
        return None

    def run_updates(self, output: Dict[str, Any]) -> Dict[str, Any]:
        """Run columns the orchestrator should set from the merged output."""
        return {}

    @property
    def start_percent(self) -> int:
        return self.progress_range[0]

    @property
    def end_percent(self) -> int:
        return self.progress_range[1]
