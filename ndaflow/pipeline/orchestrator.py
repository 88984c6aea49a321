"""Pipeline orchestrator.

Drives one analysis run through its stages. Each stage is split into steps;
every completed step is written to the step ledger together with the records it
produced, so a run that is resumed, or re-executed after a worker crash, skips
straight past finished work without calling a provider again.

Per step attempt the orchestrator takes a rate-limiter token for the step's
provider, then checks the cancellation flag, then runs the step under a timeout.
Transient failures are retried with exponential backoff. Run status is only
ever changed here and in the cancellation controller, always through
version-checked updates.

A completed run can be re-scored from another party's perspective. Re-scoring
replays every stage from the ledger except risk scoring and report assembly,
which run again under a ledger name carrying the rescore generation. The run
stays completed throughout.
"""

import asyncio
import dataclasses
import json
import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union
from uuid import UUID

import httpx
import pydantic
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.stop import stop_base

from ndaflow.core.exceptions import (
    AppError,
    InvalidTransitionError,
    RetryableStageError,
    StageContractError,
    StepTimeoutError,
)
from ndaflow.database.models import AnalysisRun
from ndaflow.pipeline.budget import BudgetTracker
from ndaflow.pipeline.cancellation import CancellationController
from ndaflow.pipeline.progress import ProgressEmitter, ProgressEvent
from ndaflow.pipeline.rate_limiter import RateLimiterRegistry
from ndaflow.pipeline.stages.base import (
    Retryable,
    Stage,
    StageContext,
    StageOutcome,
    StepSpec,
    Success,
    ValidationFailed,
)
from ndaflow.pipeline.stages.extract import ExtractStage
from ndaflow.pipeline.state import (
    COMPLETE_STAGE,
    RESCORE_STAGE,
    RESCORED_STAGES,
    STAGE_LABELS,
    STAGE_MESSAGES,
    TERMINAL_STATUSES,
    AnalysisStatus,
    StageName,
    ensure_transition,
)
from ndaflow.repositories.analysis_repository import AnalysisRepository
from ndaflow.repositories.step_repository import StepRepository
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Run columns a stage may set through ``Stage.run_updates``
RUN_RESULT_FIELDS = frozenset({
    "was_truncated",
    "estimated_tokens",
    "overall_risk_score",
    "overall_risk_level",
    "summary",
    "gap_analysis",
})

Heartbeat = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 30.0
    # a step that times out this many times fails without further attempts
    max_timeouts: int = 2


@dataclass(frozen=True)
class RunResult:
    analysis_id: UUID
    status: str
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class _Halt:
    """Why a run stopped before completing."""

    status: AnalysisStatus
    stage: str
    step_label: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    suggestion: Optional[str] = None
    attempts: int = 0
    error: Optional[BaseException] = None


@dataclass
class _RunScope:
    analysis_id: UUID
    context: StageContext
    heartbeat: Optional[Heartbeat] = None
    inputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class stop_after_timeouts(stop_base):
    """Stop once the step has timed out ``max_timeouts`` times."""

    def __init__(self, max_timeouts: int):
        self.max_timeouts = max_timeouts
        self.timeouts = 0

    def __call__(self, retry_state) -> bool:
        if isinstance(retry_state.outcome.exception(), StepTimeoutError):
            self.timeouts += 1
        return self.timeouts >= self.max_timeouts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PipelineOrchestrator:
    """Runs analyses through extract, chunk, classify, score_risk, analyze_gaps and finalize.

    Args:
        session_maker: Factory for database sessions
        stages: Stages in execution order; must include an ExtractStage
        rate_limiters: Limiters keyed by provider name
        progress: Progress emitter
        cancellation: Cancellation controller
        ocr_stage: Stage run first for scanned documents; None disables OCR
        retry: Step retry settings
        step_timeout: Maximum seconds for a single step attempt
        sleep: Awaitable used between retries
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        stages: Sequence[Stage],
        rate_limiters: RateLimiterRegistry,
        progress: ProgressEmitter,
        cancellation: CancellationController,
        ocr_stage: Optional[Stage] = None,
        retry: Optional[RetrySettings] = None,
        step_timeout: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_maker = session_maker
        self.stages = list(stages)
        self.rate_limiters = rate_limiters
        self.progress = progress
        self.cancellation = cancellation
        self.ocr_stage = ocr_stage
        self.retry = retry or RetrySettings()
        self.step_timeout = step_timeout
        self._sleep = sleep

        extract_stages = [stage for stage in self.stages if isinstance(stage, ExtractStage)]
        if not extract_stages:
            raise ValueError("Pipeline requires an ExtractStage")
        self._extract = extract_stages[0]

    async def run(self, analysis_id: UUID, heartbeat: Optional[Heartbeat] = None) -> RunResult:
        """Execute a run until it completes, fails or is cancelled.

        Safe to call again for the same run: completed steps are replayed from
        the ledger and a run that already reached a terminal status is left
        alone.

        Args:
            analysis_id: Run to execute
            heartbeat: Called with every persisted progress event

        Returns:
            Final status of the run
        """
        async with self._session_maker() as session:
            run = await AnalysisRepository(session).require(analysis_id)

        if AnalysisStatus(run.status) in TERMINAL_STATUSES:
            LOGGER.info(f"Analysis {analysis_id} already {run.status}, nothing to run")
            return RunResult(analysis_id, run.status, run.error_code, run.progress_message)

        scope = _RunScope(
            analysis_id=analysis_id,
            context=StageContext(
                analysis_id=run.id,
                tenant_id=run.tenant_id,
                document_id=run.document_id,
                is_cancelled=self.cancellation.checker(run.id),
                perspective=run.perspective,
            ),
            heartbeat=heartbeat,
        )

        LOGGER.info(
            f"Running analysis {analysis_id}",
            extra={"status": run.status, "attempt": run.attempt, "document_id": str(run.document_id)},
        )

        try:
            return await self._run(scope, AnalysisStatus(run.status))
        except InvalidTransitionError as e:
            async with self._session_maker() as session:
                current = await AnalysisRepository(session).require(analysis_id)
            LOGGER.warning(
                f"Analysis {analysis_id} was moved to {current.status} by another writer: {e.message}"
            )
            return RunResult(analysis_id, current.status, current.error_code, current.progress_message)

    async def _run(self, scope: _RunScope, status: AnalysisStatus) -> RunResult:
        if await self.cancellation.is_requested(scope.analysis_id):
            return await self._halt(scope, _Halt(AnalysisStatus.CANCELLED, stage=""))

        if status == AnalysisStatus.PENDING:
            status = await self._preflight(scope)

        if status == AnalysisStatus.PENDING_OCR:
            if self.ocr_stage is not None:
                halt = await self._run_stage(scope, self.ocr_stage)
                if halt:
                    return await self._halt(scope, halt)
            await self._transition(scope, AnalysisStatus.PROCESSING, StageName.EXTRACT.value)
        elif self.ocr_stage is not None and await self._has_ledger(scope, self.ocr_stage):
            # re-entered mid-processing: rebuild the OCR output from the ledger
            halt = await self._run_stage(scope, self.ocr_stage, announce=False)
            if halt:
                return await self._halt(scope, halt)

        for stage in self.stages:
            halt = await self._run_stage(scope, stage)
            if halt:
                return await self._halt(scope, halt)

        return await self._complete(scope)

    async def _preflight(self, scope: _RunScope) -> AnalysisStatus:
        """Decide whether the document needs OCR and leave the pending state."""
        needs_ocr = False
        if self.ocr_stage is not None:
            needs_ocr = await self._extract.requires_ocr(scope.context)
        if needs_ocr:
            LOGGER.info(f"Document for analysis {scope.analysis_id} needs OCR")
            target, stage = AnalysisStatus.PENDING_OCR, StageName.OCR.value
        else:
            target, stage = AnalysisStatus.PROCESSING, StageName.EXTRACT.value
        await self._transition(scope, target, stage, started=True)
        return target

    async def _transition(
        self, scope: _RunScope, target: AnalysisStatus, stage: str, started: bool = False
    ) -> None:
        def mutate(run: AnalysisRun) -> dict:
            ensure_transition(run.status, target.value)
            changes = {
                "status": target.value,
                "progress_stage": stage,
                "progress_message": STAGE_MESSAGES[stage],
                "queue_position": None,
            }
            if started and run.started_at is None:
                changes["started_at"] = _utcnow()
            return changes

        async with self._session_maker() as session:
            await AnalysisRepository(session).apply(scope.analysis_id, mutate)
        await self.progress.publish_current(scope.analysis_id)

    async def _has_ledger(self, scope: _RunScope, stage: Stage) -> bool:
        async with self._session_maker() as session:
            completed = await StepRepository(session).completed_steps(scope.analysis_id, stage.name.value)
        return bool(completed)

    async def _emit(
        self,
        scope: _RunScope,
        stage: Stage,
        percent: float,
        message: str,
        queue_position: Optional[int] = None,
    ) -> None:
        event = await self.progress.emit(
            scope.analysis_id, stage.name.value, percent, message, queue_position=queue_position
        )
        if scope.heartbeat is not None:
            scope.heartbeat(event)

    async def _run_stage(
        self,
        scope: _RunScope,
        stage: Stage,
        announce: bool = True,
        ledger_name: Optional[str] = None,
    ) -> Optional[_Halt]:
        stage_name = stage.name.value
        ledger_name = ledger_name or stage_name
        context = dataclasses.replace(scope.context, inputs=dict(scope.inputs))

        async with self._session_maker() as session:
            completed = await StepRepository(session).completed_steps(scope.analysis_id, ledger_name)
        outputs = {key: step.output for key, step in completed.items()}
        deltas = {key: step.progress_delta or 0.0 for key, step in completed.items()}

        if announce:
            await self._emit(scope, stage, stage.start_percent, STAGE_MESSAGES[stage_name])
        if completed:
            LOGGER.info(
                f"Replaying {len(completed)} completed {ledger_name} steps from the ledger",
                extra={"analysis_id": str(scope.analysis_id)},
            )

        while True:
            steps = await stage.plan(dataclasses.replace(context, step_outputs=dict(outputs)))
            pending = [step for step in steps if step.key not in outputs]
            if not pending:
                break

            window = pending[: max(1, stage.max_concurrency)]
            step_context = dataclasses.replace(context, step_outputs=dict(outputs))
            verdicts = await asyncio.gather(
                *(self._run_step(scope, stage, step_context, step, ledger_name) for step in window)
            )

            halt = None
            for step, verdict in zip(window, verdicts):
                if isinstance(verdict, _Halt):
                    halt = halt or verdict
                    continue
                outputs[step.key] = verdict.result
                deltas[step.key] = verdict.progress_delta
                await self._emit(
                    scope,
                    stage,
                    self._stage_percent(stage, deltas, len(steps)),
                    verdict.message or step.label,
                )
            if halt:
                return halt

        output = stage.merge(context, outputs)
        gate = stage.validate(output)
        if gate is not None:
            return self._validation_halt(stage, None, gate)

        updates = {
            column: value
            for column, value in stage.run_updates(output).items()
            if column in RUN_RESULT_FIELDS
        }
        if updates:
            async with self._session_maker() as session:
                await AnalysisRepository(session).apply(scope.analysis_id, lambda run: updates)

        scope.inputs[stage_name] = output
        await self._refresh_usage(scope.analysis_id)
        if announce:
            await self._emit(scope, stage, stage.end_percent, f"Finished {STAGE_LABELS[stage_name]}")
        return None

    @staticmethod
    def _stage_percent(stage: Stage, deltas: Dict[str, float], step_count: int) -> float:
        done = sum(deltas.values())
        if done <= 0 and step_count:
            done = len(deltas) / step_count
        span = stage.end_percent - stage.start_percent
        # the stage's end percent is reached only once its gate has passed
        return min(stage.start_percent + span * min(done, 1.0), stage.end_percent - 1)

    async def _run_step(
        self, scope: _RunScope, stage: Stage, context: StageContext, step: StepSpec, ledger_name: str
    ) -> Union[Success, _Halt]:
        stage_name = stage.name.value
        attempts = 0
        cancelled = False
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry.max_attempts) | stop_after_timeouts(self.retry.max_timeouts),
            wait=self._wait_strategy(),
            retry=retry_if_exception_type(RetryableStageError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if step.provider:
                        await self._acquire(scope, stage, step)
                    # a cancel may land while the step waits in the provider queue
                    if await self.cancellation.is_requested(scope.analysis_id):
                        cancelled = True
                        break
                    outcome = await self._execute_once(stage, context.for_step(step, attempts))
        except StepTimeoutError as e:
            return self._failure_halt(stage, step, attempts, e, "STEP_TIMEOUT",
                                      f"{step.label} timed out. Please try again later.")
        except RetryableStageError as e:
            return self._failure_halt(stage, step, attempts, e, "RETRIES_EXHAUSTED",
                                      f"{step.label} failed after {attempts} attempts. Please try again later.")
        except StageContractError as e:
            return self._failure_halt(stage, step, attempts, e, "STAGE_CONTRACT_VIOLATION",
                                      f"{STAGE_LABELS[stage_name].capitalize()} produced an invalid result.")
        except AppError as e:
            return self._failure_halt(stage, step, attempts, e, "STEP_FAILED", e.message)
        except Exception as e:
            return self._failure_halt(stage, step, attempts, e, "INTERNAL_ERROR",
                                      f"Unexpected error during {STAGE_LABELS[stage_name]}.")

        if cancelled:
            LOGGER.info(
                f"Cancellation observed before {stage_name}/{step.key}",
                extra={"analysis_id": str(scope.analysis_id), "attempt": attempts},
            )
            return _Halt(AnalysisStatus.CANCELLED, stage=stage_name, step_label=step.label)

        if isinstance(outcome, ValidationFailed):
            return self._validation_halt(stage, step, outcome)

        async with self._session_maker() as session:
            await StepRepository(session).record_step(
                scope.analysis_id,
                ledger_name,
                step.key,
                output=outcome.result,
                records=outcome.records,
                token_usage=outcome.usage.as_dict() if outcome.usage else None,
                progress_delta=outcome.progress_delta,
                attempts=attempts,
            )
        return outcome

    async def _acquire(self, scope: _RunScope, stage: Stage, step: StepSpec) -> None:
        async def on_queued(position: int) -> None:
            await self._emit(
                scope,
                stage,
                stage.start_percent,
                f"Waiting for {step.provider} capacity (position {position} in queue)",
                queue_position=position,
            )

        token = await self.rate_limiters.acquire(step.provider, on_queued=on_queued)
        if token.waited_seconds > 0:
            LOGGER.debug(
                f"Waited {token.waited_seconds:.2f}s for {step.provider} token",
                extra={"analysis_id": str(scope.analysis_id), "step": step.key},
            )

    def _wait_strategy(self) -> Callable[[Any], float]:
        exponential = wait_exponential(multiplier=self.retry.initial_delay, max=self.retry.max_delay)

        def wait(retry_state) -> float:
            delay = exponential(retry_state)
            retry_after = getattr(retry_state.outcome.exception(), "retry_after", None)
            if retry_after:
                delay = max(delay, min(float(retry_after), self.retry.max_delay))
            return delay

        return wait

    async def _execute_once(self, stage: Stage, context: StageContext) -> Union[Success, ValidationFailed]:
        """Run one attempt of a step and check the outcome against the stage contract."""
        step = context.step
        try:
            outcome: StageOutcome = await asyncio.wait_for(stage.execute(context), timeout=self.step_timeout)
        except asyncio.TimeoutError as e:
            raise StepTimeoutError(
                f"{stage.name.value}/{step.key} exceeded {self.step_timeout}s", original_error=e
            ) from e
        except httpx.TransportError as e:
            raise RetryableStageError(f"{stage.name.value}/{step.key} transport error: {e}", original_error=e) from e
        except AppError as e:
            if e.retryable:
                raise RetryableStageError(
                    e.message, retry_after=getattr(e, "retry_after", None), original_error=e
                ) from e
            raise

        if isinstance(outcome, Retryable):
            raise RetryableStageError(outcome.error, retry_after=outcome.retry_after)
        if isinstance(outcome, ValidationFailed):
            return outcome
        if not isinstance(outcome, Success):
            raise StageContractError(
                f"{stage.name.value}/{step.key} returned {type(outcome).__name__}, expected a stage outcome"
            )

        if not 0.0 <= outcome.progress_delta <= 1.0:
            raise StageContractError(
                f"{stage.name.value}/{step.key} reported progress_delta {outcome.progress_delta}"
            )
        if stage.result_model is not None:
            try:
                stage.result_model.model_validate(outcome.result)
            except pydantic.ValidationError as e:
                raise StageContractError(
                    f"{stage.name.value}/{step.key} returned malformed output: {e.error_count()} errors",
                    original_error=e,
                ) from e
        try:
            json.dumps(outcome.result)
        except (TypeError, ValueError) as e:
            raise StageContractError(
                f"{stage.name.value}/{step.key} returned output that cannot be stored: {e}",
                original_error=e,
            ) from e
        return outcome

    def _failure_halt(
        self,
        stage: Stage,
        step: StepSpec,
        attempts: int,
        error: Exception,
        code: str,
        message: str,
    ) -> _Halt:
        LOGGER.error(
            f"Step {stage.name.value}/{step.key} failed: {error}",
            extra={"attempts": attempts, "error_code": code},
            exc_info=error,
        )
        return _Halt(
            AnalysisStatus.FAILED,
            stage=stage.name.value,
            step_label=step.label,
            code=code,
            message=message,
            attempts=attempts,
            error=error,
        )

    @staticmethod
    def _validation_halt(stage: Stage, step: Optional[StepSpec], gate: ValidationFailed) -> _Halt:
        LOGGER.warning(
            f"Validation gate failed after {stage.name.value}: {gate.reason}",
            extra={"error_code": gate.code},
        )
        return _Halt(
            AnalysisStatus.FAILED,
            stage=stage.name.value,
            step_label=step.label if step else None,
            code=gate.code,
            message=gate.reason,
            suggestion=gate.suggestion,
        )

    async def _halt(self, scope: _RunScope, halt: _Halt) -> RunResult:
        await self._refresh_usage(scope.analysis_id)
        if halt.status == AnalysisStatus.CANCELLED:
            run = await self.cancellation.complete(scope.analysis_id, halt.stage or None, halt.step_label)
        else:
            run = await self._mark_failed(scope.analysis_id, halt)
        await self.progress.publish_current(scope.analysis_id)
        return RunResult(scope.analysis_id, run.status, run.error_code, run.progress_message)

    async def _mark_failed(self, analysis_id: UUID, halt: _Halt) -> AnalysisRun:
        failure: Dict[str, Any] = {
            "stage": halt.stage,
            "step": halt.step_label,
            "attempts": halt.attempts,
            "suggestion": halt.suggestion,
            "failed_at": _utcnow().isoformat(),
        }
        if halt.error is not None:
            failure["exception_type"] = type(halt.error).__name__
            failure["detail"] = str(halt.error)
            failure["traceback"] = "".join(traceback.format_exception(halt.error))

        def mutate(run: AnalysisRun) -> dict:
            ensure_transition(run.status, AnalysisStatus.FAILED.value)
            return {
                "status": AnalysisStatus.FAILED.value,
                "error_code": halt.code,
                "error_message": halt.message,
                "progress_message": halt.message,
                "queue_position": None,
                "debug_metadata": {**(run.debug_metadata or {}), "failure": failure},
            }

        async with self._session_maker() as session:
            run = await AnalysisRepository(session).apply(analysis_id, mutate)
        LOGGER.error(
            f"Analysis {analysis_id} failed during {halt.stage}: {halt.message}",
            extra={"error_code": halt.code},
        )
        return run

    async def _refresh_usage(self, analysis_id: UUID) -> None:
        async with self._session_maker() as session:
            steps = await StepRepository(session).all_completed(analysis_id)
            tracker = BudgetTracker.from_steps(steps)
            usage = tracker.usage()

            def mutate(run: AnalysisRun) -> Optional[dict]:
                if run.token_usage == usage and run.estimated_cost == tracker.estimated_cost:
                    return None
                return {"token_usage": usage, "estimated_cost": tracker.estimated_cost}

            await AnalysisRepository(session).apply(analysis_id, mutate)

    async def abandon(self, analysis_id: UUID, message: str, code: str = "WORKER_FAILURE") -> RunResult:
        """Fail a run that no worker managed to finish; terminal runs are left as they are."""
        async with self._session_maker() as session:
            run = await AnalysisRepository(session).require(analysis_id)
        if AnalysisStatus(run.status) in TERMINAL_STATUSES:
            return RunResult(analysis_id, run.status, run.error_code, run.progress_message)

        await self._refresh_usage(analysis_id)
        run = await self._mark_failed(
            analysis_id,
            _Halt(AnalysisStatus.FAILED, stage=run.progress_stage or "", code=code, message=message),
        )
        await self.progress.publish_current(analysis_id)
        return RunResult(analysis_id, run.status, run.error_code, run.progress_message)

    async def rescore(self, analysis_id: UUID, heartbeat: Optional[Heartbeat] = None) -> RunResult:
        """Score a completed run's clauses again from the run's current perspective.

        Does nothing unless a rescore was requested, that is the run is
        completed and its progress stage is ``RESCORE_STAGE``. Safe to call
        again for the same generation: finished batches are replayed.

        Args:
            analysis_id: Run to re-score
            heartbeat: Called with every progress event

        Returns:
            Status of the run, which stays completed
        """
        async with self._session_maker() as session:
            run = await AnalysisRepository(session).require(analysis_id)

        if run.status != AnalysisStatus.COMPLETED.value or run.progress_stage != RESCORE_STAGE:
            LOGGER.info(f"Analysis {analysis_id} has no rescore pending")
            return RunResult(analysis_id, run.status, run.error_code, run.progress_message)

        scope = _RunScope(
            analysis_id=analysis_id,
            context=StageContext(
                analysis_id=run.id,
                tenant_id=run.tenant_id,
                document_id=run.document_id,
                is_cancelled=self.cancellation.checker(run.id),
                perspective=run.perspective,
            ),
            heartbeat=heartbeat,
        )
        generation = run.rescore_generation
        LOGGER.info(
            f"Re-scoring analysis {analysis_id}",
            extra={"perspective": run.perspective, "generation": generation},
        )

        halt = None
        if self.ocr_stage is not None and await self._has_ledger(scope, self.ocr_stage):
            halt = await self._run_stage(scope, self.ocr_stage, announce=False)
        for stage in self.stages:
            if halt:
                break
            ledger_name = None
            if stage.name in RESCORED_STAGES:
                ledger_name = f"{stage.name.value}:rescore-{generation}"
            halt = await self._run_stage(scope, stage, announce=False, ledger_name=ledger_name)

        await self._refresh_usage(analysis_id)
        if halt:
            return await self._finish_rescore(
                analysis_id, halt.message or STAGE_MESSAGES[halt.status.value], failure=halt
            )
        return await self._finish_rescore(analysis_id, STAGE_MESSAGES[COMPLETE_STAGE])

    async def abandon_rescore(self, analysis_id: UUID, message: str, code: str = "WORKER_FAILURE") -> RunResult:
        """Close out a rescore no worker managed to finish."""
        async with self._session_maker() as session:
            run = await AnalysisRepository(session).require(analysis_id)
        if run.progress_stage != RESCORE_STAGE:
            return RunResult(analysis_id, run.status, run.error_code, run.progress_message)
        return await self._finish_rescore(
            analysis_id,
            message,
            failure=_Halt(AnalysisStatus.FAILED, stage=RESCORE_STAGE, code=code, message=message),
        )

    async def _finish_rescore(
        self, analysis_id: UUID, message: str, failure: Optional[_Halt] = None
    ) -> RunResult:
        def mutate(run: AnalysisRun) -> Optional[dict]:
            if run.progress_stage != RESCORE_STAGE:
                return None
            metadata = dict(run.debug_metadata or {})
            metadata.pop("rescore_failure", None)
            if failure is not None:
                metadata["rescore_failure"] = {
                    "stage": failure.stage,
                    "step": failure.step_label,
                    "code": failure.code,
                    "message": failure.message,
                    "failed_at": _utcnow().isoformat(),
                }
            return {
                "progress_stage": COMPLETE_STAGE,
                "progress_percent": 100,
                "progress_message": message if failure is None else f"Re-scoring failed: {message}",
                "queue_position": None,
                "debug_metadata": metadata,
            }

        async with self._session_maker() as session:
            run = await AnalysisRepository(session).apply(analysis_id, mutate)
        await self.progress.publish_current(analysis_id)

        if failure is not None:
            LOGGER.error(
                f"Re-scoring analysis {analysis_id} failed: {message}",
                extra={"error_code": failure.code, "perspective": run.perspective},
            )
            return RunResult(analysis_id, run.status, failure.code, run.progress_message)
        LOGGER.info(
            f"Analysis {analysis_id} re-scored",
            extra={"perspective": run.perspective, "overall_risk_score": run.overall_risk_score},
        )
        return RunResult(analysis_id, run.status, None, run.progress_message)

    async def _complete(self, scope: _RunScope) -> RunResult:
        await self._refresh_usage(scope.analysis_id)
        completed_at = _utcnow()

        def mutate(run: AnalysisRun) -> dict:
            ensure_transition(run.status, AnalysisStatus.COMPLETED.value)
            started_at = _as_utc(run.started_at) if run.started_at else completed_at
            return {
                "status": AnalysisStatus.COMPLETED.value,
                "progress_stage": COMPLETE_STAGE,
                "progress_percent": 100,
                "progress_message": STAGE_MESSAGES[COMPLETE_STAGE],
                "queue_position": None,
                "completed_at": completed_at,
                "processing_time_ms": int((completed_at - started_at).total_seconds() * 1000),
            }

        async with self._session_maker() as session:
            run = await AnalysisRepository(session).apply(scope.analysis_id, mutate)
        await self.progress.publish_current(scope.analysis_id)

        LOGGER.info(
            f"Analysis {scope.analysis_id} completed",
            extra={
                "processing_time_ms": run.processing_time_ms,
                "overall_risk_score": run.overall_risk_score,
            },
        )
        return RunResult(scope.analysis_id, run.status, None, run.progress_message)
