"""Workflow orchestrator.

Runs a workflow execution as a sequence of waves. Each wave takes the steps
whose dependencies all have recorded results, admits them through the spend
guard, dispatches them to their providers, and records each result before the
next wave is computed. Every invocation of :meth:`WorkflowOrchestrator.run`
works from the persisted execution record, so a paused execution resumes
exactly where it stopped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable, Collection
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING

from deepflow.budget import Admission, CostPrediction, SpendGuard
from deepflow.config.logging import log_context
from deepflow.errors import (
    AdmissionDenied,
    ConfigurationError,
    DeepflowError,
    ExecutionConflictError,
    InvalidTransitionError,
    PersistenceError,
    ProviderError,
    WorkflowError,
)
from deepflow.providers import GenerationRequest, ProviderRegistry, estimate_tokens
from deepflow.utils.retry import RetryConfig, is_retryable_error, retry_async_call

from .definitions import AgentStep, WorkflowDefinition
from .events import (
    ContentEvent,
    ErrorEvent,
    StatusEvent,
    StepEvent,
    StreamEvent,
    UsageEvent,
    sse_frames,
    usage_summary,
)
from .execution import ExecutionStatus, StepResult, WorkflowExecution
from .graph import next_wave, ready_steps
from .interpolation import build_context, interpolate
from .registry import WorkflowRegistry
from .store import SessionStore

if TYPE_CHECKING:
    from deepflow.config import Settings

logger = logging.getLogger(__name__)

RegistryFactory = Callable[[str], ProviderRegistry]

_RUNNABLE = frozenset({ExecutionStatus.PENDING, ExecutionStatus.PAUSED})
_RUNNING = frozenset({ExecutionStatus.RUNNING})
_WAVE_DONE = object()

STREAM_CLOSED_REASON = "stream closed"


@dataclass
class StepOutcome:
    """What happened to one dispatched step."""

    step: AgentStep
    result: StepResult | None = None
    error: DeepflowError | None = None


class WorkflowOrchestrator:
    """Executes workflow definitions for users under spend control.

    Args:
        workflows: Registered workflow definitions
        store: Persistent session store
        spend_guard: Admission control and usage ledger
        providers: Provider registry shared by all users
        registry_factory: Builds a provider registry per user (e.g. from that
            user's stored credentials); used instead of ``providers``
        settings: Source of retry, parallelism and token defaults
        stream: Push provider output incrementally where supported
    """

    def __init__(
        self,
        workflows: WorkflowRegistry,
        store: SessionStore,
        spend_guard: SpendGuard,
        providers: ProviderRegistry | None = None,
        *,
        registry_factory: RegistryFactory | None = None,
        settings: Settings | None = None,
        retry: RetryConfig | None = None,
        max_parallel_steps: int | None = None,
        default_max_tokens: int | None = None,
        stream: bool = True,
    ):
        if providers is None and registry_factory is None:
            raise ConfigurationError("Either providers or registry_factory is required")
        self.workflows = workflows
        self.store = store
        self.guard = spend_guard
        self._registry_for: RegistryFactory = registry_factory or (lambda _user_id: providers)
        self._retry = retry or RetryConfig(
            max_retries=settings.step_max_retries if settings else 0,
            base_delay=settings.retry_base_delay if settings else 1.0,
            max_delay=settings.retry_max_delay if settings else 30.0,
        )
        self._max_parallel = max_parallel_steps or (settings.max_parallel_steps if settings else 4)
        self._default_max_tokens = default_max_tokens or (
            settings.default_max_tokens if settings else 4000
        )
        self._stream = stream

    # =========================================================================
    # External interface
    # =========================================================================

    def start(self, definition_id: str, user_id: str, initial_input: str) -> WorkflowExecution:
        """Create a pending execution and return it immediately.

        Raises:
            WorkflowNotFoundError: If ``definition_id`` is not registered
        """
        definition = self.workflows.get(definition_id)
        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            definition_id=definition.id,
            user_id=user_id,
            total_steps=len(definition.steps),
            initial_input=initial_input,
        )
        self.store.create(execution)
        logger.info(
            "Started execution %s of %s for user %s",
            execution.id,
            definition.id,
            user_id,
            extra={"execution_id": execution.id, "workflow_id": definition.id},
        )
        return execution

    async def run(self, execution_id: str) -> AsyncIterator[StreamEvent]:
        """Drive a pending or paused execution, yielding stream events.

        Step failures, spend denials and external pauses end the stream
        normally; the outcome is on the execution record. If the consumer
        closes the stream early, steps already dispatched finish and are
        recorded, then the execution is paused so it can be resumed. Any other
        unexpected exception marks it failed before propagating.

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            ExecutionConflictError: If another invocation is already running it
            InvalidTransitionError: If the execution is terminal
        """
        execution = self.store.get(execution_id)
        if execution.status == ExecutionStatus.RUNNING:
            raise ExecutionConflictError(f"Execution {execution_id} is already running")
        if execution.is_terminal:
            raise InvalidTransitionError(
                f"Execution {execution_id} is already {execution.status.value}",
                current=execution.status.value,
                requested=ExecutionStatus.RUNNING.value,
            )
        definition = self.workflows.get(execution.definition_id)

        # Compare-and-set: a concurrent resume of the same id loses here
        resumed = execution.status == ExecutionStatus.PAUSED
        execution = self.store.transition(
            execution_id, ExecutionStatus.RUNNING, _RUNNABLE, reason=""
        )
        logger.info(
            "%s execution %s (%d/%d steps recorded)",
            "Resuming" if resumed else "Running",
            execution_id,
            len(execution.step_results),
            len(definition.steps),
            extra={"execution_id": execution_id, "workflow_id": definition.id},
        )
        try:
            yield StatusEvent(ExecutionStatus.RUNNING.value)
            registry = self._registry_for(execution.user_id)
            async with aclosing(self._run_loop(execution, definition, registry)) as events:
                async for event in events:
                    yield event
            yield UsageEvent(self._usage(execution))
        except (GeneratorExit, asyncio.CancelledError):
            self._interrupt(execution, STREAM_CLOSED_REASON)
            raise
        except Exception as e:
            logger.exception("Execution %s aborted", execution_id)
            error = e if isinstance(e, DeepflowError) else WorkflowError(f"Execution aborted: {e}")
            self._fail(execution, error)
            raise

    async def resume(self, execution_id: str) -> AsyncIterator[StreamEvent]:
        """Resume a paused execution; completed steps are never re-run.

        Raises:
            ExecutionConflictError: If another invocation already resumed it
            InvalidTransitionError: If the execution is pending or terminal
        """
        status = self.store.get_status(execution_id)
        if status not in (ExecutionStatus.PAUSED, ExecutionStatus.RUNNING):
            raise InvalidTransitionError(
                f"Only paused executions can be resumed (execution is {status.value})",
                current=status.value,
                requested=ExecutionStatus.RUNNING.value,
            )
        async with aclosing(self.run(execution_id)) as events:
            async for event in events:
                yield event

    async def execute(
        self, definition_id: str, user_id: str, initial_input: str
    ) -> WorkflowExecution:
        """Start an execution, run it as far as it goes, and return the record."""
        execution = self.start(definition_id, user_id, initial_input)
        async for _ in self.run(execution.id):
            pass
        return self.store.get(execution.id)

    def stream_sse(self, execution_id: str) -> AsyncIterator[str]:
        """Server-sent-event frames for :meth:`run`, ending with ``[DONE]``."""
        return sse_frames(self.run(execution_id))

    def get_status(self, execution_id: str) -> WorkflowExecution:
        return self.store.get(execution_id)

    def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus | str,
        current_step_name: str | None = None,
    ) -> WorkflowExecution:
        """External pause/cancel/fail; honored before the next step starts."""
        return self.store.update_status(execution_id, status, current_step_name=current_step_name)

    def list_executions(
        self, user_id: str | None = None, statuses: Collection[ExecutionStatus] | None = None
    ) -> list[WorkflowExecution]:
        return self.store.list_executions(user_id=user_id, statuses=statuses)

    def stats(self, user_id: str | None = None) -> dict[str, int]:
        return self.store.count_by_status(user_id)

    def preview_cost(self, definition_id: str, user_id: str) -> CostPrediction:
        """Project a whole workflow's cost against the user's limits."""
        definition = self.workflows.get(definition_id)
        registry = self._registry_for(user_id)
        cost = sum(self.estimate_step_cost(step, registry) for step in definition.steps)
        tokens = sum(
            estimate_tokens(step.prompt_template)
            + (step.cost_estimate.max_tokens or self._default_max_tokens)
            for step in definition.steps
        )
        return self.guard.predict_workflow_cost(user_id, cost, tokens)

    def estimate_step_cost(self, step: AgentStep, registry: ProviderRegistry) -> float:
        """Declared estimate, or a worst case priced from the template and max tokens.

        Raises:
            UnknownProviderError: If the estimate must be priced and the model is unmapped
        """
        if step.cost_estimate.estimated_cost is not None:
            return step.cost_estimate.estimated_cost
        max_tokens = step.cost_estimate.max_tokens or self._default_max_tokens
        return registry.estimate_cost(
            step.model, estimate_tokens(step.prompt_template), max_tokens
        ).total_cost

    # =========================================================================
    # Step loop
    # =========================================================================

    async def _run_loop(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        registry: ProviderRegistry,
    ) -> AsyncIterator[StreamEvent]:
        while True:
            # Cooperative cancellation: an external pause/cancel stops the next wave
            status = self.store.get_status(execution.id)
            if status != ExecutionStatus.RUNNING:
                logger.info(
                    "Execution %s is %s; stopping before the next step",
                    execution.id,
                    status.value,
                    extra={"execution_id": execution.id},
                )
                yield StatusEvent(status.value, reason="external status update")
                return

            ready = ready_steps(definition.steps, execution.step_results.keys())
            if not ready:
                if len(execution.step_results) == len(definition.steps):
                    yield self._complete(execution, definition)
                else:
                    error = WorkflowError(
                        "No runnable steps remain but the workflow is incomplete"
                    )
                    for event in self._fail(execution, error):
                        yield event
                return

            wave = next_wave(ready, self._max_parallel)
            admitted: list[tuple[AgentStep, Admission]] = []
            try:
                for step in wave:
                    admission = self.guard.reserve(
                        execution.user_id, self.estimate_step_cost(step, registry)
                    )
                    if not admission.allowed:
                        for _, held in admitted:
                            self.guard.release(execution.user_id, held.reservation_id)
                        for event in self._deny(execution, step, admission):
                            yield event
                        return
                    if admission.warning:
                        execution.warnings.append(
                            {
                                "type": "spend_warning",
                                "step_id": step.id,
                                "message": admission.warning_message,
                            }
                        )
                    admitted.append((step, admission))
            except (ProviderError, PersistenceError) as e:
                for _, held in admitted:
                    self.guard.release(execution.user_id, held.reservation_id)
                for event in self._fail(execution, e, step_id=step.id):
                    yield event
                return

            outcomes: list[StepOutcome] = []
            wave_items = self._dispatch_wave(execution, definition, registry, admitted)
            async with aclosing(wave_items) as items:
                async for item in items:
                    if isinstance(item, StepOutcome):
                        outcomes.append(item)
                    else:
                        yield item

            failed = [outcome for outcome in outcomes if outcome.error is not None]
            if failed:
                first = failed[0]
                for event in self._fail(execution, first.error, step_id=first.step.id):
                    yield event
                return

    async def _dispatch_wave(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        registry: ProviderRegistry,
        admitted: list[tuple[AgentStep, Admission]],
    ) -> AsyncIterator[StreamEvent | StepOutcome]:
        """Run admitted steps concurrently, relaying their events as they arrive.

        Each step records its own result. If the consumer stops listening, the
        steps still in flight are awaited so their results and charges land.
        """
        queue: asyncio.Queue = asyncio.Queue()
        tasks = [
            asyncio.create_task(
                self._run_step(execution, definition, registry, step, admission, queue)
            )
            for step, admission in admitted
        ]
        for task in tasks:
            task.add_done_callback(lambda _task: queue.put_nowait(_WAVE_DONE))

        try:
            remaining = len(tasks)
            while remaining:
                item = await queue.get()
                if item is _WAVE_DONE:
                    remaining -= 1
                    continue
                yield item

            for task in tasks:
                yield task.result()
        finally:
            pending = [task for task in tasks if not task.done()]
            if pending:
                logger.info(
                    "Waiting for %d in-flight step(s) of execution %s",
                    len(pending),
                    execution.id,
                    extra={"execution_id": execution.id},
                )
                for outcome in await asyncio.gather(*pending, return_exceptions=True):
                    if isinstance(outcome, BaseException):
                        logger.error(
                            "In-flight step of execution %s raised: %r",
                            execution.id,
                            outcome,
                            extra={"execution_id": execution.id},
                        )

    async def _run_step(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        registry: ProviderRegistry,
        step: AgentStep,
        admission: Admission,
        queue: asyncio.Queue,
    ) -> StepOutcome:
        with log_context(execution_id=execution.id, step_id=step.id):
            try:
                return await self._execute_step(
                    execution, definition, registry, step, admission, queue
                )
            except BaseException:
                # Unsettled; a settled reservation is already gone
                self.guard.release(execution.user_id, admission.reservation_id)
                raise

    async def _execute_step(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        registry: ProviderRegistry,
        step: AgentStep,
        admission: Admission,
        queue: asyncio.Queue,
    ) -> StepOutcome:
        number = definition.step_ids.index(step.id) + 1
        log_extra = {"model": step.model}
        execution.current_step_name = step.display_name
        await queue.put(StepEvent(step.display_name, number, step.id))

        prompt, gaps = interpolate(
            step.prompt_template,
            build_context(execution.initial_input, execution.step_results),
        )
        for gap in gaps:
            logger.warning(
                "Step %s: unresolved placeholder %s left in prompt",
                step.id,
                gap.placeholder,
                extra=log_extra,
            )
            execution.warnings.append(
                {
                    "type": "interpolation_gap",
                    "step_id": step.id,
                    "placeholder": gap.placeholder,
                }
            )

        request = GenerationRequest(
            model=step.model,
            prompt=prompt,
            system_prompt=step.system_prompt,
            max_tokens=step.cost_estimate.max_tokens or self._default_max_tokens,
            temperature=step.temperature,
            stream=self._stream,
        )
        streamed = False

        async def on_chunk(text: str) -> None:
            nonlocal streamed
            streamed = True
            await queue.put(ContentEvent(text, step.id))

        try:
            if step.provider and registry.resolve(step.model) != step.provider:
                logger.warning(
                    "Step %s declares provider %s but model %s resolves to %s",
                    step.id,
                    step.provider,
                    step.model,
                    registry.resolve(step.model),
                    extra=log_extra,
                )
            result = await retry_async_call(
                lambda: registry.generate(request, on_chunk=on_chunk if self._stream else None),
                self._retry,
                operation=f"step {step.id}",
                # Output already pushed to observers cannot be taken back
                should_retry=lambda exc: not streamed and is_retryable_error(exc),
            )
        except ProviderError as e:
            self.guard.release(execution.user_id, admission.reservation_id)
            logger.error("Step %s failed: %s", step.id, e, extra=log_extra)
            return StepOutcome(step, error=e)

        if not streamed:
            await queue.put(ContentEvent(result.content, step.id))

        step_result = StepResult.from_normalized(step.id, result)
        try:
            self.guard.record_usage(
                execution.user_id,
                step_result.total_cost,
                step_result.input_tokens,
                step_result.output_tokens,
                provider=step_result.provider,
                model=step_result.model,
                execution_id=execution.id,
                step_id=step.id,
                reservation_id=admission.reservation_id,
            )
            execution.record_step(step_result)
            self.store.save_progress(execution)
        except PersistenceError as e:
            logger.error("Step %s result could not be persisted: %s", step.id, e, extra=log_extra)
            return StepOutcome(step, result=step_result, error=e)

        logger.info(
            "Step %s completed (%d tokens, $%.6f, %.0f ms)",
            step.id,
            step_result.total_tokens,
            step_result.total_cost,
            step_result.latency_ms,
            extra={**log_extra, "cost_usd": step_result.total_cost},
        )
        await queue.put(StepEvent(step.display_name, number, step.id, status="completed"))
        return StepOutcome(step, result=step_result)

    # =========================================================================
    # Terminal handling
    # =========================================================================

    def _complete(
        self, execution: WorkflowExecution, definition: WorkflowDefinition
    ) -> StatusEvent:
        final_response = "\n\n".join(
            execution.step_results[step_id].content for step_id in definition.step_ids
        )
        try:
            updated = self.store.transition(
                execution.id,
                ExecutionStatus.COMPLETED,
                _RUNNING,
                final_response=final_response,
            )
        except (ExecutionConflictError, InvalidTransitionError) as e:
            # Paused or cancelled externally after the last step finished
            logger.info("Execution %s not completed: %s", execution.id, e.message)
            return StatusEvent(self.store.get_status(execution.id).value, reason=e.message)
        execution.status = updated.status
        execution.final_response = final_response
        execution.completed_at = updated.completed_at
        return StatusEvent(ExecutionStatus.COMPLETED.value)

    def _deny(
        self, execution: WorkflowExecution, step: AgentStep, admission: Admission
    ) -> list[StreamEvent]:
        """Pause (or fail, when auto-pause is off) after a spend denial."""
        denial = AdmissionDenied(
            admission.reason or "Spend limit reached",
            suggestion=admission.suggestion,
            user_id=execution.user_id,
        )
        logger.info(
            "Execution %s stopped before step %s: %s",
            execution.id,
            step.id,
            denial.reason,
            extra={"execution_id": execution.id, "step_id": step.id},
        )
        if not self.guard.get_limits(execution.user_id).auto_pause_workflows:
            return self._fail(execution, denial, step_id=step.id)

        try:
            self.store.transition(
                execution.id,
                ExecutionStatus.PAUSED,
                _RUNNING,
                reason=denial.reason,
                current_step_name=step.display_name,
            )
        except (ExecutionConflictError, InvalidTransitionError) as e:
            return [StatusEvent(self.store.get_status(execution.id).value, reason=e.message)]
        execution.status = ExecutionStatus.PAUSED
        execution.status_reason = denial.reason
        return [StatusEvent(ExecutionStatus.PAUSED.value, reason=denial.reason)]

    def _interrupt(self, execution: WorkflowExecution, reason: str) -> None:
        """Pause a still-running execution whose stream was abandoned."""
        try:
            self.store.transition(execution.id, ExecutionStatus.PAUSED, _RUNNING, reason=reason)
        except (ExecutionConflictError, InvalidTransitionError):
            # Already completed, failed or paused before the stream closed
            return
        except PersistenceError:
            logger.exception("Execution %s could not be paused after %s", execution.id, reason)
            return
        execution.status = ExecutionStatus.PAUSED
        execution.status_reason = reason
        logger.warning(
            "Execution %s paused: %s (%d/%d steps recorded)",
            execution.id,
            reason,
            len(execution.step_results),
            execution.total_steps,
            extra={"execution_id": execution.id},
        )

    def _fail(
        self, execution: WorkflowExecution, error: DeepflowError, step_id: str | None = None
    ) -> list[StreamEvent]:
        payload = {
            "kind": error.code,
            "message": error.message,
            "step_id": step_id,
            "details": error.details,
        }
        events: list[StreamEvent] = [ErrorEvent(error.code, error.message, step_id)]
        try:
            self.store.transition(execution.id, ExecutionStatus.FAILED, _RUNNING, error=payload)
        except (ExecutionConflictError, InvalidTransitionError) as e:
            logger.warning("Execution %s could not be marked failed: %s", execution.id, e.message)
            return events
        except PersistenceError:
            logger.exception("Execution %s failed and the failure could not be saved", execution.id)
            return events
        execution.status = ExecutionStatus.FAILED
        execution.error = payload
        events.append(StatusEvent(ExecutionStatus.FAILED.value, reason=error.message))
        return events

    def _usage(self, execution: WorkflowExecution) -> dict:
        summary = usage_summary(execution.step_results.values())
        summary["execution_cost"] = execution.total_cost
        return summary
