"""
Pipeline Runner - execute a prompt pipeline step by step.

Key behaviors:
- Validates before executing (errors refuse to start)
- Runs steps in declaration order; conditions jump by step name
- Threads an immutable variable context from step to step
- Applies continueOnError and the pipeline onError policy (stop/continue/retry)
- Supports dry-run mode (render only, no completion calls)
- Checks a cooperative cancel signal at step boundaries
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

from prompt_chain.config import Settings, get_settings
from prompt_chain.errors import (
    ConditionEvaluationError,
    ConfigurationError,
    LoopBoundViolation,
    PipelineValidationError,
)
from prompt_chain.observability import get_logger, with_trace_context

from .conditions import evaluate
from .context import VariableContext
from .loops import LoopController
from .models import (
    OnErrorPolicy,
    Pipeline,
    PipelineResult,
    PipelineStep,
    RunState,
    StepResult,
)
from .template import render
from .validator import validate_pipeline

if TYPE_CHECKING:
    from prompt_chain.completion import CompletionClient

logger = get_logger(__name__)

ProgressCallback = Callable[[str, str, Optional[str]], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _StepOutcome:
    result: StepResult
    context: VariableContext
    next_position: int
    fatal: bool = False


def resolve_input_bindings(step: PipelineStep, context: Mapping[str, str]) -> Dict[str, str]:
    """
    Render-time bindings contributed by a step's ``input``.

    ``$name`` exposes the referenced value as ``{{input}}``; a mapping exposes
    each key, resolving ``$name`` values from the context and rendering the rest.
    """
    if isinstance(step.input, str):
        if step.input.startswith("$"):
            ref = step.input[1:]
            return {"input": context[ref]} if ref in context else {}
        return {"input": render(step.input, context)}

    bindings: Dict[str, str] = {}
    for key, value in (step.input or {}).items():
        if value.startswith("$"):
            if value[1:] in context:
                bindings[key] = context[value[1:]]
        else:
            bindings[key] = render(value, context)
    return bindings


class PipelineRunner:
    """
    Sequential interpreter for prompt pipelines.

    Each step is rendered and sent to the completion client only after the
    previous step (or every iteration of a loop) has resolved.
    """

    def __init__(
        self,
        completion_client: Optional["CompletionClient"] = None,
        dry_run: bool = False,
        verbose: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize runner.

        Args:
            completion_client: Completion service; not needed for dry runs
            dry_run: Render prompts without calling the completion client
            verbose: Log rendered prompts and outputs
            on_progress: Called as (step_name, phase, message) with phase
                "start", "complete" or "error"
            cancel_event: Checked before every step; when set the run aborts
            settings: Engine settings (defaults to the global settings)
            sleep: Used for retry backoff
        """
        self.completion_client = completion_client
        self.dry_run = dry_run
        self.verbose = verbose
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.settings = settings or get_settings()
        self._sleep = sleep

        # Callbacks for progress reporting
        self._on_step_start: Optional[Callable[[PipelineStep], None]] = None
        self._on_step_complete: Optional[Callable[[StepResult], None]] = None

    def on_step_start(self, callback: Callable[[PipelineStep], None]) -> None:
        """Register callback for step start."""
        self._on_step_start = callback

    def on_step_complete(self, callback: Callable[[StepResult], None]) -> None:
        """Register callback for step completion (successful or not)."""
        self._on_step_complete = callback

    def run(
        self,
        pipeline: Pipeline,
        initial_variables: Optional[Mapping[str, str]] = None,
        run_id: Optional[str] = None,
    ) -> PipelineResult:
        """
        Execute a pipeline.

        Args:
            pipeline: Pipeline definition to execute
            initial_variables: Variables overriding the pipeline's own
            run_id: Identifier for this run (generated when omitted)

        Returns:
            PipelineResult with all step results

        Raises:
            PipelineValidationError: If the pipeline has validation errors
            ConfigurationError: If no completion client is set outside dry-run
        """
        validation = validate_pipeline(
            pipeline, self.settings.loop_iteration_warning_threshold
        )
        if not validation.valid:
            raise PipelineValidationError(validation)
        if not self.dry_run and self.completion_client is None:
            raise ConfigurationError("A completion client is required unless dry_run is set")

        run_id = run_id or uuid.uuid4().hex[:12]
        started_at = _now()
        start_time = time.monotonic()
        extra = with_trace_context(logger, run_id=run_id, pipeline_name=pipeline.name)

        context = VariableContext({**pipeline.variables, **(initial_variables or {})})
        jump_table = pipeline.step_index()
        step_results: List[StepResult] = []
        state = RunState.RUNNING
        error: Optional[str] = None
        position = 0
        executions = 0

        logger.info(
            "pipeline_start",
            extra={**extra, "steps": len(pipeline.steps), "dry_run": self.dry_run},
        )

        while position < len(pipeline.steps):
            step = pipeline.steps[position]

            if self.cancel_event is not None and self.cancel_event.is_set():
                state = RunState.ABORTED
                error = f"Pipeline aborted before step '{step.name}'"
                logger.warning("pipeline_aborted", extra={**extra, "step_name": step.name})
                break

            if executions >= self.settings.max_step_executions:
                state = RunState.FAILED
                error = (
                    f"Exceeded {self.settings.max_step_executions} step executions; "
                    "condition jumps may form a cycle"
                )
                logger.error("pipeline_step_budget_exceeded", extra=extra)
                break
            executions += 1

            self._notify_start(step, extra)
            outcome = self._execute_step(
                pipeline, step, context, jump_table, position, run_id, extra
            )
            result = outcome.result
            context = outcome.context

            if not result.success and not outcome.fatal and step.continue_on_error:
                result.skipped = True
                result.skip_reason = "Step failed; continuing (continueOnError)"

            step_results.append(result)
            self._notify_complete(result, extra)

            if result.success or result.skipped:
                position = outcome.next_position
                continue

            if not outcome.fatal and pipeline.on_error == OnErrorPolicy.CONTINUE:
                position += 1
                continue

            state = RunState.FAILED
            error = f"Step '{step.name}' failed: {result.error}"
            break

        if state == RunState.RUNNING:
            state = RunState.COMPLETED

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "pipeline_end",
            extra={**extra, "state": state.value, "duration_ms": duration_ms},
        )

        return PipelineResult(
            pipeline_name=pipeline.name,
            run_id=run_id,
            state=state,
            success=state == RunState.COMPLETED,
            started_at=started_at,
            completed_at=_now(),
            duration_ms=duration_ms,
            step_results=step_results,
            final_output=context.to_dict(),
            error=error,
        )

    def _execute_step(
        self,
        pipeline: Pipeline,
        step: PipelineStep,
        context: VariableContext,
        jump_table: Dict[str, int],
        position: int,
        run_id: str,
        extra: Dict[str, Any],
    ) -> _StepOutcome:
        """
        Run one step (or a whole loop) and work out where the run goes next.

        The output is bound into a candidate context and the condition is
        evaluated against it; the caller only sees the candidate when both
        the completion and the condition succeed. A loop with continueOnError
        binds the outputs of its successful iterations even when some failed.
        """
        started_at = _now()
        start_time = time.monotonic()

        # continueOnError bypasses the pipeline policy, retries included
        attempts_allowed = 1
        if pipeline.on_error == OnErrorPolicy.RETRY and not step.continue_on_error:
            attempts_allowed += pipeline.max_retries

        fatal = False
        partial = False
        if step.loop is not None:
            controller = LoopController(
                lambda s, ctx, label: self._attempt(
                    pipeline, s, ctx, label, attempts_allowed, run_id
                )
            )
            try:
                loop = controller.run_loop(step, context)
            except LoopBoundViolation as e:
                fatal = True
                result = StepResult(step_name=step.name, success=False, error=str(e))
            else:
                result = StepResult(
                    step_name=step.name,
                    success=loop.success,
                    iterations=loop.iterations,
                    attempts=sum(r.attempts for r in loop.iterations),
                )
                if loop.success:
                    result.output = loop.output_text()
                else:
                    failed = next(r for r in loop.iterations if not r.success)
                    result.error = f"{failed.step_name}: {failed.error}"
                    if step.continue_on_error:
                        partial = True
                        result.output = loop.output_text()
        else:
            result = self._attempt(pipeline, step, context, step.name, attempts_allowed, run_id)

        next_position = position + 1
        if result.success:
            candidate = context.with_value(step.output, result.output or "")
            if step.condition is not None:
                try:
                    next_position = self._next_position(
                        step, candidate, jump_table, position, extra
                    )
                except ConditionEvaluationError as e:
                    result.success = False
                    result.error = str(e)
            if result.success:
                context = candidate
        elif partial:
            context = context.with_value(step.output, result.output)

        result.started_at = started_at
        result.completed_at = _now()
        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        return _StepOutcome(
            result=result, context=context, next_position=next_position, fatal=fatal
        )

    def _attempt(
        self,
        pipeline: Pipeline,
        step: PipelineStep,
        context: VariableContext,
        label: str,
        attempts_allowed: int,
        run_id: str,
    ) -> StepResult:
        """Render the prompt and call the completion client, retrying as allowed."""
        started_at = _now()
        start_time = time.monotonic()
        extra = with_trace_context(
            logger, run_id=run_id, pipeline_name=pipeline.name, step_name=label
        )

        bindings = resolve_input_bindings(step, context)
        prompt = render(step.prompt, context.with_values(bindings) if bindings else context)
        if self.verbose:
            logger.info("step_prompt", extra={**extra, "prompt": prompt})

        def _finish(**fields) -> StepResult:
            return StepResult(
                step_name=label,
                started_at=started_at,
                completed_at=_now(),
                duration_ms=int((time.monotonic() - start_time) * 1000),
                **fields,
            )

        if self.dry_run:
            return _finish(success=True, output=prompt, attempts=0)

        model = step.model or self.settings.default_model
        last_error = "Max retries exceeded"
        for attempt in range(1, attempts_allowed + 1):
            try:
                text = self.completion_client.complete(
                    prompt, model, step.max_tokens, step.temperature
                )
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "step_failed",
                    extra={**extra, "attempt": attempt, "error": last_error},
                )
                if attempt < attempts_allowed:
                    delay = self._backoff(attempt)
                    logger.info(
                        "step_retry",
                        extra={
                            **extra,
                            "attempt": attempt + 1,
                            "max_attempts": attempts_allowed,
                            "delay_s": delay,
                        },
                    )
                    self._sleep(delay)
                continue

            if self.verbose:
                logger.info("step_output", extra={**extra, "output": text})
            return _finish(success=True, output=text, attempts=attempt)

        return _finish(success=False, error=last_error, attempts=attempts_allowed)

    def _backoff(self, attempt: int) -> float:
        delay = self.settings.retry_backoff_base_s * (2 ** (attempt - 1))
        return min(delay, self.settings.retry_backoff_max_s)

    def _next_position(
        self,
        step: PipelineStep,
        context: VariableContext,
        jump_table: Dict[str, int],
        position: int,
        extra: Dict[str, Any],
    ) -> int:
        """Evaluate the step's condition and pick the next step index."""
        condition = step.condition
        if evaluate(condition.expression, context):
            target: Optional[str] = condition.then
        else:
            target = condition.else_
        if target is None:
            return position + 1
        logger.info(
            "condition_jump",
            extra={**extra, "step_name": step.name, "target": target},
        )
        return jump_table[target]

    def _notify_start(self, step: PipelineStep, extra: Dict[str, Any]) -> None:
        logger.debug("step_start", extra={**extra, "step_name": step.name})
        if self._on_step_start:
            self._on_step_start(step)
        if self.on_progress:
            self.on_progress(step.name, "start", None)

    def _notify_complete(self, result: StepResult, extra: Dict[str, Any]) -> None:
        logger.debug(
            "step_complete",
            extra={**extra, "step_name": result.step_name, "success": result.success},
        )
        if self._on_step_complete:
            self._on_step_complete(result)
        if self.on_progress:
            if result.success:
                self.on_progress(result.step_name, "complete", None)
            else:
                self.on_progress(result.step_name, "error", result.error)


def create_runner(
    dry_run: bool = False,
    verbose: bool = False,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
    settings: Optional[Settings] = None,
) -> PipelineRunner:
    """
    Factory function to create a PipelineRunner with the configured client.

    Dry runs never build a completion client, so they work without an API key.
    """
    from prompt_chain.completion import create_completion_client

    settings = settings or get_settings()
    client = None if dry_run else create_completion_client(settings)
    return PipelineRunner(
        completion_client=client,
        dry_run=dry_run,
        verbose=verbose,
        on_progress=on_progress,
        cancel_event=cancel_event,
        settings=settings,
    )
