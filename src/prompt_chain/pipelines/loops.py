"""
Loop Controller - run a step once per element of an array-like variable.

Array-like values are JSON arrays, or plain text with one element per
non-blank line. Iterations run one after another, never concurrently.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from prompt_chain.errors import LoopBoundViolation
from prompt_chain.observability import get_logger

from .context import VariableContext
from .models import PipelineStep, StepResult

logger = get_logger(__name__)

IterationRunner = Callable[[PipelineStep, VariableContext, str], StepResult]


@dataclass
class LoopOutcome:
    """Per-iteration results and the outputs collected from them."""
    iterations: List[StepResult] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    total_items: int = 0

    @property
    def success(self) -> bool:
        return all(r.success for r in self.iterations)

    def output_text(self) -> str:
        """Collected outputs as the JSON array stored under the step output."""
        return json.dumps(self.outputs)


def parse_array(value: str) -> Optional[List[str]]:
    """
    Split an array-like value into string elements.

    Returns None when the value is JSON but not an array (an object, number
    or bare string literal). Non-string JSON elements are re-encoded as JSON.
    """
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return [line for line in value.splitlines() if line.strip()]

    if not isinstance(parsed, list):
        return None
    return [item if isinstance(item, str) else json.dumps(item) for item in parsed]


class LoopController:
    """Drive the iterations of a loop step."""

    def __init__(self, run_iteration: IterationRunner):
        """
        Args:
            run_iteration: Executes one iteration given the step, the
                iteration context and a label such as ``step[2]``
        """
        self._run_iteration = run_iteration

    def run_loop(self, step: PipelineStep, context: VariableContext) -> LoopOutcome:
        """
        Run every iteration of ``step.loop`` against ``context``.

        The iteration bindings (the ``as`` name, ``_index`` and ``_total``) live
        in a derived context only, so they disappear after each iteration.
        A failed iteration ends the loop unless the step has continueOnError,
        in which case the remaining iterations still run and only successful
        outputs are collected.

        Raises:
            LoopBoundViolation: If ``over`` is missing or not array-like
        """
        loop = step.loop
        if loop is None:
            raise ValueError(f"Step '{step.name}' has no loop")

        if loop.over not in context:
            raise LoopBoundViolation(
                f"Loop variable not found: {loop.over}", step_name=step.name
            )
        items = parse_array(context[loop.over])
        if items is None:
            raise LoopBoundViolation(
                f"Loop variable '{loop.over}' is not an array", step_name=step.name
            )

        count = min(len(items), loop.max_iterations)
        if count < len(items):
            logger.info(
                "loop_truncated",
                extra={
                    "step_name": step.name,
                    "items": len(items),
                    "max_iterations": loop.max_iterations,
                },
            )

        outcome = LoopOutcome(total_items=len(items))
        for index in range(count):
            iteration_context = context.with_values({
                loop.item: items[index],
                "_index": str(index),
                "_total": str(len(items)),
            })
            result = self._run_iteration(step, iteration_context, f"{step.name}[{index}]")
            outcome.iterations.append(result)
            if result.success:
                outcome.outputs.append(result.output or "")
            elif not step.continue_on_error:
                break

        return outcome
