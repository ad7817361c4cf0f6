"""
Pipeline Models - Pydantic models for prompt pipeline execution.

Defines:
- Condition / Loop: Branching and iteration settings of a step
- PipelineStep: Single templated prompt in a pipeline
- Pipeline: Full pipeline definition
- ValidationIssue / ValidationResult: Static analysis findings
- StepResult / PipelineResult: Execution results

Document keys are camelCase (``onError``, ``maxTokens``...); attributes are
snake_case and serialize back through their aliases.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OnErrorPolicy(str, Enum):
    """Pipeline-level reaction to a failed step."""
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class RunState(str, Enum):
    """State of the orchestrator for one run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class Severity(str, Enum):
    """Severity of a validation finding."""
    ERROR = "error"
    WARNING = "warning"


class _DocumentModel(BaseModel):
    """Base for models that map to the on-disk document."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        """Dump using document keys, leaving out unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Condition(_DocumentModel):
    """
    Conditional jump evaluated after a step completes.

    ``if`` is a small boolean expression over context variables; when true the
    run continues at ``then``, otherwise at ``else`` (or the next step when
    ``else`` is absent).
    """

    expression: str = Field(
        ...,
        alias="if",
        min_length=1,
        description="Boolean expression evaluated against the context",
    )
    then: str = Field(..., min_length=1, description="Step to jump to when true")
    else_: Optional[str] = Field(
        None,
        alias="else",
        description="Step to jump to when false",
    )


class Loop(_DocumentModel):
    """Iterate a step over the elements of an array-like variable."""

    over: str = Field(..., min_length=1, description="Variable holding the array")
    item: str = Field(
        ...,
        alias="as",
        min_length=1,
        description="Name bound to the current element",
    )
    max_iterations: int = Field(
        100,
        alias="maxIterations",
        ge=1,
        description="Hard cap on iterations",
    )


StepInput = Union[str, Dict[str, str]]


class PipelineStep(_DocumentModel):
    """A single templated prompt in a pipeline."""

    name: str = Field(
        ...,
        min_length=1,
        description="Step name, unique within the pipeline",
    )
    prompt: str = Field(
        ...,
        min_length=1,
        description="Prompt template with {{variable}} placeholders",
    )
    input: Optional[StepInput] = Field(
        None,
        description="'$name' back-reference or mapping of extra bindings",
    )
    output: str = Field(
        ...,
        min_length=1,
        description="Variable name the step's result is stored under",
    )
    condition: Optional[Condition] = None
    loop: Optional[Loop] = None
    model: Optional[str] = Field(None, description="Model override for this step")
    max_tokens: int = Field(2000, alias="maxTokens", ge=1)
    temperature: Optional[float] = Field(None, ge=0, le=1)
    continue_on_error: bool = Field(False, alias="continueOnError")

    def input_references(self) -> List[str]:
        """Names referenced through ``$name`` in ``input``."""
        if isinstance(self.input, str):
            return [self.input[1:]] if self.input.startswith("$") else []
        if isinstance(self.input, dict):
            return [v[1:] for v in self.input.values() if v.startswith("$")]
        return []


class Pipeline(_DocumentModel):
    """
    Complete pipeline definition.

    Steps run in declaration order unless a condition redirects flow.
    """

    name: str = Field(..., min_length=1, description="Pipeline name")
    description: Optional[str] = None
    version: str = Field("1.0.0", description="Pipeline version")
    variables: Dict[str, str] = Field(
        default_factory=dict,
        description="Initial variables",
    )
    steps: List[PipelineStep] = Field(..., min_length=1)
    on_error: OnErrorPolicy = Field(OnErrorPolicy.STOP, alias="onError")
    max_retries: int = Field(3, alias="maxRetries", ge=0)

    @field_validator("variables", mode="before")
    @classmethod
    def normalize_variables(cls, v: Any) -> Any:
        """Variables are strings; scalars are stringified and lists become JSON."""
        if not isinstance(v, dict):
            return v
        normalized = {}
        for key, value in v.items():
            if isinstance(value, bool):
                normalized[key] = "true" if value else "false"
            elif isinstance(value, (int, float)):
                normalized[key] = str(value)
            elif isinstance(value, (list, tuple)):
                normalized[key] = json.dumps(list(value))
            elif value is None:
                normalized[key] = ""
            else:
                normalized[key] = value
        return normalized

    def step_index(self) -> Dict[str, int]:
        """Map step name to position; the first declaration wins."""
        index: Dict[str, int] = {}
        for position, step in enumerate(self.steps):
            index.setdefault(step.name, position)
        return index


class ValidationIssue(BaseModel):
    """A single validation finding."""

    path: str
    message: str
    severity: Severity = Severity.ERROR


class ValidationResult(BaseModel):
    """Errors block execution; warnings are informational."""

    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class StepResult(BaseModel):
    """Result of a single step (or one loop iteration)."""

    step_name: str = Field(..., description="Name of the step")
    success: bool = Field(..., description="Whether the step succeeded")
    skipped: bool = Field(False, description="Failure tolerated by continueOnError")
    skip_reason: Optional[str] = None
    output: Optional[str] = Field(None, description="Text stored under the step output")
    error: Optional[str] = Field(None, description="Last error message")
    attempts: int = Field(0, description="Completion attempts made")
    duration_ms: int = Field(0, description="Execution duration in milliseconds")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    iterations: List["StepResult"] = Field(
        default_factory=list,
        description="Per-iteration results of a loop step",
    )


class PipelineResult(BaseModel):
    """Complete result of a pipeline run."""

    pipeline_name: str
    run_id: str
    state: RunState
    success: bool
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    step_results: List[StepResult] = Field(default_factory=list)
    final_output: Dict[str, str] = Field(
        default_factory=dict,
        description="Snapshot of the variable context at the end of the run",
    )
    error: Optional[str] = None

    def get_step_result(self, step_name: str) -> Optional[StepResult]:
        """Get the latest result for a specific step."""
        for result in reversed(self.step_results):
            if result.step_name == step_name:
                return result
        return None

    def failed_steps(self) -> List[StepResult]:
        """Get all failed steps."""
        return [r for r in self.step_results if not r.success]
