"""
Pipeline Validator - static analysis of a parsed pipeline.

Checks, in order:
1. Duplicate step names (error)
2. Duplicate output names (warning)
3. Dangling ``$name`` input references (error) and unknown loop sources (warning)
4. Condition targets that name no step (error); unparsable expressions (warning)
5. Loop iteration caps that are missing or very large (warning)
6. Outputs nobody reads (warning)

Errors block execution; warnings never do.
"""

from __future__ import annotations

from typing import List, Optional, Set

from prompt_chain.errors import ConditionEvaluationError

from .conditions import referenced_variables
from .models import Pipeline, PipelineStep, Severity, ValidationIssue, ValidationResult
from .template import extract_variables

DEFAULT_ITERATION_WARNING_THRESHOLD = 1000


def validate_pipeline(
    pipeline: Pipeline,
    iteration_warning_threshold: Optional[int] = None,
) -> ValidationResult:
    """
    Validate a pipeline definition.

    Args:
        pipeline: Parsed pipeline
        iteration_warning_threshold: ``maxIterations`` above this value warns

    Returns:
        ValidationResult with errors and warnings
    """
    if iteration_warning_threshold is None:
        iteration_warning_threshold = DEFAULT_ITERATION_WARNING_THRESHOLD

    errors: List[ValidationIssue] = []
    warnings: List[str] = []

    # Duplicate step names
    step_names: Set[str] = set()
    reported: Set[str] = set()
    for step in pipeline.steps:
        if step.name in step_names and step.name not in reported:
            errors.append(ValidationIssue(
                path=f"steps.{step.name}",
                message=f"Duplicate step name: {step.name}",
            ))
            reported.add(step.name)
        step_names.add(step.name)

    # Duplicate output names
    output_names: Set[str] = set()
    warned_outputs: Set[str] = set()
    for step in pipeline.steps:
        if step.output in output_names and step.output not in warned_outputs:
            warnings.append(
                f"Multiple steps write to the same output variable: {step.output}"
            )
            warned_outputs.add(step.output)
        output_names.add(step.output)

    known = output_names | set(pipeline.variables)

    # Input back-references and loop sources
    for step in pipeline.steps:
        if isinstance(step.input, str):
            if step.input.startswith("$") and step.input[1:] not in known:
                errors.append(ValidationIssue(
                    path=f"steps.{step.name}.input",
                    message=f"Referenced variable not defined: {step.input[1:]}",
                ))
        elif isinstance(step.input, dict):
            for key, value in step.input.items():
                if value.startswith("$") and value[1:] not in known:
                    errors.append(ValidationIssue(
                        path=f"steps.{step.name}.input.{key}",
                        message=f"Referenced variable not defined: {value[1:]}",
                    ))

        if step.loop and step.loop.over not in known:
            warnings.append(f"Loop variable may not exist at runtime: {step.loop.over}")

    # Condition targets
    for step in pipeline.steps:
        if not step.condition:
            continue
        if step.condition.then not in step_names:
            errors.append(ValidationIssue(
                path=f"steps.{step.name}.condition.then",
                message=f"Referenced step not found: {step.condition.then}",
            ))
        if step.condition.else_ is not None and step.condition.else_ not in step_names:
            errors.append(ValidationIssue(
                path=f"steps.{step.name}.condition.else",
                message=f"Referenced step not found: {step.condition.else_}",
            ))
        try:
            referenced_variables(step.condition.expression)
        except ConditionEvaluationError as e:
            warnings.append(f'Condition on step "{step.name}" cannot be evaluated: {e}')

    # Loop bounds
    for step in pipeline.steps:
        if not step.loop:
            continue
        limit = step.loop.max_iterations
        if not limit or limit > iteration_warning_threshold:
            warnings.append(f'Step "{step.name}" loop has high or no iteration limit')

    # Unused outputs
    last_index = len(pipeline.steps) - 1
    for position, step in enumerate(pipeline.steps):
        if position == last_index:
            continue
        used = _condition_names(step)
        for later in pipeline.steps[position + 1:]:
            used |= _names_read_by(later)
        if step.output not in used:
            warnings.append(
                f'Output "{step.output}" from step "{step.name}" is never used'
            )

    return ValidationResult(
        valid=not any(e.severity == Severity.ERROR for e in errors),
        errors=errors,
        warnings=warnings,
    )


def _condition_names(step: PipelineStep) -> Set[str]:
    if not step.condition:
        return set()
    try:
        return referenced_variables(step.condition.expression)
    except ConditionEvaluationError:
        return set()


def _names_read_by(step: PipelineStep) -> Set[str]:
    """Every variable name a step reads."""
    names = extract_variables(step.prompt)
    names.update(step.input_references())
    if step.loop:
        names.add(step.loop.over)
    names |= _condition_names(step)
    return names
