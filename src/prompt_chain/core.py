"""
Core operations exposed to the CLI and other tooling.

- load_definition / validate / execute: the engine entry points
- run_pipeline_file / validate_pipeline_file: file based wrappers that report
  expected failures instead of raising
- create_pipeline_file / get_pipeline_summary: authoring helpers
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Union

from pydantic import BaseModel, Field

from prompt_chain.completion import CompletionClient, create_completion_client
from prompt_chain.config import Settings, get_settings
from prompt_chain.errors import PipelineFileError, PromptChainError
from prompt_chain.observability import get_logger
from prompt_chain.pipelines import (
    Pipeline,
    PipelineResult,
    PipelineRunner,
    ValidationResult,
    create_empty_pipeline,
    extract_variables,
    load_pipeline_from_file,
    save_pipeline,
    validate_pipeline,
)
from prompt_chain.pipelines.runner import ProgressCallback

logger = get_logger(__name__)

PathLike = Union[str, Path]


@dataclass
class ExecutionOptions:
    """Options for a single pipeline execution."""
    dry_run: bool = False
    verbose: bool = False
    on_progress: Optional[ProgressCallback] = None
    cancel_event: Optional[threading.Event] = None
    completion_client: Optional[CompletionClient] = None
    settings: Optional[Settings] = None


class RunReport(BaseModel):
    """Outcome of running a pipeline file."""
    success: bool
    result: Optional[PipelineResult] = None
    validation: Optional[ValidationResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    exit_code: int = 0


class ValidationReport(BaseModel):
    """Outcome of validating a pipeline file."""
    success: bool
    validation: Optional[ValidationResult] = None
    pipeline: Optional[Pipeline] = None
    error: Optional[str] = None


class StepSummary(BaseModel):
    name: str
    output: str


class PipelineSummary(BaseModel):
    """Overview of a pipeline for the ``info`` command."""
    name: str
    description: Optional[str] = None
    version: str
    step_count: int
    steps: List[StepSummary] = Field(default_factory=list)
    variables: List[str] = Field(default_factory=list)
    has_conditions: bool = False
    has_loops: bool = False


def load_definition(path: PathLike) -> Pipeline:
    """Load a pipeline document. Raises DefinitionError when malformed."""
    return load_pipeline_from_file(path)


def validate(pipeline: Pipeline, settings: Optional[Settings] = None) -> ValidationResult:
    """Statically validate a pipeline."""
    settings = settings or get_settings()
    return validate_pipeline(pipeline, settings.loop_iteration_warning_threshold)


def execute(
    pipeline: Pipeline,
    initial_variables: Optional[Mapping[str, str]] = None,
    options: Optional[ExecutionOptions] = None,
) -> PipelineResult:
    """
    Execute a pipeline.

    Raises:
        PipelineValidationError: If the pipeline has validation errors
        ConfigurationError: If a real run has no completion client or API key
    """
    options = options or ExecutionOptions()
    settings = options.settings or get_settings()

    client = options.completion_client
    if client is None and not options.dry_run:
        client = create_completion_client(settings)

    runner = PipelineRunner(
        completion_client=client,
        dry_run=options.dry_run,
        verbose=options.verbose,
        on_progress=options.on_progress,
        cancel_event=options.cancel_event,
        settings=settings,
    )
    return runner.run(pipeline, initial_variables)


def run_pipeline_file(
    path: PathLike,
    variables: Optional[Mapping[str, str]] = None,
    options: Optional[ExecutionOptions] = None,
) -> RunReport:
    """Load, validate and run a pipeline file."""
    options = options or ExecutionOptions()
    try:
        pipeline = load_definition(path)
        validation = validate(pipeline, options.settings)
        if not validation.valid:
            messages = "\n".join(f"{e.path}: {e.message}" for e in validation.errors)
            return RunReport(
                success=False,
                validation=validation,
                error=f"Pipeline validation failed:\n{messages}",
                error_code="VALIDATION_ERROR",
                exit_code=1,
            )
        result = execute(pipeline, variables, options)
    except PromptChainError as e:
        logger.error("pipeline_run_failed", extra={"error": e.message, "code": e.code})
        return RunReport(
            success=False,
            error=e.message,
            error_code=e.code,
            exit_code=e.exit_code,
        )

    return RunReport(
        success=result.success,
        result=result,
        validation=validation,
        error=result.error,
        error_code=None if result.success else "PIPELINE_FAILED",
        exit_code=0 if result.success else 1,
    )


def validate_pipeline_file(path: PathLike) -> ValidationReport:
    """Validate a pipeline file without running it."""
    try:
        pipeline = load_definition(path)
    except PromptChainError as e:
        return ValidationReport(success=False, error=e.message)

    validation = validate(pipeline)
    return ValidationReport(
        success=validation.valid,
        validation=validation,
        pipeline=pipeline,
    )


def create_pipeline_file(path: PathLike, name: str, force: bool = False) -> Path:
    """
    Write a starter pipeline to ``path``.

    Raises:
        PipelineFileError: If the file exists and ``force`` is not set
    """
    path = Path(path).resolve()
    if path.exists() and not force:
        raise PipelineFileError(
            f"File already exists: {path}. Use --force to overwrite.", str(path)
        )
    return save_pipeline(create_empty_pipeline(name), path)


def summarize_pipeline(pipeline: Pipeline) -> PipelineSummary:
    variables = set(pipeline.variables)
    for step in pipeline.steps:
        variables |= extract_variables(step.prompt)

    return PipelineSummary(
        name=pipeline.name,
        description=pipeline.description,
        version=pipeline.version,
        step_count=len(pipeline.steps),
        steps=[StepSummary(name=s.name, output=s.output) for s in pipeline.steps],
        variables=sorted(variables),
        has_conditions=any(s.condition is not None for s in pipeline.steps),
        has_loops=any(s.loop is not None for s in pipeline.steps),
    )


def get_pipeline_summary(path: PathLike) -> PipelineSummary:
    """Load a pipeline and summarize it. Raises DefinitionError when malformed."""
    return summarize_pipeline(load_definition(path))
