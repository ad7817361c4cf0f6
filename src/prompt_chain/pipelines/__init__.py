"""
Pipelines Package - declarative prompt pipelines and their execution engine.

This package provides:
- Pipeline, PipelineStep, Condition, Loop models and result types
- YAML loader / serializer
- Validator (errors block execution, warnings do not)
- VariableContext, template rendering, condition evaluation, loop control
- PipelineRunner, the sequential orchestrator
"""

from .conditions import evaluate, parse_condition, referenced_variables
from .context import VariableContext
from .loader import (
    create_empty_pipeline,
    load_pipeline_from_dict,
    load_pipeline_from_file,
    save_pipeline,
    serialize_pipeline,
)
from .loops import LoopController, LoopOutcome, parse_array
from .models import (
    Condition,
    Loop,
    OnErrorPolicy,
    Pipeline,
    PipelineResult,
    PipelineStep,
    RunState,
    Severity,
    StepResult,
    ValidationIssue,
    ValidationResult,
)
from .runner import PipelineRunner, create_runner, resolve_input_bindings
from .template import extract_variables, render
from .validator import validate_pipeline

__all__ = [
    # Models
    "Condition",
    "Loop",
    "OnErrorPolicy",
    "Pipeline",
    "PipelineResult",
    "PipelineStep",
    "RunState",
    "Severity",
    "StepResult",
    "ValidationIssue",
    "ValidationResult",
    # Loader
    "create_empty_pipeline",
    "load_pipeline_from_dict",
    "load_pipeline_from_file",
    "save_pipeline",
    "serialize_pipeline",
    # Engine
    "LoopController",
    "LoopOutcome",
    "PipelineRunner",
    "VariableContext",
    "create_runner",
    "evaluate",
    "extract_variables",
    "parse_array",
    "parse_condition",
    "referenced_variables",
    "render",
    "resolve_input_bindings",
    "validate_pipeline",
]
