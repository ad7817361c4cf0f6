"""
prompt-chain - chain multiple prompts with data flow.

Load a YAML pipeline, validate it, and run its steps one after another,
threading each step's output into later prompts.
"""

from prompt_chain.core import (
    ExecutionOptions,
    execute,
    load_definition,
    run_pipeline_file,
    validate,
)
from prompt_chain.errors import (
    CompletionError,
    ConditionEvaluationError,
    ConfigurationError,
    DefinitionError,
    LoopBoundViolation,
    PipelineValidationError,
    PromptChainError,
    StepExecutionError,
)
from prompt_chain.pipelines import Pipeline, PipelineResult, PipelineRunner

__version__ = "1.0.0"

__all__ = [
    "CompletionError",
    "ConditionEvaluationError",
    "ConfigurationError",
    "DefinitionError",
    "ExecutionOptions",
    "LoopBoundViolation",
    "Pipeline",
    "PipelineResult",
    "PipelineRunner",
    "PipelineValidationError",
    "PromptChainError",
    "StepExecutionError",
    "execute",
    "load_definition",
    "run_pipeline_file",
    "validate",
]
