"""
Error taxonomy for prompt-chain.

Every error carries a stable ``code`` and the process ``exit_code`` the CLI
uses when the error reaches it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from prompt_chain.pipelines.models import ValidationResult


class PromptChainError(Exception):
    """Base exception for prompt-chain errors."""

    code = "UNKNOWN_ERROR"
    exit_code = 1

    def __init__(self, message: str, code: Optional[str] = None, exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if exit_code is not None:
            self.exit_code = exit_code


class DefinitionError(PromptChainError):
    """Raised when a pipeline document is unreadable or malformed."""

    code = "DEFINITION_ERROR"
    exit_code = 2


class PipelineValidationError(PromptChainError):
    """Raised when execution is requested for a pipeline with validation errors."""

    code = "VALIDATION_ERROR"
    exit_code = 1

    def __init__(self, result: "ValidationResult"):
        lines = [f"{issue.path}: {issue.message}" for issue in result.errors]
        super().__init__("Pipeline validation failed:\n" + "\n".join(lines))
        self.result = result


class ConfigurationError(PromptChainError):
    """Raised when required configuration is missing."""

    code = "CONFIG_ERROR"
    exit_code = 2


class CompletionError(PromptChainError):
    """Raised when the completion service call fails."""

    code = "API_ERROR"
    exit_code = 3

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PipelineFileError(PromptChainError):
    """Raised when a pipeline file cannot be written."""

    code = "FILE_ERROR"
    exit_code = 4

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path


class StepExecutionError(PromptChainError):
    """A step (or one loop iteration) failed."""

    code = "STEP_ERROR"

    def __init__(self, message: str, step_name: Optional[str] = None):
        super().__init__(message)
        self.step_name = step_name


class ConditionEvaluationError(StepExecutionError):
    """A condition expression is malformed or references an unknown variable."""

    code = "CONDITION_ERROR"


class LoopBoundViolation(StepExecutionError):
    """A loop's ``over`` variable is missing or not array-like at run time."""

    code = "LOOP_ERROR"
