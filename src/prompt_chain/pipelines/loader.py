"""
Pipeline Loader - Load and save pipeline definitions as YAML.

Supports:
- Single pipeline file (pipeline.yaml)
- Inline dict definitions
- Serializing a definition back to YAML (lossless for documented fields)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Union

import yaml
from pydantic import ValidationError

from prompt_chain.errors import DefinitionError, PipelineFileError
from prompt_chain.observability import get_logger

from .models import Pipeline, PipelineStep

logger = get_logger(__name__)


def load_pipeline_from_file(path: Union[str, Path]) -> Pipeline:
    """
    Load a single pipeline from a YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Pipeline

    Raises:
        DefinitionError: If file not found or invalid
    """
    path = Path(path)
    if not path.exists():
        raise DefinitionError(f"Pipeline file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"Cannot read pipeline file {path}: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML in {path}: {e}") from e

    pipeline = _parse_pipeline(data, source=str(path))
    logger.debug(
        "pipeline_loaded",
        extra={"pipeline_name": pipeline.name, "source": str(path)},
    )
    return pipeline


def load_pipeline_from_dict(data: Dict[str, Any]) -> Pipeline:
    """
    Load a pipeline from a dictionary.

    Args:
        data: Pipeline definition dict (document keys)

    Returns:
        Pipeline
    """
    return _parse_pipeline(data, source="dict")


def _parse_pipeline(data: Any, source: str = "unknown") -> Pipeline:
    """
    Parse pipeline data into a Pipeline.

    Validates structure and converts to the Pydantic model.
    """
    if not isinstance(data, dict):
        kind = "empty document" if data is None else type(data).__name__
        raise DefinitionError(
            f"Invalid pipeline document: expected a mapping, got {kind} (source: {source})"
        )

    try:
        return Pipeline.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(
            f"Pipeline schema validation failed (source: {source}):\n"
            + _format_validation_errors(e)
        ) from e


def _format_validation_errors(error: ValidationError) -> str:
    """Flatten pydantic errors into '  - path: message' lines."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        lines.append(f"  - {location or '<root>'}: {item['msg']}")
    return "\n".join(lines)


def serialize_pipeline(pipeline: Pipeline) -> str:
    """Serialize a pipeline back to YAML, keeping declaration order."""
    return yaml.safe_dump(
        pipeline.to_document(),
        sort_keys=False,
        indent=2,
        width=100,
        allow_unicode=True,
    )


def save_pipeline(pipeline: Pipeline, path: Union[str, Path]) -> Path:
    """
    Write a pipeline to a YAML file.

    Raises:
        PipelineFileError: If the file cannot be written
    """
    path = Path(path)
    try:
        path.write_text(serialize_pipeline(pipeline), encoding="utf-8")
    except OSError as e:
        raise PipelineFileError(f"Cannot write pipeline file {path}: {e}", str(path)) from e
    return path


def create_empty_pipeline(name: str) -> Pipeline:
    """Create a starter pipeline with a single step."""
    return Pipeline(
        name=name,
        version="1.0.0",
        steps=[
            PipelineStep(
                name="step1",
                prompt="Your prompt here with {{input}}",
                output="result",
            ),
        ],
    )
