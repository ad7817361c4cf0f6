"""
prompt-chain CLI - Command-line interface for the pipeline engine.

Commands:
- run: Execute a pipeline
- validate: Validate a pipeline without running it
- info: Show pipeline details
- init: Create a new pipeline file
"""

from .main import cli, main

__all__ = ["cli", "main"]
