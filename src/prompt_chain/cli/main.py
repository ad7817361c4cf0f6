"""
prompt-chain CLI - Main entry point.

Provides commands for:
- Running pipelines
- Validating pipelines
- Inspecting pipelines
- Creating new pipeline files
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click

from prompt_chain.core import (
    ExecutionOptions,
    create_pipeline_file,
    get_pipeline_summary,
    run_pipeline_file,
    validate_pipeline_file,
)
from prompt_chain.errors import PipelineFileError, PromptChainError
from prompt_chain.observability import setup_logging


def _emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _fail(ctx: click.Context, message: str, exit_code: int = 1, code: Optional[str] = None) -> None:
    """Report an error in the selected output mode and exit."""
    if ctx.obj.get("json"):
        payload: Dict[str, Any] = {"success": False, "error": message}
        if code:
            payload["code"] = code
        _emit_json(payload)
    else:
        click.secho(f"Error: {message}", fg="red", err=True)
    ctx.exit(exit_code)


def _write_output(output_file: str, values: Dict[str, str]) -> None:
    try:
        Path(output_file).write_text(json.dumps(values, indent=2), encoding="utf-8")
    except OSError as e:
        raise PipelineFileError(f"Cannot write output file {output_file}: {e}", output_file) from e


def parse_variables(pairs: Tuple[str, ...]) -> Dict[str, str]:
    """Parse ``key=value`` pairs given with --var."""
    variables: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(
                f'Invalid variable format: "{pair}". Expected key=value',
                param_hint="--var",
            )
        variables[key.strip()] = value
    return variables


def _preview(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


@click.group()
@click.version_option("1.0.0", prog_name="prompt-chain")
@click.option("--json", "json_output", is_flag=True, help="Output results in JSON format")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool, quiet: bool):
    """Chain multiple prompts with data flow."""
    ctx.ensure_object(dict)

    if verbose:
        level = logging.DEBUG
    elif quiet or json_output:
        level = logging.ERROR
    else:
        level = logging.WARNING
    setup_logging(level=level)

    ctx.obj["json"] = json_output


# ==============================================================================
# run
# ==============================================================================

@cli.command("run")
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.option("--var", "variables", multiple=True, metavar="KEY=VALUE",
              help="Variable key=value pair (repeatable)")
@click.option("--dry-run", is_flag=True,
              help="Show what would be executed without calling the model")
@click.option("--verbose", "step_verbose", is_flag=True,
              help="Show step-by-step progress")
@click.option("--output", "-o", "output_file", type=click.Path(dir_okay=False),
              help="Write final outputs to a JSON file")
@click.pass_context
def run_command(
    ctx: click.Context,
    pipeline_file: str,
    variables: Tuple[str, ...],
    dry_run: bool,
    step_verbose: bool,
    output_file: Optional[str],
):
    """
    Run a pipeline from a YAML file.

    Examples:

        prompt-chain run review.yaml --var code="$(cat app.py)"

        prompt-chain run review.yaml --dry-run
    """
    json_output = ctx.obj["json"]
    parsed_vars = parse_variables(variables)

    def on_progress(step_name: str, phase: str, message: Optional[str]) -> None:
        if phase == "start":
            click.echo(f"  -> {step_name}")
        elif phase == "complete":
            click.secho(f"  OK {step_name}", fg="green")
        else:
            click.secho(f"  FAIL {step_name}: {message}", fg="red")

    options = ExecutionOptions(
        dry_run=dry_run,
        verbose=step_verbose,
        on_progress=on_progress if step_verbose and not json_output else None,
    )

    if step_verbose and not json_output:
        click.secho(f"Running pipeline: {pipeline_file}\n", bold=True)

    report = run_pipeline_file(pipeline_file, parsed_vars, options)
    result = report.result

    if result is None:
        _fail(ctx, report.error or "Unknown error", report.exit_code, report.error_code)
        return

    if output_file:
        try:
            _write_output(output_file, result.final_output)
        except PipelineFileError as e:
            _fail(ctx, e.message, e.exit_code, e.code)
            return

    if json_output:
        _emit_json({
            "success": result.success,
            "pipeline": result.pipeline_name,
            "state": result.state.value,
            "duration": result.duration_ms,
            "steps": [
                {
                    "name": s.step_name,
                    "success": s.success,
                    "skipped": s.skipped,
                    "duration": s.duration_ms,
                    "attempts": s.attempts,
                    "error": s.error,
                }
                for s in result.step_results
            ],
            "outputs": result.final_output,
            "error": result.error,
        })
        ctx.exit(report.exit_code)
        return

    click.echo()
    click.secho("Pipeline Results:", bold=True)
    click.echo("-" * 50)
    for step in result.step_results:
        icon = click.style("OK", fg="green") if step.success else click.style("FAIL", fg="red")
        status = click.style(" (skipped)", fg="yellow") if step.skipped else ""
        click.echo(f"  {icon} {step.step_name}{status}")
        if step.error:
            click.secho(f"     Error: {step.error}", fg="red")
    click.echo("-" * 50)

    click.echo()
    click.secho("Final Outputs:", bold=True)
    for key, value in result.final_output.items():
        click.echo(f"  {click.style(key + ':', fg='cyan')} {_preview(value, 100)}")

    if output_file:
        click.secho(f"\nOutput written to: {output_file}", fg="green")

    if not result.success:
        _fail(ctx, result.error or "Pipeline execution failed", report.exit_code)
        return
    click.secho(f"\nPipeline completed in {result.duration_ms}ms", fg="green")


# ==============================================================================
# validate
# ==============================================================================

@cli.command("validate")
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.pass_context
def validate_command(ctx: click.Context, pipeline_file: str):
    """Validate a pipeline YAML file without running it."""
    report = validate_pipeline_file(pipeline_file)
    if report.validation is None or report.pipeline is None:
        _fail(ctx, report.error or "Unknown error", 2, "DEFINITION_ERROR")
        return

    validation = report.validation
    pipeline = report.pipeline

    if ctx.obj["json"]:
        _emit_json({
            "success": validation.valid,
            "valid": validation.valid,
            "errors": [e.model_dump(mode="json") for e in validation.errors],
            "warnings": validation.warnings,
            "pipeline": {"name": pipeline.name, "stepCount": len(pipeline.steps)},
        })
        ctx.exit(0 if validation.valid else 1)
        return

    if not validation.valid:
        click.secho("Pipeline has validation errors", fg="red")
    elif validation.warnings:
        click.secho("Pipeline valid with warnings", fg="yellow")
    else:
        click.secho("Pipeline is valid", fg="green")

    if validation.errors:
        click.echo()
        click.secho("Errors:", bold=True)
        for error in validation.errors:
            click.echo(f"  {click.style('X', fg='red')} {error.path}: {error.message}")

    if validation.warnings:
        click.echo()
        click.secho("Warnings:", bold=True)
        for warning in validation.warnings:
            click.secho(f"  ! {warning}", fg="yellow")

    click.echo()
    click.secho("Pipeline Info:", bold=True)
    click.echo(f"  Name: {pipeline.name}")
    click.echo(f"  Steps: {len(pipeline.steps)}")
    click.echo(f"  Flow: {' -> '.join(s.name for s in pipeline.steps)}")

    if not validation.valid:
        ctx.exit(1)


# ==============================================================================
# info
# ==============================================================================

@cli.command("info")
@click.argument("pipeline_file", type=click.Path(dir_okay=False))
@click.pass_context
def info_command(ctx: click.Context, pipeline_file: str):
    """Show detailed information about a pipeline."""
    try:
        summary = get_pipeline_summary(pipeline_file)
    except PromptChainError as e:
        _fail(ctx, e.message, e.exit_code, e.code)
        return

    if ctx.obj["json"]:
        _emit_json({"success": True, **summary.model_dump(mode="json")})
        return

    click.echo()
    click.secho(summary.name, fg="cyan", bold=True)
    if summary.description:
        click.echo(summary.description)
    click.echo()
    click.echo(f"Version: {summary.version}")
    click.echo(f"Steps: {summary.step_count}")
    click.echo(f"Has Conditions: {'Yes' if summary.has_conditions else 'No'}")
    click.echo(f"Has Loops: {'Yes' if summary.has_loops else 'No'}")

    click.echo()
    click.secho("Step Flow:", bold=True)
    for i, step in enumerate(summary.steps, start=1):
        arrow = " ->" if i < len(summary.steps) else ""
        click.echo(f"  {i}. {step.name} (output: {step.output}){arrow}")

    click.echo()
    click.secho("Variables Used:", bold=True)
    if not summary.variables:
        click.echo("  No variables")
    for variable in summary.variables:
        click.echo(f"  {{{{{variable}}}}}")


# ==============================================================================
# init
# ==============================================================================

@cli.command("init")
@click.argument("name")
@click.option("--output", "-o", "output_file", type=click.Path(dir_okay=False),
              help="Output file path (default: <name>.yaml)")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def init_command(ctx: click.Context, name: str, output_file: Optional[str], force: bool):
    """Create a new pipeline YAML file from a template."""
    output_path = output_file or f"{name}.yaml"
    try:
        create_pipeline_file(output_path, name, force=force)
    except PromptChainError as e:
        _fail(ctx, e.message, e.exit_code, e.code)
        return

    if ctx.obj["json"]:
        _emit_json({"success": True, "file": output_path})
        return

    click.secho(f"Created pipeline: {output_path}", fg="green")
    click.echo()
    click.echo("Edit the file to define your pipeline steps, then run:")
    click.secho(f"  prompt-chain validate {output_path}", fg="cyan")
    click.secho(f"  prompt-chain run {output_path}", fg="cyan")


def main() -> None:
    """Entry point for the ``prompt-chain`` script."""
    cli(obj={})


if __name__ == "__main__":
    sys.exit(main())
