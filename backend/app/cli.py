"""Command-line runner for workflow definition files.

    python -m app.cli run workflow.json --var username=bob --var retries=3
"""

import asyncio
import json
import sys
from pathlib import Path

import click

from core.exceptions import WorkflowError
from core.logging_config import setup_logging
from workflow.engine import get_workflow_engine


def _parse_vars(pairs: tuple) -> dict:
    """``key=value`` pairs; values are parsed as JSON when possible."""
    variables = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--var")
        try:
            variables[key] = json.loads(raw)
        except ValueError:
            variables[key] = raw
    return variables


@click.group()
def cli():
    """Workflow Execution Engine CLI."""
    pass


@cli.command()
@click.argument("definition", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--var", "pairs", multiple=True, help="Initial variable as key=value (repeatable)")
@click.option("--session-id", default=None, help="Session ID recorded on the execution")
def run(definition: Path, pairs: tuple, session_id: str | None):
    """Execute a workflow definition file and print the result as JSON."""
    setup_logging(stream=sys.stderr)

    try:
        workflow = json.loads(definition.read_text())
    except ValueError as e:
        click.echo(f"Invalid JSON in {definition}: {e}", err=True)
        sys.exit(1)

    engine = get_workflow_engine()
    initial_context = {"variables": _parse_vars(pairs), "session_id": session_id}

    try:
        result = asyncio.run(engine.execute_workflow(workflow, initial_context))
    except WorkflowError as e:
        click.echo(json.dumps({"status": "failed", "error": e.message}), err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(json.dumps({"status": "failed", "error": str(e), "error_class": type(e).__name__}), err=True)
        sys.exit(1)

    click.echo(json.dumps(result, indent=2, default=str))
    if result["status"] != "completed":
        sys.exit(1)


if __name__ == "__main__":
    cli()
