import json
import signal
import threading
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from gcprunner.core.logger import setup_logger
from gcprunner.runner.executor import execute_remote_task

logger = setup_logger(__name__, include_location=True)

app = typer.Typer()


def parse_vars(values: Optional[List[str]]) -> dict:
    variables = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def load_task_file(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            task_config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise typer.BadParameter(f"Unable to read task file {path}: {e}", param_hint="TASK_FILE")
    if not isinstance(task_config, dict):
        raise typer.BadParameter(f"Task file {path} must contain a mapping", param_hint="TASK_FILE")
    return task_config


@app.callback()
def main():
    """Run containerized tasks on Cloud Batch or Cloud Run."""


@app.command("run")
def run_task(
    task_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML task file"),
    backend: Optional[str] = typer.Option(None, "--backend", "-b", help="batch or cloud_run (overrides the task file)"),
    var: Optional[List[str]] = typer.Option(None, "--var", "-v", help="Render variable as KEY=VALUE, repeatable"),
):
    """
    Run a task file on the remote job service.

    SIGINT/SIGTERM request the remote job to stop; the run then waits for it
    to reach a terminal state and cleans up as usual.

    Examples:
        gcprunner run task.yaml --backend cloud_run --var date=2024-01-01
    """
    task_config = load_task_file(task_file)
    if backend:
        task_config.setdefault("runner", {})["backend"] = backend
    task_config.setdefault("working_directory", str(task_file.resolve().parent))
    context = parse_vars(var)

    finalizers = []

    def _signal_handler(sig, frame):
        logger.info(f"Received signal {sig}; requesting the remote job to stop")
        for finalizer in finalizers:
            threading.Thread(target=finalizer.kill, name="gcprunner-kill", daemon=True).start()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _signal_handler)

    result = execute_remote_task(task_config, context, on_finalizer=finalizers.append)
    typer.echo(json.dumps(result, indent=2, default=str))
    if result["status"] != "success":
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
