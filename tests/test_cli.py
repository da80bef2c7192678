from unittest.mock import MagicMock, patch

import pytest
import typer
from typer.testing import CliRunner

from gcprunner.cli import app, load_task_file, parse_vars

runner = CliRunner()

TASK = """
name: transform
container_image: ubuntu:22.04
commands: ["/bin/sh", "-c", "cat data.txt > out.txt"]
runner:
  bucket: b
"""


@pytest.fixture
def task_file(tmp_path):
    path = tmp_path / "task.yaml"
    path.write_text(TASK)
    return path


def _success(*args, **kwargs):
    return {"id": "transform", "status": "success", "data": {"exit_code": 0}, "error": None}


@patch("gcprunner.cli.signal.signal")
@patch("gcprunner.cli.execute_remote_task", side_effect=_success)
def test_run_success(mock_execute, mock_signal, task_file):
    result = runner.invoke(app, ["run", str(task_file), "--backend", "cloud_run", "--var", "date=2024-01-01"])

    assert result.exit_code == 0
    assert '"status": "success"' in result.output
    task_config, context = mock_execute.call_args.args
    assert task_config["runner"] == {"bucket": "b", "backend": "cloud_run"}
    assert task_config["working_directory"] == str(task_file.resolve().parent)
    assert context == {"date": "2024-01-01"}
    assert mock_signal.call_count == 2


@patch("gcprunner.cli.signal.signal")
@patch("gcprunner.cli.execute_remote_task")
def test_run_error_exits_with_one(mock_execute, mock_signal, task_file):
    mock_execute.return_value = {"id": "transform", "status": "error", "data": {}, "error": "boom"}

    result = runner.invoke(app, ["run", str(task_file)])

    assert result.exit_code == 1
    assert '"error": "boom"' in result.output


@patch("gcprunner.cli.signal.signal")
@patch("gcprunner.cli.execute_remote_task")
def test_malformed_var_is_a_usage_error(mock_execute, mock_signal, task_file):
    result = runner.invoke(app, ["run", str(task_file), "--var", "no-equals-sign"])

    assert result.exit_code == 2
    mock_execute.assert_not_called()


@patch("gcprunner.cli.threading.Thread")
@patch("gcprunner.cli.signal.signal")
@patch("gcprunner.cli.execute_remote_task")
def test_signal_starts_a_kill_thread_per_finalizer(mock_execute, mock_signal, mock_thread, task_file):
    finalizer = MagicMock()

    def execute(task_config, context, on_finalizer=None):
        on_finalizer(finalizer)
        handler = mock_signal.call_args_list[0].args[1]
        handler(15, None)
        return _success()

    mock_execute.side_effect = execute

    result = runner.invoke(app, ["run", str(task_file)])

    assert result.exit_code == 0
    mock_thread.assert_called_once_with(target=finalizer.kill, name="gcprunner-kill", daemon=True)
    mock_thread.return_value.start.assert_called_once()


def test_parse_vars_keeps_equals_in_values():
    assert parse_vars(["a=1", "query=x=y", "empty="]) == {"a": "1", "query": "x=y", "empty": ""}
    assert parse_vars(None) == {}


def test_load_task_file_requires_a_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")

    with pytest.raises(typer.BadParameter):
        load_task_file(path)
