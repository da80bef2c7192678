from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from google.api import launch_stage_pb2
from google.api_core import exceptions as api_exceptions
from google.cloud import run_v2
from google.protobuf import timestamp_pb2

from gcprunner.runner.cloud_run import (
    VOLUME_NAME,
    CloudRunController,
    ExecutionStatus,
    build_job,
    execution_status,
)
from gcprunner.runner.models import (
    MOUNT_PATH,
    ComputeResource,
    JobHandle,
    JobSpec,
    LifecycleState,
    NetworkInterface,
    VolumeMount,
)

PARENT = "projects/proj/locations/us-central1"
JOB_NAME = f"{PARENT}/jobs/flow-task-abc12345"
EXECUTION_NAME = f"{JOB_NAME}/executions/flow-task-abc12345-x7k2p"
LABELS = {"gcprunner-flow-id": "flow", "gcprunner-task-id": "task"}


def _spec(**overrides):
    values = dict(
        job_id="flow-task-abc12345",
        project_id="proj",
        region="us-central1",
        container_image="ubuntu:22.04",
        commands=["/bin/sh", "-c", "cat data.txt > out.txt"],
        env={"WORKING_DIR": f"{MOUNT_PATH}/run-123"},
        working_dir=f"{MOUNT_PATH}/run-123",
        volume=None,
        labels=LABELS,
        resume_labels=LABELS,
        timeout=600,
    )
    values.update(overrides)
    return JobSpec(**values)


def _execution(name=EXECUTION_NAME, completed=False, task_count=1, **counts):
    execution = run_v2.Execution(name=name, uid="exec-uid", task_count=task_count, **counts)
    if completed:
        execution.completion_time = timestamp_pb2.Timestamp(seconds=1700000000)
    return execution


def _clients():
    jobs_client = MagicMock()
    executions_client = MagicMock()
    jobs_client.create_job.return_value.result.return_value = run_v2.Job(name=JOB_NAME, labels=LABELS)
    jobs_client.run_job.return_value = SimpleNamespace(metadata=_execution())
    return jobs_client, executions_client


def _controller(jobs_client=None, executions_client=None):
    return CloudRunController(
        "proj", "us-central1",
        jobs_client=jobs_client or MagicMock(),
        executions_client=executions_client or MagicMock(),
    )


def _handle():
    return JobHandle(job_name=JOB_NAME, job_id="flow-task-abc12345", execution_name=EXECUTION_NAME)


@pytest.mark.parametrize("execution, expected", [
    (_execution(running_count=1), ExecutionStatus.RUNNING),
    (_execution(succeeded_count=1), ExecutionStatus.SUCCEEDED),
    (_execution(failed_count=1), ExecutionStatus.FAILED),
    (_execution(cancelled_count=1), ExecutionStatus.CANCELLED),
    (_execution(), ExecutionStatus.PENDING),
    (_execution(completed=True), ExecutionStatus.UNSPECIFIED),
    (_execution(task_count=2, succeeded_count=1), ExecutionStatus.PENDING),
])
def test_execution_status_is_derived_from_counts(execution, expected):
    assert execution_status(execution) == expected


@pytest.mark.parametrize("native", list(ExecutionStatus))
def test_every_execution_status_maps_to_exactly_one_lifecycle_state(native):
    expected = {
        ExecutionStatus.PENDING: LifecycleState.RUNNING,
        ExecutionStatus.RUNNING: LifecycleState.RUNNING,
        ExecutionStatus.SUCCEEDED: LifecycleState.SUCCEEDED,
        ExecutionStatus.FAILED: LifecycleState.FAILED,
        ExecutionStatus.CANCELLED: LifecycleState.CANCELED,
        ExecutionStatus.UNSPECIFIED: LifecycleState.UNKNOWN,
    }
    assert _controller().map_state(native) == expected[native]


def test_unrecognized_status_maps_to_unknown():
    assert _controller().map_state("EXPLODED") == LifecycleState.UNKNOWN
    assert _controller().status_code(ExecutionStatus.FAILED) == -1


def test_build_job_without_volume():
    job = build_job(_spec())

    container = job.template.template.containers[0]
    assert job.launch_stage == launch_stage_pb2.BETA
    assert job.template.task_count == 1
    assert job.template.template.max_retries == 0
    assert job.template.template.timeout.total_seconds() == 600
    assert container.image == "ubuntu:22.04"
    assert list(container.command) == ["/bin/sh", "-c", "cat data.txt > out.txt"]
    assert list(container.args) == []
    assert [(env.name, env.value) for env in container.env] == [("WORKING_DIR", f"{MOUNT_PATH}/run-123")]
    assert list(job.template.template.volumes) == []
    assert container.working_dir == ""
    assert dict(job.labels) == LABELS


def test_build_job_with_bucket_volume_entrypoint_and_resources():
    job = build_job(_spec(
        volume=VolumeMount(bucket="b", mount_path=MOUNT_PATH),
        entry_point=["/bin/bash"],
        compute_resource=ComputeResource(cpu=1000, memory=512),
        network_interfaces=[NetworkInterface(network="default", subnetwork="sub-a")],
    ))

    template = job.template.template
    container = template.containers[0]
    assert list(container.command) == ["/bin/bash"]
    assert list(container.args) == ["/bin/sh", "-c", "cat data.txt > out.txt"]
    assert container.working_dir == f"{MOUNT_PATH}/run-123"
    assert container.volume_mounts[0].name == VOLUME_NAME
    assert container.volume_mounts[0].mount_path == MOUNT_PATH
    assert template.volumes[0].name == VOLUME_NAME
    assert template.volumes[0].gcs.bucket == "b"
    assert dict(container.resources.limits) == {"cpu": "1000m", "memory": "512Mi"}
    assert template.vpc_access.network_interfaces[0].subnetwork == "sub-a"


def test_create_runs_one_execution_with_timeout_override():
    jobs_client, executions_client = _clients()
    controller = _controller(jobs_client, executions_client)

    handle = controller.create(_spec())

    create_request = jobs_client.create_job.call_args.kwargs["request"]
    assert create_request.parent == PARENT
    assert create_request.job_id == "flow-task-abc12345"
    run_request = jobs_client.run_job.call_args.kwargs["request"]
    assert run_request.name == JOB_NAME
    assert run_request.overrides.task_count == 1
    assert run_request.overrides.timeout.total_seconds() == 600
    assert handle.job_name == JOB_NAME
    assert handle.execution_name == EXECUTION_NAME
    assert handle.name == EXECUTION_NAME
    assert handle.initial_state == LifecycleState.RUNNING
    executions_client.list_executions.assert_not_called()


def test_create_falls_back_to_listing_executions():
    jobs_client, executions_client = _clients()
    jobs_client.run_job.return_value = SimpleNamespace(metadata=None)
    executions_client.list_executions.return_value = [_execution(running_count=1)]

    handle = _controller(jobs_client, executions_client).create(_spec())

    executions_client.list_executions.assert_called_once_with(parent=JOB_NAME)
    assert handle.execution_name == EXECUTION_NAME


def test_find_existing_matches_label_subset_and_skips_failed_executions():
    jobs_client, executions_client = _clients()
    jobs_client.list_jobs.return_value = [
        run_v2.Job(name=f"{PARENT}/jobs/unrelated", labels={"gcprunner-flow-id": "other"}),
        run_v2.Job(name=f"{PARENT}/jobs/failed", labels=dict(LABELS, extra="1")),
        run_v2.Job(name=JOB_NAME, labels=dict(LABELS, extra="1")),
    ]
    executions_client.list_executions.side_effect = lambda parent: {
        f"{PARENT}/jobs/failed": [_execution(name=f"{PARENT}/jobs/failed/executions/e", failed_count=1)],
        JOB_NAME: [_execution(running_count=1)],
    }[parent]

    handle = _controller(jobs_client, executions_client).find_existing(_spec())

    assert handle.job_name == JOB_NAME
    assert handle.execution_name == EXECUTION_NAME
    assert handle.resumed is True


def test_second_submit_with_same_labels_resumes_the_running_execution():
    jobs_client, executions_client = _clients()
    created = run_v2.Job(name=JOB_NAME, labels=LABELS)
    jobs_client.list_jobs.side_effect = [[], [created]]
    executions_client.list_executions.return_value = [_execution(running_count=1)]
    controller = _controller(jobs_client, executions_client)

    first = controller.submit(_spec())
    second = controller.submit(_spec(job_id="flow-task-zzz99999"))

    assert jobs_client.create_job.call_count == 1
    assert jobs_client.run_job.call_count == 1
    assert second.execution_name == first.execution_name
    assert second.resumed is True


def test_get_state_polls_the_execution():
    _, executions_client = _clients()
    executions_client.get_execution.return_value = _execution(succeeded_count=1, completed=True)
    controller = _controller(executions_client=executions_client)

    assert controller.get_state(_handle()) == LifecycleState.SUCCEEDED
    executions_client.get_execution.assert_called_once_with(name=EXECUTION_NAME)


def test_log_filter_is_scoped_to_the_execution():
    log_filter = _controller().log_filter(_handle())

    assert 'logName="projects/proj/logs/run.googleapis.com%2Fstdout"' in log_filter
    assert 'logName="projects/proj/logs/run.googleapis.com%2Fstderr"' in log_filter
    assert 'resource.labels.job_name="flow-task-abc12345"' in log_filter
    assert 'labels."run.googleapis.com/execution_name"="flow-task-abc12345-x7k2p"' in log_filter


def test_delete_removes_execution_and_job_without_waiting():
    jobs_client, executions_client = _clients()

    _controller(jobs_client, executions_client).delete(_handle())

    executions_client.delete_execution.assert_called_once_with(name=EXECUTION_NAME)
    jobs_client.delete_job.assert_called_once_with(name=JOB_NAME)
    jobs_client.delete_job.return_value.result.assert_not_called()


@patch("gcprunner.runner.cloud_run.logger")
def test_delete_failures_are_warnings(mock_logger):
    jobs_client, executions_client = _clients()
    executions_client.delete_execution.side_effect = api_exceptions.NotFound("gone")
    jobs_client.delete_job.side_effect = api_exceptions.ServiceUnavailable("down")

    _controller(jobs_client, executions_client).delete(_handle())

    jobs_client.delete_job.assert_called_once_with(name=JOB_NAME)
    mock_logger.warning.assert_called_once()


def test_cancel_cancels_the_execution():
    _, executions_client = _clients()

    _controller(executions_client=executions_client).cancel(_handle())

    executions_client.cancel_execution.assert_called_once_with(name=EXECUTION_NAME)


@patch("gcprunner.runner.cloud_run.run_v2.ExecutionsClient")
@patch("gcprunner.runner.cloud_run.run_v2.JobsClient")
def test_owned_clients_are_closed(mock_jobs_cls, mock_executions_cls):
    controller = CloudRunController("proj", "us-central1", credentials="creds")
    controller.close()

    mock_jobs_cls.return_value.transport.close.assert_called_once()
    mock_executions_cls.return_value.transport.close.assert_called_once()


def test_fractional_timeout_rounds_up_in_template_and_run_override():
    jobs_client, executions_client = _clients()

    _controller(jobs_client, executions_client).create(_spec(timeout=1.5))

    job = jobs_client.create_job.call_args.kwargs["request"].job
    assert job.template.template.timeout.total_seconds() == 2
    run_request = jobs_client.run_job.call_args.kwargs["request"]
    assert run_request.overrides.timeout.total_seconds() == 2
