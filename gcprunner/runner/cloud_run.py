"""
Cloud Run Jobs backend.

The whole bucket is mounted at /mnt/disks/share, so the run's working
directory is /mnt/disks/share/<id> inside the container. Each run creates a
job and starts exactly one execution of it; the execution is what gets polled,
tailed and cancelled.
"""

from enum import Enum
from typing import Any, Optional

from google.api import launch_stage_pb2
from google.api_core import exceptions as api_exceptions
from google.cloud import run_v2
from google.protobuf import duration_pb2

from gcprunner.core.logger import setup_logger
from gcprunner.runner.controller import LifecycleController
from gcprunner.runner.labels import has_all_labels
from gcprunner.runner.models import MOUNT_PATH, JobHandle, JobSpec, LifecycleState, StagingPlan, VolumeMount

logger = setup_logger(__name__, include_location=True)

VOLUME_NAME = "gcprunner-io"


class ExecutionStatus(str, Enum):
    """Status derived from an execution's task counters."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    UNSPECIFIED = "UNSPECIFIED"


EXECUTION_STATES = {
    ExecutionStatus.PENDING: LifecycleState.RUNNING,
    ExecutionStatus.RUNNING: LifecycleState.RUNNING,
    ExecutionStatus.SUCCEEDED: LifecycleState.SUCCEEDED,
    ExecutionStatus.FAILED: LifecycleState.FAILED,
    ExecutionStatus.CANCELLED: LifecycleState.CANCELED,
    ExecutionStatus.UNSPECIFIED: LifecycleState.UNKNOWN,
}


def execution_status(execution: run_v2.Execution) -> ExecutionStatus:
    if execution.running_count > 0:
        return ExecutionStatus.RUNNING
    if execution.cancelled_count > 0:
        return ExecutionStatus.CANCELLED
    if execution.failed_count > 0:
        return ExecutionStatus.FAILED
    if execution.succeeded_count > 0 and execution.succeeded_count >= max(execution.task_count, 1):
        return ExecutionStatus.SUCCEEDED
    if "completion_time" in execution:
        # Completed without any counted task outcome
        return ExecutionStatus.UNSPECIFIED
    return ExecutionStatus.PENDING


class CloudRunController(LifecycleController):
    backend = "cloud_run"
    container_root = MOUNT_PATH
    requires_working_dir_marker = True

    def __init__(self, project_id: str, region: str, credentials=None,
                 jobs_client: Optional[run_v2.JobsClient] = None,
                 executions_client: Optional[run_v2.ExecutionsClient] = None):
        super().__init__(project_id, region)
        self._owned_clients = []
        if jobs_client is None:
            jobs_client = run_v2.JobsClient(credentials=credentials)
            self._owned_clients.append(jobs_client)
        if executions_client is None:
            executions_client = run_v2.ExecutionsClient(credentials=credentials)
            self._owned_clients.append(executions_client)
        self.jobs_client = jobs_client
        self.executions_client = executions_client

    def volume_mount(self, plan: StagingPlan) -> Optional[VolumeMount]:
        if not plan.bucket:
            return None
        return VolumeMount(bucket=plan.bucket, mount_path=MOUNT_PATH)

    def find_existing(self, spec: JobSpec) -> Optional[JobHandle]:
        for job in self.jobs_client.list_jobs(parent=spec.parent):
            if not has_all_labels(job.labels, spec.resume_labels):
                continue
            execution = next(iter(self.executions_client.list_executions(parent=job.name)), None)
            if execution is None:
                logger.debug(f"Not resuming job {job.name}: it has no execution")
                continue
            state = self.map_state(execution_status(execution))
            if state.is_failure:
                logger.debug(f"Not resuming execution {execution.name} in state {state.value}")
                continue
            logger.info(f"Resuming existing execution {execution.name} (state {state.value})")
            return self._handle(job, execution, resumed=True)
        return None

    def create(self, spec: JobSpec) -> JobHandle:
        request = run_v2.CreateJobRequest(parent=spec.parent, job=build_job(spec), job_id=spec.job_id)
        job = self.jobs_client.create_job(request=request).result()
        logger.info(f"Created Cloud Run job {job.name}")

        operation = self.jobs_client.run_job(request=run_v2.RunJobRequest(
            name=job.name,
            overrides=run_v2.RunJobRequest.Overrides(
                task_count=1,
                timeout=duration_pb2.Duration(seconds=spec.timeout_seconds),
            ),
        ))
        execution = operation.metadata
        if execution is None or not execution.name:
            execution = next(iter(self.executions_client.list_executions(parent=job.name)), None)
        if execution is None:
            raise api_exceptions.NotFound(f"No execution started for job {job.name}")
        logger.info(f"Started execution {execution.name}")
        return self._handle(job, execution, resumed=False)

    def _handle(self, job: run_v2.Job, execution: run_v2.Execution, resumed: bool) -> JobHandle:
        return JobHandle(
            job_name=job.name,
            job_id=job.name.rsplit("/", 1)[-1],
            execution_name=execution.name,
            uid=execution.uid or None,
            labels=dict(job.labels),
            resumed=resumed,
            initial_state=self.map_state(execution_status(execution)),
        )

    def native_status(self, handle: JobHandle) -> Any:
        return execution_status(self.executions_client.get_execution(name=handle.execution_name))

    def map_state(self, native: Any) -> LifecycleState:
        try:
            return EXECUTION_STATES[ExecutionStatus(native)]
        except ValueError:
            return LifecycleState.UNKNOWN

    def log_filter(self, handle: JobHandle) -> str:
        execution_id = (handle.execution_name or "").rsplit("/", 1)[-1]
        return (
            f'(logName="projects/{self.project_id}/logs/run.googleapis.com%2Fstdout" OR '
            f'logName="projects/{self.project_id}/logs/run.googleapis.com%2Fstderr") '
            f'AND resource.labels.job_name="{handle.job_id}" '
            f'AND labels."run.googleapis.com/execution_name"="{execution_id}"'
        )

    def delete(self, handle: JobHandle) -> None:
        targets = []
        if handle.execution_name:
            targets.append((self.executions_client.delete_execution, handle.execution_name))
        targets.append((self.jobs_client.delete_job, handle.job_name))

        for delete, name in targets:
            try:
                delete(name=name)
            except api_exceptions.NotFound:
                logger.debug(f"{name} already deleted")
            except api_exceptions.GoogleAPICallError as e:
                logger.warning(f"Failed to delete {name}: {e}")
            else:
                logger.info(f"Requested deletion of {name}")

    def cancel(self, handle: JobHandle) -> None:
        self.executions_client.cancel_execution(name=handle.execution_name)
        logger.info(f"Requested cancellation of execution {handle.execution_name}")

    def close(self) -> None:
        for client in self._owned_clients:
            client.transport.close()


def build_job(spec: JobSpec) -> run_v2.Job:
    container = run_v2.Container(
        image=spec.container_image,
        env=[run_v2.EnvVar(name=key, value=value) for key, value in spec.env.items()],
    )
    if spec.entry_point:
        container.command = list(spec.entry_point)
        container.args = list(spec.commands)
    else:
        container.command = list(spec.commands)

    if spec.compute_resource is not None:
        limits = {}
        if spec.compute_resource.cpu is not None:
            limits["cpu"] = f"{spec.compute_resource.cpu}m"
        if spec.compute_resource.memory is not None:
            limits["memory"] = f"{spec.compute_resource.memory}Mi"
        if limits:
            container.resources = run_v2.ResourceRequirements(limits=limits)

    template = run_v2.TaskTemplate(
        max_retries=0,
        timeout=duration_pb2.Duration(seconds=spec.timeout_seconds),
    )
    if spec.volume is not None:
        if spec.working_dir:
            container.working_dir = spec.working_dir
        container.volume_mounts = [run_v2.VolumeMount(name=VOLUME_NAME, mount_path=spec.volume.mount_path)]
        template.volumes = [run_v2.Volume(
            name=VOLUME_NAME,
            gcs=run_v2.GCSVolumeSource(bucket=spec.volume.bucket, read_only=False),
        )]
    if spec.network_interfaces:
        interfaces = []
        for interface in spec.network_interfaces:
            network = run_v2.VpcAccess.NetworkInterface(network=interface.network)
            if interface.subnetwork:
                network.subnetwork = interface.subnetwork
            interfaces.append(network)
        template.vpc_access = run_v2.VpcAccess(network_interfaces=interfaces)
    template.containers = [container]

    return run_v2.Job(
        launch_stage=launch_stage_pb2.BETA,
        labels=dict(spec.labels),
        template=run_v2.ExecutionTemplate(task_count=1, template=template),
    )
