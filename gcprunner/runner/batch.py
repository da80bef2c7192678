"""
Cloud Batch backend.

The run's working directory is the bucket prefix <id>, mounted at
/mnt/disks/share on the VM and bind-mounted into the container as /<id>.
"""

from typing import Any, Optional

from google.api_core import exceptions as api_exceptions
from google.cloud import batch_v1
from google.protobuf import duration_pb2

from gcprunner.core.logger import setup_logger
from gcprunner.runner.controller import LifecycleController
from gcprunner.runner.labels import labels_filter
from gcprunner.runner.models import JobHandle, JobSpec, LifecycleState, StagingPlan, VolumeMount

logger = setup_logger(__name__, include_location=True)

BATCH_TASK_LOG_NAME = "batch_task_logs"

BATCH_STATES = {
    "QUEUED": LifecycleState.RUNNING,
    "SCHEDULED": LifecycleState.RUNNING,
    "RUNNING": LifecycleState.RUNNING,
    "CANCELLATION_IN_PROGRESS": LifecycleState.RUNNING,
    "SUCCEEDED": LifecycleState.SUCCEEDED,
    "FAILED": LifecycleState.FAILED,
    "CANCELLED": LifecycleState.CANCELED,
    "DELETION_IN_PROGRESS": LifecycleState.DELETION_IN_PROGRESS,
}


class BatchController(LifecycleController):
    backend = "batch"
    container_root = "/"

    def __init__(self, project_id: str, region: str, credentials=None,
                 client: Optional[batch_v1.BatchServiceClient] = None):
        super().__init__(project_id, region)
        self._owns_client = client is None
        self.client = client or batch_v1.BatchServiceClient(credentials=credentials)

    def volume_mount(self, plan: StagingPlan) -> Optional[VolumeMount]:
        if not plan.bucket:
            return None
        return VolumeMount(bucket=plan.bucket, prefix=plan.working_prefix)

    def find_existing(self, spec: JobSpec) -> Optional[JobHandle]:
        request = batch_v1.ListJobsRequest(parent=spec.parent, filter=labels_filter(spec.resume_labels))
        for job in self.client.list_jobs(request=request):
            state = self.map_state(job.status.state)
            if state.is_failure:
                logger.debug(f"Not resuming job {job.name} in state {state.value}")
                continue
            logger.info(f"Resuming existing job {job.name} (state {state.value})")
            return self._handle(job, resumed=True)
        return None

    def create(self, spec: JobSpec) -> JobHandle:
        request = batch_v1.CreateJobRequest(parent=spec.parent, job=build_job(spec), job_id=spec.job_id)
        job = self.client.create_job(request=request)
        logger.info(f"Created Batch job {job.name}")
        return self._handle(job, resumed=False)

    def _handle(self, job: batch_v1.Job, resumed: bool) -> JobHandle:
        return JobHandle(
            job_name=job.name,
            job_id=job.name.rsplit("/", 1)[-1],
            uid=job.uid,
            labels=dict(job.labels),
            resumed=resumed,
            initial_state=self.map_state(job.status.state),
        )

    def native_status(self, handle: JobHandle) -> Any:
        return self.client.get_job(name=handle.job_name).status.state

    def map_state(self, native: Any) -> LifecycleState:
        name = getattr(native, "name", None)
        if name is None:
            try:
                name = batch_v1.JobStatus.State(native).name
            except ValueError:
                return LifecycleState.UNKNOWN
        return BATCH_STATES.get(name, LifecycleState.UNKNOWN)

    def status_code(self, native: Any) -> int:
        try:
            return int(native)
        except (TypeError, ValueError):
            return -1

    def log_filter(self, handle: JobHandle) -> str:
        return (
            f'logName="projects/{self.project_id}/logs/{BATCH_TASK_LOG_NAME}" '
            f'labels.job_uid="{handle.uid}"'
        )

    def delete(self, handle: JobHandle) -> None:
        try:
            self.client.delete_job(request=batch_v1.DeleteJobRequest(name=handle.job_name))
        except api_exceptions.NotFound:
            logger.debug(f"Job {handle.job_name} already deleted")
        except api_exceptions.GoogleAPICallError as e:
            logger.warning(f"Failed to delete job {handle.job_name}: {e}")
        else:
            logger.info(f"Requested deletion of job {handle.job_name}")

    def cancel(self, handle: JobHandle) -> None:
        # Batch has no cancel call; deleting a running job stops it
        self.client.delete_job(request=batch_v1.DeleteJobRequest(name=handle.job_name, reason="Task was killed"))
        logger.info(f"Requested deletion of job {handle.job_name} to stop it")

    def close(self) -> None:
        if self._owns_client:
            self.client.transport.close()


def build_job(spec: JobSpec) -> batch_v1.Job:
    container = batch_v1.Runnable.Container(image_uri=spec.container_image, commands=list(spec.commands))
    if spec.entry_point:
        container.entrypoint = " ".join(spec.entry_point)
    if spec.volume is not None and spec.working_dir:
        container.volumes = [f"{spec.volume.mount_path}:{spec.working_dir}"]

    runnable = batch_v1.Runnable(container=container, environment=batch_v1.Environment(variables=dict(spec.env)))

    task = batch_v1.TaskSpec(
        runnables=[runnable],
        max_run_duration=duration_pb2.Duration(seconds=spec.timeout_seconds),
    )
    if spec.compute_resource is not None:
        resource = spec.compute_resource
        compute = batch_v1.ComputeResource()
        if resource.cpu is not None:
            compute.cpu_milli = resource.cpu
        if resource.memory is not None:
            compute.memory_mib = resource.memory
        if resource.boot_disk is not None:
            compute.boot_disk_mib = resource.boot_disk
        task.compute_resource = compute
    if spec.volume is not None:
        remote_path = spec.volume.bucket
        if spec.volume.prefix:
            remote_path = f"{remote_path}/{spec.volume.prefix}"
        task.volumes = [batch_v1.Volume(gcs=batch_v1.GCS(remote_path=remote_path), mount_path=spec.volume.mount_path)]

    policy = batch_v1.AllocationPolicy.InstancePolicy(machine_type=spec.machine_type)
    if spec.reservation:
        policy.reservation = spec.reservation
    allocation = batch_v1.AllocationPolicy(
        instances=[batch_v1.AllocationPolicy.InstancePolicyOrTemplate(policy=policy)],
    )
    if spec.network_interfaces:
        interfaces = []
        for interface in spec.network_interfaces:
            network = batch_v1.AllocationPolicy.NetworkInterface(network=interface.network)
            if interface.subnetwork:
                network.subnetwork = interface.subnetwork
            interfaces.append(network)
        allocation.network = batch_v1.AllocationPolicy.NetworkPolicy(network_interfaces=interfaces)

    return batch_v1.Job(
        task_groups=[batch_v1.TaskGroup(task_spec=task, task_count=1)],
        allocation_policy=allocation,
        labels=dict(spec.labels),
        logs_policy=batch_v1.LogsPolicy(destination=batch_v1.LogsPolicy.Destination.CLOUD_LOGGING),
    )
