"""
Job lifecycle controller interface.

One controller drives one remote job service. Backends differ only in how a
JobSpec becomes a remote job, how native statuses map onto LifecycleState and
which log filter isolates the job's entries; polling, log tailing, staging and
cleanup are shared and live outside the controllers.
"""

import posixpath
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from gcprunner.core.logger import setup_logger
from gcprunner.runner.labels import OUTPUT_PREFIX_LABEL, STAGING_PREFIX_LABEL
from gcprunner.runner.models import JobHandle, JobSpec, LifecycleState, StagingPlan, VolumeMount

logger = setup_logger(__name__, include_location=True)


def new_dir_id() -> str:
    return uuid.uuid4().hex


class LifecycleController(ABC):
    """Abstract base class for remote job backends (Cloud Batch, Cloud Run)."""

    backend = "abstract"

    # Container-side directory under which each run's working directory is created
    container_root = "/"

    # Whether the working directory must exist as an object before the job starts
    requires_working_dir_marker = False

    def __init__(self, project_id: str, region: str):
        self.project_id = project_id
        self.region = region
        self.state = LifecycleState.UNSUBMITTED
        self.last_native_status: Any = None

    @property
    def resource_name(self) -> str:
        return f"projects/{self.project_id}"

    # -- staging layout -------------------------------------------------

    def staging_plan(self, bucket: Optional[str], output_enabled: bool,
                     working_id: Optional[str] = None, output_id: Optional[str] = None) -> StagingPlan:
        """
        Lay out the run's working (and output) directory.

        Fresh ids are generated unless given, which is how a resumed run
        reuses the directories of the job it adopted.
        """
        working_id = working_id or new_dir_id()
        working_dir = posixpath.join(self.container_root, working_id)

        output_dir = None
        output_prefix = None
        if bucket and output_enabled:
            output_id = output_id or new_dir_id()
            output_dir = posixpath.join(working_dir, output_id)
            output_prefix = f"{working_id}/{output_id}"

        return StagingPlan(
            working_dir=working_dir,
            output_dir=output_dir,
            bucket=bucket,
            working_prefix=working_id,
            output_prefix=output_prefix,
        )

    def staging_plan_for(self, handle: JobHandle, bucket: Optional[str], output_enabled: bool) -> Optional[StagingPlan]:
        """Rebuild the staging plan recorded on an adopted job, if any."""
        working_id = handle.labels.get(STAGING_PREFIX_LABEL)
        if not working_id:
            return None
        return self.staging_plan(bucket, output_enabled, working_id, handle.labels.get(OUTPUT_PREFIX_LABEL))

    @abstractmethod
    def volume_mount(self, plan: StagingPlan) -> Optional[VolumeMount]:
        """Cloud Storage volume to mount so the container sees plan.working_dir."""

    # -- lifecycle --------------------------------------------------------

    def submit(self, spec: JobSpec, resume: bool = True,
               before_create: Optional[Callable[[], None]] = None) -> JobHandle:
        """
        Adopt a live job carrying spec.resume_labels when resume is enabled,
        otherwise create a new one.

        before_create runs only when a new job is about to be created; it is
        where input files get staged.
        """
        handle = self.find_existing(spec) if resume and spec.resume_labels else None
        if handle is None:
            if before_create is not None:
                before_create()
            handle = self.create(spec)
        self.state = LifecycleState.RUNNING
        return handle

    @abstractmethod
    def find_existing(self, spec: JobSpec) -> Optional[JobHandle]:
        """Return a job matching spec.resume_labels that has not failed, if any."""

    @abstractmethod
    def create(self, spec: JobSpec) -> JobHandle:
        """Create (and start) the remote job described by spec."""

    @abstractmethod
    def native_status(self, handle: JobHandle) -> Any:
        """Fetch the backend's native status for handle."""

    @abstractmethod
    def map_state(self, native: Any) -> LifecycleState:
        """Map a native status onto LifecycleState; unrecognized values are UNKNOWN."""

    def status_code(self, native: Any) -> int:
        return -1

    def get_state(self, handle: JobHandle) -> LifecycleState:
        native = self.native_status(handle)
        self.last_native_status = native
        self.state = self.map_state(native)
        return self.state

    @abstractmethod
    def log_filter(self, handle: JobHandle) -> str:
        """Cloud Logging filter matching only this job's (execution's) entries."""

    @abstractmethod
    def delete(self, handle: JobHandle) -> None:
        """Request deletion of the job without waiting; failures are logged."""

    @abstractmethod
    def cancel(self, handle: JobHandle) -> None:
        """Request the running job to stop."""

    def close(self) -> None:
        """Close the controller's API clients."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
