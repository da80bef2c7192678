"""
Data model shared by the runner components.
"""

import math
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gcprunner.core.config import Settings, coerce_bool_value

MOUNT_PATH = "/mnt/disks/share"

_ISO_DURATION = re.compile(
    r"^P(?:(?P<days>\d+(?:\.\d+)?)D)?"
    r"(?:T(?:(?P<hours>\d+(?:\.\d+)?)H)?(?:(?P<minutes>\d+(?:\.\d+)?)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)
_SUFFIX_DURATION = re.compile(r"^(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h|d)$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds), suffixed strings ("500ms", "5s", "2m", "1h")
    and ISO-8601 durations ("PT5S", "PT1H30M").
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    match = _SUFFIX_DURATION.match(text.lower())
    if match:
        return float(match.group("value")) * _UNIT_SECONDS[match.group("unit")]

    match = _ISO_DURATION.match(text.upper())
    if match and any(match.groupdict().values()):
        parts = {k: float(v) for k, v in match.groupdict().items() if v}
        return (
            parts.get("days", 0) * 86400
            + parts.get("hours", 0) * 3600
            + parts.get("minutes", 0) * 60
            + parts.get("seconds", 0)
        )

    raise ValueError(f"Invalid duration: {value!r}")


class LifecycleState(str, Enum):
    UNSUBMITTED = "UNSUBMITTED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    DELETION_IN_PROGRESS = "DELETION_IN_PROGRESS"
    UNKNOWN = "UNKNOWN"

    @property
    def is_failure(self) -> bool:
        return self in (LifecycleState.FAILED, LifecycleState.CANCELED, LifecycleState.UNKNOWN)

    @property
    def is_success(self) -> bool:
        return self in (LifecycleState.SUCCEEDED, LifecycleState.DELETION_IN_PROGRESS)

    @property
    def is_terminal(self) -> bool:
        return self.is_failure or self.is_success


class ComputeResource(BaseModel):
    """Per-task resources: cpu in milliCPU, memory and boot disk in MiB."""
    cpu: Optional[int] = Field(None, gt=0)
    memory: Optional[int] = Field(None, gt=0)
    boot_disk: Optional[int] = Field(None, gt=0)


class NetworkInterface(BaseModel):
    network: str
    subnetwork: Optional[str] = None


class RunIdentity(BaseModel):
    """Identity of a task run; the labels derived from it drive resumption."""
    namespace: str
    flow_id: str
    task_id: str
    execution_id: str
    taskrun_id: str
    attempt: int = 0


class StagingPlan(BaseModel):
    """Container-side directories and their Cloud Storage location for one run."""
    model_config = ConfigDict(frozen=True)

    working_dir: str
    output_dir: Optional[str] = None
    bucket: Optional[str] = None
    working_prefix: str
    output_prefix: Optional[str] = None

    @property
    def bucket_path(self) -> Optional[str]:
        if not self.bucket:
            return None
        return f"gs://{self.bucket}/{self.working_prefix}"

    @property
    def output_enabled(self) -> bool:
        return self.output_dir is not None


class VolumeMount(BaseModel):
    """A Cloud Storage location (bucket + optional prefix) mounted into the job."""
    model_config = ConfigDict(frozen=True)

    bucket: str
    prefix: str = ""
    mount_path: str = MOUNT_PATH


class JobSpec(BaseModel):
    """Everything a backend needs to create the remote job."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    project_id: str
    region: str
    container_image: str
    commands: List[str]
    entry_point: Optional[List[str]] = None
    env: Dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None
    volume: Optional[VolumeMount] = None
    compute_resource: Optional[ComputeResource] = None
    machine_type: str = "e2-medium"
    reservation: Optional[str] = None
    network_interfaces: List[NetworkInterface] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    resume_labels: Dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(3600.0, gt=0)

    @property
    def parent(self) -> str:
        return f"projects/{self.project_id}/locations/{self.region}"

    @property
    def timeout_seconds(self) -> int:
        """Whole seconds for Duration fields, rounded up."""
        return math.ceil(self.timeout)


class JobHandle(BaseModel):
    """Remote identifiers of a submitted (or adopted) job."""
    model_config = ConfigDict(frozen=True)

    job_name: str
    job_id: str
    execution_name: Optional[str] = None
    uid: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    resumed: bool = False
    initial_state: LifecycleState = LifecycleState.UNKNOWN

    @property
    def name(self) -> str:
        """The name of the polled resource: the execution when there is one."""
        return self.execution_name or self.job_name


class RunResult(BaseModel):
    exit_code: int = 0
    stdout_count: int = 0
    stderr_count: int = 0
    job_name: Optional[str] = None
    state: Optional[LifecycleState] = None
    resumed: bool = False
    output_files: List[str] = Field(default_factory=list)


class TaskCommands(BaseModel):
    """
    What to run and where its local files live.

    working_directory holds the input files (relative paths are resolved
    against it) and receives named output files; output_directory receives
    everything the command writes to its output directory.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    container_image: str
    commands: List[str]
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    output_directory_enabled: bool = False
    working_directory: Path = Field(default_factory=Path.cwd)
    output_directory: Optional[Path] = None

    @field_validator('timeout', mode='before')
    def coerce_timeout(cls, v):
        if v is None:
            return None
        return parse_duration(v)

    @field_validator('commands', mode='before')
    def coerce_commands(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @model_validator(mode='after')
    def default_output_directory(self):
        if self.output_directory_enabled and self.output_directory is None:
            self.output_directory = self.working_directory / "outputs"
        return self


class RunnerOptions(BaseModel):
    """Recognized runner options; unset values come from Settings."""
    model_config = ConfigDict(extra='forbid')

    backend: Optional[str] = None
    project_id: Optional[str] = None
    region: Optional[str] = None
    machine_type: str = "e2-medium"
    compute_resource: Optional[ComputeResource] = None
    reservation: Optional[str] = None
    entry_point: Optional[List[str]] = None
    network_interfaces: List[NetworkInterface] = Field(default_factory=list)
    bucket: Optional[str] = None
    wait_until_completion: Optional[float] = None
    completion_check_interval: Optional[float] = None
    wait_for_log_interval: Optional[float] = None
    delete: Optional[bool] = None
    resume: Optional[bool] = None
    service_account: Optional[Any] = None
    impersonated_service_account: Optional[str] = None
    scopes: List[str] = Field(default_factory=lambda: ["https://www.googleapis.com/auth/cloud-platform"])

    @field_validator('wait_until_completion', 'completion_check_interval', 'wait_for_log_interval', mode='before')
    def coerce_duration(cls, v):
        if v is None:
            return None
        return parse_duration(v)

    @field_validator('wait_until_completion', 'completion_check_interval')
    def positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Value must be greater than zero")
        return v

    @field_validator('wait_for_log_interval')
    def not_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("Value must not be negative")
        return v

    @field_validator('delete', 'resume', mode='before')
    def coerce_bool(cls, v):
        if v is None:
            return None
        return coerce_bool_value(v)

    @field_validator('entry_point', mode='before')
    def coerce_entry_point(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    def with_defaults(self, settings: Settings) -> "RunnerOptions":
        """Return a copy where every unset option takes the settings value."""
        return self.model_copy(update={
            'backend': (self.backend or settings.backend).strip().lower().replace("-", "_"),
            'project_id': self.project_id or settings.project_id,
            'region': self.region or settings.region,
            'bucket': self.bucket or settings.bucket,
            'wait_until_completion': self.wait_until_completion or settings.wait_until_completion,
            'completion_check_interval': self.completion_check_interval or settings.completion_check_interval,
            'wait_for_log_interval': (
                self.wait_for_log_interval if self.wait_for_log_interval is not None else settings.wait_for_log_interval
            ),
            'delete': self.delete if self.delete is not None else settings.delete,
            'resume': self.resume if self.resume is not None else settings.resume,
        })
