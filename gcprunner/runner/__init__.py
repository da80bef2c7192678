from gcprunner.runner.batch import BatchController
from gcprunner.runner.cancellation import CancellationHandler
from gcprunner.runner.cloud_run import CloudRunController
from gcprunner.runner.controller import LifecycleController
from gcprunner.runner.executor import execute_remote_task
from gcprunner.runner.finalizer import RunFinalizer
from gcprunner.runner.log_tail import LogConsumer, LogTail
from gcprunner.runner.models import (
    JobHandle,
    JobSpec,
    LifecycleState,
    RunIdentity,
    RunnerOptions,
    RunResult,
    StagingPlan,
    TaskCommands,
)
from gcprunner.runner.staging import StagingGateway
from gcprunner.runner.waiter import await_terminal

__all__ = [
    "BatchController",
    "CancellationHandler",
    "CloudRunController",
    "JobHandle",
    "JobSpec",
    "LifecycleController",
    "LifecycleState",
    "LogConsumer",
    "LogTail",
    "RunFinalizer",
    "RunIdentity",
    "RunResult",
    "RunnerOptions",
    "StagingGateway",
    "StagingPlan",
    "TaskCommands",
    "await_terminal",
    "execute_remote_task",
]
