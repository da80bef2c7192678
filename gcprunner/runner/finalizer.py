"""
Run Finalizer: drives one remote run from staging to cleanup.

    stage inputs -> submit/resume -> tail logs while waiting -> check state
        -> delete job -> download outputs
    ... and, on every exit path, delete the staging prefix.
"""

import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional

from gcprunner.core.errors import ConfigurationError, RemoteExecutionError
from gcprunner.core.logger import setup_logger
from gcprunner.core.logging_context import bind_job, run_context
from gcprunner.core.render import render_template
from gcprunner.runner.cancellation import CancellationHandler
from gcprunner.runner.controller import LifecycleController
from gcprunner.runner.labels import OUTPUT_PREFIX_LABEL, STAGING_PREFIX_LABEL, job_name, labels
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

logger = setup_logger(__name__, include_location=True)

# States that abort a freshly submitted job before any polling
_SUBMISSION_FAILURES = (LifecycleState.FAILED, LifecycleState.CANCELED)


def effective_deadline(task_timeout: Optional[float], wait_until_completion: float) -> float:
    """The narrower of the task timeout (ignored when unset or 0) and the maximum wait."""
    if task_timeout:
        return min(task_timeout, wait_until_completion)
    return wait_until_completion


class RunFinalizer:
    """
    Runs TaskCommands on a remote job service.

    controller_factory is called once for the run's own controller and once
    per kill() for the cancellation path; the two never share clients.
    options must already carry defaults (RunnerOptions.with_defaults).
    """

    def __init__(
        self,
        controller_factory: Callable[[], LifecycleController],
        options: RunnerOptions,
        staging: Optional[StagingGateway] = None,
        logging_client=None,
        render_context: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.controller_factory = controller_factory
        self.options = options
        self.staging = staging
        self.logging_client = logging_client
        self.render_context = dict(render_context or {})
        self._clock = clock
        self._sleep = sleep
        self._cancellation: Optional[CancellationHandler] = None
        self._lock = threading.Lock()

    def kill(self) -> bool:
        """Cancel the current run's job, if one was submitted. Safe from any thread."""
        with self._lock:
            handler = self._cancellation
        if handler is None:
            logger.info("No job submitted yet, nothing to kill")
            return False
        return handler()

    def run(
        self,
        task: TaskCommands,
        identity: RunIdentity,
        files_to_upload: Iterable[str] = (),
        files_to_download: Iterable[str] = (),
        log_consumer: Optional[LogConsumer] = None,
    ) -> RunResult:
        files_to_upload = list(files_to_upload or [])
        files_to_download = list(files_to_download or [])
        options = self.options

        if not options.project_id or not options.region:
            raise ConfigurationError("Both a project id and a region are required")

        uses_bucket = bool(files_to_upload or files_to_download or task.output_directory_enabled)
        if uses_bucket and not options.bucket:
            raise ConfigurationError(
                "A bucket is required to upload input files, download output files or use an output directory"
            )
        if uses_bucket and self.staging is None:
            raise ConfigurationError("A bucket is configured but no storage client is available")

        consumer = log_consumer or LogConsumer()
        deadline = effective_deadline(task.timeout, options.wait_until_completion)

        controller = self.controller_factory()
        try:
            plan = controller.staging_plan(options.bucket if uses_bucket else None, task.output_directory_enabled)
            spec = self._job_spec(controller, task, identity, plan, deadline)

            with run_context(spec.job_id, controller.backend):
                return self._run(controller, spec, plan, task, files_to_upload, files_to_download, consumer, deadline)
        finally:
            controller.close()

    def _run(self, controller: LifecycleController, spec: JobSpec, plan: StagingPlan, task: TaskCommands,
             files_to_upload, files_to_download, consumer: LogConsumer, deadline: float) -> RunResult:
        options = self.options

        def stage_inputs():
            if not plan.bucket:
                return
            if files_to_upload or plan.output_enabled:
                self.staging.upload_inputs(
                    files_to_upload,
                    plan.bucket,
                    plan.working_prefix,
                    task.working_directory,
                    output_prefix=plan.output_prefix,
                    create_output_marker=plan.output_enabled,
                )
            elif controller.requires_working_dir_marker:
                self.staging.create_marker(plan.bucket, plan.working_prefix)

        try:
            handle = controller.submit(spec, resume=options.resume, before_create=stage_inputs)
            bind_job(handle.name, resumed=handle.resumed)
            with self._lock:
                self._cancellation = CancellationHandler(self.controller_factory, handle)

            if handle.resumed:
                adopted = controller.staging_plan_for(handle, plan.bucket, plan.output_enabled)
                if adopted is not None:
                    plan = adopted
                elif plan.bucket:
                    logger.warning(f"Resumed job {handle.name} does not record its staging directory")

            state = self._wait(controller, handle, consumer, deadline)

            if state.is_failure:
                status_code = controller.status_code(controller.last_native_status)
                logger.error(f"Job {handle.name} ended in state {state.value}")
                raise RemoteExecutionError(status_code, consumer.stdout_count, consumer.stderr_count, state.value)

            logger.success(f"Job {handle.name} completed ({state.value})")
            if options.delete:
                controller.delete(handle)

            output_files = []
            if plan.bucket and (files_to_download or plan.output_enabled):
                downloaded = self.staging.download_outputs(
                    files_to_download,
                    plan.bucket,
                    plan.working_prefix,
                    task.working_directory,
                    output_prefix=plan.output_prefix,
                    output_dir_enabled=plan.output_enabled,
                    local_output_root=task.output_directory,
                )
                output_files = [str(path) for path in downloaded]

            return RunResult(
                exit_code=0,
                stdout_count=consumer.stdout_count,
                stderr_count=consumer.stderr_count,
                job_name=handle.name,
                state=state,
                resumed=handle.resumed,
                output_files=output_files,
            )
        finally:
            if options.delete and plan.bucket:
                self._cleanup(plan)

    def _wait(self, controller: LifecycleController, handle: JobHandle, consumer: LogConsumer,
              deadline: float) -> LifecycleState:
        if handle.initial_state in _SUBMISSION_FAILURES:
            logger.error(f"Job {handle.name} failed at submission ({handle.initial_state.value})")
            return handle.initial_state

        if self.logging_client is None:
            logger.debug("No logging client, job logs will not be tailed")
            return self._await(controller, handle, deadline)

        with LogTail(
            self.logging_client,
            controller.resource_name,
            controller.log_filter(handle),
            consumer,
            wait_for_log_interval=self.options.wait_for_log_interval,
            sleep=self._sleep,
        ):
            return self._await(controller, handle, deadline)

    def _await(self, controller: LifecycleController, handle: JobHandle, deadline: float) -> LifecycleState:
        return await_terminal(
            lambda: controller.get_state(handle),
            self.options.completion_check_interval,
            deadline,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _cleanup(self, plan: StagingPlan) -> None:
        try:
            self.staging.delete_prefix(plan.bucket, plan.working_prefix)
        except Exception as e:
            logger.warning(f"Failed to clean up gs://{plan.bucket}/{plan.working_prefix}: {e}")

    def _job_spec(self, controller: LifecycleController, task: TaskCommands, identity: RunIdentity,
                  plan: StagingPlan, deadline: float) -> JobSpec:
        options = self.options

        env = {"WORKING_DIR": plan.working_dir}
        context = dict(self.render_context)
        context["workingDir"] = plan.working_dir
        if plan.output_dir:
            env["OUTPUT_DIR"] = plan.output_dir
            context["outputDir"] = plan.output_dir
        if plan.bucket_path:
            env["BUCKET_PATH"] = plan.bucket_path
            context["bucketPath"] = plan.bucket_path
        env.update({key: str(value) for key, value in render_template(task.env, context).items()})

        run_labels = labels(identity)
        job_labels = dict(run_labels)
        job_labels[STAGING_PREFIX_LABEL] = plan.working_prefix
        if plan.output_prefix:
            job_labels[OUTPUT_PREFIX_LABEL] = plan.output_prefix.rsplit("/", 1)[-1]

        return JobSpec(
            job_id=job_name(identity),
            project_id=options.project_id,
            region=options.region,
            container_image=render_template(task.container_image, context),
            commands=render_template(task.commands, context),
            entry_point=render_template(options.entry_point, context),
            env=env,
            working_dir=plan.working_dir,
            volume=controller.volume_mount(plan) if plan.bucket else None,
            compute_resource=options.compute_resource,
            machine_type=options.machine_type,
            reservation=options.reservation,
            network_interfaces=options.network_interfaces,
            labels=job_labels,
            resume_labels=run_labels,
            timeout=deadline,
        )
