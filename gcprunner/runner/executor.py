"""
Remote task executor.

Turns a plain task configuration (as loaded from a YAML task file) into a
remote run and reports the outcome as a result dictionary:

    task_config = {
        'name': 'transform',
        'container_image': 'ubuntu:22.04',
        'commands': ['/bin/sh', '-c', 'cat data.txt > out.txt'],
        'input_files': ['data.txt'],
        'output_files': ['out.txt'],
        'runner': {'backend': 'batch', 'bucket': 'my-bucket'},
    }
    result = execute_remote_task(task_config, context={})
"""

import uuid
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from gcprunner.core.config import Settings, get_settings
from gcprunner.core.credentials import get_credentials
from gcprunner.core.errors import ConfigurationError, classify_exception
from gcprunner.core.logger import setup_logger
from gcprunner.core.render import render_template
from gcprunner.runner.batch import BatchController
from gcprunner.runner.cloud_run import CloudRunController
from gcprunner.runner.controller import LifecycleController
from gcprunner.runner.finalizer import RunFinalizer
from gcprunner.runner.log_tail import LogConsumer, LogSink
from gcprunner.runner.models import RunIdentity, RunnerOptions, TaskCommands
from gcprunner.runner.staging import StagingGateway

logger = setup_logger(__name__, include_location=True)

CONTROLLERS = {
    "batch": BatchController,
    "cloud_run": CloudRunController,
}


def make_controller(options: RunnerOptions, credentials=None) -> LifecycleController:
    controller_class = CONTROLLERS.get(options.backend)
    if controller_class is None:
        raise ConfigurationError(f"Unknown backend '{options.backend}', expected one of: {', '.join(CONTROLLERS)}")
    return controller_class(options.project_id, options.region, credentials=credentials)


def build_options(task_config: Dict[str, Any], context: Dict[str, Any],
                  settings: Optional[Settings] = None) -> RunnerOptions:
    """Render and validate the 'runner' section, filling unset values from settings."""
    raw = render_template(task_config.get('runner') or {}, context)
    try:
        options = RunnerOptions(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid runner options: {e}") from e
    if settings is None:
        try:
            settings = get_settings()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid environment settings: {e}") from e
    return options.with_defaults(settings)


def build_identity(task_config: Dict[str, Any], context: Dict[str, Any]) -> RunIdentity:
    """
    Identity from the 'identity' section, completed from the context.

    A stable identity is what lets a restarted process resume its job; missing
    execution and taskrun ids are random, which disables resumption in effect.
    """
    raw = render_template(task_config.get('identity') or {}, context)
    task_name = task_config.get('name') or task_config.get('id') or 'task'
    values = {
        'namespace': raw.get('namespace') or context.get('namespace') or 'default',
        'flow_id': raw.get('flow_id') or context.get('flow_id') or task_name,
        'task_id': raw.get('task_id') or task_name,
        'execution_id': raw.get('execution_id') or context.get('execution_id') or uuid.uuid4().hex,
        'taskrun_id': raw.get('taskrun_id') or uuid.uuid4().hex,
        'attempt': raw.get('attempt', 0),
    }
    try:
        return RunIdentity(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid run identity: {e}") from e


def build_commands(task_config: Dict[str, Any]) -> TaskCommands:
    values = {
        'container_image': task_config.get('container_image') or task_config.get('image'),
        'commands': task_config.get('commands'),
        'env': task_config.get('env') or {},
        'timeout': task_config.get('timeout'),
        'output_directory_enabled': bool(task_config.get('output_directory_enabled', False)),
    }
    if task_config.get('working_directory'):
        values['working_directory'] = task_config['working_directory']
    if task_config.get('output_directory'):
        values['output_directory'] = task_config['output_directory']
    try:
        return TaskCommands(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid task: {e}") from e


def execute_remote_task(
    task_config: Dict[str, Any],
    context: Dict[str, Any],
    log_sink: Optional[LogSink] = None,
    settings: Optional[Settings] = None,
    controller_factory: Optional[Callable[[], LifecycleController]] = None,
    storage_client_factory: Optional[Callable[[], Any]] = None,
    logging_client=None,
    on_finalizer: Optional[Callable[[RunFinalizer], None]] = None,
) -> Dict[str, Any]:
    """
    Run a containerized task on Cloud Batch or Cloud Run.

    Args:
        task_config: Task configuration containing:
            - name / id: Task name, used for the job name and the result id
            - container_image: Image to run
            - commands: Command (list or string), rendered with workingDir,
              outputDir and bucketPath
            - env: Environment variables
            - timeout: Task timeout (seconds or duration string)
            - input_files / output_files: Paths relative to working_directory
            - output_directory_enabled: Harvest everything written to OUTPUT_DIR
            - working_directory / output_directory: Local directories
            - identity: namespace, flow_id, task_id, execution_id, taskrun_id, attempt
            - runner: RunnerOptions (backend, project_id, region, bucket, ...)
        context: Render context
        log_sink: Called with (line, is_stderr) for each remote log line
        settings: Settings to fall back on, get_settings() by default
        controller_factory: Builds a controller; the backend's by default
        storage_client_factory: Builds a storage client; google-cloud-storage by default
        logging_client: Cloud Logging client; LoggingServiceV2Client by default
        on_finalizer: Receives the RunFinalizer before the run starts (to wire kill)

    Returns:
        Dict with id, status ('success' or 'error'), data, error and error_info
    """
    task_id = task_config.get('id') or task_config.get('name') or str(uuid.uuid4())
    task_name = task_config.get('name', task_id)
    consumer = LogConsumer(log_sink)
    owned_logging_client = None

    try:
        options = build_options(task_config, context, settings)
        identity = build_identity(task_config, context)
        task = build_commands(task_config)

        logger.info(f"REMOTE TASK: Starting {task_name} on {options.backend} "
                    f"({options.project_id}/{options.region})")

        credentials = None
        if controller_factory is None or storage_client_factory is None or logging_client is None:
            credentials = get_credentials(
                options.service_account,
                options.scopes,
                options.impersonated_service_account,
            )
        if controller_factory is None:
            controller_factory = lambda: make_controller(options, credentials)
        if storage_client_factory is None and options.bucket:
            from google.cloud import storage
            storage_client_factory = lambda: storage.Client(project=options.project_id, credentials=credentials)
        if logging_client is None:
            from google.cloud.logging_v2.services.logging_service_v2 import LoggingServiceV2Client
            logging_client = owned_logging_client = LoggingServiceV2Client(credentials=credentials)

        finalizer = RunFinalizer(
            controller_factory,
            options,
            staging=StagingGateway(storage_client_factory) if storage_client_factory else None,
            logging_client=logging_client,
            render_context=context,
        )
        if on_finalizer is not None:
            on_finalizer(finalizer)

        result = finalizer.run(
            task,
            identity,
            files_to_upload=task_config.get('input_files') or [],
            files_to_download=task_config.get('output_files') or [],
            log_consumer=consumer,
        )
        logger.success(f"REMOTE TASK: {task_name} succeeded ({result.stdout_count} stdout, "
                       f"{result.stderr_count} stderr lines)")
        return {
            'id': task_id,
            'status': 'success',
            'data': result.model_dump(mode='json'),
            'error': None,
            'error_info': None,
        }

    except Exception as e:
        error_info = classify_exception(e)
        logger.error(f"REMOTE TASK: {task_name} failed [{error_info.code}]: {e}", exc_info=True)
        return {
            'id': task_id,
            'status': 'error',
            'data': {
                'stdout_count': consumer.stdout_count,
                'stderr_count': consumer.stderr_count,
            },
            'error': str(e),
            'error_info': error_info.to_dict(),
        }
    finally:
        if owned_logging_client is not None:
            owned_logging_client.transport.close()
