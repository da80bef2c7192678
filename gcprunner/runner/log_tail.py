"""
Streams the remote job's Cloud Logging entries to a log consumer while the
run waits for completion.
"""

import contextvars
import json
import threading
import time
from typing import Callable, Iterator, Optional

from google.api_core import exceptions as api_exceptions
from google.cloud.logging_v2.types import LogEntry, TailLogEntriesRequest
from google.logging.type import log_severity_pb2
from google.protobuf.json_format import MessageToDict

from gcprunner.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

ERROR_SEVERITIES = frozenset({
    log_severity_pb2.ERROR,
    log_severity_pb2.CRITICAL,
    log_severity_pb2.EMERGENCY,
})

LogSink = Callable[[str, bool], None]


def is_error(severity) -> bool:
    return int(severity) in ERROR_SEVERITIES


class LogConsumer:
    """
    Counts stdout/stderr lines and forwards them to a sink.

    Without a sink, lines go to the 'gcprunner.task' logger: stdout at INFO,
    stderr at ERROR.
    """

    def __init__(self, sink: Optional[LogSink] = None):
        self._sink = sink
        self._lock = threading.Lock()
        self._stdout_count = 0
        self._stderr_count = 0
        self._task_logger = None if sink else setup_logger("gcprunner.task")

    def accept(self, line: str, is_stderr: bool) -> None:
        with self._lock:
            if is_stderr:
                self._stderr_count += 1
            else:
                self._stdout_count += 1
        if self._sink is not None:
            self._sink(line, is_stderr)
        elif is_stderr:
            self._task_logger.error(line)
        else:
            self._task_logger.info(line)

    @property
    def stdout_count(self) -> int:
        with self._lock:
            return self._stdout_count

    @property
    def stderr_count(self) -> int:
        with self._lock:
            return self._stderr_count


def entry_payload(entry: LogEntry) -> tuple:
    """Return (line, is_error) for a log entry."""
    pb = LogEntry.pb(entry)
    payload_type = pb.WhichOneof("payload")
    if payload_type == "text_payload":
        return pb.text_payload, is_error(pb.severity)
    if payload_type == "json_payload":
        try:
            return json.dumps(MessageToDict(pb.json_payload)), is_error(pb.severity)
        except (TypeError, ValueError) as e:
            return f"Unable to parse JSON log message: {e}", True
    return f"Unable to process a log payload of type: {payload_type or 'none'}", True


def _cancel(stream) -> None:
    cancel = getattr(stream, "cancel", None)
    if cancel is not None:
        cancel()


class LogTail:
    """
    Tails entries matching log_filter on a background thread.

    The stream is opened on the worker thread, so construction never waits
    on the log service. close() waits wait_for_log_interval seconds for late
    entries, then cancels the stream and joins the thread. Failures to open
    or read the stream stop the tail with a warning; they never fail the run.
    """

    def __init__(
        self,
        logging_client,
        resource_name: str,
        log_filter: str,
        consumer: LogConsumer,
        wait_for_log_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        join_timeout: float = 10.0,
    ):
        self.log_filter = log_filter
        self.consumer = consumer
        self.wait_for_log_interval = wait_for_log_interval
        self._client = logging_client
        self._sleep = sleep
        self._join_timeout = join_timeout
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._stream = None
        self._closed = False
        self._request = TailLogEntriesRequest(resource_names=[resource_name], filter=log_filter)

        logger.debug(f"Tailing logs with filter: {log_filter}")

        context = contextvars.copy_context()
        self._thread = threading.Thread(
            target=context.run,
            args=(self._forward,),
            name="gcprunner-log-tail",
            daemon=True,
        )
        self._thread.start()

    def _requests(self) -> Iterator[TailLogEntriesRequest]:
        yield self._request
        # Keep the request side open until close() so the server keeps streaming
        self._stop.wait()

    def _forward(self) -> None:
        try:
            # Opening may block until the first response arrives
            stream = self._client.tail_log_entries(requests=self._requests())
        except Exception as e:
            logger.warning(f"Unable to open log stream: {e}")
            return
        try:
            with self._lock:
                self._stream = stream
                stopped = self._stop.is_set()
            if stopped:
                _cancel(stream)
            for response in stream:
                for entry in response.entries:
                    line, error = entry_payload(entry)
                    self.consumer.accept(line, error)
        except api_exceptions.Cancelled:
            pass
        except Exception as e:
            if self._stop.is_set():
                return
            logger.warning(f"Log tail stopped: {e}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self.wait_for_log_interval > 0:
            self._sleep(self.wait_for_log_interval)

        with self._lock:
            self._stop.set()
            stream = self._stream
        if stream is not None:
            _cancel(stream)
        self._thread.join(self._join_timeout)
        if self._thread.is_alive():
            logger.warning("Log tail thread did not stop after the stream was cancelled")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
