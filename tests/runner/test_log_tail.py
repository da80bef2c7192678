import json
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from google.api_core import exceptions as api_exceptions
from google.cloud.logging_v2.types import LogEntry
from google.logging.type import log_severity_pb2
from google.protobuf import any_pb2

from gcprunner.runner.log_tail import LogConsumer, LogTail, entry_payload, is_error


class FakeStream:
    """Server stream: yields the scripted responses, then blocks until cancelled."""

    def __init__(self, responses=(), error=None):
        self.responses = list(responses)
        self.error = error
        self.cancelled = threading.Event()

    def __iter__(self):
        for response in self.responses:
            yield response
        if self.error is not None:
            raise self.error
        self.cancelled.wait(5)

    def cancel(self):
        self.cancelled.set()


def _client(stream):
    client = MagicMock()
    client.tail_log_entries.return_value = stream
    return client


def _response(*entries):
    return SimpleNamespace(entries=list(entries))


def test_is_error_for_error_critical_and_emergency():
    assert is_error(log_severity_pb2.ERROR)
    assert is_error(log_severity_pb2.CRITICAL)
    assert is_error(log_severity_pb2.EMERGENCY)
    assert not is_error(log_severity_pb2.WARNING)
    assert not is_error(log_severity_pb2.INFO)
    assert not is_error(log_severity_pb2.DEFAULT)


def test_entry_payload_text():
    entry = LogEntry(text_payload="hello", severity=log_severity_pb2.INFO)
    assert entry_payload(entry) == ("hello", False)


def test_entry_payload_text_with_error_severity():
    entry = LogEntry(text_payload="boom", severity=log_severity_pb2.ERROR)
    assert entry_payload(entry) == ("boom", True)


def test_entry_payload_json_is_serialized():
    entry = LogEntry(json_payload={"message": "done", "rows": 3}, severity=log_severity_pb2.INFO)
    line, error = entry_payload(entry)

    assert json.loads(line) == {"message": "done", "rows": 3}
    assert error is False


def test_entry_payload_other_type_is_reported_as_error():
    entry = LogEntry(proto_payload=any_pb2.Any(type_url="type.googleapis.com/google.protobuf.Empty"))
    assert entry_payload(entry) == ("Unable to process a log payload of type: proto_payload", True)


def test_consumer_counts_and_forwards_to_sink():
    lines = []
    consumer = LogConsumer(lambda line, is_stderr: lines.append((line, is_stderr)))

    consumer.accept("a", False)
    consumer.accept("b", True)
    consumer.accept("c", False)

    assert lines == [("a", False), ("b", True), ("c", False)]
    assert consumer.stdout_count == 2
    assert consumer.stderr_count == 1


@patch("gcprunner.runner.log_tail.setup_logger")
def test_consumer_without_sink_logs_on_task_logger(mock_setup_logger):
    task_logger = MagicMock()
    mock_setup_logger.return_value = task_logger

    consumer = LogConsumer()
    consumer.accept("out", False)
    consumer.accept("err", True)

    mock_setup_logger.assert_called_once_with("gcprunner.task")
    task_logger.info.assert_called_once_with("out")
    task_logger.error.assert_called_once_with("err")


def test_tail_forwards_entries_in_order_and_closes():
    stream = FakeStream([
        _response(LogEntry(text_payload="one"), LogEntry(text_payload="two")),
        _response(LogEntry(text_payload="three", severity=log_severity_pb2.ERROR)),
    ])
    client = _client(stream)
    lines = []
    sleeps = []
    consumer = LogConsumer(lambda line, is_stderr: lines.append((line, is_stderr)))

    tail = LogTail(client, "projects/proj", 'labels.job_uid="u1"', consumer,
                   wait_for_log_interval=5, sleep=sleeps.append)
    tail.close()

    assert lines == [("one", False), ("two", False), ("three", True)]
    assert sleeps == [5]
    assert stream.cancelled.is_set()
    assert not tail._thread.is_alive()


def test_tail_sends_the_job_filter_as_first_request():
    stream = FakeStream()
    client = _client(stream)

    with LogTail(client, "projects/proj", 'labels.job_uid="u1"', LogConsumer(lambda *_: None),
                 wait_for_log_interval=0):
        pass

    first = next(client.tail_log_entries.call_args.kwargs["requests"])

    assert list(first.resource_names) == ["projects/proj"]
    assert first.filter == 'labels.job_uid="u1"'


def test_close_is_idempotent():
    stream = FakeStream()
    sleeps = []
    tail = LogTail(_client(stream), "projects/proj", "f", LogConsumer(lambda *_: None),
                   wait_for_log_interval=1, sleep=sleeps.append)

    tail.close()
    tail.close()

    assert sleeps == [1]


@patch("gcprunner.runner.log_tail.logger")
def test_stream_failure_is_logged_not_raised(mock_logger):
    stream = FakeStream([_response(LogEntry(text_payload="before"))], error=api_exceptions.ServiceUnavailable("gone"))
    lines = []
    tail = LogTail(_client(stream), "projects/proj", "f", LogConsumer(lambda line, _: lines.append(line)),
                   wait_for_log_interval=0)

    tail._thread.join(5)
    tail.close()

    assert lines == ["before"]
    mock_logger.warning.assert_called_once()
    assert "Log tail stopped" in mock_logger.warning.call_args.args[0]


@patch("gcprunner.runner.log_tail.logger")
def test_cancelled_stream_is_not_a_warning(mock_logger):
    stream = FakeStream(error=api_exceptions.Cancelled("cancelled"))
    tail = LogTail(_client(stream), "projects/proj", "f", LogConsumer(lambda *_: None), wait_for_log_interval=0)

    tail._thread.join(5)
    tail.close()

    mock_logger.warning.assert_not_called()


def test_constructor_does_not_wait_for_the_stream_to_open():
    opening = threading.Event()
    release = threading.Event()
    stream = FakeStream([_response(LogEntry(text_payload="late"))])
    lines = []

    def tail_log_entries(requests):
        opening.set()
        release.wait(5)
        return stream

    client = MagicMock()
    client.tail_log_entries.side_effect = tail_log_entries

    tail = LogTail(client, "projects/proj", "f", LogConsumer(lambda line, _: lines.append(line)),
                   wait_for_log_interval=0)

    assert opening.wait(5)
    assert not release.is_set()
    assert tail._thread.is_alive()

    release.set()
    tail.close()

    assert lines == ["late"]
    assert stream.cancelled.is_set()


@patch("gcprunner.runner.log_tail.logger")
def test_stream_that_fails_to_open_is_a_warning(mock_logger):
    client = MagicMock()
    client.tail_log_entries.side_effect = api_exceptions.PermissionDenied("logging.entries.list denied")
    consumer = LogConsumer(lambda *_: None)

    tail = LogTail(client, "projects/proj", "f", consumer, wait_for_log_interval=0)
    tail._thread.join(5)
    tail.close()

    mock_logger.warning.assert_called_once()
    assert "logging.entries.list denied" in mock_logger.warning.call_args.args[0]
    assert consumer.stdout_count == 0
