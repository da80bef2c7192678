from pathlib import Path
from types import SimpleNamespace

import pytest
from google.api_core import exceptions as api_exceptions

from gcprunner.runner.controller import LifecycleController
from gcprunner.runner.models import JobHandle, LifecycleState, RunIdentity, RunnerOptions, VolumeMount


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name

    def upload_from_filename(self, filename):
        self.bucket.client.calls.append(("upload", self.bucket.name, self.name))
        self.bucket.objects[self.name] = Path(filename).read_bytes()

    def upload_from_string(self, data):
        self.bucket.client.calls.append(("upload", self.bucket.name, self.name))
        self.bucket.objects[self.name] = data.encode() if isinstance(data, str) else bytes(data)

    def download_to_filename(self, filename):
        self.bucket.client.calls.append(("download", self.bucket.name, self.name))
        if self.name not in self.bucket.objects:
            raise api_exceptions.NotFound(f"{self.name} not found")
        Path(filename).write_bytes(self.bucket.objects[self.name])


class FakeBucket:
    def __init__(self, client, name):
        self.client = client
        self.name = name

    @property
    def objects(self):
        return self.client.objects.setdefault(self.name, {})

    def blob(self, name):
        return FakeBlob(self, name)

    def delete_blob(self, name):
        self.client.calls.append(("delete", self.name, name))
        if name not in self.objects:
            raise api_exceptions.NotFound(f"{name} not found")
        del self.objects[name]


class FakeStorageClient:
    """In-memory stand-in for google.cloud.storage.Client."""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.closed = False

    def bucket(self, name):
        return FakeBucket(self, name)

    def list_blobs(self, bucket, prefix=None):
        self.calls.append(("list", bucket, prefix))
        names = sorted(self.objects.get(bucket, {}))
        return [SimpleNamespace(name=name) for name in names if name.startswith(prefix or "")]

    def close(self):
        self.closed = True

    def names(self, bucket, prefix=""):
        return sorted(name for name in self.objects.get(bucket, {}) if name.startswith(prefix))

    def count(self, kind):
        return sum(1 for call in self.calls if call[0] == kind)


class ScriptedController(LifecycleController):
    """
    Controller whose native status is a LifecycleState read from a script.

    The last scripted state repeats once the script is exhausted.
    """

    backend = "scripted"

    def __init__(self, states=(LifecycleState.SUCCEEDED,), existing=None,
                 initial_state=LifecycleState.RUNNING, on_create=None):
        super().__init__("proj", "us-central1")
        self.states = list(states)
        self.existing = existing
        self.initial_state = initial_state
        self.on_create = on_create
        self.find_calls = 0
        self.created = []
        self.deleted = []
        self.cancelled = []
        self.polls = 0
        self.closed = False

    def volume_mount(self, plan):
        return VolumeMount(bucket=plan.bucket, prefix=plan.working_prefix)

    def find_existing(self, spec):
        self.find_calls += 1
        return self.existing

    def create(self, spec):
        self.created.append(spec)
        if self.on_create is not None:
            self.on_create(spec)
        return JobHandle(
            job_name=f"{spec.parent}/jobs/{spec.job_id}",
            job_id=spec.job_id,
            labels=spec.labels,
            initial_state=self.initial_state,
        )

    def native_status(self, handle):
        self.polls += 1
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]

    def map_state(self, native):
        return native if isinstance(native, LifecycleState) else LifecycleState.UNKNOWN

    def status_code(self, native):
        return 7 if native == LifecycleState.FAILED else -1

    def log_filter(self, handle):
        return f'job="{handle.job_id}"'

    def delete(self, handle):
        self.deleted.append(handle)

    def cancel(self, handle):
        self.cancelled.append(handle)

    def close(self):
        self.closed = True


class FakeClock:
    """Monotonic clock that only advances when sleep() is called."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def storage_client():
    return FakeStorageClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return RunIdentity(
        namespace="company.team",
        flow_id="daily-load",
        task_id="transform",
        execution_id="4xW9aBcD",
        taskrun_id="7kLmNoPq",
        attempt=0,
    )


@pytest.fixture
def options():
    return RunnerOptions(
        backend="batch",
        project_id="proj",
        region="us-central1",
        bucket="b",
        wait_until_completion=60,
        completion_check_interval=1,
        wait_for_log_interval=0,
        delete=True,
        resume=True,
    )
