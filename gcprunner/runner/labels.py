"""
Labels and names derived from a run's identity.

Labels are the only durable correlation key between a run and its remote job:
a restarted process finds its job again by listing jobs carrying the same
identity labels.
"""

import re
import secrets
import string
from typing import Dict, Mapping

from gcprunner.runner.models import RunIdentity

LABEL_PREFIX = "gcprunner-"
STAGING_PREFIX_LABEL = f"{LABEL_PREFIX}working-dir-id"
OUTPUT_PREFIX_LABEL = f"{LABEL_PREFIX}output-dir-id"

MAX_LABEL_LENGTH = 63
MAX_JOB_ID_LENGTH = 63

_INVALID_LABEL_CHARS = re.compile(r"[^a-z0-9_-]")
_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]+")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def label_value(value: str) -> str:
    # GCP label values: lowercase letters, digits, '_' and '-' only, at most 63 chars
    value = str(value).lower().replace(".", "-")
    return _INVALID_LABEL_CHARS.sub("-", value)[:MAX_LABEL_LENGTH]


def labels(identity: RunIdentity, prefix: str = LABEL_PREFIX) -> Dict[str, str]:
    return {
        f"{prefix}namespace": label_value(identity.namespace),
        f"{prefix}flow-id": label_value(identity.flow_id),
        f"{prefix}task-id": label_value(identity.task_id),
        f"{prefix}execution-id": label_value(identity.execution_id),
        f"{prefix}taskrun-id": label_value(identity.taskrun_id),
        f"{prefix}taskrun-attempt": label_value(str(identity.attempt)),
    }


def labels_filter(labels: Mapping[str, str]) -> str:
    """Render labels as a Batch list filter: labels.k="v" AND ..."""
    return " AND ".join(f'labels.{key}="{value.lower()}"' for key, value in labels.items())


def has_all_labels(candidate: Mapping[str, str], labels: Mapping[str, str]) -> bool:
    return all(candidate.get(key) == value for key, value in labels.items())


def random_suffix(length: int = 8) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def job_name(identity: RunIdentity) -> str:
    """
    Remote job id: lowercase letters, digits and hyphens, starting with a
    letter, at most 63 chars, unique per call.
    """
    suffix = random_suffix()
    base = f"{identity.namespace}-{identity.flow_id}-{identity.task_id}".lower()
    base = _INVALID_NAME_CHARS.sub("-", base).strip("-")
    if not base or not base[0].isalpha():
        base = f"job-{base}".rstrip("-")
    base = base[:MAX_JOB_ID_LENGTH - len(suffix) - 1].rstrip("-")
    return f"{base}-{suffix}"
