import os
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


_ENV_LOADED = False

_TRUE_VALUES = ("true", "1", "yes", "y", "on")
_FALSE_VALUES = ("false", "0", "no", "n", "off")


def parse_env_file(path: str) -> Dict[str, str]:
    """
    Read KEY=VALUE pairs from a dotenv-style file.

    Blank lines, comments and lines without '=' are skipped; an 'export '
    prefix and one layer of matching quotes around the value are stripped.
    """
    values = {}
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line.startswith("export "):
                line = line[len("export "):].lstrip()
            key, sep, value = line.partition("=")
            key, value = key.strip(), value.strip()
            if not sep or not key or key.startswith("#"):
                continue
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                value = value[1:-1]
            values[key] = value
    return values


def env_files() -> List[str]:
    """Candidate .env files, highest priority first."""
    custom = os.environ.get("GCPRUNNER_ENV_FILE")
    if custom:
        return [custom]
    environment = os.environ.get("ENVIRONMENT", "").strip()
    files = [".env.local", f".env.{environment}" if environment else None, ".env.common", ".env"]
    return [name for name in files if name]


def load_env_if_present(force_reload: bool = False) -> None:
    """
    Copy values from the .env files into os.environ without overriding
    variables that are already set. An earlier file wins over a later one.
    """
    global _ENV_LOADED
    if _ENV_LOADED and not force_reload:
        return

    for path in env_files():
        if not os.path.isfile(path):
            continue
        for key, value in parse_env_file(path).items():
            os.environ.setdefault(key, value)

    _ENV_LOADED = True


def coerce_bool_value(v) -> bool:
    if isinstance(v, bool):
        return v
    if not isinstance(v, str):
        raise ValueError("Expected string for boolean field")
    val = v.strip().lower()
    if val in _TRUE_VALUES:
        return True
    if val in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {v}")


class Settings(BaseModel):
    """
    Process-wide defaults read from the environment.

    Per-run options (RunnerOptions) fall back to these values.
    """
    model_config = ConfigDict(validate_assignment=True, populate_by_name=True)

    raw_env: Dict[str, str] = Field(default_factory=dict, exclude=True)

    project_id: Optional[str] = Field(None, alias="GCPRUNNER_PROJECT_ID")
    region: Optional[str] = Field(None, alias="GCPRUNNER_REGION")
    bucket: Optional[str] = Field(None, alias="GCPRUNNER_BUCKET")
    backend: str = Field("batch", alias="GCPRUNNER_BACKEND")

    # seconds
    wait_until_completion: float = Field(3600.0, alias="GCPRUNNER_WAIT_UNTIL_COMPLETION")
    completion_check_interval: float = Field(5.0, alias="GCPRUNNER_COMPLETION_CHECK_INTERVAL")
    wait_for_log_interval: float = Field(5.0, alias="GCPRUNNER_WAIT_FOR_LOG_INTERVAL")

    delete: bool = Field(True, alias="GCPRUNNER_DELETE")
    resume: bool = Field(True, alias="GCPRUNNER_RESUME")
    log_json: bool = Field(False, alias="GCPRUNNER_LOG_JSON")

    @field_validator('project_id', 'region', 'bucket', mode='before')
    def empty_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator('backend', mode='before')
    def normalize_backend(cls, v):
        val = str(v).strip().lower().replace("-", "_")
        if val not in ("batch", "cloud_run"):
            raise ValueError(f"Unsupported backend '{v}'. Expected 'batch' or 'cloud_run'")
        return val

    @field_validator('delete', 'resume', 'log_json', mode='before')
    def coerce_bool(cls, v):
        return coerce_bool_value(v)

    @field_validator('wait_until_completion', 'completion_check_interval', 'wait_for_log_interval', mode='before')
    def coerce_float(cls, v):
        if isinstance(v, (int, float)):
            return float(v)
        if isinstance(v, str):
            return float(v.strip())
        raise ValueError("Expected float-compatible value")

    @field_validator('wait_until_completion', 'completion_check_interval')
    def positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be greater than zero")
        return v


_settings: Optional[Settings] = None


def get_settings(reload: bool = False) -> Settings:
    """
    Retrieve process settings, loading .env files on first use.
    """
    global _settings
    if _settings is None or reload:
        load_env_if_present(force_reload=reload)
        env = os.environ
        values = {
            key: env[key]
            for key in (
                'GCPRUNNER_PROJECT_ID',
                'GCPRUNNER_REGION',
                'GCPRUNNER_BUCKET',
                'GCPRUNNER_BACKEND',
                'GCPRUNNER_WAIT_UNTIL_COMPLETION',
                'GCPRUNNER_COMPLETION_CHECK_INTERVAL',
                'GCPRUNNER_WAIT_FOR_LOG_INTERVAL',
                'GCPRUNNER_DELETE',
                'GCPRUNNER_RESUME',
                'GCPRUNNER_LOG_JSON',
            )
            if key in env
        }
        _settings = Settings(raw_env=dict(env), **values)
    return _settings
