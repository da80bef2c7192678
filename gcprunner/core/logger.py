from datetime import datetime
import os
import re
import sys
import json
import logging
import traceback

from gcprunner.core.logging_context import ContextFilter, bind_job, run_context


SUCCESS_LEVEL = 25
LOG_SEVERITY = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "SUCCESS",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL"
}

logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

# Record attributes that are part of every LogRecord and never printed as extras
_STANDARD_ATTRS = {
    "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "process", "processName", "scope", "name", "taskName",
    "message", "asctime"
}


class CustomLogger(logging.Logger):
    def success(self, message, *args, **kwargs):
        if self.isEnabledFor(SUCCESS_LEVEL):
            self.log(SUCCESS_LEVEL, message, *args, **kwargs, stacklevel=2)


def stringify_extra(value):
    if isinstance(value, (list, dict)):
        return str(value)
    return value


class CustomFormatter(logging.Formatter):

    def __init__(self, fmt="%(message)s", include_location=False):
        super().__init__(fmt)
        self.include_location = include_location

    def format(self, record):
        level_name = LOG_SEVERITY.get(record.levelname, record.levelname)
        scope = f"{record.scope}" if hasattr(record, "scope") else ""

        location = ""
        if self.include_location:
            # path:line keeps the location clickable from terminals and editors
            location = f"{record.pathname}:{record.lineno}\n({record.module}:{record.funcName}:{record.lineno})"

        metadata_line = f"{datetime.now().isoformat()} [{level_name}] {scope} {location}".strip()

        message = record.getMessage()
        message_split = message.splitlines()
        if len(message_split) > 1:
            message_line = f"     Message: {message_split[0]}"
            for line in message_split[1:]:
                message_line += f"\n             {line}"
        else:
            message_line = f"     Message: {message}"

        extra_items = [
            f"{key}: {stringify_extra(value)}"
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        ]
        extra_info = f"\n     {' '.join(extra_items)}" if extra_items else ""

        formatted_log = f"{metadata_line}\n{message_line}{extra_info}"
        if record.exc_info:
            lines = traceback.format_exception(*record.exc_info)
            lines = [re.sub(r'File "([^"]+)", line (\d+),', r'File "\1:\2"', line) for line in lines]
            formatted_log += "\n" + "".join(lines)
        return formatted_log


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_dict = {
            "level": record.levelname,
            "message": record.getMessage(),
            "time": self.formatTime(record, self.datefmt),
            "logger": record.name,
        }
        if hasattr(record, "scope"):
            log_dict["scope"] = record.scope
        log_dict["location"] = {
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and key not in log_dict:
                log_dict[key] = stringify_extra(value)
        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_dict, ensure_ascii=False, default=str)


def _json_logs_enabled() -> bool:
    return os.environ.get("GCPRUNNER_LOG_JSON", "false").strip().lower() in ("true", "1", "yes", "y", "on")


def setup_logger(name: str, include_location=False, use_json=None):
    """
    Return a logger with the gcprunner stdout handler attached.

    use_json defaults to the GCPRUNNER_LOG_JSON environment variable.
    """
    if use_json is None:
        use_json = _json_logs_enabled()

    logging.setLoggerClass(CustomLogger)
    logger = logging.getLogger(name)
    if not any(isinstance(f, ContextFilter) for f in logger.filters):
        logger.addFilter(ContextFilter())

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(logging.DEBUG)
        if use_json:
            stream_handler.setFormatter(JSONFormatter())
        else:
            stream_handler.setFormatter(CustomFormatter(include_location=include_location))
        logger.addHandler(stream_handler)
    logger.setLevel(os.environ.get("GCPRUNNER_LOG_LEVEL", "DEBUG").upper())
    logger.propagate = False
    return logger


__all__ = ["setup_logger", "run_context", "bind_job", "CustomLogger", "CustomFormatter", "JSONFormatter", "SUCCESS_LEVEL"]
