"""
Variable rendering for runner options and task commands.
"""

from typing import Any, Dict, Optional

from jinja2 import Environment, BaseLoader, StrictUndefined, TemplateError

from gcprunner.core.errors import ConfigurationError
from gcprunner.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

_jinja_env: Optional[Environment] = None


def get_jinja_env() -> Environment:
    global _jinja_env
    if _jinja_env is None:
        _jinja_env = Environment(loader=BaseLoader(), undefined=StrictUndefined)
    return _jinja_env


def render_template(value: Any, context: Dict[str, Any], jinja_env: Optional[Environment] = None) -> Any:
    """
    Render a string, or every string nested in a list/dict, against context.

    Non-string leaves are returned unchanged. Undefined variables and syntax
    errors raise ConfigurationError.
    """
    env = jinja_env or get_jinja_env()

    if isinstance(value, str):
        if '{{' not in value and '{%' not in value:
            return value
        try:
            return env.from_string(value).render(context)
        except TemplateError as e:
            logger.error(f"Failed to render template '{value[:100]}': {e}")
            raise ConfigurationError(f"Unable to render '{value}': {e}") from e
    if isinstance(value, list):
        return [render_template(item, context, env) for item in value]
    if isinstance(value, dict):
        return {key: render_template(item, context, env) for key, item in value.items()}
    return value
