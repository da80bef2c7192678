"""
Google credentials for the job, storage and logging clients.

Supports:
- Service account key (JSON string or dict)
- Application default credentials
- Service account impersonation on top of either
"""

import json
from typing import Any, Dict, List, Optional, Union

import google.auth
from google.auth import impersonated_credentials
from google.auth.exceptions import DefaultCredentialsError
from google.oauth2 import service_account

from gcprunner.core.errors import ConfigurationError
from gcprunner.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

DEFAULT_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]


def _service_account_info(value: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    try:
        info = json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Service account is not valid JSON: {e}") from e
    if not isinstance(info, dict):
        raise ConfigurationError("Service account JSON must be an object")
    return info


def get_credentials(
    service_account_key: Optional[Union[str, Dict[str, Any]]] = None,
    scopes: Optional[List[str]] = None,
    impersonated_service_account: Optional[str] = None,
    lifetime: int = 3600,
):
    """
    Build scoped Google credentials.

    Args:
        service_account_key: Service account key; application default credentials when omitted
        scopes: OAuth scopes, cloud-platform by default
        impersonated_service_account: Target principal to impersonate
        lifetime: Impersonated token lifetime in seconds

    Returns:
        google.auth credentials
    """
    scopes = list(scopes or DEFAULT_SCOPES)

    if service_account_key:
        info = _service_account_info(service_account_key)
        try:
            credentials = service_account.Credentials.from_service_account_info(info, scopes=scopes)
        except (ValueError, KeyError) as e:
            raise ConfigurationError(f"Invalid service account key: {e}") from e
        logger.debug(f"Using service account: {info.get('client_email', '<unknown>')}")
    else:
        try:
            credentials, project = google.auth.default(scopes=scopes)
        except DefaultCredentialsError as e:
            raise ConfigurationError(f"No application default credentials available: {e}") from e
        logger.debug(f"Using application default credentials (project: {project})")

    if impersonated_service_account:
        credentials = impersonated_credentials.Credentials(
            source_credentials=credentials,
            target_principal=impersonated_service_account,
            target_scopes=scopes,
            lifetime=lifetime,
        )
        logger.debug(f"Impersonating service account: {impersonated_service_account}")

    return credentials
