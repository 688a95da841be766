from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Union

import jsonschema  # type: ignore[import]

from .config import AIConfig
from .errors import InvalidCredentialError
from .utils import load_env_file

logger = logging.getLogger("inbox_triage.credentials")

DEFAULT_REGION = "us-central1"

# Only the fields we actually use are required; Google key files carry more.
SERVICE_ACCOUNT_SCHEMA: Dict = {
    "type": "object",
    "required": ["private_key", "client_email", "project_id"],
    "properties": {
        "private_key": {"type": "string", "minLength": 1},
        "client_email": {"type": "string", "minLength": 1},
        "project_id": {"type": "string", "minLength": 1},
        "region": {"type": "string", "minLength": 1},
    },
}


@dataclass(frozen=True)
class ApiKey:
    key: str

    def __repr__(self) -> str:
        return "ApiKey(key=***)"


@dataclass(frozen=True)
class ServiceAccount:
    private_key: str
    client_email: str
    project_id: str
    region: str = DEFAULT_REGION

    def __repr__(self) -> str:
        return (
            f"ServiceAccount(client_email={self.client_email!r}, "
            f"project_id={self.project_id!r}, region={self.region!r})"
        )


Credential = Union[ApiKey, ServiceAccount]


def resolve_credential(value: Any) -> Credential:
    """Decide which backend a raw credential value belongs to.

    - a string is an API key
    - a mapping with a ``project_id`` is a service account key
    - anything else raises InvalidCredentialError
    """
    if isinstance(value, (ApiKey, ServiceAccount)):
        return value

    if isinstance(value, str):
        key = value.strip()
        if not key:
            raise InvalidCredentialError("API key is empty")
        return ApiKey(key=key)

    if isinstance(value, Mapping) and "project_id" in value:
        try:
            jsonschema.validate(instance=dict(value), schema=SERVICE_ACCOUNT_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise InvalidCredentialError(
                f"Service account credential is invalid: {exc.message}"
            ) from exc
        return ServiceAccount(
            private_key=value["private_key"],
            client_email=value["client_email"],
            project_id=value["project_id"],
            region=str(value.get("region") or DEFAULT_REGION),
        )

    raise InvalidCredentialError(
        f"Unsupported credential of type {type(value).__name__}; "
        "expected an API key string or a service account mapping with project_id"
    )


def load_credential_value(ai: AIConfig) -> Any:
    """Read the raw credential from config: a service account file wins over the API key env var."""
    if ai.service_account_file:
        path = Path(ai.service_account_file).expanduser()
        if not path.exists():
            raise InvalidCredentialError(f"Service account file not found: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidCredentialError(
                f"Service account file {path} is not valid JSON"
            ) from exc
        if isinstance(data, dict) and ai.region and "region" not in data:
            data["region"] = ai.region
        logger.debug("Using service account credential from %s", path)
        return data

    load_env_file()
    api_key = os.environ.get(ai.api_key_env)
    if not api_key:
        raise InvalidCredentialError(
            f"Environment variable {ai.api_key_env} is not set and no "
            "service_account_file is configured."
        )
    return api_key
