from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

import google.auth.exceptions  # type: ignore[import]
import msal  # type: ignore[import]
from google.auth.transport.requests import Request  # type: ignore[import]
from google.oauth2 import service_account  # type: ignore[import]
from msal_extensions import FilePersistence, PersistedTokenCache  # type: ignore[import]

from .config import AzureConfig
from .credentials import ServiceAccount
from .errors import InvalidCredentialError
from .utils import ensure_dir, load_env_file

logger = logging.getLogger("inbox_triage.auth")

RESERVED_SCOPES = {"openid", "profile", "offline_access"}

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


# -----------------------------
# Mailbox (Microsoft Graph) auth
# -----------------------------


def _build_cache(cache_path: Path) -> PersistedTokenCache:
    persistence = FilePersistence(str(cache_path))
    return PersistedTokenCache(persistence)


def _authority(azure: AzureConfig) -> str:
    base = azure.authority_base.rstrip("/")
    return f"{base}/{azure.tenant_id}"


def build_public_client(
    azure: AzureConfig, cache_path: Path
) -> msal.PublicClientApplication:
    cache_path = cache_path.expanduser()
    ensure_dir(cache_path.parent)
    return msal.PublicClientApplication(
        client_id=azure.client_id,
        authority=_authority(azure),
        token_cache=_build_cache(cache_path),
    )


def build_confidential_client(
    azure: AzureConfig, cache_path: Path
) -> msal.ConfidentialClientApplication:
    cache_path = cache_path.expanduser()
    ensure_dir(cache_path.parent)
    load_env_file()
    client_secret = os.environ.get(azure.client_secret_env)
    if not client_secret:
        raise RuntimeError(
            f"Missing client secret env var: {azure.client_secret_env}. "
            "Set it before running (do not put secrets in config.toml)."
        )
    return msal.ConfidentialClientApplication(
        client_id=azure.client_id,
        authority=_authority(azure),
        client_credential=client_secret,
        token_cache=_build_cache(cache_path),
    )


def acquire_delegated_token(
    app: msal.PublicClientApplication,
    scopes: Iterable[str],
    username: Optional[str] = None,
) -> dict | None:
    scopes_clean = []
    for s in scopes:
        if s.lower() in RESERVED_SCOPES:
            logger.warning("Ignoring reserved scope in config: %s", s)
            continue
        scopes_clean.append(s)

    accounts = app.get_accounts(username=username)
    result: dict | None = None
    if accounts:
        logger.debug("Attempting silent token acquisition for %s", username or "cached account")
        result = app.acquire_token_silent(list(scopes_clean), account=accounts[0])

    if not result:
        logger.info("No suitable cached token, launching interactive login...")
        result = app.acquire_token_interactive(
            scopes=list(scopes_clean),
            login_hint=username,
            prompt="select_account",
        )

    if not result or "access_token" not in result:
        logger.error(
            "Failed to acquire delegated token: %s",
            (result or {}).get("error_description"),
        )
        return None
    return result


def acquire_application_token(
    app: msal.ConfidentialClientApplication,
) -> dict | None:
    # .default covers the application permissions granted in the portal.
    result = app.acquire_token_for_client(
        scopes=["https://graph.microsoft.com/.default"]
    )
    if not result or "access_token" not in result:
        logger.error(
            "Failed to acquire application token: %s",
            (result or {}).get("error_description"),
        )
        return None
    return result


# -----------------------------
# Model backend (Google service account) auth
# -----------------------------


class ServiceAccountTokenIssuer:
    """Issues OAuth bearer tokens for a service account via google-auth.

    google-auth keeps the token until it expires; we only refresh when it is
    no longer valid. A refused refresh is reported as ``None``.
    """

    def __init__(
        self,
        account: ServiceAccount,
        scopes: Iterable[str] = (CLOUD_PLATFORM_SCOPE,),
    ) -> None:
        self.account = account
        try:
            self._credentials = service_account.Credentials.from_service_account_info(
                {
                    "type": "service_account",
                    "project_id": account.project_id,
                    "private_key": account.private_key,
                    "client_email": account.client_email,
                    "token_uri": GOOGLE_TOKEN_URI,
                },
                scopes=list(scopes),
            )
        except ValueError as exc:
            raise InvalidCredentialError(
                f"Service account key for {account.client_email} is unusable: {exc}"
            ) from exc
        self._request = Request()

    def get_token(self) -> Optional[str]:
        if not self._credentials.valid:
            try:
                self._credentials.refresh(self._request)
            except google.auth.exceptions.GoogleAuthError as exc:
                logger.error(
                    "Token refresh failed for %s: %s", self.account.client_email, exc
                )
                return None
        return self._credentials.token
