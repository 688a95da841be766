from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import requests  # type: ignore[import]

from .auth import ServiceAccountTokenIssuer
from .config import AIConfig
from .credentials import (
    ApiKey,
    Credential,
    ServiceAccount,
    load_credential_value,
    resolve_credential,
)
from .errors import AIBackendError, AIResponseFormatError, InvalidCredentialError

logger = logging.getLogger("inbox_triage.model")


DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Fixed for the service account backend; not tunable per request.
GENERATION_CONFIG: Dict[str, Any] = {
    "temperature": 0.2,
    "topP": 0.8,
    "topK": 40,
    "maxOutputTokens": 2048,
}

SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"
SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class AIClient(Protocol):
    model: str

    def generate(self, prompt: str) -> str:
        ...


class TokenIssuer(Protocol):
    def get_token(self) -> Optional[str]:
        """Return a bearer token, or None when access is refused."""
        ...


def _extract_text(payload: Any) -> str:
    """Pull ``candidates[0].content.parts[0].text`` out of a generateContent reply."""
    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as exc:
        raise AIResponseFormatError(
            "Model response did not contain candidates[0].content.parts[0].text"
        ) from exc
    if not isinstance(text, str):
        raise AIResponseFormatError("Model response text is not a string")
    return text.strip()


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return "unknown error"
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return "unknown error"


def _post_json(
    session: requests.Session,
    url: str,
    body: Dict[str, Any],
    headers: Dict[str, str],
) -> Any:
    try:
        resp = session.post(url, json=body, headers=headers)
    except requests.RequestException as exc:
        raise AIBackendError(f"Request to model API failed: {exc}") from exc

    if resp.status_code != 200:
        message = _error_message(resp)
        logger.error("Model API POST %s failed (%s): %s", url, resp.status_code, message)
        raise AIBackendError(f"Model API returned {resp.status_code}: {message}")

    try:
        return resp.json()
    except ValueError as exc:
        raise AIResponseFormatError("Model API returned a non-JSON body") from exc


class ApiKeyClient:
    """generateContent over the public endpoint, authenticated with an API key header."""

    def __init__(
        self,
        credential: ApiKey,
        model: str,
        api_base: str = DEFAULT_API_BASE,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.credential = credential
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def generate(self, prompt: str) -> str:
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        headers = {
            "x-goog-api-key": self.credential.key,
            "Content-Type": "application/json",
        }
        logger.debug("Calling model %s via API key endpoint", self.model)
        payload = _post_json(self.session, self.endpoint, body, headers)
        return _extract_text(payload)


class ServiceAccountClient:
    """generateContent on the regional Vertex AI endpoint with a per-call bearer token."""

    def __init__(
        self,
        credential: ServiceAccount,
        model: str,
        token_issuer: TokenIssuer,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.credential = credential
        self.model = model
        self.token_issuer = token_issuer
        self.session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        region = self.credential.region
        return (
            f"https://{region}-aiplatform.googleapis.com/v1/projects/"
            f"{self.credential.project_id}/locations/{region}/publishers/google/"
            f"models/{self.model}:generateContent"
        )

    def _body(self, prompt: str) -> Dict[str, Any]:
        safety: List[Dict[str, str]] = [
            {"category": c, "threshold": SAFETY_THRESHOLD} for c in SAFETY_CATEGORIES
        ]
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": dict(GENERATION_CONFIG),
            "safetySettings": safety,
        }

    def generate(self, prompt: str) -> str:
        token = self.token_issuer.get_token()
        if not token:
            raise AIBackendError(
                f"No access token issued for {self.credential.client_email}"
            )
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        logger.debug(
            "Calling model %s via Vertex AI (project=%s, region=%s)",
            self.model,
            self.credential.project_id,
            self.credential.region,
        )
        payload = _post_json(self.session, self.endpoint, self._body(prompt), headers)
        return _extract_text(payload)


def build_ai_client(
    credential: Credential,
    model: str,
    *,
    token_issuer: Optional[TokenIssuer] = None,
    api_base: str = DEFAULT_API_BASE,
    session: Optional[requests.Session] = None,
) -> AIClient:
    """Bind a client to the credential's backend. The choice is never revisited."""
    if isinstance(credential, ApiKey):
        return ApiKeyClient(credential, model, api_base=api_base, session=session)
    if isinstance(credential, ServiceAccount):
        if token_issuer is None:
            token_issuer = ServiceAccountTokenIssuer(credential)
        return ServiceAccountClient(credential, model, token_issuer, session=session)
    raise InvalidCredentialError(
        f"Unsupported credential variant: {type(credential).__name__}"
    )


def build_ai_client_from_config(ai: AIConfig) -> AIClient:
    credential = resolve_credential(load_credential_value(ai))
    logger.info("Using model %s with %r", ai.model, credential)
    return build_ai_client(credential, ai.model, api_base=ai.api_base)
