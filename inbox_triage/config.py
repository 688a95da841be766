from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import List, Optional

import toml  # type: ignore[import]


DEFAULT_WRITING_STYLE = (
    "Write in a warm, concise, professional tone. Use short paragraphs, "
    "address the sender by first name when it is known, and sign off with "
    "'Best regards'."
)


@dataclass
class AuthConfig:
    auth_mode: str = "application"  # application | delegated
    token_cache_path: str = "./data/msal_token_cache.bin"


@dataclass
class AzureConfig:
    client_id: str
    tenant_id: str
    authority_base: str = "https://login.microsoftonline.com"
    client_secret_env: str = "MS_GRAPH_CLIENT_SECRET"
    delegated_scopes: List[str] = field(
        default_factory=lambda: ["Mail.ReadWrite", "MailboxSettings.ReadWrite", "Files.Read"]
    )


@dataclass
class MailboxConfig:
    # "me" for delegated auth, otherwise the userPrincipalName of the mailbox.
    user: str = "me"


@dataclass
class AIConfig:
    model: str = "gemini-1.5-flash"
    api_key_env: str = "GEMINI_API_KEY"
    # When set, the service account key file is used instead of the API key.
    service_account_file: Optional[str] = None
    region: Optional[str] = None
    api_base: str = "https://generativelanguage.googleapis.com/v1beta"


@dataclass
class LabelsConfig:
    incoming: str = "AI/Incoming"
    drafted: str = "AI/Drafted"
    manual_review: str = "AI/Manual Review"
    no_reply_needed: str = "AI/No Reply Needed"


@dataclass
class KnowledgeBaseConfig:
    provider: str = "graph"  # graph | file
    document_id: str = ""


@dataclass
class LogConfig:
    path: str = "./data/triage-log.csv"


@dataclass
class TriageConfig:
    writing_style: str = DEFAULT_WRITING_STYLE
    max_conversations_per_run: int = 50  # 0 = unlimited
    body_max_chars: int = 8000  # 0 = unlimited
    report_dir: str = "./output"


@dataclass
class AppConfig:
    auth: AuthConfig
    azure: AzureConfig
    mailbox: MailboxConfig
    ai: AIConfig
    labels: LabelsConfig
    knowledge_base: KnowledgeBaseConfig
    log: LogConfig
    triage: TriageConfig
    repo_root: Path


def _resolve_config_path(path: str | Path) -> Path:
    """
    Resolve a user-supplied config path:
    - allow pointing at a directory (uses config.toml inside)
    - fall back to config/<file> if only a filename is provided
    """
    supplied = Path(path).expanduser()
    cfg_path = supplied / "config.toml" if supplied.is_dir() else supplied

    if cfg_path.exists():
        return cfg_path.resolve()

    repo_config = Path(__file__).resolve().parent.parent / "config" / cfg_path.name
    if repo_config.exists():
        return repo_config.resolve()

    raise FileNotFoundError(f"Config file not found: {cfg_path}")


def _detect_repo_root(cfg_path: Path) -> Path:
    """
    Determine repo root whether config lives in repo/ or repo/config/.
    """
    if (cfg_path.parent / "inbox_triage").exists():
        return cfg_path.parent
    if (cfg_path.parent.parent / "inbox_triage").exists():
        return cfg_path.parent.parent
    return cfg_path.parent


def load_config(path: str | Path) -> AppConfig:
    cfg_path = _resolve_config_path(path)
    repo_root = _detect_repo_root(cfg_path)
    raw = toml.load(str(cfg_path))

    auth_raw = raw.get("auth", {})
    azure_raw = raw.get("azure", {})
    mailbox_raw = raw.get("mailbox", {})
    ai_raw = raw.get("ai", {})
    labels_raw = raw.get("labels", {})
    kb_raw = raw.get("knowledge_base", {})
    log_raw = raw.get("log", {})
    triage_raw = raw.get("triage", {})

    auth = AuthConfig(
        auth_mode=str(auth_raw.get("auth_mode", "application")),
        token_cache_path=str(
            auth_raw.get("token_cache_path", "./data/msal_token_cache.bin")
        ),
    )

    azure = AzureConfig(
        client_id=str(azure_raw.get("client_id", "")),
        tenant_id=str(azure_raw.get("tenant_id", "organizations")),
        authority_base=str(
            azure_raw.get("authority_base", "https://login.microsoftonline.com")
        ),
        client_secret_env=str(
            azure_raw.get("client_secret_env", "MS_GRAPH_CLIENT_SECRET")
        ),
        delegated_scopes=[
            str(s)
            for s in azure_raw.get(
                "delegated_scopes", AzureConfig("", "").delegated_scopes
            )
        ],
    )

    mailbox = MailboxConfig(user=str(mailbox_raw.get("user", "me")))

    ai_defaults = AIConfig()
    service_account_file = os.getenv(
        "TRIAGE_SERVICE_ACCOUNT_FILE", ai_raw.get("service_account_file")
    )
    ai = AIConfig(
        model=str(os.getenv("TRIAGE_MODEL", ai_raw.get("model", ai_defaults.model))),
        api_key_env=str(ai_raw.get("api_key_env", ai_defaults.api_key_env)),
        service_account_file=str(service_account_file) if service_account_file else None,
        region=ai_raw.get("region"),
        api_base=str(ai_raw.get("api_base", ai_defaults.api_base)),
    )

    label_defaults = LabelsConfig()
    labels = LabelsConfig(
        incoming=str(labels_raw.get("incoming", label_defaults.incoming)),
        drafted=str(labels_raw.get("drafted", label_defaults.drafted)),
        manual_review=str(
            labels_raw.get("manual_review", label_defaults.manual_review)
        ),
        no_reply_needed=str(
            labels_raw.get("no_reply_needed", label_defaults.no_reply_needed)
        ),
    )

    knowledge_base = KnowledgeBaseConfig(
        provider=str(kb_raw.get("provider", "graph")).strip().lower(),
        document_id=str(
            os.getenv("TRIAGE_KNOWLEDGE_BASE_ID", kb_raw.get("document_id", ""))
        ),
    )

    log = LogConfig(
        path=str(os.getenv("TRIAGE_LOG_PATH", log_raw.get("path", LogConfig.path)))
    )

    triage_defaults = TriageConfig()
    triage = TriageConfig(
        writing_style=str(
            triage_raw.get("writing_style", triage_defaults.writing_style)
        ).strip(),
        max_conversations_per_run=int(
            triage_raw.get(
                "max_conversations_per_run", triage_defaults.max_conversations_per_run
            )
            or 0
        ),
        body_max_chars=int(
            os.getenv(
                "TRIAGE_BODY_MAX_CHARS",
                triage_raw.get("body_max_chars", triage_defaults.body_max_chars) or 0,
            )
        ),
        report_dir=str(triage_raw.get("report_dir", triage_defaults.report_dir)),
    )

    return AppConfig(
        auth=auth,
        azure=azure,
        mailbox=mailbox,
        ai=ai,
        labels=labels,
        knowledge_base=knowledge_base,
        log=log,
        triage=triage,
        repo_root=repo_root,
    )
