from __future__ import annotations

import pytest

from inbox_triage.config import DEFAULT_WRITING_STYLE, load_config


FULL_CONFIG = """
[auth]
auth_mode = "delegated"

[azure]
client_id = "app-id"
tenant_id = "contoso.onmicrosoft.com"

[mailbox]
user = "me"

[ai]
model = "gemini-1.5-pro"
service_account_file = "./secrets/sa.json"
region = "europe-west1"

[labels]
incoming = "Inbox/New"
drafted = "Inbox/Drafted"

[knowledge_base]
provider = "FILE"
document_id = "kb/faq.md"

[log]
path = "./data/log.csv"

[triage]
max_conversations_per_run = 10
body_max_chars = 0
writing_style = \"\"\"
Short and sweet.
\"\"\"
"""


def test_full_config_is_loaded(tmp_path, monkeypatch):
    for var in ("TRIAGE_MODEL", "TRIAGE_SERVICE_ACCOUNT_FILE", "TRIAGE_BODY_MAX_CHARS", "TRIAGE_LOG_PATH"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "config.toml"
    path.write_text(FULL_CONFIG, encoding="utf-8")

    cfg = load_config(path)

    assert cfg.auth.auth_mode == "delegated"
    assert cfg.azure.client_id == "app-id"
    assert cfg.mailbox.user == "me"
    assert cfg.ai.model == "gemini-1.5-pro"
    assert cfg.ai.service_account_file == "./secrets/sa.json"
    assert cfg.ai.region == "europe-west1"
    assert cfg.labels.incoming == "Inbox/New"
    assert cfg.labels.drafted == "Inbox/Drafted"
    assert cfg.labels.manual_review == "AI/Manual Review"
    assert cfg.knowledge_base.provider == "file"
    assert cfg.knowledge_base.document_id == "kb/faq.md"
    assert cfg.log.path == "./data/log.csv"
    assert cfg.triage.max_conversations_per_run == 10
    assert cfg.triage.body_max_chars == 0
    assert cfg.triage.writing_style == "Short and sweet."
    assert cfg.repo_root == tmp_path.resolve()


def test_defaults_and_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("TRIAGE_MODEL", "gemini-2.0-flash")
    monkeypatch.setenv("TRIAGE_BODY_MAX_CHARS", "1200")
    monkeypatch.delenv("TRIAGE_SERVICE_ACCOUNT_FILE", raising=False)
    (tmp_path / "config.toml").write_text("[azure]\nclient_id = 'x'\n", encoding="utf-8")

    cfg = load_config(tmp_path)  # directory resolves to config.toml inside

    assert cfg.ai.model == "gemini-2.0-flash"
    assert cfg.ai.service_account_file is None
    assert cfg.ai.api_key_env == "GEMINI_API_KEY"
    assert cfg.triage.body_max_chars == 1200
    assert cfg.triage.writing_style == DEFAULT_WRITING_STYLE
    assert cfg.knowledge_base.provider == "graph"
    assert cfg.auth.auth_mode == "application"


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.toml")
