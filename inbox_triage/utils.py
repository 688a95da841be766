from __future__ import annotations

import html
import logging
import os
from datetime import datetime, timezone
from html.parser import HTMLParser
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger("inbox_triage")


def configure_logging(verbosity: int = 0) -> None:
    if logging.getLogger().handlers:
        return
    level = logging.INFO if verbosity <= 0 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_dir(path: str | Path) -> Path:
    p = Path(path).expanduser()
    p.mkdir(parents=True, exist_ok=True)
    return p


def trim(text: Optional[str], max_len: int = 0) -> str:
    """Cut text to max_len characters; 0 means unlimited."""
    if not text:
        return ""
    if max_len <= 0 or len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


class _TextCollector(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.parts: List[str] = []

    def handle_starttag(self, tag: str, attrs) -> None:
        if tag in {"br", "p", "div", "li", "tr"}:
            self.parts.append("\n")

    def handle_data(self, data: str) -> None:
        self.parts.append(data)

    def get_text(self) -> str:
        return "".join(self.parts)


def html_to_text(raw_html: str) -> str:
    """Lightweight HTML -> plaintext converter (strip tags, unescape entities)."""
    if not raw_html:
        return ""
    collector = _TextCollector()
    try:
        collector.feed(raw_html)
        collector.close()
    except Exception:
        return html.unescape(raw_html)
    lines = [line.rstrip() for line in html.unescape(collector.get_text()).splitlines()]
    return "\n".join(lines).strip()


_ENV_LOADED = False


def load_env_file(path: str | Path = ".env") -> Optional[Path]:
    """
    Lightweight .env reader (no external dependency).
    - Lines starting with # are ignored.
    - Supports KEY=VALUE with optional surrounding quotes.
    - Does not override variables that are already set.
    """
    global _ENV_LOADED
    if _ENV_LOADED:
        return None

    env_path = Path(path).expanduser()
    if not env_path.exists():
        _ENV_LOADED = True
        return None

    for raw in env_path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value

    _ENV_LOADED = True
    return env_path
