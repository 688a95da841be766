from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger("inbox_triage.documents")


class FileDocumentStore:
    """Knowledge base kept as local text files; document ids are paths."""

    def __init__(self, base_dir: str | Path = ".") -> None:
        self.base_dir = Path(base_dir).expanduser()

    def read_text(self, document_id: str) -> str:
        path = Path(document_id).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        logger.debug("Reading knowledge base from %s", path)
        return path.read_text(encoding="utf-8")
