from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from .mailbox import Sheet
from .utils import ensure_dir, utc_now

logger = logging.getLogger("inbox_triage.log")

LOG_COLUMNS = [
    "Timestamp",
    "Permalink",
    "Subject",
    "Sender",
    "Label Applied",
    "Reasoning",
    "Conversation ID",
    "Message ID",
]

ERROR_LABEL = "ERROR"


@dataclass(frozen=True)
class LogRecord:
    timestamp: str
    permalink: str
    subject: str
    sender: str
    label: str
    reasoning: str
    conversation_id: str
    message_id: str

    @classmethod
    def now(
        cls,
        *,
        label: str,
        reasoning: str,
        conversation_id: str,
        message_id: str = "",
        subject: str = "",
        sender: str = "",
        permalink: str = "",
    ) -> "LogRecord":
        return cls(
            timestamp=utc_now().replace(microsecond=0).isoformat(),
            permalink=permalink,
            subject=subject,
            sender=sender,
            label=label,
            reasoning=reasoning,
            conversation_id=conversation_id,
            message_id=message_id,
        )

    def as_row(self) -> List[str]:
        return [
            self.timestamp,
            self.permalink,
            self.subject,
            self.sender,
            self.label,
            self.reasoning,
            self.conversation_id,
            self.message_id,
        ]


@dataclass(frozen=True)
class LogWriteResult:
    ok: bool
    error: Optional[str] = None


class CsvSheet:
    """Append-only CSV file standing in for the log spreadsheet."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def read_headers(self) -> List[str]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8", newline="") as f:
            for row in csv.reader(f):
                return row
        return []

    def append_row(self, values: Sequence[str]) -> None:
        ensure_dir(self.path.parent)
        with self.path.open("a", encoding="utf-8", newline="") as f:
            csv.writer(f).writerow(list(values))


class DecisionLogger:
    """Writes one row per processed conversation. Never raises on write."""

    def __init__(self, sheet: Sheet) -> None:
        self.sheet = sheet

    def ensure_headers(self) -> bool:
        """Write the header row into an empty sheet. Returns True when written."""
        headers = self.sheet.read_headers()
        if headers:
            if headers != LOG_COLUMNS:
                logger.warning("Log sheet headers differ from expected columns: %s", headers)
            return False
        self.sheet.append_row(LOG_COLUMNS)
        return True

    def write(self, record: LogRecord) -> LogWriteResult:
        try:
            self.sheet.append_row(record.as_row())
        except Exception as exc:
            logger.error(
                "Failed to write log row for conversation %s (%s): %s",
                record.conversation_id,
                record.label,
                exc,
            )
            return LogWriteResult(ok=False, error=str(exc))
        return LogWriteResult(ok=True)
