from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import DecisionParseError

logger = logging.getLogger("inbox_triage.decision")

ANALYSIS_FAILED_REASONING = "AI analysis failed"

_FENCE_START_RE = re.compile(r"^```[A-Za-z0-9_-]*[ \t]*\n?")
_FENCE_END_RE = re.compile(r"\n?[ \t]*```$")


class Outcome(str, Enum):
    """Outcome label roles. Values match the keys used in the session cache."""

    DRAFTED = "drafted"
    MANUAL_REVIEW = "manual_review"
    NO_REPLY_NEEDED = "no_reply_needed"


@dataclass(frozen=True)
class Decision:
    is_answerable: bool = False
    no_reply_needed: bool = False
    reasoning: Optional[str] = None
    draft: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Decision":
        reasoning = data.get("reasoning")
        draft = data.get("draft")
        return cls(
            is_answerable=_as_bool(data.get("isAnswerable")),
            no_reply_needed=_as_bool(data.get("noReplyNeeded")),
            reasoning=str(reasoning) if reasoning is not None else None,
            draft=str(draft) if draft is not None else "",
        )

    def to_mapping(self) -> dict:
        return {
            "isAnswerable": self.is_answerable,
            "noReplyNeeded": self.no_reply_needed,
            "reasoning": self.reasoning,
            "draft": self.draft,
        }


@dataclass(frozen=True)
class Verdict:
    outcome: Outcome
    reasoning: str
    draft: str = ""


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def strip_code_fences(text: str) -> str:
    """Remove surrounding whitespace and an optional ``` / ```json fence pair."""
    raw = (text or "").strip()
    raw = _FENCE_START_RE.sub("", raw, count=1)
    raw = _FENCE_END_RE.sub("", raw, count=1)
    return raw.strip()


def parse_decision(raw_text: str) -> Decision:
    """Parse model output into a Decision.

    Only structure is checked. Missing fields fall back to defaults and unknown
    fields are ignored, since the model does not always honour the shape.
    """
    cleaned = strip_code_fences(raw_text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.debug("Unparseable model output: %s", cleaned[:500])
        raise DecisionParseError(f"Model output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise DecisionParseError(
            f"Model output is JSON {type(data).__name__}, expected an object"
        )
    return Decision.from_mapping(data)


def decide_outcome(decision: Optional[Decision]) -> Verdict:
    """Map a decision (or a failed analysis) to exactly one outcome.

    Answerable wins when the model sets both flags.
    """
    reasoning = ANALYSIS_FAILED_REASONING
    if decision is not None and decision.reasoning:
        reasoning = decision.reasoning

    if decision is not None and decision.is_answerable:
        return Verdict(Outcome.DRAFTED, reasoning, decision.draft)
    if decision is not None and decision.no_reply_needed:
        return Verdict(Outcome.NO_REPLY_NEEDED, reasoning)
    return Verdict(Outcome.MANUAL_REVIEW, reasoning)
