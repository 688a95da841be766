from __future__ import annotations

import logging
from typing import Dict, Union

from .config import LabelsConfig
from .decision import Outcome
from .errors import ContextUnavailableError, LabelNotFoundError
from .mailbox import DocumentStore, Label, Mailbox

logger = logging.getLogger("inbox_triage.session")

CONTEXT_KEY = "context"
INCOMING = "incoming"


class SessionCache:
    """Per-run memo of the knowledge base text and label handles.

    Built at the start of a batch and dropped at the end; nothing here
    outlives one run.
    """

    def __init__(
        self,
        mailbox: Mailbox,
        documents: DocumentStore,
        knowledge_base_id: str,
        labels: LabelsConfig,
    ) -> None:
        self.mailbox = mailbox
        self.documents = documents
        self.knowledge_base_id = knowledge_base_id
        self.label_names: Dict[str, str] = {
            INCOMING: labels.incoming,
            Outcome.DRAFTED.value: labels.drafted,
            Outcome.MANUAL_REVIEW.value: labels.manual_review,
            Outcome.NO_REPLY_NEEDED.value: labels.no_reply_needed,
        }
        self._values: Dict[str, Union[str, Label]] = {}

    def knowledge_base(self) -> str:
        cached = self._values.get(CONTEXT_KEY)
        if isinstance(cached, str):
            return cached
        if not self.knowledge_base_id:
            raise ContextUnavailableError("No knowledge base document id configured")
        try:
            text = self.documents.read_text(self.knowledge_base_id)
        except Exception as exc:
            raise ContextUnavailableError(
                f"Could not read knowledge base {self.knowledge_base_id}: {exc}"
            ) from exc
        text = (text or "").strip()
        if not text:
            raise ContextUnavailableError(
                f"Knowledge base {self.knowledge_base_id} is empty"
            )
        logger.info("Loaded knowledge base (%d chars)", len(text))
        self._values[CONTEXT_KEY] = text
        return text

    def incoming_label(self) -> Label:
        cached = self._values.get(INCOMING)
        if isinstance(cached, Label):
            return cached
        name = self.label_names[INCOMING]
        label = self.mailbox.find_label(name)
        if label is None:
            raise LabelNotFoundError(name)
        self._values[INCOMING] = label
        return label

    def outcome_label(self, outcome: Outcome) -> Label:
        cached = self._values.get(outcome.value)
        if isinstance(cached, Label):
            return cached
        name = self.label_names[outcome.value]
        label = self.mailbox.find_label(name)
        if label is None:
            label = self.mailbox.create_label(name)
        self._values[outcome.value] = label
        return label

    def outcome_labels(self) -> Dict[Outcome, Label]:
        return {outcome: self.outcome_label(outcome) for outcome in Outcome}
