"""Test bootstrap helpers and in-memory collaborators.

Ensures the project root is importable when running tests without installing
the package (common for local dev), and provides fakes for the mailbox,
document store, log sheet and model so pipeline tests never touch the network.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from inbox_triage.config import LabelsConfig  # noqa: E402
from inbox_triage.decision_log import DecisionLogger  # noqa: E402
from inbox_triage.mailbox import Conversation, Label, Message  # noqa: E402
from inbox_triage.triage_logic import TriagePipeline  # noqa: E402


LABELS = LabelsConfig()


def make_conversation(
    conv_id: str,
    body: str = "Hello",
    subject: str = "Question",
    sender: str = "alice@example.com",
    labels: Iterable[str] = (LABELS.incoming,),
) -> Conversation:
    return Conversation(
        id=conv_id,
        messages=[
            Message(id=f"{conv_id}-m1", subject="Earlier", sender="bob@example.com", body="old"),
            Message(
                id=f"{conv_id}-m2",
                subject=subject,
                sender=sender,
                body=body,
                permalink=f"https://outlook.example/{conv_id}",
            ),
        ],
        labels=set(labels),
    )


class FakeMailbox:
    def __init__(
        self,
        conversations: Sequence[Conversation] = (),
        existing_labels: Iterable[str] = (LABELS.incoming,),
    ) -> None:
        self.conversations = list(conversations)
        self.labels: Dict[str, Label] = {n: Label(n, f"id-{n}") for n in existing_labels}
        self.created: List[str] = []
        self.drafts: List[tuple] = []
        self.mutations = 0
        self.failures: Dict[tuple, Exception] = {}

    def fail(self, op: str, conv_id: str, exc: Exception) -> None:
        self.failures[(op, conv_id)] = exc

    def _maybe_fail(self, op: str, conversation: Conversation) -> None:
        exc = self.failures.get((op, conversation.id))
        if exc is not None:
            raise exc

    def find_label(self, name: str) -> Optional[Label]:
        return self.labels.get(name)

    def create_label(self, name: str) -> Label:
        label = Label(name, f"id-{name}")
        self.labels[name] = label
        self.created.append(name)
        return label

    def conversations_with_label(self, label: Label) -> List[Conversation]:
        return [c for c in self.conversations if label.name in c.labels]

    def has_label(self, conversation: Conversation, label: Label) -> bool:
        return label.name in conversation.labels

    def add_label(self, conversation: Conversation, label: Label) -> None:
        self._maybe_fail("add_label", conversation)
        self.mutations += 1
        conversation.labels.add(label.name)

    def remove_label(self, conversation: Conversation, label: Label) -> None:
        self._maybe_fail("remove_label", conversation)
        self.mutations += 1
        conversation.labels.discard(label.name)

    def create_draft_reply(self, conversation: Conversation, html_body: str) -> Optional[str]:
        self._maybe_fail("draft", conversation)
        self.drafts.append((conversation.id, html_body))
        return f"draft-{conversation.id}"


class FakeDocuments:
    def __init__(self, text: Union[str, Exception] = "Support hours: 9am-5pm") -> None:
        self.text = text
        self.reads = 0

    def read_text(self, document_id: str) -> str:
        self.reads += 1
        if isinstance(self.text, Exception):
            raise self.text
        return self.text


class FakeSheet:
    def __init__(self, fail: bool = False) -> None:
        self.rows: List[List[str]] = []
        self.fail = fail

    def read_headers(self) -> List[str]:
        if self.fail:
            raise OSError("sheet unavailable")
        return list(self.rows[0]) if self.rows else []

    def append_row(self, values: Sequence[str]) -> None:
        if self.fail:
            raise OSError("sheet unavailable")
        self.rows.append(list(values))

    @property
    def records(self) -> List[List[str]]:
        return self.rows[1:]


class ScriptedAI:
    """Returns queued replies in order; an Exception in the queue is raised."""

    model = "fake-model"

    def __init__(self, replies: Sequence[Union[str, Exception]]) -> None:
        self.replies = list(replies)
        self.prompts: List[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def build_test_pipeline(
    mailbox: FakeMailbox,
    ai: ScriptedAI,
    documents: Optional[FakeDocuments] = None,
    sheet: Optional[FakeSheet] = None,
) -> TriagePipeline:
    return TriagePipeline(
        mailbox=mailbox,
        documents=documents or FakeDocuments(),
        decision_logger=DecisionLogger(sheet if sheet is not None else FakeSheet()),
        ai_client=ai,
        labels=LABELS,
        knowledge_base_id="kb-1",
        writing_style="Be brief and friendly.",
    )


@pytest.fixture
def sheet() -> FakeSheet:
    return FakeSheet()
