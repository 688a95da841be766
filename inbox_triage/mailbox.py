"""Mailbox-side types and the collaborator interfaces the pipeline talks to.

The pipeline never talks to Graph, OneDrive or a spreadsheet directly; it goes
through these small synchronous protocols so any backend (or a test fake) can
stand in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Set


@dataclass(frozen=True)
class Label:
    name: str
    id: str


@dataclass(frozen=True)
class Message:
    id: str
    subject: str = ""
    sender: str = ""
    body: str = ""
    permalink: str = ""
    received: Optional[str] = None


@dataclass
class Conversation:
    id: str
    messages: List[Message] = field(default_factory=list)
    labels: Set[str] = field(default_factory=set)

    @property
    def last_message(self) -> Message:
        if not self.messages:
            raise ValueError(f"Conversation {self.id} has no messages")
        return self.messages[-1]


class Mailbox(Protocol):
    def find_label(self, name: str) -> Optional[Label]:
        ...

    def create_label(self, name: str) -> Label:
        ...

    def conversations_with_label(self, label: Label) -> List[Conversation]:
        ...

    def has_label(self, conversation: Conversation, label: Label) -> bool:
        ...

    def add_label(self, conversation: Conversation, label: Label) -> None:
        ...

    def remove_label(self, conversation: Conversation, label: Label) -> None:
        ...

    def create_draft_reply(self, conversation: Conversation, html_body: str) -> Optional[str]:
        """Create an unsent reply to the conversation's last message; return the draft id."""
        ...


class DocumentStore(Protocol):
    def read_text(self, document_id: str) -> str:
        ...


class Sheet(Protocol):
    def read_headers(self) -> List[str]:
        ...

    def append_row(self, values: Sequence[str]) -> None:
        ...
