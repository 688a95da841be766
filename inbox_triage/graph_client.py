from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Set

import requests  # type: ignore[import]

from .mailbox import Conversation, Label, Message
from .utils import html_to_text

logger = logging.getLogger("inbox_triage.graph")


# Outlook master category colours for the labels we create on demand.
# Graph only accepts the CategoryColor enum: none, preset0..preset24.
LABEL_COLORS = {
    "incoming": "preset7",  # blue
    "drafted": "preset4",  # green
    "manual_review": "preset1",  # orange
    "no_reply_needed": "preset12",  # gray
}
DEFAULT_LABEL_COLOR = "preset12"

_MESSAGE_FIELDS = "id,subject,from,receivedDateTime,body,conversationId,categories,webLink,isDraft"


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


def _sender(raw: Dict[str, Any]) -> str:
    data = (raw.get("from") or {}).get("emailAddress") or {}
    address = data.get("address") or ""
    name = data.get("name") or ""
    if name and address and name != address:
        return f"{name} <{address}>"
    return address or name


def _to_message(raw: Dict[str, Any]) -> Message:
    body = raw.get("body") or {}
    content = body.get("content") or ""
    if (body.get("contentType") or "").lower() == "html":
        content = html_to_text(content)
    return Message(
        id=raw["id"],
        subject=raw.get("subject") or "",
        sender=_sender(raw),
        body=content.strip(),
        permalink=raw.get("webLink") or "",
        received=raw.get("receivedDateTime"),
    )


class GraphClient:
    """Thin Microsoft Graph wrapper scoped to a single user/mailbox."""

    def __init__(
        self,
        access_token: str,
        user: str,
        base_url: str = "https://graph.microsoft.com/v1.0",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.access_token = access_token
        self.user = user  # "me" for delegated, or userPrincipalName for app-only
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                # Ask Graph for plain-text bodies; HTML is still handled as a fallback.
                "Prefer": 'outlook.body-content-type="text"',
            }
        )

    @property
    def _user_root(self) -> str:
        if self.user.lower() == "me":
            return f"{self.base_url}/me"
        return f"{self.base_url}/users/{self.user}"

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = self.session.get(url, params=params)
        if not resp.ok:
            logger.error("Graph GET %s failed: %s", resp.url, resp.text)
            resp.raise_for_status()
        return resp.json()

    def _get_bytes(self, url: str) -> bytes:
        resp = self.session.get(url)
        if not resp.ok:
            logger.error("Graph GET %s failed: %s", resp.url, resp.text)
            resp.raise_for_status()
        return resp.content

    def _patch(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.patch(url, json=body)
        if not resp.ok:
            logger.error("Graph PATCH %s failed: %s", resp.url, resp.text)
            resp.raise_for_status()
        return resp.json() if resp.text else {}

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.post(url, json=body)
        if not resp.ok:
            logger.error("Graph POST %s failed: %s", resp.url, resp.text)
            resp.raise_for_status()
        return resp.json() if resp.text else {}

    def _collect(
        self, url: str, params: Optional[Dict[str, Any]], limit: int = 0
    ) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        while next_url:
            data = self._get(next_url, params=params)
            params = None
            out.extend(data.get("value", []))
            if limit and len(out) >= limit:
                return out[:limit]
            next_url = data.get("@odata.nextLink")
        return out

    def list_messages_with_category(
        self, category: str, max_messages: int = 0
    ) -> List[Dict[str, Any]]:
        """Return messages in any folder tagged with `category`, oldest first."""
        url = f"{self._user_root}/messages"
        params: Dict[str, Any] = {
            "$select": _MESSAGE_FIELDS,
            "$filter": f"categories/any(c:c eq '{_odata_quote(category)}')",
            "$top": 50,
        }
        messages = self._collect(url, params, limit=max_messages)
        # Combining the categories filter with $orderby can fail with
        # InefficientFilter; sort locally instead.
        return sorted(messages, key=lambda m: m.get("receivedDateTime") or "")

    def list_conversation_messages(
        self, conversation_id: str, max_messages: int = 50
    ) -> List[Dict[str, Any]]:
        if not conversation_id:
            return []
        url = f"{self._user_root}/messages"
        params: Dict[str, Any] = {
            "$select": _MESSAGE_FIELDS,
            "$filter": f"conversationId eq '{_odata_quote(conversation_id)}'",
            "$top": min(max_messages, 50),
        }
        out = self._collect(url, params, limit=max_messages)
        return sorted(
            out,
            key=lambda m: m.get("receivedDateTime") or m.get("sentDateTime") or "",
        )

    def update_message(self, message_id: str, patch_body: Dict[str, Any]) -> None:
        self._patch(f"{self._user_root}/messages/{message_id}", patch_body)

    def create_draft_reply(
        self, message_id: str, reply_body_html: str
    ) -> Optional[str]:
        """Create a draft reply for a message and return the draft id (None on failure)."""
        data = self._post(f"{self._user_root}/messages/{message_id}/createReply", {})
        draft = data.get("message") or data
        draft_id = draft.get("id")
        if not draft_id:
            logger.error("createReply did not return a draft id for %s", message_id)
            return None
        self._patch(
            f"{self._user_root}/messages/{draft_id}",
            {"body": {"contentType": "HTML", "content": reply_body_html}},
        )
        return draft_id

    def list_master_categories(self) -> List[Dict[str, Any]]:
        url = f"{self._user_root}/outlook/masterCategories"
        return self._collect(url, {"$select": "id,displayName,color"})

    def create_master_category(self, display_name: str, color: str) -> Dict[str, Any]:
        body = {"displayName": display_name, "color": color}
        return self._post(f"{self._user_root}/outlook/masterCategories", body)

    def read_drive_item_text(self, item_id: str) -> str:
        raw = self._get_bytes(f"{self._user_root}/drive/items/{item_id}/content")
        return raw.decode("utf-8-sig", errors="replace")


class GraphMailbox:
    """Mailbox adapter that maps labels onto Outlook categories.

    A label on a conversation means the category is present on its messages;
    adding or removing a label patches every non-draft message in the thread.
    """

    def __init__(
        self,
        graph: GraphClient,
        label_colors: Optional[Dict[str, str]] = None,
        max_conversations: int = 0,
        thread_max_messages: int = 50,
    ) -> None:
        self.graph = graph
        self.label_colors = label_colors or {}
        self.max_conversations = max_conversations
        self.thread_max_messages = thread_max_messages
        # message id -> categories currently on that message
        self._categories: Dict[str, Set[str]] = {}

    def find_label(self, name: str) -> Optional[Label]:
        for cat in self.graph.list_master_categories():
            if cat.get("displayName") == name:
                return Label(name=name, id=str(cat.get("id") or name))
        return None

    def create_label(self, name: str) -> Label:
        color = self.label_colors.get(name, DEFAULT_LABEL_COLOR)
        created = self.graph.create_master_category(name, color)
        logger.info("Created category %s (%s)", name, color)
        return Label(name=name, id=str(created.get("id") or name))

    def conversations_with_label(self, label: Label) -> List[Conversation]:
        tagged = self.graph.list_messages_with_category(label.name)
        order: List[str] = []
        for raw in tagged:
            conv_id = raw.get("conversationId") or raw["id"]
            if conv_id not in order:
                order.append(conv_id)
        if self.max_conversations > 0:
            order = order[: self.max_conversations]

        conversations: List[Conversation] = []
        for conv_id in order:
            thread = self.graph.list_conversation_messages(
                conv_id, max_messages=self.thread_max_messages
            )
            if not thread:
                thread = [m for m in tagged if (m.get("conversationId") or m["id"]) == conv_id]
            thread = [m for m in thread if not m.get("isDraft")]
            labels: Set[str] = set()
            for raw in thread:
                cats = set(raw.get("categories") or [])
                self._categories[raw["id"]] = cats
                labels |= cats
            conversations.append(
                Conversation(
                    id=conv_id,
                    messages=[_to_message(raw) for raw in thread],
                    labels=labels,
                )
            )
        return conversations

    def has_label(self, conversation: Conversation, label: Label) -> bool:
        return label.name in conversation.labels

    def add_label(self, conversation: Conversation, label: Label) -> None:
        for msg in conversation.messages:
            current = self._categories.setdefault(msg.id, set())
            if label.name in current:
                continue
            updated = current | {label.name}
            self.graph.update_message(msg.id, {"categories": sorted(updated)})
            self._categories[msg.id] = updated
        conversation.labels.add(label.name)

    def remove_label(self, conversation: Conversation, label: Label) -> None:
        for msg in conversation.messages:
            current = self._categories.get(msg.id, set())
            if label.name not in current:
                continue
            updated = current - {label.name}
            self.graph.update_message(msg.id, {"categories": sorted(updated)})
            self._categories[msg.id] = updated
        conversation.labels.discard(label.name)

    def create_draft_reply(self, conversation: Conversation, html_body: str) -> Optional[str]:
        return self.graph.create_draft_reply(conversation.last_message.id, html_body)


class GraphDocumentStore:
    """Reads knowledge-base text from a OneDrive / SharePoint drive item."""

    def __init__(self, graph: GraphClient) -> None:
        self.graph = graph

    def read_text(self, document_id: str) -> str:
        return self.graph.read_drive_item_text(document_id)
