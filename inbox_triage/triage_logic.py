from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .auth import (
    acquire_application_token,
    acquire_delegated_token,
    build_confidential_client,
    build_public_client,
)
from .config import AppConfig, LabelsConfig
from .decision import Decision, Outcome, Verdict, decide_outcome, parse_decision
from .decision_log import ERROR_LABEL, CsvSheet, DecisionLogger, LogRecord
from .documents import FileDocumentStore
from .errors import (
    AIError,
    ConversationProcessingError,
    DecisionParseError,
)
from .graph_client import LABEL_COLORS, GraphClient, GraphDocumentStore, GraphMailbox
from .mailbox import Conversation, DocumentStore, Label, Mailbox, Message, Sheet
from .model_client import AIClient, build_ai_client_from_config
from .schemas import DECISION_OUTPUT_DESCRIPTION
from .session import SessionCache
from .utils import trim, utc_now

logger = logging.getLogger("inbox_triage.logic")


class TriageState(str, Enum):
    FETCHED = "fetched"
    CLEANED = "cleaned"
    ANALYZED = "analyzed"
    DECIDED = "decided"
    LABELED = "labeled"
    LOGGED = "logged"
    FINALIZED = "finalized"
    ERRORED = "errored"


@dataclass
class ConversationResult:
    conversation_id: str
    state: TriageState
    label: Optional[str] = None
    reasoning: str = ""
    subject: str = ""
    draft_id: Optional[str] = None
    # Last state reached before an error, when state is ERRORED.
    failed_after: Optional[TriageState] = None
    error: Optional[str] = None


@dataclass
class BatchReport:
    started_at: str
    results: List[ConversationResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for r in self.results:
            key = r.label or ERROR_LABEL
            out[key] = out.get(key, 0) + 1
        return out

    def to_markdown(self) -> str:
        lines = ["# triage run", "", f"- started: {self.started_at}", f"- processed: {self.processed}"]
        for label, count in sorted(self.counts().items()):
            lines.append(f"- {label}: {count}")
        if self.results:
            lines += ["", "| Conversation | Subject | Outcome | Reasoning |", "| --- | --- | --- | --- |"]
            for r in self.results:
                outcome = r.label if r.state == TriageState.FINALIZED else f"{ERROR_LABEL} ({r.error})"
                reasoning = (r.reasoning or "").replace("|", "\\|").replace("\n", " ")
                subject = (r.subject or "").replace("|", "\\|")
                lines.append(f"| {r.conversation_id} | {subject} | {outcome} | {reasoning} |")
        lines.append("")
        return "\n".join(lines)


def _triage_prompt(
    writing_style: str, knowledge_base: str, message: Message, body_max_chars: int = 0
) -> str:
    return (
        "You triage incoming email for a small business inbox and draft replies "
        "on the owner's behalf.\n\n"
        "WRITING STYLE (use it for any draft):\n"
        f"{writing_style}\n\n"
        "KNOWLEDGE BASE (the only source of facts you may use):\n"
        "<<<\n"
        f"{knowledge_base}\n"
        ">>>\n\n"
        "EMAIL:\n"
        f"From: {message.sender}\n"
        f"Subject: {message.subject}\n\n"
        f"{trim(message.body, body_max_chars)}\n\n"
        f"{DECISION_OUTPUT_DESCRIPTION}"
    )


def draft_to_html(text: str) -> str:
    return (text or "").replace("\r\n", "\n").replace("\n", "<br>")


def clean_outcome_labels(
    mailbox: Mailbox, conversation: Conversation, labels: Iterable[Label]
) -> int:
    """Remove every outcome label present on the conversation. Safe to repeat."""
    removed = 0
    for label in labels:
        if mailbox.has_label(conversation, label):
            mailbox.remove_label(conversation, label)
            removed += 1
    return removed


class TriagePipeline:
    """Runs one batch: every conversation tagged incoming goes through
    fetch -> clean -> analyse -> decide -> label -> log -> finalise.

    Errors in one conversation are contained there; only the batch
    preconditions (incoming label, knowledge base) can stop a run.
    """

    def __init__(
        self,
        mailbox: Mailbox,
        documents: DocumentStore,
        decision_logger: DecisionLogger,
        ai_client: AIClient,
        labels: LabelsConfig,
        knowledge_base_id: str,
        writing_style: str,
        body_max_chars: int = 0,
    ) -> None:
        self.mailbox = mailbox
        self.documents = documents
        self.decision_logger = decision_logger
        self.ai_client = ai_client
        self.labels = labels
        self.knowledge_base_id = knowledge_base_id
        self.writing_style = writing_style
        self.body_max_chars = body_max_chars

    def new_session(self) -> SessionCache:
        return SessionCache(self.mailbox, self.documents, self.knowledge_base_id, self.labels)

    def run_batch(self) -> BatchReport:
        """Process every conversation carrying the incoming label.

        Raises:
            LabelNotFoundError: the incoming label does not exist.
            ContextUnavailableError: the knowledge base is unreadable or empty.
        """
        report = BatchReport(started_at=utc_now().replace(microsecond=0).isoformat())
        session = self.new_session()

        incoming = session.incoming_label()
        session.knowledge_base()

        try:
            self.decision_logger.ensure_headers()
        except Exception as exc:
            logger.warning("Could not prepare log sheet headers: %s", exc)

        conversations = self.mailbox.conversations_with_label(incoming)
        logger.info("Found %d conversation(s) labelled %s", len(conversations), incoming.name)

        for conversation in conversations:
            report.results.append(self.process_conversation(conversation, session))

        logger.info("Batch complete: processed=%d %s", report.processed, report.counts())
        return report

    def process_conversation(
        self, conversation: Conversation, session: SessionCache
    ) -> ConversationResult:
        state: Optional[TriageState] = None
        message: Optional[Message] = None
        try:
            message = conversation.last_message
            state = TriageState.FETCHED

            clean_outcome_labels(self.mailbox, conversation, session.outcome_labels().values())
            state = TriageState.CLEANED

            decision = self._analyze(message, session)
            state = TriageState.ANALYZED

            verdict = decide_outcome(decision)
            state = TriageState.DECIDED

            label, draft_id = self._apply_outcome(conversation, verdict, session)
            state = TriageState.LABELED

            self.decision_logger.write(
                LogRecord.now(
                    label=label.name,
                    reasoning=verdict.reasoning,
                    conversation_id=conversation.id,
                    message_id=message.id,
                    subject=message.subject,
                    sender=message.sender,
                    permalink=message.permalink,
                )
            )
            state = TriageState.LOGGED

            self.mailbox.remove_label(conversation, session.incoming_label())
            state = TriageState.FINALIZED
        except Exception as exc:
            error = ConversationProcessingError(conversation.id, exc)
            logger.error(
                "Conversation %s failed after %s: %s",
                conversation.id,
                state.value if state else "start",
                error,
                exc_info=True,
            )
            self._log_error(conversation, message, error)
            return ConversationResult(
                conversation_id=conversation.id,
                state=TriageState.ERRORED,
                label=None,
                reasoning=str(error),
                subject=message.subject if message else "",
                failed_after=state,
                error=str(error),
            )

        logger.info(
            "Conversation %s -> %s (%s)", conversation.id, label.name, verdict.reasoning
        )
        return ConversationResult(
            conversation_id=conversation.id,
            state=TriageState.FINALIZED,
            label=label.name,
            reasoning=verdict.reasoning,
            subject=message.subject,
            draft_id=draft_id,
        )

    def _analyze(self, message: Message, session: SessionCache) -> Optional[Decision]:
        prompt = _triage_prompt(
            self.writing_style, session.knowledge_base(), message, self.body_max_chars
        )
        try:
            raw = self.ai_client.generate(prompt)
            return parse_decision(raw)
        except (AIError, DecisionParseError) as exc:
            logger.error("AI analysis failed for message %s: %s", message.id, exc)
            return None

    def _apply_outcome(
        self, conversation: Conversation, verdict: Verdict, session: SessionCache
    ) -> tuple[Label, Optional[str]]:
        draft_id: Optional[str] = None
        if verdict.outcome == Outcome.DRAFTED:
            draft_id = self.mailbox.create_draft_reply(conversation, draft_to_html(verdict.draft))
        label = session.outcome_label(verdict.outcome)
        self.mailbox.add_label(conversation, label)
        return label, draft_id

    def _log_error(
        self,
        conversation: Conversation,
        message: Optional[Message],
        error: ConversationProcessingError,
    ) -> None:
        record = LogRecord.now(
            label=ERROR_LABEL,
            reasoning=str(error),
            conversation_id=conversation.id,
            message_id=message.id if message else "",
            subject=message.subject if message else "",
            sender=message.sender if message else "",
            permalink=message.permalink if message else "",
        )
        result = self.decision_logger.write(record)
        if not result.ok:
            logger.error(
                "Could not record error for conversation %s: %s",
                conversation.id,
                result.error,
            )


# -----------------------------
# Wiring
# -----------------------------


def _get_graph(config: AppConfig) -> GraphClient:
    """Construct an authenticated GraphClient respecting auth mode."""
    azure = config.azure
    cache_path = Path(config.auth.token_cache_path)
    user = config.mailbox.user
    if config.auth.auth_mode == "delegated":
        app = build_public_client(azure, cache_path)
        username = None if user.lower() == "me" else user
        token = acquire_delegated_token(app, azure.delegated_scopes, username)
        if not token:
            raise RuntimeError(f"Delegated auth failed for {user}")
        return GraphClient(token["access_token"], user=user)
    if config.auth.auth_mode == "application":
        if user.lower() == "me":
            raise RuntimeError("Application auth needs mailbox.user set to a userPrincipalName")
        app = build_confidential_client(azure, cache_path)
        token = acquire_application_token(app)
        if not token:
            raise RuntimeError("Application auth failed")
        return GraphClient(token["access_token"], user=user)
    raise RuntimeError(f"Unknown auth_mode: {config.auth.auth_mode}")


def _label_colors(labels: LabelsConfig) -> Dict[str, str]:
    return {
        labels.incoming: LABEL_COLORS["incoming"],
        labels.drafted: LABEL_COLORS["drafted"],
        labels.manual_review: LABEL_COLORS["manual_review"],
        labels.no_reply_needed: LABEL_COLORS["no_reply_needed"],
    }


def _document_store(config: AppConfig, graph: GraphClient) -> DocumentStore:
    provider = config.knowledge_base.provider
    if provider == "graph":
        return GraphDocumentStore(graph)
    if provider == "file":
        return FileDocumentStore(config.repo_root)
    raise RuntimeError(f"Unknown knowledge_base.provider: {provider}")


def _log_sheet(config: AppConfig) -> CsvSheet:
    path = Path(config.log.path).expanduser()
    if not path.is_absolute():
        path = config.repo_root / path
    return CsvSheet(path)


def build_pipeline(
    config: AppConfig,
    *,
    graph: Optional[GraphClient] = None,
    ai_client: Optional[AIClient] = None,
    sheet: Optional[Sheet] = None,
) -> TriagePipeline:
    # Build the AI client first so a bad credential fails before any login prompt.
    ai_client = ai_client or build_ai_client_from_config(config.ai)
    graph = graph or _get_graph(config)
    mailbox = GraphMailbox(
        graph,
        label_colors=_label_colors(config.labels),
        max_conversations=config.triage.max_conversations_per_run,
    )
    return TriagePipeline(
        mailbox=mailbox,
        documents=_document_store(config, graph),
        decision_logger=DecisionLogger(sheet or _log_sheet(config)),
        ai_client=ai_client,
        labels=config.labels,
        knowledge_base_id=config.knowledge_base.document_id,
        writing_style=config.triage.writing_style,
        body_max_chars=config.triage.body_max_chars,
    )


def init_mailbox(
    config: AppConfig,
    *,
    graph: Optional[GraphClient] = None,
    sheet: Optional[Sheet] = None,
) -> Dict[str, str]:
    """Create any missing labels (incoming included) and the log header row.

    Returns a map of label name to action taken (create/exists), plus the
    log sheet status under "log".
    """
    graph = graph or _get_graph(config)
    mailbox = GraphMailbox(graph, label_colors=_label_colors(config.labels))
    results: Dict[str, str] = {}
    for name in (
        config.labels.incoming,
        config.labels.drafted,
        config.labels.manual_review,
        config.labels.no_reply_needed,
    ):
        if mailbox.find_label(name) is None:
            mailbox.create_label(name)
            results[name] = "create"
        else:
            results[name] = "exists"
    written = DecisionLogger(sheet or _log_sheet(config)).ensure_headers()
    results["log"] = "headers written" if written else "exists"
    return results
