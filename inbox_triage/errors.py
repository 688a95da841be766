from __future__ import annotations


class TriageError(Exception):
    """Base class for every error raised by inbox_triage."""


class InvalidCredentialError(TriageError):
    """Credential value has an unsupported shape. Fix the configuration."""


class AIError(TriageError):
    """Base class for failures talking to the generative model."""


class AIBackendError(AIError):
    """Transport failure, refused token, or non-success status from the model API."""


class AIResponseFormatError(AIError):
    """Model API answered with success but the payload carries no candidate text."""


class DecisionParseError(TriageError):
    """Model text is not a JSON object once code fences are stripped."""


class PreconditionError(TriageError):
    """A batch-level requirement is unmet; the run aborts before touching the mailbox."""


class LabelNotFoundError(PreconditionError):
    def __init__(self, label_name: str) -> None:
        super().__init__(f"Required label '{label_name}' does not exist in the mailbox")
        self.label_name = label_name


class ContextUnavailableError(PreconditionError):
    """Knowledge base could not be read, or was empty."""


class ConversationProcessingError(TriageError):
    """Unexpected failure while processing a single conversation."""

    def __init__(self, conversation_id: str, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.conversation_id = conversation_id
        self.cause = cause
