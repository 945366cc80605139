"""Exception hierarchy for the chat copilot core.

Only session lookup failures, timeouts and provider-level fatal errors are
expected to reach the caller; everything else is logged and replaced with a
default value by the stage helpers in :mod:`chat_copilot.stages`.
"""


class ChatCopilotError(Exception):
    """Base exception for the chat copilot core."""

    pass


class ChatSessionNotFound(ChatCopilotError):
    """The chat session a turn refers to does not exist."""

    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        super().__init__(f"Chat session {chat_id} not found.")


class ChatMessageNotFound(ChatCopilotError):
    """A chat message referenced by id does not exist."""

    def __init__(self, message_id: str, chat_id: str | None = None):
        self.message_id = message_id
        self.chat_id = chat_id
        super().__init__(f"Chat message {message_id} does not exist.")


class InvalidMemoryBalance(ChatCopilotError, ValueError):
    """Memory balance outside of [0, 1]."""

    def __init__(self, memory_balance: float):
        self.memory_balance = memory_balance
        super().__init__(f"Invalid memory balance: {memory_balance}")


class MemoryProviderUnavailable(ChatCopilotError):
    """A memory provider search or store call failed."""

    def __init__(self, memory_kind: str, reason: str):
        self.memory_kind = memory_kind
        self.reason = reason
        super().__init__(f"Memory provider unavailable for {memory_kind}: {reason}")


class ExtractionParseFailure(ChatCopilotError):
    """The model did not return a parseable memory extraction payload."""

    def __init__(self, memory_kind: str, reason: str, raw: str = ""):
        self.memory_kind = memory_kind
        self.reason = reason
        self.raw = raw
        super().__init__(f"Unable to parse {memory_kind} extraction: {reason}")


class PlannerFailure(ChatCopilotError):
    """Plan creation or execution failed."""

    pass


class StageFailure(ChatCopilotError):
    """A named assembly stage failed; the original error is kept as ``cause``."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")


class OperationTimedOut(ChatCopilotError):
    """The whole turn exceeded the configured wall-clock timeout."""

    def __init__(self, chat_id: str, timeout_seconds: float):
        self.chat_id = chat_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Chat turn for {chat_id} timed out after {timeout_seconds}s"
        )


class MigrationInProgress(ChatCopilotError):
    """Chat memory is being migrated; turns are refused until it completes."""

    pass
