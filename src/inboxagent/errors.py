"""Exception hierarchy shared by the task engine, the store and the adapters."""


class InboxAgentError(Exception):
    """Base class for all inboxagent errors."""


class StorageError(InboxAgentError):
    """The task store rejected a read or write."""


class InvalidTransition(InboxAgentError):
    """A status change not permitted by the task state machine."""

    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Task {task_id}: transition {from_status} -> {to_status} is not allowed"
        )
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class InputValidationError(InboxAgentError):
    """Malformed model output or missing required workflow input."""


class NotFound(InboxAgentError):
    """No matching contact, task or message."""


class AuthExpired(InboxAgentError):
    """A stored credential no longer works; the user must reconnect."""

    def __init__(self, service: str, detail: str = "") -> None:
        message = f"{service} credentials expired or were revoked"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.service = service


class ExternalServiceError(InboxAgentError):
    """An upstream service failed or returned an unexpected response."""

    def __init__(self, service: str, detail: str, status_code: int | None = None) -> None:
        super().__init__(f"{service} error: {detail}")
        self.service = service
        self.status_code = status_code


class ExternalServiceTimeout(ExternalServiceError):
    """An upstream call did not answer within the configured timeout."""

    def __init__(self, service: str, timeout: float) -> None:
        super().__init__(service, f"timed out after {timeout:g}s")
        self.timeout = timeout
