import json
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator


class TaskStatus(StrEnum):
    PENDING = "pending"
    WAITING_RESPONSE = "waiting_response"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(StrEnum):
    SCHEDULE_MEETING = "schedule_meeting"


# A self-loop on waiting_response is the "needs clarification" re-prompt.
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {
        TaskStatus.WAITING_RESPONSE,
        TaskStatus.IN_PROGRESS,
        TaskStatus.FAILED,
    },
    TaskStatus.WAITING_RESPONSE: {
        TaskStatus.WAITING_RESPONSE,
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.IN_PROGRESS: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.WAITING_RESPONSE,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {TaskStatus.COMPLETED, TaskStatus.FAILED}


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Return True if *from_status* may move to *to_status*."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def _json_column(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class HistoryEntry(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class Task(BaseModel):
    id: str
    owner_id: str
    type: str
    status: TaskStatus = TaskStatus.PENDING
    context: dict[str, Any] = {}
    conversation_history: list[HistoryEntry] = []
    waiting_for: str | None = None
    last_action: str | None = None
    metadata: dict[str, Any] = {}
    created_at: str
    updated_at: str
    completed_at: str | None = None

    @field_validator("context", "conversation_history", "metadata", mode="before")
    @classmethod
    def parse_json_columns(cls, value: Any) -> Any:
        return _json_column(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class OwnerCredentials(BaseModel):
    """Per-owner credentials handed explicitly to every adapter call."""

    model_config = ConfigDict(frozen=True)

    owner_id: str
    email: str
    google_access_token: str | None = None
    hubspot_access_token: str | None = None


class Owner(BaseModel):
    id: str
    email: str
    google_access_token: str | None = None
    hubspot_access_token: str | None = None
    created_at: str

    def credentials(self) -> OwnerCredentials:
        return OwnerCredentials(
            owner_id=self.id,
            email=self.email,
            google_access_token=self.google_access_token,
            hubspot_access_token=self.hubspot_access_token,
        )


class InboundMessage(BaseModel):
    message_id: str
    from_email: str
    from_name: str = ""
    subject: str = ""
    body: str = ""
    received_at: datetime
    owner_id: str | None = None


class Contact(BaseModel):
    crm_id: str
    email: str
    firstname: str = ""
    lastname: str = ""
    phone: str = ""
    notes: str = ""
    owner_id: str | None = None

    @property
    def name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip()


class TimeSlot(BaseModel):
    start: datetime
    end: datetime


class CalendarEvent(BaseModel):
    id: str
    summary: str = ""
    description: str = ""
    start: str = ""
    end: str = ""
    attendees: list[str] = []
    location: str = ""
    html_link: str | None = None


class ScheduleMeetingContext(BaseModel):
    """Workflow payload stored in ``Task.context`` for meeting scheduling."""

    model_config = ConfigDict(extra="allow")

    contact_name: str
    contact_email: str
    duration: int
    proposed_times: list[TimeSlot] = []
    notes: str | None = None
    subject: str = "Meeting request"
