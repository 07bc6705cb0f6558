from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

MARK_READ = "mark_read"
DELETE = "delete"
DRAFT_REPLY = "draft_reply"
REPLY = "reply"
FORWARD = "forward"
CREATE_MEETING = "create_meeting"
CREATE_TASK = "create_task"

DIRECT_ACTION_TYPES = frozenset({MARK_READ, DELETE})

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


class TurnType:
    USER_MESSAGE = "user_message"
    CHAT_RESPONSE = "chat_response"
    ACTION_RESULT = "action_result"
    ACTION_SUGGESTIONS = "action_suggestions"
    PERMISSION_REQUIRED = "permission_required"
    CLARIFICATION = "clarification"
    ERROR = "error"
    INSIGHT = "insight"
    GREETING = "greeting"


class ActionState:
    CLASSIFIED = "classified"
    AUTHORIZED = "authorized"
    PREPARING = "preparing"
    SUGGESTED = "suggested"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"
    AWAITING_DETAILS = "awaiting_details"
    DENIED = "denied"
    PREPARE_FAILED = "prepare_failed"
    EXECUTE_FAILED = "execute_failed"
    NOT_CONNECTED = "not_connected"
    DUPLICATE_CONFIRM = "duplicate_confirm"
    CHAT = "chat"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActionRequest:
    action_type: str
    subject_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    origin_text: str | None = None


@dataclass(frozen=True)
class PermissionDeficiency:
    missing_scopes: tuple[str, ...]
    reauth_endpoint: str
    required_permission_label: str

    def as_dict(self) -> dict[str, object]:
        return {
            "missing_scopes": list(self.missing_scopes),
            "reauth_endpoint": self.reauth_endpoint,
            "required_permission_label": self.required_permission_label,
        }


@dataclass(frozen=True)
class SuggestedAction:
    candidate_id: str
    type: str
    title: str
    payload: dict[str, Any]

    def as_dict(self) -> dict[str, object]:
        return {
            "candidate_id": self.candidate_id,
            "type": self.type,
            "title": self.title,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str
    turn_type: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def as_dict(self) -> dict[str, object]:
        return {
            "role": self.role,
            "content": self.content,
            "turn_type": self.turn_type,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PendingFollowUp:
    awaiting_action_type: str
    subject_id: str | None
    question: str


@dataclass(frozen=True)
class ScheduleResolution:
    start: datetime
    end: datetime
    resolved_by: str
    title: str = "Meeting"

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Schedule instants must be timezone-aware.")
        if not self.start < self.end:
            raise ValueError("Schedule start must be before end.")
        if self.resolved_by not in {"capability", "fallback"}:
            raise ValueError("resolved_by must be 'capability' or 'fallback'.")


@dataclass(frozen=True)
class AmbiguousDateTime:
    reason: str
    question: str
    code: str = "missing_datetime"
