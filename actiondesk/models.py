from typing import Any

from pydantic import BaseModel, Field


class CreateSessionRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)


class SessionResponse(BaseModel):
    session_id: str
    local_only: bool


class TurnPayload(BaseModel):
    role: str
    content: str
    turn_type: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class FollowUpPayload(BaseModel):
    awaiting_action_type: str
    subject_id: str | None = None
    question: str


class TurnListResponse(BaseModel):
    session_id: str
    turns: list[TurnPayload] = Field(default_factory=list)
    awaiting_details: FollowUpPayload | None = None


class UserMessageRequest(BaseModel):
    text: str = Field(min_length=1, max_length=6000)


class ActionRequestPayload(BaseModel):
    action_type: str = Field(min_length=1, max_length=64)
    subject_id: str | None = Field(default=None, max_length=512)
    payload: dict[str, Any] = Field(default_factory=dict)
    origin_text: str | None = Field(default=None, max_length=6000)


class ActionOutcomeResponse(BaseModel):
    state: str
    message: str = ""
    candidates: list[dict[str, Any]] = Field(default_factory=list)
    deficiency: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    error_code: str | None = None
    turn: TurnPayload | None = None


class DateTimeResolveRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)
    context: list[str] = Field(default_factory=list)


class DateTimeResolveResponse(BaseModel):
    start: str
    end: str
    resolved_by: str
    title: str


class PermissionEntry(BaseModel):
    scope: str
    name: str
    description: str
    granted: bool


class PermissionStatusResponse(BaseModel):
    granted: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    has_all_permissions: bool
    reauth_endpoint: str | None = None
    permissions: list[PermissionEntry] = Field(default_factory=list)


class ImportantMessagesRequest(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)


class ImportantMessagesResponse(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)


class GoogleConnectionStatusResponse(BaseModel):
    provider: str = "google"
    connected: bool
    scopes: list[str] = Field(default_factory=list)
