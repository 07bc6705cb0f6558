from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
from typing import Any, Sequence, Union
from uuid import uuid4

from actiondesk import domain
from actiondesk.domain import ConversationTurn, SuggestedAction
from actiondesk.errors import CapabilityError
from actiondesk.providers.registry import ActionRegistry

from .llm_json_client import call_json_chat_completion

logger = logging.getLogger(__name__)

_REPLY_TEXT_KEYS = ("response", "reply", "message", "text", "content")
_PLAIN_REPLY_KINDS = {"chat", "text", "message", "response", "general_chat"}
_HISTORY_LIMIT = 12


@dataclass(frozen=True)
class PrepareResponse:
    actions: list[SuggestedAction] = field(default_factory=list)
    error: str | None = None
    missing_scopes: tuple[str, ...] = ()
    reauth_endpoint: str | None = None


@dataclass(frozen=True)
class DateTimeProposal:
    start: str | None
    end: str | None
    error: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class ChatReply:
    text: str


@dataclass(frozen=True)
class StructuredInsight:
    kind: str
    data: dict[str, Any]
    summary: str = ""


@dataclass(frozen=True)
class ErrorReply:
    code: str
    message: str = ""


CapabilityReply = Union[ChatReply, StructuredInsight, ErrorReply]


class IntentCapability(ABC):
    @abstractmethod
    def prepare(
        self, subject_id: str | None, action_type: str, payload: dict[str, Any]
    ) -> PrepareResponse:
        raise NotImplementedError

    @abstractmethod
    def resolve_datetime(
        self, free_text: str, context: Sequence[str], now: datetime
    ) -> DateTimeProposal:
        """Raises ``CapabilityError`` when the request itself fails."""
        raise NotImplementedError

    @abstractmethod
    def chat(self, text: str, history: Sequence[ConversationTurn]) -> CapabilityReply:
        raise NotImplementedError


def normalize_capability_reply(data: object) -> CapabilityReply:
    """Collapse the reply shapes a model produces into one result type.

    Accepted shapes, after unwrapping any nested ``result`` objects:
    ``{"error": code}``, ``{"type"|"kind": k, "data": {...}}`` and a plain
    text field under one of ``response``, ``reply``, ``message``, ``text``
    or ``content``.
    """
    current = data
    while isinstance(current, dict) and isinstance(current.get("result"), dict):
        current = current["result"]
    if not isinstance(current, dict):
        return ErrorReply(code="invalid_json")

    error = current.get("error")
    if isinstance(error, dict):
        code = str(error.get("code") or "request_failed").strip()
        return ErrorReply(code=code, message=str(error.get("message") or "").strip())
    if isinstance(error, str) and error.strip():
        return ErrorReply(code=error.strip(), message=str(current.get("message") or "").strip())

    kind = current.get("type") or current.get("kind")
    insight_data = current.get("data")
    if (
        isinstance(kind, str)
        and kind.strip()
        and kind.strip().lower() not in _PLAIN_REPLY_KINDS
        and isinstance(insight_data, dict)
    ):
        return StructuredInsight(
            kind=kind.strip().lower(),
            data=insight_data,
            summary=_first_text(current),
        )

    text = _first_text(current)
    if text:
        return ChatReply(text=text)
    return ErrorReply(code="empty_reply")


def _first_text(payload: dict[str, Any]) -> str:
    for key in _REPLY_TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class LlmIntentCapability(IntentCapability):
    def __init__(
        self,
        *,
        provider: str,
        model: str,
        api_key: str | None,
        timeout_seconds: int,
        registry: ActionRegistry,
        api_base_url: str | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url
        self.registry = registry

    def prepare(
        self, subject_id: str | None, action_type: str, payload: dict[str, Any]
    ) -> PrepareResponse:
        response = self._complete(
            system_prompt=_prepare_system_prompt(self.registry),
            user_prompt=json.dumps(
                {
                    "subject_id": subject_id,
                    "action_type": action_type,
                    "payload": payload,
                },
                default=str,
            ),
            max_tokens=600,
        )
        if response.error is not None:
            return PrepareResponse(error=response.error)
        data = response.data or {}
        error = data.get("error")
        if isinstance(error, str) and error.strip():
            missing = data.get("missing_scopes") or data.get("missingScopes")
            if not isinstance(missing, list):
                missing = []
            endpoint = data.get("reauth_endpoint") or data.get("reauthEndpoint")
            return PrepareResponse(
                error=error.strip(),
                missing_scopes=tuple(str(item) for item in missing if str(item).strip()),
                reauth_endpoint=endpoint if isinstance(endpoint, str) else None,
            )
        return PrepareResponse(actions=self._read_actions(data.get("actions"), action_type))

    def resolve_datetime(
        self, free_text: str, context: Sequence[str], now: datetime
    ) -> DateTimeProposal:
        response = self._complete(
            system_prompt=_DATETIME_SYSTEM_PROMPT,
            user_prompt=json.dumps(
                {
                    "now": now.isoformat(),
                    "text": free_text,
                    "recent_context": list(context)[-_HISTORY_LIMIT:],
                }
            ),
            max_tokens=200,
        )
        if response.error is not None:
            raise CapabilityError(
                f"Date/time resolution request failed: {response.error}", code=response.error
            )
        data = response.data or {}
        error = data.get("error")
        if isinstance(error, str) and error.strip():
            return DateTimeProposal(start=None, end=None, error=error.strip())
        title = data.get("title")
        return DateTimeProposal(
            start=_opt_str(data.get("start")),
            end=_opt_str(data.get("end")),
            title=title.strip() if isinstance(title, str) and title.strip() else None,
        )

    def chat(self, text: str, history: Sequence[ConversationTurn]) -> CapabilityReply:
        messages = [{"role": "system", "content": _CHAT_SYSTEM_PROMPT}]
        for turn in list(history)[-_HISTORY_LIMIT:]:
            if turn.role in {domain.ROLE_USER, domain.ROLE_ASSISTANT} and turn.content.strip():
                messages.append({"role": turn.role, "content": turn.content})
        messages.append({"role": "user", "content": text})
        response = call_json_chat_completion(
            provider=self.provider,
            model=self.model,
            api_key=self.api_key,
            timeout_seconds=self.timeout_seconds,
            api_base_url=self.api_base_url,
            messages=messages,
            max_tokens=500,
            temperature=0.3,
        )
        if response.error is not None:
            logger.warning("Chat completion failed: %s", response.error)
            return ErrorReply(code=response.error)
        return normalize_capability_reply(response.data)

    def _complete(self, *, system_prompt: str, user_prompt: str, max_tokens: int):
        response = call_json_chat_completion(
            provider=self.provider,
            model=self.model,
            api_key=self.api_key,
            timeout_seconds=self.timeout_seconds,
            api_base_url=self.api_base_url,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=max_tokens,
        )
        if response.error is not None:
            logger.warning("Capability completion failed: %s", response.error)
        return response

    def _read_actions(self, raw: object, requested_type: str) -> list[SuggestedAction]:
        if not isinstance(raw, list):
            return []
        out: list[SuggestedAction] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            action_type = str(item.get("type") or requested_type or "").strip().lower()
            if not action_type or self.registry.find(action_type) is None:
                continue
            payload = item.get("payload")
            if not isinstance(payload, dict):
                payload = item.get("data") if isinstance(item.get("data"), dict) else {}
            title = str(item.get("title") or item.get("reason") or "").strip()
            out.append(
                SuggestedAction(
                    candidate_id=uuid4().hex,
                    type=action_type,
                    title=title or self.registry.label_for(action_type),
                    payload=dict(payload),
                )
            )
        return out


def _opt_str(value: object) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _prepare_system_prompt(registry: ActionRegistry) -> str:
    return (
        "You prepare concrete actions for an email and calendar assistant.\n"
        "Return only JSON: {\"actions\": [{\"type\": str, \"title\": str, \"payload\": {...}}]}.\n"
        "Each payload must satisfy the fields listed for its type.\n"
        "Return an empty actions list when the request lacks the details needed.\n"
        "Never invent meeting dates or times that the request does not state.\n\n"
        f"{registry.render_for_prompt()}"
    )


_DATETIME_SYSTEM_PROMPT = (
    "You convert a scheduling request into exact instants.\n"
    "Return only JSON: {\"start\": ISO-8601 with offset, \"end\": ISO-8601 with offset, "
    "\"title\": optional str}.\n"
    "Interpret relative days against the provided 'now'.\n"
    "If the text does not state both a day and a time, return {\"error\": \"missing_datetime\"}. "
    "Never guess from words like 'sometime' or 'soon'."
)

_CHAT_SYSTEM_PROMPT = (
    "You are a concise assistant for email, calendar and task work.\n"
    "Return only JSON. For a normal answer use {\"response\": str}. "
    "For structured results use {\"type\": kind, \"data\": {...}, \"response\": short summary}. "
    "If you cannot help, return {\"error\": code, \"message\": str}."
)
