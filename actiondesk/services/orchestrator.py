from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
import logging
import threading
from typing import Any, Callable

import requests

from actiondesk import domain
from actiondesk.domain import (
    ActionRequest,
    ActionState,
    AmbiguousDateTime,
    ConversationTurn,
    PendingFollowUp,
    PermissionDeficiency,
    ScheduleResolution,
    SuggestedAction,
    TurnType,
)
from actiondesk.errors import (
    ActionError,
    DuplicateConfirm,
    InsufficientPermissions,
    ProviderNotConnected,
)
from actiondesk.providers.base import ActionProvider, ProviderResult
from actiondesk.providers.registry import ActionRegistry, build_default_registry

from .datetime_resolver import DateTimeResolver
from .intent_capability import ChatReply, ErrorReply, IntentCapability, StructuredInsight
from .permission_guard import Deficient, PermissionGuard
from .session_bridge import SessionBridge

logger = logging.getLogger(__name__)

MEETING_DETAILS_QUESTION = (
    "I need a bit more detail to schedule this. "
    "What day and time works, for example \"tomorrow at 3pm\"?"
)
_CONTEXT_TURNS = 10
DEFAULT_MAX_TRACKED_SESSIONS = 1000


@dataclass(frozen=True)
class ActionOutcome:
    state: str
    message: str = ""
    candidates: tuple[SuggestedAction, ...] = ()
    deficiency: PermissionDeficiency | None = None
    result: ProviderResult | None = None
    error_code: str | None = None
    turn: ConversationTurn | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "state": self.state,
            "message": self.message,
            "candidates": [candidate.as_dict() for candidate in self.candidates],
            "deficiency": self.deficiency.as_dict() if self.deficiency else None,
            "result": (
                {
                    "action_type": self.result.action_type,
                    "summary": self.result.summary,
                    "url": self.result.url,
                    "data": dict(self.result.data),
                }
                if self.result
                else None
            ),
            "error_code": self.error_code,
            "turn": self.turn.as_dict() if self.turn else None,
        }


@dataclass
class _Candidate:
    action: SuggestedAction
    subject_id: str | None
    reserved: bool = False


@dataclass(frozen=True)
class _DeniedAttempt:
    principal_id: str
    request: ActionRequest | None = None
    candidate_id: str | None = None


class ActionOrchestrator:
    def __init__(
        self,
        *,
        bridge: SessionBridge,
        guard: PermissionGuard,
        capability: IntentCapability,
        provider: ActionProvider,
        resolver: DateTimeResolver,
        registry: ActionRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
        max_tracked_sessions: int = DEFAULT_MAX_TRACKED_SESSIONS,
    ) -> None:
        self.bridge = bridge
        self.guard = guard
        self.capability = capability
        self.provider = provider
        self.resolver = resolver
        self.registry = registry or build_default_registry()
        self._clock = clock
        self._max_tracked = max(1, int(max_tracked_sessions))
        self._lock = threading.Lock()
        # Per-session tables, least recently written first.
        self._candidates: OrderedDict[str, dict[str, _Candidate]] = OrderedDict()
        self._denied: OrderedDict[str, _DeniedAttempt] = OrderedDict()

    def handle(
        self, session_id: str, principal_id: str, request: ActionRequest
    ) -> ActionOutcome:
        with self.bridge.lock(session_id):
            return self._handle_request(session_id, principal_id, request)

    def confirm(self, session_id: str, principal_id: str, candidate_id: str) -> ActionOutcome:
        with self.bridge.lock(session_id):
            with self._lock:
                entry = self._candidates.get(session_id, {}).get(candidate_id)
            if entry is None:
                return self._fail(
                    session_id,
                    ActionState.EXECUTE_FAILED,
                    "That suggestion is no longer available. Ask again for fresh suggestions.",
                    error_code="candidate_unavailable",
                )
            if entry.reserved:
                logger.info(
                    "session=%s candidate=%s state=%s",
                    session_id,
                    candidate_id,
                    ActionState.DUPLICATE_CONFIRM,
                )
                return ActionOutcome(
                    state=ActionState.DUPLICATE_CONFIRM,
                    message="This action was already confirmed.",
                    error_code=DuplicateConfirm.code,
                )

            action = entry.action
            decision = self.guard.authorize(principal_id, action.type)
            if isinstance(decision, Deficient):
                self._remember_denied(
                    session_id, _DeniedAttempt(principal_id=principal_id, candidate_id=candidate_id)
                )
                return self._deny(session_id, action.type, decision.deficiency)

            entry.reserved = True
            self._log_state(session_id, action.type, ActionState.CONFIRMED)
            outcome = self._execute(
                session_id,
                principal_id,
                action_type=action.type,
                subject_id=entry.subject_id,
                payload=dict(action.payload),
                candidate_id=candidate_id,
            )
            if outcome.state == ActionState.DENIED:
                # The provider rejected the grant before any side effect.
                entry.reserved = False
            elif outcome.state == ActionState.EXECUTED:
                self._retire_siblings(session_id, candidate_id)
            return outcome

    def handle_user_message(self, session_id: str, principal_id: str, text: str) -> ActionOutcome:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("Message text is required.")
        with self.bridge.lock(session_id):
            self.bridge.append_turn(
                session_id,
                ConversationTurn(
                    role=domain.ROLE_USER, content=cleaned, turn_type=TurnType.USER_MESSAGE
                ),
            )
            follow_up = self.bridge.take_follow_up(session_id)
            if follow_up is not None and follow_up.awaiting_action_type == domain.CREATE_MEETING:
                return self._complete_meeting(session_id, principal_id, follow_up, cleaned)
            return self._chat(session_id, cleaned)

    def resume_after_reauth(self, session_id: str, principal_id: str) -> ActionOutcome | None:
        with self._lock:
            attempt = self._denied.get(session_id)
            if attempt is None or attempt.principal_id != principal_id:
                return None
            del self._denied[session_id]
        self.guard.invalidate(principal_id)
        logger.info("session=%s resuming denied attempt after reauthorization", session_id)
        if attempt.candidate_id is not None:
            return self.confirm(session_id, principal_id, attempt.candidate_id)
        if attempt.request is not None:
            return self.handle(session_id, principal_id, attempt.request)
        return None

    def has_denied_attempt(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._denied

    def _handle_request(
        self, session_id: str, principal_id: str, request: ActionRequest
    ) -> ActionOutcome:
        action_type = (request.action_type or "").strip().lower()
        if not action_type:
            raise ValueError("action_type is required.")
        self._log_state(session_id, action_type, ActionState.CLASSIFIED)

        decision = self.guard.authorize(principal_id, action_type)
        if isinstance(decision, Deficient):
            self._remember_denied(
                session_id, _DeniedAttempt(principal_id=principal_id, request=request)
            )
            return self._deny(session_id, action_type, decision.deficiency)
        self._log_state(session_id, action_type, ActionState.AUTHORIZED)

        payload = dict(request.payload or {})
        if action_type in domain.DIRECT_ACTION_TYPES:
            return self._execute(
                session_id,
                principal_id,
                action_type=action_type,
                subject_id=request.subject_id,
                payload=payload,
            )

        has_schedule = bool(payload.get("start") and payload.get("end"))
        if action_type == domain.CREATE_MEETING and not has_schedule:
            text = str(payload.get("text") or request.origin_text or "").strip()
            resolution = self.resolver.resolve(text, self._context_texts(session_id), self._now())
            if isinstance(resolution, AmbiguousDateTime):
                return self._await_details(session_id, request.subject_id, resolution.question)
            payload = _merge_schedule(payload, resolution)

        return self._prepare(session_id, principal_id, request, payload)

    def _prepare(
        self,
        session_id: str,
        principal_id: str,
        request: ActionRequest,
        payload: dict[str, Any],
    ) -> ActionOutcome:
        action_type = request.action_type.strip().lower()
        subject_id = request.subject_id
        self._log_state(session_id, action_type, ActionState.PREPARING)
        try:
            response = self.capability.prepare(subject_id, action_type, payload)
        except ActionError as exc:
            logger.warning("session=%s prepare raised %s", session_id, exc.code)
            return self._fail(
                session_id,
                ActionState.PREPARE_FAILED,
                f"I couldn't prepare that action: {exc}",
                error_code=exc.code,
            )

        if response.error == InsufficientPermissions.code:
            self.guard.invalidate(principal_id)
            self._remember_denied(
                session_id, _DeniedAttempt(principal_id=principal_id, request=request)
            )
            return self._deny(session_id, action_type, self.guard.deficiency_for(action_type))
        if response.error:
            return self._fail(
                session_id,
                ActionState.PREPARE_FAILED,
                f"I couldn't prepare that action ({response.error}). You can try again.",
                error_code=response.error,
            )

        if not response.actions:
            if action_type == domain.CREATE_MEETING:
                return self._await_details(session_id, subject_id, MEETING_DETAILS_QUESTION)
            return self._fail(
                session_id,
                ActionState.PREPARE_FAILED,
                f"No suggestions for {self.registry.label_for(action_type).lower()}.",
                error_code="no_suggestions",
            )

        candidates = tuple(response.actions)
        if action_type == domain.CREATE_MEETING and payload.get("start") and payload.get("end"):
            candidates = tuple(_with_schedule(candidate, payload) for candidate in candidates)
        with self._lock:
            self._track(
                self._candidates,
                session_id,
                {
                    candidate.candidate_id: _Candidate(action=candidate, subject_id=subject_id)
                    for candidate in candidates
                },
            )
        turn = self._reply(
            session_id,
            _suggestions_text(candidates),
            TurnType.ACTION_SUGGESTIONS,
            {
                "action_type": action_type,
                "subject_id": subject_id,
                "candidates": [candidate.as_dict() for candidate in candidates],
            },
        )
        self._log_state(session_id, action_type, ActionState.SUGGESTED)
        return ActionOutcome(
            state=ActionState.SUGGESTED,
            message=turn.content,
            candidates=candidates,
            turn=turn,
        )

    def _execute(
        self,
        session_id: str,
        principal_id: str,
        *,
        action_type: str,
        subject_id: str | None,
        payload: dict[str, Any],
        candidate_id: str | None = None,
    ) -> ActionOutcome:
        definition = self.registry.find(action_type)
        try:
            if definition is not None:
                payload = definition.validate_args(payload)
            if action_type == domain.CREATE_MEETING:
                validate_meeting_payload(payload)
        except ValueError as exc:
            return self._fail(
                session_id,
                ActionState.EXECUTE_FAILED,
                str(exc),
                error_code="invalid_payload",
            )

        try:
            result = self.provider.execute(
                principal_id=principal_id,
                subject_id=subject_id,
                action_type=action_type,
                payload=payload,
            )
        except InsufficientPermissions:
            self.guard.invalidate(principal_id)
            if candidate_id is not None:
                attempt = _DeniedAttempt(principal_id=principal_id, candidate_id=candidate_id)
            else:
                attempt = _DeniedAttempt(
                    principal_id=principal_id,
                    request=ActionRequest(
                        action_type=action_type, subject_id=subject_id, payload=payload
                    ),
                )
            self._remember_denied(session_id, attempt)
            return self._deny(session_id, action_type, self.guard.deficiency_for(action_type))
        except ProviderNotConnected as exc:
            return self._fail(
                session_id,
                ActionState.NOT_CONNECTED,
                str(exc),
                error_code=exc.code,
                extra={"connect_endpoint": self.guard.deficiency_for(action_type).reauth_endpoint},
            )
        except ActionError as exc:
            return self._fail(
                session_id, ActionState.EXECUTE_FAILED, str(exc), error_code=exc.code
            )
        except requests.RequestException as exc:
            logger.warning("session=%s provider transport error: %s", session_id, exc)
            return self._fail(
                session_id,
                ActionState.EXECUTE_FAILED,
                "The action could not reach the provider. Please try again.",
                error_code="action_failed",
            )

        turn = self._reply(
            session_id,
            result.summary,
            TurnType.ACTION_RESULT,
            {
                "action_type": action_type,
                "subject_id": subject_id,
                "candidate_id": candidate_id,
                "url": result.url,
                "data": dict(result.data),
            },
        )
        self._log_state(session_id, action_type, ActionState.EXECUTED)
        return ActionOutcome(
            state=ActionState.EXECUTED, message=result.summary, result=result, turn=turn
        )

    def _complete_meeting(
        self,
        session_id: str,
        principal_id: str,
        follow_up: PendingFollowUp,
        text: str,
    ) -> ActionOutcome:
        decision = self.guard.authorize(principal_id, domain.CREATE_MEETING)
        if isinstance(decision, Deficient):
            self._remember_denied(
                session_id,
                _DeniedAttempt(
                    principal_id=principal_id,
                    request=ActionRequest(
                        action_type=domain.CREATE_MEETING,
                        subject_id=follow_up.subject_id,
                        payload={"text": text},
                        origin_text=text,
                    ),
                ),
            )
            return self._deny(session_id, domain.CREATE_MEETING, decision.deficiency)

        resolution = self.resolver.resolve(text, self._context_texts(session_id), self._now())
        if isinstance(resolution, AmbiguousDateTime):
            return self._fail(
                session_id,
                ActionState.EXECUTE_FAILED,
                "I still couldn't work out a day and time, so I didn't schedule anything.",
                error_code=resolution.code,
                extra={"question": resolution.question},
            )
        return self._execute(
            session_id,
            principal_id,
            action_type=domain.CREATE_MEETING,
            subject_id=follow_up.subject_id,
            payload=_merge_schedule({"text": text}, resolution),
        )

    def _chat(self, session_id: str, text: str) -> ActionOutcome:
        history = self.bridge.recent_turns(session_id, _CONTEXT_TURNS + 1)[:-1]
        try:
            reply = self.capability.chat(text, history)
        except ActionError as exc:
            reply = ErrorReply(code=exc.code, message=str(exc))

        if isinstance(reply, ChatReply):
            turn = self._reply(session_id, reply.text, TurnType.CHAT_RESPONSE, {})
            return ActionOutcome(state=ActionState.CHAT, message=reply.text, turn=turn)
        if isinstance(reply, StructuredInsight):
            content = reply.summary or f"Here is the {reply.kind.replace('_', ' ')} you asked for."
            turn = self._reply(
                session_id, content, TurnType.INSIGHT, {"kind": reply.kind, "data": reply.data}
            )
            return ActionOutcome(state=ActionState.CHAT, message=content, turn=turn)
        message = reply.message or "Sorry, I couldn't answer that right now. Please try again."
        turn = self._reply(session_id, message, TurnType.ERROR, {"error": reply.code})
        return ActionOutcome(
            state=ActionState.CHAT, message=message, error_code=reply.code, turn=turn
        )

    def _await_details(
        self, session_id: str, subject_id: str | None, question: str
    ) -> ActionOutcome:
        self.bridge.set_follow_up(
            session_id,
            PendingFollowUp(
                awaiting_action_type=domain.CREATE_MEETING,
                subject_id=subject_id,
                question=question,
            ),
        )
        turn = self._reply(
            session_id,
            question,
            TurnType.CLARIFICATION,
            {"action_type": domain.CREATE_MEETING, "error": "missing_datetime"},
        )
        self._log_state(session_id, domain.CREATE_MEETING, ActionState.AWAITING_DETAILS)
        return ActionOutcome(
            state=ActionState.AWAITING_DETAILS,
            message=question,
            error_code="missing_datetime",
            turn=turn,
        )

    def _deny(
        self, session_id: str, action_type: str, deficiency: PermissionDeficiency
    ) -> ActionOutcome:
        message = (
            f"I need {deficiency.required_permission_label} permission to do that. "
            "Grant access and I'll pick up where we left off."
        )
        turn = self._reply(
            session_id,
            message,
            TurnType.PERMISSION_REQUIRED,
            {
                "action_type": action_type,
                "error": InsufficientPermissions.code,
                "deficiency": deficiency.as_dict(),
            },
        )
        self._log_state(session_id, action_type, ActionState.DENIED)
        return ActionOutcome(
            state=ActionState.DENIED,
            message=message,
            deficiency=deficiency,
            error_code=InsufficientPermissions.code,
            turn=turn,
        )

    def _fail(
        self,
        session_id: str,
        state: str,
        message: str,
        *,
        error_code: str,
        extra: dict[str, Any] | None = None,
    ) -> ActionOutcome:
        metadata: dict[str, Any] = {"error": error_code}
        metadata.update(extra or {})
        turn = self._reply(session_id, message, TurnType.ERROR, metadata)
        logger.info("session=%s state=%s error=%s", session_id, state, error_code)
        return ActionOutcome(state=state, message=message, error_code=error_code, turn=turn)

    def _reply(
        self, session_id: str, content: str, turn_type: str, metadata: dict[str, Any]
    ) -> ConversationTurn:
        turn = ConversationTurn(
            role=domain.ROLE_ASSISTANT,
            content=content,
            turn_type=turn_type,
            metadata=metadata,
        )
        return self.bridge.append_turn(session_id, turn)

    def _remember_denied(self, session_id: str, attempt: _DeniedAttempt) -> None:
        with self._lock:
            self._track(self._denied, session_id, attempt)

    def _retire_siblings(self, session_id: str, candidate_id: str) -> None:
        # The confirmed entry stays so a repeat confirm reads as a duplicate.
        with self._lock:
            current = self._candidates.get(session_id)
            if current is not None and candidate_id in current:
                self._candidates[session_id] = {candidate_id: current[candidate_id]}

    def _track(self, table: OrderedDict, session_id: str, value: Any) -> None:
        # Caller holds self._lock.
        table[session_id] = value
        table.move_to_end(session_id)
        while len(table) > self._max_tracked:
            evicted, _ = table.popitem(last=False)
            logger.info("session=%s evicted from orchestrator tracking", evicted)

    def _context_texts(self, session_id: str) -> list[str]:
        return [turn.content for turn in self.bridge.recent_turns(session_id, _CONTEXT_TURNS)]

    def _now(self) -> datetime | None:
        return self._clock() if self._clock is not None else None

    @staticmethod
    def _log_state(session_id: str, action_type: str, state: str) -> None:
        logger.info("session=%s action=%s state=%s", session_id, action_type, state)


def validate_meeting_payload(payload: dict[str, Any]) -> None:
    title = payload.get("title")
    if title is not None and not isinstance(title, str):
        raise ValueError("Meeting title must be a string.")
    start = _parse_iso(payload.get("start"))
    end = _parse_iso(payload.get("end"))
    if start is None:
        raise ValueError("Meeting start time is invalid.")
    if end is None:
        raise ValueError("Meeting end time is invalid.")
    if (start.tzinfo is None) != (end.tzinfo is None):
        raise ValueError("Meeting start and end must both include a timezone.")
    if end <= start:
        raise ValueError("Meeting end time must be after start time.")


def _parse_iso(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _merge_schedule(payload: dict[str, Any], resolution: ScheduleResolution) -> dict[str, Any]:
    merged = dict(payload)
    merged["start"] = resolution.start.isoformat()
    merged["end"] = resolution.end.isoformat()
    if not str(merged.get("title") or "").strip():
        merged["title"] = resolution.title
    return merged


def _with_schedule(candidate: SuggestedAction, payload: dict[str, Any]) -> SuggestedAction:
    merged = dict(candidate.payload)
    merged["start"] = payload["start"]
    merged["end"] = payload["end"]
    if not str(merged.get("title") or "").strip() and payload.get("title"):
        merged["title"] = payload["title"]
    return SuggestedAction(
        candidate_id=candidate.candidate_id,
        type=candidate.type,
        title=candidate.title,
        payload=merged,
    )


def _suggestions_text(candidates: tuple[SuggestedAction, ...]) -> str:
    if len(candidates) == 1:
        return f"Here's a suggestion: {candidates[0].title}. Confirm to go ahead."
    lines = ["Here are some suggestions. Confirm the one you want:"]
    lines.extend(f"- {candidate.title}" for candidate in candidates)
    return "\n".join(lines)
