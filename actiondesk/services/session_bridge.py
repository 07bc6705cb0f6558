from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
import logging
import threading
from uuid import uuid4

import requests

from actiondesk import domain
from actiondesk.domain import ConversationTurn, PendingFollowUp, TurnType
from actiondesk.errors import SessionNotFound

from .session_store import SessionStore

logger = logging.getLogger(__name__)

GREETING = "Hi! I'm your assistant. How can I help today?"
LOCAL_PREFIX = "local-"
DEFAULT_TITLE = "New conversation"
DEFAULT_MAX_SESSIONS = 1000

_STORE_ERRORS = (RuntimeError, ValueError, requests.RequestException)


@dataclass
class _SessionState:
    session_id: str
    local_only: bool
    turns: list[ConversationTurn] = field(default_factory=list)
    follow_up: PendingFollowUp | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)


class SessionBridge:
    def __init__(
        self, store: SessionStore | None = None, *, max_sessions: int = DEFAULT_MAX_SESSIONS
    ) -> None:
        self._store = store
        self._max_sessions = max(1, int(max_sessions))
        self._lock = threading.Lock()
        # Least recently used first.
        self._sessions: OrderedDict[str, _SessionState] = OrderedDict()
        self._active: OrderedDict[str, str] = OrderedDict()

    def create_session(self, title: str | None = None) -> str:
        cleaned_title = (title or "").strip() or DEFAULT_TITLE
        if self._store is not None:
            try:
                session_id = self._store.create_session(cleaned_title)
            except _STORE_ERRORS as exc:
                logger.warning("Session store unavailable, using local transcript: %s", exc)
            else:
                with self._lock:
                    self._remember(_SessionState(session_id=session_id, local_only=False))
                logger.info("Created store-backed session %s", session_id)
                return session_id

        session_id = f"{LOCAL_PREFIX}{uuid4().hex}"
        state = _SessionState(session_id=session_id, local_only=True)
        state.turns.append(
            ConversationTurn(
                role=domain.ROLE_ASSISTANT,
                content=GREETING,
                turn_type=TurnType.GREETING,
            )
        )
        with self._lock:
            self._remember(state)
        logger.info("Created local-only session %s", session_id)
        return session_id

    def active_session(self, client_id: str) -> str:
        key = (client_id or "").strip() or "anonymous"
        with self._lock:
            existing = self._active.get(key)
            if existing is not None and self._is_live(existing):
                self._active.move_to_end(key)
                return existing
        session_id = self.create_session()
        with self._lock:
            # Another request for the same client may have won the race.
            winner = self._active.get(key)
            if winner is not None and winner != existing and self._is_live(winner):
                return winner
            self._active[key] = session_id
            self._active.move_to_end(key)
            while len(self._active) > self._max_sessions:
                self._active.popitem(last=False)
        return session_id

    def is_local(self, session_id: str) -> bool:
        return self._state(session_id).local_only

    def append_turn(self, session_id: str, turn: ConversationTurn) -> ConversationTurn:
        state = self._state(session_id)
        with state.lock:
            state.turns.append(turn)
        if not state.local_only and self._store is not None:
            self._persist(session_id, turn)
        return turn

    def list_turns(self, session_id: str) -> list[ConversationTurn]:
        state = self._state(session_id)
        if not state.local_only and self._store is not None:
            try:
                return self._store.list_turns(session_id)
            except _STORE_ERRORS as exc:
                logger.warning("Session store read failed for %s: %s", session_id, exc)
        with state.lock:
            return list(state.turns)

    def recent_turns(self, session_id: str, limit: int = 10) -> list[ConversationTurn]:
        state = self._state(session_id)
        if limit <= 0:
            return []
        with state.lock:
            return list(state.turns[-limit:])

    def set_follow_up(self, session_id: str, follow_up: PendingFollowUp) -> None:
        state = self._state(session_id)
        with state.lock:
            state.follow_up = follow_up

    def take_follow_up(self, session_id: str) -> PendingFollowUp | None:
        state = self._state(session_id)
        with state.lock:
            follow_up = state.follow_up
            state.follow_up = None
            return follow_up

    def peek_follow_up(self, session_id: str) -> PendingFollowUp | None:
        state = self._state(session_id)
        with state.lock:
            return state.follow_up

    def lock(self, session_id: str) -> threading.RLock:
        return self._state(session_id).lock

    def _persist(self, session_id: str, turn: ConversationTurn) -> None:
        for attempt in (1, 2):
            try:
                self._store.append_turn(
                    session_id,
                    role=turn.role,
                    content=turn.content,
                    turn_type=turn.turn_type,
                    metadata=dict(turn.metadata),
                )
                return
            except _STORE_ERRORS as exc:
                logger.warning(
                    "Persisting turn for session %s failed (attempt %s): %s",
                    session_id,
                    attempt,
                    exc,
                )

    def _state(self, session_id: str) -> _SessionState:
        key = (session_id or "").strip()
        with self._lock:
            state = self._sessions.get(key)
            if state is not None:
                self._sessions.move_to_end(key)
                return state
            if key and self._store is not None and not key.startswith(LOCAL_PREFIX):
                state = _SessionState(session_id=key, local_only=False)
                self._remember(state)
                return state
        raise SessionNotFound(f"Session '{session_id}' was not found.")

    def _is_live(self, session_id: str) -> bool:
        if session_id in self._sessions:
            return True
        return self._store is not None and not session_id.startswith(LOCAL_PREFIX)

    def _remember(self, state: _SessionState) -> None:
        # Caller holds self._lock.
        self._sessions[state.session_id] = state
        self._sessions.move_to_end(state.session_id)
        while len(self._sessions) > self._max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.info("Evicted least recently used session %s", evicted)
