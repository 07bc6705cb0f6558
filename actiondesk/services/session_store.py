from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import requests

from actiondesk.domain import ConversationTurn, utc_now

from .token_security import redact_sensitive_text


class SessionStore(ABC):
    @abstractmethod
    def create_session(self, title: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def append_turn(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        turn_type: str,
        metadata: dict[str, Any],
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_turns(self, session_id: str) -> list[ConversationTurn]:
        raise NotImplementedError


class HttpSessionStore(SessionStore):
    def __init__(
        self, *, base_url: str, api_key: str | None, timeout_seconds: int = 8
    ) -> None:
        self._base_url = (base_url or "").strip().rstrip("/")
        if not self._base_url:
            raise RuntimeError("SESSION_STORE_API_BASE_URL is required.")
        self._api_key = (api_key or "").strip() or None
        self._timeout = max(1, timeout_seconds)

    def create_session(self, title: str) -> str:
        response = requests.post(
            self._url("/api/chat/sessions"),
            headers=self._headers(),
            json={"title": title},
            timeout=self._timeout,
        )
        if not response.ok:
            raise RuntimeError(
                f"Session create failed ({response.status_code}): {self._error_message(response)}"
            )
        payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError("Session create returned unexpected payload.")
        session = payload.get("session") if isinstance(payload.get("session"), dict) else payload
        session_id = session.get("id") or session.get("session_id")
        if not isinstance(session_id, (str, int)) or not str(session_id).strip():
            raise RuntimeError("Session create missing id.")
        return str(session_id).strip()

    def append_turn(
        self,
        session_id: str,
        *,
        role: str,
        content: str,
        turn_type: str,
        metadata: dict[str, Any],
    ) -> None:
        response = requests.post(
            self._url("/api/chat/messages"),
            headers=self._headers(),
            json={
                "session_id": session_id,
                "role": role,
                "content": content,
                "message_type": turn_type,
                "metadata": metadata or {},
            },
            timeout=self._timeout,
        )
        if not response.ok:
            raise RuntimeError(
                f"Failed to persist turn ({response.status_code}): {self._error_message(response)}"
            )

    def list_turns(self, session_id: str) -> list[ConversationTurn]:
        response = requests.get(
            self._url(f"/api/chat/sessions/{session_id}"),
            headers=self._headers(),
            timeout=self._timeout,
        )
        if not response.ok:
            raise RuntimeError(
                f"Session read failed ({response.status_code}): {self._error_message(response)}"
            )
        parsed = response.json()
        if not isinstance(parsed, dict):
            return []
        rows = parsed.get("messages")
        if not isinstance(rows, list):
            return []
        out: list[ConversationTurn] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            role = row.get("role")
            content = row.get("content")
            if not isinstance(role, str) or not isinstance(content, str):
                continue
            metadata = row.get("metadata")
            out.append(
                ConversationTurn(
                    role=role,
                    content=content,
                    turn_type=str(row.get("message_type") or row.get("type") or "chat_response"),
                    metadata=metadata if isinstance(metadata, dict) else {},
                    timestamp=_parse_timestamp(row.get("created_at")),
                )
            )
        return out

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        text = redact_sensitive_text(response.text.strip())
        if not text:
            return "request failed"
        return text[:500]


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return utc_now()
        if parsed.tzinfo is not None:
            return parsed
    return utc_now()
