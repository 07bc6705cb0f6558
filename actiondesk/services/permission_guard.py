from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Callable, Iterable, Union
from urllib.parse import quote

from actiondesk import domain
from actiondesk.domain import PermissionDeficiency

from .events import PermissionUpdates

logger = logging.getLogger(__name__)

ScopeLoader = Callable[[str], "Iterable[str] | None"]

GMAIL_READ = "gmail_read"
GMAIL_SEND = "gmail_send"
GMAIL_COMPOSE = "gmail_compose"
GMAIL_MODIFY = "gmail_modify"
CALENDAR = "calendar"
TASKS = "tasks"

ALL_SCOPE_IDS = (GMAIL_READ, GMAIL_SEND, GMAIL_COMPOSE, GMAIL_MODIFY, CALENDAR, TASKS)

# Reply, forward and draft read the original message before writing.
ACTION_SCOPES: dict[str, frozenset[str]] = {
    domain.MARK_READ: frozenset({GMAIL_MODIFY}),
    domain.DELETE: frozenset({GMAIL_MODIFY}),
    domain.REPLY: frozenset({GMAIL_READ, GMAIL_SEND}),
    domain.FORWARD: frozenset({GMAIL_READ, GMAIL_SEND}),
    domain.DRAFT_REPLY: frozenset({GMAIL_READ, GMAIL_COMPOSE}),
    domain.CREATE_MEETING: frozenset({CALENDAR}),
    domain.CREATE_TASK: frozenset({TASKS}),
}

_GMAIL_FULL = "https://mail.google.com/"
_GOOGLE_API = "https://www.googleapis.com/auth"

SCOPE_GRANTS: dict[str, frozenset[str]] = {
    GMAIL_READ: frozenset(
        {_GMAIL_FULL, f"{_GOOGLE_API}/gmail.readonly", f"{_GOOGLE_API}/gmail.modify"}
    ),
    GMAIL_SEND: frozenset({_GMAIL_FULL, f"{_GOOGLE_API}/gmail.send"}),
    GMAIL_COMPOSE: frozenset({_GMAIL_FULL, f"{_GOOGLE_API}/gmail.compose"}),
    GMAIL_MODIFY: frozenset({_GMAIL_FULL, f"{_GOOGLE_API}/gmail.modify"}),
    CALENDAR: frozenset({f"{_GOOGLE_API}/calendar", f"{_GOOGLE_API}/calendar.events"}),
    TASKS: frozenset({f"{_GOOGLE_API}/tasks"}),
}

# Scope requested when reauthorizing for a given id.
REQUEST_SCOPES: dict[str, str] = {
    GMAIL_READ: f"{_GOOGLE_API}/gmail.readonly",
    GMAIL_SEND: f"{_GOOGLE_API}/gmail.send",
    GMAIL_COMPOSE: f"{_GOOGLE_API}/gmail.compose",
    GMAIL_MODIFY: f"{_GOOGLE_API}/gmail.modify",
    CALENDAR: f"{_GOOGLE_API}/calendar.events",
    TASKS: f"{_GOOGLE_API}/tasks",
}

SCOPE_DISPLAY_NAMES = {
    GMAIL_READ: "Gmail Reading",
    GMAIL_SEND: "Email Sending",
    GMAIL_COMPOSE: "Email Drafting",
    GMAIL_MODIFY: "Email Management",
    CALENDAR: "Calendar Access",
    TASKS: "Task Management",
}

SCOPE_DESCRIPTIONS = {
    GMAIL_READ: "Read your emails and labels to show unread messages and summaries",
    GMAIL_SEND: "Send replies and forwarded emails on your behalf",
    GMAIL_COMPOSE: "Save reply drafts in your mailbox without sending them",
    GMAIL_MODIFY: "Mark emails as read, delete emails, and manage labels",
    CALENDAR: "Create calendar events and meetings from email requests",
    TASKS: "Create tasks from emails and manage your to-do list",
}


@dataclass(frozen=True)
class Authorized:
    action_type: str
    required_scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class Deficient:
    action_type: str
    deficiency: PermissionDeficiency


GuardDecision = Union[Authorized, Deficient]


def display_name(scope_id: str) -> str:
    name = SCOPE_DISPLAY_NAMES.get(scope_id)
    if name:
        return name
    return scope_id.replace("_", " ").title()


def required_scopes_for(action_type: str) -> frozenset[str]:
    return ACTION_SCOPES.get((action_type or "").strip().lower(), frozenset())


def scope_ids_from_grants(granted: Iterable[str] | None) -> frozenset[str]:
    raw = {str(item).strip() for item in (granted or []) if str(item).strip()}
    out = set()
    for scope_id, grants in SCOPE_GRANTS.items():
        if scope_id in raw or raw & grants:
            out.add(scope_id)
    return frozenset(out)


class PermissionGuard:
    def __init__(
        self,
        scope_loader: ScopeLoader,
        *,
        reauth_base_url: str = "/v1/auth/reauth",
        updates: PermissionUpdates | None = None,
    ) -> None:
        self._scope_loader = scope_loader
        self._reauth_base_url = reauth_base_url
        self._lock = threading.Lock()
        self._cache: dict[str, frozenset[str]] = {}
        self._unsubscribe = updates.subscribe(self.invalidate) if updates is not None else None

    def authorize(self, principal_id: str, action_type: str) -> GuardDecision:
        required = required_scopes_for(action_type)
        if not required:
            return Authorized(action_type=action_type)
        granted = self.granted_scope_ids(principal_id)
        missing = required - granted
        if missing:
            logger.info(
                "Principal %s lacks %s for %s",
                principal_id,
                ",".join(sorted(missing)),
                action_type,
            )
            return Deficient(action_type=action_type, deficiency=self._describe(missing))
        return Authorized(action_type=action_type, required_scopes=tuple(sorted(required)))

    def deficiency_for(self, action_type: str) -> PermissionDeficiency:
        required = required_scopes_for(action_type) or frozenset({GMAIL_READ})
        return self._describe(required)

    def granted_scope_ids(self, principal_id: str) -> frozenset[str]:
        with self._lock:
            cached = self._cache.get(principal_id)
        if cached is not None:
            return cached
        try:
            loaded = scope_ids_from_grants(self._scope_loader(principal_id))
        except RuntimeError as exc:
            logger.warning("Scope lookup failed for principal %s: %s", principal_id, exc)
            return frozenset()
        with self._lock:
            self._cache[principal_id] = loaded
        return loaded

    def invalidate(self, principal_id: str | None = None) -> None:
        with self._lock:
            if principal_id is None:
                self._cache.clear()
            else:
                self._cache.pop(principal_id, None)

    def permission_status(self, principal_id: str) -> dict[str, object]:
        granted = self.granted_scope_ids(principal_id)
        missing = [scope_id for scope_id in ALL_SCOPE_IDS if scope_id not in granted]
        return {
            "granted": [scope_id for scope_id in ALL_SCOPE_IDS if scope_id in granted],
            "missing": missing,
            "has_all_permissions": not missing,
            "reauth_endpoint": self.reauth_endpoint(missing) if missing else None,
            "permissions": [
                {
                    "scope": scope_id,
                    "name": display_name(scope_id),
                    "description": SCOPE_DESCRIPTIONS.get(
                        scope_id, "Required for full app functionality"
                    ),
                    "granted": scope_id in granted,
                }
                for scope_id in ALL_SCOPE_IDS
            ],
        }

    def reauth_endpoint(self, scope_ids: Iterable[str]) -> str:
        joined = ",".join(sorted(scope_ids))
        separator = "&" if "?" in self._reauth_base_url else "?"
        return f"{self._reauth_base_url}{separator}scope={quote(joined, safe=',')}"

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _describe(self, missing: Iterable[str]) -> PermissionDeficiency:
        ordered = tuple(sorted(missing))
        label = " and ".join(display_name(scope_id) for scope_id in ordered)
        return PermissionDeficiency(
            missing_scopes=ordered,
            reauth_endpoint=self.reauth_endpoint(ordered),
            required_permission_label=label,
        )
