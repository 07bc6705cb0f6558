from .credentials import CredentialStore
from .datetime_resolver import DateTimeResolver
from .events import PermissionUpdates
from .google_oauth import GoogleOAuthService
from .intent_capability import IntentCapability, LlmIntentCapability
from .permission_guard import PermissionGuard
from .reauth import CallbackSurface, ReauthCoordinator
from .session_bridge import SessionBridge
from .session_store import HttpSessionStore, SessionStore

__all__ = [
    "CallbackSurface",
    "CredentialStore",
    "DateTimeResolver",
    "GoogleOAuthService",
    "HttpSessionStore",
    "IntentCapability",
    "LlmIntentCapability",
    "PermissionGuard",
    "PermissionUpdates",
    "ReauthCoordinator",
    "SessionBridge",
    "SessionStore",
    "ActionOrchestrator",
    "ActionOutcome",
]


def __getattr__(name: str):
    if name in {"ActionOrchestrator", "ActionOutcome"}:
        from .orchestrator import ActionOrchestrator, ActionOutcome

        return {
            "ActionOrchestrator": ActionOrchestrator,
            "ActionOutcome": ActionOutcome,
        }[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
