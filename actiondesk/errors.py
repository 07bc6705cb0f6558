from __future__ import annotations


class ActionError(Exception):
    code = "action_failed"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class InsufficientPermissions(ActionError):
    code = "insufficient_permissions"


class ProviderNotConnected(ActionError):
    code = "google_not_connected"


class ExecuteFailed(ActionError):
    code = "action_failed"


class DuplicateConfirm(ActionError):
    code = "duplicate_confirm"


class CapabilityError(ActionError):
    code = "request_failed"


class SessionNotFound(LookupError):
    pass
