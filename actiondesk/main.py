from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, Callable, TypeVar
from urllib.parse import quote

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
import requests

from actiondesk.config import settings
from actiondesk.domain import ActionRequest, AmbiguousDateTime
from actiondesk.errors import SessionNotFound
from actiondesk.logging_config import configure_logging
from actiondesk.models import (
    ActionOutcomeResponse,
    ActionRequestPayload,
    CreateSessionRequest,
    DateTimeResolveRequest,
    DateTimeResolveResponse,
    FollowUpPayload,
    GoogleConnectionStatusResponse,
    ImportantMessagesRequest,
    ImportantMessagesResponse,
    PermissionStatusResponse,
    SessionResponse,
    TurnListResponse,
    TurnPayload,
    UserMessageRequest,
)
from actiondesk.providers import GoogleWorkspaceProvider, build_default_registry
from actiondesk.services.credentials import CredentialStore
from actiondesk.services.datetime_resolver import DateTimeResolver
from actiondesk.services.events import PermissionUpdates
from actiondesk.services.google_oauth import GoogleOAuthService
from actiondesk.services.intent_capability import LlmIntentCapability
from actiondesk.services.message_filters import select_important
from actiondesk.services.orchestrator import ActionOrchestrator, ActionOutcome
from actiondesk.services.permission_guard import REQUEST_SCOPES, PermissionGuard
from actiondesk.services.reauth import (
    STATUS_SUCCESS,
    CallbackSurface,
    ReauthCoordinator,
    ReauthOutcome,
)
from actiondesk.services.session_bridge import SessionBridge
from actiondesk.services.session_store import HttpSessionStore, SessionStore

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

T = TypeVar("T")


def _build_session_store() -> SessionStore | None:
    if not settings.session_store_api_base_url:
        logger.info("SESSION_STORE_API_BASE_URL not set, sessions stay in memory")
        return None
    return HttpSessionStore(
        base_url=settings.session_store_api_base_url,
        api_key=settings.session_store_api_key,
        timeout_seconds=settings.session_store_timeout_seconds,
    )


registry = build_default_registry()
permission_updates = PermissionUpdates()
google_oauth = GoogleOAuthService(
    client_id=settings.google_client_id,
    client_secret=settings.google_client_secret,
    redirect_uri=settings.google_redirect_uri,
    timeout_seconds=settings.google_oauth_timeout_seconds,
)
credentials = CredentialStore(google_oauth)
guard = PermissionGuard(
    credentials.granted_scopes,
    reauth_base_url=settings.reauth_base_url,
    updates=permission_updates,
)
capability = LlmIntentCapability(
    provider=settings.llm_provider,
    model=settings.llm_model,
    api_key=settings.llm_api_key,
    timeout_seconds=settings.llm_timeout_seconds,
    api_base_url=settings.llm_api_base_url,
    registry=registry,
)
resolver = DateTimeResolver(
    capability if settings.llm_enabled and settings.llm_api_key else None,
    timezone_name=settings.default_timezone,
    duration_minutes=settings.meeting_default_duration_minutes,
)
bridge = SessionBridge(_build_session_store(), max_sessions=settings.max_tracked_sessions)
orchestrator = ActionOrchestrator(
    bridge=bridge,
    guard=guard,
    capability=capability,
    provider=GoogleWorkspaceProvider(
        credentials.access_token, timeout_seconds=settings.google_api_timeout_seconds
    ),
    resolver=resolver,
    registry=registry,
    max_tracked_sessions=settings.max_tracked_sessions,
)
coordinator = ReauthCoordinator(
    CallbackSurface,
    poll_interval_seconds=settings.reauth_poll_interval_seconds,
    updates=permission_updates,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    coordinator.shutdown()


app = FastAPI(title="ActionDesk API", version="0.1.0", lifespan=lifespan)


def _principal(client_id: str | None) -> str:
    return (client_id or "").strip() or "anonymous"


def _call(func: Callable[..., T], *args: Any) -> T:
    try:
        return func(*args)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _outcome_response(outcome: ActionOutcome) -> ActionOutcomeResponse:
    return ActionOutcomeResponse(**outcome.as_dict())


def _on_reauth_complete(outcome: ReauthOutcome) -> None:
    if outcome.status != STATUS_SUCCESS:
        logger.info("Reauth %s ended with status %s", outcome.handle_id, outcome.status)
        return
    if not (outcome.session_id and outcome.principal_id):
        return
    if not orchestrator.has_denied_attempt(outcome.session_id):
        logger.info("Reauth %s succeeded with nothing to resume", outcome.handle_id)
        return
    orchestrator.resume_after_reauth(outcome.session_id, outcome.principal_id)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/sessions", response_model=SessionResponse)
def create_session(payload: CreateSessionRequest) -> SessionResponse:
    session_id = _call(bridge.create_session, payload.title)
    return SessionResponse(session_id=session_id, local_only=bridge.is_local(session_id))


@app.get("/v1/sessions/active", response_model=SessionResponse)
def active_session(x_client_id: str | None = Header(default=None)) -> SessionResponse:
    session_id = _call(bridge.active_session, _principal(x_client_id))
    return SessionResponse(session_id=session_id, local_only=bridge.is_local(session_id))


@app.get("/v1/sessions/{session_id}/turns", response_model=TurnListResponse)
def list_turns(session_id: str) -> TurnListResponse:
    turns = _call(bridge.list_turns, session_id)
    follow_up = _call(bridge.peek_follow_up, session_id)
    return TurnListResponse(
        session_id=session_id,
        turns=[TurnPayload(**turn.as_dict()) for turn in turns],
        awaiting_details=(
            FollowUpPayload(
                awaiting_action_type=follow_up.awaiting_action_type,
                subject_id=follow_up.subject_id,
                question=follow_up.question,
            )
            if follow_up is not None
            else None
        ),
    )


@app.post("/v1/sessions/{session_id}/messages", response_model=ActionOutcomeResponse)
def post_message(
    session_id: str,
    payload: UserMessageRequest,
    x_client_id: str | None = Header(default=None),
) -> ActionOutcomeResponse:
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message text is required.")
    outcome = _call(
        orchestrator.handle_user_message, session_id, _principal(x_client_id), text
    )
    return _outcome_response(outcome)


@app.post("/v1/sessions/{session_id}/actions", response_model=ActionOutcomeResponse)
def post_action(
    session_id: str,
    payload: ActionRequestPayload,
    x_client_id: str | None = Header(default=None),
) -> ActionOutcomeResponse:
    request = ActionRequest(
        action_type=payload.action_type.strip().lower(),
        subject_id=payload.subject_id,
        payload=payload.payload,
        origin_text=payload.origin_text,
    )
    outcome = _call(orchestrator.handle, session_id, _principal(x_client_id), request)
    return _outcome_response(outcome)


@app.post(
    "/v1/sessions/{session_id}/candidates/{candidate_id}/confirm",
    response_model=ActionOutcomeResponse,
)
def confirm_candidate(
    session_id: str,
    candidate_id: str,
    x_client_id: str | None = Header(default=None),
) -> ActionOutcomeResponse:
    outcome = _call(orchestrator.confirm, session_id, _principal(x_client_id), candidate_id)
    return _outcome_response(outcome)


@app.post(
    "/v1/sessions/{session_id}/datetime/resolve",
    response_model=DateTimeResolveResponse,
    responses={422: {"description": "The text does not name a concrete day and time."}},
)
def resolve_datetime(session_id: str, payload: DateTimeResolveRequest):
    recent = [turn.content for turn in _call(bridge.recent_turns, session_id, 10)]
    resolution = _call(resolver.resolve, payload.text, [*recent, *payload.context])
    if isinstance(resolution, AmbiguousDateTime):
        return JSONResponse(
            status_code=422,
            content={
                "error": resolution.code,
                "reason": resolution.reason,
                "question": resolution.question,
            },
        )
    return DateTimeResolveResponse(
        start=resolution.start.isoformat(),
        end=resolution.end.isoformat(),
        resolved_by=resolution.resolved_by,
        title=resolution.title,
    )


@app.get("/v1/auth/permissions", response_model=PermissionStatusResponse)
def permission_status(x_client_id: str | None = Header(default=None)) -> PermissionStatusResponse:
    status = _call(guard.permission_status, _principal(x_client_id))
    return PermissionStatusResponse(**status)


@app.get("/v1/auth/reauth")
def start_reauth(
    scope: str = Query(min_length=1, max_length=200),
    session_id: str | None = Query(default=None, max_length=200),
    x_client_id: str | None = Header(default=None),
) -> RedirectResponse:
    scope_ids = sorted({part.strip() for part in scope.split(",") if part.strip()})
    unknown = [scope_id for scope_id in scope_ids if scope_id not in REQUEST_SCOPES]
    if not scope_ids or unknown:
        raise HTTPException(status_code=400, detail=f"Unknown scope ids: {', '.join(unknown)}")
    if not google_oauth.is_configured():
        raise HTTPException(
            status_code=503,
            detail=(
                "Google OAuth is not configured. "
                "Set GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, and GOOGLE_REDIRECT_URI."
            ),
        )
    handle = coordinator.launch(
        guard.reauth_endpoint(scope_ids),
        principal_id=_principal(x_client_id),
        session_id=session_id,
    )
    coordinator.on_completion(handle, _on_reauth_complete)
    url = google_oauth.build_authorization_url(
        [REQUEST_SCOPES[scope_id] for scope_id in scope_ids], state=handle.handle_id
    )
    return RedirectResponse(url=url, status_code=307)


@app.get("/v1/auth/google/callback")
def google_callback(
    state: str = Query(min_length=1, max_length=200),
    code: str | None = Query(default=None, max_length=4096),
    error: str | None = Query(default=None, max_length=200),
) -> RedirectResponse:
    handle = coordinator.get_handle(state)
    if handle is None:
        raise HTTPException(status_code=400, detail="Unknown or expired authorization state.")
    surface = handle.surface
    if error or not code:
        if isinstance(surface, CallbackSurface):
            surface.abandon()
        reason = quote(error or "missing_code")
        return RedirectResponse(url=f"{settings.client_origin}/?reauth={reason}", status_code=303)
    try:
        exchange = google_oauth.exchange_code(code=code)
        credentials.save_exchange(handle.principal_id or "anonymous", exchange)
    except (RuntimeError, requests.RequestException) as exc:
        if isinstance(surface, CallbackSurface):
            surface.abandon()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    success_url = f"{settings.client_origin}/?reauth=success"
    if isinstance(surface, CallbackSurface):
        surface.complete(success_url)
    return RedirectResponse(url=success_url, status_code=303)


@app.get("/v1/auth/google/status", response_model=GoogleConnectionStatusResponse)
def google_status(x_client_id: str | None = Header(default=None)) -> GoogleConnectionStatusResponse:
    scopes = credentials.granted_scopes(_principal(x_client_id))
    if scopes is None:
        return GoogleConnectionStatusResponse(connected=False, scopes=[])
    return GoogleConnectionStatusResponse(connected=True, scopes=scopes)


@app.post("/v1/auth/google/disconnect")
def google_disconnect(x_client_id: str | None = Header(default=None)) -> dict[str, object]:
    principal_id = _principal(x_client_id)
    disconnected = credentials.disconnect(principal_id)
    permission_updates.publish(principal_id)
    return {"provider": "google", "disconnected": disconnected}


@app.post("/v1/messages/important", response_model=ImportantMessagesResponse)
def important_messages(payload: ImportantMessagesRequest) -> ImportantMessagesResponse:
    return ImportantMessagesResponse(messages=select_important(payload.messages))
