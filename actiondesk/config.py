import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=False)


def _as_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _as_float(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    llm_provider: str
    llm_model: str
    llm_api_key: str | None
    llm_api_base_url: str | None
    llm_timeout_seconds: int
    llm_enabled: bool
    session_store_api_base_url: str | None
    session_store_api_key: str | None
    session_store_timeout_seconds: int
    google_client_id: str | None
    google_client_secret: str | None
    google_redirect_uri: str | None
    google_oauth_timeout_seconds: int
    google_api_timeout_seconds: int
    client_origin: str
    reauth_base_url: str
    reauth_poll_interval_seconds: float
    default_timezone: str
    max_tracked_sessions: int
    meeting_default_duration_minutes: int
    log_level: str


def load_settings() -> Settings:
    return Settings(
        llm_provider=os.getenv("ACTIONDESK_LLM_PROVIDER", "groq").strip().lower(),
        llm_model=(
            os.getenv("ACTIONDESK_LLM_MODEL")
            or os.getenv("GROQ_CHAT_MODEL")
            or "llama-3.1-8b-instant"
        ),
        llm_api_key=(
            os.getenv("ACTIONDESK_LLM_API_KEY") or os.getenv("GROQ_API_KEY") or None
        ),
        llm_api_base_url=(os.getenv("ACTIONDESK_LLM_API_BASE_URL") or None),
        llm_timeout_seconds=_as_int(os.getenv("ACTIONDESK_LLM_TIMEOUT_SECONDS"), 10),
        llm_enabled=_as_bool(os.getenv("ACTIONDESK_LLM_ENABLED"), True),
        session_store_api_base_url=(os.getenv("SESSION_STORE_API_BASE_URL") or None),
        session_store_api_key=(os.getenv("SESSION_STORE_API_KEY") or None),
        session_store_timeout_seconds=_as_int(
            os.getenv("SESSION_STORE_TIMEOUT_SECONDS"), 8
        ),
        google_client_id=(os.getenv("GOOGLE_CLIENT_ID") or None),
        google_client_secret=(os.getenv("GOOGLE_CLIENT_SECRET") or None),
        google_redirect_uri=(os.getenv("GOOGLE_REDIRECT_URI") or None),
        google_oauth_timeout_seconds=_as_int(
            os.getenv("GOOGLE_OAUTH_TIMEOUT_SECONDS"), 8
        ),
        google_api_timeout_seconds=_as_int(os.getenv("GOOGLE_API_TIMEOUT_SECONDS"), 8),
        client_origin=os.getenv("CLIENT_ORIGIN", "http://localhost:5173").rstrip("/"),
        reauth_base_url=os.getenv("REAUTH_BASE_URL", "/v1/auth/reauth"),
        reauth_poll_interval_seconds=max(
            0.05, _as_float(os.getenv("REAUTH_POLL_INTERVAL_SECONDS"), 1.0)
        ),
        default_timezone=os.getenv("ACTIONDESK_TIMEZONE", "UTC").strip() or "UTC",
        max_tracked_sessions=max(1, _as_int(os.getenv("ACTIONDESK_MAX_SESSIONS"), 1000)),
        meeting_default_duration_minutes=max(
            5,
            min(480, _as_int(os.getenv("MEETING_DEFAULT_DURATION_MINUTES"), 30)),
        ),
        log_level=os.getenv("ACTIONDESK_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


settings = load_settings()
