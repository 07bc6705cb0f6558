from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import logging
import threading

import requests

from .google_oauth import GoogleOAuthService, GoogleTokenExchange, split_scopes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredCredential:
    access_token: str
    refresh_token: str | None
    scopes: frozenset[str]
    expires_at: datetime | None


class CredentialStore:
    """In-process Google credentials keyed by principal id."""

    def __init__(
        self, oauth: GoogleOAuthService | None = None, *, expiry_grace_seconds: int = 30
    ) -> None:
        self._oauth = oauth
        self._grace = timedelta(seconds=max(0, expiry_grace_seconds))
        self._lock = threading.Lock()
        self._credentials: dict[str, StoredCredential] = {}

    def save_exchange(self, principal_id: str, exchange: GoogleTokenExchange) -> StoredCredential:
        scopes = split_scopes(exchange.scope)
        if not scopes and self._oauth is not None:
            scopes = self._oauth.fetch_token_scopes(exchange.access_token)
        with self._lock:
            existing = self._credentials.get(principal_id)
            credential = StoredCredential(
                access_token=exchange.access_token,
                refresh_token=exchange.refresh_token
                or (existing.refresh_token if existing else None),
                scopes=frozenset(scopes),
                expires_at=_expires_at(exchange.expires_in),
            )
            self._credentials[principal_id] = credential
        logger.info("Stored Google credential for principal %s", principal_id)
        return credential

    def get(self, principal_id: str) -> StoredCredential | None:
        with self._lock:
            return self._credentials.get(principal_id)

    def granted_scopes(self, principal_id: str) -> list[str] | None:
        credential = self.get(principal_id)
        if credential is None:
            return None
        return sorted(credential.scopes)

    def access_token(self, principal_id: str) -> str | None:
        credential = self.get(principal_id)
        if credential is None:
            return None
        cutoff = datetime.now(timezone.utc) + self._grace
        if credential.expires_at is None or credential.expires_at > cutoff:
            return credential.access_token
        if not credential.refresh_token or self._oauth is None:
            logger.info("Google credential for %s expired without refresh token", principal_id)
            return None
        try:
            refreshed = self._oauth.refresh_access_token(credential.refresh_token)
        except (RuntimeError, requests.RequestException) as exc:
            logger.warning("Google token refresh failed for %s: %s", principal_id, exc)
            return None
        updated = replace(
            credential,
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token or credential.refresh_token,
            scopes=frozenset(split_scopes(refreshed.scope)) or credential.scopes,
            expires_at=_expires_at(refreshed.expires_in),
        )
        with self._lock:
            self._credentials[principal_id] = updated
        return updated.access_token

    def disconnect(self, principal_id: str) -> bool:
        with self._lock:
            return self._credentials.pop(principal_id, None) is not None


def _expires_at(expires_in: int | None) -> datetime | None:
    if isinstance(expires_in, int) and expires_in > 0:
        return datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return None
