from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable
from urllib.parse import parse_qs, urlencode

import requests

from .token_security import redact_sensitive_text


@dataclass(frozen=True)
class GoogleTokenExchange:
    access_token: str
    refresh_token: str | None
    token_type: str | None
    scope: str | None
    expires_in: int | None


class GoogleOAuthService:
    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
        timeout_seconds: int = 8,
    ) -> None:
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.redirect_uri = (redirect_uri or "").strip()
        self.timeout_seconds = max(1, timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def build_authorization_url(self, scopes: Iterable[str], state: str) -> str:
        self._ensure_configured()
        requested = ["openid", "email"]
        for scope in scopes:
            if scope and scope not in requested:
                requested.append(scope)
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": " ".join(requested),
                "access_type": "offline",
                "include_granted_scopes": "true",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{self.AUTHORIZE_URL}?{query}"

    def exchange_code(self, code: str, code_verifier: str | None = None) -> GoogleTokenExchange:
        self._ensure_configured()
        body = {
            "code": code.strip(),
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            body["code_verifier"] = code_verifier.strip()
        return self._token_request(body, action="token exchange")

    def refresh_access_token(self, refresh_token: str) -> GoogleTokenExchange:
        self._ensure_configured()
        body = {
            "refresh_token": refresh_token.strip(),
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
        }
        return self._token_request(body, action="refresh")

    def fetch_token_scopes(self, access_token: str) -> list[str]:
        response = requests.get(
            self.TOKENINFO_URL,
            params={"access_token": access_token},
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            raise RuntimeError(
                "Google tokeninfo fetch failed: "
                f"HTTP {response.status_code} {redact_sensitive_text(response.text.strip())}"
            )
        payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError("Google tokeninfo returned unexpected payload.")
        return split_scopes(payload.get("scope"))

    def _token_request(self, body: dict[str, str], *, action: str) -> GoogleTokenExchange:
        response = requests.post(
            self.TOKEN_URL,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            detail = _extract_google_error(response)
            raise RuntimeError(f"Google {action} failed: {detail}")

        payload = response.json()
        if not isinstance(payload, dict):
            raise RuntimeError(f"Google {action} returned unexpected payload.")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise RuntimeError(f"Google {action} missing access_token.")

        expires_in_raw = payload.get("expires_in")
        expires_in: int | None = None
        if isinstance(expires_in_raw, int):
            expires_in = expires_in_raw
        elif isinstance(expires_in_raw, str) and expires_in_raw.isdigit():
            expires_in = int(expires_in_raw)

        return GoogleTokenExchange(
            access_token=access_token.strip(),
            refresh_token=_opt_str(payload.get("refresh_token")),
            token_type=_opt_str(payload.get("token_type")),
            scope=_opt_str(payload.get("scope")),
            expires_in=expires_in,
        )

    def _ensure_configured(self) -> None:
        if not self.is_configured():
            raise RuntimeError(
                "Google OAuth is not configured. Set GOOGLE_CLIENT_ID, "
                "GOOGLE_CLIENT_SECRET, and GOOGLE_REDIRECT_URI."
            )


def split_scopes(raw: Any) -> list[str]:
    if not isinstance(raw, str):
        return []
    return [part for part in raw.replace(",", " ").split() if part]


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _extract_google_error(response: requests.Response) -> str:
    text = redact_sensitive_text(response.text.strip())
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        desc = payload.get("error_description")
        if isinstance(err, str) and isinstance(desc, str):
            return f"{err}: {desc}"
        if isinstance(err, str):
            return err
    if not text:
        return f"HTTP {response.status_code}"
    # Some token errors come back form-encoded.
    if "=" in text and "&" in text:
        parsed = parse_qs(text, keep_blank_values=True)
        err = parsed.get("error", [""])[0]
        desc = parsed.get("error_description", [""])[0]
        if err and desc:
            return f"{err}: {desc}"
    return text
