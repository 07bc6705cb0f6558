from __future__ import annotations

import base64
import logging
import re
from email.message import EmailMessage
from email.utils import formatdate
from typing import Any, Callable

import requests

from actiondesk import domain
from actiondesk.errors import ExecuteFailed, InsufficientPermissions, ProviderNotConnected
from actiondesk.services.token_security import redact_sensitive_text

from .base import ActionProvider, ProviderResult

logger = logging.getLogger(__name__)

TokenResolver = Callable[[str], "str | None"]


class GoogleWorkspaceProvider(ActionProvider):
    name = "google_workspace"
    GMAIL_MESSAGES_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages"
    GMAIL_DRAFTS_URL = "https://gmail.googleapis.com/gmail/v1/users/me/drafts"
    CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
    TASKS_URL = "https://tasks.googleapis.com/tasks/v1/lists/@default/tasks"

    def __init__(self, token_resolver: TokenResolver, timeout_seconds: int = 8) -> None:
        self._token_resolver = token_resolver
        self.timeout_seconds = max(1, int(timeout_seconds))

    def execute(
        self,
        *,
        principal_id: str,
        subject_id: str | None,
        action_type: str,
        payload: dict[str, Any],
    ) -> ProviderResult:
        access_token = self._token_resolver(principal_id)
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderNotConnected(
                "Google account is not connected. Please connect Google first."
            )
        token = access_token.strip()
        action = (action_type or "").strip().lower()
        if action == domain.MARK_READ:
            return self._mark_read(token, _require_subject(subject_id, action))
        if action == domain.DELETE:
            return self._trash(token, _require_subject(subject_id, action))
        if action == domain.REPLY:
            return self._reply(token, _require_subject(subject_id, action), payload)
        if action == domain.DRAFT_REPLY:
            return self._draft_reply(token, _require_subject(subject_id, action), payload)
        if action == domain.FORWARD:
            return self._forward(token, _require_subject(subject_id, action), payload)
        if action == domain.CREATE_TASK:
            return self._create_task(token, payload)
        if action == domain.CREATE_MEETING:
            return self._create_event(token, payload)
        raise ExecuteFailed(f"Unsupported action '{action_type}'.")

    def _mark_read(self, token: str, message_id: str) -> ProviderResult:
        data = self._request(
            "POST",
            f"{self.GMAIL_MESSAGES_URL}/{message_id}/modify",
            token,
            service_name="Gmail",
            body={"removeLabelIds": ["UNREAD"]},
        )
        return ProviderResult(
            action_type=domain.MARK_READ,
            summary="Marked the email as read.",
            url=_gmail_thread_url(data.get("threadId")),
            data={"id": data.get("id"), "labelIds": data.get("labelIds", [])},
        )

    def _trash(self, token: str, message_id: str) -> ProviderResult:
        data = self._request(
            "POST",
            f"{self.GMAIL_MESSAGES_URL}/{message_id}/trash",
            token,
            service_name="Gmail",
        )
        return ProviderResult(
            action_type=domain.DELETE,
            summary="Moved the email to the trash.",
            data={"id": data.get("id")},
        )

    def _reply(self, token: str, message_id: str, payload: dict[str, Any]) -> ProviderResult:
        original = self._get_message_metadata(token, message_id)
        raw = _build_reply_rfc822_raw(
            to_addr=_extract_reply_address(original.get("from", "")),
            subject=original.get("subject", ""),
            body=str(payload.get("body") or ""),
            message_id=original.get("message-id", ""),
        )
        body: dict[str, object] = {"raw": raw}
        if original.get("thread_id"):
            body["threadId"] = original["thread_id"]
        data = self._request(
            "POST", f"{self.GMAIL_MESSAGES_URL}/send", token, service_name="Gmail", body=body
        )
        return ProviderResult(
            action_type=domain.REPLY,
            summary=f"Sent your reply to {original.get('from') or 'the sender'}.",
            url=_gmail_thread_url(data.get("threadId")),
            data={"id": data.get("id"), "threadId": data.get("threadId")},
        )

    def _draft_reply(
        self, token: str, message_id: str, payload: dict[str, Any]
    ) -> ProviderResult:
        original = self._get_message_metadata(token, message_id)
        message: dict[str, object] = {
            "raw": _build_reply_rfc822_raw(
                to_addr=_extract_reply_address(original.get("from", "")),
                subject=original.get("subject", ""),
                body=str(payload.get("body") or ""),
                message_id=original.get("message-id", ""),
            )
        }
        if original.get("thread_id"):
            message["threadId"] = original["thread_id"]
        data = self._request(
            "POST", self.GMAIL_DRAFTS_URL, token, service_name="Gmail", body={"message": message}
        )
        return ProviderResult(
            action_type=domain.DRAFT_REPLY,
            summary="Saved your reply as a Gmail draft. It has not been sent.",
            url="https://mail.google.com/mail/u/0/#drafts",
            data={"draft_id": data.get("id")},
        )

    def _forward(self, token: str, message_id: str, payload: dict[str, Any]) -> ProviderResult:
        data = self._request(
            "GET",
            f"{self.GMAIL_MESSAGES_URL}/{message_id}",
            token,
            service_name="Gmail",
            params={"format": "full"},
        )
        headers = _headers_to_map(data)
        original_text = _extract_message_text(data)
        note = str(payload.get("note") or "").strip()
        to_addr = str(payload.get("to") or "").strip()
        body_lines = [note, ""] if note else []
        body_lines.extend(["Forwarded message:", "", original_text])
        msg = EmailMessage()
        msg["To"] = to_addr
        msg["Subject"] = _ensure_forward_subject(headers.get("subject", ""))
        msg["Date"] = formatdate(localtime=True)
        msg.set_content("\n".join(body_lines))
        raw = base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")
        sent = self._request(
            "POST",
            f"{self.GMAIL_MESSAGES_URL}/send",
            token,
            service_name="Gmail",
            body={"raw": raw},
        )
        return ProviderResult(
            action_type=domain.FORWARD,
            summary=f"Forwarded the email to {to_addr}.",
            data={"id": sent.get("id")},
        )

    def _create_task(self, token: str, payload: dict[str, Any]) -> ProviderResult:
        body: dict[str, object] = {
            "title": str(payload.get("title") or "").strip(),
            "notes": str(payload.get("notes") or ""),
        }
        due = str(payload.get("due") or "").strip()
        if due:
            body["due"] = due
        data = self._request("POST", self.TASKS_URL, token, service_name="Google Tasks", body=body)
        return ProviderResult(
            action_type=domain.CREATE_TASK,
            summary=f"Created task \"{data.get('title') or body['title']}\".",
            url=str(data.get("webViewLink") or "https://tasks.google.com/"),
            data={"id": data.get("id")},
        )

    def _create_event(self, token: str, payload: dict[str, Any]) -> ProviderResult:
        body: dict[str, object] = {
            "summary": str(payload.get("title") or payload.get("summary") or "Meeting").strip(),
            "description": str(payload.get("description") or ""),
            "start": {"dateTime": str(payload.get("start") or "")},
            "end": {"dateTime": str(payload.get("end") or "")},
        }
        location = str(payload.get("location") or "").strip()
        if location:
            body["location"] = location
        attendees = payload.get("attendees")
        if isinstance(attendees, list):
            emails = [str(item).strip() for item in attendees if str(item).strip()]
            if emails:
                body["attendees"] = [{"email": email} for email in emails]
        data = self._request(
            "POST", self.CALENDAR_EVENTS_URL, token, service_name="Google Calendar", body=body
        )
        title = str(data.get("summary") or body["summary"]).strip()
        start = data.get("start") if isinstance(data.get("start"), dict) else body["start"]
        return ProviderResult(
            action_type=domain.CREATE_MEETING,
            summary=f"Scheduled \"{title}\" for {start.get('dateTime')}.",
            url=str(data.get("htmlLink") or "https://calendar.google.com/").strip(),
            data={"id": data.get("id"), "start": start, "end": data.get("end") or body["end"]},
        )

    def _get_message_metadata(self, token: str, message_id: str) -> dict[str, str]:
        data = self._request(
            "GET",
            f"{self.GMAIL_MESSAGES_URL}/{message_id}",
            token,
            service_name="Gmail",
            params=[
                ("format", "metadata"),
                ("metadataHeaders", "From"),
                ("metadataHeaders", "Subject"),
                ("metadataHeaders", "Message-ID"),
            ],
        )
        headers = _headers_to_map(data)
        headers["thread_id"] = str(data.get("threadId") or "")
        return headers

    def _request(
        self,
        method: str,
        url: str,
        token: str,
        *,
        service_name: str,
        body: dict[str, object] | None = None,
        params: object = None,
    ) -> dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }
        try:
            response = requests.request(
                method,
                url,
                headers=headers,
                json=body,
                params=params,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise ExecuteFailed(f"{service_name} request timed out.") from exc
        except requests.RequestException as exc:
            raise ExecuteFailed(
                f"{service_name} API failed: {redact_sensitive_text(str(exc))}"
            ) from exc

        if not response.ok:
            reason, message = _extract_google_api_error(response)
            logger.warning(
                "%s API %s %s failed with HTTP %s (%s)",
                service_name,
                method,
                url,
                response.status_code,
                reason or "no reason",
            )
            if response.status_code == 401:
                raise ProviderNotConnected(
                    f"{service_name} authorization expired. Please reconnect Google."
                )
            if response.status_code == 403 and reason in {
                "insufficientPermissions",
                "ACCESS_TOKEN_SCOPE_INSUFFICIENT",
                "forbidden",
            }:
                raise InsufficientPermissions(
                    f"{service_name} rejected the request: missing permission."
                )
            if response.status_code == 404:
                raise ExecuteFailed(f"{service_name} could not find the requested resource.")
            detail = f": {message}" if message else ""
            raise ExecuteFailed(f"{service_name} API failed ({response.status_code}){detail}.")

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExecuteFailed(f"{service_name} returned an unexpected payload.") from exc
        if not isinstance(payload, dict):
            raise ExecuteFailed(f"{service_name} returned an unexpected payload.")
        return payload


def _require_subject(subject_id: str | None, action_type: str) -> str:
    cleaned = (subject_id or "").strip()
    if not cleaned:
        raise ExecuteFailed(f"'{action_type}' needs an email to act on.")
    return cleaned


def _extract_google_api_error(response: requests.Response) -> tuple[str, str]:
    try:
        parsed = response.json()
    except ValueError:
        return "", redact_sensitive_text(response.text.strip())[:300]
    if not isinstance(parsed, dict):
        return "", ""
    nested = parsed.get("error")
    if not isinstance(nested, dict):
        return "", ""
    message = str(nested.get("message") or "").strip()
    reason = str(nested.get("status") or "").strip()
    errors = nested.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        reason = str(errors[0].get("reason") or reason).strip()
    return reason, redact_sensitive_text(message)


def _headers_to_map(message_payload: dict[str, Any]) -> dict[str, str]:
    payload = message_payload.get("payload")
    if not isinstance(payload, dict):
        return {}
    raw_headers = payload.get("headers", [])
    if not isinstance(raw_headers, list):
        return {}
    out: dict[str, str] = {}
    for row in raw_headers:
        if not isinstance(row, dict):
            continue
        key = str(row.get("name") or "").strip().lower()
        value = str(row.get("value") or "").strip()
        if key:
            out[key] = value
    return out


def _extract_message_text(message_payload: dict[str, Any]) -> str:
    payload = message_payload.get("payload")
    if not isinstance(payload, dict):
        return str(message_payload.get("snippet") or "")
    text = _walk_payload_for_text_part(payload)
    if text:
        return text
    body = payload.get("body")
    if isinstance(body, dict) and isinstance(body.get("data"), str):
        return _decode_base64url_to_text(body["data"])
    return str(message_payload.get("snippet") or "")


def _walk_payload_for_text_part(node: dict[str, Any]) -> str:
    mime_type = str(node.get("mimeType") or "").lower()
    body = node.get("body")
    if mime_type == "text/plain" and isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, str) and data.strip():
            return _decode_base64url_to_text(data)
    parts = node.get("parts")
    if not isinstance(parts, list):
        return ""
    for part in parts:
        if isinstance(part, dict):
            text = _walk_payload_for_text_part(part)
            if text:
                return text
    return ""


def _decode_base64url_to_text(raw: str) -> str:
    padded = raw + ("=" * (-len(raw) % 4))
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (ValueError, UnicodeEncodeError):
        return ""


def _build_reply_rfc822_raw(to_addr: str, subject: str, body: str, message_id: str) -> str:
    msg = EmailMessage()
    msg["To"] = to_addr
    msg["Subject"] = _ensure_reply_subject(subject)
    msg["Date"] = formatdate(localtime=True)
    if message_id:
        msg["In-Reply-To"] = message_id
        msg["References"] = message_id
    msg.set_content(body)
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")


def _ensure_reply_subject(subject: str) -> str:
    cleaned = (subject or "").strip()
    if not cleaned:
        return "Re: (no subject)"
    if cleaned.lower().startswith("re:"):
        return cleaned
    return f"Re: {cleaned}"


def _ensure_forward_subject(subject: str) -> str:
    cleaned = (subject or "").strip()
    if cleaned.lower().startswith("fwd:"):
        return cleaned
    return f"Fwd: {cleaned}" if cleaned else "Fwd: (no subject)"


def _extract_reply_address(from_header: str) -> str:
    match = re.search(r"<([^>]+)>", from_header or "")
    if match:
        return match.group(1).strip()
    return (from_header or "").strip()


def _gmail_thread_url(thread_id: object) -> str:
    if isinstance(thread_id, str) and thread_id.strip():
        return f"https://mail.google.com/mail/u/0/#inbox/{thread_id.strip()}"
    return "https://mail.google.com/"
