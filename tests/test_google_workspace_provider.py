import base64
import unittest
from email import message_from_bytes
from unittest.mock import Mock, patch

import requests

from actiondesk import domain
from actiondesk.errors import ExecuteFailed, InsufficientPermissions, ProviderNotConnected
from actiondesk.providers.google_workspace import GoogleWorkspaceProvider


def _response(status_code: int, payload=None, text: str = "") -> Mock:
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    response.text = text
    return response


def _decode_raw(raw: str):
    padded = raw + ("=" * (-len(raw) % 4))
    return message_from_bytes(base64.urlsafe_b64decode(padded.encode("ascii")))


class GoogleWorkspaceProviderTests(unittest.TestCase):
    def setUp(self):
        self.provider = GoogleWorkspaceProvider(lambda principal_id: "token-abc")

    def _execute(self, action_type, payload=None, subject_id="msg-1"):
        return self.provider.execute(
            principal_id="user-1",
            subject_id=subject_id,
            action_type=action_type,
            payload=payload or {},
        )

    def test_missing_token_is_not_connected(self):
        provider = GoogleWorkspaceProvider(lambda principal_id: None)

        with patch("requests.request") as request_mock:
            with self.assertRaises(ProviderNotConnected):
                provider.execute(
                    principal_id="user-1",
                    subject_id="msg-1",
                    action_type=domain.MARK_READ,
                    payload={},
                )

        request_mock.assert_not_called()

    def test_mark_read_removes_unread_label(self):
        payload = {"id": "msg-1", "threadId": "t-1", "labelIds": ["INBOX"]}
        with patch("requests.request", return_value=_response(200, payload)) as request_mock:
            result = self._execute(domain.MARK_READ)

        method, url = request_mock.call_args.args
        self.assertEqual(method, "POST")
        self.assertTrue(url.endswith("/messages/msg-1/modify"))
        self.assertEqual(request_mock.call_args.kwargs["json"], {"removeLabelIds": ["UNREAD"]})
        self.assertEqual(
            request_mock.call_args.kwargs["headers"]["Authorization"], "Bearer token-abc"
        )
        self.assertEqual(result.data, {"id": "msg-1", "labelIds": ["INBOX"]})
        self.assertEqual(result.url, "https://mail.google.com/mail/u/0/#inbox/t-1")

    def test_direct_action_needs_subject(self):
        with patch("requests.request") as request_mock:
            with self.assertRaises(ExecuteFailed):
                self._execute(domain.DELETE, subject_id=" ")

        request_mock.assert_not_called()

    def test_reply_threads_into_original(self):
        metadata = {
            "threadId": "t-9",
            "payload": {
                "headers": [
                    {"name": "From", "value": "Ana <ana@example.com>"},
                    {"name": "Subject", "value": "Budget"},
                    {"name": "Message-ID", "value": "<abc@mail>"},
                ]
            },
        }
        responses = [_response(200, metadata), _response(200, {"id": "sent-1", "threadId": "t-9"})]
        with patch("requests.request", side_effect=responses) as request_mock:
            result = self._execute(domain.REPLY, {"body": "Sounds good."})

        send_body = request_mock.call_args_list[1].kwargs["json"]
        self.assertEqual(send_body["threadId"], "t-9")
        message = _decode_raw(send_body["raw"])
        self.assertEqual(message["To"], "ana@example.com")
        self.assertEqual(message["Subject"], "Re: Budget")
        self.assertEqual(message["In-Reply-To"], "<abc@mail>")
        self.assertIn("Ana", result.summary)

    def test_create_meeting_body(self):
        payload = {
            "title": "Sync",
            "start": "2026-10-15T15:00:00+00:00",
            "end": "2026-10-15T15:30:00+00:00",
            "attendees": ["ana@example.com", " "],
            "location": "Room 4",
        }
        event = {
            "id": "evt-1",
            "summary": "Sync",
            "htmlLink": "https://calendar.google.com/event?eid=1",
            "start": {"dateTime": "2026-10-15T15:00:00Z"},
        }
        with patch("requests.request", return_value=_response(200, event)) as request_mock:
            result = self._execute(domain.CREATE_MEETING, payload, subject_id=None)

        body = request_mock.call_args.kwargs["json"]
        self.assertEqual(body["summary"], "Sync")
        self.assertEqual(body["start"], {"dateTime": "2026-10-15T15:00:00+00:00"})
        self.assertEqual(body["attendees"], [{"email": "ana@example.com"}])
        self.assertEqual(body["location"], "Room 4")
        self.assertEqual(result.url, "https://calendar.google.com/event?eid=1")

    def test_create_task(self):
        with patch("requests.request", return_value=_response(200, {"id": "task-1"})) as request_mock:
            result = self._execute(domain.CREATE_TASK, {"title": "Send invoice"}, subject_id=None)

        self.assertIn("@default", request_mock.call_args.args[1])
        self.assertEqual(result.summary, 'Created task "Send invoice".')

    def test_unauthorized_is_not_connected(self):
        with patch("requests.request", return_value=_response(401, {"error": {"message": "bad"}})):
            with self.assertRaises(ProviderNotConnected):
                self._execute(domain.DELETE)

    def test_insufficient_scope_is_permission_error(self):
        error = {
            "error": {
                "code": 403,
                "message": "Request had insufficient authentication scopes.",
                "errors": [{"reason": "insufficientPermissions"}],
            }
        }
        with patch("requests.request", return_value=_response(403, error)):
            with self.assertRaises(InsufficientPermissions):
                self._execute(domain.DELETE)

    def test_other_forbidden_reason_is_execute_failure(self):
        error = {"error": {"message": "Daily limit exceeded", "errors": [{"reason": "dailyLimitExceeded"}]}}
        with patch("requests.request", return_value=_response(403, error)):
            with self.assertRaisesRegex(ExecuteFailed, "403"):
                self._execute(domain.DELETE)

    def test_not_found(self):
        with patch("requests.request", return_value=_response(404, {"error": {}})):
            with self.assertRaisesRegex(ExecuteFailed, "could not find"):
                self._execute(domain.DELETE)

    def test_timeout(self):
        with patch("requests.request", side_effect=requests.Timeout("slow")):
            with self.assertRaisesRegex(ExecuteFailed, "timed out"):
                self._execute(domain.DELETE)

    def test_unknown_action(self):
        with self.assertRaises(ExecuteFailed):
            self._execute("archive_everything")


if __name__ == "__main__":
    unittest.main()
