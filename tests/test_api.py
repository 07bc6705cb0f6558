import time
import unittest
from unittest.mock import Mock, patch
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from actiondesk import domain, main
from actiondesk.services.datetime_resolver import DateTimeResolver
from actiondesk.services.google_oauth import GoogleOAuthService, GoogleTokenExchange
from actiondesk.services.intent_capability import ChatReply
from actiondesk.services.permission_guard import Authorized
from actiondesk.services.reauth import STATUS_SUCCESS, ReauthOutcome
from actiondesk.services.session_bridge import GREETING


class _ChatOnlyCapability:
    def prepare(self, subject_id, action_type, payload):
        raise AssertionError("prepare is not expected here")

    def resolve_datetime(self, free_text, context, now):
        raise AssertionError("resolve_datetime is not expected here")

    def chat(self, text, history):
        return ChatReply(f"echo: {text}")


def _configured_oauth() -> GoogleOAuthService:
    return GoogleOAuthService(
        client_id="cid",
        client_secret="secret",
        redirect_uri="http://testserver/v1/auth/google/callback",
    )


def _gmail_ok() -> Mock:
    response = Mock()
    response.status_code = 200
    response.ok = True
    response.content = b"{}"
    response.json.return_value = {"id": "msg-1", "labelIds": []}
    return response


class ApiTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)

    def test_health(self):
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_active_session_is_stable_and_greets(self):
        headers = {"X-Client-Id": "api-active"}
        first = self.client.get("/v1/sessions/active", headers=headers).json()
        second = self.client.get("/v1/sessions/active", headers=headers).json()

        self.assertEqual(first["session_id"], second["session_id"])
        turns = self.client.get(f"/v1/sessions/{first['session_id']}/turns").json()["turns"]
        if first["local_only"]:
            self.assertEqual(turns[0]["content"], GREETING)

    def test_unknown_session_is_404(self):
        response = self.client.get("/v1/sessions/local-does-not-exist/turns")

        self.assertEqual(response.status_code, 404)

    def test_message_round_trip(self):
        session_id = self.client.post("/v1/sessions", json={}).json()["session_id"]
        with patch.object(main.orchestrator, "capability", _ChatOnlyCapability()):
            response = self.client.post(
                f"/v1/sessions/{session_id}/messages", json={"text": "hello there"}
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["state"], "chat")
        self.assertEqual(body["turn"]["content"], "echo: hello there")

    def test_action_without_grants_is_denied(self):
        session_id = self.client.post("/v1/sessions", json={}).json()["session_id"]

        response = self.client.post(
            f"/v1/sessions/{session_id}/actions",
            json={"action_type": "create_task", "subject_id": "msg-1"},
            headers={"X-Client-Id": "api-no-grants"},
        )

        body = response.json()
        self.assertEqual(body["state"], "denied")
        self.assertEqual(body["deficiency"]["missing_scopes"], ["tasks"])
        self.assertEqual(body["deficiency"]["reauth_endpoint"], "/v1/auth/reauth?scope=tasks")

    def test_datetime_resolution(self):
        session_id = self.client.post("/v1/sessions", json={}).json()["session_id"]
        with patch.object(main, "resolver", DateTimeResolver(timezone_name="UTC")):
            vague = self.client.post(
                f"/v1/sessions/{session_id}/datetime/resolve", json={"text": "let's meet sometime"}
            )
            concrete = self.client.post(
                f"/v1/sessions/{session_id}/datetime/resolve", json={"text": "tomorrow 3pm"}
            )

        self.assertEqual(vague.status_code, 422)
        self.assertEqual(vague.json()["error"], "missing_datetime")
        self.assertIn("What day and time", vague.json()["question"])
        self.assertEqual(concrete.status_code, 200)
        self.assertEqual(concrete.json()["resolved_by"], "fallback")
        self.assertIn("T15:00:00", concrete.json()["start"])

    def test_permission_status_lists_every_scope(self):
        response = self.client.get("/v1/auth/permissions", headers={"X-Client-Id": "api-perms"})

        body = response.json()
        self.assertFalse(body["has_all_permissions"])
        self.assertEqual(len(body["permissions"]), 6)
        self.assertEqual(body["permissions"][0]["name"], "Gmail Reading")

    def test_reauth_rejects_unknown_scope(self):
        response = self.client.get("/v1/auth/reauth", params={"scope": "gmail_read,bogus"})

        self.assertEqual(response.status_code, 400)

    def test_reauth_requires_oauth_configuration(self):
        unconfigured = GoogleOAuthService(client_id=None, client_secret=None, redirect_uri=None)
        with patch.object(main, "google_oauth", unconfigured):
            response = self.client.get("/v1/auth/reauth", params={"scope": "calendar"})

        self.assertEqual(response.status_code, 503)

    def test_callback_with_unknown_state(self):
        response = self.client.get(
            "/v1/auth/google/callback",
            params={"state": "nope", "code": "c"},
            follow_redirects=False,
        )

        self.assertEqual(response.status_code, 400)

    def test_reauth_round_trip_resumes_denied_action(self):
        headers = {"X-Client-Id": "api-reauth"}
        session_id = self.client.post("/v1/sessions", json={}).json()["session_id"]
        denied = self.client.post(
            f"/v1/sessions/{session_id}/actions",
            json={"action_type": "mark_read", "subject_id": "msg-1"},
            headers=headers,
        ).json()
        self.assertEqual(denied["state"], "denied")

        service = _configured_oauth()
        exchange = GoogleTokenExchange(
            access_token="access-1",
            refresh_token="refresh-1",
            token_type="Bearer",
            scope="https://www.googleapis.com/auth/gmail.modify",
            expires_in=3600,
        )
        with patch.object(main, "google_oauth", service), patch.object(
            service, "exchange_code", return_value=exchange
        ), patch("requests.request", return_value=_gmail_ok()) as request_mock:
            start = self.client.get(
                "/v1/auth/reauth",
                params={"scope": "gmail_modify", "session_id": session_id},
                headers=headers,
                follow_redirects=False,
            )
            self.assertEqual(start.status_code, 307)
            location = urlparse(start.headers["location"])
            state = parse_qs(location.query)["state"][0]
            self.assertIn("gmail.modify", parse_qs(location.query)["scope"][0])

            callback = self.client.get(
                "/v1/auth/google/callback",
                params={"state": state, "code": "auth-code"},
                follow_redirects=False,
            )
            self.assertEqual(callback.status_code, 303)
            self.assertTrue(callback.headers["location"].endswith("?reauth=success"))

            deadline = time.monotonic() + 5
            while main.orchestrator.has_denied_attempt(session_id) and time.monotonic() < deadline:
                time.sleep(0.05)
            while request_mock.call_count == 0 and time.monotonic() < deadline:
                time.sleep(0.05)

        self.assertFalse(main.orchestrator.has_denied_attempt(session_id))
        self.assertTrue(request_mock.call_args.args[1].endswith("/messages/msg-1/modify"))
        status = self.client.get("/v1/auth/google/status", headers=headers).json()
        self.assertTrue(status["connected"])

        disconnected = self.client.post("/v1/auth/google/disconnect", headers=headers).json()
        self.assertTrue(disconnected["disconnected"])

    def test_turns_report_pending_follow_up(self):
        session_id = self.client.post("/v1/sessions", json={}).json()["session_id"]
        fresh = self.client.get(f"/v1/sessions/{session_id}/turns").json()
        self.assertIsNone(fresh["awaiting_details"])

        with patch.object(
            main.orchestrator, "resolver", DateTimeResolver(timezone_name="UTC")
        ), patch.object(
            main.orchestrator.guard,
            "authorize",
            return_value=Authorized(action_type=domain.CREATE_MEETING),
        ):
            asked = self.client.post(
                f"/v1/sessions/{session_id}/actions",
                json={
                    "action_type": "create_meeting",
                    "subject_id": "msg-1",
                    "payload": {"text": "let's meet sometime"},
                },
            ).json()

        self.assertEqual(asked["state"], "awaiting_details")
        listing = self.client.get(f"/v1/sessions/{session_id}/turns").json()
        self.assertEqual(listing["awaiting_details"]["awaiting_action_type"], "create_meeting")
        self.assertEqual(listing["awaiting_details"]["subject_id"], "msg-1")
        self.assertIn("What day and time", listing["awaiting_details"]["question"])

    def test_successful_reauth_without_denied_attempt_resumes_nothing(self):
        session_id = self.client.post("/v1/sessions", json={}).json()["session_id"]
        outcome = ReauthOutcome(
            handle_id="h-1",
            status=STATUS_SUCCESS,
            endpoint="/v1/auth/reauth?scope=tasks",
            principal_id="api-nothing-denied",
            session_id=session_id,
        )
        with patch.object(main.orchestrator, "resume_after_reauth") as resume_mock:
            with self.assertLogs("actiondesk.main", level="INFO"):
                main._on_reauth_complete(outcome)

        resume_mock.assert_not_called()

    def test_important_messages(self):
        response = self.client.post(
            "/v1/messages/important",
            json={"messages": [{"id": "1", "subject": "lunch"}, {"id": "2", "subject": "URGENT"}]},
        )

        self.assertEqual([item["id"] for item in response.json()["messages"]], ["2"])


if __name__ == "__main__":
    unittest.main()
