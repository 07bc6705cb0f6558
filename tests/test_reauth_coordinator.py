import threading
import time
import unittest

from actiondesk.services.events import PermissionUpdates
from actiondesk.services.reauth import (
    STATUS_CLOSED,
    STATUS_SUCCESS,
    CallbackSurface,
    ReauthCoordinator,
)

_WAIT = 2.0


class _GatedSurface(CallbackSurface):
    """Blocks in ``open`` once armed, until released."""

    def __init__(self) -> None:
        super().__init__()
        self.armed = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def open(self, url: str) -> None:
        if self.armed:
            self.entered.set()
            self.release.wait(_WAIT)
        super().open(url)


class _Recorder:
    def __init__(self) -> None:
        self.outcomes = []
        self.event = threading.Event()

    def __call__(self, outcome) -> None:
        self.outcomes.append(outcome)
        self.event.set()


def _wait_until(predicate, timeout: float = _WAIT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class ReauthCoordinatorTests(unittest.TestCase):
    def setUp(self):
        self.updates = PermissionUpdates()
        self.coordinator = ReauthCoordinator(poll_interval_seconds=0.01, updates=self.updates)

    def tearDown(self):
        self.coordinator.shutdown()

    def test_closed_surface_completes_once(self):
        handle = self.coordinator.launch("/v1/auth/reauth?scope=calendar", principal_id="user-1")
        recorder = _Recorder()
        self.coordinator.on_completion(handle, recorder)

        handle.surface.close()

        self.assertTrue(recorder.event.wait(_WAIT))
        self.assertTrue(_wait_until(lambda: self.coordinator.active_polls() == 0))
        time.sleep(0.05)
        self.assertEqual(len(recorder.outcomes), 1)
        self.assertEqual(recorder.outcomes[0].status, STATUS_CLOSED)
        self.assertEqual(recorder.outcomes[0].principal_id, "user-1")

    def test_success_marker_completes_and_publishes_update(self):
        published = []
        self.updates.subscribe(published.append)
        handle = self.coordinator.launch(
            "/v1/auth/reauth?scope=tasks", principal_id="user-1", session_id="local-1"
        )
        recorder = _Recorder()
        self.coordinator.on_completion(handle, recorder)

        handle.surface.complete("http://localhost:3000/?reauth=success")

        self.assertTrue(recorder.event.wait(_WAIT))
        outcome = recorder.outcomes[0]
        self.assertEqual(outcome.status, STATUS_SUCCESS)
        self.assertEqual(outcome.session_id, "local-1")
        self.assertEqual(published, ["user-1"])
        self.assertTrue(handle.surface.is_closed())
        self.assertIsNone(self.coordinator.get_handle(handle.handle_id))

    def test_unrelated_location_keeps_polling(self):
        handle = self.coordinator.launch("/v1/auth/reauth?scope=tasks")
        recorder = _Recorder()
        self.coordinator.on_completion(handle, recorder)

        handle.surface.complete("http://localhost:3000/?reauth=access_denied")

        self.assertFalse(recorder.event.wait(0.1))
        self.assertEqual(self.coordinator.active_polls(), 1)

    def test_consent_origin_reads_are_ignored(self):
        handle = self.coordinator.launch("/v1/auth/reauth?scope=tasks")
        recorder = _Recorder()
        self.coordinator.on_completion(handle, recorder)

        # CallbackSurface raises SurfaceAccessError until it is completed.
        self.assertFalse(recorder.event.wait(0.1))

        handle.surface.complete("http://localhost:3000/?onboard=success")
        self.assertTrue(recorder.event.wait(_WAIT))
        self.assertEqual(recorder.outcomes[0].status, STATUS_SUCCESS)

    def test_cancel_tears_down_without_callbacks(self):
        handle = self.coordinator.launch("/v1/auth/reauth?scope=calendar")
        recorder = _Recorder()
        self.coordinator.on_completion(handle, recorder)

        self.coordinator.cancel(handle)
        handle.surface.close()

        self.assertFalse(recorder.event.wait(0.1))
        self.assertEqual(self.coordinator.active_polls(), 0)
        self.assertTrue(handle.cancelled)

    def test_relaunch_replaces_the_poll(self):
        first = self.coordinator.launch("/v1/auth/reauth?scope=calendar", principal_id="user-1")
        second = self.coordinator.launch(
            "/v1/auth/reauth?scope=calendar", principal_id="user-1", session_id="local-2"
        )
        recorder = _Recorder()
        self.coordinator.on_completion(second, recorder)

        self.assertIs(first, second)
        self.assertEqual(self.coordinator.active_polls(), 1)
        self.assertEqual(second.session_id, "local-2")

        second.surface.close()
        self.assertTrue(recorder.event.wait(_WAIT))
        time.sleep(0.05)
        self.assertEqual(len(recorder.outcomes), 1)

    def test_shutdown_during_relaunch_leaves_no_poll_running(self):
        coordinator = ReauthCoordinator(_GatedSurface, poll_interval_seconds=0.01)
        self.addCleanup(coordinator.shutdown)
        endpoint = "/v1/auth/reauth?scope=calendar"
        handle = coordinator.launch(endpoint, principal_id="user-1")
        handle.surface.armed = True
        relaunched = []

        worker = threading.Thread(
            target=lambda: relaunched.append(coordinator.launch(endpoint, principal_id="user-1"))
        )
        worker.start()
        self.assertTrue(handle.surface.entered.wait(_WAIT))

        coordinator.shutdown()
        handle.surface.release.set()
        worker.join(_WAIT)

        self.assertFalse(worker.is_alive())
        self.assertIs(relaunched[0], handle)
        self.assertTrue(handle.cancelled)
        self.assertTrue(handle.surface.is_closed())
        self.assertEqual(coordinator.active_polls(), 0)
        poll_name = f"reauth-poll-{handle.handle_id[:8]}"
        self.assertTrue(
            _wait_until(
                lambda: not any(t.name == poll_name and t.is_alive() for t in threading.enumerate())
            )
        )

    def test_replaced_poll_never_completes_the_handle(self):
        endpoint = "/v1/auth/reauth?scope=tasks"
        handle = self.coordinator.launch(endpoint, principal_id="user-1")
        recorder = _Recorder()
        self.coordinator.on_completion(handle, recorder)

        for _ in range(20):
            self.assertIs(self.coordinator.launch(endpoint, principal_id="user-1"), handle)

        self.assertEqual(self.coordinator.active_polls(), 1)
        handle.surface.close()
        self.assertTrue(recorder.event.wait(_WAIT))
        time.sleep(0.05)
        self.assertEqual(len(recorder.outcomes), 1)
        self.assertEqual(self.coordinator.active_polls(), 0)

    def test_different_principals_get_separate_handles(self):
        first = self.coordinator.launch("/v1/auth/reauth?scope=tasks", principal_id="a")
        second = self.coordinator.launch("/v1/auth/reauth?scope=tasks", principal_id="b")

        self.assertNotEqual(first.handle_id, second.handle_id)
        self.assertEqual(self.coordinator.active_polls(), 2)

    def test_late_registration_fires_immediately(self):
        handle = self.coordinator.launch("/v1/auth/reauth?scope=tasks")
        handle.surface.close()
        self.assertTrue(_wait_until(lambda: handle.outcome is not None))

        recorder = _Recorder()
        self.coordinator.on_completion(handle, recorder)

        self.assertEqual([outcome.status for outcome in recorder.outcomes], [STATUS_CLOSED])

    def test_failing_callback_is_logged(self):
        handle = self.coordinator.launch("/v1/auth/reauth?scope=tasks")
        recorder = _Recorder()

        def broken(_outcome):
            raise RuntimeError("boom")

        self.coordinator.on_completion(handle, broken)
        self.coordinator.on_completion(handle, recorder)

        with self.assertLogs("actiondesk.services.reauth", level="ERROR"):
            handle.surface.close()
            self.assertTrue(recorder.event.wait(_WAIT))


class CallbackSurfaceTests(unittest.TestCase):
    def test_reopen_resets_state(self):
        surface = CallbackSurface()
        surface.open("https://accounts.example/consent")
        surface.complete("http://localhost/?reauth=success")
        surface.abandon()

        surface.open("https://accounts.example/consent?again=1")

        self.assertFalse(surface.is_closed())
        self.assertEqual(surface.url, "https://accounts.example/consent?again=1")


if __name__ == "__main__":
    unittest.main()
