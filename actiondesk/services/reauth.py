from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading
from typing import Callable, Protocol
from uuid import uuid4

from .events import PermissionUpdates

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_CLOSED = "closed"
DEFAULT_SUCCESS_MARKERS = ("reauth=success", "onboard=success", "signup=success")


class SurfaceAccessError(Exception):
    """Raised while a surface's location cannot be read (cross-origin)."""


class AuthSurface(Protocol):
    def open(self, url: str) -> None: ...

    def is_closed(self) -> bool: ...

    def current_location(self) -> str | None: ...

    def close(self) -> None: ...


class CallbackSurface:
    """Server-side surface completed by the OAuth redirect handler.

    Until the provider redirects back, the location is on the consent origin
    and reads raise ``SurfaceAccessError``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._url: str | None = None
        self._location: str | None = None
        self._closed = False

    @property
    def url(self) -> str | None:
        return self._url

    def open(self, url: str) -> None:
        with self._lock:
            self._url = url
            self._location = None
            self._closed = False

    def is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def current_location(self) -> str | None:
        with self._lock:
            if self._location is None:
                raise SurfaceAccessError("Surface is still on the consent origin.")
            return self._location

    def complete(self, location: str) -> None:
        with self._lock:
            self._location = location

    def abandon(self) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._closed = True


@dataclass(frozen=True)
class ReauthOutcome:
    handle_id: str
    status: str
    endpoint: str
    principal_id: str | None = None
    session_id: str | None = None


ReauthCallback = Callable[[ReauthOutcome], None]


@dataclass
class ReauthHandle:
    handle_id: str
    endpoint: str
    surface: AuthSurface
    principal_id: str | None = None
    session_id: str | None = None
    outcome: ReauthOutcome | None = None
    cancelled: bool = False
    callbacks: list[ReauthCallback] = field(default_factory=list)


@dataclass
class _Poll:
    thread: threading.Thread
    stop: threading.Event


class ReauthCoordinator:
    def __init__(
        self,
        surface_factory: Callable[[], AuthSurface] = CallbackSurface,
        *,
        poll_interval_seconds: float = 1.0,
        success_markers: tuple[str, ...] = DEFAULT_SUCCESS_MARKERS,
        updates: PermissionUpdates | None = None,
    ) -> None:
        self._surface_factory = surface_factory
        self._interval = max(0.01, float(poll_interval_seconds))
        self._success_markers = tuple(success_markers)
        self._updates = updates
        self._lock = threading.Lock()
        self._handles: dict[str, ReauthHandle] = {}
        self._polls: dict[str, _Poll] = {}

    def launch(
        self,
        endpoint: str,
        *,
        principal_id: str | None = None,
        session_id: str | None = None,
    ) -> ReauthHandle:
        with self._lock:
            handle = self._find_open_handle(endpoint, principal_id)
            previous = self._polls.pop(handle.handle_id, None) if handle else None
            if previous is not None:
                # A stopped poll can no longer complete the handle.
                previous.stop.set()
            if handle is None:
                handle = ReauthHandle(
                    handle_id=uuid4().hex,
                    endpoint=endpoint,
                    surface=self._surface_factory(),
                    principal_id=principal_id,
                    session_id=session_id,
                )
                self._handles[handle.handle_id] = handle
            elif session_id:
                handle.session_id = session_id

        if previous is not None:
            logger.info("Replacing reauth poll for handle %s", handle.handle_id)
            self._stop_poll(previous)

        handle.surface.open(endpoint)
        stop = threading.Event()
        thread = threading.Thread(
            target=self._poll_loop,
            args=(handle, stop),
            name=f"reauth-poll-{handle.handle_id[:8]}",
            daemon=True,
        )
        with self._lock:
            completed = handle.outcome is not None
            cancelled = handle.cancelled
            if not completed and not cancelled:
                displaced = self._polls.get(handle.handle_id)
                if displaced is not None:
                    displaced.stop.set()
                self._polls[handle.handle_id] = _Poll(thread=thread, stop=stop)
                thread.start()

        if completed:
            logger.info(
                "Reauth handle %s finished during relaunch; starting fresh", handle.handle_id
            )
            return self.launch(endpoint, principal_id=principal_id, session_id=session_id)
        if cancelled:
            logger.info("Reauth handle %s was cancelled during launch", handle.handle_id)
            handle.surface.close()
            return handle
        logger.info("Launched reauth surface %s for %s", handle.handle_id, endpoint)
        return handle

    def on_completion(self, handle: ReauthHandle, callback: ReauthCallback) -> None:
        with self._lock:
            outcome = handle.outcome
            if outcome is None and not handle.cancelled:
                handle.callbacks.append(callback)
                return
        if outcome is not None:
            self._fire(callback, outcome)

    def cancel(self, handle: ReauthHandle) -> None:
        with self._lock:
            handle.cancelled = True
            handle.callbacks.clear()
            poll = self._polls.pop(handle.handle_id, None)
            self._handles.pop(handle.handle_id, None)
        if poll is not None:
            self._stop_poll(poll)
        handle.surface.close()

    def shutdown(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            self.cancel(handle)

    def active_polls(self) -> int:
        with self._lock:
            return sum(1 for poll in self._polls.values() if poll.thread.is_alive())

    def get_handle(self, handle_id: str) -> ReauthHandle | None:
        with self._lock:
            return self._handles.get(handle_id)

    def _find_open_handle(self, endpoint: str, principal_id: str | None) -> ReauthHandle | None:
        for handle in self._handles.values():
            if (
                handle.endpoint == endpoint
                and handle.principal_id == principal_id
                and handle.outcome is None
                and not handle.cancelled
                and not handle.surface.is_closed()
            ):
                return handle
        return None

    def _poll_loop(self, handle: ReauthHandle, stop: threading.Event) -> None:
        while not stop.wait(self._interval):
            if handle.surface.is_closed():
                self._complete(handle, STATUS_CLOSED, stop)
                return
            try:
                location = handle.surface.current_location()
            except SurfaceAccessError:
                continue
            if location and any(marker in location for marker in self._success_markers):
                handle.surface.close()
                self._complete(handle, STATUS_SUCCESS, stop)
                return

    def _complete(self, handle: ReauthHandle, status: str, stop: threading.Event) -> None:
        with self._lock:
            if handle.outcome is not None or handle.cancelled or stop.is_set():
                return
            outcome = ReauthOutcome(
                handle_id=handle.handle_id,
                status=status,
                endpoint=handle.endpoint,
                principal_id=handle.principal_id,
                session_id=handle.session_id,
            )
            handle.outcome = outcome
            callbacks = list(handle.callbacks)
            handle.callbacks.clear()
            self._polls.pop(handle.handle_id, None)
            self._handles.pop(handle.handle_id, None)

        logger.info("Reauth surface %s completed with status %s", handle.handle_id, status)
        if self._updates is not None:
            self._updates.publish(handle.principal_id)
        for callback in callbacks:
            self._fire(callback, outcome)

    @staticmethod
    def _fire(callback: ReauthCallback, outcome: ReauthOutcome) -> None:
        try:
            callback(outcome)
        except Exception:
            logger.exception("Reauth completion callback failed for %s", outcome.handle_id)

    @staticmethod
    def _stop_poll(poll: _Poll) -> None:
        poll.stop.set()
        if poll.thread is not threading.current_thread():
            poll.thread.join(timeout=5)
