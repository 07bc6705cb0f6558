from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)

PermissionListener = Callable[[str | None], None]


class PermissionUpdates:
    """Observer channel for "permissions updated" notifications.

    Passed by reference to the components that publish or consume it. A
    published principal id of None means every principal may have changed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[PermissionListener] = []

    def subscribe(self, listener: PermissionListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, principal_id: str | None = None) -> int:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(principal_id)
            except Exception:
                logger.exception("Permission listener failed for principal %s", principal_id)
        return len(listeners)
