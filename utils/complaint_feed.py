"""Per-application change feed that tells dashboards when to refetch complaints."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from flask import current_app

FeedListener = Callable[[Dict], None]


class _FeedState:
    def __init__(self) -> None:
        self.version = 0
        self.last_event: Optional[Dict] = None
        self.listeners: List[FeedListener] = []
        self.lock = threading.Lock()


class ComplaintFeed:
    """Version counter bumped after every complaint write.

    Readers never get cached rows from here: they compare the version they
    last saw with the current one and re-issue a full fetch when it moved.
    State lives on ``app.extensions`` so each application gets its own feed.
    """

    extension_key = "complaint_feed"

    def __init__(self, app=None) -> None:
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        app.extensions[self.extension_key] = _FeedState()

    def _state(self) -> _FeedState:
        try:
            return current_app.extensions[self.extension_key]
        except KeyError as exc:
            raise RuntimeError("ComplaintFeed is not initialized on this application") from exc

    @property
    def version(self) -> int:
        return self._state().version

    def snapshot(self) -> Dict:
        state = self._state()
        with state.lock:
            return {"version": state.version, "last_event": dict(state.last_event) if state.last_event else None}

    def subscribe(self, listener: FeedListener) -> FeedListener:
        state = self._state()
        with state.lock:
            if listener not in state.listeners:
                state.listeners.append(listener)
        return listener

    def unsubscribe(self, listener: FeedListener) -> None:
        state = self._state()
        with state.lock:
            if listener in state.listeners:
                state.listeners.remove(listener)

    def invalidate(self, complaint_id: Optional[str] = None, reason: str = "updated") -> int:
        state = self._state()
        with state.lock:
            state.version += 1
            event = {
                "version": state.version,
                "complaint_id": complaint_id,
                "reason": reason,
                "timestamp": datetime.utcnow().isoformat(),
            }
            state.last_event = event
            listeners = list(state.listeners)

        for listener in listeners:
            try:
                listener(dict(event))
            except Exception:
                # The write already committed; a broken subscriber must not fail it.
                current_app.logger.warning(
                    "Complaint feed listener failed",
                    exc_info=True,
                    extra={"complaint_id": complaint_id, "reason": reason},
                )
        return event["version"]
