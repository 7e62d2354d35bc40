"""
Background sync with observable state.

UI hooks (login, foreground, logout) go through one SyncRunner so two
cycles never overlap: a trigger that arrives while a cycle is running is
dropped and reported as such.
"""

import threading
from typing import Optional

from shopline.logs import json_log

from .store import iso_now
from .sync import SyncEngine

STATE_IDLE = "idle"
STATE_RUNNING = "running"


class SyncRunner:
    def __init__(self, engine: SyncEngine):
        self.engine = engine
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.state = STATE_IDLE
        self.last_started_at: Optional[str] = None
        self.last_finished_at: Optional[str] = None
        self.last_result: Optional[dict] = None
        self.last_error: Optional[str] = None

    def status(self) -> dict:
        return {
            "state": self.state,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }

    def _begin(self, reason: str) -> bool:
        with self._lock:
            if self.state == STATE_RUNNING:
                json_log("info", "sync.runner.already_running", reason=reason)
                return False
            self.state = STATE_RUNNING
            self.last_started_at = iso_now()
            return True

    def _run(self, reason: str) -> None:
        try:
            report = self.engine.sync_all()
            self.last_result = report.to_dict()
            self.last_error = None
        except Exception as ex:
            self.last_error = str(ex)
            raise
        finally:
            self.last_finished_at = iso_now()
            with self._lock:
                self.state = STATE_IDLE
            json_log("info", "sync.runner.finished", reason=reason, error=self.last_error)

    def _run_logged(self, reason: str) -> None:
        try:
            self._run(reason)
        except Exception as ex:
            json_log("warning", "sync.runner.failed", reason=reason, error=str(ex))

    def trigger(self, reason: str = "manual") -> bool:
        """Start a cycle in a background thread. False if one is already running."""
        if not self._begin(reason):
            return False
        self._thread = threading.Thread(target=self._run_logged, args=(reason,), name="pos-sync", daemon=True)
        self._thread.start()
        return True

    def run_now(self, reason: str = "manual", swallow: bool = False) -> bool:
        """Run a cycle on the calling thread. False if one is already running."""
        if not self._begin(reason):
            return False
        if swallow:
            self._run_logged(reason)
        else:
            self._run(reason)
        return True

    def wait(self, timeout: Optional[float] = None) -> None:
        t = self._thread
        if t is not None:
            t.join(timeout)

    def on_login(self) -> bool:
        return self.trigger("login")

    def on_foreground(self) -> bool:
        return self.trigger("foreground")

    def before_logout(self, timeout: Optional[float] = 30.0) -> None:
        # Best effort: let an in-flight cycle finish, then push what is left.
        self.wait(timeout)
        self.run_now("logout", swallow=True)
