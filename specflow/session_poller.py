"""
Session Polling Manager

One background poll loop shared by every watcher of agent session logs.
Session logs live under the agent's home directory, outside the project, so
they are polled rather than watched.

- The loop starts with the first active subscription and stops when none
  remain (a session whose log shows it ended is deactivated automatically).
- Listeners receive a SessionUpdateEvent only when a session's content
  hash changes, or when polling it fails.
- shutdown() must be called to tear the loop down explicitly.

Usage:
    manager = SessionPollingManager(config)
    remove = manager.add_listener(lambda event: print(event.content.messages))
    manager.subscribe(session_id, project_path)
    ...
    manager.unsubscribe(session_id)
    remove()
    manager.shutdown()
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .config import SpecflowConfig
from .paths import session_log_file
from .session_log import SessionContent, read_session_content

logger = logging.getLogger(__name__)

SessionFetcher = Callable[[Path, str], SessionContent]


@dataclass
class SessionUpdateEvent:
    session_id: str
    project_path: Path
    content: SessionContent
    error: Optional[str] = None


@dataclass
class _Subscription:
    session_id: str
    project_path: Path
    last_hash: str = ""
    active: bool = True


SessionListener = Callable[[SessionUpdateEvent], None]


class SessionPollingManager:
    """Multiplexes session subscriptions onto a single timer thread."""

    def __init__(self, config: SpecflowConfig, fetch: Optional[SessionFetcher] = None):
        self.config = config
        self.interval = config.session_poll_interval_seconds
        self._fetch = fetch or self._read_log
        self._subscriptions: dict[str, _Subscription] = {}
        self._listeners: list[SessionListener] = []
        self._cache: dict[str, SessionContent] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _read_log(self, project_path: Path, session_id: str) -> SessionContent:
        return read_session_content(session_log_file(self.config, project_path, session_id), session_id)

    # ------------------------------------------------------------------
    # Subscriptions and listeners
    # ------------------------------------------------------------------

    def subscribe(self, session_id: str, project_path: Path) -> None:
        """Start (or reactivate) polling a session and poll it once now."""
        with self._lock:
            existing = self._subscriptions.get(session_id)
            if existing:
                existing.active = True
                existing.project_path = Path(project_path)
            else:
                self._subscriptions[session_id] = _Subscription(session_id, Path(project_path))
                logger.debug(f"Subscribed to session {session_id}")
        self._ensure_running()
        self.poll_session(session_id)

    def unsubscribe(self, session_id: str) -> None:
        with self._lock:
            subscription = self._subscriptions.get(session_id)
            if subscription is None:
                return
            subscription.active = False
            logger.debug(f"Unsubscribed from session {session_id}")
        self._stop_if_idle()

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def get_cache(self, session_id: str) -> Optional[SessionContent]:
        return self._cache.get(session_id)

    def subscription_count(self) -> tuple[int, int]:
        """(total, active) subscriptions."""
        with self._lock:
            subs = list(self._subscriptions.values())
        return len(subs), sum(1 for s in subs if s.active)

    @property
    def is_polling(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def shutdown(self) -> None:
        """Stop the loop and forget all subscriptions, listeners and cache."""
        self._halt()
        with self._lock:
            self._subscriptions.clear()
            self._listeners.clear()
            self._cache.clear()

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def _ensure_running(self) -> None:
        with self._lock:
            if self.is_polling:
                return
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop,), name="session-poller", daemon=True
            )
            self._thread.start()
        logger.info("Session poll loop started")

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval):
            self.poll_all()

    def _halt(self) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
            self._stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1)
        if thread is not None:
            logger.info("Session poll loop stopped")

    def _stop_if_idle(self) -> None:
        with self._lock:
            idle = not any(s.active for s in self._subscriptions.values())
        if idle:
            self._halt()

    def poll_all(self) -> None:
        with self._lock:
            active = [s.session_id for s in self._subscriptions.values() if s.active]
        for session_id in active:
            self.poll_session(session_id)

    def poll_session(self, session_id: str) -> Optional[SessionContent]:
        """Poll one session now; notifies listeners if its content changed."""
        with self._lock:
            subscription = self._subscriptions.get(session_id)
            if subscription is None or not subscription.active:
                return None
            project_path = subscription.project_path

        try:
            content = self._fetch(project_path, session_id)
        except (OSError, ValueError) as e:
            logger.warning(f"Polling session {session_id} failed: {e}")
            cached = self._cache.get(session_id) or SessionContent(session_id=session_id)
            self._notify(SessionUpdateEvent(session_id, project_path, cached, error=str(e)))
            return None

        digest = content.content_hash()
        if digest == subscription.last_hash:
            return content
        subscription.last_hash = digest
        self._cache[session_id] = content
        self._notify(SessionUpdateEvent(session_id, project_path, content))

        if content.has_ended:
            subscription.active = False
            logger.info(f"Session {session_id} ended")
            self._stop_if_idle()
        return content

    def _notify(self, event: SessionUpdateEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Session listener failed: {e}")
