from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from invoicebot.invoice import Invoice
from invoicebot.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class Session:
    user_id: int
    invoices: list[Invoice] = field(default_factory=list)
    last_activity: float = 0.0


class InMemoryInvoiceRepository:
    """Per-user invoice lists kept in process memory, expired after inactivity."""

    def __init__(
        self,
        session_timeout_minutes: int = 30,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._metrics = metrics
        self._sessions: dict[int, Session] = {}
        self._timeout_seconds = session_timeout_minutes * 60
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_cleanup: threading.Event | None = None
        self._cleanup_thread: threading.Thread | None = None

    def add_invoice(self, user_id: int, invoice: Invoice) -> None:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = Session(user_id=user_id)
                self._sessions[user_id] = session
            session.invoices.append(invoice)
            session.last_activity = self._clock()

    def get_invoices(self, user_id: int) -> list[Invoice]:
        with self._lock:
            session = self._sessions.get(user_id)
            return list(session.invoices) if session else []

    def get_invoice_count(self, user_id: int) -> int:
        with self._lock:
            session = self._sessions.get(user_id)
            return len(session.invoices) if session else 0

    def clear_invoices(self, user_id: int) -> None:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                session.invoices = []
                session.last_activity = self._clock()

    def delete_session(self, user_id: int) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)

    def get_session(self, user_id: int) -> Session | None:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return None
            return Session(user_id, list(session.invoices), session.last_activity)

    def has_session(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._sessions

    def active_session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def clean_expired_sessions(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                user_id
                for user_id, session in self._sessions.items()
                if now - session.last_activity > self._timeout_seconds
            ]
            for user_id in expired:
                del self._sessions[user_id]
        if expired and self._metrics is not None:
            self._metrics.increment("sessions_expired_total", len(expired))
        return len(expired)

    def start_cleanup_task(self, interval_seconds: float = 300.0) -> None:
        if self._cleanup_thread is not None:
            return
        stop = threading.Event()

        def _loop() -> None:
            while not stop.wait(interval_seconds):
                cleaned = self.clean_expired_sessions()
                if cleaned:
                    logger.info("Cleaned %d expired session(s)", cleaned)

        self._stop_cleanup = stop
        self._cleanup_thread = threading.Thread(target=_loop, name="session-cleanup", daemon=True)
        self._cleanup_thread.start()

    def stop_cleanup_task(self) -> None:
        if self._stop_cleanup is None or self._cleanup_thread is None:
            return
        self._stop_cleanup.set()
        self._cleanup_thread.join(timeout=5)
        self._stop_cleanup = None
        self._cleanup_thread = None
