"""In-memory conversation sessions keyed by chat id.

Each chat has at most one session. All reads and writes for a chat go
through that chat's lock, and every new session takes a fresh generation
number so delayed expiry timers can tell whether the session they were armed
for is still the current one.
"""
from __future__ import annotations

import itertools
import logging
import threading
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .flows import FlowKind, Phase

LOGGER = logging.getLogger(__name__)


@dataclass
class Session:
    flow: FlowKind
    phase: Phase
    data: Dict[str, Any] = field(default_factory=dict)
    generation: int = 0
    created_at: float = field(default_factory=time.monotonic)


ExpiryCallback = Callable[[int, Session], None]


class SessionStore:
    """Thread-safe session map with per-chat locks and generation-guarded expiry."""

    def __init__(self, timer_factory: Callable[..., threading.Timer] = threading.Timer) -> None:
        self._sessions: Dict[int, Session] = {}
        # Entries vanish once no caller holds the lock.
        self._locks: "weakref.WeakValueDictionary[int, threading.RLock]" = weakref.WeakValueDictionary()
        self._guard = threading.Lock()
        self._generations = itertools.count(1)
        self._timer_factory = timer_factory

    def lock(self, chat_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(chat_id)
            if lock is None:
                lock = self._locks[chat_id] = threading.RLock()
            return lock

    def _next_generation(self) -> int:
        with self._guard:
            return next(self._generations)

    # ------------------------------------------------------------------
    def get(self, chat_id: int) -> Optional[Session]:
        with self.lock(chat_id):
            return self._sessions.get(chat_id)

    def start(self, chat_id: int, flow: FlowKind, phase: Phase, **data: Any) -> Session:
        session = Session(flow=flow, phase=phase, data=dict(data))
        self.set(chat_id, session)
        return session

    def set(self, chat_id: int, session: Session) -> None:
        with self.lock(chat_id):
            session.generation = self._next_generation()
            self._sessions[chat_id] = session

    def update(self, chat_id: int, fn: Callable[[Session], Optional[Session]]) -> Optional[Session]:
        """Atomically read, modify and write back a chat's session.

        ``fn`` receives the current session and returns the session to keep,
        or ``None`` to delete it. Nothing happens when no session exists.
        """
        with self.lock(chat_id):
            current = self._sessions.get(chat_id)
            if current is None:
                return None
            result = fn(current)
            if result is None:
                self._sessions.pop(chat_id, None)
            else:
                if result is not current:
                    result.generation = self._next_generation()
                self._sessions[chat_id] = result
            return result

    def advance(self, chat_id: int, phase: Phase, **data: Any) -> Optional[Session]:
        def _advance(session: Session) -> Session:
            session.phase = phase
            session.data.update(data)
            return session

        return self.update(chat_id, _advance)

    def delete(self, chat_id: int, generation: Optional[int] = None) -> bool:
        with self.lock(chat_id):
            current = self._sessions.get(chat_id)
            if current is None:
                return False
            if generation is not None and current.generation != generation:
                return False
            del self._sessions[chat_id]
            return True

    # ------------------------------------------------------------------
    def expire_if_current(self, chat_id: int, generation: int) -> Optional[Session]:
        """Remove the session only if it still carries ``generation``."""

        with self.lock(chat_id):
            current = self._sessions.get(chat_id)
            if current is None or current.generation != generation:
                return None
            del self._sessions[chat_id]
            return current

    def expire_after(self, chat_id: int, seconds: float, on_expire: Optional[ExpiryCallback] = None) -> Optional[threading.Timer]:
        """Arm a timer that expires the chat's current session after ``seconds``."""

        current = self.get(chat_id)
        if current is None:
            return None
        generation = current.generation

        def _fire() -> None:
            expired = self.expire_if_current(chat_id, generation)
            if expired is None:
                return
            LOGGER.info("session %s/%s for chat %s timed out", expired.flow.value, expired.phase.value, chat_id)
            if on_expire is not None:
                try:
                    on_expire(chat_id, expired)
                except Exception as exc:
                    LOGGER.warning("expiry callback failed for chat %s: %s", chat_id, exc)

        timer = self._timer_factory(seconds, _fire)
        timer.daemon = True
        timer.start()
        return timer

    def __len__(self) -> int:
        with self._guard:
            return len(self._sessions)
