"""Intake session state machine and store.

Status only moves forward: ``collecting → processing → {ready | needs_human | error}``.
A finished session may be rebuilt with merged answers (terminal → terminal),
but nothing ever returns to ``collecting``.
"""
from __future__ import annotations

import abc
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from visaplan.errors import InvalidTransition, NotFound
from visaplan.schemas import IntakeQuestion, Plan

log = logging.getLogger("visaplan.sessions")


class SessionStatus(str, Enum):
    COLLECTING = "collecting"
    PROCESSING = "processing"
    NEEDS_HUMAN = "needs_human"
    READY = "ready"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {SessionStatus.NEEDS_HUMAN, SessionStatus.READY, SessionStatus.ERROR}


def check_transition(current: SessionStatus, new: SessionStatus) -> None:
    if current == new:
        return
    if new == SessionStatus.COLLECTING:
        raise InvalidTransition(f"Session cannot return to collecting from {current.value}")
    if new == SessionStatus.PROCESSING and current != SessionStatus.COLLECTING:
        raise InvalidTransition(f"Session cannot start processing from {current.value}")


@dataclass
class IntakeSession:
    id: str
    prompt: str
    questions: list[IntakeQuestion] = field(default_factory=list)
    answers: dict[str, str] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.COLLECTING
    scenario_id: str | None = None
    template_id: str | None = None
    template_plan: Plan | None = None
    plan: Plan | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


class SessionStore(abc.ABC):
    """Storage seam for intake sessions (in-memory today; a DB or cache later)."""

    @abc.abstractmethod
    def create(self, session: IntakeSession) -> IntakeSession: ...

    @abc.abstractmethod
    def get(self, session_id: str) -> IntakeSession:
        """Return the session or raise ``NotFound``."""

    @abc.abstractmethod
    def update(self, session_id: str, **changes: Any) -> IntakeSession:
        """Apply ``changes`` (last write wins) and return the new record."""


class InMemorySessionStore(SessionStore):
    """Process-lifetime store: overwrite in place, no TTL."""

    def __init__(self) -> None:
        self._sessions: dict[str, IntakeSession] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def lock(self, session_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(session_id, threading.Lock())

    def create(self, session: IntakeSession) -> IntakeSession:
        with self.lock(session.id):
            self._sessions[session.id] = session
        log.info("Created session %s (total=%d)", session.id, len(self._sessions))
        return session

    def get(self, session_id: str) -> IntakeSession:
        session = self._sessions.get(session_id)
        if session is None:
            log.warning("Session %s not found (total=%d)", session_id, len(self._sessions))
            raise NotFound(f"Session {session_id} not found")
        return session

    def update(self, session_id: str, **changes: Any) -> IntakeSession:
        with self.lock(session_id):
            existing = self.get(session_id)
            status = changes.get("status")
            if status is not None:
                status = SessionStatus(status)
                check_transition(existing.status, status)
                changes["status"] = status
            updated = replace(existing, **changes, updated_at=time.time())
            self._sessions[session_id] = updated

        if status is not None and status != existing.status:
            log.info("Session %s: %s → %s", session_id, existing.status.value, status.value)
        return updated


def init_session(
    prompt: str,
    questions: list[IntakeQuestion],
    *,
    scenario_id: str | None = None,
    template_id: str | None = None,
    template_plan: Plan | None = None,
    answers: dict[str, str] | None = None,
) -> IntakeSession:
    """New ``collecting`` session with the prompt (and scenario id) pre-filled as answers."""
    seeded = {"initialPrompt": prompt}
    if scenario_id:
        seeded["scenarioId"] = scenario_id
    seeded.update(answers or {})
    return IntakeSession(
        id=str(uuid.uuid4()),
        prompt=prompt,
        questions=list(questions),
        answers=seeded,
        scenario_id=scenario_id,
        template_id=template_id,
        template_plan=template_plan,
    )
