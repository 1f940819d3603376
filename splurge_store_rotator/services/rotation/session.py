"""Durable tracking of a rotation session's phase and per-store manifest."""

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Callable

from splurge_store_rotator.exceptions import StaleSessionError
from splurge_store_rotator.models import (
    RotationSession,
    SessionPhase,
    StoreStatus,
)

logger = logging.getLogger(__name__)


class SessionTracker:
    """Owns one RotationSession and persists it on every change.

    Phases only move forward, except that any phase may move to
    ROLLED_BACK. The persistence callback is supplied by the execution
    strategy so dry runs never touch the session marker.
    """

    def __init__(
        self,
        session: RotationSession,
        persist: Callable[[RotationSession], None]
    ):
        self._session = session
        self._persist = persist

    @classmethod
    def start(
        cls,
        persist: Callable[[RotationSession], None],
        *,
        dry_run: bool = False
    ) -> "SessionTracker":
        session = RotationSession(
            session_id=str(uuid.uuid4()),
            pid=os.getpid(),
            dry_run=dry_run,
        )
        tracker = cls(session, persist)
        tracker.save()
        return tracker

    @staticmethod
    def ensure_no_stale_session(existing: RotationSession | None) -> None:
        """Refuse to start while a previous session marker is still present.

        Raises:
            StaleSessionError: If a marker from an unfinished session exists
        """
        if existing is None:
            return
        raise StaleSessionError(
            f"Rotation session {existing.session_id} was left in phase "
            f"'{existing.phase.value}'; run rollback before rotating again"
        )

    @property
    def session(self) -> RotationSession:
        return self._session

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def phase(self) -> SessionPhase:
        return self._session.phase

    def advance(self, phase: SessionPhase) -> None:
        """Move to ``phase`` and persist.

        Raises:
            ValueError: If the move would go backwards
        """
        current = self._session.phase
        if phase != SessionPhase.ROLLED_BACK and phase.rank < current.rank:
            raise ValueError(f"Cannot move session from {current.value} back to {phase.value}")
        if current == SessionPhase.ROLLED_BACK and phase != SessionPhase.ROLLED_BACK:
            raise ValueError("A rolled-back session cannot advance")

        self._session.phase = phase
        logger.info(
            f"Rotation session entered phase {phase.value}",
            extra={"event": "session_phase", "session_id": self.session_id, "phase": phase.value},
        )
        self.save()

    def plan_stores(self, paths: list[str]) -> None:
        """Record every store as pending, in the order they will be processed."""
        self._session.manifest = {path: StoreStatus.PENDING for path in paths}
        self.save()

    def mark_store(self, path: str, status: StoreStatus) -> None:
        if path not in self._session.manifest:
            raise KeyError(f"Store {path} is not in the session manifest")
        self._session.manifest[path] = status
        self.save()

    def update(self, **fields) -> None:
        """Set session attributes (keyring ids, recipients, backup id) and persist."""
        for name, value in fields.items():
            if not hasattr(self._session, name):
                raise AttributeError(f"RotationSession has no field {name}")
            setattr(self._session, name, value)
        self.save()

    def save(self) -> None:
        self._session.updated_at = datetime.now(timezone.utc)
        self._persist(self._session)
