"""Guarded region around a rotation: lock, interrupt handling and buffer cleanup."""

import logging
import signal
import threading

from splurge_store_rotator.exceptions import RotationInterruptedError
from splurge_store_rotator.services.rotation.lock import RotationLock
from splurge_store_rotator.services.rotation.operations import (
    PlaintextBuffer,
    PlaintextFingerprints,
)

logger = logging.getLogger(__name__)


class RotationTransaction:
    """Scoped acquisition of everything a rotation must release.

    Entering takes the rotation lock and installs SIGTERM/SIGINT handlers
    that only record the signal; ``checkpoint()`` turns a recorded signal
    into RotationInterruptedError between steps. Leaving wipes open
    plaintext buffers, forgets plaintext fingerprints, restores the
    previous handlers and releases the lock, on every exit path.
    """

    _SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(
        self,
        lock: RotationLock,
        *,
        fingerprints: PlaintextFingerprints | None = None
    ):
        """Initialize rotation transaction.

        Args:
            lock: Lock guarding the secret-store directory
            fingerprints: Plaintext digests to forget on exit
        """
        self._lock = lock
        self._fingerprints = fingerprints
        self._previous_handlers: dict[int, object] = {}
        self._received: int | None = None

    @property
    def interrupted(self) -> bool:
        return self._received is not None

    def checkpoint(self) -> None:
        """Raise if a termination signal arrived since the last step.

        Raises:
            RotationInterruptedError: If SIGTERM or SIGINT was received
        """
        if self._received is not None:
            raise RotationInterruptedError(
                f"Rotation interrupted by signal {signal.Signals(self._received).name}"
            )

    def _on_signal(self, signum, frame) -> None:
        logger.warning(
            f"Received {signal.Signals(signum).name}; stopping after the current step",
            extra={"event": "rotation_signal"},
        )
        self._received = signum

    def _install_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in self._SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def __enter__(self) -> "RotationTransaction":
        """Enter transaction context."""
        self._lock.acquire()
        try:
            self._install_handlers()
        except Exception:
            self._lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit transaction context - release everything regardless of outcome."""
        try:
            wiped = PlaintextBuffer.wipe_all()
            if wiped:
                logger.debug(f"Wiped {wiped} plaintext buffer(s) on exit")
            if self._fingerprints is not None:
                self._fingerprints.clear()
            self._restore_handlers()
        finally:
            self._lock.release()
