"""Restoring pre-rotation state from a session's backup."""

import logging

from splurge_store_rotator.exceptions import (
    ConfigurationError,
    FileOperationError,
    RotationBackupError,
    RotationRollbackError,
)
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import SessionPhase, StoreStatus
from splurge_store_rotator.services.rotation.activation import ActivationController
from splurge_store_rotator.services.rotation.backup import RotationBackupService
from splurge_store_rotator.services.rotation.session import SessionTracker

logger = logging.getLogger(__name__)


class RollbackController:
    """Reverts a session: stores first, then policy and identity.

    Every step compares against the backup before writing, so running the
    rollback again after an interruption converges on the same state.
    """

    def __init__(
        self,
        file_manager: FileManager,
        backup_service: RotationBackupService,
        activation: ActivationController
    ):
        self._file_manager = file_manager
        self._backup_service = backup_service
        self._activation = activation

    def rollback(self, tracker: SessionTracker) -> list[str]:
        """Restore everything the session may have changed.

        Returns:
            Paths of stores whose ciphertext was rewritten

        Raises:
            RotationRollbackError: If any restore step fails
        """
        session = tracker.session
        logger.warning(
            f"Rolling back rotation session {session.session_id} from phase {session.phase.value}",
            extra={"event": "rollback_started", "session_id": session.session_id},
        )

        restored: list[str] = []
        try:
            for path in session.manifest:
                self._file_manager.discard_staged_store(path)

            if session.backup_id is not None:
                backup = self._backup_service.load_backup(session.backup_id)
                for entry in reversed(backup.stores):
                    if self._backup_service.restore_store(backup, entry):
                        restored.append(entry.path)
                self._backup_service.restore_keyring(backup)

            if session.old_keyring_id is not None:
                self._activation.revert(session.old_keyring_id, session.previous_keyring_id)

            if session.new_keyring_id and session.new_keyring_id != session.old_keyring_id:
                self._file_manager.delete_keyring(session.new_keyring_id)

        except (RotationBackupError, FileOperationError, ConfigurationError) as e:
            logger.error(
                f"Rollback of session {session.session_id} failed: {e}",
                extra={"event": "rollback_failed", "session_id": session.session_id},
            )
            raise RotationRollbackError(
                f"Rollback failed; restore manually from backup {session.backup_id}: {e}"
            ) from e

        for path in session.stores_with(StoreStatus.DONE):
            tracker.mark_store(path, StoreStatus.ROLLED_BACK)
        tracker.advance(SessionPhase.ROLLED_BACK)

        logger.info(
            f"Rolled back session {session.session_id}; restored {len(restored)} store(s)",
            extra={"event": "rollback_completed", "session_id": session.session_id},
        )
        return restored
