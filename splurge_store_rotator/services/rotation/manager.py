"""Key rotation manager that orchestrates rotation operations."""

import logging

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import (
    ConfigurationError,
    RotationRollbackError,
    StoreRotatorError,
    ValidationError,
)
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import (
    Backup,
    ErrorDetail,
    RotationHistory,
    RotationResult,
    SessionPhase,
    StoreStatus,
    ValidationResult,
)
from splurge_store_rotator.services.rotation.keygen import KeyGenerator
from splurge_store_rotator.services.rotation.lock import RotationLock
from splurge_store_rotator.services.rotation.operations import PlaintextFingerprints
from splurge_store_rotator.services.rotation.orchestrator import ReencryptionOrchestrator
from splurge_store_rotator.services.rotation.policy import RecipientMapUpdater
from splurge_store_rotator.services.rotation.session import SessionTracker
from splurge_store_rotator.services.rotation.strategy import (
    DryRunExecution,
    ExecutionStrategy,
    LiveExecution,
    StrategyKind,
)
from splurge_store_rotator.services.rotation.transaction import RotationTransaction

logger = logging.getLogger(__name__)


class KeyRotationManager:
    """Manages key rotation operations for a secret-store directory."""

    def __init__(self, file_manager: FileManager, *, strategy: ExecutionStrategy | None = None):
        """Initialize the key rotation manager.

        Args:
            file_manager: File manager instance for data persistence
            strategy: Execution strategy; derived from ``config.dry_run`` when omitted
        """
        self._file_manager = file_manager
        self._config = file_manager.config
        self._live = LiveExecution(file_manager)
        if strategy is None:
            strategy = DryRunExecution(self._live) if self._config.dry_run else self._live
        self._strategy = strategy
        self._policy = RecipientMapUpdater()

    @property
    def strategy(self) -> ExecutionStrategy:
        return self._strategy

    def rotate(self) -> RotationResult:
        """Replace the active keypair and re-encrypt every store.

        Returns:
            RotationResult; ``success`` is False when the rotation failed
            and was rolled back

        Raises:
            ConfigurationError: If the store directory, policy or a leftover
                session marker prevents starting (nothing is changed)
            LockContentionError: If another rotation holds the lock
            RotationBackupError: If the backup cannot be taken (nothing is changed)
            RotationRollbackError: If a failed rotation could not be rolled back
        """
        strategy = self._strategy
        file_manager = self._file_manager
        self._require_initialized()

        fingerprints = PlaintextFingerprints()
        with RotationTransaction(RotationLock(self._config), fingerprints=fingerprints) as transaction:
            SessionTracker.ensure_no_stale_session(file_manager.read_session())

            old_keyring_id = file_manager.active_keyring_id()
            old_identity = file_manager.read_identity(old_keyring_id)
            old_recipient = CryptoUtils.recipient_for_identity(old_identity)
            live_map = file_manager.read_recipient_map(old_keyring_id)
            stores = file_manager.discover_stores()
            self._policy.preflight(live_map, old_recipient, stores)

            tracker = SessionTracker.start(strategy.persist_session, dry_run=strategy.kind == StrategyKind.DRY_RUN)
            tracker.update(
                old_keyring_id=old_keyring_id,
                previous_keyring_id=file_manager.previous_keyring_id(),
                old_recipient=old_recipient,
            )
            tracker.plan_stores([store.path for store in stores])
            logger.info(
                f"Starting rotation of {len(stores)} store(s)",
                extra={"event": "rotation_started", "session_id": tracker.session_id, "dry_run": not strategy.mutates},
            )

            try:
                backup = strategy.create_backup(
                    session_id=tracker.session_id,
                    keyring_id=old_keyring_id,
                    stores=stores,
                )
            except Exception:
                strategy.clear_session()
                raise

            if backup is not None:
                tracker.update(backup_id=backup.backup_id)
            tracker.advance(SessionPhase.BACKED_UP)
            backup_path = str(backup.path) if backup is not None else None

            stage = "keygen"
            errors: list[ErrorDetail] = []
            try:
                transaction.checkpoint()
                keypair = strategy.generate_keypair(exclude={old_recipient})
                new_keyring_id = KeyGenerator.new_keyring_id()
                tracker.update(new_keyring_id=new_keyring_id, new_recipient=keypair.recipient)
                tracker.advance(SessionPhase.KEY_GENERATED)

                stage = "policy"
                staged_map = self._policy.stage(live_map, old_recipient, keypair.recipient)
                targets = self._policy.resolve_targets(staged_map, stores, keypair.recipient)
                strategy.stage_keyring(new_keyring_id, keypair, staged_map)
                tracker.advance(SessionPhase.POLICY_STAGED)

                stage = "reencrypt"
                tracker.advance(SessionPhase.REENCRYPTING)
                orchestrator = ReencryptionOrchestrator(strategy, tracker, checkpoint=transaction.checkpoint)
                errors = orchestrator.run(
                    stores,
                    targets,
                    old_identity=old_identity,
                    new_identity=keypair.identity,
                    fingerprints=fingerprints,
                )

                if not errors:
                    stage = "activate"
                    transaction.checkpoint()
                    strategy.activate(new_keyring_id, old_keyring_id)
                    tracker.advance(SessionPhase.ACTIVATED)

                    stage = "validate"
                    validation = strategy.validate(
                        keypair.identity,
                        expected_recipient=keypair.recipient,
                        fingerprints=fingerprints,
                    )
                    if not validation.valid:
                        raise ValidationError(f"Canary validation failed: {validation.failures}")
                    tracker.advance(SessionPhase.VALIDATED)

            except Exception as e:
                errors.append(ErrorDetail.from_exception(stage, e))
                logger.error(
                    f"Rotation failed during {stage}: {e}",
                    extra={"event": "rotation_failed", "session_id": tracker.session_id, "stage": stage},
                )

            if errors:
                return self._roll_back(tracker, backup_path, errors)

            result = self._result(tracker, success=True, backup_path=backup_path, errors=[])
            strategy.record_history(self._history(tracker, "validated"))
            strategy.clear_session()
            if strategy.mutates:
                logger.info(
                    f"Rotation completed; active recipient is now {keypair.recipient}",
                    extra={"event": "rotation_completed", "session_id": tracker.session_id},
                )
            return result

    def backup_only(self) -> Backup:
        """Take a standalone backup of the active keyring and every store.

        Raises:
            LockContentionError: If a rotation holds the lock
            RotationBackupError: If the backup cannot be written
        """
        self._require_initialized()
        with RotationLock(self._config):
            return self._live.backup_service.create_backup(
                session_id=None,
                keyring_id=self._file_manager.active_keyring_id(),
                stores=self._file_manager.discover_stores(),
            )

    def validate(self, identity: str | None = None, *, all_stores: bool = False) -> ValidationResult:
        """Canary-decrypt with ``identity`` (the active identity by default)."""
        self._require_initialized()
        if identity is None:
            identity = self._file_manager.read_identity()
        return self._live.validator.validate(identity, all_stores=all_stores)

    def rollback_stale_session(self) -> RotationResult:
        """Roll back a session left behind by a crash or a failed rollback.

        Safe to call repeatedly; each call converges on the pre-rotation state.

        Raises:
            ConfigurationError: If there is no session to roll back
            LockContentionError: If a rotation is in progress
            RotationRollbackError: If the rollback fails again
        """
        with RotationLock(self._config):
            session = self._file_manager.read_session()
            if session is None:
                raise ConfigurationError("No rotation session to roll back")

            self._live.backup_service.discard_incomplete_backups()
            tracker = SessionTracker(session, self._live.persist_session)
            backup_path = None
            if session.backup_id:
                backup_path = str(self._config.backups_dir / session.backup_id)

            if session.phase == SessionPhase.VALIDATED:
                # The rotation finished; only the marker cleanup was lost
                logger.warning(f"Session {session.session_id} had already completed; clearing its marker")
                self._live.clear_session()
                return self._result(tracker, success=True, backup_path=backup_path, errors=[])

            error = ErrorDetail(
                stage="recovery",
                error_type="StaleSession",
                message=f"Session {session.session_id} was left in phase {session.phase.value}",
            )
            return self._roll_back(tracker, backup_path, [error], strategy=self._live)

    def get_rotation_history(self, limit: int | None = None) -> list[RotationHistory]:
        """Rotation history, newest first."""
        history = list(reversed(self._file_manager.read_rotation_history()))
        if limit is not None:
            history = history[:limit]
        return history

    def list_backups(self) -> list[Backup]:
        return self._live.backup_service.list_backups()

    def cleanup_expired_backups(self) -> list[str]:
        """Delete backups past their retention period.

        Raises:
            LockContentionError: If a rotation holds the lock
        """
        with RotationLock(self._config):
            return self._live.backup_service.cleanup_expired_backups()

    def _roll_back(
        self,
        tracker: SessionTracker,
        backup_path: str | None,
        errors: list[ErrorDetail],
        *,
        strategy: ExecutionStrategy | None = None
    ) -> RotationResult:
        strategy = strategy or self._strategy
        try:
            strategy.rollback(tracker)
        except StoreRotatorError as e:
            errors.append(ErrorDetail.from_exception("rollback", e))
            result = self._result(tracker, success=False, backup_path=backup_path, errors=errors)
            # The session marker stays so the rollback can be retried
            raise RotationRollbackError(str(e), result=result) from e

        result = self._result(tracker, success=False, backup_path=backup_path, errors=errors)
        strategy.record_history(self._history(tracker, "rolled-back"))
        strategy.clear_session()
        return result

    def _result(
        self,
        tracker: SessionTracker,
        *,
        success: bool,
        backup_path: str | None,
        errors: list[ErrorDetail]
    ) -> RotationResult:
        session = tracker.session
        return RotationResult(
            success=success,
            session_id=session.session_id,
            backup_path=backup_path,
            per_store_status=dict(session.manifest),
            errors=list(errors),
            phase=session.phase,
            new_recipient=(
                session.new_recipient
                if session.phase == SessionPhase.VALIDATED and not session.dry_run
                else None
            ),
            dry_run=session.dry_run,
        )

    @staticmethod
    def _history(tracker: SessionTracker, outcome: str) -> RotationHistory:
        session = tracker.session
        return RotationHistory(
            session_id=session.session_id,
            outcome=outcome,
            backup_id=session.backup_id,
            old_recipient=session.old_recipient,
            new_recipient=session.new_recipient,
            stores=list(session.manifest),
            metadata={
                "phase": session.phase.value,
                "failed": session.stores_with(StoreStatus.FAILED),
            },
        )

    def _require_initialized(self) -> None:
        if self._file_manager.active_keyring_id() is None:
            raise ConfigurationError(f"{self._config.root} has no active keyring; run init first")
