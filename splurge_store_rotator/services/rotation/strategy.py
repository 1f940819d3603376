"""Execution strategies: the real rotation and its dry-run decorator."""

import logging
from abc import ABC, abstractmethod
from enum import Enum

from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import (
    Backup,
    KeyPair,
    RecipientMap,
    RotationHistory,
    RotationSession,
    SecretStore,
    ValidationResult,
)
from splurge_store_rotator.services.rotation.activation import ActivationController
from splurge_store_rotator.services.rotation.backup import RotationBackupService
from splurge_store_rotator.services.rotation.keygen import KeyGenerator
from splurge_store_rotator.services.rotation.operations import (
    PlaintextFingerprints,
    reencrypt_store,
)
from splurge_store_rotator.services.rotation.rollback import RollbackController
from splurge_store_rotator.services.rotation.session import SessionTracker
from splurge_store_rotator.services.rotation.validator import Validator

logger = logging.getLogger(__name__)


class StrategyKind(str, Enum):
    LIVE = "live"
    DRY_RUN = "dry-run"


class ExecutionStrategy(ABC):
    """Every side-effecting step of a rotation, behind one interface."""

    kind: StrategyKind

    @property
    def mutates(self) -> bool:
        return self.kind == StrategyKind.LIVE

    @abstractmethod
    def create_backup(self, *, session_id: str, keyring_id: str, stores: list[SecretStore]) -> Backup | None:
        ...

    @abstractmethod
    def generate_keypair(self, *, exclude: set[str]) -> KeyPair:
        ...

    @abstractmethod
    def stage_keyring(self, keyring_id: str, keypair: KeyPair, staged_map: RecipientMap) -> None:
        ...

    @abstractmethod
    def reencrypt_store(
        self,
        store: SecretStore,
        *,
        old_identity: str,
        new_identity: str,
        recipients: frozenset[str],
        fingerprints: PlaintextFingerprints | None = None
    ) -> None:
        ...

    @abstractmethod
    def activate(self, new_keyring_id: str, old_keyring_id: str) -> None:
        ...

    @abstractmethod
    def validate(
        self,
        identity: str,
        *,
        expected_recipient: str,
        fingerprints: PlaintextFingerprints | None = None
    ) -> ValidationResult:
        ...

    @abstractmethod
    def rollback(self, tracker: SessionTracker) -> list[str]:
        ...

    @abstractmethod
    def persist_session(self, session: RotationSession) -> None:
        ...

    @abstractmethod
    def clear_session(self) -> None:
        ...

    @abstractmethod
    def record_history(self, entry: RotationHistory) -> None:
        ...


class LiveExecution(ExecutionStrategy):
    """Performs each step for real through the rotation components."""

    kind = StrategyKind.LIVE

    def __init__(self, file_manager: FileManager):
        self._file_manager = file_manager
        self.backup_service = RotationBackupService(file_manager)
        self.key_generator = KeyGenerator()
        self.activation = ActivationController(file_manager)
        self.validator = Validator(file_manager)
        self.rollback_controller = RollbackController(file_manager, self.backup_service, self.activation)

    @property
    def file_manager(self) -> FileManager:
        return self._file_manager

    def create_backup(self, *, session_id: str, keyring_id: str, stores: list[SecretStore]) -> Backup:
        return self.backup_service.create_backup(session_id=session_id, keyring_id=keyring_id, stores=stores)

    def generate_keypair(self, *, exclude: set[str]) -> KeyPair:
        return self.key_generator.generate(exclude=exclude)

    def stage_keyring(self, keyring_id: str, keypair: KeyPair, staged_map: RecipientMap) -> None:
        self._file_manager.write_keyring(keyring_id, keypair, staged_map)

    def reencrypt_store(
        self,
        store: SecretStore,
        *,
        old_identity: str,
        new_identity: str,
        recipients: frozenset[str],
        fingerprints: PlaintextFingerprints | None = None
    ) -> None:
        reencrypt_store(
            store,
            old_identity=old_identity,
            new_identity=new_identity,
            recipients=recipients,
            file_manager=self._file_manager,
            fingerprints=fingerprints,
        )

    def activate(self, new_keyring_id: str, old_keyring_id: str) -> None:
        self.activation.activate(new_keyring_id, old_keyring_id)

    def validate(
        self,
        identity: str,
        *,
        expected_recipient: str,
        fingerprints: PlaintextFingerprints | None = None
    ) -> ValidationResult:
        return self.validator.validate(identity, expected_recipient=expected_recipient, fingerprints=fingerprints)

    def rollback(self, tracker: SessionTracker) -> list[str]:
        return self.rollback_controller.rollback(tracker)

    def persist_session(self, session: RotationSession) -> None:
        self._file_manager.save_session(session)

    def clear_session(self) -> None:
        self._file_manager.delete_session()

    def record_history(self, entry: RotationHistory) -> None:
        history = self._file_manager.read_rotation_history()
        history.append(entry)
        self._file_manager.save_rotation_history(history[-self._file_manager.config.history_limit:])


class DryRunExecution(ExecutionStrategy):
    """Logs what a live rotation would do, touching neither keys nor files.

    Only read-only planning is delegated to the wrapped live strategy.
    """

    kind = StrategyKind.DRY_RUN
    PLACEHOLDER_RECIPIENT = "<new-recipient>"

    def __init__(self, live: LiveExecution):
        self._live = live
        self.planned: list[str] = []

    def _would(self, message: str) -> None:
        self.planned.append(message)
        logger.info(f"[dry-run] would {message}", extra={"event": "dry_run_step"})

    def create_backup(self, *, session_id: str, keyring_id: str, stores: list[SecretStore]) -> None:
        plan = self._live.backup_service.plan_backup(keyring_id=keyring_id, stores=stores)
        self._would(f"back up keyring {keyring_id} and {len(plan['stores'])} store(s) to {plan['directory']}")
        return None

    def generate_keypair(self, *, exclude: set[str]) -> KeyPair:
        self._would("generate a new keypair")
        return KeyPair(identity=self.PLACEHOLDER_RECIPIENT, recipient=self.PLACEHOLDER_RECIPIENT)

    def stage_keyring(self, keyring_id: str, keypair: KeyPair, staged_map: RecipientMap) -> None:
        self._would(f"stage keyring {keyring_id} with {len(staged_map.rules)} recipient rule(s)")

    def reencrypt_store(
        self,
        store: SecretStore,
        *,
        old_identity: str,
        new_identity: str,
        recipients: frozenset[str],
        fingerprints: PlaintextFingerprints | None = None
    ) -> None:
        self._would(f"re-encrypt {store.path} for {len(recipients)} recipient(s)")

    def activate(self, new_keyring_id: str, old_keyring_id: str) -> None:
        self._would(f"activate keyring {new_keyring_id} and retain {old_keyring_id} as previous")

    def validate(
        self,
        identity: str,
        *,
        expected_recipient: str,
        fingerprints: PlaintextFingerprints | None = None
    ) -> ValidationResult:
        canaries = [store.path for store in self._live.validator.canaries()]
        self._would(f"canary-decrypt {', '.join(canaries) or 'a synthetic canary'}")
        return ValidationResult(valid=True, recipient=None, checked=canaries)

    def rollback(self, tracker: SessionTracker) -> list[str]:
        self._would(f"roll back session {tracker.session_id}")
        return []

    def persist_session(self, session: RotationSession) -> None:
        pass

    def clear_session(self) -> None:
        pass

    def record_history(self, entry: RotationHistory) -> None:
        self._would(f"record {entry.outcome} in rotation history")
