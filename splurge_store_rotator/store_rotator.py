"""StoreRotator facade over the store and rotation services."""

import logging
from pathlib import Path
from typing import Any

from splurge_store_rotator.config import SessionConfig
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import ConfigurationError
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import (
    Backup,
    RecipientMap,
    RecipientRule,
    RotationHistory,
    RotationResult,
    SecretStore,
    ValidationResult,
)
from splurge_store_rotator.services import KeyRotationManager, StoreService
from splurge_store_rotator.services.rotation.keygen import KeyGenerator
from splurge_store_rotator.services.rotation.lock import RotationLock
from splurge_store_rotator.services.rotation.strategy import DryRunExecution, LiveExecution

logger = logging.getLogger(__name__)


class StoreRotator:
    """Entry point for managing one secret-store directory."""

    def __init__(
        self,
        root: str | Path | None = None,
        *,
        config: SessionConfig | None = None,
        **settings: Any
    ) -> None:
        """Initialize the Store Rotator.

        Args:
            root: Secret-store directory (ignored when ``config`` is given)
            config: Complete session configuration
            **settings: Extra SessionConfig fields used with ``root``

        Raises:
            ConfigurationError: If neither root nor config is given, or a setting is invalid
        """
        if config is None:
            if root is None:
                raise ConfigurationError("Either root or config is required")
            config = SessionConfig(root=Path(root), **settings)
        elif root is not None or settings:
            raise ConfigurationError("Pass either config or root/settings, not both")

        self._config = config
        self._file_manager = FileManager(config)
        self._store_service = StoreService(self._file_manager)
        self._rotation_manager = KeyRotationManager(self._file_manager)

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def root(self) -> Path:
        return self._config.root

    def is_initialized(self) -> bool:
        return self._file_manager.active_keyring_id() is not None

    def init(self, *, extra_recipients: list[str] | None = None) -> dict[str, Any]:
        """Create the state directory and a first keypair with a catch-all policy.

        Args:
            extra_recipients: Co-recipients added to the catch-all rule

        Returns:
            Keyring id, recipient and identity file location (never the identity)

        Raises:
            ConfigurationError: If the directory is already initialized or a
                co-recipient is malformed
        """
        for recipient in extra_recipients or []:
            if not CryptoUtils.is_valid_recipient(recipient):
                raise ConfigurationError(f"Invalid recipient {recipient!r}")
        if self.is_initialized():
            raise ConfigurationError(f"{self.root} is already initialized")

        self._file_manager.ensure_state_directory()
        with RotationLock(self._config):
            if self.is_initialized():
                raise ConfigurationError(f"{self.root} is already initialized")

            keypair = KeyGenerator().generate()
            keyring_id = KeyGenerator.new_keyring_id()
            recipients = [keypair.recipient]
            recipients.extend(r for r in extra_recipients or [] if r not in recipients)
            recipient_map = RecipientMap(rules=[RecipientRule(path_regex=".*", recipients=recipients)])

            self._file_manager.write_keyring(keyring_id, keypair, recipient_map)
            self._file_manager.point_link(self._config.active_link, keyring_id)

        logger.info(
            f"Initialized {self.root} with recipient {keypair.recipient}",
            extra={"event": "initialized", "keyring_id": keyring_id},
        )
        return {
            "keyring_id": keyring_id,
            "recipient": keypair.recipient,
            "identity_file": str(self._config.active_identity_file),
        }

    def recipient(self) -> str:
        """The active Recipient, for sharing with other tooling."""
        return CryptoUtils.recipient_for_identity(self._file_manager.read_identity())

    def recipient_map(self) -> RecipientMap:
        return self._file_manager.read_recipient_map()

    # Rotation

    def rotate(self, *, dry_run: bool | None = None) -> RotationResult:
        """Rotate the active keypair; see KeyRotationManager.rotate."""
        return self._manager_for(dry_run).rotate()

    def backup_only(self) -> Backup:
        return self._rotation_manager.backup_only()

    def validate(self, identity: str | None = None, *, all_stores: bool = False) -> ValidationResult:
        return self._rotation_manager.validate(identity, all_stores=all_stores)

    def rollback_stale_session(self) -> RotationResult:
        return self._rotation_manager.rollback_stale_session()

    def history(self, limit: int | None = None) -> list[RotationHistory]:
        return self._rotation_manager.get_rotation_history(limit)

    def list_backups(self) -> list[Backup]:
        return self._rotation_manager.list_backups()

    def cleanup_expired_backups(self) -> list[str]:
        return self._rotation_manager.cleanup_expired_backups()

    def status(self) -> dict[str, Any]:
        """Summary of the directory: keys, stores, session marker, lock and backups."""
        initialized = self.is_initialized()
        session = self._file_manager.read_session()
        lock_holder = RotationLock(self._config).holder()
        return {
            "root": str(self.root),
            "initialized": initialized,
            "active_keyring": self._file_manager.active_keyring_id(),
            "previous_keyring": self._file_manager.previous_keyring_id(),
            "recipient": self.recipient() if initialized else None,
            "stores": len(self._file_manager.discover_stores()),
            "stale_session": session.to_dict() if session else None,
            "lock_holder": lock_holder,
            "backups": len(self._rotation_manager.list_backups()),
        }

    # Stores

    def list_stores(self) -> list[SecretStore]:
        return self._store_service.list_stores()

    def seal(self, relative_path: str, plaintext: bytes | bytearray) -> SecretStore:
        return self._store_service.seal(relative_path, plaintext)

    def reveal(self, relative_path: str) -> bytes:
        return self._store_service.reveal(relative_path)

    def list_keys(self, relative_path: str) -> list[str]:
        return self._store_service.list_keys(relative_path)

    def get_value(self, relative_path: str, key: str) -> Any:
        return self._store_service.get_value(relative_path, key)

    def set_value(self, relative_path: str, key: str, value: Any) -> SecretStore:
        return self._store_service.set_value(relative_path, key, value)

    def _manager_for(self, dry_run: bool | None) -> KeyRotationManager:
        if dry_run is None or dry_run == self._config.dry_run:
            return self._rotation_manager
        live = LiveExecution(self._file_manager)
        strategy = DryRunExecution(live) if dry_run else live
        return KeyRotationManager(self._file_manager, strategy=strategy)
