"""Rotation backup service for creating and restoring backups."""

import json
import logging
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from splurge_store_rotator.constants import Constants
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import (
    ConfigurationError,
    FileOperationError,
    RotationBackupError,
)
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import Backup, SecretStore, StoreBackupEntry

logger = logging.getLogger(__name__)


class RotationBackupService:
    """Service for managing rotation backups.

    A backup directory is assembled under a temporary name and renamed into
    place only once every file has been copied and checksummed, so a backup
    either exists completely or not at all. Files are read-only once written.
    """

    _STORES_DIR = "stores"

    def __init__(self, file_manager: FileManager):
        """Initialize the rotation backup service.

        Args:
            file_manager: File manager instance
        """
        self._file_manager = file_manager
        self._config = file_manager.config

    def create_backup(
        self,
        *,
        session_id: str | None,
        keyring_id: str,
        stores: list[SecretStore]
    ) -> Backup:
        """Snapshot the active identity, the live policy and every store.

        Args:
            session_id: Rotation session the backup belongs to, if any
            keyring_id: Keyring whose identity and policy are captured
            stores: Stores whose current ciphertext is captured

        Returns:
            The verified Backup

        Raises:
            RotationBackupError: If any part of the backup cannot be written
        """
        created_at = datetime.now(timezone.utc)
        backup_id = f"{created_at.strftime('%Y%m%dT%H%M%SZ')}-{uuid.uuid4().hex[:8]}"
        final_dir = self._config.backups_dir / backup_id
        staging_dir = self._config.backups_dir / f".{backup_id}{Constants.TEMP_SUFFIX()}"
        keyring = self._file_manager.keyring_path(keyring_id)

        try:
            staging_dir.mkdir(parents=True, exist_ok=False)
            self._file_manager.set_secure_permissions(staging_dir, 0o700)

            identity_sha = self._copy_file(
                keyring / Constants.IDENTITY_FILE_NAME(),
                staging_dir / Constants.IDENTITY_FILE_NAME(),
            )
            map_sha = self._copy_file(
                keyring / Constants.RECIPIENT_MAP_FILE_NAME(),
                staging_dir / Constants.RECIPIENT_MAP_FILE_NAME(),
            )

            entries = []
            for store in stores:
                source = self._file_manager.store_file(store.path)
                target = staging_dir / self._STORES_DIR / store.path
                sha = self._copy_file(source, target)
                entries.append(StoreBackupEntry(
                    path=store.path,
                    format=store.format,
                    sha256=sha,
                    size=target.stat().st_size,
                ))

            backup = Backup(
                backup_id=backup_id,
                session_id=session_id,
                keyring_id=keyring_id,
                previous_keyring_id=self._file_manager.previous_keyring_id(),
                identity_sha256=identity_sha,
                recipient_map_sha256=map_sha,
                stores=entries,
                created_at=created_at,
                expires_at=Backup.retained_until(created_at, self._config.backup_retention_days),
            )
            self._file_manager.write_bytes_atomic(
                staging_dir / Constants.BACKUP_MANIFEST_FILE_NAME(),
                self._manifest_bytes(backup),
                mode=0o400,
            )
            self._lock_down(staging_dir)
            staging_dir.rename(final_dir)
        except (OSError, FileOperationError, ConfigurationError) as e:
            self._discard(staging_dir)
            raise RotationBackupError(f"Failed to create backup {backup_id}: {e}") from e

        backup.path = final_dir
        logger.info(
            f"Backup {backup_id} created with {len(entries)} stores",
            extra={"event": "backup_created", "backup_id": backup_id, "session_id": session_id},
        )
        return backup

    def plan_backup(self, *, keyring_id: str, stores: list[SecretStore]) -> dict[str, Any]:
        """Describe the backup a rotation would take, without writing anything."""
        return {
            "keyring_id": keyring_id,
            "stores": [store.path for store in stores],
            "directory": str(self._config.backups_dir),
            "retention_days": self._config.backup_retention_days,
        }

    def load_backup(self, backup_id: str) -> Backup:
        """Read a backup manifest.

        Raises:
            RotationBackupError: If the backup is missing or its manifest is invalid
        """
        backup_dir = self._config.backups_dir / backup_id
        try:
            data = self._file_manager.read_json(backup_dir / Constants.BACKUP_MANIFEST_FILE_NAME())
        except FileOperationError as e:
            raise RotationBackupError(str(e)) from e
        if data is None:
            raise RotationBackupError(f"Backup {backup_id} not found")
        try:
            return Backup.from_dict(data, path=backup_dir)
        except (KeyError, TypeError, ValueError) as e:
            raise RotationBackupError(f"Backup {backup_id} has an invalid manifest: {e}") from e

    def list_backups(self) -> list[Backup]:
        """All complete backups, newest first. Unreadable ones are skipped."""
        backups_dir = self._config.backups_dir
        if not backups_dir.is_dir():
            return []

        backups = []
        for entry in backups_dir.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                backups.append(self.load_backup(entry.name))
            except RotationBackupError as e:
                logger.warning(f"Skipping unreadable backup {entry.name}: {e}")
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    def backup_store_bytes(self, backup: Backup, entry: StoreBackupEntry) -> bytes:
        """Read a store's backed-up ciphertext, verifying its checksum.

        Raises:
            RotationBackupError: If the copy is missing or does not match the manifest
        """
        copy_path = self._backup_dir(backup) / self._STORES_DIR / entry.path
        return self._read_verified(copy_path, entry.sha256)

    def restore_store(self, backup: Backup, entry: StoreBackupEntry) -> bool:
        """Put a store's backed-up ciphertext back in place.

        Returns:
            True if the store was rewritten, False if it already matched

        Raises:
            RotationBackupError: If the backup copy is damaged
            FileOperationError: If the store cannot be written
        """
        data = self.backup_store_bytes(backup, entry)
        target = self._file_manager.store_file(entry.path)
        if target.is_file() and self._file_manager.sha256_file(target) == entry.sha256:
            return False

        self._file_manager.write_store_atomic(entry.path, data)
        logger.info(
            f"Restored store {entry.path} from backup {backup.backup_id}",
            extra={"event": "store_restored", "store": entry.path, "backup_id": backup.backup_id},
        )
        return True

    def restore_keyring(self, backup: Backup) -> bool:
        """Restore the backed-up identity and policy into their keyring directory.

        Returns:
            True if any file was rewritten
        """
        backup_dir = self._backup_dir(backup)
        keyring = self._file_manager.keyring_path(backup.keyring_id)
        restored = False
        for name, sha in (
            (Constants.IDENTITY_FILE_NAME(), backup.identity_sha256),
            (Constants.RECIPIENT_MAP_FILE_NAME(), backup.recipient_map_sha256),
        ):
            data = self._read_verified(backup_dir / name, sha)
            target = keyring / name
            if target.is_file() and self._file_manager.sha256_file(target) == sha:
                continue
            keyring.mkdir(parents=True, exist_ok=True)
            self._file_manager.set_secure_permissions(keyring, 0o700)
            self._file_manager.write_bytes_atomic(target, data, mode=0o600)
            restored = True
        return restored

    def cleanup_expired_backups(self) -> list[str]:
        """Delete backups whose retention period has elapsed.

        Returns:
            Identifiers of the removed backups
        """
        removed = []
        for backup in self.list_backups():
            if not backup.is_expired():
                continue
            try:
                shutil.rmtree(self._backup_dir(backup))
            except OSError as e:
                raise FileOperationError(f"Failed to delete backup {backup.backup_id}: {e}") from e
            removed.append(backup.backup_id)
            logger.info(f"Deleted expired backup {backup.backup_id}", extra={"event": "backup_expired"})
        self.discard_incomplete_backups()
        return removed

    def discard_incomplete_backups(self) -> list[str]:
        """Delete staging directories left by a backup that never completed.

        Only safe while holding the rotation lock, since every backup is
        assembled under it.

        Returns:
            Names of the removed staging directories
        """
        backups_dir = self._config.backups_dir
        if not backups_dir.is_dir():
            return []

        removed = []
        for entry in backups_dir.iterdir():
            if not (entry.is_dir() and entry.name.startswith(".") and entry.name.endswith(Constants.TEMP_SUFFIX())):
                continue
            try:
                shutil.rmtree(entry)
            except OSError as e:
                raise FileOperationError(f"Failed to delete incomplete backup {entry.name}: {e}") from e
            removed.append(entry.name)
            logger.warning(
                f"Deleted incomplete backup {entry.name}",
                extra={"event": "backup_incomplete_discarded"},
            )
        return removed

    def _backup_dir(self, backup: Backup) -> Path:
        return backup.path or self._config.backups_dir / backup.backup_id

    def _copy_file(self, source: Path, target: Path) -> str:
        try:
            data = source.read_bytes()
        except OSError as e:
            raise FileOperationError(f"Failed to read {source}: {e}") from e
        target.parent.mkdir(parents=True, exist_ok=True)
        self._file_manager.write_bytes_atomic(target, data, mode=0o400)

        expected = CryptoUtils.sha256_hex(data)
        if self._file_manager.sha256_file(target) != expected:
            raise FileOperationError(f"Backup copy of {source} does not match the original")
        return expected

    @staticmethod
    def _read_verified(file_path: Path, sha256: str) -> bytes:
        try:
            data = file_path.read_bytes()
        except OSError as e:
            raise RotationBackupError(f"Backup file {file_path} is unreadable: {e}") from e
        if not CryptoUtils.constant_time_compare(
            CryptoUtils.sha256_hex(data).encode("ascii"),
            sha256.encode("ascii"),
        ):
            raise RotationBackupError(f"Backup file {file_path} failed checksum verification")
        return data

    @staticmethod
    def _manifest_bytes(backup: Backup) -> bytes:
        return (json.dumps(backup.to_dict(), indent=2) + "\n").encode("utf-8")

    def _lock_down(self, directory: Path) -> None:
        for path in directory.rglob("*"):
            if path.is_dir():
                self._file_manager.set_secure_permissions(path, 0o700)

    @staticmethod
    def _discard(directory: Path) -> None:
        if directory.exists():
            shutil.rmtree(directory, ignore_errors=True)
