"""File management for the secret-store directory with atomic operations."""

import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from splurge_store_rotator.config import SessionConfig
from splurge_store_rotator.constants import Constants
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import (
    ConfigurationError,
    CryptoError,
    FileOperationError,
)
from splurge_store_rotator.models import (
    KeyPair,
    RecipientMap,
    RotationHistory,
    RotationSession,
    SecretStore,
    StoreFormat,
)
from splurge_store_rotator.store_codec import StoreCodec


class FileManager:
    """Manages file operations for the secret-store directory with atomic operations."""

    def __init__(self, config: SessionConfig):
        """Initialize the file manager.

        Args:
            config: Session configuration naming the secret-store root
        """
        self._config = config

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def root(self) -> Path:
        return self._config.root

    def ensure_state_directory(self) -> None:
        """Create the owner-only state directory tree if needed."""
        for directory in (
            self._config.state_dir,
            self._config.keyring_dir,
            self._config.backups_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
            self.set_secure_permissions(directory, 0o700)

    # Atomic primitives

    def write_bytes_atomic(
        self,
        file_path: Path,
        data: bytes,
        *,
        mode: int = 0o600
    ) -> None:
        """Write bytes atomically: temporary file beside the target, fsync, rename.

        Args:
            file_path: Path to the target file
            data: Data to write
            mode: Permission bits for the final file

        Raises:
            FileOperationError: If write operation fails
        """
        temp_file = self.temp_path_for(file_path)

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            if temp_file.exists():
                temp_file.unlink()
            self._write_new_file(temp_file, data, mode=mode)
            os.replace(temp_file, file_path)
            self._fsync_directory(file_path.parent)

        except Exception as e:
            if temp_file.exists():
                temp_file.unlink()
            raise FileOperationError(f"Failed to write file {file_path}: {e}") from e

    def write_json_atomic(
        self,
        file_path: Path,
        data: dict[str, Any]
    ) -> None:
        """Write JSON data atomically using temporary file.

        Raises:
            FileOperationError: If write operation fails
        """
        payload = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
        self.write_bytes_atomic(file_path, payload.encode("utf-8"))

    def read_json(self, file_path: Path) -> Optional[dict[str, Any]]:
        """Read JSON data from file.

        Returns:
            JSON data as dictionary, or None if file doesn't exist

        Raises:
            FileOperationError: If read operation fails
        """
        if not file_path.exists():
            return None

        try:
            with file_path.open(encoding="utf-8") as f:
                return json.load(f)
        except Exception as e:
            raise FileOperationError(f"Failed to read file {file_path}: {e}") from e

    def _write_new_file(self, file_path: Path, data: bytes, *, mode: int) -> None:
        """Create a file that must not already exist, with its final permissions."""
        fd = os.open(file_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        self.set_secure_permissions(file_path, mode)

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        if os.name == "nt":
            return
        try:
            fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)

    @staticmethod
    def temp_path_for(file_path: Path) -> Path:
        """Temporary sibling used for two-phase writes of ``file_path``."""
        return file_path.with_name(f".{file_path.name}{Constants.TEMP_SUFFIX()}")

    @staticmethod
    def set_secure_permissions(file_path: Path, mode: int = 0o600) -> None:
        """Set owner-only permissions on a file or directory.

        Args:
            file_path: Path to secure
            mode: Permission bits (600 for files, 700 for directories)
        """
        try:
            os.chmod(file_path, mode)
        except NotImplementedError:
            # Platforms without POSIX permission bits
            pass

    @staticmethod
    def sha256_file(file_path: Path) -> str:
        return CryptoUtils.sha256_hex(file_path.read_bytes())

    # Keyrings

    def keyring_path(self, keyring_id: str) -> Path:
        return self._config.keyring_dir / keyring_id

    def active_keyring_id(self) -> str | None:
        """Keyring the active pointer refers to, or None before init."""
        return self._read_link(self._config.active_link)

    def previous_keyring_id(self) -> str | None:
        return self._read_link(self._config.previous_link)

    def keyring_exists(self, keyring_id: str) -> bool:
        keyring = self.keyring_path(keyring_id)
        return (keyring / Constants.IDENTITY_FILE_NAME()).is_file()

    def write_keyring(
        self,
        keyring_id: str,
        keypair: KeyPair,
        recipient_map: RecipientMap
    ) -> Path:
        """Write a complete keyring directory (identity + policy).

        The directory is inert until a pointer refers to it.

        Raises:
            FileOperationError: If the keyring cannot be written
        """
        keyring = self.keyring_path(keyring_id)
        try:
            keyring.mkdir(parents=True, exist_ok=True)
            self.set_secure_permissions(keyring, 0o700)
        except OSError as e:
            raise FileOperationError(f"Failed to create keyring {keyring_id}: {e}") from e

        self.write_identity_file(keyring / Constants.IDENTITY_FILE_NAME(), keypair)
        self.save_recipient_map(recipient_map, keyring_id=keyring_id)
        return keyring

    def write_identity_file(self, file_path: Path, keypair: KeyPair) -> None:
        created = datetime.now(timezone.utc).isoformat()
        content = (
            f"# created: {created}\n"
            f"# public key: {keypair.recipient}\n"
            f"{keypair.identity}\n"
        )
        self.write_bytes_atomic(file_path, content.encode("ascii"), mode=0o600)

    @staticmethod
    def parse_identity_file(content: str) -> str:
        """Return the identity line of an identity file.

        Raises:
            ConfigurationError: If the file holds no identity
        """
        for line in content.splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                return line
        raise ConfigurationError("Identity file does not contain an identity")

    def read_identity(self, keyring_id: str | None = None) -> str:
        """Read the identity of a keyring (the active one by default).

        Raises:
            ConfigurationError: If the identity file is missing or empty
        """
        identity_file = self._keyring_file(keyring_id, Constants.IDENTITY_FILE_NAME())
        if not identity_file.is_file():
            raise ConfigurationError(f"Identity file not found: {identity_file}")
        try:
            content = identity_file.read_text(encoding="ascii")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Failed to read identity file {identity_file}: {e}") from e
        return self.parse_identity_file(content)

    def read_recipient_map(self, keyring_id: str | None = None) -> RecipientMap:
        """Read the recipient map of a keyring (the live policy by default).

        Raises:
            ConfigurationError: If the policy is missing or invalid
        """
        map_file = self._keyring_file(keyring_id, Constants.RECIPIENT_MAP_FILE_NAME())
        try:
            data = self.read_json(map_file)
        except FileOperationError as e:
            raise ConfigurationError(str(e)) from e
        if data is None:
            raise ConfigurationError(f"Recipient map not found: {map_file}")

        try:
            recipient_map = RecipientMap.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid recipient map {map_file}: {e}") from e
        if not recipient_map.rules:
            raise ConfigurationError(f"Recipient map {map_file} has no rules")
        return recipient_map

    def save_recipient_map(self, recipient_map: RecipientMap, *, keyring_id: str) -> None:
        map_file = self.keyring_path(keyring_id) / Constants.RECIPIENT_MAP_FILE_NAME()
        self.write_json_atomic(map_file, recipient_map.to_dict())

    def point_link(self, link: Path, keyring_id: str) -> None:
        """Atomically repoint ``link`` at a keyring by renaming a fresh symlink over it.

        Raises:
            FileOperationError: If the pointer cannot be swapped
        """
        temp_link = self.temp_path_for(link)
        try:
            if temp_link.is_symlink() or temp_link.exists():
                temp_link.unlink()
            os.symlink(keyring_id, temp_link, target_is_directory=True)
            os.replace(temp_link, link)
            self._fsync_directory(link.parent)
        except OSError as e:
            if temp_link.is_symlink():
                temp_link.unlink()
            raise FileOperationError(f"Failed to point {link.name} at keyring {keyring_id}: {e}") from e

    def remove_link(self, link: Path) -> None:
        try:
            if link.is_symlink():
                link.unlink()
        except OSError as e:
            raise FileOperationError(f"Failed to remove {link}: {e}") from e

    def delete_keyring(self, keyring_id: str) -> None:
        """Delete a keyring directory that no pointer refers to."""
        if keyring_id in (self.active_keyring_id(), self.previous_keyring_id()):
            raise FileOperationError(f"Refusing to delete referenced keyring {keyring_id}")
        keyring = self.keyring_path(keyring_id)
        try:
            if keyring.exists():
                shutil.rmtree(keyring)
        except OSError as e:
            raise FileOperationError(f"Failed to delete keyring {keyring_id}: {e}") from e

    def _keyring_file(self, keyring_id: str | None, name: str) -> Path:
        if keyring_id is None:
            if self.active_keyring_id() is None:
                raise ConfigurationError(
                    f"No active keyring in {self._config.keyring_dir}; run init first"
                )
            return self._config.active_link / name
        return self.keyring_path(keyring_id) / name

    @staticmethod
    def _read_link(link: Path) -> str | None:
        if not link.is_symlink():
            return None
        return Path(os.readlink(link)).name

    # Stores

    def store_file(self, relative_path: str) -> Path:
        """Absolute path of a store, refusing paths that escape the root."""
        candidate = (self.root / relative_path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ConfigurationError(f"Store path {relative_path} is outside {self.root}")
        return candidate

    def relative_store_path(self, file_path: Path) -> str:
        return Path(file_path).resolve().relative_to(self.root).as_posix()

    def discover_stores(self) -> list[SecretStore]:
        """Enumerate stores under the root in stable (sorted) order."""
        found: dict[str, Path] = {}
        for pattern in self._config.store_patterns:
            for file_path in self.root.rglob(pattern):
                if not file_path.is_file() or file_path.is_symlink():
                    continue
                relative = file_path.relative_to(self.root)
                if self._config.state_dir_name in relative.parts:
                    continue
                if file_path.name.endswith(Constants.TEMP_SUFFIX()):
                    continue
                found[relative.as_posix()] = file_path

        stores = []
        for relative in sorted(found):
            stores.append(self.describe_store(relative))
        return stores

    def describe_store(self, relative_path: str) -> SecretStore:
        """Build a SecretStore for an existing file, reading recipients from its header."""
        store_format = StoreFormat.for_path(relative_path)
        try:
            recipients = StoreCodec.recipients(store_format, self.read_store_bytes(relative_path))
        except (CryptoError, FileOperationError):
            recipients = frozenset()
        return SecretStore(path=relative_path, format=store_format, current_recipients=recipients)

    def read_store_bytes(self, relative_path: str) -> bytes:
        file_path = self.store_file(relative_path)
        try:
            return file_path.read_bytes()
        except OSError as e:
            raise FileOperationError(f"Failed to read store {relative_path}: {e}") from e

    def write_store_atomic(self, relative_path: str, data: bytes) -> None:
        self.write_bytes_atomic(self.store_file(relative_path), data, mode=0o600)

    def stage_store(self, relative_path: str, data: bytes) -> Path:
        """Write ``data`` to the store's temporary sibling without touching the store.

        Raises:
            FileOperationError: If the temporary file cannot be written
        """
        temp_file = self.temp_path_for(self.store_file(relative_path))
        try:
            if temp_file.exists():
                temp_file.unlink()
            self._write_new_file(temp_file, data, mode=0o600)
        except OSError as e:
            self.discard_staged_store(relative_path)
            raise FileOperationError(f"Failed to stage store {relative_path}: {e}") from e
        return temp_file

    def commit_staged_store(self, relative_path: str) -> None:
        """Atomically replace a store with its staged temporary sibling.

        Raises:
            FileOperationError: If the rename fails
        """
        target = self.store_file(relative_path)
        try:
            os.replace(self.temp_path_for(target), target)
            self._fsync_directory(target.parent)
        except OSError as e:
            raise FileOperationError(f"Failed to replace store {relative_path}: {e}") from e

    def discard_staged_store(self, relative_path: str) -> None:
        temp_file = self.temp_path_for(self.store_file(relative_path))
        try:
            if temp_file.exists():
                temp_file.unlink()
        except OSError as e:
            raise FileOperationError(f"Failed to remove {temp_file}: {e}") from e

    # Session marker

    def save_session(self, session: RotationSession) -> None:
        self.write_json_atomic(self._config.session_file, session.to_dict())

    def read_session(self) -> Optional[RotationSession]:
        data = self.read_json(self._config.session_file)
        if data is None:
            return None

        try:
            return RotationSession.from_dict(data)
        except Exception as e:
            raise FileOperationError(f"Failed to parse rotation session: {e}") from e

    def delete_session(self) -> None:
        try:
            if self._config.session_file.exists():
                self._config.session_file.unlink()
        except OSError as e:
            raise FileOperationError(f"Failed to delete session marker: {e}") from e

    # Rotation history

    def save_rotation_history(self, history: list[RotationHistory]) -> None:
        data = {
            "rotation_history": [h.to_dict() for h in history],
            "version": "1.0",
        }
        self.write_json_atomic(self._config.history_file, data)

    def read_rotation_history(self) -> list[RotationHistory]:
        data = self.read_json(self._config.history_file)
        if data is None:
            return []

        try:
            return [RotationHistory.from_dict(entry) for entry in data.get("rotation_history", [])]
        except Exception as e:
            raise FileOperationError(f"Failed to parse rotation history: {e}") from e
