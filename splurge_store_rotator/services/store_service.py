"""Service for sealing, revealing and editing individual secret stores."""

import json
import logging
from typing import Any

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import ConfigurationError
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import SecretStore, StoreFormat
from splurge_store_rotator.services.rotation.lock import RotationLock
from splurge_store_rotator.services.rotation.operations import PlaintextBuffer
from splurge_store_rotator.services.rotation.session import SessionTracker
from splurge_store_rotator.store_codec import StoreCodec

logger = logging.getLogger(__name__)


class StoreService:
    """Encrypts stores under the live policy and decrypts them with the active identity.

    Writes take the rotation lock so they never interleave with a rotation.
    """

    def __init__(self, file_manager: FileManager):
        """Initialize the store service.

        Args:
            file_manager: File manager instance
        """
        self._file_manager = file_manager
        self._config = file_manager.config

    def seal(self, relative_path: str, plaintext: bytes | bytearray) -> SecretStore:
        """Encrypt ``plaintext`` into the store at ``relative_path``.

        Structured stores (``*.json``) must be given a JSON object.

        Raises:
            ConfigurationError: If no rule covers the path or the path is invalid
            CryptoError: If the plaintext is not a JSON object for a structured store
            LockContentionError: If a rotation is in progress
        """
        self._check_store_path(relative_path)
        with RotationLock(self._config):
            SessionTracker.ensure_no_stale_session(self._file_manager.read_session())
            return self._seal_locked(relative_path, plaintext)

    def reveal(self, relative_path: str) -> bytes:
        """Decrypt a store with the active identity.

        Raises:
            FileOperationError: If the store cannot be read
            CryptoError: If the store cannot be decrypted
        """
        store_format = StoreFormat.for_path(relative_path)
        raw = self._file_manager.read_store_bytes(relative_path)
        envelope = StoreCodec.envelope(store_format, raw)
        return CryptoUtils.decrypt(envelope, self._file_manager.read_identity())

    def list_keys(self, relative_path: str) -> list[str]:
        """Key names of a structured store, read without decrypting."""
        self._require_structured(relative_path)
        raw = self._file_manager.read_store_bytes(relative_path)
        return StoreCodec.keys(StoreFormat.STRUCTURED_KV, raw)

    def get_value(self, relative_path: str, key: str) -> Any:
        """Decrypt a structured store and return one value.

        Raises:
            ConfigurationError: If the key does not exist
        """
        self._require_structured(relative_path)
        with PlaintextBuffer(self.reveal(relative_path)) as plaintext:
            values = json.loads(bytes(plaintext.data).decode("utf-8"))
        if key not in values:
            raise ConfigurationError(f"Key {key!r} not found in {relative_path}")
        return values[key]

    def set_value(self, relative_path: str, key: str, value: Any) -> SecretStore:
        """Set one value in a structured store, creating the store if needed."""
        self._require_structured(relative_path)
        if not key:
            raise ConfigurationError("Key cannot be empty")

        with RotationLock(self._config):
            SessionTracker.ensure_no_stale_session(self._file_manager.read_session())
            values: dict[str, Any] = {}
            if self._file_manager.store_file(relative_path).is_file():
                with PlaintextBuffer(self.reveal(relative_path)) as plaintext:
                    values = json.loads(bytes(plaintext.data).decode("utf-8"))
            values[key] = value
            with PlaintextBuffer(json.dumps(values, sort_keys=True).encode("utf-8")) as updated:
                return self._seal_locked(relative_path, updated.data)

    def list_stores(self) -> list[SecretStore]:
        return self._file_manager.discover_stores()

    def _seal_locked(self, relative_path: str, plaintext: bytes | bytearray) -> SecretStore:
        store_format = StoreFormat.for_path(relative_path)
        recipients = self._file_manager.read_recipient_map().recipients_for(relative_path)

        keys = None
        if store_format == StoreFormat.STRUCTURED_KV:
            keys = StoreCodec.keys_of_plaintext(plaintext)

        envelope = CryptoUtils.encrypt(plaintext, recipients)
        self._file_manager.write_store_atomic(relative_path, StoreCodec.pack(store_format, envelope, keys=keys))
        logger.info(
            f"Sealed {relative_path} for {len(recipients)} recipient(s)",
            extra={"event": "store_sealed", "store": relative_path},
        )
        return SecretStore(path=relative_path, format=store_format, current_recipients=recipients)

    def _check_store_path(self, relative_path: str) -> None:
        file_path = self._file_manager.store_file(relative_path)
        relative = self._file_manager.relative_store_path(file_path)
        if self._config.state_dir_name in relative.split("/"):
            raise ConfigurationError(f"{relative_path} is inside the state directory")
        if not any(file_path.match(pattern) for pattern in self._config.store_patterns):
            raise ConfigurationError(
                f"{relative_path} does not match any store pattern {list(self._config.store_patterns)}"
            )

    def _require_structured(self, relative_path: str) -> None:
        self._check_store_path(relative_path)
        if StoreFormat.for_path(relative_path) != StoreFormat.STRUCTURED_KV:
            raise ConfigurationError(f"{relative_path} is not a structured key/value store")
