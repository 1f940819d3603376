"""Canary decryption after activation."""

import logging
import secrets

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import (
    ConfigurationError,
    CryptoError,
    FileOperationError,
)
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import SecretStore, StoreFormat, ValidationResult
from splurge_store_rotator.services.rotation.operations import (
    PlaintextBuffer,
    PlaintextFingerprints,
)
from splurge_store_rotator.store_codec import StoreCodec

logger = logging.getLogger(__name__)


class Validator:
    """Confirms stores decrypt under an identity.

    The canary is ``SessionConfig.canary_store`` when set, otherwise the
    first store in manifest order, or every store when
    ``validate_all_stores`` is on. A directory with no stores is checked
    with a synthetic canary sealed to the active recipient.
    """

    SYNTHETIC_CANARY = "<synthetic>"

    def __init__(self, file_manager: FileManager):
        self._file_manager = file_manager
        self._config = file_manager.config

    def canaries(self, *, all_stores: bool = False) -> list[SecretStore]:
        """Stores to check.

        Raises:
            ConfigurationError: If the configured canary store does not exist
        """
        if self._config.canary_store and not all_stores:
            if not self._file_manager.store_file(self._config.canary_store).is_file():
                raise ConfigurationError(f"Canary store {self._config.canary_store} not found")
            return [self._file_manager.describe_store(self._config.canary_store)]

        stores = self._file_manager.discover_stores()
        if all_stores or self._config.validate_all_stores:
            return stores
        return stores[:1]

    def validate(
        self,
        identity: str,
        *,
        expected_recipient: str | None = None,
        fingerprints: PlaintextFingerprints | None = None,
        all_stores: bool = False
    ) -> ValidationResult:
        """Canary-decrypt with ``identity``.

        Args:
            identity: Identity expected to decrypt the stores
            expected_recipient: When given, the active keyring and the
                identity must both belong to this recipient
            fingerprints: Digests recorded during re-encryption; a canary whose
                plaintext does not match is a failure
            all_stores: Check every store instead of one canary

        Raises:
            ConfigurationError: If the identity itself is malformed
        """
        recipient = CryptoUtils.recipient_for_identity(identity)
        failures: dict[str, str] = {}

        if expected_recipient is not None:
            if recipient != expected_recipient:
                failures["<identity>"] = "identity does not belong to the expected recipient"
            active = CryptoUtils.recipient_for_identity(self._file_manager.read_identity())
            if active != expected_recipient:
                failures["<active>"] = "active keyring does not hold the expected identity"

        checked = []
        for store in self.canaries(all_stores=all_stores):
            checked.append(store.path)
            failure = self._check_store(store, identity, fingerprints)
            if failure:
                failures[store.path] = failure

        if not checked:
            checked.append(self.SYNTHETIC_CANARY)
            failure = self._check_synthetic(identity, expected_recipient)
            if failure:
                failures[self.SYNTHETIC_CANARY] = failure

        result =ValidationResult(valid=not failures, recipient=recipient, checked=checked, failures=failures)
        if result.valid:
            logger.info(
                f"Validation passed for {len(checked)} store(s)",
                extra={"event": "validation_passed", "recipient": recipient},
            )
        else:
            logger.error(
                f"Validation failed: {failures}",
                extra={"event": "validation_failed", "recipient": recipient},
            )
        return result

    def _check_store(
        self,
        store: SecretStore,
        identity: str,
        fingerprints: PlaintextFingerprints | None
    ) -> str | None:
        try:
            raw = self._file_manager.read_store_bytes(store.path)
            envelope = StoreCodec.envelope(store.format, raw)
            with PlaintextBuffer(CryptoUtils.decrypt(envelope, identity)) as plaintext:
                if fingerprints is not None and fingerprints.has(store.path):
                    if not fingerprints.matches(store.path, plaintext.data):
                        return "decrypted plaintext differs from the re-encrypted plaintext"
                if store.format == StoreFormat.STRUCTURED_KV:
                    if StoreCodec.keys_of_plaintext(plaintext.data) != sorted(StoreCodec.keys(store.format, raw)):
                        return "structured store key list does not match its sealed content"
        except (CryptoError, FileOperationError) as e:
            return str(e)
        return None

    def _check_synthetic(self, identity: str, expected_recipient: str | None) -> str | None:
        try:
            recipient = expected_recipient or CryptoUtils.recipient_for_identity(self._file_manager.read_identity())
            payload = secrets.token_bytes(32)
            with PlaintextBuffer(CryptoUtils.decrypt(CryptoUtils.encrypt(payload, [recipient]), identity)) as plaintext:
                if not secrets.compare_digest(bytes(plaintext.data), payload):
                    return "synthetic canary plaintext mismatch"
        except (CryptoError, FileOperationError) as e:
            return str(e)
        return None
