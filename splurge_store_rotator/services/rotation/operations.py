"""Stateless rotation operations for re-encrypting secret stores."""

import hashlib
import hmac
import logging
import secrets
import weakref

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import CryptoError, StoreRotatorError
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import SecretStore
from splurge_store_rotator.store_codec import StoreCodec

logger = logging.getLogger(__name__)


class PlaintextBuffer:
    """Mutable holder for decrypted data that is zeroed when released.

    Every open buffer is tracked so an interrupt handler can wipe them all.
    Copies made by the crypto library itself are outside our control.
    """

    _live: "weakref.WeakSet[PlaintextBuffer]" = weakref.WeakSet()

    def __init__(self, data: bytes | bytearray):
        self._buffer = bytearray(data)
        PlaintextBuffer._live.add(self)

    @property
    def data(self) -> bytearray:
        return self._buffer

    @property
    def wiped(self) -> bool:
        return not any(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    def wipe(self) -> None:
        CryptoUtils.secure_zero(self._buffer)
        PlaintextBuffer._live.discard(self)

    @classmethod
    def wipe_all(cls) -> int:
        """Zero every buffer still open. Returns how many were wiped."""
        buffers = list(cls._live)
        for buffer in buffers:
            buffer.wipe()
        return len(buffers)

    def __enter__(self) -> "PlaintextBuffer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.wipe()


class PlaintextFingerprints:
    """Keyed digests of store plaintexts, held only in memory.

    Lets the validator confirm a decrypted canary equals what was sealed
    without keeping the plaintext itself around.
    """

    def __init__(self):
        self._key = bytearray(secrets.token_bytes(32))
        self._digests: dict[str, bytes] = {}

    def record(self, path: str, plaintext: bytes | bytearray) -> None:
        self._digests[path] = self._digest(plaintext)

    def has(self, path: str) -> bool:
        return path in self._digests

    def matches(self, path: str, plaintext: bytes | bytearray) -> bool:
        expected = self._digests.get(path)
        if expected is None:
            return False
        return CryptoUtils.constant_time_compare(expected, self._digest(plaintext))

    def clear(self) -> None:
        self._digests.clear()
        CryptoUtils.secure_zero(self._key)

    def _digest(self, plaintext: bytes | bytearray) -> bytes:
        return hmac.new(bytes(self._key), bytes(plaintext), hashlib.sha256).digest()


def reencrypt_store(
    store: SecretStore,
    *,
    old_identity: str,
    new_identity: str,
    recipients: frozenset[str],
    file_manager: FileManager,
    fingerprints: PlaintextFingerprints | None = None
) -> None:
    """Re-encrypt one store for ``recipients`` with a two-phase write.

    The new ciphertext goes to a temporary sibling, is decrypted again with
    the new identity and compared with the original plaintext, and only
    then renamed over the store. The original is untouched on any failure.

    Args:
        store: Store to re-encrypt
        old_identity: Identity able to decrypt the current ciphertext
        new_identity: Identity that must be able to decrypt the result
        recipients: Recipients the new ciphertext is addressed to
        file_manager: File manager instance
        fingerprints: Optional digest registry for later validation

    Raises:
        CryptoError: If decryption, encryption or verification fails
        FileOperationError: If the store cannot be read or written
    """
    raw = file_manager.read_store_bytes(store.path)

    try:
        envelope = StoreCodec.envelope(store.format, raw)
        keys = StoreCodec.keys(store.format, raw)

        with PlaintextBuffer(CryptoUtils.decrypt(envelope, old_identity)) as plaintext:
            new_envelope = CryptoUtils.encrypt(plaintext.data, recipients)
            new_raw = StoreCodec.pack(store.format, new_envelope, keys=keys)

            staged = file_manager.stage_store(store.path, new_raw)
            try:
                _verify_staged(staged.read_bytes(), store, plaintext, new_identity, recipients)
                file_manager.commit_staged_store(store.path)
            finally:
                file_manager.discard_staged_store(store.path)

            if fingerprints is not None:
                fingerprints.record(store.path, plaintext.data)

    except CryptoError as e:
        if e.store_path is None:
            raise CryptoError(f"{store.path}: {e}", store_path=store.path) from e
        raise
    except StoreRotatorError:
        raise
    except OSError as e:
        raise CryptoError(f"{store.path}: failed to verify staged ciphertext: {e}", store_path=store.path) from e

    logger.debug(
        f"Re-encrypted store {store.path}",
        extra={"event": "store_reencrypted", "store": store.path, "recipients": sorted(recipients)},
    )


def _verify_staged(
    staged_raw: bytes,
    store: SecretStore,
    plaintext: PlaintextBuffer,
    new_identity: str,
    recipients: frozenset[str]
) -> None:
    envelope = StoreCodec.envelope(store.format, staged_raw)
    if CryptoUtils.recipients_of(envelope) != recipients:
        raise CryptoError("Staged ciphertext has unexpected recipients", store_path=store.path)

    with PlaintextBuffer(CryptoUtils.decrypt(envelope, new_identity)) as check:
        if not CryptoUtils.constant_time_compare(bytes(check.data), bytes(plaintext.data)):
            raise CryptoError("Staged ciphertext does not decrypt to the original plaintext", store_path=store.path)
