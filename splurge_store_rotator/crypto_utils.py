"""Cryptographic primitives for the Splurge Store Rotator.

Envelope layout (text header, binary body)::

    splurge-store/v1
    -> x25519 <recipient> <ephemeral public key> <wrapped file key>
    -> x25519 ...
    ---
    <12-byte nonce><ChaCha20-Poly1305 ciphertext>

A random file key encrypts the body; it is wrapped once per recipient
with a key derived from an ephemeral X25519 agreement. The whole header
is bound to the body as associated data.
"""

import hashlib
import hmac
import secrets
from typing import Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from splurge_store_rotator.base58 import Base58
from splurge_store_rotator.constants import Constants
from splurge_store_rotator.exceptions import ConfigurationError, CryptoError
from splurge_store_rotator.models import KeyPair


class CryptoUtils:
    """Asymmetric encrypt/decrypt and keypair generation."""

    _WRAP_INFO = b"splurge-store-rotator/v1 file-key wrap"
    _ZERO_NONCE = b"\x00" * 12  # Wrap keys are single-use
    _SEPARATOR = b"---"

    @staticmethod
    def constant_time_compare(a: bytes, b: bytes) -> bool:
        """Perform constant-time comparison of two byte strings."""
        return hmac.compare_digest(a, b)

    @staticmethod
    def sha256_hex(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def generate_keypair(cls) -> KeyPair:
        """Generate a fresh X25519 keypair independent of all prior keys.

        Raises:
            CryptoError: If key generation fails
        """
        try:
            private_key = X25519PrivateKey.generate()
            raw = private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        except Exception as e:
            raise CryptoError(f"Key generation failed: {e}") from e

        return KeyPair(
            identity=Base58.encode_check(Constants.IDENTITY_PREFIX(), raw),
            recipient=cls.recipient_for_identity_key(private_key),
        )

    @classmethod
    def recipient_for_identity(cls, identity: str) -> str:
        """Derive the Recipient string belonging to an Identity string."""
        return cls.recipient_for_identity_key(cls._load_identity(identity))

    @staticmethod
    def recipient_for_identity_key(private_key: X25519PrivateKey) -> str:
        public_raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return Base58.encode_check(Constants.RECIPIENT_PREFIX(), public_raw)

    @staticmethod
    def is_valid_recipient(recipient: str) -> bool:
        try:
            CryptoUtils._load_recipient(recipient)
        except ConfigurationError:
            return False
        return True

    @classmethod
    def encrypt(cls, plaintext: bytes | bytearray | memoryview, recipients: Iterable[str]) -> bytes:
        """Encrypt plaintext so that any of the recipients can decrypt it.

        Args:
            plaintext: Data to encrypt (may be empty)
            recipients: Recipient strings authorized to decrypt

        Returns:
            Envelope bytes

        Raises:
            CryptoError: If the recipient set is empty or encryption fails
        """
        recipient_list = sorted(set(recipients))
        if not recipient_list:
            raise CryptoError("At least one recipient is required")

        file_key = bytearray(secrets.token_bytes(Constants.KEY_SIZE_BYTES()))
        try:
            header_lines = [Constants.ENVELOPE_MAGIC().encode("ascii")]
            for recipient in recipient_list:
                header_lines.append(cls._wrap_stanza(bytes(file_key), recipient))
            header_lines.append(cls._SEPARATOR)
            header = b"\n".join(header_lines) + b"\n"

            nonce = secrets.token_bytes(Constants.NONCE_SIZE_BYTES())
            body = ChaCha20Poly1305(bytes(file_key)).encrypt(nonce, bytes(plaintext), header)
            return header + nonce + body
        except (CryptoError, ConfigurationError):
            raise
        except Exception as e:
            raise CryptoError(f"Encryption failed: {e}") from e
        finally:
            cls.secure_zero(file_key)

    @classmethod
    def decrypt(cls, ciphertext: bytes, identity: str) -> bytes:
        """Decrypt an envelope with an Identity.

        Raises:
            CryptoError: If the envelope is malformed, not addressed to the
                identity, or fails authentication
        """
        private_key = cls._load_identity(identity)
        own_recipient = cls.recipient_for_identity_key(private_key)
        stanzas, header, body = cls._parse_envelope(ciphertext)

        # Try the stanza naming this identity first, then any other
        ordered = sorted(stanzas, key=lambda stanza: stanza[0] != own_recipient)
        file_key = None
        for recipient, ephemeral_raw, wrapped in ordered:
            try:
                file_key = cls._unwrap(private_key, ephemeral_raw, wrapped)
                break
            except CryptoError:
                continue
        if file_key is None:
            raise CryptoError("No recipient stanza matches the identity")

        key_buffer = bytearray(file_key)
        try:
            nonce_size = Constants.NONCE_SIZE_BYTES()
            if len(body) < nonce_size:
                raise CryptoError("Envelope body is truncated")
            return ChaCha20Poly1305(bytes(key_buffer)).decrypt(body[:nonce_size], body[nonce_size:], header)
        except InvalidTag as e:
            raise CryptoError("Envelope authentication failed") from e
        finally:
            cls.secure_zero(key_buffer)

    @classmethod
    def recipients_of(cls, ciphertext: bytes) -> frozenset[str]:
        """List the recipients an envelope is addressed to, without decrypting it."""
        stanzas, _, _ = cls._parse_envelope(ciphertext)
        return frozenset(stanza[0] for stanza in stanzas)

    @staticmethod
    def secure_zero(data: bytearray) -> None:
        """Securely zero sensitive data from memory.

        Args:
            data: Data to zero (must be bytearray for in-place modification)
        """
        if data:
            data[:] = bytes(len(data))

    @classmethod
    def _wrap_stanza(cls, file_key: bytes, recipient: str) -> bytes:
        recipient_key = cls._load_recipient(recipient)
        ephemeral = X25519PrivateKey.generate()
        ephemeral_raw = ephemeral.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        recipient_raw = recipient_key.public_bytes(Encoding.Raw, PublicFormat.Raw)

        shared = ephemeral.exchange(recipient_key)
        wrap_key = cls._derive_wrap_key(shared, ephemeral_raw, recipient_raw)
        wrapped = ChaCha20Poly1305(wrap_key).encrypt(cls._ZERO_NONCE, file_key, None)

        return b" ".join([
            b"->",
            Constants.STANZA_TYPE().encode("ascii"),
            recipient.encode("ascii"),
            Base58.encode(ephemeral_raw).encode("ascii"),
            Base58.encode(wrapped).encode("ascii"),
        ])

    @classmethod
    def _unwrap(cls, private_key: X25519PrivateKey, ephemeral_raw: bytes, wrapped: bytes) -> bytes:
        try:
            ephemeral_key = X25519PublicKey.from_public_bytes(ephemeral_raw)
            shared = private_key.exchange(ephemeral_key)
        except Exception as e:
            raise CryptoError(f"Key agreement failed: {e}") from e

        own_raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        wrap_key = cls._derive_wrap_key(shared, ephemeral_raw, own_raw)
        try:
            return ChaCha20Poly1305(wrap_key).decrypt(cls._ZERO_NONCE, wrapped, None)
        except InvalidTag as e:
            raise CryptoError("File key unwrap failed") from e

    @classmethod
    def _derive_wrap_key(cls, shared: bytes, ephemeral_raw: bytes, recipient_raw: bytes) -> bytes:
        if not any(shared):
            raise CryptoError("Key agreement produced an all-zero secret")
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=Constants.KEY_SIZE_BYTES(),
            salt=ephemeral_raw + recipient_raw,
            info=cls._WRAP_INFO,
        )
        return hkdf.derive(shared)

    @classmethod
    def _parse_envelope(cls, ciphertext: bytes) -> tuple[list[tuple[str, bytes, bytes]], bytes, bytes]:
        """Split an envelope into (stanzas, header bytes, body bytes)."""
        if not isinstance(ciphertext, (bytes, bytearray)):
            raise CryptoError("Ciphertext must be bytes")

        data = bytes(ciphertext)
        position = 0
        stanzas: list[tuple[str, bytes, bytes]] = []
        first = True
        while True:
            end = data.find(b"\n", position)
            if end == -1:
                raise CryptoError("Envelope header is truncated")
            line = data[position:end]
            position = end + 1

            if first:
                if line != Constants.ENVELOPE_MAGIC().encode("ascii"):
                    raise CryptoError("Not a splurge-store envelope")
                first = False
                continue
            if line == cls._SEPARATOR:
                break

            parts = line.split(b" ")
            if len(parts) != 5 or parts[0] != b"->" or parts[1] != Constants.STANZA_TYPE().encode("ascii"):
                raise CryptoError("Malformed recipient stanza")
            try:
                stanzas.append((
                    parts[2].decode("ascii"),
                    Base58.decode(parts[3].decode("ascii")),
                    Base58.decode(parts[4].decode("ascii")),
                ))
            except (UnicodeDecodeError, ConfigurationError) as e:
                raise CryptoError(f"Malformed recipient stanza: {e}") from e

        if not stanzas:
            raise CryptoError("Envelope has no recipient stanzas")
        return stanzas, data[:position], data[position:]

    @staticmethod
    def _load_identity(identity: str) -> X25519PrivateKey:
        raw = Base58.decode_check(Constants.IDENTITY_PREFIX(), (identity or "").strip())
        if len(raw) != Constants.KEY_SIZE_BYTES():
            raise ConfigurationError("Identity has the wrong length")
        return X25519PrivateKey.from_private_bytes(raw)

    @staticmethod
    def _load_recipient(recipient: str) -> X25519PublicKey:
        raw = Base58.decode_check(Constants.RECIPIENT_PREFIX(), (recipient or "").strip())
        if len(raw) != Constants.KEY_SIZE_BYTES():
            raise ConfigurationError(f"Recipient {recipient!r} has the wrong length")
        return X25519PublicKey.from_public_bytes(raw)
