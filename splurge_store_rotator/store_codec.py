"""Conversion between on-disk store files and crypto envelopes."""

import base64
import binascii
import json
from typing import Any

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import CryptoError
from splurge_store_rotator.models import StoreFormat


class StoreCodec:
    """Packs and unpacks the two store formats.

    Opaque blobs are the raw envelope bytes. Structured key/value stores are
    JSON documents that keep key names in clear and carry the sealed JSON
    object as one base64 envelope.
    """

    _STRUCTURED_VERSION = "1.0"

    @classmethod
    def envelope(cls, store_format: StoreFormat, raw: bytes) -> bytes:
        """Extract the crypto envelope from a store file's bytes.

        Raises:
            CryptoError: If a structured document is malformed
        """
        if store_format == StoreFormat.OPAQUE_BLOB:
            return raw

        document = cls._load_document(raw)
        try:
            return base64.b64decode(document["ciphertext"], validate=True)
        except (KeyError, TypeError, binascii.Error) as e:
            raise CryptoError(f"Structured store has no valid ciphertext: {e}") from e

    @classmethod
    def pack(
        cls,
        store_format: StoreFormat,
        envelope: bytes,
        *,
        keys: list[str] | None = None
    ) -> bytes:
        """Build store file bytes around an envelope."""
        if store_format == StoreFormat.OPAQUE_BLOB:
            return envelope

        document = {
            "format": StoreFormat.STRUCTURED_KV.value,
            "version": cls._STRUCTURED_VERSION,
            "keys": sorted(keys or []),
            "recipients": sorted(CryptoUtils.recipients_of(envelope)),
            "ciphertext": base64.b64encode(envelope).decode("ascii"),
        }
        return (json.dumps(document, indent=2, ensure_ascii=False) + "\n").encode("utf-8")

    @classmethod
    def keys(cls, store_format: StoreFormat, raw: bytes) -> list[str]:
        """Key names visible without decryption (structured stores only)."""
        if store_format == StoreFormat.OPAQUE_BLOB:
            return []
        return list(cls._load_document(raw).get("keys", []))

    @classmethod
    def recipients(cls, store_format: StoreFormat, raw: bytes) -> frozenset[str]:
        """Recipients named in the envelope header."""
        return CryptoUtils.recipients_of(cls.envelope(store_format, raw))

    @staticmethod
    def keys_of_plaintext(plaintext: bytes | bytearray) -> list[str]:
        """Validate a structured plaintext and return its key names.

        Raises:
            CryptoError: If the plaintext is not a JSON object
        """
        try:
            value: Any = json.loads(bytes(plaintext).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CryptoError(f"Structured store plaintext is not valid JSON: {e}") from e
        if not isinstance(value, dict):
            raise CryptoError("Structured store plaintext must be a JSON object")
        return sorted(value.keys())

    @staticmethod
    def _load_document(raw: bytes) -> dict[str, Any]:
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CryptoError(f"Structured store is not valid JSON: {e}") from e
        if not isinstance(document, dict) or document.get("format") != StoreFormat.STRUCTURED_KV.value:
            raise CryptoError("Structured store document has an unexpected format")
        return document
