"""Base-58 and Base58Check codecs for key strings.

Key material is rendered as a human-readable prefix followed by the
Base58Check encoding of the raw key bytes (payload plus a 4-byte
SHA-256 checksum), so a mistyped or truncated key is rejected instead
of silently producing a different key.
"""

import hashlib

from splurge_store_rotator.constants import Constants
from splurge_store_rotator.exceptions import ConfigurationError


class Base58:
    """
    Base-58 encoding using the Bitcoin alphabet:
    "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

    Intended for short values (keys, nonces, wrapped keys). Payload bodies
    are carried as raw bytes or base64 instead.
    """

    _ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
    _BASE = len(_ALPHABET)
    _INDEX = {char: i for i, char in enumerate(_ALPHABET)}

    @classmethod
    def encode(cls, data: bytes) -> str:
        """
        Encode binary data to a base-58 string.

        Raises:
            ConfigurationError: If data is empty
        """
        if not data:
            raise ConfigurationError("Cannot encode empty data")

        num = int.from_bytes(data, byteorder="big")
        result = []
        while num > 0:
            num, remainder = divmod(num, cls._BASE)
            result.append(cls._ALPHABET[remainder])

        # Each leading zero byte is carried as a leading '1'
        leading_zeros = len(data) - len(data.lstrip(b"\x00"))
        return cls._ALPHABET[0] * leading_zeros + "".join(reversed(result))

    @classmethod
    def decode(cls, value: str) -> bytes:
        """
        Decode a base-58 string to binary data.

        Raises:
            ConfigurationError: If the string is empty or contains invalid characters
        """
        if not isinstance(value, str) or not value:
            raise ConfigurationError("Cannot decode empty base-58 string")
        if not cls.is_valid(value):
            raise ConfigurationError("Invalid base-58 string")

        num = 0
        for char in value:
            num = num * cls._BASE + cls._INDEX[char]

        leading_ones = len(value) - len(value.lstrip(cls._ALPHABET[0]))
        body = num.to_bytes((num.bit_length() + 7) // 8, byteorder="big") if num else b""
        return b"\x00" * leading_ones + body

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a string is non-empty and uses only base-58 characters."""
        if not isinstance(value, str) or not value:
            return False
        return all(char in cls._INDEX for char in value)

    @classmethod
    def encode_check(cls, prefix: str, payload: bytes) -> str:
        """Render ``payload`` as ``prefix`` + Base58(payload || checksum)."""
        return prefix + cls.encode(payload + cls._checksum(prefix, payload))

    @classmethod
    def decode_check(cls, prefix: str, value: str) -> bytes:
        """Parse a string produced by :meth:`encode_check`.

        Raises:
            ConfigurationError: If the prefix or checksum does not match
        """
        if not isinstance(value, str) or not value.startswith(prefix):
            raise ConfigurationError(f"Key string must start with {prefix!r}")

        raw = cls.decode(value[len(prefix):])
        size = Constants.CHECKSUM_SIZE_BYTES()
        if len(raw) <= size:
            raise ConfigurationError("Key string is too short")

        payload, checksum = raw[:-size], raw[-size:]
        if checksum != cls._checksum(prefix, payload):
            raise ConfigurationError("Key string checksum mismatch")
        return payload

    @staticmethod
    def _checksum(prefix: str, payload: bytes) -> bytes:
        digest = hashlib.sha256(prefix.encode("ascii") + payload).digest()
        return digest[:Constants.CHECKSUM_SIZE_BYTES()]
