"""Splurge Store Rotator - key rotation for directories of encrypted secret stores.

This package re-encrypts every secret store under a freshly generated
keypair, backing everything up first and rolling back on any failure.
"""

from splurge_store_rotator.config import SessionConfig
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import (
    ConfigurationError,
    CryptoError,
    FileOperationError,
    LockContentionError,
    RotationBackupError,
    RotationInterruptedError,
    RotationRollbackError,
    StaleSessionError,
    StoreRotatorError,
    ValidationError,
)
from splurge_store_rotator.models import (
    KeyPair,
    RecipientMap,
    RecipientRule,
    RotationResult,
    SecretStore,
    StoreFormat,
    StoreStatus,
    ValidationResult,
)
from splurge_store_rotator.store_rotator import StoreRotator

try:
    from importlib.metadata import PackageNotFoundError, version
    __version__ = version("splurge-store-rotator")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = [
    "ConfigurationError",
    "CryptoError",
    "CryptoUtils",
    "FileOperationError",
    "KeyPair",
    "LockContentionError",
    "RecipientMap",
    "RecipientRule",
    "RotationBackupError",
    "RotationInterruptedError",
    "RotationResult",
    "RotationRollbackError",
    "SecretStore",
    "SessionConfig",
    "StaleSessionError",
    "StoreFormat",
    "StoreRotator",
    "StoreRotatorError",
    "StoreStatus",
    "ValidationError",
    "ValidationResult",
]
