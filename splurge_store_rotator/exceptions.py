"""Custom exceptions for the Splurge Store Rotator."""

from typing import Any


class StoreRotatorError(Exception):
    """Base exception for all Store Rotator errors."""


class ConfigurationError(StoreRotatorError):
    """Raised when policy, key files or settings are missing or ambiguous."""


class StaleSessionError(ConfigurationError):
    """Raised when a leftover rotation session marker blocks a new rotation."""


class CryptoError(StoreRotatorError):
    """Raised when encryption, decryption or write verification fails."""

    def __init__(self, message: str, *, store_path: str | None = None):
        super().__init__(message)
        self.store_path = store_path


class FileOperationError(StoreRotatorError):
    """Raised when file operations fail (permissions, disk, missing files)."""


class RotationBackupError(FileOperationError):
    """Raised when a rotation backup cannot be created or read."""


class ValidationError(StoreRotatorError):
    """Raised when the post-activation canary check fails."""


class LockContentionError(StoreRotatorError):
    """Raised when another rotation session holds the store lock."""

    def __init__(self, message: str, *, holder: dict[str, Any] | None = None):
        super().__init__(message)
        self.holder = holder or {}


class RotationInterruptedError(StoreRotatorError):
    """Raised inside a rotation when the process receives a termination signal."""


class RotationRollbackError(StoreRotatorError):
    """Raised when rollback fails and operator intervention is required."""

    def __init__(self, message: str, *, result: Any = None):
        super().__init__(message)
        self.result = result
