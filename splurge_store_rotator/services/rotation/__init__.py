"""Rotation services package for Splurge Store Rotator."""

from splurge_store_rotator.services.rotation.manager import KeyRotationManager
from splurge_store_rotator.services.rotation.transaction import RotationTransaction
from splurge_store_rotator.services.rotation.backup import RotationBackupService
from splurge_store_rotator.services.rotation.lock import RotationLock
from splurge_store_rotator.services.rotation.strategy import (
    DryRunExecution,
    ExecutionStrategy,
    LiveExecution,
    StrategyKind,
)
from splurge_store_rotator.services.rotation.operations import (
    PlaintextBuffer,
    reencrypt_store,
)

__all__ = [
    "KeyRotationManager",
    "RotationTransaction",
    "RotationBackupService",
    "RotationLock",
    "ExecutionStrategy",
    "LiveExecution",
    "DryRunExecution",
    "StrategyKind",
    "PlaintextBuffer",
    "reencrypt_store",
]
