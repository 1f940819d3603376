"""Services package for Splurge Store Rotator."""

from splurge_store_rotator.services.store_service import StoreService
from splurge_store_rotator.services.rotation import KeyRotationManager

__all__ = [
    "StoreService",
    "KeyRotationManager",
]
