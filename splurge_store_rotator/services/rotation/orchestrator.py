"""Sequential, fail-fast re-encryption of every store in a session."""

import logging
from typing import Callable

from splurge_store_rotator.exceptions import (
    ConfigurationError,
    CryptoError,
    FileOperationError,
)
from splurge_store_rotator.models import ErrorDetail, SecretStore, StoreStatus
from splurge_store_rotator.services.rotation.operations import PlaintextFingerprints
from splurge_store_rotator.services.rotation.session import SessionTracker
from splurge_store_rotator.services.rotation.strategy import ExecutionStrategy

logger = logging.getLogger(__name__)


class ReencryptionOrchestrator:
    """Walks the session manifest in order and re-encrypts each store.

    The first failure marks that store FAILED and stops the walk; stores
    after it stay PENDING. The caller decides whether to roll back.
    """

    def __init__(
        self,
        strategy: ExecutionStrategy,
        tracker: SessionTracker,
        *,
        checkpoint: Callable[[], None] | None = None
    ):
        self._strategy = strategy
        self._tracker = tracker
        self._checkpoint = checkpoint or (lambda: None)

    def run(
        self,
        stores: list[SecretStore],
        targets: dict[str, frozenset[str]],
        *,
        old_identity: str,
        new_identity: str,
        fingerprints: PlaintextFingerprints | None = None
    ) -> list[ErrorDetail]:
        """Re-encrypt ``stores`` for their staged recipients.

        Returns:
            An empty list on success, otherwise the error of the failed store
        """
        by_path = {store.path: store for store in stores}
        for path in list(self._tracker.session.manifest):
            # Interrupts are honoured between stores, never mid-write
            self._checkpoint()

            store = by_path[path]
            try:
                self._strategy.reencrypt_store(
                    store,
                    old_identity=old_identity,
                    new_identity=new_identity,
                    recipients=targets[path],
                    fingerprints=fingerprints,
                )
            except (CryptoError, FileOperationError, ConfigurationError) as e:
                self._tracker.mark_store(path, StoreStatus.FAILED)
                logger.error(
                    f"Re-encryption failed for {path}: {e}",
                    extra={"event": "store_failed", "store": path, "session_id": self._tracker.session_id},
                )
                return [ErrorDetail.from_exception("reencrypt", e, path)]

            if self._strategy.mutates:
                self._tracker.mark_store(path, StoreStatus.DONE)

        return []
