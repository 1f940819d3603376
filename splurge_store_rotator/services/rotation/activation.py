"""Switching the active keyring pointer."""

import logging

from splurge_store_rotator.exceptions import ConfigurationError
from splurge_store_rotator.file_manager import FileManager

logger = logging.getLogger(__name__)


class ActivationController:
    """Makes a fully prepared keyring the active one.

    The new keyring directory already holds the new identity and the staged
    policy; activation is the rename of a fresh ``active`` symlink over the
    old one. The ``previous`` slot is updated first and is never read by
    consumers, so the swap of ``active`` is the single visible step.
    """

    def __init__(self, file_manager: FileManager):
        self._file_manager = file_manager
        self._config = file_manager.config

    def activate(self, new_keyring_id: str, old_keyring_id: str) -> None:
        """Retain the old keyring as previous and activate the new one.

        Raises:
            ConfigurationError: If the new keyring is incomplete
            FileOperationError: If a pointer cannot be swapped
        """
        if not self._file_manager.keyring_exists(new_keyring_id):
            raise ConfigurationError(f"Keyring {new_keyring_id} is not staged")

        self._file_manager.point_link(self._config.previous_link, old_keyring_id)
        self._file_manager.point_link(self._config.active_link, new_keyring_id)
        logger.info(
            f"Activated keyring {new_keyring_id}",
            extra={"event": "keyring_activated", "keyring_id": new_keyring_id, "previous": old_keyring_id},
        )

    def revert(self, old_keyring_id: str, previous_keyring_id: str | None) -> None:
        """Point ``active`` back at the old keyring and restore the previous slot.

        Safe to call when nothing was activated.
        """
        if self._file_manager.active_keyring_id() != old_keyring_id:
            self._file_manager.point_link(self._config.active_link, old_keyring_id)
            logger.warning(
                f"Reverted active keyring to {old_keyring_id}",
                extra={"event": "keyring_reverted", "keyring_id": old_keyring_id},
            )

        if self._file_manager.previous_keyring_id() == previous_keyring_id:
            return
        if previous_keyring_id is None:
            self._file_manager.remove_link(self._config.previous_link)
        else:
            self._file_manager.point_link(self._config.previous_link, previous_keyring_id)
