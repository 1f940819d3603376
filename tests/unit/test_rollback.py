"""Unit tests for the rollback controller."""

import sys
from unittest.mock import patch

import pytest

from splurge_store_rotator.exceptions import RotationBackupError, RotationRollbackError
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import SessionPhase, StoreStatus
from splurge_store_rotator.services.rotation.operations import reencrypt_store
from splurge_store_rotator.services.rotation.policy import RecipientMapUpdater
from splurge_store_rotator.services.rotation.session import SessionTracker
from splurge_store_rotator.services.rotation.strategy import LiveExecution
from tests.test_utility import TestDataHelper, TestUtilities

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="keyring pointers are symlinks")


class PartialRotation:
    """Drives the live components by hand to leave a session at a chosen phase."""

    def __init__(self, root):
        self.rotator = TestUtilities.create_rotator(root)
        self.plaintexts = TestUtilities.populate_stores(self.rotator)
        self.file_manager = FileManager(self.rotator.config)
        self.live = LiveExecution(self.file_manager)
        self.before = TestUtilities.snapshot_stores(self.rotator)
        self.old_keyring_id = self.file_manager.active_keyring_id()
        self.old_identity = self.file_manager.read_identity()

        self.stores = self.file_manager.discover_stores()
        self.tracker = SessionTracker.start(self.live.persist_session)
        self.tracker.update(old_keyring_id=self.old_keyring_id, previous_keyring_id=None)
        self.tracker.plan_stores([store.path for store in self.stores])

    def back_up(self):
        backup = self.live.create_backup(
            session_id=self.tracker.session_id,
            keyring_id=self.old_keyring_id,
            stores=self.stores,
        )
        self.tracker.update(backup_id=backup.backup_id)
        self.tracker.advance(SessionPhase.BACKED_UP)
        return backup

    def stage(self):
        self.keypair = TestDataHelper.create_keypair()
        old_recipient = self.rotator.recipient()
        staged = RecipientMapUpdater().stage(self.file_manager.read_recipient_map(), old_recipient, self.keypair.recipient)
        self.live.stage_keyring("k-new", self.keypair, staged)
        self.tracker.update(new_keyring_id="k-new", new_recipient=self.keypair.recipient)
        self.tracker.advance(SessionPhase.POLICY_STAGED)

    def reencrypt(self, count):
        self.tracker.advance(SessionPhase.REENCRYPTING)
        for store in self.stores[:count]:
            reencrypt_store(
                store,
                old_identity=self.old_identity,
                new_identity=self.keypair.identity,
                recipients=frozenset({self.keypair.recipient}),
                file_manager=self.file_manager,
            )
            self.tracker.mark_store(store.path, StoreStatus.DONE)

    def activate(self):
        self.live.activate("k-new", self.old_keyring_id)
        self.tracker.advance(SessionPhase.ACTIVATED)


@pytest.fixture
def partial(tmp_path):
    return PartialRotation(tmp_path)


class TestRollbackController:

    def test_rollback_after_partial_reencryption(self, partial):
        partial.back_up()
        partial.stage()
        partial.reencrypt(2)

        restored = partial.live.rollback(partial.tracker)

        assert sorted(restored) == sorted(s.path for s in partial.stores[:2])
        assert TestUtilities.snapshot_stores(partial.rotator) == partial.before
        assert partial.file_manager.active_keyring_id() == partial.old_keyring_id
        assert not partial.file_manager.keyring_path("k-new").exists()
        assert partial.tracker.phase == SessionPhase.ROLLED_BACK
        assert partial.tracker.session.stores_with(StoreStatus.ROLLED_BACK) == [s.path for s in partial.stores[:2]]

    def test_rollback_after_activation(self, partial):
        partial.back_up()
        partial.stage()
        partial.reencrypt(3)
        partial.activate()

        partial.live.rollback(partial.tracker)

        assert TestUtilities.snapshot_stores(partial.rotator) == partial.before
        assert partial.file_manager.active_keyring_id() == partial.old_keyring_id
        assert partial.file_manager.previous_keyring_id() is None
        assert partial.rotator.reveal("prod/db.enc") == partial.plaintexts["prod/db.enc"]

    def test_rollback_discards_staged_temps(self, partial):
        partial.back_up()
        partial.file_manager.stage_store("prod/db.enc", b"half-written")

        partial.live.rollback(partial.tracker)

        assert not FileManager.temp_path_for(partial.rotator.root / "prod" / "db.enc").exists()
        assert TestUtilities.snapshot_stores(partial.rotator) == partial.before

    def test_rollback_is_idempotent(self, partial):
        partial.back_up()
        partial.stage()
        partial.reencrypt(1)

        partial.live.rollback(partial.tracker)
        assert partial.live.rollback(partial.tracker) == []
        assert TestUtilities.snapshot_stores(partial.rotator) == partial.before

    def test_rollback_without_backup(self, partial):
        partial.live.rollback(partial.tracker)
        assert partial.tracker.phase == SessionPhase.ROLLED_BACK
        assert TestUtilities.snapshot_stores(partial.rotator) == partial.before

    def test_failed_restore_raises(self, partial):
        partial.back_up()
        partial.stage()
        partial.reencrypt(1)

        with patch.object(
            partial.live.backup_service,
            "restore_store",
            side_effect=RotationBackupError("disk gone"),
        ):
            with pytest.raises(RotationRollbackError, match="restore manually"):
                partial.live.rollback(partial.tracker)

        assert partial.tracker.phase == SessionPhase.REENCRYPTING
