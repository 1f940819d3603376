#!/usr/bin/env python3
"""Integration tests for full rotations against a real store directory."""

import sys

import pytest

from splurge_store_rotator.constants import Constants
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import CryptoError
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import SessionPhase, StoreStatus, ValidationResult
from splurge_store_rotator.services.rotation.manager import KeyRotationManager
from splurge_store_rotator.services.rotation.strategy import LiveExecution
from tests.test_utility import TestDataHelper, TestUtilities

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="keyring pointers are symlinks")


class CanaryRejected(LiveExecution):
    """Live rotation whose post-activation canary check reports a mismatch."""

    def validate(self, identity, *, expected_recipient, fingerprints=None):
        self.active_keyring_at_validation = self.file_manager.active_keyring_id()
        return ValidationResult(
            valid=False,
            recipient=expected_recipient,
            checked=["a.enc"],
            failures={"a.enc": "canary plaintext mismatch"},
        )


@pytest.fixture
def rotator(tmp_path):
    rotator = TestUtilities.create_rotator(tmp_path)
    rotator.seal("a.enc", TestDataHelper.SECRET_A)
    return rotator


@pytest.fixture
def file_manager(rotator):
    return FileManager(rotator.config)


class TestScenarioA:
    """Single store rotated from I1/R1 to I2/R2."""

    def test_rotation_backs_up_and_reencrypts(self, rotator, file_manager):
        i1 = file_manager.read_identity()
        r1 = rotator.recipient()
        keyring = file_manager.keyring_path(file_manager.active_keyring_id())
        original_map = (keyring / Constants.RECIPIENT_MAP_FILE_NAME()).read_bytes()
        original_a = TestUtilities.read_store(rotator.root, "a.enc")

        result = rotator.rotate()

        assert result.success
        assert result.per_store_status == {"a.enc": StoreStatus.DONE}
        r2 = rotator.recipient()
        assert r2 != r1
        i2 = file_manager.read_identity()

        backups = rotator.list_backups()
        assert len(backups) == 1
        backup_dir = backups[0].path
        assert FileManager.parse_identity_file((backup_dir / Constants.IDENTITY_FILE_NAME()).read_text()) == i1
        assert (backup_dir / Constants.RECIPIENT_MAP_FILE_NAME()).read_bytes() == original_map
        assert (backup_dir / "stores" / "a.enc").read_bytes() == original_a

        ciphertext = TestUtilities.read_store(rotator.root, "a.enc")
        assert CryptoUtils.decrypt(ciphertext, i2) == TestDataHelper.SECRET_A
        with pytest.raises(CryptoError):
            CryptoUtils.decrypt(ciphertext, i1)

    def test_previous_keyring_retained(self, rotator, file_manager):
        old_keyring_id = file_manager.active_keyring_id()

        rotator.rotate()

        assert file_manager.previous_keyring_id() == old_keyring_id
        assert file_manager.keyring_exists(old_keyring_id)

    def test_successive_rotations(self, rotator, file_manager):
        recipients = [rotator.recipient()]
        for _ in range(3):
            assert rotator.rotate().success
            recipients.append(rotator.recipient())

        assert len(set(recipients)) == 4
        assert rotator.reveal("a.enc") == TestDataHelper.SECRET_A
        assert [entry.outcome for entry in rotator.history()] == ["validated"] * 3
        assert len(rotator.list_backups()) == 3


class TestScenarioB:
    """A good store followed by one with corrupted ciphertext."""

    def test_corrupted_store_triggers_rollback(self, rotator, file_manager):
        rotator.seal("b.enc", TestDataHelper.SECRET_B)
        store_b = rotator.root / "b.enc"
        store_b.write_bytes(TestDataHelper.corrupt_envelope(store_b.read_bytes()))
        before = TestUtilities.snapshot_stores(rotator)
        r1 = rotator.recipient()

        result = rotator.rotate()

        assert not result.success
        assert result.phase == SessionPhase.ROLLED_BACK
        assert result.per_store_status["a.enc"] == StoreStatus.ROLLED_BACK
        assert result.per_store_status["b.enc"] == StoreStatus.FAILED
        assert [error.store_path for error in result.errors] == ["b.enc"]
        assert result.errors[0].stage == "reencrypt"

        assert TestUtilities.snapshot_stores(rotator) == before
        assert rotator.recipient() == r1
        assert rotator.reveal("a.enc") == TestDataHelper.SECRET_A
        assert file_manager.read_session() is None
        assert rotator.history()[0].outcome == "rolled-back"

    def test_backup_retained_after_rollback(self, rotator):
        rotator.seal("b.enc", TestDataHelper.SECRET_B)
        store_b = rotator.root / "b.enc"
        store_b.write_bytes(TestDataHelper.corrupt_envelope(store_b.read_bytes()))

        result = rotator.rotate()

        assert result.backup_path is not None
        assert [backup.backup_id for backup in rotator.list_backups()] == [rotator.history()[0].backup_id]


class TestScenarioC:
    """Canary check fails after the new keyring has been activated."""

    def test_activation_is_reverted(self, rotator, file_manager):
        rotator.seal("b.enc", TestDataHelper.SECRET_B)
        i1 = file_manager.read_identity()
        r1 = rotator.recipient()
        old_keyring_id = file_manager.active_keyring_id()
        original_map = rotator.recipient_map()
        before = TestUtilities.snapshot_stores(rotator)
        strategy = CanaryRejected(file_manager)

        result = KeyRotationManager(file_manager, strategy=strategy).rotate()

        assert strategy.active_keyring_at_validation != old_keyring_id
        assert not result.success
        assert result.errors[0].stage == "validate"
        assert file_manager.active_keyring_id() == old_keyring_id
        assert file_manager.read_identity() == i1
        assert rotator.recipient() == r1
        assert rotator.recipient_map() == original_map
        assert TestUtilities.snapshot_stores(rotator) == before
        assert set(result.per_store_status.values()) == {StoreStatus.ROLLED_BACK}
        assert [p.name for p in rotator.config.keyring_dir.iterdir() if not p.is_symlink()] == [old_keyring_id]


class TestAtomicity:
    """Every run ends fully rotated or bit-for-bit unchanged."""

    @pytest.mark.parametrize("bad_store", ["a.enc", "m.enc", "z.enc"])
    def test_no_mixed_key_state(self, tmp_path, bad_store):
        rotator = TestUtilities.create_rotator(tmp_path)
        for name in ["a.enc", "m.enc", "z.enc"]:
            rotator.seal(name, name.encode() * 10)
        TestUtilities.populate_stores(rotator)
        target = rotator.root / bad_store
        target.write_bytes(TestDataHelper.corrupt_envelope(target.read_bytes()))
        before = TestUtilities.snapshot_stores(rotator)
        r1 = rotator.recipient()

        result = rotator.rotate()

        assert not result.success
        assert TestUtilities.snapshot_stores(rotator) == before
        assert rotator.recipient() == r1
        assert not any(path.name.endswith(Constants.TEMP_SUFFIX()) for path in rotator.root.rglob("*"))

    def test_complete_rotation(self, tmp_path):
        rotator = TestUtilities.create_rotator(tmp_path)
        plaintexts = TestUtilities.populate_stores(rotator)

        result = rotator.rotate()

        assert result.success
        new_recipient = rotator.recipient()
        for store in rotator.list_stores():
            assert store.current_recipients == frozenset({new_recipient})
        backup = rotator.list_backups()[0]
        assert sorted(entry.path for entry in backup.stores) == sorted(plaintexts)
        assert rotator.reveal("prod/token.enc") == plaintexts["prod/token.enc"]


class TestRoundTrip:

    @pytest.mark.parametrize(
        "plaintext",
        [b"", b"x", TestDataHelper.SECRET_A, TestDataHelper.large_payload()],
        ids=["empty", "one-byte", "text", "over-1MiB"],
    )
    def test_survives_rotation(self, tmp_path, plaintext):
        rotator = TestUtilities.create_rotator(tmp_path)
        rotator.seal("blob.enc", plaintext)

        assert rotator.rotate().success

        assert rotator.reveal("blob.enc") == plaintext

    def test_structured_store_survives_rotation(self, tmp_path):
        rotator = TestUtilities.create_rotator(tmp_path)
        rotator.set_value("app.secrets.json", "password", "hunter2")
        rotator.set_value("app.secrets.json", "ports", [5432, 6432])

        assert rotator.rotate().success

        assert rotator.get_value("app.secrets.json", "ports") == [5432, 6432]
        assert rotator.list_keys("app.secrets.json") == ["password", "ports"]

    def test_independent_directories(self, tmp_path):
        (tmp_path / "one").mkdir()
        (tmp_path / "two").mkdir()
        first = TestUtilities.create_rotator(tmp_path / "one")
        second = TestUtilities.create_rotator(tmp_path / "two")
        first.seal("a.enc", b"first")
        second.seal("a.enc", b"second")

        first.rotate()

        assert second.reveal("a.enc") == b"second"
        assert second.history() == []
