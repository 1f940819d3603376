"""Unit tests for the StoreRotator facade."""

import stat
import sys
import tempfile
import unittest
from pathlib import Path

from splurge_store_rotator import StoreRotator
from splurge_store_rotator.config import SessionConfig
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import ConfigurationError
from splurge_store_rotator.models import SessionPhase
from tests.test_utility import TestDataHelper, TestUtilities


class TestStoreRotatorConstruction(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        TestUtilities.cleanup_temp_dir(self.temp_dir)

    def test_requires_root_or_config(self):
        with self.assertRaises(ConfigurationError):
            StoreRotator()

    def test_root_with_settings(self):
        rotator = StoreRotator(self.temp_dir, canary_store="db.enc", lock_retries=1)
        self.assertEqual(rotator.root, Path(self.temp_dir).resolve())
        self.assertEqual(rotator.config.canary_store, "db.enc")
        self.assertEqual(rotator.config.lock_retries, 1)

    def test_explicit_config(self):
        config = SessionConfig(root=self.temp_dir)
        self.assertIs(StoreRotator(config=config).config, config)

    def test_config_and_settings_conflict(self):
        config = SessionConfig(root=self.temp_dir)
        with self.assertRaises(ConfigurationError):
            StoreRotator(self.temp_dir, config=config)
        with self.assertRaises(ConfigurationError):
            StoreRotator(config=config, lock_retries=1)

    def test_invalid_setting(self):
        with self.assertRaises(ConfigurationError):
            StoreRotator(self.temp_dir, lock_retries=-1)


@unittest.skipIf(sys.platform == "win32", "keyring pointers are symlinks")
class TestStoreRotatorInit(unittest.TestCase):

    def setUp(self):
        self.temp_dir = TestUtilities.create_temp_root()
        self.rotator = StoreRotator(self.temp_dir, lock_retries=0)

    def tearDown(self):
        TestUtilities.cleanup_temp_dir(self.temp_dir)

    def test_init(self):
        self.assertFalse(self.rotator.is_initialized())

        info = self.rotator.init()

        self.assertTrue(self.rotator.is_initialized())
        self.assertEqual(info["recipient"], self.rotator.recipient())
        self.assertTrue(CryptoUtils.is_valid_recipient(info["recipient"]))
        self.assertEqual(Path(info["identity_file"]), self.rotator.config.active_identity_file)
        self.assertNotIn("identity", info)

        recipient_map = self.rotator.recipient_map()
        self.assertEqual(len(recipient_map.rules), 1)
        self.assertEqual(recipient_map.rules[0].path_regex, ".*")
        self.assertEqual(recipient_map.rules[0].recipients, [info["recipient"]])

    def test_init_permissions(self):
        self.rotator.init()
        config = self.rotator.config
        self.assertEqual(stat.S_IMODE(config.state_dir.stat().st_mode), 0o700)
        self.assertEqual(stat.S_IMODE(config.active_identity_file.stat().st_mode), 0o600)

    def test_init_with_co_recipients(self):
        ops = TestDataHelper.create_keypair()
        info = self.rotator.init(extra_recipients=[ops.recipient])
        self.assertEqual(self.rotator.recipient_map().rules[0].recipients, [info["recipient"], ops.recipient])

    def test_init_rejects_bad_co_recipient(self):
        with self.assertRaises(ConfigurationError):
            self.rotator.init(extra_recipients=["ssr1bogus"])
        self.assertFalse(self.rotator.is_initialized())

    def test_init_twice(self):
        self.rotator.init()
        with self.assertRaisesRegex(ConfigurationError, "already initialized"):
            self.rotator.init()

    def test_operations_before_init(self):
        with self.assertRaises(ConfigurationError):
            self.rotator.rotate()
        with self.assertRaises(ConfigurationError):
            self.rotator.recipient()


@unittest.skipIf(sys.platform == "win32", "keyring pointers are symlinks")
class TestStoreRotatorOperations(unittest.TestCase):

    def setUp(self):
        self.temp_dir = TestUtilities.create_temp_root()
        self.rotator = TestUtilities.create_rotator(self.temp_dir)
        self.plaintexts = TestUtilities.populate_stores(self.rotator)

    def tearDown(self):
        TestUtilities.cleanup_temp_dir(self.temp_dir)

    def test_status(self):
        status = self.rotator.status()
        self.assertTrue(status["initialized"])
        self.assertEqual(status["stores"], 3)
        self.assertEqual(status["recipient"], self.rotator.recipient())
        self.assertIsNone(status["previous_keyring"])
        self.assertIsNone(status["stale_session"])
        self.assertIsNone(status["lock_holder"])
        self.assertEqual(status["backups"], 0)

    def test_status_uninitialized(self):
        fresh = self.temp_dir / "fresh"
        fresh.mkdir()
        status = StoreRotator(fresh).status()
        self.assertFalse(status["initialized"])
        self.assertIsNone(status["recipient"])
        self.assertEqual(status["stores"], 0)

    def test_rotate_then_reveal(self):
        old_recipient = self.rotator.recipient()

        result = self.rotator.rotate()

        self.assertTrue(result.success)
        self.assertNotEqual(self.rotator.recipient(), old_recipient)
        for path, plaintext in self.plaintexts.items():
            if path.endswith(".enc"):
                self.assertEqual(self.rotator.reveal(path), plaintext)
        self.assertEqual(self.rotator.get_value("app.secrets.json", "username"), "svc-deploy")
        self.assertEqual(self.rotator.status()["backups"], 1)
        self.assertEqual(self.rotator.history()[0].outcome, "validated")

    def test_rotate_dry_run_override(self):
        before = TestUtilities.snapshot_tree(self.rotator.root)

        result = self.rotator.rotate(dry_run=True)

        self.assertTrue(result.dry_run)
        self.assertEqual(result.phase, SessionPhase.VALIDATED)
        self.assertEqual(TestUtilities.snapshot_tree(self.rotator.root), before)

    def test_validate(self):
        self.assertTrue(self.rotator.validate(all_stores=True).valid)
        self.assertFalse(self.rotator.validate(TestDataHelper.create_keypair().identity).valid)

    def test_backup_listing(self):
        backup = self.rotator.backup_only()
        self.assertEqual([b.backup_id for b in self.rotator.list_backups()], [backup.backup_id])
        self.assertEqual(self.rotator.cleanup_expired_backups(), [])

    def test_store_helpers(self):
        self.rotator.set_value("app.secrets.json", "region", "eu-west-1")
        self.assertIn("region", self.rotator.list_keys("app.secrets.json"))
        self.assertEqual(len(self.rotator.list_stores()), 3)


if __name__ == "__main__":
    unittest.main()
