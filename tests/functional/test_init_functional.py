"""Functional tests for initializing a secret-store directory."""

import json
import stat
import sys
import unittest
from pathlib import Path

from splurge_store_rotator.constants import Constants
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.file_manager import FileManager
from tests.test_utility import TestDataHelper, TestUtilities


@unittest.skipIf(sys.platform == "win32", "keyring pointers are symlinks")
class TestInitFunctional(unittest.TestCase):
    """Initialization through the CLI, checked against the files it leaves on disk."""

    def setUp(self):
        self.temp_dir = TestUtilities.create_temp_root()
        self.state_dir = self.temp_dir / Constants.STATE_DIR_NAME()

    def tearDown(self):
        TestUtilities.cleanup_temp_dir(self.temp_dir)

    def run_cli(self, args: list) -> tuple:
        return TestUtilities.run_cli(["-r", str(self.temp_dir)] + args)

    def test_init_layout(self):
        exit_code, payload, _ = self.run_cli(["init"])

        self.assertEqual(exit_code, 0, payload)
        self.assertTrue(payload["success"])
        self.assertTrue(CryptoUtils.is_valid_recipient(payload["recipient"]))
        self.assertNotIn("identity", payload)

        keyring = self.state_dir / "keyring"
        active = keyring / "active"
        self.assertTrue(active.is_symlink())
        self.assertEqual(active.resolve().name, payload["keyring_id"])
        self.assertFalse((keyring / "previous").exists())

        identity_file = Path(payload["identity_file"])
        self.assertEqual(stat.S_IMODE(identity_file.stat().st_mode), 0o600)
        identity = FileManager.parse_identity_file(identity_file.read_text())
        self.assertEqual(CryptoUtils.recipient_for_identity(identity), payload["recipient"])

        recipient_map = json.loads((active / Constants.RECIPIENT_MAP_FILE_NAME()).read_text())
        self.assertEqual(recipient_map["rules"], [{"path_regex": ".*", "recipients": [payload["recipient"]]}])

    def test_identity_never_printed(self):
        exit_code, payload, stdout = self.run_cli(["init"])
        self.assertEqual(exit_code, 0)

        identity = FileManager.parse_identity_file(Path(payload["identity_file"]).read_text())
        self.assertNotIn(identity, stdout)
        self.assertTrue(identity.startswith("SSR-SECRET-KEY-"))

    def test_init_with_co_recipient(self):
        ops = TestDataHelper.create_keypair()

        exit_code, payload, _ = self.run_cli(["init", "--recipient", ops.recipient])

        self.assertEqual(exit_code, 0, payload)
        _, status, _ = self.run_cli(["status"])
        self.assertTrue(status["initialized"])
        self.assertEqual(status["recipient"], payload["recipient"])

        recipient_map = json.loads(
            (self.state_dir / "keyring" / "active" / Constants.RECIPIENT_MAP_FILE_NAME()).read_text()
        )
        self.assertEqual(recipient_map["rules"][0]["recipients"], [payload["recipient"], ops.recipient])

    def test_init_rejects_invalid_co_recipient(self):
        exit_code, payload, _ = self.run_cli(["init", "--recipient", "not-a-recipient"])

        self.assertEqual(exit_code, 1)
        self.assertEqual(payload["error_code"], "configuration_error")
        _, status, _ = self.run_cli(["status"])
        self.assertFalse(status["initialized"])

    def test_init_twice(self):
        self.run_cli(["init"])
        exit_code, payload, _ = self.run_cli(["init"])

        self.assertEqual(exit_code, 1)
        self.assertEqual(payload["error_code"], "configuration_error")
        self.assertIn("already initialized", payload["message"])

    def test_status_before_init(self):
        exit_code, payload, _ = self.run_cli(["status"])

        self.assertEqual(exit_code, 0)
        self.assertFalse(payload["initialized"])
        self.assertEqual(payload["stores"], 0)
        self.assertIsNone(payload["stale_session"])

    def test_reveal_to_file(self):
        self.run_cli(["init"])
        source = self.temp_dir / "plain.txt"
        source.write_bytes(TestDataHelper.SECRET_A)
        self.run_cli(["seal", "-i", str(source), "-o", "db.enc"])
        source.unlink()
        output = self.temp_dir / "revealed.txt"

        exit_code, payload, _ = self.run_cli(["reveal", "-s", "db.enc", "-o", str(output)])

        self.assertEqual(exit_code, 0, payload)
        self.assertEqual(payload["output"], str(output))
        self.assertEqual(output.read_bytes(), TestDataHelper.SECRET_A)
        self.assertEqual(stat.S_IMODE(output.stat().st_mode), 0o600)


if __name__ == "__main__":
    unittest.main()
