"""Unit tests for canary validation."""

import json
import sys

import pytest

from splurge_store_rotator.config import SessionConfig
from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import ConfigurationError
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.services.rotation.operations import PlaintextFingerprints
from splurge_store_rotator.services.rotation.validator import Validator
from tests.test_utility import TestDataHelper, TestUtilities

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="keyring pointers are symlinks")


@pytest.fixture
def rotator(tmp_path):
    rotator = TestUtilities.create_rotator(tmp_path)
    TestUtilities.populate_stores(rotator)
    return rotator


@pytest.fixture
def file_manager(rotator):
    return FileManager(rotator.config)


class TestCanaries:

    def test_first_store_by_default(self, file_manager):
        assert [s.path for s in Validator(file_manager).canaries()] == ["app.secrets.json"]

    def test_all_stores(self, file_manager):
        canaries = Validator(file_manager).canaries(all_stores=True)
        assert [s.path for s in canaries] == ["app.secrets.json", "prod/db.enc", "prod/token.enc"]

    def test_validate_all_stores_setting(self, rotator):
        config = SessionConfig(root=rotator.root, validate_all_stores=True)
        assert len(Validator(FileManager(config)).canaries()) == 3

    def test_configured_canary(self, rotator):
        config = SessionConfig(root=rotator.root, canary_store="prod/token.enc")
        assert [s.path for s in Validator(FileManager(config)).canaries()] == ["prod/token.enc"]

    def test_missing_configured_canary(self, rotator):
        config = SessionConfig(root=rotator.root, canary_store="prod/missing.enc")
        with pytest.raises(ConfigurationError, match="Canary store"):
            Validator(FileManager(config)).canaries()

    def test_no_stores(self, tmp_path):
        rotator = TestUtilities.create_rotator(tmp_path / "empty")
        assert Validator(FileManager(rotator.config)).canaries() == []


class TestValidate:

    def test_active_identity_passes(self, file_manager):
        identity = file_manager.read_identity()
        result = Validator(file_manager).validate(identity, all_stores=True)

        assert result.valid
        assert result.recipient == CryptoUtils.recipient_for_identity(identity)
        assert len(result.checked) == 3
        assert result.failures == {}

    def test_unrelated_identity_fails(self, file_manager):
        result = Validator(file_manager).validate(TestDataHelper.create_keypair().identity)
        assert not result.valid
        assert "app.secrets.json" in result.failures

    def test_expected_recipient_mismatch(self, file_manager):
        identity = file_manager.read_identity()
        other = TestDataHelper.create_keypair()

        result = Validator(file_manager).validate(identity, expected_recipient=other.recipient)

        assert not result.valid
        assert "<identity>" in result.failures
        assert "<active>" in result.failures

    def test_fingerprint_mismatch(self, file_manager):
        identity = file_manager.read_identity()
        fingerprints = PlaintextFingerprints()
        fingerprints.record("app.secrets.json", b"something else")

        result = Validator(file_manager).validate(identity, fingerprints=fingerprints)

        assert not result.valid
        assert "differs" in result.failures["app.secrets.json"]

    def test_fingerprint_match(self, file_manager):
        identity = file_manager.read_identity()
        fingerprints = PlaintextFingerprints()
        fingerprints.record("app.secrets.json", TestDataHelper.structured_plaintext())

        assert Validator(file_manager).validate(identity, fingerprints=fingerprints).valid

    def test_structured_key_list_mismatch(self, file_manager, rotator):
        store = rotator.root / "app.secrets.json"
        document = json.loads(store.read_text())
        document["keys"] = ["something-else"]
        store.write_text(json.dumps(document))

        result = Validator(file_manager).validate(file_manager.read_identity())

        assert not result.valid
        assert "key list" in result.failures["app.secrets.json"]

    def test_corrupted_canary(self, file_manager, rotator):
        store = rotator.root / "prod" / "db.enc"
        store.write_bytes(TestDataHelper.corrupt_envelope(store.read_bytes()))

        result = Validator(file_manager).validate(file_manager.read_identity(), all_stores=True)

        assert not result.valid
        assert list(result.failures) == ["prod/db.enc"]

    def test_malformed_identity(self, file_manager):
        with pytest.raises(ConfigurationError):
            Validator(file_manager).validate("SSR-SECRET-KEY-nope")


class TestSyntheticCanary:

    @pytest.fixture
    def empty_file_manager(self, tmp_path):
        return FileManager(TestUtilities.create_rotator(tmp_path / "empty").config)

    def test_empty_directory_decrypts_synthetic_canary(self, empty_file_manager, monkeypatch):
        decrypted = []
        original_decrypt = CryptoUtils.decrypt

        def spy_decrypt(ciphertext, identity):
            decrypted.append(identity)
            return original_decrypt(ciphertext, identity)

        monkeypatch.setattr(CryptoUtils, "decrypt", spy_decrypt)
        identity = empty_file_manager.read_identity()

        result = Validator(empty_file_manager).validate(identity)

        assert result.valid
        assert result.checked == [Validator.SYNTHETIC_CANARY]
        assert decrypted == [identity]

    def test_empty_directory_rejects_foreign_identity(self, empty_file_manager):
        result = Validator(empty_file_manager).validate(TestDataHelper.create_keypair().identity)

        assert not result.valid
        assert Validator.SYNTHETIC_CANARY in result.failures

    def test_synthetic_canary_uses_expected_recipient(self, empty_file_manager):
        other = TestDataHelper.create_keypair()

        result = Validator(empty_file_manager).validate(other.identity, expected_recipient=other.recipient)

        assert Validator.SYNTHETIC_CANARY not in result.failures
        assert "<active>" in result.failures
