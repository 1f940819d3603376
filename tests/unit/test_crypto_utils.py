"""Unit tests for the crypto utilities module."""

import unittest

import pytest

from splurge_store_rotator.crypto_utils import CryptoUtils
from splurge_store_rotator.exceptions import ConfigurationError, CryptoError
from tests.test_utility import TestDataHelper


class TestKeyPairs(unittest.TestCase):
    """Keypair generation and key string handling."""

    def test_generate_keypair_format(self):
        keypair = CryptoUtils.generate_keypair()
        self.assertTrue(keypair.identity.startswith("SSR-SECRET-KEY-"))
        self.assertTrue(keypair.recipient.startswith("ssr1"))
        self.assertTrue(CryptoUtils.is_valid_recipient(keypair.recipient))

    def test_keypairs_are_independent(self):
        first = CryptoUtils.generate_keypair()
        second = CryptoUtils.generate_keypair()
        self.assertNotEqual(first.identity, second.identity)
        self.assertNotEqual(first.recipient, second.recipient)

    def test_recipient_for_identity(self):
        keypair = CryptoUtils.generate_keypair()
        self.assertEqual(CryptoUtils.recipient_for_identity(keypair.identity), keypair.recipient)

    def test_identity_not_in_repr(self):
        keypair = CryptoUtils.generate_keypair()
        self.assertNotIn(keypair.identity, repr(keypair))

    def test_invalid_recipient(self):
        self.assertFalse(CryptoUtils.is_valid_recipient("ssr1notarealkey"))
        self.assertFalse(CryptoUtils.is_valid_recipient(""))

    def test_malformed_identity_raises_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            CryptoUtils.recipient_for_identity("SSR-SECRET-KEY-garbage")


class TestEncryptDecrypt:
    """Envelope encryption for one or more recipients."""

    @pytest.mark.parametrize("plaintext", [b"", b"x", TestDataHelper.SECRET_A])
    def test_round_trip(self, plaintext):
        keypair = CryptoUtils.generate_keypair()
        envelope = CryptoUtils.encrypt(plaintext, {keypair.recipient})
        assert CryptoUtils.decrypt(envelope, keypair.identity) == plaintext

    def test_round_trip_large_payload(self):
        keypair = CryptoUtils.generate_keypair()
        payload = TestDataHelper.large_payload()
        assert CryptoUtils.decrypt(CryptoUtils.encrypt(payload, [keypair.recipient]), keypair.identity) == payload

    def test_accepts_bytearray(self):
        keypair = CryptoUtils.generate_keypair()
        envelope = CryptoUtils.encrypt(bytearray(b"secret"), [keypair.recipient])
        assert CryptoUtils.decrypt(envelope, keypair.identity) == b"secret"

    def test_every_recipient_can_decrypt(self):
        alice = CryptoUtils.generate_keypair()
        bob = CryptoUtils.generate_keypair()
        envelope = CryptoUtils.encrypt(b"shared", {alice.recipient, bob.recipient})

        assert CryptoUtils.decrypt(envelope, alice.identity) == b"shared"
        assert CryptoUtils.decrypt(envelope, bob.identity) == b"shared"
        assert CryptoUtils.recipients_of(envelope) == frozenset({alice.recipient, bob.recipient})

    def test_non_recipient_cannot_decrypt(self):
        alice = CryptoUtils.generate_keypair()
        mallory = CryptoUtils.generate_keypair()
        envelope = CryptoUtils.encrypt(b"private", [alice.recipient])

        with pytest.raises(CryptoError, match="No recipient stanza"):
            CryptoUtils.decrypt(envelope, mallory.identity)

    def test_empty_recipient_set_raises(self):
        with pytest.raises(CryptoError, match="At least one recipient"):
            CryptoUtils.encrypt(b"data", [])

    def test_invalid_recipient_raises(self):
        with pytest.raises(ConfigurationError):
            CryptoUtils.encrypt(b"data", ["ssr1bogus"])

    def test_tampered_body_fails_authentication(self):
        keypair = CryptoUtils.generate_keypair()
        envelope = CryptoUtils.encrypt(b"integrity", [keypair.recipient])

        with pytest.raises(CryptoError, match="authentication"):
            CryptoUtils.decrypt(TestDataHelper.corrupt_envelope(envelope), keypair.identity)

    def test_tampered_header_fails_authentication(self):
        alice = CryptoUtils.generate_keypair()
        bob = CryptoUtils.generate_keypair()
        envelope = CryptoUtils.encrypt(b"bound header", [alice.recipient, bob.recipient])

        # Dropping bob's stanza changes the authenticated header
        lines = envelope.split(b"\n")
        stripped = b"\n".join(line for line in lines if bob.recipient.encode("ascii") not in line)
        with pytest.raises(CryptoError):
            CryptoUtils.decrypt(stripped, alice.identity)

    @pytest.mark.parametrize("envelope", [
        b"",
        b"not an envelope\n---\n",
        b"splurge-store/v1\n---\nbody",
        b"splurge-store/v1\n-> x25519 only-three-fields\n---\n",
        b"splurge-store/v1\n-> x25519 ssr1abc",
    ])
    def test_malformed_envelopes(self, envelope):
        keypair = CryptoUtils.generate_keypair()
        with pytest.raises(CryptoError):
            CryptoUtils.decrypt(envelope, keypair.identity)

    def test_fresh_nonce_per_encryption(self):
        keypair = CryptoUtils.generate_keypair()
        first = CryptoUtils.encrypt(b"same", [keypair.recipient])
        second = CryptoUtils.encrypt(b"same", [keypair.recipient])
        assert first != second


class TestHelpers:

    def test_secure_zero(self):
        buffer = bytearray(b"sensitive")
        CryptoUtils.secure_zero(buffer)
        assert buffer == bytearray(len(b"sensitive"))

    def test_secure_zero_empty(self):
        buffer = bytearray()
        CryptoUtils.secure_zero(buffer)
        assert buffer == bytearray()

    def test_constant_time_compare(self):
        assert CryptoUtils.constant_time_compare(b"abc", b"abc")
        assert not CryptoUtils.constant_time_compare(b"abc", b"abd")

    def test_sha256_hex(self):
        assert CryptoUtils.sha256_hex(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )
