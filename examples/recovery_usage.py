#!/usr/bin/env python3
"""Example showing automatic rollback and recovery of an interrupted rotation."""

import tempfile
from pathlib import Path

from splurge_store_rotator import StoreRotator
from splurge_store_rotator.exceptions import ConfigurationError


def main() -> None:
    """Demonstrate rollback after a damaged store, then stale-session recovery."""

    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir) / "secrets"
        root.mkdir(parents=True, exist_ok=True)

        print("🔐 Rotation Recovery Example")
        print("=" * 50)

        rotator = StoreRotator(root)
        rotator.init()
        rotator.seal("a.enc", b"first secret")
        rotator.seal("b.enc", b"second secret")

        # Damage the ciphertext body of b.enc so it cannot be decrypted
        store_b = root / "b.enc"
        data = bytearray(store_b.read_bytes())
        data[-1] ^= 0xFF
        store_b.write_bytes(bytes(data))
        print("  ⚠️  Corrupted b.enc")

        recipient = rotator.recipient()
        print("\n🔄 Attempting rotation...")
        result = rotator.rotate()
        print(f"  Success: {result.success} (phase {result.phase.value})")
        for error in result.errors:
            print(f"  ❌ {error.stage}: {error.store_path} - {error.message}")
        for path, status in result.per_store_status.items():
            print(f"     {path}: {status.value}")
        print(f"  🔑 Active recipient unchanged: {rotator.recipient() == recipient}")
        print(f"  🔍 a.enc still reads: {rotator.reveal('a.enc').decode()}")

        print("\n🩺 Checking for an interrupted session...")
        status = rotator.status()
        if status["stale_session"]:
            print(f"  Found session {status['stale_session']['session_id']}; rolling back")
            rotator.rollback_stale_session()
        else:
            print("  No stale session; the failed rotation already cleaned up after itself")

        try:
            rotator.rollback_stale_session()
        except ConfigurationError as e:
            print(f"  ℹ️  Nothing left to roll back: {e}")

        print("\n📜 Rotation history:")
        for entry in rotator.history():
            print(f"  - {entry.session_id}: {entry.outcome}")


if __name__ == "__main__":
    main()
