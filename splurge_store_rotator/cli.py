#!/usr/bin/env python3
"""Command-line interface for the Splurge Store Rotator."""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from splurge_store_rotator.exceptions import (
    ConfigurationError,
    CryptoError,
    FileOperationError,
    LockContentionError,
    RotationBackupError,
    RotationRollbackError,
    StaleSessionError,
    StoreRotatorError,
    ValidationError,
)
from splurge_store_rotator.file_manager import FileManager
from splurge_store_rotator.models import Backup, SecretStore
from splurge_store_rotator.store_rotator import StoreRotator

logger = logging.getLogger(__name__)

ROOT_ENV_VARIABLE = "SSR_ROOT"
LOCK_CONTENTION_EXIT_CODE = 2

# Most specific first
_ERROR_CODES: list[tuple[type[Exception], str]] = [
    (LockContentionError, "lock_contention"),
    (StaleSessionError, "stale_session"),
    (RotationRollbackError, "rollback_failed"),
    (RotationBackupError, "backup_error"),
    (ConfigurationError, "configuration_error"),
    (CryptoError, "crypto_error"),
    (FileOperationError, "file_error"),
    (ValidationError, "validation_error"),
    (StoreRotatorError, "store_rotator_error"),
]


class StoreRotatorCLI:
    """Command-line interface for the Store Rotator."""

    def __init__(self) -> None:
        """Initialize the CLI."""
        self._parser = self._create_parser()
        self._pretty = False

    def _default_root(self) -> str:
        """Secret-store directory: $SSR_ROOT, else the current directory."""
        return os.getenv(ROOT_ENV_VARIABLE) or os.getcwd()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create the argument parser.

        Returns:
            Configured argument parser
        """
        parser = argparse.ArgumentParser(
            prog="splurge-store-rotator",
            description="Splurge Store Rotator - rotate the key protecting a directory of encrypted secret stores",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Create the first keypair and a catch-all recipient map
  splurge-store-rotator -r ./secrets init

  # Seal a file into a store and read it back
  splurge-store-rotator -r ./secrets seal -i db.env -o prod/db.enc
  splurge-store-rotator -r ./secrets reveal -s prod/db.enc

  # Key/value stores
  splurge-store-rotator -r ./secrets set -s app.secrets.json -k API_TOKEN -v s3cr3t
  splurge-store-rotator -r ./secrets get -s app.secrets.json -k API_TOKEN

  # Preview, then perform, a rotation
  splurge-store-rotator -r ./secrets rotate --dry-run
  splurge-store-rotator -r ./secrets rotate

  # Recover from an interrupted rotation
  splurge-store-rotator -r ./secrets status
  splurge-store-rotator -r ./secrets rollback
            """,
        )

        # Global arguments
        parser.add_argument(
            "-r",
            "--root",
            default=self._default_root(),
            help=f"Secret-store directory (default: ${ROOT_ENV_VARIABLE} or the current directory)",
        )
        parser.add_argument(
            "--canary",
            help="Store (relative path) used for post-rotation validation",
        )
        parser.add_argument(
            "--lock-retries",
            type=int,
            help="Attempts to wait for a held rotation lock before giving up",
        )
        parser.add_argument(
            "--pretty",
            action="store_true",
            help="Pretty-print JSON outputs",
        )
        parser.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Log progress to stderr",
        )

        # Subcommands
        subparsers = parser.add_subparsers(
            dest="command",
            help="Available commands",
        )

        init_parser = subparsers.add_parser(
            "init",
            help="Create the state directory, a first keypair and a recipient map",
        )
        init_parser.add_argument(
            "--recipient",
            action="append",
            default=[],
            help="Additional co-recipient for the catch-all rule (repeatable)",
        )

        rotate_parser = subparsers.add_parser(
            "rotate",
            help="Generate a new keypair and re-encrypt every store",
        )
        rotate_parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report what would happen without changing anything",
        )

        subparsers.add_parser(
            "backup",
            help="Take a standalone backup of keys, policy and stores",
        )

        validate_parser = subparsers.add_parser(
            "validate",
            help="Canary-decrypt stores with an identity",
        )
        validate_parser.add_argument(
            "--all",
            action="store_true",
            help="Decrypt every store instead of one canary",
        )
        validate_parser.add_argument(
            "--identity",
            help="Identity file to validate with (default: the active identity)",
        )

        subparsers.add_parser(
            "rollback",
            help="Roll back a rotation session left behind by a crash or failed rollback",
        )

        subparsers.add_parser(
            "status",
            help="Show keys, stores, in-flight session and lock state",
        )

        history_parser = subparsers.add_parser(
            "history",
            help="Show rotation history",
        )
        history_parser.add_argument(
            "-l",
            "--limit",
            type=int,
            help="Maximum number of entries to show",
        )

        subparsers.add_parser(
            "backups",
            help="List backups",
        )

        subparsers.add_parser(
            "cleanup-backups",
            help="Delete backups past their retention period",
        )

        subparsers.add_parser(
            "recipient",
            help="Print the active recipient",
        )

        subparsers.add_parser(
            "stores",
            help="List secret stores",
        )

        seal_parser = subparsers.add_parser(
            "seal",
            help="Encrypt a file into a store under the live policy",
        )
        seal_parser.add_argument(
            "-i",
            "--input",
            required=True,
            help="Plaintext file to encrypt ('-' for stdin)",
        )
        seal_parser.add_argument(
            "-o",
            "--output",
            required=True,
            help="Store path relative to the root",
        )

        reveal_parser = subparsers.add_parser(
            "reveal",
            help="Decrypt a store with the active identity",
        )
        reveal_parser.add_argument(
            "-s",
            "--store",
            required=True,
            help="Store path relative to the root",
        )
        reveal_parser.add_argument(
            "-o",
            "--output",
            help="Write plaintext to this file (owner-only) instead of stdout",
        )

        get_parser = subparsers.add_parser(
            "get",
            help="Read one value from a key/value store",
        )
        get_parser.add_argument("-s", "--store", required=True, help="Store path relative to the root")
        get_parser.add_argument("-k", "--key", required=True, help="Key to read")

        set_parser = subparsers.add_parser(
            "set",
            help="Write one value into a key/value store",
        )
        set_parser.add_argument("-s", "--store", required=True, help="Store path relative to the root")
        set_parser.add_argument("-k", "--key", required=True, help="Key to write")
        set_parser.add_argument(
            "-v",
            "--value",
            required=True,
            help="Value to store; '@file' reads a file and '@-' reads stdin",
        )
        set_parser.add_argument(
            "--json",
            action="store_true",
            help="Parse the value as JSON instead of storing it as a string",
        )

        keys_parser = subparsers.add_parser(
            "keys",
            help="List key names of a key/value store without decrypting it",
        )
        keys_parser.add_argument("-s", "--store", required=True, help="Store path relative to the root")

        return parser

    def _configure_logging(self, verbose: bool) -> None:
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.WARNING,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    def _get_rotator(self, args: argparse.Namespace) -> StoreRotator:
        """Get StoreRotator instance based on arguments."""
        return self._get_rotator_with_dependencies(
            root=args.root,
            canary_store=args.canary,
            lock_retries=args.lock_retries,
        )

    def _get_rotator_with_dependencies(
        self,
        *,
        root: str,
        canary_store: str | None = None,
        lock_retries: int | None = None
    ) -> StoreRotator:
        """Get StoreRotator instance with explicit dependencies.

        Raises:
            ConfigurationError: If the settings are invalid
        """
        settings: dict[str, Any] = {}
        if canary_store:
            settings["canary_store"] = canary_store
        if lock_retries is not None:
            settings["lock_retries"] = lock_retries
        return StoreRotator(root, **settings)

    def _read_input(self, source: str) -> bytes:
        if source == "-":
            return sys.stdin.buffer.read()
        try:
            return Path(source).read_bytes()
        except OSError as e:
            raise FileOperationError(f"Failed to read {source}: {e}") from e

    def _parse_value_with_dependencies(self, *, value: str, as_json: bool) -> Any:
        """Resolve a value argument, supporting '@path' and '@-' references.

        Raises:
            ConfigurationError: If the value is not valid JSON when JSON is requested
        """
        if value.startswith("@"):
            value = self._read_input(value[1:]).decode("utf-8")
        if not as_json:
            return value
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON value: {e}") from e

    def _print_json(self, payload: dict[str, Any]) -> None:
        """Print a JSON payload to stdout."""
        print(json.dumps(payload, indent=2 if self._pretty else None))

    def _print_error(
        self,
        *,
        message: str,
        code: str = "error",
        extra: dict[str, Any] | None = None,
        exit_code: int = 1
    ) -> None:
        """Print a JSON error to stderr and exit non-zero."""
        error_obj = {
            "success": False,
            "error_code": code,
            "message": message,
        }
        if extra:
            error_obj["data"] = extra
        print(json.dumps(error_obj, indent=2), file=sys.stderr)
        sys.exit(exit_code)

    def _print_exception(self, error: Exception) -> None:
        code = "unexpected_error"
        for error_type, error_code in _ERROR_CODES:
            if isinstance(error, error_type):
                code = error_code
                break

        extra = None
        exit_code = 1
        if isinstance(error, LockContentionError):
            extra = {"holder": error.holder}
            exit_code = LOCK_CONTENTION_EXIT_CODE
        elif isinstance(error, RotationRollbackError) and error.result is not None:
            extra = {"result": error.result.to_dict()}
        elif isinstance(error, CryptoError) and error.store_path:
            extra = {"store": error.store_path}

        self._print_error(message=str(error), code=code, extra=extra, exit_code=exit_code)

    @staticmethod
    def _store_dict(store: SecretStore) -> dict[str, Any]:
        return {
            "path": store.path,
            "format": store.format.value,
            "recipients": sorted(store.current_recipients),
        }

    @staticmethod
    def _backup_dict(backup: Backup) -> dict[str, Any]:
        return {
            "backup_id": backup.backup_id,
            "session_id": backup.session_id,
            "path": str(backup.path) if backup.path else None,
            "keyring_id": backup.keyring_id,
            "stores": len(backup.stores),
            "created_at": backup.created_at.isoformat(),
            "expires_at": backup.expires_at.isoformat() if backup.expires_at else None,
        }

    # Command handlers

    def _handle_init(self, args: argparse.Namespace) -> None:
        """Handle init command."""
        self._handle_init_with_dependencies(
            rotator=self._get_rotator(args),
            extra_recipients=args.recipient,
        )

    def _handle_init_with_dependencies(self, *, rotator: StoreRotator, extra_recipients: list[str]) -> None:
        info = rotator.init(extra_recipients=extra_recipients)
        self._print_json({
            "success": True,
            "command": "init",
            **info,
            "message": "Secret-store directory initialized",
        })

    def _handle_rotate(self, args: argparse.Namespace) -> None:
        """Handle rotate command."""
        self._handle_rotate_with_dependencies(
            rotator=self._get_rotator(args),
            dry_run=args.dry_run,
        )

    def _handle_rotate_with_dependencies(self, *, rotator: StoreRotator, dry_run: bool) -> None:
        """Handle rotate command with explicit dependencies.

        A rolled-back rotation prints its result and exits non-zero.
        """
        result = rotator.rotate(dry_run=dry_run)
        self._print_json({"command": "rotate", **result.to_dict()})
        if not result.success:
            sys.exit(1)

    def _handle_backup(self, args: argparse.Namespace) -> None:
        """Handle backup command."""
        backup = self._get_rotator(args).backup_only()
        self._print_json({
            "success": True,
            "command": "backup",
            "backup": self._backup_dict(backup),
        })

    def _handle_validate(self, args: argparse.Namespace) -> None:
        """Handle validate command."""
        self._handle_validate_with_dependencies(
            rotator=self._get_rotator(args),
            identity_file=args.identity,
            all_stores=args.all,
        )

    def _handle_validate_with_dependencies(
        self,
        *,
        rotator: StoreRotator,
        identity_file: str | None,
        all_stores: bool
    ) -> None:
        identity = None
        if identity_file:
            identity = FileManager.parse_identity_file(self._read_input(identity_file).decode("ascii"))

        result = rotator.validate(identity, all_stores=all_stores)
        self._print_json({
            "success": result.valid,
            "command": "validate",
            **result.to_dict(),
        })
        if not result.valid:
            sys.exit(1)

    def _handle_rollback(self, args: argparse.Namespace) -> None:
        """Handle rollback command."""
        result = self._get_rotator(args).rollback_stale_session()
        self._print_json({
            "command": "rollback",
            **result.to_dict(),
            "success": True,
            "message": "Rotation session rolled back" if not result.success else "Completed session cleared",
        })

    def _handle_status(self, args: argparse.Namespace) -> None:
        """Handle status command."""
        self._print_json({
            "success": True,
            "command": "status",
            **self._get_rotator(args).status(),
        })

    def _handle_history(self, args: argparse.Namespace) -> None:
        """Handle history command."""
        history = self._get_rotator(args).history(limit=args.limit)
        self._print_json({
            "success": True,
            "command": "history",
            "count": len(history),
            "history": [entry.to_dict() for entry in history],
        })

    def _handle_backups(self, args: argparse.Namespace) -> None:
        """Handle backups command."""
        backups = self._get_rotator(args).list_backups()
        self._print_json({
            "success": True,
            "command": "backups",
            "count": len(backups),
            "backups": [self._backup_dict(backup) for backup in backups],
        })

    def _handle_cleanup_backups(self, args: argparse.Namespace) -> None:
        """Handle cleanup-backups command."""
        removed = self._get_rotator(args).cleanup_expired_backups()
        self._print_json({
            "success": True,
            "command": "cleanup-backups",
            "cleaned_count": len(removed),
            "removed": removed,
            "message": f"Cleaned up {len(removed)} expired backup(s)",
        })

    def _handle_recipient(self, args: argparse.Namespace) -> None:
        """Handle recipient command."""
        self._print_json({
            "success": True,
            "command": "recipient",
            "recipient": self._get_rotator(args).recipient(),
        })

    def _handle_stores(self, args: argparse.Namespace) -> None:
        """Handle stores command."""
        stores = self._get_rotator(args).list_stores()
        self._print_json({
            "success": True,
            "command": "stores",
            "count": len(stores),
            "stores": [self._store_dict(store) for store in stores],
        })

    def _handle_seal(self, args: argparse.Namespace) -> None:
        """Handle seal command."""
        self._handle_seal_with_dependencies(
            rotator=self._get_rotator(args),
            source=args.input,
            store_path=args.output,
        )

    def _handle_seal_with_dependencies(self, *, rotator: StoreRotator, source: str, store_path: str) -> None:
        plaintext = bytearray(self._read_input(source))
        try:
            store = rotator.seal(store_path, plaintext)
        finally:
            plaintext[:] = bytes(len(plaintext))
        self._print_json({
            "success": True,
            "command": "seal",
            "store": self._store_dict(store),
        })

    def _handle_reveal(self, args: argparse.Namespace) -> None:
        """Handle reveal command."""
        self._handle_reveal_with_dependencies(
            rotator=self._get_rotator(args),
            store_path=args.store,
            output=args.output,
        )

    def _handle_reveal_with_dependencies(
        self,
        *,
        rotator: StoreRotator,
        store_path: str,
        output: str | None
    ) -> None:
        """Handle reveal command with explicit dependencies.

        Without ``output`` the plaintext itself is written to stdout.
        """
        plaintext = rotator.reveal(store_path)
        if output is None:
            sys.stdout.buffer.write(plaintext)
            sys.stdout.flush()
            return

        fd = os.open(output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(plaintext)
        self._print_json({
            "success": True,
            "command": "reveal",
            "store": store_path,
            "output": output,
        })

    def _handle_get(self, args: argparse.Namespace) -> None:
        """Handle get command."""
        value = self._get_rotator(args).get_value(args.store, args.key)
        self._print_json({
            "success": True,
            "command": "get",
            "store": args.store,
            "key": args.key,
            "value": value,
        })

    def _handle_set(self, args: argparse.Namespace) -> None:
        """Handle set command."""
        self._handle_set_with_dependencies(
            rotator=self._get_rotator(args),
            store_path=args.store,
            key=args.key,
            value=self._parse_value_with_dependencies(value=args.value, as_json=args.json),
        )

    def _handle_set_with_dependencies(self, *, rotator: StoreRotator, store_path: str, key: str, value: Any) -> None:
        store = rotator.set_value(store_path, key, value)
        self._print_json({
            "success": True,
            "command": "set",
            "store": self._store_dict(store),
            "key": key,
        })

    def _handle_keys(self, args: argparse.Namespace) -> None:
        """Handle keys command."""
        keys = self._get_rotator(args).list_keys(args.store)
        self._print_json({
            "success": True,
            "command": "keys",
            "store": args.store,
            "keys": keys,
        })

    def run(self, args: Optional[list[str]] = None) -> None:
        """Run the CLI with given arguments."""
        handlers = {
            "init": self._handle_init,
            "rotate": self._handle_rotate,
            "backup": self._handle_backup,
            "validate": self._handle_validate,
            "rollback": self._handle_rollback,
            "status": self._handle_status,
            "history": self._handle_history,
            "backups": self._handle_backups,
            "cleanup-backups": self._handle_cleanup_backups,
            "recipient": self._handle_recipient,
            "stores": self._handle_stores,
            "seal": self._handle_seal,
            "reveal": self._handle_reveal,
            "get": self._handle_get,
            "set": self._handle_set,
            "keys": self._handle_keys,
        }

        try:
            parsed_args = self._parser.parse_args(args)
            self._pretty = bool(getattr(parsed_args, "pretty", False))
            self._configure_logging(bool(getattr(parsed_args, "verbose", False)))

            if not parsed_args.command:
                self._print_error(message="No command specified", code="missing_command")

            handler = handlers.get(parsed_args.command)
            if handler is None:
                self._print_error(message=f"Unknown command: {parsed_args.command}", code="unknown_command")
            handler(parsed_args)

        except KeyboardInterrupt:
            self._print_error(message="Operation cancelled by user", code="cancelled")
        except Exception as e:
            self._print_exception(e)


def main() -> None:
    """Main entry point for the CLI."""
    cli = StoreRotatorCLI()
    cli.run()


if __name__ == "__main__":
    main()
