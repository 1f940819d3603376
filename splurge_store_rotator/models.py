"""Data models for the Splurge Store Rotator."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

from splurge_store_rotator.exceptions import ConfigurationError


def _parse_datetime(value: str) -> datetime:
    """Parse datetime string to datetime object."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class KeyPair:
    """An Identity (secret half) and its Recipient (public half)."""

    identity: str = field(repr=False)
    recipient: str

    def __post_init__(self) -> None:
        if not self.identity:
            raise ValueError("identity cannot be empty")
        if not self.recipient:
            raise ValueError("recipient cannot be empty")


class StoreFormat(str, Enum):
    """On-disk shape of a secret store."""

    OPAQUE_BLOB = "opaque-blob"
    STRUCTURED_KV = "structured-kv"

    @classmethod
    def for_path(cls, path: str | Path) -> "StoreFormat":
        """Structured stores are JSON documents; everything else is an opaque blob."""
        if str(path).endswith(".json"):
            return cls.STRUCTURED_KV
        return cls.OPAQUE_BLOB


@dataclass(frozen=True)
class SecretStore:
    """An at-rest artifact holding one or more encrypted secret values."""

    path: str  # POSIX path relative to the secret-store root
    format: StoreFormat
    current_recipients: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("path cannot be empty")
        if PurePosixPath(self.path).is_absolute():
            raise ValueError("path must be relative to the secret-store root")


@dataclass
class RecipientRule:
    """Binds a path pattern to the recipients allowed to decrypt matching stores."""

    path_regex: str
    recipients: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.path_regex:
            raise ValueError("path_regex cannot be empty")
        if not self.recipients:
            raise ValueError(f"rule {self.path_regex!r} must name at least one recipient")
        try:
            self._pattern = re.compile(self.path_regex)
        except re.error as e:
            raise ValueError(f"rule {self.path_regex!r} is not a valid regular expression: {e}") from e

    def matches(self, path: str) -> bool:
        return self._pattern.search(path) is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path_regex": self.path_regex,
            "recipients": list(self.recipients),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecipientRule":
        return cls(
            path_regex=data["path_regex"],
            recipients=list(data.get("recipients", [])),
        )


@dataclass
class RecipientMap:
    """Ordered rule set; the first rule matching a store path decides its recipients."""

    rules: list[RecipientRule] = field(default_factory=list)
    version: str = "1.0"

    def recipients_for(self, path: str) -> frozenset[str]:
        """Return the recipient set for a store path.

        Raises:
            ConfigurationError: If no rule matches the path
        """
        for rule in self.rules:
            if rule.matches(path):
                return frozenset(rule.recipients)
        raise ConfigurationError(f"No recipient rule matches store {path}")

    def all_recipients(self) -> set[str]:
        return {recipient for rule in self.rules for recipient in rule.recipients}

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "rules": [rule.to_dict() for rule in self.rules],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecipientMap":
        return cls(
            rules=[RecipientRule.from_dict(rule) for rule in data.get("rules", [])],
            version=data.get("version", "1.0"),
        )


class StoreStatus(str, Enum):
    """Per-store progress recorded in the session manifest."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class SessionPhase(str, Enum):
    """Rotation phases, in the only order a session may move through them."""

    CREATED = "created"
    BACKED_UP = "backed-up"
    KEY_GENERATED = "key-generated"
    POLICY_STAGED = "policy-staged"
    REENCRYPTING = "reencrypting"
    ACTIVATED = "activated"
    VALIDATED = "validated"
    ROLLED_BACK = "rolled-back"

    @property
    def rank(self) -> int:
        return list(SessionPhase).index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (SessionPhase.VALIDATED, SessionPhase.ROLLED_BACK)


@dataclass
class StoreBackupEntry:
    """Pre-rotation ciphertext of one store, as recorded in a backup manifest."""

    path: str
    format: StoreFormat
    sha256: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "format": self.format.value,
            "sha256": self.sha256,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoreBackupEntry":
        return cls(
            path=data["path"],
            format=StoreFormat(data["format"]),
            sha256=data["sha256"],
            size=int(data["size"]),
        )


@dataclass
class Backup:
    """Immutable snapshot of key material, policy and every store's ciphertext."""

    backup_id: str
    session_id: str | None
    keyring_id: str
    identity_sha256: str
    recipient_map_sha256: str
    stores: list[StoreBackupEntry] = field(default_factory=list)
    previous_keyring_id: str | None = None
    created_at: datetime = field(default_factory=_utc_now)
    expires_at: datetime | None = None
    path: Path | None = None  # Location on disk; not part of the manifest

    def __post_init__(self) -> None:
        if not self.backup_id:
            raise ValueError("backup_id cannot be empty")
        if not self.keyring_id:
            raise ValueError("keyring_id cannot be empty")

        if isinstance(self.created_at, str):
            self.created_at = _parse_datetime(self.created_at)
        if isinstance(self.expires_at, str):
            self.expires_at = _parse_datetime(self.expires_at)

    @classmethod
    def retained_until(cls, created_at: datetime, retention_days: int) -> datetime:
        return created_at + timedelta(days=retention_days)

    def store_entry(self, path: str) -> StoreBackupEntry | None:
        for entry in self.stores:
            if entry.path == path:
                return entry
        return None

    def is_expired(self) -> bool:
        """Check if the retention period of the backup has elapsed."""
        if self.expires_at is None:
            return False
        return _utc_now() > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        result = {
            "backup_id": self.backup_id,
            "session_id": self.session_id,
            "keyring_id": self.keyring_id,
            "previous_keyring_id": self.previous_keyring_id,
            "identity_sha256": self.identity_sha256,
            "recipient_map_sha256": self.recipient_map_sha256,
            "stores": [entry.to_dict() for entry in self.stores],
            "created_at": self.created_at.isoformat(),
        }
        if self.expires_at:
            result["expires_at"] = self.expires_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, path: Path | None = None) -> "Backup":
        return cls(
            backup_id=data["backup_id"],
            session_id=data.get("session_id"),
            keyring_id=data["keyring_id"],
            previous_keyring_id=data.get("previous_keyring_id"),
            identity_sha256=data["identity_sha256"],
            recipient_map_sha256=data["recipient_map_sha256"],
            stores=[StoreBackupEntry.from_dict(entry) for entry in data.get("stores", [])],
            created_at=data.get("created_at"),
            expires_at=data.get("expires_at"),
            path=path,
        )


@dataclass
class RotationSession:
    """Single source of truth for how far a rotation got."""

    session_id: str
    phase: SessionPhase = SessionPhase.CREATED
    manifest: dict[str, StoreStatus] = field(default_factory=dict)
    backup_id: str | None = None
    old_keyring_id: str | None = None
    new_keyring_id: str | None = None
    previous_keyring_id: str | None = None  # "previous" slot before this session
    old_recipient: str | None = None
    new_recipient: str | None = None
    pid: int | None = None
    dry_run: bool = False
    started_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("session_id cannot be empty")
        if isinstance(self.phase, str):
            self.phase = SessionPhase(self.phase)
        if isinstance(self.started_at, str):
            self.started_at = _parse_datetime(self.started_at)
        if isinstance(self.updated_at, str):
            self.updated_at = _parse_datetime(self.updated_at)

    def stores_with(self, status: StoreStatus) -> list[str]:
        return [path for path, current in self.manifest.items() if current == status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            # Lists keep the manifest order stable across serializers
            "manifest": [[path, status.value] for path, status in self.manifest.items()],
            "backup_id": self.backup_id,
            "old_keyring_id": self.old_keyring_id,
            "new_keyring_id": self.new_keyring_id,
            "previous_keyring_id": self.previous_keyring_id,
            "old_recipient": self.old_recipient,
            "new_recipient": self.new_recipient,
            "pid": self.pid,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RotationSession":
        return cls(
            session_id=data["session_id"],
            phase=SessionPhase(data.get("phase", SessionPhase.CREATED.value)),
            manifest={path: StoreStatus(status) for path, status in data.get("manifest", [])},
            backup_id=data.get("backup_id"),
            old_keyring_id=data.get("old_keyring_id"),
            new_keyring_id=data.get("new_keyring_id"),
            previous_keyring_id=data.get("previous_keyring_id"),
            old_recipient=data.get("old_recipient"),
            new_recipient=data.get("new_recipient"),
            pid=data.get("pid"),
            dry_run=bool(data.get("dry_run", False)),
            started_at=data.get("started_at") or _utc_now(),
            updated_at=data.get("updated_at") or _utc_now(),
        )


@dataclass
class ErrorDetail:
    """One failure reported back to the caller of a rotation."""

    stage: str
    error_type: str
    message: str
    store_path: str | None = None

    @classmethod
    def from_exception(
        cls,
        stage: str,
        error: BaseException,
        store_path: str | None = None
    ) -> "ErrorDetail":
        return cls(
            stage=stage,
            error_type=type(error).__name__,
            message=str(error),
            store_path=store_path or getattr(error, "store_path", None),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
            "store_path": self.store_path,
        }


@dataclass
class RotationResult:
    """Outcome of a rotate() call, including the status of every store."""

    success: bool
    session_id: str
    backup_path: str | None
    per_store_status: dict[str, StoreStatus] = field(default_factory=dict)
    errors: list[ErrorDetail] = field(default_factory=list)
    phase: SessionPhase = SessionPhase.CREATED
    new_recipient: str | None = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "backup_path": self.backup_path,
            "phase": self.phase.value,
            "new_recipient": self.new_recipient,
            "dry_run": self.dry_run,
            "per_store_status": {path: status.value for path, status in self.per_store_status.items()},
            "errors": [error.to_dict() for error in self.errors],
        }


@dataclass
class ValidationResult:
    """Outcome of a canary decrypt under a given identity."""

    valid: bool
    recipient: str | None
    checked: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "recipient": self.recipient,
            "checked": list(self.checked),
            "failures": dict(self.failures),
        }


@dataclass
class RotationHistory:
    """Audit record of one finished rotation session."""

    session_id: str
    outcome: str  # "validated" or "rolled-back"
    backup_id: str | None = None
    old_recipient: str | None = None
    new_recipient: str | None = None
    stores: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("session_id cannot be empty")
        if self.outcome not in ["validated", "rolled-back"]:
            raise ValueError("outcome must be one of: validated, rolled-back")

        if isinstance(self.created_at, str):
            self.created_at = _parse_datetime(self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "outcome": self.outcome,
            "backup_id": self.backup_id,
            "old_recipient": self.old_recipient,
            "new_recipient": self.new_recipient,
            "stores": self.stores,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RotationHistory":
        return cls(
            session_id=data["session_id"],
            outcome=data["outcome"],
            backup_id=data.get("backup_id"),
            old_recipient=data.get("old_recipient"),
            new_recipient=data.get("new_recipient"),
            stores=data.get("stores", []),
            created_at=data.get("created_at") or _utc_now(),
            metadata=data.get("metadata", {}),
        )
