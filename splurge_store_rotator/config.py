"""Configuration management for the Splurge Store Rotator."""

from dataclasses import dataclass, field
from pathlib import Path

from splurge_store_rotator.constants import Constants
from splurge_store_rotator.exceptions import ConfigurationError


@dataclass
class SessionConfig:
    """Explicit settings passed to every rotation component.

    Core logic never consults environment variables or the working
    directory; everything it needs to locate and protect the secret-store
    directory lives here.
    """

    root: Path
    state_dir_name: str = Constants.STATE_DIR_NAME()
    store_patterns: tuple[str, ...] = field(default_factory=Constants.DEFAULT_STORE_PATTERNS)

    # Rotation settings
    backup_retention_days: int = Constants.BACKUP_RETENTION_DAYS()
    canary_store: str | None = None
    validate_all_stores: bool = False
    dry_run: bool = False

    # Lock settings
    lock_retries: int = Constants.DEFAULT_LOCK_RETRIES()
    lock_backoff_seconds: float = Constants.DEFAULT_LOCK_BACKOFF_SECONDS()

    # History settings
    history_limit: int = Constants.MAX_ROTATION_HISTORY()

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.root is None or str(self.root).strip() == "":
            raise ConfigurationError("root directory is required")
        self.root = Path(self.root).expanduser().resolve()

        if not self.state_dir_name or "/" in self.state_dir_name or "\\" in self.state_dir_name:
            raise ConfigurationError("state_dir_name must be a single path component")

        self.store_patterns = tuple(self.store_patterns)
        if not self.store_patterns:
            raise ConfigurationError("store_patterns must name at least one glob pattern")

        # Validate rotation settings
        if self.backup_retention_days < Constants.BACKUP_RETENTION_DAYS():
            raise ConfigurationError(
                f"backup_retention_days must be at least {Constants.BACKUP_RETENTION_DAYS()}"
            )
        if self.canary_store is not None and Path(self.canary_store).is_absolute():
            raise ConfigurationError("canary_store must be relative to the root directory")

        # Validate lock settings
        if self.lock_retries < 0:
            raise ConfigurationError("lock_retries must be non-negative")
        if self.lock_backoff_seconds < 0:
            raise ConfigurationError("lock_backoff_seconds must be non-negative")

        if self.history_limit < 1:
            raise ConfigurationError("history_limit must be at least 1")

    @property
    def state_dir(self) -> Path:
        """Directory holding keyrings, backups, the lock and the session marker."""
        return self.root / self.state_dir_name

    @property
    def keyring_dir(self) -> Path:
        return self.state_dir / "keyring"

    @property
    def active_link(self) -> Path:
        """Pointer to the active keyring; swapped atomically on activation."""
        return self.keyring_dir / "active"

    @property
    def previous_link(self) -> Path:
        return self.keyring_dir / "previous"

    @property
    def backups_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "rotation.lock"

    @property
    def session_file(self) -> Path:
        return self.state_dir / "rotation.session.json"

    @property
    def history_file(self) -> Path:
        return self.state_dir / "rotation-history.json"

    @property
    def active_identity_file(self) -> Path:
        """Identity file downstream consumers use to decrypt."""
        return self.active_link / Constants.IDENTITY_FILE_NAME()
