"""Library-wide constants.

These constants centralize tunable values used across modules to keep
behavior consistent and avoid duplication.
"""


class Constants:

    # Key material
    _IDENTITY_PREFIX: str = "SSR-SECRET-KEY-"
    _RECIPIENT_PREFIX: str = "ssr1"
    _KEY_SIZE_BYTES: int = 32
    _NONCE_SIZE_BYTES: int = 12
    _CHECKSUM_SIZE_BYTES: int = 4

    # Envelope format
    _ENVELOPE_MAGIC: str = "splurge-store/v1"
    _STANZA_TYPE: str = "x25519"

    # On-disk layout
    _STATE_DIR_NAME: str = ".ssr"
    _IDENTITY_FILE_NAME: str = "identity.key"
    _RECIPIENT_MAP_FILE_NAME: str = "recipient-map.json"
    _BACKUP_MANIFEST_FILE_NAME: str = "backup.json"
    _TEMP_SUFFIX: str = ".ssr-tmp"
    _DEFAULT_STORE_PATTERNS: tuple[str, ...] = ("*.enc", "*.secrets.json")

    # Rotation policy
    _BACKUP_RETENTION_DAYS: int = 30  # Minimum days to keep rotation backups
    _MAX_ROTATION_HISTORY: int = 50
    _DEFAULT_LOCK_RETRIES: int = 3
    _DEFAULT_LOCK_BACKOFF_SECONDS: float = 0.25

    @classmethod
    def IDENTITY_PREFIX(cls) -> str:
        return cls._IDENTITY_PREFIX

    @classmethod
    def RECIPIENT_PREFIX(cls) -> str:
        return cls._RECIPIENT_PREFIX

    @classmethod
    def KEY_SIZE_BYTES(cls) -> int:
        return cls._KEY_SIZE_BYTES

    @classmethod
    def NONCE_SIZE_BYTES(cls) -> int:
        return cls._NONCE_SIZE_BYTES

    @classmethod
    def CHECKSUM_SIZE_BYTES(cls) -> int:
        return cls._CHECKSUM_SIZE_BYTES

    @classmethod
    def ENVELOPE_MAGIC(cls) -> str:
        return cls._ENVELOPE_MAGIC

    @classmethod
    def STANZA_TYPE(cls) -> str:
        return cls._STANZA_TYPE

    @classmethod
    def STATE_DIR_NAME(cls) -> str:
        return cls._STATE_DIR_NAME

    @classmethod
    def IDENTITY_FILE_NAME(cls) -> str:
        return cls._IDENTITY_FILE_NAME

    @classmethod
    def RECIPIENT_MAP_FILE_NAME(cls) -> str:
        return cls._RECIPIENT_MAP_FILE_NAME

    @classmethod
    def BACKUP_MANIFEST_FILE_NAME(cls) -> str:
        return cls._BACKUP_MANIFEST_FILE_NAME

    @classmethod
    def TEMP_SUFFIX(cls) -> str:
        return cls._TEMP_SUFFIX

    @classmethod
    def DEFAULT_STORE_PATTERNS(cls) -> tuple[str, ...]:
        return cls._DEFAULT_STORE_PATTERNS

    # Rotation policy
    @classmethod
    def BACKUP_RETENTION_DAYS(cls) -> int:
        return cls._BACKUP_RETENTION_DAYS

    @classmethod
    def MAX_ROTATION_HISTORY(cls) -> int:
        return cls._MAX_ROTATION_HISTORY

    @classmethod
    def DEFAULT_LOCK_RETRIES(cls) -> int:
        return cls._DEFAULT_LOCK_RETRIES

    @classmethod
    def DEFAULT_LOCK_BACKOFF_SECONDS(cls) -> float:
        return cls._DEFAULT_LOCK_BACKOFF_SECONDS
