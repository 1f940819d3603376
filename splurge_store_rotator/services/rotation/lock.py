"""Exclusive single-writer lock for a secret-store directory."""

import getpass
import json
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from splurge_store_rotator.config import SessionConfig
from splurge_store_rotator.exceptions import FileOperationError, LockContentionError

logger = logging.getLogger(__name__)


def _current_owner() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _pid_alive(pid: int) -> bool:
    """Best-effort liveness check for a process on this host."""
    if os.name == "nt":
        # os.kill would terminate the process on Windows; assume it is alive
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RotationLock:
    """Create-if-absent lock token carrying owner and PID metadata.

    A second holder fails fast with LockContentionError after a bounded
    number of retries with exponential backoff. A token left behind by a
    dead process on this host is broken; the session marker it may have
    left stays in place and blocks the next rotation until it is handled.
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        session_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self._config = config
        self._path = config.lock_file
        self._token = str(uuid.uuid4())
        self._session_id = session_id
        self._sleep = sleep
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def holder(self) -> dict[str, Any] | None:
        """Metadata of the current lock holder, or None if the lock is free."""
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {"unreadable": True}

    def acquire(self) -> None:
        """Acquire the lock, retrying a bounded number of times.

        Raises:
            LockContentionError: If another session keeps holding the lock
            FileOperationError: If the lock token cannot be written
        """
        delay = self._config.lock_backoff_seconds
        attempts = self._config.lock_retries + 1
        holder: dict[str, Any] | None = None

        for attempt in range(attempts):
            if self._try_create():
                self._held = True
                logger.debug("Rotation lock acquired", extra={"event": "lock_acquired", "lock": str(self._path)})
                return

            holder = self.holder()
            if holder is not None and self._is_stale(holder):
                logger.warning(
                    f"Breaking stale rotation lock held by dead process {holder.get('pid')}",
                    extra={"event": "lock_stale_broken", "holder": holder},
                )
                self._break_stale(holder)
                if self._try_create():
                    self._held = True
                    return
                holder = self.holder()

            if attempt < attempts - 1:
                self._sleep(delay)
                delay *= 2

        raise LockContentionError(
            f"Another rotation session holds {self._path}",
            holder=holder,
        )

    def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self._held:
            return
        try:
            holder = self.holder()
            if holder and holder.get("token") == self._token:
                self._path.unlink()
            else:
                logger.error("Rotation lock token changed while held; leaving it in place")
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FileOperationError(f"Failed to release rotation lock: {e}") from e
        finally:
            self._held = False
        logger.debug("Rotation lock released", extra={"event": "lock_released"})

    def _try_create(self) -> bool:
        metadata = {
            "token": self._token,
            "pid": os.getpid(),
            "owner": _current_owner(),
            "hostname": socket.gethostname(),
            "session_id": self._session_id,
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        except OSError as e:
            raise FileOperationError(f"Failed to create rotation lock {self._path}: {e}") from e

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(metadata, f)
            f.flush()
            os.fsync(f.fileno())
        return True

    @staticmethod
    def _is_stale(holder: dict[str, Any]) -> bool:
        pid = holder.get("pid")
        if not isinstance(pid, int) or holder.get("hostname") != socket.gethostname():
            return False
        return not _pid_alive(pid)

    def _break_stale(self, stale_holder: dict[str, Any]) -> None:
        """Remove the token only if it still belongs to ``stale_holder``.

        The token is first renamed to a name private to this instance so a
        contender that broke the same stale token and created its own in the
        meantime never has its live token deleted. A claimed token that turns
        out to be live is linked back into place.
        """
        claimed = self._path.with_name(f"{self._path.name}.stale-{self._token}")
        try:
            os.rename(self._path, claimed)
        except FileNotFoundError:
            return
        except OSError as e:
            raise FileOperationError(f"Failed to claim stale rotation lock: {e}") from e

        try:
            current = json.loads(claimed.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            current = None

        try:
            if current is None or (current.get("token"), current.get("pid")) != (
                stale_holder.get("token"),
                stale_holder.get("pid"),
            ):
                try:
                    os.link(claimed, self._path)
                except FileExistsError:
                    logger.error(
                        "Could not restore a live rotation lock claimed as stale",
                        extra={"event": "lock_restore_failed", "holder": current},
                    )
                else:
                    logger.debug("Lock was re-taken before it could be broken; backing off")
            claimed.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FileOperationError(f"Failed to remove stale rotation lock: {e}") from e

    def __enter__(self) -> "RotationLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
