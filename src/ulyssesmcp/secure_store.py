"""
Secure Ephemeral Store - the side channel between receiver and server.

Callback artifacts and the receiver's PID marker live in a private,
per-user directory instead of world-writable /tmp:
- Directory mode 0700, file mode 0600
- Files are lstat'ed before use and opened with O_NOFOLLOW; symlinks are
  never read and never deleted
- Every path is derived from a fixed name and checked to be a direct
  child of the store root before any operation
- Writes go to a private temp file and are renamed into place

Nothing in here is allowed to take the process down. Failures surface as
StoreError subclasses (read/write) or as log lines (delete, sweep).
"""

import json
import logging
import os
import secrets
import stat
import time
from pathlib import Path
from typing import Any

from ulyssesmcp.errors import (
    ArtifactCorruption,
    ArtifactNotFound,
    PathEscape,
    StoreError,
    StoreWriteError,
    SymlinkRejected,
)
from ulyssesmcp.types import CallbackArtifact

logger = logging.getLogger(__name__)

ARTIFACT_PREFIX = "callback-"
ARTIFACT_SUFFIX = ".json"
PID_MARKER_NAME = "helper.pid"

DIR_MODE = 0o700
FILE_MODE = 0o600

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)


class SecureStore:
    """Owner-only directory of small JSON artifacts keyed by correlation ID."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()
        self._ensure_root()
        self._real_root = os.path.realpath(self.root)

    def _ensure_root(self) -> None:
        try:
            if self.root.is_symlink():
                raise SymlinkRejected(f"Secure store directory is a symlink: {self.root}")
            self.root.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
            os.chmod(self.root, DIR_MODE)
        except OSError as e:
            raise StoreError(f"Failed to create secure store directory: {e}") from e

    def _resolve(self, name: str) -> Path:
        """Map a file name to a path that is guaranteed to sit directly in the root."""
        if not name or "\x00" in name or os.sep in name or (os.altsep and os.altsep in name):
            raise PathEscape(f"Invalid store file name: {name!r}")
        if name in (".", ".."):
            raise PathEscape(f"Invalid store file name: {name!r}")

        candidate = os.path.normpath(os.path.join(self._real_root, name))
        parent = os.path.realpath(os.path.dirname(candidate))
        if parent != self._real_root or os.path.commonpath([self._real_root, candidate]) != self._real_root:
            raise PathEscape("Invalid file path: must be within secure store directory")
        return Path(candidate)

    def path_for(self, correlation_id: str) -> Path:
        """Path of the artifact for ``correlation_id``."""
        return self._resolve(f"{ARTIFACT_PREFIX}{correlation_id}{ARTIFACT_SUFFIX}")

    @property
    def pid_path(self) -> Path:
        return self._resolve(PID_MARKER_NAME)

    # -- artifacts ---------------------------------------------------------

    def write_artifact(self, correlation_id: str, payload: CallbackArtifact | dict[str, Any]) -> Path:
        """Write (or overwrite) the artifact for ``correlation_id`` with mode 0600."""
        if isinstance(payload, CallbackArtifact):
            payload = payload.to_dict()
        path = self.path_for(correlation_id)
        self._write_secure(path, json.dumps(payload))
        return path

    def read_artifact(self, correlation_id: str) -> CallbackArtifact:
        """
        Read and parse the artifact for ``correlation_id``.

        Raises ArtifactNotFound if it is not there yet, SymlinkRejected if a
        link sits at its path, and ArtifactCorruption if it cannot be parsed.
        """
        path = self.path_for(correlation_id)
        try:
            raw = self._read_secure(path)
            parsed = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise ArtifactCorruption(f"Callback artifact is not valid JSON: {e}") from e
        return CallbackArtifact.from_dict(parsed)

    def has_artifact(self, correlation_id: str) -> bool:
        """True only if a regular file (never a symlink) sits at the artifact path."""
        try:
            st = os.lstat(self.path_for(correlation_id))
        except (OSError, PathEscape):
            return False
        return stat.S_ISREG(st.st_mode)

    def delete_artifact(self, correlation_id: str) -> None:
        """Best-effort delete; a missing file is fine and a symlink is left alone."""
        try:
            path = self.path_for(correlation_id)
        except PathEscape as e:
            logger.error(f"Refusing to delete artifact: {e}")
            return
        self._delete_secure(path)

    def sweep_stale(self, max_age_seconds: float, now: float | None = None) -> int:
        """Delete artifacts older than ``max_age_seconds``. Returns how many were removed."""
        cutoff = (time.time() if now is None else now) - max_age_seconds
        removed = 0

        try:
            names = os.listdir(self._real_root)
        except OSError as e:
            logger.error(f"Cleanup error: {e}")
            return 0

        for name in names:
            if not (name.startswith(ARTIFACT_PREFIX) and name.endswith(ARTIFACT_SUFFIX)):
                continue
            path = os.path.join(self._real_root, name)
            try:
                st = os.lstat(path)
                if stat.S_ISLNK(st.st_mode) or not stat.S_ISREG(st.st_mode):
                    continue
                if st.st_mtime < cutoff:
                    os.unlink(path)
                    removed += 1
                    logger.info(f"Cleaned up old callback file: {name}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not clean up {name}: {e}")

        return removed

    # -- PID marker --------------------------------------------------------

    def write_pid(self, pid: int) -> None:
        self._write_secure(self.pid_path, f"{pid}\n")

    def read_pid(self) -> int | None:
        """PID recorded by the receiver, or None if there is no usable marker."""
        try:
            text = self._read_secure(self.pid_path)
        except ArtifactNotFound:
            return None
        except SymlinkRejected:
            logger.warning("PID marker is a symlink, ignoring it")
            return None
        except StoreError as e:
            logger.warning(f"Could not read PID marker: {e}")
            return None

        try:
            pid = int(text.strip())
        except ValueError:
            logger.warning(f"PID marker holds garbage: {text.strip()[:20]!r}")
            return None
        return pid if pid > 0 else None

    def clear_pid(self) -> None:
        self._delete_secure(self.pid_path)

    # -- primitives --------------------------------------------------------

    def _write_secure(self, path: Path, data: str) -> None:
        tmp_path = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | _O_NOFOLLOW, FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoreWriteError(f"Failed to write secure file: {e}") from e

    def _read_secure(self, path: Path) -> str:
        try:
            st = os.lstat(path)
        except FileNotFoundError as e:
            raise ArtifactNotFound(f"File does not exist: {path.name}") from e
        except OSError as e:
            raise StoreError(f"Failed to read secure file: {e}") from e

        if stat.S_ISLNK(st.st_mode):
            logger.warning(f"Refusing to read symlink: {path.name}")
            raise SymlinkRejected(f"File is a symlink: {path.name}")
        if not stat.S_ISREG(st.st_mode):
            raise StoreError(f"Not a regular file: {path.name}")

        mode = stat.S_IMODE(st.st_mode)
        if mode & 0o077:
            logger.warning(f"File has unexpected permissions {oct(mode)}: {path.name}")

        try:
            fd = os.open(path, os.O_RDONLY | _O_NOFOLLOW)
        except FileNotFoundError as e:
            raise ArtifactNotFound(f"File does not exist: {path.name}") from e
        except OSError as e:
            # O_NOFOLLOW reports a link swapped in after lstat as ELOOP
            if os.path.islink(path):
                raise SymlinkRejected(f"File is a symlink: {path.name}") from e
            raise StoreError(f"Failed to read secure file: {e}") from e

        with os.fdopen(fd, "r", encoding="utf-8") as f:
            return f.read()

    def _delete_secure(self, path: Path) -> None:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error(f"Failed to delete secure file: {e}")
            return

        if stat.S_ISLNK(st.st_mode):
            logger.warning(f"Refusing to delete symlink: {path.name}")
            return

        try:
            os.unlink(path)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error(f"Failed to delete secure file: {e}")
