"""
Crontab storage with backups and transactional modification.

Every modification follows the same sequence:

    read -> backup -> mutate (in memory) -> write -> verify

and the live crontab is restored from the backup if the write or the
verification fails. The backing crontab is either a plain file or, when no
file is configured, the invoking user's crontab managed through the
`crontab` command.
"""

import logging
import re
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional, Union

# fcntl is Unix-only; on Windows use msvcrt for file locking
try:
    import fcntl
except ImportError:
    fcntl = None
    try:
        import msvcrt
    except ImportError:
        msvcrt = None

from crontab_manager.config import get_data_dir
from crontab_manager.document import Document

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_RETENTION = 10
BACKUP_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S_%f"
LOCK_FILE_NAME = ".crontab.lock"

# Undecodable bytes survive a read/write cycle as lone surrogates
CRONTAB_ENCODING = "utf-8"
CRONTAB_ENCODING_ERRORS = "surrogateescape"

_BACKUP_NAME_PATTERN = re.compile(
    r'^(?P<label>.+)_(?P<timestamp>\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}_\d{6})$'
)


class CrontabError(Exception):
    """Base class for crontab management errors."""
    kind = "error"


class CrontabNotFoundError(CrontabError):
    """Raised when the crontab does not exist or cannot be read."""
    kind = "not_found"


class CrontabIOError(CrontabError):
    """Raised when writing the crontab or a backup fails."""
    kind = "io"


class ValidationError(CrontabError):
    """Raised when input to a modification is malformed."""
    kind = "validation"


@dataclass(frozen=True)
class BackupHandle:
    """A snapshot of the crontab taken at a point in time."""
    path: Path
    label: str
    timestamp: datetime

    @property
    def name(self) -> str:
        return self.path.name

    def read_text(self) -> str:
        return self.path.read_text(encoding=CRONTAB_ENCODING, errors=CRONTAB_ENCODING_ERRORS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filename': str(self.path),
            'label': self.label,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class TransactionResult:
    """Outcome of CrontabStore.safely_modify()."""
    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None
    backup: Optional[BackupHandle] = None


Mutator = Callable[[Document], Optional[bool]]


def _parse_backup_name(path: Path) -> Optional[BackupHandle]:
    match = _BACKUP_NAME_PATTERN.match(path.name)
    if not match:
        return None
    try:
        timestamp = datetime.strptime(match.group('timestamp'), BACKUP_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return BackupHandle(path=path, label=match.group('label'), timestamp=timestamp)


def _same_content(written: str, expected: str) -> bool:
    return written == expected or written.rstrip('\n') == expected.rstrip('\n')


class CrontabStore:
    """
    Reads, writes and backs up one crontab.

    Documents are parsed fresh on every read; nothing is cached between
    calls. Callers wanting to change the crontab should go through
    safely_modify(), which serializes writers with an advisory lock in
    the backup directory.
    """

    def __init__(
        self,
        cron_file: Optional[Union[str, Path]] = None,
        backup_dir: Optional[Union[str, Path]] = None,
        retention: int = DEFAULT_BACKUP_RETENTION,
        crontab_command: str = "crontab",
        lock_timeout: float = 10.0
    ):
        """
        Initialize the store.

        Args:
            cron_file: Path to the crontab file. If None, the current user's
                       crontab is read and installed with `crontab_command`.
            backup_dir: Directory receiving backups (created on demand)
            retention: Number of backups to keep after each modification
            crontab_command: crontab(1) executable used when cron_file is None
            lock_timeout: Seconds to wait for the modification lock
        """
        if retention < 1:
            raise ValueError(f"Backup retention must be a positive integer, got {retention}")

        self.cron_file = Path(cron_file).expanduser() if cron_file else None
        self.backup_dir = Path(backup_dir).expanduser() if backup_dir else get_data_dir() / "backups"
        self.retention = retention
        self.crontab_command = crontab_command
        self.lock_timeout = lock_timeout

    @property
    def source(self) -> str:
        """Human-readable description of the backing crontab."""
        if self.cron_file:
            return str(self.cron_file)
        return f"user crontab ({self.crontab_command} -l)"

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def _read_text(self) -> str:
        if self.cron_file:
            try:
                return self.cron_file.read_text(
                    encoding=CRONTAB_ENCODING, errors=CRONTAB_ENCODING_ERRORS
                )
            except FileNotFoundError:
                raise CrontabNotFoundError(f"Crontab file not found: {self.cron_file}")
            except (OSError, ValueError) as e:
                raise CrontabNotFoundError(f"Cannot read crontab file {self.cron_file}: {e}") from e

        try:
            process = subprocess.run(
                [self.crontab_command, '-l'],
                capture_output=True,
                encoding=CRONTAB_ENCODING,
                errors=CRONTAB_ENCODING_ERRORS
            )
        except (OSError, ValueError) as e:
            raise CrontabNotFoundError(f"Cannot run '{self.crontab_command} -l': {e}") from e

        if process.returncode != 0:
            message = process.stderr.strip() or f"exit code {process.returncode}"
            raise CrontabNotFoundError(f"No crontab available: {message}")
        return process.stdout

    def _write_text(self, text: str):
        if self.cron_file:
            try:
                with open(self.cron_file, 'w', encoding=CRONTAB_ENCODING,
                          errors=CRONTAB_ENCODING_ERRORS) as f:
                    f.write(text)
            except (OSError, ValueError) as e:
                raise CrontabIOError(f"Cannot write crontab file {self.cron_file}: {e}") from e
            return

        try:
            process = subprocess.run(
                [self.crontab_command, '-'],
                input=text,
                capture_output=True,
                encoding=CRONTAB_ENCODING,
                errors=CRONTAB_ENCODING_ERRORS
            )
        except (OSError, ValueError) as e:
            raise CrontabIOError(f"Cannot run '{self.crontab_command} -': {e}") from e

        if process.returncode != 0:
            message = process.stderr.strip() or f"exit code {process.returncode}"
            raise CrontabIOError(f"Crontab installation rejected: {message}")

    def exists(self) -> bool:
        try:
            self._read_text()
        except CrontabNotFoundError:
            return False
        return True

    def read(self) -> Document:
        """
        Load and parse the current crontab.

        Raises:
            CrontabNotFoundError: If the crontab does not exist or is unreadable
        """
        return Document.parse(self._read_text())

    def create(self, document: Document) -> bool:
        """
        Write a document only if no crontab exists yet.

        Returns:
            True if the crontab was created, False if one already existed
        """
        if self.exists():
            return False
        self._write_text(document.dump())
        logger.info(f"Created crontab at {self.source}")
        return True

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup(self, label: str) -> BackupHandle:
        """
        Snapshot the crontab as it currently is on disk.

        Args:
            label: Action that triggered the backup (e.g. 'enable', 'add_job')

        Raises:
            CrontabNotFoundError: If there is no crontab to back up
            CrontabIOError: If the backup file cannot be written
        """
        return self._write_backup(label, self._read_text())

    def _write_backup(self, label: str, text: str) -> BackupHandle:
        label = re.sub(r'[^\w-]+', '-', label).strip('-') or 'backup'
        timestamp = datetime.now()

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            path = self.backup_dir / f"{label}_{timestamp.strftime(BACKUP_TIMESTAMP_FORMAT)}"
            while path.exists():
                timestamp += timedelta(microseconds=1)
                path = self.backup_dir / f"{label}_{timestamp.strftime(BACKUP_TIMESTAMP_FORMAT)}"
            path.write_text(text, encoding=CRONTAB_ENCODING, errors=CRONTAB_ENCODING_ERRORS)
        except (OSError, ValueError) as e:
            raise CrontabIOError(f"Could not write backup to {self.backup_dir}: {e}") from e

        logger.info(f"Backed up crontab to {path}")
        return BackupHandle(path=path, label=label, timestamp=timestamp)

    def list_backups(self) -> List[BackupHandle]:
        """List backups, most recent first."""
        if not self.backup_dir.is_dir():
            return []

        backups = []
        for path in self.backup_dir.iterdir():
            if not path.is_file():
                continue
            handle = _parse_backup_name(path)
            if handle:
                backups.append(handle)

        backups.sort(key=lambda b: (b.timestamp, b.name), reverse=True)
        return backups

    def latest_backup(self) -> Optional[BackupHandle]:
        backups = self.list_backups()
        return backups[0] if backups else None

    def prune_backups(self, retention: Optional[int] = None) -> List[BackupHandle]:
        """
        Delete the oldest backups beyond the retention count.

        Returns:
            The backups that were removed
        """
        keep = retention if retention is not None else self.retention
        removed = []
        for handle in self.list_backups()[keep:]:
            handle.path.unlink()
            removed.append(handle)
            logger.debug(f"Pruned old backup: {handle.path}")

        if removed:
            logger.info(f"Pruned {len(removed)} old backup(s), keeping {keep}")
        return removed

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self):
        """Hold the advisory modification lock for this crontab."""
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            lock_fd = open(self.backup_dir / LOCK_FILE_NAME, 'w')
        except OSError as e:
            raise CrontabIOError(f"Cannot open lock file in {self.backup_dir}: {e}") from e

        deadline = time.monotonic() + self.lock_timeout
        try:
            while True:
                try:
                    if fcntl:
                        fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    elif msvcrt:
                        msvcrt.locking(lock_fd.fileno(), msvcrt.LK_NBLCK, 1)
                    break
                except OSError:
                    if time.monotonic() >= deadline:
                        raise CrontabIOError(
                            f"Timed out after {self.lock_timeout}s waiting for the crontab lock"
                        )
                    time.sleep(0.1)

            yield
        finally:
            if fcntl:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
            elif msvcrt:
                try:
                    msvcrt.locking(lock_fd.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass
            lock_fd.close()

    def safely_modify(self, mutator: Mutator, label: str = "modify") -> TransactionResult:
        """
        Apply a mutator to the crontab inside a backup/rollback transaction.

        The mutator receives the freshly parsed Document and may change it
        freely. It signals failure by raising (a CrontabError subclass keeps
        its error kind) or by returning False; nothing is written in that
        case.

        Args:
            mutator: Callable taking the Document
            label: Operation name, used to label the automatic backup

        Returns:
            TransactionResult. This method never raises.
        """
        try:
            with self.lock():
                return self._run_transaction(mutator, label)
        except CrontabError as e:
            logger.error(f"Modification '{label}' failed: {e}")
            return TransactionResult(success=False, error=str(e), error_kind=e.kind)
        except Exception as e:
            logger.error(f"Modification '{label}' failed unexpectedly: {e}", exc_info=True)
            return TransactionResult(success=False, error=str(e), error_kind=CrontabError.kind)

    def _run_transaction(self, mutator: Mutator, label: str) -> TransactionResult:
        logger.debug(f"Starting crontab modification '{label}' on {self.source}")

        try:
            original = self._read_text()
        except CrontabNotFoundError as e:
            logger.error(f"Modification '{label}' failed: {e}")
            return TransactionResult(success=False, error=str(e), error_kind=e.kind)

        # No backup, no write: the backup is the only way back.
        try:
            backup = self._write_backup(label, original)
        except CrontabIOError as e:
            logger.error(f"Modification '{label}' aborted, backup failed: {e}")
            return TransactionResult(success=False, error=str(e), error_kind=e.kind)

        document = Document.parse(original)
        try:
            outcome = mutator(document)
        except CrontabError as e:
            logger.warning(f"Modification '{label}' rejected: {e}")
            return TransactionResult(success=False, error=str(e), error_kind=e.kind, backup=backup)
        except Exception as e:
            logger.error(f"Modification '{label}' raised an error: {e}", exc_info=True)
            return TransactionResult(
                success=False, error=str(e), error_kind=CrontabError.kind, backup=backup
            )

        if outcome is False:
            logger.warning(f"Modification '{label}' aborted by mutator")
            return TransactionResult(
                success=False,
                error="Modification aborted",
                error_kind=CrontabError.kind,
                backup=backup
            )

        new_text = document.dump()
        try:
            self._write_text(new_text)
            written = self._read_text()
            if not _same_content(written, new_text):
                raise CrontabIOError("Verification failed: crontab content differs from what was written")
        except CrontabError as e:
            logger.error(f"Writing crontab failed during '{label}': {e}")
            self._restore(backup, original)
            return TransactionResult(
                success=False,
                error=f"Failed to write crontab: {e}",
                error_kind=CrontabIOError.kind,
                backup=backup
            )

        logger.info(f"Crontab modification '{label}' applied to {self.source}")

        try:
            self.prune_backups()
        except OSError as e:
            logger.warning(f"Failed to prune old backups: {e}")

        return TransactionResult(success=True, backup=backup)

    def _restore(self, backup: BackupHandle, original: str):
        try:
            text = backup.read_text()
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read backup {backup.path} ({e}), restoring from memory")
            text = original

        try:
            self._write_text(text)
            logger.info(f"Restored crontab from backup {backup.path}")
        except CrontabError as e:
            logger.critical(
                f"Rollback failed, crontab may be damaged. Restore it manually from {backup.path}: {e}"
            )

    def __repr__(self):
        return f"CrontabStore(source={self.source}, backup_dir={self.backup_dir})"
