"""
Crontab manager configuration management.

Handles loading, saving, and validating the manager configuration:
which crontab to manage, where backups go and how many are kept,
and which scripts jobs may run.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, List, Any, Union

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BACKUP_RETENTION = 10
MIN_BACKUP_RETENTION = 1
MAX_BACKUP_RETENTION = 100


def get_data_dir() -> Path:
    """Get the base directory for manager files (config, backups, logs)."""
    data_dir = os.environ.get('CRONTAB_MANAGER_HOME')
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".crontab_manager"


def _get_default_log_file() -> str:
    """Get default log file path from environment or default."""
    if os.environ.get('CRONTAB_MANAGER_LOG_DIR'):
        return str(Path(os.environ['CRONTAB_MANAGER_LOG_DIR']).expanduser() / "crontab-manager.log")
    return str(get_data_dir() / "logs" / "crontab-manager.log")


def _get_default_backup_dir() -> str:
    if os.environ.get('CRONTAB_MANAGER_BACKUP_DIR'):
        return str(Path(os.environ['CRONTAB_MANAGER_BACKUP_DIR']).expanduser())
    return str(get_data_dir() / "backups")


def normalize_backup_retention(value: Any) -> int:
    """
    Clamp a configured retention count to the accepted range.

    Anything that is not an integer between 1 and 100 falls back to the
    default of 10.
    """
    try:
        retention = int(value)
    except (TypeError, ValueError):
        return DEFAULT_BACKUP_RETENTION

    if MIN_BACKUP_RETENTION <= retention <= MAX_BACKUP_RETENTION:
        return retention
    return DEFAULT_BACKUP_RETENTION


def parse_allowlist(value: Union[str, List[str], None]) -> List[str]:
    """
    Parse a script allowlist.

    Accepts a list of patterns or a newline-separated string. Patterns are
    trimmed and blank entries dropped.
    """
    if not value:
        return []
    if isinstance(value, str):
        value = value.splitlines()
    return [pattern.strip() for pattern in value if pattern and pattern.strip()]


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


@dataclass
class BackupConfig:
    """Backup location and retention."""
    directory: str = None  # Set dynamically in __post_init__
    retention: int = DEFAULT_BACKUP_RETENTION

    def __post_init__(self):
        if self.directory is None:
            self.directory = _get_default_backup_dir()
        retention = normalize_backup_retention(self.retention)
        if retention != self.retention:
            logger.warning(
                f"Invalid backup retention {self.retention!r}, using {retention} "
                f"(must be between {MIN_BACKUP_RETENTION} and {MAX_BACKUP_RETENTION})"
            )
        self.retention = retention


class ManagerConfig:
    """
    Crontab manager configuration.

    Loads and manages configuration from a JSON file, with support for
    validation and defaults.

    Configuration path priority:
    1. Explicit config_path argument
    2. CRONTAB_MANAGER_CONFIG environment variable
    3. Default: ~/.crontab_manager/config.json

    The crontab file itself can be overridden with CRONTAB_MANAGER_CRON_FILE.
    When no crontab file is configured the invoking user's crontab is
    managed through the `crontab` command.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize manager configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get('CRONTAB_MANAGER_CONFIG'):
            self.config_path = Path(os.environ['CRONTAB_MANAGER_CONFIG']).expanduser()
        else:
            self.config_path = get_data_dir() / "config.json"

        self.cron_file: Optional[str] = None
        self.crontab_command: str = "crontab"
        self.script_allowlist: List[str] = []
        self.management_enabled: bool = True
        self.require_approved_scripts: bool = True
        self.lock_timeout: float = 10.0
        self.backup: BackupConfig = BackupConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        if os.environ.get('CRONTAB_MANAGER_CRON_FILE'):
            self.cron_file = os.environ['CRONTAB_MANAGER_CRON_FILE']

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            self.cron_file = data.get('cron_file') or None
            self.crontab_command = data.get('crontab_command', 'crontab')
            self.script_allowlist = parse_allowlist(data.get('script_allowlist'))
            self.management_enabled = bool(data.get('management_enabled', True))
            self.require_approved_scripts = bool(data.get('require_approved_scripts', True))
            self.lock_timeout = float(data.get('lock_timeout', 10.0))

            if 'backup' in data:
                self.backup = BackupConfig(**data['backup'])

            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'cron_file': self.cron_file,
            'crontab_command': self.crontab_command,
            'script_allowlist': self.script_allowlist,
            'management_enabled': self.management_enabled,
            'require_approved_scripts': self.require_approved_scripts,
            'lock_timeout': self.lock_timeout,
            'backup': asdict(self.backup),
            'logging': asdict(self.logging)
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def set_backup_retention(self, value: Any) -> int:
        """Set backup retention, clamping invalid values to the default."""
        self.backup.retention = normalize_backup_retention(value)
        return self.backup.retention

    def set_script_allowlist(self, value: Union[str, List[str], None]):
        self.script_allowlist = parse_allowlist(value)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.cron_file and Path(self.cron_file).expanduser().is_dir():
            errors.append(f"cron_file '{self.cron_file}' is a directory")

        if not self.cron_file and not self.crontab_command:
            errors.append("Either 'cron_file' or 'crontab_command' must be set")

        if not MIN_BACKUP_RETENTION <= self.backup.retention <= MAX_BACKUP_RETENTION:
            errors.append(
                f"backup.retention must be between {MIN_BACKUP_RETENTION} "
                f"and {MAX_BACKUP_RETENTION}"
            )

        if self.lock_timeout <= 0:
            errors.append("'lock_timeout' must be positive")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Unknown logging level '{self.logging.level}'")

        return errors

    def __repr__(self):
        return f"ManagerConfig(cron_file={self.cron_file}, path={self.config_path})"
