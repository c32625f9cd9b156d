"""
Crontab manager service.

Wires configuration, storage, jobs and scripts together and implements the
management lifecycle:

- install: create a template crontab when none exists
- activate / deactivate: switch job management on or off (with a backup)
- uninstall: remove every managed job after a final backup

While management is deactivated, jobs stay in the crontab and keep running;
they just cannot be changed through this service.
"""

import logging
import os
from typing import Optional, Dict, Any, List

from crontab_manager.config import ManagerConfig
from crontab_manager.document import Block, Comment, Document, EnvAssignment
from crontab_manager.jobs import JobManager, JobRecord
from crontab_manager.scripts import CRON_PATH_VARIABLE, ScriptCatalog
from crontab_manager.store import (
    BackupHandle,
    CrontabError,
    CrontabIOError,
    CrontabNotFoundError,
    CrontabStore,
)

logger = logging.getLogger(__name__)

DEFAULT_KOHA_CONF = "/etc/koha/koha-conf.xml"
DEFAULT_PERL5LIB = "/usr/share/koha/lib"
DEFAULT_CRON_PATH = "/usr/share/koha/bin/cronjobs"

TEMPLATE_HEADER = """\
# Koha Example Crontab File
#
# This is an example of a crontab file for Debian.  It may not work
# in other versions of crontab, like on Solaris 8 or BSD, for example.
#
# While similar in structure,
# this is NOT an example for cron (as root).  Cron takes an extra
# argument per line to designate the user to run as.  You could
# reasonably extrapolate the needed info from here though.
#
# WARNING: These jobs will do things like charge fines, send
# potentially VERY MANY emails to patrons and even debar offending
# users.  DO NOT RUN OR SCHEDULE these jobs without being sure you
# really intend to.  Make sure the relevant message templates are
# configured to your liking before scheduling messages to be sent."""


class ManagementDisabledError(CrontabError):
    """Raised when a job change is attempted while management is deactivated."""
    kind = "disabled"


def build_template_document() -> Document:
    """
    Build the crontab installed when none exists: a header comment block
    followed by the environment block scripts rely on.
    """
    header = Block([Comment(line) for line in TEMPLATE_HEADER.splitlines()])

    environment = Block([
        Comment("# ENVIRONMENT"),
        EnvAssignment("KOHA_CONF", os.environ.get("KOHA_CONF") or DEFAULT_KOHA_CONF),
        EnvAssignment("PERL5LIB", os.environ.get("PERL5LIB") or DEFAULT_PERL5LIB),
        Comment("# Some additional variables to save you typing"),
        EnvAssignment(CRON_PATH_VARIABLE, DEFAULT_CRON_PATH),
    ])

    document = Document()
    document.append(header)
    document.append(environment)
    return document


class CrontabService:
    """
    Entry point for managing one crontab.

    Builds the store, script catalog and job manager from a ManagerConfig.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[ManagerConfig] = None
    ):
        """
        Initialize the service.

        Args:
            config_path: Path to configuration file (ignored if config is given)
            config: Already loaded configuration
        """
        self.config = config or ManagerConfig(config_path)

        self.store = CrontabStore(
            cron_file=self.config.cron_file,
            backup_dir=self.config.backup.directory,
            retention=self.config.backup.retention,
            crontab_command=self.config.crontab_command,
            lock_timeout=self.config.lock_timeout
        )
        self.scripts = ScriptCatalog(self.store, self.config.script_allowlist)
        self.jobs = JobManager(
            self.store,
            script_catalog=self.scripts if self.config.require_approved_scripts else None
        )

        logger.debug(f"Crontab service initialized for {self.store.source}")

    @property
    def management_enabled(self) -> bool:
        return self.config.management_enabled

    def require_management(self):
        """
        Raises:
            ManagementDisabledError: If job management is deactivated
        """
        if not self.config.management_enabled:
            raise ManagementDisabledError(
                "Job management is deactivated; run 'crontab-manager activate' first"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def install(self) -> bool:
        """
        Prepare the backup directory and install the template crontab if
        there is no crontab yet.

        Returns:
            True if the template was installed, False if a crontab existed
        """
        try:
            self.store.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CrontabIOError(f"Failed to create backup directory {self.store.backup_dir}: {e}") from e

        if not self.config.config_path.exists():
            self.config.save()

        if self.store.exists():
            logger.info(f"Crontab already present at {self.store.source}, leaving it unchanged")
            return False

        logger.warning(f"No crontab found at {self.store.source}, installing default template")
        self.store.create(build_template_document())
        return True

    def activate(self) -> BackupHandle:
        """
        Turn job management on, taking an 'enable' backup first.

        Raises:
            CrontabNotFoundError: If there is no crontab to manage
        """
        backup = self.store.backup("enable")
        self.config.management_enabled = True
        self.config.save()
        logger.info("Management activated - jobs can now be changed")
        return backup

    def deactivate(self) -> Optional[BackupHandle]:
        """
        Turn job management off. Jobs stay in the crontab.

        A 'disable' backup is taken when there is a crontab to back up.
        """
        backup = None
        try:
            backup = self.store.backup("disable")
        except CrontabNotFoundError as e:
            logger.warning(f"No crontab to back up before deactivating: {e}")

        self.config.management_enabled = False
        self.config.save()
        logger.info("Management deactivated - jobs remain in crontab but cannot be changed")
        return backup

    def uninstall(self) -> int:
        """
        Take a final 'uninstall' backup and remove every managed job.

        Unmanaged entries are left alone.

        Returns:
            Number of jobs removed
        """
        try:
            backup = self.store.backup("uninstall")
            logger.info(f"Created final backup before uninstall: {backup.path}")
        except CrontabNotFoundError:
            logger.info("No crontab present, nothing to uninstall")
            return 0

        return self.jobs.remove_managed_jobs()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def add_job(self, data: Dict[str, Any]) -> JobRecord:
        self.require_management()
        return self.jobs.add_job(data)

    def update_job(self, job_id: str, updates: Dict[str, Any]) -> JobRecord:
        self.require_management()
        return self.jobs.update_job(job_id, updates)

    def delete_job(self, job_id: str) -> JobRecord:
        self.require_management()
        return self.jobs.delete_job(job_id)

    def enable_job(self, job_id: str) -> JobRecord:
        self.require_management()
        return self.jobs.enable_job(job_id)

    def disable_job(self, job_id: str) -> JobRecord:
        self.require_management()
        return self.jobs.disable_job(job_id)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup(self, label: str = "manual") -> BackupHandle:
        """Take a backup outside of any modification and apply retention."""
        handle = self.store.backup(label)
        self.store.prune_backups()
        return handle

    def list_backups(self) -> List[BackupHandle]:
        return self.store.list_backups()

    def latest_backup(self) -> Optional[BackupHandle]:
        return self.store.latest_backup()

    def status(self) -> Dict[str, Any]:
        """Summary of the managed crontab for display."""
        jobs = self.jobs.list_jobs()
        return {
            'crontab': self.store.source,
            'exists': self.store.exists(),
            'management_enabled': self.config.management_enabled,
            'managed_jobs': len(jobs),
            'enabled_jobs': sum(1 for job in jobs if job.enabled),
            'cron_path': self.scripts.cron_path(),
            'backup_dir': str(self.store.backup_dir),
            'backup_retention': self.store.retention,
            'backups': len(self.store.list_backups()),
        }
