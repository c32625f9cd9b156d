"""
Crontab Manager

Manage a machine's crontab as a structured document: jobs carry their
metadata in comment lines, every change is backed up and applied as a
transaction, and job commands are checked against the scripts available
under KOHA_CRON_PATH.

Features:
- Byte-exact round trip of untouched crontab content
- Automatic timestamped backups with retention and rollback on failure
- Managed jobs alongside hand-written (system) entries
- Script discovery with Getopt::Long option and @ARGV introspection
"""

from crontab_manager.config import ManagerConfig
from crontab_manager.document import Document
from crontab_manager.jobs import JobManager, JobRecord, JobNotFoundError
from crontab_manager.scripts import ScriptCatalog
from crontab_manager.service import CrontabService
from crontab_manager.store import CrontabStore, CrontabError, ValidationError

__version__ = "0.1.0"
__all__ = [
    "ManagerConfig",
    "Document",
    "JobManager",
    "JobRecord",
    "JobNotFoundError",
    "ScriptCatalog",
    "CrontabService",
    "CrontabStore",
    "CrontabError",
    "ValidationError",
]
