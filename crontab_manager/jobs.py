"""
Managed crontab jobs.

A managed job is a crontab block carrying structured metadata in comment
lines of the form "# @key: value":

    # @crontab-manager-id: 6f1c3a52-...
    # @name: Nightly fines
    # @description: Charge overdue fines
    # @created: 2025-10-15 10:00:00
    # @updated: 2025-10-15 10:00:00
    # @managed-by: koha-crontab-plugin
    KOHA_CONF=/etc/koha/koha-conf.xml
    0 2 * * * $KOHA_CRON_PATH/fines.pl --verbose

Blocks without a crontab-manager-id are system entries and are never
modified through this module. Every change goes through
CrontabStore.safely_modify(), so a failed change leaves the crontab as it was.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, Any, List, Optional

from apscheduler.triggers.cron import CronTrigger

from crontab_manager.document import (
    Block,
    Comment,
    Document,
    EnvAssignment,
    ScheduleEntry,
    parse_line,
)
from crontab_manager.store import (
    CrontabError,
    CrontabIOError,
    CrontabNotFoundError,
    CrontabStore,
    TransactionResult,
    ValidationError,
)

logger = logging.getLogger(__name__)

MANAGED_BY_TAG = "koha-crontab-plugin"
ID_KEY = "crontab-manager-id"
METADATA_KEYS = (ID_KEY, "name", "description", "created", "updated", "managed-by")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

UPDATABLE_FIELDS = ("name", "description", "schedule", "command", "environment", "enabled")

_METADATA_PATTERN = re.compile(r'^\s*#\s*@(\w+(?:-\w+)*):\s*(.+?)\s*$')
_ENV_NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

# crontab(5) shortcuts expressed as five-field schedules
SCHEDULE_ALIASES = {
    'yearly': '0 0 1 1 *',
    'annually': '0 0 1 1 *',
    'monthly': '0 0 1 * *',
    'weekly': '0 0 * * 0',
    'daily': '0 0 * * *',
    'midnight': '0 0 * * *',
    'hourly': '0 * * * *',
}


class JobNotFoundError(CrontabError):
    """Raised when a job ID does not match any block in the crontab."""
    kind = "conflict_not_found"

    def __init__(self, message: str = "Job not found", job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (JobNotFoundError, ValidationError, CrontabNotFoundError, CrontabIOError)
}


@dataclass
class JobRecord:
    """A managed job, as seen through its crontab block."""
    id: str
    name: str = ''
    description: str = ''
    schedule: str = ''
    command: str = ''
    environment: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    created: str = ''
    updated: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'schedule': self.schedule,
            'command': self.command,
            'enabled': self.enabled,
            'environment': dict(self.environment),
            'created_at': self.created,
            'updated_at': self.updated,
        }


@dataclass
class CrontabEntry:
    """One schedule line of the crontab, managed or not."""
    schedule: str
    command: str
    enabled: bool
    managed: bool
    comments: List[str] = field(default_factory=list)
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    created: Optional[str] = None
    updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        entry = {
            'schedule': self.schedule,
            'command': self.command,
            'enabled': self.enabled,
            'managed': self.managed,
            'comments': list(self.comments),
        }
        if self.managed:
            entry.update({
                'id': self.id,
                'name': self.name,
                'description': self.description,
                'created_at': self.created,
                'updated_at': self.updated,
            })
        return entry


def now_timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def generate_job_id() -> str:
    """Generate a unique job ID (random UUID, canonical form)."""
    return str(uuid.uuid4())


def parse_job_metadata(block: Block) -> Optional[Dict[str, str]]:
    """
    Parse "# @key: value" metadata from a block's comment lines.

    Returns:
        Dict of metadata, or None if the block has no crontab-manager-id
        (i.e. it was not created by this manager)
    """
    metadata = {}
    for comment in block.comments():
        match = _METADATA_PATTERN.match(comment.text)
        if match and match.group(1) in METADATA_KEYS:
            metadata[match.group(1)] = match.group(2)

    if not metadata.get(ID_KEY):
        return None
    return metadata


def is_managed(metadata: Optional[Dict[str, str]]) -> bool:
    return bool(metadata) and metadata.get('managed-by') == MANAGED_BY_TAG


def _sunday_as_zero(day_of_week: str) -> str:
    """
    Rewrite crontab's Sunday-as-7 into the 0-6 range APScheduler accepts.

    '7' becomes '0' and a range ending in 7 such as '5-7' becomes '5-6,0'.
    """
    items = []
    for item in day_of_week.split(','):
        base, slash, step = item.partition('/')
        start, dash, end = base.partition('-')

        if not dash:
            items.append('0' + slash + step if base == '7' else item)
        elif end != '7':
            items.append(item)
        elif start == '7':
            items.append('0')
        else:
            items.append(f"{start}-6{slash}{step}")
            interval = int(step) if step.isdigit() and int(step) > 0 else 1
            if start.isdigit() and (7 - int(start)) % interval == 0:
                items.append('0')
    return ','.join(items)


def validate_schedule(schedule: str):
    """
    Check that a schedule expression is a valid crontab schedule.

    Accepts five-field expressions and the @ shortcuts of crontab(5).
    Nothing is evaluated; the expression is only parsed.

    Raises:
        ValidationError: If the expression is not valid
    """
    expression = (schedule or '').strip()
    if not expression:
        raise ValidationError("Schedule cannot be empty")

    if expression.startswith('@'):
        alias = expression[1:].lower()
        if alias == 'reboot':
            return
        if alias not in SCHEDULE_ALIASES:
            raise ValidationError(f"Unknown schedule shortcut '{expression}'")
        expression = SCHEDULE_ALIASES[alias]

    fields = expression.split()
    if len(fields) != 5:
        raise ValidationError(
            f"Invalid schedule '{schedule}': expected 5 fields, got {len(fields)}"
        )

    fields[4] = _sunday_as_zero(fields[4])

    try:
        CronTrigger.from_crontab(' '.join(fields), timezone='UTC')
    except ValueError as e:
        raise ValidationError(f"Invalid schedule '{schedule}': {e}") from e


def validate_job_fields(data: Dict[str, Any]):
    """
    Validate the fields present in a job create/update payload.

    Only fields that are present are checked.

    Raises:
        ValidationError: On the first invalid field
    """
    for key in ('name', 'description'):
        value = data.get(key)
        if value is not None and ('\n' in str(value) or '\r' in str(value)):
            raise ValidationError(f"Field '{key}' must be a single line")

    if data.get('schedule') is not None:
        validate_schedule(data['schedule'])

    command = data.get('command')
    if command is not None:
        if not str(command).strip():
            raise ValidationError("Command cannot be empty")
        if '\n' in command or '\r' in command:
            raise ValidationError("Command must be a single line")

    environment = data.get('environment')
    if environment is not None:
        if not isinstance(environment, dict):
            raise ValidationError("Environment must be a mapping of name to value")
        for name, value in environment.items():
            if not _ENV_NAME_PATTERN.match(str(name)):
                raise ValidationError(f"Invalid environment variable name '{name}'")
            if '\n' in str(value) or '\r' in str(value):
                raise ValidationError(f"Environment variable '{name}' must be a single line")


def _strip_text_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    # Metadata values are read back without surrounding whitespace
    data = dict(data)
    for key in ('name', 'description'):
        if isinstance(data.get(key), str):
            data[key] = data[key].strip()
    return data


def create_job_block(job_data: Dict[str, Any]) -> Block:
    """
    Build a crontab block for a job.

    Args:
        job_data: Dict with id, name, description, schedule, command and
                  optionally environment, enabled (default True), created
                  and updated (default now)

    Returns:
        Block with metadata comments, environment lines (sorted by name)
        and a single schedule entry
    """
    now = now_timestamp()

    lines = [Comment(f"# @{ID_KEY}: {job_data['id']}")]
    if job_data.get('name'):
        lines.append(Comment(f"# @name: {job_data['name']}"))
    if job_data.get('description'):
        lines.append(Comment(f"# @description: {job_data['description']}"))
    lines.append(Comment(f"# @created: {job_data.get('created') or now}"))
    lines.append(Comment(f"# @updated: {job_data.get('updated') or now}"))
    lines.append(Comment(f"# @managed-by: {MANAGED_BY_TAG}"))

    environment = job_data.get('environment') or {}
    for name in sorted(environment):
        lines.append(EnvAssignment(name=name, value=str(environment[name])))

    enabled = job_data.get('enabled')
    entry = ScheduleEntry(
        schedule=job_data['schedule'],
        command=job_data['command'],
        active=True if enabled is None else bool(enabled)
    )
    if not isinstance(parse_line(entry.render()), ScheduleEntry):
        raise ValidationError(
            f"'{entry.schedule} {entry.command}' is not a valid crontab entry"
        )
    lines.append(entry)

    return Block(lines)


def job_from_block(block: Block) -> Optional[JobRecord]:
    """
    Build the JobRecord view of a managed block.

    Only the first schedule entry of the block is reported.
    """
    metadata = parse_job_metadata(block)
    if not is_managed(metadata):
        return None

    entries = block.entries()
    if not entries:
        return None
    entry = entries[0]

    return JobRecord(
        id=metadata[ID_KEY],
        name=metadata.get('name', ''),
        description=metadata.get('description', ''),
        schedule=entry.schedule,
        command=entry.command,
        environment={env.name: env.value for env in block.envs()},
        enabled=entry.active,
        created=metadata.get('created', ''),
        updated=metadata.get('updated', ''),
    )


def find_job_block(document: Document, job_id: str) -> Optional[Block]:
    """Find the first block whose crontab-manager-id matches job_id."""
    for block in document.blocks:
        metadata = parse_job_metadata(block)
        if metadata and metadata[ID_KEY] == job_id:
            return block
    return None


def update_job_block(block: Block, updates: Dict[str, Any]) -> bool:
    """
    Apply a partial update to a job block.

    Fields missing from `updates` keep their current value. The block is
    rebuilt from scratch with create_job_block(), so its layout is always
    the canonical one. `updated` is set to now; `id` and `created` never
    change.

    Returns:
        True if updated, False if the block is not a job block
    """
    metadata = parse_job_metadata(block)
    if not metadata:
        return False

    entries = block.entries()
    first = entries[0] if entries else None

    def pick(key, current):
        value = updates.get(key)
        return current if value is None else value

    job_data = {
        'id': metadata[ID_KEY],
        'name': pick('name', metadata.get('name', '')),
        'description': pick('description', metadata.get('description', '')),
        'schedule': updates.get('schedule') or (first.schedule if first else ''),
        'command': updates.get('command') or (first.command if first else ''),
        'environment': pick('environment', {env.name: env.value for env in block.envs()}),
        'enabled': pick('enabled', first.active if first else True),
        'created': metadata.get('created'),
        'updated': now_timestamp(),
    }

    if not job_data['schedule'] or not job_data['command']:
        raise ValidationError("Job has no schedule entry; both schedule and command are required")

    block.lines = create_job_block(job_data).lines
    return True


class JobManager:
    """
    CRUD operations on managed jobs.

    Reads parse the crontab fresh each time; writes are mutators run by
    CrontabStore.safely_modify() and raise the matching CrontabError
    subclass when the transaction fails.
    """

    def __init__(self, store: CrontabStore, script_catalog=None):
        """
        Initialize the job manager.

        Args:
            store: Store for the crontab being managed
            script_catalog: Optional ScriptCatalog used to check that job
                            commands reference an approved script
        """
        self.store = store
        self.script_catalog = script_catalog

    def _read(self) -> Optional[Document]:
        try:
            return self.store.read()
        except CrontabNotFoundError as e:
            logger.info(f"No crontab to read: {e}")
            return None

    def _commit(self, mutator, label: str) -> TransactionResult:
        result = self.store.safely_modify(mutator, label=label)
        if not result.success:
            error_class = _ERRORS_BY_KIND.get(result.error_kind, CrontabError)
            raise error_class(result.error)
        return result

    def _validate_command(self, command: str):
        if self.script_catalog is None:
            return
        validation = self.script_catalog.validate_command(command)
        if not validation.valid:
            raise ValidationError(validation.error)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_jobs(self) -> List[JobRecord]:
        """Get all jobs managed by this tool (empty if there is no crontab)."""
        document = self._read()
        if document is None:
            return []

        jobs = []
        for block in document.blocks:
            job = job_from_block(block)
            if job:
                jobs.append(job)
        return jobs

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        for job in self.list_jobs():
            if job.id == job_id:
                return job
        return None

    def list_entries(self) -> List[CrontabEntry]:
        """
        Get every schedule entry in the crontab, managed or not.

        A block with several entries yields one CrontabEntry per entry,
        all sharing the block's comment lines.
        """
        document = self._read()
        if document is None:
            return []

        entries = []
        for block in document.blocks:
            schedule_entries = block.entries()
            if not schedule_entries:
                continue

            metadata = parse_job_metadata(block)
            managed = is_managed(metadata)
            comments = [comment.text for comment in block.comments()]

            for line in schedule_entries:
                entry = CrontabEntry(
                    schedule=line.schedule,
                    command=line.command,
                    enabled=line.active,
                    managed=managed,
                    comments=comments,
                )
                if managed:
                    entry.id = metadata[ID_KEY]
                    entry.name = metadata.get('name', '')
                    entry.description = metadata.get('description', '')
                    entry.created = metadata.get('created', '')
                    entry.updated = metadata.get('updated', '')
                entries.append(entry)

        return entries

    def global_environment(self) -> Dict[str, str]:
        """
        Get environment variables that apply to the whole crontab.

        These are the active assignments outside managed job blocks; a
        later assignment of the same name wins, as it does for cron.
        """
        document = self._read()
        if document is None:
            return {}

        environment = {}
        for block in document.blocks:
            if is_managed(parse_job_metadata(block)):
                continue
            for env in block.envs():
                if env.active:
                    environment[env.name] = env.value
        return environment

    # ------------------------------------------------------------------
    # Modifications
    # ------------------------------------------------------------------

    def add_job(self, data: Dict[str, Any]) -> JobRecord:
        """
        Create a new managed job at the end of the crontab.

        Args:
            data: Dict with name, schedule, command and optionally
                  description, environment, enabled

        Raises:
            ValidationError: Missing/invalid fields or unapproved command
            CrontabError: If the transaction fails
        """
        data = _strip_text_fields(data)
        for key in ('name', 'schedule', 'command'):
            if not data.get(key):
                raise ValidationError(f"Missing required field: {key}")

        validate_job_fields(data)
        self._validate_command(data['command'])

        now = now_timestamp()
        enabled = data.get('enabled')
        job = JobRecord(
            id=generate_job_id(),
            name=data['name'],
            description=data.get('description') or '',
            schedule=data['schedule'],
            command=data['command'],
            environment=dict(data.get('environment') or {}),
            enabled=True if enabled is None else bool(enabled),
            created=now,
            updated=now,
        )

        def mutator(document: Document):
            document.append(create_job_block(asdict(job)))
            return True

        self._commit(mutator, label='add_job')
        logger.info(f"Created job '{job.name}' ({job.id})")
        return job

    def update_job(self, job_id: str, updates: Dict[str, Any]) -> JobRecord:
        """
        Update fields of an existing job.

        Raises:
            JobNotFoundError: If no block has this job ID
            ValidationError: Invalid fields or unapproved command
        """
        updates = _strip_text_fields({
            key: value for key, value in updates.items()
            if key in UPDATABLE_FIELDS and value is not None
        })
        # An empty schedule or command means "keep the current one"
        for key in ('schedule', 'command'):
            if key in updates and not str(updates[key]).strip():
                del updates[key]

        validate_job_fields(updates)
        if 'command' in updates:
            self._validate_command(updates['command'])

        updated = {}

        def mutator(document: Document):
            block = find_job_block(document, job_id)
            if block is None:
                raise JobNotFoundError(job_id=job_id)
            update_job_block(block, updates)
            updated['job'] = job_from_block(block)
            return True

        self._commit(mutator, label='update_job')
        logger.info(f"Updated job '{updated['job'].name}' ({job_id})")
        return updated['job']

    def delete_job(self, job_id: str) -> JobRecord:
        """
        Remove a job's block from the crontab.

        Returns:
            The job as it was before deletion
        """
        deleted = {}

        def mutator(document: Document):
            block = find_job_block(document, job_id)
            if block is None:
                raise JobNotFoundError(job_id=job_id)
            deleted['job'] = job_from_block(block) or JobRecord(id=job_id)
            document.remove(block)
            return True

        self._commit(mutator, label='delete_job')
        logger.info(f"Deleted job '{deleted['job'].name}' ({job_id})")
        return deleted['job']

    def set_job_enabled(self, job_id: str, enabled: bool) -> JobRecord:
        """
        Enable or disable every schedule entry of a job.

        Disabled entries stay in the crontab, commented out. Setting the
        state a job already has succeeds and changes nothing.
        """
        changed = {}

        def mutator(document: Document):
            block = find_job_block(document, job_id)
            if block is None:
                raise JobNotFoundError(job_id=job_id)
            for entry in block.entries():
                entry.active = enabled
            changed['job'] = job_from_block(block) or JobRecord(id=job_id, enabled=enabled)
            return True

        action = 'enable' if enabled else 'disable'
        self._commit(mutator, label=f'{action}_job')
        logger.info(f"{action.capitalize()}d job '{changed['job'].name}' ({job_id})")
        return changed['job']

    def enable_job(self, job_id: str) -> JobRecord:
        return self.set_job_enabled(job_id, True)

    def disable_job(self, job_id: str) -> JobRecord:
        return self.set_job_enabled(job_id, False)

    def remove_managed_jobs(self) -> int:
        """
        Remove every managed job from the crontab.

        Returns:
            Number of job blocks removed
        """
        removed = {'count': 0}

        def mutator(document: Document):
            blocks = [
                block for block in document.blocks
                if is_managed(parse_job_metadata(block))
            ]
            for block in blocks:
                document.remove(block)
            removed['count'] = len(blocks)
            return True

        self._commit(mutator, label='remove_managed_jobs')
        logger.info(f"Removed {removed['count']} managed job(s) from crontab")
        return removed['count']
