"""
Tests for managed job records.
"""

import re

import pytest

from crontab_manager.document import Block, Comment, Document, EnvAssignment, ScheduleEntry
from crontab_manager.jobs import (
    MANAGED_BY_TAG,
    JobManager,
    JobNotFoundError,
    create_job_block,
    find_job_block,
    generate_job_id,
    job_from_block,
    parse_job_metadata,
    update_job_block,
    validate_schedule,
)
from crontab_manager.scripts import ScriptCatalog
from crontab_manager.store import CrontabStore, ValidationError


SYSTEM_CRONTAB = """SHELL=/bin/bash
MAILTO=root

# Nightly database dump
0 1 * * * /usr/local/bin/dump.sh
"""

FOREIGN_BLOCK = """
# @crontab-manager-id: 11111111-2222-3333-4444-555555555555
# @name: Not ours
# @managed-by: some-other-tool
0 5 * * * /opt/other.sh
"""

MULTI_ENTRY_JOB = """
# @crontab-manager-id: abc
# @name: Twice daily
# @created: 2025-01-01 00:00:00
# @updated: 2025-01-01 00:00:00
# @managed-by: koha-crontab-plugin
0 6 * * * $KOHA_CRON_PATH/a.pl
0 18 * * * $KOHA_CRON_PATH/a.pl
"""

JOB_DATA = {
    'id': 'job-1',
    'name': 'Nightly fines',
    'description': 'Charge overdue fines',
    'schedule': '0 2 * * *',
    'command': '$KOHA_CRON_PATH/fines.pl --verbose',
    'environment': {'PERL5LIB': '/usr/share/koha/lib', 'KOHA_CONF': '/etc/koha/koha-conf.xml'},
    'created': '2025-10-15 10:00:00',
    'updated': '2025-10-15 10:00:00',
}


@pytest.fixture
def cron_file(tmp_path):
    path = tmp_path / "crontab"
    path.write_text(SYSTEM_CRONTAB)
    return path


@pytest.fixture
def manager(tmp_path, cron_file):
    store = CrontabStore(cron_file=cron_file, backup_dir=tmp_path / "backups")
    return JobManager(store)


def new_job(manager, **overrides):
    data = {
        'name': 'Nightly fines',
        'schedule': '0 2 * * *',
        'command': '$KOHA_CRON_PATH/fines.pl',
    }
    data.update(overrides)
    return manager.add_job(data)


# ----------------------------------------------------------------------
# Block encoding
# ----------------------------------------------------------------------

def test_create_job_block_layout():
    block = create_job_block(JOB_DATA)

    assert block.dump().split('\n') == [
        "# @crontab-manager-id: job-1",
        "# @name: Nightly fines",
        "# @description: Charge overdue fines",
        "# @created: 2025-10-15 10:00:00",
        "# @updated: 2025-10-15 10:00:00",
        f"# @managed-by: {MANAGED_BY_TAG}",
        "KOHA_CONF=/etc/koha/koha-conf.xml",
        "PERL5LIB=/usr/share/koha/lib",
        "0 2 * * * $KOHA_CRON_PATH/fines.pl --verbose",
    ]


def test_metadata_round_trips_through_text():
    text = Document(blocks=[create_job_block(JOB_DATA)]).dump()
    block = Document.parse(text).blocks[0]

    metadata = parse_job_metadata(block)
    assert metadata == {
        'crontab-manager-id': 'job-1',
        'name': 'Nightly fines',
        'description': 'Charge overdue fines',
        'created': '2025-10-15 10:00:00',
        'updated': '2025-10-15 10:00:00',
        'managed-by': MANAGED_BY_TAG,
    }

    job = job_from_block(block)
    assert job.schedule == JOB_DATA['schedule']
    assert job.command == JOB_DATA['command']
    assert job.environment == JOB_DATA['environment']
    assert job.enabled is True


def test_optional_fields_are_omitted():
    data = dict(JOB_DATA, description='', environment={})
    lines = create_job_block(data).dump().split('\n')

    assert not any('@description' in line for line in lines)
    assert len(lines) == 6


def test_disabled_job_block():
    block = create_job_block(dict(JOB_DATA, enabled=False))

    assert block.dump().endswith("\n#0 2 * * * $KOHA_CRON_PATH/fines.pl --verbose")
    assert job_from_block(block).enabled is False


def test_missing_timestamps_default_to_now():
    data = dict(JOB_DATA)
    del data['created']
    del data['updated']

    metadata = parse_job_metadata(create_job_block(data))

    assert re.match(r'^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$', metadata['created'])
    assert metadata['updated'] == metadata['created']


def test_block_without_id_is_not_a_job():
    block = Block([Comment("# @name: Orphan"), ScheduleEntry("0 1 * * *", "/bin/true")])

    assert parse_job_metadata(block) is None
    assert job_from_block(block) is None


def test_unknown_metadata_keys_are_ignored():
    block = Block([
        Comment("# @crontab-manager-id: x"),
        Comment("# @owner: librarian"),
        Comment(f"# @managed-by: {MANAGED_BY_TAG}"),
    ])

    assert parse_job_metadata(block) == {'crontab-manager-id': 'x', 'managed-by': MANAGED_BY_TAG}


def test_foreign_owner_is_not_managed():
    block = Document.parse(FOREIGN_BLOCK).blocks[0]

    assert parse_job_metadata(block)['managed-by'] == 'some-other-tool'
    assert job_from_block(block) is None


def test_find_job_block():
    document = Document.parse(SYSTEM_CRONTAB + MULTI_ENTRY_JOB)

    assert find_job_block(document, 'abc') is document.blocks[-1]
    assert find_job_block(document, 'missing') is None


def test_update_job_block_carries_over_fields():
    block = create_job_block(dict(JOB_DATA, enabled=False))

    assert update_job_block(block, {'name': 'Renamed'})

    job = job_from_block(block)
    assert job.id == 'job-1'
    assert job.name == 'Renamed'
    assert job.description == 'Charge overdue fines'
    assert job.schedule == '0 2 * * *'
    assert job.command == '$KOHA_CRON_PATH/fines.pl --verbose'
    assert job.environment == JOB_DATA['environment']
    assert job.enabled is False
    assert job.created == '2025-10-15 10:00:00'
    assert job.updated != '2025-10-15 10:00:00'


def test_update_job_block_can_clear_description():
    block = create_job_block(JOB_DATA)

    update_job_block(block, {'description': ''})

    assert parse_job_metadata(block).get('description') is None


def test_update_job_block_ignores_non_job_blocks():
    block = Block([Comment("# plain"), ScheduleEntry("0 1 * * *", "/bin/true")])

    assert update_job_block(block, {'name': 'x'}) is False
    assert block.dump() == "# plain\n0 1 * * * /bin/true"


def test_generate_job_id_is_uuid4():
    job_id = generate_job_id()

    assert re.match(r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$', job_id)
    assert job_id != generate_job_id()


@pytest.mark.parametrize("schedule", [
    "0 2 * * *",
    "*/15 9-17 * * mon-fri",
    "0 0 * * 7",
    "0 2 * * 1-7",
    "0 2 * * 5-7",
    "0 2 * * 1,7",
    "0 2 * * 0-7/2",
    "30 4 1,15 * *",
    "@daily",
    "@reboot",
    "@annually",
])
def test_valid_schedules(schedule):
    validate_schedule(schedule)


@pytest.mark.parametrize("schedule", [
    "",
    "61 * * * *",
    "0 25 * * *",
    "* * * *",
    "@sometimes",
    "every day",
])
def test_invalid_schedules(schedule):
    with pytest.raises(ValidationError):
        validate_schedule(schedule)


# ----------------------------------------------------------------------
# JobManager
# ----------------------------------------------------------------------

def test_add_job_appends_block_and_keeps_system_entries(manager, cron_file):
    job = new_job(manager, description='Charge fines', environment={'MAILTO': 'fines@example.org'})

    text = cron_file.read_text()
    assert text.startswith(SYSTEM_CRONTAB)
    assert f"# @crontab-manager-id: {job.id}" in text

    jobs = manager.list_jobs()
    assert [j.id for j in jobs] == [job.id]
    assert jobs[0].environment == {'MAILTO': 'fines@example.org'}
    assert manager.get_job(job.id).name == 'Nightly fines'


@pytest.mark.parametrize("missing", ['name', 'schedule', 'command'])
def test_add_job_requires_fields(manager, cron_file, missing):
    data = {'name': 'x', 'schedule': '0 2 * * *', 'command': '/bin/true'}
    del data[missing]

    with pytest.raises(ValidationError, match=f"Missing required field: {missing}"):
        manager.add_job(data)
    assert cron_file.read_text() == SYSTEM_CRONTAB


@pytest.mark.parametrize("overrides", [
    {'schedule': '99 * * * *'},
    {'name': 'two\nlines'},
    {'environment': {'BAD NAME': 'x'}},
    {'command': 'first\nsecond'},
])
def test_add_job_rejects_invalid_fields(manager, cron_file, overrides):
    with pytest.raises(ValidationError):
        new_job(manager, **overrides)
    assert cron_file.read_text() == SYSTEM_CRONTAB


def test_list_entries_reports_every_entry(manager, cron_file):
    cron_file.write_text(SYSTEM_CRONTAB + FOREIGN_BLOCK)
    job = new_job(manager)

    entries = manager.list_entries()

    assert [e.command for e in entries] == [
        '/usr/local/bin/dump.sh',
        '/opt/other.sh',
        '$KOHA_CRON_PATH/fines.pl',
    ]
    assert [e.managed for e in entries] == [False, False, True]
    assert entries[0].comments == ['# Nightly database dump']
    assert entries[0].id is None
    assert entries[2].id == job.id
    assert 'id' not in entries[0].to_dict()
    assert entries[2].to_dict()['name'] == 'Nightly fines'


def test_name_and_description_are_trimmed(manager):
    job = new_job(manager, name='  Nightly fines ', description=' Charge fines\t')

    assert (job.name, job.description) == ('Nightly fines', 'Charge fines')
    assert manager.get_job(job.id) == job

    updated = manager.update_job(job.id, {'name': ' Renamed '})
    assert updated.name == 'Renamed'
    assert manager.get_job(job.id).name == 'Renamed'


def test_blank_name_counts_as_missing(manager):
    with pytest.raises(ValidationError, match="Missing required field: name"):
        new_job(manager, name='   ')


def test_list_jobs_on_non_utf8_crontab(manager, cron_file):
    cron_file.write_bytes(b"# caf\xe9\n0 1 * * * /bin/true\n")

    assert manager.list_jobs() == []

    job = new_job(manager)
    assert [j.id for j in manager.list_jobs()] == [job.id]
    assert cron_file.read_bytes().startswith(b"# caf\xe9\n0 1 * * * /bin/true\n\n")


def test_list_jobs_without_crontab(tmp_path):
    store = CrontabStore(cron_file=tmp_path / "missing", backup_dir=tmp_path / "backups")
    manager = JobManager(store)

    assert manager.list_jobs() == []
    assert manager.list_entries() == []
    assert manager.global_environment() == {}


def test_global_environment_excludes_job_environment(manager, cron_file):
    cron_file.write_text("#DISABLED=1\n" + SYSTEM_CRONTAB)
    new_job(manager, environment={'JOB_ONLY': 'yes'})

    assert manager.global_environment() == {'SHELL': '/bin/bash', 'MAILTO': 'root'}


def test_update_job(manager):
    job = new_job(manager, description='Charge fines')

    updated = manager.update_job(job.id, {'schedule': '30 3 * * *', 'name': None})

    assert updated.id == job.id
    assert updated.name == 'Nightly fines'
    assert updated.description == 'Charge fines'
    assert updated.schedule == '30 3 * * *'
    assert updated.created == job.created
    assert manager.get_job(job.id).schedule == '30 3 * * *'


def test_update_keeps_disabled_state(manager):
    job = new_job(manager)
    manager.disable_job(job.id)

    updated = manager.update_job(job.id, {'name': 'Still off'})

    assert updated.enabled is False


def test_update_unknown_job(manager, cron_file):
    new_job(manager)
    before = cron_file.read_bytes()

    with pytest.raises(JobNotFoundError, match="Job not found"):
        manager.update_job('does-not-exist', {'name': 'x'})
    assert cron_file.read_bytes() == before


def test_delete_job_removes_only_its_block(manager, cron_file):
    first = new_job(manager, name='First')
    second = new_job(manager, name='Second')

    deleted = manager.delete_job(first.id)

    assert deleted.name == 'First'
    assert [j.id for j in manager.list_jobs()] == [second.id]
    assert cron_file.read_text().startswith(SYSTEM_CRONTAB)


def test_delete_unknown_job(manager):
    with pytest.raises(JobNotFoundError):
        manager.delete_job('nope')


def test_disable_and_enable_are_idempotent(manager, cron_file):
    cron_file.write_text(SYSTEM_CRONTAB + MULTI_ENTRY_JOB)

    manager.disable_job('abc')
    disabled = cron_file.read_text()
    assert "#0 6 * * * $KOHA_CRON_PATH/a.pl\n#0 18 * * * $KOHA_CRON_PATH/a.pl\n" in disabled
    assert "# @updated: 2025-01-01 00:00:00" in disabled

    manager.disable_job('abc')
    assert cron_file.read_text() == disabled

    manager.enable_job('abc')
    assert cron_file.read_text() == SYSTEM_CRONTAB + MULTI_ENTRY_JOB

    manager.enable_job('abc')
    assert cron_file.read_text() == SYSTEM_CRONTAB + MULTI_ENTRY_JOB


def test_first_schedule_entry_represents_job(manager, cron_file):
    cron_file.write_text(SYSTEM_CRONTAB + MULTI_ENTRY_JOB)

    job = manager.get_job('abc')

    assert job.schedule == '0 6 * * *'


def test_remove_managed_jobs(manager, cron_file):
    cron_file.write_text(SYSTEM_CRONTAB + FOREIGN_BLOCK)
    new_job(manager, name='One')
    new_job(manager, name='Two')

    assert manager.remove_managed_jobs() == 2
    assert manager.list_jobs() == []
    assert cron_file.read_text().startswith(SYSTEM_CRONTAB + FOREIGN_BLOCK)
    assert len(manager.list_entries()) == 2


def test_commands_checked_against_script_catalog(tmp_path, cron_file):
    scripts_dir = tmp_path / "cronjobs"
    scripts_dir.mkdir()
    (scripts_dir / "fines.pl").write_text("#!/usr/bin/perl\n")
    cron_file.write_text(f"KOHA_CRON_PATH={scripts_dir}\n\n" + SYSTEM_CRONTAB)

    store = CrontabStore(cron_file=cron_file, backup_dir=tmp_path / "backups")
    manager = JobManager(store, script_catalog=ScriptCatalog(store))

    job = new_job(manager, command='$KOHA_CRON_PATH/fines.pl --verbose')
    assert job.command == '$KOHA_CRON_PATH/fines.pl --verbose'

    with pytest.raises(ValidationError, match="approved list"):
        new_job(manager, command='/bin/rm -rf /')

    with pytest.raises(ValidationError, match="Provided: /usr/bin/env"):
        manager.update_job(job.id, {'command': '/usr/bin/env'})

    # an empty command in an update keeps the current one
    assert manager.update_job(job.id, {'command': ''}).command == job.command
