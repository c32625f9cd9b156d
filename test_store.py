"""
Tests for crontab storage, backups and the safe-modify transaction.
"""

import os
import stat

import pytest

from crontab_manager.document import Block, Comment, ScheduleEntry
from crontab_manager.store import (
    CrontabIOError,
    CrontabNotFoundError,
    CrontabStore,
    ValidationError,
)


CRONTAB = """SHELL=/bin/bash

# Nightly dump
0 1 * * * /usr/local/bin/dump.sh
"""


@pytest.fixture
def cron_file(tmp_path):
    path = tmp_path / "crontab"
    path.write_text(CRONTAB)
    return path


@pytest.fixture
def store(tmp_path, cron_file):
    return CrontabStore(cron_file=cron_file, backup_dir=tmp_path / "backups", retention=3)


def add_block(document):
    document.append(Block([Comment("# added"), ScheduleEntry("*/5 * * * *", "/bin/true")]))
    return True


def test_read_missing_file_raises(tmp_path):
    store = CrontabStore(cron_file=tmp_path / "missing", backup_dir=tmp_path / "backups")

    with pytest.raises(CrontabNotFoundError):
        store.read()
    assert not store.exists()


def test_successful_modification(store, cron_file):
    result = store.safely_modify(add_block, label="add_job")

    assert result.success
    assert result.error is None
    assert cron_file.read_text() == CRONTAB + "\n# added\n*/5 * * * * /bin/true\n"

    # the automatic backup holds the pre-modification text
    assert result.backup.label == "add_job"
    assert result.backup.read_text() == CRONTAB


def test_mutator_returning_none_counts_as_success(store, cron_file):
    def touch(document):
        document.blocks[1].entries()[0].active = False

    result = store.safely_modify(touch)

    assert result.success
    assert "#0 1 * * * /usr/local/bin/dump.sh" in cron_file.read_text()


def abort(document):
    return False


def reject(document):
    raise ValidationError("bad input")


def crash(document):
    raise RuntimeError("boom")


@pytest.mark.parametrize("mutator, kind", [
    (abort, "error"),
    (reject, "validation"),
    (crash, "error"),
])
def test_failed_mutator_leaves_file_untouched(store, cron_file, mutator, kind):
    before = cron_file.read_bytes()

    result = store.safely_modify(mutator)

    assert not result.success
    assert result.error_kind == kind
    assert result.error
    assert cron_file.read_bytes() == before


def test_mutator_changes_are_discarded_on_failure(store, cron_file):
    def change_then_fail(document):
        add_block(document)
        raise ValidationError("Missing required field: name")

    result = store.safely_modify(change_then_fail)

    assert result.error == "Missing required field: name"
    assert cron_file.read_text() == CRONTAB


def test_write_failure_rolls_back(store, cron_file, monkeypatch):
    original_write = store._write_text
    calls = []

    def failing_write(text):
        calls.append(text)
        if len(calls) == 1:
            raise CrontabIOError("disk full")
        original_write(text)

    monkeypatch.setattr(store, "_write_text", failing_write)

    result = store.safely_modify(add_block)

    assert not result.success
    assert result.error_kind == "io"
    assert result.error.startswith("Failed to write crontab")
    assert cron_file.read_text() == CRONTAB
    assert len(calls) == 2


def test_verification_failure_restores_backup(store, cron_file, monkeypatch):
    original_write = store._write_text
    calls = []

    def garbling_write(text):
        calls.append(text)
        if len(calls) == 1:
            text = text + "garbage\n"
        original_write(text)

    monkeypatch.setattr(store, "_write_text", garbling_write)

    result = store.safely_modify(add_block)

    assert not result.success
    assert result.error_kind == "io"
    assert "Verification failed" in result.error
    assert cron_file.read_text() == CRONTAB


def test_missing_crontab_is_not_found(tmp_path):
    store = CrontabStore(cron_file=tmp_path / "missing", backup_dir=tmp_path / "backups")

    result = store.safely_modify(add_block)

    assert not result.success
    assert result.error_kind == "not_found"
    assert store.list_backups() == []


def test_backup_failure_aborts_before_writing(store, cron_file, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store.backup_dir = blocker / "backups"

    result = store.safely_modify(add_block)

    assert not result.success
    assert result.error_kind == "io"
    assert cron_file.read_text() == CRONTAB


def test_retention_keeps_most_recent_backups(store):
    created = []
    for _ in range(5):
        result = store.safely_modify(add_block)
        assert result.success
        created.append(result.backup.path)

    backups = store.list_backups()
    assert [b.path for b in backups] == list(reversed(created[-3:]))
    assert all(path.exists() is False for path in created[:2])


def test_non_utf8_crontab_round_trips(store, cron_file):
    cron_file.write_bytes(b"# caf\xe9\n0 1 * * * /bin/true\n")

    result = store.safely_modify(add_block)

    assert result.success
    assert cron_file.read_bytes() == b"# caf\xe9\n0 1 * * * /bin/true\n\n# added\n*/5 * * * * /bin/true\n"
    assert result.backup.path.read_bytes() == b"# caf\xe9\n0 1 * * * /bin/true\n"


def test_unexpected_error_becomes_failed_result(store, cron_file, monkeypatch):
    def broken_backup(label, text):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(store, '_write_backup', broken_backup)

    result = store.safely_modify(add_block)

    assert not result.success
    assert result.error_kind == "error"
    assert result.error == "unexpected"
    assert cron_file.read_text() == CRONTAB


def test_manual_backup(store):
    handle = store.backup("before upgrade!")

    assert handle.label == "before-upgrade"
    assert handle.path.name.startswith("before-upgrade_")
    assert handle.read_text() == CRONTAB
    assert store.latest_backup() == handle


def test_backup_names_are_unique(store):
    names = {store.backup("manual").name for _ in range(20)}

    assert len(names) == 20


def test_prune_backups(store):
    for _ in range(6):
        store.backup("manual")

    removed = store.prune_backups(retention=2)

    assert len(removed) == 4
    assert len(store.list_backups()) == 2


def test_list_backups_ignores_unrelated_files(store):
    store.backup("manual")
    (store.backup_dir / "notes.txt").write_text("hello")

    assert [b.label for b in store.list_backups()] == ["manual"]


def test_retention_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        CrontabStore(cron_file=tmp_path / "crontab", retention=0)


def test_create_only_when_missing(tmp_path, cron_file):
    from crontab_manager.document import Document

    store = CrontabStore(cron_file=tmp_path / "new", backup_dir=tmp_path / "backups")
    assert store.create(Document.parse("MAILTO=root\n"))
    assert (tmp_path / "new").read_text() == "MAILTO=root\n"

    existing = CrontabStore(cron_file=cron_file, backup_dir=tmp_path / "backups")
    assert not existing.create(Document.parse("MAILTO=root\n"))
    assert cron_file.read_text() == CRONTAB


@pytest.mark.skipif(os.name == "nt", reason="advisory locks are exercised with fcntl")
def test_held_lock_times_out(tmp_path, cron_file):
    store = CrontabStore(cron_file=cron_file, backup_dir=tmp_path / "backups", lock_timeout=0.2)

    with store.lock():
        result = store.safely_modify(add_block)

    assert not result.success
    assert result.error_kind == "io"
    assert cron_file.read_text() == CRONTAB


FAKE_CRONTAB = """#!/bin/sh
STORE="$(dirname "$0")/installed.txt"
case "$1" in
  -l)
    if [ -f "$STORE" ]; then cat "$STORE"; else echo "no crontab for tester" >&2; exit 1; fi
    ;;
  -)
    cat > "$STORE"
    ;;
esac
"""


@pytest.mark.skipif(os.name == "nt", reason="fake crontab command is a shell script")
def test_user_crontab_through_command(tmp_path):
    command = tmp_path / "fake-crontab"
    command.write_text(FAKE_CRONTAB)
    command.chmod(command.stat().st_mode | stat.S_IEXEC)

    store = CrontabStore(backup_dir=tmp_path / "backups", crontab_command=str(command))

    assert not store.exists()
    assert store.safely_modify(add_block).error_kind == "not_found"

    (tmp_path / "installed.txt").write_text(CRONTAB)
    result = store.safely_modify(add_block)

    assert result.success
    assert (tmp_path / "installed.txt").read_text().endswith("*/5 * * * * /bin/true\n")
    assert "user crontab" in store.source
