"""
Command-line interface for crontab management.

Provides CLI commands for:
- Installing the template crontab and switching management on/off
- Adding/updating/removing/enabling/disabling managed jobs
- Browsing the scripts jobs may run and their options
- Taking and inspecting backups

Exit codes: 0 success, 1 error, 2 invalid input, 3 not found.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from crontab_manager.config import ManagerConfig
from crontab_manager.jobs import JobNotFoundError, JobRecord
from crontab_manager.service import CrontabService
from crontab_manager.store import CrontabNotFoundError, ValidationError

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_VALIDATION = 2
EXIT_NOT_FOUND = 3

_installed_handlers: List[logging.Handler] = []


def setup_logging(log_file: str = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)
        _installed_handlers.append(file_handler)


def _load_config(args) -> ManagerConfig:
    config = ManagerConfig(args.config)
    setup_logging(
        log_file=args.log_file or config.logging.file,
        verbose=args.verbose,
        level=config.logging.level
    )
    return config


def _load_service(args) -> CrontabService:
    return CrontabService(config=_load_config(args))


def _fail(message: str, error: Exception):
    """Log an error and exit with the code matching its type."""
    logger.error(f"{message}: {error}")
    if isinstance(error, ValidationError):
        sys.exit(EXIT_VALIDATION)
    if isinstance(error, (JobNotFoundError, CrontabNotFoundError)):
        sys.exit(EXIT_NOT_FOUND)
    sys.exit(EXIT_ERROR)


def _parse_env(values: Optional[List[str]]) -> Optional[Dict[str, str]]:
    """Parse repeated --env NAME=VALUE arguments."""
    if values is None:
        return None

    environment = {}
    for value in values:
        name, sep, assigned = value.partition('=')
        if not sep or not name.strip():
            raise ValidationError(f"Invalid --env value '{value}', expected NAME=VALUE")
        environment[name.strip()] = assigned
    return environment


def _print_json(data):
    print(json.dumps(data, indent=2))


def _print_job(job: JobRecord):
    status = "✓" if job.enabled else "✗"
    print(f"{status} {job.name}  [{job.id}]")
    print(f"    Schedule: {job.schedule}")
    print(f"    Command:  {job.command}")
    if job.description:
        print(f"    Description: {job.description}")
    for name, value in sorted(job.environment.items()):
        print(f"    Env: {name}={value}")
    print(f"    Created: {job.created}  Updated: {job.updated}")
    print()


# ----------------------------------------------------------------------
# Configuration and lifecycle
# ----------------------------------------------------------------------

def cmd_init(args):
    """Initialize manager configuration."""
    setup_logging(verbose=args.verbose)

    try:
        config = ManagerConfig(args.config)
        if config.config_path.exists() and not args.force:
            logger.info(f"Configuration already exists at: {config.config_path} (use --force to overwrite)")
            return

        if args.cron_file:
            config.cron_file = args.cron_file
        if args.backup_retention is not None:
            config.set_backup_retention(args.backup_retention)
        if args.allowlist:
            config.set_script_allowlist(args.allowlist)
        config.save()
        logger.info(f"Initialized configuration at: {config.config_path}")

        Path(config.backup.directory).expanduser().mkdir(parents=True, exist_ok=True)
        logger.info(f"Created backup directory: {config.backup.directory}")

    except Exception as e:
        _fail("Failed to initialize", e)


def cmd_show_config(args):
    """Show current configuration."""
    try:
        config = _load_config(args)

        print(f"\nConfiguration file: {config.config_path}")
        print(f"Crontab: {config.cron_file or f'user crontab ({config.crontab_command})'}")
        print(f"Management enabled: {config.management_enabled}")
        print(f"Require approved scripts: {config.require_approved_scripts}")
        print(f"Backup directory: {config.backup.directory}")
        print(f"Backup retention: {config.backup.retention}")
        print(f"Lock timeout: {config.lock_timeout}s")
        print(f"Logging level: {config.logging.level}")
        print(f"Log file: {config.logging.file}")
        if config.script_allowlist:
            print("Script allowlist:")
            for pattern in config.script_allowlist:
                print(f"    {pattern}")
        else:
            print("Script allowlist: (all scripts)")

        errors = config.validate()
        if errors:
            print("\nConfiguration problems:")
            for error in errors:
                print(f"    - {error}")
            sys.exit(EXIT_VALIDATION)

    except Exception as e:
        _fail("Failed to show config", e)


def cmd_status(args):
    """Show a summary of the managed crontab."""
    try:
        service = _load_service(args)
        status = service.status()

        if args.json:
            _print_json(status)
            return

        print(f"\nCrontab: {status['crontab']}{'' if status['exists'] else ' (missing)'}")
        print(f"Management: {'enabled' if status['management_enabled'] else 'disabled'}")
        print(f"Managed jobs: {status['managed_jobs']} ({status['enabled_jobs']} enabled)")
        print(f"Script path: {status['cron_path'] or '(KOHA_CRON_PATH not set)'}")
        print(f"Backups: {status['backups']} in {status['backup_dir']} (keeping {status['backup_retention']})")

    except Exception as e:
        _fail("Failed to get status", e)


def cmd_install(args):
    """Install the template crontab if there is none."""
    try:
        service = _load_service(args)
        if service.install():
            logger.info(f"Installed template crontab at {service.store.source}")
        else:
            logger.info(f"Crontab already exists at {service.store.source}")

    except Exception as e:
        _fail("Failed to install", e)


def cmd_uninstall(args):
    """Remove all managed jobs."""
    try:
        service = _load_service(args)
        if not args.yes:
            logger.error("Uninstall removes every managed job from the crontab; pass --yes to confirm")
            sys.exit(EXIT_ERROR)

        removed = service.uninstall()
        logger.info(f"Removed {removed} managed job(s)")

    except Exception as e:
        _fail("Failed to uninstall", e)


def cmd_activate(args):
    """Enable job management."""
    try:
        service = _load_service(args)
        backup = service.activate()
        logger.info(f"Management activated (backup: {backup.path})")

    except Exception as e:
        _fail("Failed to activate", e)


def cmd_deactivate(args):
    """Disable job management."""
    try:
        service = _load_service(args)
        service.deactivate()
        logger.info("Management deactivated - jobs remain in crontab but cannot be changed")

    except Exception as e:
        _fail("Failed to deactivate", e)


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------

def cmd_list(args):
    """List managed jobs, or every crontab entry with --all."""
    try:
        service = _load_service(args)

        if args.all:
            entries = service.jobs.list_entries()
            if args.json:
                _print_json([entry.to_dict() for entry in entries])
                return

            print(f"=== Crontab Entries ({len(entries)}) ===\n")
            for entry in entries:
                status = "✓" if entry.enabled else "✗"
                owner = f"managed: {entry.name}" if entry.managed else "system"
                print(f"{status} {entry.schedule} {entry.command}")
                print(f"    ({owner})")
            return

        jobs = service.jobs.list_jobs()
        if args.json:
            _print_json([job.to_dict() for job in jobs])
            return

        print(f"=== Managed Jobs ({len(jobs)}) ===\n")
        if not jobs:
            print("  No managed jobs.")
            return
        for job in jobs:
            _print_job(job)

    except Exception as e:
        _fail("Failed to list jobs", e)


def cmd_show(args):
    """Show a single job."""
    try:
        service = _load_service(args)
        job = service.jobs.get_job(args.job_id)
        if job is None:
            raise JobNotFoundError(job_id=args.job_id)

        if args.json:
            _print_json(job.to_dict())
        else:
            _print_job(job)

    except Exception as e:
        _fail(f"Failed to show job '{args.job_id}'", e)


def cmd_add(args):
    """Add a new managed job."""
    try:
        service = _load_service(args)
        job = service.add_job({
            'name': args.name,
            'schedule': args.schedule,
            'command': args.command,
            'description': args.description,
            'environment': _parse_env(args.env),
            'enabled': not args.disabled,
        })

        logger.info(f"Added job '{job.name}'")
        print(job.id)

    except Exception as e:
        _fail("Failed to add job", e)


def cmd_update(args):
    """Update fields of a managed job."""
    try:
        service = _load_service(args)

        environment = _parse_env(args.env)
        if args.clear_env:
            environment = {}

        job = service.update_job(args.job_id, {
            'name': args.name,
            'description': args.description,
            'schedule': args.schedule,
            'command': args.command,
            'environment': environment,
        })
        logger.info(f"Updated job '{job.name}'")

    except Exception as e:
        _fail(f"Failed to update job '{args.job_id}'", e)


def cmd_remove(args):
    """Remove a managed job."""
    try:
        service = _load_service(args)
        job = service.delete_job(args.job_id)
        logger.info(f"Removed job '{job.name}'")

    except Exception as e:
        _fail(f"Failed to remove job '{args.job_id}'", e)


def cmd_enable(args):
    """Enable a job."""
    try:
        service = _load_service(args)
        job = service.enable_job(args.job_id)
        logger.info(f"Enabled job '{job.name}'")

    except Exception as e:
        _fail(f"Failed to enable job '{args.job_id}'", e)


def cmd_disable(args):
    """Disable a job."""
    try:
        service = _load_service(args)
        job = service.disable_job(args.job_id)
        logger.info(f"Disabled job '{job.name}'")

    except Exception as e:
        _fail(f"Failed to disable job '{args.job_id}'", e)


def cmd_env(args):
    """Show environment variables that apply to the whole crontab."""
    try:
        service = _load_service(args)
        environment = service.jobs.global_environment()

        if args.json:
            _print_json(environment)
            return
        for name, value in environment.items():
            print(f"{name}={value}")

    except Exception as e:
        _fail("Failed to read environment", e)


# ----------------------------------------------------------------------
# Scripts
# ----------------------------------------------------------------------

def cmd_scripts(args):
    """List the scripts jobs may run."""
    try:
        service = _load_service(args)
        scripts = service.scripts.available_scripts(bypass_filter=args.all)

        if args.json:
            _print_json([script.to_dict() for script in scripts])
            return

        print(f"=== Available Scripts ({len(scripts)}) ===\n")
        for script in scripts:
            print(f"  {script.relative_path}  ({script.type})")
            if script.description:
                print(f"    {script.description.splitlines()[0]}")

    except Exception as e:
        _fail("Failed to list scripts", e)


def cmd_script(args):
    """Show documentation, options and positional arguments of a script."""
    try:
        service = _load_service(args)
        details = service.scripts.script_details(args.name)
        if details is None:
            logger.error(f"Script '{args.name}' not found")
            sys.exit(EXIT_NOT_FOUND)

        if args.json:
            _print_json(details)
            return

        print(f"\n{details['relative_path']}  ({details['type']})\n")
        print(details['documentation'])

        if details['options']:
            print("Options:")
            for option in details['options']:
                flags = f"--{option['name']}"
                if option['short_name']:
                    flags += f", -{option['short_name']}"
                traits = [option['type']]
                if option['required']:
                    traits.append('value required')
                if option['negatable']:
                    traits.append('negatable')
                if option['repeatable']:
                    traits.append(f"repeatable ({option['dest_type']})")
                print(f"    {flags}  [{', '.join(traits)}]")

        if details['positional_args']:
            print("Positional arguments:")
            for arg in details['positional_args']:
                suffix = " ..." if arg['variadic'] else ""
                print(f"    {arg['position']}: {arg['label']}{suffix}  (from {arg['source']})")

    except Exception as e:
        _fail(f"Failed to describe script '{args.name}'", e)


def cmd_validate(args):
    """Check that a command uses an approved script."""
    try:
        service = _load_service(args)
        result = service.scripts.validate_command(args.command_text)
        if not result.valid:
            logger.error(result.error)
            sys.exit(EXIT_VALIDATION)

        print(f"OK: {result.script.relative_path}")

    except Exception as e:
        _fail("Failed to validate command", e)


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------

def cmd_backup(args):
    """Take a backup of the crontab."""
    try:
        service = _load_service(args)
        backup = service.backup(args.label)
        print(backup.path)

    except Exception as e:
        _fail("Failed to back up crontab", e)


def cmd_backups(args):
    """List backups, or print the latest one."""
    try:
        service = _load_service(args)

        if args.latest:
            backup = service.latest_backup()
            if backup is None:
                logger.error("No backups found")
                sys.exit(EXIT_NOT_FOUND)
            sys.stdout.write(backup.read_text())
            return

        backups = service.list_backups()
        if args.json:
            _print_json([backup.to_dict() for backup in backups])
            return

        print(f"=== Backups ({len(backups)}) ===\n")
        for backup in backups:
            print(f"  {backup.timestamp.strftime('%Y-%m-%d %H:%M:%S')}  {backup.label:<20} {backup.path}")

    except Exception as e:
        _fail("Failed to list backups", e)


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Crontab Manager - manage crontab jobs with metadata, backups and safe edits",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to manager configuration file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path (default: from configuration)'
    )

    subparsers = parser.add_subparsers(dest='subcommand', help='Commands')

    # Init command
    init_parser = subparsers.add_parser('init', help='Initialize manager configuration')
    init_parser.add_argument('--cron-file', type=str, help='Crontab file to manage (default: user crontab)')
    init_parser.add_argument('--backup-retention', type=str, metavar='N',
                             help='Backups to keep, 1-100 (invalid values fall back to 10)')
    init_parser.add_argument('--allowlist', action='append', metavar='PATTERN',
                             help='Allow scripts matching this path or name (repeatable)')
    init_parser.add_argument('--force', action='store_true', help='Overwrite existing configuration')
    init_parser.set_defaults(func=cmd_init)

    # Show config command
    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show crontab and management status')
    status_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    status_parser.set_defaults(func=cmd_status)

    # Lifecycle commands
    install_parser = subparsers.add_parser('install', help='Install template crontab if none exists')
    install_parser.set_defaults(func=cmd_install)

    uninstall_parser = subparsers.add_parser('uninstall', help='Remove all managed jobs (after a backup)')
    uninstall_parser.add_argument('--yes', action='store_true', help='Confirm removal')
    uninstall_parser.set_defaults(func=cmd_uninstall)

    activate_parser = subparsers.add_parser('activate', help='Enable job management')
    activate_parser.set_defaults(func=cmd_activate)

    deactivate_parser = subparsers.add_parser('deactivate', help='Disable job management')
    deactivate_parser.set_defaults(func=cmd_deactivate)

    # List command
    list_parser = subparsers.add_parser('list', help='List managed jobs')
    list_parser.add_argument('--all', '-a', action='store_true',
                             help='List every crontab entry, including unmanaged ones')
    list_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    list_parser.set_defaults(func=cmd_list)

    # Show command
    show_parser = subparsers.add_parser('show', help='Show a job')
    show_parser.add_argument('job_id', help='Job ID')
    show_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    show_parser.set_defaults(func=cmd_show)

    # Add command
    add_parser = subparsers.add_parser('add', help='Add a new managed job')
    add_parser.add_argument('name', help='Job name')
    add_parser.add_argument('--schedule', '-s', required=True,
                            help='Cron schedule (e.g., "0 2 * * *" or "@daily")')
    add_parser.add_argument('--command', '-C', dest='command', required=True,
                            help='Command to run (e.g., "$KOHA_CRON_PATH/fines.pl --verbose")')
    add_parser.add_argument('--description', '-d', type=str, help='Human-readable description')
    add_parser.add_argument('--env', '-e', action='append', metavar='NAME=VALUE',
                            help='Environment variable for this job (repeatable)')
    add_parser.add_argument('--disabled', action='store_true', help='Create the job disabled')
    add_parser.set_defaults(func=cmd_add)

    # Update command
    update_parser = subparsers.add_parser('update', help='Update a managed job')
    update_parser.add_argument('job_id', help='Job ID')
    update_parser.add_argument('--name', type=str, help='New name')
    update_parser.add_argument('--schedule', '-s', type=str, help='New schedule')
    update_parser.add_argument('--command', '-C', dest='command', type=str, help='New command')
    update_parser.add_argument('--description', '-d', type=str, help='New description ("" clears it)')
    update_parser.add_argument('--env', '-e', action='append', metavar='NAME=VALUE',
                               help='Replace job environment (repeatable)')
    update_parser.add_argument('--clear-env', action='store_true', help='Remove all job environment variables')
    update_parser.set_defaults(func=cmd_update)

    # Remove command
    remove_parser = subparsers.add_parser('remove', help='Remove a managed job')
    remove_parser.add_argument('job_id', help='Job ID to remove')
    remove_parser.set_defaults(func=cmd_remove)

    # Enable command
    enable_parser = subparsers.add_parser('enable', help='Enable a job')
    enable_parser.add_argument('job_id', help='Job ID to enable')
    enable_parser.set_defaults(func=cmd_enable)

    # Disable command
    disable_parser = subparsers.add_parser('disable', help='Disable a job (comment it out)')
    disable_parser.add_argument('job_id', help='Job ID to disable')
    disable_parser.set_defaults(func=cmd_disable)

    # Env command
    env_parser = subparsers.add_parser('env', help='Show crontab-wide environment variables')
    env_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    env_parser.set_defaults(func=cmd_env)

    # Scripts commands
    scripts_parser = subparsers.add_parser('scripts', help='List scripts available to jobs')
    scripts_parser.add_argument('--all', '-a', action='store_true', help='Ignore the script allowlist')
    scripts_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    scripts_parser.set_defaults(func=cmd_scripts)

    script_parser = subparsers.add_parser('script', help='Show documentation and options of a script')
    script_parser.add_argument('name', help='Script file name or $KOHA_CRON_PATH-relative path')
    script_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    script_parser.set_defaults(func=cmd_script)

    validate_parser = subparsers.add_parser('validate', help='Check a job command against approved scripts')
    validate_parser.add_argument('command_text', metavar='COMMAND', help='Command to check')
    validate_parser.set_defaults(func=cmd_validate)

    # Backup commands
    backup_parser = subparsers.add_parser('backup', help='Back up the crontab')
    backup_parser.add_argument('--label', '-l', default='manual', help='Backup label (default: manual)')
    backup_parser.set_defaults(func=cmd_backup)

    backups_parser = subparsers.add_parser('backups', help='List backups')
    backups_parser.add_argument('--latest', action='store_true', help='Print the most recent backup')
    backups_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    backups_parser.set_defaults(func=cmd_backups)

    args = parser.parse_args(argv)

    if not args.subcommand:
        parser.print_help()
        sys.exit(EXIT_ERROR)

    args.func(args)


if __name__ == '__main__':
    main()
