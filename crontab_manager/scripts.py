"""
Script discovery and option introspection.

Finds the Perl and shell scripts under the directory named by the crontab's
KOHA_CRON_PATH assignment, reads their embedded documentation, and works
out which command-line options and positional arguments they accept by
reading their source (Getopt::Long specifications and @ARGV usage).
Nothing here executes a script.
"""

import logging
import os
import re
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

from crontab_manager.config import parse_allowlist
from crontab_manager.document import EnvAssignment
from crontab_manager.store import CrontabNotFoundError, CrontabStore

logger = logging.getLogger(__name__)

CRON_PATH_VARIABLE = "KOHA_CRON_PATH"
NO_DOCUMENTATION = "No documentation available.\n"

SCRIPT_TYPES = {
    '.pl': 'perl',
    '.sh': 'shell',
}

_OPTION_SPEC_PATTERN = re.compile(
    r'^([\w][\w-]*(?:\|[\w?][\w-]*)*)([!+])?(?:([=:])([siof]|\d+|\+))?([%@])?$'
)
_QUOTED_TOKEN_PATTERN = re.compile(r'''(?:'([^']+)'|"([^"]+)")''')
_GETOPTIONS_START = re.compile(r'GetOptions\s*\(', re.IGNORECASE)
_GETOPTIONS_END = (
    re.compile(r'\)\s*;'),
    re.compile(r'\)\s*\|\|\s*'),
    re.compile(r'\)\s+or\s+', re.IGNORECASE),
)

_VALUE_TYPES = {
    's': 'string',
    'i': 'integer',
    'o': 'integer',
    'f': 'float',
}

_ARGV_INDEX_PATTERN = re.compile(r'\$ARGV\[(\d+)\]')
_ARGV_SHIFT_PATTERN = re.compile(r'shift\s*[\(]?\s*@ARGV\s*[\)]?')
_SHIFT_ASSIGNMENT_PATTERN = re.compile(r'(?:my\s+)?\$(\w+)\s*=\s*shift')
_ARGV_LOOP_PATTERNS = (
    re.compile(r'for(?:each)?\s+(?:my\s+\$\w+\s+)?\(\s*@ARGV\s*\)'),
    re.compile(r'for(?:each)?\s+(?:my\s+)?\$\w+\s+\(\s*@ARGV\s*\)'),
)
_ARGV_ASSIGNMENT_PATTERN = re.compile(r'[@$]\w+\s*=\s*@ARGV\b')

_POD_COMMAND_PATTERN = re.compile(r'^=([a-zA-Z]\w*)\s*(.*)$')
_POD_FORMAT_PATTERN = re.compile(r'([A-Z])<([^<>]*)>')
_POD_ESCAPES = {'lt': '<', 'gt': '>', 'verbar': '|', 'sol': '/'}

USAGE_SECTIONS = ('SYNOPSIS', 'OPTIONS', 'ARGUMENTS', 'OPTIONS AND ARGUMENTS')


@dataclass
class ScriptDescriptor:
    """A script found under the cron path."""
    name: str
    path: str
    relative_path: str
    type: str
    description: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScriptDocumentation:
    summary: str = ''
    usage_text: str = NO_DOCUMENTATION


@dataclass
class OptionSpec:
    """One option accepted by a script, decoded from a Getopt::Long spec."""
    name: str
    short_name: str = ''
    type: str = 'boolean'
    required: bool = False
    negatable: bool = False
    incremental: bool = False
    repeatable: bool = False
    dest_type: str = 'scalar'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PositionalArg:
    """A positional argument inferred from @ARGV usage."""
    position: int
    source: str
    label: str
    variadic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ParsedOptions:
    options: List[OptionSpec] = field(default_factory=list)
    positional_args: List[PositionalArg] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'options': [option.to_dict() for option in self.options],
            'positional_args': [arg.to_dict() for arg in self.positional_args],
        }


@dataclass
class CommandValidation:
    valid: bool
    error: Optional[str] = None
    script: Optional[ScriptDescriptor] = None


def _read_source(path: Union[str, Path]) -> Optional[str]:
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()
    except OSError as e:
        logger.warning(f"Cannot read script {path}: {e}")
        return None


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------

def matches_allowlist(script: ScriptDescriptor, patterns: List[str]) -> bool:
    """
    Check a script against allowlist patterns.

    A pattern matches when it equals the script's path relative to the cron
    path, is a prefix of it ("batch/" allows a whole directory), or equals
    the script's file name.
    """
    relative = re.sub(r'^\$' + CRON_PATH_VARIABLE + r'/?', '', script.relative_path)
    for pattern in patterns:
        if relative == pattern or relative.startswith(pattern) or script.name == pattern:
            return True
    return False


def discover_scripts(
    root: Union[str, Path],
    allowlist: Optional[List[str]] = None
) -> List[ScriptDescriptor]:
    """
    Find .pl and .sh scripts below a directory.

    Args:
        root: Directory to walk (the value of KOHA_CRON_PATH)
        allowlist: Patterns restricting the result; empty or None keeps all

    Returns:
        Scripts sorted by file name
    """
    root = str(root)
    if len(root) > 1:
        root = root.rstrip(os.sep)
    if not os.path.isdir(root):
        return []

    scripts = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            script_type = SCRIPT_TYPES.get(os.path.splitext(filename)[1])
            path = os.path.join(dirpath, filename)
            if not script_type or not os.path.isfile(path):
                continue

            description = ''
            if script_type == 'perl':
                description = describe_script(path).summary

            scripts.append(ScriptDescriptor(
                name=filename,
                path=path,
                relative_path=f"${CRON_PATH_VARIABLE}{path[len(root):]}",
                type=script_type,
                description=description,
            ))

    scripts.sort(key=lambda s: s.name)

    patterns = parse_allowlist(allowlist)
    if patterns:
        scripts = [s for s in scripts if matches_allowlist(s, patterns)]

    return scripts


# ----------------------------------------------------------------------
# Documentation
# ----------------------------------------------------------------------

def _pod_text(text: str) -> str:
    """Strip POD formatting codes (B<>, C<>, L<>, E<> ...)."""
    def replace(match):
        code, inner = match.group(1), match.group(2)
        if code == 'E':
            return _POD_ESCAPES.get(inner, inner)
        if code == 'L':
            return inner.split('|')[0]
        if code in ('X', 'Z'):
            return ''
        return inner

    previous = None
    while previous != text:
        previous = text
        text = _POD_FORMAT_PATTERN.sub(replace, text)
    return text


def parse_pod_sections(source: str) -> Dict[str, List[str]]:
    """
    Collect the raw lines of each =head1 section of a POD document.

    Returns:
        Ordered mapping of upper-cased heading to the lines below it
    """
    sections: Dict[str, List[str]] = {}
    current: Optional[List[str]] = None
    in_pod = False

    for line in source.splitlines():
        match = _POD_COMMAND_PATTERN.match(line)
        if match:
            command = match.group(1)
            if command == 'cut':
                in_pod = False
                current = None
                continue
            in_pod = True
            if command == 'head1':
                heading = _pod_text(match.group(2)).strip().upper()
                current = sections.setdefault(heading, [])
                continue

        if in_pod and current is not None:
            current.append(line)

    return sections


def _render_pod_section(lines: List[str], indent: str = '    ') -> List[str]:
    """Render section lines as indented plain text."""
    rendered = []
    item_indent = indent
    for line in lines:
        match = _POD_COMMAND_PATTERN.match(line)
        if match:
            command, argument = match.group(1), _pod_text(match.group(2)).strip()
            if command == 'item':
                rendered.append(f"{indent}{argument}")
                item_indent = indent * 2
            elif command in ('head2', 'head3', 'head4'):
                rendered.append(f"{indent}{argument}")
                item_indent = indent
            elif command == 'back':
                item_indent = indent
            continue

        if not line.strip():
            if rendered and rendered[-1]:
                rendered.append('')
        elif line[0].isspace():
            rendered.append(f"{indent}{_pod_text(line.rstrip())}")
        else:
            rendered.append(f"{item_indent}{_pod_text(line.strip())}")

    while rendered and not rendered[-1]:
        rendered.pop()
    return rendered


def _section_summary(lines: List[str]) -> str:
    paragraphs = []
    current: List[str] = []
    for line in lines:
        if _POD_COMMAND_PATTERN.match(line):
            continue
        if line.strip():
            current.append(_pod_text(line.strip()))
        elif current:
            paragraphs.append(' '.join(current))
            current = []
    if current:
        paragraphs.append(' '.join(current))
    return '\n\n'.join(paragraphs)


def _shell_summary(source: str) -> str:
    """Use the comment block at the top of a shell script as its summary."""
    lines = []
    for line in source.splitlines():
        if line.startswith('#!') and not lines:
            continue
        stripped = line.strip()
        if not stripped.startswith('#'):
            if lines or stripped:
                break
            continue
        lines.append(stripped.lstrip('#').strip())
    return ' '.join(line for line in lines if line)


def describe_script(path: Union[str, Path]) -> ScriptDocumentation:
    """
    Read a script's embedded documentation.

    For Perl scripts the summary is the POD DESCRIPTION section and the
    usage text is rendered from SYNOPSIS plus OPTIONS/ARGUMENTS, the way
    pod2usage prints it. Shell scripts only get a summary, taken from
    their leading comment block.
    """
    source = _read_source(path)
    if source is None:
        return ScriptDocumentation()

    if str(path).endswith('.sh'):
        return ScriptDocumentation(summary=_shell_summary(source))

    sections = parse_pod_sections(source)
    summary = _section_summary(sections.get('DESCRIPTION', []))

    usage = []
    for heading in USAGE_SECTIONS:
        if heading not in sections:
            continue
        title = 'Usage' if heading == 'SYNOPSIS' else heading.capitalize()
        if usage:
            usage.append('')
        usage.append(f"{title}:")
        usage.extend(_render_pod_section(sections[heading]))

    usage_text = '\n'.join(usage) + '\n' if usage else NO_DOCUMENTATION
    return ScriptDocumentation(summary=summary, usage_text=usage_text)


# ----------------------------------------------------------------------
# Options
# ----------------------------------------------------------------------

def parse_option_spec(spec: str) -> Optional[OptionSpec]:
    """
    Decode one Getopt::Long option specification.

    Format: name[|alias]...[!|+][=|:][s|i|o|f|N|+][@|%]

    Examples:
        'verbose|v'  -> boolean, short name 'v'
        'name|n=s'   -> required string
        'count|c=i@' -> required integer, repeatable into an array

    Returns:
        OptionSpec, or None if the text is not an option specification
    """
    match = _OPTION_SPEC_PATTERN.match(spec)
    if not match:
        return None

    names_str, modifier, value_char, type_code, dest_char = match.groups()
    names = names_str.split('|')

    option = OptionSpec(name=names[0])
    option.short_name = next((n for n in names[1:] if len(n) == 1), '')

    if modifier == '!':
        option.negatable = True
    elif modifier == '+':
        option.incremental = True
        option.type = 'incremental'

    if value_char:
        option.required = value_char == '='
        option.type = _VALUE_TYPES.get(type_code, option.type)

    if dest_char == '@':
        option.dest_type = 'array'
        option.repeatable = True
    elif dest_char == '%':
        option.dest_type = 'hash'
        option.repeatable = True

    return option


def extract_getoptions_block(source: str) -> str:
    """Return the text of the first GetOptions(...) call, or ''."""
    block = []
    for line in source.split('\n'):
        if not block and not _GETOPTIONS_START.search(line):
            continue
        block.append(line)
        if any(pattern.search(line) for pattern in _GETOPTIONS_END):
            break
    return '\n'.join(block) + '\n' if block else ''


def parse_getoptions(source: str) -> List[OptionSpec]:
    block = extract_getoptions_block(source)
    if not block:
        return []

    options = []
    for match in _QUOTED_TOKEN_PATTERN.finditer(block):
        option = parse_option_spec(match.group(1) or match.group(2))
        if option:
            options.append(option)
    return options


def _variable_label(name: str) -> str:
    name = name.replace('_', ' ')
    return name[:1].upper() + name[1:]


def _argv_label(source: str, expression: str) -> str:
    match = re.search(r'(?:my\s+)?\$(\w+)\s*=\s*' + re.escape(expression), source)
    if match:
        return _variable_label(match.group(1))
    return 'Positional argument'


def _shift_label(lines: List[str], occurrence: int) -> str:
    count = 0
    for line in lines:
        if not _ARGV_SHIFT_PATTERN.search(line):
            continue
        if count == occurrence:
            match = _SHIFT_ASSIGNMENT_PATTERN.search(line)
            if match:
                return _variable_label(match.group(1))
            break
        count += 1
    return 'Positional argument'


def detect_positional_args(source: str) -> List[PositionalArg]:
    """
    Infer positional arguments from how a script reads @ARGV.

    Indexed access ($ARGV[n]) takes precedence over `shift @ARGV`; a loop
    over @ARGV or a bulk assignment from it is reported as one variadic
    argument when nothing more specific was found.
    """
    args: List[PositionalArg] = []

    indexes = [int(i) for i in _ARGV_INDEX_PATTERN.findall(source)]
    max_index = max(indexes) if indexes else -1
    for i in range(max_index + 1):
        expression = f"$ARGV[{i}]"
        args.append(PositionalArg(
            position=i,
            source=expression,
            label=_argv_label(source, expression),
        ))

    shift_count = len(_ARGV_SHIFT_PATTERN.findall(source))
    if shift_count and max_index < 0:
        lines = source.splitlines()
        for i in range(shift_count):
            args.append(PositionalArg(
                position=i,
                source='shift @ARGV',
                label=_shift_label(lines, i),
            ))

    if not args and any(p.search(source) for p in _ARGV_LOOP_PATTERNS):
        args.append(PositionalArg(
            position=0,
            source='@ARGV loop',
            label='Positional argument(s)',
            variadic=True,
        ))

    if not args and _ARGV_ASSIGNMENT_PATTERN.search(source):
        args.append(PositionalArg(
            position=0,
            source='@ARGV assignment',
            label='Positional argument(s)',
            variadic=True,
        ))

    return args


def parse_script_options(path: Union[str, Path]) -> ParsedOptions:
    """
    Work out the command-line interface of a script from its source.

    Unreadable files yield empty results.
    """
    if not os.path.isfile(path):
        return ParsedOptions()

    source = _read_source(path)
    if source is None:
        return ParsedOptions()

    return ParsedOptions(
        options=parse_getoptions(source),
        positional_args=detect_positional_args(source),
    )


# ----------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------

class ScriptCatalog:
    """
    The scripts available to crontab jobs.

    The script root is read from the crontab's KOHA_CRON_PATH assignment on
    every call, so edits to the crontab take effect immediately.
    """

    def __init__(self, store: CrontabStore, allowlist: Optional[List[str]] = None):
        self.store = store
        self.allowlist = parse_allowlist(allowlist)

    def cron_path(self) -> Optional[str]:
        """Get the value of the first active KOHA_CRON_PATH assignment."""
        try:
            document = self.store.read()
        except CrontabNotFoundError:
            return None

        for env in document.select(EnvAssignment):
            if env.name == CRON_PATH_VARIABLE and env.active:
                return env.value
        return None

    def available_scripts(self, bypass_filter: bool = False) -> List[ScriptDescriptor]:
        """
        List scripts under the cron path.

        Args:
            bypass_filter: Ignore the allowlist (used when editing it)
        """
        cron_path = self.cron_path()
        if not cron_path:
            logger.debug(f"No {CRON_PATH_VARIABLE} set in {self.store.source}")
            return []
        if not os.path.isdir(cron_path):
            logger.warning(f"{CRON_PATH_VARIABLE} is not a directory: {cron_path}")
            return []

        return discover_scripts(cron_path, None if bypass_filter else self.allowlist)

    def get_script(self, name: str, bypass_filter: bool = False) -> Optional[ScriptDescriptor]:
        """Find a script by file name or by its $KOHA_CRON_PATH-relative path."""
        for script in self.available_scripts(bypass_filter=bypass_filter):
            if name in (script.name, script.relative_path):
                return script
        return None

    def script_details(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Get everything known about one script: descriptor, documentation,
        options and positional arguments.
        """
        script = self.get_script(name)
        if script is None:
            return None

        documentation = describe_script(script.path)
        parsed = parse_script_options(script.path)

        details = script.to_dict()
        details['documentation'] = documentation.usage_text
        details['options'] = [option.to_dict() for option in parsed.options]
        details['positional_args'] = [arg.to_dict() for arg in parsed.positional_args]
        return details

    def validate_command(self, command: Optional[str]) -> CommandValidation:
        """
        Check that a command runs one of the available scripts.

        The first whitespace-separated token must equal a script's
        relative path exactly ("$KOHA_CRON_PATH/fines.pl").
        """
        if not command:
            return CommandValidation(valid=False, error="Command is required")

        script_path = re.split(r'\s+', command)[0]
        if not script_path:
            return CommandValidation(valid=False, error="Empty command")

        for script in self.available_scripts():
            if script.relative_path == script_path:
                return CommandValidation(valid=True, script=script)

        return CommandValidation(
            valid=False,
            error=(
                "Command must use a script from the approved list. "
                "Use the script browser to select a valid script. "
                f"Provided: {script_path}"
            )
        )
