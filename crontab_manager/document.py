"""
Block-structured crontab document model.

Parses crontab text into an ordered list of blocks (runs of non-blank
lines separated by blank lines) and serializes it back. Every line keeps
the raw text it was parsed from and is only re-rendered after it has been
changed, so unmodified content round-trips byte-for-byte.

Line types:
- Comment: any line that is not an environment assignment or schedule entry
- EnvAssignment: NAME=value, "#NAME=value" when inactive
- ScheduleEntry: "<schedule> <command>", "#<schedule> <command>" when inactive
"""

import re
from typing import List, Optional, Type

# Minute, hour and day-of-month only take numbers, ranges, steps and lists.
_NUMERIC_FIELD = r'[\d*][\d*/,\-]*'
# Month and day-of-week may also use three-letter names (jan, mon, ...).
_NAMED_FIELD = r'[\w*][\w*/,\-]*'

SPECIAL_SCHEDULES = (
    'reboot', 'yearly', 'annually', 'monthly', 'weekly', 'daily', 'midnight', 'hourly'
)

_ENTRY_PATTERN = re.compile(
    r'^(?P<disabled>\s*#\s*)?\s*'
    r'(?P<schedule>@(?:' + '|'.join(SPECIAL_SCHEDULES) + r')'
    r'|' + r'\s+'.join([_NUMERIC_FIELD] * 3 + [_NAMED_FIELD] * 2) + r')'
    r'\s+(?P<command>\S.*?)\s*$'
)

# Disabled assignments have no space after the '#' ("# x = 1" is a comment).
_ENV_PATTERN = re.compile(
    r'^(?:(?P<disabled>\s*#)|\s*)(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*?)\s*$'
)


class Line:
    """Base class for a single crontab line."""

    def __init__(self, raw: Optional[str] = None):
        self._raw = raw

    def dump(self) -> str:
        """Return the text of this line (original text if unchanged)."""
        if self._raw is not None:
            return self._raw
        return self.render()

    def render(self) -> str:
        raise NotImplementedError

    def _touch(self):
        self._raw = None


class Comment(Line):
    """A comment line (or any line that is not env/schedule)."""

    def __init__(self, text: str, raw: Optional[str] = None):
        super().__init__(raw)
        self.text = text

    def render(self) -> str:
        return self.text

    def __repr__(self):
        return f"Comment({self.text!r})"


class EnvAssignment(Line):
    """An environment variable assignment (NAME=value)."""

    def __init__(self, name: str, value: str, active: bool = True, raw: Optional[str] = None):
        super().__init__(raw)
        self._name = name
        self._value = value
        self._active = active

    @property
    def name(self) -> str:
        return self._name

    @property
    def value(self) -> str:
        return self._value

    @value.setter
    def value(self, value: str):
        if value != self._value:
            self._value = value
            self._touch()

    @property
    def active(self) -> bool:
        return self._active

    @active.setter
    def active(self, active: bool):
        active = bool(active)
        if active != self._active:
            self._active = active
            self._touch()

    def render(self) -> str:
        prefix = '' if self._active else '#'
        return f"{prefix}{self._name}={self._value}"

    def __repr__(self):
        return f"EnvAssignment({self._name!r}, {self._value!r}, active={self._active})"


class ScheduleEntry(Line):
    """A scheduled command: schedule expression followed by the command."""

    def __init__(self, schedule: str, command: str, active: bool = True, raw: Optional[str] = None):
        super().__init__(raw)
        self._schedule = schedule
        self._command = command
        self._active = active

    @property
    def schedule(self) -> str:
        return self._schedule

    @schedule.setter
    def schedule(self, schedule: str):
        if schedule != self._schedule:
            self._schedule = schedule
            self._touch()

    @property
    def command(self) -> str:
        return self._command

    @command.setter
    def command(self, command: str):
        if command != self._command:
            self._command = command
            self._touch()

    @property
    def active(self) -> bool:
        return self._active

    @active.setter
    def active(self, active: bool):
        active = bool(active)
        if active != self._active:
            self._active = active
            self._touch()

    def render(self) -> str:
        prefix = '' if self._active else '#'
        return f"{prefix}{self._schedule} {self._command}"

    def __repr__(self):
        return (
            f"ScheduleEntry({self._schedule!r}, {self._command!r}, "
            f"active={self._active})"
        )


def parse_line(raw: str) -> Line:
    """
    Classify a single non-blank line.

    Schedule entries are tried first so that a disabled entry such as
    "#0 2 * * * cmd" is not mistaken for a comment.
    """
    match = _ENTRY_PATTERN.match(raw)
    if match:
        return ScheduleEntry(
            schedule=re.sub(r'\s+', ' ', match.group('schedule')),
            command=match.group('command'),
            active=match.group('disabled') is None,
            raw=raw
        )

    match = _ENV_PATTERN.match(raw)
    if match:
        return EnvAssignment(
            name=match.group('name'),
            value=match.group('value'),
            active=match.group('disabled') is None,
            raw=raw
        )

    return Comment(text=raw, raw=raw)


class Block:
    """
    A group of lines serialized contiguously.

    `gap` holds the blank lines written before the block. It is None for
    blocks that have not been placed in a document yet.
    """

    def __init__(self, lines: Optional[List[Line]] = None, gap: Optional[List[str]] = None):
        self.lines: List[Line] = list(lines or [])
        self.gap = gap

    def select(self, kind: Type[Line]) -> List[Line]:
        """Return the lines of the given type, in order."""
        return [line for line in self.lines if isinstance(line, kind)]

    def comments(self) -> List[Comment]:
        return self.select(Comment)

    def envs(self) -> List[EnvAssignment]:
        return self.select(EnvAssignment)

    def entries(self) -> List[ScheduleEntry]:
        return self.select(ScheduleEntry)

    def dump(self) -> str:
        return '\n'.join(line.dump() for line in self.lines)

    def __repr__(self):
        return f"Block(lines={len(self.lines)})"


class Document:
    """An ordered sequence of blocks making up a crontab."""

    def __init__(
        self,
        blocks: Optional[List[Block]] = None,
        tail: Optional[List[str]] = None,
        trailing_newline: bool = True
    ):
        self.blocks: List[Block] = list(blocks or [])
        self.tail: List[str] = list(tail or [])
        self.trailing_newline = trailing_newline

    @classmethod
    def parse(cls, text: str) -> 'Document':
        """Parse crontab text into a Document."""
        raw_lines = text.split('\n') if text else []
        trailing_newline = text.endswith('\n') or not text
        if text.endswith('\n'):
            raw_lines = raw_lines[:-1]

        blocks = []
        gap: List[str] = []
        current: Optional[Block] = None

        for raw in raw_lines:
            if not raw.strip():
                if current is not None:
                    blocks.append(current)
                    current = None
                gap.append(raw)
                continue

            if current is None:
                current = Block(gap=gap)
                gap = []
            current.lines.append(parse_line(raw))

        if current is not None:
            blocks.append(current)

        return cls(blocks=blocks, tail=gap, trailing_newline=trailing_newline)

    def dump(self) -> str:
        """Serialize the document back to crontab text."""
        out: List[str] = []
        for block in self.blocks:
            out.extend(block.gap or [])
            if block.lines:
                out.append(block.dump())
        out.extend(self.tail)

        text = '\n'.join(out)
        if out and self.trailing_newline:
            text += '\n'
        return text

    def append(self, block: Block):
        """Add a block at the end of the document."""
        if block.gap is None:
            has_content = any(b.lines for b in self.blocks)
            block.gap = [''] if has_content else []
        self.blocks.append(block)
        # crontab(1) rejects files without a final newline
        self.trailing_newline = True

    def remove(self, block: Block):
        """Remove a block (and the blank lines written before it)."""
        self.blocks = [b for b in self.blocks if b is not block]

    def select(self, kind: Type[Line]) -> List[Line]:
        """Return every line of the given type across all blocks."""
        lines = []
        for block in self.blocks:
            lines.extend(block.select(kind))
        return lines

    def __repr__(self):
        return f"Document(blocks={len(self.blocks)})"
