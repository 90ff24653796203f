"""
Crontab registration for periodic stackvault runs.

Manages:
- Installing backup and cleanup entries into the user's crontab
- Listing entries with their next fire time (APScheduler CronTrigger)
- Removing managed entries while leaving every other line untouched
- Exporting the crontab to a snapshot file and importing it back

Managed entries end with a descriptor comment such as
``# stackvault action=backup scope=all aggressive=0 created=2024-05-01T02:00:00``;
matching and filtering only ever look at that descriptor.
"""

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from apscheduler.triggers.cron import CronTrigger

from stackvault.backup.artifacts import TargetKind
from stackvault.backup.retention import SCOPES
from stackvault.exceptions import ConfigurationInvalid, DependencyMissing, NotFound, ToolInvocationFailure
from stackvault.settings import BackupSettings


logger = logging.getLogger(__name__)

DESCRIPTOR_MARKER = '# stackvault'
DESCRIPTOR_RE = re.compile(r'\s+# stackvault((?:\s+\w+=\S*)+)\s*$')
ENV_LINE_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*\s*=')
ACTIONS = ('backup', 'cleanup')
CRON_WEEKDAYS = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _weekday_number(token: str) -> int:
    token = token.lower()
    if token in CRON_WEEKDAYS:
        return CRON_WEEKDAYS.index(token)
    if not token.isdigit() or int(token) > 7:
        raise ValueError(f"invalid day of week {token!r}")
    return int(token) % 7


def translate_weekdays(field: str) -> str:
    """
    Rewrite a crontab day-of-week field with APScheduler day names.

    Crontab counts 0 (or 7) as Sunday while APScheduler counts 0 as Monday,
    so numeric days, ranges and steps are expanded to explicit names.
    ``1-5`` becomes ``mon,tue,wed,thu,fri``.
    """
    if field == '*':
        return field
    days = set()
    for part in field.split(','):
        spec, _, step = part.partition('/')
        if step and (not step.isdigit() or int(step) == 0):
            raise ValueError(f"invalid step in {part!r}")
        step = int(step) if step else 1
        if spec == '*':
            first, last = 0, 6
        elif '-' in spec:
            low, _, high = spec.partition('-')
            first = _weekday_number(low)
            # 7 closes a range on Sunday (5-7 is fri-sun)
            last = 7 if high == '7' else _weekday_number(high)
            if first > last:
                raise ValueError(f"invalid day of week range {spec!r}")
        else:
            first = last = _weekday_number(spec)
        days.update(day % 7 for day in range(first, last + 1, step))
    return ','.join(CRON_WEEKDAYS[day] for day in sorted(days))


def validate_cron(expression: str, timezone=None) -> CronTrigger:
    """
    Check a five-field cron expression.

    The weekday field follows crontab numbering (0 and 7 are Sunday).

    Args:
        expression: e.g. ``0 2 * * *``
        timezone: Zone the schedule is read in (local time by default)

    Returns:
        The equivalent CronTrigger

    Raises:
        ConfigurationInvalid: If the expression is malformed
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ConfigurationInvalid(
            f"Cron expression must have 5 fields (minute hour day month weekday), got: {expression!r}"
        )
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=translate_weekdays(day_of_week),
            timezone=timezone
        )
    except ValueError as e:
        raise ConfigurationInvalid(f"Invalid cron expression {expression!r}: {e}")


@dataclass(frozen=True)
class ScheduleAction:
    """What a scheduled entry runs."""
    action: str
    scope: str
    aggressive: bool = False

    def __post_init__(self):
        if self.action not in ACTIONS:
            raise ConfigurationInvalid(f"Unknown schedule action: {self.action}")
        if self.action == 'backup':
            if self.scope != 'all':
                TargetKind.parse(self.scope)
            if self.aggressive:
                raise ConfigurationInvalid("aggressive only applies to cleanup entries")
        elif self.scope not in SCOPES:
            raise ConfigurationInvalid(f"Unknown cleanup scope: {self.scope}. Valid options: {', '.join(SCOPES)}")

    @classmethod
    def full_backup(cls) -> 'ScheduleAction':
        return cls('backup', 'all')

    @classmethod
    def single_backup(cls, kind) -> 'ScheduleAction':
        return cls('backup', TargetKind.parse(kind).value)

    @classmethod
    def cleanup(cls, scope: str, aggressive: bool = False) -> 'ScheduleAction':
        return cls('cleanup', scope, aggressive)

    def cli_args(self) -> List[str]:
        if self.action == 'backup':
            if self.scope == 'all':
                return ['backup', 'run', '--all']
            return ['backup', 'run', '--target', self.scope]
        args = ['retention', 'sweep', '--scope', self.scope]
        if self.aggressive:
            args.append('--aggressive')
        return args

    def log_filename(self, day: datetime) -> str:
        stamp = day.strftime('%Y%m%d')
        if self.action == 'backup':
            name = 'automated' if self.scope == 'all' else self.scope
            return f"backup_{name}_{stamp}.log"
        suffix = '_aggressive' if self.aggressive else ''
        return f"cleanup_{self.scope}{suffix}_{stamp}.log"

    def describe(self) -> str:
        if self.action == 'backup':
            return 'Full backup' if self.scope == 'all' else f"{self.scope} backup"
        return f"Cleanup ({self.scope}{', aggressive' if self.aggressive else ''})"


@dataclass
class ScheduleEntry:
    """One job line of the crontab."""
    line: str
    cron_expression: str
    command: str
    action: Optional[ScheduleAction] = None
    created: Optional[str] = None
    log_path: Optional[str] = None
    next_run: Optional[datetime] = None

    @property
    def managed(self) -> bool:
        return self.action is not None

    def to_dict(self):
        return {
            'cron_expression': self.cron_expression,
            'command': self.command,
            'managed': self.managed,
            'action': self.action.action if self.action else None,
            'scope': self.action.scope if self.action else None,
            'aggressive': self.action.aggressive if self.action else None,
            'created': self.created,
            'log_path': self.log_path,
            'next_run': self.next_run.isoformat() if self.next_run else None,
        }


def _parse_descriptor(line: str):
    """Split a line into (body, ScheduleAction, created) if it carries a valid descriptor."""
    match = DESCRIPTOR_RE.search(line)
    if not match:
        return line, None, None

    fields = dict(pair.split('=', 1) for pair in match.group(1).split())
    try:
        action = ScheduleAction(
            action=fields.get('action', ''),
            scope=fields.get('scope', ''),
            aggressive=fields.get('aggressive') == '1'
        )
    except ConfigurationInvalid:
        return line, None, None
    return line[:match.start()], action, fields.get('created')


def is_job_line(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith('#') and not ENV_LINE_RE.match(stripped)


def parse_line(line: str) -> Optional[ScheduleEntry]:
    """
    Parse a crontab job line.

    Returns:
        ScheduleEntry, or None for blank, comment and variable lines
    """
    if not is_job_line(line):
        return None

    body, action, created = _parse_descriptor(line)
    stripped = body.strip()
    if stripped.startswith('@'):
        cron_expression, _, command = stripped.partition(' ')
    else:
        parts = stripped.split(None, 5)
        cron_expression = ' '.join(parts[:5])
        command = parts[5] if len(parts) > 5 else ''

    log_path = None
    redirect = re.search(r'>>\s*(\S+)', command)
    if redirect:
        log_path = redirect.group(1).strip('\'"')

    next_run = None
    if not cron_expression.startswith('@'):
        try:
            next_run = next_run_time(cron_expression)
        except ConfigurationInvalid:
            next_run = None

    return ScheduleEntry(
        line=line,
        cron_expression=cron_expression,
        command=command.strip(),
        action=action,
        created=created,
        log_path=log_path,
        next_run=next_run,
    )


class CrontabTable:
    """Reads and writes the invoking user's crontab through the ``crontab`` binary."""

    def __init__(self, binary: str = 'crontab', runner: Callable = subprocess.run, timeout: int = 30):
        self.binary = binary
        self.runner = runner
        self.timeout = timeout

    def _run(self, argv: List[str], input_text: str = None):
        try:
            return self.runner(
                argv,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False
            )
        except FileNotFoundError:
            raise DependencyMissing(f"{self.binary} executable not found")
        except subprocess.TimeoutExpired:
            raise ToolInvocationFailure(f"{self.binary} timed out after {self.timeout}s")

    def read(self) -> str:
        """Current crontab content; an absent crontab reads as empty."""
        result = self._run([self.binary, '-l'])
        if result.returncode != 0:
            if 'no crontab' in (result.stderr or '').lower():
                return ''
            raise ToolInvocationFailure(
                f"crontab -l failed: {(result.stderr or '').strip()}",
                returncode=result.returncode,
                stderr=result.stderr
            )
        return result.stdout or ''

    def write(self, content: str):
        """Replace the crontab with ``content``."""
        if content and not content.endswith('\n'):
            content += '\n'
        result = self._run([self.binary, '-'], input_text=content)
        if result.returncode != 0:
            raise ToolInvocationFailure(
                f"crontab - failed: {(result.stderr or '').strip()}",
                returncode=result.returncode,
                stderr=result.stderr
            )


class ScheduleRegistrar:
    """
    Installs and removes stackvault entries in the crontab.

    Installing only appends. ``remove`` drops matching managed entries and
    writes every other line back exactly as read.
    """

    def __init__(self, settings: BackupSettings, table: CrontabTable = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.settings = settings
        self.table = table or CrontabTable()
        self.clock = clock

    def build_line(self, cron_expression: str, action: ScheduleAction) -> str:
        """Render the crontab line for an action (five schedule fields, no user field)."""
        validate_cron(cron_expression)
        fields = cron_expression.split()
        now = self.clock()
        log_path = Path(self.settings.log_dir) / action.log_filename(now)

        executable = ' '.join(shlex.quote(part) for part in shlex.split(self.settings.schedule_executable))
        command = (
            f"cd {shlex.quote(str(self.settings.schedule_workdir))} && "
            f"{executable} {' '.join(shlex.quote(arg) for arg in action.cli_args())} "
            f">> {shlex.quote(str(log_path))} 2>&1"
        )
        descriptor = (
            f"{DESCRIPTOR_MARKER} action={action.action} scope={action.scope} "
            f"aggressive={int(action.aggressive)} created={now.replace(microsecond=0).isoformat()}"
        )
        return f"{' '.join(fields)} {command} {descriptor}"

    def install(self, cron_expression: str, action: ScheduleAction) -> ScheduleEntry:
        """
        Append an entry to the crontab.

        Args:
            cron_expression: Five-field cron schedule
            action: What the entry runs

        Returns:
            The installed ScheduleEntry

        Raises:
            ConfigurationInvalid: If the expression is malformed
            ToolInvocationFailure: If the crontab cannot be read or written
        """
        line = self.build_line(cron_expression, action)
        current = self.table.read()
        if current and not current.endswith('\n'):
            current += '\n'
        self.table.write(current + line + '\n')

        logger.info(f"Installed cron entry: {action.describe()} ({cron_expression})")
        return parse_line(line)

    def list(self) -> List[ScheduleEntry]:
        """Every job line of the crontab, managed or not."""
        entries = []
        for line in self.table.read().splitlines():
            entry = parse_line(line)
            if entry is not None:
                entries.append(entry)
        return entries

    def remove(self, predicate: Callable[[ScheduleAction], bool]) -> int:
        """
        Drop managed entries whose descriptor satisfies ``predicate``.

        Args:
            predicate: Called with each managed entry's ScheduleAction

        Returns:
            Number of entries removed
        """
        kept = []
        removed = 0
        content = self.table.read()
        for line in content.splitlines(keepends=True):
            entry = parse_line(line.rstrip('\n'))
            if entry is not None and entry.managed and predicate(entry.action):
                removed += 1
                continue
            kept.append(line)

        if removed:
            self.table.write(''.join(kept))
            logger.info(f"Removed {removed} cron entr{'y' if removed == 1 else 'ies'}")
        return removed

    def remove_all(self) -> int:
        """Empty the crontab. Returns the number of job lines dropped."""
        count = len(self.list())
        self.table.write('')
        logger.info(f"Removed all {count} cron entries")
        return count

    def export(self, path: Path = None) -> Path:
        """
        Save the crontab to a file.

        Args:
            path: Destination; defaults to ``<cron_dir>/crontab_<YYYYMMDD_HHMMSS>.txt``

        Returns:
            Path written

        Raises:
            NotFound: If the crontab is empty
        """
        content = self.table.read()
        if not content.strip():
            raise NotFound("No cron jobs found to save")

        if path is None:
            path = Path(self.settings.cron_dir) / f"crontab_{self.clock().strftime('%Y%m%d_%H%M%S')}.txt"
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

        logger.info(f"Crontab exported to {path}")
        return path

    def import_(self, path: Path) -> int:
        """
        Replace the crontab with the content of a file.

        Every job line must start with five valid schedule fields (or an
        ``@`` shortcut); nothing is written otherwise.

        Returns:
            Number of job lines installed

        Raises:
            NotFound: If the file does not exist
            ConfigurationInvalid: If a job line is malformed
        """
        path = Path(path)
        if not path.is_file():
            raise NotFound(f"Crontab file not found: {path}")

        content = path.read_text()
        jobs = 0
        for number, line in enumerate(content.splitlines(), start=1):
            if not is_job_line(line):
                continue
            stripped = line.strip()
            if not stripped.startswith('@'):
                fields = stripped.split(None, 5)
                if len(fields) < 6:
                    raise ConfigurationInvalid(f"{path.name}:{number}: expected 5 schedule fields and a command")
                try:
                    validate_cron(' '.join(fields[:5]))
                except ConfigurationInvalid as e:
                    raise ConfigurationInvalid(f"{path.name}:{number}: {e}")
            jobs += 1

        self.table.write(content)
        logger.info(f"Crontab imported from {path} ({jobs} job(s))")
        return jobs


def next_run_time(cron_expression: str, now: datetime = None, timezone=None) -> Optional[datetime]:
    """Next fire time for a cron expression."""
    trigger = validate_cron(cron_expression, timezone)
    now = now or datetime.now(trigger.timezone)
    return trigger.get_next_fire_time(None, now)
