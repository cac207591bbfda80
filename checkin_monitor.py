import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import NamedTuple, Optional

import pytz
from apscheduler.triggers.interval import IntervalTrigger

from servicenow import RecordStoreError

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60

# name -> start, end (zero-padded 24h HH:MM) and minutes of grace after the end
DEFAULT_SESSION_WINDOWS = {
    'morning': {'start': '06:00', 'end': '12:00', 'grace_minutes': 30},
    'night': {'start': '18:00', 'end': '22:00', 'grace_minutes': 30},
}

MISSED_STATUS_TEMPLATE = "missed ({})"

################################################################################
# 1. SESSION WINDOWS
################################################################################
def parse_hhmm(value):
    """Converts a zero-padded 'HH:MM' string into minutes since midnight."""
    if not isinstance(value, str) or len(value) != 5 or value[2] != ':':
        raise ValueError(f"Invalid time of day: {value!r}")
    hours, minutes = value[:2], value[3:]
    if not (hours.isdigit() and minutes.isdigit()):
        raise ValueError(f"Invalid time of day: {value!r}")
    hours, minutes = int(hours), int(minutes)
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid time of day: {value!r}")
    return hours * 60 + minutes


def format_minute(minute):
    return f"{minute // 60:02d}:{minute % 60:02d}"


@dataclass(frozen=True)
class SessionWindow:
    name: str
    start: int
    end: int
    grace_minutes: int

    @classmethod
    def from_config(cls, name, config):
        missing = [key for key in ('start', 'end') if key not in config]
        if missing:
            raise ValueError(f"Session '{name}' is missing {', '.join(missing)}")
        start = parse_hhmm(config['start'])
        end = parse_hhmm(config['end'])
        grace = int(config.get('grace_minutes', 0))
        if start > end:
            raise ValueError(f"Session '{name}' starts after it ends")
        if grace < 0:
            raise ValueError(f"Session '{name}' has a negative grace period")
        if end + grace >= MINUTES_PER_DAY:
            raise ValueError(f"Grace period of session '{name}' runs past midnight")
        return cls(name=name, start=start, end=end, grace_minutes=grace)

    def contains(self, minute):
        """True when `minute` falls inside [start, end], both ends inclusive."""
        return self.start <= minute <= self.end

    def in_grace_period(self, minute):
        return self.end < minute <= self.end + self.grace_minutes

    def to_dict(self):
        return {
            'name': self.name,
            'start': format_minute(self.start),
            'end': format_minute(self.end),
            'grace_minutes': self.grace_minutes,
        }


def load_session_windows(config=None):
    """Builds the fixed window registry from a {name: {start, end, grace_minutes}} mapping.

    A JSON string is accepted as well so the mapping can come straight from the environment.
    """
    if config is None or config == '':
        config = DEFAULT_SESSION_WINDOWS
    if isinstance(config, str):
        config = json.loads(config)
    windows = tuple(SessionWindow.from_config(name, cfg) for name, cfg in config.items())
    names = [w.name for w in windows]
    if len(set(names)) != len(names):
        raise ValueError("Session window names must be unique")
    return windows

################################################################################
# 2. CLOCK
################################################################################
class ClockReading(NamedTuple):
    date: date
    minute: int
    timestamp: str

    @classmethod
    def from_datetime(cls, moment):
        return cls(moment.date(), moment.hour * 60 + moment.minute, moment.strftime('%Y-%m-%d %H:%M:%S'))


class CivilClock:
    """Reads wall-clock time in one fixed zone, whatever the host timezone is."""

    def __init__(self, timezone_name):
        self.timezone_name = timezone_name
        self.timezone = pytz.timezone(timezone_name)

    def now(self):
        return ClockReading.from_datetime(datetime.now(self.timezone))

################################################################################
# 3. LOG ENTRIES & PERSONS
################################################################################
class StatusKind(Enum):
    CHECKED_IN = 'checked_in'
    MISSED = 'missed'
    OTHER = 'other'


@dataclass(frozen=True)
class CheckinStatus:
    kind: StatusKind
    raw: str
    checked_in: bool = False
    missed: bool = False

    @classmethod
    def parse(cls, raw):
        raw = (raw or '').strip()
        lowered = raw.lower()
        checked_in = 'checked in' in lowered
        missed = 'missed' in lowered
        # kind is for display; the evaluator reads the flags, which may both be set
        if missed:
            kind = StatusKind.MISSED
        elif checked_in:
            kind = StatusKind.CHECKED_IN
        else:
            kind = StatusKind.OTHER
        return cls(kind, raw, checked_in=checked_in, missed=missed)

    def is_missed_for(self, window_name):
        return self.missed and window_name.lower() in self.raw.lower()


def _is_truthy(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return False


def _time_of_day(value):
    """Minute of day from 'YYYY-MM-DD HH:MM:SS', an ISO 'T' timestamp or a bare 'HH:MM...' value."""
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    for separator in ('T', ' '):
        if separator in value:
            value = value.split(separator, 1)[1]
            break
    try:
        return parse_hhmm(value[:5])
    except ValueError:
        return None


def _created_on_time_of_day(value, timezone):
    """Minute of day of a UTC 'YYYY-MM-DD HH:MM:SS' creation stamp, seen from `timezone`."""
    if not value or not isinstance(value, str):
        return None
    try:
        created = datetime.strptime(value.strip()[:19], '%Y-%m-%d %H:%M:%S')
    except ValueError:
        return None
    local = pytz.utc.localize(created).astimezone(timezone)
    return local.hour * 60 + local.minute


@dataclass(frozen=True)
class Person:
    name: str
    paused: bool = False
    sys_id: Optional[str] = None

    @classmethod
    def from_record(cls, row):
        name = (row.get('name') or row.get('u_name') or '').strip()
        paused_flag = row.get('u_paused', row.get('paused'))
        return cls(name=name, paused=_is_truthy(paused_flag), sys_id=row.get('sys_id'))


@dataclass(frozen=True)
class LogEntry:
    person_name: str
    status: CheckinStatus
    minute: Optional[int] = None

    @classmethod
    def from_record(cls, row, timezone=pytz.utc):
        """Timestamps written by this app are civil time; sys_created_on comes back from the store in UTC."""
        name = row.get('elderly_name') or row.get('name') or row.get('u_elderly_name') or ''
        stamp = row.get('u_timestamp') or row.get('timestamp')
        if stamp:
            minute = _time_of_day(stamp)
        else:
            minute = _created_on_time_of_day(row.get('sys_created_on'), timezone)
        return cls(
            person_name=name.strip(),
            status=CheckinStatus.parse(row.get('status') or row.get('u_status')),
            minute=minute,
        )

################################################################################
# 4. DAILY TRACKING STATE
################################################################################
class DailyTracker:
    def __init__(self, window_names, today):
        self.window_names = tuple(window_names)
        self.civil_date = today
        self.processed = {name: set() for name in self.window_names}

    def reset_if_new_day(self, today):
        if today == self.civil_date:
            return False
        logger.info("Civil day rolled over from %s to %s, clearing tracking state", self.civil_date, today)
        self.civil_date = today
        self.processed = {name: set() for name in self.window_names}
        return True

    def is_processed(self, window_name, person_name):
        return person_name in self.processed.get(window_name, ())

    def mark_processed(self, window_name, person_name):
        self.processed.setdefault(window_name, set()).add(person_name)

    def snapshot(self):
        return {
            'date': self.civil_date.isoformat(),
            'processed': {name: sorted(people) for name, people in self.processed.items()},
        }

################################################################################
# 5. ESCALATION EVALUATOR
################################################################################
class Outcome(Enum):
    ALREADY_PROCESSED = 'already_processed'
    PAUSED = 'paused'
    ALREADY_ESCALATED = 'already_escalated'
    SAFE = 'safe'
    ESCALATED = 'escalated'
    FAILED = 'failed'


class EscalationEvaluator:
    def __init__(self, gateway):
        self.gateway = gateway

    def evaluate(self, person, todays_logs, window, now):
        if person.paused:
            return Outcome.PAUSED
        own_logs = [entry for entry in todays_logs if entry.person_name == person.name]
        if any(entry.status.is_missed_for(window.name) for entry in own_logs):
            return Outcome.ALREADY_ESCALATED
        for entry in own_logs:
            if entry.status.checked_in and entry.minute is not None and window.contains(entry.minute):
                return Outcome.SAFE
        entry = {
            'u_elderly': person.sys_id,
            'name': person.name,
            'status': MISSED_STATUS_TEMPLATE.format(window.name),
            'u_timestamp': now.timestamp,
        }
        try:
            self.gateway.append_log_entry(entry)
        except RecordStoreError as e:
            logger.error("Could not record missed %s check-in for %s: %s", window.name, person.name, e)
            return Outcome.FAILED
        logger.warning("Escalated missed %s check-in for %s", window.name, person.name)
        return Outcome.ESCALATED

################################################################################
# 6. SCHEDULER LOOP
################################################################################
@dataclass
class PassSummary:
    date: date
    time: str
    active_windows: list = field(default_factory=list)
    outcomes: Counter = field(default_factory=Counter)
    error: Optional[str] = None

    @property
    def skipped(self):
        return not self.active_windows

    def to_dict(self):
        return {
            'date': self.date.isoformat(),
            'time': self.time,
            'active_windows': list(self.active_windows),
            'outcomes': {outcome.value: count for outcome, count in self.outcomes.items()},
            'error': self.error,
        }


class MissedCheckinMonitor:
    """Periodically escalates persons that did not check in during a session window.

    One pass looks at the windows whose grace period is running right now, fetches the
    person list and today's log once, and evaluates every (window, person) pair that has
    not been evaluated yet today.
    """

    JOB_ID = 'missed_checkin_monitor'

    def __init__(self, gateway, windows, clock, retry_failed_escalations=False, evaluator=None):
        self.gateway = gateway
        self.windows = tuple(windows)
        self.clock = clock
        self.retry_failed_escalations = retry_failed_escalations
        self.evaluator = evaluator or EscalationEvaluator(gateway)
        self.tracker = DailyTracker((w.name for w in self.windows), clock.now().date)
        self.last_summary = None
        self._lock = threading.Lock()

    def active_windows(self, minute):
        return [w for w in self.windows if w.in_grace_period(minute)]

    def run_pass(self):
        with self._lock:
            summary = self._run_pass()
        self.last_summary = summary
        return summary

    def _run_pass(self):
        now = self.clock.now()
        self.tracker.reset_if_new_day(now.date)
        active = self.active_windows(now.minute)
        summary = PassSummary(date=now.date, time=format_minute(now.minute), active_windows=[w.name for w in active])
        if not active:
            logger.debug("No session in its grace period at %s, nothing to do", summary.time)
            return summary

        try:
            persons = [Person.from_record(row) for row in self.gateway.list_persons()]
            todays_logs = [
                LogEntry.from_record(row, self.clock.timezone)
                for row in self.gateway.list_todays_log_entries(now.date)
            ]
        except RecordStoreError as e:
            logger.error("Aborting missed check-in pass, could not read the record store: %s", e)
            summary.error = str(e)
            return summary

        for person in persons:
            if not person.name:
                continue
            for window in active:
                if self.tracker.is_processed(window.name, person.name):
                    summary.outcomes[Outcome.ALREADY_PROCESSED] += 1
                    continue
                try:
                    outcome = self.evaluator.evaluate(person, todays_logs, window, now)
                except Exception:
                    logger.exception("Error evaluating %s session for %s", window.name, person.name)
                    outcome = Outcome.FAILED
                summary.outcomes[outcome] += 1
                if outcome is Outcome.FAILED and self.retry_failed_escalations:
                    continue
                self.tracker.mark_processed(window.name, person.name)

        logger.info(
            "Missed check-in pass finished at %s for %s: %d persons, %s",
            summary.time, ', '.join(summary.active_windows), len(persons),
            dict((o.value, c) for o, c in summary.outcomes.items()) or 'no evaluations',
        )
        return summary

    def _scheduled_pass(self):
        try:
            self.run_pass()
        except Exception:
            logger.exception("Unexpected error in missed check-in pass")

    def schedule(self, scheduler, interval_minutes=15):
        """Registers the recurring pass on an APScheduler scheduler."""
        return scheduler.add_job(
            self._scheduled_pass,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
