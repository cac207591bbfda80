from __future__ import annotations

from datetime import date

import pytest
import pytz

from checkin_monitor import ClockReading, load_session_windows, parse_hhmm
from servicenow import RecordStoreError


class FakeClock:
    def __init__(self, day: date = date(2024, 1, 1), time_of_day: str = "12:15") -> None:
        self.timezone = pytz.timezone("Asia/Singapore")
        self.set(day, time_of_day)

    def set(self, day: date, time_of_day: str) -> None:
        self.reading = ClockReading(day, parse_hhmm(time_of_day), f"{day.isoformat()} {time_of_day}:00")

    def now(self) -> ClockReading:
        return self.reading


class FakeGateway:
    def __init__(self, persons=None, logs=None) -> None:
        self.persons = list(persons or [])
        self.logs = list(logs or [])
        self.written: list[dict] = []
        self.calls: list[str] = []
        self.fail_reads = False
        self.fail_writes = False

    def list_persons(self):
        self.calls.append("list_persons")
        if self.fail_reads:
            raise RecordStoreError("instance unreachable")
        return list(self.persons)

    def list_todays_log_entries(self, civil_date):
        self.calls.append("list_todays_log_entries")
        if self.fail_reads:
            raise RecordStoreError("instance unreachable")
        return list(self.logs)

    def append_log_entry(self, entry):
        self.calls.append("append_log_entry")
        if self.fail_writes:
            raise RecordStoreError("write rejected")
        self.written.append(entry)
        self.logs.append(entry)
        return dict(entry, sys_id=f"log-{len(self.written)}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def morning_only():
    return load_session_windows({"morning": {"start": "06:00", "end": "12:00", "grace_minutes": 30}})
