#!/usr/bin/env python
import os
from datetime import datetime

import pytz
from dotenv import load_dotenv

from servicenow import (
    DEFAULT_CHECKIN_TABLE,
    DEFAULT_ELDERLY_TABLE,
    RecordStoreError,
    ServiceNowGateway
)

load_dotenv()

###############################################################################
# Configuration
###############################################################################
TIMEZONE_NAME = os.environ.get('TIMEZONE_NAME', 'Asia/Singapore')
TIMEZONE = pytz.timezone(TIMEZONE_NAME)

DEMO_ELDERLY = [
    {'name': 'Alice Tan', 'u_elderly_username': 'alice', 'u_caregiver_name': 'Grace Lim',
     'u_condition_special_consideration': 'Mild hypertension', 'u_paused': 'false'},
    {'name': 'Bob Lee', 'u_elderly_username': 'bob', 'u_caregiver_name': 'Grace Lim',
     'u_condition_special_consideration': 'Type 2 diabetes', 'u_paused': 'false'},
    {'name': 'Chen Wei', 'u_elderly_username': 'chen', 'u_caregiver_name': 'Ravi Kumar',
     'u_condition_special_consideration': 'Recovering from hip surgery', 'u_paused': 'true'},
]

# elderly name -> times of day they checked in today
DEMO_CHECKINS = {
    'Alice Tan': ['07:45'],
    'Bob Lee': ['09:15', '19:30'],
}


def now_local():
    return datetime.now(TIMEZONE)

###############################################################################
# Record builders
###############################################################################
def build_checkin_entries(elderly_by_name, today):
    """Check-in log rows for today, keyed to the sys_ids the elderly records were created with."""
    entries = []
    for name, times in DEMO_CHECKINS.items():
        record = elderly_by_name.get(name)
        if not record:
            continue
        for time_of_day in times:
            entries.append({
                'u_elderly': record.get('sys_id'),
                'name': name,
                'status': 'Checked In',
                'u_timestamp': f"{today.isoformat()} {time_of_day}:00",
            })
    return entries


def create_elderly(gateway):
    print("\n--- 👵 Creating Elderly Profiles ---")
    created = {}
    for record in DEMO_ELDERLY:
        result = gateway.create_elderly(dict(record))
        created[record['name']] = result
        print(f"👤 Elderly created -> {record['name']} ({result.get('sys_id', '?')})")
    return created


def create_checkins(gateway, elderly_by_name, today):
    print("\n--- ✅ Generating Today's Check-ins ---")
    entries = build_checkin_entries(elderly_by_name, today)
    for entry in entries:
        gateway.append_log_entry(entry)
    print(f"✅ Inserted {len(entries)} check-in records.")
    return entries

###############################################################################
# Main Seeding Routine
###############################################################################
def seed_records(gateway=None):
    gateway = gateway or ServiceNowGateway(
        os.environ.get('SN_INSTANCE', ''),
        os.environ.get('SN_USERNAME', ''),
        os.environ.get('SN_PASSWORD', ''),
        elderly_table=os.environ.get('SN_ELDERLY_TABLE', DEFAULT_ELDERLY_TABLE),
        checkin_table=os.environ.get('SN_CHECKIN_TABLE', DEFAULT_CHECKIN_TABLE),
    )
    print(f"--- 🚀 Seeding demo records into '{gateway.instance}' ---")
    try:
        elderly_by_name = create_elderly(gateway)
        create_checkins(gateway, elderly_by_name, now_local().date())
    except RecordStoreError as e:
        print(f"❌ Seeding stopped: {e}")
        return False
    print("\n--- 🎉 Seeding Complete! ---")
    return True


if __name__ == '__main__':
    seed_records()
