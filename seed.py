"""
Seed script: populates demo prescriptions for the configured owner.

- Clears any existing prescriptions for that owner (database, or the local
  JSON cache when HEALTH_WALLET_OWNER_ID=local), then inserts a fresh
  demo set (Hypertension + Type 2 Diabetes) with reminders enabled.
- Grants notification permission so the running app schedules reminders.
- Does NOT touch other owners.

Usage:
    HEALTH_WALLET_OWNER_ID=1 python3 seed.py
"""

from datetime import date, timedelta

import config
from db import init_db
from prescriptions import PrescriptionStore
from notifications import MailNotificationPlatform

TODAY = date.today()

DEMO_PRESCRIPTIONS = [
    {
        "doctor": "Dr. Priya Natarajan",
        "date": (TODAY - timedelta(days=40)).isoformat(),
        "drugs": [
            {"name": "Lisinopril", "dosage": "10mg", "reminder_enabled": True, "reminder_times": ["08:00"]},
            {"name": "Amlodipine", "dosage": "5mg", "reminder_enabled": True, "reminder_times": ["20:00"]},
        ],
    },
    {
        "doctor": "Dr. Samuel Okafor",
        "date": (TODAY - timedelta(days=12)).isoformat(),
        "drugs": [
            {"name": "Metformin", "dosage": "500mg", "reminder_enabled": True, "reminder_times": ["08:30", "19:30"]},
            {"name": "Vitamin D", "dosage": "1000 IU", "reminder_enabled": False, "reminder_times": []},
        ],
    },
]


def seed(owner_id=None, store=None):
    """Replace the owner's prescriptions with the demo set; returns what was saved."""
    init_db()
    store = store or PrescriptionStore()
    for rx in store.list_prescriptions(owner_id):
        store.delete_prescription(owner_id, rx["id"])
    saved = [
        store.add_prescription(owner_id, rx["doctor"], rx["date"], rx["drugs"])
        for rx in DEMO_PRESCRIPTIONS
    ]
    status = MailNotificationPlatform(config.NOTIFY_EMAIL, owner_id).request_permission(True)
    return saved, status


if __name__ == "__main__":
    owner = config.OWNER_ID
    saved, status = seed(owner)
    target = "local cache" if owner is None else f"owner {owner}"
    for rx in saved:
        print(f"Added prescription {rx['id']} from {rx['doctor']} ({len(rx['drugs'])} drugs) to {target}")
    print(f"Notification permission for {target}: {status}")
