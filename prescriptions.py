"""Health-wallet prescription storage and the reminder rules derived from it.

Signed-in owners keep prescriptions in sqlite; without an owner the local
JSON cache file is used instead.
"""
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

import config
from db import get_db
from reminders import DataFetchError, ReminderRule

logger = logging.getLogger(__name__)


def _rule_from_drug(drug, doctor: str) -> Optional[ReminderRule]:
    """Build a rule from one stored drug, or None when the entry is malformed."""
    if not isinstance(drug, dict):
        logger.warning("Skipping drug entry that is not an object: %r", drug)
        return None
    name = drug.get("name")
    if not isinstance(name, str) or not name.strip():
        logger.warning("Skipping drug %r without a name", drug.get("id"))
        return None
    reminder_times = drug.get("reminder_times")
    if reminder_times is None:
        reminder_times = []
    if not isinstance(reminder_times, list):
        logger.warning("Skipping drug %s: reminder_times is not a list", name)
        return None
    return ReminderRule(
        drug_name=name.strip(),
        dosage=str(drug.get("dosage") or ""),
        prescribing_doctor=doctor,
        reminder_times=tuple(reminder_times),
        enabled=bool(drug.get("reminder_enabled")),
        drug_id=drug.get("id"),
    )


def rules_from_prescriptions(prescriptions: list) -> list:
    rules = []
    for p in prescriptions:
        if not isinstance(p, dict) or not isinstance(p.get("drugs", []), list):
            logger.warning("Skipping malformed prescription entry: %r", p)
            continue
        doctor = str(p.get("doctor") or "")
        for drug in p.get("drugs", []):
            rule = _rule_from_drug(drug, doctor)
            if rule is not None:
                rules.append(rule)
    return rules


class DatabasePrescriptionStore:
    def list_prescriptions(self, owner_id: int) -> list:
        with get_db() as conn:
            rx_rows = conn.execute(
                "SELECT id, doctor, issue_date, file_type, file_data FROM prescriptions"
                " WHERE user_id=? ORDER BY issue_date DESC, id DESC",
                (owner_id,),
            ).fetchall()
            drug_rows = conn.execute(
                "SELECT pd.id, pd.prescription_id, pd.drug_name, pd.dosage, pd.reminder_enabled"
                " FROM prescription_drugs pd"
                " JOIN prescriptions p ON p.id = pd.prescription_id"
                " WHERE p.user_id=? ORDER BY pd.id",
                (owner_id,),
            ).fetchall()
            time_rows = conn.execute(
                "SELECT rt.drug_id, rt.reminder_time FROM drug_reminder_times rt"
                " JOIN prescription_drugs pd ON pd.id = rt.drug_id"
                " JOIN prescriptions p ON p.id = pd.prescription_id"
                " WHERE p.user_id=? ORDER BY rt.reminder_time",
                (owner_id,),
            ).fetchall()
        times: dict[int, list] = {}
        for r in time_rows:
            times.setdefault(r["drug_id"], []).append(r["reminder_time"])
        drugs: dict[int, list] = {}
        for r in drug_rows:
            drugs.setdefault(r["prescription_id"], []).append({
                "id": r["id"],
                "name": r["drug_name"],
                "dosage": r["dosage"],
                "reminder_enabled": bool(r["reminder_enabled"]),
                "reminder_times": times.get(r["id"], []),
            })
        return [
            {
                "id": r["id"],
                "doctor": r["doctor"],
                "date": r["issue_date"],
                "file_type": r["file_type"],
                "file_data": r["file_data"],
                "drugs": drugs.get(r["id"], []),
            }
            for r in rx_rows
        ]

    def add_prescription(
        self, owner_id: int, doctor: str, issue_date: str, drugs: list,
        file_data: str = "", file_type: str = "",
    ) -> dict:
        created_at = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with get_db() as conn:
            cur = conn.execute(
                "INSERT INTO prescriptions (user_id, doctor, issue_date, file_type, file_data, created_at)"
                " VALUES (?,?,?,?,?,?)",
                (owner_id, doctor, issue_date, file_type, file_data, created_at),
            )
            rx_id = cur.lastrowid
            saved = []
            for drug in drugs:
                enabled = bool(drug.get("reminder_enabled"))
                dcur = conn.execute(
                    "INSERT INTO prescription_drugs (prescription_id, drug_name, dosage, reminder_enabled)"
                    " VALUES (?,?,?,?)",
                    (rx_id, drug["name"], drug.get("dosage", ""), 1 if enabled else 0),
                )
                reminder_times = list(drug.get("reminder_times") or []) if enabled else []
                conn.executemany(
                    "INSERT INTO drug_reminder_times (drug_id, reminder_time) VALUES (?,?)",
                    [(dcur.lastrowid, rt) for rt in reminder_times],
                )
                saved.append({
                    "id": dcur.lastrowid,
                    "name": drug["name"],
                    "dosage": drug.get("dosage", ""),
                    "reminder_enabled": enabled,
                    "reminder_times": sorted(reminder_times),
                })
            conn.commit()
        return {
            "id": rx_id,
            "doctor": doctor,
            "date": issue_date,
            "file_type": file_type,
            "file_data": file_data,
            "drugs": saved,
        }

    def delete_prescription(self, owner_id: int, prescription_id) -> bool:
        with get_db() as conn:
            row = conn.execute(
                "SELECT id FROM prescriptions WHERE id=? AND user_id=?", (prescription_id, owner_id)
            ).fetchone()
            if not row:
                return False
            conn.execute("DELETE FROM prescriptions WHERE id=? AND user_id=?", (prescription_id, owner_id))
            conn.commit()
        return True

    def fetch_active_reminder_rules(self, owner_id: int) -> list:
        try:
            return rules_from_prescriptions(self.list_prescriptions(owner_id))
        except sqlite3.Error as exc:
            raise DataFetchError(f"Could not load prescriptions for owner {owner_id}") from exc


class LocalPrescriptionStore:
    """Prescriptions cached in a JSON file (offline use, no owner)."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else config.LOCAL_PRESCRIPTIONS_PATH

    def _load(self) -> list:
        if not self.path.exists():
            return []
        data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        if not isinstance(data, list):
            raise ValueError(f"{self.path} does not hold a prescription list")
        return data

    def _save(self, prescriptions: list):
        self.path.write_text(json.dumps(prescriptions, indent=2), encoding="utf-8")

    def list_prescriptions(self, owner_id=None) -> list:
        return self._load()

    def add_prescription(
        self, owner_id, doctor: str, issue_date: str, drugs: list,
        file_data: str = "", file_type: str = "",
    ) -> dict:
        prescriptions = self._load()
        entries = [p for p in prescriptions if isinstance(p, dict)]
        next_rx = max([p.get("id", 0) for p in entries] or [0]) + 1
        next_drug = max(
            [d.get("id", 0) for p in entries for d in p.get("drugs") or [] if isinstance(d, dict)] or [0]
        ) + 1
        saved = []
        for offset, drug in enumerate(drugs):
            enabled = bool(drug.get("reminder_enabled"))
            saved.append({
                "id": next_drug + offset,
                "name": drug["name"],
                "dosage": drug.get("dosage", ""),
                "reminder_enabled": enabled,
                "reminder_times": sorted(drug.get("reminder_times") or []) if enabled else [],
            })
        prescription = {
            "id": next_rx,
            "doctor": doctor,
            "date": issue_date,
            "file_type": file_type,
            "file_data": file_data,
            "drugs": saved,
        }
        prescriptions.insert(0, prescription)
        self._save(prescriptions)
        return prescription

    def delete_prescription(self, owner_id, prescription_id) -> bool:
        prescriptions = self._load()
        kept = [p for p in prescriptions if not (isinstance(p, dict) and p.get("id") == prescription_id)]
        if len(kept) == len(prescriptions):
            return False
        self._save(kept)
        return True

    def fetch_active_reminder_rules(self, owner_id=None) -> list:
        try:
            return rules_from_prescriptions(self._load())
        except (OSError, ValueError) as exc:
            raise DataFetchError(f"Could not read {self.path}") from exc


class PrescriptionStore:
    """Routes calls to the database for a known owner, else to the local cache."""

    def __init__(self, database=None, local=None):
        self.database = database or DatabasePrescriptionStore()
        self.local = local or LocalPrescriptionStore()

    def _backend(self, owner_id):
        return self.local if owner_id is None else self.database

    def list_prescriptions(self, owner_id) -> list:
        return self._backend(owner_id).list_prescriptions(owner_id)

    def add_prescription(
        self, owner_id, doctor: str, issue_date: str, drugs: list,
        file_data: str = "", file_type: str = "",
    ) -> dict:
        return self._backend(owner_id).add_prescription(
            owner_id, doctor, issue_date, drugs, file_data=file_data, file_type=file_type
        )

    def delete_prescription(self, owner_id, prescription_id) -> bool:
        return self._backend(owner_id).delete_prescription(owner_id, prescription_id)

    def fetch_active_reminder_rules(self, owner_id) -> list:
        return self._backend(owner_id).fetch_active_reminder_rules(owner_id)
