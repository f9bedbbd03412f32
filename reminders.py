"""Medication reminder scheduler.

Turns the reminder settings of every prescribed drug into one timer per
(drug, time) pair on the running asyncio loop. A timer that fires publishes
an in-app alert, sends a native notification when permission is granted, and
then rebuilds the whole timer set so tomorrow's reminder is registered.

Every rebuild starts by cancelling all pending timers, so a stale timer can
never outlive a data or permission change.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Callable, Optional, Sequence

from messages import t

logger = logging.getLogger(__name__)

PERMISSION_DEFAULT = "default"
PERMISSION_GRANTED = "granted"
PERMISSION_DENIED = "denied"
PERMISSION_STATUSES = (PERMISSION_DEFAULT, PERMISSION_GRANTED, PERMISSION_DENIED)


class InvalidTimeFormat(ValueError):
    pass


class DataFetchError(Exception):
    """The prescription store could not supply reminder rules."""


@dataclass(frozen=True)
class ReminderRule:
    drug_name: str
    dosage: str = ""
    prescribing_doctor: str = ""
    reminder_times: Sequence[str] = ()
    enabled: bool = False
    drug_id: Optional[Any] = None


@dataclass
class ScheduledTimer:
    rule: ReminderRule
    time_of_day: str
    fire_at: datetime
    handle: Any = field(default=None, repr=False)

    @property
    def fire_at_epoch_millis(self) -> int:
        return int(self.fire_at.timestamp() * 1000)

    def cancel(self):
        if self.handle is not None:
            self.handle.cancel()

    def as_dict(self) -> dict:
        return {
            "drug_id": self.rule.drug_id,
            "drug_name": self.rule.drug_name,
            "dosage": self.rule.dosage,
            "time_of_day": self.time_of_day,
            "fire_at": self.fire_at.strftime("%Y-%m-%d %H:%M:%S"),
            "fire_at_epoch_millis": self.fire_at_epoch_millis,
        }


@dataclass(frozen=True)
class InAppAlert:
    drug_name: str
    dosage: str
    doctor: str

    def as_dict(self) -> dict:
        return {"drug_name": self.drug_name, "dosage": self.dosage, "doctor": self.doctor}


def parse_time_of_day(value: str) -> time:
    """Parse a 24-hour "HH:MM" string."""
    if not isinstance(value, str):
        raise InvalidTimeFormat(f"Reminder time must be a string, got {value!r}")
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise InvalidTimeFormat(f"Reminder time must look like HH:MM, got {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise InvalidTimeFormat(f"Reminder time out of range: {value!r}")
    return time(hours, minutes)


def next_fire_at(time_of_day: str, now: datetime) -> datetime:
    """Next local instant at ``time_of_day``: later today, otherwise tomorrow.

    Naive local arithmetic; across a daylight-saving change the wall-clock
    time is kept and the real delay is off by the shift.
    """
    at = parse_time_of_day(time_of_day)
    candidate = now.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _loop_timer(delay: float, callback: Callable[[], None]):
    return asyncio.get_running_loop().call_later(delay, callback)


class ReminderScheduler:
    """Owns the pending reminder timers for one owner.

    ``store`` needs ``fetch_active_reminder_rules(owner_id)``; ``platform`` needs
    ``get_permission_status()``, ``request_permission(allow)`` and
    ``show_notification(title, body)``. ``clock`` returns local naive time and
    ``timer_factory(delay_seconds, callback)`` returns a handle with ``cancel()``.
    """

    def __init__(
        self,
        store,
        platform,
        owner_id: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
        timer_factory: Callable[[float, Callable[[], None]], Any] = _loop_timer,
        lang: str = "",
    ):
        self.store = store
        self.platform = platform
        self.owner_id = owner_id
        self.clock = clock
        self.timer_factory = timer_factory
        self.lang = lang
        self._timers: list[ScheduledTimer] = []
        self._tasks: set = set()
        self._rebuild_lock = asyncio.Lock()
        self._permission_status = PERMISSION_DEFAULT
        self._active_alert: Optional[InAppAlert] = None

    # -----------------------------------------------------------------------
    # Observable state
    # -----------------------------------------------------------------------

    @property
    def permission_status(self) -> str:
        return self._permission_status

    @property
    def active_in_app_alert(self) -> Optional[InAppAlert]:
        return self._active_alert

    @property
    def timers(self) -> list[ScheduledTimer]:
        return sorted(self._timers, key=lambda tm: (tm.fire_at, tm.rule.drug_name))

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self):
        """Read the platform permission once, then build the initial timer set."""
        try:
            status = self.platform.get_permission_status()
        except Exception:
            logger.exception("Could not read notification permission; assuming default")
            status = PERMISSION_DEFAULT
        self._permission_status = status if status in PERMISSION_STATUSES else PERMISSION_DEFAULT
        await self.schedule_reminders()

    def shutdown(self):
        self._cancel_all()
        for task in list(self._tasks):
            task.cancel()

    # -----------------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------------

    async def request_permission(self, allow: bool = True) -> str:
        try:
            status = await asyncio.to_thread(self.platform.request_permission, allow)
        except Exception:
            logger.exception("Notification permission request failed")
            return self._permission_status
        if status not in PERMISSION_STATUSES:
            logger.warning("Platform returned unknown permission status %r", status)
            return self._permission_status
        if status != self._permission_status:
            logger.info("Notification permission changed: %s -> %s", self._permission_status, status)
            self._permission_status = status
            await self.schedule_reminders()
        return status

    async def schedule_reminders(self):
        async with self._rebuild_lock:
            self._cancel_all()
            if self._permission_status != PERMISSION_GRANTED:
                return
            try:
                rules = await asyncio.to_thread(self.store.fetch_active_reminder_rules, self.owner_id)
            except Exception:
                logger.exception("Failed to load prescriptions for reminders")
                return
            now = self.clock()
            for rule in rules:
                if not rule.enabled:
                    continue
                for time_of_day in rule.reminder_times or ():
                    self._schedule_one(rule, time_of_day, now)
            logger.debug("Scheduled %d reminder timer(s)", len(self._timers))

    async def handle_fire(self, rule: ReminderRule):
        self._active_alert = InAppAlert(rule.drug_name, rule.dosage, rule.prescribing_doctor)
        if self._permission_status == PERMISSION_GRANTED:
            title = t("reminderAlertTitle", self.lang)
            body = t("reminderAlertText", self.lang, drug=f"{rule.drug_name} ({rule.dosage})")
            try:
                sent = await asyncio.to_thread(self.platform.show_notification, title, body)
                if not sent:
                    logger.warning("Reminder notification for %s was not delivered", rule.drug_name)
            except Exception:
                logger.exception("Reminder notification dispatch failed for %s", rule.drug_name)
        await self.schedule_reminders()

    def dismiss_in_app_alert(self):
        self._active_alert = None

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _cancel_all(self):
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    def _schedule_one(self, rule: ReminderRule, time_of_day: str, now: datetime):
        try:
            fire_at = next_fire_at(time_of_day, now)
        except InvalidTimeFormat as exc:
            logger.warning("Skipping reminder for %s: %s", rule.drug_name, exc)
            return
        delay = (fire_at - now).total_seconds()
        timer = ScheduledTimer(rule=rule, time_of_day=time_of_day, fire_at=fire_at)
        timer.handle = self.timer_factory(delay, lambda: self._on_timer(rule))
        self._timers.append(timer)

    def _on_timer(self, rule: ReminderRule):
        task = asyncio.get_running_loop().create_task(self.handle_fire(rule))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
