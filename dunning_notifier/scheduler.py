"""
Dunning Notifier -- Recurrence Scheduler

Owns the single armed timer that triggers the scan + dispatch cycle.

State machine::

    IDLE --start()--> ARMED --timer--> FIRING --cycle done--> ARMED
      ^                 |
      +-----stop()------+

Only one cycle may be in flight at a time.  Timer fires and manual
``run_now()`` calls share a non-blocking lock; an overlapping call is logged
and answered with a skipped RunReport instead of being queued.  ``stop()``
only cancels future fires; a cycle already running finishes normally.

The timer itself is an APScheduler ``date`` job, re-added after every fire
with the next computed instant.  It has no misfire grace limit, so a run
time missed while the host was suspended still fires (once) and re-arms.
Tests inject a backend stub exposing ``add_job``/``remove_job``/``running``/
``start``.

Next-fire rules (all in the configured timezone):
    daily    today at HH:MM if still ahead, else tomorrow
    weekly   nearest day in the weekday set whose HH:MM is still ahead
    monthly  this month's day (clamped to month length) if ahead, else next
"""

from __future__ import annotations

import calendar
import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .clock import CalendarClock
from .config import Frequency, ScheduleConfig
from .dispatch import DispatchCoordinator
from .eligibility import EligibilityScanner
from .models import RunReport

logger = logging.getLogger(__name__)

JOB_ID = "dunning_notifier_sweep"

INACTIVE_LABEL = "Agendador inativo"


# ---------------------------------------------------------------------------
# Next-fire computation
# ---------------------------------------------------------------------------

def _at(day: date, config: ScheduleConfig, tz) -> datetime:
    return datetime(day.year, day.month, day.day, config.hour, config.minute, tzinfo=tz)


def _add_months(day: date, months: int) -> tuple[int, int]:
    index = day.month - 1 + months
    return day.year + index // 12, index % 12 + 1


def compute_next_fire(config: ScheduleConfig, now: datetime) -> datetime:
    """First configured instant strictly after ``now``.

    ``now`` must be timezone-aware; the result is in the same timezone.

    Raises:
        InvalidScheduleConfig: If ``config`` does not validate.
    """
    config.validate()
    tz = now.tzinfo
    today = now.date()

    if config.frequency is Frequency.DAILY:
        candidate = _at(today, config, tz)
        if candidate > now:
            return candidate
        return _at(today + timedelta(days=1), config, tz)

    if config.frequency is Frequency.WEEKLY:
        # offset 7 covers "same weekday next week" when today's time has passed
        for offset in range(8):
            day = today + timedelta(days=offset)
            if day.weekday() in config.weekdays:
                candidate = _at(day, config, tz)
                if candidate > now:
                    return candidate

    if config.frequency is Frequency.MONTHLY:
        for months_ahead in range(3):
            year, month = _add_months(today, months_ahead)
            last_day = calendar.monthrange(year, month)[1]
            day = date(year, month, min(config.day_of_month, last_day))
            candidate = _at(day, config, tz)
            if candidate > now:
                return candidate

    # unreachable for a validated config
    raise RuntimeError(f"Could not compute next fire for {config.describe()}")


def format_time_remaining(delta: timedelta) -> str:
    """'2h 15m', or '45m' under an hour."""
    total_minutes = max(0, int(delta.total_seconds() // 60))
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class SchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRING = "firing"


@dataclass(frozen=True)
class NextFireInfo:
    next_fire_time: Optional[datetime]
    time_remaining: str
    is_active: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_fire_time": self.next_fire_time.isoformat() if self.next_fire_time else None,
            "time_remaining": self.time_remaining,
            "is_active": self.is_active,
        }


class RecurrenceScheduler:
    """Single-flight recurring trigger for the scan + dispatch cycle.

    Args:
        config: When to fire.  Validated on start()/reconfigure().
        scanner: Candidate producer.
        coordinator: Candidate consumer.
        clock: Source of "now" and of the timezone fire times are computed in.
        backend: APScheduler-compatible scheduler.  Defaults to a
            BackgroundScheduler in the clock's timezone, started on demand.
    """

    def __init__(
        self,
        config: ScheduleConfig,
        scanner: EligibilityScanner,
        coordinator: DispatchCoordinator,
        clock: CalendarClock,
        backend: Any = None,
    ):
        self.config = config
        self.scanner = scanner
        self.coordinator = coordinator
        self.clock = clock
        self._backend = backend if backend is not None else BackgroundScheduler(timezone=clock.tz)

        self._state_lock = threading.RLock()
        self._run_lock = threading.Lock()
        self._active = False
        self._firing = False
        self._next_fire: Optional[datetime] = None

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            if self._firing:
                return SchedulerState.FIRING
            if self._active:
                return SchedulerState.ARMED
            return SchedulerState.IDLE

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def next_fire_time(self) -> Optional[datetime]:
        return self._next_fire

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def start(self) -> None:
        """Arm the timer.  No-op when already armed.

        Raises:
            InvalidScheduleConfig: Synchronously, if the config is invalid.
        """
        with self._state_lock:
            if self._active:
                logger.debug("Scheduler already armed; start() ignored")
                return
            self.config.validate()
            if not self._backend.running:
                self._backend.start()
            self._active = True
            self._arm(self.clock.now())
            logger.info("Scheduler started (%s); next fire %s",
                        self.config.describe(), self._next_fire.isoformat())

    def stop(self) -> None:
        """Cancel the pending fire.  An in-flight cycle runs to completion."""
        with self._state_lock:
            if not self._active:
                return
            self._active = False
            self._next_fire = None
            try:
                self._backend.remove_job(JOB_ID)
            except JobLookupError:
                logger.debug("No pending job to remove")
            logger.info("Scheduler stopped")

    def reconfigure(self, config: ScheduleConfig) -> None:
        """Replace the schedule; if armed, re-arm from now.

        Raises:
            InvalidScheduleConfig: The new config is rejected and the
                scheduler keeps its previous config and state.
        """
        config.validate()
        with self._state_lock:
            was_active = self._active
            if was_active:
                self.stop()
            self.config = config
            logger.info("Schedule reconfigured: %s", config.describe())
            if was_active:
                self.start()

    def shutdown(self) -> None:
        """Stop and shut the backend down (process exit)."""
        self.stop()
        if self._backend.running:
            self._backend.shutdown(wait=False)

    def get_next_fire_info(self) -> NextFireInfo:
        with self._state_lock:
            if not self._active or self._next_fire is None:
                return NextFireInfo(next_fire_time=None, time_remaining=INACTIVE_LABEL, is_active=False)
            remaining = self._next_fire - self.clock.now()
            return NextFireInfo(
                next_fire_time=self._next_fire,
                time_remaining=format_time_remaining(remaining),
                is_active=True,
            )

    # -------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------

    def fire(self) -> RunReport:
        """Timer callback: run one guarded cycle, then re-arm if still active."""
        with self._state_lock:
            fired_for = self._next_fire
        try:
            return self._guarded_cycle("scheduled")
        finally:
            with self._state_lock:
                if self._active:
                    now = self.clock.now()
                    after = max(now, fired_for) if fired_for else now
                    self._arm(after)

    def run_now(self) -> RunReport:
        """Manual trigger; same single-flight guard as the timer path."""
        return self._guarded_cycle("manual")

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _arm(self, after: datetime) -> None:
        next_fire = compute_next_fire(self.config, after.astimezone(self.clock.tz))
        self._backend.add_job(
            self.fire,
            trigger="date",
            run_date=next_fire,
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            # a late fire still runs, otherwise nothing re-arms the timer
            misfire_grace_time=None,
            coalesce=True,
        )
        self._next_fire = next_fire
        logger.debug("Timer armed for %s", next_fire.isoformat())

    def _guarded_cycle(self, trigger: str) -> RunReport:
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Skipping %s run: a cycle is already in flight", trigger)
            now = self.clock.now()
            return RunReport(started_at=now, completed_at=now, skipped=True, trigger=trigger)

        try:
            with self._state_lock:
                self._firing = True
            logger.info("Starting %s dispatch cycle", trigger)
            report = self._run_cycle(trigger)
            logger.info("Cycle finished:\n%s", report.summary())
            return report
        finally:
            with self._state_lock:
                self._firing = False
            self._run_lock.release()

    def _run_cycle(self, trigger: str) -> RunReport:
        started = self.clock.now()
        try:
            return self.coordinator.run_once(self.scanner.scan(), trigger=trigger)
        except Exception as exc:
            logger.exception("Dispatch cycle crashed")
            return RunReport(
                started_at=started,
                completed_at=self.clock.now(),
                trigger=trigger,
                error=f"{exc.__class__.__name__}: {exc}",
            )
