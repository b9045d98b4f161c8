"""Dunning Notifier - Milestone-based collection notifications.

Scans open obligations, picks the notification milestone each one has
crossed (3/7/15/30 days by default) and delivers it over WhatsApp and
e-mail, recording an at-most-once marker per (obligation, channel,
milestone) in SQLite.  A recurring single-flight scheduler drives the
cycle; NotificationAutomation is the entry point for callers.
"""

from .automation import NotificationAutomation
from .clock import CalendarClock
from .config import Frequency, NotifierConfig, ScheduleConfig, get_config
from .exceptions import (
    DeliveryError,
    InvalidScheduleConfig,
    InvalidTimestamp,
    NotifierError,
    StoreError,
)
from .models import (
    Channel,
    MarkResult,
    MilestoneState,
    Obligation,
    ObligationStatus,
    PartyType,
    RunReport,
)

__all__ = [
    "CalendarClock",
    "Channel",
    "DeliveryError",
    "Frequency",
    "InvalidScheduleConfig",
    "InvalidTimestamp",
    "MarkResult",
    "MilestoneState",
    "NotificationAutomation",
    "NotifierConfig",
    "NotifierError",
    "Obligation",
    "ObligationStatus",
    "PartyType",
    "RunReport",
    "ScheduleConfig",
    "StoreError",
    "get_config",
]
