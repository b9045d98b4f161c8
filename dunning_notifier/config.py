"""
Dunning Notifier -- Configuration Module

Centralizes all configuration for the milestone notification system.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from dunning_notifier.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.schedule.frequency)              # Frequency.DAILY
    print(cfg.milestones)                      # (3, 7, 15, 30)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from .clock import DEFAULT_TIMEZONE
from .exceptions import InvalidScheduleConfig
from .models import DEFAULT_MILESTONES

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # dunning_notifier/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


def _resolve(rel_path: str) -> Path:
    p = Path(rel_path)
    if not p.is_absolute():
        p = PROJECT_ROOT / p
    return p


# ===================================================================
# 1. Schedule
# ===================================================================

class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


WEEKDAY_NAMES = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)


def parse_weekday(value: Any) -> int:
    """Accept 0-6 (Monday=0) or an English weekday name / 3-letter prefix."""
    if isinstance(value, bool):
        raise InvalidScheduleConfig(f"Invalid weekday: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise InvalidScheduleConfig(f"Weekday out of range 0-6: {value}")
    if isinstance(value, str):
        key = value.strip().lower()
        for i, name in enumerate(WEEKDAY_NAMES):
            if key == name or (len(key) >= 3 and name.startswith(key)):
                return i
    raise InvalidScheduleConfig(f"Invalid weekday: {value!r}")


@dataclass
class ScheduleConfig:
    """When the sweep runs.

    weekly requires at least one weekday; monthly requires a day-of-month in
    1-31 (clamped to the month's length when the sweep is armed).
    """
    hour: int = 9
    minute: int = 0
    frequency: Frequency = Frequency.DAILY
    weekdays: frozenset[int] = field(default_factory=frozenset)   # Monday=0
    day_of_month: Optional[int] = None
    enabled: bool = True            # start the timer automatically in `serve`

    def validate(self) -> None:
        """Raise InvalidScheduleConfig if the parameters cannot be scheduled."""
        if not isinstance(self.frequency, Frequency):
            raise InvalidScheduleConfig(f"Unknown frequency: {self.frequency!r}")
        if not isinstance(self.hour, int) or not 0 <= self.hour <= 23:
            raise InvalidScheduleConfig(f"Hour must be 0-23, got {self.hour!r}")
        if not isinstance(self.minute, int) or not 0 <= self.minute <= 59:
            raise InvalidScheduleConfig(f"Minute must be 0-59, got {self.minute!r}")
        if self.frequency is Frequency.WEEKLY:
            if not self.weekdays:
                raise InvalidScheduleConfig("Weekly schedule requires at least one weekday")
            for day in self.weekdays:
                if not isinstance(day, int) or not 0 <= day <= 6:
                    raise InvalidScheduleConfig(f"Weekday out of range 0-6: {day!r}")
        if self.frequency is Frequency.MONTHLY:
            if (
                not isinstance(self.day_of_month, int)
                or isinstance(self.day_of_month, bool)
                or not 1 <= self.day_of_month <= 31
            ):
                raise InvalidScheduleConfig(
                    f"Monthly schedule requires a day of month in 1-31, got {self.day_of_month!r}"
                )

    def describe(self) -> str:
        """Short label, e.g. 'weekly on mon, fri at 09:00'."""
        at = f"{self.hour:02d}:{self.minute:02d}"
        if self.frequency is Frequency.WEEKLY:
            days = ", ".join(WEEKDAY_NAMES[d][:3] for d in sorted(self.weekdays))
            return f"weekly on {days} at {at}"
        if self.frequency is Frequency.MONTHLY:
            return f"monthly on day {self.day_of_month} at {at}"
        return f"daily at {at}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleConfig:
        """Build from a YAML mapping.  Values are validated by validate()."""
        cfg = cls()
        if "hour" in data:
            cfg.hour = data["hour"]
        if "minute" in data:
            cfg.minute = data["minute"]
        if isinstance(data.get("time"), int) and not isinstance(data["time"], bool):
            # unquoted 09:00 is a YAML 1.1 base-60 int (540)
            cfg.hour, cfg.minute = divmod(data["time"], 60)
        elif "time" in data and data["time"]:
            # "HH:MM" shorthand
            try:
                hh, mm = str(data["time"]).split(":", maxsplit=1)
                cfg.hour, cfg.minute = int(hh), int(mm)
            except ValueError as exc:
                raise InvalidScheduleConfig(f"Invalid time {data['time']!r}, expected HH:MM") from exc
        if "frequency" in data:
            try:
                cfg.frequency = Frequency(str(data["frequency"]).lower())
            except ValueError as exc:
                raise InvalidScheduleConfig(f"Unknown frequency: {data['frequency']!r}") from exc
        if data.get("weekdays"):
            cfg.weekdays = frozenset(parse_weekday(d) for d in data["weekdays"])
        if "day_of_month" in data:
            cfg.day_of_month = data["day_of_month"]
        if "enabled" in data:
            cfg.enabled = bool(data["enabled"])
        return cfg


# ===================================================================
# 2. Storage
# ===================================================================

@dataclass
class StorageConfig:
    """SQLite database holding obligations, markers and the audit log."""
    db_path: str = "data/dunning.db"

    @property
    def resolved_path(self) -> Path:
        return _resolve(self.db_path)


# ===================================================================
# 3. Templates
# ===================================================================

@dataclass
class TemplateConfig:
    """Where the editable message templates live (YAML)."""
    store_path: str = "templates.yaml"

    @property
    def resolved_path(self) -> Path:
        return _resolve(self.store_path)


# ===================================================================
# 4. Chat (WhatsApp gateway)
# ===================================================================

@dataclass
class ChatSettings:
    """Evolution-API style WhatsApp gateway."""
    enabled: bool = True
    base_url: str = ""              # set via env var EVOLUTION_API_URL
    api_key: str = ""               # set via env var EVOLUTION_API_KEY
    instance_name: str = "automacoes_3"
    country_code: str = "55"
    timeout_seconds: float = 10.0

    def __post_init__(self):
        self.base_url = self.base_url or os.environ.get("EVOLUTION_API_URL", "")
        self.api_key = self.api_key or os.environ.get("EVOLUTION_API_KEY", "")


# ===================================================================
# 5. SMTP Settings
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP relay for the e-mail channel."""
    enabled: bool = True
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD
    timeout_seconds: float = 30.0

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


@dataclass
class SenderInfo:
    """Default FROM identity for outgoing e-mails."""
    name: str = "Equipe Financeira"
    email: str = "financeiro@example.com"


# ===================================================================
# 6. Dispatch
# ===================================================================

@dataclass
class DispatchConfig:
    """Fan-out for delivery attempts within one cycle (1 = sequential)."""
    max_workers: int = 1


# ===================================================================
# 7. Output
# ===================================================================

@dataclass
class OutputConfig:
    """Log destination; empty log_file means console only."""
    log_file: str = ""
    log_level: str = "INFO"

    def resolved_log_file(self) -> Path | None:
        if not self.log_file:
            return None
        path = _resolve(self.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class NotifierConfig:
    """Top-level configuration container for the dunning notifier."""
    timezone: str = DEFAULT_TIMEZONE
    milestones: tuple[int, ...] = DEFAULT_MILESTONES
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    templates: TemplateConfig = field(default_factory=TemplateConfig)
    chat: ChatSettings = field(default_factory=ChatSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    sender: SenderInfo = field(default_factory=SenderInfo)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    output: OutputConfig = field(default_factory=OutputConfig)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: NotifierConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a NotifierConfig instance."""

    if "timezone" in data and data["timezone"]:
        cfg.timezone = str(data["timezone"])

    if "milestones" in data and data["milestones"]:
        cfg.milestones = tuple(sorted({int(m) for m in data["milestones"]}))

    if isinstance(data.get("schedule"), dict):
        cfg.schedule = ScheduleConfig.from_dict(data["schedule"])

    # --- simple sub-configs ---
    _section_map = {
        "storage": cfg.storage,
        "templates": cfg.templates,
        "chat": cfg.chat,
        "smtp": cfg.smtp,
        "sender": cfg.sender,
        "dispatch": cfg.dispatch,
        "output": cfg.output,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> NotifierConfig:
    """Build a NotifierConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated NotifierConfig instance.

    Raises:
        InvalidScheduleConfig: If the schedule section cannot be scheduled.
    """
    cfg = NotifierConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    cfg.schedule.validate()
    return cfg
