"""
Dunning Notifier -- Automation Facade

The status surface callers (CLI, a web panel, support scripts) talk to.
Wires clock, stores, template resolver, adapters, scanner, coordinator and
scheduler into one object and exposes:

    run_now()                       one guarded cycle, returns the RunReport
    start() / stop()                arm / disarm the recurring timer
    reconfigure(schedule)           replace the schedule (validated first)
    get_next_fire_info()            next fire time, time remaining, active flag
    reset_obligation_markers(id)    audited marker reset (support/testing)

Usage:
    from dunning_notifier.automation import NotificationAutomation
    from dunning_notifier.config import get_config

    automation = NotificationAutomation.from_config(get_config())
    report = automation.run_now()
    print(report.summary())
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .clock import CalendarClock
from .config import NotifierConfig, ScheduleConfig
from .delivery import ChatAdapter, ChatDeliveryAdapter, EmailAdapter, EmailDeliveryAdapter
from .dispatch import DispatchCoordinator
from .eligibility import EligibilityScanner
from .marker_store import MarkerStore
from .models import DEFAULT_MILESTONES, RunReport
from .scheduler import NextFireInfo, RecurrenceScheduler
from .store import ObligationSource, SqliteDatabase, SqliteObligationStore
from .templates import TemplateResolver, TemplateStore, YamlTemplateStore

logger = logging.getLogger(__name__)


class NotificationAutomation:
    """Facade over the scan / dispatch / schedule pipeline."""

    def __init__(
        self,
        source: ObligationSource,
        markers: MarkerStore,
        clock: CalendarClock,
        schedule: ScheduleConfig,
        template_store: Optional[TemplateStore] = None,
        chat_adapter: Optional[ChatDeliveryAdapter] = None,
        email_adapter: Optional[EmailDeliveryAdapter] = None,
        milestones: tuple[int, ...] = DEFAULT_MILESTONES,
        max_workers: int = 1,
        scheduler_backend: Any = None,
    ):
        self.clock = clock
        self.source = source
        self.markers = markers
        self.chat_adapter = chat_adapter
        self.email_adapter = email_adapter
        self.resolver = TemplateResolver(template_store)
        self.scanner = EligibilityScanner(source, clock, milestones)
        self.coordinator = DispatchCoordinator(
            markers,
            self.resolver,
            chat_adapter=chat_adapter,
            email_adapter=email_adapter,
            clock=clock,
            max_workers=max_workers,
        )
        self.scheduler = RecurrenceScheduler(
            schedule, self.scanner, self.coordinator, clock, backend=scheduler_backend
        )

    @classmethod
    def from_config(cls, cfg: NotifierConfig, scheduler_backend: Any = None) -> NotificationAutomation:
        """Build the production graph: SQLite, YAML templates, httpx and SMTP adapters."""
        clock = CalendarClock(cfg.timezone)
        db = SqliteDatabase(cfg.storage.resolved_path)

        chat_adapter = ChatAdapter(cfg.chat) if cfg.chat.enabled else None
        email_adapter = EmailAdapter(cfg.smtp, cfg.sender) if cfg.smtp.enabled else None
        if chat_adapter is None:
            logger.info("WhatsApp channel disabled by configuration")
        if email_adapter is None:
            logger.info("E-mail channel disabled by configuration")

        return cls(
            source=SqliteObligationStore(db, cfg.milestones),
            markers=MarkerStore(db, cfg.milestones),
            clock=clock,
            schedule=cfg.schedule,
            template_store=YamlTemplateStore(cfg.templates.resolved_path),
            chat_adapter=chat_adapter,
            email_adapter=email_adapter,
            milestones=cfg.milestones,
            max_workers=cfg.dispatch.max_workers,
            scheduler_backend=scheduler_backend,
        )

    # -------------------------------------------------------------------
    # Manual trigger / status surface
    # -------------------------------------------------------------------

    def run_now(self) -> RunReport:
        return self.scheduler.run_now()

    def start(self) -> None:
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()

    def shutdown(self) -> None:
        """Stop the timer and release the WhatsApp gateway's HTTP client."""
        self.scheduler.shutdown()
        close = getattr(self.chat_adapter, "close", None)
        if callable(close):
            close()

    def reconfigure(self, schedule: ScheduleConfig) -> None:
        self.scheduler.reconfigure(schedule)

    def get_next_fire_info(self) -> NextFireInfo:
        return self.scheduler.get_next_fire_info()

    def reset_obligation_markers(self, obligation_id: str, actor: str = "system") -> bool:
        """Clear every marker of one obligation so the next scan re-evaluates it."""
        return self.markers.reset(obligation_id, actor=actor)
