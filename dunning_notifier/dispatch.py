"""
Dunning Notifier -- Dispatch Coordinator

Turns scan candidates into deliveries and committed markers.

For each candidate and each channel independently:
  1. skip if the channel has no destination or its marker is already set
  2. resolve and render the template
  3. call the channel's adapter; a failure (returned or raised) is recorded
     and processing moves on
  4. on success, compare-and-set the marker; ALREADY_SET means a concurrent
     run won the race and is not counted again
  5. record the success

The marker is written only after the adapter confirmed delivery, so a failed
attempt is retried by the next scheduled cycle.  Business status of the
obligation is never changed here.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from .clock import CalendarClock
from .delivery import ChatDeliveryAdapter, DeliveryResult, EmailDeliveryAdapter
from .eligibility import ScanCandidate
from .exceptions import DeliveryError, StoreError
from .marker_store import MarkerStore
from .models import (
    Channel,
    DispatchFailure,
    DispatchSuccess,
    MarkResult,
    ObligationDetail,
    RunReport,
)
from .templates import RenderedMessage, TemplateResolver, build_variables, html_to_plaintext

logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """Delivers one cycle's candidates across the configured channels.

    Args:
        markers: Marker store (compare-and-set).
        resolver: Template resolver.
        chat_adapter: WhatsApp adapter, or None when the channel is disabled.
        email_adapter: E-mail adapter, or None when the channel is disabled.
        clock: Used for report timestamps.
        max_workers: >1 processes candidates in parallel threads.
    """

    def __init__(
        self,
        markers: MarkerStore,
        resolver: TemplateResolver,
        chat_adapter: Optional[ChatDeliveryAdapter] = None,
        email_adapter: Optional[EmailDeliveryAdapter] = None,
        clock: Optional[CalendarClock] = None,
        max_workers: int = 1,
    ):
        self.markers = markers
        self.resolver = resolver
        self.chat_adapter = chat_adapter
        self.email_adapter = email_adapter
        self.clock = clock or CalendarClock()
        self.max_workers = max(1, int(max_workers))

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def run_once(self, candidates: Iterable[ScanCandidate], trigger: str = "manual") -> RunReport:
        """Process every candidate and return the cycle's report.

        Never raises for a single obligation's problem; those end up in
        ``report.failures``.
        """
        report = RunReport(started_at=self.clock.now(), trigger=trigger)
        lock = threading.Lock()
        items = list(candidates)
        report.total_scanned = len(items)

        if self.max_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = [executor.submit(self._process, c, report, lock) for c in items]
                for future in futures:
                    future.result()
        else:
            for candidate in items:
                self._process(candidate, report, lock)

        report.completed_at = self.clock.now()
        logger.info(
            "Dispatch cycle (%s) finished: %d candidates, %d WhatsApp, %d e-mail, %d errors",
            trigger, report.total_scanned, report.whatsapp_sent, report.emails_sent,
            len(report.failures),
        )
        return report

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _process(self, candidate: ScanCandidate, report: RunReport, lock: threading.Lock) -> None:
        obligation = candidate.obligation
        detail = ObligationDetail(
            obligation_id=obligation.id,
            party_label=obligation.client_name,
            destination_label=obligation.destination_label,
            milestone=candidate.due_milestone,
        )

        for channel in Channel:
            sent = self._dispatch_channel(candidate, channel, report, lock)
            if channel is Channel.WHATSAPP:
                detail.whatsapp_sent = sent
            else:
                detail.email_sent = sent

        with lock:
            report.details.append(detail)

    def _dispatch_channel(
        self,
        candidate: ScanCandidate,
        channel: Channel,
        report: RunReport,
        lock: threading.Lock,
    ) -> bool:
        """Attempt one (obligation, channel).  True when the message went out."""
        obligation = candidate.obligation
        milestone = candidate.due_milestone
        destination = obligation.destination(channel)
        adapter = self.chat_adapter if channel is Channel.WHATSAPP else self.email_adapter

        if destination is None or adapter is None:
            return False

        def fail(error: str) -> bool:
            logger.error("Obligation %s (%s, milestone %d): %s",
                         obligation.id, channel.value, milestone, error)
            with lock:
                report.record_failure(DispatchFailure(obligation.id, channel, error))
            return False

        try:
            if self.markers.is_notified(obligation.id, channel, milestone):
                return False
        except StoreError as exc:
            return fail(str(exc))
        except Exception as exc:
            return fail(f"marker read failed: {exc.__class__.__name__}: {exc}")

        try:
            template = self.resolver.resolve(channel, milestone, obligation.party_type)
            message = self.resolver.render(
                template, build_variables(obligation, candidate.elapsed_days)
            )
            result = self._deliver(channel, adapter, destination, obligation.recipient_label, message)
        except DeliveryError as exc:
            result = DeliveryResult.failed(str(exc))
        except Exception as exc:
            result = DeliveryResult.failed(f"{exc.__class__.__name__}: {exc}")

        if not result.success:
            return fail(result.error or "delivery failed")

        try:
            mark = self.markers.mark_notified(obligation.id, channel, milestone)
        except StoreError as exc:
            return fail(f"delivered but marker not committed: {exc}")

        if mark is MarkResult.ALREADY_SET:
            logger.info("Obligation %s (%s, milestone %d) already marked by another run",
                        obligation.id, channel.value, milestone)
            return True
        if mark is MarkResult.NOT_FOUND:
            logger.warning("Obligation %s disappeared before its %s marker was set",
                           obligation.id, channel.value)

        with lock:
            report.record_success(DispatchSuccess(
                obligation_id=obligation.id,
                party_label=obligation.client_name,
                destination_label=obligation.destination_label,
                milestone=milestone,
                channel=channel,
            ))
        return True

    def _deliver(
        self,
        channel: Channel,
        adapter,
        destination: str,
        display_name: str,
        message: RenderedMessage,
    ) -> DeliveryResult:
        if channel is Channel.WHATSAPP:
            return adapter.send(destination, message.body)
        return adapter.send(
            destination,
            display_name,
            message.subject or "",
            message.body,
            html_to_plaintext(message.body),
        )
