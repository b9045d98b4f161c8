"""
Dunning Notifier -- Eligibility Scanner

Decides which open obligations are due for a milestone notification.

Milestone selection per obligation:
    elapsed     = whole calendar days since created_at (fixed timezone)
    last_fired  = last_milestone_fired, or -1 when nothing fired yet
    candidates  = { m in milestones : m <= elapsed and m > last_fired }
    due         = max(candidates), or not due when empty

Only the highest crossed milestone is used.  If sweeps were skipped long
enough for an obligation to cross several milestones, the lower ones are
treated as missed rather than sent as a burst of overdue reminders.

A due obligation is then filtered per channel: the channel must have a
destination contact and its own marker for the due milestone must be unset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .clock import CalendarClock
from .exceptions import InvalidTimestamp
from .models import (
    DEFAULT_MILESTONES,
    NO_MILESTONE,
    Channel,
    Obligation,
)
from .store import ObligationSource

logger = logging.getLogger(__name__)


def select_due_milestone(
    elapsed_days: int,
    last_fired: Optional[int],
    milestones: Iterable[int] = DEFAULT_MILESTONES,
) -> Optional[int]:
    """Highest milestone crossed since the last one fired, or None."""
    floor = NO_MILESTONE if last_fired is None else last_fired
    candidates = [m for m in milestones if floor < m <= elapsed_days]
    if not candidates:
        return None
    return max(candidates)


def eligible_channels(obligation: Obligation, milestone: int) -> tuple[Channel, ...]:
    """Channels with a destination whose marker for ``milestone`` is unset."""
    return tuple(
        channel
        for channel in Channel
        if obligation.has_destination(channel)
        and not obligation.milestones.is_notified(channel, milestone)
    )


@dataclass(frozen=True)
class ScanCandidate:
    """An obligation due for ``due_milestone`` on ``channels``."""

    obligation: Obligation
    due_milestone: int
    elapsed_days: int
    channels: tuple[Channel, ...]


@dataclass
class ScanSummary:
    """Counters for the last scan, for logging."""

    scanned: int = 0
    not_open: int = 0
    invalid: int = 0
    not_due: int = 0
    no_channel: int = 0
    due: int = 0

    def __str__(self) -> str:
        return (
            f"scanned={self.scanned} due={self.due} not_due={self.not_due} "
            f"no_channel={self.no_channel} not_open={self.not_open} invalid={self.invalid}"
        )


class EligibilityScanner:
    """Produces a fresh candidate sequence from the obligation source.

    Args:
        source: Anything with ``fetch_open()``.
        clock: Fixed-timezone clock used for elapsed days.
        milestones: Ordered milestone thresholds in days.
    """

    def __init__(
        self,
        source: ObligationSource,
        clock: CalendarClock,
        milestones: Iterable[int] = DEFAULT_MILESTONES,
    ):
        self.source = source
        self.clock = clock
        self.milestones = tuple(sorted(milestones))
        self.last_summary = ScanSummary()

    def scan(self) -> Iterator[ScanCandidate]:
        """Yield due candidates.  Each call re-queries the source."""
        summary = ScanSummary()
        self.last_summary = summary

        for obligation in self.source.fetch_open():
            summary.scanned += 1

            if not obligation.is_open:
                summary.not_open += 1
                continue

            try:
                elapsed = self.clock.elapsed_days(obligation.created_at)
            except InvalidTimestamp as exc:
                summary.invalid += 1
                logger.warning("Skipping obligation %s: %s", obligation.id, exc)
                continue

            due = select_due_milestone(
                elapsed, obligation.milestones.last_milestone_fired, self.milestones
            )
            if due is None:
                summary.not_due += 1
                continue

            channels = eligible_channels(obligation, due)
            if not channels:
                summary.no_channel += 1
                logger.debug("Obligation %s due for %d but no channel eligible",
                             obligation.id, due)
                continue

            summary.due += 1
            yield ScanCandidate(
                obligation=obligation,
                due_milestone=due,
                elapsed_days=elapsed,
                channels=channels,
            )

        logger.info("Scan complete: %s", summary)
