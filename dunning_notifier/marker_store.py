"""
Dunning Notifier -- Marker Store

Persisted "already notified" flags per (obligation, channel, milestone).

``mark_notified`` is the single point of truth for "a message was confirmed
delivered for this exact tuple".  It is a compare-and-set executed inside one
``BEGIN IMMEDIATE`` transaction: the row's flag blob is read, checked, and
written back together with ``last_milestone_fired`` before any other writer
can touch the row.  Concurrent completions for the same tuple therefore
resolve to exactly one COMMITTED and any number of ALREADY_SET.

Usage:
    from dunning_notifier.marker_store import MarkerStore

    markers = MarkerStore(db)
    if markers.mark_notified("cob-1", Channel.EMAIL, 7) is MarkResult.COMMITTED:
        ...
    markers.reset("cob-1", actor="support")
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from .exceptions import StoreError
from .models import (
    DEFAULT_MILESTONES,
    Channel,
    MarkResult,
    MilestoneState,
    empty_flags,
    flags_from_json,
    flags_to_json,
)
from .store import SqliteDatabase, now_iso

logger = logging.getLogger(__name__)

_MARKER_COLUMNS = {
    Channel.WHATSAPP: "whatsapp_markers",
    Channel.EMAIL: "email_markers",
}


class MarkerStore:
    """Milestone markers kept on the obligation rows of a SqliteDatabase."""

    def __init__(self, db: SqliteDatabase, milestones: tuple[int, ...] = DEFAULT_MILESTONES):
        self.db = db
        self.milestones = tuple(milestones)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_state(self, obligation_id: str) -> Optional[MilestoneState]:
        """Current markers for one obligation, or None if it does not exist.

        Raises:
            StoreError: If SQLite rejects the read.
        """
        try:
            conn = self.db.connect()
            try:
                row = conn.execute(
                    """SELECT whatsapp_markers, email_markers, last_milestone_fired
                       FROM obligations WHERE id = ?""",
                    (obligation_id,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to read markers for {obligation_id}: {exc}") from exc

        if row is None:
            return None
        return MilestoneState(
            whatsapp=flags_from_json(row["whatsapp_markers"], self.milestones),
            email=flags_from_json(row["email_markers"], self.milestones),
            last_milestone_fired=row["last_milestone_fired"],
        )

    def is_notified(self, obligation_id: str, channel: Channel, milestone: int) -> bool:
        state = self.get_state(obligation_id)
        if state is None:
            return False
        return state.is_notified(channel, milestone)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def mark_notified(self, obligation_id: str, channel: Channel, milestone: int) -> MarkResult:
        """Set the flag for (obligation, channel, milestone) if it is not set yet.

        Also raises ``last_milestone_fired`` to ``max(previous, milestone)``.
        Call only after the channel's adapter confirmed delivery.

        Returns:
            COMMITTED when this call set the flag, ALREADY_SET when another
            writer got there first, NOT_FOUND when the obligation is gone.

        Raises:
            StoreError: If SQLite rejects the transaction.
        """
        column = _MARKER_COLUMNS[channel]
        try:
            conn = self.db.connect(autocommit=True)
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to open store for {obligation_id}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                f"SELECT {column} AS markers, last_milestone_fired FROM obligations WHERE id = ?",
                (obligation_id,),
            ).fetchone()

            if row is None:
                conn.execute("ROLLBACK")
                logger.warning("Cannot mark %s/%s/%d: obligation not found",
                               obligation_id, channel.value, milestone)
                return MarkResult.NOT_FOUND

            flags = flags_from_json(row["markers"], self.milestones)
            if flags.get(milestone, False):
                conn.execute("ROLLBACK")
                logger.info("Marker %s/%s/%d already set by a concurrent run",
                            obligation_id, channel.value, milestone)
                return MarkResult.ALREADY_SET

            flags[milestone] = True
            previous = row["last_milestone_fired"]
            last_fired = milestone if previous is None else max(int(previous), milestone)

            conn.execute(
                f"""UPDATE obligations
                    SET {column} = ?, last_milestone_fired = ?, updated_at = ?
                    WHERE id = ?""",
                (flags_to_json(flags), last_fired, now_iso(), obligation_id),
            )
            self.db.log_action(
                conn, obligation_id, "marker_set",
                details={"channel": channel.value, "milestone": milestone,
                         "last_milestone_fired": last_fired},
            )
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreError(
                f"Failed to mark {obligation_id}/{channel.value}/{milestone}: {exc}"
            ) from exc
        finally:
            conn.close()

        logger.debug("Marked %s/%s/%d (last fired=%d)",
                     obligation_id, channel.value, milestone, last_fired)
        return MarkResult.COMMITTED

    def reset(self, obligation_id: str, actor: str = "system") -> bool:
        """Clear every channel/milestone flag and ``last_milestone_fired``.

        Support/testing operation only; always audited.

        Returns:
            True if the obligation existed and was reset.
        """
        cleared = flags_to_json(empty_flags(self.milestones))
        try:
            conn = self.db.connect()
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to open store for {obligation_id}: {exc}") from exc
        try:
            result = conn.execute(
                """UPDATE obligations
                   SET whatsapp_markers = ?, email_markers = ?,
                       last_milestone_fired = NULL, updated_at = ?
                   WHERE id = ?""",
                (cleared, cleared, now_iso(), obligation_id),
            )
            if result.rowcount == 0:
                conn.rollback()
                logger.warning("Reset requested for unknown obligation %s", obligation_id)
                return False
            self.db.log_action(conn, obligation_id, "markers_reset", actor=actor)
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"Failed to reset markers for {obligation_id}: {exc}") from exc
        finally:
            conn.close()

        logger.info("Markers reset for obligation %s by %s", obligation_id, actor)
        return True
