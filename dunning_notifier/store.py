"""
Dunning Notifier -- Obligation Store

SQLite-backed record store for obligations under collection.  Each row
carries the persisted milestone state as two JSON flag blobs (one per
channel) plus the ``last_milestone_fired`` scalar, so one UPDATE covers
everything a marker write touches.

Database schema:
    obligations   - One row per charge, with contact fields and marker blobs
    audit_log     - Every marker commit and reset, for support/compliance

Usage:
    from dunning_notifier.store import SqliteDatabase, SqliteObligationStore

    db = SqliteDatabase("data/dunning.db")
    store = SqliteObligationStore(db)
    store.upsert(obligation)
    for obligation in store.fetch_open():
        ...
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from .models import (
    DEFAULT_MILESTONES,
    MilestoneState,
    Obligation,
    ObligationStatus,
    flags_from_json,
    flags_to_json,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# WAL so the scheduler's reads don't block the status surface
_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS obligations (
    id                      TEXT PRIMARY KEY,
    client_name             TEXT NOT NULL DEFAULT '',
    cpf                     TEXT NOT NULL DEFAULT '',
    cnpj                    TEXT NOT NULL DEFAULT '',
    kind                    TEXT NOT NULL DEFAULT '',

    -- Financials
    original_amount         REAL NOT NULL DEFAULT 0.0,
    updated_amount          REAL,

    -- Clock origin, stored as received
    created_at              TEXT NOT NULL DEFAULT '',

    -- Contacts
    phone                   TEXT,
    billing_email           TEXT,
    contact_email           TEXT,           -- principal franchisee e-mail
    recipient_name          TEXT NOT NULL DEFAULT '',
    unit_name               TEXT NOT NULL DEFAULT '',

    status                  TEXT NOT NULL DEFAULT 'em_aberto',

    -- Milestone state
    whatsapp_markers        TEXT NOT NULL DEFAULT '{}',   -- JSON {"3": false, ...}
    email_markers           TEXT NOT NULL DEFAULT '{}',   -- JSON {"3": false, ...}
    last_milestone_fired    INTEGER,

    updated_at              TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    obligation_id   TEXT NOT NULL,
    action          TEXT NOT NULL,
    actor           TEXT NOT NULL DEFAULT 'system',
    details         TEXT NOT NULL DEFAULT '{}',
    timestamp       TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_obligations_status ON obligations(status);
CREATE INDEX IF NOT EXISTS idx_obligations_created ON obligations(created_at);
CREATE INDEX IF NOT EXISTS idx_audit_obligation ON audit_log(obligation_id);
"""


def now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Connection management
# ---------------------------------------------------------------------------

class SqliteDatabase:
    """Owns the database file, schema and connection settings.

    Thread safety: every operation opens and closes its own connection, so
    the object can be shared between the scheduler thread and delivery
    workers.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def connect(self, *, autocommit: bool = False) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas.

        ``autocommit=True`` disables the implicit transaction handling so the
        caller can issue ``BEGIN IMMEDIATE`` itself.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        if autocommit:
            conn.isolation_level = None
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self.connect()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    @staticmethod
    def log_action(
        conn: sqlite3.Connection,
        obligation_id: str,
        action: str,
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Insert an audit row using the caller's connection/transaction."""
        conn.execute(
            """INSERT INTO audit_log (obligation_id, action, actor, details, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (obligation_id, action, actor, json.dumps(details or {}), now_iso()),
        )

    def get_audit_log(self, obligation_id: str | None = None, limit: int = 200) -> list[dict[str, Any]]:
        """Most recent audit entries, optionally for a single obligation."""
        conn = self.connect()
        try:
            if obligation_id:
                rows = conn.execute(
                    """SELECT * FROM audit_log WHERE obligation_id = ?
                       ORDER BY id DESC LIMIT ?""",
                    (obligation_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def obligation_from_row(
    row: dict[str, Any],
    milestones: tuple[int, ...] = DEFAULT_MILESTONES,
) -> Obligation:
    """Validate a raw row and build an Obligation.

    The billing e-mail wins over the principal's e-mail.  ``created_at`` is
    passed through untouched; the scanner parses it.

    Raises:
        ValueError: If the row lacks an id or has a non-numeric amount.
    """
    obligation_id = _clean(row.get("id"))
    if obligation_id is None:
        raise ValueError("row has no id")

    try:
        original_amount = float(row.get("original_amount") or 0.0)
        updated_raw = row.get("updated_amount")
        updated_amount = float(updated_raw) if updated_raw is not None else None
    except (TypeError, ValueError) as exc:
        raise ValueError(f"non-numeric amount: {exc}") from exc

    last_fired = row.get("last_milestone_fired")
    try:
        last_fired = int(last_fired) if last_fired is not None else None
    except (TypeError, ValueError):
        last_fired = None

    state = MilestoneState(
        whatsapp=flags_from_json(row.get("whatsapp_markers"), milestones),
        email=flags_from_json(row.get("email_markers"), milestones),
        last_milestone_fired=last_fired,
    )

    return Obligation(
        id=obligation_id,
        client_name=str(row.get("client_name") or ""),
        cpf=str(row.get("cpf") or ""),
        cnpj=str(row.get("cnpj") or ""),
        created_at=row.get("created_at") or "",
        original_amount=original_amount,
        updated_amount=updated_amount,
        kind=str(row.get("kind") or ""),
        phone=_clean(row.get("phone")),
        email=_clean(row.get("billing_email")) or _clean(row.get("contact_email")),
        recipient_name=str(row.get("recipient_name") or ""),
        unit_name=str(row.get("unit_name") or ""),
        status=ObligationStatus.parse(row.get("status")),
        milestones=state,
    )


def _obligation_to_row(obligation: Obligation) -> dict[str, Any]:
    created = obligation.created_at
    if isinstance(created, datetime):
        created = created.isoformat()
    return {
        "id": obligation.id,
        "client_name": obligation.client_name,
        "cpf": obligation.cpf,
        "cnpj": obligation.cnpj,
        "kind": obligation.kind,
        "original_amount": obligation.original_amount,
        "updated_amount": obligation.updated_amount,
        "created_at": created,
        "phone": obligation.phone,
        "billing_email": obligation.email,
        "recipient_name": obligation.recipient_name,
        "unit_name": obligation.unit_name,
        "status": obligation.status.value,
        "whatsapp_markers": flags_to_json(obligation.milestones.whatsapp),
        "email_markers": flags_to_json(obligation.milestones.email),
        "last_milestone_fired": obligation.milestones.last_milestone_fired,
        "updated_at": now_iso(),
    }


# ---------------------------------------------------------------------------
# Obligation source
# ---------------------------------------------------------------------------

class ObligationSource(Protocol):
    """Anything that can list the obligations currently open."""

    def fetch_open(self) -> list[Obligation]:
        ...


class SqliteObligationStore:
    """Obligation records in SQLite.

    ``fetch_open`` is the scan-side query; ``upsert``/``set_status`` are the
    import and business-workflow side and never touch marker blobs of an
    existing row unless the caller passes them explicitly.
    """

    def __init__(self, db: SqliteDatabase, milestones: tuple[int, ...] = DEFAULT_MILESTONES):
        self.db = db
        self.milestones = tuple(milestones)

    def fetch_open(self) -> list[Obligation]:
        """All obligations with status open, oldest first.

        Rows that fail validation are skipped with a logged reason.
        """
        conn = self.db.connect()
        try:
            rows = conn.execute(
                "SELECT * FROM obligations WHERE status = ? ORDER BY created_at ASC",
                (ObligationStatus.OPEN.value,),
            ).fetchall()
        finally:
            conn.close()

        obligations: list[Obligation] = []
        for row in rows:
            row_dict = dict(row)
            try:
                obligations.append(obligation_from_row(row_dict, self.milestones))
            except ValueError as exc:
                logger.warning("Skipping invalid obligation row %r: %s", row_dict.get("id"), exc)
        logger.debug("Fetched %d open obligations", len(obligations))
        return obligations

    def get(self, obligation_id: str) -> Optional[Obligation]:
        conn = self.db.connect()
        try:
            row = conn.execute(
                "SELECT * FROM obligations WHERE id = ?", (obligation_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return obligation_from_row(dict(row), self.milestones)

    def upsert(self, obligation: Obligation) -> None:
        """Insert a new obligation or replace its business fields.

        Marker columns of an existing row are preserved.
        """
        row = _obligation_to_row(obligation)
        columns = list(row.keys())
        placeholders = ", ".join(["?"] * len(columns))
        col_str = ", ".join(columns)
        protected = {"id", "whatsapp_markers", "email_markers", "last_milestone_fired"}
        update_str = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in protected)

        conn = self.db.connect()
        try:
            conn.execute(
                f"INSERT INTO obligations ({col_str}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {update_str}",
                [row[c] for c in columns],
            )
            conn.commit()
        finally:
            conn.close()

    def upsert_many(self, obligations: Iterable[Obligation]) -> int:
        count = 0
        for obligation in obligations:
            self.upsert(obligation)
            count += 1
        return count

    def set_status(self, obligation_id: str, status: ObligationStatus) -> bool:
        """Change business status (payment / negotiation workflows)."""
        conn = self.db.connect()
        try:
            result = conn.execute(
                "UPDATE obligations SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, now_iso(), obligation_id),
            )
            conn.commit()
            return result.rowcount > 0
        finally:
            conn.close()

    def count(self, status: ObligationStatus | None = None) -> int:
        conn = self.db.connect()
        try:
            if status is None:
                row = conn.execute("SELECT COUNT(*) AS n FROM obligations").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM obligations WHERE status = ?", (status.value,)
                ).fetchone()
            return int(row["n"])
        finally:
            conn.close()
