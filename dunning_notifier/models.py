"""Data models for the dunning notifier.

Plain dataclasses and enums describing obligations under collection, the
per-channel milestone markers persisted with them, and the ephemeral run
report produced by each dispatch cycle.

The obligation shape follows the ``cobrancas_franqueados`` record: a charge
against a franchise unit identified either by CNPJ (organization) or CPF
(individual), with optional phone and billing e-mail contacts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# Milestone thresholds (days since the obligation was opened).
DEFAULT_MILESTONES: tuple[int, ...] = (3, 7, 15, 30)

# Sentinel for "no milestone fired yet".
NO_MILESTONE = -1


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Channel(str, Enum):
    """Independent delivery transports."""

    WHATSAPP = "whatsapp"
    EMAIL = "email"


class PartyType(str, Enum):
    """Debtor kind; drives template wording."""

    INDIVIDUAL = "individual"       # identified by CPF
    ORGANIZATION = "organization"   # identified by CNPJ

    @classmethod
    def from_tax_ids(cls, cpf: str | None, cnpj: str | None) -> PartyType:
        """CPF-only records are individuals; anything with a CNPJ is an organization."""
        if cpf and not cnpj:
            return cls.INDIVIDUAL
        return cls.ORGANIZATION


class ObligationStatus(str, Enum):
    """Status values of the obligation record.  Only OPEN is scanned."""

    OPEN = "em_aberto"
    NEGOTIATING = "negociando"
    AGREEMENT = "em_acordo"
    SETTLED = "quitado"
    LEGAL = "juridico"
    OTHER = "outro"

    @classmethod
    def parse(cls, value: str | None) -> ObligationStatus:
        """Map a raw status string onto the enum; unknown values become OTHER."""
        if not value:
            return cls.OTHER
        for status in cls:
            if status.value == value:
                return status
        return cls.OTHER


class MarkResult(str, Enum):
    """Outcome of a compare-and-set on a milestone marker."""

    COMMITTED = "committed"
    ALREADY_SET = "already_set"
    NOT_FOUND = "not_found"


# ---------------------------------------------------------------------------
# Milestone markers
# ---------------------------------------------------------------------------

def empty_flags(milestones: tuple[int, ...] | list[int] = DEFAULT_MILESTONES) -> dict[int, bool]:
    """A fresh {milestone: False} map."""
    return {m: False for m in milestones}


def flags_to_json(flags: dict[int, bool]) -> str:
    """Serialize a flag map with string keys, e.g. '{"3": true, "7": false}'."""
    return json.dumps({str(k): bool(v) for k, v in sorted(flags.items())})


def flags_from_json(raw: Any, milestones: tuple[int, ...] | list[int] = DEFAULT_MILESTONES) -> dict[int, bool]:
    """Parse a persisted flag blob.  Missing or corrupt blobs read as all-False."""
    flags = empty_flags(milestones)
    if not raw:
        return flags
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except (json.JSONDecodeError, TypeError):
        return flags
    if not isinstance(data, dict):
        return flags
    for key, value in data.items():
        try:
            flags[int(key)] = bool(value)
        except (TypeError, ValueError):
            continue
    return flags


@dataclass
class MilestoneState:
    """Per-channel "already notified" flags plus the last milestone fired.

    Flags only move from False to True; the single way back is the audited
    marker reset.
    """

    whatsapp: dict[int, bool] = field(default_factory=empty_flags)
    email: dict[int, bool] = field(default_factory=empty_flags)
    last_milestone_fired: Optional[int] = None

    def flags(self, channel: Channel) -> dict[int, bool]:
        """The flag map for ``channel``."""
        return self.whatsapp if channel is Channel.WHATSAPP else self.email

    def is_notified(self, channel: Channel, milestone: int) -> bool:
        return bool(self.flags(channel).get(milestone, False))


# ---------------------------------------------------------------------------
# Obligation
# ---------------------------------------------------------------------------

@dataclass
class Obligation:
    """A financial charge under collection.

    ``created_at`` is the clock origin for milestone computation.  It is kept
    as received from the store (datetime or string) and parsed by the
    CalendarClock, so a malformed value only fails the scan of this record.
    """

    # --- identifiers ---
    id: str
    client_name: str                        # cliente
    cpf: str = ""
    cnpj: str = ""

    # --- clock origin ---
    created_at: datetime | str = ""

    # --- financials ---
    original_amount: float = 0.0
    updated_amount: float | None = None
    kind: str = ""                          # tipo_cobranca, e.g. "Royalties"

    # --- contacts ---
    phone: str | None = None
    email: str | None = None                # billing e-mail, falls back to principal's

    # --- enrichment ---
    recipient_name: str = ""                # principal franchisee full name
    unit_name: str = ""                     # franchise unit name

    # --- lifecycle ---
    status: ObligationStatus = ObligationStatus.OPEN
    milestones: MilestoneState = field(default_factory=MilestoneState)

    @property
    def party_type(self) -> PartyType:
        return PartyType.from_tax_ids(self.cpf, self.cnpj)

    @property
    def is_open(self) -> bool:
        return self.status is ObligationStatus.OPEN

    @property
    def recipient_label(self) -> str:
        """Greeting name: principal's name, else first word of the client, else 'Franqueado'."""
        if self.recipient_name:
            return self.recipient_name
        words = self.client_name.split()
        if words:
            return words[0]
        return "Franqueado"

    @property
    def destination_label(self) -> str:
        """Unit/account label used in message bodies."""
        return self.unit_name or self.client_name

    @property
    def kind_label(self) -> str:
        return self.kind or "Cobrança"

    def destination(self, channel: Channel) -> str | None:
        """Contact address for ``channel``, or None when absent/blank."""
        value = self.phone if channel is Channel.WHATSAPP else self.email
        if value is None or not str(value).strip():
            return None
        return str(value).strip()

    def has_destination(self, channel: Channel) -> bool:
        return self.destination(channel) is not None


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DispatchFailure:
    """One failed delivery attempt."""

    obligation_id: str
    channel: Channel
    error: str


@dataclass(frozen=True)
class DispatchSuccess:
    """One confirmed delivery."""

    obligation_id: str
    party_label: str
    destination_label: str
    milestone: int
    channel: Channel


@dataclass
class ObligationDetail:
    """Per-obligation outcome row (one per candidate processed)."""

    obligation_id: str
    party_label: str
    destination_label: str
    milestone: int
    whatsapp_sent: bool = False
    email_sent: bool = False


@dataclass
class RunReport:
    """Outcome of one scan + dispatch cycle.

    Owned by the run that produced it and handed back to the caller; it is
    logged but never persisted.
    """

    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_scanned: int = 0
    sent: dict[Channel, int] = field(default_factory=lambda: {c: 0 for c in Channel})
    failures: list[DispatchFailure] = field(default_factory=list)
    successes: list[DispatchSuccess] = field(default_factory=list)
    details: list[ObligationDetail] = field(default_factory=list)
    skipped: bool = False                   # True when the single-flight guard refused the run
    trigger: str = "manual"
    error: Optional[str] = None             # set when the cycle itself crashed

    @property
    def whatsapp_sent(self) -> int:
        return self.sent.get(Channel.WHATSAPP, 0)

    @property
    def emails_sent(self) -> int:
        return self.sent.get(Channel.EMAIL, 0)

    @property
    def total_sent(self) -> int:
        return sum(self.sent.values())

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def record_success(self, success: DispatchSuccess) -> None:
        self.sent[success.channel] = self.sent.get(success.channel, 0) + 1
        self.successes.append(success)

    def record_failure(self, failure: DispatchFailure) -> None:
        self.failures.append(failure)

    def summary(self) -> str:
        """Human-readable summary for logs and the CLI."""
        if self.skipped:
            return "Run skipped: another cycle is already in flight"
        if self.error:
            return f"Run aborted: {self.error}"
        lines = [
            f"Candidates processed: {self.total_scanned}",
            f"  WhatsApp sent: {self.whatsapp_sent}",
            f"  E-mails sent:  {self.emails_sent}",
            f"  Errors:        {len(self.failures)}",
        ]
        for i, failure in enumerate(self.failures, start=1):
            lines.append(
                f"    {i}. Obligation {failure.obligation_id} "
                f"({failure.channel.value}): {failure.error}"
            )
        for i, detail in enumerate(self.details, start=1):
            status = []
            if detail.whatsapp_sent:
                status.append("WhatsApp")
            if detail.email_sent:
                status.append("Email")
            lines.append(
                f"    {i}. {detail.party_label} ({detail.destination_label}) - "
                f"milestone {detail.milestone} days - {', '.join(status) or 'nothing sent'}"
            )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON output."""
        return {
            "trigger": self.trigger,
            "skipped": self.skipped,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_scanned": self.total_scanned,
            "sent": {c.value: n for c, n in self.sent.items()},
            "failures": [
                {"obligation_id": f.obligation_id, "channel": f.channel.value, "error": f.error}
                for f in self.failures
            ],
            "successes": [
                {
                    "obligation_id": s.obligation_id,
                    "party_label": s.party_label,
                    "destination_label": s.destination_label,
                    "milestone": s.milestone,
                    "channel": s.channel.value,
                }
                for s in self.successes
            ],
        }
