"""Shared fixtures: frozen clock, temp SQLite store, fake adapters, stub timer."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from apscheduler.jobstores.base import JobLookupError

from dunning_notifier.clock import CalendarClock
from dunning_notifier.delivery import DeliveryResult
from dunning_notifier.marker_store import MarkerStore
from dunning_notifier.models import Obligation
from dunning_notifier.store import SqliteDatabase, SqliteObligationStore

SAO_PAULO = ZoneInfo("America/Sao_Paulo")

# Wednesday, noon in Sao Paulo
FIXED_NOW = datetime(2026, 10, 14, 12, 0, tzinfo=SAO_PAULO)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FrozenNow:
    """Callable "now" that tests can move forward."""

    def __init__(self, value: datetime = FIXED_NOW):
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def advance(self, **kwargs) -> None:
        self.value = self.value + timedelta(**kwargs)


@pytest.fixture
def frozen_now() -> FrozenNow:
    return FrozenNow()


@pytest.fixture
def clock(frozen_now) -> CalendarClock:
    return CalendarClock("America/Sao_Paulo", now=frozen_now)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path) -> SqliteDatabase:
    return SqliteDatabase(tmp_path / "dunning_test.db")


@pytest.fixture
def store(db) -> SqliteObligationStore:
    return SqliteObligationStore(db)


@pytest.fixture
def markers(db) -> MarkerStore:
    return MarkerStore(db)


@pytest.fixture
def make_obligation():
    """Factory for obligations opened ``days_ago`` days before FIXED_NOW."""

    def _make(obligation_id: str = "COB-1", days_ago: int = 7, **overrides) -> Obligation:
        fields = dict(
            id=obligation_id,
            client_name="Loja Centro LTDA",
            cnpj="12.345.678/0001-90",
            created_at=(FIXED_NOW - timedelta(days=days_ago)).isoformat(),
            original_amount=1234.56,
            kind="Royalties",
            phone="(11) 98765-4321",
            email="financeiro@lojacentro.com.br",
            recipient_name="Maria Souza",
            unit_name="Unidade Centro",
        )
        fields.update(overrides)
        return Obligation(**fields)

    return _make


# ---------------------------------------------------------------------------
# Delivery fakes
# ---------------------------------------------------------------------------

class FakeChatAdapter:
    """Records sends; fails or raises for configured destinations."""

    def __init__(self, fail_for=(), raise_for=()):
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.sent: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def send(self, destination: str, text: str) -> DeliveryResult:
        if destination in self.raise_for:
            raise ConnectionError("gateway unreachable")
        if destination in self.fail_for:
            return DeliveryResult.failed("HTTP 500: boom")
        with self._lock:
            self.sent.append((destination, text))
        return DeliveryResult.ok("msg-1")


class FakeEmailAdapter:
    """Records sends; fails or raises for configured destinations."""

    def __init__(self, fail_for=(), raise_for=()):
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.sent: list[dict] = []
        self._lock = threading.Lock()

    def send(self, destination, display_name, subject, html_body, text_body) -> DeliveryResult:
        if destination in self.raise_for:
            raise TimeoutError("smtp timed out")
        if destination in self.fail_for:
            return DeliveryResult.failed("Recipient refused")
        with self._lock:
            self.sent.append({
                "destination": destination,
                "display_name": display_name,
                "subject": subject,
                "html_body": html_body,
                "text_body": text_body,
            })
        return DeliveryResult.ok()


@pytest.fixture
def chat_adapter() -> FakeChatAdapter:
    return FakeChatAdapter()


@pytest.fixture
def email_adapter() -> FakeEmailAdapter:
    return FakeEmailAdapter()


# ---------------------------------------------------------------------------
# Scheduler backend stub
# ---------------------------------------------------------------------------

class StubSchedulerBackend:
    """Stands in for APScheduler's BackgroundScheduler; nothing fires on its own."""

    def __init__(self):
        self.running = False
        self.jobs: dict[str, dict] = {}
        self.add_calls = 0

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False

    def add_job(self, func, trigger=None, id=None, replace_existing=False, **kwargs):
        if id in self.jobs and not replace_existing:
            raise ValueError(f"job {id} exists")
        self.add_calls += 1
        self.jobs[id] = {"func": func, "trigger": trigger, **kwargs}

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]

    def run_date(self, job_id):
        return self.jobs[job_id]["run_date"]


@pytest.fixture
def backend() -> StubSchedulerBackend:
    return StubSchedulerBackend()
