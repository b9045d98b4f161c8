"""Tests for dunning_notifier.models -- enums, marker blobs, Obligation, RunReport.

Covers:
- PartyType derivation from tax ids
- ObligationStatus parsing of raw status strings
- Flag blob serialization and tolerance of corrupt blobs
- Obligation labels and destination lookup
- RunReport counters, summary and JSON export
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from dunning_notifier.models import (
    Channel,
    DispatchFailure,
    DispatchSuccess,
    MilestoneState,
    Obligation,
    ObligationDetail,
    ObligationStatus,
    PartyType,
    RunReport,
    empty_flags,
    flags_from_json,
    flags_to_json,
)


# ============================================================================
# Enums
# ============================================================================

class TestPartyType:

    def test_cpf_only_is_individual(self):
        assert PartyType.from_tax_ids("123.456.789-00", "") is PartyType.INDIVIDUAL

    def test_cnpj_is_organization(self):
        assert PartyType.from_tax_ids("", "12.345.678/0001-90") is PartyType.ORGANIZATION

    def test_neither_defaults_to_organization(self):
        assert PartyType.from_tax_ids(None, None) is PartyType.ORGANIZATION


class TestObligationStatus:

    @pytest.mark.parametrize("raw,expected", [
        ("em_aberto", ObligationStatus.OPEN),
        ("quitado", ObligationStatus.SETTLED),
        ("negociando", ObligationStatus.NEGOTIATING),
        ("something_else", ObligationStatus.OTHER),
        ("", ObligationStatus.OTHER),
        (None, ObligationStatus.OTHER),
    ])
    def test_parse(self, raw, expected):
        assert ObligationStatus.parse(raw) is expected


# ============================================================================
# Marker blobs
# ============================================================================

class TestFlagBlobs:

    def test_empty_flags(self):
        assert empty_flags() == {3: False, 7: False, 15: False, 30: False}

    def test_to_json_uses_string_keys(self):
        assert json.loads(flags_to_json({7: True, 3: False})) == {"3": False, "7": True}

    def test_from_json_reads_string_keys(self):
        flags = flags_from_json('{"3": true, "7": false, "15": false, "30": false}')
        assert flags == {3: True, 7: False, 15: False, 30: False}

    def test_from_json_fills_missing_milestones(self):
        assert flags_from_json('{"7": true}') == {3: False, 7: True, 15: False, 30: False}

    @pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]", '{"abc": true}'])
    def test_corrupt_blob_reads_as_unset(self, raw):
        assert not any(flags_from_json(raw).values())

    def test_accepts_already_parsed_dict(self):
        assert flags_from_json({"30": True})[30] is True


class TestMilestoneState:

    def test_defaults(self):
        state = MilestoneState()
        assert state.last_milestone_fired is None
        assert not state.is_notified(Channel.EMAIL, 3)

    def test_channels_are_independent(self):
        state = MilestoneState()
        state.whatsapp[7] = True
        assert state.is_notified(Channel.WHATSAPP, 7)
        assert not state.is_notified(Channel.EMAIL, 7)


# ============================================================================
# Obligation
# ============================================================================

class TestObligation:

    def test_recipient_label_prefers_principal_name(self, make_obligation):
        assert make_obligation().recipient_label == "Maria Souza"

    def test_recipient_label_falls_back_to_first_word(self, make_obligation):
        assert make_obligation(recipient_name="").recipient_label == "Loja"

    def test_recipient_label_last_resort(self, make_obligation):
        assert make_obligation(recipient_name="", client_name="").recipient_label == "Franqueado"

    def test_destination_label_falls_back_to_client(self, make_obligation):
        assert make_obligation(unit_name="").destination_label == "Loja Centro LTDA"

    def test_kind_label_default(self, make_obligation):
        assert make_obligation(kind="").kind_label == "Cobrança"

    def test_party_type(self, make_obligation):
        assert make_obligation().party_type is PartyType.ORGANIZATION
        assert make_obligation(cnpj="", cpf="123.456.789-00").party_type is PartyType.INDIVIDUAL

    def test_blank_contacts_have_no_destination(self, make_obligation):
        obligation = make_obligation(phone="   ", email=None)
        assert obligation.destination(Channel.WHATSAPP) is None
        assert not obligation.has_destination(Channel.EMAIL)

    def test_destination_is_stripped(self, make_obligation):
        obligation = make_obligation(email="  a@b.com ")
        assert obligation.destination(Channel.EMAIL) == "a@b.com"

    def test_only_open_is_open(self, make_obligation):
        assert make_obligation().is_open
        assert not make_obligation(status=ObligationStatus.SETTLED).is_open


# ============================================================================
# RunReport
# ============================================================================

class TestRunReport:

    def _success(self, channel, obligation_id="COB-1"):
        return DispatchSuccess(obligation_id, "Loja", "Unidade", 7, channel)

    def test_counters(self):
        report = RunReport()
        report.record_success(self._success(Channel.WHATSAPP))
        report.record_success(self._success(Channel.EMAIL))
        report.record_success(self._success(Channel.EMAIL, "COB-2"))
        report.record_failure(DispatchFailure("COB-3", Channel.EMAIL, "refused"))

        assert report.whatsapp_sent == 1
        assert report.emails_sent == 2
        assert report.total_sent == 3
        assert len(report.failures) == 1

    def test_duration(self):
        start = datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc)
        report = RunReport(started_at=start, completed_at=start + timedelta(seconds=42))
        assert report.duration_seconds == 42.0

    def test_summary_lists_failures_and_details(self):
        report = RunReport(total_scanned=1)
        report.record_failure(DispatchFailure("COB-9", Channel.WHATSAPP, "HTTP 500"))
        report.details.append(ObligationDetail("COB-9", "Loja", "Unidade", 15, email_sent=True))
        text = report.summary()
        assert "Candidates processed: 1" in text
        assert "COB-9 (whatsapp): HTTP 500" in text
        assert "milestone 15 days - Email" in text

    def test_skipped_summary(self):
        assert "skipped" in RunReport(skipped=True).summary()

    def test_error_summary(self):
        assert "aborted" in RunReport(error="StoreError: locked").summary()

    def test_to_dict_is_json_serializable(self):
        report = RunReport(started_at=datetime(2026, 10, 14, tzinfo=timezone.utc), trigger="scheduled")
        report.record_success(self._success(Channel.WHATSAPP))
        data = json.loads(json.dumps(report.to_dict()))
        assert data["sent"] == {"whatsapp": 1, "email": 0}
        assert data["successes"][0]["channel"] == "whatsapp"
        assert data["trigger"] == "scheduled"
