from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlmodel import select

from conduz.models.earning_record import BatchStatus, ImportBatch, NormalizedEarningRecord, Platform
from conduz.models.referral_chain import ReferralLink
from conduz.models.settings_config import GoalCriterion, GoalRule, RewardType
from conduz.models.settlement import AuditAction, DriverWeeklySettlement, SettlementAuditEntry
from conduz.services.import_service import ImportService
from conduz.services.payment_service import PaymentService
from conduz.services.platform_normalizer import RawRecord
from conduz.services.settlement_service import RunReport, SettlementService
from conduz.utils.errors import ConcurrencyConflict, DataIntegrityError, SettlementFrozen
from conduz.utils.week import WeekIdentifier

WEEK = "2024-W05"


def _import(session, platform, *rows):
    return ImportService(session).import_batch(
        platform, WEEK, [RawRecord(platform=platform, fields=row) for row in rows], imported_by="test")


@pytest.fixture
def renter_week(session, renter):
    _import(session, Platform.UBER,
            {"driver_uuid": "uber-ana", "trip_revenue": "950", "tips": "50", "trips": "40"})
    _import(session, Platform.MYPRIO,
            {"card": "700100", "total": "15"},
            {"card": "999999", "card_description": ".", "total": "45,30"})
    _import(session, Platform.VIAVERDE, {"tag_id": "VV-ANA", "value": "5"})
    return renter


def test_renter_week_end_to_end(session, renter_week):
    report = SettlementService(session).recompute_week(WEEK)

    assert report.created == [renter_week.id]
    settlement = SettlementService(session).get_settlement(WEEK, renter_week.id)
    assert settlement.gross_revenue == 100000
    assert settlement.vat_amount == 5660
    assert settlement.gross_minus_vat == 94340
    assert settlement.admin_fee == 3774
    assert settlement.fuel == 1500
    assert settlement.tolls == 500
    assert settlement.rental == 15000
    assert settlement.repasse == 73566
    assert settlement.net_payout == 73566
    assert settlement.uber_total == 100000
    assert settlement.trip_count == 40


def test_unmapped_card_is_reported_and_week_incomplete(session, renter_week):
    report = SettlementService(session).recompute_week(WEEK)

    assert report.unreconciled_amount == 4530
    assert report.unreconciled_by_platform == {"myprio": 4530}
    assert not report.complete
    # el cargo sin conductor no se descuenta a nadie
    assert SettlementService(session).get_settlement(WEEK, renter_week.id).fuel == 1500


def test_recompute_is_idempotent(session, renter_week):
    service = SettlementService(session)
    service.recompute_week(WEEK)
    first = service.get_settlement(WEEK, renter_week.id)
    first_version, first_updated = first.version, first.updated_at

    report = service.recompute_week(WEEK)

    assert report.unchanged == [renter_week.id]
    assert report.updated == []
    again = service.get_settlement(WEEK, renter_week.id)
    assert again.version == first_version
    assert again.updated_at == first_updated
    audits = session.exec(
        select(SettlementAuditEntry).where(SettlementAuditEntry.settlement_id == again.id)).all()
    assert [a.action for a in audits] == [AuditAction.COMPUTED]


def test_reimport_of_unpaid_week_replaces_records(session, renter_week):
    service = SettlementService(session)
    service.recompute_week(WEEK)

    _import(session, Platform.UBER, {"driver_uuid": "uber-ana", "trip_revenue": "500", "trips": "20"})
    report = service.recompute_week(WEEK)

    assert report.updated == [renter_week.id]
    settlement = service.get_settlement(WEEK, renter_week.id)
    assert settlement.gross_revenue == 50000
    assert settlement.version == 2
    batches = session.exec(select(ImportBatch).where(ImportBatch.platform == Platform.UBER)).all()
    assert sorted(b.status for b in batches) == [BatchStatus.ACTIVE, BatchStatus.SUPERSEDED]


def test_reimport_of_paid_week_is_rejected(session, renter_week):
    SettlementService(session).recompute_week(WEEK)
    settlement = SettlementService(session).get_settlement(WEEK, renter_week.id)
    PaymentService(session).mark_paid(settlement.id, proof_ref="TRF-001")
    records_before = sorted(str(r.id) for r in session.exec(select(NormalizedEarningRecord)).all())

    with pytest.raises(SettlementFrozen):
        _import(session, Platform.UBER, {"driver_uuid": "uber-ana", "trip_revenue": "1", "trips": "1"})

    records_after = sorted(str(r.id) for r in session.exec(select(NormalizedEarningRecord)).all())
    assert records_after == records_before
    active_uber = ImportService(session).get_active_batch(Platform.UBER, WEEK)
    assert active_uber.record_count == 2


def test_paid_settlement_survives_recompute(session, renter_week):
    service = SettlementService(session)
    service.recompute_week(WEEK)
    settlement = service.get_settlement(WEEK, renter_week.id)
    PaymentService(session).mark_paid(settlement.id, proof_ref="TRF-001")

    report = service.recompute_week(WEEK)
    assert report.frozen == [renter_week.id]

    with pytest.raises(SettlementFrozen):
        service.recompute_week(WEEK, driver_id=renter_week.id)
    assert service.get_settlement(WEEK, renter_week.id).net_payout == 73566


def test_configuration_error_does_not_abort_batch(session, renter_week, make_driver):
    broken = make_driver(full_name="Sem tipo", driver_type=None, uber_driver_id="uber-x")
    _import(session, Platform.UBER,
            {"driver_uuid": "uber-ana", "trip_revenue": "950", "tips": "50", "trips": "40"},
            {"driver_uuid": "uber-x", "trip_revenue": "100", "trips": "5"})

    report = SettlementService(session).recompute_week(WEEK)

    assert report.created == [renter_week.id]
    assert [(e.driver_id, e.error) for e in report.errors] == [(broken.id, "ConfigurationError")]
    assert not report.complete


def test_commission_and_goal_flow_into_net_payout(session, renter_week, affiliate):
    session.add(ReferralLink(recruiter_id=affiliate.id, recruit_id=renter_week.id))
    session.add(GoalRule(criterion=GoalCriterion.VIAGENS, threshold=30, reward_type=RewardType.FIXED,
                         reward_value=Decimal("2000"), priority_level=1))
    session.commit()
    _import(session, Platform.BOLT, {"driver_email": "bruno@example.com", "earnings": "600", "trips": "25"})

    SettlementService(session).recompute_week(WEEK)

    recruiter = SettlementService(session).get_settlement(WEEK, affiliate.id)
    # 2% del repasse de Ana (735.66 €)
    assert recruiter.referral_commission == 1471
    assert recruiter.commission_lines[0]["level"] == 1
    assert recruiter.goal_bonus == 0
    assert recruiter.net_payout == recruiter.repasse + 1471

    recruit = SettlementService(session).get_settlement(WEEK, renter_week.id)
    assert recruit.goal_bonus == 2000
    assert recruit.net_payout == 73566 + 2000


def test_malformed_week_is_rejected(session):
    with pytest.raises(DataIntegrityError):
        SettlementService(session).recompute_week("2024-5")


def test_export_csv(session, renter_week):
    service = SettlementService(session)
    service.recompute_week(WEEK)

    content = service.export_csv(WEEK)
    header, row = content.strip().splitlines()
    assert header.startswith("driver_id,driver_name,week_id,status")
    assert "Ana Arrendataria" in row
    assert "735.66" in row


def test_week_summary(session, renter_week):
    service = SettlementService(session)
    service.recompute_week(WEEK)

    summary = service.week_summary(WEEK)
    assert summary.settlements == 1
    assert summary.by_status == {"pending": 1}
    assert summary.net_payout == 73566
    assert summary.unreconciled_amount == 4530
    assert not summary.reconciled
    assert summary.drivers_processed == 1
    assert not summary.complete


def test_single_driver_recompute_only_writes_that_driver(session, renter_week, affiliate):
    _import(session, Platform.BOLT, {"driver_email": "bruno@example.com", "earnings": "600", "trips": "25"})

    report = SettlementService(session).recompute_week(WEEK, driver_id=affiliate.id)

    assert report.created == [affiliate.id]
    rows = session.exec(select(DriverWeeklySettlement)).all()
    assert [r.driver_id for r in rows] == [affiliate.id]


def test_reresolve_after_registering_card(session, renter_week, affiliate):
    affiliate.myprio_card = "999999"
    session.add(affiliate)
    session.commit()

    report = ImportService(session).reresolve_batch(Platform.MYPRIO, WEEK)

    assert report.unmapped_count == 0
    aggregate = ImportService(session).week_aggregate(WEEK)
    assert aggregate.totals[renter_week.id].fuel == 1500
    assert aggregate.totals[affiliate.id].fuel == 4530
    assert aggregate.is_reconciled()


def test_week_summary_reports_skipped_drivers(session, renter_week, make_driver):
    broken = make_driver(full_name="Sem tipo", driver_type=None, uber_driver_id="uber-x")
    _import(session, Platform.UBER,
            {"driver_uuid": "uber-ana", "trip_revenue": "950", "tips": "50", "trips": "40"},
            {"driver_uuid": "uber-x", "trip_revenue": "100", "trips": "5"})
    service = SettlementService(session)
    service.recompute_week(WEEK)

    summary = service.week_summary(WEEK)

    assert summary.drivers_processed == 1
    assert summary.configuration_errors == 1
    assert summary.data_integrity_errors == 0
    assert [e.driver_id for e in summary.errors] == [broken.id]
    assert not summary.complete


def test_week_summary_complete_only_once_every_driver_is_settled(session, renter):
    _import(session, Platform.UBER, {"driver_uuid": "uber-ana", "trip_revenue": "950", "trips": "30"})
    service = SettlementService(session)

    before = service.week_summary(WEEK)
    assert before.unsettled_drivers == [renter.id]
    assert not before.complete

    service.recompute_week(WEEK)
    after = service.week_summary(WEEK)
    assert after.drivers_processed == 1
    assert after.unsettled_drivers == []
    assert after.reconciled
    assert after.complete


def _computed(service, driver_id):
    week = WeekIdentifier.parse(WEEK)
    computed = service.compute_week(service.load_inputs(week), RunReport(week_id=WEEK))
    return week, computed[driver_id]


def _stored(session):
    return session.exec(select(DriverWeeklySettlement)).all()


def test_outdated_version_never_overwrites_settlement(session, renter_week, monkeypatch):
    service = SettlementService(session)
    service.recompute_week(WEEK)
    current = service.get_settlement(WEEK, renter_week.id)
    # lectura hecha antes de que otro proceso escribiera la versión actual
    outdated = current.model_dump()
    outdated.update(version=current.version - 1, net_payout=current.net_payout + 1)
    week, item = _computed(service, renter_week.id)
    monkeypatch.setattr(service, "_find", lambda driver_id, week_id: SimpleNamespace(**outdated))

    with pytest.raises(ConcurrencyConflict):
        service.write_settlement(week, item)
    report = service.recompute_week(WEEK)
    assert report.conflicts == [renter_week.id]
    assert not report.complete

    [row] = _stored(session)
    assert row.version == 1
    assert row.net_payout == 73566
    audits = session.exec(select(SettlementAuditEntry)).all()
    assert [a.action for a in audits] == [AuditAction.COMPUTED]


def test_insert_race_is_retried_then_reported(session, renter_week, monkeypatch):
    service = SettlementService(session)
    service.recompute_week(WEEK)
    week, item = _computed(service, renter_week.id)
    # el registro existe pero esta ejecución no llega a verlo
    monkeypatch.setattr(service, "_find", lambda driver_id, week_id: None)

    with pytest.raises(ConcurrencyConflict):
        service.write_settlement(week, item)

    [row] = _stored(session)
    assert row.version == 1


def test_insert_race_recovers_on_retry(session, renter_week, monkeypatch):
    service = SettlementService(session)
    service.recompute_week(WEEK)
    week, item = _computed(service, renter_week.id)
    original_find = service._find
    calls = []

    def find_after_race(driver_id, week_id):
        calls.append(driver_id)
        return None if len(calls) == 1 else original_find(driver_id, week_id)

    monkeypatch.setattr(service, "_find", find_after_race)

    assert service.write_settlement(week, item) == "unchanged"
    assert len(calls) == 2
    assert len(_stored(session)) == 1
