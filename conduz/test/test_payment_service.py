from datetime import date
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from sqlalchemy.dialects import mysql
from sqlmodel import select

from conduz.models.earning_record import Platform
from conduz.models.financing import (
    FinancingAgreementCreate, FinancingInstallment, FinancingStatus, FinancingType
)
from conduz.models.settlement import AuditAction, SettlementStatus
from conduz.services.financing_service import FinancingService
from conduz.services.import_service import ImportService
from conduz.services.payment_service import PaymentService, plan_transition
from conduz.services.platform_normalizer import RawRecord
from conduz.services.settlement_service import SettlementService
from conduz.utils.errors import ConcurrencyConflict, SettlementFrozen

WEEK = "2024-W05"
NEXT_WEEK = "2024-W06"


def _earn(session, week_id, amount="950"):
    ImportService(session).import_batch(Platform.UBER, week_id, [
        RawRecord(platform=Platform.UBER, fields={"driver_uuid": "uber-ana", "trip_revenue": amount, "trips": "30"})
    ])
    SettlementService(session).recompute_week(week_id)


def _settlement(session, driver, week_id=WEEK):
    return SettlementService(session).get_settlement(week_id, driver.id)


def test_mark_paid_freezes_settlement(session, renter):
    _earn(session, WEEK)
    settlement = _settlement(session, renter)

    paid = PaymentService(session).mark_paid(settlement.id, proof_ref="TRF-001", actor="admin")

    assert paid.status == SettlementStatus.PAID
    assert paid.frozen
    assert paid.proof_of_payment_ref == "TRF-001"
    assert paid.payment_date is not None
    assert paid.version == 2


def test_mark_paid_requires_proof(session, renter):
    _earn(session, WEEK)
    settlement = _settlement(session, renter)
    with pytest.raises(HTTPException) as exc:
        PaymentService(session).mark_paid(settlement.id, proof_ref="")
    assert exc.value.status_code == 400
    assert not _settlement(session, renter).frozen


def test_terminal_states_have_no_exits(session, renter):
    _earn(session, WEEK)
    settlement = _settlement(session, renter)
    service = PaymentService(session)
    service.cancel(settlement.id, reason="duplicado")

    with pytest.raises(SettlementFrozen):
        service.mark_paid(settlement.id, proof_ref="TRF-002")
    with pytest.raises(SettlementFrozen):
        service.cancel(settlement.id)
    with pytest.raises(SettlementFrozen):
        service.attach_proof(settlement.id, "TRF-003")
    assert _settlement(session, renter).status == SettlementStatus.CANCELLED


def test_plan_transition_only_from_pending(session, renter):
    _earn(session, WEEK)
    settlement = _settlement(session, renter)

    values = plan_transition(settlement, SettlementStatus.CANCELLED, reason="erro")
    assert values == {"status": SettlementStatus.CANCELLED, "frozen": True, "notes": "erro"}
    with pytest.raises(HTTPException):
        plan_transition(settlement, SettlementStatus.PENDING)


def test_proof_replacement_is_audited(session, renter):
    _earn(session, WEEK)
    settlement = _settlement(session, renter)
    service = PaymentService(session)
    service.mark_paid(settlement.id, proof_ref="TRF-001")

    service.attach_proof(settlement.id, "TRF-001-v2")

    assert _settlement(session, renter).proof_of_payment_ref == "TRF-001-v2"
    entries = service.list_audit(settlement.id)
    assert [e.action for e in entries] == [AuditAction.COMPUTED, AuditAction.PAID, AuditAction.PROOF_ATTACHED]
    assert entries[-1].detail == "TRF-001 -> TRF-001-v2"


def test_loan_decrements_only_when_paid(session, renter):
    agreement = FinancingService(session).create_agreement(FinancingAgreementCreate(
        driver_id=renter.id, type=FinancingType.LOAN, amount=10000, weeks=2, start_date=date(2024, 1, 1)))

    _earn(session, WEEK)
    # recalcular no descuenta semanas
    SettlementService(session).recompute_week(WEEK)
    session.refresh(agreement)
    assert agreement.remaining_weeks == 2
    assert _settlement(session, renter).financing_deduction == 5000

    PaymentService(session).mark_paid(_settlement(session, renter).id, proof_ref="TRF-001")
    session.refresh(agreement)
    assert agreement.remaining_weeks == 1
    assert agreement.status == FinancingStatus.ACTIVE

    _earn(session, NEXT_WEEK)
    PaymentService(session).mark_paid(_settlement(session, renter, NEXT_WEEK).id, proof_ref="TRF-002")
    session.refresh(agreement)
    assert agreement.remaining_weeks == 0
    assert agreement.status == FinancingStatus.COMPLETED

    installments = session.exec(
        select(FinancingInstallment).where(FinancingInstallment.agreement_id == agreement.id)).all()
    assert sorted((i.week_id, i.amount) for i in installments) == [(WEEK, 5000), (NEXT_WEEK, 5000)]


def _installments(session, agreement):
    return session.exec(
        select(FinancingInstallment)
        .where(FinancingInstallment.agreement_id == agreement.id)
        .order_by(FinancingInstallment.week_id)
    ).all()


def test_loan_is_not_collected_twice_across_weeks_computed_together(session, renter):
    agreement = FinancingService(session).create_agreement(FinancingAgreementCreate(
        driver_id=renter.id, type=FinancingType.LOAN, amount=10000, weeks=1, start_date=date(2024, 1, 1)))
    _earn(session, WEEK)
    _earn(session, NEXT_WEEK)
    assert _settlement(session, renter, NEXT_WEEK).financing_deduction == 10000

    service = PaymentService(session)
    service.mark_paid(_settlement(session, renter).id, proof_ref="TRF-001")
    with pytest.raises(ConcurrencyConflict):
        service.mark_paid(_settlement(session, renter, NEXT_WEEK).id, proof_ref="TRF-002")
    assert _settlement(session, renter, NEXT_WEEK).status == SettlementStatus.PENDING

    # tras recalcular, la semana siguiente ya no descuenta el préstamo completado
    SettlementService(session).recompute_week(NEXT_WEEK)
    assert _settlement(session, renter, NEXT_WEEK).financing_deduction == 0
    service.mark_paid(_settlement(session, renter, NEXT_WEEK).id, proof_ref="TRF-002")

    assert [(i.week_id, i.amount) for i in _installments(session, agreement)] == [(WEEK, 10000)]
    session.refresh(agreement)
    assert agreement.status == FinancingStatus.COMPLETED


def test_loan_payment_requires_current_installment_count(session, renter):
    agreement = FinancingService(session).create_agreement(FinancingAgreementCreate(
        driver_id=renter.id, type=FinancingType.LOAN, amount=10001, weeks=2, start_date=date(2024, 1, 1)))
    _earn(session, WEEK)
    _earn(session, NEXT_WEEK)

    service = PaymentService(session)
    service.mark_paid(_settlement(session, renter).id, proof_ref="TRF-001")
    with pytest.raises(ConcurrencyConflict):
        service.mark_paid(_settlement(session, renter, NEXT_WEEK).id, proof_ref="TRF-002")

    SettlementService(session).recompute_week(NEXT_WEEK)
    service.mark_paid(_settlement(session, renter, NEXT_WEEK).id, proof_ref="TRF-002")

    installments = _installments(session, agreement)
    assert [(i.week_id, i.amount) for i in installments] == [(WEEK, 5000), (NEXT_WEEK, 5001)]
    assert sum(i.amount for i in installments) == agreement.amount


def test_payment_after_reimport_requires_recompute(session, renter):
    _earn(session, WEEK, amount="950")
    ImportService(session).import_batch(Platform.UBER, WEEK, [
        RawRecord(platform=Platform.UBER, fields={"driver_uuid": "uber-ana", "trip_revenue": "100", "trips": "5"})
    ])
    settlement = _settlement(session, renter)

    with pytest.raises(ConcurrencyConflict):
        PaymentService(session).mark_paid(settlement.id, proof_ref="TRF-001")
    stored = _settlement(session, renter)
    assert stored.status == SettlementStatus.PENDING
    assert not stored.frozen
    assert stored.gross_revenue == 95000

    SettlementService(session).recompute_week(WEEK)
    paid = PaymentService(session).mark_paid(settlement.id, proof_ref="TRF-001")
    assert paid.gross_revenue == 10000


def _snapshot(settlement, **changes):
    data = settlement.model_dump()
    data.update(changes)
    return SimpleNamespace(**data)


def test_payment_with_outdated_version_is_rejected(session, renter, monkeypatch):
    _earn(session, WEEK)
    settlement = _settlement(session, renter)
    service = PaymentService(session)
    stale = _snapshot(settlement, version=settlement.version - 1)
    monkeypatch.setattr(service, "_lock_settlement", lambda settlement_id: stale)

    with pytest.raises(ConcurrencyConflict):
        service.mark_paid(settlement.id, proof_ref="TRF-001")

    stored = _settlement(session, renter)
    assert stored.status == SettlementStatus.PENDING
    assert stored.version == 1
    assert not stored.frozen
    assert [e.action for e in service.list_audit(stored.id)] == [AuditAction.COMPUTED]


def test_second_concurrent_payment_sees_frozen_settlement(session, renter, monkeypatch):
    _earn(session, WEEK)
    settlement = _settlement(session, renter)
    service = PaymentService(session)
    read_before_payment = _snapshot(settlement)
    service.mark_paid(settlement.id, proof_ref="TRF-001")

    monkeypatch.setattr(service, "_lock_settlement", lambda settlement_id: read_before_payment)
    with pytest.raises(SettlementFrozen):
        service.mark_paid(settlement.id, proof_ref="TRF-002")

    stored = _settlement(session, renter)
    assert stored.proof_of_payment_ref == "TRF-001"
    assert stored.version == 2


def test_freeze_gate_locks_every_settlement_of_the_week(session, renter, monkeypatch):
    _earn(session, WEEK)
    statements = []
    original_exec = session.exec

    def recording_exec(statement, *args, **kwargs):
        statements.append(statement)
        return original_exec(statement, *args, **kwargs)

    monkeypatch.setattr(session, "exec", recording_exec)
    PaymentService(session).assert_week_not_frozen(WEEK)

    sql = str(statements[0].compile(dialect=mysql.dialect()))
    assert sql.endswith("FOR UPDATE")
    assert "status" not in sql.split("WHERE", 1)[1]
