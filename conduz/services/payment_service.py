import logging
from datetime import datetime
from typing import Dict, Any, Optional
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import update
from sqlmodel import Session, select

from conduz.models.earning_record import BatchStatus, ImportBatch
from conduz.models.financing import FinancingAgreement, FinancingInstallment, FinancingStatus, FinancingType
from conduz.models.settlement import (
    AuditAction, DriverWeeklySettlement, SettlementAuditEntry, SettlementStatus
)
from conduz.utils.errors import ConcurrencyConflict, SettlementFrozen

logger = logging.getLogger(__name__)

# pending es el único estado con salidas; paid y cancelled son terminales
ALLOWED_TRANSITIONS = {
    SettlementStatus.PENDING: {SettlementStatus.PAID, SettlementStatus.CANCELLED},
    SettlementStatus.PAID: set(),
    SettlementStatus.CANCELLED: set(),
}


def plan_transition(
    settlement: DriverWeeklySettlement,
    target: SettlementStatus,
    payment_date: Optional[datetime] = None,
    proof_ref: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Única función que decide el cambio de estado y el valor de `frozen`.

    Devuelve los valores a escribir; no toca la base de datos.
    """
    current = SettlementStatus(settlement.status)
    target = SettlementStatus(target)
    if settlement.frozen or not ALLOWED_TRANSITIONS[current]:
        raise SettlementFrozen(
            f"La liquidación está en estado {current.value} y no admite cambios",
            driver_id=settlement.driver_id, week_id=settlement.week_id)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise HTTPException(
            status_code=400,
            detail=f"Transición inválida: {current.value} -> {target.value}")

    values: Dict[str, Any] = {"status": target, "frozen": True}
    if target == SettlementStatus.PAID:
        if not proof_ref:
            raise HTTPException(status_code=400, detail="Se requiere el comprobante de pago")
        values["payment_date"] = payment_date or datetime.utcnow()
        values["proof_of_payment_ref"] = proof_ref
    elif reason:
        values["notes"] = reason
    return values


class PaymentService:
    def __init__(self, session: Session):
        self.session = session

    def get_settlement(self, settlement_id: UUID) -> DriverWeeklySettlement:
        settlement = self.session.get(DriverWeeklySettlement, settlement_id)
        if not settlement:
            raise HTTPException(status_code=404, detail="Settlement not found")
        return settlement

    def _lock_settlement(self, settlement_id: UUID) -> DriverWeeklySettlement:
        """Lee la liquidación bloqueando su fila hasta el final de la transacción."""
        settlement = self.session.exec(
            select(DriverWeeklySettlement)
            .where(DriverWeeklySettlement.id == settlement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if not settlement:
            raise HTTPException(status_code=404, detail="Settlement not found")
        return settlement

    def assert_week_not_frozen(self, week_id: str) -> None:
        """
        Falla si la semana tiene alguna liquidación pagada.

        Bloquea todas las liquidaciones de la semana (no solo las pagadas)
        hasta el final de la transacción, así un pago simultáneo espera a que
        termine la importación y viceversa.
        """
        settlements = self.session.exec(
            select(DriverWeeklySettlement)
            .where(DriverWeeklySettlement.week_id == week_id)
            .with_for_update()
        ).all()
        paid = next(
            (s for s in settlements if SettlementStatus(s.status) == SettlementStatus.PAID), None)
        if paid:
            raise SettlementFrozen(
                f"La semana {week_id} tiene liquidaciones pagadas; sus registros no se pueden reemplazar",
                driver_id=paid.driver_id, week_id=week_id)

    def source_fingerprint(self, week_id: str) -> str:
        """Ids de los lotes activos de la semana, ordenados y separados por comas."""
        batch_ids = self.session.exec(
            select(ImportBatch.id)
            .where(ImportBatch.week_id == week_id)
            .where(ImportBatch.status == BatchStatus.ACTIVE)
        ).all()
        return ",".join(sorted(str(batch_id) for batch_id in batch_ids))

    def _check_sources_current(self, settlement: DriverWeeklySettlement) -> None:
        if settlement.source_batch_ids != self.source_fingerprint(settlement.week_id):
            raise ConcurrencyConflict(
                "Los registros de la semana cambiaron después del cálculo; recalcule antes de pagar",
                driver_id=settlement.driver_id, week_id=settlement.week_id)

    def _apply_transition(self, settlement: DriverWeeklySettlement, values: Dict[str, Any]) -> None:
        # compare-and-swap: el estado congelado se verifica en la misma sentencia
        result = self.session.execute(
            update(DriverWeeklySettlement)
            .where(DriverWeeklySettlement.id == settlement.id)
            .where(DriverWeeklySettlement.version == settlement.version)
            .where(DriverWeeklySettlement.frozen == False)  # noqa: E712
            .values(version=settlement.version + 1, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            fresh = self.get_settlement(settlement.id)
            self.session.refresh(fresh)
            if fresh.frozen:
                raise SettlementFrozen(
                    f"La liquidación ya está en estado {fresh.status.value}",
                    driver_id=fresh.driver_id, week_id=fresh.week_id)
            raise ConcurrencyConflict(
                "La liquidación cambió durante la operación; reintente",
                driver_id=fresh.driver_id, week_id=fresh.week_id)

    def _commit_financing(self, settlement: DriverWeeklySettlement) -> None:
        """
        Registra las cuotas cobradas y descuenta semanas de los préstamos.

        La cuota se calculó con el `remaining_weeks` de ese momento; si el
        acuerdo avanzó o se cerró desde entonces (por ejemplo, se pagó otra
        semana antes), el pago se rechaza y la liquidación debe recalcularse.
        """
        for line in settlement.financing_lines or []:
            agreement = self.session.exec(
                select(FinancingAgreement)
                .where(FinancingAgreement.id == UUID(str(line["agreement_id"])))
                .with_for_update()
                .execution_options(populate_existing=True)
            ).first()
            if not agreement:
                logger.warning("Financiamiento %s ya no existe", line["agreement_id"])
                continue
            already = self.session.exec(
                select(FinancingInstallment)
                .where(FinancingInstallment.agreement_id == agreement.id)
                .where(FinancingInstallment.week_id == settlement.week_id)
            ).first()
            if already:
                continue
            if FinancingStatus(agreement.status) != FinancingStatus.ACTIVE:
                raise ConcurrencyConflict(
                    f"El financiamiento {agreement.id} ya no está activo; recalcule antes de pagar",
                    driver_id=settlement.driver_id, week_id=settlement.week_id)

            remaining_after = None
            if FinancingType(agreement.type) == FinancingType.LOAN:
                remaining = agreement.remaining_weeks if agreement.remaining_weeks is not None else agreement.weeks
                if remaining != line.get("remaining_weeks_before"):
                    raise ConcurrencyConflict(
                        f"El préstamo {agreement.id} tiene {remaining} semanas pendientes y la liquidación "
                        f"se calculó con {line.get('remaining_weeks_before')}; recalcule antes de pagar",
                        driver_id=settlement.driver_id, week_id=settlement.week_id)
                remaining_after = remaining - 1
                agreement.remaining_weeks = remaining_after
                if remaining_after == 0:
                    agreement.status = FinancingStatus.COMPLETED
                    agreement.completed_at = datetime.utcnow()
                agreement.updated_at = datetime.utcnow()
                self.session.add(agreement)

            self.session.add(FinancingInstallment(
                agreement_id=agreement.id,
                settlement_id=settlement.id,
                week_id=settlement.week_id,
                amount=line["total"],
                remaining_weeks_after=remaining_after,
            ))

    def _audit(self, settlement_id: UUID, action: AuditAction, detail: Optional[str] = None,
               actor: Optional[str] = None) -> None:
        self.session.add(SettlementAuditEntry(
            settlement_id=settlement_id, action=action, detail=detail, actor=actor))

    def mark_paid(self, settlement_id: UUID, proof_ref: str, payment_date: Optional[datetime] = None,
                  actor: Optional[str] = None) -> DriverWeeklySettlement:
        """
        pending -> paid: fija la fecha de pago, adjunta el comprobante y congela
        la liquidación. Las cuotas de financiamiento se confirman en la misma
        transacción.

        Raises:
            ConcurrencyConflict: la liquidación, sus lotes de origen o sus
                financiamientos cambiaron desde el último cálculo
            SettlementFrozen: la liquidación ya no está pendiente
        """
        try:
            settlement = self._lock_settlement(settlement_id)
            values = plan_transition(
                settlement, SettlementStatus.PAID, payment_date=payment_date, proof_ref=proof_ref)
            self._check_sources_current(settlement)
            self._apply_transition(settlement, values)
            self._commit_financing(settlement)
            self._audit(settlement.id, AuditAction.PAID, detail=proof_ref, actor=actor)
            self.session.commit()
        except ConcurrencyConflict as e:
            self.session.rollback()
            logger.warning("[%s] Pago rechazado para %s: %s", e.week_id, settlement_id, e.message)
            raise
        except Exception:
            self.session.rollback()
            raise
        settlement = self.get_settlement(settlement_id)
        logger.info("[%s] Liquidación %s pagada", settlement.week_id, settlement.id)
        return settlement

    def cancel(self, settlement_id: UUID, reason: Optional[str] = None,
               actor: Optional[str] = None) -> DriverWeeklySettlement:
        """pending -> cancelled (terminal, sin movimiento de dinero)."""
        try:
            settlement = self._lock_settlement(settlement_id)
            values = plan_transition(settlement, SettlementStatus.CANCELLED, reason=reason)
            self._apply_transition(settlement, values)
            self._audit(settlement.id, AuditAction.CANCELLED, detail=reason, actor=actor)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        settlement = self.get_settlement(settlement_id)
        logger.info("[%s] Liquidación %s cancelada", settlement.week_id, settlement.id)
        return settlement

    def attach_proof(self, settlement_id: UUID, proof_ref: str,
                     actor: Optional[str] = None) -> DriverWeeklySettlement:
        """
        Reemplaza el comprobante (metadato no financiero). En una liquidación
        pagada el comprobante anterior queda en la auditoría.
        """
        settlement = self.get_settlement(settlement_id)
        if SettlementStatus(settlement.status) == SettlementStatus.CANCELLED:
            raise SettlementFrozen(
                "Una liquidación cancelada no admite comprobantes",
                driver_id=settlement.driver_id, week_id=settlement.week_id)
        previous = settlement.proof_of_payment_ref
        settlement.proof_of_payment_ref = proof_ref
        settlement.updated_at = datetime.utcnow()
        self.session.add(settlement)
        self._audit(
            settlement.id, AuditAction.PROOF_ATTACHED,
            detail=f"{previous} -> {proof_ref}" if previous else proof_ref, actor=actor)
        self.session.commit()
        self.session.refresh(settlement)
        return settlement

    def list_audit(self, settlement_id: UUID):
        return self.session.exec(
            select(SettlementAuditEntry)
            .where(SettlementAuditEntry.settlement_id == settlement_id)
            .order_by(SettlementAuditEntry.created_at)
        ).all()
