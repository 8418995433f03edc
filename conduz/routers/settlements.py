import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from conduz.core.db import SessionDep
from conduz.core.dependencies.admin_auth import get_current_admin
from conduz.models.settlement import (
    CancelRequest, DriverWeeklySettlementRead, MarkPaidRequest, ProofRequest,
    SettlementAuditEntry, SettlementStatus
)
from conduz.services.payment_service import PaymentService
from conduz.services.settlement_service import RunReport, SettlementService, WeekSummary
from conduz.utils.errors import SettlementError, to_http_exception

router = APIRouter(prefix="/settlements", tags=["ADMIN: Settlements"])


@router.get("/{week_id}", response_model=List[DriverWeeklySettlementRead], description="""
Lista las liquidaciones de una semana ISO, opcionalmente filtradas por estado.
""")
def list_settlements(week_id: str, session: SessionDep,
                     status: Optional[SettlementStatus] = Query(None),
                     current_admin=Depends(get_current_admin)):
    try:
        return SettlementService(session).list_settlements(week_id, status)
    except SettlementError as e:
        raise to_http_exception(e)


@router.get("/{week_id}/drivers/{driver_id}", response_model=DriverWeeklySettlementRead)
def get_driver_settlement(week_id: str, driver_id: UUID, session: SessionDep,
                          current_admin=Depends(get_current_admin)):
    try:
        return SettlementService(session).get_settlement(week_id, driver_id)
    except SettlementError as e:
        raise to_http_exception(e)


@router.post("/{week_id}/recompute", response_model=RunReport, description="""
Recalcula las liquidaciones de la semana. Con `driver_id` solo se escribe la
de ese conductor.

Las liquidaciones pagadas o canceladas no se modifican: en el lote aparecen en
`frozen`; para un único conductor la respuesta es 409.

Recalcular sin cambios en las entradas no modifica ninguna fila.
""")
def recompute(week_id: str, session: SessionDep,
              driver_id: Optional[UUID] = Query(None),
              current_admin=Depends(get_current_admin)):
    try:
        return SettlementService(session).recompute_week(
            week_id, driver_id=driver_id, actor=current_admin.get("sub"))
    except SettlementError as e:
        raise to_http_exception(e)
    except HTTPException as e:
        raise e
    except Exception:
        logging.exception("Unexpected error recomputing week %s", week_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/{week_id}/summary", response_model=WeekSummary)
def week_summary(week_id: str, session: SessionDep, current_admin=Depends(get_current_admin)):
    try:
        return SettlementService(session).week_summary(week_id)
    except SettlementError as e:
        raise to_http_exception(e)


@router.get("/{week_id}/export", description="""
Exporta las liquidaciones de la semana en CSV (montos en euros).
""")
def export_week(week_id: str, session: SessionDep, current_admin=Depends(get_current_admin)):
    try:
        content = SettlementService(session).export_csv(week_id)
    except SettlementError as e:
        raise to_http_exception(e)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="settlements-{week_id}.csv"'},
    )


@router.post("/{settlement_id}/mark-paid", response_model=DriverWeeklySettlementRead, description="""
pending -> paid. Requiere el comprobante de pago; congela la liquidación y
registra las cuotas de financiamiento descontadas.

Responde 409 si la semana se reimportó o algún financiamiento avanzó después
del último cálculo: hay que recalcular la semana antes de pagar.
""")
def mark_paid(settlement_id: UUID, data: MarkPaidRequest, session: SessionDep,
              current_admin=Depends(get_current_admin)):
    try:
        return PaymentService(session).mark_paid(
            settlement_id, data.proof_ref, payment_date=data.payment_date, actor=current_admin.get("sub"))
    except SettlementError as e:
        raise to_http_exception(e)


@router.post("/{settlement_id}/cancel", response_model=DriverWeeklySettlementRead)
def cancel(settlement_id: UUID, data: CancelRequest, session: SessionDep,
           current_admin=Depends(get_current_admin)):
    try:
        return PaymentService(session).cancel(settlement_id, data.reason, actor=current_admin.get("sub"))
    except SettlementError as e:
        raise to_http_exception(e)


@router.post("/{settlement_id}/proof", response_model=DriverWeeklySettlementRead)
def attach_proof(settlement_id: UUID, data: ProofRequest, session: SessionDep,
                 current_admin=Depends(get_current_admin)):
    try:
        return PaymentService(session).attach_proof(settlement_id, data.proof_ref, actor=current_admin.get("sub"))
    except SettlementError as e:
        raise to_http_exception(e)


@router.get("/{settlement_id}/audit", response_model=List[SettlementAuditEntry])
def audit_log(settlement_id: UUID, session: SessionDep, current_admin=Depends(get_current_admin)):
    service = PaymentService(session)
    service.get_settlement(settlement_id)
    return service.list_audit(settlement_id)
