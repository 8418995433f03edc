from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import HTTPException, status
from sqlmodel import Session, select

from conduz.models.driver import Driver
from conduz.models.financing import (
    FinancingAgreement, FinancingAgreementCreate, FinancingInstallment, FinancingStatus, FinancingType
)


class FinancingService:
    def __init__(self, session: Session):
        self.session = session

    def create_agreement(self, data: FinancingAgreementCreate) -> FinancingAgreement:
        """
        Registra un préstamo o un descuento semanal.

        Préstamo: `amount` es el principal y se amortiza en `weeks` semanas.
        Descuento: `amount` es el cobro semanal fijo, sin fecha de término.
        """
        if not self.session.get(Driver, data.driver_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Driver not found")
        if data.amount <= 0 or (data.weekly_interest or 0) < 0:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="El monto debe ser positivo y el interés no negativo")
        if data.type == FinancingType.LOAN and (not data.weeks or data.weeks <= 0):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Un préstamo requiere un número de semanas positivo")

        agreement = FinancingAgreement.model_validate(data)
        if agreement.type == FinancingType.LOAN:
            agreement.remaining_weeks = agreement.weeks
        self.session.add(agreement)
        self.session.commit()
        self.session.refresh(agreement)
        return agreement

    def get_agreement(self, agreement_id: UUID) -> FinancingAgreement:
        agreement = self.session.get(FinancingAgreement, agreement_id)
        if not agreement:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Financing agreement not found")
        return agreement

    def list_agreements(self, driver_id: Optional[UUID] = None,
                        agreement_status: Optional[FinancingStatus] = None) -> List[FinancingAgreement]:
        query = select(FinancingAgreement)
        if driver_id is not None:
            query = query.where(FinancingAgreement.driver_id == driver_id)
        if agreement_status is not None:
            query = query.where(FinancingAgreement.status == agreement_status)
        return list(self.session.exec(query.order_by(FinancingAgreement.created_at)).all())

    def close_agreement(self, agreement_id: UUID) -> FinancingAgreement:
        """Termina un descuento (o un préstamo condonado); deja de cobrarse."""
        agreement = self.get_agreement(agreement_id)
        agreement.status = FinancingStatus.COMPLETED
        agreement.completed_at = datetime.utcnow()
        agreement.updated_at = datetime.utcnow()
        self.session.add(agreement)
        self.session.commit()
        self.session.refresh(agreement)
        return agreement

    def list_installments(self, agreement_id: UUID) -> List[FinancingInstallment]:
        self.get_agreement(agreement_id)
        return list(self.session.exec(
            select(FinancingInstallment)
            .where(FinancingInstallment.agreement_id == agreement_id)
            .order_by(FinancingInstallment.week_id)
        ).all())
