from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from conduz.core.db import SessionDep
from conduz.core.dependencies.admin_auth import get_current_admin
from conduz.models.financing import (
    FinancingAgreement, FinancingAgreementCreate, FinancingInstallment, FinancingStatus
)
from conduz.services.financing_service import FinancingService

router = APIRouter(prefix="/financing", tags=["ADMIN: Financing"])


@router.post("/", response_model=FinancingAgreement, status_code=status.HTTP_201_CREATED, description="""
Crea un préstamo (`loan`) o un descuento semanal (`discount`). Montos en centavos.

**Ejemplo:**
```json
{
    "driver_id": "...",
    "type": "loan",
    "amount": 60000,
    "weeks": 12,
    "weekly_interest": 500,
    "start_date": "2024-01-29"
}
```
""")
def create_agreement(data: FinancingAgreementCreate, session: SessionDep,
                     current_admin=Depends(get_current_admin)):
    return FinancingService(session).create_agreement(data)


@router.get("/", response_model=List[FinancingAgreement])
def list_agreements(session: SessionDep,
                    driver_id: Optional[UUID] = Query(None),
                    agreement_status: Optional[FinancingStatus] = Query(None, alias="status"),
                    current_admin=Depends(get_current_admin)):
    return FinancingService(session).list_agreements(driver_id, agreement_status)


@router.get("/{agreement_id}", response_model=FinancingAgreement)
def get_agreement(agreement_id: UUID, session: SessionDep, current_admin=Depends(get_current_admin)):
    return FinancingService(session).get_agreement(agreement_id)


@router.post("/{agreement_id}/close", response_model=FinancingAgreement)
def close_agreement(agreement_id: UUID, session: SessionDep, current_admin=Depends(get_current_admin)):
    return FinancingService(session).close_agreement(agreement_id)


@router.get("/{agreement_id}/installments", response_model=List[FinancingInstallment])
def list_installments(agreement_id: UUID, session: SessionDep, current_admin=Depends(get_current_admin)):
    return FinancingService(session).list_installments(agreement_id)
