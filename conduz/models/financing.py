from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from enum import Enum
from datetime import datetime, date
from uuid import UUID, uuid4


class FinancingType(str, Enum):
    LOAN = "loan"          # monto total amortizado en un número fijo de semanas
    DISCOUNT = "discount"  # descuento semanal fijo sin fecha de término


class FinancingStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class FinancingAgreementBase(SQLModel):
    driver_id: UUID = Field(foreign_key="driver.id", index=True)
    type: FinancingType
    amount: int  # centavos: principal (loan) o descuento semanal (discount)
    weeks: Optional[int] = None
    weekly_interest: int = Field(default=0)  # centavos por semana
    start_date: Optional[date] = None
    description: Optional[str] = None


class FinancingAgreement(FinancingAgreementBase, table=True):
    __tablename__ = "financing_agreement"
    id: Optional[UUID] = Field(
        default_factory=uuid4, primary_key=True, unique=True)
    status: FinancingStatus = Field(default=FinancingStatus.ACTIVE, index=True)
    remaining_weeks: Optional[int] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(
        default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
        sa_column_kwargs={"onupdate": datetime.utcnow}
    )


class FinancingAgreementCreate(FinancingAgreementBase):
    pass


class FinancingInstallment(SQLModel, table=True):
    """Cuota efectivamente cobrada: se registra al pagar la liquidación de la semana."""
    __tablename__ = "financing_installment"
    __table_args__ = (UniqueConstraint("agreement_id", "week_id"),)
    id: Optional[UUID] = Field(
        default_factory=uuid4, primary_key=True, unique=True)
    agreement_id: UUID = Field(foreign_key="financing_agreement.id", index=True)
    settlement_id: UUID = Field(foreign_key="driver_weekly_settlement.id")
    week_id: str = Field(max_length=8)
    amount: int
    remaining_weeks_after: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
