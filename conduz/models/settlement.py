from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, UniqueConstraint
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, date
from uuid import UUID, uuid4


class SettlementStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


# Campos financieros: solo se escriben mientras frozen == False
FINANCIAL_FIELDS = (
    "uber_total",
    "bolt_total",
    "trip_revenue",
    "tips_total",
    "gross_revenue",
    "vat_amount",
    "gross_minus_vat",
    "admin_fee",
    "admin_fee_rule",
    "fuel",
    "tolls",
    "rental",
    "financing_deduction",
    "financing_lines",
    "repasse",
    "referral_commission",
    "commission_lines",
    "goal_bonus",
    "goal_rule_id",
    "net_payout",
    "trip_count",
    "negative_payout",
)


class DriverWeeklySettlementBase(SQLModel):
    driver_id: UUID = Field(foreign_key="driver.id", index=True)
    week_id: str = Field(index=True, max_length=8)
    week_start: date
    week_end: date

    # Ganancias por plataforma (centavos)
    uber_total: int = Field(default=0)
    bolt_total: int = Field(default=0)
    trip_revenue: int = Field(default=0)
    tips_total: int = Field(default=0)
    gross_revenue: int = Field(default=0)
    vat_amount: int = Field(default=0)
    gross_minus_vat: int = Field(default=0)

    # Deducciones
    admin_fee: int = Field(default=0)
    admin_fee_rule: Optional[str] = None  # override_fixed, override_percent, type_default_*, legacy
    fuel: int = Field(default=0)
    tolls: int = Field(default=0)
    rental: int = Field(default=0)
    financing_deduction: int = Field(default=0)
    financing_lines: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    repasse: int = Field(default=0)

    # Extras
    referral_commission: int = Field(default=0)
    commission_lines: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    goal_bonus: int = Field(default=0)
    goal_rule_id: Optional[int] = None

    net_payout: int = Field(default=0)
    trip_count: int = Field(default=0)
    negative_payout: bool = Field(default=False)


class DriverWeeklySettlement(DriverWeeklySettlementBase, table=True):
    __tablename__ = "driver_weekly_settlement"
    __table_args__ = (UniqueConstraint("driver_id", "week_id"),)
    id: Optional[UUID] = Field(
        default_factory=uuid4, primary_key=True, unique=True)
    status: SettlementStatus = Field(default=SettlementStatus.PENDING, index=True)
    frozen: bool = Field(default=False)
    payment_date: Optional[datetime] = None
    proof_of_payment_ref: Optional[str] = None
    notes: Optional[str] = None
    version: int = Field(default=1)
    computed_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    # ids de los lotes activos de la semana usados en el cálculo, ordenados
    source_batch_ids: Optional[str] = None
    created_at: datetime = Field(
        default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
        sa_column_kwargs={"onupdate": datetime.utcnow}
    )


class DriverWeeklySettlementRead(DriverWeeklySettlementBase):
    id: UUID
    status: SettlementStatus
    frozen: bool
    payment_date: Optional[datetime] = None
    proof_of_payment_ref: Optional[str] = None
    notes: Optional[str] = None
    version: int
    computed_at: datetime
    source_batch_ids: Optional[str] = None


class AuditAction(str, Enum):
    COMPUTED = "computed"
    RECOMPUTED = "recomputed"
    PAID = "paid"
    CANCELLED = "cancelled"
    PROOF_ATTACHED = "proof_attached"


class SettlementAuditEntry(SQLModel, table=True):
    """Registro de auditoría de solo inserción por liquidación."""
    __tablename__ = "settlement_audit_entry"
    id: Optional[UUID] = Field(default_factory=uuid4, primary_key=True, unique=True)
    settlement_id: UUID = Field(foreign_key="driver_weekly_settlement.id", index=True)
    action: AuditAction
    detail: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class MarkPaidRequest(SQLModel):
    proof_ref: str
    payment_date: Optional[datetime] = None


class CancelRequest(SQLModel):
    reason: Optional[str] = None


class ProofRequest(SQLModel):
    proof_ref: str
