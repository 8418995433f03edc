from sqlmodel import SQLModel, Field
from typing import Optional
from enum import Enum
from datetime import datetime, date
from decimal import Decimal
from uuid import UUID, uuid4


class DriverType(str, Enum):
    AFFILIATE = "affiliate"
    RENTER = "renter"


class DriverStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AdminFeeMode(str, Enum):
    FIXED = "fixed"      # valor fijo en euros por semana
    PERCENT = "percent"  # porcentaje sobre ganancias sin IVA


class DriverBase(SQLModel):
    full_name: str
    email: Optional[str] = None
    type: Optional[DriverType] = Field(default=DriverType.AFFILIATE)
    # Llaves de integración por plataforma
    uber_driver_id: Optional[str] = Field(default=None, index=True)
    bolt_email: Optional[str] = Field(default=None, index=True)
    myprio_card: Optional[str] = Field(default=None, index=True)
    viaverde_tag: Optional[str] = Field(default=None, index=True)
    vehicle_plate: Optional[str] = Field(default=None, index=True)
    # Alquiler semanal (centavos), solo para arrendatarios
    rental_fee: int = Field(default=0)
    # Comisión administrativa personalizada (opcional)
    admin_fee_mode: Optional[AdminFeeMode] = None
    admin_fee_value: Optional[Decimal] = Field(
        default=None, max_digits=10, decimal_places=2)
    joined_at: Optional[date] = None


class Driver(DriverBase, table=True):
    __tablename__ = "driver"
    id: Optional[UUID] = Field(
        default_factory=uuid4, primary_key=True, unique=True)
    status: DriverStatus = Field(default=DriverStatus.ACTIVE)
    created_at: datetime = Field(
        default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
        sa_column_kwargs={"onupdate": datetime.utcnow}
    )


class DriverCreate(DriverBase):
    pass


class DriverUpdate(SQLModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    type: Optional[DriverType] = None
    uber_driver_id: Optional[str] = None
    bolt_email: Optional[str] = None
    myprio_card: Optional[str] = None
    viaverde_tag: Optional[str] = None
    vehicle_plate: Optional[str] = None
    rental_fee: Optional[int] = None
    admin_fee_mode: Optional[AdminFeeMode] = None
    admin_fee_value: Optional[Decimal] = None
    joined_at: Optional[date] = None


class DriverRead(DriverBase):
    id: UUID
    status: DriverStatus
    created_at: datetime
    updated_at: datetime
