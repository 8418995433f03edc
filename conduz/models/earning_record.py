from sqlmodel import SQLModel, Field
from typing import Optional
from enum import Enum
from datetime import datetime
from uuid import UUID, uuid4


class Platform(str, Enum):
    UBER = "uber"
    BOLT = "bolt"
    MYPRIO = "myprio"
    VIAVERDE = "viaverde"


class RecordKind(str, Enum):
    TRIP_REVENUE = "trip_revenue"
    TIP = "tip"
    TOLL = "toll"
    FUEL_CHARGE = "fuel_charge"


class BatchStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class ImportBatch(SQLModel, table=True):
    """Una importación de una plataforma para una semana. Solo una activa por (plataforma, semana)."""
    __tablename__ = "import_batch"
    id: Optional[UUID] = Field(
        default_factory=uuid4, primary_key=True, unique=True)
    platform: Platform = Field(index=True)
    week_id: str = Field(index=True, max_length=8)
    status: BatchStatus = Field(default=BatchStatus.ACTIVE, index=True)
    # "plataforma:semana" mientras el lote está activo; NULL una vez reemplazado
    active_key: Optional[str] = Field(default=None, unique=True, max_length=24)
    row_count: int = Field(default=0)
    record_count: int = Field(default=0)
    skipped_count: int = Field(default=0)
    unmapped_count: int = Field(default=0)
    imported_by: Optional[str] = None
    source_name: Optional[str] = None  # nombre del archivo o de la integración
    imported_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    superseded_at: Optional[datetime] = None
    superseded_by_id: Optional[UUID] = Field(default=None, foreign_key="import_batch.id")


class NormalizedEarningRecordBase(SQLModel):
    platform: Platform = Field(index=True)
    week_id: str = Field(index=True, max_length=8)
    reference_key: str
    reference_label: Optional[str] = None
    driver_id: Optional[UUID] = Field(default=None, foreign_key="driver.id", index=True)
    amount: int  # centavos
    kind: RecordKind
    trip_count: int = Field(default=0)
    source_timestamp: Optional[datetime] = None


class NormalizedEarningRecord(NormalizedEarningRecordBase, table=True):
    """Fila normalizada; inmutable. Una reimportación crea un lote nuevo en lugar de editarla."""
    __tablename__ = "normalized_earning_record"
    id: Optional[UUID] = Field(
        default_factory=uuid4, primary_key=True, unique=True)
    batch_id: UUID = Field(foreign_key="import_batch.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    @property
    def is_unmapped(self) -> bool:
        return self.driver_id is None


class NormalizedEarningRecordRead(NormalizedEarningRecordBase):
    id: UUID
    batch_id: UUID


def active_batch_key(platform: Platform, week_id: str) -> str:
    return f"{Platform(platform).value}:{week_id}"
