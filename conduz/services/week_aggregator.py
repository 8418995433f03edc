from typing import Dict, Iterable, List
from uuid import UUID

from pydantic import BaseModel, Field

from conduz.models.earning_record import NormalizedEarningRecordBase, Platform, RecordKind


class WeekTotals(BaseModel):
    """Totales crudos de un conductor en una semana (centavos)."""
    driver_id: UUID
    week_id: str
    revenue_by_platform: Dict[str, int] = Field(default_factory=dict)
    trip_revenue: int = 0
    tips: int = 0
    tolls: int = 0
    fuel: int = 0
    trip_count: int = 0
    record_count: int = 0

    def platform_revenue(self, platform: Platform) -> int:
        return self.revenue_by_platform.get(Platform(platform).value, 0)


class UnreconciledTotal(BaseModel):
    platform: Platform
    amount: int = 0
    record_count: int = 0
    references: List[str] = Field(default_factory=list)


class WeekAggregate(BaseModel):
    week_id: str
    totals: Dict[UUID, WeekTotals] = Field(default_factory=dict)
    unreconciled: Dict[str, UnreconciledTotal] = Field(default_factory=dict)

    @property
    def unreconciled_amount(self) -> int:
        return sum(abs(item.amount) for item in self.unreconciled.values())

    @property
    def unreconciled_count(self) -> int:
        return sum(item.record_count for item in self.unreconciled.values())

    def is_reconciled(self, materiality_cents: int = 0) -> bool:
        return self.unreconciled_amount <= materiality_cents


def _add_record(totals: WeekTotals, record: NormalizedEarningRecordBase) -> None:
    kind = RecordKind(record.kind)
    platform = Platform(record.platform).value
    if kind in (RecordKind.TRIP_REVENUE, RecordKind.TIP):
        totals.revenue_by_platform[platform] = totals.revenue_by_platform.get(platform, 0) + record.amount
    if kind == RecordKind.TRIP_REVENUE:
        totals.trip_revenue += record.amount
        totals.trip_count += record.trip_count or 0
    elif kind == RecordKind.TIP:
        totals.tips += record.amount
    elif kind == RecordKind.TOLL:
        totals.tolls += record.amount
    elif kind == RecordKind.FUEL_CHARGE:
        totals.fuel += record.amount
    totals.record_count += 1


def aggregate_week(week_id: str, records: Iterable[NormalizedEarningRecordBase]) -> WeekAggregate:
    """
    Agrupa los registros activos de una semana por conductor.

    Los registros sin conductor nunca entran en los totales de un conductor;
    se acumulan en `unreconciled` por plataforma para revisión del administrador.
    """
    aggregate = WeekAggregate(week_id=week_id)
    for record in records:
        if record.week_id != week_id:
            continue
        if record.driver_id is None:
            platform = Platform(record.platform).value
            bucket = aggregate.unreconciled.setdefault(
                platform, UnreconciledTotal(platform=record.platform))
            bucket.amount += record.amount
            bucket.record_count += 1
            if record.reference_key not in bucket.references:
                bucket.references.append(record.reference_key)
            continue
        totals = aggregate.totals.get(record.driver_id)
        if totals is None:
            totals = WeekTotals(driver_id=record.driver_id, week_id=week_id)
            aggregate.totals[record.driver_id] = totals
        _add_record(totals, record)
    return aggregate

