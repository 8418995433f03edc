"""
Normalización por plataforma.

Cada plataforma entrega filas con un esquema distinto; cada una tiene su
función pura registrada en NORMALIZERS que convierte una fila cruda en uno o
más registros normalizados. Las filas inválidas se omiten y se cuentan, nunca
se convierten en registros de valor cero.
"""
import logging
from datetime import date, datetime, time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from conduz.models.earning_record import NormalizedEarningRecordBase, Platform, RecordKind
from conduz.services.identity_resolver import IdentityLookup
from conduz.utils.errors import UnmappedReferenceError
from conduz.utils.money import parse_amount
from conduz.utils.week import WeekIdentifier

logger = logging.getLogger(__name__)


class RawRecord(BaseModel):
    """Fila cruda tal como la entrega el colaborador de importación."""
    platform: Platform
    fields: Dict[str, Any] = Field(default_factory=dict)


class MalformedRow(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SkippedRow(BaseModel):
    index: int
    reason: str


class UnmappedRow(BaseModel):
    index: int
    platform: Platform
    reference_key: str
    reference_label: Optional[str] = None
    amount: int
    kind: RecordKind


class NormalizationResult(BaseModel):
    platform: Platform
    week_id: str
    row_count: int = 0
    records: List[NormalizedEarningRecordBase] = Field(default_factory=list)
    skipped: List[SkippedRow] = Field(default_factory=list)
    unmapped: List[UnmappedRow] = Field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def unmapped_count(self) -> int:
        return len(self.unmapped)


class PlatformEntry(BaseModel):
    """Registro de plataforma aún sin conductor resuelto."""
    reference_key: str
    reference_label: Optional[str] = None
    amount: int
    kind: RecordKind
    trip_count: int = 0
    source_timestamp: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Utilidades de lectura de campos
# ---------------------------------------------------------------------------

def _first(fields: Dict[str, Any], *names: str):
    for name in names:
        value = fields.get(name)
        if value is not None and value != "":
            return value
    return None


def _reference(fields: Dict[str, Any], *names: str) -> str:
    value = _first(fields, *names)
    if value is None or not str(value).strip():
        raise MalformedRow("missing_reference")
    return value if isinstance(value, str) else str(value)


def _amount(value, required: bool = True) -> Optional[int]:
    if value is None or value == "":
        if required:
            raise MalformedRow("missing_amount")
        return None
    cents = parse_amount(value)
    if cents is None:
        raise MalformedRow("invalid_amount")
    return cents


def _trips(value) -> int:
    if value is None or value == "":
        return 0
    try:
        trips = int(str(value).strip())
    except ValueError:
        raise MalformedRow("invalid_trips")
    if trips < 0:
        raise MalformedRow("invalid_trips")
    return trips


def _timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError:
        raise MalformedRow("invalid_timestamp")


def _plate_label(value) -> Optional[str]:
    # myPrio usa "." cuando la tarjeta no tiene matrícula asociada
    if value is None:
        return None
    label = str(value).strip()
    if not label or label == ".":
        return None
    return label


# ---------------------------------------------------------------------------
# Normalizadores por plataforma
# ---------------------------------------------------------------------------

def _ride_hailing_entries(fields: Dict[str, Any], reference: str) -> List[PlatformEntry]:
    timestamp = _timestamp(_first(fields, "timestamp", "date"))
    explicit_kind = fields.get("kind")
    if explicit_kind is not None:
        kind = {"trip": RecordKind.TRIP_REVENUE, "trip_revenue": RecordKind.TRIP_REVENUE,
                "tip": RecordKind.TIP}.get(str(explicit_kind).strip().lower())
        if kind is None:
            raise MalformedRow("invalid_kind")
        return [PlatformEntry(
            reference_key=reference,
            amount=_amount(_first(fields, "amount")),
            kind=kind,
            trip_count=_trips(fields.get("trips")) if kind == RecordKind.TRIP_REVENUE else 0,
            source_timestamp=timestamp,
        )]

    revenue = _amount(_first(fields, "trip_revenue", "earnings", "amount"))
    tips = _amount(_first(fields, "tips", "tip"), required=False)
    entries = [PlatformEntry(
        reference_key=reference,
        amount=revenue,
        kind=RecordKind.TRIP_REVENUE,
        trip_count=_trips(fields.get("trips")),
        source_timestamp=timestamp,
    )]
    if tips:
        entries.append(PlatformEntry(
            reference_key=reference,
            amount=tips,
            kind=RecordKind.TIP,
            source_timestamp=timestamp,
        ))
    return entries


def normalize_uber(fields: Dict[str, Any]) -> List[PlatformEntry]:
    return _ride_hailing_entries(fields, _reference(fields, "driver_uuid", "reference"))


def normalize_bolt(fields: Dict[str, Any]) -> List[PlatformEntry]:
    return _ride_hailing_entries(fields, _reference(fields, "driver_email", "email", "reference"))


def normalize_myprio(fields: Dict[str, Any]) -> List[PlatformEntry]:
    return [PlatformEntry(
        reference_key=_reference(fields, "card", "reference"),
        reference_label=_plate_label(_first(fields, "card_description", "plate")),
        amount=_amount(_first(fields, "total", "amount")),
        kind=RecordKind.FUEL_CHARGE,
        source_timestamp=_timestamp(_first(fields, "timestamp", "date")),
    )]


def normalize_viaverde(fields: Dict[str, Any]) -> List[PlatformEntry]:
    return [PlatformEntry(
        reference_key=_reference(fields, "tag_id", "obu", "reference"),
        reference_label=_plate_label(_first(fields, "plate")),
        amount=_amount(_first(fields, "value", "amount")),
        kind=RecordKind.TOLL,
        source_timestamp=_timestamp(_first(fields, "timestamp", "date")),
    )]


NORMALIZERS: Dict[Platform, Callable[[Dict[str, Any]], List[PlatformEntry]]] = {
    Platform.UBER: normalize_uber,
    Platform.BOLT: normalize_bolt,
    Platform.MYPRIO: normalize_myprio,
    Platform.VIAVERDE: normalize_viaverde,
}


def normalize_batch(
    platform: Platform,
    week_id: str,
    rows: List[RawRecord],
    lookup: IdentityLookup,
) -> NormalizationResult:
    """
    Normaliza las filas de un lote (plataforma, semana) y resuelve conductores.

    Args:
        platform: Plataforma del lote; las filas de otra plataforma se omiten
        week_id: Semana ISO del lote
        rows: Filas crudas
        lookup: Índice de identidades construido para esta ejecución

    Returns:
        NormalizationResult con registros, filas omitidas y referencias sin conductor
    """
    platform = Platform(platform)
    week = WeekIdentifier.parse(week_id)
    normalizer = NORMALIZERS[platform]
    result = NormalizationResult(platform=platform, week_id=str(week), row_count=len(rows))

    for index, row in enumerate(rows):
        try:
            if row.platform != platform:
                raise MalformedRow("platform_mismatch")
            if row.fields.get("unparseable"):
                raise MalformedRow("unparseable")
            entries = normalizer(row.fields)
            for entry in entries:
                if entry.source_timestamp and not week.contains(entry.source_timestamp):
                    raise MalformedRow("outside_week")
        except MalformedRow as e:
            result.skipped.append(SkippedRow(index=index, reason=e.reason))
            continue

        for entry in entries:
            try:
                driver_id = lookup.require(
                    platform, entry.reference_key, entry.reference_label, week_id=str(week))
            except UnmappedReferenceError as e:
                driver_id = None
                result.unmapped.append(UnmappedRow(
                    index=index,
                    platform=platform,
                    reference_key=e.reference_key,
                    reference_label=e.reference_label,
                    amount=entry.amount,
                    kind=entry.kind,
                ))
            result.records.append(NormalizedEarningRecordBase(
                platform=platform,
                week_id=str(week),
                reference_key=entry.reference_key,
                reference_label=entry.reference_label,
                driver_id=driver_id,
                amount=entry.amount,
                kind=entry.kind,
                trip_count=entry.trip_count,
                source_timestamp=entry.source_timestamp,
            ))

    if result.skipped:
        logger.warning("[%s %s] %d filas omitidas", platform.value, week, result.skipped_count)
    if result.unmapped:
        logger.warning("[%s %s] %d registros sin conductor", platform.value, week, result.unmapped_count)
    return result
