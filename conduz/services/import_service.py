import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from conduz.models.driver import Driver, DriverStatus
from conduz.models.earning_record import (
    BatchStatus, ImportBatch, NormalizedEarningRecord, NormalizedEarningRecordBase, Platform,
    active_batch_key,
)
from conduz.services.identity_resolver import IdentityLookup
from conduz.services.payment_service import PaymentService
from conduz.services.platform_normalizer import (
    NormalizationResult, RawRecord, SkippedRow, UnmappedRow, normalize_batch
)
from conduz.services.week_aggregator import WeekAggregate, aggregate_week
from conduz.utils.errors import ConcurrencyConflict, SettlementFrozen
from conduz.utils.week import WeekIdentifier

logger = logging.getLogger(__name__)


class ImportReport(BaseModel):
    batch_id: UUID
    platform: Platform
    week_id: str
    row_count: int
    record_count: int
    skipped_count: int
    unmapped_count: int
    skipped: List[SkippedRow] = Field(default_factory=list)
    unmapped: List[UnmappedRow] = Field(default_factory=list)
    superseded_batch_id: Optional[UUID] = None


class ImportService:
    def __init__(self, session: Session):
        self.session = session

    def build_lookup(self) -> IdentityLookup:
        """El índice se construye en cada ejecución para no usar identidades obsoletas."""
        drivers = self.session.exec(
            select(Driver).where(Driver.status == DriverStatus.ACTIVE)
        ).all()
        return IdentityLookup.build(drivers)

    def get_active_batch(self, platform: Platform, week_id: str) -> Optional[ImportBatch]:
        return self.session.exec(
            select(ImportBatch)
            .where(ImportBatch.platform == platform)
            .where(ImportBatch.week_id == week_id)
            .where(ImportBatch.status == BatchStatus.ACTIVE)
        ).first()

    def active_records(self, week_id: str, platform: Optional[Platform] = None) -> List[NormalizedEarningRecord]:
        query = (
            select(NormalizedEarningRecord)
            .join(ImportBatch, NormalizedEarningRecord.batch_id == ImportBatch.id)
            .where(ImportBatch.week_id == week_id)
            .where(ImportBatch.status == BatchStatus.ACTIVE)
        )
        if platform is not None:
            query = query.where(ImportBatch.platform == platform)
        return list(self.session.exec(query.order_by(NormalizedEarningRecord.created_at)).all())

    def _replace_batch(
        self,
        platform: Platform,
        week_id: str,
        result: NormalizationResult,
        imported_by: Optional[str],
        source_name: Optional[str],
        carried_skipped: int = 0,
    ) -> ImportReport:
        """
        Sustituye el lote activo de (plataforma, semana) por uno nuevo.
        Los registros anteriores no se editan ni se borran: su lote queda
        como `superseded`.
        """
        skipped_count = result.skipped_count + carried_skipped
        try:
            PaymentService(self.session).assert_week_not_frozen(week_id)

            previous = self.get_active_batch(platform, week_id)
            if previous:
                # compare-and-swap: solo una importación puede reemplazar el lote activo
                superseded = self.session.execute(
                    update(ImportBatch)
                    .where(ImportBatch.id == previous.id)
                    .where(ImportBatch.status == BatchStatus.ACTIVE)
                    .values(status=BatchStatus.SUPERSEDED, active_key=None, superseded_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                if superseded.rowcount != 1:
                    raise ConcurrencyConflict(
                        f"El lote activo de {platform.value} cambió durante la importación; reintente",
                        week_id=week_id)

            batch = ImportBatch(
                platform=platform,
                week_id=week_id,
                active_key=active_batch_key(platform, week_id),
                row_count=result.row_count,
                record_count=len(result.records),
                skipped_count=skipped_count,
                unmapped_count=result.unmapped_count,
                imported_by=imported_by,
                source_name=source_name,
            )
            self.session.add(batch)
            self.session.flush()

            if previous:
                self.session.execute(
                    update(ImportBatch)
                    .where(ImportBatch.id == previous.id)
                    .values(superseded_by_id=batch.id)
                    .execution_options(synchronize_session=False)
                )

            self.session.add_all([
                NormalizedEarningRecord(batch_id=batch.id, **record.model_dump())
                for record in result.records
            ])
            self.session.commit()
        except SettlementFrozen:
            self.session.rollback()
            logger.warning("[%s %s] Importación rechazada: semana pagada", platform.value, week_id)
            raise
        except IntegrityError:
            # otra importación creó el lote activo de (plataforma, semana) al mismo tiempo
            self.session.rollback()
            logger.warning("[%s %s] Importación concurrente detectada", platform.value, week_id)
            raise ConcurrencyConflict(
                f"Otra importación de {platform.value} para {week_id} terminó primero; reintente",
                week_id=week_id)
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(batch)
        logger.info(
            "[%s %s] Lote %s importado: %d registros, %d omitidos, %d sin conductor",
            platform.value, week_id, batch.id, batch.record_count, batch.skipped_count, batch.unmapped_count)
        return ImportReport(
            batch_id=batch.id,
            platform=platform,
            week_id=week_id,
            row_count=result.row_count,
            record_count=len(result.records),
            skipped_count=skipped_count,
            unmapped_count=result.unmapped_count,
            skipped=result.skipped,
            unmapped=result.unmapped,
            superseded_batch_id=previous.id if previous else None,
        )

    def import_batch(
        self,
        platform: Platform,
        week_id: str,
        rows: List[RawRecord],
        imported_by: Optional[str] = None,
        source_name: Optional[str] = None,
    ) -> ImportReport:
        """
        Importa un lote (plataforma, semana).

        Reimportar una semana no pagada reemplaza el lote anterior; reimportar
        una semana con liquidaciones pagadas lanza SettlementFrozen sin efectos.
        """
        platform = Platform(platform)
        week = str(WeekIdentifier.parse(week_id))
        result = normalize_batch(platform, week, rows, self.build_lookup())
        return self._replace_batch(platform, week, result, imported_by, source_name)

    def reresolve_batch(self, platform: Platform, week_id: str,
                        imported_by: Optional[str] = None) -> ImportReport:
        """
        Vuelve a resolver los conductores del lote activo con el registro
        actual (por ejemplo, después de registrar una tarjeta que faltaba).
        """
        platform = Platform(platform)
        week = str(WeekIdentifier.parse(week_id))
        current = self.get_active_batch(platform, week)
        if not current:
            raise HTTPException(status_code=404, detail="No active import batch for this platform and week")

        lookup = self.build_lookup()
        records = self.active_records(week, platform)
        result = NormalizationResult(platform=platform, week_id=week, row_count=current.row_count)
        for index, record in enumerate(records):
            driver_id = lookup.resolve(platform, record.reference_key, record.reference_label)
            if driver_id is None:
                result.unmapped.append(UnmappedRow(
                    index=index,
                    platform=platform,
                    reference_key=record.reference_key,
                    reference_label=record.reference_label,
                    amount=record.amount,
                    kind=record.kind,
                ))
            result.records.append(NormalizedEarningRecordBase(
                platform=platform,
                week_id=week,
                reference_key=record.reference_key,
                reference_label=record.reference_label,
                driver_id=driver_id,
                amount=record.amount,
                kind=record.kind,
                trip_count=record.trip_count,
                source_timestamp=record.source_timestamp,
            ))
        return self._replace_batch(
            platform, week, result, imported_by, source_name=f"reresolve:{current.id}",
            carried_skipped=current.skipped_count)

    def week_aggregate(self, week_id: str) -> WeekAggregate:
        week = str(WeekIdentifier.parse(week_id))
        return aggregate_week(week, self.active_records(week))

    def list_batches(self, week_id: str) -> List[ImportBatch]:
        week = str(WeekIdentifier.parse(week_id))
        return list(self.session.exec(
            select(ImportBatch)
            .where(ImportBatch.week_id == week)
            .order_by(ImportBatch.imported_at.desc())
        ).all())
