"""
Orquestación de una ejecución de liquidación semanal.

Flujo: registros activos -> totales por conductor -> liquidación base ->
comisiones de referidos y bono por metas -> escritura protegida por conductor.

La escritura es compare-and-swap sobre `version` con `frozen == False` en la
misma sentencia UPDATE; cada conductor se confirma en su propia transacción y
un conductor con error nunca detiene el lote.
"""
import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from uuid import UUID

from fastapi import HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from conduz.core.config import settings
from conduz.models.driver import Driver
from conduz.models.financing import FinancingAgreement, FinancingStatus
from conduz.models.referral_chain import ReferralLink
from conduz.models.settings_config import CommissionConfig, FinancialConfig, GoalRule, ReferralConfig
from conduz.models.settlement import (
    AuditAction, DriverWeeklySettlement, FINANCIAL_FIELDS, SettlementAuditEntry, SettlementStatus
)
from conduz.services.commission_service import (
    CommissionLine, CommissionRules, GoalAward, ReferralForest,
    compute_referral_commissions, select_goal_bonus,
)
from conduz.services.config_service import get_latest_config
from conduz.services.import_service import ImportService
from conduz.services.payment_service import PaymentService
from conduz.services.settlement_calculator import (
    BaseSettlement, SettlementConfig, calculate_base_settlement
)
from conduz.services.week_aggregator import WeekAggregate, WeekTotals
from conduz.utils.errors import (
    ConcurrencyConflict, ConfigurationError, DataIntegrityError, SettlementFrozen
)
from conduz.utils.money import cents_to_euros
from conduz.utils.week import WeekIdentifier

logger = logging.getLogger(__name__)


class ComputedSettlement(BaseModel):
    base: BaseSettlement
    commission_lines: List[CommissionLine] = Field(default_factory=list)
    goal: Optional[GoalAward] = None
    source_batch_ids: Optional[str] = None

    @property
    def referral_commission(self) -> int:
        return sum(line.amount for line in self.commission_lines)

    @property
    def goal_bonus(self) -> int:
        return self.goal.amount if self.goal else 0

    @property
    def net_payout(self) -> int:
        return self.base.repasse + self.referral_commission + self.goal_bonus

    def financial_values(self) -> Dict[str, Any]:
        """Valores de los campos financieros tal como se guardan."""
        base = self.base
        return {
            "uber_total": base.uber_total,
            "bolt_total": base.bolt_total,
            "trip_revenue": base.trip_revenue,
            "tips_total": base.tips_total,
            "gross_revenue": base.gross_revenue,
            "vat_amount": base.vat_amount,
            "gross_minus_vat": base.gross_minus_vat,
            "admin_fee": base.admin_fee,
            "admin_fee_rule": base.admin_fee_rule,
            "fuel": base.fuel,
            "tolls": base.tolls,
            "rental": base.rental,
            "financing_deduction": base.financing_deduction,
            "financing_lines": [line.model_dump(mode="json") for line in base.financing_lines],
            "repasse": base.repasse,
            "referral_commission": self.referral_commission,
            "commission_lines": [line.model_dump(mode="json") for line in self.commission_lines],
            "goal_bonus": self.goal_bonus,
            "goal_rule_id": self.goal.rule_id if self.goal else None,
            "net_payout": self.net_payout,
            "trip_count": base.trip_count,
            "negative_payout": self.net_payout < 0,
        }


class DriverRunError(BaseModel):
    driver_id: Optional[UUID] = None
    error: str
    message: str


class RunReport(BaseModel):
    week_id: str
    created: List[UUID] = Field(default_factory=list)
    updated: List[UUID] = Field(default_factory=list)
    unchanged: List[UUID] = Field(default_factory=list)
    frozen: List[UUID] = Field(default_factory=list)
    conflicts: List[UUID] = Field(default_factory=list)
    errors: List[DriverRunError] = Field(default_factory=list)
    anomalies: List[UUID] = Field(default_factory=list)
    stale: List[UUID] = Field(default_factory=list)
    unreconciled_amount: int = 0
    unreconciled_count: int = 0
    unreconciled_by_platform: Dict[str, int] = Field(default_factory=dict)
    complete: bool = False


class WeekSummary(BaseModel):
    week_id: str
    week_start: str
    week_end: str
    settlements: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    gross_revenue: int = 0
    vat_amount: int = 0
    admin_fee: int = 0
    financing_deduction: int = 0
    referral_commission: int = 0
    goal_bonus: int = 0
    net_payout: int = 0
    negative_payouts: int = 0
    unreconciled_amount: int = 0
    unreconciled_count: int = 0
    reconciled: bool = True
    drivers_processed: int = 0
    configuration_errors: int = 0
    data_integrity_errors: int = 0
    errors: List[DriverRunError] = Field(default_factory=list)
    unsettled_drivers: List[UUID] = Field(default_factory=list)
    complete: bool = False


@dataclass
class RunInputs:
    """Entradas leídas una sola vez por ejecución."""

    week: WeekIdentifier
    aggregate: WeekAggregate
    drivers: Dict[UUID, Driver]
    agreements: Dict[UUID, List[FinancingAgreement]]
    config: SettlementConfig
    rules: CommissionRules
    goal_rules: List[GoalRule]
    forest: ReferralForest
    source_batch_ids: str = ""


EXPORT_COLUMNS = [
    "driver_id", "driver_name", "week_id", "status",
    "uber_total", "bolt_total", "tips_total", "gross_revenue", "vat_amount", "gross_minus_vat",
    "admin_fee", "admin_fee_rule", "fuel", "tolls", "rental", "financing_deduction",
    "repasse", "referral_commission", "goal_bonus", "net_payout", "trip_count",
    "negative_payout", "payment_date", "proof_of_payment_ref",
]

# campos que, si cambian, obligan a reescribir la liquidación
TRACKED_FIELDS = FINANCIAL_FIELDS + ("source_batch_ids",)

_EXPORT_AMOUNTS = {
    "uber_total", "bolt_total", "tips_total", "gross_revenue", "vat_amount", "gross_minus_vat",
    "admin_fee", "fuel", "tolls", "rental", "financing_deduction", "repasse",
    "referral_commission", "goal_bonus", "net_payout",
}


class SettlementService:
    def __init__(self, session: Session):
        self.session = session

    # Lectura

    def get_settlement(self, week_id: str, driver_id: UUID) -> DriverWeeklySettlement:
        week = WeekIdentifier.parse(week_id)
        settlement = self._find(driver_id, str(week))
        if not settlement:
            raise HTTPException(status_code=404, detail="Settlement not found")
        return settlement

    def list_settlements(self, week_id: str, status: Optional[SettlementStatus] = None) -> List[DriverWeeklySettlement]:
        week = WeekIdentifier.parse(week_id)
        query = select(DriverWeeklySettlement).where(DriverWeeklySettlement.week_id == str(week))
        if status is not None:
            query = query.where(DriverWeeklySettlement.status == status)
        return list(self.session.exec(query.order_by(DriverWeeklySettlement.created_at)).all())

    def _find(self, driver_id: UUID, week_id: str) -> Optional[DriverWeeklySettlement]:
        return self.session.exec(
            select(DriverWeeklySettlement)
            .where(DriverWeeklySettlement.driver_id == driver_id)
            .where(DriverWeeklySettlement.week_id == week_id)
        ).first()

    # Cálculo

    def load_inputs(self, week: WeekIdentifier) -> RunInputs:
        """Identidades y configuración se vuelven a leer en cada ejecución."""
        aggregate = ImportService(self.session).week_aggregate(str(week))

        agreements: Dict[UUID, List[FinancingAgreement]] = {}
        for agreement in self.session.exec(
            select(FinancingAgreement).where(FinancingAgreement.status == FinancingStatus.ACTIVE)
        ).all():
            agreements.setdefault(agreement.driver_id, []).append(agreement)

        driver_ids = set(aggregate.totals) | set(agreements)
        drivers = {}
        if driver_ids:
            drivers = {
                driver.id: driver
                for driver in self.session.exec(select(Driver).where(Driver.id.in_(list(driver_ids)))).all()
            }

        financial = get_latest_config(self.session, FinancialConfig)
        if financial is None:
            logger.warning("[%s] No hay configuración financiera; todos los conductores fallarán", week)
        commission = get_latest_config(self.session, CommissionConfig)
        referral = get_latest_config(self.session, ReferralConfig)
        if commission is None or referral is None:
            logger.warning("[%s] Sin configuración de comisiones; no se pagarán comisiones", week)
            rules = CommissionRules(level_percents={}, max_levels=0)
        else:
            rules = CommissionRules.from_models(commission, referral)

        return RunInputs(
            week=week,
            aggregate=aggregate,
            drivers=drivers,
            agreements=agreements,
            config=SettlementConfig.from_model(financial) if financial else SettlementConfig(),
            rules=rules,
            goal_rules=list(self.session.exec(
                select(GoalRule).where(GoalRule.is_active == True)  # noqa: E712
            ).all()),
            forest=ReferralForest(self.session.exec(select(ReferralLink)).all()),
            source_batch_ids=PaymentService(self.session).source_fingerprint(str(week)),
        )

    def compute_week(self, inputs: RunInputs, report: RunReport) -> Dict[UUID, ComputedSettlement]:
        """
        Cálculo puro de la semana. Los errores por conductor se acumulan en
        el reporte; el conductor con error queda fuera del lote.
        """
        week_id = str(inputs.week)
        bases: Dict[UUID, BaseSettlement] = {}
        target_ids = set(inputs.aggregate.totals) | set(inputs.agreements)

        for driver_id in sorted(target_ids, key=str):
            driver = inputs.drivers.get(driver_id)
            try:
                if driver is None:
                    raise DataIntegrityError("Registros asociados a un conductor inexistente",
                                             driver_id=driver_id, week_id=week_id)
                totals = inputs.aggregate.totals.get(driver_id) or WeekTotals(driver_id=driver_id, week_id=week_id)
                base = calculate_base_settlement(
                    driver, totals, inputs.agreements.get(driver_id, []), inputs.config)
                if driver_id not in inputs.aggregate.totals and not base.financing_lines:
                    # sin registros ni cuotas esta semana
                    continue
                bases[driver_id] = base
            except (ConfigurationError, DataIntegrityError) as e:
                logger.warning("[%s] Conductor %s omitido: %s", week_id, driver_id, e.message)
                report.errors.append(DriverRunError(
                    driver_id=driver_id, error=type(e).__name__, message=e.message))

        credited = compute_referral_commissions(week_id, bases, inputs.forest, inputs.rules)

        computed = {}
        for driver_id, base in bases.items():
            goal = select_goal_bonus(week_id, base.gross_revenue, base.trip_count, inputs.goal_rules)
            computed[driver_id] = ComputedSettlement(
                base=base,
                commission_lines=credited.get(driver_id, []),
                goal=goal,
                source_batch_ids=inputs.source_batch_ids,
            )
        return computed

    # Escritura protegida

    def _audit(self, settlement_id: UUID, action: AuditAction, detail: Optional[str] = None,
               actor: Optional[str] = None) -> None:
        self.session.add(SettlementAuditEntry(
            settlement_id=settlement_id, action=action, detail=detail, actor=actor))

    def write_settlement(self, week: WeekIdentifier, computed: ComputedSettlement,
                         actor: Optional[str] = None) -> str:
        """
        Inserta o actualiza la liquidación de un conductor.

        Devuelve "created", "updated", "unchanged" o "frozen". Solo se escribe
        cuando cambia algún campo financiero o el conjunto de lotes de origen,
        así recalcular con las mismas entradas deja la fila intacta.

        Raises:
            ConcurrencyConflict: otro proceso ganó todas las carreras
        """
        driver_id = computed.base.driver_id
        values = computed.financial_values()
        values["source_batch_ids"] = computed.source_batch_ids
        attempts = max(settings.SETTLEMENT_WRITE_RETRIES, 0) + 1

        for attempt in range(attempts):
            existing = self._find(driver_id, str(week))
            if existing is None:
                settlement = DriverWeeklySettlement(
                    driver_id=driver_id,
                    week_id=str(week),
                    week_start=week.start,
                    week_end=week.end,
                    **values,
                )
                try:
                    self.session.add(settlement)
                    self.session.flush()
                    self._audit(settlement.id, AuditAction.COMPUTED, actor=actor)
                    self.session.commit()
                    return "created"
                except IntegrityError:
                    # otro proceso insertó la misma (conductor, semana)
                    self.session.rollback()
                    logger.info("[%s] Inserción concurrente para %s (intento %d)", week, driver_id, attempt + 1)
                    continue

            if existing.frozen:
                return "frozen"
            if all(getattr(existing, field) == values[field] for field in TRACKED_FIELDS):
                return "unchanged"

            result = self.session.execute(
                update(DriverWeeklySettlement)
                .where(DriverWeeklySettlement.id == existing.id)
                .where(DriverWeeklySettlement.version == existing.version)
                .where(DriverWeeklySettlement.frozen == False)  # noqa: E712
                .values(version=existing.version + 1, computed_at=datetime.utcnow(),
                        updated_at=datetime.utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self._audit(existing.id, AuditAction.RECOMPUTED,
                            detail=f"version {existing.version + 1}", actor=actor)
                self.session.commit()
                return "updated"
            self.session.rollback()
            logger.info("[%s] Versión desactualizada para %s (intento %d)", week, driver_id, attempt + 1)

        raise ConcurrencyConflict(
            "La liquidación fue modificada por otro proceso", driver_id=driver_id, week_id=str(week))

    def recompute_week(self, week_id: str, driver_id: Optional[UUID] = None,
                       actor: Optional[str] = None) -> RunReport:
        """
        Recalcula la semana (o un solo conductor) y escribe el resultado.

        Las comisiones dependen de toda la semana, por eso el cálculo siempre
        cubre a todos los conductores aunque solo se escriba uno.

        Raises:
            DataIntegrityError: semana mal formada
            SettlementFrozen: recálculo de un único conductor ya pagado o cancelado
        """
        week = WeekIdentifier.parse(week_id)
        inputs = self.load_inputs(week)
        aggregate = inputs.aggregate
        report = RunReport(
            week_id=str(week),
            unreconciled_amount=aggregate.unreconciled_amount,
            unreconciled_count=aggregate.unreconciled_count,
            unreconciled_by_platform={
                platform: item.amount for platform, item in aggregate.unreconciled.items()},
        )
        if aggregate.unreconciled_count:
            logger.warning("[%s] %d registros sin conductor (%d centavos)",
                           week, aggregate.unreconciled_count, aggregate.unreconciled_amount)

        computed = self.compute_week(inputs, report)

        if driver_id is not None:
            report.errors = [e for e in report.errors if e.driver_id == driver_id]
            if driver_id not in computed and not report.errors:
                raise HTTPException(status_code=404, detail="Driver has no records for this week")
            targets = {driver_id: computed[driver_id]} if driver_id in computed else {}
        else:
            targets = computed

        buckets = {
            "created": report.created,
            "updated": report.updated,
            "unchanged": report.unchanged,
            "frozen": report.frozen,
        }
        for target_id in sorted(targets, key=str):
            item = targets[target_id]
            try:
                outcome = self.write_settlement(week, item, actor=actor)
            except ConcurrencyConflict as e:
                logger.warning("[%s] Conflicto al escribir %s: %s", week, target_id, e.message)
                report.conflicts.append(target_id)
                if driver_id is not None:
                    raise
                continue
            if outcome == "frozen" and driver_id is not None:
                raise SettlementFrozen(
                    "La liquidación ya está congelada", driver_id=target_id, week_id=str(week))
            buckets[outcome].append(target_id)
            if item.net_payout < 0:
                report.anomalies.append(target_id)

        if driver_id is None:
            report.stale = self._stale_settlements(str(week), set(computed) | {
                e.driver_id for e in report.errors if e.driver_id})

        report.complete = (
            not report.errors
            and not report.conflicts
            and aggregate.is_reconciled(settings.UNRECONCILED_MATERIALITY_CENTS)
        )
        logger.info(
            "[%s] Recalculo: %d nuevas, %d actualizadas, %d sin cambios, %d congeladas, %d errores",
            week, len(report.created), len(report.updated), len(report.unchanged),
            len(report.frozen), len(report.errors))
        return report

    def _stale_settlements(self, week_id: str, current: Set[UUID]) -> List[UUID]:
        """Liquidaciones pendientes cuyo conductor ya no tiene datos en la semana."""
        pending = self.session.exec(
            select(DriverWeeklySettlement)
            .where(DriverWeeklySettlement.week_id == week_id)
            .where(DriverWeeklySettlement.status == SettlementStatus.PENDING)
        ).all()
        stale = [s.id for s in pending if s.driver_id not in current]
        for settlement_id in stale:
            logger.warning("[%s] Liquidación %s sin registros de origen", week_id, settlement_id)
        return stale

    # Reportes

    def week_summary(self, week_id: str) -> WeekSummary:
        """
        Totales de la semana a partir de las liquidaciones guardadas.

        Además recalcula la semana en seco (sin escribir) para informar los
        conductores procesables, los que fallan por configuración o datos y los
        que todavía no tienen liquidación; la semana está completa solo si no
        hay errores, todos tienen liquidación y está conciliada.
        """
        week = WeekIdentifier.parse(week_id)
        inputs = self.load_inputs(week)
        aggregate = inputs.aggregate
        dry_run = RunReport(week_id=str(week))
        computed = self.compute_week(inputs, dry_run)

        summary = WeekSummary(
            week_id=str(week),
            week_start=week.start.isoformat(),
            week_end=week.end.isoformat(),
            unreconciled_amount=aggregate.unreconciled_amount,
            unreconciled_count=aggregate.unreconciled_count,
            reconciled=aggregate.is_reconciled(settings.UNRECONCILED_MATERIALITY_CENTS),
            drivers_processed=len(computed),
            configuration_errors=sum(1 for e in dry_run.errors if e.error == ConfigurationError.__name__),
            data_integrity_errors=sum(1 for e in dry_run.errors if e.error == DataIntegrityError.__name__),
            errors=dry_run.errors,
        )
        settled = set()
        for settlement in self.list_settlements(str(week)):
            status = SettlementStatus(settlement.status).value
            settled.add(settlement.driver_id)
            summary.settlements += 1
            summary.by_status[status] = summary.by_status.get(status, 0) + 1
            if status == SettlementStatus.CANCELLED.value:
                continue
            summary.gross_revenue += settlement.gross_revenue
            summary.vat_amount += settlement.vat_amount
            summary.admin_fee += settlement.admin_fee
            summary.financing_deduction += settlement.financing_deduction
            summary.referral_commission += settlement.referral_commission
            summary.goal_bonus += settlement.goal_bonus
            summary.net_payout += settlement.net_payout
            if settlement.negative_payout:
                summary.negative_payouts += 1

        summary.unsettled_drivers = sorted((d for d in computed if d not in settled), key=str)
        summary.complete = (
            summary.reconciled
            and not summary.errors
            and not summary.unsettled_drivers
        )
        return summary

    def export_rows(self, week_id: str) -> List[Dict[str, Any]]:
        settlements = self.list_settlements(week_id)
        names = {}
        if settlements:
            names = {
                driver.id: driver.full_name
                for driver in self.session.exec(
                    select(Driver).where(Driver.id.in_(list({s.driver_id for s in settlements})))
                ).all()
            }
        rows = []
        for settlement in settlements:
            row = {}
            for column in EXPORT_COLUMNS:
                if column == "driver_name":
                    value = names.get(settlement.driver_id, "")
                elif column == "status":
                    value = SettlementStatus(settlement.status).value
                else:
                    value = getattr(settlement, column)
                if column in _EXPORT_AMOUNTS:
                    value = cents_to_euros(value)
                row[column] = "" if value is None else value
            rows.append(row)
        return rows

    def export_csv(self, week_id: str) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        writer.writerows(self.export_rows(week_id))
        return buffer.getvalue()
