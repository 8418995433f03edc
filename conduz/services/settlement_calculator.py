"""
Cálculo base de la liquidación semanal de un conductor.

El orden de las operaciones es parte del contrato: cambiarlo cambia la base
imponible.

1. Ganancias brutas = viajes + propinas
2. Extracción de IVA: gross / (1 + IVA)
3. Comisión administrativa (una sola regla)
4. Gastos: combustible, peajes corregidos, alquiler (solo arrendatarios)
5. Financiamiento
6. Repasse = sin IVA - comisión - gastos - financiamiento
"""
import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, Field

from conduz.models.driver import AdminFeeMode, Driver, DriverType
from conduz.models.financing import FinancingAgreement, FinancingStatus, FinancingType
from conduz.models.settings_config import FinancialConfig, FinancingEligibilityPolicy
from conduz.services.week_aggregator import WeekTotals
from conduz.utils.errors import ConfigurationError, DataIntegrityError
from conduz.utils.money import euros_to_cents, percent_of, remove_percent
from conduz.utils.week import WeekIdentifier

logger = logging.getLogger(__name__)

# Reglas de comisión administrativa
RULE_OVERRIDE_FIXED = "override_fixed"
RULE_OVERRIDE_PERCENT = "override_percent"
RULE_RENTER_DEFAULT = "type_default_renter"
RULE_AFFILIATE_DEFAULT = "type_default_affiliate"
RULE_LEGACY = "legacy"


class SettlementConfig(BaseModel):
    """Foto de la configuración financiera usada en una ejecución."""
    vat_rate: Optional[Decimal] = None
    legacy_admin_fee_percent: Optional[Decimal] = None
    renter_admin_fee_percent: Optional[Decimal] = None
    affiliate_admin_fee_fixed: Optional[Decimal] = None
    toll_markup_percent: Decimal = Decimal("0")
    financing_eligibility_policy: FinancingEligibilityPolicy = FinancingEligibilityPolicy.START_DATE_TO_WEEK_END
    version: Optional[int] = None

    @classmethod
    def from_model(cls, config: FinancialConfig) -> "SettlementConfig":
        return cls(
            vat_rate=config.vat_rate,
            legacy_admin_fee_percent=config.legacy_admin_fee_percent,
            renter_admin_fee_percent=config.renter_admin_fee_percent,
            affiliate_admin_fee_fixed=config.affiliate_admin_fee_fixed,
            toll_markup_percent=config.toll_markup_percent or Decimal("0"),
            financing_eligibility_policy=config.financing_eligibility_policy,
            version=config.version,
        )


class FinancingLine(BaseModel):
    agreement_id: UUID
    type: FinancingType
    installment: int
    interest: int
    total: int
    remaining_weeks_before: Optional[int] = None
    remaining_weeks_after: Optional[int] = None
    completes: bool = False


class BaseSettlement(BaseModel):
    driver_id: UUID
    week_id: str
    uber_total: int = 0
    bolt_total: int = 0
    trip_revenue: int = 0
    tips_total: int = 0
    gross_revenue: int = 0
    vat_amount: int = 0
    gross_minus_vat: int = 0
    admin_fee: int = 0
    admin_fee_rule: str = RULE_LEGACY
    fuel: int = 0
    tolls: int = 0
    rental: int = 0
    financing_deduction: int = 0
    financing_lines: List[FinancingLine] = Field(default_factory=list)
    repasse: int = 0
    trip_count: int = 0

    @property
    def total_expenses(self) -> int:
        return self.fuel + self.tolls + self.rental

    @property
    def negative_payout(self) -> bool:
        return self.repasse < 0


def extract_vat(gross: int, vat_rate: Decimal) -> Tuple[int, int]:
    """Devuelve (gross_minus_vat, vat_amount); la suma siempre es gross."""
    gross_minus_vat = remove_percent(gross, vat_rate)
    return gross_minus_vat, gross - gross_minus_vat


def _require_percent(value, name: str, driver: Driver) -> Decimal:
    if value is None:
        raise ConfigurationError(f"Falta configurar {name}", driver_id=driver.id)
    value = Decimal(str(value))
    if value < 0:
        raise ConfigurationError(f"{name} no puede ser negativo", driver_id=driver.id)
    return value


def calculate_admin_fee(driver: Driver, gross_minus_vat: int, config: SettlementConfig) -> Tuple[int, str]:
    """
    Aplica exactamente una regla: override personal, valor por tipo de
    conductor o la tasa legada. Nunca se suman.
    """
    if driver.type is None:
        raise ConfigurationError("Conductor sin tipo configurado", driver_id=driver.id)
    driver_type = DriverType(driver.type)

    if driver.admin_fee_mode is not None:
        value = _require_percent(driver.admin_fee_value, "admin_fee_value", driver)
        if AdminFeeMode(driver.admin_fee_mode) == AdminFeeMode.FIXED:
            return euros_to_cents(value), RULE_OVERRIDE_FIXED
        return percent_of(gross_minus_vat, value), RULE_OVERRIDE_PERCENT

    if driver_type == DriverType.RENTER and config.renter_admin_fee_percent is not None:
        value = _require_percent(config.renter_admin_fee_percent, "renter_admin_fee_percent", driver)
        return percent_of(gross_minus_vat, value), RULE_RENTER_DEFAULT
    if driver_type == DriverType.AFFILIATE and config.affiliate_admin_fee_fixed is not None:
        value = _require_percent(config.affiliate_admin_fee_fixed, "affiliate_admin_fee_fixed", driver)
        return euros_to_cents(value), RULE_AFFILIATE_DEFAULT

    value = _require_percent(config.legacy_admin_fee_percent, "legacy_admin_fee_percent", driver)
    return percent_of(gross_minus_vat, value), RULE_LEGACY


def is_agreement_eligible(agreement: FinancingAgreement, week: WeekIdentifier,
                          policy: FinancingEligibilityPolicy) -> bool:
    if agreement.start_date is None:
        return True
    if FinancingEligibilityPolicy(policy) == FinancingEligibilityPolicy.START_DATE_TO_WEEK_START:
        return agreement.start_date <= week.start
    return agreement.start_date <= week.end


def calculate_financing(
    driver: Driver,
    agreements: Iterable[FinancingAgreement],
    week: WeekIdentifier,
    config: SettlementConfig,
) -> List[FinancingLine]:
    """
    Cuotas de financiamiento de la semana.

    El préstamo descuenta principal/semanas + interés y proyecta
    remaining_weeks - 1; el descuento cobra su monto fijo sin cuenta regresiva.
    El decremento real se registra al pagar la liquidación.
    """
    lines = []
    for agreement in sorted(agreements, key=lambda a: str(a.id)):
        if agreement.driver_id != driver.id:
            continue
        if FinancingStatus(agreement.status) != FinancingStatus.ACTIVE:
            continue
        if not is_agreement_eligible(agreement, week, config.financing_eligibility_policy):
            continue
        interest = agreement.weekly_interest or 0

        if FinancingType(agreement.type) == FinancingType.LOAN:
            if not agreement.weeks or agreement.weeks <= 0:
                raise ConfigurationError(
                    f"Préstamo {agreement.id} sin número de semanas", driver_id=driver.id)
            remaining = agreement.remaining_weeks if agreement.remaining_weeks is not None else agreement.weeks
            if remaining <= 0:
                continue
            # cuotas regulares redondeadas hacia abajo; la última absorbe el residuo
            installment = agreement.amount // agreement.weeks
            if remaining == 1:
                installment = agreement.amount - installment * (agreement.weeks - 1)
            lines.append(FinancingLine(
                agreement_id=agreement.id,
                type=FinancingType.LOAN,
                installment=installment,
                interest=interest,
                total=installment + interest,
                remaining_weeks_before=remaining,
                remaining_weeks_after=remaining - 1,
                completes=remaining - 1 == 0,
            ))
        else:
            lines.append(FinancingLine(
                agreement_id=agreement.id,
                type=FinancingType.DISCOUNT,
                installment=agreement.amount,
                interest=interest,
                total=agreement.amount + interest,
            ))
    return lines


def calculate_base_settlement(
    driver: Driver,
    totals: WeekTotals,
    agreements: Iterable[FinancingAgreement],
    config: SettlementConfig,
) -> BaseSettlement:
    week = WeekIdentifier.parse(totals.week_id)
    if config.vat_rate is None:
        raise ConfigurationError("Falta configurar la tasa de IVA", driver_id=driver.id, week_id=str(week))
    if totals.trip_count < 0:
        raise DataIntegrityError("Número de viajes negativo", driver_id=driver.id, week_id=str(week))

    # 1. Ganancias brutas
    gross = totals.trip_revenue + totals.tips
    if gross < 0:
        raise DataIntegrityError(
            f"Ganancias brutas negativas ({gross})", driver_id=driver.id, week_id=str(week))

    # 2. IVA
    gross_minus_vat, vat_amount = extract_vat(gross, Decimal(str(config.vat_rate)))

    # 3. Comisión administrativa
    admin_fee, admin_fee_rule = calculate_admin_fee(driver, gross_minus_vat, config)

    # 4. Gastos
    tolls = remove_percent(totals.tolls, config.toll_markup_percent) if config.toll_markup_percent else totals.tolls
    rental = (driver.rental_fee or 0) if DriverType(driver.type) == DriverType.RENTER else 0

    # 5. Financiamiento
    financing_lines = calculate_financing(driver, agreements, week, config)
    financing_deduction = sum(line.total for line in financing_lines)

    # 6. Repasse
    repasse = gross_minus_vat - admin_fee - totals.fuel - tolls - rental - financing_deduction

    settlement = BaseSettlement(
        driver_id=driver.id,
        week_id=str(week),
        uber_total=totals.revenue_by_platform.get("uber", 0),
        bolt_total=totals.revenue_by_platform.get("bolt", 0),
        trip_revenue=totals.trip_revenue,
        tips_total=totals.tips,
        gross_revenue=gross,
        vat_amount=vat_amount,
        gross_minus_vat=gross_minus_vat,
        admin_fee=admin_fee,
        admin_fee_rule=admin_fee_rule,
        fuel=totals.fuel,
        tolls=tolls,
        rental=rental,
        financing_deduction=financing_deduction,
        financing_lines=financing_lines,
        repasse=repasse,
        trip_count=totals.trip_count,
    )
    if settlement.negative_payout:
        # no se ajusta a cero: es una anomalía que debe revisarse
        logger.warning("[%s] Repasse negativo para conductor %s: %d", week, driver.id, repasse)
    return settlement
