from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON
from typing import Optional, Dict
from enum import Enum
from datetime import datetime, date
from decimal import Decimal


class FinancingEligibilityPolicy(str, Enum):
    START_DATE_TO_WEEK_END = "start_date_to_week_end"
    START_DATE_TO_WEEK_START = "start_date_to_week_start"


class CalculationBase(str, Enum):
    REPASSE = "repasse"                # pago neto del referido
    GANHOS_MENOS_IVA = "ganhosMenosIVA"  # ganancias brutas sin IVA


class GoalCriterion(str, Enum):
    GANHO = "ganho"      # umbral de ganancias brutas (centavos)
    VIAGENS = "viagens"  # umbral de número de viajes


class RewardType(str, Enum):
    FIXED = "fixed"
    PERCENT = "percent"


# Las configuraciones son versionadas: cada actualización crea una fila nueva
# y el cálculo usa siempre la versión más alta.

class FinancialConfigBase(SQLModel):
    vat_rate: Optional[Decimal] = Field(default=Decimal("6"), max_digits=6, decimal_places=3)
    legacy_admin_fee_percent: Optional[Decimal] = Field(default=Decimal("7"), max_digits=6, decimal_places=3)
    renter_admin_fee_percent: Optional[Decimal] = Field(default=Decimal("4"), max_digits=6, decimal_places=3)
    affiliate_admin_fee_fixed: Optional[Decimal] = Field(default=Decimal("25"), max_digits=10, decimal_places=2)  # euros
    toll_markup_percent: Decimal = Field(default=Decimal("0"), max_digits=6, decimal_places=3)
    financing_eligibility_policy: FinancingEligibilityPolicy = Field(
        default=FinancingEligibilityPolicy.START_DATE_TO_WEEK_END)


class FinancialConfig(FinancialConfigBase, table=True):
    __tablename__ = "financial_config"
    id: Optional[int] = Field(default=None, primary_key=True)
    version: int = Field(default=1, index=True)
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class FinancialConfigUpdate(SQLModel):
    vat_rate: Optional[Decimal] = None
    legacy_admin_fee_percent: Optional[Decimal] = None
    renter_admin_fee_percent: Optional[Decimal] = None
    affiliate_admin_fee_fixed: Optional[Decimal] = None
    toll_markup_percent: Optional[Decimal] = None
    financing_eligibility_policy: Optional[FinancingEligibilityPolicy] = None


class CommissionConfigBase(SQLModel):
    min_weekly_revenue_for_eligibility: int = Field(default=55000)  # centavos
    calculation_base: CalculationBase = Field(default=CalculationBase.REPASSE)
    # nivel -> porcentaje ("1": "2" significa 2% en el nivel 1)
    level_percents: Dict[str, str] = Field(
        default_factory=lambda: {"1": "2", "2": "1", "3": "0.5"},
        sa_column=Column(JSON))


class CommissionConfig(CommissionConfigBase, table=True):
    __tablename__ = "commission_config"
    id: Optional[int] = Field(default=None, primary_key=True)
    version: int = Field(default=1, index=True)
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class CommissionConfigUpdate(SQLModel):
    min_weekly_revenue_for_eligibility: Optional[int] = None
    calculation_base: Optional[CalculationBase] = None
    level_percents: Optional[Dict[int, Decimal]] = None


class ReferralConfigBase(SQLModel):
    max_levels: int = Field(default=3)
    min_weeks_to_pay_bonus: int = Field(default=0)


class ReferralConfig(ReferralConfigBase, table=True):
    __tablename__ = "referral_config"
    id: Optional[int] = Field(default=None, primary_key=True)
    version: int = Field(default=1, index=True)
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class ReferralConfigUpdate(SQLModel):
    max_levels: Optional[int] = None
    min_weeks_to_pay_bonus: Optional[int] = None


class GoalRuleBase(SQLModel):
    criterion: GoalCriterion
    threshold: int  # centavos para "ganho", viajes para "viagens"
    reward_type: RewardType
    reward_value: Decimal = Field(max_digits=10, decimal_places=2)  # centavos (fixed) o porcentaje (percent)
    priority_level: int = Field(default=1)
    description: Optional[str] = None
    starts_on: Optional[date] = None
    is_active: bool = Field(default=True)


class GoalRule(GoalRuleBase, table=True):
    __tablename__ = "goal_rule"
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
        sa_column_kwargs={"onupdate": datetime.utcnow}
    )


class GoalRuleCreate(GoalRuleBase):
    pass


class GoalRuleUpdate(SQLModel):
    criterion: Optional[GoalCriterion] = None
    threshold: Optional[int] = None
    reward_type: Optional[RewardType] = None
    reward_value: Optional[Decimal] = None
    priority_level: Optional[int] = None
    description: Optional[str] = None
    starts_on: Optional[date] = None
    is_active: Optional[bool] = None
