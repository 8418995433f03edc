"""
Comisiones de referidos multinivel y bonos por metas.

Comisiones: se recorre la cadena de ancestros del referido hasta
`max_levels`. Cada nivel se evalúa de forma independiente; un ancestro no
elegible no corta la cadena.

Metas: si varias reglas se cumplen gana la de mayor `priority_level`; los
bonos no se suman (decisión de negocio). Con la misma prioridad gana el id de
regla más bajo.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from pydantic import BaseModel, Field

from conduz.models.referral_chain import ReferralLink, ReferralStatus
from conduz.models.settings_config import (
    CalculationBase, CommissionConfig, GoalCriterion, GoalRule, ReferralConfig, RewardType
)
from conduz.services.settlement_calculator import BaseSettlement
from conduz.utils.errors import ConfigurationError
from conduz.utils.money import percent_of, to_cents
from conduz.utils.week import WeekIdentifier

logger = logging.getLogger(__name__)


class CommissionRules(BaseModel):
    min_weekly_revenue_for_eligibility: int = 0
    calculation_base: CalculationBase = CalculationBase.REPASSE
    level_percents: Dict[int, Decimal] = Field(default_factory=dict)
    max_levels: int = 3
    min_weeks_to_pay_bonus: int = 0

    @classmethod
    def from_models(cls, commission: CommissionConfig, referral: ReferralConfig) -> "CommissionRules":
        try:
            levels = {int(level): Decimal(str(pct)) for level, pct in (commission.level_percents or {}).items()}
        except (ValueError, ArithmeticError):
            raise ConfigurationError("Porcentajes por nivel inválidos en la configuración de comisiones")
        if referral.max_levels is None or referral.max_levels < 0:
            raise ConfigurationError("max_levels inválido en la configuración de referidos")
        return cls(
            min_weekly_revenue_for_eligibility=commission.min_weekly_revenue_for_eligibility or 0,
            calculation_base=commission.calculation_base,
            level_percents=levels,
            max_levels=referral.max_levels,
            min_weeks_to_pay_bonus=referral.min_weeks_to_pay_bonus or 0,
        )


class ReferralForest:
    """Bosque de referidos: cada referido tiene a lo sumo un reclutador."""

    def __init__(self, links: Iterable[ReferralLink]):
        self._parents: Dict[UUID, Tuple[UUID, datetime]] = {}
        self._children: Dict[UUID, List[UUID]] = {}
        for link in links:
            if ReferralStatus(link.status) != ReferralStatus.ACTIVE:
                continue
            self._parents[link.recruit_id] = (link.recruiter_id, link.accepted_at)
            self._children.setdefault(link.recruiter_id, []).append(link.recruit_id)

    def recruiter_of(self, recruit_id: UUID) -> Optional[UUID]:
        parent = self._parents.get(recruit_id)
        return parent[0] if parent else None

    def accepted_at(self, recruit_id: UUID) -> Optional[datetime]:
        parent = self._parents.get(recruit_id)
        return parent[1] if parent else None

    def ancestors(self, recruit_id: UUID, max_levels: int) -> List[Tuple[UUID, int]]:
        """Pares (ancestro, nivel) desde el reclutador directo (nivel 1)."""
        chain = []
        seen: Set[UUID] = {recruit_id}
        current = recruit_id
        for level in range(1, max_levels + 1):
            parent = self.recruiter_of(current)
            if parent is None or parent in seen:
                break
            chain.append((parent, level))
            seen.add(parent)
            current = parent
        return chain

    def would_create_cycle(self, recruiter_id: UUID, recruit_id: UUID) -> bool:
        if recruiter_id == recruit_id:
            return True
        current = recruiter_id
        seen: Set[UUID] = set()
        while current is not None and current not in seen:
            if current == recruit_id:
                return True
            seen.add(current)
            current = self.recruiter_of(current)
        return False

    def descendants_by_level(self, driver_id: UUID, max_levels: int) -> List[List[UUID]]:
        levels: List[List[UUID]] = []
        current_level = list(self._children.get(driver_id, []))
        for _ in range(max_levels):
            if not current_level:
                break
            levels.append(current_level)
            next_level = []
            for uid in current_level:
                next_level.extend(self._children.get(uid, []))
            current_level = next_level
        return levels


class CommissionLine(BaseModel):
    ancestor_id: UUID
    recruit_id: UUID
    level: int
    percent: Decimal
    base_amount: int
    amount: int


def weeks_linked(accepted_at: Optional[datetime], week: WeekIdentifier) -> int:
    if accepted_at is None:
        return 0
    days = (week.end - accepted_at.date()).days
    return max(days // 7, 0)


def commission_base(settlement: BaseSettlement, base: CalculationBase) -> int:
    if CalculationBase(base) == CalculationBase.GANHOS_MENOS_IVA:
        amount = settlement.gross_minus_vat
    else:
        amount = settlement.repasse
    return max(amount, 0)


def compute_referral_commissions(
    week_id: str,
    base_settlements: Dict[UUID, BaseSettlement],
    forest: ReferralForest,
    rules: CommissionRules,
) -> Dict[UUID, List[CommissionLine]]:
    """
    Calcula las comisiones que recibe cada ancestro en la semana.

    Args:
        week_id: Semana ISO
        base_settlements: Liquidaciones base de la semana por conductor
        forest: Bosque de referidos activo
        rules: Reglas de comisión de esta ejecución

    Returns:
        Dict ancestro -> líneas de comisión acreditadas
    """
    week = WeekIdentifier.parse(week_id)
    credited: Dict[UUID, List[CommissionLine]] = {}

    for recruit_id in sorted(base_settlements, key=str):
        recruit = base_settlements[recruit_id]
        tenure_ok = weeks_linked(forest.accepted_at(recruit_id), week) >= rules.min_weeks_to_pay_bonus
        base_amount = commission_base(recruit, rules.calculation_base)

        for ancestor_id, level in forest.ancestors(recruit_id, rules.max_levels):
            ancestor = base_settlements.get(ancestor_id)
            ancestor_revenue = ancestor.gross_revenue if ancestor else None
            if ancestor_revenue is None or ancestor_revenue < rules.min_weekly_revenue_for_eligibility:
                logger.debug("Ancestro %s no elegible en %s para %s", ancestor_id, week_id, recruit_id)
                continue
            if not tenure_ok:
                continue
            percent = rules.level_percents.get(level)
            if not percent:
                continue
            amount = percent_of(base_amount, percent)
            if amount == 0:
                continue
            credited.setdefault(ancestor_id, []).append(CommissionLine(
                ancestor_id=ancestor_id,
                recruit_id=recruit_id,
                level=level,
                percent=percent,
                base_amount=base_amount,
                amount=amount,
            ))

    return credited


class GoalAward(BaseModel):
    rule_id: int
    priority_level: int
    criterion: GoalCriterion
    amount: int


def is_rule_active(rule: GoalRule, week: WeekIdentifier) -> bool:
    if not rule.is_active:
        return False
    return rule.starts_on is None or rule.starts_on <= week.end


def rule_satisfied(rule: GoalRule, gross_revenue: int, trip_count: int) -> bool:
    if GoalCriterion(rule.criterion) == GoalCriterion.GANHO:
        return gross_revenue >= rule.threshold
    return trip_count >= rule.threshold


def goal_reward(rule: GoalRule, gross_revenue: int) -> int:
    if RewardType(rule.reward_type) == RewardType.FIXED:
        return to_cents(rule.reward_value)
    return percent_of(gross_revenue, rule.reward_value)


def select_goal_bonus(
    week_id: str,
    gross_revenue: int,
    trip_count: int,
    rules: Iterable[GoalRule],
) -> Optional[GoalAward]:
    week = WeekIdentifier.parse(week_id)
    satisfied = [
        rule for rule in rules
        if is_rule_active(rule, week) and rule_satisfied(rule, gross_revenue, trip_count)
    ]
    if not satisfied:
        return None
    winner = sorted(satisfied, key=lambda r: (-r.priority_level, r.id))[0]
    return GoalAward(
        rule_id=winner.id,
        priority_level=winner.priority_level,
        criterion=winner.criterion,
        amount=goal_reward(winner, gross_revenue),
    )
