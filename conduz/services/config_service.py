from datetime import datetime
from typing import List, Optional, Type, TypeVar

from fastapi import HTTPException
from sqlmodel import Session, select

from conduz.models.settings_config import (
    CommissionConfig, CommissionConfigUpdate,
    FinancialConfig, FinancialConfigUpdate,
    GoalRule, GoalRuleCreate, GoalRuleUpdate,
    ReferralConfig, ReferralConfigUpdate,
)

ConfigT = TypeVar("ConfigT", FinancialConfig, CommissionConfig, ReferralConfig)

# columnas que no se copian entre versiones
_VERSION_COLUMNS = {"id", "version", "updated_by", "created_at"}


def get_latest_config(session: Session, model: Type[ConfigT]) -> Optional[ConfigT]:
    """Devuelve la versión más alta de la configuración, o None si no existe."""
    return session.exec(select(model).order_by(model.version.desc())).first()


def get_config_or_404(session: Session, model: Type[ConfigT]) -> ConfigT:
    config = get_latest_config(session, model)
    if not config:
        raise HTTPException(
            status_code=404,
            detail="No se encontró configuración. Ejecute la inicialización de datos.")
    return config


def _new_version(session: Session, model: Type[ConfigT], changes: dict,
                 updated_by: Optional[str]) -> ConfigT:
    """
    Crea una versión nueva de la configuración copiando la actual y
    aplicando solo los campos enviados. Las versiones anteriores no se modifican.
    """
    current = get_latest_config(session, model)
    values = {}
    if current:
        values = current.model_dump(exclude=_VERSION_COLUMNS)
    values.update(changes)

    config = model(
        **values,
        version=(current.version + 1) if current else 1,
        updated_by=updated_by,
        created_at=datetime.utcnow(),
    )
    try:
        session.add(config)
        session.commit()
        session.refresh(config)
        return config
    except Exception as e:
        session.rollback()
        raise HTTPException(status_code=500, detail=f"Error al actualizar configuración: {str(e)}")


def update_financial_config(session: Session, data: FinancialConfigUpdate,
                            updated_by: Optional[str] = None) -> FinancialConfig:
    for field in ("vat_rate", "legacy_admin_fee_percent", "renter_admin_fee_percent",
                  "affiliate_admin_fee_fixed", "toll_markup_percent"):
        value = getattr(data, field)
        if value is not None and value < 0:
            raise HTTPException(status_code=422, detail=f"{field} no puede ser negativo")
    return _new_version(session, FinancialConfig, data.model_dump(exclude_unset=True), updated_by)


def update_commission_config(session: Session, data: CommissionConfigUpdate,
                             updated_by: Optional[str] = None) -> CommissionConfig:
    changes = data.model_dump(exclude_unset=True)
    if data.level_percents is not None:
        levels = {}
        for level, percent in data.level_percents.items():
            if level < 1:
                raise HTTPException(status_code=422, detail="Los niveles empiezan en 1")
            if percent < 0:
                raise HTTPException(status_code=422, detail="Porcentaje de nivel negativo")
            levels[str(level)] = str(percent)
        # la columna JSON guarda niveles y porcentajes como texto
        changes["level_percents"] = levels
    if data.min_weekly_revenue_for_eligibility is not None and data.min_weekly_revenue_for_eligibility < 0:
        raise HTTPException(status_code=422, detail="El mínimo semanal no puede ser negativo")
    return _new_version(session, CommissionConfig, changes, updated_by)


def update_referral_config(session: Session, data: ReferralConfigUpdate,
                           updated_by: Optional[str] = None) -> ReferralConfig:
    if data.max_levels is not None and data.max_levels < 1:
        raise HTTPException(status_code=422, detail="max_levels debe ser al menos 1")
    if data.min_weeks_to_pay_bonus is not None and data.min_weeks_to_pay_bonus < 0:
        raise HTTPException(status_code=422, detail="min_weeks_to_pay_bonus no puede ser negativo")
    return _new_version(session, ReferralConfig, data.model_dump(exclude_unset=True), updated_by)


def list_goal_rules(session: Session, active_only: bool = False) -> List[GoalRule]:
    query = select(GoalRule)
    if active_only:
        query = query.where(GoalRule.is_active == True)  # noqa: E712
    return list(session.exec(query.order_by(GoalRule.priority_level.desc(), GoalRule.id)).all())


def _check_goal_values(threshold, reward_value) -> None:
    if (threshold is not None and threshold < 0) or (reward_value is not None and reward_value < 0):
        raise HTTPException(status_code=422, detail="Umbral y recompensa no pueden ser negativos")


def create_goal_rule(session: Session, data: GoalRuleCreate) -> GoalRule:
    _check_goal_values(data.threshold, data.reward_value)
    rule = GoalRule.model_validate(data)
    session.add(rule)
    session.commit()
    session.refresh(rule)
    return rule


def update_goal_rule(session: Session, rule_id: int, data: GoalRuleUpdate) -> GoalRule:
    rule = session.get(GoalRule, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Goal rule not found")
    _check_goal_values(data.threshold, data.reward_value)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(rule, field, value)
    rule.updated_at = datetime.utcnow()
    session.add(rule)
    session.commit()
    session.refresh(rule)
    return rule
