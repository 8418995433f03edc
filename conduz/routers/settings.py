from typing import List

from fastapi import APIRouter, Depends, status

from conduz.core.db import SessionDep
from conduz.core.dependencies.admin_auth import get_current_admin
from conduz.models.settings_config import (
    CommissionConfig, CommissionConfigUpdate,
    FinancialConfig, FinancialConfigUpdate,
    GoalRule, GoalRuleCreate, GoalRuleUpdate,
    ReferralConfig, ReferralConfigUpdate,
)
from conduz.services import config_service

router = APIRouter(prefix="/settings", tags=["ADMIN: Settings"])


@router.get("/financial", response_model=FinancialConfig)
def get_financial(session: SessionDep, current_admin=Depends(get_current_admin)):
    return config_service.get_config_or_404(session, FinancialConfig)


@router.put("/financial", response_model=FinancialConfig, description="""
Crea una nueva versión de la configuración financiera. Solo envía los campos
que quieres cambiar; el resto se copia de la versión actual.

**Ejemplo:**
```json
{
    "vat_rate": "6",
    "renter_admin_fee_percent": "4",
    "toll_markup_percent": "0"
}
```
""")
def update_financial(data: FinancialConfigUpdate, session: SessionDep,
                     current_admin=Depends(get_current_admin)):
    return config_service.update_financial_config(session, data, updated_by=current_admin.get("sub"))


@router.get("/commission", response_model=CommissionConfig)
def get_commission(session: SessionDep, current_admin=Depends(get_current_admin)):
    return config_service.get_config_or_404(session, CommissionConfig)


@router.put("/commission", response_model=CommissionConfig, description="""
Porcentajes por nivel de referido, mínimo semanal para cobrar comisiones y
base de cálculo (`repasse` o `ganhosMenosIVA`).
""")
def update_commission(data: CommissionConfigUpdate, session: SessionDep,
                      current_admin=Depends(get_current_admin)):
    return config_service.update_commission_config(session, data, updated_by=current_admin.get("sub"))


@router.get("/referral", response_model=ReferralConfig)
def get_referral(session: SessionDep, current_admin=Depends(get_current_admin)):
    return config_service.get_config_or_404(session, ReferralConfig)


@router.put("/referral", response_model=ReferralConfig)
def update_referral(data: ReferralConfigUpdate, session: SessionDep,
                    current_admin=Depends(get_current_admin)):
    return config_service.update_referral_config(session, data, updated_by=current_admin.get("sub"))


@router.get("/goals", response_model=List[GoalRule])
def list_goals(session: SessionDep, active_only: bool = False, current_admin=Depends(get_current_admin)):
    return config_service.list_goal_rules(session, active_only)


@router.post("/goals", response_model=GoalRule, status_code=status.HTTP_201_CREATED, description="""
Crea una regla de meta. Si varias reglas se cumplen en la semana gana la de
mayor `priority_level`; los bonos no se suman. `reward_value` se expresa en
centavos para `fixed` y en porcentaje del ingreso bruto para `percent`.
""")
def create_goal(data: GoalRuleCreate, session: SessionDep, current_admin=Depends(get_current_admin)):
    return config_service.create_goal_rule(session, data)


@router.patch("/goals/{rule_id}", response_model=GoalRule)
def update_goal(rule_id: int, data: GoalRuleUpdate, session: SessionDep,
                current_admin=Depends(get_current_admin)):
    return config_service.update_goal_rule(session, rule_id, data)
