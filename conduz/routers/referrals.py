from uuid import UUID

from fastapi import APIRouter, Depends, status

from conduz.core.db import SessionDep
from conduz.core.dependencies.admin_auth import get_current_admin
from conduz.models.referral_chain import ReferralLink, ReferralLinkCreate
from conduz.services.referral_service import ReferralService

router = APIRouter(prefix="/referrals", tags=["ADMIN: Referrals"])


@router.post("/", response_model=ReferralLink, status_code=status.HTTP_201_CREATED, description="""
Registra que `recruiter_id` refirió a `recruit_id`. Un conductor tiene un solo
reclutador y no se permiten ciclos.
""")
def create_link(data: ReferralLinkCreate, session: SessionDep, current_admin=Depends(get_current_admin)):
    return ReferralService(session).link(data)


@router.post("/{recruit_id}/deactivate", response_model=ReferralLink)
def deactivate_link(recruit_id: UUID, session: SessionDep, current_admin=Depends(get_current_admin)):
    return ReferralService(session).deactivate(recruit_id)


@router.get("/{driver_id}/tree")
def referral_tree(driver_id: UUID, session: SessionDep, max_levels: int = 3,
                  current_admin=Depends(get_current_admin)):
    """Referidos del conductor agrupados por nivel."""
    return ReferralService(session).tree(driver_id, max_levels)
