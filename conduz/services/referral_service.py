import logging
from datetime import datetime
from typing import Dict, List
from uuid import UUID

from fastapi import HTTPException, status
from sqlmodel import Session, select

from conduz.models.driver import Driver
from conduz.models.referral_chain import ReferralLink, ReferralLinkCreate, ReferralStatus
from conduz.services.commission_service import ReferralForest

logger = logging.getLogger(__name__)


class ReferralService:
    def __init__(self, session: Session):
        self.session = session

    def forest(self) -> ReferralForest:
        return ReferralForest(self.session.exec(select(ReferralLink)).all())

    def link(self, data: ReferralLinkCreate) -> ReferralLink:
        """
        Registra quién refirió a un conductor. Un referido tiene a lo sumo un
        reclutador y el enlace no puede cerrar un ciclo.
        """
        for driver_id in (data.recruiter_id, data.recruit_id):
            if not self.session.get(Driver, driver_id):
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Driver {driver_id} not found")

        existing = self.session.exec(
            select(ReferralLink).where(ReferralLink.recruit_id == data.recruit_id)
        ).first()
        if existing:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="El conductor ya tiene un reclutador registrado")
        if self.forest().would_create_cycle(data.recruiter_id, data.recruit_id):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="El enlace crearía un ciclo de referidos")

        link = ReferralLink(
            recruiter_id=data.recruiter_id,
            recruit_id=data.recruit_id,
            accepted_at=data.accepted_at or datetime.utcnow(),
        )
        self.session.add(link)
        self.session.commit()
        self.session.refresh(link)
        logger.info("Referido %s vinculado a %s", link.recruit_id, link.recruiter_id)
        return link

    def deactivate(self, recruit_id: UUID) -> ReferralLink:
        link = self.session.exec(
            select(ReferralLink).where(ReferralLink.recruit_id == recruit_id)
        ).first()
        if not link:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Referral link not found")
        link.status = ReferralStatus.INACTIVE
        link.updated_at = datetime.utcnow()
        self.session.add(link)
        self.session.commit()
        self.session.refresh(link)
        return link

    def tree(self, driver_id: UUID, max_levels: int = 3) -> Dict[str, List[str]]:
        """Referidos por nivel, desde los directos (nivel 1)."""
        levels = self.forest().descendants_by_level(driver_id, max_levels)
        return {f"level_{i}": [str(uid) for uid in ids] for i, ids in enumerate(levels, start=1)}
