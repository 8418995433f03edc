from sqlmodel import SQLModel, Field
from typing import Optional
from enum import Enum
from uuid import UUID, uuid4
from datetime import datetime


class ReferralStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ReferralLink(SQLModel, table=True):
    __tablename__ = "referral_link"
    id: Optional[UUID] = Field(default_factory=uuid4, primary_key=True, unique=True)
    recruit_id: UUID = Field(foreign_key="driver.id", unique=True)    # conductor referido (hijo)
    recruiter_id: UUID = Field(foreign_key="driver.id", index=True)   # quién lo refirió (padre)
    status: ReferralStatus = Field(default=ReferralStatus.ACTIVE)
    accepted_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
        sa_column_kwargs={"onupdate": datetime.utcnow}
    )


class ReferralLinkCreate(SQLModel):
    recruiter_id: UUID
    recruit_id: UUID
    accepted_at: Optional[datetime] = None
