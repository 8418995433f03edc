import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import HTTPException, status
from sqlmodel import Session, select

from conduz.models.driver import AdminFeeMode, Driver, DriverCreate, DriverStatus, DriverUpdate
from conduz.services.identity_resolver import NORMALIZERS, driver_keys

logger = logging.getLogger(__name__)


class DriverService:
    def __init__(self, session: Session):
        self.session = session

    def get_driver(self, driver_id: UUID) -> Driver:
        driver = self.session.get(Driver, driver_id)
        if not driver:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Driver not found")
        return driver

    def list_drivers(self, driver_status: Optional[DriverStatus] = None,
                     skip: int = 0, limit: int = 100) -> List[Driver]:
        query = select(Driver)
        if driver_status is not None:
            query = query.where(Driver.status == driver_status)
        return list(self.session.exec(query.order_by(Driver.full_name).offset(skip).limit(limit)).all())

    def _check_override(self, mode: Optional[AdminFeeMode], value) -> None:
        if mode is not None and value is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="admin_fee_value es obligatorio cuando se define admin_fee_mode")
        if value is not None and value < 0:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="admin_fee_value no puede ser negativo")

    def _check_unique_keys(self, driver: Driver) -> None:
        """Rechaza llaves de integración que ya usa otro conductor activo."""
        wanted = {
            (kind, NORMALIZERS[kind](raw))
            for kind, raw in driver_keys(driver)
            if NORMALIZERS[kind](raw)
        }
        if not wanted:
            return
        others = self.session.exec(
            select(Driver)
            .where(Driver.status == DriverStatus.ACTIVE)
            .where(Driver.id != driver.id)
        ).all()
        for other in others:
            for kind, raw in driver_keys(other):
                if (kind, NORMALIZERS[kind](raw)) in wanted:
                    raise HTTPException(
                        status_code=status.HTTP_409_CONFLICT,
                        detail=f"La llave {kind} ya está asignada al conductor {other.id}")

    def create_driver(self, data: DriverCreate) -> Driver:
        self._check_override(data.admin_fee_mode, data.admin_fee_value)
        driver = Driver.model_validate(data)
        self._check_unique_keys(driver)
        self.session.add(driver)
        self.session.commit()
        self.session.refresh(driver)
        logger.info("Conductor %s registrado", driver.id)
        return driver

    def update_driver(self, driver_id: UUID, data: DriverUpdate) -> Driver:
        driver = self.get_driver(driver_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(driver, field, value)
        self._check_override(driver.admin_fee_mode, driver.admin_fee_value)
        if driver.status == DriverStatus.ACTIVE:
            self._check_unique_keys(driver)
        driver.updated_at = datetime.utcnow()
        self.session.add(driver)
        self.session.commit()
        self.session.refresh(driver)
        return driver

    def set_status(self, driver_id: UUID, new_status: DriverStatus) -> Driver:
        """Los conductores nunca se borran; solo se desactivan."""
        driver = self.get_driver(driver_id)
        if new_status == DriverStatus.ACTIVE and driver.status != DriverStatus.ACTIVE:
            self._check_unique_keys(driver)
        driver.status = new_status
        driver.updated_at = datetime.utcnow()
        self.session.add(driver)
        self.session.commit()
        self.session.refresh(driver)
        logger.info("Conductor %s ahora está %s", driver.id, new_status.value)
        return driver
