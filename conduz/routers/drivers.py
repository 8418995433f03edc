from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from conduz.core.db import SessionDep
from conduz.core.dependencies.admin_auth import get_current_admin
from conduz.models.driver import DriverCreate, DriverRead, DriverStatus, DriverUpdate
from conduz.services.driver_service import DriverService

router = APIRouter(prefix="/drivers", tags=["ADMIN: Drivers"])


class DriverStatusRequest(BaseModel):
    status: DriverStatus


@router.post("/", response_model=DriverRead, status_code=status.HTTP_201_CREATED, description="""
Registra un conductor con sus llaves de integración por plataforma.

**Llaves:**
- `uber_driver_id`: id de la API de Uber
- `bolt_email`: correo de la cuenta Bolt
- `myprio_card`: tarjeta de combustible
- `viaverde_tag`: identificador del dispositivo de peaje
- `vehicle_plate`: matrícula, usada como respaldo en myprio y viaverde
""")
def create_driver(data: DriverCreate, session: SessionDep, current_admin=Depends(get_current_admin)):
    return DriverService(session).create_driver(data)


@router.get("/", response_model=List[DriverRead])
def list_drivers(session: SessionDep,
                 driver_status: Optional[DriverStatus] = Query(None, alias="status"),
                 skip: int = 0, limit: int = 100,
                 current_admin=Depends(get_current_admin)):
    return DriverService(session).list_drivers(driver_status, skip=skip, limit=limit)


@router.get("/{driver_id}", response_model=DriverRead)
def get_driver(driver_id: UUID, session: SessionDep, current_admin=Depends(get_current_admin)):
    return DriverService(session).get_driver(driver_id)


@router.patch("/{driver_id}", response_model=DriverRead)
def update_driver(driver_id: UUID, data: DriverUpdate, session: SessionDep,
                  current_admin=Depends(get_current_admin)):
    return DriverService(session).update_driver(driver_id, data)


@router.patch("/{driver_id}/status", response_model=DriverRead, description="""
Activa o desactiva un conductor. Los conductores no se eliminan.
""")
def set_driver_status(driver_id: UUID, data: DriverStatusRequest, session: SessionDep,
                      current_admin=Depends(get_current_admin)):
    return DriverService(session).set_status(driver_id, data.status)
