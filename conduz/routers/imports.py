import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from conduz.core.db import SessionDep
from conduz.core.dependencies.admin_auth import get_current_admin
from conduz.core.config import settings
from conduz.models.earning_record import ImportBatch, Platform
from conduz.services.import_service import ImportReport, ImportService
from conduz.services.platform_normalizer import RawRecord
from conduz.utils.errors import SettlementError, to_http_exception

router = APIRouter(prefix="/imports", tags=["ADMIN: Imports"])


class ImportRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    source_name: Optional[str] = None


@router.post("/{platform}/{week_id}", response_model=ImportReport, description="""
Importa las filas de una plataforma para una semana ISO (`2024-W05`).

Reimportar una semana no pagada reemplaza el lote anterior. Si la semana ya
tiene liquidaciones pagadas responde 409 y no modifica nada.

**Ejemplo (myprio):**
```json
{
    "rows": [
        {"card": "700123", "card_description": "AA-00-BB", "total": "45,30 €"}
    ]
}
```
""")
def import_rows(platform: Platform, week_id: str, data: ImportRequest, session: SessionDep,
                current_admin=Depends(get_current_admin)):
    service = ImportService(session)
    rows = [RawRecord(platform=platform, fields=row) for row in data.rows]
    try:
        return service.import_batch(
            platform, week_id, rows,
            imported_by=current_admin.get("sub"), source_name=data.source_name)
    except SettlementError as e:
        raise to_http_exception(e)
    except HTTPException as e:
        raise e
    except Exception:
        logging.exception("Unexpected error importing rows")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{platform}/{week_id}/reresolve", response_model=ImportReport, description="""
Vuelve a asociar los registros del lote activo con el registro de conductores
actual (por ejemplo, después de registrar una tarjeta de combustible).
""")
def reresolve(platform: Platform, week_id: str, session: SessionDep,
              current_admin=Depends(get_current_admin)):
    try:
        return ImportService(session).reresolve_batch(
            platform, week_id, imported_by=current_admin.get("sub"))
    except SettlementError as e:
        raise to_http_exception(e)


@router.get("/{week_id}/unreconciled", description="""
Montos sin conductor de la semana, por plataforma.
""")
def unreconciled(week_id: str, session: SessionDep, current_admin=Depends(get_current_admin)):
    try:
        aggregate = ImportService(session).week_aggregate(week_id)
    except SettlementError as e:
        raise to_http_exception(e)
    return {
        "week_id": aggregate.week_id,
        "amount": aggregate.unreconciled_amount,
        "record_count": aggregate.unreconciled_count,
        "reconciled": aggregate.is_reconciled(settings.UNRECONCILED_MATERIALITY_CENTS),
        "platforms": [item.model_dump(mode="json") for item in aggregate.unreconciled.values()],
    }


@router.get("/{week_id}/batches", response_model=List[ImportBatch])
def list_batches(week_id: str, session: SessionDep, current_admin=Depends(get_current_admin)):
    try:
        return ImportService(session).list_batches(week_id)
    except SettlementError as e:
        raise to_http_exception(e)
