from typing import Optional
from uuid import UUID

from fastapi import HTTPException, status


class SettlementError(Exception):
    """Base de los errores del motor de liquidación semanal."""

    def __init__(self, message: str, driver_id: Optional[UUID] = None, week_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.driver_id = driver_id
        self.week_id = week_id

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "driver_id": str(self.driver_id) if self.driver_id else None,
            "week_id": self.week_id,
        }


class UnmappedReferenceError(SettlementError):
    """Un registro de plataforma no pudo asociarse a ningún conductor (recuperable)."""

    def __init__(self, platform: str, reference_key: str, reference_label: Optional[str] = None,
                 week_id: Optional[str] = None):
        super().__init__(
            f"Referencia sin conductor en {platform}: {reference_key!r}",
            week_id=week_id,
        )
        self.platform = platform
        self.reference_key = reference_key
        self.reference_label = reference_label

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "platform": self.platform,
            "reference_key": self.reference_key,
            "reference_label": self.reference_label,
        })
        return data


class ConfigurationError(SettlementError):
    """Falta o es inválida la configuración necesaria para un conductor."""


class DataIntegrityError(SettlementError):
    """Datos de entrada imposibles (ingresos negativos, semana mal formada...)."""


class SettlementFrozen(SettlementError):
    """Intento de modificar una liquidación pagada/cancelada o sus registros de origen."""


class ConcurrencyConflict(SettlementError):
    """Otro proceso escribió la misma liquidación (conductor, semana); reintentar."""


HTTP_STATUS = {
    SettlementFrozen: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    DataIntegrityError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConfigurationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnmappedReferenceError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def to_http_exception(error: SettlementError) -> HTTPException:
    code = HTTP_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=error.to_dict())
