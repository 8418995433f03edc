"""
Resolución de identidades: asocia la referencia que envía cada plataforma
(tarjeta de combustible, matrícula, email de cuenta, id de API) con un
conductor interno.
"""
import logging
import re
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from conduz.models.driver import Driver, DriverStatus
from conduz.models.earning_record import Platform
from conduz.utils.errors import UnmappedReferenceError

logger = logging.getLogger(__name__)

# Tipos de llave registrados en cada conductor
CARD = "card"
TOLL_TAG = "toll_tag"
PLATE = "plate"
EMAIL = "email"
API_ID = "api_id"

_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def normalize_card_key(value: Optional[str]) -> str:
    if not value:
        return ""
    return str(value).strip().lower()


def normalize_plate(value: Optional[str]) -> str:
    if not value:
        return ""
    return _NON_ALNUM.sub("", str(value).strip().upper())


def normalize_email(value: Optional[str]) -> str:
    if not value:
        return ""
    return str(value).strip().lower()


def normalize_api_id(value: Optional[str]) -> str:
    if value is None:
        return ""
    return str(value)


NORMALIZERS = {
    CARD: normalize_card_key,
    TOLL_TAG: normalize_card_key,
    PLATE: normalize_plate,
    EMAIL: normalize_email,
    API_ID: normalize_api_id,
}

# Llave principal de cada plataforma y, si existe, la llave de respaldo por
# etiqueta (matrícula). El orden importa: primero la llave exacta.
PLATFORM_KEYS: Dict[Platform, Tuple[str, Optional[str]]] = {
    Platform.UBER: (API_ID, None),
    Platform.BOLT: (EMAIL, None),
    Platform.MYPRIO: (CARD, PLATE),
    Platform.VIAVERDE: (TOLL_TAG, PLATE),
}


def driver_keys(driver: Driver) -> List[Tuple[str, Optional[str]]]:
    return [
        (API_ID, driver.uber_driver_id),
        (EMAIL, driver.bolt_email),
        (CARD, driver.myprio_card),
        (TOLL_TAG, driver.viaverde_tag),
        (PLATE, driver.vehicle_plate),
    ]


class IdentityLookup:
    """Índice en memoria (tipo de llave, llave normalizada) -> conductor."""

    def __init__(self, index: Dict[Tuple[str, str], UUID], ambiguous: Set[Tuple[str, str]]):
        self._index = index
        self.ambiguous = ambiguous

    @classmethod
    def build(cls, drivers: Iterable[Driver]) -> "IdentityLookup":
        index: Dict[Tuple[str, str], UUID] = {}
        ambiguous: Set[Tuple[str, str]] = set()
        for driver in drivers:
            if driver.status != DriverStatus.ACTIVE:
                continue
            for key_kind, raw in driver_keys(driver):
                normalized = NORMALIZERS[key_kind](raw)
                if not normalized:
                    continue
                entry = (key_kind, normalized)
                if entry in ambiguous:
                    continue
                if entry in index and index[entry] != driver.id:
                    # Dos conductores con la misma llave: no se asigna a ninguno
                    logger.warning(
                        "Llave %s=%s registrada en más de un conductor", key_kind, normalized)
                    del index[entry]
                    ambiguous.add(entry)
                    continue
                index[entry] = driver.id
        return cls(index, ambiguous)

    def _lookup(self, key_kind: str, raw: Optional[str]) -> Optional[UUID]:
        normalized = NORMALIZERS[key_kind](raw)
        if not normalized:
            return None
        return self._index.get((key_kind, normalized))

    def resolve(self, platform: Platform, reference_key: Optional[str],
                reference_label: Optional[str] = None) -> Optional[UUID]:
        """Devuelve el conductor o None. Sin efectos secundarios."""
        primary, fallback = PLATFORM_KEYS[Platform(platform)]
        driver_id = self._lookup(primary, reference_key)
        if driver_id is None and fallback is not None:
            driver_id = self._lookup(fallback, reference_label)
        return driver_id

    def require(self, platform: Platform, reference_key: Optional[str],
                reference_label: Optional[str] = None, week_id: Optional[str] = None) -> UUID:
        driver_id = self.resolve(platform, reference_key, reference_label)
        if driver_id is None:
            raise UnmappedReferenceError(
                Platform(platform).value, reference_key or "", reference_label, week_id=week_id)
        return driver_id

    def __len__(self) -> int:
        return len(self._index)
