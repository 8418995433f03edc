import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from conduz.core.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer()

ADMIN_ROLE = "admin"


def decode_admin_token(token: str) -> dict:
    """
    Valida el token de un operador de liquidaciones.

    Los tokens se emiten fuera de esta aplicación; aquí solo se verifica la
    firma, que el rol sea administrador y que identifique al operador (`sub`),
    porque `sub` queda registrado como actor en la auditoría de pagos.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="No autorizado como administrador",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise credentials_exception
    if payload.get("role") != ADMIN_ROLE or not payload.get("sub"):
        logger.warning("Token rechazado para rol=%s", payload.get("role"))
        raise credentials_exception
    return payload


def get_current_admin(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> dict:
    return decode_admin_token(credentials.credentials)
