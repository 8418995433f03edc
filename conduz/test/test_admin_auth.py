import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from jose import jwt

from conduz.core.config import settings
from conduz.core.dependencies.admin_auth import decode_admin_token
from conduz.main import app


def _token(**claims):
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def test_admin_token_accepted():
    payload = decode_admin_token(_token(sub="ops@conduz.test", role="admin"))
    assert payload["sub"] == "ops@conduz.test"


@pytest.mark.parametrize("claims", [
    {"sub": "driver@conduz.test", "role": "driver"},
    {"role": "admin"},
])
def test_non_admin_token_rejected(claims):
    with pytest.raises(HTTPException) as exc:
        decode_admin_token(_token(**claims))
    assert exc.value.status_code == 401


def test_bad_signature_rejected():
    token = jwt.encode({"sub": "x", "role": "admin"}, "otra-clave", algorithm=settings.ALGORITHM)
    with pytest.raises(HTTPException) as exc:
        decode_admin_token(token)
    assert exc.value.status_code == 401


def test_endpoints_require_token():
    response = TestClient(app).get("/settings/financial")
    assert response.status_code in (401, 403)
