from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

from app.core.auth import create_access_token, decode_principal
from app.core.config import get_settings
from app.core.database import get_db
from app.main import app
from app.platform.security import Role


@pytest.fixture()
def token_client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _raw_token(claims: dict[str, object], secret: str | None = None) -> str:
    settings = get_settings()
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_decode_principal_reads_subject_and_role() -> None:
    principal = decode_principal(create_access_token("closer-7", Role.CLOSER), correlation_id="corr-1")

    assert principal is not None
    assert principal.user_id == "closer-7"
    assert principal.role == Role.CLOSER
    assert principal.correlation_id == "corr-1"


@pytest.mark.parametrize(
    "token",
    [
        "",
        "not-a-jwt",
        _raw_token({"role": "sdr"}),
        _raw_token({"sub": "   ", "role": "sdr"}),
        _raw_token({"sub": "sdr-1", "role": "guest"}),
        _raw_token({"sub": "sdr-1"}),
        _raw_token({"sub": "sdr-1", "role": "sdr"}, secret="another-secret"),
    ],
)
def test_untrusted_tokens_resolve_to_no_principal(token: str) -> None:
    assert decode_principal(token) is None


def test_expired_token_resolves_to_no_principal() -> None:
    token = create_access_token("sdr-1", Role.SDR, expires_in=timedelta(seconds=-5))

    assert decode_principal(token) is None


def test_role_claim_is_normalized() -> None:
    principal = decode_principal(_raw_token({"sub": "admin-9", "role": "ADMIN"}))

    assert principal is not None
    assert principal.is_admin is True


def test_bearer_token_drives_current_principal(token_client: TestClient) -> None:
    token = create_access_token("sdr-5", Role.SDR)

    authenticated = token_client.get("/me", headers={"Authorization": f"Bearer {token}"})
    anonymous = token_client.get("/me")
    malformed = token_client.get("/me", headers={"Authorization": "Basic abc"})

    assert authenticated.json() == {"user_id": "sdr-5", "role": "sdr", "is_admin": False}
    assert anonymous.status_code == 401
    assert malformed.status_code == 401


def test_records_created_over_http_belong_to_token_subject(token_client: TestClient) -> None:
    headers = {"Authorization": f"Bearer {create_access_token('closer-3', Role.CLOSER)}"}

    created = token_client.post("/api/crm/contacts", json={"name": "Rita"}, headers=headers)
    listed = token_client.get("/api/crm/contacts", headers={"Authorization": f"Bearer {create_access_token('sdr-1', Role.SDR)}"})

    assert created.status_code == 201
    assert created.json()["owner_id"] == "closer-3"
    assert listed.json() == []
