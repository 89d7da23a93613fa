"""
tests/test_auth.py
Bearer token checks shared by every endpoint: signature, type, deny-list, roles.
"""

import uuid

import pytest
from httpx import AsyncClient
from jose import jwt

from config.settings import settings
from shared.models.models import UserRole
from shared.utils.security import create_access_token, verify_access_token


def test_token_round_trip_carries_identity():
    user_id = uuid.uuid4()
    token, jti = create_access_token(str(user_id), UserRole.SPECIALIST.value)

    payload = verify_access_token(token)
    assert payload["sub"] == str(user_id)
    assert payload["role"] == "SPECIALIST"
    assert payload["jti"] == jti
    assert payload["exp"] - payload["iat"] == settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60


@pytest.mark.asyncio
async def test_revoked_token_is_rejected(client: AsyncClient, redis, user_id):
    token, jti = create_access_token(str(user_id), UserRole.USER.value)
    headers = {"Authorization": f"Bearer {token}"}

    response = await client.get("/sessions", headers=headers)
    assert response.status_code == 200

    # Written by the identity service on logout
    await redis.setex(f"jwt_revoked:{jti}", 60, "1")

    response = await client.get("/sessions", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"] == "Token has been revoked"


@pytest.mark.asyncio
async def test_malformed_and_foreign_tokens_are_rejected(client: AsyncClient, user_id):
    response = await client.get("/sessions", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401

    forged = jwt.encode(
        {"sub": str(user_id), "role": "ADMIN", "type": "access"},
        "some-other-secret",
        algorithm=settings.JWT_ALGORITHM,
    )
    response = await client.get("/sessions", headers={"Authorization": f"Bearer {forged}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_refresh_token_type_is_not_accepted(client: AsyncClient, user_id):
    token, _ = create_access_token(str(user_id), UserRole.USER.value, extra={"type": "refresh"})
    response = await client.get("/sessions", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unknown_role_is_rejected(client: AsyncClient, user_id):
    token, _ = create_access_token(str(user_id), "GUEST")
    response = await client.get("/sessions", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
