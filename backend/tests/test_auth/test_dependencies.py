"""Tests for auth dependencies: get_current_user edge cases."""

import uuid
from datetime import timedelta

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from paybridge.auth.jwt import create_access_token, create_token_pair
from paybridge.models.user import User

PROTECTED_URL = "/api/v1/billing/subscription"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestGetCurrentUser:
    """Exercise get_current_user through a protected billing endpoint."""

    async def test_valid_token_accepted(self, client: AsyncClient, auth_headers: dict):
        response = await client.get(PROTECTED_URL, headers=auth_headers)
        assert response.status_code == 200

    async def test_missing_header(self, client: AsyncClient):
        response = await client.get(PROTECTED_URL)
        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_expired_token_rejected(self, client: AsyncClient, test_user: User):
        token = create_access_token(str(test_user.id), expires_delta=timedelta(seconds=-1))
        response = await client.get(PROTECTED_URL, headers=_bearer(token))
        assert response.status_code == 401

    async def test_invalid_token_format(self, client: AsyncClient):
        response = await client.get(PROTECTED_URL, headers=_bearer("not.a.valid.jwt"))
        assert response.status_code == 401
        assert response.json() == {"error": "Could not validate credentials"}

    async def test_refresh_token_type_rejected(self, client: AsyncClient, test_user: User):
        tokens = create_token_pair(str(test_user.id))
        response = await client.get(PROTECTED_URL, headers=_bearer(tokens["refresh_token"]))
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid token type"}

    async def test_non_uuid_subject_rejected(self, client: AsyncClient):
        response = await client.get(PROTECTED_URL, headers=_bearer(create_access_token("not-a-uuid")))
        assert response.status_code == 401

    async def test_nonexistent_user_id_rejected(self, client: AsyncClient):
        response = await client.get(PROTECTED_URL, headers=_bearer(create_access_token(str(uuid.uuid4()))))
        assert response.status_code == 401

    async def test_inactive_user_rejected(self, client: AsyncClient, db_session: AsyncSession):
        user = User(email=f"inactive-{uuid.uuid4().hex[:8]}@test.com", name="Inactive", is_active=False)
        db_session.add(user)
        await db_session.commit()

        response = await client.get(PROTECTED_URL, headers=_bearer(create_access_token(str(user.id))))
        assert response.status_code == 401
        assert response.json() == {"error": "User account is inactive"}
