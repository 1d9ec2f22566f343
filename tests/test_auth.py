"""
tests/test_auth.py
Tests for administrator authentication: first-run setup, login, logout
deny-list and the /me endpoint.
"""

import pytest
from httpx import AsyncClient

from shared.models.models import User


@pytest.mark.asyncio
async def test_unauthenticated_returns_401(client: AsyncClient):
    response = await client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.json() == {"message": "Authentication required"}


@pytest.mark.asyncio
async def test_invalid_token_returns_401(client: AsyncClient):
    response = await client.get("/api/auth/me", headers={"Authorization": "Bearer this.is.not.a.jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_me(client: AsyncClient, auth_headers, admin_user: User):
    response = await client.get("/api/auth/me", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json()["username"] == "wardadmin"
    assert response.json()["role"] == "ward"


@pytest.mark.asyncio
async def test_first_run_setup_then_closed(client: AsyncClient):
    assert (await client.get("/api/auth/is-setup")).json() == {"isSetupMode": True}

    response = await client.post("/api/auth/setup", json={"username": "founder", "password": "s3cret!!"})
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["role"] == "ultra"
    assert body["user"]["canUsePaidNotifications"] is True
    assert body["accessToken"]

    assert (await client.get("/api/auth/is-setup")).json() == {"isSetupMode": False}
    again = await client.post("/api/auth/setup", json={"username": "second", "password": "s3cret!!"})
    assert again.status_code == 403


@pytest.mark.asyncio
async def test_login_success_and_failure(client: AsyncClient, admin_user: User):
    ok = await client.post("/api/auth/login", json={"username": "wardadmin", "password": "password123"})
    assert ok.status_code == 200
    assert ok.json()["tokenType"] == "bearer"

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {ok.json()['accessToken']}"})
    assert me.json()["id"] == admin_user.id

    bad = await client.post("/api/auth/login", json={"username": "wardadmin", "password": "wrong"})
    assert bad.status_code == 401
    assert bad.json()["message"] == "Invalid username or password"


@pytest.mark.asyncio
async def test_inactive_user_cannot_log_in(client: AsyncClient, db, admin_user: User):
    admin_user.is_active = False
    await db.commit()
    response = await client.post("/api/auth/login", json={"username": "wardadmin", "password": "password123"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_login_is_rate_limited(client: AsyncClient, admin_user: User):
    for _ in range(10):
        await client.post("/api/auth/login", json={"username": "wardadmin", "password": "wrong"})
    response = await client.post("/api/auth/login", json={"username": "wardadmin", "password": "password123"})
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_logout_revokes_token(client: AsyncClient, auth_headers, admin_user: User):
    headers = auth_headers(admin_user)
    assert (await client.post("/api/auth/logout", headers=headers)).status_code == 200

    response = await client.get("/api/auth/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["message"] == "Token has been revoked"


@pytest.mark.asyncio
async def test_role_gate(client: AsyncClient, auth_headers, admin_user: User):
    response = await client.post("/api/admin/regions", headers=auth_headers(admin_user), json={"name": "West"})
    assert response.status_code == 403
