"""
tests/test_congregations.py
Public access-code lookup and roster endpoints, plus congregation
administration and user links.
"""

import pytest
from httpx import AsyncClient

from config.redis_client import congregation_cache_key
from shared.models.models import UserRole


# ── Public ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_lookup_by_access_code_is_cached(client: AsyncClient, congregation, fake_redis):
    response = await client.get(f"/api/congregations/{congregation.access_code}")
    assert response.status_code == 200
    assert response.json()["name"] == "Maple Grove Ward"
    assert response.json()["accessCode"] == congregation.access_code
    assert await fake_redis.get(congregation_cache_key(congregation.access_code)) is not None

    again = await client.get(f"/api/congregations/{congregation.access_code}")
    assert again.json() == response.json()


@pytest.mark.asyncio
async def test_short_or_unknown_codes_are_not_found(client: AsyncClient, congregation):
    assert (await client.get("/api/congregations/maple")).status_code == 404
    assert (await client.get("/api/congregations/unknown-access-code")).status_code == 404


@pytest.mark.asyncio
async def test_inactive_congregation_lookup_is_forbidden(client: AsyncClient, db, congregation):
    congregation.active = False
    await db.commit()
    assert (await client.get(f"/api/congregations/{congregation.access_code}")).status_code == 403


@pytest.mark.asyncio
async def test_roster_endpoints(client: AsyncClient, congregation, elders, sisters):
    everyone = await client.get(f"/api/congregations/{congregation.id}/missionaries")
    assert {m["name"] for m in everyone.json()} == {elders.name, sisters.name}

    only_sisters = await client.get(f"/api/congregations/{congregation.id}/missionaries/Sisters")
    assert [m["id"] for m in only_sisters.json()] == [sisters.id]

    bad_type = await client.get(f"/api/congregations/{congregation.id}/missionaries/zone")
    assert bad_type.status_code == 400


@pytest.mark.asyncio
async def test_congregation_meals_calendar(client: AsyncClient, congregation, elders):
    await client.post("/api/meals", json={
        "missionaryId": elders.id, "wardId": congregation.id, "date": "2025-06-01",
        "startTime": "18:00", "hostName": "The Hansens", "hostPhone": "555-0100",
    })
    response = await client.get(
        f"/api/congregations/{congregation.id}/meals",
        params={"startDate": "2025-06-01", "endDate": "2025-06-30"},
    )
    assert response.status_code == 200
    assert len(response.json()) == 1


# ── Admin ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_is_scoped(client, auth_headers, admin_user, ultra_user, congregation, other_congregation):
    ward_view = await client.get("/api/admin/congregations", headers=auth_headers(admin_user))
    assert [c["id"] for c in ward_view.json()] == [congregation.id]

    ultra_view = await client.get("/api/admin/congregations", headers=auth_headers(ultra_user))
    assert len(ultra_view.json()) == 2

    hidden = await client.get(f"/api/admin/congregations/{other_congregation.id}", headers=auth_headers(admin_user))
    assert hidden.status_code == 403


@pytest.mark.asyncio
async def test_create_links_non_ultra_creator(client, auth_headers, stake_user):
    response = await client.post(
        "/api/admin/congregations",
        headers=auth_headers(stake_user),
        json={"name": "Birch Hollow Ward", "maxBookingsPerPhone": 2},
    )
    assert response.status_code == 201
    created = response.json()
    assert len(created["accessCode"]) >= 10
    assert created["maxBookingsPerPhone"] == 2

    fetched = await client.get(f"/api/admin/congregations/{created['id']}", headers=auth_headers(stake_user))
    assert fetched.status_code == 200


@pytest.mark.asyncio
async def test_ward_admin_cannot_create(client, auth_headers, admin_user):
    response = await client.post("/api/admin/congregations", headers=auth_headers(admin_user), json={"name": "X Ward"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_duplicate_name_conflicts(client, auth_headers, ultra_user, congregation):
    response = await client.post(
        "/api/admin/congregations", headers=auth_headers(ultra_user), json={"name": congregation.name}
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_invalidates_cache(client, auth_headers, stake_user, congregation, fake_redis):
    await client.get(f"/api/congregations/{congregation.access_code}")
    response = await client.patch(
        f"/api/admin/congregations/{congregation.id}",
        headers=auth_headers(stake_user),
        json={"name": "Maple Grove 2nd Ward", "allowCombinedBookings": True},
    )
    assert response.status_code == 200
    assert response.json()["allowCombinedBookings"] is True
    assert await fake_redis.get(congregation_cache_key(congregation.access_code)) is None

    lookup = await client.get(f"/api/congregations/{congregation.access_code}")
    assert lookup.json()["name"] == "Maple Grove 2nd Ward"


@pytest.mark.asyncio
async def test_regenerate_access_code_requires_confirmation(client, auth_headers, stake_user, congregation):
    url = f"/api/admin/congregations/{congregation.id}/regenerate-access-code"
    unconfirmed = await client.post(url, headers=auth_headers(stake_user), json={})
    assert unconfirmed.status_code == 400

    confirmed = await client.post(url, headers=auth_headers(stake_user), json={"confirm": True})
    assert confirmed.status_code == 200
    new_code = confirmed.json()["accessCode"]
    assert new_code != "maple-grove-access"

    assert (await client.get("/api/congregations/maple-grove-access")).status_code == 404
    assert (await client.get(f"/api/congregations/{new_code}")).status_code == 200


@pytest.mark.asyncio
async def test_delete_blocked_while_missionaries_exist(client, auth_headers, ultra_user, congregation, elders):
    response = await client.delete(f"/api/admin/congregations/{congregation.id}", headers=auth_headers(ultra_user))
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_delete_empty_congregation(client, auth_headers, ultra_user, other_congregation):
    response = await client.delete(
        f"/api/admin/congregations/{other_congregation.id}", headers=auth_headers(ultra_user)
    )
    assert response.status_code == 200
    again = await client.get(f"/api/admin/congregations/{other_congregation.id}", headers=auth_headers(ultra_user))
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_user_links(client, auth_headers, stake_user, user_factory, congregation):
    await user_factory("helper", UserRole.WARD)
    url = f"/api/admin/congregations/{congregation.id}/users"

    added = await client.post(url, headers=auth_headers(stake_user), json={"username": "helper"})
    assert added.status_code == 201
    duplicate = await client.post(url, headers=auth_headers(stake_user), json={"username": "helper"})
    assert duplicate.status_code == 409
    missing = await client.post(url, headers=auth_headers(stake_user), json={"username": "nobody"})
    assert missing.status_code == 404

    listed = await client.get(url, headers=auth_headers(stake_user))
    helper = next(u for u in listed.json() if u["username"] == "helper")

    removed = await client.delete(f"{url}/{helper['id']}", headers=auth_headers(stake_user))
    assert removed.status_code == 200
    gone = await client.delete(f"{url}/{helper['id']}", headers=auth_headers(stake_user))
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_leave_and_rejoin(client, auth_headers, admin_user, congregation):
    headers = auth_headers(admin_user)
    left = await client.post(f"/api/admin/congregations/{congregation.id}/leave", headers=headers)
    assert left.status_code == 200
    assert (await client.get("/api/admin/congregations", headers=headers)).json() == []

    joined = await client.post(
        "/api/admin/congregations/join", headers=headers, json={"accessCode": congregation.access_code}
    )
    assert joined.status_code == 200
    assert [c["id"] for c in (await client.get("/api/admin/congregations", headers=headers)).json()] == [
        congregation.id
    ]
