"""
tests/test_admin.py
Administrative users, dashboard statistics and the region/mission/stake
hierarchy.
"""

from datetime import date

import pytest
from httpx import AsyncClient

from shared.models.models import Meal, UserRole


# ── Users ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_user_list_is_scoped_by_rank(
    client: AsyncClient, auth_headers, stake_user, admin_user, user_factory, other_congregation
):
    await user_factory("faraway", UserRole.WARD, congregations=[other_congregation])

    response = await client.get("/api/admin/users", headers=auth_headers(stake_user))
    assert response.status_code == 200
    assert [u["username"] for u in response.json()] == ["stakeadmin", "wardadmin"]

    own_only = await client.get("/api/admin/users", headers=auth_headers(admin_user))
    assert [u["username"] for u in own_only.json()] == ["wardadmin"]


@pytest.mark.asyncio
async def test_ultra_sees_everyone(client, auth_headers, ultra_user, admin_user, stake_user):
    response = await client.get("/api/admin/users", headers=auth_headers(ultra_user))
    assert {u["username"] for u in response.json()} == {"ultra", "wardadmin", "stakeadmin"}


@pytest.mark.asyncio
async def test_create_user_below_own_rank(client, auth_headers, stake_user, congregation):
    response = await client.post(
        "/api/admin/users",
        headers=auth_headers(stake_user),
        json={"username": "newward", "password": "secret1", "role": "ward", "congregationIds": [congregation.id]},
    )
    assert response.status_code == 201
    assert response.json()["role"] == "ward"
    assert response.json()["isActive"] is True

    login = await client.post("/api/auth/login", json={"username": "newward", "password": "secret1"})
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_cannot_create_equal_rank(client, auth_headers, stake_user):
    response = await client.post(
        "/api/admin/users",
        headers=auth_headers(stake_user),
        json={"username": "peer", "password": "secret1", "role": "stake"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_ward_admin_cannot_create_users(client, auth_headers, admin_user):
    response = await client.post(
        "/api/admin/users",
        headers=auth_headers(admin_user),
        json={"username": "sneaky", "password": "secret1"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_duplicate_username_conflicts(client, auth_headers, ultra_user, admin_user):
    response = await client.post(
        "/api/admin/users",
        headers=auth_headers(ultra_user),
        json={"username": "wardadmin", "password": "secret1"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_user(client, auth_headers, stake_user, admin_user):
    response = await client.patch(
        f"/api/admin/users/{admin_user.id}",
        headers=auth_headers(stake_user),
        json={"email": "ward@example.org", "isActive": False},
    )
    assert response.status_code == 200
    assert response.json()["email"] == "ward@example.org"
    assert response.json()["isActive"] is False


@pytest.mark.asyncio
async def test_cannot_promote_to_own_rank(client, auth_headers, stake_user, admin_user):
    response = await client.patch(
        f"/api/admin/users/{admin_user.id}", headers=auth_headers(stake_user), json={"role": "stake"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cannot_change_own_role(client, auth_headers, stake_user):
    response = await client.patch(
        f"/api/admin/users/{stake_user.id}", headers=auth_headers(stake_user), json={"role": "region"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_delete_user(client, auth_headers, ultra_user, admin_user):
    headers = auth_headers(ultra_user)
    own = await client.delete(f"/api/admin/users/{ultra_user.id}", headers=headers)
    assert own.status_code == 400

    response = await client.delete(f"/api/admin/users/{admin_user.id}", headers=headers)
    assert response.status_code == 200
    assert response.json()["message"] == "User deleted"

    missing = await client.delete(f"/api/admin/users/{admin_user.id}", headers=headers)
    assert missing.status_code == 404


# ── Statistics ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dashboard_stats(client, db, auth_headers, admin_user, congregation, elders, sisters):
    today = date.today()
    db.add_all([
        Meal(missionary_id=elders.id, congregation_id=congregation.id, date=today,
             start_time="18:00", host_name="The Hansens", host_phone="555-0100"),
        Meal(missionary_id=sisters.id, congregation_id=congregation.id, date=today,
             start_time="17:00", host_name="The Olsens", host_phone="555-0101",
             cancelled=True, cancellation_reason="sick"),
    ])
    sisters.active = False
    await db.commit()

    missing = await client.get("/api/admin/stats", headers=auth_headers(admin_user))
    assert missing.status_code == 400

    response = await client.get(
        "/api/admin/stats", headers=auth_headers(admin_user), params={"congregationId": congregation.id}
    )
    assert response.status_code == 200
    assert response.json() == {
        "totalMissionaries": 2,
        "activeMissionaries": 1,
        "totalMealsThisMonth": 1,
        "eldersBookings": 1,
        "sistersBookings": 0,
        "cancelledMeals": 1,
    }


@pytest.mark.asyncio
async def test_meal_stats(client, db, auth_headers, admin_user, congregation, elders, sisters):
    def meal(missionary, day, **fields):
        return Meal(missionary_id=missionary.id, congregation_id=congregation.id, date=day,
                    start_time="18:00", host_name="Host", host_phone="555-0100", **fields)

    db.add_all([
        meal(elders, date(2025, 6, 1)),
        meal(elders, date(2025, 6, 8)),
        meal(elders, date(2025, 6, 15), cancelled=True),
        meal(sisters, date(2025, 6, 2)),
        meal(sisters, date(2025, 7, 2)),
    ])
    await db.commit()

    response = await client.get(
        f"/api/admin/meal-stats/{congregation.id}",
        headers=auth_headers(admin_user),
        params={"startDate": "2025-06-01", "endDate": "2025-06-30"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["totalMeals"] == 3
    assert body["averageMealsPerWeek"] == 0.6
    assert body["averageMealsPerMonth"] == 3.0
    assert body["missionaryStats"][0] == {
        "id": elders.id, "name": elders.name, "type": "elders", "mealCount": 2, "lastMeal": "2025-06-08",
    }
    assert body["monthlyBreakdown"] == [{"month": "Jun 2025", "mealCount": 3}]


@pytest.mark.asyncio
async def test_meal_stats_outside_scope(client, auth_headers, admin_user, other_congregation):
    response = await client.get(
        f"/api/admin/meal-stats/{other_congregation.id}",
        headers=auth_headers(admin_user),
        params={"startDate": "2025-06-01", "endDate": "2025-06-30"},
    )
    assert response.status_code == 403


# ── Hierarchy ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_region_mission_stake_crud(client, auth_headers, ultra_user):
    headers = auth_headers(ultra_user)

    region = await client.post("/api/admin/regions", headers=headers, json={"name": "North America West"})
    assert region.status_code == 201
    region_id = region.json()["id"]

    mission = await client.post(
        "/api/admin/missions", headers=headers, json={"name": "Utah Salt Lake City", "regionId": region_id}
    )
    assert mission.status_code == 201
    assert mission.json()["regionId"] == region_id

    stake = await client.post(
        "/api/admin/stakes", headers=headers, json={"name": "Maple Stake", "missionId": mission.json()["id"]}
    )
    assert stake.status_code == 201

    renamed = await client.patch(
        f"/api/admin/regions/{region_id}", headers=headers, json={"description": "Pacific states"}
    )
    assert renamed.json()["description"] == "Pacific states"

    regions = await client.get("/api/admin/regions", headers=headers)
    assert [r["name"] for r in regions.json()] == ["North America West"]

    deleted = await client.delete(f"/api/admin/stakes/{stake.json()['id']}", headers=headers)
    assert deleted.json()["message"] == "Stake deleted"


@pytest.mark.asyncio
async def test_hierarchy_duplicates_and_missing_parents(client, auth_headers, ultra_user):
    headers = auth_headers(ultra_user)
    await client.post("/api/admin/regions", headers=headers, json={"name": "Europe"})

    duplicate = await client.post("/api/admin/regions", headers=headers, json={"name": "Europe"})
    assert duplicate.status_code == 409

    orphan = await client.post("/api/admin/missions", headers=headers, json={"name": "Nowhere", "regionId": 999})
    assert orphan.status_code == 404


@pytest.mark.asyncio
async def test_stake_admin_can_manage_stakes_only(client, auth_headers, stake_user):
    headers = auth_headers(stake_user)
    stake = await client.post("/api/admin/stakes", headers=headers, json={"name": "Cedar Stake"})
    assert stake.status_code == 201

    region = await client.post("/api/admin/regions", headers=headers, json={"name": "Asia"})
    assert region.status_code == 403
