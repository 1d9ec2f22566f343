"""
tests/test_meals.py
Meal booking lifecycle: create → conflict → cancel → rebook, updates,
host caps, listing, and the unique-index race mapping.
"""

from datetime import date, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from services.meal.service import BookingService
from shared.models.models import Meal, MessageLog, Missionary, MissionaryType, NotificationMethod
from shared.schemas.schemas import MealCreateRequest
from shared.utils.errors import ConflictError


def _payload(missionary, day="2025-06-01", **overrides):
    body = {
        "missionaryId": missionary.id,
        "wardId": missionary.congregation_id,
        "date": day,
        "startTime": "18:00",
        "hostName": "The Hansens",
        "hostPhone": "555-0100",
    }
    body.update(overrides)
    return body


# ── Create / conflict / cancel ────────────────────────────────

@pytest.mark.asyncio
async def test_booking_conflict_cancel_and_rebook(client: AsyncClient, elders):
    first = await client.post("/api/meals", json=_payload(elders))
    assert first.status_code == 201
    meal = first.json()
    assert meal["cancelled"] is False
    assert meal["missionary"]["name"] == elders.name

    second = await client.post("/api/meals", json=_payload(elders, hostName="The Olsens"))
    assert second.status_code == 409
    assert "Elders" in second.json()["message"]
    assert "2025-06-01" in second.json()["message"]

    cancelled = await client.post(f"/api/meals/{meal['id']}/cancel", json={"reason": "host unavailable"})
    assert cancelled.status_code == 200
    assert cancelled.json()["cancelled"] is True
    assert cancelled.json()["cancellationReason"] == "host unavailable"
    assert cancelled.json()["hostName"] == "The Hansens"

    third = await client.post("/api/meals", json=_payload(elders, hostName="The Olsens"))
    assert third.status_code == 201


@pytest.mark.asyncio
async def test_create_sends_meal_created_notification(client, elders, sent, db):
    response = await client.post(
        "/api/meals",
        json=_payload(elders, day="2025-06-01", mealDescription="Lasagna", specialNotes="Gate code 42"),
    )
    assert response.status_code == 201

    emails = sent[NotificationMethod.EMAIL]
    assert len(emails) == 1
    destination, message = emails[0]
    assert destination == elders.email_address
    assert message.text.startswith("New meal scheduled: Sunday, June 1 at 6:00 PM with The Hansens.")
    assert "Menu: Lasagna" in message.text

    logs = list(await db.scalars(select(MessageLog)))
    assert [(log.message_type, log.method, log.successful) for log in logs] == [
        ("meal_created", "email", True)
    ]


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_booking(client, elders, notifier, db):
    notifier.senders[NotificationMethod.EMAIL].fail_with = RuntimeError("provider down")

    response = await client.post("/api/meals", json=_payload(elders))
    assert response.status_code == 201
    assert await db.scalar(select(func.count(Meal.id))) == 1

    log = await db.scalar(select(MessageLog))
    assert log.successful is False
    assert "provider down" in log.failure_reason


@pytest.mark.asyncio
async def test_create_validates_missionary(client, db, elders, other_congregation):
    missing = await client.post("/api/meals", json=_payload(elders, missionaryId=9999))
    assert missing.status_code == 404

    wrong_ward = await client.post("/api/meals", json=_payload(elders, wardId=other_congregation.id))
    assert wrong_ward.status_code == 400

    elders.active = False
    await db.commit()
    inactive = await client.post("/api/meals", json=_payload(elders))
    assert inactive.status_code == 400


@pytest.mark.asyncio
async def test_create_rejects_inactive_or_unknown_congregation(client, db, congregation, elders):
    unknown = await client.post("/api/meals", json=_payload(elders, wardId=9999))
    assert unknown.status_code == 404

    congregation.active = False
    await db.commit()
    inactive = await client.post("/api/meals", json=_payload(elders))
    assert inactive.status_code == 400


@pytest.mark.asyncio
async def test_create_rejects_malformed_body(client, elders):
    response = await client.post("/api/meals", json=_payload(elders, startTime="6pm"))
    assert response.status_code == 400
    body = response.json()
    assert body["message"] == "Invalid request"
    assert any("startTime" in err["field"] for err in body["errors"])


@pytest.mark.asyncio
async def test_past_dates_are_accepted(client, elders):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    response = await client.post("/api/meals", json=_payload(elders, day=yesterday))
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_iso_datetime_is_reduced_to_calendar_day(client, elders):
    response = await client.post("/api/meals", json=_payload(elders, day="2025-06-01T00:00:00.000Z"))
    assert response.status_code == 201
    assert response.json()["date"] == "2025-06-01"


# ── Host caps ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_max_bookings_per_phone(client, db, congregation, elders, sisters):
    congregation.max_bookings_per_phone = 1
    await db.commit()
    upcoming = (date.today() + timedelta(days=3)).isoformat()

    assert (await client.post("/api/meals", json=_payload(elders, day=upcoming))).status_code == 201
    capped = await client.post("/api/meals", json=_payload(sisters, day=upcoming))
    assert capped.status_code == 409
    assert "limit is 1" in capped.json()["message"]


@pytest.mark.asyncio
async def test_max_bookings_per_period(client, db, congregation, elders):
    congregation.max_bookings_per_period = 1
    congregation.booking_period_days = 7
    await db.commit()

    assert (await client.post("/api/meals", json=_payload(elders, day="2025-06-01"))).status_code == 201
    near = await client.post("/api/meals", json=_payload(elders, day="2025-06-04"))
    assert near.status_code == 409
    far = await client.post("/api/meals", json=_payload(elders, day="2025-06-20"))
    assert far.status_code == 201


# ── Update ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_fields_and_notify(client, elders, sent):
    meal = (await client.post("/api/meals", json=_payload(elders))).json()

    response = await client.patch(f"/api/meals/{meal['id']}", json={"startTime": "17:30", "hostName": "The Larsens"})
    assert response.status_code == 200
    assert response.json()["startTime"] == "17:30"
    assert response.json()["hostName"] == "The Larsens"

    texts = [message.text for _, message in sent[NotificationMethod.EMAIL]]
    assert texts[-1].startswith("Meal updated: Sunday, June 1 at 5:30 PM with The Larsens.")


@pytest.mark.asyncio
async def test_update_date_into_conflict(client, elders):
    await client.post("/api/meals", json=_payload(elders, day="2025-06-01"))
    other = (await client.post("/api/meals", json=_payload(elders, day="2025-06-02"))).json()

    response = await client.patch(f"/api/meals/{other['id']}", json={"date": "2025-06-01"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_same_date_does_not_conflict_with_itself(client, elders):
    meal = (await client.post("/api/meals", json=_payload(elders))).json()
    response = await client.patch(f"/api/meals/{meal['id']}", json={"date": "2025-06-01", "specialNotes": "Bring a friend"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_update_missionary_must_share_congregation(client, db, elders, other_congregation):
    stranger = Missionary(congregation_id=other_congregation.id, name="Elder Far", type=MissionaryType.ELDERS)
    db.add(stranger)
    await db.commit()
    meal = (await client.post("/api/meals", json=_payload(elders))).json()

    response = await client.patch(f"/api/meals/{meal['id']}", json={"missionaryId": stranger.id})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_update_reassigns_missionary_in_same_congregation(client, db, elders, sent):
    others = Missionary(
        congregation_id=elders.congregation_id,
        name="Elder Brown & Elder White",
        type=MissionaryType.ELDERS,
        email_address="brown@missionary.org",
        email_verified=True,
        preferred_notification=NotificationMethod.EMAIL,
    )
    db.add(others)
    await db.commit()
    meal = (await client.post("/api/meals", json=_payload(elders))).json()
    sent[NotificationMethod.EMAIL].clear()

    response = await client.patch(f"/api/meals/{meal['id']}", json={"missionaryId": others.id})
    assert response.status_code == 200
    body = response.json()
    assert body["missionaryId"] == others.id
    assert body["missionary"]["id"] == others.id
    assert body["missionary"]["name"] == "Elder Brown & Elder White"

    fetched = (await client.get(f"/api/meals/{meal['id']}")).json()
    assert fetched["missionary"] == body["missionary"]
    assert [destination for destination, _ in sent[NotificationMethod.EMAIL]] == ["brown@missionary.org"]


@pytest.mark.asyncio
async def test_update_with_null_clears_optional_fields(client, elders):
    meal = (
        await client.post(
            "/api/meals",
            json=_payload(elders, hostEmail="hansens@example.org", mealDescription="Lasagna", specialNotes="Gate 42"),
        )
    ).json()

    response = await client.patch(
        f"/api/meals/{meal['id']}",
        json={"hostEmail": None, "mealDescription": None, "specialNotes": None, "hostName": None},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["hostEmail"] is None
    assert body["mealDescription"] is None
    assert body["specialNotes"] is None
    assert body["hostName"] == "The Hansens"


@pytest.mark.asyncio
async def test_update_cancelled_meal_conflicts(client, elders):
    meal = (await client.post("/api/meals", json=_payload(elders))).json()
    await client.post(f"/api/meals/{meal['id']}/cancel")

    response = await client.patch(f"/api/meals/{meal['id']}", json={"hostName": "Someone"})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_missing_meal(client):
    response = await client.patch("/api/meals/9999", json={"hostName": "Someone"})
    assert response.status_code == 404


# ── Cancel ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_notifies_missionary_and_ward_admins(client, elders, admin_user, sent):
    meal = (await client.post("/api/meals", json=_payload(elders))).json()
    sent[NotificationMethod.EMAIL].clear()

    await client.post(f"/api/meals/{meal['id']}/cancel", json={"reason": "sick"})

    recipients = {destination: message for destination, message in sent[NotificationMethod.EMAIL]}
    assert recipients[elders.email_address].text.endswith("Reason: sick")
    assert "for missionary Elder Smith & Elder Jones" in recipients[admin_user.email].text


@pytest.mark.asyncio
async def test_cancel_twice_is_a_no_op(client, elders, sent):
    meal = (await client.post("/api/meals", json=_payload(elders))).json()
    await client.post(f"/api/meals/{meal['id']}/cancel", json={"reason": "first"})
    count = len(sent[NotificationMethod.EMAIL])

    second = await client.post(f"/api/meals/{meal['id']}/cancel", json={"reason": "second"})
    assert second.status_code == 200
    assert second.json()["cancellationReason"] == "first"
    assert len(sent[NotificationMethod.EMAIL]) == count


@pytest.mark.asyncio
async def test_cancel_without_body(client, elders):
    meal = (await client.post("/api/meals", json=_payload(elders))).json()
    response = await client.post(f"/api/meals/{meal['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["cancellationReason"] is None


@pytest.mark.asyncio
async def test_cancel_missing_meal(client):
    assert (await client.post("/api/meals/9999/cancel")).status_code == 404


# ── Queries ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_includes_cancelled_and_rejects_inverted_range(client, elders, sisters):
    kept = (await client.post("/api/meals", json=_payload(elders, day="2025-06-01"))).json()
    dropped = (await client.post("/api/meals", json=_payload(sisters, day="2025-06-02"))).json()
    await client.post(f"/api/meals/{dropped['id']}/cancel")
    await client.post("/api/meals", json=_payload(elders, day="2025-07-15"))

    response = await client.get(
        "/api/meals", params={"startDate": "2025-06-01", "endDate": "2025-06-30", "wardId": elders.congregation_id}
    )
    assert response.status_code == 200
    assert [m["id"] for m in response.json()] == [kept["id"], dropped["id"]]
    assert response.json()[1]["cancelled"] is True

    inverted = await client.get("/api/meals", params={"startDate": "2025-06-30", "endDate": "2025-06-01"})
    assert inverted.status_code == 400


@pytest.mark.asyncio
async def test_meals_for_host_phone(client, elders, sisters):
    soon = (date.today() + timedelta(days=2)).isoformat()
    later = (date.today() + timedelta(days=5)).isoformat()
    await client.post("/api/meals", json=_payload(elders, day=soon, hostPhone="555-0199"))
    cancelled = (await client.post("/api/meals", json=_payload(sisters, day=later, hostPhone="555-0199"))).json()
    await client.post(f"/api/meals/{cancelled['id']}/cancel")

    response = await client.get("/api/meals/host/555-0199")
    assert response.status_code == 200
    assert [m["date"] for m in response.json()] == [soon]


@pytest.mark.asyncio
async def test_check_availability_endpoint(client, congregation, elders):
    body = {"date": "2025-06-01", "missionaryType": "elders", "wardId": congregation.id}
    assert (await client.post("/api/meals/check-availability", json=body)).json() == {"available": True}

    await client.post("/api/meals", json=_payload(elders))
    assert (await client.post("/api/meals/check-availability", json=body)).json() == {"available": False}

    by_id = {"date": "2025-06-02", "missionaryId": str(elders.id), "congregationId": congregation.id}
    assert (await client.post("/api/meals/check-availability", json=by_id)).json() == {"available": True}


# ── Race mapping ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unique_index_violation_maps_to_conflict(db, elders, notifier, monkeypatch):
    """A booking that slips past the pre-check still loses at the unique index."""
    db.add(Meal(
        missionary_id=elders.id,
        congregation_id=elders.congregation_id,
        date=date(2025, 6, 1),
        start_time="12:00",
        host_name="Early Bird",
        host_phone="555-0001",
    ))
    await db.commit()

    async def never_booked(*args, **kwargs):
        return False

    monkeypatch.setattr("services.meal.service.missionary_has_meal", never_booked)
    service = BookingService(db, notifier)
    command = MealCreateRequest.model_validate(_payload(elders))

    with pytest.raises(ConflictError) as excinfo:
        await service.create(command)
    assert "Elders" in excinfo.value.message
    assert await db.scalar(select(func.count(Meal.id))) == 1
