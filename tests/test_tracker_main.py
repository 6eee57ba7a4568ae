from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from services.tracker.config import Settings
from services.tracker.main import create_app, get_now


MORNING = datetime(2026, 3, 10, 9, 30)


@pytest.fixture
def clock():
    return {"now": MORNING}


@pytest.fixture
def client(clock):
    app = create_app(Settings())
    app.dependency_overrides[get_now] = lambda: clock["now"]
    with TestClient(app) as test_client:
        yield test_client


def _create_ibuprofen(client: TestClient) -> dict:
    response = client.post(
        "/medications",
        json={"name": "Ibuprofeno", "dose": "600mg", "times": ["08:00", "14:00"], "with_food": True},
    )
    assert response.status_code == 201
    medication = response.json()
    response = client.post(
        f"/medications/{medication['id']}/time-slots",
        json={"time_of_day": "22:00", "with_food": False},
    )
    assert response.status_code == 201
    return medication


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "tracker"}


def test_today_view_next_due_and_stats(client):
    _create_ibuprofen(client)

    today = client.get("/today").json()
    assert [d["time_of_day"] for d in today] == ["08:00", "14:00", "22:00"]
    assert [d["state"] for d in today] == ["pending", "pending", "pending"]
    assert [d["overdue"] for d in today] == [True, False, False]
    assert today[0]["scheduled_at"] == "2026-03-10T08:00:00"

    assert client.get("/today/next").json()["time_of_day"] == "14:00"
    assert client.get("/today/stats").json() == {"total": 3, "taken": 0, "pending": 3, "skipped": 0}


def test_confirm_taken_then_skip_keeps_taken(client):
    _create_ibuprofen(client)
    dose_id = client.get("/today").json()[0]["id"]

    taken = client.post(f"/doses/{dose_id}/taken").json()
    skipped = client.post(f"/doses/{dose_id}/skipped").json()

    assert taken["state"] == "taken"
    assert taken["taken_at"] == "2026-03-10T09:30:00"
    assert skipped["state"] == "taken"
    assert skipped["taken_at"] == taken["taken_at"]
    assert client.get("/today/stats").json() == {"total": 3, "taken": 1, "pending": 2, "skipped": 0}


def test_unknown_ids_return_404(client):
    assert client.post("/doses/999/taken").status_code == 404
    assert client.post("/doses/999/skipped").status_code == 404
    assert client.get("/doses/999").status_code == 404
    assert client.patch("/medications/999", json={"dose": "1"}).status_code == 404
    assert client.delete("/medications/999").status_code == 404
    assert client.post("/medications/999/time-slots", json={"time_of_day": "08:00"}).status_code == 404
    assert client.delete("/time-slots/999").status_code == 404


def test_next_due_is_null_without_pending_doses(client):
    assert client.get("/today/next").json() is None


def test_next_due_falls_back_to_earliest_overdue(client, clock):
    _create_ibuprofen(client)
    clock["now"] = datetime(2026, 3, 10, 23, 0)

    assert client.get("/today/next").json()["time_of_day"] == "08:00"


def test_deleting_medication_hides_doses_but_keeps_history(client):
    medication = _create_ibuprofen(client)
    dose_ids = [d["id"] for d in client.get("/today").json()]

    assert client.delete(f"/medications/{medication['id']}").json() == {"status": "ok"}

    assert client.get("/today").json() == []
    assert client.get("/medications").json() == []
    listed = client.get("/medications", params={"include_inactive": True}).json()
    assert listed[0]["active"] is False
    for dose_id in dose_ids:
        assert client.get(f"/doses/{dose_id}").json()["state"] == "pending"


def test_medication_listing_and_update(client):
    medication = _create_ibuprofen(client)
    client.post("/medications", json={"name": "Omeprazol", "description": "Protector de estómago"})

    listed = client.get("/medications").json()
    assert [m["schedule_text"] for m in listed] == ["3 doses a day", "No schedule"]

    found = client.get("/medications", params={"search": "ESTÓMAGO"}).json()
    assert [m["name"] for m in found] == ["Omeprazol"]

    response = client.patch(f"/medications/{medication['id']}", json={"dose": "400mg"})
    assert response.status_code == 200
    assert response.json()["dose"] == "400mg"
    assert client.patch(f"/medications/{medication['id']}", json={"dose": None}).status_code == 422


def test_request_validation_happens_at_boundary(client):
    assert client.post("/medications", json={"name": "  "}).status_code == 422
    assert client.post("/medications", json={"name": "X", "times": ["25:00"]}).status_code == 422
    assert client.post("/medications", json={"name": "X", "schedule": "weekly"}).status_code == 422


def test_removed_time_slot_stops_materializing(client):
    medication = _create_ibuprofen(client)
    slot_id = medication["time_slots"][0]["id"]

    assert client.delete(f"/time-slots/{slot_id}").json() == {"status": "ok"}
    assert [d["time_of_day"] for d in client.get("/today").json()] == ["14:00", "22:00"]


def test_sql_backend_with_demo_data():
    app = create_app(Settings(database_url="sqlite://", seed_demo=True))
    app.dependency_overrides[get_now] = lambda: MORNING

    with TestClient(app) as client:
        today = client.get("/today").json()
        first_ids = [d["id"] for d in today]
        assert [d["medication_name"] for d in today] == [
            "Ibuprofeno",
            "Omeprazol",
            "Vitamina D",
            "Ibuprofeno",
            "Ibuprofeno",
        ]
        assert client.get("/today/next").json()["medication_name"] == "Vitamina D"
        assert [d["id"] for d in client.get("/today").json()] == first_ids
        assert client.get("/today/stats").json() == {"total": 5, "taken": 0, "pending": 5, "skipped": 0}


def test_configured_timezone_decides_the_local_day():
    app = create_app(Settings(timezone="Etc/GMT-2"))
    app.dependency_overrides[get_now] = lambda: datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc)

    with TestClient(app) as client:
        client.post("/medications", json={"name": "Omeprazol", "times": ["08:00"]})
        today = client.get("/today").json()
        taken = client.post(f"/doses/{today[0]['id']}/taken").json()

    assert today[0]["scheduled_at"] == "2026-03-11T08:00:00"
    assert today[0]["overdue"] is False
    assert taken["taken_at"] == "2026-03-11T01:30:00"


def test_default_clock_is_timezone_aware():
    assert get_now().tzinfo is not None


def test_edit_time_slot(client):
    medication = _create_ibuprofen(client)
    slot_id = medication["time_slots"][0]["id"]
    dose_ids = [d["id"] for d in client.get("/today").json()]

    response = client.patch(f"/time-slots/{slot_id}", json={"time_of_day": "9:15", "with_food": False})

    assert response.status_code == 200
    assert response.json()["time_of_day"] == "09:15"
    assert response.json()["with_food"] is False
    today = client.get("/today").json()
    assert [d["id"] for d in today] == dose_ids
    assert today[0]["time_of_day"] == "08:00"
    listed = client.get("/medications").json()[0]
    assert [s["time_of_day"] for s in listed["time_slots"]] == ["09:15", "14:00", "22:00"]


def test_edit_time_slot_rejects_unknown_ids_and_bad_input(client):
    medication = _create_ibuprofen(client)
    slot_id = medication["time_slots"][0]["id"]

    assert client.patch("/time-slots/999", json={"with_food": True}).status_code == 404
    assert client.patch(f"/time-slots/{slot_id}", json={"time_of_day": "25:00"}).status_code == 422
    assert client.patch(f"/time-slots/{slot_id}", json={"recurrence": "weekly"}).status_code == 422
