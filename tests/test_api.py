import asyncio

import pytest
from fastapi.testclient import TestClient

from dispatchdesk.core.config import get_settings
from dispatchdesk.core.db import dispose_engine, open_session
from dispatchdesk.core.events import event_bus
from dispatchdesk.main import app
from dispatchdesk.services.notifications import (
    NotificationDraft,
    NotificationType,
    create_notifications_deduplicated,
)
from tests.seed_data import (
    APPROVER,
    CREATOR,
    SITE,
    TECH_A,
    TECH_B,
    TECH_C,
    seed_reference_data,
    ticket_payload,
)


async def _seed_notifications() -> None:
    async with open_session() as session:
        await create_notifications_deduplicated(
            session,
            [
                NotificationDraft(
                    recipient_id=TECH_C,
                    type=NotificationType.TICKET_UPDATE,
                    title="Ticket updated",
                    message=f"Job {index} at Bang Na Office",
                    audit_id=f"audit-{index}",
                )
                for index in range(3)
            ],
        )


@pytest.fixture()
def client(tmp_path, monkeypatch):
    db_path = tmp_path / "api.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("DISPATCH_DESK_SUMMARY_ENABLED", "0")
    get_settings.cache_clear()
    asyncio.run(dispose_engine())
    event_bus.clear_subscribers()
    asyncio.run(event_bus.reset())
    asyncio.run(seed_reference_data())
    asyncio.run(_seed_notifications())
    asyncio.run(dispose_engine())
    with TestClient(app) as test_client:
        yield test_client
    asyncio.run(event_bus.reset())
    asyncio.run(dispose_engine())
    get_settings.cache_clear()


def _as(employee_id: str) -> dict[str, str]:
    return {"X-Employee-Id": employee_id}


def _create(client, **overrides) -> dict:
    response = client.post("/api/tickets", json=ticket_payload(**overrides), headers=_as(CREATOR))
    assert response.status_code == 201, response.text
    return response.json()


def test_requests_without_employee_identity_are_rejected(client):
    response = client.get("/api/tickets/anything")

    assert response.status_code == 401
    assert response.json()["detail"] == "Employee identity required"
    assert client.get("/api/tickets/anything", headers=_as("   ")).status_code == 401


def test_health_endpoint(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_ticket_lifecycle_over_http(client):
    created = _create(client)

    assert created["site_id"] == SITE
    assert created["appointment"]["appointment_date"] == "2026-11-02"
    assert [employee["id"] for employee in created["employees"]] == [TECH_A, TECH_B]

    fetched = client.get(f"/api/tickets/{created['id']}", headers=_as(TECH_A))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == created["id"]

    patched = client.patch(
        f"/api/tickets/{created['id']}",
        json={"ticket": {"details": "Replace UPS batteries and fans"}},
        headers=_as(CREATOR),
    )
    assert patched.status_code == 200
    assert patched.json()["details"] == "Replace UPS batteries and fans"

    audit = client.get(f"/api/tickets/{created['id']}/audit", headers=_as(CREATOR)).json()
    assert [entry["action"] for entry in audit] == ["updated", "created"]
    assert audit[0]["changed_fields"] == ["details"]

    deleted = client.delete(f"/api/tickets/{created['id']}", headers=_as(CREATOR))
    assert deleted.status_code == 204

    missing = client.get(f"/api/tickets/{created['id']}", headers=_as(CREATOR))
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"


def test_service_and_schema_errors_map_to_client_errors(client):
    unknown_work_type = client.post(
        "/api/tickets",
        json=ticket_payload(ticket={"work_type_id": "wt-ghost", "assigner_id": CREATOR, "status_id": "st-open"}),
        headers=_as(CREATOR),
    )
    assert unknown_work_type.status_code == 400
    assert unknown_work_type.json()["detail"]["code"] == "VALIDATION_ERROR"
    assert "wt-ghost" in unknown_work_type.json()["detail"]["message"]

    bad_window = client.post(
        "/api/tickets",
        json=ticket_payload(
            appointment={"appointment_time_start": "15:00", "appointment_time_end": "08:00"}
        ),
        headers=_as(CREATOR),
    )
    assert bad_window.status_code == 422

    missing_patch = client.patch(
        "/api/tickets/ticket-ghost", json={"ticket": {"details": "x"}}, headers=_as(CREATOR)
    )
    assert missing_patch.status_code == 404


def test_conflict_check_endpoint(client):
    created = _create(client)

    response = client.post(
        "/api/tickets/conflicts",
        json={"employee_ids": [TECH_C, TECH_A], "appointment_date": "2026-11-02"},
        headers=_as(CREATOR),
    )
    assert response.status_code == 200
    assert response.json() == {"conflicted_employee_ids": [TECH_A]}

    excluded = client.post(
        "/api/tickets/conflicts",
        json={
            "employee_ids": [TECH_A],
            "appointment_date": "2026-11-02",
            "exclude_ticket_id": created["id"],
        },
        headers=_as(CREATOR),
    )
    assert excluded.json() == {"conflicted_employee_ids": []}


def test_approval_and_confirmation_endpoints(client):
    created = _create(client)
    ticket_url = f"/api/tickets/{created['id']}"

    early = client.post(
        f"{ticket_url}/confirm-technicians", json={"employee_ids": [TECH_A]}, headers=_as(APPROVER)
    )
    assert early.status_code == 400

    approved = client.post(f"{ticket_url}/appointment/approval", json={}, headers=_as(APPROVER))
    assert approved.status_code == 200
    assert approved.json()["is_approved"] is True

    confirmed = client.post(
        f"{ticket_url}/confirm-technicians",
        json={"employee_ids": [{"id": TECH_A, "is_key": True}], "notes": "bring ladder"},
        headers=_as(APPROVER),
    )
    assert confirmed.status_code == 200

    listed = client.get(
        f"{ticket_url}/confirmed-technicians", params={"date": "2026-11-02"}, headers=_as(CREATOR)
    ).json()
    assert [(row["employee_id"], row["is_key"]) for row in listed] == [(TECH_A, True)]


def test_line_summary_endpoints(client, monkeypatch):
    monkeypatch.setenv("DISPATCH_DESK_DEFAULT_WORK_GIVER", "Dispatch")
    get_settings.cache_clear()
    created = _create(client)
    ticket_url = f"/api/tickets/{created['id']}"
    client.post(f"{ticket_url}/appointment/approval", json={}, headers=_as(APPROVER))
    client.post(
        f"{ticket_url}/confirm-technicians", json={"employee_ids": [TECH_A]}, headers=_as(APPROVER)
    )

    single = client.get(f"{ticket_url}/line-summary", params={"format": "compact"}, headers=_as(CREATOR))
    assert single.status_code == 200
    assert single.json()["summary"].startswith("-Dispatch - ")

    daily = client.get(
        "/api/tickets/summaries", params={"date": "2026-11-02"}, headers=_as(CREATOR)
    )
    assert daily.status_code == 200
    body = daily.json()
    assert body["team_count"] == 1
    assert body["groups"][0]["technician_display"] == "คุณEkkachai"
    assert body["groups"][0]["tickets"][0]["ticket_id"] == created["id"]

    malformed = client.get("/api/tickets/summaries", params={"date": "tomorrow"}, headers=_as(CREATOR))
    assert malformed.status_code == 400
    assert malformed.json()["detail"]["code"] == "VALIDATION_ERROR"
    bad_format = client.get(
        "/api/tickets/summaries",
        params={"date": "2026-11-02", "format": "long"},
        headers=_as(CREATOR),
    )
    assert bad_format.status_code == 422
    missing = client.get("/api/tickets/ticket-ghost/line-summary", headers=_as(CREATOR))
    assert missing.status_code == 404


def test_remove_ticket_employee_endpoint(client):
    created = _create(client)
    url = f"/api/tickets/{created['id']}/employees/{TECH_B}"

    assert client.delete(url, params={"date": "2026-11-02"}, headers=_as(CREATOR)).status_code == 204
    assert client.delete(url, params={"date": "2026-11-02"}, headers=_as(CREATOR)).status_code == 404
    assert client.delete(url, headers=_as(CREATOR)).status_code == 422

    remaining = client.get(f"/api/tickets/{created['id']}", headers=_as(CREATOR)).json()
    assert [employee["id"] for employee in remaining["employees"]] == [TECH_A]


def test_watcher_endpoints(client):
    created = _create(client)
    url = f"/api/tickets/{created['id']}/watchers"

    added = client.post(url, json={"employee_id": TECH_C}, headers=_as(TECH_C))
    assert added.status_code == 201
    assert added.json()["source"] == "manual"
    assert TECH_C in [row["employee_id"] for row in client.get(url, headers=_as(TECH_C)).json()]

    assert client.delete(url, headers=_as(TECH_C)).status_code == 204
    assert TECH_C not in [row["employee_id"] for row in client.get(url, headers=_as(TECH_C)).json()]


def test_notification_endpoints(client):
    page = client.get("/api/notifications", params={"limit": 2}, headers=_as(TECH_C))
    assert page.status_code == 200
    body = page.json()
    assert body["total"] == 3
    assert body["unread_count"] == 3
    assert body["limit"] == 2
    assert len(body["items"]) == 2

    first_id = body["items"][0]["id"]
    marked = client.post("/api/notifications/read", json={"notification_ids": [first_id]}, headers=_as(TECH_C))
    assert marked.json() == {"updated": 1}

    unread = client.get("/api/notifications", params={"unread_only": True}, headers=_as(TECH_C)).json()
    assert unread["total"] == 2
    assert client.post("/api/notifications/read", json={}, headers=_as(TECH_C)).json() == {"updated": 2}
    assert client.get("/api/notifications", headers=_as(TECH_A)).json()["total"] == 0
