import pytest
from fastapi.testclient import TestClient

from conftest import FRAME, SERVER_URL, FakeResponse, ScriptedSession, unit_vector
from kiosk_attendance.device_identity import get_kiosk_id
from kiosk_attendance.exceptions import AttendanceError, DeviceNotApprovedError, DuplicateIdentityError
from kiosk_attendance.kiosk_runtime import KioskRuntime
from kiosk_attendance.models import UnknownFaceRecord
from kiosk_attendance.sync_service import SyncService
from kiosk_attendance.web_app import _status_code, create_kiosk_app


@pytest.fixture
def runtime(db, engine, settings):
    return KioskRuntime(settings, db=db, engine=engine, frame_source=lambda: FRAME)


@pytest.fixture
def client(runtime):
    return TestClient(create_kiosk_app(runtime, manage_runtime=False))


@pytest.fixture
def enrolled(runtime, make_user):
    user = make_user(descriptors=[unit_vector(0)])
    runtime.refresh_matcher()
    return user


def test_state_starts_on_landing(client):
    body = client.get("/api/state").json()
    assert body["view"] == "landing"
    assert body["kiosk_id"].startswith("kiosk-")
    assert body["pending_match"] is None


def test_scan_confirm_and_mark(client, runtime, fake_engine, enrolled):
    assert client.post("/api/scanner/enter").json() == {"ok": True, "device_status": "approved"}

    fake_engine.descriptor = unit_vector(0)
    runtime.scan_once()
    state = client.get("/api/state").json()
    assert state["view"] == "confirm"
    assert state["pending_match"]["dni"] == enrolled.dni
    assert state["last_confidence"] == 100

    confirmed = client.post("/api/identity/confirm")
    assert confirmed.json()["id"] == enrolled.id
    assert "face_descriptors" not in confirmed.json()

    marked = client.post("/api/attendance/mark", json={"type": "Entrada"})
    assert marked.status_code == 200
    (record,) = marked.json()["records"]
    assert record["type"] == "Entrada"
    assert record["type_id"] == 1

    assert len(client.get("/api/attendance").json()) == 1
    assert len(client.get("/api/attendance/live").json()) == 1
    assert client.get("/api/state").json()["view"] == "scanner"


def test_flow_errors_map_to_400(client):
    client.post("/api/scanner/enter")
    response = client.post("/api/identity/confirm")
    assert response.status_code == 400
    assert "No identity" in response.json()["detail"]

    assert client.post("/api/attendance/mark", json={"type": "Lunch"}).status_code == 422


def test_blocked_device_gets_403(db, engine, settings):
    def handler(method, url, payload):
        return FakeResponse(200, {"status": "blocked"})

    sync = SyncService(db, settings, get_kiosk_id(db), session=ScriptedSession(handler))
    sync.update_config(autosync=False, server_url=SERVER_URL, enabled=True)
    runtime = KioskRuntime(settings, db=db, engine=engine, sync_service=sync, frame_source=lambda: FRAME)
    client = TestClient(create_kiosk_app(runtime, manage_runtime=False))

    response = client.post("/api/scanner/enter")
    assert response.status_code == 403
    assert "blocked" in response.json()["detail"]
    assert client.get("/api/device/status").json()["status"] == "blocked"


def test_manual_entry_and_edit(client, enrolled):
    created = client.post(
        "/api/attendance/manual",
        json={"user_id": enrolled.id, "type": "Falta", "timestamp": 1_700_000_000_000, "notes": "absent"},
    )
    assert created.status_code == 200
    record = created.json()
    assert record["kiosk_id"] == "ADMIN-CONSOLE"

    edited = client.put(
        f"/api/attendance/{record['id']}",
        json={"type": "Entrada", "timestamp": 1_700_000_100_000, "observation": "arrived late"},
    )
    assert edited.status_code == 200
    assert edited.json()["modified_by"] == "Admin"
    assert edited.json()["synced"] is False

    assert client.put("/api/attendance/9999", json={"type": "Entrada", "timestamp": 1}).status_code == 404
    assert client.post("/api/attendance/manual", json={"user_id": 999, "type": "Entrada", "timestamp": 1}).status_code == 400


def test_users_and_unknown_faces(client, runtime, enrolled):
    users = client.get("/api/users").json()
    assert users[0]["sample_count"] == 1

    runtime.db.add_unknown_face(UnknownFaceRecord(timestamp=1, photo="p", kiosk_id="k"))
    runtime.db.add_unknown_face(UnknownFaceRecord(timestamp=2, photo="p", kiosk_id="k"))
    faces = client.get("/api/unknown-faces").json()
    assert len(faces) == 2
    assert client.delete(f"/api/unknown-faces/{faces[0]['id']}").json() == {"ok": True}
    assert client.delete("/api/unknown-faces").json() == {"ok": True, "deleted": 1}

    assert client.delete(f"/api/users/{enrolled.id}").status_code == 200
    assert client.delete(f"/api/users/{enrolled.id}").status_code == 404
    assert runtime.engine.matcher is None


def test_shifts(client):
    created = client.post("/api/shifts", json={"name": "Night", "start_time": "22:00", "end_time": "06:00"}).json()
    assert created["days"] == [1, 2, 3, 4, 5]
    assert [shift["name"] for shift in client.get("/api/shifts").json()] == ["Night"]
    assert client.delete(f"/api/shifts/{created['id']}").status_code == 200
    assert client.delete(f"/api/shifts/{created['id']}").status_code == 404


def test_sync_endpoints_never_expose_the_key(client):
    updated = client.put("/api/sync/config", json={"server_url": "", "api_key": "top-secret", "enabled": False})
    assert updated.json() == {"server_url": "", "enabled": False, "has_api_key": True}
    assert "top-secret" not in client.get("/api/sync/config").text
    assert "top-secret" not in client.get("/api/state").text

    assert client.post("/api/sync/run").json()["success"] is False
    assert client.get("/api/sync/test").json()["reason"] == "no_url"
    assert client.get("/api/device/status").json()["status"] == "approved"


def test_error_status_codes():
    assert _status_code(DuplicateIdentityError("dup")) == 409
    assert _status_code(DeviceNotApprovedError("blocked")) == 403
    assert _status_code(AttendanceError("nope")) == 400
