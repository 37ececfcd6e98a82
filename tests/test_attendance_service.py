import pytest

from kiosk_attendance.attendance_service import (
    ADMIN_CONSOLE_KIOSK,
    AUTO_CLOSE_BREAK_NOTE,
    AUTO_CLOSE_WARNING_NOTE,
    AttendanceService,
)
from kiosk_attendance.exceptions import AttendanceError, DatabaseError
from kiosk_attendance.models import AttendanceType


@pytest.fixture
def service(db, settings):
    return AttendanceService(db, settings, kiosk_id="kiosk-1700000000000-abc123xyz")


def test_mark_snapshots_user_and_kiosk(service, make_user, db):
    user = make_user(phone="555")
    (record,) = service.register_mark(user, AttendanceType.ENTRADA, photo="data:x", timestamp=1_000_000)

    assert record.user_name == "Ana Gomez"
    assert record.user_dni == "30111222"
    assert record.user_phone == "555"
    assert record.kiosk_id == "kiosk-1700000000000-abc123xyz"
    assert record.photo == "data:x"
    assert record.synced is False

    # Renaming the person later leaves the historical row alone.
    user.name = "Ana Maria Gomez"
    db.update_user(user)
    assert db.get_attendance(record.id).user_name == "Ana Gomez"


def test_recent_mark_guard(service, make_user):
    user = make_user()
    service.register_mark(user, AttendanceType.ENTRADA, timestamp=1_000_000)
    with pytest.raises(AttendanceError):
        service.register_mark(user, AttendanceType.SALIDA, timestamp=1_009_999)
    assert len(service.register_mark(user, AttendanceType.SALIDA, timestamp=1_010_000)) == 1


def test_leaving_during_break_closes_the_break_first(service, make_user, db):
    user = make_user()
    service.register_mark(user, AttendanceType.ENTRADA_DESCANSO, timestamp=1_000_000)

    closing, leaving = service.register_mark(user, AttendanceType.SALIDA, timestamp=2_000_000)
    assert closing.type is AttendanceType.SALIDA_DESCANSO
    assert closing.notes == AUTO_CLOSE_BREAK_NOTE
    assert leaving.type is AttendanceType.SALIDA
    assert leaving.notes == AUTO_CLOSE_WARNING_NOTE
    assert len(db.pending_attendance()) == 3


def test_strict_mode_refuses_to_leave_an_open_break(service, make_user):
    user = make_user()
    service.register_mark(user, AttendanceType.ENTRADA_DESCANSO, timestamp=1_000_000)
    with pytest.raises(AttendanceError):
        service.register_mark(user, AttendanceType.SALIDA, timestamp=2_000_000, auto_close_break=False)


def test_manual_entry_is_tagged_as_admin(service, make_user):
    user = make_user()
    record = service.manual_entry(user.id, AttendanceType.FALTA, 1_500_000, notes="sick leave")
    assert record.kiosk_id == ADMIN_CONSOLE_KIOSK
    assert record.modified_by == "Admin (Manual)"
    assert record.type_id == 5
    assert record.notes == "sick leave"

    with pytest.raises(AttendanceError):
        service.manual_entry(9999, AttendanceType.ENTRADA, 1)


def test_edit_mark_requeues_for_upload(service, make_user, db):
    user = make_user()
    (record,) = service.register_mark(user, AttendanceType.ENTRADA, timestamp=1_000_000)
    db.mark_attendance_synced(record.id)

    edited = service.edit_mark(record.id, AttendanceType.ENTRADA, 999_000, observation="clock drift", modified_by="HR")
    assert edited.timestamp == 999_000
    assert edited.observation == "clock drift"
    assert edited.modified_by == "HR"
    assert [pending.id for pending in db.pending_attendance()] == [record.id]


def test_false_positive_reports_accumulate(service, make_user):
    user = make_user()
    assert service.report_false_positive(user.id) == 1
    assert service.report_false_positive(user.id) == 2
    with pytest.raises(DatabaseError):
        service.report_false_positive(12345)


def test_live_activity_window(service, make_user):
    user = make_user()
    other = make_user(dni="2", name="Luis")
    service.register_mark(user, AttendanceType.ENTRADA, timestamp=1_000_000)
    service.register_mark(other, AttendanceType.ENTRADA, timestamp=1_020_000)

    live = service.live_activity(now=1_030_000)
    assert [record.user_name for record in live] == ["Luis"]
    assert service.live_activity(now=1_040_000) == []
