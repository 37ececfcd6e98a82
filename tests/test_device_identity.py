import base64
import re

import numpy as np

from kiosk_attendance.camera import decode_image, frame_to_data_url
from kiosk_attendance.database import KioskDatabase
from kiosk_attendance.device_identity import device_display_name, get_kiosk_id
from kiosk_attendance.models import AttendanceType, DeviceStatus


def test_kiosk_id_is_generated_once_and_persisted(tmp_path):
    path = tmp_path / "kiosk.db"
    first = get_kiosk_id(KioskDatabase(path))
    assert re.fullmatch(r"kiosk-\d{13}-[a-z0-9]{9}", first)
    assert get_kiosk_id(KioskDatabase(path)) == first
    assert get_kiosk_id(KioskDatabase(tmp_path / "other.db")) != first


def test_display_name_uses_random_suffix():
    assert device_display_name("kiosk-1700000000000-ab12cd34e") == "Terminal ab12cd34e"


def test_type_ids_are_stable():
    assert [member.type_id for member in AttendanceType] == [1, 2, 3, 4, 5]
    assert AttendanceType.from_type_id(4) is AttendanceType.ENTRADA_DESCANSO
    assert AttendanceType.from_label("Falta") is AttendanceType.FALTA


def test_unknown_device_status_reads_as_unregistered():
    assert DeviceStatus.parse("APPROVED") is DeviceStatus.APPROVED
    assert DeviceStatus.parse("retired") is DeviceStatus.UNREGISTERED
    assert DeviceStatus.parse(None) is DeviceStatus.UNREGISTERED


def test_frame_screenshot_is_a_jpeg_data_url():
    frame = np.zeros((32, 24, 3), dtype=np.uint8)
    url = frame_to_data_url(frame, quality=80)
    assert url.startswith("data:image/jpeg;base64,")
    assert frame_to_data_url(None) is None

    decoded = decode_image(base64.b64decode(url.split(",", 1)[1]))
    assert decoded.shape[:2] == (32, 24)
