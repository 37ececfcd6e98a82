from __future__ import annotations

import secrets
import string
import threading
import time

from .database import KioskDatabase

KIOSK_ID_KEY = "kiosk_id"
_ALPHABET = string.ascii_lowercase + string.digits
_lock = threading.Lock()


def _new_kiosk_id() -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"kiosk-{int(time.time() * 1000)}-{suffix}"


def get_kiosk_id(db: KioskDatabase) -> str:
    """Stable device identifier, generated once and kept until storage is cleared."""
    with _lock:
        kiosk_id = db.get_setting(KIOSK_ID_KEY)
        if not kiosk_id:
            kiosk_id = _new_kiosk_id()
            db.set_setting(KIOSK_ID_KEY, kiosk_id)
        return str(kiosk_id)


def device_display_name(kiosk_id: str) -> str:
    return f"Terminal {kiosk_id.split('-')[-1]}"
