from __future__ import annotations

import secrets

from .config import get_settings


def api_key_required() -> bool:
    return bool(get_settings().api_key)


def api_key_matches(candidate: str | None) -> bool:
    expected = get_settings().api_key
    if not expected:
        return True
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))
