from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import KioskSettings
from .database import KioskDatabase, now_ms
from .descriptors import DESCRIPTOR_CODEC_VERSION, descriptor_fingerprint, encode_descriptors, hydrate_descriptors
from .device_identity import device_display_name
from .exceptions import DatabaseError, SyncError
from .logger import setup_logger
from .models import AttendanceRecord, DeviceStatus, UserRecord

SYNC_CONFIG_KEY = "sync_config"
DEVICE_STATUS_KEY = "device_status"


@dataclass
class SyncConfig:
    server_url: str = ""
    api_key: str = ""
    enabled: bool = False

    @property
    def base_url(self) -> str:
        return self.server_url.strip().rstrip("/")

    @property
    def is_active(self) -> bool:
        return self.enabled and bool(self.base_url)

    @classmethod
    def from_dict(cls, raw: Any, default_url: str = "") -> "SyncConfig":
        if not isinstance(raw, dict):
            return cls(server_url=default_url)
        return cls(
            server_url=str(raw.get("server_url") or ""),
            api_key=str(raw.get("api_key") or ""),
            enabled=bool(raw.get("enabled", False)),
        )


@dataclass(frozen=True)
class AttendanceSyncResult:
    success: bool
    synced: int
    errors: int


@dataclass(frozen=True)
class EmployeeSyncResult:
    success: bool
    downloaded: int
    uploaded: int


@dataclass(frozen=True)
class SyncResult:
    success: bool
    downloaded: int
    uploaded: int
    attendance_synced: int = 0
    attendance_failed: int = 0


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
    reason: str


def _is_success(response) -> bool:
    return 200 <= int(response.status_code) < 300


def _remote_created_at(raw: Any) -> int:
    if isinstance(raw, (int, float)) and raw > 0:
        return int(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            return int(datetime.fromisoformat(raw.strip().replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            pass
    return now_ms()


class SyncService:
    """
    Reconciles the local store with the central server.

    A sync cycle uploads pending attendance, reconciles employees in both
    directions and sends a heartbeat, in that order. Each phase, and each
    record inside a phase, fails on its own without stopping the others.
    """

    def __init__(
        self,
        db: KioskDatabase,
        settings: KioskSettings,
        kiosk_id: str,
        session=None,
        on_users_changed: Optional[Callable[[], None]] = None,
    ):
        self.db = db
        self.settings = settings
        self.kiosk_id = kiosk_id
        self.session = session if session is not None else requests.Session()
        self.on_users_changed = on_users_changed
        self.logger = setup_logger(self.__class__.__name__)

        self._config = SyncConfig(server_url=settings.default_server_url)
        self._config_lock = threading.RLock()
        self._sync_lock = threading.Lock()
        self._listeners: List[Callable[[bool], None]] = []
        self._scheduler: Optional[SyncScheduler] = None
        self.last_result: Optional[SyncResult] = None
        self.last_sync_at: Optional[int] = None

    # Configuration

    @property
    def config(self) -> SyncConfig:
        with self._config_lock:
            return replace(self._config)

    def init(self, autosync: bool = True) -> None:
        stored = self.db.get_setting(SYNC_CONFIG_KEY)
        with self._config_lock:
            if stored is not None:
                self._config = SyncConfig.from_dict(stored, default_url=self.settings.default_server_url)
        if autosync and self.config.is_active:
            self.start_autosync()

    def update_config(self, autosync: bool = True, **changes: Any) -> SyncConfig:
        unknown = set(changes) - {"server_url", "api_key", "enabled"}
        if unknown:
            raise SyncError(f"Unknown sync settings: {sorted(unknown)}")
        with self._config_lock:
            self._config = replace(self._config, **changes)
            config = replace(self._config)
        self.db.set_setting(SYNC_CONFIG_KEY, asdict(config))
        self.logger.info("Sync configuration updated (enabled=%s, url=%s)", config.enabled, config.base_url)

        if not autosync:
            return config
        if config.is_active:
            self.start_autosync()
        else:
            self.stop_autosync()
        return config

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self, syncing: bool) -> None:
        for callback in list(self._listeners):
            try:
                callback(syncing)
            except Exception:
                self.logger.exception("Sync listener failed")

    # Transport

    def _headers(self, config: SyncConfig) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        return headers

    def _request(self, config: SyncConfig, method: str, path: str, timeout: Optional[float] = None, **kwargs):
        return self.session.request(
            method,
            f"{config.base_url}{path}",
            headers=self._headers(config),
            timeout=self.settings.request_timeout_seconds if timeout is None else timeout,
            **kwargs,
        )

    # Sync cycle

    def full_sync(self) -> SyncResult:
        config = self.config
        if not config.is_active:
            return SyncResult(success=False, downloaded=0, uploaded=0)

        with self._sync_lock:
            self._notify(True)
            try:
                attendance = self.sync_pending_attendance()
                employees = self.sync_employees()
                self.heartbeat()
            finally:
                self._notify(False)

        result = SyncResult(
            success=attendance.success and employees.success,
            downloaded=employees.downloaded,
            uploaded=employees.uploaded,
            attendance_synced=attendance.synced,
            attendance_failed=attendance.errors,
        )
        self.last_result = result
        self.last_sync_at = now_ms()
        self.logger.info(
            "Sync finished: success=%s attendance=%d/%d downloaded=%d uploaded=%d",
            result.success,
            attendance.synced,
            attendance.synced + attendance.errors,
            result.downloaded,
            result.uploaded,
        )
        return result

    def sync_pending_attendance(self) -> AttendanceSyncResult:
        config = self.config
        if not config.is_active:
            return AttendanceSyncResult(success=False, synced=0, errors=0)

        try:
            pending = self.db.pending_attendance()
        except DatabaseError:
            self.logger.exception("Could not load pending attendance")
            return AttendanceSyncResult(success=False, synced=0, errors=1)

        synced = 0
        errors = 0
        for record in pending:
            try:
                response = self._request(config, "POST", "/api/attendance", json=self._attendance_payload(record))
            except requests.RequestException as exc:
                errors += 1
                self.logger.warning("Attendance %s upload failed: %s", record.id, exc)
                continue

            if not _is_success(response):
                errors += 1
                self.logger.warning("Attendance %s rejected with HTTP %s", record.id, response.status_code)
                continue

            try:
                self.db.mark_attendance_synced(record.id)
            except DatabaseError:
                errors += 1
                self.logger.exception("Attendance %s uploaded but could not be flagged", record.id)
                continue
            synced += 1

        return AttendanceSyncResult(success=errors == 0, synced=synced, errors=errors)

    def _attendance_payload(self, record: AttendanceRecord) -> Dict[str, Any]:
        return {
            "userId": record.user_id,
            "userName": record.user_name,
            "userDni": record.user_dni,
            "type": record.type.value,
            "type_id": record.type_id,
            "timestamp": record.timestamp,
            "photo": record.photo,
            "notes": record.notes,
            "observation": record.observation,
            "kioskId": record.kiosk_id or self.kiosk_id,
            "clientId": record.client_id,
        }

    def sync_employees(self) -> EmployeeSyncResult:
        config = self.config
        if not config.is_active:
            return EmployeeSyncResult(success=False, downloaded=0, uploaded=0)

        try:
            download_ok, downloaded = self._download_employees(config)
        except Exception:
            self.logger.exception("Employee download failed")
            download_ok, downloaded = False, 0

        # Local edits still go up when the download failed.
        try:
            upload_ok, uploaded = self._upload_employees(config)
        except Exception:
            self.logger.exception("Employee upload failed")
            upload_ok, uploaded = False, 0

        return EmployeeSyncResult(success=download_ok and upload_ok, downloaded=downloaded, uploaded=uploaded)

    def _download_employees(self, config: SyncConfig) -> tuple[bool, int]:
        try:
            response = self._request(config, "GET", "/api/employees")
        except requests.RequestException as exc:
            self.logger.warning("Employee download failed: %s", exc)
            return False, 0
        if not _is_success(response):
            self.logger.warning("Employee download rejected with HTTP %s", response.status_code)
            return False, 0

        try:
            rows = response.json()
        except ValueError as exc:
            self.logger.warning("Employee download returned invalid JSON: %s", exc)
            return False, 0
        if not isinstance(rows, list):
            self.logger.warning("Employee download returned %s instead of a list", type(rows).__name__)
            return False, 0

        downloaded = 0
        for row in rows:
            if not isinstance(row, dict):
                self.logger.warning("Skipping remote employee that is not an object: %r", row)
                continue
            try:
                if self._apply_remote_employee(row):
                    downloaded += 1
            except (ValueError, TypeError, DatabaseError) as exc:
                self.logger.warning("Skipping remote employee %r: %s", row.get("dni"), exc)

        if downloaded:
            self.logger.info("Downloaded/updated %d employees from server", downloaded)
            if self.on_users_changed is not None:
                try:
                    self.on_users_changed()
                except Exception:
                    self.logger.exception("Matcher refresh after employee download failed")
        return True, downloaded

    def _apply_remote_employee(self, row: Dict[str, Any]) -> bool:
        dni = str(row.get("dni") or "").strip()
        if not dni:
            raise ValueError("remote employee has no DNI")

        descriptors = hydrate_descriptors(row.get("face_descriptors"), version=row.get("descriptor_version"))
        local = self.db.get_user_by_dni(dni)
        if local is not None and descriptor_fingerprint(local.face_descriptors) == descriptor_fingerprint(descriptors):
            return False
        if not descriptors:
            raise ValueError("remote employee has no face descriptors")
        lengths = {descriptor.size for descriptor in descriptors}
        if len(lengths) != 1:
            raise ValueError(f"remote descriptors have mixed lengths: {sorted(lengths)}")
        expected = self.db.descriptor_dimension(exclude_user_id=local.id if local is not None else None)
        if expected is not None and descriptors[0].size != expected:
            raise ValueError(f"remote descriptors are {descriptors[0].size} long, enrolled people use {expected}")

        user = UserRecord(
            id=local.id if local is not None else None,
            dni=dni,
            name=str(row.get("name") or dni),
            face_descriptors=descriptors,
            photos=list(row.get("photos") or []),
            email=row.get("email"),
            phone=row.get("phone"),
            whatsapp=row.get("whatsapp"),
            pin=row.get("pin"),
            created_at=local.created_at if local is not None else _remote_created_at(row.get("created_at")),
        )
        if local is not None:
            user.sector = local.sector
            user.role = local.role
            user.tenant_id = local.tenant_id
            user.assigned_kiosks = local.assigned_kiosks
            user.shift_id = local.shift_id
            user.false_positives = local.false_positives
        else:
            user.false_positives = int(row.get("false_positives") or 0)
        self.db.put_user(user)
        return True

    def _upload_employees(self, config: SyncConfig) -> tuple[bool, int]:
        uploaded = 0
        failures = 0
        for user in self.db.list_users():
            payload = {
                "name": user.name,
                "dni": user.dni,
                "email": user.email,
                "phone": user.phone,
                "whatsapp": user.whatsapp,
                "pin": user.pin,
                "face_descriptors": encode_descriptors(user.face_descriptors),
                "descriptor_version": DESCRIPTOR_CODEC_VERSION,
                "photos": user.photos,
            }
            try:
                response = self._request(config, "POST", "/api/employees", json=payload)
            except requests.RequestException as exc:
                failures += 1
                self.logger.warning("Employee %s upload failed: %s", user.dni, exc)
                continue
            if _is_success(response):
                uploaded += 1
            else:
                failures += 1
                self.logger.warning("Employee %s rejected with HTTP %s", user.dni, response.status_code)
        return failures == 0, uploaded

    def heartbeat(self) -> bool:
        config = self.config
        if not config.is_active:
            return False
        payload = {"kioskId": self.kiosk_id, "name": device_display_name(self.kiosk_id)}
        try:
            response = self._request(config, "POST", "/api/devices/register", json=payload)
        except requests.RequestException as exc:
            self.logger.warning("Heartbeat failed: %s", exc)
            return False
        if not _is_success(response):
            self.logger.warning("Heartbeat rejected with HTTP %s", response.status_code)
            return False

        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("status"):
            self._cache_status(DeviceStatus.parse(body["status"]))
        return True

    # Device registry

    def _cache_status(self, status: DeviceStatus) -> None:
        try:
            self.db.set_setting(DEVICE_STATUS_KEY, status.value)
        except DatabaseError:
            self.logger.exception("Could not cache device status")

    def cached_device_status(self) -> DeviceStatus:
        return DeviceStatus.parse(self.db.get_setting(DEVICE_STATUS_KEY, DeviceStatus.UNREGISTERED.value))

    def check_device_status(self) -> DeviceStatus:
        config = self.config
        if not config.is_active:
            # Offline-only mode is always allowed.
            return DeviceStatus.APPROVED

        try:
            response = self._request(config, "GET", f"/api/devices/check/{self.kiosk_id}")
            if _is_success(response):
                status = DeviceStatus.parse(response.json().get("status"))
                self._cache_status(status)
                return status
            self.logger.warning("Device check rejected with HTTP %s", response.status_code)
        except (requests.RequestException, ValueError, AttributeError) as exc:
            self.logger.warning("Device check failed, using cached status: %s", exc)
        return self.cached_device_status()

    def get_devices(self) -> List[Dict[str, Any]]:
        config = self.config
        if not config.base_url:
            return []
        response = self._request(config, "GET", "/api/devices")
        if not _is_success(response):
            raise SyncError(f"Device list failed with HTTP {response.status_code}")
        return response.json()

    def update_device_status(self, device_id: int, status: DeviceStatus) -> None:
        config = self.config
        if not config.base_url:
            raise SyncError("No server URL configured")
        response = self._request(
            config,
            "PUT",
            f"/api/devices/{device_id}/status",
            json={"status": DeviceStatus(status).value},
        )
        if not _is_success(response):
            raise SyncError(f"Device status update failed with HTTP {response.status_code}")

    def test_connection(self) -> ConnectionTestResult:
        config = self.config
        if not config.base_url:
            return ConnectionTestResult(False, "No server URL configured", "no_url")

        timeout = self.settings.health_timeout_seconds
        try:
            response = self._request(config, "GET", "/api/health", timeout=timeout)
        except requests.Timeout:
            return ConnectionTestResult(False, f"Connection timed out after {timeout:g} seconds", "timeout")
        except requests.RequestException as exc:
            return ConnectionTestResult(False, f"Connection failed: {exc}", "network")

        if _is_success(response):
            return ConnectionTestResult(True, "Connection successful", "ok")
        if response.status_code == 401:
            return ConnectionTestResult(False, "Unauthorized: the API key was rejected", "unauthorized")
        return ConnectionTestResult(False, f"Server returned {response.status_code}", "http_error")

    # Autosync

    def start_autosync(self) -> None:
        self.stop_autosync()
        self._scheduler = SyncScheduler(self, interval_seconds=self.settings.autosync_interval_seconds)
        self._scheduler.start()

    def stop_autosync(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None

    @property
    def autosync_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def close(self) -> None:
        self.stop_autosync()
        close = getattr(self.session, "close", None)
        if callable(close):
            close()


class SyncScheduler:
    def __init__(self, service: SyncService, interval_seconds: float = 300.0) -> None:
        self.service = service
        self.interval_seconds = max(5.0, float(interval_seconds))
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="kiosk-autosync", daemon=True)
        self._thread.start()
        self.service.logger.info("Autosync started (every %.0fs)", self.interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.service.full_sync()
            except Exception:
                self.service.logger.exception("Autosync iteration failed")
            elapsed = time.monotonic() - started
            self._stop_event.wait(max(1.0, self.interval_seconds - elapsed))
