class AttendanceError(Exception):
    """Base exception for the kiosk attendance system."""


class CameraError(AttendanceError):
    """Raised when webcam access fails."""


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""


class DatabaseError(AttendanceError):
    """Raised when local store operations fail."""


class DuplicateIdentityError(DatabaseError):
    """Raised when a DNI is already enrolled on this device."""


class EnrollmentError(AttendanceError):
    """Raised when an enrollment request is incomplete or invalid."""


class SyncError(AttendanceError):
    """Raised when the sync configuration is unusable."""


class DeviceNotApprovedError(AttendanceError):
    """Raised when the device registry has not approved this kiosk."""

    def __init__(self, status: str):
        super().__init__(f"Kiosk is not approved for attendance use (status: {status}).")
        self.status = status
