from enum import Enum


class Role(str, Enum):
    """Session participant roles."""
    DOCTOR = "doctor"    # طبيب
    PATIENT = "patient"  # مريض


class SessionStatus(str, Enum):
    """Appointment session states; transitions only move forward."""
    WAITING = "waiting"
    ACTIVE = "active"
    ENDED = "ended"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    SessionStatus.WAITING: 0,
    SessionStatus.ACTIVE: 1,
    SessionStatus.ENDED: 2,
}


class EndReason(str, Enum):
    MANUAL = "manual"
    TIME_UP = "time_up"
    COMPLETED = "completed"


class AppointmentStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# endedBy value used when the server, not a participant, closes a session
SYSTEM_USER_ID = "system"
