from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any, Union

from telehealth.constants import Role, SessionStatus, EndReason, AppointmentStatus

# -------------------- Appointment request Schemas --------------------


class AppointmentRequestCreate(BaseModel):
    doctor_id: str
    doctor_name: Optional[str] = None
    doctor_specialization: Optional[str] = None
    appointment_date: str = Field(..., description="YYYY-MM-DD")
    appointment_time: str = Field(..., description="hh:mm AM|PM")
    problem: Optional[str] = None
    health_records: Optional[Dict[str, Any]] = None

    @field_validator("appointment_date")
    @classmethod
    def _valid_date(cls, v: str) -> str:
        datetime.strptime(v, "%Y-%m-%d")
        return v

    @field_validator("appointment_time")
    @classmethod
    def _valid_time(cls, v: str) -> str:
        datetime.strptime(v, "%I:%M %p")
        return v


class AppointmentRequestOut(BaseModel):
    id: str
    patient_id: str
    patient_name: Optional[str] = None
    doctor_id: str
    doctor_name: Optional[str] = None
    appointment_date: str
    appointment_time: str
    problem: Optional[str] = None
    status: AppointmentStatus

    class Config:
        from_attributes = True

# -------------------- Appointment / Session Schemas --------------------


class AppointmentOut(BaseModel):
    id: str
    patient_id: str
    patient_name: Optional[str] = None
    doctor_id: str
    doctor_name: Optional[str] = None
    doctor_specialization: Optional[str] = None
    appointment_date: Optional[str] = None
    appointment_time: Optional[str] = None
    problem: Optional[str] = None
    status: AppointmentStatus
    session_status: SessionStatus
    session_start_time: Optional[datetime] = None
    session_duration: Optional[int] = None  # milliseconds
    started_by: Optional[str] = None

    class Config:
        from_attributes = True


class UserProfileOut(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    specialization: Optional[str] = None
    years_of_experience: Optional[Union[int, str]] = None
    education: Optional[str] = None

    class Config:
        from_attributes = True


class ParticipantProfilesOut(BaseModel):
    patient: Optional[UserProfileOut] = None
    doctor: Optional[UserProfileOut] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class SessionOut(AppointmentOut):
    """الموعد مع ملفي الطبيب والمريض."""
    participants: ParticipantProfilesOut


class SessionEndIn(BaseModel):
    """سبب إنهاء الجلسة (يدوي افتراضياً)."""
    reason: EndReason = EndReason.MANUAL


class SessionActionOut(BaseModel):
    success: bool
    already_ended: bool = False

# -------------------- Chat Schemas --------------------


class ChatMessageIn(BaseModel):
    """Schema لإرسال رسالة جديدة."""
    message: str


class ChatMessageOut(BaseModel):
    id: str
    sender_id: str
    sender_name: Optional[str] = None
    sender_role: Role
    message: str
    created_at: str

    class Config:
        from_attributes = True


def message_out(msg) -> ChatMessageOut:
    return ChatMessageOut(
        id=msg.id or "",
        sender_id=msg.sender_id,
        sender_name=msg.sender_name,
        sender_role=msg.sender_role,
        message=msg.body,
        created_at=msg.created_at,
    )


def messages_out(messages) -> List[ChatMessageOut]:
    return [message_out(m) for m in messages]
