from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from telehealth.constants import AppointmentStatus, EndReason, SessionStatus
from telehealth.services.document_store import DocumentSnapshot


class Appointment(BaseModel):
    """موعد مؤكد بين مريض وطبيب، مع حقول الجلسة المضمنة.

    Stored as ``appointments/<id>``; field names on the wire are camelCase so the
    web client and the backend read the same documents.
    """
    id: Optional[str] = None
    patient_id: str = Field(alias="patientId")
    patient_name: Optional[str] = Field(None, alias="patientName")
    doctor_id: str = Field(alias="doctorId")
    doctor_name: Optional[str] = Field(None, alias="doctorName")
    doctor_specialization: Optional[str] = Field(None, alias="doctorSpecialization")
    appointment_date: Optional[str] = Field(None, alias="appointmentDate")  # YYYY-MM-DD
    appointment_time: Optional[str] = Field(None, alias="appointmentTime")  # "09:30 AM"
    problem: Optional[str] = None
    health_records: Optional[Dict[str, Any]] = Field(None, alias="healthRecords")
    status: AppointmentStatus = AppointmentStatus.UPCOMING

    # Session fields
    session_status: SessionStatus = Field(SessionStatus.WAITING, alias="sessionStatus")
    session_start_time: Optional[datetime] = Field(None, alias="sessionStartTime")
    session_end_time: Optional[datetime] = Field(None, alias="sessionEndTime")
    session_duration: Optional[int] = Field(None, alias="sessionDuration")  # milliseconds
    started_by: Optional[str] = Field(None, alias="startedBy")
    ended_by: Optional[str] = Field(None, alias="endedBy")
    end_reason: Optional[EndReason] = Field(None, alias="endReason")

    created_at: Optional[datetime] = Field(None, alias="createdAt")

    class Config:
        populate_by_name = True
        use_enum_values = True

    @classmethod
    def from_snapshot(cls, snap: DocumentSnapshot) -> "Appointment":
        return cls(id=snap.id, **snap.to_dict())

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.patient_id, self.doctor_id)
