from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from telehealth.constants import AppointmentStatus
from telehealth.services.document_store import DocumentSnapshot


class AppointmentRequest(BaseModel):
    """طلب حجز موعد بانتظار موافقة الطبيب."""
    id: Optional[str] = None
    patient_id: str = Field(alias="patientId")
    patient_name: Optional[str] = Field(None, alias="patientName")
    doctor_id: str = Field(alias="doctorId")
    doctor_name: Optional[str] = Field(None, alias="doctorName")
    doctor_specialization: Optional[str] = Field(None, alias="doctorSpecialization")
    appointment_date: str = Field(alias="appointmentDate")
    appointment_time: str = Field(alias="appointmentTime")
    problem: Optional[str] = None
    health_records: Optional[Dict[str, Any]] = Field(None, alias="healthRecords")
    status: AppointmentStatus = AppointmentStatus.PENDING_APPROVAL
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    class Config:
        populate_by_name = True
        use_enum_values = True

    @classmethod
    def from_snapshot(cls, snap: DocumentSnapshot) -> "AppointmentRequest":
        return cls(id=snap.id, **snap.to_dict())

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
