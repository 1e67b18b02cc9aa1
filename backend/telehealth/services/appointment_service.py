import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import HTTPException
from pydantic import BaseModel, ValidationError

from telehealth.config import get_settings
from telehealth.constants import AppointmentStatus, Role, SessionStatus
from telehealth.models import Appointment, AppointmentRequest, ChatMessage, UserProfile
from telehealth.schemas import AppointmentRequestCreate
from telehealth.services.document_store import (
    DocumentStore,
    DocumentStoreError,
    WriteBatch,
)
from telehealth.utils.logger import get_logger

logger = get_logger("appointment_service")
settings = get_settings()


def _appointment_path(appointment_id: str) -> str:
    return f"{settings.APPOINTMENTS_COLLECTION}/{appointment_id}"


def _request_path(request_id: str) -> str:
    return f"{settings.APPOINTMENT_REQUESTS_COLLECTION}/{request_id}"


def _user_path(user_id: str) -> str:
    return f"{settings.USERS_COLLECTION}/{user_id}"


def _store_error(e: DocumentStoreError) -> HTTPException:
    """Map a store failure to a response; transient failures are retryable (503)."""
    return HTTPException(status_code=503 if e.retryable else 500, detail=str(e) or "Document store error")


def _schedule_key(appointment: Appointment):
    """ترتيب المواعيد حسب التاريخ ثم الوقت."""
    try:
        return datetime.strptime(
            f"{appointment.appointment_date} {appointment.appointment_time}", "%Y-%m-%d %I:%M %p"
        )
    except (TypeError, ValueError):
        return datetime.max


async def get_appointment_details(store: DocumentStore, appointment_id: str) -> Optional[Appointment]:
    """Fetch one appointment; None when it does not exist (e.g. the session already ended)."""
    if not appointment_id:
        return None
    try:
        snap = await store.get(_appointment_path(appointment_id))
    except DocumentStoreError as e:
        logger.error(f"❌ Error fetching appointment {appointment_id}: {e}")
        raise _store_error(e)
    if not snap.exists:
        return None
    return Appointment.from_snapshot(snap)


async def create_appointment_request(
    store: DocumentStore, *, patient_id: str, patient_name: Optional[str], payload: AppointmentRequestCreate
) -> AppointmentRequest:
    """Create a pending booking request for the patient."""
    now = datetime.now(timezone.utc)
    request = AppointmentRequest(
        patient_id=patient_id,
        patient_name=patient_name,
        doctor_id=payload.doctor_id,
        doctor_name=payload.doctor_name,
        doctor_specialization=payload.doctor_specialization,
        appointment_date=payload.appointment_date,
        appointment_time=payload.appointment_time,
        problem=payload.problem,
        health_records=payload.health_records,
        status=AppointmentStatus.PENDING_APPROVAL,
        created_at=now,
        updated_at=now,
    )
    try:
        request.id = await store.add(settings.APPOINTMENT_REQUESTS_COLLECTION, request.to_document())
    except DocumentStoreError as e:
        logger.error(f"❌ Error creating appointment request: {e}")
        raise _store_error(e)
    logger.info(f"✅ Appointment request created with ID: {request.id}")
    return request


async def get_pending_requests(store: DocumentStore, doctor_id: str) -> List[AppointmentRequest]:
    try:
        snapshot = await store.query(
            settings.APPOINTMENT_REQUESTS_COLLECTION,
            filters=[("doctorId", doctor_id), ("status", AppointmentStatus.PENDING_APPROVAL.value)],
        )
    except DocumentStoreError as e:
        logger.error(f"❌ Error fetching pending requests: {e}")
        raise _store_error(e)
    requests = [AppointmentRequest.from_snapshot(s) for s in snapshot]
    logger.info(f"Found {len(requests)} pending requests for doctor {doctor_id}")
    return requests


async def _get_owned_request(store: DocumentStore, request_id: str, doctor_id: str) -> AppointmentRequest:
    try:
        snap = await store.get(_request_path(request_id))
    except DocumentStoreError as e:
        raise _store_error(e)
    if not snap.exists:
        raise HTTPException(status_code=404, detail="Appointment request not found")
    request = AppointmentRequest.from_snapshot(snap)
    if request.doctor_id != doctor_id:
        raise HTTPException(status_code=403, detail="Request belongs to another doctor")
    return request


async def approve_request(store: DocumentStore, *, request_id: str, doctor_id: str) -> Appointment:
    """Move a request into `appointments` in one batch (create appointment + delete request)."""
    request = await _get_owned_request(store, request_id, doctor_id)
    appointment = Appointment(
        patient_id=request.patient_id,
        patient_name=request.patient_name,
        doctor_id=request.doctor_id,
        doctor_name=request.doctor_name,
        doctor_specialization=request.doctor_specialization,
        appointment_date=request.appointment_date,
        appointment_time=request.appointment_time,
        problem=request.problem,
        health_records=request.health_records,
        status=AppointmentStatus.UPCOMING,
        session_status=SessionStatus.WAITING,
        created_at=datetime.now(timezone.utc),
    )
    # id generated up front so both writes share one batch
    appointment.id = uuid.uuid4().hex[:20]
    batch = (
        WriteBatch()
        .set(_appointment_path(appointment.id), appointment.to_document())
        .delete(_request_path(request_id))
    )
    try:
        await store.commit(batch)
    except DocumentStoreError as e:
        logger.error(f"❌ Error approving appointment request {request_id}: {e}")
        raise _store_error(e)
    logger.info(f"✅ Approved request {request_id}. New appointment created.")
    return appointment


async def reject_request(store: DocumentStore, *, request_id: str, doctor_id: str) -> None:
    await _get_owned_request(store, request_id, doctor_id)
    try:
        await store.delete(_request_path(request_id))
    except DocumentStoreError as e:
        logger.error(f"❌ Error rejecting appointment request {request_id}: {e}")
        raise _store_error(e)
    logger.info(f"Rejected and deleted request {request_id}.")


async def get_appointments(
    store: DocumentStore, *, user_id: str, role: Role, status: AppointmentStatus = AppointmentStatus.UPCOMING
) -> List[Appointment]:
    """Appointments of a doctor or patient, sorted by date and time."""
    owner_field = "doctorId" if role == Role.DOCTOR else "patientId"
    try:
        snapshot = await store.query(
            settings.APPOINTMENTS_COLLECTION,
            filters=[(owner_field, user_id), ("status", AppointmentStatus(status).value)],
        )
    except DocumentStoreError as e:
        logger.error(f"❌ Error fetching appointments: {e}")
        raise _store_error(e)
    appointments = [Appointment.from_snapshot(s) for s in snapshot]
    appointments.sort(key=_schedule_key)
    logger.info(f"Found {len(appointments)} {AppointmentStatus(status).value} appointments for {Role(role).value} {user_id}")
    return appointments


async def get_session_messages(store: DocumentStore, appointment_id: str) -> List[ChatMessage]:
    """One-shot read of a session's chat, ordered by the senders' createdAt."""
    path = f"{_appointment_path(appointment_id)}/{settings.MESSAGES_SUBCOLLECTION}"
    try:
        snapshot = await store.query(path, order_by="createdAt")
    except DocumentStoreError as e:
        logger.error(f"❌ Error fetching messages for {appointment_id}: {e}")
        raise _store_error(e)
    messages = [ChatMessage.from_snapshot(s) for s in snapshot]
    messages.sort(key=ChatMessage.sort_key)
    return messages


PROFILES_ERROR = "Could not load participant details."


class ParticipantProfiles(BaseModel):
    """ملفا طرفي الجلسة؛ الخطأ هنا لا يوقف الجلسة."""
    patient: Optional[UserProfile] = None
    doctor: Optional[UserProfile] = None
    error: Optional[str] = None


async def get_participant_profiles(store: DocumentStore, appointment: Appointment) -> ParticipantProfiles:
    """Read both participants' public profiles; a missing profile is None, a failed read sets `error`."""
    profiles = ParticipantProfiles()
    try:
        patient_snap = await store.get(_user_path(appointment.patient_id))
        doctor_snap = await store.get(_user_path(appointment.doctor_id))
        if patient_snap.exists:
            profiles.patient = UserProfile.from_snapshot(patient_snap)
        if doctor_snap.exists:
            profiles.doctor = UserProfile.from_snapshot(doctor_snap)
    except (DocumentStoreError, ValidationError) as e:
        logger.error(f"❌ Error fetching participant profiles for {appointment.id}: {e}")
        return ParticipantProfiles(error=PROFILES_ERROR)
    return profiles
