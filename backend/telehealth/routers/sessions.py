from fastapi import APIRouter, Depends, HTTPException, Request, status

from telehealth.config import get_settings
from telehealth.constants import Role
from telehealth.database import get_store
from telehealth.models import Appointment
from telehealth.rate_limit import limiter
from telehealth.schemas import (
    AppointmentOut,
    ChatMessageIn,
    ChatMessageOut,
    ParticipantProfilesOut,
    SessionActionOut,
    SessionEndIn,
    SessionOut,
    messages_out,
)
from telehealth.security import CurrentUser, get_current_user
from telehealth.services import appointment_service
from telehealth.services.document_store import DocumentStore
from telehealth.services.session_coordinator import Participant, SessionCoordinator, SessionResult
from telehealth.utils.logger import get_logger

logger = get_logger("sessions_router")
settings = get_settings()

router = APIRouter(prefix="/sessions", tags=["sessions"])


async def _get_session_for_user(store: DocumentStore, appointment_id: str, user: CurrentUser) -> Appointment:
    """جلب الموعد والتحقق من أن المستخدم أحد طرفي الجلسة."""
    appointment = await appointment_service.get_appointment_details(store, appointment_id)
    if not appointment:
        raise HTTPException(status_code=404, detail="Session not found")
    if not appointment.is_participant(user.id):
        raise HTTPException(status_code=403, detail="Not a participant of this session")
    return appointment


def _coordinator(store: DocumentStore, appointment_id: str, user: CurrentUser) -> SessionCoordinator:
    return SessionCoordinator(
        store, appointment_id, Participant(user_id=user.id, name=user.name, role=user.role), auto_start=False
    )


def _raise_for(result: SessionResult) -> None:
    if result.success:
        return
    if result.retryable:
        raise HTTPException(status_code=503, detail=result.error)
    raise HTTPException(status_code=409, detail=result.error)


@router.get("/{appointment_id}", response_model=SessionOut)
async def get_session(
    appointment_id: str,
    current: CurrentUser = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    """الموعد وحالة الجلسة مع ملفي الطرفين (فشل تحميل الملفات لا يمنع الرد)."""
    appointment = await _get_session_for_user(store, appointment_id, current)
    profiles = await appointment_service.get_participant_profiles(store, appointment)
    return SessionOut(
        **AppointmentOut.model_validate(appointment).model_dump(),
        participants=ParticipantProfilesOut.model_validate(profiles),
    )


@router.post("/{appointment_id}/start", response_model=SessionActionOut)
async def start_session(
    appointment_id: str,
    current: CurrentUser = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    """بدء الجلسة من قبل الطبيب (waiting -> active)."""
    appointment = await _get_session_for_user(store, appointment_id, current)
    if current.role != Role.DOCTOR or appointment.doctor_id != current.id:
        raise HTTPException(status_code=403, detail="Only the appointment's doctor can start the session")
    result = await _coordinator(store, appointment_id, current).start_session(current.id)
    _raise_for(result)
    return SessionActionOut(success=True)


@router.post("/{appointment_id}/end", response_model=SessionActionOut)
async def end_session(
    appointment_id: str,
    payload: SessionEndIn | None = None,
    current: CurrentUser = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    """إنهاء الجلسة وحذف الموعد. إنهاء جلسة منتهية مسبقاً لا يعتبر خطأ."""
    appointment = await appointment_service.get_appointment_details(store, appointment_id)
    if appointment is None:
        return SessionActionOut(success=True, already_ended=True)
    if not appointment.is_participant(current.id):
        raise HTTPException(status_code=403, detail="Not a participant of this session")
    reason = (payload or SessionEndIn()).reason
    result = await _coordinator(store, appointment_id, current).end_session(current.id, reason)
    _raise_for(result)
    return SessionActionOut(success=True, already_ended=result.already_ended)


@router.get("/{appointment_id}/messages", response_model=list[ChatMessageOut])
async def get_messages(
    appointment_id: str,
    current: CurrentUser = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    await _get_session_for_user(store, appointment_id, current)
    messages = await appointment_service.get_session_messages(store, appointment_id)
    return messages_out(messages)


@router.post("/{appointment_id}/messages", response_model=SessionActionOut, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.MESSAGE_RATE_LIMIT)
async def send_message(
    request: Request,
    appointment_id: str,
    payload: ChatMessageIn,
    current: CurrentUser = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    """إرسال رسالة أثناء الجلسة النشطة فقط."""
    if not payload.message.strip():
        raise HTTPException(status_code=400, detail="Message text is empty")
    await _get_session_for_user(store, appointment_id, current)
    result = await _coordinator(store, appointment_id, current).send_message(
        current.id, current.name, current.role, payload.message
    )
    _raise_for(result)
    return SessionActionOut(success=True)
