from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from telehealth.constants import AppointmentStatus, Role
from telehealth.database import get_store
from telehealth.schemas import AppointmentOut, AppointmentRequestCreate, AppointmentRequestOut
from telehealth.security import CurrentUser, get_current_user, require_roles
from telehealth.services import appointment_service
from telehealth.services.document_store import DocumentStore

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.post("/requests", response_model=AppointmentRequestOut, status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: AppointmentRequestCreate,
    current: CurrentUser = Depends(require_roles([Role.PATIENT])),
    store: DocumentStore = Depends(get_store),
):
    """طلب حجز موعد جديد من المريض."""
    request = await appointment_service.create_appointment_request(
        store, patient_id=current.id, patient_name=current.name, payload=payload
    )
    return AppointmentRequestOut.model_validate(request)


@router.get("/requests", response_model=List[AppointmentRequestOut])
async def list_pending_requests(
    current: CurrentUser = Depends(require_roles([Role.DOCTOR])),
    store: DocumentStore = Depends(get_store),
):
    requests = await appointment_service.get_pending_requests(store, current.id)
    return [AppointmentRequestOut.model_validate(r) for r in requests]


@router.post("/requests/{request_id}/approve", response_model=AppointmentOut)
async def approve_request(
    request_id: str,
    current: CurrentUser = Depends(require_roles([Role.DOCTOR])),
    store: DocumentStore = Depends(get_store),
):
    """الموافقة على الطلب وإنشاء الموعد بحالة جلسة waiting."""
    appointment = await appointment_service.approve_request(store, request_id=request_id, doctor_id=current.id)
    return AppointmentOut.model_validate(appointment)


@router.post("/requests/{request_id}/reject", status_code=status.HTTP_204_NO_CONTENT)
async def reject_request(
    request_id: str,
    current: CurrentUser = Depends(require_roles([Role.DOCTOR])),
    store: DocumentStore = Depends(get_store),
):
    await appointment_service.reject_request(store, request_id=request_id, doctor_id=current.id)


@router.get("", response_model=List[AppointmentOut])
async def list_appointments(
    status_filter: AppointmentStatus = Query(AppointmentStatus.UPCOMING, alias="status"),
    current: CurrentUser = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    appointments = await appointment_service.get_appointments(
        store, user_id=current.id, role=current.role, status=status_filter
    )
    return [AppointmentOut.model_validate(a) for a in appointments]


@router.get("/{appointment_id}", response_model=AppointmentOut)
async def get_appointment(
    appointment_id: str,
    current: CurrentUser = Depends(get_current_user),
    store: DocumentStore = Depends(get_store),
):
    appointment = await appointment_service.get_appointment_details(store, appointment_id)
    if appointment is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    if not appointment.is_participant(current.id):
        raise HTTPException(status_code=403, detail="Forbidden")
    return AppointmentOut.model_validate(appointment)
