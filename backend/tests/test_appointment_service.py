"""
Tests for appointment booking and lookup
"""

import pytest
from fastapi import HTTPException

from telehealth.constants import AppointmentStatus, Role
from telehealth.schemas import AppointmentRequestCreate
from telehealth.services import appointment_service
from telehealth.services.document_store import StoreUnavailable
from telehealth.services.memory_store import MemoryDocumentStore


def request_payload(**overrides):
    data = {
        "doctor_id": "doc1",
        "doctor_name": "Dr. Omar",
        "doctor_specialization": "Cardiology",
        "appointment_date": "2026-10-21",
        "appointment_time": "10:00 AM",
        "problem": "Headache",
    }
    data.update(overrides)
    return AppointmentRequestCreate(**data)


class TestRequestSchema:
    """Test booking input validation"""

    def test_bad_date_rejected(self):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            request_payload(appointment_date="21/10/2026")

    def test_bad_time_rejected(self):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            request_payload(appointment_time="25:00")


class TestRequests:
    """Test the request -> appointment flow"""

    @pytest.mark.asyncio
    async def test_create_and_list_pending(self):
        store = MemoryDocumentStore()
        created = await appointment_service.create_appointment_request(
            store, patient_id="pat1", patient_name="Sara Ali", payload=request_payload()
        )

        pending = await appointment_service.get_pending_requests(store, "doc1")

        assert created.id
        assert [r.id for r in pending] == [created.id]
        assert pending[0].status == AppointmentStatus.PENDING_APPROVAL.value
        assert await appointment_service.get_pending_requests(store, "doc2") == []

    @pytest.mark.asyncio
    async def test_approve_moves_request_into_appointments(self):
        store = MemoryDocumentStore()
        created = await appointment_service.create_appointment_request(
            store, patient_id="pat1", patient_name="Sara Ali", payload=request_payload()
        )

        appointment = await appointment_service.approve_request(store, request_id=created.id, doctor_id="doc1")

        stored = await appointment_service.get_appointment_details(store, appointment.id)
        assert stored.patient_id == "pat1"
        assert stored.status == AppointmentStatus.UPCOMING.value
        assert stored.session_status == "waiting"
        assert not (await store.get(f"appointment_requests/{created.id}")).exists
        # Request removal and appointment creation land in one commit
        assert [op.kind for op in store.writes[-2:]] == ["set", "delete"]

    @pytest.mark.asyncio
    async def test_other_doctor_cannot_approve(self):
        store = MemoryDocumentStore()
        created = await appointment_service.create_appointment_request(
            store, patient_id="pat1", patient_name=None, payload=request_payload()
        )

        with pytest.raises(HTTPException) as exc:
            await appointment_service.approve_request(store, request_id=created.id, doctor_id="doc2")
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_reject_deletes_request(self):
        store = MemoryDocumentStore()
        created = await appointment_service.create_appointment_request(
            store, patient_id="pat1", patient_name=None, payload=request_payload()
        )

        await appointment_service.reject_request(store, request_id=created.id, doctor_id="doc1")

        assert await appointment_service.get_pending_requests(store, "doc1") == []

    @pytest.mark.asyncio
    async def test_unknown_request(self):
        store = MemoryDocumentStore()
        with pytest.raises(HTTPException) as exc:
            await appointment_service.reject_request(store, request_id="nope", doctor_id="doc1")
        assert exc.value.status_code == 404


class TestAppointments:
    """Test appointment lookup"""

    @pytest.mark.asyncio
    async def test_sorted_by_date_and_time(self, make_appointment):
        store = MemoryDocumentStore({
            "appointments/late": make_appointment(appointmentDate="2026-10-20", appointmentTime="02:00 PM"),
            "appointments/early": make_appointment(appointmentDate="2026-10-20", appointmentTime="09:00 AM"),
            "appointments/next": make_appointment(appointmentDate="2026-10-21", appointmentTime="08:00 AM"),
            "appointments/other": make_appointment(patientId="pat2"),
        })

        result = await appointment_service.get_appointments(store, user_id="pat1", role=Role.PATIENT)

        assert [a.id for a in result] == ["early", "late", "next"]

    @pytest.mark.asyncio
    async def test_doctor_view(self, store):
        result = await appointment_service.get_appointments(store, user_id="doc1", role=Role.DOCTOR)
        assert [a.id for a in result] == ["appt1"]

    @pytest.mark.asyncio
    async def test_missing_appointment_is_none(self, store):
        assert await appointment_service.get_appointment_details(store, "nope") is None
        assert await appointment_service.get_appointment_details(store, "") is None

    @pytest.mark.asyncio
    async def test_unavailable_store_maps_to_503(self, store):
        store.fail_next(StoreUnavailable("offline"))
        with pytest.raises(HTTPException) as exc:
            await appointment_service.get_appointment_details(store, "appt1")
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_session_messages_ordered(self, store):
        await store.set("appointments/appt1/messages/m2", {
            "senderId": "doc1", "senderRole": "doctor", "message": "second", "createdAt": "2026-10-20T09:30:02.000Z",
        })
        await store.set("appointments/appt1/messages/m1", {
            "senderId": "pat1", "senderRole": "patient", "message": "first", "createdAt": "2026-10-20T09:30:01.000Z",
        })

        messages = await appointment_service.get_session_messages(store, "appt1")

        assert [m.body for m in messages] == ["first", "second"]


class TestParticipantProfiles:
    """Test loading both participants' profiles for a session"""

    @pytest.mark.asyncio
    async def test_both_found(self, make_appointment):
        store = MemoryDocumentStore({
            "appointments/appt1": make_appointment(),
            "users/pat1": {"name": "Sara Ali", "email": "sara@example.com", "role": "patient"},
            "users/doc1": {
                "name": "Dr. Omar", "role": "doctor", "specialization": "Cardiology",
                "yearsOfExperience": 12, "isVerified": True,
            },
        })
        appointment = await appointment_service.get_appointment_details(store, "appt1")

        profiles = await appointment_service.get_participant_profiles(store, appointment)

        assert profiles.error is None
        assert profiles.patient.id == "pat1"
        assert profiles.patient.name == "Sara Ali"
        assert profiles.doctor.specialization == "Cardiology"
        assert profiles.doctor.years_of_experience == 12

    @pytest.mark.asyncio
    async def test_missing_profile_is_none(self, make_appointment):
        store = MemoryDocumentStore({
            "appointments/appt1": make_appointment(),
            "users/doc1": {"name": "Dr. Omar", "role": "doctor"},
        })
        appointment = await appointment_service.get_appointment_details(store, "appt1")

        profiles = await appointment_service.get_participant_profiles(store, appointment)

        assert profiles.error is None
        assert profiles.patient is None
        assert profiles.doctor.name == "Dr. Omar"

    @pytest.mark.asyncio
    async def test_store_failure_is_non_fatal(self, store):
        appointment = await appointment_service.get_appointment_details(store, "appt1")
        store.fail_next(StoreUnavailable("offline"))

        profiles = await appointment_service.get_participant_profiles(store, appointment)

        assert profiles.error == "Could not load participant details."
        assert profiles.patient is None and profiles.doctor is None
