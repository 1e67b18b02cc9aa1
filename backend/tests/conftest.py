"""
Pytest configuration for the session backend tests
"""

import asyncio
import os
import sys
import tempfile
from datetime import datetime, timezone

import pytest

# Settings are cached on first import, so the environment must be ready first
os.environ["JWT_SECRET"] = "test-secret"
os.environ["DOCUMENT_STORE_PROVIDER"] = "memory"
os.environ["LOG_DIR"] = os.path.join(tempfile.gettempdir(), "telehealth-test-logs")
os.environ["SESSION_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["SESSION_EXIT_DELAY_SECONDS"] = "0"
os.environ["SESSION_ARCHIVE_ENABLED"] = "false"
os.environ["APP_DEBUG"] = "false"

# Add backend directory to path to import the package without installing it
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

APPOINTMENT_ID = "appt1"
DOCTOR_ID = "doc1"
PATIENT_ID = "pat1"


def appointment_doc(**overrides):
    doc = {
        "patientId": PATIENT_ID,
        "patientName": "Sara Ali",
        "doctorId": DOCTOR_ID,
        "doctorName": "Dr. Omar",
        "doctorSpecialization": "Cardiology",
        "appointmentDate": "2026-10-20",
        "appointmentTime": "09:30 AM",
        "problem": "Chest pain",
        "status": "upcoming",
        "sessionStatus": "waiting",
        "createdAt": datetime(2026, 10, 1, tzinfo=timezone.utc),
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def store():
    """Memory store seeded with one waiting appointment."""
    from telehealth.services.memory_store import MemoryDocumentStore

    return MemoryDocumentStore({f"appointments/{APPOINTMENT_ID}": appointment_doc()})


@pytest.fixture
def doctor():
    from telehealth.constants import Role
    from telehealth.services.session_coordinator import Participant

    return Participant(user_id=DOCTOR_ID, name="Dr. Omar", role=Role.DOCTOR)


@pytest.fixture
def patient():
    from telehealth.constants import Role
    from telehealth.services.session_coordinator import Participant

    return Participant(user_id=PATIENT_ID, name="Sara Ali", role=Role.PATIENT)


@pytest.fixture
def settle():
    """Let scheduled snapshot deliveries and spawned tasks run."""

    async def _settle(rounds: int = 25):
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def make_appointment():
    """Factory for raw appointment documents as the store holds them."""
    return appointment_doc
