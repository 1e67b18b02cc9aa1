"""
خدمة إنهاء الجلسات المهجورة - تنهي الجلسات النشطة التي تجاوزت مدتها.

Client-side deadline timers only fire while a participant is connected. When
both sides drop, the appointment would otherwise stay `active` forever; this job
ends it through the normal coordinator path (reason time_up, endedBy system).
"""
from datetime import datetime, timezone

from telehealth.config import get_settings
from telehealth.constants import SYSTEM_USER_ID, EndReason, SessionStatus
from telehealth.models import Appointment
from telehealth.services.document_store import DocumentStore, DocumentStoreError
from telehealth.services.session_coordinator import SessionCoordinator
from telehealth.utils.logger import get_logger

logger = get_logger("session.sweeper")


def _is_overdue(appointment: Appointment, now: datetime, default_duration: float, grace: float) -> bool:
    if appointment.session_start_time is None:
        return False
    started = appointment.session_start_time
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    duration = appointment.session_duration / 1000 if appointment.session_duration else default_duration
    return (now - started).total_seconds() > duration + grace


async def end_expired_sessions(store: DocumentStore) -> int:
    """End every active session past its duration plus the grace period. Returns how many were ended."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    try:
        snapshot = await store.query(
            settings.APPOINTMENTS_COLLECTION,
            filters=[("sessionStatus", SessionStatus.ACTIVE.value)],
        )
    except DocumentStoreError as e:
        logger.error(f"❌ Error listing active sessions: {e}")
        return 0

    ended = 0
    for snap in snapshot:
        try:
            appointment = Appointment.from_snapshot(snap)
        except Exception as e:
            logger.error(f"❌ Skipping malformed appointment {snap.id}: {e}")
            continue
        if not _is_overdue(appointment, now, settings.SESSION_DURATION_SECONDS, settings.SESSION_SWEEP_GRACE_SECONDS):
            continue

        coordinator = SessionCoordinator(store, appointment.id, auto_start=False)
        result = await coordinator.end_session(SYSTEM_USER_ID, EndReason.TIME_UP)
        if result.success and not result.already_ended:
            ended += 1
            logger.info(f"✅ Ended abandoned session {appointment.id}")
        elif not result.success:
            logger.error(f"❌ Could not end abandoned session {appointment.id}: {result.error}")

    if ended > 0:
        logger.info(f"✅ Swept {ended} abandoned session(s)")
    return ended
