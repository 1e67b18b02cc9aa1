"""
Appointment session lifecycle: start, countdown, chat relay, end/cleanup.

One coordinator per connected participant. Both participants talk only through
the shared appointment document and its ``messages`` sub-collection; the
appointment is deleted when the session ends and that deletion is the signal
every observer uses to leave the session.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set

from pydantic import BaseModel, ValidationError

from telehealth.config import get_settings
from telehealth.constants import SYSTEM_USER_ID, EndReason, Role, SessionStatus
from telehealth.models import Appointment, ChatMessage
from telehealth.services.countdown import Countdown
from telehealth.services.document_store import (
    SERVER_TIMESTAMP,
    DocumentNotFound,
    DocumentSnapshot,
    DocumentStore,
    DocumentStoreError,
    QuerySnapshot,
    Subscription,
    WriteBatch,
)
from telehealth.utils.logger import get_logger

logger = get_logger("session")


class InvalidSessionInput(ValueError):
    """Rejected locally, before any store call."""


@dataclass
class Participant:
    user_id: str
    name: Optional[str]
    role: Role


class SessionResult(BaseModel):
    """Outcome of a coordinator operation. Store failures never escape as exceptions."""
    success: bool
    error: Optional[str] = None
    retryable: bool = False
    already_ended: bool = False

    @classmethod
    def ok(cls, **kwargs) -> "SessionResult":
        return cls(success=True, **kwargs)

    @classmethod
    def fail(cls, error: str, retryable: bool = False) -> "SessionResult":
        return cls(success=False, error=error, retryable=retryable)


@dataclass
class AppointmentUpdate:
    exists: bool
    appointment: Optional[Appointment] = None
    status: Optional[SessionStatus] = None
    ended: bool = False
    error: Optional[str] = None
    # True when the live stream itself is lost and no further updates will arrive
    fatal: bool = False


@dataclass
class MessagesUpdate:
    messages: List[ChatMessage] = field(default_factory=list)
    error: Optional[str] = None
    fatal: bool = False


def utc_now_iso() -> str:
    """Client-side creation time in the same shape as JS Date.toISOString()."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SessionCoordinator:
    def __init__(
        self,
        store: DocumentStore,
        appointment_id: str,
        participant: Optional[Participant] = None,
        *,
        session_duration: float | None = None,
        tick_interval: float | None = None,
        auto_start: bool = True,
        archive: bool | None = None,
        on_tick: Optional[Callable[[int], None]] = None,
    ) -> None:
        if not appointment_id or not str(appointment_id).strip():
            raise InvalidSessionInput("No appointment ID provided")
        settings = get_settings()
        self._store = store
        self.appointment_id = appointment_id
        self.participant = participant
        self.session_duration = settings.SESSION_DURATION_SECONDS if session_duration is None else session_duration
        self.tick_interval = settings.COUNTDOWN_TICK_SECONDS if tick_interval is None else tick_interval
        self.auto_start = auto_start
        self.archive = settings.SESSION_ARCHIVE_ENABLED if archive is None else archive
        self.max_message_length = settings.MAX_MESSAGE_LENGTH
        self.appointment_path = f"{settings.APPOINTMENTS_COLLECTION}/{appointment_id}"
        self.messages_path = f"{self.appointment_path}/{settings.MESSAGES_SUBCOLLECTION}"
        self.archive_path = f"{settings.SESSION_ARCHIVE_COLLECTION}/{appointment_id}"
        self._on_tick = on_tick

        self._appointment_sub: Subscription | None = None
        self._messages_sub: Subscription | None = None
        self._on_appointment: Optional[Callable[[AppointmentUpdate], None]] = None
        self._on_messages: Optional[Callable[[MessagesUpdate], None]] = None

        self._appointment: Optional[Appointment] = None
        self._messages: List[ChatMessage] = []
        self._last_status: Optional[SessionStatus] = None
        self._observed = False
        self._terminated = False
        self._start_requested = False
        self._ended = False
        self._closed = False
        self._countdown: Countdown | None = None
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------ state ------------------------

    @property
    def status(self) -> Optional[SessionStatus]:
        return self._last_status

    @property
    def appointment(self) -> Optional[Appointment]:
        return self._appointment

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def ended(self) -> bool:
        return self._ended or self._terminated

    @property
    def countdown(self) -> Countdown | None:
        return self._countdown

    @property
    def time_remaining(self) -> Optional[int]:
        return self._countdown.remaining if self._countdown is not None else None

    # ------------------------ resource ownership ------------------------

    async def open(
        self,
        on_appointment: Optional[Callable[[AppointmentUpdate], None]] = None,
        on_messages: Optional[Callable[[MessagesUpdate], None]] = None,
    ) -> "SessionCoordinator":
        self.subscribe_to_appointment(on_appointment)
        self.subscribe_to_messages(on_messages)
        return self

    async def close(self) -> None:
        """Release subscriptions, timers and wait for in-flight writes."""
        if self._closed:
            return
        self._closed = True
        self.cleanup()
        self._cancel_countdown()
        pending = [t for t in self._tasks if not t.done() and t is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> "SessionCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def cleanup(self) -> None:
        """Unregister both live subscriptions. Safe to call repeatedly."""
        for name in ("_appointment_sub", "_messages_sub"):
            sub = getattr(self, name)
            setattr(self, name, None)
            if sub is not None:
                sub.unsubscribe()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------ operations ------------------------

    async def start_session(self, doctor_id: str) -> SessionResult:
        """waiting -> active. Writes the start time at most once."""
        if not doctor_id:
            return SessionResult.fail("Missing doctor ID")
        if self.participant is not None and self.participant.role != Role.DOCTOR:
            return SessionResult.fail("Only the doctor can start the session")
        if self.ended:
            return SessionResult.fail("Session has already ended")
        if self._start_requested:
            return SessionResult.ok()

        self._start_requested = True
        data = {
            "sessionStatus": SessionStatus.ACTIVE.value,
            "sessionStartTime": SERVER_TIMESTAMP,
            "sessionDuration": int(self.session_duration * 1000),
            "startedBy": doctor_id,
        }
        try:
            applied = await self._store.update_if(
                self.appointment_path, {"sessionStatus": SessionStatus.WAITING.value}, data
            )
        except DocumentNotFound:
            logger.warning(f"⚠️ Cannot start session {self.appointment_id}: appointment not found")
            return SessionResult.fail("Appointment not found")
        except DocumentStoreError as e:
            self._start_requested = False
            logger.error(f"❌ Error starting session {self.appointment_id}: {e}")
            return SessionResult.fail(str(e), retryable=e.retryable)

        if not applied:
            logger.info(f"Session {self.appointment_id} was not waiting; start ignored")
            return SessionResult.fail("Session is not waiting")
        logger.info(f"✅ Session {self.appointment_id} started by {doctor_id}")
        return SessionResult.ok()

    async def end_session(self, user_id: str, reason: EndReason | str = EndReason.COMPLETED) -> SessionResult:
        """active -> ended: one batch that stamps the end fields and deletes the appointment."""
        if self.ended:
            return SessionResult.ok(already_ended=True)
        try:
            reason = EndReason(reason)
        except ValueError:
            return SessionResult.fail(f"Unknown end reason: {reason}")

        self._ended = True
        self._cancel_countdown()

        end_fields = {
            "sessionStatus": SessionStatus.ENDED.value,
            "sessionEndTime": SERVER_TIMESTAMP,
            "endedBy": user_id,
            "endReason": reason.value,
        }
        batch = WriteBatch().update(self.appointment_path, end_fields)
        try:
            if self.archive:
                record = await self._archive_record()
                if record is not None:
                    batch.set(self.archive_path, {**record, **end_fields})
            batch.delete(self.appointment_path)
            await self._store.commit(batch)
        except DocumentNotFound:
            logger.info(f"Session {self.appointment_id} already removed; end treated as done")
            return SessionResult.ok(already_ended=True)
        except DocumentStoreError as e:
            self._ended = False
            logger.error(f"❌ Error ending session {self.appointment_id}: {e}")
            return SessionResult.fail(str(e), retryable=e.retryable)

        logger.info(f"✅ Session {self.appointment_id} ended by {user_id} ({reason.value})")
        return SessionResult.ok()

    async def _archive_record(self) -> Optional[dict]:
        if self._appointment is not None:
            return self._appointment.to_document()
        snap = await self._store.get(self.appointment_path)
        if not snap.exists:
            raise DocumentNotFound(self.appointment_path)
        return snap.to_dict()

    async def send_message(self, sender_id: str, sender_name: Optional[str], sender_role: Role | str, text: str) -> SessionResult:
        body = (text or "").strip()
        if not body:
            return SessionResult.fail("Message text is empty")
        if len(body) > self.max_message_length:
            return SessionResult.fail(f"Message is longer than {self.max_message_length} characters")
        if self.ended:
            return SessionResult.fail("Session has ended")

        status = self._last_status
        if status is None:
            try:
                snap = await self._store.get(self.appointment_path)
            except DocumentStoreError as e:
                logger.error(f"❌ Error reading session {self.appointment_id}: {e}")
                return SessionResult.fail(str(e), retryable=e.retryable)
            if not snap.exists:
                return SessionResult.fail("Appointment not found")
            status = SessionStatus(snap.to_dict().get("sessionStatus", SessionStatus.WAITING.value))
        if status != SessionStatus.ACTIVE:
            return SessionResult.fail("Session is not active")

        try:
            message = ChatMessage(
                sender_id=sender_id,
                sender_name=sender_name,
                sender_role=sender_role,
                body=body,
                created_at=utc_now_iso(),
            )
        except ValidationError as e:
            return SessionResult.fail(f"Invalid message: {e.errors()[0]['msg']}")

        data = message.to_document()
        data["timestamp"] = SERVER_TIMESTAMP
        try:
            await self._store.add(self.messages_path, data)
        except DocumentStoreError as e:
            logger.error(f"❌ Error sending message in session {self.appointment_id}: {e}")
            return SessionResult.fail(str(e), retryable=e.retryable)
        return SessionResult.ok()

    # ------------------------ appointment stream ------------------------

    def subscribe_to_appointment(self, on_update: Optional[Callable[[AppointmentUpdate], None]]) -> None:
        if self._appointment_sub is not None:
            self._appointment_sub.unsubscribe()
        self._on_appointment = on_update
        try:
            self._appointment_sub = self._store.watch_document(
                self.appointment_path, self._handle_appointment, self._handle_appointment_error
            )
        except DocumentStoreError as e:
            self._handle_appointment_error(e)

    def _handle_appointment_error(self, error: DocumentStoreError) -> None:
        logger.error(f"❌ Lost appointment stream for {self.appointment_id}: {error}")
        sub, self._appointment_sub = self._appointment_sub, None
        if sub is not None:
            sub.unsubscribe()
        self._emit(self._on_appointment, AppointmentUpdate(
            exists=self._appointment is not None,
            appointment=self._appointment,
            status=self._last_status,
            error=str(error) or "Cannot load session",
            fatal=True,
        ))

    def _handle_appointment(self, snap: DocumentSnapshot) -> None:
        if self._closed or self._terminated:
            return

        if not snap.exists:
            if self._observed or self._ended:
                self._terminated = True
                self._ended = True
                self._cancel_countdown()
                self._last_status = SessionStatus.ENDED
                logger.info(f"Session {self.appointment_id} removed; leaving session")
                self._emit(self._on_appointment, AppointmentUpdate(
                    exists=False, appointment=self._appointment, status=SessionStatus.ENDED, ended=True
                ))
            else:
                # Not seen yet: the document may not exist at all, which is not a session end
                self._emit(self._on_appointment, AppointmentUpdate(exists=False))
            return

        try:
            appointment = Appointment.from_snapshot(snap)
        except ValidationError as e:
            logger.error(f"❌ Malformed appointment {self.appointment_id}: {e}")
            self._emit(self._on_appointment, AppointmentUpdate(exists=True, error="Malformed appointment document"))
            return

        status = SessionStatus(appointment.session_status)
        if self._last_status is not None and status.rank < self._last_status.rank:
            logger.debug(f"Dropping stale snapshot for {self.appointment_id}: {status.value}")
            return

        changed = status != self._last_status
        self._observed = True
        self._last_status = status
        self._appointment = appointment
        if changed:
            self._on_transition(status, appointment)

        self._emit(self._on_appointment, AppointmentUpdate(
            exists=True, appointment=appointment, status=status, ended=status == SessionStatus.ENDED
        ))

    def _on_transition(self, status: SessionStatus, appointment: Appointment) -> None:
        if status == SessionStatus.WAITING:
            if self._should_auto_start(appointment):
                self._spawn(self._auto_start())
        elif status == SessionStatus.ACTIVE:
            self._start_countdown(appointment)
        elif status == SessionStatus.ENDED:
            self._ended = True
            self._cancel_countdown()

    def _should_auto_start(self, appointment: Appointment) -> bool:
        p = self.participant
        return (
            self.auto_start
            and p is not None
            and p.role == Role.DOCTOR
            and p.user_id == appointment.doctor_id
            and not self._start_requested
            and not self.ended
        )

    async def _auto_start(self) -> None:
        result = await self.start_session(self.participant.user_id)
        if not result.success and result.error != "Session is not waiting":
            self._emit(self._on_appointment, AppointmentUpdate(
                exists=True,
                appointment=self._appointment,
                status=self._last_status,
                error=f"Failed to start session: {result.error}",
            ))

    # ------------------------ countdown ------------------------

    def _start_countdown(self, appointment: Appointment) -> None:
        if self._countdown is not None or self.ended:
            return
        duration = self.session_duration
        if appointment.session_duration:
            duration = appointment.session_duration / 1000
        remaining = duration
        if appointment.session_start_time is not None:
            started = appointment.session_start_time
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            elapsed = (datetime.now(timezone.utc) - started).total_seconds()
            remaining = min(duration, max(0.0, duration - elapsed))
        self._countdown = Countdown(
            remaining, on_expire=self._on_deadline, on_tick=self._on_tick, tick_interval=self.tick_interval
        )
        self._countdown.start()
        logger.info(f"⏱️ Countdown started for session {self.appointment_id} ({remaining:.0f}s)")

    async def _on_deadline(self) -> None:
        # Tracked so close() waits for an end that is already in flight
        await self._spawn(self._expire())

    async def _expire(self) -> None:
        user_id = self.participant.user_id if self.participant is not None else SYSTEM_USER_ID
        result = await self.end_session(user_id, EndReason.TIME_UP)
        if not result.success:
            self._emit(self._on_appointment, AppointmentUpdate(
                exists=self._appointment is not None,
                appointment=self._appointment,
                status=self._last_status,
                error=f"Failed to end session: {result.error}",
            ))

    def _cancel_countdown(self) -> None:
        if self._countdown is not None:
            self._countdown.cancel()

    # ------------------------ messages stream ------------------------

    def subscribe_to_messages(self, on_update: Optional[Callable[[MessagesUpdate], None]]) -> None:
        if self._messages_sub is not None:
            self._messages_sub.unsubscribe()
        self._on_messages = on_update
        try:
            self._messages_sub = self._store.watch_collection(
                self.messages_path, self._handle_messages, self._handle_messages_error, order_by="createdAt"
            )
        except DocumentStoreError as e:
            self._handle_messages_error(e)

    def _handle_messages(self, snapshot: QuerySnapshot) -> None:
        if self._closed:
            return
        messages = []
        for snap in snapshot:
            try:
                messages.append(ChatMessage.from_snapshot(snap))
            except ValidationError:
                logger.warning(f"⚠️ Skipping malformed message {snap.id} in {self.appointment_id}")
        # Arrival order is not display order; the sender's createdAt is
        messages.sort(key=ChatMessage.sort_key)
        self._messages = messages
        self._emit(self._on_messages, MessagesUpdate(messages=list(messages)))

    def _handle_messages_error(self, error: DocumentStoreError) -> None:
        logger.error(f"❌ Lost message stream for {self.appointment_id}: {error}")
        sub, self._messages_sub = self._messages_sub, None
        if sub is not None:
            sub.unsubscribe()
        self._emit(self._on_messages, MessagesUpdate(
            messages=list(self._messages), error=str(error) or "Cannot load messages", fatal=True
        ))

    def _emit(self, callback, update) -> None:
        # Nothing reaches the listener once the owner has closed the coordinator
        if callback is None or self._closed:
            return
        try:
            callback(update)
        except Exception:
            logger.exception("Session listener failed")
