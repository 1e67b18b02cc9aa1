import asyncio

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect

from telehealth.config import get_settings
from telehealth.constants import EndReason
from telehealth.database import get_store
from telehealth.schemas import AppointmentOut, ParticipantProfilesOut, messages_out
from telehealth.security import user_from_token
from telehealth.services.appointment_service import get_appointment_details, get_participant_profiles
from telehealth.services.session_coordinator import (
    AppointmentUpdate,
    MessagesUpdate,
    Participant,
    SessionCoordinator,
    SessionResult,
)
from telehealth.utils.logger import get_logger

logger = get_logger("session.ws")
settings = get_settings()

router = APIRouter(prefix="/ws", tags=["sessions"])


def _appointment_event(update: AppointmentUpdate) -> dict:
    if update.error:
        return {"type": "error", "message": update.error, "fatal": update.fatal}
    if update.ended:
        return {"type": "ended"}
    if not update.exists:
        return {"type": "not_found"}
    return {
        "type": "appointment",
        "status": update.status.value if update.status else None,
        "appointment": AppointmentOut.model_validate(update.appointment).model_dump(mode="json"),
    }


def _messages_event(update: MessagesUpdate) -> dict:
    if update.error:
        return {"type": "error", "message": update.error, "fatal": update.fatal}
    return {
        "type": "messages",
        "messages": [m.model_dump(mode="json") for m in messages_out(update.messages)],
    }


def _result_event(result: SessionResult, action: str) -> dict | None:
    if result.success:
        return None
    return {"type": "error", "action": action, "message": result.error, "retryable": result.retryable, "fatal": False}


async def _pump(websocket: WebSocket, queue: asyncio.Queue, exit_delay: float) -> None:
    """Forward queued events to the socket; close it shortly after the session ends."""
    while True:
        event = await queue.get()
        await websocket.send_json(event)
        if event["type"] == "ended":
            await asyncio.sleep(exit_delay)
            await websocket.close(code=1000)
            return


@router.websocket("/sessions/{appointment_id}")
async def session_ws(websocket: WebSocket, appointment_id: str, token: str = Query("")):
    """قناة الجلسة المباشرة: حالة الموعد، الرسائل، والعد التنازلي لكل مشارك."""
    try:
        user = user_from_token(token)
    except HTTPException:
        await websocket.close(code=4401)
        return

    store = get_store()
    try:
        appointment = await get_appointment_details(store, appointment_id)
    except HTTPException:
        await websocket.close(code=1011, reason="Cannot load session")
        return
    if appointment is None:
        await websocket.close(code=4404)
        return
    if not appointment.is_participant(user.id):
        await websocket.close(code=4403, reason="Not a participant of this session")
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    profiles = await get_participant_profiles(store, appointment)
    if profiles.error:
        queue.put_nowait({"type": "error", "message": profiles.error, "fatal": False})
    # Profiles ride along with the first appointment event only
    pending_participants = [ParticipantProfilesOut.model_validate(profiles).model_dump(mode="json")]

    def _on_appointment(update: AppointmentUpdate) -> None:
        event = _appointment_event(update)
        if event["type"] == "appointment" and pending_participants:
            event["participants"] = pending_participants.pop()
        queue.put_nowait(event)

    coordinator = SessionCoordinator(
        store,
        appointment_id,
        Participant(user_id=user.id, name=user.name, role=user.role),
        on_tick=lambda remaining: queue.put_nowait({"type": "tick", "remaining": remaining}),
    )
    sender = asyncio.create_task(_pump(websocket, queue, settings.SESSION_EXIT_DELAY_SECONDS))
    logger.info(f"🔌 {user.role.value} {user.id} joined session {appointment_id}")

    try:
        await coordinator.open(
            on_appointment=_on_appointment,
            on_messages=lambda u: queue.put_nowait(_messages_event(u)),
        )
        while True:
            receiver = asyncio.create_task(websocket.receive_json())
            done, _ = await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
            if sender in done:
                receiver.cancel()
                break
            try:
                data = receiver.result()
            except WebSocketDisconnect:
                break
            except ValueError:
                queue.put_nowait({"type": "error", "message": "Invalid JSON", "fatal": False})
                continue

            action = data.get("action") if isinstance(data, dict) else None
            if action == "send":
                result = await coordinator.send_message(user.id, user.name, user.role, str(data.get("message", "")))
            elif action == "end":
                result = await coordinator.end_session(user.id, EndReason.MANUAL)
            else:
                queue.put_nowait({"type": "error", "message": f"Unknown action: {action}", "fatal": False})
                continue
            event = _result_event(result, action)
            if event is not None:
                queue.put_nowait(event)
    except WebSocketDisconnect:
        pass
    finally:
        await coordinator.close()
        if not sender.done():
            sender.cancel()
        elif not sender.cancelled() and sender.exception() is not None:
            logger.warning(f"Session socket for {user.id} closed with: {sender.exception()}")
        logger.info(f"🔌 {user.id} left session {appointment_id}")
