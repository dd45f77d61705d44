"""Per-tenant WhatsApp session lifecycle.

Holds the in-process session registry and the event bridge: gateway events
(QR, authenticated, ready, message, disconnected) update the registry, persist
a ``whatsapp_sessions`` snapshot, raise notifications and are pushed to the
tenant's websocket room.
"""

import base64
import io
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import qrcode
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_session_logger
from app.models import WhatsAppSession
from app.schemas.whatsapp import InboundMessage
from app.services import state_machine
from app.services.message_service import IntakeResult, normalize_phone, process_incoming_message
from app.services.notification_service import create_notification, notify_system_error
from app.services.socket_manager import manager
from app.services.state_machine import AUTH_FAILURE, InvalidTransitionError, SessionStatus
from app.services.whatsapp_gateway import GatewayError, extract_qr, get_gateway, instance_name_for

UNKNOWN_PHONE = "unknown"
MANUAL_DISCONNECT = "manual_disconnect"
# Reasons after which the linked device is logged out on the gateway as well
RELEASE_REASONS = {MANUAL_DISCONNECT, AUTH_FAILURE}


class WhatsAppNotReadyError(Exception):
    pass


@dataclass
class SessionState:
    user_id: UUID
    instance_name: Optional[str] = None  # gateway handle, None once released
    status: SessionStatus = SessionStatus.INITIALIZING
    qr_code: Optional[str] = None
    phone_number: Optional[str] = None
    is_ready: bool = False

    def as_status(self) -> dict:
        return {"status": self.status.value, "isReady": self.is_ready, "phoneNumber": self.phone_number}


class SessionRegistry:
    def __init__(self):
        self._sessions: dict[str, SessionState] = {}

    def get(self, user_id: Any) -> Optional[SessionState]:
        return self._sessions.get(str(user_id))

    def set(self, session: SessionState) -> SessionState:
        self._sessions[str(session.user_id)] = session
        return session

    def remove(self, user_id: Any) -> Optional[SessionState]:
        return self._sessions.pop(str(user_id), None)

    def all(self) -> list[SessionState]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()


registry = SessionRegistry()


def _session_for_event(user_id: UUID) -> SessionState:
    session = registry.get(user_id)
    if session is None:
        session = registry.set(SessionState(user_id=user_id, instance_name=instance_name_for(user_id)))
    return session


def _advance(session: SessionState, target: SessionStatus) -> bool:
    """Move the session to target. The gateway is authoritative, so a session it
    revives after a disconnect goes back through initializing first."""
    log = get_session_logger(session.user_id)
    if session.status == SessionStatus.DISCONNECTED and target != SessionStatus.INITIALIZING:
        session.status = state_machine.start(session.status)
        session.instance_name = session.instance_name or instance_name_for(session.user_id)
    try:
        session.status = state_machine.transition(session.status, target)
    except InvalidTransitionError as exc:
        log.warning("Ignoring session event", context={"error": str(exc)})
        return False
    return True


async def _emit_status(session: SessionState) -> None:
    await manager.emit(session.user_id, "whatsapp:status", session.as_status())


def render_qr_data_url(qr: str) -> str:
    builder = qrcode.QRCode(border=1, box_size=6)
    builder.add_data(qr)
    builder.make(fit=True)
    buffer = io.BytesIO()
    builder.make_image().save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


async def emit_qr_code(user_id: UUID, qr: Optional[str]) -> Optional[dict]:
    if not qr:
        return None
    payload = {"qr": qr, "image": render_qr_data_url(qr)}
    await manager.emit(user_id, "whatsapp:qr", payload)
    return payload


async def generate_qr_code(user_id: UUID) -> Optional[dict]:
    session = registry.get(user_id)
    if not session or not session.qr_code:
        return None
    return await emit_qr_code(user_id, session.qr_code)


def get_connection_status(user_id: UUID) -> dict:
    session = registry.get(user_id)
    if not session:
        return {"status": SessionStatus.DISCONNECTED.value, "isReady": False}
    return session.as_status()


def save_session(
    db: Session,
    user_id: UUID,
    session_data: Optional[dict] = None,
    phone_number: Optional[str] = None,
    is_connected: bool = False,
) -> bool:
    """Upsert the session snapshot for (user, phone). Failures are logged, not raised."""
    if not user_id:
        return False
    now = datetime.now(timezone.utc)
    stmt = insert(WhatsAppSession).values(
        user_id=user_id,
        phone_number=phone_number or UNKNOWN_PHONE,
        session_data=session_data or {},
        is_connected=is_connected,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "phone_number"],
        set_={
            "session_data": stmt.excluded.session_data,
            "is_connected": stmt.excluded.is_connected,
            "updated_at": now,
        },
    )
    try:
        with db.begin_nested():
            db.execute(stmt)
    except SQLAlchemyError as exc:
        get_session_logger(user_id).error("Failed to persist session", context={"error": str(exc)})
        return False
    return True


def restore_session(db: Session, user_id: UUID) -> Optional[WhatsAppSession]:
    """Latest persisted snapshot for the user."""
    return (
        db.query(WhatsAppSession)
        .filter(WhatsAppSession.user_id == user_id)
        .order_by(WhatsAppSession.updated_at.desc(), WhatsAppSession.created_at.desc())
        .first()
    )


async def initialize_whatsapp(db: Session, user_id: UUID) -> SessionState:
    if not user_id:
        raise ValueError("User id is required to initialize WhatsApp")

    existing = registry.get(user_id)
    if existing and existing.instance_name and existing.status != SessionStatus.DISCONNECTED:
        return existing

    log = get_session_logger(user_id)
    session = existing or SessionState(user_id=user_id)
    if session.status == SessionStatus.DISCONNECTED:
        session.status = state_machine.start(session.status)
    session.instance_name = instance_name_for(user_id)
    session.qr_code = None
    session.is_ready = False
    registry.set(session)
    await _emit_status(session)

    gateway = get_gateway()
    try:
        created = await gateway.ensure_instance(session.instance_name)
        connected = await gateway.connect_instance(session.instance_name)
        qr = extract_qr(connected) or extract_qr(created)
        state = None if qr else await gateway.get_connection_state(session.instance_name)
    except GatewayError as exc:
        log.error("Failed to initialize WhatsApp client", context={"error": str(exc)})
        session.status = state_machine.disconnect(session.status)
        session.instance_name = None
        await _emit_status(session)
        raise

    log.info("WhatsApp client initializing", context={"instance": session.instance_name})
    if qr:
        await handle_qr(user_id, qr)
    elif state == "open":
        snapshot = restore_session(db, user_id)
        phone = snapshot.phone_number if snapshot and snapshot.phone_number != UNKNOWN_PHONE else None
        await handle_ready(db, user_id, phone)
    return session


async def reconnect(db: Session, user_id: UUID) -> SessionState:
    get_session_logger(user_id).info("Attempting to reconnect WhatsApp client")
    return await initialize_whatsapp(db, user_id)


async def handle_qr(user_id: UUID, qr: str) -> Optional[dict]:
    session = _session_for_event(user_id)
    if not _advance(session, SessionStatus.QR):
        return None
    get_session_logger(user_id).info("QR code received")
    session.qr_code = qr
    session.is_ready = False
    await _emit_status(session)
    return await emit_qr_code(user_id, qr)


async def handle_authenticated(db: Session, user_id: UUID, session_data: Optional[dict] = None) -> None:
    session = _session_for_event(user_id)
    get_session_logger(user_id).info("Authentication successful")
    save_session(db, user_id, session_data or {}, session.phone_number, True)


async def handle_ready(db: Session, user_id: UUID, phone_number: Optional[str] = None) -> SessionState:
    session = _session_for_event(user_id)
    phone = normalize_phone(phone_number) or session.phone_number
    if session.status != SessionStatus.READY and not _advance(session, SessionStatus.READY):
        return session

    session.is_ready = True
    session.phone_number = phone
    session.qr_code = None
    get_session_logger(user_id).info("Client is ready", context={"phone": phone or UNKNOWN_PHONE})
    save_session(db, user_id, {"status": SessionStatus.READY.value}, phone, True)
    await _emit_status(session)
    return session


async def receive_message(db: Session, user_id: UUID, message: InboundMessage) -> Optional[IntakeResult]:
    get_session_logger(user_id).info(
        "Incoming message", context={"from": message.from_jid, "from_me": message.from_me}
    )
    return await process_incoming_message(db, user_id, message)


async def handle_disconnect(db: Session, user_id: UUID, reason: Optional[str] = "unknown") -> SessionState:
    reason = state_machine.fold_reason(reason)
    log = get_session_logger(user_id)
    log.warning("Disconnected", context={"reason": reason})

    session = _session_for_event(user_id)
    session.status = state_machine.disconnect(session.status)
    session.is_ready = False
    session.qr_code = None
    save_session(
        db,
        user_id,
        {"status": SessionStatus.DISCONNECTED.value, "reason": reason},
        session.phone_number,
        False,
    )

    try:
        with db.begin_nested():
            await create_notification(
                db,
                user_id,
                "WhatsApp connection lost",
                message=f"Disconnected because of: {reason}",
                notification_type="error" if reason == AUTH_FAILURE else "warning",
                metadata={"reason": reason},
            )
    except Exception as exc:
        log.error("Failed to push WhatsApp disconnect alert", context={"error": str(exc)})

    instance_name, session.instance_name = session.instance_name, None
    if instance_name and reason in RELEASE_REASONS:
        try:
            await get_gateway().logout_instance(instance_name)
        except GatewayError as exc:
            log.error("Error while releasing gateway instance", context={"error": str(exc)})

    await _emit_status(session)
    return session


async def send_message(db: Session, user_id: UUID, phone: str, text: str) -> dict:
    session = registry.get(user_id)
    if not session or not session.instance_name:
        await initialize_whatsapp(db, user_id)
        session = registry.get(user_id)

    if not session or not session.is_ready or not session.instance_name:
        raise WhatsAppNotReadyError("WhatsApp client not ready")

    number = normalize_phone(phone)
    if not number:
        raise ValueError("Invalid phone number")
    return await get_gateway().send_text(session.instance_name, number, text)


async def restore_sessions(db: Session) -> int:
    """Re-initialize every tenant whose latest snapshot is connected. Returns how many were started."""
    user_ids = [row[0] for row in db.query(WhatsAppSession.user_id).distinct().all()]
    restored = 0
    for user_id in user_ids:
        snapshot = restore_session(db, user_id)
        if not snapshot or not snapshot.is_connected:
            continue
        try:
            await initialize_whatsapp(db, user_id)
            restored += 1
        except GatewayError as exc:
            log = get_session_logger(user_id)
            log.error("Failed to restore WhatsApp session", context={"error": str(exc)})
            try:
                with db.begin_nested():
                    await notify_system_error(db, user_id, "WhatsApp session could not be restored", exc)
            except Exception as notify_exc:
                log.error("Failed to store restore alert", context={"error": str(notify_exc)})
    return restored
