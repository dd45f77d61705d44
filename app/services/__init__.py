from app.services.conversation_service import (
    get_or_create_conversation,
    touch_conversation,
)
from app.services.intent_service import Intent, detect_intent
from app.services.state_machine import (
    InvalidTransitionError,
    SessionStatus,
    can_transition,
    disconnect,
    mark_ready,
    show_qr,
    start,
    transition,
)
