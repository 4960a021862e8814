"""
State Definitions for WhatsApp Sessions and the Customer Order Flow
"""
from enum import Enum


class SessionState(str, Enum):
    """Lifecycle of one tenant's transport connection"""

    INITIALIZING = "INITIALIZING"
    AWAITING_LINK = "AWAITING_LINK"  # QR הונפק, מחכים לסריקה
    READY = "READY"

    # מצבים סופיים — הרשומה כבר לא ב-registry
    DISCONNECTED = "DISCONNECTED"
    STOPPED = "STOPPED"
    RECLAIMED = "RECLAIMED"
    FAILED = "FAILED"


TERMINAL_SESSION_STATES = frozenset({
    SessionState.DISCONNECTED,
    SessionState.STOPPED,
    SessionState.RECLAIMED,
    SessionState.FAILED,
})

_SESSION_EXITS = [
    SessionState.DISCONNECTED,
    SessionState.STOPPED,
    SessionState.RECLAIMED,
    SessionState.FAILED,
]

SESSION_TRANSITIONS = {
    # QR יכול להגיע כמה פעמים (רענון) — AWAITING_LINK → AWAITING_LINK מותר
    SessionState.INITIALIZING: [
        SessionState.AWAITING_LINK,
        SessionState.READY,
        *_SESSION_EXITS,
    ],
    SessionState.AWAITING_LINK: [
        SessionState.AWAITING_LINK,
        SessionState.READY,
        *_SESSION_EXITS,
    ],
    SessionState.READY: [
        SessionState.DISCONNECTED,
        SessionState.STOPPED,
        SessionState.RECLAIMED,
    ],
    SessionState.DISCONNECTED: [],
    SessionState.STOPPED: [],
    SessionState.RECLAIMED: [],
    SessionState.FAILED: [],
}


class OrderState(str, Enum):
    """Per (tenant, customer) purchase flow"""

    NONE = "ORDER.NONE"
    AWAITING_CONFIRMATION = "ORDER.AWAITING_CONFIRMATION"
    AWAITING_PAYMENT = "ORDER.AWAITING_PAYMENT"
    AWAITING_INFO = "ORDER.AWAITING_INFO"
    COMPLETED = "ORDER.COMPLETED"
    CANCELLED = "ORDER.CANCELLED"


ORDER_TRANSITIONS = {
    OrderState.NONE: [OrderState.AWAITING_CONFIRMATION],
    OrderState.AWAITING_CONFIRMATION: [
        OrderState.AWAITING_CONFIRMATION,  # re-prompt
        OrderState.AWAITING_PAYMENT,
        OrderState.CANCELLED,
    ],
    OrderState.AWAITING_PAYMENT: [
        OrderState.AWAITING_PAYMENT,  # בקשת הוכחת תשלום
        OrderState.AWAITING_INFO,
        OrderState.CANCELLED,
    ],
    OrderState.AWAITING_INFO: [
        OrderState.AWAITING_INFO,
        OrderState.COMPLETED,
        OrderState.CANCELLED,
    ],
    OrderState.COMPLETED: [],
    OrderState.CANCELLED: [],
}

TERMINAL_ORDER_STATES = frozenset({OrderState.COMPLETED, OrderState.CANCELLED})


def is_valid_session_transition(current: SessionState, target: SessionState) -> bool:
    return target in SESSION_TRANSITIONS.get(current, [])


def is_valid_order_transition(current: OrderState, target: OrderState) -> bool:
    return target in ORDER_TRANSITIONS.get(current, [])
