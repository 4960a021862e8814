"""
State Machine Module - session lifecycle states and the customer order flow
"""
from app.state_machine.states import OrderState, SessionState
from app.state_machine.order_flow import OrderStateMachine

__all__ = ["OrderState", "SessionState", "OrderStateMachine"]
