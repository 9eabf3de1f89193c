"""
State Machine - fluxo de reserva por WhatsApp
"""
from taxibot.state_machine.context import BookingContext
from taxibot.state_machine.manager import StateManager
from taxibot.state_machine.states import ConversationState

__all__ = ["BookingContext", "ConversationState", "StateManager"]
