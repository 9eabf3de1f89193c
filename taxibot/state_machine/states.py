"""
State Definitions for the Booking Conversation
"""
from enum import Enum


class ConversationState(str, Enum):
    """States of the WhatsApp booking flow"""

    GREETING = "GREETING"

    # Origem: GPS primeiro, texto livre como fallback
    REQUESTING_LOCATION = "REQUESTING_LOCATION"
    CONFIRMING_ORIGIN = "CONFIRMING_ORIGIN"
    AWAITING_ORIGIN = "AWAITING_ORIGIN"

    AWAITING_DESTINATION = "AWAITING_DESTINATION"
    AWAITING_CATEGORY = "AWAITING_CATEGORY"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    # Legacy alias of AWAITING_CONFIRMATION (older conversations still carry it)
    SHOWING_PRICE = "SHOWING_PRICE"

    # Ride lifecycle
    CREATING_RIDE = "CREATING_RIDE"
    RIDE_CREATED = "RIDE_CREATED"
    RIDE_IN_PROGRESS = "RIDE_IN_PROGRESS"

    # Recoverable dead end: retry / cancel
    ERROR = "ERROR"


_RESUME_TARGETS = [
    ConversationState.REQUESTING_LOCATION,
    ConversationState.AWAITING_DESTINATION,
    ConversationState.AWAITING_CATEGORY,
]

_CONFIRMATION_TARGETS = [
    ConversationState.AWAITING_CATEGORY,
    ConversationState.AWAITING_ORIGIN,
    ConversationState.AWAITING_DESTINATION,
    ConversationState.CREATING_RIDE,
]

CONVERSATION_TRANSITIONS = {
    ConversationState.GREETING: [ConversationState.REQUESTING_LOCATION],

    ConversationState.REQUESTING_LOCATION: [
        ConversationState.AWAITING_DESTINATION,
        ConversationState.AWAITING_CATEGORY,
        ConversationState.AWAITING_ORIGIN,  # fallback depois da espera pelo GPS
        ConversationState.CONFIRMING_ORIGIN,
    ],
    ConversationState.CONFIRMING_ORIGIN: [
        ConversationState.AWAITING_DESTINATION,
        ConversationState.AWAITING_CATEGORY,
        ConversationState.AWAITING_ORIGIN,
    ],
    ConversationState.AWAITING_ORIGIN: [
        ConversationState.AWAITING_DESTINATION,
        ConversationState.AWAITING_CATEGORY,
        ConversationState.CONFIRMING_ORIGIN,
    ],

    ConversationState.AWAITING_DESTINATION: [ConversationState.AWAITING_CATEGORY],
    ConversationState.AWAITING_CATEGORY: [ConversationState.AWAITING_CONFIRMATION],
    ConversationState.AWAITING_CONFIRMATION: _CONFIRMATION_TARGETS,
    ConversationState.SHOWING_PRICE: _CONFIRMATION_TARGETS,

    ConversationState.CREATING_RIDE: [
        ConversationState.RIDE_CREATED,
        ConversationState.RIDE_IN_PROGRESS,
        ConversationState.ERROR,
        ConversationState.AWAITING_CATEGORY,  # preço inválido
    ],
    ConversationState.RIDE_CREATED: [
        ConversationState.RIDE_IN_PROGRESS,
        ConversationState.ERROR,  # NO_DRIVER
        *_RESUME_TARGETS,
    ],
    ConversationState.RIDE_IN_PROGRESS: list(_RESUME_TARGETS),
    ConversationState.ERROR: [
        ConversationState.CREATING_RIDE,
        ConversationState.RIDE_IN_PROGRESS,
        *_RESUME_TARGETS,
    ],
}

# Reset (cancelamento, recomeço, falta de dados) é permitido a partir de qualquer estado
for _state, _targets in CONVERSATION_TRANSITIONS.items():
    if _state != ConversationState.GREETING and ConversationState.GREETING not in _targets:
        _targets.append(ConversationState.GREETING)


def normalize_state(value: str | None) -> ConversationState:
    """Estado persistido → enum. Alias legado e valores desconhecidos caem em estados válidos."""
    try:
        state = ConversationState(value)
    except ValueError:
        return ConversationState.GREETING
    if state == ConversationState.SHOWING_PRICE:
        return ConversationState.AWAITING_CONFIRMATION
    return state
