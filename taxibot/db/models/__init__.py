"""
Database Models
"""
from taxibot.db.models.customer import Customer
from taxibot.db.models.conversation import Conversation
from taxibot.db.models.message import Message, MessageDirection, MessageType
from taxibot.db.models.ride import Ride, RideStatus, PaymentMethod
from taxibot.db.models.ride_event import RideEvent, RideEventLevel
from taxibot.db.models.webhook_event import WebhookEvent

__all__ = [
    "Customer",
    "Conversation",
    "Message",
    "MessageDirection",
    "MessageType",
    "Ride",
    "RideStatus",
    "PaymentMethod",
    "RideEvent",
    "RideEventLevel",
    "WebhookEvent",
]
