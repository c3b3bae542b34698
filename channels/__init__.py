"""Customer messaging channel, agent presence and dashboard notifications."""
from channels.base import (
    MessagingChannel,
    ChannelError,
    ChannelNotReadyError,
    CircuitOpenError,
    CircuitBreaker,
    MessageDeduplicator,
    InputSanitizer,
    typing_duration,
    normalize_contact_id,
)
from channels.whatsapp_adapter import WhatsAppCloudChannel
from channels.presence import PresenceRegistry
from channels.notifier import Notifier, WebSocketNotifier

__all__ = [
    "MessagingChannel", "ChannelError", "ChannelNotReadyError", "CircuitOpenError",
    "CircuitBreaker", "MessageDeduplicator", "InputSanitizer",
    "typing_duration", "normalize_contact_id",
    "WhatsAppCloudChannel", "PresenceRegistry",
    "Notifier", "WebSocketNotifier",
]
