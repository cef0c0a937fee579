"""Shared constants for flowpilot."""

from __future__ import annotations

TRIGGER_STREAM = "stream:workflow_triggers"
TRIGGER_CONSUMER_GROUP = "workflow_trigger_processors"
OUTGOING_WHATSAPP_STREAM = "stream:outgoing:whatsapp"
OUTGOING_EMAIL_STREAM = "stream:outgoing:email"

DEFAULT_HANDLE = "next"
ERROR_HANDLE = "error"
LAST_ERROR_KEY = "_last_error"

LOOP_MAX_ITEMS = 100

DEFAULT_RATE_LIMIT = 10
DEFAULT_RATE_WINDOW_SECONDS = 60

CHANNEL_MESSAGE_TRIGGER = "channel-message"

# Inbound channel -> trigger type; unknown channels map to "<channel>-message".
CHANNEL_TRIGGER_TYPES = {
    "whatsapp": "whatsapp-message",
    "email": "email-received",
    "phone": "missed-call",
}

WAIT_UNITS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
}
