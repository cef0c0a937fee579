"""Trigger nodes: entry points that normalize the event payload attached to a run."""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from ..contracts import RunContext
from .base import BaseNode, Output
from .registry import TRIGGER_FAMILY


def _first(*values: Any, default: Any = "") -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return default


def _section(trigger: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = trigger.get(key)
    return value if isinstance(value, Mapping) else {}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TriggerNode(BaseNode):
    family = TRIGGER_FAMILY

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        trigger = context.trigger
        values = {"trigger_type": self.kind, **self.normalize(trigger)}
        values.setdefault("timestamp", _first(trigger.get("timestamp"), default=_now()))
        logger.debug(f"Normalized {self.kind} payload")
        return Output(values=values)

    @abc.abstractmethod
    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        """Flatten the raw trigger payload into node output values."""
        raise NotImplementedError


class ChannelMessageTrigger(TriggerNode):
    """Any inbound channel message; flattens sender and message fields."""

    kind = "channel-message"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        sender = _section(trigger, "sender")
        message = _section(trigger, "message")
        return {
            "channel": trigger.get("channel", ""),
            "sender_phone": _first(sender.get("phone"), sender.get("wa_number")),
            "sender_email": _first(sender.get("email"), trigger.get("from")),
            "sender_name": _first(sender.get("name")),
            "message_body": _first(message.get("body"), trigger.get("content")),
            "message_subject": _first(message.get("subject"), trigger.get("subject")),
            "message_id": _first(message.get("id"), trigger.get("message_id")),
            "sender": dict(sender),
            "message": dict(message),
            "contact_id": _first(trigger.get("contact_id")),
            "conversation_id": _first(trigger.get("conversation_id")),
        }


class WhatsAppMessageTrigger(TriggerNode):
    kind = "whatsapp-message"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        sender = _section(trigger, "sender")
        message = _section(trigger, "message")
        return {
            "sender_phone": _first(sender.get("phone"), sender.get("wa_number")),
            "sender_name": _first(sender.get("name")),
            "message_body": _first(message.get("body"), trigger.get("content")),
            "message_id": _first(message.get("id"), trigger.get("message_id")),
            "sender": dict(sender),
            "message": dict(message),
            "contact_id": _first(trigger.get("contact_id")),
            "conversation_id": _first(trigger.get("conversation_id")),
        }


class EmailReceivedTrigger(TriggerNode):
    kind = "email-received"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        sender = _section(trigger, "sender")
        message = _section(trigger, "message")
        return {
            "sender_email": _first(sender.get("email"), trigger.get("from")),
            "sender_name": _first(sender.get("name")),
            "email_subject": _first(message.get("subject"), trigger.get("subject")),
            "email_body": _first(message.get("body"), trigger.get("body")),
            "message_id": _first(message.get("id"), trigger.get("message_id")),
            "sender": dict(sender),
            "message": dict(message),
            "contact_id": _first(trigger.get("contact_id")),
            "conversation_id": _first(trigger.get("conversation_id")),
        }


class TicketCreatedTrigger(TriggerNode):
    kind = "ticket-created"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        ticket = _section(trigger, "ticket")
        return {
            "ticket_id": _first(ticket.get("id"), trigger.get("ticket_id")),
            "ticket_number": _first(ticket.get("number"), trigger.get("ticket_number")),
            "ticket_title": _first(ticket.get("title"), trigger.get("title")),
            "ticket_description": _first(
                ticket.get("description"), trigger.get("description")
            ),
            "ticket_priority": _first(ticket.get("priority"), trigger.get("priority")),
            "ticket_status": _first(ticket.get("status"), trigger.get("status")),
            "ticket": dict(ticket),
            "contact_id": _first(trigger.get("contact_id")),
        }


class LeadAddedTrigger(TriggerNode):
    kind = "lead-added"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        lead = _section(trigger, "lead")
        return {
            "lead_id": _first(lead.get("id"), trigger.get("lead_id")),
            "lead_name": _first(lead.get("name"), trigger.get("name")),
            "lead_email": _first(lead.get("email"), trigger.get("email")),
            "lead_phone": _first(lead.get("phone"), trigger.get("phone")),
            "lead_source": _first(lead.get("source"), trigger.get("source")),
            "lead": dict(lead),
            "pipeline_id": _first(trigger.get("pipeline_id")),
            "stage_id": _first(trigger.get("stage_id")),
        }


class MissedCallTrigger(TriggerNode):
    kind = "missed-call"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        caller = _section(trigger, "caller")
        call = _section(trigger, "call")
        sender = _section(trigger, "sender")
        return {
            "caller_phone": _first(caller.get("phone"), sender.get("phone"), trigger.get("from")),
            "caller_name": _first(caller.get("name"), sender.get("name")),
            "call_id": _first(call.get("id"), trigger.get("call_id")),
            "caller": dict(caller),
            "call": dict(call),
            "contact_id": _first(trigger.get("contact_id")),
        }


class ScheduleTrigger(TriggerNode):
    kind = "scheduled"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            **dict(trigger),
            "triggered_at": _now(),
            "cron_expression": _first(trigger.get("cron_expression")),
            "execution_count": _first(trigger.get("execution_count"), default=1),
        }


class ManualTrigger(TriggerNode):
    kind = "manual"

    def normalize(self, trigger: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            **dict(trigger),
            "triggered_at": _first(trigger.get("triggered_at"), default=_now()),
            "triggered_by": _first(trigger.get("triggered_by"), trigger.get("user_id")),
            "payload": trigger.get("payload", dict(trigger)),
        }


TRIGGER_NODES = (
    ChannelMessageTrigger,
    WhatsAppMessageTrigger,
    EmailReceivedTrigger,
    TicketCreatedTrigger,
    LeadAddedTrigger,
    MissedCallTrigger,
    ScheduleTrigger,
    ManualTrigger,
)
