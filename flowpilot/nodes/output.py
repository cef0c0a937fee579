"""Output nodes: enqueue messages for delivery workers and write CRM records."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, Optional

from ..constants import OUTGOING_EMAIL_STREAM, OUTGOING_WHATSAPP_STREAM
from ..contracts import RunContext
from ..crm import CRMWriter
from ..errors import CRMError, NodeConfigurationError
from .base import BaseNode, Output

OUTPUT_FAMILY = "output"


def _recipient(value: Any) -> Any:
    # Builders sometimes store the recipient as an object.
    for _ in range(2):
        if not isinstance(value, dict):
            break
        value = next(
            (value[key] for key in ("to", "value", "phone", "number", "recipient") if value.get(key)),
            None,
        )
    return value


def enqueue_instruction(stream: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    return {"stream": stream, "fields": {k: v for k, v in fields.items() if v is not None}}


class SendWhatsAppNode(BaseNode):
    kind = "send-whatsapp"
    family = OUTPUT_FAMILY

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        to = _recipient(config.get("to"))
        message = config.get("message")
        if not isinstance(to, str) or not to or not message:
            raise NodeConfigurationError('Send WhatsApp requires "to" and "message"')

        logger.info(f"Queueing WhatsApp message to {to}")
        fields = {
            "tenant_id": context.tenant_id,
            "run_id": context.run_id,
            "to": to,
            "message": str(message),
            "conversation_id": context.trigger.get("conversation_id"),
        }
        return Output(
            values={
                "status": "queued",
                "to": to,
                "enqueue": enqueue_instruction(OUTGOING_WHATSAPP_STREAM, fields),
            }
        )


class SendEmailNode(BaseNode):
    kind = "send-email"
    family = OUTPUT_FAMILY

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        to = _recipient(config.get("to"))
        subject = config.get("subject")
        body = config.get("body")
        if not isinstance(to, str) or not to or not subject or not body:
            raise NodeConfigurationError('Send Email requires "to", "subject", and "body"')

        logger.info(f"Queueing email to {to}: {subject}")
        fields = {
            "tenant_id": context.tenant_id,
            "run_id": context.run_id,
            "to": to,
            "subject": str(subject),
            "body": str(body),
            "conversation_id": context.trigger.get("conversation_id"),
        }
        return Output(
            values={
                "status": "queued",
                "to": to,
                "enqueue": enqueue_instruction(OUTGOING_EMAIL_STREAM, fields),
            }
        )



def _is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _clean_phone(value: Any) -> Optional[str]:
    if not value:
        return None
    return re.sub(r"^whatsapp:", "", str(value), flags=re.IGNORECASE).strip() or None


class CRMNode(BaseNode):
    """Output node that writes through a :class:`~flowpilot.crm.CRMWriter`."""

    family = OUTPUT_FAMILY

    def __init__(self, writer: Optional[CRMWriter] = None) -> None:
        self._writer = writer

    @property
    def writer(self) -> CRMWriter:
        if self._writer is None:
            raise CRMError(f"{self.kind} requires a CRM writer, none is configured")
        return self._writer


class CreateLeadNode(CRMNode):
    """Open a lead for the trigger's contact, creating the contact when needed.

    The contact comes from the trigger, then the trigger's conversation, then
    a phone/email match on the sender. A contact with an open lead keeps it.
    """

    kind = "create-lead"

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        writer = self.writer
        trigger = context.trigger
        channel = trigger.get("channel") or "workflow"
        sender = trigger.get("sender") if isinstance(trigger.get("sender"), dict) else {}

        contact_id = trigger.get("contact_id")
        conversation_id = trigger.get("conversation_id")
        if not _is_uuid(contact_id) and conversation_id:
            contact_id = await writer.conversation_contact(str(conversation_id))
            if contact_id:
                logger.debug(f"Got contact {contact_id} from conversation {conversation_id}")

        if not _is_uuid(contact_id):
            phone = _clean_phone(
                sender.get("phone") or sender.get("wa_number") or trigger.get("channel_contact_id")
            )
            if channel == "email":
                email = sender.get("email") or trigger.get("channel_contact_id")
            else:
                email = sender.get("email") if sender.get("email") != sender.get("phone") else None
            if phone or email:
                contact_id = await writer.find_or_create_contact(
                    context.tenant_id,
                    name=sender.get("name") or "Unknown Contact",
                    phone=phone,
                    email=email or None,
                    source=channel,
                )
        if not _is_uuid(contact_id):
            raise CRMError("Could not find or create contact from trigger data")

        lead_id = await writer.open_lead(context.tenant_id, contact_id)
        if lead_id:
            logger.info(f"Lead already exists: {lead_id}")
            return Output(values={"lead_id": lead_id, "contact_id": contact_id, "created": False})

        pipeline_id, stage_id = await writer.entry_stage(context.tenant_id)
        lead_id = await writer.insert_lead(context.tenant_id, contact_id, pipeline_id, stage_id)
        logger.info(f"Lead created: {lead_id}")
        return Output(
            values={
                "lead_id": lead_id,
                "contact_id": contact_id,
                "pipeline_id": pipeline_id,
                "stage_id": stage_id,
                "created": True,
            }
        )


class CreateTicketNode(CRMNode):
    kind = "create-ticket"

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        subject = self.require(config, "subject", "Create Ticket requires subject")
        ticket = await self.writer.insert_ticket(
            context.tenant_id,
            contact_id=config.get("contact_id") or None,
            subject=str(subject),
            description=str(config.get("description") or ""),
            priority=str(config.get("priority") or "normal"),
            conversation_id=context.trigger.get("conversation_id"),
        )
        logger.info(f"Ticket created: #{ticket['ticket_number']}")
        return Output(values=ticket)


class AssignUserNode(CRMNode):
    """Assign a lead, ticket or conversation to a named user or round robin."""

    kind = "assign-user"

    async def execute(
        self, config: Dict[str, Any], context: RunContext, logger: logging.LoggerAdapter
    ) -> Output:
        entity_type = config.get("entity_type")
        entity_id = config.get("entity_id")
        if not entity_type or not entity_id:
            raise NodeConfigurationError("Assign User requires entity_type and entity_id")

        user_id = config.get("user_id")
        if config.get("assignment_type") == "round_robin":
            user_id = await self.writer.least_loaded_user(context.tenant_id, entity_type)
            if user_id is None:
                raise CRMError("No active users available for assignment")
        if not user_id:
            raise NodeConfigurationError("No user specified for assignment")

        await self.writer.assign(context.tenant_id, entity_type, str(entity_id), str(user_id))
        logger.info(f"Assigned {entity_type} {entity_id} to user {user_id}")
        return Output(values={"assigned_to": user_id})


OUTPUT_NODES = (SendWhatsAppNode, SendEmailNode, CreateLeadNode, CreateTicketNode, AssignUserNode)
