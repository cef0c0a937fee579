"""Tests for trigger normalization, output enqueue instructions and CRM writes."""

import logging

import pytest

from flowpilot.constants import OUTGOING_EMAIL_STREAM, OUTGOING_WHATSAPP_STREAM
from flowpilot.contracts import RunContext
from flowpilot.crm import InMemoryCRMWriter
from flowpilot.errors import CRMError, NodeConfigurationError
from flowpilot.nodes.output import (
    AssignUserNode,
    CreateLeadNode,
    CreateTicketNode,
    SendEmailNode,
    SendWhatsAppNode,
)
from flowpilot.nodes.triggers import (
    ChannelMessageTrigger,
    LeadAddedTrigger,
    ManualTrigger,
    ScheduleTrigger,
    TicketCreatedTrigger,
    TriggerNode,
    WhatsAppMessageTrigger,
)

logger = logging.LoggerAdapter(logging.getLogger("tests"), {})

CHANNEL_PAYLOAD = {
    "channel": "whatsapp",
    "conversation_id": "conv-1",
    "content": "hello",
    "sender": {"phone": "+1555", "name": "Ada", "wa_number": "+1555"},
    "message": {"id": "m-1", "body": "hello", "subject": ""},
    "timestamp": "2024-01-01T00:00:00+00:00",
}


def _context(trigger):
    return RunContext(run_id="run-1", tenant_id="tenant-1", data={"trigger": trigger})


@pytest.mark.asyncio
async def test_channel_message_trigger_flattens_sender_and_message():
    outcome = await ChannelMessageTrigger().execute({}, _context(CHANNEL_PAYLOAD), logger)
    values = outcome.values
    assert values["trigger_type"] == "channel-message"
    assert values["sender_phone"] == "+1555"
    assert values["sender_name"] == "Ada"
    assert values["message_body"] == "hello"
    assert values["conversation_id"] == "conv-1"
    assert values["sender"]["phone"] == "+1555"
    assert values["timestamp"] == "2024-01-01T00:00:00+00:00"
    assert outcome.handle == "next"


@pytest.mark.asyncio
async def test_whatsapp_trigger_falls_back_to_wa_number():
    payload = {"sender": {"wa_number": "+1777"}, "content": "hi"}
    outcome = await WhatsAppMessageTrigger().execute({}, _context(payload), logger)
    assert outcome.values["sender_phone"] == "+1777"
    assert outcome.values["message_body"] == "hi"
    assert outcome.values["timestamp"]


@pytest.mark.asyncio
async def test_ticket_and_lead_triggers():
    ticket = await TicketCreatedTrigger().execute(
        {}, _context({"ticket": {"id": 5, "priority": "urgent"}}), logger
    )
    assert ticket.values["ticket_id"] == 5
    assert ticket.values["ticket_priority"] == "urgent"

    lead = await LeadAddedTrigger().execute(
        {}, _context({"lead": {"name": "Bo"}, "pipeline_id": "p1"}), logger
    )
    assert lead.values["lead_name"] == "Bo"
    assert lead.values["pipeline_id"] == "p1"


@pytest.mark.asyncio
async def test_scheduled_and_manual_triggers_keep_payload():
    scheduled = await ScheduleTrigger().execute(
        {}, _context({"cron_expression": "0 9 * * *", "execution_count": 3}), logger
    )
    assert scheduled.values["cron_expression"] == "0 9 * * *"
    assert scheduled.values["execution_count"] == 3
    assert scheduled.values["triggered_at"]

    manual = await ManualTrigger().execute({}, _context({"user_id": "u1", "foo": 1}), logger)
    assert manual.values["triggered_by"] == "u1"
    assert manual.values["foo"] == 1
    assert manual.values["payload"] == {"user_id": "u1", "foo": 1}



def test_trigger_without_normalize_cannot_be_instantiated():
    class Incomplete(TriggerNode):
        kind = "incomplete"

    with pytest.raises(TypeError):
        Incomplete()


@pytest.mark.asyncio
async def test_send_whatsapp_builds_enqueue_instruction():
    outcome = await SendWhatsAppNode().execute(
        {"to": {"value": "+1555"}, "message": "Thanks!"}, _context(CHANNEL_PAYLOAD), logger
    )
    assert outcome.values["status"] == "queued"
    assert outcome.values["enqueue"] == {
        "stream": OUTGOING_WHATSAPP_STREAM,
        "fields": {
            "tenant_id": "tenant-1",
            "run_id": "run-1",
            "to": "+1555",
            "message": "Thanks!",
            "conversation_id": "conv-1",
        },
    }


@pytest.mark.asyncio
async def test_send_email_requires_fields():
    node = SendEmailNode()
    with pytest.raises(NodeConfigurationError):
        await node.execute({"to": "a@b.co", "subject": "Hi"}, _context({}), logger)

    outcome = await node.execute(
        {"to": "a@b.co", "subject": "Hi", "body": "Body"}, _context({}), logger
    )
    instruction = outcome.values["enqueue"]
    assert instruction["stream"] == OUTGOING_EMAIL_STREAM
    assert "conversation_id" not in instruction["fields"]
    assert instruction["fields"]["subject"] == "Hi"


@pytest.fixture
def crm():
    writer = InMemoryCRMWriter()
    writer.add_pipeline("tenant-1", ["Other"])
    writer.add_pipeline("tenant-1", ["New", "Qualified"], is_default=True)
    return writer


@pytest.mark.asyncio
async def test_create_lead_creates_contact_from_sender(crm):
    payload = {
        "channel": "whatsapp",
        "sender": {"phone": "whatsapp:+1555", "name": "Ada", "email": "whatsapp:+1555"},
    }
    outcome = await CreateLeadNode(crm).execute({}, _context(payload), logger)

    [contact] = crm.contacts
    assert contact["phone"] == "+1555"
    assert contact["email"] is None
    assert contact["name"] == "Ada"
    assert contact["source"] == "whatsapp"

    default = crm.pipelines[1]
    assert outcome.values["created"] is True
    assert outcome.values["contact_id"] == contact["id"]
    assert outcome.values["pipeline_id"] == default["id"]
    assert outcome.values["stage_id"] == default["stages"][0]["id"]


@pytest.mark.asyncio
async def test_create_lead_reuses_conversation_contact_and_open_lead(crm):
    contact_id = await crm.find_or_create_contact(
        "tenant-1", name="Bo", phone="+1666", email=None, source="email"
    )
    crm.conversations["conv-9"] = contact_id
    node = CreateLeadNode(crm)

    first = await node.execute({}, _context({"conversation_id": "conv-9"}), logger)
    second = await node.execute({}, _context({"conversation_id": "conv-9"}), logger)

    assert first.values["contact_id"] == contact_id
    assert second.values == {
        "lead_id": first.values["lead_id"],
        "contact_id": contact_id,
        "created": False,
    }
    assert len(crm.records["lead"]) == 1
    assert len(crm.contacts) == 1


@pytest.mark.asyncio
async def test_create_lead_errors():
    bare = InMemoryCRMWriter()
    with pytest.raises(CRMError):
        await CreateLeadNode(bare).execute({}, _context({"sender": {}}), logger)
    with pytest.raises(CRMError):
        await CreateLeadNode(bare).execute({}, _context({"sender": {"phone": "+1"}}), logger)
    with pytest.raises(CRMError):
        await CreateLeadNode().execute({}, _context({"sender": {"phone": "+1"}}), logger)


@pytest.mark.asyncio
async def test_create_ticket_defaults(crm):
    node = CreateTicketNode(crm)
    with pytest.raises(NodeConfigurationError):
        await node.execute({"description": "no subject"}, _context({}), logger)

    outcome = await node.execute({"subject": "Broken"}, _context(CHANNEL_PAYLOAD), logger)
    assert outcome.values["ticket_number"] == 1
    [ticket] = crm.records["ticket"]
    assert ticket["id"] == outcome.values["ticket_id"]
    assert ticket["priority"] == "normal"
    assert ticket["description"] == ""
    assert ticket["status"] == "new"
    assert ticket["source_conversation_id"] == "conv-1"


@pytest.mark.asyncio
async def test_assign_user_round_robin_picks_least_loaded(crm):
    busy = crm.add_user("tenant-1", user_id="a-user")
    idle = crm.add_user("tenant-1", user_id="b-user")
    crm.add_user("tenant-1", role="viewer", user_id="0-viewer")
    crm.add_user("tenant-1", status="inactive", user_id="0-inactive")
    node = AssignUserNode(crm)
    first = await CreateTicketNode(crm).execute({"subject": "One"}, _context({}), logger)
    second = await CreateTicketNode(crm).execute({"subject": "Two"}, _context({}), logger)

    await node.execute(
        {"entity_type": "ticket", "entity_id": first.values["ticket_id"], "user_id": busy},
        _context({}),
        logger,
    )
    outcome = await node.execute(
        {
            "entity_type": "ticket",
            "entity_id": second.values["ticket_id"],
            "assignment_type": "round_robin",
        },
        _context({}),
        logger,
    )
    assert outcome.values == {"assigned_to": idle}
    assert [t["assigned_to"] for t in crm.records["ticket"]] == [busy, idle]


@pytest.mark.asyncio
async def test_assign_user_validation(crm):
    node = AssignUserNode(crm)
    with pytest.raises(NodeConfigurationError):
        await node.execute({"entity_type": "ticket"}, _context({}), logger)
    with pytest.raises(NodeConfigurationError):
        await node.execute({"entity_type": "ticket", "entity_id": "t-1"}, _context({}), logger)
    with pytest.raises(NodeConfigurationError):
        await node.execute(
            {"entity_type": "invoice", "entity_id": "i-1", "user_id": "u"}, _context({}), logger
        )
    with pytest.raises(CRMError):
        await node.execute(
            {"entity_type": "lead", "entity_id": "l-1", "assignment_type": "round_robin"},
            _context({}),
            logger,
        )
