"""Trigger ingestion tests."""

import pytest
import pytest_asyncio

from flowpilot.constants import TRIGGER_CONSUMER_GROUP, TRIGGER_STREAM
from flowpilot.crm import InMemoryMessageDirectory
from flowpilot.dispatch import TriggerEmitter
from flowpilot.ingest import TriggerIngestor, matches_trigger_config
from flowpilot.persistence import RunStatus
from flowpilot.ratelimit import InMemoryRateLimiter


@pytest.fixture
def directory():
    return InMemoryMessageDirectory()


@pytest.fixture
def emitter(event_log):
    return TriggerEmitter(event_log)


@pytest_asyncio.fixture
async def ingestor(event_log, repository, pool, directory):
    await event_log.ensure_group(TRIGGER_STREAM, TRIGGER_CONSUMER_GROUP)
    return TriggerIngestor(
        event_log,
        repository,
        pool,
        InMemoryRateLimiter(limit=10, window_seconds=60),
        directory,
        batch_size=20,
        block_ms=0,
    )


def _pending(event_log):
    return event_log.pending_count(TRIGGER_STREAM, TRIGGER_CONSUMER_GROUP)


@pytest.mark.asyncio
async def test_direct_event_creates_and_submits_run(ingestor, event_log, emitter, repository, pool, publish, chain):
    version = await publish(chain())
    await emitter.emit("manual", "tenant-1", {"name": "Ada"})

    assert await ingestor.poll_once() == 1

    [run] = await repository.list_runs(tenant_id="tenant-1")
    assert run.version_id == version.id
    assert run.status == RunStatus.PENDING
    assert run.context == {"trigger": {"name": "Ada"}, "event_type": "manual"}
    assert run.dedup_key.startswith(f"{version.id}:")
    assert pool.status()["queued"] == 1
    assert _pending(event_log) == 0


@pytest.mark.asyncio
async def test_rate_limit_drops_runs_beyond_window(ingestor, emitter, repository, publish, chain):
    await publish(chain())
    for i in range(11):
        await emitter.emit("manual", "tenant-1", {"n": i})

    assert await ingestor.poll_once() == 11
    assert len(await repository.list_runs(tenant_id="tenant-1")) == 10


@pytest.mark.asyncio
async def test_redelivery_does_not_create_second_run(ingestor, event_log, emitter, repository, pool, publish, chain):
    await publish(chain())
    await emitter.emit("manual", "tenant-1", {"event_id": "evt-1"})
    await emitter.emit("manual", "tenant-1", {"event_id": "evt-1"})
    [first, second] = event_log.entries(TRIGGER_STREAM)

    created = await ingestor.handle_entry(first)
    assert len(created) == 1
    # Pending duplicates are resubmitted; the pool's claim drops the extra copy.
    assert await ingestor.handle_entry(second) == created
    assert await ingestor.handle_entry(first) == created
    assert len(await repository.list_runs(tenant_id="tenant-1")) == 1

    pool.start()
    await pool.join()
    await pool.stop()
    assert await ingestor.handle_entry(first) == []
    assert len(await repository.list_node_records(created[0])) == 1


@pytest.mark.asyncio
async def test_trigger_config_filters_events(ingestor, emitter, repository, publish):
    graph = {"nodes": [{"id": "trigger_1", "type": "ticket-created"}], "edges": []}
    await publish(graph, trigger_config={"priority_filter": ["high", "urgent"]})

    await emitter.emit("ticket-created", "tenant-1", {"ticket": {"priority": "low"}})
    await emitter.emit("ticket-created", "tenant-1", {"ticket": {"priority": "urgent"}})
    await ingestor.poll_once()

    [run] = await repository.list_runs(tenant_id="tenant-1")
    assert run.context["trigger"]["ticket"]["priority"] == "urgent"


@pytest.mark.asyncio
async def test_events_for_other_tenants_are_ignored(ingestor, emitter, repository, publish, chain):
    await publish(chain())
    await emitter.emit("manual", "tenant-2", {})
    await ingestor.poll_once()

    assert await repository.list_runs() == []


@pytest.mark.asyncio
async def test_channel_message_is_enriched_from_directory(ingestor, emitter, directory, repository, publish):
    graph = {"nodes": [{"id": "trigger_1", "type": "channel-message"}], "edges": []}
    await publish(graph, trigger_config={"channels": ["whatsapp"]})
    directory.add(
        "msg-1",
        content_text="hello",
        channel_contact_id="+1555",
        contact_name="Ada",
        contact_id="contact-1",
        direction="inbound",
    )

    await emitter.emit_channel_message("tenant-1", "msg-1", "whatsapp", "conv-1")
    await ingestor.poll_once()

    [run] = await repository.list_runs(tenant_id="tenant-1")
    assert run.event_type == "whatsapp-message"
    trigger = run.context["trigger"]
    assert trigger["sender"] == {"phone": "+1555", "email": "+1555", "name": "Ada", "wa_number": "+1555"}
    assert trigger["message"]["body"] == "hello"
    assert trigger["conversation_id"] == "conv-1"


@pytest.mark.asyncio
async def test_channel_filter_rejects_other_channels(ingestor, emitter, directory, repository, publish):
    graph = {"nodes": [{"id": "trigger_1", "type": "channel-message"}], "edges": []}
    await publish(graph, trigger_config={"channels": ["whatsapp"]})
    directory.add("msg-1", content_text="hi", channel_contact_id="a@example.com")

    await emitter.emit_channel_message("tenant-1", "msg-1", "email")
    await ingestor.poll_once()

    assert await repository.list_runs() == []


@pytest.mark.asyncio
async def test_missing_message_is_acknowledged_and_skipped(ingestor, event_log, emitter, repository, publish):
    graph = {"nodes": [{"id": "trigger_1", "type": "channel-message"}], "edges": []}
    await publish(graph)

    await emitter.emit_channel_message("tenant-1", "missing", "whatsapp")
    await ingestor.poll_once()

    assert await repository.list_runs() == []
    assert _pending(event_log) == 0


@pytest.mark.asyncio
async def test_invalid_payload_is_acknowledged_and_skipped(ingestor, event_log, repository, publish, chain):
    await publish(chain())
    await event_log.append(
        TRIGGER_STREAM, {"event_type": "manual", "tenant_id": "tenant-1", "payload": "{nope"}
    )
    await event_log.append(TRIGGER_STREAM, {"event_type": "manual", "payload": "{}"})

    assert await ingestor.poll_once() == 2
    assert await repository.list_runs() == []
    assert _pending(event_log) == 0


@pytest.mark.asyncio
async def test_definition_id_targets_one_workflow(ingestor, emitter, repository, publish, chain):
    await publish(chain(), name="first")
    target = await publish(chain(), name="second")

    await emitter.emit("manual", "tenant-1", {"definition_id": target.definition_id})
    await ingestor.poll_once()

    [run] = await repository.list_runs(tenant_id="tenant-1")
    assert run.definition_id == target.definition_id


@pytest.mark.asyncio
async def test_processing_error_leaves_entry_pending_for_recovery(
    ingestor, event_log, emitter, repository, publish, chain, monkeypatch
):
    await publish(chain())
    await emitter.emit("manual", "tenant-1", {})
    original = repository.list_active_workflows

    async def unavailable(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(repository, "list_active_workflows", unavailable)
    await ingestor.poll_once()
    assert _pending(event_log) == 1

    monkeypatch.setattr(repository, "list_active_workflows", original)
    assert await ingestor.recover_pending() == 1
    assert _pending(event_log) == 0
    assert len(await repository.list_runs()) == 1


def test_matches_trigger_config():
    assert matches_trigger_config({"channel": "sms"}, {})
    assert matches_trigger_config({"channel": "whatsapp"}, {"channels": ["whatsapp"]})
    assert not matches_trigger_config({"channel": "email"}, {"channels": ["whatsapp"]})
    assert matches_trigger_config({"priority": "high"}, {"priority_filter": ["high"]})
    assert not matches_trigger_config({"ticket": {"priority": "low"}}, {"priority_filter": ["high"]})
    assert matches_trigger_config({"lead": {"pipeline_id": "p1"}}, {"pipeline_filter": "p1"})
    assert not matches_trigger_config({"pipeline_id": "p2"}, {"pipeline_filter": "p1"})
