"""Trigger ingestion: event log entries to idempotently created runs."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from .constants import TRIGGER_CONSUMER_GROUP, TRIGGER_STREAM
from .contracts import TriggerEvent, trigger_type_for_channel
from .crm import MessageDirectory, channel_payload
from .persistence import RunStatus, WorkflowRepository, WorkflowRun
from .pool import ExecutorPool
from .ratelimit import RateLimiter
from .transports import BaseEventLog, LogEntry
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


def matches_trigger_config(payload: Mapping[str, Any], config: Mapping[str, Any]) -> bool:
    """Return ``True`` when ``payload`` passes every configured filter."""
    if not config:
        return True

    channels = config.get("channels")
    if isinstance(channels, list) and payload.get("channel") not in channels:
        return False

    priorities = config.get("priority_filter")
    if isinstance(priorities, list):
        ticket = payload.get("ticket") if isinstance(payload.get("ticket"), Mapping) else {}
        if (payload.get("priority") or ticket.get("priority")) not in priorities:
            return False

    pipeline = config.get("pipeline_filter")
    if pipeline:
        lead = payload.get("lead") if isinstance(payload.get("lead"), Mapping) else {}
        if (payload.get("pipeline_id") or lead.get("pipeline_id")) != pipeline:
            return False

    return True


class TriggerIngestor:
    """Consume the trigger stream as one member of a consumer group.

    Entries are acknowledged only after run creation was attempted for every
    matching workflow. Any exception leaves the entry pending so it is
    redelivered; run creation is keyed on ``<version_id>:<source_event_id>``
    so a redelivery never creates a second run.
    """

    def __init__(
        self,
        event_log: BaseEventLog,
        repository: WorkflowRepository,
        pool: ExecutorPool,
        rate_limiter: RateLimiter,
        directory: Optional[MessageDirectory] = None,
        *,
        stream: str = TRIGGER_STREAM,
        group: str = TRIGGER_CONSUMER_GROUP,
        consumer: str = "worker-1",
        batch_size: int = 10,
        block_ms: int = 5000,
        claim_idle_ms: int = 60_000,
    ) -> None:
        self._event_log = event_log
        self._repository = repository
        self._pool = pool
        self._rate_limiter = rate_limiter
        self._directory = directory
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self._running = False

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume until :meth:`stop` is called or ``lifespan`` seconds pass."""
        await self._event_log.ensure_group(self.stream, self.group)
        logger.info(f"Ingestor {self.consumer} consuming {self.stream} in group {self.group}")

        self._running = True
        loop = asyncio.get_running_loop()
        started = loop.time()
        failures = 0
        recovered = False
        while self._running:
            if lifespan is not None and loop.time() - started >= lifespan:
                break
            try:
                if not recovered:
                    await self.recover_pending()
                    recovered = True
                await self.poll_once()
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                delay = compute_backoff(failures)
                logger.error(f"Error in ingest loop (attempt {failures}), retrying in {delay:.1f}s: {exc}")
                await asyncio.sleep(delay)
        self._running = False

    def stop(self) -> None:
        self._running = False

    async def recover_pending(self) -> int:
        """Reprocess entries delivered to this consumer before a restart."""
        entries = await self._event_log.read_pending(
            self.stream, self.group, self.consumer, count=self.batch_size
        )
        if entries:
            logger.info(f"Recovering {len(entries)} pending entries for {self.consumer}")
        for entry in entries:
            await self.handle_entry(entry)
        return len(entries)

    async def poll_once(self) -> int:
        """Claim stale entries, read a new batch and handle it."""
        entries = await self._event_log.claim_stale(
            self.stream, self.group, self.consumer, self.claim_idle_ms, count=self.batch_size
        )
        if entries:
            logger.info(f"Claimed {len(entries)} stale entries")
        entries += await self._event_log.read(
            self.stream, self.group, self.consumer, count=self.batch_size, block_ms=self.block_ms
        )
        for entry in entries:
            await self.handle_entry(entry)
        return len(entries)

    async def handle_entry(self, entry: LogEntry) -> list[str]:
        """Process one entry and acknowledge it; errors leave it pending."""
        try:
            event = await self.parse_event(entry)
            run_ids = await self.process_event(event) if event else []
            await self._event_log.ack(self.group, entry)
        except Exception as exc:
            logger.error(f"Error processing entry {entry.entry_id}, leaving it pending: {exc}")
            return []
        return run_ids

    async def parse_event(self, entry: LogEntry) -> Optional[TriggerEvent]:
        """Normalize either log entry shape into a :class:`TriggerEvent`."""
        fields = entry.fields
        tenant_id = fields.get("tenant_id")
        if not tenant_id:
            logger.warning(f"Entry {entry.entry_id} has no tenant_id, skipping")
            return None

        if fields.get("message_id"):
            return await self._parse_channel_message(entry, tenant_id)

        event_type = fields.get("event_type")
        if not event_type:
            logger.warning(f"Entry {entry.entry_id} has no event_type, skipping")
            return None
        try:
            payload = json.loads(fields.get("payload") or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Entry {entry.entry_id} has an invalid JSON payload, skipping")
            return None
        if not isinstance(payload, dict):
            payload = {"value": payload}

        event: Dict[str, Any] = {
            "event_type": event_type,
            "tenant_id": tenant_id,
            "payload": payload,
            "source_event_id": str(payload.get("event_id") or entry.entry_id),
        }
        timestamp = _parse_timestamp(fields.get("timestamp"))
        if timestamp:
            event["timestamp"] = timestamp
        logger.info(f"Processing direct event: {event_type} for tenant {tenant_id}")
        return TriggerEvent(**event)

    async def _parse_channel_message(
        self, entry: LogEntry, tenant_id: str
    ) -> Optional[TriggerEvent]:
        fields = entry.fields
        message_id = fields["message_id"]
        channel = fields.get("channel") or ""
        if self._directory is None:
            logger.warning(f"No message directory configured, skipping message {message_id}")
            return None
        row = await self._directory.get_message(message_id)
        if row is None:
            logger.warning(f"Message {message_id} not found")
            return None

        event_type = trigger_type_for_channel(channel)
        logger.info(f"Processing message-based event: {event_type} for tenant {tenant_id}")
        return TriggerEvent(
            event_type=event_type,
            tenant_id=tenant_id,
            payload=channel_payload(message_id, fields.get("conversation_id"), channel, row),
            source_event_id=str(fields.get("event_id") or entry.entry_id),
            channel=channel,
        )

    async def process_event(self, event: TriggerEvent) -> list[str]:
        """Create and submit one run per matching, filter-passing workflow."""
        workflows = await self._repository.list_active_workflows(
            event.tenant_id, event.match_types(), definition_id=event.target_definition_id
        )
        if not workflows:
            logger.debug(f"No active workflows for {event.event_type} in tenant {event.tenant_id}")
            return []

        submitted: list[str] = []
        for workflow in workflows:
            version = workflow.version
            if not matches_trigger_config(event.payload, version.trigger_config):
                logger.debug(
                    f"Event doesn't match trigger conditions for workflow {workflow.definition.id}"
                )
                continue

            dedup_key = f"{version.id}:{event.source_event_id}"
            existing = await self._repository.get_run_by_dedup_key(dedup_key)
            if existing is not None:
                submitted.extend(self._resubmit(existing))
                continue

            if not await self._rate_limiter.acquire(event.tenant_id):
                logger.warning(f"Tenant {event.tenant_id} exceeded rate limit, dropping event")
                continue

            run = WorkflowRun(
                definition_id=workflow.definition.id,
                version_id=version.id,
                tenant_id=event.tenant_id,
                context={"trigger": event.payload, "event_type": event.event_type},
                trigger_payload=event.payload,
                event_type=event.event_type,
                dedup_key=dedup_key,
            )
            if not await self._repository.create_run(run):
                # Lost a race with another consumer holding the same entry.
                existing = await self._repository.get_run_by_dedup_key(dedup_key)
                if existing is not None:
                    submitted.extend(self._resubmit(existing))
                continue

            logger.info(f"Created run {run.id} for workflow {workflow.definition.name or workflow.definition.id}")
            self._pool.submit(run.id)
            submitted.append(run.id)
        return submitted

    def _resubmit(self, run: WorkflowRun) -> list[str]:
        if run.status != RunStatus.PENDING:
            logger.debug(f"Run {run.id} already exists with status {run.status.value}")
            return []
        logger.info(f"Resubmitting pending run {run.id} for redelivered event")
        self._pool.submit(run.id)
        return [run.id]


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
