"""Wire the configured components into one workflow worker process."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import FlowpilotConfig, load_config
from .crm import (
    CRMWriter,
    InMemoryCRMWriter,
    InMemoryMessageDirectory,
    MessageDirectory,
    PostgresCRMWriter,
    PostgresMessageDirectory,
)
from .dispatch import TriggerEmitter
from .execute import RunExecutor
from .ingest import TriggerIngestor
from .llm import CompletionProvider, get_completion_provider
from .nodes import NodeRegistry, build_registry
from .persistence import WorkflowRepository, get_repository
from .pool import ExecutorPool
from .ratelimit import RateLimiter, get_rate_limiter
from .scheduler import Scheduler
from .transports import BaseEventLog, get_event_log

logger = logging.getLogger(__name__)


class WorkflowService:
    """Ingestor, scheduler and executor pool sharing one repository and log."""

    def __init__(
        self,
        config: FlowpilotConfig,
        repository: WorkflowRepository,
        event_log: BaseEventLog,
        registry: NodeRegistry,
        rate_limiter: RateLimiter,
        directory: Optional[MessageDirectory] = None,
        crm_writer: Optional[CRMWriter] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.event_log = event_log
        self.registry = registry
        self.directory = directory
        self.crm_writer = crm_writer
        self.executor = RunExecutor(
            repository,
            registry,
            outbound=event_log if config.outbound.enabled else None,
            max_steps=config.executor.max_steps,
            max_execution_seconds=config.executor.max_execution_seconds,
        )
        self.pool = ExecutorPool(
            repository, self.executor, max_concurrent_runs=config.executor.max_concurrent_runs
        )
        self.emitter = TriggerEmitter(event_log, stream=config.event_log.stream)
        settings = config.event_log
        self.ingestor = TriggerIngestor(
            event_log,
            repository,
            self.pool,
            rate_limiter,
            directory,
            stream=settings.stream,
            group=settings.group,
            consumer=settings.consumer,
            batch_size=settings.batch_size,
            block_ms=settings.block_ms,
            claim_idle_ms=settings.claim_idle_ms,
        )
        self.scheduler = Scheduler(
            repository,
            self.pool,
            self.emitter,
            poll_interval_seconds=config.scheduler.poll_interval_seconds,
            batch_size=config.scheduler.batch_size,
            stale_run_seconds=config.scheduler.stale_run_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[FlowpilotConfig] = None,
        completion_provider: Optional[CompletionProvider] = None,
    ) -> "WorkflowService":
        config = config or load_config()
        repository = get_repository(config.database_url, config)
        event_log = get_event_log(config=config)
        directory: MessageDirectory
        crm_writer: CRMWriter
        if config.database_url and config.database_url.startswith(("postgres://", "postgresql://")):
            directory = PostgresMessageDirectory(config.database_url)
            crm_writer = PostgresCRMWriter(config.database_url)
        else:
            directory = InMemoryMessageDirectory()
            crm_writer = InMemoryCRMWriter()
        registry = build_registry(
            completion_provider=completion_provider or get_completion_provider(config),
            crm_writer=crm_writer,
        )
        return cls(
            config,
            repository,
            event_log,
            registry,
            get_rate_limiter(config),
            directory,
            crm_writer,
        )

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Run ingestion and scheduling until stopped or ``lifespan`` elapses."""
        await self.event_log.connect()
        self.pool.start()
        logger.info(f"Workflow service {self.config.event_log.consumer} started")
        try:
            await asyncio.gather(
                self.ingestor.start(lifespan=lifespan),
                self.scheduler.start(lifespan=lifespan),
            )
        finally:
            await self.pool.stop()
            await self.event_log.disconnect()
            await self.repository.close()
            for client in (self.directory, self.crm_writer):
                if isinstance(client, (PostgresMessageDirectory, PostgresCRMWriter)):
                    await client.close()
            logger.info("Workflow service stopped")

    def stop(self) -> None:
        self.ingestor.stop()
        self.scheduler.stop()
