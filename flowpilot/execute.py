"""Run execution engine for flowpilot workflows."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Optional, Union

from .constants import ERROR_HANDLE, LAST_ERROR_KEY
from .contracts import GraphNode, RunContext, WorkflowGraph, context_alias
from .errors import ExecutionLimitExceeded, FlowpilotError, GraphValidationError
from .expressions import resolve_config
from .nodes import NodeLogger, NodeRegistry, Outcome, Stop, Wait
from .persistence import NodeExecutionRecord, RunStatus, WorkflowRepository, WorkflowRun
from .persistence.models import utcnow
from .transports import BaseEventLog

logger = logging.getLogger(__name__)

ERROR_HANDLER_KIND = "error-handler"


class RunExecutor:
    """Walk one run's graph from its cursor until it finishes or suspends.

    The caller must already own the run (status ``running``). Every step
    appends a :class:`NodeExecutionRecord` and persists the new context
    against the context version it was derived from.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: NodeRegistry,
        outbound: Optional[BaseEventLog] = None,
        max_steps: int = 500,
        max_execution_seconds: float = 300.0,
        graph_cache_size: int = 256,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._outbound = outbound
        self.max_steps = max_steps
        self.max_execution_seconds = max_execution_seconds
        self._graph_cache_size = graph_cache_size
        self._graphs: "OrderedDict[str, WorkflowGraph]" = OrderedDict()

    async def execute(self, run: WorkflowRun) -> RunStatus:
        """Execute ``run`` and return the status it ended the pass in."""
        logger.info(f"Starting execution for run {run.id}")
        try:
            graph = await self._load_graph(run.version_id)
        except FlowpilotError as exc:
            logger.error(f"Run {run.id} cannot start: {exc}")
            await self._repository.finish_run(run.id, RunStatus.FAILED, error=str(exc))
            return RunStatus.FAILED

        context = RunContext(
            run_id=run.id,
            tenant_id=run.tenant_id,
            data=run.context,
            version=run.context_version,
            event_type=run.event_type,
        )

        if run.cursor:
            node_id = await self._resume_target(run, graph)
            logger.info(f"Resuming run {run.id} after node {run.cursor}")
        else:
            entry = graph.entry_node(run.event_type, self._registry.trigger_kinds)
            if entry is None:
                await self._repository.finish_run(
                    run.id, RunStatus.FAILED, error="No trigger node found in workflow"
                )
                return RunStatus.FAILED
            node_id = entry.id
            logger.info(f"Starting run {run.id} from trigger node {node_id}")

        return await self._walk(run, graph, context, node_id)

    # ------------------------------------------------------------------
    async def _walk(
        self,
        run: WorkflowRun,
        graph: WorkflowGraph,
        context: RunContext,
        node_id: Optional[str],
    ) -> RunStatus:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_execution_seconds
        cursor = run.cursor
        steps = 0

        while node_id is not None:
            steps += 1
            if steps > self.max_steps:
                return await self._fail(run, ExecutionLimitExceeded(f"Run exceeded {self.max_steps} steps"))
            if loop.time() > deadline:
                return await self._fail(run, ExecutionLimitExceeded("Workflow execution timeout"))

            node = graph.get_node(node_id)
            if node is None:
                return await self._fail(run, GraphValidationError([f"Node {node_id} not found"]))

            outcome = await self._execute_node(run, node, context)

            if isinstance(outcome, Exception):
                error = outcome
                context = context.with_entries(
                    **{
                        LAST_ERROR_KEY: {
                            "node_id": node.id,
                            "node_kind": node.kind,
                            "type": type(error).__name__,
                            "message": str(error),
                        }
                    }
                )
                version = await self._repository.save_progress(
                    run.id, context.to_dict(), cursor, context.version
                )
                context = context.with_version(version)
                handler_id = graph.next_node_id(node.id, ERROR_HANDLE)
                if handler_id is None:
                    logger.error(f"Run {run.id} failed at node {node.id}: {error}")
                    await self._repository.finish_run(run.id, RunStatus.FAILED, error=str(error))
                    return RunStatus.FAILED
                logger.info(f"Run {run.id} routing error from {node.id} to {handler_id}")
                node_id = handler_id
                continue

            context = context.merge(context_alias(node.id), outcome.values)
            if node.kind == ERROR_HANDLER_KIND:
                context = context.without(LAST_ERROR_KEY)
            cursor = node.id
            if isinstance(outcome, Wait):
                # context, cursor and the resumption commit together
                await self._repository.suspend_run(
                    run.id, context.to_dict(), cursor, context.version, outcome.resume_at
                )
                logger.info(f"Run {run.id} paused until {outcome.resume_at.isoformat()}")
                return RunStatus.WAITING

            version = await self._repository.save_progress(
                run.id, context.to_dict(), cursor, context.version
            )
            context = context.with_version(version)

            if isinstance(outcome, Stop):
                await self._repository.finish_run(run.id, RunStatus.STOPPED)
                logger.info(f"Run {run.id} stopped by node {node.id}")
                return RunStatus.STOPPED

            handle = outcome.handle
            node_id = graph.next_node_id(node.id, handle)
            if node_id is None and handle is not None:
                logger.debug(f"No edge from {node.id} on handle '{handle}'")

        await self._repository.finish_run(run.id, RunStatus.COMPLETED)
        logger.info(f"Run {run.id} completed after {steps} step(s)")
        return RunStatus.COMPLETED

    async def _execute_node(
        self, run: WorkflowRun, node: GraphNode, context: RunContext
    ) -> Union[Outcome, Exception]:
        """Invoke one node and append its record; node errors are returned, not raised."""
        started_at = utcnow()
        node_logger = NodeLogger(logger, {"run_id": run.id, "node_id": node.id})
        config: dict[str, Any] = {}
        try:
            impl = self._registry.get(node.kind)
            config = resolve_config(node.config, context.data, skip=impl.expression_fields)
            node_logger.debug(f"Executing {node.kind}")
            outcome = await impl.execute(config, context.for_node(node.id), node_logger)
            await self._enqueue(outcome)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._repository.append_node_record(
                NodeExecutionRecord(
                    run_id=run.id,
                    node_id=node.id,
                    node_kind=node.kind,
                    status="failed",
                    input=config,
                    error=str(exc),
                    started_at=started_at,
                    completed_at=utcnow(),
                )
            )
            node_logger.error(f"Node execution failed: {exc}")
            return exc

        await self._repository.append_node_record(
            NodeExecutionRecord(
                run_id=run.id,
                node_id=node.id,
                node_kind=node.kind,
                status="completed",
                handle=outcome.handle,
                input=config,
                output=outcome.values,
                started_at=started_at,
                completed_at=utcnow(),
            )
        )
        return outcome

    async def _enqueue(self, outcome: Outcome) -> None:
        instruction = outcome.values.get("enqueue")
        if self._outbound is None or not isinstance(instruction, dict):
            return
        await self._outbound.append(instruction["stream"], instruction.get("fields") or {})

    async def _resume_target(self, run: WorkflowRun, graph: WorkflowGraph) -> Optional[str]:
        records = await self._repository.list_node_records(run.id)
        for record in reversed(records):
            if record.node_id == run.cursor and record.status == "completed":
                return graph.next_node_id(record.node_id, record.handle)
        logger.warning(f"Run {run.id} has no completed record for cursor {run.cursor}")
        return None

    async def _load_graph(self, version_id: str) -> WorkflowGraph:
        graph = self._graphs.get(version_id)
        if graph is not None:
            self._graphs.move_to_end(version_id)
            return graph
        version = await self._repository.get_version(version_id)
        if version is None:
            raise GraphValidationError([f"Workflow version {version_id} not found"])
        self._registry.validate(version.graph)
        self._graphs[version_id] = version.graph
        if len(self._graphs) > self._graph_cache_size:
            self._graphs.popitem(last=False)
        return version.graph

    async def _fail(self, run: WorkflowRun, error: Exception) -> RunStatus:
        logger.error(f"Run {run.id} failed: {error}")
        await self._repository.finish_run(run.id, RunStatus.FAILED, error=str(error))
        return RunStatus.FAILED
