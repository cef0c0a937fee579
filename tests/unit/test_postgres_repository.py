import os
from datetime import datetime, timedelta, timezone

import pytest

from flowpilot.errors import StaleContextError
from flowpilot.persistence import (
    RunStatus,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowVersion,
)


def _get_dsn() -> str | None:
    return os.getenv("TEST_PG_DSN")


@pytest.mark.asyncio
async def test_postgres_repository_run_lifecycle():
    dsn = _get_dsn()
    if not dsn:
        pytest.skip("TEST_PG_DSN not set")
    from flowpilot.persistence.postgres import PostgresWorkflowRepository

    repo = PostgresWorkflowRepository(dsn)
    try:
        await repo._get_pool()
    except Exception:
        pytest.skip("PostgreSQL server not available")

    try:
        definition = WorkflowDefinition(tenant_id="pg-tenant", name="pg")
        await repo.save_definition(definition)
        version = WorkflowVersion(
            definition_id=definition.id,
            is_published=True,
            graph={"nodes": [{"id": "t", "type": "manual"}], "edges": []},
            trigger_types=["manual"],
        )
        await repo.save_version(version)

        matches = await repo.list_active_workflows("pg-tenant", ["manual"], definition.id)
        assert [m.version.id for m in matches] == [version.id]

        run = WorkflowRun(
            definition_id=definition.id,
            version_id=version.id,
            tenant_id="pg-tenant",
            dedup_key=f"{version.id}:evt-1",
        )
        assert await repo.create_run(run)
        assert not await repo.create_run(
            WorkflowRun(
                definition_id=definition.id,
                version_id=version.id,
                tenant_id="pg-tenant",
                dedup_key=f"{version.id}:evt-1",
            )
        )

        assert (await repo.claim_run(run.id)).status == RunStatus.RUNNING
        assert await repo.claim_run(run.id) is None
        assert await repo.save_progress(run.id, {"x": 1}, "t", 0) == 1
        with pytest.raises(StaleContextError):
            await repo.save_progress(run.id, {"x": 2}, "t", 0)

        now = datetime.now(timezone.utc)
        await repo.suspend_run(run.id, {"x": 1}, "t", 1, now - timedelta(seconds=1))
        assert await repo.claim_run(run.id) is None
        due = await repo.claim_due_resumptions(now)
        assert run.id in [r.run_id for r in due]
        assert (await repo.claim_run(run.id)).status == RunStatus.RUNNING

        await repo.finish_run(run.id, RunStatus.COMPLETED)
        assert (await repo.get_run(run.id)).status == RunStatus.COMPLETED
    finally:
        await repo.close()
