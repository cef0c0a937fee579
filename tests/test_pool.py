"""Executor pool tests."""

import asyncio

import pytest

from flowpilot.persistence import RunStatus, WorkflowRun


async def _pending_run(repository, version):
    run = WorkflowRun(
        definition_id=version.definition_id,
        version_id=version.id,
        tenant_id="tenant-1",
        context={"trigger": {}, "event_type": "manual"},
        event_type="manual",
    )
    await repository.create_run(run)
    return run


@pytest.mark.asyncio
async def test_concurrent_run_once_executes_a_run_exactly_once(repository, pool, publish, chain):
    version = await publish(
        chain({"id": "set_1", "type": "set-variable", "config": {"name": "x", "value": 1}})
    )
    run = await _pending_run(repository, version)

    results = await asyncio.gather(pool.run_once(run.id), pool.run_once(run.id))

    assert sorted(results, key=lambda r: r is None) == [RunStatus.COMPLETED, None]
    records = await repository.list_node_records(run.id)
    assert [r.node_id for r in records] == ["trigger_1", "set_1"]


@pytest.mark.asyncio
async def test_workers_drain_submissions(repository, pool, publish, chain):
    version = await publish(
        chain({"id": "set_1", "type": "set-variable", "config": {"name": "x", "value": 1}})
    )
    runs = [await _pending_run(repository, version) for _ in range(5)]
    for run in runs:
        pool.submit(run.id)
    pool.submit(runs[0].id)
    assert pool.status() == {"active": 0, "queued": 6, "max": 4}

    pool.start()
    await asyncio.wait_for(pool.join(), timeout=5)
    await pool.stop()

    for run in runs:
        assert (await repository.get_run(run.id)).status == RunStatus.COMPLETED
    assert len(await repository.list_node_records(runs[0].id)) == 2
    assert pool.status()["queued"] == 0


@pytest.mark.asyncio
async def test_worker_survives_executor_errors(repository, pool, publish, chain, monkeypatch):
    version = await publish(chain())
    broken = await _pending_run(repository, version)
    healthy = await _pending_run(repository, version)

    original = repository.claim_run

    async def claim_run(run_id):
        if run_id == broken.id:
            raise RuntimeError("database unavailable")
        return await original(run_id)

    monkeypatch.setattr(repository, "claim_run", claim_run)
    pool.submit(broken.id)
    pool.submit(healthy.id)
    pool.start()
    await asyncio.wait_for(pool.join(), timeout=5)
    await pool.stop()

    assert (await repository.get_run(broken.id)).status == RunStatus.PENDING
    assert (await repository.get_run(healthy.id)).status == RunStatus.COMPLETED
