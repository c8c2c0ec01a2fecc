from datetime import timedelta
from typing import List

import pytest

from searchsync.bulk.ledger import TransactionLedger
from searchsync.maintenance.scheduler import LedgerSweepScheduler, sweep_aborted_xids
from searchsync.transport.rest import RestClient

from conftest import INDEX, FakeSearchCluster


@pytest.mark.asyncio
async def test_sweep_removes_resolved_members(cluster: FakeSearchCluster, rest: RestClient) -> None:
    ledger = TransactionLedger(rest, index_name=INDEX)
    for xid in (1, 2, 3):
        await ledger.mark_in_progress(xid)

    removed = await sweep_aborted_xids(ledger, lambda xids: [x for x in xids if x != 2] + [99])

    assert removed == [1, 3]
    assert await ledger.aborted_xids() == [2]


@pytest.mark.asyncio
async def test_sweep_accepts_async_filter(cluster: FakeSearchCluster, rest: RestClient) -> None:
    ledger = TransactionLedger(rest, index_name=INDEX)
    await ledger.mark_in_progress(5)

    async def resolved(xids: List[int]) -> List[int]:
        return xids

    assert await sweep_aborted_xids(ledger, resolved) == [5]
    assert await ledger.aborted_xids() == []


@pytest.mark.asyncio
async def test_sweep_of_empty_ledger_does_nothing(cluster: FakeSearchCluster, rest: RestClient) -> None:
    ledger = TransactionLedger(rest, index_name=INDEX)
    calls = []

    assert await sweep_aborted_xids(ledger, lambda xids: calls.append(xids) or xids) == []
    assert calls == []
    assert cluster.requests_to("/_update") == []


def test_schedule_sweep_registers_one_job(rest: RestClient) -> None:
    scheduler = LedgerSweepScheduler()
    ledger = TransactionLedger(rest, index_name=INDEX)

    job_id = scheduler.schedule_sweep(ledger, lambda xids: xids, interval=timedelta(minutes=5))

    assert job_id == f"sweep:{INDEX}"
    assert scheduler.job_ids() == [job_id]
    assert not scheduler.running
