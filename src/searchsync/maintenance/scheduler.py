"""APScheduler-based periodic compensation of the aborted-xids ledger.

Ledger entries whose transactions are no longer in progress have nothing
left to hide once their documents were compensated, so a sweep asks the row
store which members are resolved and removes them in one request.
"""
from __future__ import annotations

import inspect
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from searchsync.bulk.ledger import TransactionLedger
from searchsync.logging import get_logger

logger = get_logger(__name__)

ResolvedFilter = Callable[[List[int]], Union[Iterable[int], Awaitable[Iterable[int]]]]


async def sweep_aborted_xids(ledger: TransactionLedger, is_resolved: ResolvedFilter) -> List[int]:
    """Remove every ledger member that ``is_resolved`` reports as finished.

    Parameters
    ----------
    ledger: TransactionLedger
        Ledger of the index to sweep.
    is_resolved: Callable
        Given the current members, returns (or resolves to) the subset
        whose transactions are no longer in progress.

    Returns the removed xids.
    """
    members = await ledger.aborted_xids()
    if not members:
        return []
    result = is_resolved(members)
    if inspect.isawaitable(result):
        result = await result
    member_set = set(members)
    resolved = sorted(x for x in set(int(x) for x in result) if x in member_set)
    if resolved:
        await ledger.remove_aborted(resolved)
    logger.info(
        "Swept aborted xids ledger",
        index=ledger.index_name,
        members=len(members),
        removed=len(resolved),
    )
    return resolved


class LedgerSweepScheduler:
    """Schedules periodic ledger sweeps using AsyncIOScheduler."""

    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler()
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        """Start the underlying scheduler if not already started."""
        if not self._started:
            self._scheduler.start(paused=False)
            self._started = True

    def shutdown(self, *, wait: bool = True) -> None:
        """Shut down the scheduler."""
        if self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False

    def schedule_sweep(
        self,
        ledger: TransactionLedger,
        is_resolved: ResolvedFilter,
        *,
        interval: timedelta = timedelta(minutes=15),
        job_id: Optional[str] = None,
        replace_existing: bool = True,
    ) -> str:
        """Schedule periodic execution of `sweep_aborted_xids`.

        Parameters
        ----------
        interval: timedelta
            How often to run the sweep (default 15 minutes).
        job_id: Optional[str]
            Explicit job id to allow replacing/canceling; defaults to
            ``sweep:<index>``.
        replace_existing: bool
            If True, replace any existing job with the same id.
        """
        job_id = job_id or f"sweep:{ledger.index_name}"

        async def _job() -> None:
            try:
                await sweep_aborted_xids(ledger, is_resolved)
            except Exception:
                # the next interval retries
                logger.exception("Ledger sweep failed", index=ledger.index_name)

        trigger = IntervalTrigger(seconds=int(interval.total_seconds()))
        self._scheduler.add_job(
            _job,
            trigger=trigger,
            id=job_id,
            replace_existing=replace_existing,
            max_instances=1,
            coalesce=True,
        )
        return job_id

    def job_ids(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]
