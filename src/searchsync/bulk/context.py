"""Bulk mutation sessions against one remote index.

A `BulkContext` accumulates encoded mutations into the current buffer and
flushes it to the ``_bulk`` endpoint once it is large enough, without
waiting for the response: up to ``concurrency`` requests stay in flight
while the next buffer fills. Finished requests are reclaimed on every
append and, at the end of the session, `finish` drains everything that is
still outstanding and refreshes the index if needed.

Typical use::

    async with client.start_bulk(contains_json=True) as bulk:
        for row in rows:
            await bulk.insert_row(row.locator, row.payload, xmin=row.xmin, cmin=row.cmin)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from types import TracebackType
from typing import Callable, Dict, Optional, Type

from searchsync.bulk.encoder import (
    MutationKind,
    MutationRecord,
    delete_by_xmax,
    delete_by_xmin,
    index_row,
    ledger_add,
    ledger_remove,
    update_row,
    vacuum_xmax,
)
from searchsync.bulk.pool import Buffer, BufferPool
from searchsync.exceptions import UsageError
from searchsync.locator import ItemPointer
from searchsync.logging import get_logger
from searchsync.transport.rest import RestClient

logger = get_logger(__name__)

# Elasticsearch refuses more documents than this in one request
MAX_DOCS_PER_REQUEST = 10000

BULK_RESPONSE_FILTER = "errors,items.*.error"


class BulkState(str, Enum):
    ACCUMULATING = "accumulating"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(slots=True)
class BulkStats:
    """Counters for one bulk session."""

    ntotal: int = 0
    nrequests: int = 0
    nindex: int = 0
    nupdate: int = 0
    ndelete: int = 0
    nvacuum: int = 0
    nxid: int = 0
    flushed_rows: int = 0
    flushed_bytes: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


_COUNTERS = {
    MutationKind.INDEX: "nindex",
    MutationKind.UPDATE: "nupdate",
    MutationKind.DELETE_BY_XMIN: "ndelete",
    MutationKind.DELETE_BY_XMAX: "ndelete",
    MutationKind.VACUUM_XMAX: "nvacuum",
    MutationKind.LEDGER_ADD: "nxid",
    MutationKind.LEDGER_REMOVE: "nxid",
}


class BulkContext:
    """One bulk-loading session (index build, vacuum pass, per-transaction sync).

    Parameters
    ----------
    rest:
        Transport used for the pooled ``_bulk`` requests and the final refresh.
    index_name, type_name:
        Remote index and mapping type the session writes to.
    batch_size:
        Flush threshold in bytes for the current buffer.
    concurrency:
        Maximum number of ``_bulk`` requests in flight at once.
    should_refresh:
        True when the index refresh interval is disabled (``"-1"``), in which
        case the session makes its writes visible itself.
    contains_json:
        Row payloads may embed raw JSON with line breaks that must be
        flattened before they fit on one ``_bulk`` line.
    ignore_version_conflicts:
        Treat ``version_conflict_engine_exception`` item failures as benign.
    check_interrupts:
        Called periodically while draining; raise from it to cancel the drain.
    """

    def __init__(
        self,
        rest: RestClient,
        *,
        index_name: str,
        type_name: str = "doc",
        batch_size: int = 8 * 1024 * 1024,
        concurrency: int = 12,
        should_refresh: bool = True,
        contains_json: bool = False,
        ignore_version_conflicts: bool = False,
        poll_interval: float = 0.05,
        check_interrupts: Optional[Callable[[], None]] = None,
        label: Optional[str] = None,
    ) -> None:
        self._rest = rest
        self.index_name = index_name
        self.type_name = type_name
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.should_refresh = should_refresh
        self.contains_json = contains_json
        self.poll_interval = poll_interval
        self.label = label or index_name
        self._check_interrupts = check_interrupts

        # one buffer filling plus one per in-flight request
        self.buffers = BufferPool(concurrency + 1)
        self._pool = rest.pool(
            concurrency,
            on_complete=self.buffers.release,
            ignore_version_conflicts=ignore_version_conflicts,
        )
        self._current: Optional[Buffer] = self.buffers.checkout()

        self.wait_for_active_shards = False
        self.stats = BulkStats()
        self.state = BulkState.ACCUMULATING

    async def __aenter__(self) -> "BulkContext":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if self.state is BulkState.CLOSED:
            return
        if exc_type is None:
            await self.finish()
        else:
            await self.abort()

    @property
    def nrows(self) -> int:
        """Rows in the buffer currently being filled."""
        return self._current.nrows if self._current is not None else 0

    @property
    def in_flight(self) -> int:
        return self._pool.in_flight

    @property
    def item_errors(self) -> Dict[str, int]:
        return dict(self._pool.item_errors)

    async def append(self, record: MutationRecord) -> None:
        """Append one mutation, flushing the current buffer first if it is full."""
        if self.state is not BulkState.ACCUMULATING:
            raise UsageError(f"bulk session for {self.label} is {self.state.value}")

        lines = record.to_bulk_lines(normalize_line_breaks=self.contains_json)

        if record.kind.is_delete:
            # must be set before a flush so the flushed request carries it too
            self.wait_for_active_shards = True

        try:
            await self._prologue(is_final=False)
        except BaseException:
            # any failure here is fatal to the session
            await self._close_abandoning()
            raise

        assert self._current is not None
        self._current.append(lines)
        counter = _COUNTERS[record.kind]
        setattr(self.stats, counter, getattr(self.stats, counter) + 1)
        self.stats.ntotal += 1

    async def insert_row(
        self,
        locator: Optional[ItemPointer],
        payload: bytes,
        *,
        xmin: int,
        cmin: int,
        xmax: Optional[int] = None,
        cmax: Optional[int] = None,
        doc_id: Optional[str] = None,
    ) -> None:
        await self.append(
            index_row(locator, payload, xmin=xmin, cmin=cmin, xmax=xmax, cmax=cmax, doc_id=doc_id)
        )

    async def update_row(
        self,
        *,
        locator: Optional[ItemPointer] = None,
        doc_id: Optional[str] = None,
        cmax: int,
        xmax: int,
    ) -> None:
        await self.append(update_row(locator=locator, doc_id=doc_id, cmax=cmax, xmax=xmax))

    async def delete_row_by_xmin(self, doc_id: str, xmin: int) -> None:
        await self.append(delete_by_xmin(doc_id, xmin))

    async def delete_row_by_xmax(self, doc_id: str, xmax: int) -> None:
        await self.append(delete_by_xmax(doc_id, xmax))

    async def vacuum_xmax(self, doc_id: str, expected_xmax: int) -> None:
        await self.append(vacuum_xmax(doc_id, expected_xmax))

    async def mark_transaction_in_progress(self, xid: int) -> None:
        await self.append(ledger_add(xid))

    async def mark_transaction_committed(self, xid: int) -> None:
        await self.append(ledger_remove(xid))

    def _bulk_endpoint(self, *, is_final: bool) -> str:
        endpoint = (
            f"{self.index_name}/{self.type_name}/_bulk?filter_path={BULK_RESPONSE_FILTER}"
        )
        if self.wait_for_active_shards:
            endpoint += "&wait_for_active_shards=all"
        # a session that fits in one request refreshes as part of it
        if is_final and self.should_refresh and self.stats.nrequests == 0:
            endpoint += "&refresh=true"
        return endpoint

    async def _prologue(self, *, is_final: bool) -> None:
        self._pool.reclaim_available()

        current = self._current
        assert current is not None
        if not (
            len(current) >= self.batch_size
            or current.nrows >= MAX_DOCS_PER_REQUEST
            or is_final
        ):
            return

        if not is_final:
            logger.debug(
                "Flushing bulk batch",
                index=self.label,
                ntotal=self.stats.ntotal,
                nbytes=len(current),
                nrows=current.nrows,
                active=self._pool.in_flight,
                concurrency=self.concurrency,
            )

        endpoint = self._bulk_endpoint(is_final=is_final)
        self.stats.flushed_rows += current.nrows
        self.stats.flushed_bytes += len(current)
        self._current = None
        try:
            await self._pool.dispatch("POST", endpoint, current)
        except BaseException:
            # never reached the request pool
            self.buffers.release(current)
            raise
        self.stats.nrequests += 1

        if not is_final:
            self._current = self.buffers.checkout()

    async def finish(self) -> BulkStats:
        """Flush what is left, wait for every request, then refresh if needed."""
        if self.state is not BulkState.ACCUMULATING:
            raise UsageError(f"bulk session for {self.label} is {self.state.value}")
        self.state = BulkState.DRAINING

        try:
            assert self._current is not None
            if len(self._current) > 0:
                await self._prologue(is_final=True)
                if self.stats.nrequests > 1:
                    logger.info("Bulk session complete", index=self.label, **self.stats.as_dict())
            else:
                self.buffers.release(self._current)
                self._current = None

            while not self._pool.all_done():
                await self._pool.wait(self.poll_interval)
                self._pool.reclaim_available()
                if self._check_interrupts is not None:
                    self._check_interrupts()

            await self._pool.cleanup(wait_all=True)
        except BaseException:
            await self._close_abandoning()
            raise

        self.state = BulkState.CLOSED

        if self.should_refresh and self.stats.nrequests > 1:
            # many batches: one refresh for the whole session
            await self._rest.call("GET", f"{self.index_name}/_refresh")
            logger.info("Refreshed index after bulk session", index=self.label)

        return self.stats

    async def abort(self) -> None:
        """Abandon the session: cancel in-flight requests and drop pending rows."""
        if self.state is BulkState.CLOSED:
            return
        logger.warning(
            "Aborting bulk session",
            index=self.label,
            pending_rows=self.nrows,
            in_flight=self._pool.in_flight,
        )
        await self._close_abandoning()

    async def _close_abandoning(self) -> None:
        try:
            await self._pool.cleanup(wait_all=False)
        finally:
            if self._current is not None:
                self.buffers.release(self._current)
                self._current = None
            self.state = BulkState.CLOSED
