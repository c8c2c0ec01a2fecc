"""Full index builds from a row-store table."""

from __future__ import annotations

import asyncio
from itertools import islice
from typing import Callable, Iterator, List, Optional

from sqlalchemy import Table
from sqlalchemy.orm import Session

from searchsync.bulk.context import BulkStats
from searchsync.logging import get_logger
from searchsync.search.client import SearchIndexClient
from searchsync.storage.bridge import HEAP_ROW_FETCH_SIZE, HeapRow, contains_json, iter_heap_rows

logger = get_logger(__name__)


def _take(rows: Iterator[HeapRow], n: int) -> List[HeapRow]:
    return list(islice(rows, n))


async def reindex_table(
    client: SearchIndexClient,
    session: Session,
    table: Table,
    *,
    check_interrupts: Optional[Callable[[], None]] = None,
) -> BulkStats:
    """Index every row version of ``table`` in one bulk session.

    Each row keeps its full MVCC stamp, so versions that are already
    superseded arrive with ``zdb_xmax`` set and stay invisible to readers.
    """
    label = f"{table.name} -> {client.index_name}"
    logger.info("Starting index build", table=table.name, index=client.index_name)

    async with client.start_bulk(
        contains_json=contains_json(table), check_interrupts=check_interrupts, label=label
    ) as bulk:
        rows = iter_heap_rows(session, table)
        while True:
            # fetch off the event loop
            chunk = await asyncio.to_thread(_take, rows, HEAP_ROW_FETCH_SIZE)
            if not chunk:
                break
            for row in chunk:
                await bulk.insert_row(
                    row.locator,
                    row.payload,
                    xmin=row.xmin,
                    cmin=row.cmin,
                    xmax=row.xmax,
                    cmax=row.cmax,
                )

    logger.info(
        "Finished index build",
        table=table.name,
        index=client.index_name,
        rows=bulk.stats.ntotal,
        requests=bulk.stats.nrequests,
    )
    return bulk.stats
