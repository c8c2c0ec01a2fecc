"""Remote ledger of in-progress and aborted transaction ids.

A single document (``_id`` = ``zdb_aborted_xids``) per index holds every
xid that wrote to the index but is not yet known to have committed. Search
queries exclude documents created by those xids. Many sessions update the
document concurrently, so every change is a scripted update with a large
``retry_on_conflict`` budget rather than a client-side read-modify-write.
"""

from __future__ import annotations

from typing import Iterable, List

from searchsync.bulk.encoder import (
    LEDGER_DOC_ID,
    LEDGER_REMOVE_MANY_SCRIPT,
    ledger_add,
    ledger_remove,
    script_body,
)
from searchsync.exceptions import TransportError
from searchsync.logging import get_logger
from searchsync.transport.rest import RestClient

logger = get_logger(__name__)

RETRY_ON_CONFLICT = 128


class TransactionLedger:
    """Direct (non-bulk) operations on the aborted-xids document.

    The bulk equivalents of `mark_in_progress` and `mark_committed` are
    `BulkContext.mark_transaction_in_progress` and
    `BulkContext.mark_transaction_committed`.
    """

    def __init__(
        self,
        rest: RestClient,
        *,
        index_name: str,
        type_name: str = "doc",
        should_refresh: bool = True,
    ) -> None:
        self._rest = rest
        self.index_name = index_name
        self.type_name = type_name
        self.should_refresh = should_refresh

    @property
    def _doc_endpoint(self) -> str:
        return f"{self.index_name}/{self.type_name}/{LEDGER_DOC_ID}"

    def _update_endpoint(self, *, refresh: bool) -> str:
        endpoint = f"{self._doc_endpoint}/_update?retry_on_conflict={RETRY_ON_CONFLICT}"
        if refresh:
            endpoint += "&refresh=true"
        return endpoint

    async def mark_in_progress(self, xid: int) -> None:
        """Add ``xid`` to the ledger; adding an existing member is a no-op."""
        await self._rest.call(
            "POST", self._update_endpoint(refresh=False), ledger_add(xid).update_body()
        )

    async def mark_committed(self, xid: int) -> None:
        """Remove ``xid`` now that its transaction committed."""
        await self._rest.call(
            "POST",
            self._update_endpoint(refresh=self.should_refresh),
            ledger_remove(xid).update_body(),
        )

    async def remove_aborted(self, xids: Iterable[int]) -> None:
        """Remove every id in ``xids``, present or not, and refresh immediately.

        Readers must not see compensated xids once this returns, hence the
        forced refresh.
        """
        ids = sorted(set(int(x) for x in xids))
        if not ids:
            return
        body = (
            f'{{"upsert":{{"{LEDGER_DOC_ID}":[]}},'
            + script_body(LEDGER_REMOVE_MANY_SCRIPT, '{"XIDS":[' + ",".join(map(str, ids)) + "]}")[1:]
        )
        await self._rest.call("POST", self._update_endpoint(refresh=True), body)
        logger.info("Removed aborted xids from ledger", index=self.index_name, count=len(ids))

    async def aborted_xids(self) -> List[int]:
        """Current ledger members; empty when the ledger document does not exist yet."""
        try:
            data = await self._rest.call_json(
                "GET", f"{self._doc_endpoint}?filter_path=_source.{LEDGER_DOC_ID}"
            )
        except TransportError as e:
            if e.status_code == 404:
                return []
            raise
        source = data.get("_source") or {}
        return [int(x) for x in source.get(LEDGER_DOC_ID) or []]
