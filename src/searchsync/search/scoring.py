"""Per-query scoring state.

Score lookups are keyed by relation id and live in a `ScoringContext` that
the caller creates for one query execution and passes to every scan that
takes part in it. Nothing here is process-global.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Union

from searchsync.locator import ItemPointer
from searchsync.logging import get_logger
from searchsync.search.query import SearchQuery
from searchsync.search.scroll import ScrollHit, SortDirection

if TYPE_CHECKING:
    from searchsync.search.client import SearchIndexClient

logger = get_logger(__name__)

ScoreCallback = Callable[[ItemPointer], float]


class ScoringContext:
    """Relation id -> score callbacks for one query execution."""

    def __init__(self) -> None:
        self._callbacks: Dict[int, List[ScoreCallback]] = {}

    def register(self, relation_id: int, callback: ScoreCallback) -> None:
        self._callbacks.setdefault(relation_id, []).append(callback)

    def unregister(self, relation_id: int, callback: ScoreCallback) -> None:
        callbacks = self._callbacks.get(relation_id)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)
            if not callbacks:
                del self._callbacks[relation_id]

    def has_callbacks(self, relation_id: int) -> bool:
        return bool(self._callbacks.get(relation_id))

    def score(self, relation_id: int, locator: ItemPointer) -> float:
        """Sum of every registered callback's score for ``locator``; 0.0 when none."""
        return sum(cb(locator) for cb in self._callbacks.get(relation_id, ()))

    def clear(self) -> None:
        self._callbacks.clear()


class ScoreTable:
    """Scores recorded while scanning one relation."""

    def __init__(self) -> None:
        self._scores: Dict[ItemPointer, float] = {}

    def __len__(self) -> int:
        return len(self._scores)

    def __contains__(self, locator: object) -> bool:
        return locator in self._scores

    def record(self, locator: ItemPointer, score: float) -> None:
        self._scores[locator] = score

    def lookup(self, locator: ItemPointer) -> float:
        return self._scores.get(locator, 0.0)

    __call__ = lookup


@dataclass(frozen=True, slots=True)
class ScanCapabilities:
    """What one index scan must return, decided once before it opens."""

    need_score: bool = False
    need_sort: bool = False
    limit: int = 0

    @classmethod
    def for_query(
        cls,
        query: Union[SearchQuery, Mapping[str, Any], str, None],
        *,
        need_score: bool = False,
        need_sort: bool = False,
    ) -> "ScanCapabilities":
        limit = SearchQuery.coerce(query).limit
        return cls(need_score=need_score or limit > 0, need_sort=need_sort, limit=limit)


async def scan_index(
    client: "SearchIndexClient",
    relation_id: int,
    query: Union[SearchQuery, Mapping[str, Any], str, None],
    capabilities: ScanCapabilities,
    context: Optional[ScoringContext] = None,
    *,
    direction: SortDirection = SortDirection.DEFAULT,
    extra_fields: Sequence[str] = (),
) -> AsyncIterator[ScrollHit]:
    """Yield every hit of ``query``, recording scores when the scan wants them.

    Parameters
    ----------
    relation_id:
        Key under which the scan's `ScoreTable` is registered in ``context``.
    capabilities:
        When ``need_score`` is set a ``context`` is required; its table stays
        registered after the scan so later lookups in the same query see it.
    """
    table: Optional[ScoreTable] = None
    if capabilities.need_score:
        if context is None:
            raise ValueError("a ScoringContext is required when scores are wanted")
        table = ScoreTable()
        context.register(relation_id, table)

    cursor = await client.open_scroll(
        query,
        need_sort=capabilities.need_sort,
        need_score=capabilities.need_score,
        limit=capabilities.limit,
        direction=direction,
        extra_fields=extra_fields,
    )
    try:
        async for hit in cursor:
            if table is not None and hit.locator is not None and hit.score is not None:
                table.record(hit.locator, hit.score)
            yield hit
    finally:
        await cursor.close()
        logger.debug(
            "Index scan finished",
            relation_id=relation_id,
            consumed=cursor.consumed,
            total=cursor.total,
        )
