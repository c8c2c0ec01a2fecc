"""Streaming paginated search results with the scroll API.

`open_scroll` runs the initial search and returns a `ScrollCursor` that
hands back one hit per `ScrollCursor.next` call, fetching the next page
with the continuation token whenever the current one runs out. Only the
``zdb_ctid`` doc value, requested extra fields, ``_id``, ``_score`` and
highlights are requested; document sources are never transferred.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from searchsync.exceptions import RemoteError, UsageError
from searchsync.locator import ItemPointer
from searchsync.logging import get_logger
from searchsync.search.query import SearchQuery
from searchsync.transport.rest import RestClient

logger = get_logger(__name__)

SEARCH_RESPONSE_FILTER = (
    "_scroll_id,_shards.failed,hits.total,hits.hits.fields.*,"
    "hits.hits._id,hits.hits._score,hits.hits.highlight.*"
)
SCROLL_WINDOW = "10m"
MAX_PAGE_SIZE = 10000
CTID_FIELD = "zdb_ctid"


class SortDirection(str, Enum):
    DEFAULT = "default"
    ASC = "asc"
    DESC = "desc"


@dataclass(slots=True)
class ScrollHit:
    """One search hit."""

    locator: Optional[ItemPointer]
    doc_id: Optional[str] = None
    score: Optional[float] = None
    highlights: Optional[Dict[str, List[str]]] = None
    fields: Dict[str, List[Any]] = field(default_factory=dict)


def _total_hits(hits: Mapping[str, Any]) -> int:
    total = hits.get("total", 0)
    # 7.x reports {"value": n, "relation": "eq"}
    if isinstance(total, Mapping):
        total = total.get("value", 0)
    return int(total or 0)


def build_search_body(
    query: SearchQuery,
    *,
    need_sort: bool,
    need_score: bool,
    sort_field: Optional[str],
    direction: SortDirection,
    highlights: Optional[Mapping[str, Any]],
) -> str:
    """Request body for the initial search, following the default sort policy."""
    if sort_field is not None:
        need_sort = True
    elif need_sort:
        sort_field = "_score" if need_score else CTID_FIELD
        if direction is SortDirection.DEFAULT:
            direction = SortDirection.DESC if need_score else SortDirection.ASC

    body: Dict[str, Any] = {"track_scores": need_score}
    if need_sort:
        order = "desc" if direction is SortDirection.DESC else "asc"
        body["sort"] = [{sort_field: order}]
    else:
        body["sort"] = ["_score" if need_score else "_doc"]
    body["query"] = query.dsl

    if highlights:
        body["highlight"] = {
            "fields": {
                name: (json.loads(spec) if isinstance(spec, str) else dict(spec))
                for name, spec in highlights.items()
            }
        }
    return json.dumps(body, separators=(",", ":"))


class ScrollCursor:
    """Iteration state over one open scroll.

    ``next`` may be called exactly ``total`` times; a further call raises
    `UsageError`. The cursor is also an async iterator that stops at
    ``total`` (or at ``limit`` when one was given).
    """

    def __init__(
        self,
        rest: RestClient,
        *,
        scroll_id: Optional[str],
        total: int,
        hits: List[Dict[str, Any]],
        use_id: bool = False,
        has_highlights: bool = False,
        extra_fields: Sequence[str] = (),
        limit: int = 0,
    ) -> None:
        self._rest = rest
        self.scroll_id = scroll_id
        self.total = total
        self.limit = limit
        self.use_id = use_id
        self.has_highlights = has_highlights
        self.extra_fields = tuple(extra_fields)
        self._hits: Optional[List[Dict[str, Any]]] = hits
        self._pos = 0
        self.consumed = 0
        self.page_fetches = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remaining(self) -> int:
        return self.total - self.consumed

    async def next(self) -> ScrollHit:
        if self._closed:
            raise UsageError("scroll cursor is closed")
        if self.consumed >= self.total:
            raise UsageError(f"Attempt to read past total number of hits of {self.total}")

        if self._hits is None or self._pos >= len(self._hits):
            await self._fetch_next_page()

        assert self._hits is not None
        if not self._hits:
            raise RemoteError("No results found when loading next scroll context")

        hit = self._hits[self._pos]
        self._pos += 1
        self.consumed += 1
        return self._to_hit(hit)

    async def _fetch_next_page(self) -> None:
        body = json.dumps({"scroll": SCROLL_WINDOW, "scroll_id": self.scroll_id}, separators=(",", ":"))
        # drop the previous page before the next one arrives
        self._hits = None
        data = await self._rest.call_json(
            "POST", f"_search/scroll?filter_path={SEARCH_RESPONSE_FILTER}", body
        )
        self.page_fetches += 1
        # tokens may change on every call
        self.scroll_id = data.get("_scroll_id")
        self._hits = list((data.get("hits") or {}).get("hits") or [])
        self._pos = 0

    def _to_hit(self, hit: Mapping[str, Any]) -> ScrollHit:
        fields = hit.get("fields") or {}
        locator = None
        ctid_values = fields.get(CTID_FIELD)
        if ctid_values:
            locator = ItemPointer.from_u64(int(ctid_values[0]))
        score = hit.get("_score")
        return ScrollHit(
            locator=locator,
            doc_id=hit.get("_id") if self.use_id else None,
            score=float(score) if score is not None else None,
            highlights=hit.get("highlight") if self.has_highlights else None,
            fields={name: fields[name] for name in self.extra_fields if name in fields},
        )

    def __aiter__(self) -> "ScrollCursor":
        return self

    async def __anext__(self) -> ScrollHit:
        end = min(self.total, self.limit) if self.limit > 0 else self.total
        if self._closed or self.consumed >= end:
            raise StopAsyncIteration
        return await self.next()

    async def close(self) -> None:
        """Release the current page; the remote scroll context expires on its own."""
        self._hits = None
        self._closed = True

    async def __aenter__(self) -> "ScrollCursor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def open_scroll(
    rest: RestClient,
    *,
    index_name: str,
    type_name: str = "doc",
    query: Union[SearchQuery, Mapping[str, Any], str, None] = None,
    use_id: bool = False,
    need_sort: bool = False,
    need_score: bool = False,
    limit: int = 0,
    sort_field: Optional[str] = None,
    direction: SortDirection = SortDirection.DEFAULT,
    highlights: Optional[Mapping[str, Any]] = None,
    extra_fields: Sequence[str] = (),
) -> ScrollCursor:
    """Run the initial search and return a cursor positioned before the first hit.

    Parameters
    ----------
    use_id:
        Return each hit's ``_id`` (id-passthrough mode).
    need_score:
        Track scores; implied by a positive ``limit`` so the top-scoring hits
        are the ones that survive the limit.
    limit:
        Caller limit; also caps the page size. 0 means unlimited. When not
        given, the limit embedded in the query (``"42,beer"``) applies.
    highlights:
        Field name to highlight spec (mapping or JSON text).
    extra_fields:
        Additional doc-value fields to return with each hit.
    """
    q = SearchQuery.coerce(query)
    if limit <= 0:
        limit = q.limit
    need_score = need_score or limit > 0

    body = build_search_body(
        q,
        need_sort=need_sort,
        need_score=need_score,
        sort_field=sort_field,
        direction=direction,
        highlights=highlights,
    )

    page_size = min(limit, MAX_PAGE_SIZE) if limit > 0 else MAX_PAGE_SIZE
    if highlights:
        stored_fields = "type"
    elif use_id:
        stored_fields = "_id"
    else:
        stored_fields = "_none_"
    docvalue_fields = ",".join([CTID_FIELD, *extra_fields])

    endpoint = (
        f"{index_name}/{type_name}/_search?_source=false&size={page_size}&scroll={SCROLL_WINDOW}"
        f"&filter_path={SEARCH_RESPONSE_FILTER}&stored_fields={stored_fields}"
        f"&docvalue_fields={docvalue_fields}"
    )
    data = await rest.call_json("POST", endpoint, body)

    failed = (data.get("_shards") or {}).get("failed") or 0
    if failed:
        logger.warning("Search had failed shards", index=index_name, failed=failed)

    hits_obj = data.get("hits") or {}
    total = _total_hits(hits_obj)
    return ScrollCursor(
        rest,
        scroll_id=data.get("_scroll_id"),
        total=total,
        hits=list(hits_obj.get("hits") or []) if total > 0 else [],
        use_id=use_id,
        has_highlights=bool(highlights),
        extra_fields=extra_fields,
        limit=limit,
    )
