"""Client facade bound to one configured search index."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Mapping, Optional, Union

import httpx

from searchsync.bulk.context import BulkContext
from searchsync.bulk.ledger import TransactionLedger
from searchsync.config import IndexConfig, Settings
from searchsync.exceptions import ConfigError
from searchsync.logging import get_logger
from searchsync.search.query import SearchQuery
from searchsync.search.scroll import ScrollCursor, open_scroll
from searchsync.transport.rest import RestClient

logger = get_logger(__name__)

QueryLike = Union[SearchQuery, Mapping[str, Any], str, None]


def _count_body(query: QueryLike) -> str:
    return '{"query":' + SearchQuery.coerce(query).to_dsl() + "}"


class SearchIndexClient:
    """Bulk sessions, scrolls, counts and ledger access for one index.

    Parameters
    ----------
    config:
        Index settings; ``index_name`` must be set.
    transport:
        Optional httpx transport handed to the underlying `RestClient`.
    """

    def __init__(
        self,
        config: IndexConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rest: Optional[RestClient] = None,
    ) -> None:
        if not config.index_name:
            raise ConfigError("index.index_name is not configured")
        self.config = config
        self.rest = rest or RestClient(
            base_url=config.url,
            compression_level=config.compression_level,
            timeout=config.timeout,
            verify_ssl=config.verify_ssl,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "SearchIndexClient":
        return cls(settings.index, transport=transport)

    @property
    def index_name(self) -> str:
        assert self.config.index_name is not None
        return self.config.index_name

    @property
    def type_name(self) -> str:
        return self.config.type_name

    def start_bulk(
        self,
        *,
        contains_json: bool = False,
        ignore_version_conflicts: bool = False,
        check_interrupts: Optional[Callable[[], None]] = None,
        label: Optional[str] = None,
    ) -> BulkContext:
        return BulkContext(
            self.rest,
            index_name=self.index_name,
            type_name=self.type_name,
            batch_size=self.config.batch_size,
            concurrency=self.config.bulk_concurrency,
            should_refresh=self.config.should_refresh,
            contains_json=contains_json,
            ignore_version_conflicts=ignore_version_conflicts,
            poll_interval=self.config.drain_poll_interval,
            check_interrupts=check_interrupts,
            label=label,
        )

    @property
    def ledger(self) -> TransactionLedger:
        return TransactionLedger(
            self.rest,
            index_name=self.index_name,
            type_name=self.type_name,
            should_refresh=self.config.should_refresh,
        )

    async def open_scroll(self, query: QueryLike = None, **options: Any) -> ScrollCursor:
        """Open a scroll over this index; see `searchsync.search.scroll.open_scroll`."""
        return await open_scroll(
            self.rest, index_name=self.index_name, type_name=self.type_name, query=query, **options
        )

    async def count(self, query: QueryLike = None) -> int:
        """Matching documents, counted through the alias when one is configured."""
        target = self.config.alias or self.index_name
        data = await self.rest.call_json("POST", f"{target}/_count?filter_path=count", _count_body(query))
        return int(data.get("count", 0))

    async def count_all(self) -> int:
        data = await self.rest.call_json(
            "GET",
            f"{self.index_name}/{self.type_name}/_count?filter_path=count",
            _count_body(None),
        )
        return int(data.get("count", 0))

    async def estimate_selectivity(self, query: QueryLike) -> int:
        data = await self.rest.call_json(
            "POST",
            f"{self.index_name}/{self.type_name}/_count?filter_path=count",
            _count_body(query),
        )
        return int(data.get("count", 0))

    async def profile_query(self, query: QueryLike) -> Dict[str, Any]:
        body = '{"profile":true,"query":' + SearchQuery.coerce(query).to_dsl() + "}"
        data = await self.rest.call_json(
            "POST", f"{self.index_name}/_search?size=0&filter_path=profile", body
        )
        return data.get("profile") or {}

    async def arbitrary_request(
        self, method: str, endpoint: str, body: Union[str, Mapping[str, Any], None] = None
    ) -> str:
        """Send a raw request and return the response text.

        ``endpoint`` starting with ``/`` addresses the cluster root; anything
        else is relative to this index.
        """
        if not endpoint.startswith("/"):
            endpoint = f"{self.index_name}/{endpoint}"
        if isinstance(body, Mapping):
            body = json.dumps(body)
        resp = await self.rest.call(method.upper(), endpoint, body)
        return resp.text

    async def refresh(self) -> None:
        await self.rest.call("GET", f"{self.index_name}/_refresh")
        logger.info("Refreshed index", index=self.index_name)
