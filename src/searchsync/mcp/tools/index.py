"""Search index tools for FastMCP.

Read-mostly access to the configured index: counts, searches, refreshes
and the aborted-xids ledger.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from fastmcp import FastMCP

from searchsync.search.client import SearchIndexClient


def register_index_tools(mcp: FastMCP, get_state: Callable[[], Any]) -> None:
    """Register index tools on the given FastMCP instance.

    Reads config from state.settings.index (url, index_name, alias, ...). An
    optional ``state.transport`` is handed to the HTTP client.
    """

    def _make_client(state_obj: Any) -> SearchIndexClient:
        settings = getattr(state_obj, "settings", None)
        icfg = getattr(settings, "index", None)
        if icfg is None or not getattr(icfg, "index_name", None):
            raise RuntimeError("Search index is not configured. Set SEARCHSYNC_INDEX__INDEX_NAME.")
        return SearchIndexClient(icfg, transport=getattr(state_obj, "transport", None))

    @mcp.tool
    async def index_count(query: Optional[str] = None) -> Dict[str, Any]:
        """Count documents matching a query.

        Parameters
        ----------
        query: str | None
            Query string or JSON query DSL; all documents when omitted.
        """
        client = _make_client(get_state())
        return {"index": client.index_name, "count": await client.count(query)}

    @mcp.tool
    async def index_search(
        query: str,
        *,
        limit: int = 10,
        with_highlights: bool = False,
    ) -> List[Dict[str, Any]]:
        """Search the index and return the top hits.

        Parameters
        ----------
        query: str
            Query string, ``"limit,query"`` text, or JSON query DSL.
        limit: int
            Maximum number of hits to return (default 10).
        with_highlights: bool
            Include highlighted fragments for all fields.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        client = _make_client(get_state())
        cursor = await client.open_scroll(
            query,
            use_id=True,
            limit=limit,
            highlights={"*": {}} if with_highlights else None,
        )
        results: List[Dict[str, Any]] = []
        async with cursor:
            async for hit in cursor:
                item: Dict[str, Any] = {
                    "id": hit.doc_id,
                    "ctid": str(hit.locator) if hit.locator is not None else None,
                    "score": hit.score,
                }
                if with_highlights:
                    item["highlights"] = hit.highlights or {}
                results.append(item)
        return results

    @mcp.tool
    async def index_refresh() -> Dict[str, Any]:
        """Make all pending writes to the index visible to searches."""
        client = _make_client(get_state())
        await client.refresh()
        return {"index": client.index_name, "refreshed": True}

    @mcp.tool
    async def ledger_aborted_xids() -> Dict[str, Any]:
        """List transaction ids currently hidden from searches by the ledger."""
        client = _make_client(get_state())
        xids = await client.ledger.aborted_xids()
        return {"index": client.index_name, "xids": xids}
