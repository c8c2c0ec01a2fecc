import json
from typing import Any, Dict, List, Union

import pytest
from fastmcp import Client, FastMCP

from searchsync.config import Settings
from searchsync.locator import ItemPointer
from searchsync.mcp.tools.index import register_index_tools

from conftest import INDEX, FakeSearchCluster


class DummyState:
    def __init__(self, cluster: FakeSearchCluster) -> None:
        self.settings = Settings()
        # Populate minimal index config for client construction
        self.settings.index.url = "http://search.test:9200/"
        self.settings.index.index_name = INDEX
        self.settings.index.compression_level = 0
        self.transport = cluster.transport()


def _extract_json_payload(result: Any) -> Union[Dict[str, Any], List[Dict[str, Any]]]:
    # If already a dict/list, return as-is
    if isinstance(result, (dict, list)):
        return result
    # FastMCP Client returns CallToolResult with content list of TextContent
    content = getattr(result, "content", None)
    if isinstance(content, list) and content:
        for item in content:
            text = getattr(item, "text", None)
            if isinstance(text, str):
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    continue
    raise AssertionError("Unable to extract JSON payload from tool result")


@pytest.mark.asyncio
async def test_index_tools_count_search_refresh(cluster: FakeSearchCluster) -> None:
    # Arrange MCP and register tools
    mcp = FastMCP("test")
    state = DummyState(cluster)
    register_index_tools(mcp, get_state=lambda: state)
    for i in (1, 2, 3):
        ptr = ItemPointer(0, i)
        cluster.put(f"doc-{i}", {"zdb_ctid": ptr.to_u64()})

    client = Client(mcp)
    async with client:
        res_count = await client.call_tool("index_count", {"query": "beer"})
        res_search = await client.call_tool("index_search", {"query": "beer", "limit": 2})
        res_refresh = await client.call_tool("index_refresh", {})

    count = _extract_json_payload(res_count)
    assert count == {"index": INDEX, "count": 3}

    hits = _extract_json_payload(res_search)
    assert isinstance(hits, list)
    assert [h["id"] for h in hits] == ["doc-1", "doc-2"]
    assert hits[0]["ctid"] == "(0,1)"
    assert hits[0]["score"] == 1.0

    assert _extract_json_payload(res_refresh) == {"index": INDEX, "refreshed": True}
    assert len(cluster.requests_to(f"/{INDEX}/_refresh")) == 1


@pytest.mark.asyncio
async def test_ledger_tool_lists_members(cluster: FakeSearchCluster) -> None:
    mcp = FastMCP("test")
    state = DummyState(cluster)
    register_index_tools(mcp, get_state=lambda: state)
    cluster.put("zdb_aborted_xids", {"zdb_aborted_xids": [7, 9]})

    client = Client(mcp)
    async with client:
        res = await client.call_tool("ledger_aborted_xids", {})

    assert _extract_json_payload(res) == {"index": INDEX, "xids": [7, 9]}


@pytest.mark.asyncio
async def test_tools_require_index_configuration() -> None:
    mcp = FastMCP("test")

    class Unconfigured:
        settings = Settings()

    register_index_tools(mcp, get_state=lambda: Unconfigured())

    client = Client(mcp)
    async with client:
        with pytest.raises(Exception, match="not configured"):
            await client.call_tool("index_count", {})
