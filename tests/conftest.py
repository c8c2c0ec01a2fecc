import asyncio
import gzip
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from searchsync.bulk.encoder import (
    DELETE_BY_XMAX_SCRIPT,
    DELETE_BY_XMIN_SCRIPT,
    LEDGER_ADD_SCRIPT,
    LEDGER_DOC_ID,
    LEDGER_REMOVE_MANY_SCRIPT,
    LEDGER_REMOVE_SCRIPT,
    UPDATE_CMAX_SCRIPT,
    VACUUM_XMAX_SCRIPT,
)
from searchsync.config import IndexConfig
from searchsync.search.client import SearchIndexClient
from searchsync.transport.rest import RestClient

INDEX = "test_idx"


class FakeSearchCluster:
    """In-memory stand-in for the search cluster, served through httpx.MockTransport.

    Stores documents per index, runs the painless scripts this package sends
    and answers scroll searches over whatever documents it holds.
    """

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.requests: List[Tuple[str, str, Dict[str, str], bytes]] = []
        self.scores: Dict[str, float] = {}
        self.total_as_object = False
        self.inject_item_errors: List[str] = []
        self.fail_status: Optional[int] = None
        # when set, _bulk requests block until the event fires
        self.bulk_gate: Optional[asyncio.Event] = None
        self.active_bulk = 0
        self.max_active_bulk = 0
        self._scrolls: Dict[str, List[Dict[str, Any]]] = {}
        self._next_scroll = 0
        self._next_auto_id = 0

    # ----- helpers for tests -----

    def index(self, name: str = INDEX) -> Dict[str, Dict[str, Any]]:
        return self.docs.setdefault(name, {})

    def put(self, doc_id: str, source: Dict[str, Any], name: str = INDEX) -> None:
        self.index(name)[doc_id] = dict(source)

    def requests_to(self, suffix: str) -> List[Tuple[str, str, Dict[str, str], bytes]]:
        return [r for r in self.requests if r[1].endswith(suffix)]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # ----- request handling -----

    async def handle(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        if request.headers.get("Content-Encoding") == "gzip":
            body = gzip.decompress(body)
        path = request.url.path
        params = dict(request.url.params)
        self.requests.append((request.method, path, params, body))

        if self.fail_status is not None:
            return httpx.Response(self.fail_status, text="cluster unavailable")

        parts = [p for p in path.split("/") if p]
        if parts[-1] == "_bulk":
            return await self._bulk(parts[0], body)
        if parts[-1] == "_update":
            return self._update(parts[0], parts[-2], json.loads(body))
        if parts[-1] == "_refresh":
            return httpx.Response(200, json={"_shards": {"total": 1, "successful": 1, "failed": 0}})
        if parts[-1] == "_count":
            return httpx.Response(200, json={"count": self._count(parts[0])})
        if parts == ["_search", "scroll"]:
            return self._scroll(json.loads(body))
        if parts[-1] == "_search":
            if params.get("size") == "0":
                return httpx.Response(200, json={"profile": {"shards": []}})
            return self._search(parts[0], params, json.loads(body))
        if request.method == "GET" and len(parts) == 3:
            doc = self.index(parts[0]).get(parts[2])
            if doc is None:
                return httpx.Response(404, json={"found": False})
            return httpx.Response(200, json={"_source": doc})
        return httpx.Response(400, json={"error": {"type": "illegal_argument_exception", "reason": path}})

    async def _bulk(self, index: str, body: bytes) -> httpx.Response:
        self.active_bulk += 1
        self.max_active_bulk = max(self.max_active_bulk, self.active_bulk)
        try:
            if self.bulk_gate is not None:
                await self.bulk_gate.wait()
            lines = body.decode("utf-8").split("\n")
            assert lines[-1] == "", "bulk body must end with a newline"
            items: List[Dict[str, Any]] = []
            for action_line, doc_line in zip(lines[0:-1:2], lines[1:-1:2]):
                action = json.loads(action_line)
                doc = json.loads(doc_line)
                op, meta = next(iter(action.items()))
                if op == "index":
                    doc_id = meta.get("_id")
                    if doc_id is None:
                        self._next_auto_id += 1
                        doc_id = f"auto-{self._next_auto_id}"
                    self.index(index)[doc_id] = doc
                    items.append({"index": {}})
                else:
                    err = self._apply_update(index, meta["_id"], doc)
                    items.append({"update": {"error": err}} if err else {"update": {}})
            for etype in self.inject_item_errors:
                items.append({"update": {"error": {"type": etype, "reason": "injected"}}})
            errors = [i for i in items if next(iter(i.values())).get("error")]
            if errors:
                return httpx.Response(200, json={"errors": True, "items": errors})
            return httpx.Response(200, json={"errors": False})
        finally:
            self.active_bulk -= 1

    def _update(self, index: str, doc_id: str, body: Dict[str, Any]) -> httpx.Response:
        err = self._apply_update(index, doc_id, body)
        if err:
            return httpx.Response(200, json={"error": err})
        return httpx.Response(200, json={"result": "updated"})

    def _apply_update(self, index: str, doc_id: str, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        docs = self.index(index)
        script = body["script"]
        source = script["source"]
        params = script["params"]
        doc = docs.get(doc_id)
        if doc is None:
            if "upsert" in body:
                docs[doc_id] = json.loads(json.dumps(body["upsert"]))
                return None
            return {"type": "document_missing_exception", "reason": f"[{doc_id}]: document missing"}

        if source == UPDATE_CMAX_SCRIPT:
            doc["zdb_cmax"] = params["CMAX"]
            doc["zdb_xmax"] = params["XMAX"]
        elif source == DELETE_BY_XMIN_SCRIPT:
            if doc.get("zdb_xmin") == params["EXPECTED_XMIN"]:
                del docs[doc_id]
        elif source == DELETE_BY_XMAX_SCRIPT:
            if doc.get("zdb_xmax") == params["EXPECTED_XMAX"]:
                del docs[doc_id]
        elif source == VACUUM_XMAX_SCRIPT:
            if doc.get("zdb_xmax") == params["EXPECTED_XMAX"]:
                doc["zdb_xmax"] = None
        elif source == LEDGER_ADD_SCRIPT:
            if params["XID"] not in doc[LEDGER_DOC_ID]:
                doc[LEDGER_DOC_ID].append(params["XID"])
        elif source == LEDGER_REMOVE_SCRIPT:
            doc[LEDGER_DOC_ID] = [x for x in doc[LEDGER_DOC_ID] if x != params["XID"]]
        elif source == LEDGER_REMOVE_MANY_SCRIPT:
            doc[LEDGER_DOC_ID] = [x for x in doc[LEDGER_DOC_ID] if x not in params["XIDS"]]
        else:
            return {"type": "script_exception", "reason": source}
        return None

    def _count(self, index: str) -> int:
        return sum(1 for doc_id in self.index(index) if doc_id != LEDGER_DOC_ID)

    def _search(self, index: str, params: Dict[str, str], body: Dict[str, Any]) -> httpx.Response:
        size = int(params["size"])
        docvalue_fields = params.get("docvalue_fields", "").split(",")
        docs = [(doc_id, doc) for doc_id, doc in self.index(index).items() if doc_id != LEDGER_DOC_ID]
        sort = body.get("sort") or []
        if sort and isinstance(sort[0], dict) and "zdb_ctid" in sort[0]:
            docs.sort(key=lambda d: d[1].get("zdb_ctid", 0), reverse=sort[0]["zdb_ctid"] == "desc")
        elif sort and (sort[0] == "_score" or (isinstance(sort[0], dict) and "_score" in sort[0])):
            docs.sort(key=lambda d: self.scores.get(d[0], 1.0), reverse=True)

        hits = []
        for doc_id, doc in docs:
            fields = {f: [doc[f]] for f in docvalue_fields if f and doc.get(f) is not None}
            hit: Dict[str, Any] = {"_id": doc_id, "_score": self.scores.get(doc_id, 1.0), "fields": fields}
            if "highlight" in body:
                hit["highlight"] = {"title": [f"<em>{doc_id}</em>"]}
            hits.append(hit)

        total: Any = len(hits)
        if self.total_as_object:
            total = {"value": len(hits), "relation": "eq"}
        self._next_scroll += 1
        scroll_id = f"scroll-{self._next_scroll}-0"
        self._scrolls[scroll_id] = hits[size:]
        self._page_size = size
        return httpx.Response(
            200,
            json={
                "_scroll_id": scroll_id,
                "_shards": {"failed": 0},
                "hits": {"total": total, "hits": hits[:size]},
            },
        )

    def _scroll(self, body: Dict[str, Any]) -> httpx.Response:
        assert body["scroll"] == "10m"
        remaining = self._scrolls.pop(body["scroll_id"], None)
        if remaining is None:
            return httpx.Response(404, json={"error": {"type": "search_context_missing_exception"}})
        prefix, _, n = body["scroll_id"].rpartition("-")
        next_id = f"{prefix}-{int(n) + 1}"
        self._scrolls[next_id] = remaining[self._page_size :]
        return httpx.Response(
            200,
            json={
                "_scroll_id": next_id,
                "_shards": {"failed": 0},
                "hits": {"hits": remaining[: self._page_size]},
            },
        )


@pytest.fixture
def cluster() -> FakeSearchCluster:
    return FakeSearchCluster()


@pytest.fixture
def rest(cluster: FakeSearchCluster) -> RestClient:
    return RestClient(base_url="http://search.test:9200/", transport=cluster.transport())


@pytest.fixture
def index_config() -> IndexConfig:
    return IndexConfig(url="http://search.test:9200", index_name=INDEX, compression_level=0)


@pytest.fixture
def client(cluster: FakeSearchCluster, index_config: IndexConfig) -> SearchIndexClient:
    return SearchIndexClient(index_config, transport=cluster.transport())
