import gzip

import httpx
import pytest

from searchsync.bulk.pool import BufferPool
from searchsync.exceptions import RemoteError, TransportError
from searchsync.transport.rest import RestClient, tally_item_errors


def _rest(handler, **kwargs) -> RestClient:
    return RestClient(base_url="http://search.test:9200", transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_call_json_and_endpoint_resolution() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"count": 3})

    rest = _rest(handler)
    assert rest.base_url == "http://search.test:9200/"
    assert await rest.call_json("GET", "idx/_count") == {"count": 3}
    await rest.call("GET", "/_cluster/health")

    assert seen == ["http://search.test:9200/idx/_count", "http://search.test:9200/_cluster/health"]


@pytest.mark.asyncio
async def test_non_2xx_raises_transport_error() -> None:
    rest = _rest(lambda request: httpx.Response(429, text="slow down"))

    with pytest.raises(TransportError) as excinfo:
        await rest.call("GET", "idx/_refresh")

    assert excinfo.value.status_code == 429
    assert excinfo.value.body == "slow down"


@pytest.mark.asyncio
async def test_connection_failure_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError, match="refused"):
        await _rest(handler).call("GET", "idx/_refresh")


@pytest.mark.asyncio
async def test_top_level_error_raises_remote_error() -> None:
    body = '{"error":{"type":"index_not_found_exception"},"status":200}'
    rest = _rest(lambda request: httpx.Response(200, text=body))

    with pytest.raises(RemoteError) as excinfo:
        await rest.call("GET", "idx/_refresh")

    assert excinfo.value.body == body


@pytest.mark.asyncio
async def test_bodies_are_gzipped_when_enabled() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["encoding"] = request.headers.get("Content-Encoding")
        captured["type"] = request.headers.get("Content-Type")
        captured["body"] = gzip.decompress(request.content)
        return httpx.Response(200, json={})

    await _rest(handler, compression_level=1).call("POST", "idx/_count", '{"query":{}}')

    assert captured == {"encoding": "gzip", "type": "application/json", "body": b'{"query":{}}'}


@pytest.mark.asyncio
async def test_pool_dispatches_ndjson_and_reclaims() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Content-Type"] == "application/x-ndjson"
        return httpx.Response(200, json={"errors": False})

    buffers = BufferPool(2)
    pool = _rest(handler).pool(1, on_complete=buffers.release)
    buf = buffers.checkout()
    buf.append(b'{"index":{}}\n{}\n')

    await pool.dispatch("POST", "idx/doc/_bulk", buf)
    assert pool.in_flight == 1
    assert pool.available == 0
    await pool.cleanup(wait_all=True)

    assert pool.in_flight == 0
    assert buffers.checked_out == 0
    with pytest.raises(RuntimeError):
        await pool.dispatch("POST", "idx/doc/_bulk", buffers.checkout())


def test_tally_item_errors() -> None:
    data = {
        "errors": True,
        "items": [
            {"update": {"error": {"type": "document_missing_exception"}}},
            {"update": {"error": {"type": "document_missing_exception"}}},
            {"index": {"error": {"type": "mapper_parsing_exception"}}},
            {"index": {}},
        ],
    }

    assert tally_item_errors(data) == {"document_missing_exception": 2, "mapper_parsing_exception": 1}


@pytest.mark.asyncio
async def test_pool_opens_its_client_on_first_dispatch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": False})

    buffers = BufferPool(2)
    idle = _rest(handler).pool(1, on_complete=buffers.release)
    assert not idle.connected
    await idle.cleanup(wait_all=True)
    assert not idle.connected

    pool = _rest(handler).pool(1, on_complete=buffers.release)
    buf = buffers.checkout()
    buf.append(b'{"index":{}}\n{}\n')
    await pool.dispatch("POST", "idx/doc/_bulk", buf)
    assert pool.connected
    await pool.cleanup(wait_all=True)
    assert buffers.checked_out == 0
