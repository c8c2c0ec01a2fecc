"""HTTP transport to the search cluster using httpx.

`RestClient.call` performs one request/response round trip. `RestPool`
keeps up to ``concurrency`` ``_bulk`` requests in flight as asyncio tasks on
a shared `httpx.AsyncClient`; the caller polls it for finished requests
instead of being called back.
"""

from __future__ import annotations

import asyncio
import gzip
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Union

import httpx

from searchsync.exceptions import BulkItemsError, RemoteError, TransportError
from searchsync.logging import get_logger

if TYPE_CHECKING:
    from searchsync.bulk.pool import Buffer

logger = get_logger(__name__)

JSON = "application/json"
NDJSON = "application/x-ndjson"
VERSION_CONFLICT = "version_conflict_engine_exception"

Body = Union[str, bytes, bytearray, None]


def check_response(resp: httpx.Response) -> None:
    """Raise for non-2xx statuses and for a top-level ``error`` field."""
    if not 200 <= resp.status_code < 300:
        raise TransportError(
            f"{resp.request.method} {resp.request.url} returned HTTP {resp.status_code}: {resp.text}",
            status_code=resp.status_code,
            body=resp.text,
        )
    if not resp.content:
        return
    try:
        data = resp.json()
    except ValueError:
        return
    if isinstance(data, dict) and data.get("error") is not None:
        raise RemoteError(resp.text)


def tally_item_errors(data: Dict[str, Any]) -> Dict[str, int]:
    """Count failed ``_bulk`` items by error type.

    Responses are requested with ``filter_path=errors,items.*.error``, so each
    remaining item looks like ``{"update": {"error": {"type": ...}}}``.
    """
    failures: Dict[str, int] = {}
    for item in data.get("items") or []:
        if not isinstance(item, dict):
            continue
        for result in item.values():
            err = result.get("error") if isinstance(result, dict) else None
            if err is None:
                continue
            etype = err.get("type", "unknown") if isinstance(err, dict) else str(err)
            failures[etype] = failures.get(etype, 0) + 1
    return failures


class RestClient:
    """Thin request layer over `httpx.AsyncClient`.

    Parameters
    ----------
    base_url:
        Cluster root URL, e.g. ``http://localhost:9200/``.
    compression_level:
        gzip level applied to request bodies; 0 sends them uncompressed.
    transport:
        Optional httpx transport, mainly for `httpx.MockTransport` in tests.
    """

    def __init__(
        self,
        *,
        base_url: str,
        compression_level: int = 0,
        timeout: float = 60.0,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.compression_level = compression_level
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            verify=self.verify_ssl,
            transport=self._transport,
            headers={"Accept": JSON},
        )

    def compress(self, body: bytes) -> Optional[bytes]:
        if self.compression_level <= 0:
            return None
        return gzip.compress(body, compresslevel=self.compression_level)

    async def send(
        self,
        client: httpx.AsyncClient,
        method: str,
        endpoint: str,
        body: Body = None,
        *,
        content_type: str = JSON,
        compressed: Optional[bytes] = None,
    ) -> httpx.Response:
        headers: Dict[str, str] = {}
        content: Optional[bytes] = None
        if body is not None:
            raw = body.encode("utf-8") if isinstance(body, str) else bytes(body)
            packed = compressed if compressed is not None else self.compress(raw)
            headers["Content-Type"] = content_type
            if packed is not None:
                headers["Content-Encoding"] = "gzip"
                content = packed
            else:
                content = raw
        try:
            resp = await client.request(method, endpoint.lstrip("/"), content=content, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {endpoint} failed: {e}") from e
        check_response(resp)
        return resp

    async def call(
        self, method: str, endpoint: str, body: Body = None, *, content_type: str = JSON
    ) -> httpx.Response:
        """Perform one request and wait for its response."""
        async with self._client() as client:
            return await self.send(client, method, endpoint, body, content_type=content_type)

    async def call_json(
        self, method: str, endpoint: str, body: Body = None, *, content_type: str = JSON
    ) -> Dict[str, Any]:
        resp = await self.call(method, endpoint, body, content_type=content_type)
        if not resp.content:
            return {}
        data = resp.json()
        if not isinstance(data, dict):
            raise RemoteError(resp.text)
        return data

    def pool(
        self,
        concurrency: int,
        *,
        on_complete: Callable[[Buffer], None],
        ignore_version_conflicts: bool = False,
    ) -> "RestPool":
        return RestPool(
            self,
            concurrency=concurrency,
            on_complete=on_complete,
            ignore_version_conflicts=ignore_version_conflicts,
        )


class RestPool:
    """Bounded set of concurrently in-flight ``_bulk`` requests.

    Each dispatched buffer is owned by the pool until its request finishes
    and `reclaim_available` hands it back through ``on_complete``.
    """

    def __init__(
        self,
        rest: RestClient,
        *,
        concurrency: int,
        on_complete: Callable[[Buffer], None],
        ignore_version_conflicts: bool = False,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._rest = rest
        # opened by the first dispatch
        self._http: Optional[httpx.AsyncClient] = None
        self.concurrency = concurrency
        self.ignore_version_conflicts = ignore_version_conflicts
        self._on_complete = on_complete
        self._inflight: Dict[asyncio.Task[None], Buffer] = {}
        self._closed = False
        self.item_errors: Dict[str, int] = {}

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    @property
    def available(self) -> int:
        return self.concurrency - len(self._inflight)

    @property
    def connected(self) -> bool:
        return self._http is not None

    async def dispatch(self, method: str, endpoint: str, buffer: Buffer) -> None:
        """Start sending ``buffer``; waits only while every request slot is busy."""
        if self._closed:
            raise RuntimeError("dispatch on a cleaned-up RestPool")
        while len(self._inflight) >= self.concurrency:
            await asyncio.wait(set(self._inflight), return_when=asyncio.FIRST_COMPLETED)
            self.reclaim_available()
        if self._http is None:
            self._http = self._rest._client()
        buffer.compressed = self._rest.compress(bytes(buffer.data))
        task = asyncio.create_task(self._send(method, endpoint, buffer))
        self._inflight[task] = buffer

    async def _send(self, method: str, endpoint: str, buffer: Buffer) -> None:
        assert self._http is not None
        resp = await self._rest.send(
            self._http,
            method,
            endpoint,
            buffer.data,
            content_type=NDJSON,
            compressed=buffer.compressed,
        )
        if not resp.content:
            return
        data = resp.json()
        if isinstance(data, dict) and data.get("errors"):
            failures = tally_item_errors(data)
            for etype, n in failures.items():
                self.item_errors[etype] = self.item_errors.get(etype, 0) + n
            if self.ignore_version_conflicts:
                failures.pop(VERSION_CONFLICT, None)
            if failures:
                raise BulkItemsError(resp.text, failures=failures)

    def reclaim_available(self) -> bool:
        """Return finished buffers to their owner without blocking.

        Returns True if anything was reclaimed. The first failure among the
        finished requests is raised after all of them have been reclaimed.
        """
        done = [t for t in self._inflight if t.done()]
        first_error: Optional[BaseException] = None
        for task in done:
            buffer = self._inflight.pop(task)
            self._on_complete(buffer)
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None and first_error is None:
                first_error = exc
        if first_error is not None:
            raise first_error
        return bool(done)

    def all_done(self) -> bool:
        return all(t.done() for t in self._inflight)

    async def wait(self, timeout: Optional[float] = None) -> None:
        """Wait until at least one request finishes, or ``timeout`` elapses."""
        if self._inflight:
            await asyncio.wait(
                set(self._inflight), timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )

    async def abandon(self) -> None:
        """Cancel every outstanding request and reclaim its buffer."""
        tasks = list(self._inflight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("Abandoned in-flight bulk requests", count=len(tasks))
        for task in tasks:
            self._on_complete(self._inflight.pop(task))

    async def cleanup(self, *, wait_all: bool, partial: bool = False) -> None:
        """Finish with the pool.

        With ``wait_all`` every outstanding request is awaited and reclaimed
        (failures propagate); otherwise outstanding requests are cancelled.
        Unless ``partial``, the underlying HTTP client is closed and the pool
        can no longer dispatch.
        """
        try:
            if wait_all:
                try:
                    while self._inflight:
                        await asyncio.wait(set(self._inflight))
                        self.reclaim_available()
                except BaseException:
                    await self.abandon()
                    raise
            else:
                await self.abandon()
        finally:
            if not partial and not self._closed:
                self._closed = True
                if self._http is not None:
                    await self._http.aclose()
