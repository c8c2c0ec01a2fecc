"""searchsync MCP server entrypoint using FastMCP.

Exposes tools over the configured search index and, when enabled, runs the
periodic aborted-xids ledger sweep alongside the server.
Run with:
  - poetry run searchsync-mcp
  - or: python -m searchsync.mcp.server (ensure PYTHONPATH includes ./src)
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, List, Optional

from fastmcp import FastMCP

from searchsync.config import Settings, load_settings
from searchsync.logging import configure_logging, get_logger
from searchsync.maintenance.scheduler import LedgerSweepScheduler
from searchsync.mcp.tools import register_index_tools
from searchsync.search.client import SearchIndexClient
from searchsync.storage.bridge import resolved_xids
from searchsync.storage.database import get_engine, make_session_factory, session_scope

logger = get_logger(__name__)


class AppState:
    """Application state shared by MCP tools."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.sweeper: Optional[LedgerSweepScheduler] = None

    def init_sweeper(self) -> None:
        """Schedule the ledger sweep if it is enabled and an index is configured."""
        if not (self.settings.sweep.enabled and self.settings.index.index_name):
            self.sweeper = None
            return

        factory = make_session_factory(get_engine(self.settings.database.url))

        def _resolved(xids: List[int]) -> List[int]:
            with session_scope(factory) as session:
                return resolved_xids(session, xids)

        client = SearchIndexClient(self.settings.index)
        self.sweeper = LedgerSweepScheduler()
        self.sweeper.schedule_sweep(
            client.ledger,
            _resolved,
            interval=timedelta(minutes=self.settings.sweep.interval_minutes),
        )


# Global state and server instance
_state: Optional[AppState] = None


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    # AsyncIOScheduler needs the server's running loop
    sweeper = _state.sweeper if _state is not None else None
    if sweeper is not None:
        sweeper.start()
        logger.info("Ledger sweep started")
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.shutdown(wait=False)


mcp = FastMCP("searchsync MCP Server", lifespan=_lifespan)


# ----- Tools -----

@mcp.tool
def health() -> str:
    """Simple health check tool."""
    return "ok"


# ----- Entrypoint -----

def main() -> None:
    """Initialize state and run the MCP server."""
    global _state
    settings = load_settings()
    configure_logging(json_output=settings.app.json_logs, level=settings.app.log_level)
    _state = AppState(settings)
    _state.init_sweeper()
    # Register tools
    register_index_tools(mcp, get_state=lambda: _state)
    # Choose transport based on configuration: stdio (default), http, or sse
    transport = settings.app.transport
    if transport in ("http", "sse"):
        mcp.run(transport=transport, host=settings.app.host, port=settings.app.port)
    else:
        mcp.run()


if __name__ == "__main__":  # pragma: no cover
    main()
