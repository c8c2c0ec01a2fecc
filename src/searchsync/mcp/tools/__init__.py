"""Tool registration modules for the searchsync MCP server."""

from .index import register_index_tools

__all__ = [
    "register_index_tools",
]
