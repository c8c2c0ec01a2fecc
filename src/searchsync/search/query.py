"""Caller-level search queries and their wire DSL.

Accepted text forms::

    beer                         -> query_string, no limit
    42,beer                      -> query_string, limit 42
    -1,beer / ,beer              -> query_string, no limit
    {"term":{"subject":"beer"}}  -> raw query DSL
    42,{"term":{...}}            -> raw query DSL, limit 42
    "" / None                    -> match_all
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

_LIMIT_PREFIX = re.compile(r"^\s*(-?\d*)\s*,(.*)$", re.DOTALL)

MATCH_ALL: Dict[str, Any] = {"match_all": {}}


@dataclass(frozen=True, slots=True)
class SearchQuery:
    """A query DSL object plus an optional result limit (0 means unlimited)."""

    dsl: Dict[str, Any] = field(default_factory=lambda: dict(MATCH_ALL))
    limit: int = 0

    @classmethod
    def parse(cls, text: Optional[str]) -> "SearchQuery":
        if text is None:
            return cls()
        limit = 0
        body = text
        m = _LIMIT_PREFIX.match(text)
        if m:
            limit = max(int(m.group(1)), 0) if m.group(1) not in ("", "-") else 0
            body = m.group(2)
        body = body.strip()
        if not body:
            return cls(limit=limit)
        if body.startswith("{"):
            try:
                dsl = json.loads(body)
            except json.JSONDecodeError as e:
                raise ValueError(f"invalid query DSL: {e}") from e
            if not isinstance(dsl, dict):
                raise ValueError("query DSL must be a JSON object")
            return cls(dsl=dsl, limit=limit)
        return cls(dsl={"query_string": {"query": body}}, limit=limit)

    @classmethod
    def coerce(cls, query: Union["SearchQuery", Mapping[str, Any], str, None]) -> "SearchQuery":
        if isinstance(query, SearchQuery):
            return query
        if isinstance(query, Mapping):
            return cls(dsl=dict(query))
        return cls.parse(query)

    def to_dsl(self) -> str:
        return json.dumps(self.dsl, separators=(",", ":"))
