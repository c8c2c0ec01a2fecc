"""Mutation records and their ``_bulk`` wire encoding.

Every row-level event (insert, update, delete, vacuum) becomes one
`MutationRecord`: an action line plus a document or script line in the
newline-delimited ``_bulk`` format. Everything except plain ``index``
operations is expressed as a scripted update whose script compares a
stored visibility field against an expected value and degrades to
``ctx.op='none'`` when the comparison fails. That makes concurrently
dispatched batches safe to apply in any order on the remote side.

The byte layout below is part of the wire contract with existing indices
and must not change.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from searchsync.locator import ItemPointer

#: id of the single remote document holding in-progress/aborted xids
LEDGER_DOC_ID = "zdb_aborted_xids"

UPDATE_CMAX_SCRIPT = "ctx._source.zdb_cmax=params.CMAX;ctx._source.zdb_xmax=params.XMAX;"
DELETE_BY_XMIN_SCRIPT = (
    "if (ctx._source.zdb_xmin == params.EXPECTED_XMIN) {"
    "   ctx.op='delete';"
    "} else {"
    "   ctx.op='none';"
    "}"
)
DELETE_BY_XMAX_SCRIPT = (
    "if (ctx._source.zdb_xmax == params.EXPECTED_XMAX) {"
    "   ctx.op='delete';"
    "} else {"
    "   ctx.op='none';"
    "}"
)
VACUUM_XMAX_SCRIPT = (
    "if (ctx._source.zdb_xmax != params.EXPECTED_XMAX) {"
    "   ctx.op='none';"
    "} else {"
    "   ctx._source.zdb_xmax=null;"
    "}"
)
LEDGER_ADD_SCRIPT = (
    "if (!ctx._source.zdb_aborted_xids.contains(params.XID)) {"
    "   ctx._source.zdb_aborted_xids.add(params.XID);"
    "} else {"
    "   ctx.op='none';"
    "}"
)
LEDGER_REMOVE_SCRIPT = "ctx._source.zdb_aborted_xids.removeAll([params.XID]);"
LEDGER_REMOVE_MANY_SCRIPT = "ctx._source.zdb_aborted_xids.removeAll(params.XIDS);"


class MutationKind(str, Enum):
    INDEX = "index"
    UPDATE = "update"
    DELETE_BY_XMIN = "delete_by_xmin"
    DELETE_BY_XMAX = "delete_by_xmax"
    VACUUM_XMAX = "vacuum_xmax"
    LEDGER_ADD = "ledger_add"
    LEDGER_REMOVE = "ledger_remove"

    @property
    def is_delete(self) -> bool:
        return self in (MutationKind.DELETE_BY_XMIN, MutationKind.DELETE_BY_XMAX)

    @property
    def is_ledger(self) -> bool:
        return self in (MutationKind.LEDGER_ADD, MutationKind.LEDGER_REMOVE)


@dataclass(frozen=True, slots=True)
class Visibility:
    """MVCC stamp of one row version.

    Attributes
    ----------
    xmin: int
        Creating transaction id (64-bit, epoch-qualified).
    cmin: int
        Creating command id within ``xmin``.
    xmax: int | None
        Deleting transaction id, when the version has been superseded.
    cmax: int | None
        Deleting command id within ``xmax``.
    """

    xmin: int = 0
    cmin: int = 0
    xmax: Optional[int] = None
    cmax: Optional[int] = None


@dataclass(frozen=True, slots=True)
class MutationRecord:
    """One pending change to one remote document."""

    kind: MutationKind
    doc_id: Optional[str] = None
    locator: Optional[ItemPointer] = None
    visibility: Visibility = Visibility()
    payload: Optional[bytes] = None
    xid: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind is MutationKind.INDEX:
            if self.payload is None:
                raise ValueError("index mutations require a payload")
        elif self.payload is not None:
            raise ValueError(f"{self.kind.value} mutations never carry a payload")

        if self.kind.is_ledger:
            if self.xid is None:
                raise ValueError(f"{self.kind.value} requires an xid")
        elif self.kind is not MutationKind.INDEX and self.target_id is None:
            raise ValueError(f"{self.kind.value} requires a locator or document id")

        if self.kind is MutationKind.UPDATE and (
            self.visibility.xmax is None or self.visibility.cmax is None
        ):
            raise ValueError("update mutations require xmax and cmax")
        if self.kind in (MutationKind.DELETE_BY_XMAX, MutationKind.VACUUM_XMAX) and (
            self.visibility.xmax is None
        ):
            raise ValueError(f"{self.kind.value} requires an expected xmax")

    @property
    def target_id(self) -> Optional[str]:
        if self.kind.is_ledger:
            return LEDGER_DOC_ID
        if self.locator is not None:
            return str(self.locator.to_u64())
        return self.doc_id

    def to_bulk_lines(self, *, normalize_line_breaks: bool = False) -> bytes:
        """Render the action line and body line, each newline-terminated."""
        if self.kind is MutationKind.INDEX:
            return self._index_lines(normalize_line_breaks)
        action, body = self._update_lines()
        return f"{action}\n{body}\n".encode("utf-8")

    def update_body(self) -> str:
        """The scripted ``_update`` request body, for direct (non-bulk) use."""
        if self.kind is MutationKind.INDEX:
            raise ValueError("index mutations have no update body")
        return self._update_lines()[1]

    def _update_lines(self) -> Tuple[str, str]:
        v = self.visibility
        if self.kind is MutationKind.UPDATE:
            action = _action("update", self.target_id, retry_on_conflict=1)
            body = script_body(UPDATE_CMAX_SCRIPT, f'{{"CMAX":{v.cmax},"XMAX":{v.xmax}}}')
        elif self.kind is MutationKind.DELETE_BY_XMIN:
            action = _action("update", self.target_id)
            body = script_body(DELETE_BY_XMIN_SCRIPT, f'{{"EXPECTED_XMIN":{v.xmin}}}')
        elif self.kind is MutationKind.DELETE_BY_XMAX:
            action = _action("update", self.target_id)
            body = script_body(DELETE_BY_XMAX_SCRIPT, f'{{"EXPECTED_XMAX":{v.xmax}}}')
        elif self.kind is MutationKind.VACUUM_XMAX:
            action = _action("update", self.target_id, retry_on_conflict=0)
            body = script_body(VACUUM_XMAX_SCRIPT, f'{{"EXPECTED_XMAX":{v.xmax}}}')
        elif self.kind is MutationKind.LEDGER_ADD:
            action = _action("update", LEDGER_DOC_ID, retry_on_conflict=128)
            body = (
                f'{{"upsert":{{"{LEDGER_DOC_ID}":[{self.xid}]}},'
                + script_body(LEDGER_ADD_SCRIPT, f'{{"XID":{self.xid}}}')[1:]
            )
        else:
            action = _action("update", LEDGER_DOC_ID, retry_on_conflict=128)
            body = (
                f'{{"upsert":{{"{LEDGER_DOC_ID}":[]}},'
                + script_body(LEDGER_REMOVE_SCRIPT, f'{{"XID":{self.xid}}}')[1:]
            )
        return action, body

    def _index_lines(self, normalize_line_breaks: bool) -> bytes:
        assert self.payload is not None
        doc = self.payload
        if normalize_line_breaks:
            doc = replace_line_breaks(doc)
        doc = strip_json_ending(doc)

        fields = []
        if self.locator is not None:
            fields.append(f'"zdb_ctid":{self.locator.to_u64()}')
        # without an id the cluster assigns one
        action = _action("index", self.target_id) + "\n"

        v = self.visibility
        fields.append(f'"zdb_cmin":{v.cmin}')
        if v.cmax is not None:
            fields.append(f'"zdb_cmax":{v.cmax}')
        fields.append(f'"zdb_xmin":{v.xmin}')
        if v.xmax is not None:
            fields.append(f'"zdb_xmax":{v.xmax}')

        # an empty object leaves nothing to separate from
        sep = "" if doc.rstrip().endswith(b"{") else ","
        tail = sep + ",".join(fields) + "}\n"
        return action.encode("utf-8") + doc + tail.encode("utf-8")


def _action(op: str, doc_id: Optional[str], *, retry_on_conflict: Optional[int] = None) -> str:
    meta = []
    if doc_id is not None:
        meta.append(f'"_id":{json.dumps(doc_id)}')
    if retry_on_conflict is not None:
        meta.append(f'"_retry_on_conflict":{retry_on_conflict}')
    return f'{{"{op}":{{{",".join(meta)}}}}}'


def script_body(source: str, params: str) -> str:
    return f'{{"script":{{"source":"{source}","lang":"painless","params":{params}}}}}'


def replace_line_breaks(doc: bytes) -> bytes:
    """Replace CR/LF with spaces so the document fits on one ``_bulk`` line."""
    return doc.replace(b"\r", b" ").replace(b"\n", b" ")


def strip_json_ending(doc: bytes) -> bytes:
    """Drop trailing whitespace and the closing brace of a JSON object."""
    doc = doc.rstrip()
    if not doc.endswith(b"}"):
        raise ValueError("document payload must be a JSON object")
    return doc[:-1]


def encode(
    kind: MutationKind,
    *,
    locator: Optional[ItemPointer] = None,
    doc_id: Optional[str] = None,
    payload: Optional[bytes] = None,
    visibility: Optional[Visibility] = None,
    xid: Optional[int] = None,
) -> MutationRecord:
    """Build a validated `MutationRecord` for one row event."""
    return MutationRecord(
        kind=kind,
        doc_id=doc_id,
        locator=locator,
        visibility=visibility or Visibility(),
        payload=payload,
        xid=xid,
    )


def index_row(
    locator: Optional[ItemPointer],
    payload: bytes,
    *,
    xmin: int,
    cmin: int,
    xmax: Optional[int] = None,
    cmax: Optional[int] = None,
    doc_id: Optional[str] = None,
) -> MutationRecord:
    return encode(
        MutationKind.INDEX,
        locator=locator,
        doc_id=doc_id,
        payload=payload,
        visibility=Visibility(xmin=xmin, cmin=cmin, xmax=xmax, cmax=cmax),
    )


def update_row(
    *, locator: Optional[ItemPointer] = None, doc_id: Optional[str] = None, cmax: int, xmax: int
) -> MutationRecord:
    return encode(
        MutationKind.UPDATE,
        locator=locator,
        doc_id=doc_id,
        visibility=Visibility(xmax=xmax, cmax=cmax),
    )


def delete_by_xmin(doc_id: str, xmin: int) -> MutationRecord:
    return encode(MutationKind.DELETE_BY_XMIN, doc_id=doc_id, visibility=Visibility(xmin=xmin))


def delete_by_xmax(doc_id: str, xmax: int) -> MutationRecord:
    return encode(MutationKind.DELETE_BY_XMAX, doc_id=doc_id, visibility=Visibility(xmax=xmax))


def vacuum_xmax(doc_id: str, expected_xmax: int) -> MutationRecord:
    return encode(
        MutationKind.VACUUM_XMAX, doc_id=doc_id, visibility=Visibility(xmax=expected_xmax)
    )


def ledger_add(xid: int) -> MutationRecord:
    return encode(MutationKind.LEDGER_ADD, xid=xid)


def ledger_remove(xid: int) -> MutationRecord:
    return encode(MutationKind.LEDGER_REMOVE, xid=xid)
