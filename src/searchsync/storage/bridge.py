"""Row-store side of index synchronization.

Reads heap rows together with their physical locator and MVCC stamp, and
answers transaction-status questions for the ledger sweep.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Union

from sqlalchemy import JSON, MetaData, Table, bindparam, text
from sqlalchemy.dialects.postgresql import ARRAY, BIGINT, JSONB
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from searchsync.exceptions import StorageError
from searchsync.locator import ItemPointer

# xids below this are bootstrap/frozen and carry no epoch
FIRST_NORMAL_XID = 3

HEAP_ROW_FETCH_SIZE = 1000


@dataclass(frozen=True, slots=True)
class HeapRow:
    """One row version as stored in the heap."""

    locator: ItemPointer
    xmin: int
    cmin: int
    xmax: Optional[int]
    cmax: Optional[int]
    payload: bytes


def epoch_qualify(xid: int, current: int) -> int:
    """Extend a 32-bit xid to 64 bits using the epoch of ``current``.

    An xid numerically above the current one was assigned before the last
    wraparound and belongs to the previous epoch.
    """
    if xid < FIRST_NORMAL_XID:
        return xid
    epoch = current >> 32
    if xid > (current & 0xFFFFFFFF):
        epoch -= 1
    return (epoch << 32) | xid


def contains_json(table: Table) -> bool:
    """True if any column is ``json`` (not ``jsonb``).

    ``json`` values keep their original text, line breaks included, so
    payloads built from such rows need flattening before they go on a
    ``_bulk`` line.
    """
    return any(
        isinstance(col.type, JSON) and not isinstance(col.type, JSONB) for col in table.columns
    )


def reflect_table(bind: Union[Engine, Connection], name: str, *, schema: Optional[str] = None) -> Table:
    try:
        return Table(name, MetaData(), schema=schema, autoload_with=bind)
    except SQLAlchemyError as e:
        raise StorageError(f"Unable to reflect table {name}: {e}") from e


def _qualified_name(session: Session, table: Table) -> str:
    preparer = session.get_bind().dialect.identifier_preparer
    return preparer.format_table(table)


def to_heap_row(record: Sequence[Any], current_xid: int) -> HeapRow:
    """Build a `HeapRow` from ``(ctid, xmin, cmin, xmax, cmax, row_json)`` text columns."""
    ctid, xmin, cmin, xmax, cmax, row_json = record
    raw_xmax = int(xmax)
    payload = row_json if isinstance(row_json, bytes) else str(row_json).encode("utf-8")
    return HeapRow(
        locator=ItemPointer.parse(ctid),
        xmin=epoch_qualify(int(xmin), current_xid),
        cmin=int(cmin),
        xmax=epoch_qualify(raw_xmax, current_xid) if raw_xmax else None,
        cmax=int(cmax) if raw_xmax else None,
        payload=payload,
    )


def iter_heap_rows(session: Session, table: Table) -> Iterator[HeapRow]:
    """Stream every visible row of ``table`` with its locator and MVCC stamp."""
    current = current_transaction_id(session)
    stmt = text(
        "SELECT t.ctid::text, t.xmin::text, t.cmin::text, t.xmax::text, t.cmax::text, "
        f"row_to_json(t)::text FROM {_qualified_name(session, table)} t"
    )
    try:
        result = session.execute(stmt, execution_options={"yield_per": HEAP_ROW_FETCH_SIZE})
        for record in result:
            yield to_heap_row(tuple(record), current)
    except SQLAlchemyError as e:
        raise StorageError(f"Unable to scan {table.name}: {e}") from e


def current_transaction_id(session: Session) -> int:
    """The 64-bit id of the session's transaction, assigning one if needed."""
    try:
        return int(session.execute(text("SELECT txid_current()")).scalar_one())
    except SQLAlchemyError as e:
        raise StorageError(str(e)) from e


def transaction_status(session: Session, xid: int) -> Optional[str]:
    """``committed``, ``aborted``, ``in progress``, or None once the xid is too old to know."""
    try:
        return session.execute(
            text("SELECT txid_status(:xid)"), {"xid": int(xid)}
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        raise StorageError(str(e)) from e


def committed_xids(session: Session, xids: Iterable[int]) -> List[int]:
    """The subset of ``xids`` whose transactions committed."""
    ids = sorted(set(int(x) for x in xids))
    if not ids:
        return []
    stmt = text(
        "SELECT x FROM unnest(:xids) AS x WHERE txid_status(x) = 'committed' ORDER BY x"
    ).bindparams(bindparam("xids", type_=ARRAY(BIGINT)))
    try:
        return [int(x) for x in session.execute(stmt, {"xids": ids}).scalars()]
    except SQLAlchemyError as e:
        raise StorageError(str(e)) from e


def resolved_xids(session: Session, xids: Iterable[int]) -> List[int]:
    """The subset of ``xids`` that are no longer in progress.

    Aborted and committed xids are both resolved. So are xids too old for
    the commit log to remember, whose outcome no reader can depend on.
    """
    ids = sorted(set(int(x) for x in xids))
    if not ids:
        return []
    stmt = text(
        "SELECT x FROM unnest(:xids) AS x "
        "WHERE coalesce(txid_status(x), 'aborted') <> 'in progress' ORDER BY x"
    ).bindparams(bindparam("xids", type_=ARRAY(BIGINT)))
    try:
        return [int(x) for x in session.execute(stmt, {"xids": ids}).scalars()]
    except SQLAlchemyError as e:
        raise StorageError(str(e)) from e
