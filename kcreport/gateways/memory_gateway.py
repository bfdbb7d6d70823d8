from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .data_gateway import DataGateway, Filter, GatewayError, Order
from ..services.windows import parse_timestamp


def _same(a: Any, b: Any) -> bool:
    if a == b:
        return True
    if a is None or b is None or isinstance(a, bool) or isinstance(b, bool):
        return False
    return str(a) == str(b)


def _less_than(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a < b
    ta, tb = parse_timestamp(a), parse_timestamp(b)
    if ta is not None and tb is not None:
        return ta < tb
    return str(a) < str(b)


def _matches(row: Dict[str, Any], flt: Filter) -> bool:
    val = row.get(flt.column)
    if flt.op == 'eq':
        return _same(val, flt.value)
    if flt.op == 'neq':
        # SQL semantics: NULL <> x is not true
        return val is not None and not _same(val, flt.value)
    if flt.op == 'lt':
        return _less_than(val, flt.value)
    if flt.op == 'in':
        return any(_same(val, v) for v in flt.value)
    if flt.op == 'is_not':
        if flt.value is None:
            return val is not None
        return val is None or not _same(val, flt.value)
    return False


def _sort_value(val: Any) -> Tuple[int, Any]:
    # (kind, value): values of different kinds never compare with each other
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        return (1, val)
    ts = parse_timestamp(val)
    if ts is not None:
        return (0, ts)
    return (2, str(val))


class MemoryGateway(DataGateway):
    """In-process table store with the same filter semantics as the REST gateway.

    Serves demo mode and tests. Rows are copied on the way in and out so callers
    can decorate fetched rows freely.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._lock = threading.RLock()
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        for name, rows in (tables or {}).items():
            self._tables[name] = [dict(r) for r in rows]

    @classmethod
    def from_file(cls, path: str | Path) -> 'MemoryGateway':
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise GatewayError(f"Seed file '{path}' could not be loaded: {e}")
        if not isinstance(data, dict):
            raise GatewayError(f"Seed file '{path}' must hold an object of tables")
        return cls(data)

    def table(self, name: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._tables.get(name, []))

    def _rows(self, table: str, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        rows = self._tables.get(table, [])
        return [r for r in rows if all(_matches(r, f) for f in filters)]

    @staticmethod
    def _project(row: Dict[str, Any], columns: str) -> Dict[str, Any]:
        if not columns or columns.strip() == '*':
            return copy.deepcopy(row)
        wanted = [c.strip() for c in columns.split(',') if c.strip()]
        return {c: copy.deepcopy(row.get(c)) for c in wanted}

    def fetch_many(self, table, filters=(), *, order=None, limit=None, columns='*'):
        with self._lock:
            rows = self._rows(table, filters)
            if order is not None:
                present = [r for r in rows if r.get(order.column) is not None]
                missing = [r for r in rows if r.get(order.column) is None]
                present.sort(key=lambda r: _sort_value(r.get(order.column)), reverse=order.descending)
                rows = present + missing
            if limit is not None:
                rows = rows[:max(int(limit), 0)]
            return [self._project(r, columns) for r in rows]

    def _next_id(self, table: str) -> int:
        ids = [r.get('id') for r in self._tables.get(table, [])]
        numeric = [i for i in ids if isinstance(i, int) and not isinstance(i, bool)]
        return (max(numeric) if numeric else 0) + 1

    def _new_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(row)
        if stored.get('id') is None:
            stored['id'] = self._next_id(table)
        stored.setdefault('createdat', datetime.now(timezone.utc).isoformat())
        self._tables.setdefault(table, []).append(stored)
        return stored

    def insert(self, table, rows):
        with self._lock:
            return [copy.deepcopy(self._new_row(table, r)) for r in rows]

    def upsert(self, table, rows, *, on_conflict):
        keys: Iterable[str] = tuple(on_conflict)
        out: List[Dict[str, Any]] = []
        with self._lock:
            for row in rows:
                existing = None
                for cand in self._tables.get(table, []):
                    if all(_same(cand.get(k), row.get(k)) for k in keys):
                        existing = cand
                        break
                if existing is None:
                    existing = self._new_row(table, row)
                else:
                    existing.update({k: v for k, v in row.items() if k != 'id'})
                out.append(copy.deepcopy(existing))
        return out

    def update(self, table, values, filters):
        with self._lock:
            hit = self._rows(table, filters)
            for r in hit:
                r.update(values)
            return copy.deepcopy(hit)

    def delete(self, table, filters):
        with self._lock:
            doomed = self._rows(table, filters)
            if not doomed:
                return 0
            ids = {id(r) for r in doomed}
            self._tables[table] = [r for r in self._tables.get(table, []) if id(r) not in ids]
            return len(doomed)
