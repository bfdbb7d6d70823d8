"""Windowed counts and set-based activity detection over fetched rows.

Every "active" or per-parent statistic goes through ``distinct_foreign_keys``
or ``group_by`` so that all counts derive from the same in-memory join.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Set

Row = Dict[str, Any]
Accessor = Callable[[Row], Any]
Predicate = Callable[[Row], bool]


def field(name: str) -> Accessor:
    return lambda row: row.get(name) if isinstance(row, dict) else None


def _accessor(key: Any) -> Accessor:
    return field(key) if isinstance(key, str) else key


def count(rows: Optional[Iterable[Row]]) -> int:
    return sum(1 for _ in (rows or ()))


def count_where(rows: Optional[Iterable[Row]], predicate: Predicate) -> int:
    return sum(1 for r in (rows or ()) if predicate(r))


def distinct_foreign_keys(rows: Optional[Iterable[Row]], key: Any,
                          predicate: Optional[Predicate] = None) -> Set[Hashable]:
    """Distinct parent ids referenced by ``rows``, optionally pre-filtered.

    Rows with a missing key are ignored, so the result never outgrows the input.
    """
    get = _accessor(key)
    out: Set[Hashable] = set()
    for r in rows or ():
        if predicate is not None and not predicate(r):
            continue
        k = get(r)
        if k is not None:
            out.add(k)
    return out


def followup_gap(all_parent_ids: Set[Hashable], recent_parent_ids: Set[Hashable]) -> int:
    """Parents with history but nothing in the recent window.

    Callers must build ``recent_parent_ids`` as a window-filtered subset of the
    same rows that produced ``all_parent_ids``.
    """
    return len(all_parent_ids) - len(recent_parent_ids)


def group_by(rows: Optional[Iterable[Row]], key: Any) -> Dict[Hashable, List[Row]]:
    get = _accessor(key)
    out: Dict[Hashable, List[Row]] = {}
    for r in rows or ():
        k = get(r)
        if k is None:
            continue
        out.setdefault(k, []).append(r)
    return out


def count_by(rows: Optional[Iterable[Row]], key: Any,
             predicate: Optional[Predicate] = None) -> Dict[Hashable, int]:
    out: Dict[Hashable, int] = {}
    for k, members in group_by(rows, key).items():
        n = count_where(members, predicate) if predicate is not None else len(members)
        out[k] = n
    return out
