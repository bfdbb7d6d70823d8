from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from ..errors import UpstreamStoreError


FILTER_OPS = ('eq', 'neq', 'lt', 'in', 'is_not')


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"unsupported filter op '{self.op}'")


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False


def eq(column: str, value: Any) -> Filter:
    return Filter(column, 'eq', value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, 'neq', value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, 'lt', value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, 'in', tuple(values))


def is_not(column: str, value: Optional[bool]) -> Filter:
    """SQL ``IS NOT``: unlike ``neq``, a NULL column matches ``is_not(col, True)``."""
    if not (value is None or isinstance(value, bool)):
        raise ValueError('is_not compares against True, False or None')
    return Filter(column, 'is_not', value)


class DataGateway(Protocol):
    """Abstract interface for relational store access."""

    def fetch_many(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
        columns: str = '*',
    ) -> List[Dict[str, Any]]:
        """Return rows of ``table`` matching every filter (logical AND)."""
        ...

    def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...

    def upsert(self, table: str, rows: List[Dict[str, Any]], *, on_conflict: Sequence[str]) -> List[Dict[str, Any]]:
        """Insert rows, overwriting existing rows that collide on ``on_conflict`` columns."""
        ...

    def update(self, table: str, values: Dict[str, Any], filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        ...

    def delete(self, table: str, filters: Sequence[Filter]) -> int:
        ...


class GatewayError(UpstreamStoreError):
    pass
