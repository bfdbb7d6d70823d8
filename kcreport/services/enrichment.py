"""Relational enrichment over batched id-set lookups.

A relation chain is declared as a tree of ``RelationStep``s. Each step resolves
with a single ``fetch_many(table, [in_(target_key, ids)])`` for the whole batch
of source rows, so enrichment never issues one query per root row.

Sibling steps are independent: they are fetched on a thread pool and joined
before anything is attached to the shared source rows. A step's children are
resolved on that step's own fetched rows, strictly after it.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from ..errors import UpstreamStoreError
from ..gateways.data_gateway import DataGateway, Order, in_
from .metrics import Row, group_by

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelationStep:
    name: str
    table: str
    source_key: str
    target_key: str = 'id'
    many: bool = False
    columns: str = '*'
    order: Optional[Order] = None
    children: Tuple['RelationStep', ...] = ()


def normalize_to_one(value: Any) -> Optional[Row]:
    """Collapse a to-one relation into an object or None.

    Stores hand back to-one relations either as a bare object or as a
    singleton collection; both become the object itself.
    """
    if isinstance(value, dict):
        return value
    if isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, dict):
                return item
        return None
    return None


def collect_keys(rows: Sequence[Row], key: str) -> List[Hashable]:
    seen = set()
    out: List[Hashable] = []
    for r in rows:
        k = r.get(key)
        if k is None or k in seen:
            continue
        seen.add(k)
        out.append(k)
    return out


def index_by(rows: Sequence[Row], key: str) -> Dict[Hashable, Row]:
    out: Dict[Hashable, Row] = {}
    for k, members in group_by(rows, key).items():
        one = normalize_to_one(members)
        if one is not None:
            out[k] = one
    return out


def _lookup_key(value: Any) -> Hashable:
    # ids travel as ints from some tables and strings from others
    return str(value) if value is not None else None


class EnrichmentWalker:
    def __init__(self, gateway: DataGateway, max_workers: int = 4):
        self.gateway = gateway
        self.max_workers = max(1, int(max_workers))
        self.degraded: List[str] = []
        self._lock = threading.Lock()

    def record_degraded(self, name: str, table: str, exc: Exception) -> None:
        logger.warning('enrichment hop degraded step=%s table=%s error=%s', name, table, exc)
        with self._lock:
            self.degraded.append(name)

    def fetch_by_ids(self, step: RelationStep, ids: Sequence[Hashable]) -> List[Row]:
        if not ids:
            return []
        try:
            return self.gateway.fetch_many(step.table, [in_(step.target_key, ids)],
                                           order=step.order, columns=step.columns)
        except UpstreamStoreError as e:
            self.record_degraded(step.name, step.table, e)
            return []

    def _resolve_step(self, rows: Sequence[Row], step: RelationStep) -> Dict[Hashable, Any]:
        fetched = self.fetch_by_ids(step, collect_keys(rows, step.source_key))
        if step.children and fetched:
            self.resolve(fetched, step.children)
        grouped = group_by(fetched, lambda r: _lookup_key(r.get(step.target_key)))
        if step.many:
            return grouped
        return {k: normalize_to_one(v) for k, v in grouped.items()}

    def resolve(self, rows: Sequence[Row], steps: Sequence[RelationStep]) -> Sequence[Row]:
        """Attach every step's resolved data onto ``rows`` in place.

        Unresolvable keys attach None (to-one) or an empty list (fan-out).
        """
        if not rows or not steps:
            return rows
        if len(steps) == 1:
            lookups = [self._resolve_step(rows, steps[0])]
        else:
            workers = min(self.max_workers, len(steps))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(self._resolve_step, rows, s) for s in steps]
                lookups = [f.result() for f in futures]
        for step, lookup in zip(steps, lookups):
            for r in rows:
                hit = lookup.get(_lookup_key(r.get(step.source_key)))
                if step.many:
                    r[step.name] = list(hit or [])
                else:
                    r[step.name] = normalize_to_one(hit)
        return rows


def fetch_parallel(gateway: DataGateway, requests: Dict[str, Dict[str, Any]],
                   max_workers: int = 4) -> Dict[str, List[Row]]:
    """Run independent root fetches concurrently and wait for all of them.

    ``requests`` maps a result name to ``fetch_many`` keyword arguments
    (``table`` included). A store failure in any fetch propagates.
    """
    if not requests:
        return {}
    names = list(requests)
    workers = max(1, min(max_workers, len(names)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {}
        for name in names:
            kwargs = dict(requests[name])
            table = kwargs.pop('table')
            filters = kwargs.pop('filters', ())
            futures[name] = pool.submit(gateway.fetch_many, table, filters, **kwargs)
        return {name: futures[name].result() for name in names}
