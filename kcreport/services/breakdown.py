from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .metrics import Row, count_by, field
from .windows import MONTH, within


def build_breakdown(
    owners: Sequence[Row],
    owned: Mapping[str, Tuple[Sequence[Row], str]],
    recent: Optional[Mapping[str, Tuple[Sequence[Row], str, Callable[[Row], bool]]]] = None,
    owner_key: str = 'id',
) -> List[Dict[str, Any]]:
    """Per-owner counts across sibling collections sharing a foreign key.

    ``owned`` maps an output name to ``(rows, foreign_key)``; ``recent`` maps an
    output name to ``(rows, foreign_key, predicate)``. Every owner gets an
    entry, zero counts included.
    """
    totals = {name: count_by(rows, _str_key(fk)) for name, (rows, fk) in owned.items()}
    windowed = {name: count_by(rows, _str_key(fk), pred)
                for name, (rows, fk, pred) in (recent or {}).items()}
    out: List[Dict[str, Any]] = []
    for owner in owners:
        key = str(owner.get(owner_key))
        entry: Dict[str, Any] = {'id': owner.get(owner_key)}
        for name, counts in list(totals.items()) + list(windowed.items()):
            entry[name] = counts.get(key, 0)
        out.append(entry)
    return out


def _str_key(fk: str) -> Callable[[Row], Any]:
    get = field(fk)

    def _key(row: Row) -> Any:
        v = get(row)
        return str(v) if v is not None else None
    return _key


def doctor_activity(doctors: Sequence[Row], patients: Sequence[Row], reports: Sequence[Row],
                    now: Optional[dt.datetime] = None) -> List[Dict[str, Any]]:
    in_month = within(field('reportdate'), MONTH, now)
    counts = build_breakdown(
        doctors,
        owned={'patientsCount': (patients, 'doctorid'), 'totalReports': (reports, 'doctorid')},
        recent={'recentReports': (reports, 'doctorid', in_month)},
    )
    out = []
    for doctor, entry in zip(doctors, counts):
        out.append({
            'id': doctor.get('id'),
            'name': doctor.get('name') or 'Unknown Doctor',
            'email': doctor.get('email') or 'No email',
            'patientsCount': entry['patientsCount'],
            'totalReports': entry['totalReports'],
            'recentReports': entry['recentReports'],
            'isActive': entry['recentReports'] > 0,
        })
    return out
