from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..errors import (
    AccessDeniedError,
    AuthenticationError,
    NotFoundError,
    UpstreamStoreError,
    ValidationError,
)
from ..gateways.data_gateway import DataGateway, eq


@dataclass(frozen=True)
class Caller:
    """Identity already resolved by the surrounding request layer."""
    id: str
    role: str


def same_id(a: Any, b: Any) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def require_value(value: Any, field: str, message: Optional[str] = None) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(message or f'{field} is required', field=field)
    return value.strip() if isinstance(value, str) else value


def require_role(caller: Optional[Caller], *roles: str) -> Caller:
    if caller is None or not caller.id:
        raise AuthenticationError()
    if roles and caller.role not in roles:
        raise AccessDeniedError(f"Forbidden: {' or '.join(roles)} access required",
                                details={'role': caller.role})
    return caller


def _fetch_one(gateway: DataGateway, table: str, row_id: Any, columns: str) -> Optional[Dict[str, Any]]:
    try:
        rows = gateway.fetch_many(table, [eq('id', row_id)], limit=1, columns=columns)
    except UpstreamStoreError as e:
        raise UpstreamStoreError(f'{table} lookup failed: {e.message}', table=table)
    return rows[0] if rows else None


def load_owned_patient(gateway: DataGateway, caller: Caller, patient_id: Any,
                       columns: str = '*') -> Dict[str, Any]:
    patient = _fetch_one(gateway, 'Patient', patient_id, columns)
    if patient is None:
        raise NotFoundError('Patient not found', resource='Patient')
    if not same_id(patient.get('doctorid'), caller.id):
        raise AccessDeniedError('Patient belongs to a different doctor')
    return patient


def load_owned_report(gateway: DataGateway, caller: Caller, report_id: Any,
                      columns: str = '*') -> Dict[str, Any]:
    """Return the report once its patient is confirmed to belong to the caller."""
    report = _fetch_one(gateway, 'LabReport', report_id, columns)
    if report is None:
        raise NotFoundError('Lab report not found', resource='LabReport')
    patient = _fetch_one(gateway, 'Patient', report.get('patientid'), 'id,doctorid')
    if patient is None or not same_id(patient.get('doctorid'), caller.id):
        raise AccessDeniedError()
    return report
