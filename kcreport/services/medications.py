from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import UpstreamStoreError, ValidationError
from ..gateways.data_gateway import DataGateway, Order, eq, is_not, lt
from .access import Caller, load_owned_report, require_value
from .enrichment import EnrichmentWalker, RelationStep
from .windows import utcnow

logger = logging.getLogger(__name__)

PRESCRIPTION_COLUMNS = ('id,reportid,medicationtypeid,dosage,createdat,'
                        'isoutdated,outdatedat,outdatedreason,outdatedby')

MEDICATION_TYPE = RelationStep('MedicationType', 'MedicationType', source_key='medicationtypeid',
                               columns='id,name,unit,groupname')


def is_outdated(row: Dict[str, Any]) -> bool:
    """A missing or NULL flag means active, matching the ``is_not('isoutdated', True)`` writes."""
    flag = row.get('isoutdated')
    if isinstance(flag, str):
        return flag.strip().lower() in ('1', 'true', 't', 'yes')
    return bool(flag)


def partition_prescriptions(rows: Sequence[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split prescriptions into (active, outdated); every row lands in exactly one."""
    active: List[Dict[str, Any]] = []
    outdated: List[Dict[str, Any]] = []
    for r in rows:
        (outdated if is_outdated(r) else active).append(r)
    return active, outdated


def parse_dosage(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if num != num:  # NaN
        return None
    return int(num) if num.is_integer() else num


def _excluded(n: int) -> str:
    return f' ({n} outdated excluded)' if n else ''


class MedicationService:
    def __init__(self, gateway: DataGateway, max_workers: int = 4):
        self.gateway = gateway
        self.max_workers = max_workers

    def _prescriptions(self, report_id: Any) -> List[Dict[str, Any]]:
        try:
            rows = self.gateway.fetch_many(
                'MedicationPrescription', [eq('reportid', report_id)],
                order=Order('createdat', descending=True), columns=PRESCRIPTION_COLUMNS,
            )
        except UpstreamStoreError as e:
            raise UpstreamStoreError(f'Failed to fetch medications: {e.message}', table='MedicationPrescription')
        EnrichmentWalker(self.gateway, self.max_workers).resolve(rows, (MEDICATION_TYPE,))
        return rows

    def prescription_views(self, caller: Caller, report_id: Any) -> Dict[str, Any]:
        report_id = require_value(report_id, 'reportId', 'Report ID is required')
        load_owned_report(self.gateway, caller, report_id, columns='id,patientid')
        rows = self._prescriptions(report_id)
        active, outdated = partition_prescriptions(rows)
        return {
            'reportId': report_id,
            'total': len(rows),
            'active': {'count': len(active), 'medications': active},
            'outdated': {'count': len(outdated), 'medications': outdated},
        }

    def saved_medications(self, caller: Caller, report_id: Any) -> Dict[str, Any]:
        report_id = require_value(report_id, 'labReportId', 'Missing or invalid lab report ID')
        load_owned_report(self.gateway, caller, report_id, columns='id,patientid')
        active, outdated = partition_prescriptions(self._prescriptions(report_id))
        medications = []
        for p in active:
            mt = p.get('MedicationType')
            if mt is None:
                continue
            medications.append({
                'id': mt.get('id'),
                'name': mt.get('name'),
                'unit': mt.get('unit'),
                'groupname': mt.get('groupname'),
                'dosage': parse_dosage(p.get('dosage')),
            })
        logger.info('saved medications report=%s active=%d outdated=%d', report_id, len(active), len(outdated))
        return {
            'medications': medications,
            'totalActive': len(active),
            'totalOutdated': len(outdated),
            'message': f'Found {len(medications)} active saved medications{_excluded(len(outdated))}',
        }

    def previous_medications(self, caller: Caller, report_id: Any) -> Dict[str, Any]:
        """Active medications from the patient's visit just before ``report_id``."""
        report_id = require_value(report_id, 'currentLabReportId', 'Lab report ID is required')
        current = load_owned_report(self.gateway, caller, report_id, columns='id,patientid,reportdate')
        previous: List[Dict[str, Any]] = []
        # an undated report has no "earlier" visit
        if current.get('reportdate') is not None:
            try:
                previous = self.gateway.fetch_many(
                    'LabReport',
                    [eq('patientid', current.get('patientid')), lt('reportdate', current.get('reportdate'))],
                    order=Order('reportdate', descending=True), limit=1, columns='id,reportdate',
                )
            except UpstreamStoreError as e:
                raise UpstreamStoreError(f'Failed to fetch previous reports: {e.message}', table='LabReport')
        if not previous:
            return {
                'medications': [],
                'previousReport': None,
                'message': 'No previous medications found for this patient',
            }

        prior = previous[0]
        active, outdated = partition_prescriptions(self._prescriptions(prior.get('id')))
        medications = [
            {
                'id': p.get('id'),
                'medicationtypeid': p.get('medicationtypeid'),
                'dosage': p.get('dosage'),
                'createdat': p.get('createdat'),
                'MedicationType': p.get('MedicationType'),
            }
            for p in active if p.get('MedicationType') is not None
        ]
        return {
            'medications': medications,
            'previousReport': {'id': prior.get('id'), 'reportdate': prior.get('reportdate')},
            'outdatedInfo': {
                'count': len(outdated),
                'medications': [
                    {'id': o.get('id'), 'outdatedat': o.get('outdatedat'), 'outdatedreason': o.get('outdatedreason')}
                    for o in outdated
                ],
                'hasOutdated': bool(outdated),
            },
            'message': f'Found {len(medications)} active medications from previous visit{_excluded(len(outdated))}',
        }

    def replace_prescriptions(self, caller: Caller, report_id: Any, medications: Any) -> Dict[str, Any]:
        """Replace the report's active prescriptions with the given set.

        Entries with a dosage of zero or less mean "not prescribed" and are
        dropped. Outdated prescriptions stay as history.
        """
        report_id = require_value(report_id, 'reportId', 'Missing reportId or medications')
        if not isinstance(medications, list):
            raise ValidationError('Missing reportId or medications', field='medications')
        inserts = []
        for i, m in enumerate(medications):
            if not isinstance(m, dict):
                raise ValidationError(f'Invalid medication at index {i}', field=f'medications[{i}]')
            dosage = parse_dosage(m.get('dosage'))
            if dosage is None or dosage <= 0:
                continue
            if m.get('id') is None:
                raise ValidationError(f'Invalid medication at index {i}: missing id', field=f'medications[{i}].id')
            inserts.append({'reportid': report_id, 'medicationtypeid': m['id'], 'dosage': dosage, 'isoutdated': False})

        load_owned_report(self.gateway, caller, report_id, columns='id,patientid')
        removed = self.gateway.delete('MedicationPrescription', [eq('reportid', report_id), is_not('isoutdated', True)])
        saved = self.gateway.insert('MedicationPrescription', inserts) if inserts else []
        logger.info('prescriptions replaced report=%s removed=%d saved=%d', report_id, removed, len(saved))
        return {'success': True, 'saved': len(saved)}

    def outdate_prescriptions(self, caller: Caller, report_id: Any, reason: Any,
                              now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        """Soft-outdate the report's active prescriptions."""
        report_id = require_value(report_id, 'reportId', 'Report ID is required')
        reason = require_value(reason, 'reason', 'An outdating reason is required')
        load_owned_report(self.gateway, caller, report_id, columns='id,patientid')
        stamp = (now or utcnow()).isoformat()
        updated = self.gateway.update(
            'MedicationPrescription',
            {'isoutdated': True, 'outdatedat': stamp, 'outdatedreason': str(reason), 'outdatedby': caller.id},
            [eq('reportid', report_id), is_not('isoutdated', True)],
        )
        logger.info('prescriptions outdated report=%s count=%d', report_id, len(updated))
        return {
            'count': len(updated),
            'reason': str(reason),
            'medications': [{'id': u.get('id'), 'dosage': u.get('dosage')} for u in updated],
        }
