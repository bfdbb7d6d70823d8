"""Patient visit history: one enriched record per lab report, newest first."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import UpstreamStoreError
from ..gateways.data_gateway import DataGateway, Order, eq
from .access import Caller, load_owned_patient, require_value
from .enrichment import EnrichmentWalker, RelationStep
from .windows import parse_timestamp

logger = logging.getLogger(__name__)

# Clinical display order for test types; codes not listed follow alphabetically
TEST_CODE_PRIORITY: Tuple[str, ...] = ('PTH', 'Ca', 'Albumin', 'CaCorrected', 'Phos', 'Echo', 'LARad')

PATIENT_COLUMNS = 'id,name,age,gender,nationalid,contactinfo,doctorid'

VISIT_RELATIONS: Tuple[RelationStep, ...] = (
    RelationStep('situation', 'Situation', source_key='situationid',
                 columns='id,groupid,bucketid,code,description'),
    RelationStep('recommendations', 'AssignedRecommendation', source_key='id',
                 target_key='labreportid', many=True,
                 columns='id,labreportid,questionid,selectedoptionid',
                 children=(
                     RelationStep('Question', 'Question', source_key='questionid', columns='id,text'),
                     RelationStep('Option', 'Option', source_key='selectedoptionid', columns='id,text'),
                 )),
    RelationStep('testLinks', 'LabReportTestLink', source_key='id',
                 target_key='labreportid', many=True,
                 columns='labreportid,testresultid',
                 children=(
                     RelationStep('TestResult', 'TestResult', source_key='testresultid',
                                  columns='id,value,testdate,testtypeid',
                                  children=(
                                      RelationStep('TestType', 'TestType', source_key='testtypeid',
                                                   columns='id,code,name,unit'),
                                  )),
                 )),
)


def _type_code(result: Dict[str, Any]) -> str:
    tt = result.get('TestType')
    code = tt.get('code') if isinstance(tt, dict) else None
    return str(code) if code is not None else ''


def priority_rank(priority: Sequence[str] = TEST_CODE_PRIORITY) -> Dict[str, int]:
    return {c: i for i, c in enumerate(priority)}


def result_order_key(result: Dict[str, Any], rank: Mapping[str, int]):
    code = _type_code(result)
    tail = (code.casefold(), code, str(result.get('id') or ''))
    if code in rank:
        return (0, rank[code]) + tail
    return (1, 0) + tail


def sort_test_results(results: List[Dict[str, Any]],
                      priority: Sequence[str] = TEST_CODE_PRIORITY) -> List[Dict[str, Any]]:
    rank = priority_rank(priority)
    return sorted(results, key=lambda r: result_order_key(r, rank))


def sort_visits(visits: List[Dict[str, Any]], date_key: str = 'visitDate') -> List[Dict[str, Any]]:
    """Most recent first; undated visits go last."""
    dated = [v for v in visits if parse_timestamp(v.get(date_key)) is not None]
    undated = [v for v in visits if parse_timestamp(v.get(date_key)) is None]
    dated.sort(key=lambda v: parse_timestamp(v.get(date_key)), reverse=True)
    return dated + undated


def _recommendation(rec: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': rec.get('id'),
        'questionid': rec.get('questionid'),
        'selectedoptionid': rec.get('selectedoptionid'),
        'Question': rec.get('Question'),
        'Option': rec.get('Option'),
    }


def _test_results(links: List[Dict[str, Any]], priority: Sequence[str]) -> List[Dict[str, Any]]:
    seen = set()
    out: List[Dict[str, Any]] = []
    for link in links:
        tr = link.get('TestResult')
        if not isinstance(tr, dict) or tr.get('id') in seen:
            continue
        seen.add(tr.get('id'))
        out.append({
            'id': tr.get('id'),
            'value': tr.get('value'),
            'testdate': tr.get('testdate'),
            'testtypeid': tr.get('testtypeid'),
            'TestType': tr.get('TestType'),
        })
    return sort_test_results(out, priority)


def assemble_visit(report: Dict[str, Any], priority: Sequence[str] = TEST_CODE_PRIORITY) -> Dict[str, Any]:
    return {
        'id': report.get('id'),
        'visitDate': report.get('reportdate'),
        'notes': report.get('notes') or '',
        'situation': report.get('situation'),
        'recommendations': [_recommendation(r) for r in report.get('recommendations') or []],
        'testResults': _test_results(report.get('testLinks') or [], priority),
    }


class VisitHistoryService:
    def __init__(self, gateway: DataGateway, test_priority: Optional[Sequence[str]] = None,
                 max_workers: int = 4):
        self.gateway = gateway
        self.max_workers = max_workers
        self.test_priority = tuple(test_priority or TEST_CODE_PRIORITY)

    def get_history(self, caller: Caller, patient_id: Any) -> Dict[str, Any]:
        patient_id = require_value(patient_id, 'patientId', 'Patient ID is required')
        logger.info('visit history start patient=%s caller=%s', patient_id, caller.id)
        patient = load_owned_patient(self.gateway, caller, patient_id, columns=PATIENT_COLUMNS)
        try:
            reports = self.gateway.fetch_many(
                'LabReport', [eq('patientid', patient_id)],
                order=Order('reportdate', descending=True),
                columns='id,reportdate,notes,situationid',
            )
        except UpstreamStoreError as e:
            raise UpstreamStoreError(f'Failed to fetch patient reports: {e.message}', table='LabReport')

        walker = EnrichmentWalker(self.gateway, self.max_workers)
        walker.resolve(reports, VISIT_RELATIONS)
        visits = sort_visits([assemble_visit(r, self.test_priority) for r in reports])
        degraded = sorted(set(walker.degraded))
        logger.info('visit history done patient=%s visits=%d degraded=%s', patient_id, len(visits), degraded or '-')
        return {'patient': patient, 'visitHistory': visits, 'degraded': degraded}
