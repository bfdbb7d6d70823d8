"""Dashboard statistics for administrators and doctors.

All numbers are computed in memory over one snapshot of fetched rows; the
windowed counts and activity sets come from ``metrics`` so every figure is
auditable against the same primitives.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from ..errors import UpstreamStoreError
from ..gateways.data_gateway import DataGateway, Order, eq, in_
from .access import Caller
from .breakdown import doctor_activity
from .enrichment import EnrichmentWalker, RelationStep, collect_keys, fetch_parallel, index_by
from .metrics import count, count_where, distinct_foreign_keys, field, followup_gap
from .windows import FOLLOWUP, MONTH, WEEK, parse_timestamp, utcnow, within

logger = logging.getLogger(__name__)

RECENT_LIMIT = 10
CRITICAL_SCAN_LIMIT = 50
CRITICAL_ALERT_LIMIT = 5

# Values outside these bounds are flagged on the doctor's activity feed
CRITICAL_RANGES: Dict[str, Dict[str, float]] = {
    'PTH': {'min': 50, 'max': 600},
    'Ca': {'min': 6.0, 'max': 12.0},
    'CaCorrected': {'min': 6.0, 'max': 12.0},
    'Phos': {'min': 2.0, 'max': 7.0},
}

STATS_RELATIONS = (
    RelationStep('situation', 'Situation', source_key='situationid', columns='id,groupid,bucketid,code'),
    RelationStep('prescriptions', 'MedicationPrescription', source_key='id', target_key='reportid',
                 many=True, columns='id,createdat,reportid'),
    RelationStep('assignedRecommendations', 'AssignedRecommendation', source_key='id',
                 target_key='labreportid', many=True, columns='id,createdat,labreportid'),
)


def _is(value: Any, expected: int) -> bool:
    return value is not None and str(value) == str(expected)


def classification_distribution(reports: List[Dict[str, Any]]) -> Dict[str, int]:
    dist = {'group1': 0, 'group2': 0, 'bucket1': 0, 'bucket2': 0, 'bucket3': 0}
    for r in reports:
        situation = r.get('situation')
        if not isinstance(situation, dict):
            continue
        for g in (1, 2):
            if _is(situation.get('groupid'), g):
                dist[f'group{g}'] += 1
        for b in (1, 2, 3):
            if _is(situation.get('bucketid'), b):
                dist[f'bucket{b}'] += 1
    return dist


def critical_alert(link: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    result = link.get('TestResult')
    report = link.get('LabReport')
    if not isinstance(result, dict) or not isinstance(report, dict):
        return None
    test_type = result.get('TestType')
    patient = report.get('Patient')
    if not isinstance(test_type, dict) or not isinstance(patient, dict):
        return None
    bounds = CRITICAL_RANGES.get(str(test_type.get('code')))
    if bounds is None:
        return None
    try:
        value = float(result.get('value'))
    except (TypeError, ValueError):
        return None
    if bounds['min'] <= value <= bounds['max']:
        return None
    return {
        'patientName': patient.get('name'),
        'testName': test_type.get('name'),
        'testCode': test_type.get('code'),
        'value': result.get('value'),
        'unit': test_type.get('unit'),
        'reportDate': report.get('reportdate'),
        'severity': 'low' if value < bounds['min'] else 'high',
    }


class DashboardService:
    def __init__(self, gateway: DataGateway, max_workers: int = 4):
        self.gateway = gateway
        self.max_workers = max_workers

    def _fetch_roots(self, requests: Dict[str, Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        try:
            return fetch_parallel(self.gateway, requests, self.max_workers)
        except UpstreamStoreError as e:
            logger.error('dashboard root fetch failed: %s', e.message)
            raise

    def admin_stats(self, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        logger.info('admin stats start')
        rows = self._fetch_roots({
            'doctors': {'table': 'User', 'filters': [eq('role', 'doctor'), eq('active', True)],
                        'columns': 'id,createdat,name,email,active'},
            'inactive': {'table': 'User', 'filters': [eq('role', 'inactive_doctor')],
                         'columns': 'id,deactivatedat'},
            'patients': {'table': 'Patient', 'columns': 'id,createdat,doctorid'},
            'reports': {'table': 'LabReport', 'columns': 'id,reportdate,createdat,doctorid'},
            'medications': {'table': 'MedicationPrescription', 'columns': 'id,createdat,reportid'},
        })
        doctors, patients, reports = rows['doctors'], rows['patients'], rows['reports']
        created_month = within(field('createdat'), MONTH, now)
        report_month = within(field('reportdate'), MONTH, now)

        overview = {
            'totalDoctors': count(doctors),
            'totalInactiveDoctors': count(rows['inactive']),
            'newDoctorsThisMonth': count_where(doctors, created_month),
            'totalPatients': count(patients),
            'newPatientsThisMonth': count_where(patients, created_month),
            'totalLabReports': count(reports),
            'reportsThisWeek': count_where(reports, within(field('reportdate'), WEEK, now)),
            # report activity, independent of the User.active flag above
            'activeDoctors': len(distinct_foreign_keys(reports, 'doctorid', report_month)),
            'totalMedications': count(rows['medications']),
            'medicationsThisWeek': count_where(rows['medications'], within(field('createdat'), WEEK, now)),
        }
        activity = doctor_activity(doctors, patients, reports, now)
        recent = {
            'recentDoctors': [
                {'id': d.get('id'), 'name': d.get('name') or 'Unknown Doctor',
                 'email': d.get('email') or 'No email', 'createdAt': d.get('createdat')}
                for d in doctors if created_month(d)
            ],
            'recentPatients': [
                {'id': p.get('id'), 'createdAt': p.get('createdat'), 'doctorId': p.get('doctorid')}
                for p in patients if created_month(p)
            ],
        }
        logger.info('admin stats done doctors=%d patients=%d reports=%d',
                    overview['totalDoctors'], overview['totalPatients'], overview['totalLabReports'])
        return {'overview': overview, 'doctorActivity': activity, 'recentActivity': recent}

    def doctor_stats(self, caller: Caller, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        logger.info('doctor stats start doctor=%s', caller.id)
        rows = self._fetch_roots({
            'patients': {'table': 'Patient', 'filters': [eq('doctorid', caller.id)],
                         'columns': 'id,createdat'},
            'reports': {'table': 'LabReport', 'filters': [eq('doctorid', caller.id)],
                        'order': Order('reportdate', descending=True),
                        'columns': 'id,reportdate,createdat,situationid,patientid'},
        })
        patients, reports = rows['patients'], rows['reports']
        walker = EnrichmentWalker(self.gateway, self.max_workers)
        walker.resolve(reports, STATS_RELATIONS)

        prescriptions = [p for r in reports for p in r.get('prescriptions') or []]
        recommendations = [a for r in reports for a in r.get('assignedRecommendations') or []]
        created_week = within(field('createdat'), WEEK, now)

        with_visits = distinct_foreign_keys(reports, 'patientid')
        recent_visits = distinct_foreign_keys(reports, 'patientid', within(field('reportdate'), FOLLOWUP, now))
        stats = {
            'patients': {
                'total': count(patients),
                'newThisMonth': count_where(patients, within(field('createdat'), MONTH, now)),
                'active': len(distinct_foreign_keys(reports, 'patientid', within(field('reportdate'), MONTH, now))),
                'needingFollowup': followup_gap(with_visits, recent_visits),
            },
            'labReports': {
                'total': count(reports),
                'thisWeek': count_where(reports, within(field('reportdate'), WEEK, now)),
            },
            'medications': {
                'total': count(prescriptions),
                'thisWeek': count_where(prescriptions, created_week),
            },
            'recommendations': {
                'total': count(recommendations),
                'thisWeek': count_where(recommendations, created_week),
            },
            'classification': classification_distribution(reports),
        }
        if walker.degraded:
            stats['degraded'] = sorted(set(walker.degraded))
        logger.info('doctor stats done doctor=%s reports=%d', caller.id, stats['labReports']['total'])
        return stats

    def recent_activity(self, caller: Caller) -> Dict[str, Any]:
        logger.info('recent activity start doctor=%s', caller.id)
        rows = self._fetch_roots({
            'reports': {'table': 'LabReport', 'filters': [eq('doctorid', caller.id)],
                        'order': Order('reportdate', descending=True),
                        'columns': 'id,reportdate,createdat,patientid,situationid'},
        })
        reports = rows['reports']
        walker = EnrichmentWalker(self.gateway, self.max_workers)

        recent_reports = [dict(r) for r in reports[:RECENT_LIMIT]]
        walker.resolve(recent_reports, (
            RelationStep('Patient', 'Patient', source_key='patientid', columns='id,name,age,gender'),
            RelationStep('Situation', 'Situation', source_key='situationid',
                         columns='groupid,bucketid,code,description,id'),
        ))

        report_ids = collect_keys(reports, 'id')
        medications = self._secondary(walker, 'recentMedications', 'MedicationPrescription', report_ids, 'reportid',
                                      order=Order('createdat', descending=True), limit=RECENT_LIMIT,
                                      columns='id,dosage,createdat,medicationtypeid,reportid')
        walker.resolve(medications, (
            RelationStep('MedicationType', 'MedicationType', source_key='medicationtypeid', columns='id,name,unit'),
            RelationStep('LabReport', 'LabReport', source_key='reportid', columns='id,reportdate,patientid',
                         children=(RelationStep('Patient', 'Patient', source_key='patientid', columns='id,name'),)),
        ))

        alerts = self._critical_alerts(walker, reports, report_ids)
        activity = {
            'recentReports': recent_reports,
            'recentMedications': medications,
            'criticalAlerts': alerts,
        }
        if walker.degraded:
            activity['degraded'] = sorted(set(walker.degraded))
        logger.info('recent activity done doctor=%s reports=%d medications=%d alerts=%d',
                    caller.id, len(recent_reports), len(medications), len(alerts))
        return activity

    def _secondary(self, walker: EnrichmentWalker, name: str, table: str, ids: List[Any], key: str,
                   **kwargs: Any) -> List[Dict[str, Any]]:
        if not ids:
            return []
        try:
            return self.gateway.fetch_many(table, [in_(key, ids)], **kwargs)
        except UpstreamStoreError as e:
            walker.record_degraded(name, table, e)
            return []

    def _critical_alerts(self, walker: EnrichmentWalker, reports: List[Dict[str, Any]],
                         report_ids: List[Any]) -> List[Dict[str, Any]]:
        links = self._secondary(walker, 'criticalAlerts', 'LabReportTestLink', report_ids, 'labreportid',
                                columns='labreportid,testresultid')
        if not links:
            return []
        by_key = {str(k): v for k, v in index_by([dict(r) for r in reports], 'id').items()}
        for link in links:
            link['LabReport'] = by_key.get(str(link.get('labreportid')))
        links = [link for link in links if link['LabReport'] is not None]
        # newest reports first; undated links sort last
        links.sort(key=lambda link: parse_timestamp(link['LabReport'].get('reportdate'))
                   or dt.datetime.min.replace(tzinfo=dt.timezone.utc), reverse=True)
        links = links[:CRITICAL_SCAN_LIMIT]

        linked_reports = list({id(link['LabReport']): link['LabReport'] for link in links}.values())
        walker.resolve(linked_reports, (
            RelationStep('Patient', 'Patient', source_key='patientid', columns='id,name'),
        ))
        walker.resolve(links, (
            RelationStep('TestResult', 'TestResult', source_key='testresultid', columns='id,value,testdate,testtypeid',
                         children=(RelationStep('TestType', 'TestType', source_key='testtypeid',
                                                columns='id,name,code,unit'),)),
        ))
        alerts = [a for a in (critical_alert(link) for link in links) if a is not None]
        return alerts[:CRITICAL_ALERT_LIMIT]
