import pytest

from kcreport.errors import AccessDeniedError, NotFoundError, ValidationError
from kcreport.services.access import Caller
from kcreport.services.visit_history import (
    VisitHistoryService, priority_rank, result_order_key, sort_test_results, sort_visits,
)

DOCTOR = Caller(id='doc-1', role='doctor')


def _results(*codes):
    return [{'id': i, 'TestType': {'code': c}} for i, c in enumerate(codes)]


def _codes(results):
    return [r['TestType']['code'] for r in results]


def test_priority_codes_follow_clinical_order():
    assert _codes(sort_test_results(_results('Phos', 'Ca', 'Albumin'))) == ['Ca', 'Albumin', 'Phos']


def test_unlisted_codes_follow_listed_alphabetically():
    assert _codes(sort_test_results(_results('PTH', 'ZZZ', 'Ca'))) == ['PTH', 'Ca', 'ZZZ']
    assert _codes(sort_test_results(_results('Kt', 'Hb', 'LARad', 'Echo'))) == ['Echo', 'LARad', 'Hb', 'Kt']


def test_test_ordering_is_idempotent():
    once = sort_test_results(_results('Hb', 'Phos', 'PTH', 'Albumin', 'Zn', 'Ca'))
    assert sort_test_results(once) == once


def test_order_key_uses_given_rank():
    rank = priority_rank(('Hb', 'Ca'))
    assert rank == {'Hb': 0, 'Ca': 1}
    hb, ca, zn = _results('Hb', 'Ca', 'Zn')
    assert result_order_key(hb, rank) < result_order_key(ca, rank) < result_order_key(zn, rank)
    assert _codes(sort_test_results([zn, ca, hb], ('Hb', 'Ca'))) == ['Hb', 'Ca', 'Zn']


def test_visits_sorted_newest_first():
    visits = [{'visitDate': '2024-01-01'}, {'visitDate': '2024-03-01'}, {'visitDate': None},
              {'visitDate': '2024-02-01'}]
    assert [v['visitDate'] for v in sort_visits(visits)] == ['2024-03-01', '2024-02-01', '2024-01-01', None]


def test_history_for_owned_patient(clinic):
    out = VisitHistoryService(clinic).get_history(DOCTOR, '1')
    assert out['patient']['name'] == 'Mona'
    assert [v['id'] for v in out['visitHistory']] == [2, 3, 1]
    assert out['degraded'] == []

    latest = out['visitHistory'][0]
    assert latest['situation']['code'] == 'G2B3'
    assert latest['notes'] == ''
    assert _codes(latest['testResults']) == ['Ca', 'Albumin', 'Phos']

    middle = out['visitHistory'][1]
    assert middle['situation'] is None
    assert middle['recommendations'] == []
    assert middle['testResults'] == []


def test_unresolved_question_keeps_option(clinic):
    out = VisitHistoryService(clinic).get_history(DOCTOR, 1)
    recs = {r['questionid']: r for r in out['visitHistory'][0]['recommendations']}
    assert recs[1]['Question']['text'] == 'Start active vitamin D?'
    assert recs[1]['Option']['text'] == 'Yes'
    assert recs[99]['Question'] is None
    assert recs[99]['Option'] == {'id': 11, 'text': 'No'}


def test_priority_override(clinic):
    out = VisitHistoryService(clinic, test_priority=['Phos']).get_history(DOCTOR, 1)
    assert _codes(out['visitHistory'][0]['testResults']) == ['Phos', 'Albumin', 'Ca']


def test_degraded_test_types(failing_clinic):
    out = VisitHistoryService(failing_clinic('TestType')).get_history(DOCTOR, 1)
    results = out['visitHistory'][0]['testResults']
    assert len(results) == 3
    assert all(r['TestType'] is None for r in results)
    assert out['degraded'] == ['TestType']


def test_missing_patient_id():
    with pytest.raises(ValidationError) as exc:
        VisitHistoryService(None).get_history(DOCTOR, '  ')
    assert exc.value.field == 'patientId'


def test_unknown_patient(clinic):
    with pytest.raises(NotFoundError):
        VisitHistoryService(clinic).get_history(DOCTOR, 404)


def test_other_doctors_patient(clinic):
    with pytest.raises(AccessDeniedError):
        VisitHistoryService(clinic).get_history(DOCTOR, 3)
