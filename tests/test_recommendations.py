import pytest

from kcreport.errors import AccessDeniedError, ValidationError
from kcreport.services.access import Caller
from kcreport.services.recommendations import RecommendationService

DOCTOR = Caller(id='doc-1', role='doctor')


def _for_report(gw, report_id):
    return [r for r in gw.table('AssignedRecommendation') if r['labreportid'] == report_id]


def test_assign_overwrites_existing_answer(clinic):
    out = RecommendationService(clinic).assign(DOCTOR, 2, [{'questionId': 1, 'selectedOptionId': 11}])
    assert out['success'] is True
    assert out['savedRecommendations'] == [{'id': 1, 'questionid': 1, 'selectedoptionid': 11}]
    rows = _for_report(clinic, 2)
    assert len(rows) == 2
    assert [r['selectedoptionid'] for r in rows if r['questionid'] == 1] == [11]


def test_last_answer_per_question_wins(clinic):
    out = RecommendationService(clinic).assign(DOCTOR, 3, [
        {'questionId': 1, 'selectedOptionId': 10},
        {'questionId': 1, 'selectedOptionId': 11},
    ])
    assert len(out['savedRecommendations']) == 1
    rows = _for_report(clinic, 3)
    assert [(r['questionid'], r['selectedoptionid'], r['assignedbyid']) for r in rows] == [(1, 11, 'doc-1')]


def test_empty_list_is_a_no_op(clinic):
    out = RecommendationService(clinic).assign(DOCTOR, 2, [])
    assert out['message'] == 'No recommendations to save'
    assert len(clinic.table('AssignedRecommendation')) == 2


def test_invalid_entry_names_its_index(clinic):
    with pytest.raises(ValidationError) as exc:
        RecommendationService(clinic).assign(DOCTOR, 2, [
            {'questionId': 1, 'selectedOptionId': 10},
            {'questionId': 2},
        ])
    assert exc.value.field == 'recommendations[1]'
    assert 'index 1' in exc.value.message


def test_requires_report_and_list(clinic):
    svc = RecommendationService(clinic)
    with pytest.raises(ValidationError):
        svc.assign(DOCTOR, '', [])
    with pytest.raises(ValidationError):
        svc.assign(DOCTOR, 2, {'questionId': 1})


def test_other_doctor_cannot_assign(clinic):
    with pytest.raises(AccessDeniedError):
        RecommendationService(clinic).assign(Caller('doc-2', 'doctor'), 2,
                                             [{'questionId': 1, 'selectedOptionId': 10}])
