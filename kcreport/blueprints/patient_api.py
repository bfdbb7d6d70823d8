from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, g, jsonify, request

from ..errors import ValidationError
from ..gateways.factory import get_gateway
from ..services.access import require_role
from ..services.medications import MedicationService
from ..services.recommendations import RecommendationService
from ..services.visit_history import VisitHistoryService
from ..utils.context import merge_context

bp = Blueprint('patient_api', __name__)


def _workers() -> int:
    return current_app.config.get('KC_ENRICH_WORKERS', 4)


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object', field='body')
    return body


def _ok(payload: Dict[str, Any]):
    return jsonify(merge_context({'success': True, **payload}))


@bp.get('/patient/recommendation-history')
def recommendation_history():
    caller = require_role(g.caller, 'doctor')
    svc = VisitHistoryService(get_gateway(), test_priority=current_app.config.get('KC_TEST_CODE_PRIORITY'),
                              max_workers=_workers())
    return _ok(svc.get_history(caller, request.args.get('patientId')))


@bp.get('/patient/medication/get-saved')
def saved_medications():
    caller = require_role(g.caller, 'doctor')
    svc = MedicationService(get_gateway(), max_workers=_workers())
    return _ok(svc.saved_medications(caller, request.args.get('labReportId')))


@bp.get('/patient/medication/views')
def medication_views():
    caller = require_role(g.caller, 'doctor')
    svc = MedicationService(get_gateway(), max_workers=_workers())
    return _ok(svc.prescription_views(caller, request.args.get('reportId')))


@bp.post('/patient/medication/previous')
def previous_medications():
    caller = require_role(g.caller, 'doctor')
    body = _json_body()
    svc = MedicationService(get_gateway(), max_workers=_workers())
    return _ok(svc.previous_medications(caller, body.get('currentLabReportId')))


@bp.post('/patient/medication/save')
def save_medications():
    caller = require_role(g.caller, 'doctor')
    body = _json_body()
    svc = MedicationService(get_gateway(), max_workers=_workers())
    return _ok(svc.replace_prescriptions(caller, body.get('reportId'), body.get('medications')))


@bp.post('/patient/medication/outdate')
def outdate_medications():
    caller = require_role(g.caller, 'doctor')
    body = _json_body()
    svc = MedicationService(get_gateway(), max_workers=_workers())
    result = svc.outdate_prescriptions(caller, body.get('reportId'), body.get('reason'))
    result['message'] = f"Outdated {result['count']} medications"
    return _ok(result)


@bp.post('/assign-recommendation')
def assign_recommendation():
    caller = require_role(g.caller, 'doctor')
    body = _json_body()
    svc = RecommendationService(get_gateway())
    return _ok(svc.assign(caller, body.get('labReportId'), body.get('recommendations')))
