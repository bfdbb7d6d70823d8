from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify

from ..gateways.factory import get_gateway
from ..services.access import require_role
from ..services.dashboard import DashboardService
from ..utils.context import merge_context

bp = Blueprint('dashboard_api', __name__)


def _service() -> DashboardService:
    return DashboardService(get_gateway(), max_workers=current_app.config.get('KC_ENRICH_WORKERS', 4))


@bp.get('/admin/dashboard-stats')
def admin_dashboard_stats():
    require_role(g.caller, 'admin')
    stats = _service().admin_stats()
    return jsonify(merge_context({'success': True, 'stats': stats}))


@bp.get('/doctor/dashboard/stats')
def doctor_dashboard_stats():
    caller = require_role(g.caller, 'doctor')
    stats = _service().doctor_stats(caller)
    return jsonify(merge_context({'success': True, 'stats': stats}))


@bp.get('/doctor/dashboard/recent-activity')
def doctor_recent_activity():
    caller = require_role(g.caller, 'doctor')
    activity = _service().recent_activity(caller)
    return jsonify(merge_context({'success': True, 'activity': activity}))
