from flask import Blueprint, jsonify

bp = Blueprint('general', __name__)


@bp.route('/healthz')
def healthcheck():
    """Lightweight container health check."""
    return jsonify({'status': 'ok'}), 200
