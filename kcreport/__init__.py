import logging
import os
import secrets
from datetime import timedelta

from flask import Flask, g, jsonify, request, session as flask_session
from flask_session import Session
from dotenv import load_dotenv

from .errors import ReportingError


def _truthy(v, default: str = '0') -> bool:
    s = v if v is not None else default
    return str(s).strip().lower() in ('1', 'true', 'yes', 'on')


def _priority(raw):
    if not raw:
        return None
    codes = tuple(c.strip() for c in raw.split(',') if c.strip())
    return codes or None


def _redis_client(use_fakeredis: bool, logger):
    if use_fakeredis:
        import fakeredis
        return fakeredis.FakeRedis(decode_responses=False)
    from redis import Redis
    from redis.exceptions import RedisError
    client = Redis(
        host=os.getenv('REDIS_HOST', '127.0.0.1'),
        port=int(os.getenv('REDIS_PORT', '6379')),
        db=int(os.getenv('REDIS_DB', '0')),
        password=os.getenv('REDIS_PASSWORD') or None,
        ssl=_truthy(os.getenv('REDIS_SSL', '0')),
        decode_responses=False,
    )
    try:
        client.ping()
    except RedisError as e:
        logger.warning('redis unavailable, sessions fall back to defaults: %s', e)
        return None
    return client


def create_app():
    load_dotenv()

    app = Flask(__name__)
    app.secret_key = os.getenv('FLASK_SECRET_KEY', 'dev-secret')

    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    logging.getLogger('kcreport').setLevel(level)
    app.logger.setLevel(level)

    # Store + engine config
    app.config['KC_STORE_MODE'] = os.getenv('KC_STORE_MODE', 'memory').strip().lower()
    app.config['KC_STORE_URL'] = os.getenv('KC_STORE_URL')
    app.config['KC_STORE_KEY'] = os.getenv('KC_STORE_KEY')
    app.config['KC_STORE_VERIFY_SSL'] = _truthy(os.getenv('KC_STORE_VERIFY_SSL'), '1')
    app.config['KC_STORE_TIMEOUT'] = float(os.getenv('KC_STORE_TIMEOUT', '20'))
    app.config['KC_SEED_FILE'] = os.getenv('KC_SEED_FILE') or None
    app.config['KC_TRUST_IDENTITY_HEADERS'] = _truthy(os.getenv('KC_TRUST_IDENTITY_HEADERS', '0'))
    app.config['KC_TEST_CODE_PRIORITY'] = _priority(os.getenv('KC_TEST_CODE_PRIORITY'))
    app.config['KC_ENRICH_WORKERS'] = int(os.getenv('KC_ENRICH_WORKERS', '4'))

    # Session config (Redis or FakeRedis)
    app.config['SESSION_TYPE'] = 'redis'
    app.config['SESSION_PERMANENT'] = False
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(seconds=int(os.getenv('SESSION_LIFETIME_SECONDS', '1800')))
    app.config['SESSION_USE_SIGNER'] = True
    app.config['SESSION_COOKIE_SECURE'] = _truthy(os.getenv('SESSION_COOKIE_SECURE', '0'))
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = os.getenv('SESSION_COOKIE_SAMESITE', 'Strict')

    redis_client = _redis_client(_truthy(os.getenv('USE_FAKEREDIS', '1')), app.logger)
    if redis_client is not None:
        app.config['SESSION_REDIS'] = redis_client
    Session(app)

    from .utils.context import merge_context
    from .utils.identity import resolve_caller

    @app.before_request
    def _resolve_identity():
        g.caller = resolve_caller()

    # CSRF double-submit cookie
    @app.before_request
    def _csrf_before_request():
        if 'csrf_token' not in flask_session:
            flask_session['csrf_token'] = secrets.token_urlsafe(32)
        if request.method in ('GET', 'HEAD', 'OPTIONS'):
            return None
        h = request.headers.get('X-CSRF-Token')
        c = request.cookies.get('csrf_token')
        s = flask_session.get('csrf_token')
        if not h or not c or not s or h != c or h != s:
            return jsonify({'error': 'CSRF token invalid'}), 403
        return None

    @app.after_request
    def _security_headers(resp):
        resp.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate'
        resp.headers['Pragma'] = 'no-cache'
        resp.headers['Expires'] = '0'
        resp.headers['Vary'] = 'Cookie'
        resp.headers['Referrer-Policy'] = 'no-referrer'
        resp.headers['X-Content-Type-Options'] = 'nosniff'
        resp.headers['X-Frame-Options'] = 'DENY'
        resp.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
        tok = flask_session.get('csrf_token')
        if tok:
            resp.set_cookie('csrf_token', tok, secure=app.config.get('SESSION_COOKIE_SECURE', False),
                            httponly=False, samesite=app.config.get('SESSION_COOKIE_SAMESITE', 'Strict'), path='/')
        return resp

    @app.errorhandler(ReportingError)
    def _reporting_error(e: ReportingError):
        log = app.logger.error if e.status >= 500 else app.logger.warning
        log('%s %s -> %s %s: %s', request.method, request.path, e.status, e.kind, e.message)
        return jsonify(merge_context(e.to_dict())), e.status

    # Blueprints
    from .blueprints.general import bp as general_bp
    from .blueprints.dashboard_api import bp as dashboard_bp
    from .blueprints.patient_api import bp as patient_bp

    app.register_blueprint(general_bp)
    app.register_blueprint(dashboard_bp, url_prefix='/api')
    app.register_blueprint(patient_bp, url_prefix='/api/doctor')

    app.logger.info('kcreport app ready store=%s', app.config['KC_STORE_MODE'])
    return app
