from __future__ import annotations

from typing import Any, Optional

from flask import current_app, request, session as flask_session

from ..services.access import Caller


def _clean_str(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_caller() -> Optional[Caller]:
    """Identity established upstream of this service, or None.

    The session wins; proxy headers are honored only when the deployment
    says the proxy in front of it sets them.
    """
    user_id = _clean_str(flask_session.get('user_id'))
    role = _clean_str(flask_session.get('user_role'))
    if not user_id and current_app.config.get('KC_TRUST_IDENTITY_HEADERS'):
        user_id = _clean_str(request.headers.get('X-KC-User-Id'))
        role = _clean_str(request.headers.get('X-KC-User-Role'))
    if not user_id:
        return None
    return Caller(id=user_id, role=role or '')
