from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import g

from .identity import resolve_caller


def build_context(*, user_id: Optional[Any] = None, role: Optional[Any] = None) -> Dict[str, Any]:
    """Assemble a per-response context payload capturing caller identity.

    Values come from the keyword arguments first, then from the caller resolved
    for the request. Missing entries are omitted. ``issuedAt`` is always
    included to support freshness checks on the client.
    """
    caller = getattr(g, 'caller', None)
    if caller is None:
        caller = resolve_caller()
    context: Dict[str, Any] = {}
    resolved_user = user_id if user_id is not None else (caller.id if caller else None)
    resolved_role = role if role is not None else (caller.role if caller else None)
    if resolved_user:
        context['userId'] = str(resolved_user)
    if resolved_role:
        context['role'] = str(resolved_role)
    context['issuedAt'] = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
    return context


def merge_context(payload: Any, **overrides: Any) -> Any:
    """Attach the context block to an existing response payload.

    ``payload`` is returned unchanged when it already contains a top-level
    ``context`` key.
    """
    context = build_context(**overrides)
    if isinstance(payload, dict):
        if 'context' not in payload:
            payload = dict(payload)
            payload['context'] = context
        return payload
    return {
        'result': payload,
        'context': context,
    }
