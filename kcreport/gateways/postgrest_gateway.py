from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .data_gateway import DataGateway, Filter, GatewayError, Order

logger = logging.getLogger(__name__)

SUPPRESS_TLS_WARNINGS = os.getenv('KC_STORE_SUPPRESS_TLS_WARNINGS', '0').lower() in ('1', 'true', 'yes', 'on')

_RESERVED = set(',()"\\:')


def _truthy(v: Optional[str], default: str = '0') -> bool:
    s = v if v is not None else default
    return str(s).strip().lower() in ('1', 'true', 'yes', 'on')


def _literal(value: Any) -> str:
    if value is True:
        return 'true'
    if value is False:
        return 'false'
    return str(value)


def _list_item(value: Any) -> str:
    text = _literal(value)
    if any(ch in _RESERVED for ch in text) or text != text.strip():
        return '"' + text.replace('\\', '\\\\').replace('"', '\\"') + '"'
    return text


def encode_filter(flt: Filter) -> Tuple[str, str]:
    """Render one filter as a PostgREST ``(column, operator.value)`` query pair."""
    if flt.op == 'in':
        return flt.column, 'in.(' + ','.join(_list_item(v) for v in flt.value) + ')'
    if flt.op == 'is_not':
        return flt.column, 'not.is.' + ('null' if flt.value is None else _literal(flt.value))
    if flt.value is None:
        return flt.column, 'is.null' if flt.op == 'eq' else 'not.is.null'
    return flt.column, f'{flt.op}.{_literal(flt.value)}'


def encode_query(filters: Sequence[Filter] = (), order: Optional[Order] = None,
                 limit: Optional[int] = None, columns: Optional[str] = None) -> List[Tuple[str, str]]:
    params: List[Tuple[str, str]] = []
    if columns:
        params.append(('select', columns))
    params.extend(encode_filter(f) for f in filters)
    if order is not None:
        params.append(('order', f"{order.column}.{'desc' if order.descending else 'asc'}.nullslast"))
    if limit is not None:
        params.append(('limit', str(int(limit))))
    return params


class PostgrestGateway(DataGateway):
    """HTTP facade to a PostgREST endpoint with simple backoff on 5xx."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 verify_ssl: Optional[bool] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or os.getenv('KC_STORE_URL') or '').rstrip('/')
        self.api_key = api_key if api_key is not None else os.getenv('KC_STORE_KEY')
        self.verify_ssl = verify_ssl if verify_ssl is not None else _truthy(os.getenv('KC_STORE_VERIFY_SSL'), '1')
        self.timeout = timeout if timeout is not None else float(os.getenv('KC_STORE_TIMEOUT', '20'))
        self.http = session or requests.Session()
        if not self.verify_ssl and SUPPRESS_TLS_WARNINGS:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        if not self.base_url or not self.api_key:
            raise GatewayError('KC_STORE_URL / KC_STORE_KEY not configured')
        headers = {
            'apikey': self.api_key,
            'Authorization': f'Bearer {self.api_key}',
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if prefer:
            headers['Prefer'] = prefer
        return headers

    @staticmethod
    def _error_text(r: requests.Response) -> str:
        try:
            body = r.json()
        except ValueError:
            return (r.text or '').strip()[:200] or f'HTTP {r.status_code}'
        if isinstance(body, dict):
            return str(body.get('message') or body.get('error') or body)
        return str(body)

    def _request(self, method: str, table: str, params: List[Tuple[str, str]],
                 body: Any = None, prefer: Optional[str] = None, attempts: int = 3) -> Any:
        url = f'{self.base_url}/{table}'
        headers = self._headers(prefer)
        for attempt in range(attempts):
            try:
                r = self.http.request(method, url, params=params, json=body, headers=headers,
                                      timeout=self.timeout, verify=self.verify_ssl)
            except requests.RequestException as e:
                if attempt < attempts - 1:
                    time.sleep(0.8 * (attempt + 1))
                    continue
                raise GatewayError(f'{method} {table} failed: {e}', table=table)
            if r.status_code >= 500 and attempt < attempts - 1:
                logger.warning('store 5xx status=%s table=%s attempt=%d', r.status_code, table, attempt + 1)
                time.sleep(0.8 * (attempt + 1))
                continue
            if r.status_code >= 400:
                raise GatewayError(f'{method} {table} failed: {self._error_text(r)}', table=table)
            if r.status_code == 204 or not r.content:
                return []
            try:
                return r.json()
            except ValueError:
                raise GatewayError(f'{method} {table} returned non-JSON body', table=table)
        raise GatewayError(f'{method} {table} failed after retries', table=table)

    def fetch_many(self, table, filters=(), *, order=None, limit=None, columns='*'):
        data = self._request('GET', table, encode_query(filters, order, limit, columns))
        return list(data) if isinstance(data, list) else []

    def insert(self, table, rows):
        if not rows:
            return []
        # not idempotent; a retried POST could duplicate rows
        return self._request('POST', table, [], body=rows, prefer='return=representation', attempts=1)

    def upsert(self, table, rows, *, on_conflict):
        if not rows:
            return []
        return self._request('POST', table, [('on_conflict', ','.join(on_conflict))], body=rows,
                             prefer='resolution=merge-duplicates,return=representation')

    def update(self, table, values, filters):
        return self._request('PATCH', table, encode_query(filters), body=values,
                             prefer='return=representation')

    def delete(self, table, filters):
        if not filters:
            raise GatewayError(f'Refusing unfiltered delete on {table}', table=table)
        gone = self._request('DELETE', table, encode_query(filters), prefer='return=representation')
        return len(gone) if isinstance(gone, list) else 0

    def close(self) -> None:
        self.http.close()
