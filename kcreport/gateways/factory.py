from __future__ import annotations

import os

from flask import current_app

from .data_gateway import DataGateway
from .memory_gateway import MemoryGateway
from .postgrest_gateway import PostgrestGateway

_MEMORY_KEY = '_KC_MEMORY_GATEWAY'
_REST_KEY = '_KC_REST_GATEWAY'


def _memory_gateway() -> MemoryGateway:
    gw = current_app.config.get(_MEMORY_KEY)
    if gw is None:
        seed = current_app.config.get('KC_SEED_FILE') or os.getenv('KC_SEED_FILE')
        gw = MemoryGateway.from_file(seed) if seed else MemoryGateway()
        current_app.config[_MEMORY_KEY] = gw
        current_app.logger.info('memory store ready seed=%s', seed or '-')
    return gw


def _rest_gateway() -> PostgrestGateway:
    # one pooled HTTP session per app, shared across requests
    gw = current_app.config.get(_REST_KEY)
    if gw is None:
        cfg = current_app.config
        gw = PostgrestGateway(
            base_url=cfg.get('KC_STORE_URL'),
            api_key=cfg.get('KC_STORE_KEY'),
            verify_ssl=cfg.get('KC_STORE_VERIFY_SSL'),
            timeout=cfg.get('KC_STORE_TIMEOUT'),
        )
        cfg[_REST_KEY] = gw
        current_app.logger.info('rest store ready url=%s', gw.base_url or '-')
    return gw


def set_memory_gateway(gw: MemoryGateway) -> None:
    """Install a prepared in-process store for the current app."""
    current_app.config['KC_STORE_MODE'] = 'memory'
    current_app.config[_MEMORY_KEY] = gw


def close_gateways() -> None:
    gw = current_app.config.pop(_REST_KEY, None)
    if gw is not None:
        gw.close()


def get_gateway() -> DataGateway:
    """Return the active DataGateway for this app.
    - 'memory' => one shared MemoryGateway per app
    - 'rest' => one shared PostgrestGateway per app, configured from app config / environment
    """
    mode = str(current_app.config.get('KC_STORE_MODE') or os.getenv('KC_STORE_MODE') or 'memory').lower()
    if mode == 'memory':
        return _memory_gateway()
    return _rest_gateway()
