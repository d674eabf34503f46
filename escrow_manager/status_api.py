from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from flask import Blueprint, Flask, jsonify
from werkzeug.exceptions import HTTPException

from .amounts import wei_to_grt
from .ledger import LedgerSnapshot

logger = logging.getLogger(__name__)


def _json_ok(data: Dict[str, Any], status_code: int = 200):
    payload = {"ok": True}
    payload.update(data)
    return jsonify(payload), status_code


def _json_err(message: str, status_code: int = 400, **extra):
    payload = {"ok": False, "error": message}
    if extra:
        payload.update(extra)
    return jsonify(payload), status_code


def create_app(status: Callable[[], Dict[str, Any]], debts: Callable[[], LedgerSnapshot]) -> Flask:
    """Read-only view of the running service.

    `status` returns the service summary; `debts` returns the latest
    published ledger snapshot.
    """
    app = Flask(__name__)
    api_v1 = Blueprint("api_v1", __name__, url_prefix="/api/v1")

    @api_v1.route("/status", methods=["GET"])
    def api_status():
        return _json_ok(status())

    @api_v1.route("/debts", methods=["GET"])
    def api_debts():
        snapshot = debts()
        return _json_ok({
            "taken_at": snapshot.taken_at.isoformat(),
            "total_grt": str(wei_to_grt(snapshot.total())),
            "debts_grt": {r: str(wei_to_grt(d)) for r, d in sorted(snapshot.debts.items())},
        })

    @app.errorhandler(Exception)
    def _failed(exc):
        if isinstance(exc, HTTPException):
            return _json_err(exc.name.lower(), exc.code)
        logger.exception("status request failed")
        return _json_err(type(exc).__name__, 500)

    app.register_blueprint(api_v1)
    return app
