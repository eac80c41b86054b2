"""Flask application for the setup page, config API and payment webhooks.

The web server runs next to the bot in a daemon thread. While the store is
unconfigured it is the only thing running, and every request outside the
setup routes is redirected to ``/setup``.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, redirect, request

from . import deposits
from .config import CONFIG_EXAMPLE, Settings, read_config, validate_config, write_config

LOGGER = logging.getLogger(__name__)

SETUP_PATHS = ("/setup", "/config/edit", "/health")

# Midtrans transaction_status -> deposit outcome
MIDTRANS_PAID = ("capture", "settlement")
MIDTRANS_FAILED = ("deny", "cancel")
MIDTRANS_EXPIRED = ("expire",)

SETUP_PAGE = """<!doctype html>
<html lang="id">
<head>
<meta charset="utf-8">
<title>VPN Store Setup</title>
<style>
body { font-family: sans-serif; max-width: 760px; margin: 2rem auto; }
textarea { width: 100%; height: 24rem; font-family: monospace; }
#status { margin-top: 1rem; white-space: pre-line; }
</style>
</head>
<body>
<h1>Konfigurasi VPN Store</h1>
<p>Isi konfigurasi dalam format JSON lalu simpan.</p>
<textarea id="config"></textarea>
<button id="save">Simpan</button>
<div id="status"></div>
<script>
fetch('/api/config').then(r => r.json()).then(d => {
  document.getElementById('config').value = JSON.stringify(d.configured ? d.config : d.example, null, 2);
});
document.getElementById('save').onclick = () => {
  let body;
  try { body = JSON.parse(document.getElementById('config').value); }
  catch (e) { document.getElementById('status').textContent = 'JSON tidak valid: ' + e; return; }
  fetch('/api/config', {method: 'POST', headers: {'Content-Type': 'application/json'}, body: JSON.stringify(body)})
    .then(r => r.json())
    .then(d => { document.getElementById('status').textContent = d.message || (d.errors || []).join('\\n') || d.error; });
};
</script>
</body>
</html>
"""


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(settings: Settings, bot_app: Optional[Any] = None) -> Flask:
    """Build the Flask app.

    ``bot_app`` is the running :class:`~vpn_store.handlers.BotApp`; webhooks
    use it to credit deposits and notify users. It is ``None`` in setup mode.
    """
    app = Flask(__name__)

    @app.before_request
    def _redirect_to_setup():
        if settings.setup_mode and request.path not in SETUP_PATHS and not request.path.startswith("/api/config"):
            return redirect("/setup")
        return None

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "setupMode": settings.setup_mode, "timestamp": int(time.time() * 1000)})

    @app.route("/setup")
    @app.route("/config/edit")
    def setup_page():
        return Response(SETUP_PAGE, mimetype="text/html")

    @app.route("/api/config", methods=["GET"])
    def get_config():
        data = read_config(settings.vars_path)
        if data is None:
            return jsonify({"configured": False, "example": CONFIG_EXAMPLE})
        return jsonify({"configured": True, "config": data})

    @app.route("/api/config", methods=["POST"])
    def save_config():
        data = _json_body()
        if not data:
            return jsonify({"error": "Configuration data is required"}), 400
        valid, errors = validate_config(data)
        if not valid:
            return jsonify({"error": "Invalid configuration", "errors": errors}), 400
        try:
            write_config(settings.vars_path, data)
        except OSError as exc:
            LOGGER.error("could not write configuration: %s", exc)
            return jsonify({"error": "Failed to save configuration", "message": str(exc)}), 500
        LOGGER.info("configuration saved to %s", settings.vars_path)
        return jsonify({"success": True, "message": "Konfigurasi berhasil disimpan! Restart aplikasi untuk menerapkannya."})

    @app.route("/api/pakasir/notification", methods=["POST"])
    def pakasir_notification():
        payload = _json_body()
        LOGGER.info("pakasir notification for %s: %s", payload.get("order_id"), payload.get("status"))
        if payload.get("project") != settings.pakasir_project or not payload.get("order_id") or not payload.get("status"):
            LOGGER.warning("rejected pakasir notification for project %r", payload.get("project"))
            return jsonify({"success": False, "message": "Invalid webhook payload"}), 403
        return _settle(str(payload["order_id"]), str(payload["status"]), paid=("completed",), failed=("cancelled", "failed"), expired=("expired",))

    @app.route("/api/midtrans/notification", methods=["POST"])
    def midtrans_notification():
        payload = _json_body()
        order_id = payload.get("order_id")
        status = str(payload.get("transaction_status") or "")
        LOGGER.info("midtrans notification for %s: %s", order_id, status)
        if not order_id:
            return jsonify({"success": False, "message": "order_id is required"}), 400
        if status in MIDTRANS_PAID and payload.get("fraud_status") not in (None, "", "accept"):
            LOGGER.warning("midtrans payment %s flagged with fraud status %s", order_id, payload.get("fraud_status"))
            return jsonify({"success": True, "message": "Payment under review"})
        return _settle(str(order_id), status, paid=MIDTRANS_PAID, failed=MIDTRANS_FAILED, expired=MIDTRANS_EXPIRED)

    def _settle(code: str, status: str, *, paid, failed, expired):
        deposit = deposits.get_deposit(bot_app.db, code) if bot_app is not None else None
        if not deposit:
            LOGGER.warning("notification for unknown deposit %s", code)
            return jsonify({"success": False, "message": "Deposit not found"}), 404
        if deposit["status"] != deposits.STATUS_PENDING:
            return jsonify({"success": True, "message": "Already processed"})
        if status in paid:
            result = bot_app.settle_gateway_payment(code, reference=code)
            message = "Payment processed successfully" if result.ok else "Already processed"
        elif status in failed or status in expired:
            outcome = deposits.STATUS_EXPIRED if status in expired else deposits.STATUS_FAILED
            bot_app.close_gateway_payment(code, outcome)
            message = f"Payment {status}"
        else:
            message = "Payment pending"
        return jsonify({"success": True, "message": message})

    return app
