"""
The webhook endpoint, built with Flask. It verifies GitHub-style signed
deliveries and hands them to the orchestrator as events. A status page
reports whether the deployed application is running.
"""

import hashlib
import hmac
import json
import logging

from flask import Flask, abort, jsonify, request

from cd_system import config
from cd_system.orchestrator import Event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"


def sign(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign(secret, body), signature)


def _read_payload():
    # GitHub sends either a JSON body or a form field named "payload"
    if request.mimetype == "application/x-www-form-urlencoded":
        try:
            return json.loads(request.form.get("payload", ""))
        except ValueError:
            return None
    return request.get_json(silent=True)


def create_app(secret: str, orchestrator) -> Flask:
    app = Flask(__name__)
    app.config["WEBHOOK_SECRET"] = secret

    @app.route("/")
    def status():
        active = orchestrator.is_active()
        return jsonify(status="active" if active else "inactive", state=orchestrator.state.value)

    @app.route(config.WEBHOOK_PATH, methods=["POST"])
    def webhook():
        body = request.get_data(cache=True)
        if not verify_signature(app.config["WEBHOOK_SECRET"], body, request.headers.get(SIGNATURE_HEADER, "")):
            logger.warning(f"Rejected delivery {request.headers.get(DELIVERY_HEADER)}: bad signature")
            abort(401)

        name = request.headers.get(EVENT_HEADER)
        delivery_id = request.headers.get(DELIVERY_HEADER)
        if not name or not delivery_id:
            abort(400)

        payload = _read_payload()
        if payload is None:
            abort(400)

        orchestrator.handle_event(Event(name, delivery_id, payload))
        return jsonify(ok=True)

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify(ok=False, error="Malformed webhook delivery"), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify(ok=False, error="Signature does not match"), 401

    return app
