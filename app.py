"""
Paygate - x402 SPL token payment verification service.

REST microservice that gates API routes behind on-chain SPL token payments.
Clients send a signed transfer transaction; the service submits it through
Solana JSON-RPC, confirms it, reconciles the token balance changes against
the configured recipient and mint, and records one payment per signature.

Two recipient modes:
  wallet       payment goes to X402_PAYMENT_WALLET's token account
  reward_pool  payment goes straight into the reward pool vault
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import Flask, current_app, g, jsonify, request

from paygate import __version__
from paygate.config import PaymentConfig
from paygate.repository import MAX_HISTORY_LIMIT, PaymentRepository
from paygate.rpc import SolanaRpcClient
from paygate.verifier import FailureReason, PaymentVerifier
from paygate.x402 import REQUESTER_HEADER, require_payment

logger = logging.getLogger(__name__)


@dataclass
class PaygateState:
    config: PaymentConfig
    verifier: PaymentVerifier
    repository: PaymentRepository


def configure_logging(level=None):
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(config=None, rpc=None, repository=None):
    """Build the Flask app; collaborators are injectable for tests."""
    config = config or PaymentConfig.from_env()
    rpc = rpc or SolanaRpcClient(config.rpc_url, timeout=config.rpc_timeout)
    if repository is None:
        repository = PaymentRepository(config.database_url)
        repository.create_all()
    verifier = PaymentVerifier.from_config(config, rpc, repository)

    app = Flask(__name__)
    app.extensions["paygate"] = PaygateState(config=config, verifier=verifier, repository=repository)
    register_routes(app)
    return app


def _state():
    return current_app.extensions["paygate"]


# ---------------------------------------------------------------------------
# Flask Routes
# ---------------------------------------------------------------------------
def register_routes(app):

    @app.route("/health", methods=["GET"])
    def health():
        state = _state()
        return jsonify({
            "status": "ok",
            "service": "paygate",
            "version": __version__,
            "network": state.config.network_label,
            "mode": state.config.mode,
            "paywall_enabled": state.config.x402_enabled,
            "recipient": state.verifier.recipient,
            "rpc_endpoint": state.config.rpc_url[:50] + "...",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.route("/payment/requirements", methods=["GET"])
    def requirements_endpoint():
        return jsonify(_state().verifier.payment_requirements())

    @app.route("/payment/verify", methods=["POST"])
    def verify_endpoint():
        data = request.get_json(force=True, silent=True)
        if not data or not isinstance(data, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400

        serialized = data.get("serializedTransaction")
        if not serialized or not isinstance(serialized, str):
            return jsonify({"error": "Missing or invalid 'serializedTransaction'. Must be base64."}), 400

        endpoint = data.get("endpoint") or request.path
        requester_id = data.get("requesterId") or request.headers.get(REQUESTER_HEADER)
        if not isinstance(endpoint, str) or (requester_id is not None and not isinstance(requester_id, str)):
            return jsonify({"error": "'endpoint' and 'requesterId' must be strings"}), 400

        try:
            result = _state().verifier.verify(serialized, endpoint, requester_id)
        except Exception as e:
            logger.exception("Payment verification failed unexpectedly")
            return jsonify({
                "error": "verification_failed",
                "detail": str(e)[:500],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }), 500

        if result.accepted:
            return jsonify(result.to_dict())
        status = 400 if result.failure_reason is FailureReason.MALFORMED_TRANSACTION else 402
        body = result.to_dict()
        body["requirements"] = _state().verifier.payment_requirements()
        return jsonify(body), status

    @app.route("/payment/<signature>", methods=["GET"])
    def payment_endpoint(signature):
        record = _state().repository.find_by_signature(signature)
        if record is None:
            return jsonify({"error": "Payment not found", "signature": signature}), 404
        body = record.to_dict()
        body["expired"] = record.is_expired()
        return jsonify(body)

    @app.route("/payments", methods=["GET"])
    def payments_endpoint():
        requester = request.args.get("requester")
        if not requester:
            return jsonify({"error": "Missing 'requester' query parameter"}), 400
        try:
            limit = int(request.args.get("limit", 20))
        except ValueError:
            return jsonify({"error": "'limit' must be an integer"}), 400

        records = _state().repository.list_by_requester(requester, limit=limit)
        return jsonify({
            "requester": requester,
            "total": len(records),
            "limit": max(1, min(limit, MAX_HISTORY_LIMIT)),
            "payments": [r.to_dict() for r in records],
        })

    @app.route("/api/premium/ping", methods=["GET"])
    @require_payment
    def premium_ping():
        payment = getattr(g, "payment", None)
        return jsonify({
            "success": True,
            "message": "pong",
            "payment": payment.to_dict() if payment is not None else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @app.route("/", methods=["GET"])
    def root():
        return jsonify({
            "service": "Paygate",
            "description": "x402 SPL token payment verification for paid API routes",
            "version": __version__,
            "endpoints": {
                "GET /health": "Health check with network and paywall status",
                "GET /payment/requirements": "Recipient, amount, token and network to pay",
                "POST /payment/verify": "Submit and verify a signed payment transaction",
                "GET /payment/<signature>": "Look up a recorded payment",
                "GET /payments?requester=...": "Payment history for a requester",
                "GET /api/premium/ping": "Sample route behind the x402 paywall",
            },
            "verify_body": {
                "serializedTransaction": "(required) base64 signed SPL token transfer",
                "endpoint": "(optional) route the payment unlocks, recorded for audit",
                "requesterId": "(optional) caller identity",
            },
            "x402_header": {
                "X-PAYMENT": '{"x402Version": 1, "scheme": "exact", "network": "solana-devnet", '
                             '"payload": {"serializedTransaction": "<base64>"}}',
            },
        })


if __name__ == "__main__":
    configure_logging()
    app = create_app()
    port = int(os.environ.get("PORT", 8787))
    app.run(host="0.0.0.0", port=port, debug=False)
