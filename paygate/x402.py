"""
x402 paywall for Flask routes.

A guarded route answers ``402 Payment Required`` with the payment
requirements until the client retries with an ``X-PAYMENT`` header whose
payload carries a signed transfer transaction. The header is JSON, either
raw or base64-encoded.
"""

import base64
import binascii
import functools
import json
import logging

from flask import current_app, g, jsonify, request

from paygate.config import normalize_network
from paygate.verifier import FailureReason

logger = logging.getLogger(__name__)

X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
REQUESTER_HEADER = "X-Requester-Id"


class InvalidPaymentHeader(ValueError):
    pass


def parse_payment_header(header):
    """Parse and validate an ``X-PAYMENT`` header value."""
    try:
        data = json.loads(header)
    except ValueError:
        try:
            data = json.loads(base64.b64decode(header, validate=True))
        except (binascii.Error, ValueError):
            raise InvalidPaymentHeader("Invalid X-PAYMENT header format. Expected JSON.") from None

    if not isinstance(data, dict):
        raise InvalidPaymentHeader("Invalid X-PAYMENT header format. Expected JSON object.")

    missing = [f for f in ("x402Version", "scheme", "network", "payload") if not data.get(f)]
    if missing:
        raise InvalidPaymentHeader(
            f"Invalid x402 payment structure. Missing required fields: {', '.join(missing)}"
        )

    payload = data["payload"]
    if not isinstance(payload, dict) or not payload.get("serializedTransaction"):
        raise InvalidPaymentHeader("Missing serialized transaction in payment payload.")

    try:
        data["network"] = normalize_network(data["network"])
    except ValueError as e:
        raise InvalidPaymentHeader(str(e)) from None
    return data


def payment_required_response(verifier, message=None):
    requirements = verifier.payment_requirements()
    body = {
        "success": False,
        "error": "Payment required",
        "paymentRequired": True,
        "x402": {
            "version": X402_VERSION,
            **requirements,
            "message": message or "This endpoint requires payment.",
        },
    }
    return jsonify(body), 402


def require_payment(view):
    """Route decorator enforcing a verified x402 payment when the paywall is on."""

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        state = current_app.extensions["paygate"]
        if not state.config.x402_enabled:
            return view(*args, **kwargs)

        verifier = state.verifier
        header = request.headers.get(PAYMENT_HEADER)
        if not header:
            return payment_required_response(verifier)

        try:
            payment = parse_payment_header(header)
        except InvalidPaymentHeader as e:
            return jsonify({"success": False, "error": str(e)}), 400

        if payment["network"] != verifier.network.value:
            return jsonify({
                "success": False,
                "error": f"Payment network mismatch: expected solana-{verifier.network.value}",
            }), 400

        try:
            result = verifier.verify(
                payment["payload"]["serializedTransaction"],
                request.path,
                request.headers.get(REQUESTER_HEADER),
            )
        except Exception as e:
            logger.exception("x402 payment verification error")
            return jsonify({
                "success": False,
                "error": "Internal server error during payment verification.",
                "detail": str(e)[:500],
            }), 500

        if not result.accepted:
            status = 400 if result.failure_reason is FailureReason.MALFORMED_TRANSACTION else 402
            return jsonify({
                "success": False,
                "error": "Payment verification failed",
                "failureReason": result.failure_reason.value,
                "details": result.detail,
                "paymentRequired": status == 402,
            }), status

        g.payment = result.record
        return view(*args, **kwargs)

    return wrapper
