import base64
import json
from dataclasses import replace

import pytest

from app import create_app
from paygate.rpc import SolanaRpcError
from paygate.x402 import InvalidPaymentHeader, parse_payment_header
from tests.conftest import REQUIRED_AMOUNT, build_payment


@pytest.fixture
def app(config, rpc, repository):
    return create_app(config=config, rpc=rpc, repository=repository)


@pytest.fixture
def paywalled_app(config, rpc, repository):
    return create_app(config=replace(config, x402_enabled=True), rpc=rpc, repository=repository)


def _x_payment(encoded, network="solana-devnet"):
    return json.dumps({
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": {"serializedTransaction": encoded},
    })


def test_health_and_root(app):
    client = app.test_client()
    health = client.get("/health").get_json()
    assert health["status"] == "ok"
    assert health["network"] == "solana-devnet"
    assert health["paywall_enabled"] is False

    root = client.get("/").get_json()
    assert "POST /payment/verify" in root["endpoints"]


def test_requirements(app):
    body = app.test_client().get("/payment/requirements").get_json()
    assert body["amount"] == REQUIRED_AMOUNT
    assert body["network"] == "solana-devnet"


def test_verify_endpoint_accepts_payment(app):
    encoded, signature, _ = build_payment()
    resp = app.test_client().post("/payment/verify", json={
        "serializedTransaction": encoded,
        "endpoint": "/api/premium/ping",
        "requesterId": "user-1",
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["accepted"] is True
    assert body["payment"]["signature"] == signature
    assert body["payment"]["status"] == "confirmed"
    assert body["payment"]["endpoint"] == "/api/premium/ping"


def test_verify_endpoint_rejects_low_amount_with_402(app):
    encoded, _, _ = build_payment(amount=50_000)
    resp = app.test_client().post("/payment/verify", json={"serializedTransaction": encoded})
    assert resp.status_code == 402
    body = resp.get_json()
    assert body["failure_reason"] == "InsufficientAmount"
    assert body["requirements"]["amount"] == REQUIRED_AMOUNT


def test_verify_endpoint_bad_input(app):
    client = app.test_client()
    assert client.post("/payment/verify", data="nope").status_code == 400
    assert client.post("/payment/verify", json={}).status_code == 400
    resp = client.post("/payment/verify", json={"serializedTransaction": "!!!"})
    assert resp.status_code == 400
    assert resp.get_json()["failure_reason"] == "MalformedTransaction"


def test_verify_endpoint_unexpected_error_is_500(app, repository, monkeypatch):
    def boom(signature):
        raise RuntimeError("db exploded")

    monkeypatch.setattr(repository, "find_by_signature", boom)
    encoded, _, _ = build_payment()
    resp = app.test_client().post("/payment/verify", json={"serializedTransaction": encoded})
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "verification_failed"


def test_payment_lookup_and_history(app):
    client = app.test_client()
    encoded, signature, _ = build_payment()
    client.post("/payment/verify", json={"serializedTransaction": encoded, "requesterId": "user-7"})

    found = client.get(f"/payment/{signature}")
    assert found.status_code == 200
    assert found.get_json()["expired"] is False
    assert client.get("/payment/unknown").status_code == 404

    history = client.get("/payments?requester=user-7").get_json()
    assert history["total"] == 1
    assert history["payments"][0]["signature"] == signature
    assert client.get("/payments").status_code == 400
    assert client.get("/payments?requester=x&limit=abc").status_code == 400


def test_premium_route_open_when_paywall_disabled(app, rpc):
    resp = app.test_client().get("/api/premium/ping")
    assert resp.status_code == 200
    assert resp.get_json()["payment"] is None
    rpc.send_transaction.assert_not_called()


def test_premium_route_requires_payment(paywalled_app):
    resp = paywalled_app.test_client().get("/api/premium/ping")
    assert resp.status_code == 402
    body = resp.get_json()
    assert body["paymentRequired"] is True
    assert body["x402"]["version"] == 1
    assert body["x402"]["amount"] == REQUIRED_AMOUNT


def test_premium_route_with_valid_payment(paywalled_app):
    encoded, signature, _ = build_payment()
    resp = paywalled_app.test_client().get(
        "/api/premium/ping",
        headers={"X-PAYMENT": _x_payment(encoded), "X-Requester-Id": "user-3"},
    )
    assert resp.status_code == 200
    payment = resp.get_json()["payment"]
    assert payment["signature"] == signature
    assert payment["endpoint"] == "/api/premium/ping"
    assert payment["requester_id"] == "user-3"


def test_premium_route_accepts_base64_header(paywalled_app):
    encoded, _, _ = build_payment()
    header = base64.b64encode(_x_payment(encoded).encode()).decode()
    resp = paywalled_app.test_client().get("/api/premium/ping", headers={"X-PAYMENT": header})
    assert resp.status_code == 200


def test_premium_route_rejected_payment(paywalled_app, rpc):
    rpc.send_transaction.side_effect = SolanaRpcError("Blockhash not found")
    encoded, _, _ = build_payment()
    resp = paywalled_app.test_client().get("/api/premium/ping", headers={"X-PAYMENT": _x_payment(encoded)})
    assert resp.status_code == 402
    assert resp.get_json()["failureReason"] == "SubmissionFailed"


def test_premium_route_bad_headers(paywalled_app):
    client = paywalled_app.test_client()
    assert client.get("/api/premium/ping", headers={"X-PAYMENT": "{not json"}).status_code == 400
    assert client.get("/api/premium/ping", headers={"X-PAYMENT": json.dumps({"x402Version": 1})}).status_code == 400

    encoded, _, _ = build_payment()
    mismatch = client.get("/api/premium/ping", headers={"X-PAYMENT": _x_payment(encoded, "solana-mainnet")})
    assert mismatch.status_code == 400
    assert "mismatch" in mismatch.get_json()["error"]


def test_parse_payment_header_normalises_network():
    parsed = parse_payment_header(_x_payment("AAAA", network="devnet"))
    assert parsed["network"] == "devnet"
    with pytest.raises(InvalidPaymentHeader, match="serialized transaction"):
        parse_payment_header(json.dumps({"x402Version": 1, "scheme": "exact",
                                         "network": "solana-devnet", "payload": {"x": 1}}))
    with pytest.raises(InvalidPaymentHeader):
        parse_payment_header(_x_payment("AAAA", network="solana-moon"))
    with pytest.raises(InvalidPaymentHeader):
        parse_payment_header("[1, 2]")


@pytest.mark.parametrize("body", [[1, 2], "a string", 42])
def test_verify_endpoint_non_object_body(app, body):
    resp = app.test_client().post("/payment/verify", json=body)
    assert resp.status_code == 400
    assert "JSON object" in resp.get_json()["error"]


@pytest.mark.parametrize("extra", [
    {"endpoint": ["a"]},
    {"endpoint": 7},
    {"requesterId": {"id": 1}},
    {"requesterId": 12},
])
def test_verify_endpoint_rejects_non_string_fields(app, rpc, repository, extra):
    encoded, signature, _ = build_payment()
    resp = app.test_client().post("/payment/verify", json={"serializedTransaction": encoded, **extra})
    assert resp.status_code == 400
    assert "must be strings" in resp.get_json()["error"]
    rpc.send_transaction.assert_not_called()
    assert repository.find_by_signature(signature) is None
