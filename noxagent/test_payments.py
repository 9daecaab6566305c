"""
Tests for payments.py — pricing, 402 documents and the payment gate.

The facilitator is a local mock HTTP server.
"""

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from noxagent.payments import (
    PaymentGate, decode_payment_header, encode_payment_header, flat_pricing, price_for,
    usd_to_base_units,
)


WALLET = "0x884428a7e667A8AC04EF904Ad8ec75E55bbC9Ad7"


# ── Mock facilitator ──────────────────────────────────────────────────────────

class MockFacilitator(BaseHTTPRequestHandler):
    calls = []
    verdict = {"isValid": True, "payer": "0xPayer"}
    status = 200

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = json.loads(self.rfile.read(length))
        self.__class__.calls.append((self.path, body))
        data = json.dumps(self.__class__.verdict).encode()
        self.send_response(self.__class__.status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, fmt, *args):
        pass


@pytest.fixture(scope="module")
def facilitator_url():
    server = HTTPServer(("127.0.0.1", 0), MockFacilitator)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()


@pytest.fixture(autouse=True)
def reset_facilitator():
    MockFacilitator.calls = []
    MockFacilitator.verdict = {"isValid": True, "payer": "0xPayer"}
    MockFacilitator.status = 200


@pytest.fixture
def gate(facilitator_url):
    return PaymentGate(evm_wallet=WALLET, cardano_wallet="addr_test1xyz",
                       public_url="https://nox.example", facilitator_url=facilitator_url,
                       masumi_payment_url="https://masumi.example/pay", masumi_agent_id="agent-1")


def payment_header(network="eip155:84532"):
    return encode_payment_header({
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": {"signature": "0xsig", "authorization": {"from": "0xPayer", "to": WALLET, "value": "5000000"}},
    })


# ── Pricing ───────────────────────────────────────────────────────────────────

class TestPricing:

    def test_known_prices(self):
        assert price_for("web-research", "quick") == 5
        assert price_for("web-research", "deep") == 10
        assert price_for("hitl-verification", "complex") == 50
        assert price_for("web-scraping", "multi") == 8

    def test_unknown_service_or_tier(self):
        with pytest.raises(ValueError):
            price_for("telepathy", "quick")
        with pytest.raises(ValueError):
            price_for("web-research", "eternal")

    def test_flat_pricing_keys(self):
        flat = flat_pricing()
        assert flat["web-research-quick"] == 5
        assert flat["hitl-medium"] == 35
        assert flat["web-scrape-single"] == 3
        assert len(flat) == 7

    def test_usdc_base_units(self):
        assert usd_to_base_units(5) == "5000000"
        assert usd_to_base_units(0.25) == "250000"


# ── 402 documents ─────────────────────────────────────────────────────────────

class TestPaymentRequired:

    def test_missing_header_is_402(self, gate):
        result = gate.check(None, "web-research", 5)
        assert not result.paid
        assert result.status == 402
        assert result.body["error"] == "Payment Required"
        assert result.body["message"] == "This service costs $5 USD"

    def test_requirements_document(self, gate):
        req = gate.requirements("web-research", 10)
        assert req["x402Version"] == 1
        networks = [a["network"] for a in req["accepts"]]
        assert networks == ["eip155:8453", "eip155:84532"]
        for accept in req["accepts"]:
            assert accept["maxAmountRequired"] == "10000000"
            assert accept["payTo"] == WALLET
            assert accept["resource"] == "https://nox.example/web-research"
            assert accept["maxTimeoutSeconds"] == 300

    def test_alternative_rails(self, gate):
        opts = gate.options("hitl-verification", 20)
        assert opts["cardano"] == {"wallet": "addr_test1xyz", "amount": "60 ADA"}
        assert opts["masumi"]["agentId"] == "agent-1"
        assert opts["x402"]["accepts"][0]["maxAmountRequired"] == "20000000"


# ── Verification ──────────────────────────────────────────────────────────────

class TestGate:

    def test_testnet_accepts_anything(self, facilitator_url):
        gate = PaymentGate(evm_wallet=WALLET, facilitator_url=facilitator_url, testnet_mode=True)
        assert gate.check("whatever", "web-scraping", 3).paid
        assert MockFacilitator.calls == []

    def test_garbage_header_rejected(self, gate):
        result = gate.check("not-base64!!", "web-scraping", 3)
        assert result.status == 402
        assert "base64" in result.body["reason"]

    def test_unsupported_network(self, gate):
        result = gate.check(payment_header("eip155:1"), "web-scraping", 3)
        assert result.status == 402
        assert "eip155:1" in result.body["reason"]

    def test_facilitator_accepts(self, gate):
        result = gate.check(payment_header(), "web-scraping", 3)
        assert result.paid
        assert result.payer == "0xPayer"
        path, body = MockFacilitator.calls[0]
        assert path == "/verify"
        assert body["paymentRequirements"]["network"] == "eip155:84532"
        assert body["paymentRequirements"]["maxAmountRequired"] == "3000000"

    def test_facilitator_rejects(self, gate):
        MockFacilitator.verdict = {"isValid": False, "invalidReason": "insufficient_funds"}
        result = gate.check(payment_header(), "web-scraping", 3)
        assert not result.paid
        assert result.status == 402
        assert result.body["reason"] == "insufficient_funds"

    def test_facilitator_error_body_still_parsed(self, gate):
        MockFacilitator.status = 400
        MockFacilitator.verdict = {"isValid": False, "invalidReason": "invalid_signature"}
        result = gate.check(payment_header(), "web-scraping", 3)
        assert result.status == 402
        assert result.body["reason"] == "invalid_signature"

    def test_facilitator_unreachable_is_502(self):
        gate = PaymentGate(evm_wallet=WALLET, facilitator_url="http://127.0.0.1:9", timeout=1)
        result = gate.check(payment_header(), "web-scraping", 3)
        assert not result.paid
        assert result.status == 502


def test_decode_requires_payload_field():
    with pytest.raises(ValueError):
        decode_payment_header(encode_payment_header({"network": "eip155:8453"}))
    assert decode_payment_header(payment_header())["network"] == "eip155:84532"
