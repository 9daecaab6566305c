"""
Nox Agent Payments — pricing table and x402 payment gate.

Paid routes call PaymentGate.check() with the X-PAYMENT header. Without a
header the caller gets a 402 document listing every way to pay (x402 USDC on
Base, Masumi, direct Cardano). With a header:

  - testnet_mode: any non-empty header is accepted (no settlement check)
  - otherwise:    the header is decoded (base64 JSON x402 payload) and sent to
                  the facilitator's /verify endpoint; only isValid=true passes

Settlement itself is the facilitator's job and out of scope here.
"""

import base64
import binascii
import json
import logging
import math
import urllib.error
import urllib.request
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


logger = logging.getLogger(__name__)

X402_VERSION = 1
USDC_DECIMALS = 6
ADA_PER_USD = 3

DEFAULT_FACILITATOR_URL = "https://x402.org/facilitator"

# (CAIP-2 network, USDC contract)
X402_NETWORKS = (
    ("eip155:8453", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"),    # Base
    ("eip155:84532", "0x036CbD53842c5426634e7929541eC2318f3dCF7e"),   # Base Sepolia
)

PRICING = {
    "web-research": {"quick": 5, "deep": 10},
    "hitl-verification": {"simple": 20, "medium": 35, "complex": 50},
    "web-scraping": {"single": 3, "multi": 8},
}

PRICE_KEYS = {
    "web-research": "web-research",
    "hitl-verification": "hitl",
    "web-scraping": "web-scrape",
}


class PaymentError(Exception):
    """Facilitator could not be reached or answered garbage."""


def price_for(service: str, tier: str) -> int:
    tiers = PRICING.get(service)
    if tiers is None:
        raise ValueError(f"Unknown service: {service}")
    if tier not in tiers:
        raise ValueError(f"Unknown tier '{tier}' for {service} (expected one of {sorted(tiers)})")
    return tiers[tier]


def flat_pricing() -> dict:
    """{"web-research-quick": 5, ...} as published on /availability."""
    return {f"{PRICE_KEYS[service]}-{tier}": usd
            for service, tiers in PRICING.items() for tier, usd in tiers.items()}


def usd_to_base_units(amount_usd) -> str:
    return str(int(Decimal(str(amount_usd)) * (10 ** USDC_DECIMALS)))


@dataclass
class PaymentResult:
    paid: bool
    status: int = 200
    body: Optional[dict] = None
    payer: Optional[str] = None
    network: Optional[str] = None


class PaymentGate:
    """Decides whether a request carries an acceptable payment."""

    def __init__(
        self,
        evm_wallet: str,
        cardano_wallet: str = "",
        public_url: str = "http://localhost:3000",
        facilitator_url: str = DEFAULT_FACILITATOR_URL,
        masumi_payment_url: Optional[str] = None,
        masumi_agent_id: Optional[str] = None,
        testnet_mode: bool = False,
        timeout: float = 10.0,
    ):
        self.evm_wallet = evm_wallet
        self.cardano_wallet = cardano_wallet
        self.public_url = public_url.rstrip("/")
        self.facilitator_url = facilitator_url.rstrip("/")
        self.masumi_payment_url = masumi_payment_url
        self.masumi_agent_id = masumi_agent_id
        self.testnet_mode = testnet_mode
        self.timeout = timeout

    # ── 402 documents ───────────────────────────────────────────────────────

    def requirements(self, service: str, amount_usd) -> dict:
        amount = usd_to_base_units(amount_usd)
        return {
            "x402Version": X402_VERSION,
            "accepts": [
                {
                    "scheme": "exact",
                    "network": network,
                    "maxAmountRequired": amount,
                    "resource": f"{self.public_url}/{service}",
                    "description": f"Nox Agent - {service}",
                    "mimeType": "application/json",
                    "payTo": self.evm_wallet,
                    "maxTimeoutSeconds": 300,
                    "asset": asset,
                }
                for network, asset in X402_NETWORKS
            ],
            "facilitatorUrl": self.facilitator_url,
        }

    def options(self, service: str, amount_usd) -> dict:
        return {
            "x402": self.requirements(service, amount_usd),
            "masumi": {
                "endpoint": self.masumi_payment_url,
                "agentId": self.masumi_agent_id,
            },
            "cardano": {
                "wallet": self.cardano_wallet,
                "amount": f"{math.ceil(amount_usd * ADA_PER_USD)} ADA",
            },
        }

    def payment_required(self, service: str, amount_usd, reason: Optional[str] = None) -> PaymentResult:
        body = {
            "error": "Payment Required",
            "message": f"This service costs ${amount_usd} USD",
            "paymentRequirements": self.requirements(service, amount_usd),
            "paymentOptions": self.options(service, amount_usd),
        }
        if reason:
            body["reason"] = reason
        return PaymentResult(paid=False, status=402, body=body)

    # ── Verification ────────────────────────────────────────────────────────

    def check(self, header: Optional[str], service: str, amount_usd) -> PaymentResult:
        if not header or not header.strip():
            return self.payment_required(service, amount_usd)

        if self.testnet_mode:
            logger.info("Payment header accepted (testnet mode): %s...", header[:50])
            return PaymentResult(paid=True)

        try:
            payload = decode_payment_header(header)
        except ValueError as e:
            return self.payment_required(service, amount_usd, reason=str(e))

        requirements = self.requirements(service, amount_usd)
        network = payload.get("network")
        accepted = [a for a in requirements["accepts"] if a["network"] == network]
        if not accepted:
            return self.payment_required(service, amount_usd, reason=f"Unsupported network: {network}")

        try:
            verdict = self._facilitator_verify(payload, accepted[0])
        except PaymentError as e:
            logger.error(f"Facilitator verify failed: {e}")
            return PaymentResult(paid=False, status=502, body={"error": "Payment facilitator unavailable"})

        if not verdict.get("isValid"):
            return self.payment_required(
                service, amount_usd, reason=verdict.get("invalidReason") or "Payment rejected")
        return PaymentResult(paid=True, payer=verdict.get("payer"), network=network)

    def _facilitator_verify(self, payload: dict, requirement: dict) -> dict:
        body = json.dumps({
            "x402Version": X402_VERSION,
            "paymentPayload": payload,
            "paymentRequirements": requirement,
        }).encode()
        req = urllib.request.Request(
            f"{self.facilitator_url}/verify", data=body,
            headers={"Content-Type": "application/json"}, method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            detail = e.read().decode(errors="replace") if e.fp else str(e)
            try:
                return json.loads(detail)
            except json.JSONDecodeError:
                raise PaymentError(f"HTTP {e.code}: {detail[:200]}") from e
        except (urllib.error.URLError, OSError, json.JSONDecodeError) as e:
            raise PaymentError(str(e)) from e


def decode_payment_header(header: str) -> dict:
    """Decode an X-PAYMENT header (base64 of the x402 payment payload JSON)."""
    try:
        raw = base64.b64decode(header.strip(), validate=True)
        payload = json.loads(raw)
    except (binascii.Error, ValueError) as e:
        raise ValueError("X-PAYMENT header is not base64-encoded JSON") from e
    if not isinstance(payload, dict) or "payload" not in payload:
        raise ValueError("X-PAYMENT payload is missing the 'payload' field")
    return payload


def encode_payment_header(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()
