"""Gateway adapter: one verification result shape for Paystack and Flutterwave.

"Not paid yet" and "declined" are ordinary results (``paid=False``); only
transport problems, timeouts and malformed answers raise, as
ProviderVerificationFailed subclasses, and those are always safe to retry.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from grochain.config import SUPPORTED_PROVIDERS, is_test_mode
from grochain.errors import UnsupportedProvider
from grochain.utils import flutterwave_client, paystack_client

logger = logging.getLogger(__name__)

# Provider statuses that will never turn into a successful charge for the same reference
DECLINED_STATUSES = {"failed", "reversed", "cancelled"}


@dataclass
class GatewayResult:
    success: bool
    paid: bool
    amount: float
    channel: str = ""
    customer: dict = field(default_factory=dict)
    status: str = ""
    reference: str = ""
    provider: str = ""
    paid_at: str | None = None
    test_mode: bool = False
    # the provider's own id for the charge, used for id-based re-verification
    provider_transaction_id: str = ""

    @property
    def declined(self) -> bool:
        return not self.paid and self.status in DECLINED_STATUSES

    def to_dict(self) -> dict:
        return asdict(self)


class PaystackGateway:
    name = "paystack"

    def verify(self, reference: str, **_) -> GatewayResult:
        data = paystack_client.verify_transaction(reference)
        status = str(data.get("status") or "").lower()
        # Paystack amounts are in kobo
        try:
            amount = float(data.get("amount") or 0) / 100.0
        except (TypeError, ValueError):
            amount = 0.0
        return GatewayResult(
            success=True,
            paid=status == "success",
            amount=amount,
            channel=data.get("channel") or "",
            customer=data.get("customer") or {},
            status=status,
            reference=data.get("reference") or reference,
            provider=self.name,
            paid_at=data.get("paid_at"),
            provider_transaction_id=str(data.get("id") or ""),
        )


class FlutterwaveGateway:
    name = "flutterwave"

    def verify(self, reference: str, transaction_id: str | int | None = None, **_) -> GatewayResult:
        data = flutterwave_client.verify_transaction(reference, transaction_id=transaction_id)
        status = str(data.get("status") or "").lower()
        tx_ref = str(data.get("tx_ref") or "")
        if tx_ref and tx_ref != reference:
            # an id lookup can land on a charge made for some other reference
            logger.warning("flutterwave charge %s belongs to %s, not %s", transaction_id, tx_ref, reference)
        try:
            amount = float(data.get("amount") or 0)
        except (TypeError, ValueError):
            amount = 0.0
        return GatewayResult(
            success=True,
            paid=status == "successful" and tx_ref in ("", reference),
            amount=amount,
            channel=data.get("payment_type") or "",
            customer=data.get("customer") or {},
            status=status,
            reference=tx_ref or reference,
            provider=self.name,
            paid_at=data.get("created_at"),
            provider_transaction_id=str(data.get("id") or ""),
        )


class AutoVerifyGateway:
    """Deterministic always-paid stand-in used when no provider credentials are configured."""

    def __init__(self, provider: str):
        self.name = provider

    def verify(self, reference: str, expected_amount: float | None = None, **_) -> GatewayResult:
        return GatewayResult(
            success=True,
            paid=True,
            amount=float(expected_amount or 0.0),
            channel="card",
            customer={"email": "test@example.com", "customer_code": "CUS_TEST"},
            status="success",
            reference=reference,
            provider=self.name,
            paid_at=datetime.utcnow().isoformat(),
            test_mode=True,
        )


_GATEWAYS = {
    "paystack": PaystackGateway,
    "flutterwave": FlutterwaveGateway,
}


def normalize_provider(provider: str | None, default: str = "paystack") -> str:
    p = (provider or default or "paystack").strip().lower()
    if p not in SUPPORTED_PROVIDERS:
        raise UnsupportedProvider(p)
    return p


def get_gateway(provider: str | None):
    p = normalize_provider(provider)
    if is_test_mode(p):
        logger.info("%s not configured; using auto-verify gateway", p)
        return AutoVerifyGateway(p)
    return _GATEWAYS[p]()
