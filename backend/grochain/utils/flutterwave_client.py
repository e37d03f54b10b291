from __future__ import annotations

import hmac

import requests

from grochain.config import setting
from grochain.errors import ProviderError, ProviderTimeout

PROVIDER = "flutterwave"


def _secret() -> str:
    return (setting("FLUTTERWAVE_SECRET_KEY") or "").strip()


def _base_url() -> str:
    return (setting("FLUTTERWAVE_BASE_URL") or "https://api.flutterwave.com/v3").rstrip("/")


def _headers() -> dict:
    return {"Authorization": f"Bearer {_secret()}", "Content-Type": "application/json"}


def verify_signature(hash_header: str | None) -> bool:
    """Flutterwave sends the dashboard "secret hash" verbatim in the verif-hash header."""
    expected = (setting("FLUTTERWAVE_WEBHOOK_HASH") or "").strip()
    if not expected or not hash_header:
        return False
    return hmac.compare_digest(expected, hash_header.strip())


def initialize_transaction(
    email: str,
    amount_ngn: float,
    reference: str,
    callback_url: str = "",
    customer_name: str = "",
    order_id: int | None = None,
) -> dict:
    secret = _secret()
    if not secret:
        return {"ok": False, "error": "FLUTTERWAVE_SECRET_KEY not set"}
    payload = {
        "tx_ref": reference,
        "amount": float(amount_ngn),
        "currency": "NGN",
        "redirect_url": callback_url,
        "payment_options": "card,mobilemoney,ussd",
        "customer": {"email": email, "name": customer_name},
        "customizations": {"title": "GroChain Payment", "description": f"Payment for order {order_id}"},
        "meta": {"order_id": order_id},
    }
    try:
        r = requests.post(f"{_base_url()}/payments", headers=_headers(), json=payload, timeout=float(setting("GATEWAY_TIMEOUT_SECONDS", 10.0)))
        j = r.json() if r.content else {}
        if 200 <= r.status_code < 300 and j.get("status") == "success":
            data = j.get("data") or {}
            return {"ok": True, "link": data.get("link", ""), "reference": reference}
        return {"ok": False, "error": j.get("message") or f"HTTP {r.status_code}"}
    except (requests.RequestException, ValueError) as e:
        return {"ok": False, "error": str(e)}


def verify_transaction(reference: str, transaction_id: str | int | None = None) -> dict:
    """Verify by Flutterwave transaction id when we have one, else by our tx_ref.

    Returns the `data` object; raises ProviderTimeout / ProviderError.
    """
    if transaction_id:
        url = f"{_base_url()}/transactions/{transaction_id}/verify"
        params = None
    else:
        url = f"{_base_url()}/transactions/verify_by_reference"
        params = {"tx_ref": reference}
    try:
        r = requests.get(url, headers=_headers(), params=params, timeout=float(setting("GATEWAY_TIMEOUT_SECONDS", 10.0)))
    except requests.Timeout as e:
        raise ProviderTimeout(PROVIDER, f"verification timed out: {e}") from e
    except requests.RequestException as e:
        raise ProviderError(PROVIDER, f"verification request failed: {e}") from e

    try:
        j = r.json() if r.content else {}
    except ValueError as e:
        raise ProviderError(PROVIDER, "invalid JSON from provider", r.status_code) from e

    if not (200 <= r.status_code < 300):
        raise ProviderError(PROVIDER, j.get("message") or f"HTTP {r.status_code}", r.status_code)
    data = j.get("data")
    if j.get("status") != "success" or not isinstance(data, dict):
        raise ProviderError(PROVIDER, j.get("message") or "malformed verification response", r.status_code)
    return data
