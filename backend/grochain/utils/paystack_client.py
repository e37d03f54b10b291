from __future__ import annotations

import hashlib
import hmac

import requests

from grochain.config import setting
from grochain.errors import ProviderError, ProviderTimeout

PROVIDER = "paystack"


def _secret() -> str:
    return (setting("PAYSTACK_SECRET_KEY") or "").strip()


def _base_url() -> str:
    return (setting("PAYSTACK_BASE_URL") or "https://api.paystack.co").rstrip("/")


def _headers() -> dict:
    return {"Authorization": f"Bearer {_secret()}", "Content-Type": "application/json"}


def to_kobo(amount_ngn: float) -> int:
    return int(round(float(amount_ngn) * 100))


def verify_signature(raw_body: bytes, signature_header: str | None) -> bool:
    secret = _secret()
    if not secret or not signature_header:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(digest, signature_header.strip())


def initialize_transaction(email: str, amount_ngn: float, reference: str, callback_url: str = "", metadata: dict | None = None) -> dict:
    secret = _secret()
    if not secret:
        return {"ok": False, "error": "PAYSTACK_SECRET_KEY not set"}
    url = f"{_base_url()}/transaction/initialize"
    payload = {"email": email, "amount": to_kobo(amount_ngn), "reference": reference}
    if callback_url:
        payload["callback_url"] = callback_url
    if metadata:
        payload["metadata"] = metadata
    try:
        r = requests.post(url, headers=_headers(), json=payload, timeout=float(setting("GATEWAY_TIMEOUT_SECONDS", 10.0)))
        j = r.json() if r.content else {}
        if 200 <= r.status_code < 300 and j.get("status") is True:
            data = j.get("data") or {}
            return {
                "ok": True,
                "authorization_url": data.get("authorization_url", ""),
                "access_code": data.get("access_code", ""),
                "reference": data.get("reference", reference),
            }
        return {"ok": False, "error": j.get("message") or f"HTTP {r.status_code}"}
    except (requests.RequestException, ValueError) as e:
        return {"ok": False, "error": str(e)}


def verify_transaction(reference: str) -> dict:
    """GET /transaction/verify/:reference and return the `data` object.

    Raises ProviderTimeout / ProviderError; an unsuccessful charge is NOT an
    error here, it comes back as data with a non-"success" status.
    """
    url = f"{_base_url()}/transaction/verify/{reference}"
    try:
        r = requests.get(url, headers=_headers(), timeout=float(setting("GATEWAY_TIMEOUT_SECONDS", 10.0)))
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
    if j.get("status") is not True or not isinstance(data, dict):
        raise ProviderError(PROVIDER, j.get("message") or "malformed verification response", r.status_code)
    return data
