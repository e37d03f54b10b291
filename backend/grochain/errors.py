"""Settlement error taxonomy.

Only ProviderVerificationFailed and PaymentNotSuccessful ever escape the
settlement coordinator. The others are raised and handled inside the
enrichment steps (inventory, commission, notification) and end up in logs,
audit rows and per-item outcomes.
"""

from __future__ import annotations


class SettlementError(Exception):
    pass


class UnsupportedProvider(SettlementError):
    def __init__(self, provider: str):
        super().__init__(f"Unsupported payment provider: {provider}")
        self.provider = provider


class TransactionNotFound(SettlementError):
    def __init__(self, reference: str):
        super().__init__(f"Transaction not found: {reference}")
        self.reference = reference


class ProviderVerificationFailed(SettlementError):
    """Recoverable: the provider could not tell us the truth right now."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class ProviderTimeout(ProviderVerificationFailed):
    pass


class ProviderError(ProviderVerificationFailed):
    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(provider, message)
        self.status_code = status_code


class PaymentNotSuccessful(SettlementError):
    """The provider confirmed the charge failed. Terminal for the reference."""

    def __init__(self, reference: str, provider_status: str = ""):
        super().__init__(f"Payment {reference} was not successful ({provider_status or 'failed'})")
        self.reference = reference
        self.provider_status = provider_status


class InsufficientInventory(SettlementError):
    def __init__(self, listing_id: int, requested: float, available: float | None):
        super().__init__(f"Listing {listing_id}: requested {requested}, available {available}")
        self.listing_id = listing_id
        self.requested = requested
        self.available = available


class DuplicateCommission(SettlementError):
    def __init__(self, commission_id: int | None = None):
        super().__init__(f"Commission already recorded ({commission_id})")
        self.commission_id = commission_id


class NotificationDispatchFailure(SettlementError):
    pass
