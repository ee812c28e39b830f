from __future__ import annotations


class BillingError(Exception):
    pass


class PaymentValidationError(BillingError):
    pass


class TransientProviderError(BillingError):
    pass


class ProviderUnavailableError(TransientProviderError):
    pass


class ProviderTimeoutError(TransientProviderError):
    pass


class ProviderRejectedError(BillingError):
    pass


class RetryExhaustedError(BillingError):
    def __init__(self, *, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"provider verification failed after {attempts} attempts")
        self.attempts = attempts
        self.last_error = last_error


class PaymentFailedError(BillingError):
    def __init__(self, *, reference: str, provider_status: str) -> None:
        super().__init__(f"payment {reference} reported as {provider_status}")
        self.reference = reference
        self.provider_status = provider_status


class PersistenceError(BillingError):
    pass


class PurchaseNotFoundError(BillingError):
    pass


class SubscriptionNotFoundError(BillingError):
    pass


class SubscriptionTransitionError(BillingError):
    pass


class MismatchNotFoundError(BillingError):
    pass


class PaymentEventNotFoundError(BillingError):
    pass
