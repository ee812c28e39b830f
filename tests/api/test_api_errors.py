from paycore.api.errors import FINALIZING_MESSAGE, billing_http_exception
from paycore.billing.errors import (
    BillingError,
    MismatchNotFoundError,
    PaymentFailedError,
    PaymentValidationError,
    PersistenceError,
    ProviderRejectedError,
    ProviderTimeoutError,
    RetryExhaustedError,
    SubscriptionNotFoundError,
    SubscriptionTransitionError,
)


def test_billing_http_exception_status_codes() -> None:
    cases = [
        (PaymentValidationError("bad email"), 422, "E_VALIDATION"),
        (RetryExhaustedError(attempts=3, last_error=None), 503, "E_PROVIDER_UNAVAILABLE"),
        (ProviderTimeoutError("timeout"), 503, "E_PROVIDER_UNAVAILABLE"),
        (ProviderRejectedError("unknown reference"), 400, "E_PROVIDER_REJECTED"),
        (PaymentFailedError(reference="TXN_1", provider_status="failed"), 402, "E_PAYMENT_FAILED"),
        (PersistenceError("db down"), 500, "E_PERSISTENCE"),
        (SubscriptionNotFoundError("missing"), 404, "E_NOT_FOUND"),
        (MismatchNotFoundError("missing"), 404, "E_NOT_FOUND"),
        (SubscriptionTransitionError("terminal"), 409, "E_INVALID_TRANSITION"),
        (BillingError("boom"), 500, "E_INTERNAL"),
    ]

    for error, status_code, code in cases:
        exc = billing_http_exception(error)
        assert exc.status_code == status_code, error
        assert exc.detail["code"] == code


def test_persistence_error_tells_buyer_access_is_finalizing() -> None:
    exc = billing_http_exception(PersistenceError("db down"))

    assert exc.detail == {"code": "E_PERSISTENCE", "message": FINALIZING_MESSAGE}


def test_transient_errors_are_marked_retryable() -> None:
    exc = billing_http_exception(RetryExhaustedError(attempts=3, last_error=None))

    assert exc.detail == {"code": "E_PROVIDER_UNAVAILABLE", "retryable": True}
