from __future__ import annotations

from fastapi import HTTPException, status

from paycore.billing.errors import (
    BillingError,
    MismatchNotFoundError,
    PaymentEventNotFoundError,
    PaymentFailedError,
    PaymentValidationError,
    PersistenceError,
    ProviderRejectedError,
    PurchaseNotFoundError,
    RetryExhaustedError,
    SubscriptionNotFoundError,
    SubscriptionTransitionError,
    TransientProviderError,
)

FINALIZING_MESSAGE = "Payment received, finalizing access. Contact support if this persists."
NOT_FOUND_ERRORS = (
    PurchaseNotFoundError,
    SubscriptionNotFoundError,
    MismatchNotFoundError,
    PaymentEventNotFoundError,
)


def billing_http_exception(exc: BillingError) -> HTTPException:
    if isinstance(exc, PaymentValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "E_VALIDATION", "message": str(exc)},
        )
    if isinstance(exc, (RetryExhaustedError, TransientProviderError)):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "E_PROVIDER_UNAVAILABLE", "retryable": True},
        )
    if isinstance(exc, ProviderRejectedError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "E_PROVIDER_REJECTED", "message": str(exc)},
        )
    if isinstance(exc, PaymentFailedError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": "E_PAYMENT_FAILED", "reference": exc.reference},
        )
    if isinstance(exc, PersistenceError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "E_PERSISTENCE", "message": FINALIZING_MESSAGE},
        )
    if isinstance(exc, NOT_FOUND_ERRORS):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"code": "E_NOT_FOUND"})
    if isinstance(exc, SubscriptionTransitionError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "E_INVALID_TRANSITION", "message": str(exc)},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "E_INTERNAL"},
    )
