from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from paycore.billing.errors import BillingError, PersistenceError
from paycore.billing.events import describe_event, parse_provider_event
from paycore.core.config import get_settings
from paycore.providers.paystack import SIGNATURE_HEADER, is_valid_webhook_signature
from paycore.services.billing_components import get_billing_components

router = APIRouter(tags=["payments"])
logger = structlog.get_logger(__name__)


def _ignored() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ignored"})


@router.post("/webhook/paystack")
async def paystack_webhook(request: Request) -> JSONResponse:
    settings = get_settings()
    raw_body = await request.body()
    if not is_valid_webhook_signature(
        secret=settings.paystack_webhook_secret or settings.paystack_secret_key,
        raw_body=raw_body,
        signature=request.headers.get(SIGNATURE_HEADER),
    ):
        logger.warning("paystack_webhook_invalid_signature")
        return _ignored()

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("paystack_webhook_invalid_json")
        return _ignored()
    if not isinstance(payload, dict):
        logger.warning("paystack_webhook_invalid_shape")
        return _ignored()

    event = parse_provider_event(payload)
    try:
        outcome = await get_billing_components().dispatcher.dispatch(
            event,
            now_utc=datetime.now(timezone.utc),
        )
    except PersistenceError:
        # not acknowledged, so the provider redelivers
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "retry"},
        )
    except BillingError as exc:
        logger.warning(
            "paystack_webhook_dispatch_failed",
            provider_event=describe_event(event),
            error_type=type(exc).__name__,
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "failed"})

    logger.info("paystack_webhook_processed", provider_event=describe_event(event), outcome=outcome)
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": outcome})
