"""Payment webhook endpoint: verifies, normalizes and reconciles vendor events."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from paybridge.billing.base import PaymentAdapter, WebhookResult
from paybridge.billing.exceptions import SignatureInvalidError
from paybridge.billing.service import get_payment_adapter
from paybridge.billing.webhooks import parse_webhook_event, read_signature
from paybridge.database import async_session_factory
from paybridge.services.billing_service import apply_webhook_result

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payment_webhook(
    request: Request,
    adapter: PaymentAdapter = Depends(get_payment_adapter),
) -> dict[str, bool]:
    """Receive a webhook from the active payment provider.

    Any non-2xx answer makes the vendor redeliver, so processing failures
    return 500 and bad requests return 400.
    """
    # 1. Read raw body (MUST be raw bytes for signature verification)
    raw_body = await request.body()

    # 2. Verify signature
    signature = read_signature(adapter, request.headers)
    if not signature:
        logger.warning("%s webhook without signature header", adapter.provider)
        raise SignatureInvalidError("Missing signature")

    if not adapter.validate_webhook(raw_body, signature, request.headers):
        logger.warning("%s webhook signature verification failed", adapter.provider)
        raise SignatureInvalidError("Invalid signature")

    # 3. Parse payload
    try:
        payload = json.loads(raw_body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning("%s webhook with invalid JSON payload", adapter.provider)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    try:
        event = parse_webhook_event(adapter.provider, payload)
    except Exception as e:
        logger.exception("Error parsing %s webhook envelope", adapter.provider)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e
    if event is None:
        logger.info("%s webhook without event type, acknowledged", adapter.provider)
        return {"received": True, "processed": True}

    logger.info("Processing %s webhook event: %s", adapter.provider, event.type)

    # 4. Interpret the event (pure, no I/O)
    try:
        result = adapter.process_webhook(event)
    except Exception as e:
        logger.exception("Error interpreting %s event %s", adapter.provider, event.type)
        result = WebhookResult(processed=False, error=str(e) or type(e).__name__)

    if not result.processed:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error or "Webhook processing failed",
        )

    # 5. Reconcile in its own DB session (webhook has no auth context)
    if result.has_deltas:
        async with async_session_factory() as db:
            try:
                await apply_webhook_result(db, result, occurred_at=event.occurred_at)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.exception("Error reconciling %s event %s", adapter.provider, event.type)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Webhook processing failed",
                ) from e

    return {"received": True, "processed": True}
