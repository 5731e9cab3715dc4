import logging

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from app.core.errors import BillingError, UpstreamBillingError
from app.services.webhooks import construct_event, handle_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/stripe-webhook")
async def stripe_webhook(request: Request):
    """Receive Stripe events. The signature is checked before anything is read."""
    payload = await request.body()
    event = construct_event(payload, request.headers.get("stripe-signature"))

    try:
        await run_in_threadpool(handle_event, event)
    except BillingError:
        raise
    except Exception as e:
        logger.exception(f"Webhook handler failed for event {event.get('id')}: {e}")
        raise UpstreamBillingError("Webhook handler failed")

    return {"received": True}
