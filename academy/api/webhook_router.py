import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from academy.dependencies import Services, get_services
from academy.errors import SignatureError, WebhookProcessingError

router = APIRouter()


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    """Stripe calls this for every event. Non-2xx makes Stripe redeliver."""
    # Raw bytes: the signature covers exactly what was sent
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = services.webhooks.verify(payload, signature)
    except SignatureError as e:
        logging.warning("Rejected webhook: %s", e.message)
        return JSONResponse(status_code=400, content={"error": "Invalid signature", "code": e.code})

    try:
        result = await services.webhooks.process(event)
    except WebhookProcessingError as e:
        return JSONResponse(
            status_code=500,
            content={"error": "Webhook processing failed", "code": e.code, "event_id": e.event_id},
        )

    return {"received": True, "status": result.status, "event_id": result.event_id}
