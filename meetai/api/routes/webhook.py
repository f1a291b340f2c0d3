import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from meetai.schemas.webhook import WebhookResponse
from meetai.services.webhook_service import WebhookService, get_webhook_service

router = APIRouter(tags=["webhook"])
logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookResponse:
    signature = request.headers.get("x-signature")
    api_key = request.headers.get("x-api-key")
    raw_body = await request.body()
    logger.info(
        "Webhook received path=%s has_signature=%s has_api_key=%s",
        str(request.url.path),
        bool(signature),
        bool(api_key),
    )

    try:
        response = service.process_webhook(
            raw_body=raw_body,
            signature=signature,
            api_key=api_key,
        )
    except HTTPException as exc:
        logger.warning(
            "Webhook rejected path=%s status_code=%s detail=%s",
            str(request.url.path),
            exc.status_code,
            exc.detail,
        )
        raise
    except Exception:
        logger.exception("Webhook processing failed path=%s", str(request.url.path))
        raise

    logger.info("Webhook processed path=%s status=%s", str(request.url.path), response.status)
    return response
