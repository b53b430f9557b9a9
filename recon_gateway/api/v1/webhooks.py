"""POST /v1/webhooks/source - push delivery of single source records"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from recon_gateway.api.dependencies import get_request_id, get_webhook_ingestion
from recon_gateway.api.v1.schemas import ImportSummaryResponse, WebhookAck, WebhookPayload
from recon_gateway.config import settings
from recon_gateway.domain.exceptions import PersistenceError, UnsupportedEventError
from recon_gateway.services.webhook_ingestion import TEST_EVENT, WebhookIngestion

router = APIRouter()
logger = logging.getLogger(__name__)


def verify_secret(x_webhook_secret: Optional[str] = Header(None)) -> None:
    """Shared-secret check, enforced only when webhook_secret is configured"""
    if not settings.webhook_secret:
        return
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.post(
    "/webhooks/source",
    response_model=ImportSummaryResponse | WebhookAck,
    dependencies=[Depends(verify_secret)],
)
async def receive_webhook(
    payload: WebhookPayload,
    request: Request,
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
):
    """
    Import one record delivered by the source.

    Flow:
    1. Answer "test" events directly
    2. Validate event, data and account
    3. Run a single-record import whose run id is derived from the delivery,
       so replays return the stored summary instead of importing twice
    """
    request_id = get_request_id(request)

    if payload.event == TEST_EVENT:
        return WebhookAck(status="ok", message="webhook reachable")

    if not payload.data:
        raise HTTPException(status_code=400, detail="Missing event data")

    account_id = payload.account_id or payload.data.get("account_id") or payload.data.get("userId")
    if not account_id:
        raise HTTPException(status_code=400, detail="Missing account_id")

    try:
        summary = await ingestion.ingest(payload.event, payload.data, str(account_id))
        return ImportSummaryResponse.from_summary(summary)

    except UnsupportedEventError as e:
        logger.warning(f"Unsupported webhook event: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))

    except PersistenceError as e:
        ingestion.orchestrator.gateway.db.rollback()
        logger.error(f"Ledger storage error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Ledger storage unavailable")

    except Exception as e:
        ingestion.orchestrator.gateway.db.rollback()
        logger.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")
