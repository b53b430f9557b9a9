"""Push-based ingestion: one webhook event becomes a single-record import run"""

import hashlib
import json
import logging
import uuid
from typing import Any, Dict, Optional

from recon_gateway.config import settings
from recon_gateway.domain.exceptions import NormalizationError, UnsupportedEventError
from recon_gateway.domain.models import ImportRunSummary, RecordKind
from recon_gateway.domain.normalizer import normalize, raw_external_id
from recon_gateway.services.import_orchestrator import ImportOrchestrator, ImportRequest

logger = logging.getLogger(__name__)

TEST_EVENT = "test"

EVENT_KINDS = {
    "sale.created": RecordKind.SALE,
    "installment.created": RecordKind.INSTALLMENT,
    "payment.created": RecordKind.PAYMENT,
}


def webhook_run_id(source: str, event: str, external_id: str) -> str:
    """Same delivery, same run id: replays land on the stored run"""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{source}:{event}:{external_id}"))


def event_external_id(data: Dict[str, Any], kind: RecordKind) -> str:
    """
    Identity of the delivered record.

    Falls back to the normalized identity (e.g. "<plan>-<index>" for
    installments), then to a content hash for payloads that cannot be read.
    """
    external_id = raw_external_id(data)
    if external_id is not None:
        return external_id
    try:
        return normalize(data, kind).external_id
    except NormalizationError:
        body = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(body.encode("utf-8")).hexdigest()


class WebhookIngestion:
    def __init__(self, orchestrator: ImportOrchestrator):
        self.orchestrator = orchestrator

    def request_for(self, event: str, data: Dict[str, Any], account_id: str, source: str) -> ImportRequest:
        kind = EVENT_KINDS.get(event)
        if kind is None:
            raise UnsupportedEventError(event)
        return ImportRequest(
            account_id=account_id,
            source=source,
            run_id=webhook_run_id(source, event, event_external_id(data, kind)),
            trigger="webhook",
            records=[data],
            kind=kind,
        )

    async def ingest(
        self,
        event: str,
        data: Dict[str, Any],
        account_id: str,
        source: Optional[str] = None,
    ) -> ImportRunSummary:
        """
        Import one delivered record.

        Raises:
            UnsupportedEventError: For events other than EVENT_KINDS
        """
        request = self.request_for(event, data, account_id, source or settings.source_name)
        logger.info(
            "Webhook received",
            extra={"event": event, "run_id": request.run_id, "account_id": account_id},
        )
        return await self.orchestrator.run(request)
