"""Pydantic schemas for API request/response validation"""

from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator

from recon_gateway.domain.models import ImportRun, ImportRunSummary, RunStage, RunStatus


class ImportCreateRequest(BaseModel):
    """Request body for POST /v1/imports"""

    account_id: str = Field(..., min_length=1, description="Account whose records are imported")
    since: Optional[date] = Field(None, description="Window start; defaults to the last sync date")
    until: Optional[date] = Field(None, description="Window end; defaults to today")
    wallet_id: Optional[str] = Field(None, description="Target ledger wallet")
    wait: bool = Field(False, description="Run inside the request instead of in the background")

    @model_validator(mode="after")
    def check_window(self):
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self


class RunErrorSchema(BaseModel):
    external_id: Optional[str] = None
    reason: str


class RunLogSchema(RunErrorSchema):
    level: str


class ImportSummaryResponse(BaseModel):
    """Outcome of an import run"""

    run_id: str
    status: RunStatus
    fetched: int
    imported: int
    matched: int
    grouped: int
    skipped_duplicate: int
    failed: int
    errors: List[RunErrorSchema]

    @classmethod
    def from_summary(cls, summary: ImportRunSummary) -> "ImportSummaryResponse":
        return cls(**asdict(summary))


class ImportRunResponse(ImportSummaryResponse):
    """Response for GET /v1/imports/{run_id}"""

    source: str
    account_id: str
    wallet_id: str
    trigger: str
    stage: Optional[RunStage] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    log: List[RunLogSchema]

    @classmethod
    def from_run(cls, run: ImportRun) -> "ImportRunResponse":
        return cls(
            **asdict(ImportRunSummary.from_run(run)),
            source=run.source,
            account_id=run.account_id,
            wallet_id=run.wallet_id,
            trigger=run.trigger,
            stage=run.stage,
            started_at=run.started_at,
            finished_at=run.finished_at,
            log=[asdict(e) for e in run.error_log],
        )


class CancelResponse(BaseModel):
    run_id: str
    cancel_requested: bool


class HistoryResponse(BaseModel):
    """Response for GET /v1/imports/history"""

    total: int
    limit: int
    offset: int
    runs: List[ImportRunResponse]


class HistorySummaryResponse(BaseModel):
    """Response for GET /v1/imports/history/summary"""

    account_id: Optional[str] = None
    total: int
    by_status: Dict[str, int]
    last_sync: Optional[date] = None


class ImportToggleRequest(BaseModel):
    enabled: bool


class ImportToggleResponse(BaseModel):
    account_id: str
    enabled: bool


class WebhookPayload(BaseModel):
    """Request body for POST /v1/webhooks/source"""

    event: str = Field(..., min_length=1)
    data: Optional[Dict[str, Any]] = None
    account_id: Optional[str] = Field(None, validation_alias=AliasChoices("account_id", "userId"))


class WebhookAck(BaseModel):
    status: str
    message: Optional[str] = None
