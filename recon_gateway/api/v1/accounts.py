"""PUT/GET /v1/accounts/{account_id}/imports - per-account import toggle"""

import logging

from fastapi import APIRouter, Depends

from recon_gateway.api.dependencies import get_state_store
from recon_gateway.api.v1.schemas import ImportToggleRequest, ImportToggleResponse
from recon_gateway.domain.state import StateStore, disabled_key

router = APIRouter()
logger = logging.getLogger(__name__)


@router.put("/accounts/{account_id}/imports", response_model=ImportToggleResponse)
def set_imports_enabled(
    account_id: str,
    body: ImportToggleRequest,
    state: StateStore = Depends(get_state_store),
):
    """Enable or disable imports; runs for a disabled account finish FAILED"""
    if body.enabled:
        state.delete(disabled_key(account_id))
    else:
        state.set(disabled_key(account_id), "1")

    logger.info("Import toggle changed", extra={"account_id": account_id, "enabled": body.enabled})
    return ImportToggleResponse(account_id=account_id, enabled=body.enabled)


@router.get("/accounts/{account_id}/imports", response_model=ImportToggleResponse)
def get_imports_enabled(account_id: str, state: StateStore = Depends(get_state_store)):
    return ImportToggleResponse(account_id=account_id, enabled=not state.get(disabled_key(account_id)))
