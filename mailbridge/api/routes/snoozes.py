"""
Snooze API endpoints

Hide cached messages from the inbox until a given time and bring them
back early, on time (background sweep) or never (cancel).
"""
from typing import List
import logging

from fastapi import APIRouter, Depends, Query

from mailbridge.api.auth import verify_api_key
from mailbridge.api.dependencies import Services, get_services
from mailbridge.api.schemas import SnoozeListResponse, SnoozeRequest, SnoozeUpdateRequest
from mailbridge.core.snoozes import SnoozeRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts/{account_id}/snoozes", tags=["snoozes"])


@router.post("", response_model=SnoozeRecord, dependencies=[Depends(verify_api_key)])
async def snooze_message(account_id: str, request: SnoozeRequest, services: Services = Depends(get_services)):
    return await services.snoozes.snooze(
        account_id, request.message_id, request.until,
        reason=request.reason, recurrence=request.recurrence,
    )


@router.get("", response_model=SnoozeListResponse, dependencies=[Depends(verify_api_key)])
async def list_snoozes(
    account_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    include_history: bool = Query(False, description="Include resumed and cancelled snoozes"),
    services: Services = Depends(get_services)
):
    if include_history:
        records, total = await services.snoozes.history(account_id, page, page_size)
    else:
        records, total = await services.snoozes.list_snoozed(account_id, page, page_size)
    return SnoozeListResponse(total=total, page=page, page_size=page_size, snoozes=records)


@router.get("/upcoming", response_model=List[SnoozeRecord], dependencies=[Depends(verify_api_key)])
async def upcoming_snoozes(
    account_id: str,
    days: int = Query(7, ge=1, le=365, description="Look-ahead window in days"),
    services: Services = Depends(get_services)
):
    return await services.snoozes.upcoming(account_id, days)


@router.get("/{snooze_id}", response_model=SnoozeRecord, dependencies=[Depends(verify_api_key)])
async def get_snooze(account_id: str, snooze_id: str, services: Services = Depends(get_services)):
    return await services.snoozes.get(account_id, snooze_id)


@router.put("/{snooze_id}", response_model=SnoozeRecord, dependencies=[Depends(verify_api_key)])
async def update_snooze(account_id: str, snooze_id: str, request: SnoozeUpdateRequest,
                        services: Services = Depends(get_services)):
    return await services.snoozes.update_time(account_id, snooze_id, request.until)


@router.post("/{snooze_id}/resume", response_model=SnoozeRecord, dependencies=[Depends(verify_api_key)])
async def resume_snooze(account_id: str, snooze_id: str, services: Services = Depends(get_services)):
    """Bring the message back now; a recurring snooze is re-armed."""
    return await services.snoozes.resume(account_id, snooze_id)


@router.delete("/{snooze_id}", response_model=SnoozeRecord, dependencies=[Depends(verify_api_key)])
async def cancel_snooze(account_id: str, snooze_id: str, services: Services = Depends(get_services)):
    """Unsnooze and stop any recurrence."""
    return await services.snoozes.cancel(account_id, snooze_id)
