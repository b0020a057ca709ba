"""
Mailbox API endpoints

Listing, reading, sending and mutating messages of one account through its
active backend, plus AI summaries of cached messages.
"""
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query

from mailbridge.api.auth import verify_api_key
from mailbridge.api.dependencies import Services, get_services
from mailbridge.api.schemas import (
    ActionResponse,
    ModifyFlagsRequest,
    ReadRequest,
    ReplyRequest,
    SendRequest,
    StarResponse,
    SummaryRequest,
    SummaryResponse,
)
from mailbridge.core.email.models import (
    AttachmentContent, Mailbox, MessagePage, NormalizedMessage, OutgoingMessage, SendResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts/{account_id}", tags=["emails"])


@router.get("/mailboxes", response_model=List[Mailbox], dependencies=[Depends(verify_api_key)])
async def list_mailboxes(account_id: str, services: Services = Depends(get_services)):
    return await services.mailbox.list_mailboxes(account_id)


@router.get("/messages", response_model=MessagePage, dependencies=[Depends(verify_api_key)])
async def list_messages(
    account_id: str,
    mailbox: str = Query("INBOX", description="Mailbox/label to list"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: Optional[int] = Query(None, ge=1, description="Items per page"),
    token: Optional[str] = Query(None, description="Continuation token from the previous page"),
    q: Optional[str] = Query(None, description="Search text"),
    force_refresh: bool = Query(False, description="Skip the cache and fetch from the backend"),
    services: Services = Depends(get_services)
):
    """
    List one page of a mailbox.

    Cached pages are served without contacting the backend unless
    force_refresh is set. Pages beyond the first need the token returned
    with the previous page (or one recorded earlier in this process).
    """
    return await services.mailbox.list_messages(
        account_id, mailbox, page=page, page_size=page_size, token=token,
        search_text=q, force_refresh=force_refresh,
    )


@router.post("/messages/send", response_model=SendResult, dependencies=[Depends(verify_api_key)])
async def send_message(account_id: str, request: SendRequest, services: Services = Depends(get_services)):
    outgoing = OutgoingMessage(**request.model_dump())
    return await services.mailbox.send(account_id, outgoing)


@router.get("/messages/{message_id}", response_model=NormalizedMessage, dependencies=[Depends(verify_api_key)])
async def get_message(account_id: str, message_id: str, services: Services = Depends(get_services)):
    return await services.mailbox.get_message(account_id, message_id)


@router.post("/messages/{message_id}/reply", response_model=SendResult, dependencies=[Depends(verify_api_key)])
async def reply_to_message(account_id: str, message_id: str, request: ReplyRequest,
                           services: Services = Depends(get_services)):
    return await services.mailbox.reply(
        account_id, message_id, request.body,
        cc=request.cc, reply_all=request.reply_all, is_html=request.is_html,
    )


@router.post("/messages/{message_id}/modify", response_model=ActionResponse, dependencies=[Depends(verify_api_key)])
async def modify_flags(account_id: str, message_id: str, request: ModifyFlagsRequest,
                       services: Services = Depends(get_services)):
    await services.mailbox.modify_flags(account_id, message_id, request.add_flags, request.remove_flags)
    return ActionResponse()


@router.post("/messages/{message_id}/read", response_model=ActionResponse, dependencies=[Depends(verify_api_key)])
async def mark_read(account_id: str, message_id: str, request: ReadRequest,
                    services: Services = Depends(get_services)):
    await services.mailbox.mark_read(account_id, message_id, request.read)
    return ActionResponse()


@router.post("/messages/{message_id}/star", response_model=StarResponse, dependencies=[Depends(verify_api_key)])
async def toggle_star(account_id: str, message_id: str, services: Services = Depends(get_services)):
    starred = await services.mailbox.toggle_star(account_id, message_id)
    return StarResponse(starred=starred)


@router.post("/messages/{message_id}/trash", response_model=ActionResponse, dependencies=[Depends(verify_api_key)])
async def trash_message(account_id: str, message_id: str, services: Services = Depends(get_services)):
    await services.mailbox.trash(account_id, message_id)
    return ActionResponse()


@router.delete("/messages/{message_id}", response_model=ActionResponse, dependencies=[Depends(verify_api_key)])
async def delete_message(account_id: str, message_id: str, services: Services = Depends(get_services)):
    """Permanently delete a message."""
    await services.mailbox.delete(account_id, message_id)
    return ActionResponse()


@router.get("/messages/{message_id}/attachments/{attachment_id}", response_model=AttachmentContent,
            dependencies=[Depends(verify_api_key)])
async def get_attachment(account_id: str, message_id: str, attachment_id: str,
                         services: Services = Depends(get_services)):
    return await services.mailbox.get_attachment(account_id, message_id, attachment_id)


@router.post("/messages/{message_id}/summary", response_model=SummaryResponse, dependencies=[Depends(verify_api_key)])
async def summarize_message(account_id: str, message_id: str, request: SummaryRequest,
                            services: Services = Depends(get_services)):
    result = await services.summaries.summarize(
        account_id, message_id,
        length=request.length, tone=request.tone,
        instructions=request.instructions, regenerate=request.regenerate,
    )
    return SummaryResponse(
        message_id=result.message_id,
        summary=result.summary,
        generated_at=result.generated_at,
        cached=result.cached,
        model=result.model,
    )
