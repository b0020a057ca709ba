"""
Account API endpoints

Account records, backend selection, OAuth token storage, IMAP/SMTP
credentials, connection verification and the destructive initial sync.
"""
import asyncio
import logging

from fastapi import APIRouter, Depends

from mailbridge.api.auth import verify_api_key
from mailbridge.api.dependencies import Services, get_services
from mailbridge.api.schemas import (
    AccountCreateRequest,
    AccountResponse,
    BackendUpdateRequest,
    CredentialCreateRequest,
    CredentialResponse,
    OAuthTokensRequest,
    SyncResponse,
    VerifyResponse,
)
from mailbridge.core.database.models import Account
from mailbridge.core.email.mime import to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


def account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        display_name=account.display_name,
        backend=account.backend,
        has_oauth_tokens=bool(account.oauth_access_token or account.oauth_refresh_token),
        oauth_token_expiry=account.oauth_token_expiry,
        created_at=account.created_at,
    )


@router.post("", response_model=AccountResponse, status_code=201, dependencies=[Depends(verify_api_key)])
async def create_account(request: AccountCreateRequest, services: Services = Depends(get_services)):
    """Create an account with its initial backend."""
    account = await asyncio.to_thread(
        services.accounts.create_account, request.email, request.display_name, request.backend
    )
    return account_response(account)


@router.get("/{account_id}", response_model=AccountResponse, dependencies=[Depends(verify_api_key)])
async def get_account(account_id: str, services: Services = Depends(get_services)):
    account = await asyncio.to_thread(services.accounts.get_account, account_id)
    return account_response(account)


@router.put("/{account_id}/backend", response_model=AccountResponse, dependencies=[Depends(verify_api_key)])
async def set_backend(account_id: str, request: BackendUpdateRequest, services: Services = Depends(get_services)):
    """
    Switch the account's active backend.

    The next request builds the other adapter; a backend without usable
    credentials fails with 409 naming the missing fields.
    """
    account = await asyncio.to_thread(services.accounts.set_backend, account_id, request.backend)
    services.mailbox.token_index.clear(account.id)
    return account_response(account)


@router.put("/{account_id}/oauth-tokens", response_model=AccountResponse, dependencies=[Depends(verify_api_key)])
async def save_oauth_tokens(account_id: str, request: OAuthTokensRequest, services: Services = Depends(get_services)):
    expiry = to_naive_utc(request.expiry) if request.expiry else None
    account = await asyncio.to_thread(
        services.accounts.save_oauth_tokens, account_id, request.access_token, request.refresh_token, expiry
    )
    return account_response(account)


@router.post("/{account_id}/credentials", response_model=CredentialResponse, status_code=201,
             dependencies=[Depends(verify_api_key)])
async def add_credentials(account_id: str, request: CredentialCreateRequest,
                          services: Services = Depends(get_services)):
    credential = await asyncio.to_thread(services.accounts.add_credential, account_id, **request.model_dump())
    return CredentialResponse.model_validate(credential)


@router.post("/{account_id}/verify", response_model=VerifyResponse, dependencies=[Depends(verify_api_key)])
async def verify_connection(account_id: str, services: Services = Depends(get_services)):
    """Log in to the account's backend with the stored credentials."""
    verified = await services.mailbox.verify(account_id)
    return VerifyResponse(verified=verified)


@router.post("/{account_id}/sync", response_model=SyncResponse, dependencies=[Depends(verify_api_key)])
async def initial_sync(account_id: str, services: Services = Depends(get_services)):
    """
    Destructive initial sync: replaces the account's cache with the newest
    INBOX messages.
    """
    saved = await services.mailbox.initial_sync(account_id)
    return SyncResponse(synced=len(saved))
