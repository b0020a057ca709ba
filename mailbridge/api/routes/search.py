"""
Search API endpoints

All searches run against the local message cache only.
"""
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query

from mailbridge.api.auth import verify_api_key
from mailbridge.api.dependencies import Services, get_services
from mailbridge.api.schemas import AdvancedSearchResponse, SearchHitResponse, SearchResponse, SuggestionsResponse
from mailbridge.core.search.query_parser import stringify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts/{account_id}", tags=["search"])


@router.get("/search", response_model=SearchResponse, dependencies=[Depends(verify_api_key)])
async def search(
    account_id: str,
    q: str = Query(..., description="Search text"),
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services)
):
    """
    Combined fuzzy + semantic search.

    Each result lists the passes that matched it (edit_distance, trigram,
    semantic) and its best score.
    """
    hits = await services.search.search(account_id, q, limit)
    return SearchResponse(
        query=q.strip(),
        count=len(hits),
        results=[SearchHitResponse(message=h.message, score=h.score, sources=h.sources) for h in hits],
    )


@router.get("/search/advanced", response_model=AdvancedSearchResponse, dependencies=[Depends(verify_api_key)])
async def advanced_search(
    account_id: str,
    q: str = Query(..., description="Query, e.g. 'from:alice subject:invoice has:attachment'"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services)
):
    result = await services.search.advanced_search(account_id, q, page, page_size)
    return AdvancedSearchResponse(
        query=q,
        normalized_query=stringify(result.criteria),
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        messages=result.messages,
    )


@router.get("/search/field", response_model=SearchResponse, dependencies=[Depends(verify_api_key)])
async def fuzzy_search_by_field(
    account_id: str,
    field: str = Query(..., description="subject, sender or body"),
    q: str = Query(...),
    threshold: Optional[float] = Query(None, ge=0.0, le=1.0),
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services)
):
    hits = await services.search.fuzzy_search_by_field(account_id, field, q, threshold, limit)
    return SearchResponse(
        query=q.strip(),
        count=len(hits),
        results=[SearchHitResponse(message=h.message, score=h.score, sources=h.sources) for h in hits],
    )


@router.get("/suggestions/{kind}", response_model=SuggestionsResponse, dependencies=[Depends(verify_api_key)])
async def suggestions(
    account_id: str,
    kind: str,
    q: str = Query("", description="Substring to match"),
    limit: int = Query(10, ge=1, le=50),
    services: Services = Depends(get_services)
):
    values = await services.search.suggestions(account_id, kind, q, limit)
    return SuggestionsResponse(kind=kind, suggestions=values)
