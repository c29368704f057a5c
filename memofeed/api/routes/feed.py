"""
Feed routes.
Serves newest-first pages of publications.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

import structlog

from memofeed.api.dependencies import get_service
from memofeed.api.schemas.feed import FeedPageResponse
from memofeed.services.feed_service import FeedService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "",
    response_model=FeedPageResponse,
    summary="Get Feed Page",
    description="Newest publications first; pass nextCursor back as cursor for older ones"
)
async def get_feed(
    response: Response,
    limit: Optional[int] = Query(default=None, ge=1, description="Page size, capped server-side"),
    cursor: Optional[str] = Query(default=None, description="Opaque cursor from a previous page"),
    service: FeedService = Depends(get_service),
):
    """Get one feed page."""
    result = await service.fetch_page(cursor=cursor, limit=limit)
    response.headers["Cache-Control"] = "public, max-age=15" if cursor is None else "public, max-age=60"
    logger.info("Feed page served", source=result.source, items=len(result.items), has_cursor=cursor is not None)
    return result.to_wire()
