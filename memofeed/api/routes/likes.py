"""
Like-count routes.
Counts are approximate: only a recent window of registry history is scanned.
"""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Response

from memofeed.api.dependencies import get_service
from memofeed.services.feed_service import FeedService

router = APIRouter()


@router.get(
    "",
    response_model=Dict[str, int],
    summary="Get Like Counts",
    description="Like counts per content id over recent history"
)
async def get_likes(
    response: Response,
    total: Optional[int] = Query(default=None, ge=1, description="Signatures to scan, clamped to 100..800"),
    service: FeedService = Depends(get_service),
):
    """Get like counts."""
    counts = await service.like_counts(total)
    response.headers["Cache-Control"] = "public, max-age=30"
    return counts
