"""
Tip jar routes.
"""

from typing import List

from fastapi import APIRouter, Depends, Response

from memofeed.api.dependencies import get_service
from memofeed.api.schemas.feed import TipSchema
from memofeed.services.feed_service import FeedService

router = APIRouter()


@router.get(
    "",
    response_model=List[TipSchema],
    summary="Get Recent Tips",
    description="Latest incoming transfers to the owner wallet"
)
async def get_tips(
    response: Response,
    service: FeedService = Depends(get_service),
):
    tips = await service.recent_tips()
    response.headers["Cache-Control"] = "public, max-age=30"
    return [
        TipSchema(
            sig=tip.signature,
            sender=tip.sender,
            lamports=tip.lamports,
            sol=tip.sol,
            time=(tip.block_time or 0) * 1000,
        )
        for tip in tips
    ]
