"""
API dependencies for FastAPI endpoints.
"""

from memofeed.services.feed_service import FeedService, get_feed_service


async def get_service() -> FeedService:
    """Feed service dependency; overridden in tests."""
    return await get_feed_service()
