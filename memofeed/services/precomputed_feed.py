"""
Client for a precomputed feed endpoint.

The endpoint serves the same page shape as the HTTP API:
{"items": [{"sig", "slot", "time", "p"}], "nextCursor"}. Every item payload is
validated through the codec again; items that fail are dropped.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from memofeed.core.exceptions import GatewayTimeoutError, TransientGatewayError
from memofeed.services.codec import from_payload
from memofeed.services.feed_paginator import FeedItem
from memofeed.services.gateway_client import is_valid_signature


logger = structlog.get_logger(__name__)


@dataclass
class PrecomputedPage:
    items: List[FeedItem]
    next_cursor: Optional[str]


def _block_time(time_ms: Any) -> Optional[int]:
    """Milliseconds to seconds; None for anything that is not a positive finite number."""
    if isinstance(time_ms, bool):
        return None
    if isinstance(time_ms, int):
        return time_ms // 1000 if time_ms > 0 else None
    if isinstance(time_ms, float) and math.isfinite(time_ms) and time_ms > 0:
        return int(time_ms) // 1000
    return None


def parse_item(raw: Any) -> Optional[FeedItem]:
    """One wire item, or None when it does not hold a valid event."""
    if not isinstance(raw, dict):
        return None
    signature = raw.get("sig")
    slot = raw.get("slot")
    if not is_valid_signature(signature) or not isinstance(slot, int) or isinstance(slot, bool):
        return None
    event = from_payload(raw.get("p"))
    if event is None:
        return None
    return FeedItem(signature=signature, slot=slot, block_time=_block_time(raw.get("time")), registry=None, event=event)


class PrecomputedFeedClient:
    """Fetches pages from the precomputed feed URL."""

    def __init__(self, url: str, timeout: float = 8.0):
        self.logger = logger.bind(service="precomputed_feed")
        self.url = url
        self.timeout = timeout

    async def fetch_page(self, cursor: Optional[str] = None, limit: int = 12) -> PrecomputedPage:
        """
        Raises:
            GatewayTimeoutError: the endpoint did not answer in time
            TransientGatewayError: non-200 answer or a body of the wrong shape
        """
        params: Dict[str, Any] = {"limit": str(limit)}
        if cursor:
            params["cursor"] = cursor

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self.url,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        raise TransientGatewayError(self.url, f"HTTP {response.status}")
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(self.url, "precomputed feed timeout") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise TransientGatewayError(self.url, str(e)) from e

        if not isinstance(data, dict) or not isinstance(data.get("items"), list):
            raise TransientGatewayError(self.url, "unexpected response shape")

        items = [item for item in (parse_item(raw) for raw in data["items"]) if item is not None]
        dropped = len(data["items"]) - len(items)
        if dropped:
            self.logger.warning("Dropped invalid precomputed items", dropped=dropped)

        next_cursor = data.get("nextCursor")
        return PrecomputedPage(
            items=items[:limit],
            next_cursor=next_cursor if isinstance(next_cursor, str) and next_cursor else None,
        )
