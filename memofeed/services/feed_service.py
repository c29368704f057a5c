"""
Feed service: wires the pool, resolver, paginator, tallies and writer from
settings, and serves wire-shaped pages to the API and CLI.
"""

from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Optional

import structlog

from memofeed.core.config import Settings, settings as default_settings
from memofeed.core.exceptions import GatewayError, SignerUnavailableError
from memofeed.services.backoff import CallSpacer
from memofeed.services.codec import to_payload
from memofeed.services.confirmation_poller import ConfirmationPoller
from memofeed.services.endpoint_pool import EndpointPool
from memofeed.services.feed_paginator import FeedCursor, FeedItem, FeedPaginator
from memofeed.services.gateway_client import GatewayClient
from memofeed.services.ledger_reader import LedgerReader
from memofeed.services.precomputed_feed import PrecomputedFeedClient
from memofeed.services.registry_resolver import RegistryResolver
from memofeed.services.signer import Signer
from memofeed.services.tally_aggregator import TallyAggregator
from memofeed.services.tip_jar import Tip, TipJar
from memofeed.services.write_pipeline import WritePipeline


logger = structlog.get_logger(__name__)

FEED_KINDS = ("post",)
TALLY_SCAN_MIN = 100
TALLY_SCAN_MAX = 800


def item_to_wire(item: FeedItem) -> Dict[str, Any]:
    return {
        "sig": item.signature,
        "slot": item.slot,
        "time": (item.block_time or 0) * 1000,
        "p": to_payload(item.event),
    }


@dataclass
class FeedResult:
    items: List[FeedItem]
    next_cursor: Optional[str]
    source: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "items": [item_to_wire(item) for item in self.items],
            "nextCursor": self.next_cursor,
        }


def is_ledger_cursor(token: Optional[str]) -> bool:
    """True when the token is a per-registry cursor this service issued."""
    return bool(FeedCursor.from_token(token).positions)


class FeedService:
    """Facade over the read path and, when a signer is present, the write path."""

    def __init__(
        self,
        pool: EndpointPool,
        resolver: RegistryResolver,
        paginator: FeedPaginator,
        tallies: TallyAggregator,
        poller: ConfirmationPoller,
        precomputed: Optional[PrecomputedFeedClient] = None,
        writer: Optional[WritePipeline] = None,
        tips: Optional[TipJar] = None,
        page_size: int = 12,
        page_limit_max: int = 32,
        tally_scan_limit: int = 240,
    ):
        self.logger = logger.bind(service="feed_service")
        self.pool = pool
        self.resolver = resolver
        self.paginator = paginator
        self.tallies = tallies
        self.poller = poller
        self.precomputed = precomputed
        self.writer = writer
        self.tips = tips
        self.page_size = page_size
        self.page_limit_max = page_limit_max
        self.tally_scan_limit = tally_scan_limit

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, signer: Optional[Signer] = None) -> "FeedService":
        config = config or default_settings

        pool = EndpointPool(
            config.rpc_urls,
            cluster=config.cluster,
            client_factory=lambda url: GatewayClient(url, timeout=config.transaction_timeout),
            probe_timeout=config.probe_timeout,
            cooldown_base=config.cooldown_base,
            cooldown_cap=config.cooldown_cap,
        )
        reader = LedgerReader(
            pool,
            spacer=CallSpacer(config.min_call_spacing_ms / 1000),
            signatures_timeout=config.signatures_timeout,
            transaction_timeout=config.transaction_timeout,
            max_attempts=config.fetch_max_attempts,
        )
        resolver = RegistryResolver(
            reader,
            owner=config.owner_wallet,
            explicit_registry=config.publish_registry,
            manifest_tag=config.manifest_tag,
            max_registries=config.max_registries,
            scan_limit=config.manifest_scan_limit,
            cache_ttl=config.registry_cache_ttl,
            sharding_enabled=config.write_sharding,
            bucket_minutes=config.shard_bucket_minutes,
        )
        poller = ConfirmationPoller(
            pool,
            max_cycles=config.confirmation_max_cycles,
            status_timeout=config.status_timeout,
        )
        writer = None
        if signer is not None:
            writer = WritePipeline(
                pool,
                resolver,
                poller,
                signer=signer,
                owner=config.owner_wallet,
                like_lamports=config.like_lamports,
                superlike_lamports=config.superlike_lamports,
                fee_bps=config.like_fee_bps,
                blockhash_timeout=config.blockhash_timeout,
                submit_timeout=config.transaction_timeout,
            )

        return cls(
            pool=pool,
            resolver=resolver,
            paginator=FeedPaginator(pool, resolver, reader),
            tallies=TallyAggregator(resolver, reader, fee_bps=config.like_fee_bps),
            poller=poller,
            precomputed=PrecomputedFeedClient(config.precomputed_feed_url) if config.precomputed_feed_url else None,
            writer=writer,
            tips=TipJar(reader, config.owner_wallet) if config.owner_wallet else None,
            page_size=config.page_size,
            page_limit_max=config.page_limit_max,
            tally_scan_limit=config.tally_scan_limit,
        )

    def clamp_limit(self, limit: Optional[int]) -> int:
        if not limit:
            return self.page_size
        return max(1, min(self.page_limit_max, int(limit)))

    async def _ledger_page(
        self,
        cursor: Optional[str],
        limit: int,
        kinds: Optional[Collection[str]],
    ) -> FeedResult:
        before = FeedCursor.from_token(cursor)
        page = await self.paginator.fetch_page(before, limit=limit, kinds=kinds)
        advanced = dict(page.next_cursor.positions) != dict(before.positions)
        return FeedResult(
            items=page.items,
            next_cursor=page.next_cursor.to_token() if advanced else None,
            source="ledger",
        )

    async def fetch_page(
        self,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        kinds: Optional[Collection[str]] = FEED_KINDS,
    ) -> FeedResult:
        """
        One feed page. The precomputed source is used when configured; a first
        page falls back to the ledger when it fails.

        Raises:
            NoEndpointAvailableError: the ledger path has no usable gateway
            GatewayError: a continuation page from the precomputed source failed
        """
        limit = self.clamp_limit(limit)

        if self.precomputed is not None and not is_ledger_cursor(cursor):
            try:
                page = await self.precomputed.fetch_page(cursor, limit)
                items = [item for item in page.items if kinds is None or item.event.kind in kinds]
                return FeedResult(items=items, next_cursor=page.next_cursor, source="precomputed")
            except GatewayError as e:
                if cursor:
                    raise
                self.logger.warning("Precomputed feed failed, reading the ledger", error=e.message)

        return await self._ledger_page(cursor, limit, kinds)

    async def like_counts(self, total: Optional[int] = None) -> Dict[str, int]:
        scan = total or self.tally_scan_limit
        scan = max(TALLY_SCAN_MIN, min(TALLY_SCAN_MAX, int(scan)))
        return await self.tallies.like_counts(scan)

    async def recent_tips(self) -> List[Tip]:
        """Latest incoming tips to the owner; empty when no owner is configured."""
        if self.tips is None:
            return []
        return await self.tips.recent_tips()

    def require_writer(self) -> WritePipeline:
        if self.writer is None:
            raise SignerUnavailableError()
        return self.writer

    async def health(self, probe: bool = False) -> Dict[str, Any]:
        """Service state; `probe` pings every endpoint instead of reporting cached stats."""
        return {
            "pool": await self.pool.health_check() if probe else self.pool.get_stats(),
            "registries": self.resolver.registries,
            "precomputed": self.precomputed.url if self.precomputed else None,
            "writer": self.writer is not None,
        }

    async def close(self):
        if self.writer is not None:
            await self.writer.close()
        await self.pool.close()


# Global feed service instance
_feed_service: Optional[FeedService] = None


async def get_feed_service() -> FeedService:
    """Get or create the global feed service."""
    global _feed_service
    if _feed_service is None:
        _feed_service = FeedService.from_settings()
    return _feed_service


async def close_feed_service():
    """Close the global feed service."""
    global _feed_service
    if _feed_service is not None:
        await _feed_service.close()
        _feed_service = None
