"""
Feed pagination over registry history.
Walks each registry backward from a per-registry cursor and decodes memo events.
"""

import base64
import binascii
import json
import math
from dataclasses import dataclass, field
from typing import Collection, Dict, List, Mapping, Optional

import structlog

from memofeed.core.exceptions import GatewayError, NoEndpointAvailableError
from memofeed.services.codec import Event, MemoReader
from memofeed.services.endpoint_pool import EndpointPool
from memofeed.services.gateway_client import SignatureInfo, is_valid_address, is_valid_signature
from memofeed.services.ledger_reader import LedgerReader
from memofeed.services.registry_resolver import RegistryResolver


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FeedCursor:
    """Per-registry "before this signature" markers."""
    positions: Mapping[str, str] = field(default_factory=dict)

    def before(self, registry: str) -> Optional[str]:
        return self.positions.get(registry)

    def to_token(self) -> str:
        raw = json.dumps(dict(self.positions), separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @classmethod
    def from_token(cls, token: Optional[str]) -> "FeedCursor":
        """
        Parse an opaque token; anything unreadable starts from the top. Only
        entries pairing a valid registry address with a valid signature survive.
        """
        if not token:
            return cls()
        try:
            padded = token + "=" * (-len(token) % 4)
            data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeError, RecursionError):
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls({k: v for k, v in data.items() if is_valid_address(k) and is_valid_signature(v)})


@dataclass(frozen=True)
class FeedItem:
    signature: str
    slot: int
    block_time: Optional[int]
    registry: Optional[str]
    event: Event


@dataclass
class FeedPage:
    items: List[FeedItem]
    next_cursor: FeedCursor


@dataclass
class _Row:
    info: SignatureInfo
    registry: str


class FeedPaginator:
    """Builds newest-first pages of decoded events from the ledger."""

    def __init__(
        self,
        pool: EndpointPool,
        resolver: RegistryResolver,
        reader: LedgerReader,
        memo_reader: Optional[MemoReader] = None,
    ):
        self.logger = logger.bind(service="feed_paginator")
        self.pool = pool
        self.resolver = resolver
        self.reader = reader
        self.memo_reader = memo_reader or MemoReader()

    async def _gather(self, registries: List[str], cursor: FeedCursor, per_registry: int) -> List[_Row]:
        rows: List[_Row] = []
        for registry in registries:
            try:
                infos = await self.reader.signatures_for(
                    registry,
                    before=cursor.before(registry),
                    limit=per_registry,
                )
            except (GatewayError, NoEndpointAvailableError) as e:
                # Cursor for this registry stays put; next page retries it
                self.logger.warning("Skipping registry for this page", registry=registry, error=e.message)
                continue
            rows.extend(_Row(info=info, registry=registry) for info in infos)
        return rows

    async def fetch_page(
        self,
        cursor: Optional[FeedCursor] = None,
        limit: int = 12,
        kinds: Optional[Collection[str]] = None,
    ) -> FeedPage:
        """
        One page of events older than `cursor`.

        Args:
            cursor: position from a previous page, or None for the newest
            limit: maximum signatures considered for this page
            kinds: event kinds to keep ("post", "like", "manifest"); all if None

        Raises:
            NoEndpointAvailableError: no gateway can serve the request right now
        """
        cursor = cursor or FeedCursor()
        limit = max(1, limit)

        # Fail fast when the pool is exhausted
        await self.pool.select()

        registries = await self.resolver.active_registries()
        per_registry = math.ceil(limit / len(registries))
        rows = await self._gather(registries, cursor, per_registry)

        # Ledger slot order, not wall clock; sort is stable within a registry
        rows.sort(key=lambda row: row.info.slot, reverse=True)

        positions: Dict[str, str] = dict(cursor.positions)
        seen = set()
        selected: List[_Row] = []
        for row in rows:
            if len(selected) >= limit:
                break
            positions[row.registry] = row.info.signature
            if row.info.signature in seen:
                continue
            seen.add(row.info.signature)
            selected.append(row)

        items: List[FeedItem] = []
        for row in selected:
            if row.info.err is not None:
                continue
            tx = await self.reader.fetch_transaction(row.info.signature)
            event = self.memo_reader.read_event(tx)
            if event is None:
                continue
            if kinds is not None and event.kind not in kinds:
                continue
            items.append(
                FeedItem(
                    signature=row.info.signature,
                    slot=tx.get("slot") or row.info.slot,
                    block_time=tx.get("blockTime") or row.info.block_time,
                    registry=row.registry,
                    event=event,
                )
            )

        items.sort(key=lambda item: item.slot, reverse=True)
        self.logger.info(
            "Feed page built",
            registries=len(registries),
            considered=len(selected),
            items=len(items),
        )
        return FeedPage(items=items, next_cursor=FeedCursor(positions))
