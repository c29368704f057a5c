"""
Like and tip tallies over recent registry history.
Approximate by construction: only a bounded recent window is scanned.
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional

import structlog

from memofeed.core.exceptions import GatewayError, NoEndpointAvailableError
from memofeed.services.codec import LikeEvent, MemoReader
from memofeed.services.fees import split_like_amount
from memofeed.services.ledger_reader import LedgerReader
from memofeed.services.registry_resolver import RegistryResolver


logger = structlog.get_logger(__name__)


@dataclass
class Tally:
    likes: int = 0
    tip_sum: int = 0


class TallyAggregator:
    """Read-only rescan of recent likes; safe to run any number of times."""

    def __init__(
        self,
        resolver: RegistryResolver,
        reader: LedgerReader,
        fee_bps: int = 1_000,
        memo_reader: Optional[MemoReader] = None,
    ):
        self.logger = logger.bind(service="tally_aggregator")
        self.resolver = resolver
        self.reader = reader
        self.fee_bps = fee_bps
        self.memo_reader = memo_reader or MemoReader()

    async def recent_tallies(self, scan_limit: int = 240) -> Dict[str, Tally]:
        """Likes and creator tip totals per content id."""
        registries = await self.resolver.active_registries()
        per_registry = max(1, math.ceil(scan_limit / len(registries)))

        tallies: Dict[str, Tally] = {}
        seen = set()
        scanned = 0

        for registry in registries:
            try:
                infos = await self.reader.signatures_for(registry, limit=per_registry)
            except (GatewayError, NoEndpointAvailableError) as e:
                self.logger.warning("Skipping registry in tally scan", registry=registry, error=e.message)
                continue

            for info in infos:
                if info.signature in seen or info.err is not None:
                    continue
                seen.add(info.signature)
                scanned += 1

                event = self.memo_reader.read_event(await self.reader.fetch_transaction(info.signature))
                if not isinstance(event, LikeEvent):
                    continue

                _, to_creator = split_like_amount(event.amount_units, self.fee_bps)
                tally = tallies.setdefault(event.content_id, Tally())
                tally.likes += 1
                tally.tip_sum += to_creator

        self.logger.info("Tallies computed", scanned=scanned, content_ids=len(tallies))
        return tallies

    async def like_counts(self, scan_limit: int = 240) -> Dict[str, int]:
        """Snapshot served by the like-count endpoint."""
        tallies = await self.recent_tallies(scan_limit)
        return {content_id: tally.likes for content_id, tally in tallies.items()}
