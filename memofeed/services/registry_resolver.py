"""
Registry discovery.

Active registries come from, in order: an explicitly configured registry, the
newest owner-published manifest carrying our tag, or the owner account itself.
Writes are sharded over the active set by time bucket.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from memofeed.core.exceptions import GatewayError
from memofeed.services.codec import ManifestEvent, MemoReader
from memofeed.services.gateway_client import is_valid_address
from memofeed.services.ledger_reader import LedgerReader


logger = structlog.get_logger(__name__)


def signed_by(tx: Dict[str, Any], address: str) -> bool:
    """True when `address` signed the transaction (fee payer counts)."""
    keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
    for index, key in enumerate(keys):
        if isinstance(key, dict):
            if key.get("pubkey") == address and key.get("signer"):
                return True
        elif index == 0 and key == address:
            return True
    return False


class RegistryResolver:
    """Owns the cached list of active registries."""

    def __init__(
        self,
        reader: LedgerReader,
        owner: str,
        explicit_registry: Optional[str] = None,
        manifest_tag: str = "registry.v1",
        max_registries: int = 4,
        scan_limit: int = 100,
        cache_ttl: float = 60.0,
        sharding_enabled: bool = False,
        bucket_minutes: int = 30,
        memo_reader: Optional[MemoReader] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.logger = logger.bind(service="registry_resolver")
        self.reader = reader
        self.owner = owner
        self.explicit_registry = explicit_registry
        self.manifest_tag = manifest_tag
        self.max_registries = max(1, min(8, max_registries))
        self.scan_limit = scan_limit
        self.cache_ttl = cache_ttl
        self.sharding_enabled = sharding_enabled
        self.bucket_seconds = bucket_minutes * 60
        self.memo_reader = memo_reader or MemoReader()
        self._clock = clock
        self._wall_clock = wall_clock

        # Cache state
        self.registries: Optional[List[str]] = None
        self.loaded_at: Optional[float] = None

    def invalidate(self) -> None:
        self.registries = None
        self.loaded_at = None

    def _cache_fresh(self) -> bool:
        return (
            self.registries is not None
            and self.loaded_at is not None
            and self._clock() - self.loaded_at < self.cache_ttl
        )

    async def active_registries(self) -> List[str]:
        """Registries anchoring this application's events."""
        if self._cache_fresh():
            return list(self.registries)

        if self.explicit_registry:
            return self._store([self.explicit_registry], source="explicit")

        try:
            manifest = await self.load_latest_manifest()
        except GatewayError as e:
            self.logger.warning("Manifest scan failed; using owner as registry", error=e.message)
            return [self.owner]

        registries = self._clean(manifest.registries) if manifest else []
        if registries:
            return self._store(registries, source="manifest")
        return self._store([self.owner], source="owner")

    def _store(self, registries: List[str], source: str) -> List[str]:
        self.registries = list(registries)
        self.loaded_at = self._clock()
        self.logger.info("Active registries loaded", source=source, registries=self.registries)
        return list(self.registries)

    def _clean(self, registries: Tuple[str, ...]) -> List[str]:
        """Valid, unique addresses in manifest order, capped."""
        out: List[str] = []
        for address in registries:
            if address in out or not is_valid_address(address):
                continue
            out.append(address)
        return out[: self.max_registries]

    async def load_latest_manifest(self) -> Optional[ManifestEvent]:
        """Newest manifest with our tag in the owner's recent history."""
        signatures = await self.reader.signatures_for(self.owner, limit=self.scan_limit)

        latest: Optional[Tuple[int, ManifestEvent]] = None
        for info in signatures:
            if info.err is not None:
                continue
            tx = await self.reader.fetch_transaction(info.signature)
            if not tx:
                continue
            event = self.memo_reader.read_event(tx)
            if not isinstance(event, ManifestEvent) or event.tag != self.manifest_tag:
                continue
            if not signed_by(tx, self.owner):
                self.logger.debug("Ignoring manifest not signed by owner", signature=info.signature[:20])
                continue
            block_time = int(tx.get("blockTime") or info.block_time or 0)
            if latest is None or block_time > latest[0]:
                latest = (block_time, event)

        if latest:
            self.logger.debug("Manifest found", block_time=latest[0], registries=list(latest[1].registries))
            return latest[1]
        return None

    async def select_registry_for_write(self) -> str:
        """Registry a new write should anchor under."""
        registries = await self.active_registries()
        if len(registries) == 1 or not self.sharding_enabled:
            return registries[0]
        bucket = int(self._wall_clock() // self.bucket_seconds)
        return registries[bucket % len(registries)]
