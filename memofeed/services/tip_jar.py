"""
Tip jar: plain transfers to the owner wallet, read back from balance changes.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from memofeed.services.ledger_reader import LedgerReader


logger = structlog.get_logger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000

TIP_SCAN_LIMIT = 15
TIP_FETCH_LIMIT = 12
TIP_RESULT_LIMIT = 10


@dataclass(frozen=True)
class Tip:
    """One incoming transfer to the owner."""
    signature: str
    sender: str
    lamports: int
    block_time: Optional[int]

    @property
    def sol(self) -> str:
        return f"{self.lamports / LAMPORTS_PER_SOL:.4f}"


def _key(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("pubkey")
    return None


def received_lamports(tx: Dict[str, Any], recipient: str) -> int:
    """Balance change of `recipient` in a transaction; 0 when it is not a party."""
    message = (tx.get("transaction") or {}).get("message") or {}
    keys = [_key(k) for k in message.get("accountKeys") or []]
    if recipient not in keys:
        return 0
    index = keys.index(recipient)
    meta = tx.get("meta") or {}
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    if index >= len(pre) or index >= len(post):
        return 0
    return int(post[index]) - int(pre[index])


def sender_of(tx: Dict[str, Any]) -> Optional[str]:
    keys = ((tx.get("transaction") or {}).get("message") or {}).get("accountKeys") or []
    return _key(keys[0]) if keys else None


class TipJar:
    """Recent incoming tips to the owner, newest first."""

    def __init__(self, reader: LedgerReader, owner: str):
        self.logger = logger.bind(service="tip_jar")
        self.reader = reader
        self.owner = owner

    async def recent_tips(
        self,
        scan_limit: int = TIP_SCAN_LIMIT,
        fetch_limit: int = TIP_FETCH_LIMIT,
        limit: int = TIP_RESULT_LIMIT,
    ) -> List[Tip]:
        """
        Scan the owner's latest signatures and keep transactions that raised
        its balance. Listing failures propagate; body failures skip that row.
        """
        infos = await self.reader.signatures_for(self.owner, limit=scan_limit)

        tips: List[Tip] = []
        for info in infos[:fetch_limit]:
            if info.err is not None:
                continue
            tx = await self.reader.fetch_transaction(info.signature)
            if not tx:
                continue
            try:
                lamports = received_lamports(tx, self.owner)
            except (TypeError, ValueError):
                continue
            if lamports <= 0:
                continue
            tips.append(
                Tip(
                    signature=info.signature,
                    sender=sender_of(tx) or "",
                    lamports=lamports,
                    block_time=tx.get("blockTime") or info.block_time,
                )
            )
            if len(tips) >= limit:
                break

        self.logger.info("Recent tips loaded", scanned=len(infos), tips=len(tips))
        return tips
