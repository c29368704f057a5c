"""
Gateway client for one Solana JSON-RPC endpoint.
Wraps solana-py's AsyncClient and returns plain Python values for the minimal
read/write surface the feed needs.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Finalized
from solana.rpc.types import TxOpts
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus
import structlog


logger = structlog.get_logger(__name__)


# Status name for a landed transaction the ledger rejected
FAILED_STATUS = "failed"

# solders enum members are not hashable, so this is searched by equality
CONFIRMATION_NAMES = (
    (TransactionConfirmationStatus.Processed, "processed"),
    (TransactionConfirmationStatus.Confirmed, "confirmed"),
    (TransactionConfirmationStatus.Finalized, "finalized"),
)


def confirmation_name(status: Any) -> Optional[str]:
    for member, name in CONFIRMATION_NAMES:
        if status == member:
            return name
    return None


def is_valid_address(value: Any) -> bool:
    try:
        Pubkey.from_string(value)
        return True
    except (ValueError, TypeError):
        return False


def is_valid_signature(value: Any) -> bool:
    try:
        Signature.from_string(value)
        return True
    except (ValueError, TypeError):
        return False


@dataclass
class SignatureInfo:
    """One entry of an address's transaction history."""
    signature: str
    slot: int
    block_time: Optional[int] = None
    err: Optional[Any] = None
    memo: Optional[str] = None


def normalize_transaction(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Flatten the shapes a jsonParsed transaction can arrive in into
    {"slot", "blockTime", "transaction": {"message": ...}, "meta": ...}.
    """
    if not raw:
        return None
    result = raw.get("result", raw) if "jsonrpc" in raw else raw
    if not result:
        return None
    tx = result.get("transaction") or {}
    # solders nests {"transaction": {...}, "meta": {...}} one level deeper
    if "meta" not in result and isinstance(tx, dict) and "meta" in tx:
        return {
            "slot": result.get("slot", 0),
            "blockTime": result.get("blockTime"),
            "transaction": tx.get("transaction") or {},
            "meta": tx.get("meta") or {},
        }
    return result


class GatewayClient:
    """
    Async client for a single gateway endpoint.

    Every method is a single call with no retries; the endpoint pool and the
    callers above it own timeouts, retries and rotation.
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.client = AsyncClient(url, commitment=Confirmed, timeout=timeout)
        self.logger = logger.bind(service="gateway_client", endpoint=url)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the RPC client connection."""
        await self.client.close()

    async def get_latest_blockhash(self) -> str:
        """Fetch a fresh recency token (blockhash)."""
        response = await self.client.get_latest_blockhash(Finalized)
        return str(response.value.blockhash)

    async def get_signatures_for_address(
        self,
        address: str,
        before: Optional[str] = None,
        limit: int = 100,
    ) -> List[SignatureInfo]:
        """Get transaction signatures for an address, newest first."""
        response = await self.client.get_signatures_for_address(
            Pubkey.from_string(address),
            before=Signature.from_string(before) if before else None,
            limit=limit,
        )
        return [
            SignatureInfo(
                signature=str(info.signature),
                slot=info.slot,
                block_time=info.block_time,
                err=info.err,
                memo=info.memo,
            )
            for info in response.value
        ]

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Get a jsonParsed transaction body as a dict, or None if unknown."""
        response = await self.client.get_transaction(
            Signature.from_string(signature),
            encoding="jsonParsed",
            max_supported_transaction_version=0,
        )
        if response.value is None:
            self.logger.debug("Transaction not found", signature=signature[:20])
            return None
        return normalize_transaction(json.loads(response.to_json()))

    async def get_signature_statuses(self, signatures: List[str]) -> List[Optional[str]]:
        """
        Confirmation status name per signature: None when unknown, "failed"
        when the transaction landed with an error.
        """
        response = await self.client.get_signature_statuses(
            [Signature.from_string(sig) for sig in signatures]
        )
        statuses: List[Optional[str]] = []
        for status in response.value:
            if status is None:
                statuses.append(None)
            elif status.err is not None:
                self.logger.warning("Transaction rejected by the ledger", error=str(status.err))
                statuses.append(FAILED_STATUS)
            elif status.confirmation_status is None:
                statuses.append("processed")
            else:
                statuses.append(confirmation_name(status.confirmation_status))
        return statuses

    async def send_raw_transaction(self, payload: bytes) -> str:
        """Submit a signed transaction and return its signature."""
        response = await self.client.send_raw_transaction(
            payload,
            opts=TxOpts(skip_preflight=True, preflight_commitment=Confirmed),
        )
        return str(response.value)
