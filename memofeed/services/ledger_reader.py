"""
Spaced, retrying reads of ledger history through the endpoint pool.
Used by the registry resolver, the feed paginator and the tally aggregator.
"""

import asyncio
from typing import Any, Dict, List, Optional

import structlog

from memofeed.core.exceptions import GatewayError, NoEndpointAvailableError, ValidationError
from memofeed.services.backoff import CallSpacer, Sleep, call_with_retry
from memofeed.services.endpoint_pool import EndpointPool
from memofeed.services.gateway_client import SignatureInfo, is_valid_address, is_valid_signature


logger = structlog.get_logger(__name__)


class LedgerReader:
    """
    Reads signatures and transaction bodies one call at a time.

    Every call waits for the spacer first, so bursts never exceed the
    gateways' per-call quotas, and retries with bounded backoff.
    """

    def __init__(
        self,
        pool: EndpointPool,
        spacer: Optional[CallSpacer] = None,
        signatures_timeout: float = 6.5,
        transaction_timeout: float = 9.0,
        max_attempts: int = 3,
        sleep: Sleep = asyncio.sleep,
    ):
        self.logger = logger.bind(service="ledger_reader")
        self.pool = pool
        self.spacer = spacer or CallSpacer(0.25, sleep=sleep)
        self.signatures_timeout = signatures_timeout
        self.transaction_timeout = transaction_timeout
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def signatures_for(
        self,
        address: str,
        before: Optional[str] = None,
        limit: int = 100,
    ) -> List[SignatureInfo]:
        """
        Signatures for an address older than `before`, newest first.

        Raises the last gateway error once the attempts are spent, and
        ValidationError for a malformed address or `before` without calling out.
        """
        if not is_valid_address(address):
            raise ValidationError("Invalid address", {"address": address})
        if before is not None and not is_valid_signature(before):
            raise ValidationError("Invalid cursor signature", {"before": before})

        async def _call():
            await self.spacer.pause()
            return await self.pool.run(
                lambda client: client.get_signatures_for_address(address, before=before, limit=limit),
                timeout=self.signatures_timeout,
                label="get_signatures_for_address",
            )

        return await call_with_retry(
            _call,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
            label="get_signatures_for_address",
        )

    async def fetch_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Transaction body, or None when missing or when every attempt failed."""
        if not is_valid_signature(signature):
            self.logger.warning("Skipping malformed signature", signature=str(signature)[:20])
            return None

        async def _call():
            await self.spacer.pause()
            return await self.pool.run(
                lambda client: client.get_transaction(signature),
                timeout=self.transaction_timeout,
                label="get_transaction",
            )

        try:
            return await call_with_retry(
                _call,
                max_attempts=self.max_attempts,
                sleep=self._sleep,
                label="get_transaction",
            )
        except (GatewayError, NoEndpointAvailableError) as e:
            self.logger.warning(
                "Skipping transaction after retries",
                signature=signature[:20],
                error=e.message,
            )
            return None
