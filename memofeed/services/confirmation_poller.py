"""
Best-effort confirmation of submitted transactions.

Polls signature status across the endpoint pool, rotating past endpoints that
rate-limit or fail, sleeping between cycles, and giving up after a bounded
number of cycles. Giving up is an outcome, not an exception.
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Set

import structlog

from memofeed.services.backoff import FailureClass, Sleep, jitter
from memofeed.services.endpoint_pool import EndpointPool
from memofeed.services.gateway_client import FAILED_STATUS


logger = structlog.get_logger(__name__)

CONFIRMED_STATUSES = ("confirmed", "finalized")


class ConfirmationStatus(Enum):
    POLLING = "polling"
    CONFIRMED = "confirmed"
    EXHAUSTED = "exhausted"
    # Landed, but the ledger rejected it; no later poll can change that
    FAILED = "failed"


@dataclass
class ConfirmationState:
    """Progress of one signature through the poll loop."""
    signature: str
    status: ConfirmationStatus = ConfirmationStatus.POLLING
    cycle: int = 0
    attempts: int = 0
    tried: Set[str] = field(default_factory=set)
    last_failure: Optional[FailureClass] = None
    last_seen_status: Optional[str] = None
    last_endpoint: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status is not ConfirmationStatus.POLLING


@dataclass
class ConfirmationResult:
    signature: str
    status: ConfirmationStatus
    attempts: int
    cycles: int

    @property
    def confirmed(self) -> bool:
        return self.status is ConfirmationStatus.CONFIRMED


class ConfirmationPoller:
    """Drives ConfirmationState to a terminal status."""

    def __init__(
        self,
        pool: EndpointPool,
        max_cycles: int = 6,
        status_timeout: float = 3.5,
        cycle_delay: float = 0.35,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.logger = logger.bind(service="confirmation_poller")
        self.pool = pool
        self.max_cycles = max_cycles
        self.status_timeout = status_timeout
        self.cycle_delay = cycle_delay
        self._sleep = sleep
        self._rng = rng

    async def step(self, state: ConfirmationState) -> ConfirmationState:
        """Advance the state machine by one status query or one cycle boundary."""
        if state.finished:
            return state

        untried = [ep for ep in self.pool.candidates(include_cooling=True) if ep.url not in state.tried]
        if not untried:
            state.cycle += 1
            if state.cycle >= self.max_cycles:
                state.status = ConfirmationStatus.EXHAUSTED
                return state
            await self._sleep(jitter(self.cycle_delay * state.cycle, rng=self._rng))
            state.tried.clear()
            return state

        endpoint = untried[0]
        state.tried.add(endpoint.url)
        state.attempts += 1
        state.last_endpoint = endpoint.url
        client = self.pool.client_for(endpoint)
        try:
            statuses = await asyncio.wait_for(
                client.get_signature_statuses([state.signature]),
                self.status_timeout,
            )
        except Exception as e:
            state.last_failure = self.pool.record_failure(endpoint, e)
            return state

        state.last_seen_status = statuses[0] if statuses else None
        if state.last_seen_status in CONFIRMED_STATUSES:
            state.status = ConfirmationStatus.CONFIRMED
        elif state.last_seen_status == FAILED_STATUS:
            state.status = ConfirmationStatus.FAILED
        return state

    async def poll(self, signature: str) -> ConfirmationResult:
        """Poll until confirmed or exhausted."""
        state = ConfirmationState(signature=signature)
        while not state.finished:
            await self.step(state)

        result = ConfirmationResult(
            signature=signature,
            status=state.status,
            attempts=state.attempts,
            cycles=state.cycle,
        )
        if result.confirmed:
            self.logger.info("Transaction confirmed", signature=signature[:20], attempts=state.attempts)
        elif result.status is ConfirmationStatus.FAILED:
            self.logger.error("Transaction failed on the ledger", signature=signature[:20], endpoint=state.last_endpoint)
        else:
            self.logger.warning(
                "Confirmation not observed; the write may still land",
                signature=signature[:20],
                attempts=state.attempts,
                cycles=state.cycle,
                last_failure=state.last_failure.value if state.last_failure else None,
            )
        return result
