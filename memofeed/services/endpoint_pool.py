"""
Gateway endpoint pool with health tracking and rotation.

This service provides:
- Candidate list built from configured URLs (deduplicated, cluster defaults as fallback)
- Selection by (cooldown_until, fail_score) with a cheap blockhash probe
- A cached "current" endpoint reused until it starts cooling down
- Capped, failure-class-aware cooldowns
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import structlog

from memofeed.core.config import LedgerConfig
from memofeed.core.exceptions import AuthDeniedError, NoEndpointAvailableError
from memofeed.services.backoff import FailureClass, classify_failure, gateway_error_for
from memofeed.services.gateway_client import GatewayClient


logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Extra fail score for an endpoint that rejects our key or origin
AUTH_PENALTY = 3


@dataclass
class Endpoint:
    """Health state for a single gateway endpoint."""
    url: str
    cooldown_until: float = 0.0
    fail_score: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_failure: Optional[FailureClass] = None

    def is_cooling(self, now: float) -> bool:
        return self.cooldown_until > now


def build_candidate_urls(urls: Iterable[str], cluster: str = "mainnet") -> List[str]:
    """Deduplicate configured URLs and drop ones that cannot serve Solana JSON-RPC."""
    seen = set()
    out = []
    for url in urls:
        url = (url or "").strip()
        if not url or url in seen:
            continue
        if "rpc.ankr.com/multichain" in url.lower():
            logger.warning("Ignoring multichain endpoint for Solana JSON-RPC", url=url)
            continue
        seen.add(url)
        out.append(url)
    if not out:
        out = list(LedgerConfig.DEFAULT_RPCS.get(cluster, LedgerConfig.DEFAULT_RPCS["mainnet"]))
    return out


class EndpointPool:
    """
    Shared health table over gateway endpoints.

    All mutations of endpoint state happen without an await in between, and
    selection holds a lock so concurrent callers reuse one probe result.
    """

    def __init__(
        self,
        urls: Iterable[str],
        cluster: str = "mainnet",
        client_factory: Callable[[str], Any] = GatewayClient,
        clock: Callable[[], float] = time.monotonic,
        probe_timeout: float = 3.5,
        cooldown_base: float = 3.0,
        cooldown_cap: float = 30.0,
    ):
        self.logger = logger.bind(service="endpoint_pool")
        self._configured_urls = list(urls)
        self.cluster = cluster
        self._client_factory = client_factory
        self._clock = clock
        self.probe_timeout = probe_timeout
        self.cooldown_base = cooldown_base
        self.cooldown_cap = cooldown_cap

        self._endpoints: List[Endpoint] = []
        self._clients: Dict[str, Any] = {}
        self._current: Optional[Endpoint] = None
        self._select_lock = asyncio.Lock()
        self._rebuild()

    def _rebuild(self):
        """(Re)create the candidate list from configuration."""
        self._endpoints = [Endpoint(url=url) for url in build_candidate_urls(self._configured_urls, self.cluster)]
        self._current = None
        self.logger.info(
            "Endpoint pool built",
            total_endpoints=len(self._endpoints),
            urls=[ep.url for ep in self._endpoints],
        )

    @property
    def endpoints(self) -> List[Endpoint]:
        return list(self._endpoints)

    @property
    def current(self) -> Optional[Endpoint]:
        return self._current

    def find(self, url: str) -> Optional[Endpoint]:
        for endpoint in self._endpoints:
            if endpoint.url == url:
                return endpoint
        return None

    def client_for(self, endpoint: Endpoint):
        """Get or lazily create the client for an endpoint."""
        client = self._clients.get(endpoint.url)
        if client is None:
            client = self._client_factory(endpoint.url)
            self._clients[endpoint.url] = client
        return client

    def candidates(self, include_cooling: bool = False) -> List[Endpoint]:
        """Endpoints ordered healthiest first."""
        if not self._endpoints:
            self._rebuild()
        now = self._clock()
        pool = self._endpoints if include_cooling else [ep for ep in self._endpoints if not ep.is_cooling(now)]
        return sorted(pool, key=lambda ep: (ep.cooldown_until, ep.fail_score))

    def cooldown_for(self, fail_score: int) -> float:
        return min(self.cooldown_cap, self.cooldown_base * fail_score)

    def penalize(self, endpoint: Endpoint, failure: FailureClass) -> None:
        """Raise an endpoint's fail score and push out its cooldown."""
        endpoint.fail_score += AUTH_PENALTY if failure is FailureClass.AUTH_DENIED else 1
        endpoint.failure_count += 1
        endpoint.last_failure = failure
        endpoint.cooldown_until = max(
            endpoint.cooldown_until,
            self._clock() + self.cooldown_for(endpoint.fail_score),
        )
        if self._current is endpoint:
            self._current = None

        log = self.logger.error if failure is FailureClass.AUTH_DENIED else self.logger.warning
        log(
            "Endpoint penalized",
            endpoint=endpoint.url,
            failure=failure.value,
            fail_score=endpoint.fail_score,
            cooldown=round(endpoint.cooldown_until - self._clock(), 2),
        )

    def record_failure(self, endpoint: Endpoint, exc: BaseException) -> FailureClass:
        """Classify a failed call and penalize the endpoint that served it."""
        failure = classify_failure(exc)
        self.penalize(endpoint, failure)
        return failure

    def record_success(self, endpoint: Endpoint) -> None:
        endpoint.success_count += 1
        # Recovery: forgive one past failure per success
        if endpoint.fail_score > 0:
            endpoint.fail_score -= 1

    async def _probe(self, endpoint: Endpoint) -> None:
        client = self.client_for(endpoint)
        await asyncio.wait_for(client.get_latest_blockhash(), self.probe_timeout)

    async def select(self) -> Endpoint:
        """
        Return a healthy endpoint, probing candidates in order.

        Raises:
            AuthDeniedError: nothing usable and at least one endpoint denied us
            NoEndpointAvailableError: every endpoint is cooling down or failed
        """
        async with self._select_lock:
            now = self._clock()
            if self._current is not None and not self._current.is_cooling(now):
                return self._current

            denied: Optional[Endpoint] = None
            for endpoint in self.candidates():
                try:
                    self.logger.debug("Probing endpoint", endpoint=endpoint.url)
                    await self._probe(endpoint)
                except Exception as e:
                    failure = self.record_failure(endpoint, e)
                    if failure is FailureClass.AUTH_DENIED:
                        denied = endpoint
                    continue

                self.record_success(endpoint)
                self._current = endpoint
                self.logger.info("Using endpoint", endpoint=endpoint.url)
                return endpoint

            if denied is not None:
                raise AuthDeniedError(denied.url, "probe rejected")
            raise NoEndpointAvailableError(
                details={
                    "endpoints": len(self._endpoints),
                    "next_ready_in": round(
                        max(0.0, min((ep.cooldown_until for ep in self._endpoints), default=0.0) - self._clock()), 2
                    ),
                }
            )

    async def run(
        self,
        operation: Callable[[Any], Awaitable[T]],
        timeout: float,
        label: str = "call",
    ) -> T:
        """
        Run one gateway call on the selected endpoint.

        Failures penalize that endpoint and surface as a GatewayError subclass
        so the caller's retry loop can rotate.
        """
        endpoint = await self.select()
        client = self.client_for(endpoint)
        try:
            return await asyncio.wait_for(operation(client), timeout)
        except Exception as e:
            failure = self.record_failure(endpoint, e)
            self.logger.debug("Gateway call failed", label=label, endpoint=endpoint.url, failure=failure.value)
            raise gateway_error_for(failure, endpoint.url, e) from e

    def get_stats(self) -> Dict[str, Any]:
        """Health table snapshot."""
        now = self._clock()
        return {
            "current": self._current.url if self._current else None,
            "endpoints": {
                ep.url: {
                    "fail_score": ep.fail_score,
                    "cooling_for": round(max(0.0, ep.cooldown_until - now), 2),
                    "success_count": ep.success_count,
                    "failure_count": ep.failure_count,
                    "last_failure": ep.last_failure.value if ep.last_failure else None,
                }
                for ep in self._endpoints
            },
        }

    async def health_check(self) -> Dict[str, Any]:
        """Probe every endpoint once, regardless of cooldown."""
        results = {}
        for endpoint in self._endpoints:
            started = time.monotonic()
            try:
                await self._probe(endpoint)
                results[endpoint.url] = {
                    "healthy": True,
                    "response_time": round(time.monotonic() - started, 3),
                    "error": None,
                }
            except Exception as e:
                results[endpoint.url] = {
                    "healthy": False,
                    "response_time": None,
                    "error": str(e) or type(e).__name__,
                }
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoints": results,
            "stats": self.get_stats(),
        }

    async def close(self):
        """Clean up all client connections."""
        for client in self._clients.values():
            try:
                await client.close()
            except Exception as e:
                self.logger.warning("Error closing gateway client", error=str(e))
        self._clients.clear()
