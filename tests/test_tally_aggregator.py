"""
Test like tallies and the fee split.
"""

import pytest

from memofeed.services.codec import LikeEvent, PublishEvent
from memofeed.services.fees import split_like_amount
from memofeed.services.registry_resolver import RegistryResolver
from memofeed.services.tally_aggregator import Tally, TallyAggregator

from conftest import new_address


@pytest.mark.parametrize("total, bps, expected", [
    (5_000, 1_000, (500, 4_500)),
    (50_000, 1_000, (5_000, 45_000)),
    (9, 1_000, (1, 8)),
    (1, 1_000, (1, 0)),
    (10_000, 250, (250, 9_750)),
])
def test_split_like_amount(total, bps, expected):
    assert split_like_amount(total, bps) == expected


@pytest.fixture
def registry():
    return new_address()


@pytest.fixture
def aggregator(reader, owner, registry, clock):
    resolver = RegistryResolver(reader, owner=owner, explicit_registry=registry, clock=clock)
    return TallyAggregator(resolver, reader, fee_bps=1_000)


def like(content_id, amount, superlike=False):
    return LikeEvent(content_id=content_id, liker="liker", amount_units=amount, superlike=superlike)


@pytest.mark.asyncio
async def test_recent_tallies(aggregator, ledger, registry):
    ledger.add(registry, PublishEvent(content_key="X", text_lines=("x",), creator="creator"))
    for amount in (5_000, 5_000, 50_000):
        ledger.add(registry, like("X", amount, superlike=amount > 5_000))
    ledger.add(registry, like("Y", 5_000))

    tallies = await aggregator.recent_tallies()

    assert tallies["X"] == Tally(likes=3, tip_sum=54_000)
    assert tallies["Y"] == Tally(likes=1, tip_sum=4_500)


@pytest.mark.asyncio
async def test_failed_likes_are_not_counted(aggregator, ledger, registry):
    ledger.add(registry, like("X", 5_000))
    ledger.add(registry, like("X", 5_000), err={"InstructionError": [1, "InsufficientFunds"]})

    assert await aggregator.like_counts() == {"X": 1}


@pytest.mark.asyncio
async def test_scan_window_is_bounded(aggregator, ledger, registry):
    for _ in range(10):
        ledger.add(registry, like("X", 5_000))

    assert await aggregator.like_counts(scan_limit=4) == {"X": 4}


@pytest.mark.asyncio
async def test_rescan_is_stable(aggregator, ledger, registry):
    ledger.add(registry, like("X", 5_000))

    assert await aggregator.like_counts() == await aggregator.like_counts()
