"""
Test feed pagination across registries.
"""

import base64
import json

import pytest

from memofeed.core.exceptions import NoEndpointAvailableError, ValidationError
from memofeed.services.codec import LikeEvent, ManifestEvent, PublishEvent
from memofeed.services.feed_paginator import FeedCursor, FeedPaginator
from memofeed.services.registry_resolver import RegistryResolver

from conftest import new_address, new_signature


def post(n, creator="creator"):
    return PublishEvent(content_key=f"key-{n}", text_lines=(f"line {n}",), creator=creator)


@pytest.fixture
def registry():
    return new_address()


@pytest.fixture
def paginator(pool, reader, registry, owner, clock):
    resolver = RegistryResolver(reader, owner=owner, explicit_registry=registry, clock=clock)
    return FeedPaginator(pool, resolver, reader)


def token_for(data) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def test_cursor_token_round_trip():
    cursor = FeedCursor({new_address(): new_signature(1), new_address(): new_signature(2)})
    token = cursor.to_token()

    assert "=" not in token
    assert FeedCursor.from_token(token) == cursor


DEEP_TOKEN = base64.urlsafe_b64encode(b"[" * 100_000 + b"]" * 100_000).decode("ascii")


@pytest.mark.parametrize("token", [None, "", "%%%", "bm90IGpzb24", "WzEsMl0", DEEP_TOKEN])
def test_unreadable_cursor_starts_from_the_top(token):
    assert FeedCursor.from_token(token).positions == {}


@pytest.mark.asyncio
async def test_pages_are_newest_first_and_disjoint(paginator, ledger, registry):
    for n in range(30):
        ledger.add(registry, post(n))

    first = await paginator.fetch_page(limit=12)
    second = await paginator.fetch_page(first.next_cursor, limit=12)

    first_sigs = [item.signature for item in first.items]
    second_sigs = [item.signature for item in second.items]
    assert len(first_sigs) == 12
    assert len(second_sigs) == 12
    assert not set(first_sigs) & set(second_sigs)

    slots = [item.slot for item in first.items + second.items]
    assert slots == sorted(slots, reverse=True)
    assert first.items[0].event == post(29)


@pytest.mark.asyncio
async def test_last_page_leaves_cursor_in_place(paginator, ledger, registry):
    for n in range(3):
        ledger.add(registry, post(n))

    first = await paginator.fetch_page(limit=12)
    second = await paginator.fetch_page(first.next_cursor, limit=12)

    assert len(first.items) == 3
    assert second.items == []
    assert second.next_cursor == first.next_cursor


@pytest.mark.asyncio
async def test_failed_and_foreign_rows_advance_the_cursor(paginator, ledger, registry):
    ledger.add(registry, post(1))
    ledger.add(registry, "gm, not an event")
    ledger.add(registry, post(2), err={"InstructionError": [0, "Custom"]})

    page = await paginator.fetch_page(limit=3)

    assert [item.event for item in page.items] == [post(1)]
    assert page.next_cursor.before(registry) == ledger.history[registry][-1].signature


@pytest.mark.asyncio
async def test_kind_filter(paginator, ledger, registry):
    ledger.add(registry, post(1))
    ledger.add(registry, LikeEvent(content_id="key-1", liker="someone", amount_units=5_000))

    page = await paginator.fetch_page(limit=12, kinds=("post",))

    assert [item.event.kind for item in page.items] == ["post"]


@pytest.mark.asyncio
async def test_multiple_registries_merge_by_slot_and_dedupe(pool, reader, ledger, owner, clock):
    a, b = new_address(), new_address()
    ledger.add(owner, ManifestEvent(tag="registry.v1", owner=owner, registries=(a, b), updated_at=1), signer=owner)
    resolver = RegistryResolver(reader, owner=owner, clock=clock)
    paginator = FeedPaginator(pool, resolver, reader)

    for n in range(10):
        ledger.add(a if n % 2 else b, post(n))
    shared = ledger.add([a, b], post(99))

    seen = []
    cursor = None
    for _ in range(6):
        page = await paginator.fetch_page(cursor, limit=4)
        seen.extend(item.signature for item in page.items)
        cursor = page.next_cursor

    assert len(seen) == len(set(seen)) == 11
    assert seen[0] == shared
    assert {item for item in cursor.positions} == {a, b}


@pytest.mark.asyncio
async def test_fetch_page_fails_fast_without_endpoints(paginator, pool, ledger, urls):
    for url in urls:
        ledger.fail(url, "get_latest_blockhash", ConnectionError("down"))

    with pytest.raises(NoEndpointAvailableError):
        await paginator.fetch_page(limit=12)
    assert ledger.count("get_signatures_for_address") == 0


def test_cursor_keeps_only_well_formed_entries():
    registry, signature = new_address(), new_signature(1)
    token = token_for({
        registry: signature,
        new_address(): "garbage",
        "not-an-address": new_signature(2),
        new_address(): 42,
    })

    assert FeedCursor.from_token(token).positions == {registry: signature}


@pytest.mark.asyncio
async def test_malformed_cursor_never_penalizes_endpoints(paginator, pool, ledger, registry):
    ledger.add(registry, post(1))

    with pytest.raises(ValidationError):
        await paginator.fetch_page(FeedCursor({registry: "garbage"}), limit=4)

    assert all(ep.failure_count == 0 for ep in pool.endpoints)
    assert ledger.count("get_signatures_for_address") == 0


@pytest.mark.asyncio
async def test_unfetchable_body_is_skipped_and_passed(paginator, pool, ledger, registry):
    pool.cooldown_base = 0.0
    oldest = ledger.add(registry, post(1))
    ledger.add(registry, post(2))
    broken = ledger.add(registry, post(3))
    ledger.add(registry, post(4))
    ledger.broken_bodies[broken] = ConnectionError("connection reset")

    page = await paginator.fetch_page(limit=4)

    assert [item.event for item in page.items] == [post(4), post(2), post(1)]
    assert page.next_cursor.before(registry) == oldest
    # one call per healthy body, three attempts for the broken one
    assert ledger.count("get_transaction") == 6


@pytest.mark.asyncio
async def test_failed_registry_listing_keeps_its_cursor(pool, reader, ledger, owner, clock):
    pool.cooldown_base = 0.0
    healthy, broken = new_address(), new_address()
    ledger.add(owner, ManifestEvent(tag="registry.v1", owner=owner, registries=(healthy, broken), updated_at=1), signer=owner)
    resolver = RegistryResolver(reader, owner=owner, clock=clock)
    paginator = FeedPaginator(pool, resolver, reader)
    for n in range(3):
        ledger.add(healthy, post(n))
        ledger.add(broken, post(10 + n))

    first = await paginator.fetch_page(limit=2)
    ledger.broken_histories[broken] = Exception("503 Service Unavailable")
    second = await paginator.fetch_page(first.next_cursor, limit=2)

    assert [item.event for item in second.items] == [post(1)]
    assert second.next_cursor.before(broken) == first.next_cursor.before(broken)
    assert second.next_cursor.before(healthy) != first.next_cursor.before(healthy)
