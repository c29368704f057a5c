"""
Test registry discovery from manifests, caching and write sharding.
"""

import pytest

from memofeed.services.codec import ManifestEvent, PublishEvent
from memofeed.services.registry_resolver import RegistryResolver, is_valid_address, signed_by

from conftest import FakeClock, make_tx, new_address


TAG = "registry.v1"


def manifest(owner, registries, ts=0, tag=TAG):
    return ManifestEvent(tag=tag, owner=owner, registries=tuple(registries), updated_at=ts)


@pytest.fixture
def resolver(reader, owner, clock):
    return RegistryResolver(reader, owner=owner, manifest_tag=TAG, cache_ttl=60.0, clock=clock)


def test_address_validation():
    assert is_valid_address(new_address())
    assert not is_valid_address("not-an-address")
    assert not is_valid_address("")


def test_signed_by():
    signer = new_address()
    tx = make_tx("{}", signer, 1, 1)
    assert signed_by(tx, signer)
    assert not signed_by(tx, new_address())

    tx["transaction"]["message"]["accountKeys"] = [signer, new_address()]
    assert signed_by(tx, signer)


@pytest.mark.asyncio
async def test_newest_manifest_wins(resolver, ledger, owner):
    a, b = new_address(), new_address()
    ledger.add(owner, manifest(owner, [a]), signer=owner, block_time=100)
    ledger.add(owner, manifest(owner, [a, b]), signer=owner, block_time=200)

    assert await resolver.active_registries() == [a, b]


@pytest.mark.asyncio
async def test_newest_by_block_time_not_history_order(resolver, ledger, owner):
    a, b = new_address(), new_address()
    ledger.add(owner, manifest(owner, [a, b]), signer=owner, block_time=200)
    ledger.add(owner, manifest(owner, [a]), signer=owner, block_time=100)

    assert await resolver.active_registries() == [a, b]


@pytest.mark.asyncio
async def test_manifest_not_signed_by_owner_is_ignored(resolver, ledger, owner):
    impostor = new_address()
    ledger.add(owner, manifest(owner, [new_address()]), signer=impostor, block_time=300)

    assert await resolver.active_registries() == [owner]


@pytest.mark.asyncio
async def test_other_tags_and_failed_transactions_are_ignored(resolver, ledger, owner):
    ledger.add(owner, manifest(owner, [new_address()], tag="other.v1"), signer=owner)
    ledger.add(owner, manifest(owner, [new_address()]), signer=owner, err={"InstructionError": [0, "Custom"]})
    ledger.add(owner, PublishEvent(content_key="k", text_lines=("x",), creator=owner), signer=owner)

    assert await resolver.active_registries() == [owner]


@pytest.mark.asyncio
async def test_manifest_entries_are_cleaned_and_capped(reader, ledger, owner, clock):
    resolver = RegistryResolver(reader, owner=owner, manifest_tag=TAG, max_registries=2, clock=clock)
    a, b, c = new_address(), new_address(), new_address()
    ledger.add(owner, manifest(owner, [a, "bogus", a, b, c]), signer=owner)

    assert await resolver.active_registries() == [a, b]


@pytest.mark.asyncio
async def test_explicit_registry_short_circuits(reader, ledger, owner, clock):
    explicit = new_address()
    resolver = RegistryResolver(reader, owner=owner, explicit_registry=explicit, clock=clock)

    assert await resolver.active_registries() == [explicit]
    assert ledger.count("get_signatures_for_address") == 0


@pytest.mark.asyncio
async def test_registries_are_cached_until_ttl(resolver, ledger, owner, clock):
    a, b = new_address(), new_address()
    ledger.add(owner, manifest(owner, [a]), signer=owner, block_time=100)
    assert await resolver.active_registries() == [a]

    ledger.add(owner, manifest(owner, [b]), signer=owner, block_time=200)
    clock.advance(30)
    assert await resolver.active_registries() == [a]

    clock.advance(31)
    assert await resolver.active_registries() == [b]


@pytest.mark.asyncio
async def test_invalidate_forces_reload(resolver, ledger, owner):
    assert await resolver.active_registries() == [owner]
    a = new_address()
    ledger.add(owner, manifest(owner, [a]), signer=owner)

    resolver.invalidate()
    assert await resolver.active_registries() == [a]


@pytest.mark.asyncio
async def test_write_registry_without_sharding(resolver, ledger, owner):
    a, b = new_address(), new_address()
    ledger.add(owner, manifest(owner, [a, b]), signer=owner)

    assert await resolver.select_registry_for_write() == a


@pytest.mark.asyncio
async def test_write_registry_rotates_by_time_bucket(reader, ledger, owner, clock):
    wall = FakeClock(0.0)
    resolver = RegistryResolver(
        reader,
        owner=owner,
        manifest_tag=TAG,
        sharding_enabled=True,
        bucket_minutes=30,
        clock=clock,
        wall_clock=wall,
    )
    a, b, c = new_address(), new_address(), new_address()
    ledger.add(owner, manifest(owner, [a, b, c]), signer=owner)

    picks = []
    for _ in range(4):
        picks.append(await resolver.select_registry_for_write())
        wall.advance(30 * 60)

    assert picks == [a, b, c, a]
