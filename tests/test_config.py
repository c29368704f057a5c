"""
Test settings validation and derived values.
"""

import pytest
from pydantic import ValidationError

from memofeed.core.config import Settings, parse_url_list


def test_parse_url_list():
    assert parse_url_list(" https://a.test, ,https://b.test,") == ["https://a.test", "https://b.test"]
    assert parse_url_list("") == []


def test_rpc_urls_follow_cluster():
    config = Settings(cluster="DEVNET", rpc_devnet="https://dev-a.test,https://dev-b.test")
    assert config.cluster == "devnet"
    assert config.rpc_urls == ["https://dev-a.test", "https://dev-b.test"]


def test_max_registries_is_clamped():
    assert Settings(max_registries=20).max_registries == 8
    assert Settings(max_registries=0).max_registries == 1


@pytest.mark.parametrize("field, value", [
    ("environment", "prod"),
    ("log_level", "LOUD"),
    ("cluster", "testnet"),
    ("like_fee_bps", 20_000),
])
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("MEMOFEED_PAGE_SIZE", "20")
    monkeypatch.setenv("MEMOFEED_WRITE_SHARDING", "true")
    config = Settings()
    assert config.page_size == 20
    assert config.write_sharding is True
