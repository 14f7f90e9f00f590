"""Timestamp and URL helpers."""

import datetime

from usdc_bridge.utils import from_unix_timestamp, get_url_domain, to_unix_timestamp


def test_unix_timestamp_round_trip():
    dt = datetime.datetime(2024, 5, 1, 12, 30, 15)
    assert to_unix_timestamp(datetime.datetime(1970, 1, 1)) == 0
    assert from_unix_timestamp(to_unix_timestamp(dt)) == dt


def test_url_domain_hides_api_key():
    assert get_url_domain("https://base-sepolia.g.alchemy.com/v2/secret") == "base-sepolia.g.alchemy.com"
    assert get_url_domain("http://localhost:8545") == "localhost:8545"
