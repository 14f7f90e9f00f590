"""Attestation polling and the Iris API client.

Polling runs against :py:class:`~usdc_bridge.cctp.testing.SimulatedAttestationAuthority`
with a millisecond schedule. Iris response parsing is tested with a mocked ``requests`` session.
"""

import asyncio
import logging
from unittest.mock import MagicMock

import pytest
import requests
from requests_ratelimiter import LimiterAdapter
from urllib3.exceptions import ProtocolError

from usdc_bridge.cctp.attestation import (
    AttestationAuthority,
    AttestationClient,
    AttestationPollConfig,
    AttestationState,
    AttestationStatus,
    IrisAttestationAuthority,
)
from usdc_bridge.cctp.constants import CCTP_DOMAIN_APTOS, CCTP_DOMAIN_BASE
from usdc_bridge.cctp.errors import AttestationFailed, AttestationTimeout, TransientNetworkError
from usdc_bridge.cctp.message import encode_address_bytes32, encode_burn_message, hash_message
from usdc_bridge.cctp.session import IrisSession, create_iris_session
from usdc_bridge.cctp.testing import forge_attestation
from usdc_bridge.logging_retry import LoggingRetry


class ScriptedAuthority(AttestationAuthority):
    """Answers from a list, repeating the last answer."""

    def __init__(self, statuses: list[AttestationStatus]):
        self.statuses = statuses
        self.calls = 0

    async def fetch_status(self, message_hash: str) -> AttestationStatus:
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        return status


@pytest.fixture()
def message(recipient) -> bytes:
    return encode_burn_message(
        source_domain=CCTP_DOMAIN_BASE,
        destination_domain=CCTP_DOMAIN_APTOS,
        nonce=1,
        sender=b"\x01" * 32,
        recipient=b"\x01" * 32,
        burn_token=b"\x02" * 32,
        mint_recipient=encode_address_bytes32(recipient),
        amount=10_500_000,
        message_sender=b"\x03" * 32,
    )


@pytest.fixture()
def message_hash(message, base_chain) -> str:
    """A message the simulated authority knows about, as if burned on Base."""
    message_hash = hash_message(message)
    base_chain.sent_messages[message_hash] = message
    return message_hash


@pytest.fixture()
def client(authority) -> AttestationClient:
    return AttestationClient(authority, AttestationPollConfig.create_test_config())


@pytest.mark.asyncio
async def test_pending_then_complete(client, authority, message, message_hash):
    """Two pending answers, then a valid signature."""
    polls = []
    attestation = await client.fetch_attestation(message_hash, on_poll=polls.append)

    assert attestation.message_hash == message_hash
    assert attestation.message_bytes == message
    assert attestation.signature == forge_attestation(message, authority.attester)
    assert len(attestation.signature) == 65

    assert [p.status.state for p in polls] == [AttestationState.pending, AttestationState.pending, AttestationState.complete]
    assert [p.attempt for p in polls] == [1, 2, 3]
    assert client.get_inflight_count() == 0


@pytest.mark.asyncio
async def test_watch(client, message_hash):
    """watch() yields every poll and ends when signed."""
    states = [poll.status.state async for poll in client.watch(message_hash)]
    assert states[-1] == AttestationState.complete
    assert len(states) == 3


@pytest.mark.asyncio
async def test_authority_error(client, authority, message_hash):
    authority.failing_hashes.add(message_hash)
    with pytest.raises(AttestationFailed):
        await client.fetch_attestation(message_hash)
    assert client.get_inflight_count() == 0


@pytest.mark.asyncio
async def test_timeout(authority):
    """A message the authority never indexes times out."""
    config = AttestationPollConfig(initial_interval=0.01, backoff_multiplier=1.0, max_interval=0.01, timeout=0.05)
    client = AttestationClient(authority, config)
    with pytest.raises(AttestationTimeout):
        await client.fetch_attestation("0x" + "00" * 32)
    assert authority.calls["0x" + "00" * 32] >= 2


@pytest.mark.asyncio
async def test_network_errors_are_retried(client, authority, message_hash, caplog):
    """Unreachable authority counts as a pending poll."""
    authority.network_errors = 2
    polls = []
    with caplog.at_level(logging.WARNING):
        attestation = await client.fetch_attestation(message_hash, on_poll=polls.append)
    assert attestation.signature
    assert polls[0].status.state == AttestationState.pending
    assert "will retry" in caplog.text


@pytest.mark.asyncio
async def test_concurrent_waiters_share_one_poller(client, authority, message_hash):
    """Three waiters, one poll stream towards the authority."""
    results = await asyncio.gather(*[client.fetch_attestation(message_hash) for _ in range(3)])
    assert results[0] == results[1] == results[2]
    assert authority.calls[message_hash] == authority.pending_polls + 1
    assert client.get_inflight_count() == 0


@pytest.mark.asyncio
async def test_second_waiter_sees_earlier_polls(client, message_hash):
    """A waiter joining late still gets the polls that already happened."""
    first = asyncio.create_task(client.fetch_attestation(message_hash))
    await asyncio.sleep(0.015)

    polls = []
    await client.fetch_attestation(message_hash, on_poll=polls.append)
    await first
    assert [p.attempt for p in polls] == list(range(1, len(polls) + 1))


@pytest.mark.asyncio
async def test_abandoned_poll_is_stopped(authority):
    """Cancelling the only waiter stops polling."""
    client = AttestationClient(authority, AttestationPollConfig.create_test_config())
    task = asyncio.create_task(client.fetch_attestation("0x" + "00" * 32))
    await asyncio.sleep(0.03)
    assert client.get_inflight_count() == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.01)
    assert client.get_inflight_count() == 0


@pytest.mark.asyncio
async def test_message_hash_mismatch(message):
    """Returned message bytes must hash to the polled hash."""
    authority = ScriptedAuthority([AttestationStatus(state=AttestationState.complete, signature=b"\x01" * 65, message_bytes=message)])
    client = AttestationClient(authority, AttestationPollConfig.create_test_config())
    with pytest.raises(AttestationFailed, match="hashing to"):
        await client.fetch_attestation("0x" + "ab" * 32)


@pytest.mark.asyncio
async def test_empty_signature():
    authority = ScriptedAuthority([AttestationStatus(state=AttestationState.complete, signature=b"")])
    client = AttestationClient(authority, AttestationPollConfig.create_test_config())
    with pytest.raises(AttestationFailed, match="empty signature"):
        await client.fetch_attestation("0x" + "ab" * 32)


@pytest.mark.asyncio
async def test_check_status_single_poll(message_hash):
    authority = ScriptedAuthority([AttestationStatus(state=AttestationState.pending, detail="pending_confirmations")])
    client = AttestationClient(authority)
    status = await client.check_status(message_hash)
    assert status.state == AttestationState.pending
    assert authority.calls == 1


def test_poll_backoff():
    """Exponential backoff capped at max_interval."""
    config = AttestationPollConfig()
    assert [config.get_interval(n) for n in range(1, 7)] == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def _mock_iris(status_code: int, body=None, json_error: bool = False) -> IrisAttestationAuthority:
    response = MagicMock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = body
    session = MagicMock()
    session.api_url = "https://iris-api-sandbox.circle.com"
    session.get.return_value = response
    return IrisAttestationAuthority(session, request_timeout=5)


def test_iris_url():
    iris = _mock_iris(404)
    iris.fetch_status_sync("0xabc")
    iris.session.get.assert_called_once_with("https://iris-api-sandbox.circle.com/v1/attestations/0xabc", timeout=5)


@pytest.mark.parametrize(
    "status_code, body, expected_state",
    [
        (404, None, AttestationState.pending),
        (200, {"status": "pending_confirmations", "attestation": "PENDING"}, AttestationState.pending),
        (200, {"status": "complete", "attestation": "PENDING"}, AttestationState.pending),
        (200, {"status": "complete", "attestation": "0x" + "ab" * 65}, AttestationState.complete),
        (200, {"status": "complete", "attestation": "0xnothex"}, AttestationState.error),
        (200, {"status": "failed"}, AttestationState.error),
        (200, ["not", "a", "dict"], AttestationState.error),
        (400, None, AttestationState.error),
    ],
)
def test_iris_responses(status_code, body, expected_state):
    status = _mock_iris(status_code, body).fetch_status_sync("0xabc")
    assert status.state == expected_state


def test_iris_signature_decoded():
    status = _mock_iris(200, {"status": "complete", "attestation": "0x" + "ab" * 65}).fetch_status_sync("0xabc")
    assert status.signature == b"\xab" * 65


def test_iris_not_json():
    status = _mock_iris(200, json_error=True).fetch_status_sync("0xabc")
    assert status.state == AttestationState.error


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_iris_server_errors_are_transient(status_code):
    with pytest.raises(TransientNetworkError):
        _mock_iris(status_code).fetch_status_sync("0xabc")


def test_iris_connection_error_is_transient():
    iris = _mock_iris(200)
    iris.session.get.side_effect = requests.ConnectionError("connection reset")
    with pytest.raises(TransientNetworkError):
        iris.fetch_status_sync("0xabc")


@pytest.mark.asyncio
async def test_iris_fetch_status_async():
    """The async API runs the blocking call in a thread."""
    status = await _mock_iris(404).fetch_status("0xabc")
    assert status.detail == "not_indexed"


def test_create_iris_session():
    """Session is rate limited and retries with logging."""
    session = create_iris_session(api_url="https://iris-api-sandbox.circle.com", retries=3, requests_per_second=5)
    assert isinstance(session, IrisSession)
    assert session.api_url == "https://iris-api-sandbox.circle.com"

    adapter = session.get_adapter("https://iris-api-sandbox.circle.com/v1/attestations/0x00")
    assert isinstance(adapter, LimiterAdapter)
    assert isinstance(adapter.max_retries, LoggingRetry)
    assert adapter.max_retries.total == 3
    assert 503 in adapter.max_retries.status_forcelist


def test_logging_retry_keeps_logger(caplog):
    """urllib3 copies Retry objects on every attempt, our logger goes along."""
    custom_logger = logging.getLogger("test_retry")
    retry = LoggingRetry(total=3, logger=custom_logger)

    with caplog.at_level(logging.WARNING, logger="test_retry"):
        retried = retry.increment(method="GET", url="https://iris-api.circle.com/v1/attestations/0x00", error=ProtocolError("connection reset"))

    assert retried.logger is custom_logger
    assert retried.total == 2
    assert "Retrying: GET https://iris-api.circle.com" in caplog.text
