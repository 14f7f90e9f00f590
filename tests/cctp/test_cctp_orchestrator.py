"""End-to-end transfers through :py:class:`~usdc_bridge.cctp.orchestrator.CrossChainTransferService`.

Base → Aptos over simulated chains: happy path, rejected requests, attestation
failures, stuck burns, bad mints, cancellation, idempotency and restarts.
"""

import asyncio
import logging
from decimal import Decimal

import pytest

from usdc_bridge.cctp.checkpoint import FileCheckpointStore, TransferStage
from usdc_bridge.cctp.config import BridgeConfig
from usdc_bridge.cctp.constants import IRIS_API_BASE_URL
from usdc_bridge.cctp.errors import ErrorKind, IdempotencyConflict, InvalidRequest, TransferNotResumable, UnknownTransfer
from usdc_bridge.cctp.orchestrator import CrossChainTransferService, get_transfer_id
from usdc_bridge.cctp.progress import TransferProgressBar
from usdc_bridge.cctp.signer import DepositForBurn, ReceiveMessage
from usdc_bridge.cctp.testing import SimulatedSigner, create_aptos_address
from usdc_bridge.cctp.validation import TransferRequest


def collapse_stages(events) -> list[TransferStage]:
    """Stages of consecutive events, repeats removed."""
    stages = []
    for event in events:
        if not stages or stages[-1] != event.stage:
            stages.append(event.stage)
    return stages


def fail_attestations(authority, chain):
    """Progress callback making the authority refuse every message burned so far."""

    def _callback(event):
        if event.stage == TransferStage.awaiting_attestation:
            authority.failing_hashes.update(chain.sent_messages.keys())

    return _callback


@pytest.mark.asyncio
async def test_transfer_completes(service, request_10_5, base_chain, base_signer, aptos_chain, recipient):
    """10.5 USDC moves from Base to Aptos, every stage reported in order."""
    transfer_id = await service.submit_transfer(request_10_5)
    assert transfer_id == get_transfer_id("transfer-10.5")

    events = [event async for event in service.subscribe_progress(transfer_id)]
    checkpoint = await service.wait_for_transfer(transfer_id)

    assert collapse_stages(events) == [
        TransferStage.validating,
        TransferStage.burning,
        TransferStage.awaiting_attestation,
        TransferStage.attested,
        TransferStage.minting,
        TransferStage.completed,
    ]
    assert [e.sequence for e in events] == list(range(1, len(events) + 1))
    assert all(e.transfer_id == transfer_id for e in events)

    # Burn and mint transaction ids are reported
    assert any(e.tx_id == checkpoint.burn_tx_id for e in events if e.stage == TransferStage.burning)
    assert events[-1].tx_id == checkpoint.mint_tx_id
    assert events[-1].explorer_link.startswith("https://explorer.aptoslabs.com/tx/")

    assert checkpoint.is_completed
    assert checkpoint.message_hash is not None
    assert checkpoint.attestation_signature is not None
    assert checkpoint.attempts["burning"] == 1

    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6 - 10_500_000
    assert aptos_chain.get_balance(recipient) == 10_500_000
    assert base_chain.count_submitted(DepositForBurn) == 1
    assert aptos_chain.count_submitted(ReceiveMessage) == 1
    assert not service.is_running(transfer_id)


@pytest.mark.asyncio
async def test_amount_below_minimum_fails_at_once(service, recipient, base_chain, authority):
    """0.05 USDC never reaches a chain."""
    request = TransferRequest.create("0.05", "base", "aptos", recipient, idempotency_key="too-small")
    transfer_id = await service.submit_transfer(request)

    checkpoint = await service.get_checkpoint(transfer_id)
    assert checkpoint.is_failed
    assert checkpoint.failed_stage == TransferStage.validating
    assert checkpoint.error_kind == ErrorKind.amount_below_minimum
    assert not checkpoint.resumable
    assert "0.1" in checkpoint.last_error

    events = [event async for event in service.subscribe_progress(transfer_id)]
    assert [e.stage for e in events] == [TransferStage.validating, TransferStage.failed]
    assert events[-1].error_kind == ErrorKind.amount_below_minimum

    assert not service.is_running(transfer_id)
    assert base_chain.submitted == []
    assert not authority.calls

    with pytest.raises(TransferNotResumable):
        await service.resume_transfer(transfer_id)


@pytest.mark.asyncio
async def test_malformed_recipient_fails_at_once(service, base_chain):
    """An EVM address is not an Aptos recipient."""
    request = TransferRequest.create("10.5", "base", "aptos", "0x" + "ab" * 20, idempotency_key="evm-recipient")
    transfer_id = await service.submit_transfer(request)

    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.failed_stage == TransferStage.validating
    assert checkpoint.error_kind == ErrorKind.malformed_recipient
    assert "64 hex characters" in checkpoint.last_error
    assert base_chain.submitted == []


@pytest.mark.asyncio
async def test_attestation_failure_resumes_without_burning_again(service, request_10_5, authority, base_chain, aptos_chain, recipient):
    """Authority refuses to sign; after it recovers the transfer resumes from the stored burn."""
    transfer_id = await service.submit_transfer(request_10_5)
    service.subscribe_progress(transfer_id, callback=fail_attestations(authority, base_chain))

    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.is_failed
    assert checkpoint.failed_stage == TransferStage.awaiting_attestation
    assert checkpoint.error_kind == ErrorKind.attestation_failed
    assert checkpoint.resumable
    assert checkpoint.message_hash in authority.failing_hashes
    assert service.get_channel(transfer_id).last_event.resumable

    authority.failing_hashes.clear()
    task = await service.resume_transfer(transfer_id)
    await task

    checkpoint = await service.get_checkpoint(transfer_id)
    assert checkpoint.is_completed
    assert checkpoint.attempts["awaiting_attestation"] == 2
    assert base_chain.count_submitted(DepositForBurn) == 1
    assert aptos_chain.get_balance(recipient) == 10_500_000


@pytest.mark.asyncio
async def test_stuck_burn_resumes_without_burning_again(service, request_10_5, base_chain, base_signer):
    """Burn confirmation times out; once it lands, resuming picks it up."""
    base_chain.fault_filter = DepositForBurn
    base_chain.hold_transactions = 1

    transfer_id = await service.submit_transfer(request_10_5)
    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.failed_stage == TransferStage.burning
    assert checkpoint.error_kind == ErrorKind.burn_confirmation_timeout
    assert checkpoint.resumable
    assert checkpoint.burn_tx_id is not None

    base_chain.release()
    await service.resume_transfer(transfer_id)
    checkpoint = await service.wait_for_transfer(transfer_id)

    assert checkpoint.is_completed
    assert base_chain.count_submitted(DepositForBurn) == 1
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6 - 10_500_000


@pytest.mark.asyncio
async def test_short_mint_needs_operator(service, request_10_5, aptos_chain, caplog):
    """A wrong minted amount is fatal and alerts an operator."""
    aptos_chain.mint_shortfall = 1

    transfer_id = await service.submit_transfer(request_10_5)
    with caplog.at_level(logging.WARNING):
        checkpoint = await service.wait_for_transfer(transfer_id)

    assert checkpoint.failed_stage == TransferStage.minting
    assert checkpoint.error_kind == ErrorKind.mint_verification_mismatch
    assert not checkpoint.resumable

    alerts = [r for r in caplog.records if r.name == "usdc_bridge.operator" and r.levelno == logging.CRITICAL]
    assert len(alerts) == 1
    assert checkpoint.burn_tx_id in alerts[0].getMessage()

    with pytest.raises(TransferNotResumable):
        await service.resume_transfer(transfer_id)


@pytest.mark.asyncio
async def test_missing_destination_signer(service, capabilities, request_10_5, aptos_chain, recipient):
    """No Aptos wallet: stops before minting, resumes once one is connected."""
    aptos_signer = capabilities.signers.pop("aptos")

    transfer_id = await service.submit_transfer(request_10_5)
    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.failed_stage == TransferStage.minting
    assert checkpoint.error_kind == ErrorKind.wallet_capability_error
    assert checkpoint.resumable
    assert checkpoint.attestation_signature is not None

    capabilities.signers["aptos"] = aptos_signer
    await service.resume_transfer(transfer_id)
    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.is_completed
    assert aptos_chain.get_balance(recipient) == 10_500_000


@pytest.mark.asyncio
async def test_message_relayed_by_wallet_completes(service, capabilities, request_10_5, aptos_chain, recipient):
    """The message was relayed by hand; resuming completes without minting again."""
    aptos_signer = capabilities.signers.pop("aptos")

    transfer_id = await service.submit_transfer(request_10_5)
    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.error_kind == ErrorKind.wallet_capability_error

    wallet = SimulatedSigner(aptos_chain, create_aptos_address())
    await wallet.sign_and_submit(ReceiveMessage(message=checkpoint.message_bytes, attestation=checkpoint.attestation_signature))
    assert aptos_chain.get_balance(recipient) == 10_500_000

    capabilities.signers["aptos"] = aptos_signer
    await service.resume_transfer(transfer_id)
    checkpoint = await service.wait_for_transfer(transfer_id)

    assert checkpoint.is_completed
    assert checkpoint.mint_tx_id is None
    assert aptos_chain.count_submitted(ReceiveMessage) == 1
    assert aptos_chain.get_balance(recipient) == 10_500_000
    assert "already received" in service.get_channel(transfer_id).last_event.message


@pytest.mark.asyncio
async def test_cancel_before_burn(service, recipient, base_chain):
    """A transfer stuck on low balance can be cancelled."""
    request = TransferRequest.create("2000", "base", "aptos", recipient, idempotency_key="too-big-for-wallet")
    transfer_id = await service.submit_transfer(request)

    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.error_kind == ErrorKind.insufficient_balance
    assert checkpoint.resumable

    assert await service.cancel_transfer(transfer_id) is True

    checkpoint = await service.get_checkpoint(transfer_id)
    assert checkpoint.failed_stage == TransferStage.burning
    assert checkpoint.error_kind == ErrorKind.cancelled
    assert not checkpoint.resumable
    assert service.get_channel(transfer_id).last_event.error_kind == ErrorKind.cancelled
    assert base_chain.count_submitted(DepositForBurn) == 0

    with pytest.raises(TransferNotResumable):
        await service.resume_transfer(transfer_id)


@pytest.mark.asyncio
async def test_cancel_running_transfer(service, request_10_5, base_chain):
    """Cancelled right after submission, the driver stops before the burn."""
    transfer_id = await service.submit_transfer(request_10_5)
    assert service.is_running(transfer_id)
    assert await service.cancel_transfer(transfer_id) is True

    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.error_kind == ErrorKind.cancelled
    assert checkpoint.failed_stage == TransferStage.burning
    assert base_chain.count_submitted(DepositForBurn) == 0


@pytest.mark.asyncio
async def test_cancel_refused_after_burn(service, request_10_5, authority, base_chain):
    """Once burned, the transfer can only go forward."""
    transfer_id = await service.submit_transfer(request_10_5)
    service.subscribe_progress(transfer_id, callback=fail_attestations(authority, base_chain))
    await service.wait_for_transfer(transfer_id)

    assert await service.cancel_transfer(transfer_id) is False

    checkpoint = await service.get_checkpoint(transfer_id)
    assert checkpoint.error_kind == ErrorKind.attestation_failed
    assert checkpoint.resumable


@pytest.mark.asyncio
async def test_cancel_after_reverted_burn(service, request_10_5, base_chain, base_signer, caplog):
    """A burn that reverted moved nothing, so the transfer can still be cancelled."""
    base_chain.fault_filter = DepositForBurn
    base_chain.revert_transactions = 1

    transfer_id = await service.submit_transfer(request_10_5)
    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.error_kind == ErrorKind.burn_submission_failed
    assert checkpoint.resumable
    assert checkpoint.burn_tx_id is not None

    with caplog.at_level(logging.WARNING):
        assert await service.cancel_transfer(transfer_id) is True

    checkpoint = await service.get_checkpoint(transfer_id)
    assert checkpoint.error_kind == ErrorKind.cancelled
    assert checkpoint.failed_stage == TransferStage.burning
    assert not checkpoint.resumable
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6
    assert not [r for r in caplog.records if r.name == "usdc_bridge.operator"]


@pytest.mark.asyncio
async def test_cancel_refused_for_pending_burn(service, request_10_5, base_chain):
    """A burn still in the mempool may land, so cancelling is refused."""
    base_chain.fault_filter = DepositForBurn
    base_chain.hold_transactions = 1

    transfer_id = await service.submit_transfer(request_10_5)
    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.error_kind == ErrorKind.burn_confirmation_timeout

    assert await service.cancel_transfer(transfer_id) is False
    assert (await service.get_checkpoint(transfer_id)).resumable


@pytest.mark.asyncio
async def test_cancel_completed(service, request_10_5):
    transfer_id = await service.submit_transfer(request_10_5)
    await service.wait_for_transfer(transfer_id)
    assert await service.cancel_transfer(transfer_id) is False
    assert (await service.get_checkpoint(transfer_id)).is_completed


@pytest.mark.asyncio
async def test_unknown_transfer(service):
    with pytest.raises(UnknownTransfer):
        await service.get_checkpoint("nope")
    with pytest.raises(UnknownTransfer):
        await service.resume_transfer("nope")
    with pytest.raises(UnknownTransfer):
        await service.cancel_transfer("nope")


@pytest.mark.asyncio
async def test_same_idempotency_key(service, request_10_5, base_chain):
    """Submitting twice gives one transfer and one burn."""
    first = await service.submit_transfer(request_10_5)
    second = await service.submit_transfer(request_10_5)
    assert first == second

    await service.wait_for_transfer(first)
    third = await service.submit_transfer(request_10_5)
    assert third == first
    assert base_chain.count_submitted(DepositForBurn) == 1
    assert len(await service.list_checkpoints()) == 1


@pytest.mark.asyncio
async def test_idempotency_conflict(service, request_10_5, recipient):
    await service.submit_transfer(request_10_5)
    other = TransferRequest.create("11", "base", "aptos", recipient, idempotency_key=request_10_5.idempotency_key)
    with pytest.raises(IdempotencyConflict):
        await service.submit_transfer(other)


@pytest.mark.asyncio
async def test_concurrent_transfers_same_account(service, recipient, base_chain, base_signer, aptos_chain):
    """Two transfers from one account both land, each burned once."""
    first = TransferRequest.create("1", "base", "aptos", recipient, idempotency_key="a")
    second = TransferRequest.create("2", "base", "aptos", recipient, idempotency_key="b")
    ids = await asyncio.gather(service.submit_transfer(first), service.submit_transfer(second))
    checkpoints = await asyncio.gather(*[service.wait_for_transfer(i) for i in ids])

    assert all(c.is_completed for c in checkpoints)
    assert base_chain.count_submitted(DepositForBurn) == 2
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6 - 3 * 10**6
    assert aptos_chain.get_balance(recipient) == 3 * 10**6


@pytest.mark.asyncio
async def test_resume_with_new_service(registry, capabilities, config, request_10_5, base_chain, tmp_path):
    """Checkpoints on disk let another process finish the transfer."""
    base_chain.fault_filter = DepositForBurn
    base_chain.hold_transactions = 1

    service = CrossChainTransferService(registry, capabilities, store=FileCheckpointStore(tmp_path), config=config)
    transfer_id = await service.submit_transfer(request_10_5)
    checkpoint = await service.wait_for_transfer(transfer_id)
    assert checkpoint.error_kind == ErrorKind.burn_confirmation_timeout

    base_chain.release()
    restarted = CrossChainTransferService(registry, capabilities, store=FileCheckpointStore(tmp_path), config=config)
    await restarted.resume_transfer(transfer_id)
    checkpoint = await restarted.wait_for_transfer(transfer_id)

    assert checkpoint.is_completed
    assert base_chain.count_submitted(DepositForBurn) == 1


@pytest.mark.asyncio
async def test_resume_interrupted_transfers(registry, capabilities, config, authority, request_10_5, base_chain, tmp_path):
    """A process dying mid attestation leaves a transfer that a new process picks up."""
    authority.pending_polls = 10_000
    store = FileCheckpointStore(tmp_path)
    service = CrossChainTransferService(registry, capabilities, store=store, config=config)
    transfer_id = await service.submit_transfer(request_10_5)

    for _ in range(200):
        checkpoint = await store.get(transfer_id)
        if checkpoint.stage == TransferStage.awaiting_attestation:
            break
        await asyncio.sleep(0.01)
    assert checkpoint.stage == TransferStage.awaiting_attestation

    # Simulate the process going away
    task = service.tasks[transfer_id]
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    authority.pending_polls = 0
    restarted = CrossChainTransferService(registry, capabilities, store=FileCheckpointStore(tmp_path), config=config)
    assert await restarted.resume_interrupted_transfers() == [transfer_id]
    checkpoint = await restarted.wait_for_transfer(transfer_id)

    assert checkpoint.is_completed
    assert base_chain.count_submitted(DepositForBurn) == 1


@pytest.mark.asyncio
async def test_unexpected_error_is_resumable(service, request_10_5, monkeypatch):
    """A crash in the driver is recorded, then raised."""

    async def crash(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(service.burn_executor, "execute", crash)
    transfer_id = await service.submit_transfer(request_10_5)

    with pytest.raises(RuntimeError):
        await service.wait_for_transfer(transfer_id)

    checkpoint = await service.get_checkpoint(transfer_id)
    assert checkpoint.error_kind == ErrorKind.unexpected
    assert checkpoint.failed_stage == TransferStage.burning
    assert checkpoint.resumable

    monkeypatch.undo()
    await service.resume_transfer(transfer_id)
    assert (await service.wait_for_transfer(transfer_id)).is_completed


@pytest.mark.asyncio
async def test_progress_callbacks(service, request_10_5):
    """A broken callback does not stop the transfer, a progress bar follows it."""
    transfer_id = await service.submit_transfer(request_10_5)

    def broken(event):
        raise ValueError("broken subscriber")

    progress_bar = TransferProgressBar(transfer_id, disable=True)
    service.subscribe_progress(transfer_id, callback=broken)
    service.subscribe_progress(transfer_id, callback=progress_bar)

    checkpoint = await service.wait_for_transfer(transfer_id)
    progress_bar.close()

    assert checkpoint.is_completed
    assert progress_bar.done == 6
    assert progress_bar.polls >= 3

    event = service.get_channel(transfer_id).last_event
    data = event.to_dict()
    assert data["stage"] == "completed"
    assert data["sequence"] == event.sequence


@pytest.mark.asyncio
async def test_late_subscriber_gets_history(service, request_10_5):
    transfer_id = await service.submit_transfer(request_10_5)
    await service.wait_for_transfer(transfer_id)

    events = [event async for event in service.subscribe_progress(transfer_id)]
    assert events[-1].stage == TransferStage.completed


def test_estimate_transfer(service, request_10_5):
    estimate = service.estimate_transfer(request_10_5)
    assert estimate.amount == Decimal("10.5")
    assert estimate.received_amount == Decimal("10.5")
    assert estimate.protocol_fee == 0
    assert estimate.source_fee_token == "ETH"
    assert estimate.destination_fee_token == "APT"
    assert estimate.estimated_seconds == 180


def test_estimate_invalid_request(service, recipient):
    with pytest.raises(InvalidRequest):
        service.estimate_transfer(TransferRequest.create("0.05", "base", "aptos", recipient, idempotency_key="k"))


def test_config_from_environment(tmp_path):
    config = BridgeConfig.from_environment(
        {
            "NETWORK": "mainnet",
            "CHECKPOINT_DIR": str(tmp_path),
            "ATTESTATION_TIMEOUT": "60",
            "CONFIRMATION_TIMEOUT": "30",
        }
    )
    assert config.iris_api_url == IRIS_API_BASE_URL
    assert config.attestation.timeout == 60
    assert config.burn_confirmation_timeout == config.mint_confirmation_timeout == 30
    assert config.checkpoint_dir == tmp_path

    with pytest.raises(AssertionError):
        BridgeConfig.from_environment({"NETWORK": "devnet"})


@pytest.mark.asyncio
async def test_finished_channels_are_bounded(registry, capabilities, recipient):
    """Progress history of finished transfers is kept for the most recent ones only."""
    config = BridgeConfig.create_test_config()
    config.finished_channel_cache_size = 2
    service = CrossChainTransferService(registry, capabilities, config=config)

    ids = []
    for key in ("small-1", "small-2", "small-3"):
        request = TransferRequest.create("0.05", "base", "aptos", recipient, idempotency_key=key)
        ids.append(await service.submit_transfer(request))

    assert service.channels == {}
    assert list(service.finished_channels) == ids[1:]


@pytest.mark.asyncio
async def test_callback_subscriber_holds_no_events(service, request_10_5):
    """A callback-only subscriber queues nothing and leaves the channel when the transfer completes."""
    transfer_id = await service.submit_transfer(request_10_5)
    seen = []
    subscription = service.subscribe_progress(transfer_id, callback=seen.append)

    await service.wait_for_transfer(transfer_id)

    assert seen[-1].stage == TransferStage.completed
    assert subscription.queue is None
    assert subscription.closed
    channel = service.get_channel(transfer_id)
    assert channel.subscriptions == []
    assert transfer_id in service.finished_channels

    # Iterating afterwards still gives the events it was subscribed for
    events = [event async for event in subscription]
    assert events == seen
