"""Burn executor against a simulated Base chain."""

import pytest

from usdc_bridge.cctp.burn import BurnExecutor
from usdc_bridge.cctp.errors import (
    BurnConfirmationTimeout,
    BurnMessageMissing,
    BurnSubmissionFailed,
    InsufficientBalance,
    TransferCancelled,
)
from usdc_bridge.cctp.message import decode_burn_message, encode_address_bytes32, hash_message
from usdc_bridge.cctp.signer import ApproveBurn, DepositForBurn
from usdc_bridge.cctp.validation import TransferRequest


@pytest.fixture()
def burn_executor(registry, signer_locks) -> BurnExecutor:
    return BurnExecutor(registry, signer_locks, confirmation_timeout=1.0)


class SubmittedIds:
    """Records burn tx ids handed to ``on_submitted``."""

    def __init__(self):
        self.tx_ids = []

    async def __call__(self, tx_id: str):
        self.tx_ids.append(tx_id)


@pytest.mark.asyncio
async def test_burn(burn_executor, base_signer, base_chain, request_10_5, registry):
    """Approve, burn, confirm and extract the message."""
    submitted = SubmittedIds()
    result = await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted)

    assert submitted.tx_ids == [result.tx_id]
    assert result.amount == 10_500_000
    assert result.message_hash == hash_message(result.message_bytes)
    assert base_chain.count_submitted(ApproveBurn) == 1
    assert base_chain.count_submitted(DepositForBurn) == 1
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6 - 10_500_000

    burn = decode_burn_message(result.message_bytes)
    assert burn.amount == 10_500_000
    assert burn.destination_domain == registry.get_chain("aptos").domain
    assert burn.mint_recipient == encode_address_bytes32(request_10_5.recipient)


@pytest.mark.asyncio
async def test_insufficient_balance(burn_executor, base_signer, base_chain, recipient):
    """Nothing is submitted when the account is short."""
    request = TransferRequest.create("1000.000001", "base", "aptos", recipient, idempotency_key="k")
    with pytest.raises(InsufficientBalance):
        await burn_executor.execute(request, base_signer, on_submitted=SubmittedIds())
    assert base_chain.submitted == []


@pytest.mark.asyncio
async def test_burn_rejected(burn_executor, base_signer, base_chain, request_10_5):
    base_chain.fault_filter = DepositForBurn
    base_chain.reject_submissions = 1
    submitted = SubmittedIds()

    with pytest.raises(BurnSubmissionFailed) as exc_info:
        await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted)

    assert exc_info.value.retryable
    assert submitted.tx_ids == []
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6


@pytest.mark.asyncio
async def test_approval_rejected(burn_executor, base_signer, base_chain, request_10_5):
    base_chain.reject_submissions = 1
    with pytest.raises(BurnSubmissionFailed, match="approval"):
        await burn_executor.execute(request_10_5, base_signer, on_submitted=SubmittedIds())
    assert base_chain.count_submitted(DepositForBurn) == 0


@pytest.mark.asyncio
async def test_burn_reverted(burn_executor, base_signer, base_chain, request_10_5):
    base_chain.fault_filter = DepositForBurn
    base_chain.revert_transactions = 1
    submitted = SubmittedIds()

    with pytest.raises(BurnSubmissionFailed, match="reverted") as exc_info:
        await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted)

    assert exc_info.value.tx_id == submitted.tx_ids[0]
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6


@pytest.mark.asyncio
async def test_message_missing(burn_executor, base_signer, base_chain, request_10_5):
    """A confirmed burn without MessageSent is not retryable."""
    base_chain.omit_message_sent = True
    with pytest.raises(BurnMessageMissing) as exc_info:
        await burn_executor.execute(request_10_5, base_signer, on_submitted=SubmittedIds())
    assert not exc_info.value.retryable
    assert exc_info.value.tx_id is not None


@pytest.mark.asyncio
async def test_stuck_burn_is_not_submitted_twice(burn_executor, base_signer, base_chain, request_10_5):
    """A burn that timed out is confirmed later instead of being burned again."""
    base_chain.fault_filter = DepositForBurn
    base_chain.hold_transactions = 1
    submitted = SubmittedIds()

    with pytest.raises(BurnConfirmationTimeout) as exc_info:
        await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted)

    tx_id = exc_info.value.tx_id
    assert submitted.tx_ids == [tx_id]

    base_chain.release()
    result = await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted, previous_tx_id=tx_id)

    assert result.tx_id == tx_id
    assert submitted.tx_ids == [tx_id]
    assert base_chain.count_submitted(DepositForBurn) == 1
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6 - 10_500_000


@pytest.mark.asyncio
async def test_pending_burn_still_pending(burn_executor, base_signer, base_chain, request_10_5):
    """Still in the mempool on retry: wait again, do not resubmit."""
    base_chain.fault_filter = DepositForBurn
    base_chain.hold_transactions = 1
    submitted = SubmittedIds()

    with pytest.raises(BurnConfirmationTimeout) as exc_info:
        await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted)

    with pytest.raises(BurnConfirmationTimeout):
        await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted, previous_tx_id=exc_info.value.tx_id)

    assert base_chain.count_submitted(DepositForBurn) == 1


@pytest.mark.asyncio
async def test_dropped_burn_is_resubmitted(burn_executor, base_signer, base_chain, request_10_5):
    """The chain never saw the old burn, so a new one is safe."""
    base_chain.fault_filter = DepositForBurn
    base_chain.drop_transactions = 1
    submitted = SubmittedIds()

    with pytest.raises(BurnConfirmationTimeout) as exc_info:
        await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted)

    result = await burn_executor.execute(request_10_5, base_signer, on_submitted=submitted, previous_tx_id=exc_info.value.tx_id)

    assert result.tx_id != exc_info.value.tx_id
    assert submitted.tx_ids == [exc_info.value.tx_id, result.tx_id]
    assert base_chain.count_submitted(DepositForBurn) == 2
    assert base_chain.get_balance(base_signer.address) == 1_000 * 10**6 - 10_500_000


@pytest.mark.asyncio
async def test_before_submit_can_abort(burn_executor, base_signer, base_chain, request_10_5):
    async def before_submit():
        raise TransferCancelled("Cancelled")

    with pytest.raises(TransferCancelled):
        await burn_executor.execute(request_10_5, base_signer, on_submitted=SubmittedIds(), before_submit=before_submit)

    assert base_chain.count_submitted(DepositForBurn) == 0
