"""Burn USDC on the source chain.

The burn is the point of no return of a transfer. The executor:

1. checks the source account holds enough USDC
2. approves the TokenMessenger, if the chain needs an ERC-20 approval
3. submits ``depositForBurn(amount, destinationDomain, mintRecipient, burnToken)``
4. hands the transaction id to the caller *before* waiting for it,
   so it can be checkpointed
5. waits for the source chain confirmation depth
6. extracts the ``MessageSent`` message and its hash from the receipt

If a previous attempt left a burn transaction id behind, the executor
asks the chain about it first and only submits a new burn when the chain
says the old one failed or never existed.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from usdc_bridge.cctp.errors import (
    BurnConfirmationTimeout,
    BurnMessageMissing,
    BurnSubmissionFailed,
    InsufficientBalance,
)
from usdc_bridge.cctp.message import encode_address_bytes32, extract_message_sent, hash_message
from usdc_bridge.cctp.registry import ChainDescriptor, ChainRegistry
from usdc_bridge.cctp.signer import (
    ApproveBurn,
    ChainSigner,
    ConfirmationTimeout,
    DepositForBurn,
    SignerLocks,
    TransactionRejected,
    TransactionStatus,
)
from usdc_bridge.cctp.validation import TransferRequest

logger = logging.getLogger(__name__)

#: Awaited with the burn transaction id right after submission
OnBurnSubmitted = Callable[[str], Awaitable[None]]

#: Awaited right before ``depositForBurn`` is submitted, may raise to abort
BeforeBurnSubmit = Callable[[], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class BurnResult:
    """A confirmed burn."""

    #: Burn transaction id
    tx_id: str

    #: Raw amount burned
    amount: int

    #: ``MessageSent`` payload
    message_bytes: bytes

    #: ``keccak256(message_bytes)``
    message_hash: str

    block_number: int


class BurnExecutor:
    """Submit and confirm burns.

    :param registry:
        Chain directory.

    :param signer_locks:
        Process wide submission locks.

    :param confirmation_timeout:
        Seconds to wait for the confirmation depth.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        signer_locks: SignerLocks,
        confirmation_timeout: float = 600.0,
    ):
        self.registry = registry
        self.signer_locks = signer_locks
        self.confirmation_timeout = confirmation_timeout

    async def execute(
        self,
        request: TransferRequest,
        signer: ChainSigner,
        on_submitted: OnBurnSubmitted,
        previous_tx_id: str | None = None,
        before_submit: BeforeBurnSubmit | None = None,
    ) -> BurnResult:
        """Burn the request amount.

        :param signer:
            Signer for the source chain.

        :param on_submitted:
            Awaited with the burn tx id before the confirmation wait starts.

        :param previous_tx_id:
            Burn tx id left by an earlier attempt of the same transfer.

        :param before_submit:
            Last chance to abort. Awaited after the balance check and approval,
            right before the burn is submitted.

        :raise InsufficientBalance:
            Nothing submitted.

        :raise BurnSubmissionFailed:
            Rejected or reverted, nothing burned.

        :raise BurnConfirmationTimeout:
            Submitted, confirmation not seen in time.

        :raise BurnMessageMissing:
            Confirmed but no ``MessageSent`` event.
        """
        source = self.registry.get_chain(request.source_chain)
        destination = self.registry.get_chain(request.destination_chain)
        amount = source.to_raw_amount(request.amount)

        if previous_tx_id is not None:
            status = await signer.get_transaction_status(previous_tx_id)
            if status in (TransactionStatus.confirmed, TransactionStatus.pending):
                logger.info("Burn %s from a previous attempt is %s, not submitting again", previous_tx_id, status.value)
                return await self._confirm(signer, source, previous_tx_id, amount)
            logger.warning("Burn %s from a previous attempt is %s, submitting a new burn", previous_tx_id, status.value)

        lock = await self.signer_locks.lock_for(signer)
        async with lock:
            sender = await signer.get_address()
            balance = await signer.get_balance()
            if balance < amount:
                raise InsufficientBalance(f"{sender} on {source.display_name} has {balance} raw USDC, needs {amount}")

            if source.requires_approval:
                await self._approve(signer, source, amount)

            intent = DepositForBurn(
                amount=amount,
                destination_domain=destination.domain,
                mint_recipient=encode_address_bytes32(request.recipient),
                burn_token=source.token_address,
                token_messenger=source.token_messenger,
            )
            if before_submit is not None:
                await before_submit()
            try:
                tx_id = await signer.sign_and_submit(intent)
            except TransactionRejected as e:
                raise BurnSubmissionFailed(f"depositForBurn rejected on {source.display_name}: {e}") from e

            logger.info(
                "Burn submitted on %s: %s raw USDC to %s (domain %d), tx %s %s",
                source.display_name,
                amount,
                request.recipient,
                destination.domain,
                tx_id,
                source.get_explorer_link(tx_id) or "",
            )
            await on_submitted(tx_id)

        return await self._confirm(signer, source, tx_id, amount)

    async def _approve(self, signer: ChainSigner, source: ChainDescriptor, amount: int):
        assert source.token_messenger, f"{source.chain_id} needs approval but has no TokenMessenger"
        intent = ApproveBurn(token=source.token_address, spender=source.token_messenger, amount=amount)
        try:
            tx_id = await signer.sign_and_submit(intent)
            receipt = await signer.wait_for_confirmation(tx_id, source.confirmations, self.confirmation_timeout)
        except TransactionRejected as e:
            raise BurnSubmissionFailed(f"USDC approval rejected on {source.display_name}: {e}") from e
        except ConfirmationTimeout as e:
            raise BurnSubmissionFailed(f"USDC approval not confirmed on {source.display_name}: {e}", tx_id=e.tx_id) from e

        if not receipt.success:
            raise BurnSubmissionFailed(f"USDC approval reverted on {source.display_name}", tx_id=tx_id)
        logger.info("Approved %s raw USDC for TokenMessenger %s, tx %s", amount, source.token_messenger, tx_id)

    async def _confirm(self, signer: ChainSigner, source: ChainDescriptor, tx_id: str, amount: int) -> BurnResult:
        try:
            receipt = await signer.wait_for_confirmation(tx_id, source.confirmations, self.confirmation_timeout)
        except ConfirmationTimeout as e:
            raise BurnConfirmationTimeout(
                f"Burn {tx_id} not confirmed on {source.display_name} within {self.confirmation_timeout}s",
                tx_id=tx_id,
            ) from e

        if not receipt.success:
            raise BurnSubmissionFailed(f"Burn {tx_id} reverted on {source.display_name}", tx_id=tx_id)

        message_bytes = extract_message_sent(receipt.logs)
        if message_bytes is None:
            raise BurnMessageMissing(f"Burn {tx_id} confirmed without a MessageSent event", tx_id=tx_id)

        message_hash = hash_message(message_bytes)
        logger.info("Burn %s confirmed in block %d, message hash %s", tx_id, receipt.block_number, message_hash)
        return BurnResult(
            tx_id=tx_id,
            amount=amount,
            message_bytes=message_bytes,
            message_hash=message_hash,
            block_number=receipt.block_number,
        )
