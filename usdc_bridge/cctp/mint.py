"""Mint USDC on the destination chain.

The mint replays the attested CCTP message with ``receiveMessage()``.
Before anything is submitted the executor checks the attestation belongs to
the transfer's checkpoint. After confirmation it checks the recipient got
exactly the requested amount:

- from the ``MintAndWithdraw`` event in the receipt, when present
- otherwise from the recipient balance before and after

A wrong amount cannot be fixed by retrying and is reported as
:py:class:`~usdc_bridge.cctp.errors.MintVerificationMismatch`.

A message can be received only once. If the destination chain already used
its nonce, because an earlier attempt landed or someone else relayed it, the
mint is done and nothing is submitted.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from usdc_bridge.cctp.checkpoint import Checkpoint
from usdc_bridge.cctp.errors import AttestationMismatch, MintSubmissionFailed, MintVerificationMismatch
from usdc_bridge.cctp.message import BurnMessage, decode_burn_message, encode_address_bytes32, extract_minted_amount, hash_message
from usdc_bridge.cctp.registry import ChainDescriptor, ChainRegistry
from usdc_bridge.cctp.signer import ChainSigner, ConfirmationTimeout, ReceiveMessage, SignerLocks, TransactionRejected, TransactionStatus

logger = logging.getLogger(__name__)

#: Awaited with ``(mint_tx_id, recipient_balance_before)`` right after submission
OnMintSubmitted = Callable[[str, int], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class MintResult:
    """A confirmed and verified mint."""

    #: ``None`` if the message was received by a transaction we did not send
    tx_id: str | None

    #: Raw amount credited to the recipient
    amount: int

    block_number: int | None

    #: ``"event"``, ``"balance"`` or ``"message_received"``
    verified_by: str


class MintExecutor:
    """Submit, confirm and verify mints."""

    def __init__(
        self,
        registry: ChainRegistry,
        signer_locks: SignerLocks,
        confirmation_timeout: float = 600.0,
    ):
        self.registry = registry
        self.signer_locks = signer_locks
        self.confirmation_timeout = confirmation_timeout

    def check_attestation(self, checkpoint: Checkpoint, message_bytes: bytes, signature: bytes) -> BurnMessage:
        """Make sure the message and signature belong to this transfer.

        :return:
            Decoded burn message.

        :raise AttestationMismatch:
            Any disagreement with the checkpoint or the request.
        """
        transfer_id = checkpoint.transfer_id
        request = checkpoint.request

        if checkpoint.message_hash is None or not message_bytes:
            raise AttestationMismatch(f"Transfer {transfer_id} has no burn message, cannot mint")

        actual_hash = hash_message(message_bytes)
        if actual_hash.lower() != checkpoint.message_hash.lower():
            raise AttestationMismatch(f"Transfer {transfer_id}: message hashes to {actual_hash}, checkpoint has {checkpoint.message_hash}")

        if not signature:
            raise AttestationMismatch(f"Transfer {transfer_id}: empty attestation")

        if checkpoint.attestation_signature is not None and signature != checkpoint.attestation_signature:
            raise AttestationMismatch(f"Transfer {transfer_id}: attestation differs from the stored one")

        try:
            burn = decode_burn_message(message_bytes)
        except ValueError as e:
            raise AttestationMismatch(f"Transfer {transfer_id}: cannot decode message: {e}") from e

        source = self.registry.get_chain(request.source_chain)
        destination = self.registry.get_chain(request.destination_chain)

        if burn.source_domain != source.domain or burn.destination_domain != destination.domain:
            raise AttestationMismatch(
                f"Transfer {transfer_id}: message goes from domain {burn.source_domain} to {burn.destination_domain}, expected {source.domain} to {destination.domain}",
            )

        if burn.mint_recipient != encode_address_bytes32(request.recipient):
            raise AttestationMismatch(f"Transfer {transfer_id}: message mints to 0x{burn.mint_recipient.hex()}, expected {request.recipient}")

        expected = destination.to_raw_amount(request.amount)
        if burn.amount != expected:
            raise AttestationMismatch(f"Transfer {transfer_id}: message amount {burn.amount}, expected {expected}")

        return burn

    async def execute(
        self,
        checkpoint: Checkpoint,
        message_bytes: bytes,
        signature: bytes,
        signer: ChainSigner,
        on_submitted: OnMintSubmitted,
    ) -> MintResult:
        """Mint the burned amount to the recipient.

        If the checkpoint already has a mint transaction, it is re-queried
        first and only replaced when the chain says it failed or does not exist.
        Nothing is submitted when the destination chain already received the message.

        :param signer:
            Signer for the destination chain.

        :raise AttestationMismatch:
            Attestation does not belong to this checkpoint. Nothing submitted.

        :raise MintSubmissionFailed:
            Rejected, reverted or not confirmed in time. The attestation stays usable.

        :raise MintVerificationMismatch:
            Confirmed, but the recipient was credited a different amount.
        """
        self.check_attestation(checkpoint, message_bytes, signature)

        request = checkpoint.request
        destination = self.registry.get_chain(request.destination_chain)
        expected = destination.to_raw_amount(request.amount)

        previous_tx_id = checkpoint.mint_tx_id
        if previous_tx_id is not None:
            status = await signer.get_transaction_status(previous_tx_id)
            if status in (TransactionStatus.confirmed, TransactionStatus.pending):
                logger.info("Mint %s from a previous attempt is %s, not submitting again", previous_tx_id, status.value)
                return await self._confirm_and_verify(signer, destination, checkpoint, previous_tx_id, expected, checkpoint.recipient_balance_before)
            logger.warning("Mint %s from a previous attempt is %s, submitting a new mint", previous_tx_id, status.value)

        lock = await self.signer_locks.lock_for(signer)
        async with lock:
            if await signer.is_message_received(message_bytes):
                return self._already_received(checkpoint, destination, expected)

            balance_before = await signer.get_balance(request.recipient)
            intent = ReceiveMessage(
                message=message_bytes,
                attestation=signature,
                message_transmitter=destination.message_transmitter,
            )
            try:
                tx_id = await signer.sign_and_submit(intent)
            except TransactionRejected as e:
                # Lost a race with another relayer
                if await signer.is_message_received(message_bytes):
                    logger.info("receiveMessage rejected on %s: %s", destination.display_name, e)
                    return self._already_received(checkpoint, destination, expected)
                raise MintSubmissionFailed(f"receiveMessage rejected on {destination.display_name}: {e}") from e

            logger.info("Mint submitted on %s for transfer %s, tx %s %s", destination.display_name, checkpoint.transfer_id, tx_id, destination.get_explorer_link(tx_id) or "")
            await on_submitted(tx_id, balance_before)

        return await self._confirm_and_verify(signer, destination, checkpoint, tx_id, expected, balance_before)

    def _already_received(self, checkpoint: Checkpoint, destination: ChainDescriptor, expected: int) -> MintResult:
        """The message nonce is used on the destination chain.

        The MessageTransmitter credits exactly the attested amount to the attested
        recipient, and :py:meth:`check_attestation` matched both to the request.
        """
        logger.info(
            "Message %s of transfer %s already received on %s, %d raw USDC credited to %s, not minting again",
            checkpoint.message_hash,
            checkpoint.transfer_id,
            destination.display_name,
            expected,
            checkpoint.request.recipient,
        )
        return MintResult(tx_id=None, amount=expected, block_number=None, verified_by="message_received")

    async def _confirm_and_verify(
        self,
        signer: ChainSigner,
        destination: ChainDescriptor,
        checkpoint: Checkpoint,
        tx_id: str,
        expected: int,
        balance_before: int | None,
    ) -> MintResult:
        recipient = checkpoint.request.recipient
        try:
            receipt = await signer.wait_for_confirmation(tx_id, destination.confirmations, self.confirmation_timeout)
        except ConfirmationTimeout as e:
            raise MintSubmissionFailed(f"Mint {tx_id} not confirmed on {destination.display_name} within {self.confirmation_timeout}s", tx_id=tx_id) from e

        if not receipt.success:
            raise MintSubmissionFailed(f"Mint {tx_id} reverted on {destination.display_name}", tx_id=tx_id)

        minted = extract_minted_amount(receipt.logs, mint_recipient=encode_address_bytes32(recipient))
        verified_by = "event"
        if minted is None and balance_before is not None:
            balance_after = await signer.get_balance(recipient)
            minted = balance_after - balance_before
            verified_by = "balance"

        if minted is None:
            raise MintVerificationMismatch(
                f"Mint {tx_id} confirmed but the credited amount cannot be observed",
                expected=expected,
                observed=None,
                tx_id=tx_id,
            )

        if minted != expected:
            raise MintVerificationMismatch(
                f"Mint {tx_id} credited {minted} raw USDC to {recipient}, expected {expected}",
                expected=expected,
                observed=minted,
                tx_id=tx_id,
            )

        logger.info("Mint %s confirmed in block %d, %d raw USDC credited to %s", tx_id, receipt.block_number, minted, recipient)
        return MintResult(tx_id=tx_id, amount=minted, block_number=receipt.block_number, verified_by=verified_by)
