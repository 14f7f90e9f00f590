"""Cross-chain transfer orchestration.

:py:class:`TransferOrchestrator` drives one transfer through the state machine::

    created → validating → burning → awaiting_attestation → attested → minting → completed
                    ↘           ↘               ↘                          ↘
                                          failed(stage, error_kind, resumable)

Every transition is written to the :py:class:`~usdc_bridge.cctp.checkpoint.CheckpointStore`
before the next stage starts, and published on the transfer's
:py:class:`~usdc_bridge.cctp.progress.ProgressChannel` before control returns.

:py:class:`CrossChainTransferService` is the caller facing API. It owns the
checkpoint store, the shared executors and one asyncio task per running
transfer.

Example::

    from usdc_bridge.cctp.orchestrator import CrossChainTransferService
    from usdc_bridge.cctp.registry import create_testnet_registry
    from usdc_bridge.cctp.validation import TransferRequest

    service = CrossChainTransferService(create_testnet_registry(), capabilities)

    request = TransferRequest.create("10.5", "base", "aptos", recipient, idempotency_key="invoice-42")
    transfer_id = await service.submit_transfer(request)

    async for event in service.subscribe_progress(transfer_id):
        print(event.stage.value, event.message)

    checkpoint = await service.wait_for_transfer(transfer_id)

Failed transfers marked resumable can be continued with
:py:meth:`CrossChainTransferService.resume_transfer`. A confirmed burn is
never submitted again, and a stored attestation is never requested again.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from usdc_bridge.cctp.attestation import AttestationAuthority, AttestationClient, AttestationPoll
from usdc_bridge.cctp.burn import BurnExecutor
from usdc_bridge.cctp.checkpoint import Checkpoint, CheckpointStore, MemoryCheckpointStore, TransferStage
from usdc_bridge.cctp.config import BridgeConfig
from usdc_bridge.cctp.errors import (
    ErrorKind,
    IdempotencyConflict,
    InvalidRequest,
    TransferCancelled,
    TransferError,
    TransferNotResumable,
    WalletCapabilityError,
)
from usdc_bridge.cctp.mint import MintExecutor
from usdc_bridge.cctp.progress import ProgressCallback, ProgressChannel, Subscription
from usdc_bridge.cctp.registry import ChainRegistry
from usdc_bridge.cctp.signer import ChainSigner, SignerLocks, TransactionStatus
from usdc_bridge.cctp.validation import TransferRequest, Validator

logger = logging.getLogger(__name__)

#: Alerts that need a human to reconcile funds
operator_logger = logging.getLogger("usdc_bridge.operator")

#: Namespace for deriving transfer ids from idempotency keys
TRANSFER_ID_NAMESPACE = uuid.UUID("9b2f4c62-52a1-4d8e-8f3c-6c1d0e7a9b44")


def get_transfer_id(idempotency_key: str) -> str:
    """Transfer id for an idempotency key.

    Deterministic, so a restarted process finds the same checkpoint.
    """
    return uuid.uuid5(TRANSFER_ID_NAMESPACE, idempotency_key).hex


@dataclass(slots=True)
class BridgeCapabilities:
    """Chain signers and the attestation authority a service talks to.

    Built once: real signers and Iris in production,
    :py:func:`usdc_bridge.cctp.testing.create_simulated_capabilities` in tests.
    """

    #: Registry chain id → signer
    signers: dict[str, ChainSigner]

    authority: AttestationAuthority

    def get_signer(self, chain_id: str) -> ChainSigner:
        """
        :raise WalletCapabilityError:
            No signer connected for the chain.
        """
        signer = self.signers.get(chain_id)
        if signer is None:
            raise WalletCapabilityError(f"No signer connected for chain {chain_id}")
        return signer


@dataclass(slots=True, frozen=True)
class TransferEstimate:
    """What a transfer would cost and how long it would take."""

    source_chain: str

    destination_chain: str

    #: Burned on the source chain
    amount: Decimal

    #: Minted on the destination chain
    received_amount: Decimal

    #: CCTP standard transfers carry no protocol fee
    protocol_fee: Decimal

    #: Gas for approval and burn, in ``source_fee_token``
    source_network_fee: Decimal

    source_fee_token: str

    #: Gas for the mint, in ``destination_fee_token``
    destination_network_fee: Decimal

    destination_fee_token: str

    #: Wall clock estimate
    estimated_seconds: float


class TransferOrchestrator:
    """Drive one transfer.

    A new orchestrator is made for every driver run; everything that has to
    survive lives in the checkpoint.
    """

    def __init__(
        self,
        transfer_id: str,
        store: CheckpointStore,
        channel: ProgressChannel,
        registry: ChainRegistry,
        validator: Validator,
        burn_executor: BurnExecutor,
        attestation_client: AttestationClient,
        mint_executor: MintExecutor,
        capabilities: BridgeCapabilities,
    ):
        self.transfer_id = transfer_id
        self.store = store
        self.channel = channel
        self.registry = registry
        self.validator = validator
        self.burn_executor = burn_executor
        self.attestation_client = attestation_client
        self.mint_executor = mint_executor
        self.capabilities = capabilities

        #: Caller asked to stop before the burn
        self.cancel_requested = False

        #: Burn submission started, cancel requests are refused from now on
        self.burn_submitting = False

    def __repr__(self):
        return f"<TransferOrchestrator {self.transfer_id}>"

    def request_cancel(self) -> bool:
        """Ask a running transfer to stop before it burns.

        :return:
            ``False`` if the burn is already being submitted.
        """
        if self.burn_submitting:
            return False
        self.cancel_requested = True
        return True

    async def cancel(self, message: str = "Transfer cancelled by caller before the burn was submitted") -> Checkpoint:
        """Cancel a transfer that is not running."""
        return await self._fail(TransferCancelled(message))

    async def validate(self) -> Checkpoint:
        """Run pre-flight validation.

        Ends in ``burning`` or ``failed(validating)``.
        """
        checkpoint = await self._enter(TransferStage.validating, "Validating transfer request")
        request = checkpoint.request
        try:
            self.validator.validate(request)
        except InvalidRequest as e:
            return await self._fail(e)

        source = self.registry.get_chain(request.source_chain)
        return await self._enter(TransferStage.burning, f"Burning {request.amount} USDC on {source.display_name}")

    async def run(self, resume: bool = False) -> Checkpoint:
        """Drive the transfer until it completes or fails.

        :param resume:
            Re-enter the stage the transfer failed or stopped in.

        :return:
            Final checkpoint, ``completed`` or ``failed``.

        :raise TransferNotResumable:
            The transfer failed with a non-resumable error.
        """
        checkpoint = await self.store.get(self.transfer_id)
        if checkpoint.is_completed:
            return checkpoint

        if resume and checkpoint.stage != TransferStage.created:
            if not checkpoint.is_resumable:
                raise TransferNotResumable(f"Transfer {self.transfer_id} failed with {checkpoint.error_kind}, not resumable")
            stage = checkpoint.effective_stage
            checkpoint = await self._enter(stage, f"Resuming transfer at {stage.value}", tx_id=checkpoint.burn_tx_id)

        try:
            while not (checkpoint.is_completed or checkpoint.is_failed):
                checkpoint = await self._step(checkpoint)
        except TransferError as e:
            if self.cancel_requested and not self.burn_submitting and not isinstance(e, TransferCancelled):
                logger.info("Transfer %s was cancelled, ignoring %s", self.transfer_id, e)
                e = TransferCancelled("Transfer cancelled by caller before the burn was submitted")
            checkpoint = await self._fail(e)
        except Exception as e:
            logger.exception("Transfer %s crashed: %s", self.transfer_id, e)
            await self._fail(e)
            raise

        return checkpoint

    async def _step(self, checkpoint: Checkpoint) -> Checkpoint:
        stage = checkpoint.stage
        if stage in (TransferStage.created, TransferStage.validating):
            return await self.validate()
        elif stage == TransferStage.burning:
            return await self._burn(checkpoint)
        elif stage == TransferStage.awaiting_attestation:
            return await self._attest(checkpoint)
        elif stage == TransferStage.attested:
            destination = self.registry.get_chain(checkpoint.request.destination_chain)
            return await self._enter(TransferStage.minting, f"Minting {checkpoint.request.amount} USDC on {destination.display_name}")
        elif stage == TransferStage.minting:
            return await self._mint(checkpoint)
        else:
            raise AssertionError(f"No step for stage {stage}")

    def _check_cancelled(self):
        if self.cancel_requested:
            raise TransferCancelled("Transfer cancelled by caller before the burn was submitted")

    async def _burn(self, checkpoint: Checkpoint) -> Checkpoint:
        request = checkpoint.request
        source = self.registry.get_chain(request.source_chain)

        if checkpoint.burn_confirmed:
            return await self._enter(
                TransferStage.awaiting_attestation,
                f"Burn already confirmed, waiting for attestation of {checkpoint.message_hash}",
                tx_id=checkpoint.burn_tx_id,
            )

        self._check_cancelled()
        signer = self.capabilities.get_signer(request.source_chain)

        if checkpoint.burn_tx_id is not None:
            self.burn_submitting = True

        async def before_submit():
            self._check_cancelled()
            self.burn_submitting = True

        async def on_submitted(tx_id: str):
            def _record(cp: Checkpoint):
                cp.burn_tx_id = tx_id

            await self.store.update(self.transfer_id, _record)
            self.channel.publish(
                TransferStage.burning,
                f"Burn transaction submitted on {source.display_name}",
                tx_id=tx_id,
                explorer_link=source.get_explorer_link(tx_id),
            )

        result = await self.burn_executor.execute(
            request,
            signer,
            on_submitted=on_submitted,
            previous_tx_id=checkpoint.burn_tx_id,
            before_submit=before_submit,
        )

        def _bind(cp: Checkpoint):
            cp.burn_tx_id = result.tx_id
            cp.bind_message(result.message_hash, result.message_bytes)

        return await self._enter(
            TransferStage.awaiting_attestation,
            f"Burn confirmed in block {result.block_number}, waiting for attestation",
            tx_id=result.tx_id,
            explorer_link=source.get_explorer_link(result.tx_id),
            mutate=_bind,
        )

    async def _attest(self, checkpoint: Checkpoint) -> Checkpoint:
        if checkpoint.attestation_signature is not None:
            return await self._enter(TransferStage.attested, "Attestation already stored")

        message_hash = checkpoint.message_hash
        assert message_hash is not None, f"Transfer {self.transfer_id} awaits attestation without a message hash"

        def on_poll(poll: AttestationPoll):
            status = poll.status
            detail = f" ({status.detail})" if status.detail else ""
            self.channel.publish(
                TransferStage.awaiting_attestation,
                f"Attestation {status.state.value}{detail}, poll {poll.attempt}, {poll.elapsed:.0f}s elapsed",
                tx_id=checkpoint.burn_tx_id,
            )

        attestation = await self.attestation_client.fetch_attestation(message_hash, on_poll=on_poll)

        def _store(cp: Checkpoint):
            assert cp.message_hash == attestation.message_hash, "Attestation for a different message"
            cp.attestation_signature = attestation.signature

        return await self._enter(TransferStage.attested, f"Attestation received for {message_hash}", mutate=_store)

    async def _mint(self, checkpoint: Checkpoint) -> Checkpoint:
        request = checkpoint.request
        destination = self.registry.get_chain(request.destination_chain)
        signer = self.capabilities.get_signer(request.destination_chain)

        async def on_submitted(tx_id: str, balance_before: int):
            def _record(cp: Checkpoint):
                cp.mint_tx_id = tx_id
                cp.recipient_balance_before = balance_before

            await self.store.update(self.transfer_id, _record)
            self.channel.publish(
                TransferStage.minting,
                f"Mint transaction submitted on {destination.display_name}",
                tx_id=tx_id,
                explorer_link=destination.get_explorer_link(tx_id),
            )

        result = await self.mint_executor.execute(
            checkpoint,
            checkpoint.message_bytes,
            checkpoint.attestation_signature,
            signer,
            on_submitted=on_submitted,
        )

        def _record_mint(cp: Checkpoint):
            if result.tx_id is not None:
                cp.mint_tx_id = result.tx_id

        message = f"{request.amount} USDC delivered to {request.recipient} on {destination.display_name}"
        if result.tx_id is None:
            message += ", message was already received"

        return await self._enter(
            TransferStage.completed,
            message,
            tx_id=result.tx_id,
            explorer_link=destination.get_explorer_link(result.tx_id) if result.tx_id else None,
            mutate=_record_mint,
        )

    async def _enter(
        self,
        stage: TransferStage,
        message: str,
        tx_id: str | None = None,
        explorer_link: str | None = None,
        mutate: Callable[[Checkpoint], None] | None = None,
    ) -> Checkpoint:
        """Persist a transition, then publish it."""

        def _transition(cp: Checkpoint):
            if mutate is not None:
                mutate(cp)
            cp.advance(stage)
            if not stage.is_terminal:
                cp.count_attempt(stage)

        checkpoint = await self.store.update(self.transfer_id, _transition)
        logger.info("Transfer %s: %s: %s", self.transfer_id, stage.value, message)
        self.channel.publish(stage, message, tx_id=tx_id, explorer_link=explorer_link)
        return checkpoint

    async def _fail(self, error: Exception) -> Checkpoint:
        """Persist a failure, alert, then publish it."""
        if isinstance(error, TransferError):
            kind = error.kind
            resumable = error.retryable
        else:
            kind = ErrorKind.unexpected
            resumable = True

        message = str(error) or type(error).__name__
        checkpoint = await self.store.update(self.transfer_id, lambda cp: cp.fail(kind, message, resumable))
        stage = checkpoint.failed_stage
        tx_id = getattr(error, "tx_id", None)

        if not resumable and checkpoint.burn_tx_id is not None and kind != ErrorKind.cancelled:
            operator_logger.critical(
                "Transfer %s needs manual reconciliation: %s while %s: %s\nRequest: %s\nBurn tx: %s\nMessage hash: %s\nMint tx: %s",
                self.transfer_id,
                kind.value,
                stage.value,
                message,
                checkpoint.request.to_dict(),
                checkpoint.burn_tx_id,
                checkpoint.message_hash,
                checkpoint.mint_tx_id,
            )
        else:
            logger.warning(
                "Transfer %s failed while %s: %s: %s (resumable: %s)",
                self.transfer_id,
                stage.value,
                kind.value,
                message,
                resumable,
            )

        self.channel.publish(
            TransferStage.failed,
            f"Failed while {stage.value}: {message}",
            tx_id=tx_id,
            error_kind=kind,
            failed_stage=stage,
            resumable=resumable,
        )
        return checkpoint


class CrossChainTransferService:
    """Submit, follow, resume and cancel transfers.

    :param registry:
        Supported chains and routes.

    :param capabilities:
        Signers and attestation authority.

    :param store:
        Checkpoint storage. In-memory if not given.

    :param config:
        Timeouts and polling schedule.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        capabilities: BridgeCapabilities,
        store: CheckpointStore | None = None,
        config: BridgeConfig | None = None,
    ):
        self.registry = registry
        self.capabilities = capabilities
        self.store = store or MemoryCheckpointStore()
        self.config = config or BridgeConfig()

        self.validator = Validator(registry)
        self.signer_locks = SignerLocks()
        self.burn_executor = BurnExecutor(registry, self.signer_locks, confirmation_timeout=self.config.burn_confirmation_timeout)
        self.mint_executor = MintExecutor(registry, self.signer_locks, confirmation_timeout=self.config.mint_confirmation_timeout)
        self.attestation_client = AttestationClient(capabilities.authority, self.config.attestation)

        #: Channels of transfers that can still publish
        self.channels: dict[str, ProgressChannel] = {}

        #: Channels of completed or permanently failed transfers, oldest first
        self.finished_channels: OrderedDict[str, ProgressChannel] = OrderedDict()

        self.tasks: dict[str, asyncio.Task] = {}
        self.orchestrators: dict[str, TransferOrchestrator] = {}

    def __repr__(self):
        return f"<CrossChainTransferService running:{len(self.tasks)} store:{self.store}>"

    def get_channel(self, transfer_id: str) -> ProgressChannel:
        channel = self.channels.get(transfer_id)
        if channel is None:
            channel = self.finished_channels.get(transfer_id)
        if channel is None:
            channel = self.channels[transfer_id] = ProgressChannel(transfer_id)
        return channel

    def retire_channel(self, transfer_id: str):
        """Move the channel of a transfer that published its last event to the finished cache.

        The oldest finished channels are dropped beyond
        :py:attr:`BridgeConfig.finished_channel_cache_size`.
        """
        channel = self.channels.get(transfer_id)
        if channel is None or channel.last_event is None or not channel.last_event.is_terminal:
            return
        del self.channels[transfer_id]
        self.finished_channels[transfer_id] = channel
        while len(self.finished_channels) > self.config.finished_channel_cache_size:
            self.finished_channels.popitem(last=False)

    def create_orchestrator(self, transfer_id: str) -> TransferOrchestrator:
        return TransferOrchestrator(
            transfer_id=transfer_id,
            store=self.store,
            channel=self.get_channel(transfer_id),
            registry=self.registry,
            validator=self.validator,
            burn_executor=self.burn_executor,
            attestation_client=self.attestation_client,
            mint_executor=self.mint_executor,
            capabilities=self.capabilities,
        )

    def is_running(self, transfer_id: str) -> bool:
        task = self.tasks.get(transfer_id)
        return task is not None and not task.done()

    async def submit_transfer(self, request: TransferRequest) -> str:
        """Accept a transfer and start driving it.

        Validation runs before this returns. A rejected request ends in
        ``failed(validating)`` without touching any chain; correct it and
        submit under a new idempotency key.

        Submitting the same idempotency key again returns the same transfer id
        and does not start anything new.

        :return:
            Transfer id.

        :raise IdempotencyConflict:
            The key was used for a different request.
        """
        transfer_id = get_transfer_id(request.idempotency_key)
        created = await self.store.create(Checkpoint(transfer_id=transfer_id, request=request))
        if not created:
            existing = await self.store.get(transfer_id)
            if existing.request != request:
                raise IdempotencyConflict(f"Idempotency key {request.idempotency_key} already used for transfer {transfer_id} with a different request")
            logger.info("Transfer %s already submitted with key %s", transfer_id, request.idempotency_key)
            return transfer_id

        logger.info(
            "Transfer %s submitted: %s USDC %s → %s, recipient %s",
            transfer_id,
            request.amount,
            request.source_chain,
            request.destination_chain,
            request.recipient,
        )

        checkpoint = await self.create_orchestrator(transfer_id).validate()
        if checkpoint.is_failed:
            self.retire_channel(transfer_id)
        else:
            self._start_driver(transfer_id, resume=False)
        return transfer_id

    def subscribe_progress(
        self,
        transfer_id: str,
        callback: ProgressCallback | None = None,
        replay: bool = True,
    ) -> Subscription:
        """Follow progress events of a transfer.

        :param callback:
            Called for every event. Optional; the returned subscription is
            also an async iterator.

        :param replay:
            Deliver the events this process has published so far first.
            History of finished transfers is kept for the most recent
            :py:attr:`BridgeConfig.finished_channel_cache_size` of them.
        """
        return self.get_channel(transfer_id).subscribe(callback, replay=replay)

    async def resume_transfer(self, transfer_id: str) -> asyncio.Task:
        """Continue a failed or interrupted transfer.

        :return:
            The driver task. If the transfer is already running, its current task.

        :raise UnknownTransfer:
            No such transfer.

        :raise TransferNotResumable:
            Completed, or failed with a non-resumable error.
        """
        task = self.tasks.get(transfer_id)
        if task is not None and not task.done():
            return task

        checkpoint = await self.store.get(transfer_id)
        if not checkpoint.is_resumable:
            kind = checkpoint.error_kind.value if checkpoint.error_kind else None
            raise TransferNotResumable(f"Transfer {transfer_id} is {checkpoint.stage.value} ({kind}), cannot resume")

        logger.info("Resuming transfer %s at %s, attempts so far %s", transfer_id, checkpoint.effective_stage.value, checkpoint.attempts)
        return self._start_driver(transfer_id, resume=True)

    async def resume_interrupted_transfers(self) -> list[str]:
        """Restart transfers a previous process left in flight.

        Failed transfers are left alone; they need :py:meth:`resume_transfer`.

        :return:
            Resumed transfer ids.
        """
        resumed = []
        for transfer_id in await self.store.list_transfer_ids():
            checkpoint = await self.store.get(transfer_id)
            if checkpoint.is_completed or checkpoint.is_failed or self.is_running(transfer_id):
                continue
            self._start_driver(transfer_id, resume=True)
            resumed.append(transfer_id)
        if resumed:
            logger.info("Resumed %d interrupted transfers: %s", len(resumed), resumed)
        return resumed

    async def cancel_transfer(self, transfer_id: str) -> bool:
        """Cancel a transfer that has not burned yet.

        Once a burn transaction has been submitted the funds may already be
        gone from the source chain, so the request is refused and the
        transfer carries on. The exception is a stopped transfer whose burn
        the source chain reports as reverted or unknown: nothing was burned,
        and it can be cancelled.

        :return:
            ``True`` if the transfer was, or will be, cancelled.

        :raise UnknownTransfer:
            No such transfer.

        :raise WalletCapabilityError:
            A burn needs checking and no source chain signer is connected.
        """
        checkpoint = await self.store.get(transfer_id)

        if checkpoint.is_completed or (checkpoint.is_failed and not checkpoint.resumable):
            logger.info("Transfer %s already finished as %s, nothing to cancel", transfer_id, checkpoint.stage.value)
            return False

        if checkpoint.effective_stage.order > TransferStage.burning.order:
            logger.warning("Refusing to cancel transfer %s: burn %s already confirmed", transfer_id, checkpoint.burn_tx_id)
            return False

        if checkpoint.burn_tx_id is not None:
            void = not self.is_running(transfer_id) and await self._is_burn_void(checkpoint)
            # A driver may have been resumed while the chain was queried
            if not void or self.is_running(transfer_id):
                logger.warning("Refusing to cancel transfer %s: burn %s already submitted", transfer_id, checkpoint.burn_tx_id)
                return False
            await self.create_orchestrator(transfer_id).cancel(f"Transfer cancelled by caller, burn {checkpoint.burn_tx_id} did not land")
            self.retire_channel(transfer_id)
            return True

        if self.is_running(transfer_id):
            orchestrator = self.orchestrators[transfer_id]
            if not orchestrator.request_cancel():
                logger.warning("Refusing to cancel transfer %s: burn is being submitted", transfer_id)
                return False
            logger.info("Cancellation of running transfer %s requested", transfer_id)
            return True

        await self.create_orchestrator(transfer_id).cancel()
        self.retire_channel(transfer_id)
        return True

    async def wait_for_transfer(self, transfer_id: str) -> Checkpoint:
        """Wait until the running driver of a transfer stops.

        Returns immediately if nothing is running.

        :return:
            Checkpoint after the driver stopped.
        """
        task = self.tasks.get(transfer_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.store.get(transfer_id)

    async def get_checkpoint(self, transfer_id: str) -> Checkpoint:
        """
        :raise UnknownTransfer:
            No such transfer.
        """
        return await self.store.get(transfer_id)

    async def list_checkpoints(self) -> list[Checkpoint]:
        return [await self.store.get(transfer_id) for transfer_id in await self.store.list_transfer_ids()]

    def estimate_transfer(self, request: TransferRequest) -> TransferEstimate:
        """Estimate fees and duration without touching any chain.

        :raise InvalidRequest:
            The request would be rejected.
        """
        self.validator.validate(request)
        source = self.registry.get_chain(request.source_chain)
        destination = self.registry.get_chain(request.destination_chain)
        return TransferEstimate(
            source_chain=source.chain_id,
            destination_chain=destination.chain_id,
            amount=request.amount,
            received_amount=request.amount,
            protocol_fee=Decimal(0),
            source_network_fee=source.estimated_network_fee,
            source_fee_token=source.native_token_symbol,
            destination_network_fee=destination.estimated_network_fee,
            destination_fee_token=destination.native_token_symbol,
            estimated_seconds=self.registry.estimate_transfer_seconds(source.chain_id, destination.chain_id),
        )

    async def _is_burn_void(self, checkpoint: Checkpoint) -> bool:
        """Did the stored burn transaction revert or vanish."""
        signer = self.capabilities.get_signer(checkpoint.request.source_chain)
        status = await signer.get_transaction_status(checkpoint.burn_tx_id)
        logger.info("Burn %s of transfer %s is %s", checkpoint.burn_tx_id, checkpoint.transfer_id, status.value)
        return status in (TransactionStatus.failed, TransactionStatus.not_found)

    def _start_driver(self, transfer_id: str, resume: bool) -> asyncio.Task:
        task = self.tasks.get(transfer_id)
        if task is not None and not task.done():
            return task

        orchestrator = self.create_orchestrator(transfer_id)
        task = asyncio.create_task(orchestrator.run(resume=resume), name=f"transfer-{transfer_id[:8]}")
        self.tasks[transfer_id] = task
        self.orchestrators[transfer_id] = orchestrator

        def _on_done(finished: asyncio.Task):
            if self.tasks.get(transfer_id) is finished:
                del self.tasks[transfer_id]
                del self.orchestrators[transfer_id]
                self.retire_channel(transfer_id)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error("Driver of transfer %s stopped with %s", transfer_id, finished.exception())

        task.add_done_callback(_on_done)
        return task
