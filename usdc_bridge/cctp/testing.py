"""Simulated CCTP chains and attestation authority.

Drop-in replacements for the real signers and Iris, for unit tests and dry
runs. Pick them once when building
:py:class:`~usdc_bridge.cctp.orchestrator.BridgeCapabilities`:

Example::

    from usdc_bridge.cctp.registry import create_testnet_registry
    from usdc_bridge.cctp.testing import create_simulated_capabilities

    registry = create_testnet_registry()
    capabilities = create_simulated_capabilities(registry, sender_balance=100 * 10**6)
    service = CrossChainTransferService(registry, capabilities)

The simulation follows CCTP V1 closely enough to exercise the real code paths:

- ``depositForBurn`` emits a real ``MessageSent(bytes)`` log with a packed message
- the authority signs ``keccak256(message)`` with a throwaway attester key, like
  a forked chain test would do after replacing Circle's attester
- ``receiveMessage`` checks the attestation, refuses used nonces and emits
  ``MintAndWithdraw``

Failure knobs on :py:class:`SimulatedChain` and
:py:class:`SimulatedAttestationAuthority` let tests produce rejected, reverted,
stuck and dropped transactions, authority errors and short mints.
"""

import asyncio
import enum
import logging
import secrets
from collections import Counter
from dataclasses import dataclass, field

from eth_abi import encode
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import keccak

from usdc_bridge.cctp.attestation import AttestationAuthority, AttestationState, AttestationStatus
from usdc_bridge.cctp.errors import TransientNetworkError, WalletCapabilityError
from usdc_bridge.cctp.message import (
    MESSAGE_SENT_TOPIC,
    MINT_AND_WITHDRAW_TOPIC,
    decode_address_bytes32,
    decode_burn_message,
    encode_address_bytes32,
    encode_burn_message,
    hash_message,
)
from usdc_bridge.cctp.orchestrator import BridgeCapabilities
from usdc_bridge.cctp.registry import ChainDescriptor, ChainRegistry
from usdc_bridge.cctp.signer import (
    ApproveBurn,
    ChainSigner,
    ConfirmationTimeout,
    DepositForBurn,
    ReceiptLog,
    ReceiveMessage,
    TransactionIntent,
    TransactionReceipt,
    TransactionRejected,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


def forge_attestation(message: bytes, attester: LocalAccount) -> bytes:
    """Sign a CCTP message like Circle's attester does.

    The attestation is an ECDSA signature over ``keccak256(message)``,
    65 bytes: ``r (32) + s (32) + v (1)``.
    """
    signed = attester.unsafe_sign_hash(keccak(message))
    r = signed.r.to_bytes(32, byteorder="big")
    s = signed.s.to_bytes(32, byteorder="big")
    v = signed.v.to_bytes(1, byteorder="big")
    attestation = r + s + v
    assert len(attestation) == 65, f"Expected 65 bytes, got {len(attestation)}"
    return attestation


def create_aptos_address() -> str:
    """Random Aptos style account address."""
    return "0x" + secrets.token_hex(32)


class SimulatedTransactionState(enum.Enum):
    #: Mined
    included = "included"

    #: Waiting in the mempool until :py:meth:`SimulatedChain.release`
    held = "held"

    #: Lost, never lands
    dropped = "dropped"


@dataclass(slots=True)
class SimulatedTransaction:
    tx_id: str
    sender: str
    intent: TransactionIntent
    state: SimulatedTransactionState
    success: bool = False
    block_number: int | None = None
    logs: tuple[ReceiptLog, ...] = field(default_factory=tuple)


class SimulatedChain:
    """In-memory ledger for one chain.

    Transactions are mined in their own block the moment they are submitted,
    unless a failure knob says otherwise.
    """

    def __init__(self, descriptor: ChainDescriptor, attester: LocalAccount | None = None):
        self.descriptor = descriptor
        self.chain_id = descriptor.chain_id
        self.attester = attester

        #: Lowercased address → raw USDC
        self.balances: Counter = Counter()

        #: ``(owner, spender)`` → raw allowance
        self.allowances: dict[tuple[str, str], int] = {}

        self.transactions: dict[str, SimulatedTransaction] = {}

        #: Every intent accepted for submission, in order
        self.submitted: list[TransactionIntent] = []

        #: Message hash → message, for messages emitted by burns on this chain
        self.sent_messages: dict[str, bytes] = {}

        #: ``(source_domain, nonce)`` pairs minted on this chain
        self.used_nonces: set[tuple[int, int]] = set()

        self.block_number = 1
        self.next_nonce = 1

        #: Reject this many next submissions before inclusion
        self.reject_submissions = 0

        #: Mine this many next transactions as reverted
        self.revert_transactions = 0

        #: Keep this many next transactions in the mempool
        self.hold_transactions = 0

        #: Lose this many next transactions
        self.drop_transactions = 0

        #: Burns confirm without a ``MessageSent`` log
        self.omit_message_sent = False

        #: Mints emit ``MintAndWithdraw``; if not, only balances tell
        self.emit_mint_events = True

        #: Mints credit this much less than the message says
        self.mint_shortfall = 0

        #: If set, the reject, revert, hold and drop knobs only hit this intent type
        self.fault_filter: type | None = None

    def __repr__(self):
        return f"<SimulatedChain {self.chain_id} block:{self.block_number} txs:{len(self.transactions)}>"

    def get_balance(self, address: str) -> int:
        return self.balances[address.lower()]

    def mint_tokens(self, address: str, amount: int):
        """Faucet."""
        self.balances[address.lower()] += amount

    def count_submitted(self, intent_type: type) -> int:
        return sum(1 for intent in self.submitted if isinstance(intent, intent_type))

    def get_confirmations(self, tx_id: str) -> int:
        tx = self.transactions[tx_id]
        if tx.block_number is None:
            return 0
        return self.block_number - tx.block_number + 1

    def mine_blocks(self, count: int = 1):
        self.block_number += count

    def is_message_received(self, message: bytes) -> bool:
        burn = decode_burn_message(message)
        return (burn.source_domain, burn.nonce) in self.used_nonces

    def is_fault_target(self, intent: TransactionIntent) -> bool:
        return self.fault_filter is None or isinstance(intent, self.fault_filter)

    def submit(self, sender: str, intent: TransactionIntent) -> str:
        faulty = self.is_fault_target(intent)
        if faulty and self.reject_submissions > 0:
            self.reject_submissions -= 1
            raise TransactionRejected(f"{self.chain_id}: transaction rejected by the node")

        self._check_executable(sender, intent)

        tx_id = "0x" + secrets.token_hex(32)
        self.submitted.append(intent)

        if faulty and self.drop_transactions > 0:
            self.drop_transactions -= 1
            state = SimulatedTransactionState.dropped
        elif faulty and self.hold_transactions > 0:
            self.hold_transactions -= 1
            state = SimulatedTransactionState.held
        else:
            state = SimulatedTransactionState.included

        tx = SimulatedTransaction(tx_id=tx_id, sender=sender, intent=intent, state=state)
        self.transactions[tx_id] = tx
        if state == SimulatedTransactionState.included:
            self._mine(tx)
        logger.debug("%s: %s %s", self.chain_id, type(intent).__name__, state.value)
        return tx_id

    def release(self, tx_id: str | None = None):
        """Mine held transactions, all or one."""
        for tx in list(self.transactions.values()):
            if tx.state == SimulatedTransactionState.held and (tx_id is None or tx.tx_id == tx_id):
                tx.state = SimulatedTransactionState.included
                self._mine(tx)

    def get_status(self, tx_id: str) -> TransactionStatus:
        tx = self.transactions.get(tx_id)
        if tx is None or tx.state == SimulatedTransactionState.dropped:
            return TransactionStatus.not_found
        if tx.state == SimulatedTransactionState.held:
            return TransactionStatus.pending
        return TransactionStatus.confirmed if tx.success else TransactionStatus.failed

    def _check_executable(self, sender: str, intent: TransactionIntent):
        """What a node would refuse at gas estimation."""
        if isinstance(intent, DepositForBurn):
            if self.get_balance(sender) < intent.amount:
                raise TransactionRejected("ERC20: transfer amount exceeds balance")
            if self.descriptor.requires_approval:
                allowance = self.allowances.get((sender.lower(), (intent.token_messenger or "").lower()), 0)
                if allowance < intent.amount:
                    raise TransactionRejected("ERC20: insufficient allowance")
        elif isinstance(intent, ReceiveMessage):
            burn = decode_burn_message(intent.message)
            if burn.destination_domain != self.descriptor.domain:
                raise TransactionRejected("Invalid destination domain")
            if (burn.source_domain, burn.nonce) in self.used_nonces:
                raise TransactionRejected("Nonce already used")
            if self.attester is None or forge_attestation(intent.message, self.attester) != intent.attestation:
                raise TransactionRejected("Invalid attestation")

    def _mine(self, tx: SimulatedTransaction):
        self.block_number += 1
        tx.block_number = self.block_number

        if self.is_fault_target(tx.intent) and self.revert_transactions > 0:
            self.revert_transactions -= 1
            tx.success = False
            return

        try:
            self._check_executable(tx.sender, tx.intent)
        except TransactionRejected as e:
            logger.info("%s: transaction %s reverted: %s", self.chain_id, tx.tx_id, e)
            tx.success = False
            return

        intent = tx.intent
        if isinstance(intent, ApproveBurn):
            self.allowances[(tx.sender.lower(), intent.spender.lower())] = intent.amount
        elif isinstance(intent, DepositForBurn):
            tx.logs = self._burn(tx.sender, intent)
        elif isinstance(intent, ReceiveMessage):
            tx.logs = self._receive(intent)
        tx.success = True

    def _burn(self, sender: str, intent: DepositForBurn) -> tuple[ReceiptLog, ...]:
        self.balances[sender.lower()] -= intent.amount
        if self.descriptor.requires_approval:
            key = (sender.lower(), (intent.token_messenger or "").lower())
            self.allowances[key] -= intent.amount

        token_messenger = encode_address_bytes32(self.descriptor.token_messenger or "0x0")
        message = encode_burn_message(
            source_domain=self.descriptor.domain,
            destination_domain=intent.destination_domain,
            nonce=self.next_nonce,
            sender=token_messenger,
            recipient=token_messenger,
            burn_token=encode_address_bytes32(intent.burn_token),
            mint_recipient=intent.mint_recipient,
            amount=intent.amount,
            message_sender=encode_address_bytes32(sender),
        )
        self.next_nonce += 1

        if self.omit_message_sent:
            return ()

        self.sent_messages[hash_message(message)] = message
        return (
            ReceiptLog(
                address=self.descriptor.message_transmitter or "0x0",
                topics=(MESSAGE_SENT_TOPIC,),
                data=encode(["bytes"], [message]),
            ),
        )

    def _receive(self, intent: ReceiveMessage) -> tuple[ReceiptLog, ...]:
        burn = decode_burn_message(intent.message)
        self.used_nonces.add((burn.source_domain, burn.nonce))

        recipient = decode_address_bytes32(burn.mint_recipient, hex_length=self.descriptor.address_format.hex_length)
        credited = burn.amount - self.mint_shortfall
        self.balances[recipient.lower()] += credited

        if not self.emit_mint_events:
            return ()

        return (
            ReceiptLog(
                address=self.descriptor.token_messenger or "0x0",
                topics=(
                    MINT_AND_WITHDRAW_TOPIC,
                    "0x" + burn.mint_recipient.hex(),
                    "0x" + encode_address_bytes32(self.descriptor.token_address).hex(),
                ),
                data=encode(["uint256"], [credited]),
            ),
        )


class SimulatedSigner(ChainSigner):
    """Signer for a :py:class:`SimulatedChain`.

    Held transactions time out at once instead of making tests wait.
    """

    def __init__(self, chain: SimulatedChain, address: str):
        self.chain = chain
        self.chain_id = chain.chain_id
        self.address = address

        #: Pretend the wallet is disconnected
        self.connected = True

        #: Fail this many next RPC calls with a network error
        self.network_errors = 0

    def __repr__(self):
        return f"<SimulatedSigner {self.chain_id} {self.address}>"

    async def _rpc(self):
        if not self.connected:
            raise WalletCapabilityError(f"Wallet for {self.chain_id} is not connected")
        if self.network_errors > 0:
            self.network_errors -= 1
            raise TransientNetworkError(f"{self.chain_id}: RPC node unreachable")
        # Let other tasks run, like a real RPC round trip would
        await asyncio.sleep(0)

    async def get_address(self) -> str:
        return self.address

    async def get_balance(self, address: str | None = None) -> int:
        await self._rpc()
        return self.chain.get_balance(address or self.address)

    async def sign_and_submit(self, intent: TransactionIntent) -> str:
        await self._rpc()
        return self.chain.submit(self.address, intent)

    async def wait_for_confirmation(self, tx_id: str, depth: int, timeout: float) -> TransactionReceipt:
        await self._rpc()
        tx = self.chain.transactions.get(tx_id)
        if tx is None or tx.state != SimulatedTransactionState.included:
            raise ConfirmationTimeout(tx_id, timeout)

        missing = depth - self.chain.get_confirmations(tx_id)
        if missing > 0:
            self.chain.mine_blocks(missing)

        return TransactionReceipt(
            tx_id=tx_id,
            success=tx.success,
            block_number=tx.block_number,
            confirmations=self.chain.get_confirmations(tx_id),
            logs=tx.logs,
        )

    async def get_transaction_status(self, tx_id: str) -> TransactionStatus:
        await self._rpc()
        return self.chain.get_status(tx_id)

    async def is_message_received(self, message: bytes) -> bool:
        await self._rpc()
        return self.chain.is_message_received(message)


class SimulatedAttestationAuthority(AttestationAuthority):
    """Signs messages burned on the given chains.

    Answers ``pending`` for ``pending_polls`` polls per message first,
    like Iris does while waiting for finality.
    """

    def __init__(self, attester: LocalAccount, chains: list[SimulatedChain], pending_polls: int = 0):
        self.attester = attester
        self.chains = chains
        self.pending_polls = pending_polls

        #: Message hashes the authority refuses to sign
        self.failing_hashes: set[str] = set()

        #: Return signatures that do not verify
        self.corrupt_signatures = False

        #: Fail this many next polls with a network error
        self.network_errors = 0

        #: Every ``fetch_status`` call, by message hash
        self.calls: Counter = Counter()

    def __repr__(self):
        return f"<SimulatedAttestationAuthority {self.attester.address}>"

    def find_message(self, message_hash: str) -> bytes | None:
        for chain in self.chains:
            message = chain.sent_messages.get(message_hash)
            if message is not None:
                return message
        return None

    async def fetch_status(self, message_hash: str) -> AttestationStatus:
        self.calls[message_hash] += 1
        await asyncio.sleep(0)

        if self.network_errors > 0:
            self.network_errors -= 1
            raise TransientNetworkError("Attestation service unreachable")

        message = self.find_message(message_hash)
        if message is None:
            return AttestationStatus(state=AttestationState.pending, detail="not_indexed")

        if message_hash in self.failing_hashes:
            return AttestationStatus(state=AttestationState.error, detail="failed")

        if self.calls[message_hash] <= self.pending_polls:
            return AttestationStatus(state=AttestationState.pending, detail="pending_confirmations")

        signature = forge_attestation(message, self.attester)
        if self.corrupt_signatures:
            signature = bytes(65)

        return AttestationStatus(
            state=AttestationState.complete,
            signature=signature,
            message_bytes=message,
            detail="complete",
        )


def create_simulated_capabilities(
    registry: ChainRegistry,
    sender_balance: int = 1_000 * 10**6,
    pending_polls: int = 0,
) -> BridgeCapabilities:
    """Simulated signer for every chain in the registry, and a simulated authority.

    The simulated objects stay reachable for tests:
    ``capabilities.signers["base"].chain`` and ``capabilities.authority``.

    :param sender_balance:
        Raw USDC given to every source chain signer.

    :param pending_polls:
        Polls answered ``pending`` before each message is signed.
    """
    attester = Account.create()
    chains = []
    signers = {}
    for descriptor in registry.chains.values():
        chain = SimulatedChain(descriptor, attester=attester)
        if descriptor.address_format.hex_length == 64:
            address = create_aptos_address()
        else:
            address = Account.create().address
        signer = SimulatedSigner(chain, address)
        if descriptor.can_send:
            chain.mint_tokens(address, sender_balance)
        chains.append(chain)
        signers[descriptor.chain_id] = signer

    authority = SimulatedAttestationAuthority(attester, chains, pending_polls=pending_polls)
    return BridgeCapabilities(signers=signers, authority=authority)
