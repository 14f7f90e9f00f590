"""Chain signer capability.

The orchestrator never talks JSON-RPC and never sees private keys. It asks a
:py:class:`ChainSigner`, supplied by the wallet layer, to sign and submit
*transaction intents* and to report on their confirmation.

Implementations:

- :py:class:`usdc_bridge.cctp.evm.Web3ChainSigner` for EVM chains (web3.py)
- :py:class:`usdc_bridge.cctp.testing.SimulatedSigner` for tests and dry runs

Pick one per chain when building
:py:class:`~usdc_bridge.cctp.orchestrator.BridgeCapabilities`; business logic
does not care which one it got.

Chains need transactions from one account to be submitted in order (nonces),
so every submission sequence goes through :py:class:`SignerLocks`.
"""

import abc
import asyncio
import enum
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class TransactionStatus(enum.Enum):
    """What the chain currently knows about a submitted transaction."""

    #: In the mempool, or included without enough confirmations yet
    pending = "pending"

    #: Included and succeeded
    confirmed = "confirmed"

    #: Included and reverted
    failed = "failed"

    #: The chain has never heard of it, or it was dropped
    not_found = "not_found"


@dataclass(slots=True, frozen=True)
class ApproveBurn:
    """Allow TokenMessenger to pull USDC for the burn."""

    #: Token contract
    token: str

    #: Spender, the TokenMessenger
    spender: str

    #: Raw amount
    amount: int


@dataclass(slots=True, frozen=True)
class DepositForBurn:
    """``TokenMessenger.depositForBurn(amount, destinationDomain, mintRecipient, burnToken)``"""

    #: Raw amount to burn
    amount: int

    #: CCTP domain of the destination chain
    destination_domain: int

    #: Recipient on the destination chain, left-padded to 32 bytes
    mint_recipient: bytes

    #: USDC on the source chain
    burn_token: str

    #: TokenMessenger to call, ``None`` for the signer's default
    token_messenger: str | None = None


@dataclass(slots=True, frozen=True)
class ReceiveMessage:
    """``MessageTransmitter.receiveMessage(message, attestation)``"""

    message: bytes

    attestation: bytes

    #: MessageTransmitter to call, ``None`` for the signer's default
    message_transmitter: str | None = None


#: Everything a signer must be able to submit
TransactionIntent = ApproveBurn | DepositForBurn | ReceiveMessage


@dataclass(slots=True, frozen=True)
class ReceiptLog:
    """One emitted event, chain-agnostic.

    Non-EVM signers translate their events into this shape.
    """

    #: Emitting contract
    address: str

    #: ``0x`` hex topics, ``topics[0]`` is the event signature hash
    topics: tuple[str, ...]

    #: ABI-encoded non-indexed data
    data: bytes


@dataclass(slots=True, frozen=True)
class TransactionReceipt:
    """Confirmed transaction as reported by a signer."""

    tx_id: str

    #: ``True`` if the transaction succeeded
    success: bool

    block_number: int

    #: Confirmations observed when the receipt was returned
    confirmations: int

    logs: tuple[ReceiptLog, ...] = field(default_factory=tuple)


class TransactionRejected(Exception):
    """The chain or wallet refused the transaction before inclusion."""


class ConfirmationTimeout(Exception):
    """Confirmation depth not reached within the wait bound."""

    def __init__(self, tx_id: str, timeout: float):
        super().__init__(f"Transaction {tx_id} not confirmed within {timeout}s")
        self.tx_id = tx_id
        self.timeout = timeout


class ChainSigner(abc.ABC):
    """A connected signer for one account on one chain.

    Implementations raise:

    - :py:class:`~usdc_bridge.cctp.errors.WalletCapabilityError` when not connected
    - :py:class:`~usdc_bridge.cctp.errors.TransientNetworkError` on RPC trouble
    - :py:class:`TransactionRejected` when a transaction is refused before inclusion
    - :py:class:`ConfirmationTimeout` when confirmation is not observed in time
    """

    #: Registry chain id this signer is connected to
    chain_id: str

    @abc.abstractmethod
    async def get_address(self) -> str:
        """Account address."""

    @abc.abstractmethod
    async def get_balance(self, address: str | None = None) -> int:
        """Raw USDC balance of ``address``, or of the signer account."""

    @abc.abstractmethod
    async def sign_and_submit(self, intent: TransactionIntent) -> str:
        """Sign, broadcast and return the transaction id."""

    @abc.abstractmethod
    async def wait_for_confirmation(self, tx_id: str, depth: int, timeout: float) -> TransactionReceipt:
        """Wait until the transaction has ``depth`` confirmations.

        Reverted transactions return a receipt with ``success=False``.
        """

    @abc.abstractmethod
    async def get_transaction_status(self, tx_id: str) -> TransactionStatus:
        """Re-query the chain for a previously submitted transaction."""

    @abc.abstractmethod
    async def is_message_received(self, message: bytes) -> bool:
        """Has this chain already minted a CCTP message.

        Asks the MessageTransmitter whether the message nonce is used, no
        matter who relayed it.
        """


class SignerLocks:
    """Mutual exclusion per ``(chain, account)``.

    Shared by all transfers in a process, so two transfers using the same
    account never interleave their submissions.
    """

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def get_lock(self, chain_id: str, account: str) -> asyncio.Lock:
        key = (chain_id, account.lower())
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def lock_for(self, signer: ChainSigner) -> asyncio.Lock:
        """Look up the lock for a signer's account."""
        address = await signer.get_address()
        return self.get_lock(signer.chain_id, address)
