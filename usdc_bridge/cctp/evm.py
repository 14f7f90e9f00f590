"""EVM chain signer on web3.py.

Implements :py:class:`~usdc_bridge.cctp.signer.ChainSigner` for Base and
other EVM chains. Transactions are either

- signed locally with an ``eth_account`` account handed in by the wallet
  layer and broadcast with ``eth_sendRawTransaction``, or
- sent with ``eth_sendTransaction`` from an unlocked node account (Anvil)

web3.py is blocking, so every call runs in a worker thread.

Example::

    from eth_account import Account
    from web3 import Web3

    from usdc_bridge.cctp.evm import Web3ChainSigner
    from usdc_bridge.cctp.registry import create_testnet_registry

    registry = create_testnet_registry()
    web3 = Web3(Web3.HTTPProvider(json_rpc_url))
    signer = Web3ChainSigner(web3, registry.get_chain("base"), account=Account.from_key(private_key))
"""

import asyncio
import logging
import time

import requests
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractFunction
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from usdc_bridge.cctp.errors import TransientNetworkError
from usdc_bridge.cctp.message import decode_burn_message, get_nonce_key
from usdc_bridge.cctp.registry import ChainDescriptor
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

#: ERC-20 functions we call
ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

#: CCTP V1 ``TokenMessenger.depositForBurn``
TOKEN_MESSENGER_ABI = [
    {
        "name": "depositForBurn",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "destinationDomain", "type": "uint32"},
            {"name": "mintRecipient", "type": "bytes32"},
            {"name": "burnToken", "type": "address"},
        ],
        "outputs": [{"name": "_nonce", "type": "uint64"}],
    },
]

#: CCTP V1 ``MessageTransmitter.receiveMessage`` and ``usedNonces``
MESSAGE_TRANSMITTER_ABI = [
    {
        "name": "receiveMessage",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "outputs": [{"name": "success", "type": "bool"}],
    },
    {
        "name": "usedNonces",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


def _to_hex(value: bytes) -> str:
    # HexBytes.hex() has had both 0x and bare output across versions
    return "0x" + bytes(value).hex()


class Web3ChainSigner(ChainSigner):
    """Sign and submit CCTP transactions on an EVM chain.

    :param web3:
        Connection to the chain.

    :param descriptor:
        Registry entry, for token and CCTP contract addresses.

    :param account:
        Local signing account. If not given, ``address`` must be unlocked on the node.

    :param address:
        Unlocked node account, when not signing locally.

    :param gas:
        Fixed gas limit. Estimated by the node if not given.

    :param poll_interval:
        Seconds between receipt and block number polls.
    """

    def __init__(
        self,
        web3: Web3,
        descriptor: ChainDescriptor,
        account: LocalAccount | None = None,
        address: HexAddress | str | None = None,
        gas: int | None = None,
        poll_interval: float = 1.0,
    ):
        assert account is not None or address is not None, "Give either a signing account or an unlocked address"
        self.web3 = web3
        self.descriptor = descriptor
        self.chain_id = descriptor.chain_id
        self.account = account
        self.address = Web3.to_checksum_address(account.address if account is not None else address)
        self.gas = gas
        self.poll_interval = poll_interval

        self.token = web3.eth.contract(address=Web3.to_checksum_address(descriptor.token_address), abi=ERC20_ABI)

    def __repr__(self):
        return f"<Web3ChainSigner {self.chain_id} {self.address}>"

    async def get_address(self) -> str:
        return self.address

    async def get_balance(self, address: str | None = None) -> int:
        owner = Web3.to_checksum_address(address or self.address)
        return await self._call(self.token.functions.balanceOf(owner).call)

    async def sign_and_submit(self, intent: TransactionIntent) -> str:
        func = self._build_call(intent)
        return await self._call(self._send_contract_tx, func)

    async def wait_for_confirmation(self, tx_id: str, depth: int, timeout: float) -> TransactionReceipt:
        return await self._call(self._wait_for_confirmation_sync, tx_id, depth, timeout)

    async def get_transaction_status(self, tx_id: str) -> TransactionStatus:
        return await self._call(self._get_transaction_status_sync, tx_id)

    async def is_message_received(self, message: bytes) -> bool:
        burn = decode_burn_message(message)
        assert self.descriptor.message_transmitter, f"No MessageTransmitter for {self.chain_id}"
        transmitter = self.web3.eth.contract(address=Web3.to_checksum_address(self.descriptor.message_transmitter), abi=MESSAGE_TRANSMITTER_ABI)
        used = await self._call(transmitter.functions.usedNonces(get_nonce_key(burn.source_domain, burn.nonce)).call)
        return used != 0

    def _build_call(self, intent: TransactionIntent) -> ContractFunction:
        if isinstance(intent, ApproveBurn):
            token = self.web3.eth.contract(address=Web3.to_checksum_address(intent.token), abi=ERC20_ABI)
            return token.functions.approve(Web3.to_checksum_address(intent.spender), intent.amount)

        if isinstance(intent, DepositForBurn):
            messenger_address = intent.token_messenger or self.descriptor.token_messenger
            assert messenger_address, f"No TokenMessenger for {self.chain_id}"
            messenger = self.web3.eth.contract(address=Web3.to_checksum_address(messenger_address), abi=TOKEN_MESSENGER_ABI)
            return messenger.functions.depositForBurn(
                intent.amount,
                intent.destination_domain,
                intent.mint_recipient,
                Web3.to_checksum_address(intent.burn_token),
            )

        if isinstance(intent, ReceiveMessage):
            transmitter_address = intent.message_transmitter or self.descriptor.message_transmitter
            assert transmitter_address, f"No MessageTransmitter for {self.chain_id}"
            transmitter = self.web3.eth.contract(address=Web3.to_checksum_address(transmitter_address), abi=MESSAGE_TRANSMITTER_ABI)
            return transmitter.functions.receiveMessage(intent.message, intent.attestation)

        raise AssertionError(f"Unknown intent: {intent}")

    def _send_contract_tx(self, func: ContractFunction) -> str:
        """Send a contract function call, either signed locally or from an unlocked account."""
        tx_params = {"from": self.address}
        if self.gas is not None:
            tx_params["gas"] = self.gas

        try:
            if self.account is not None:
                tx_params["nonce"] = self.web3.eth.get_transaction_count(self.address, "pending")
                tx = func.build_transaction(tx_params)
                signed_tx = self.account.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
            else:
                tx_hash = func.transact(tx_params)
        except ContractLogicError as e:
            raise TransactionRejected(f"{func.fn_name} would revert: {e}") from e
        except ValueError as e:
            # JSON-RPC errors from the node: underpriced, nonce too low, insufficient funds for gas
            raise TransactionRejected(f"{func.fn_name} refused by the node: {e}") from e

        tx_id = _to_hex(tx_hash)
        logger.info("%s: sent %s from %s, tx %s", self.chain_id, func.fn_name, self.address, tx_id)
        return tx_id

    def _wait_for_confirmation_sync(self, tx_id: str, depth: int, timeout: float) -> TransactionReceipt:
        started_at = time.monotonic()
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(HexBytes(tx_id), timeout=timeout, poll_latency=self.poll_interval)
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_id, timeout) from e

        block_number = receipt["blockNumber"]
        while True:
            confirmations = self.web3.eth.block_number - block_number + 1
            if confirmations >= depth:
                break
            if time.monotonic() - started_at > timeout:
                raise ConfirmationTimeout(tx_id, timeout)
            time.sleep(self.poll_interval)

        logs = tuple(
            ReceiptLog(
                address=log["address"],
                topics=tuple(_to_hex(topic) for topic in log["topics"]),
                data=bytes(log["data"]),
            )
            for log in receipt["logs"]
        )

        return TransactionReceipt(
            tx_id=tx_id,
            success=receipt["status"] == 1,
            block_number=block_number,
            confirmations=confirmations,
            logs=logs,
        )

    def _get_transaction_status_sync(self, tx_id: str) -> TransactionStatus:
        try:
            receipt = self.web3.eth.get_transaction_receipt(HexBytes(tx_id))
        except TransactionNotFound:
            try:
                self.web3.eth.get_transaction(HexBytes(tx_id))
            except TransactionNotFound:
                return TransactionStatus.not_found
            return TransactionStatus.pending
        return TransactionStatus.confirmed if receipt["status"] == 1 else TransactionStatus.failed

    async def _call(self, func, *args):
        """Run a blocking web3 call in a worker thread, mapping connection errors."""
        try:
            return await asyncio.to_thread(func, *args)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientNetworkError(f"{self.chain_id}: JSON-RPC node unreachable: {e}") from e
