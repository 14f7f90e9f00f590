"""Bridge USDC from Base Sepolia to Aptos testnet with CCTP.

Burns USDC on Base with a local private key, waits for Circle's attestation
and mints on Aptos. Progress is shown on a progress bar and the transfer is
checkpointed to disk, so running the script again with the same
``IDEMPOTENCY_KEY`` resumes an interrupted or failed transfer.

There is no Aptos signer in this package: without ``DRY_RUN`` the transfer
stops at ``minting`` with ``WalletCapabilityError`` and prints the message and
attestation for the Aptos wallet to relay with ``receive_usdc``.

Environment variables
---------------------
- ``JSON_RPC_BASE``: Base Sepolia JSON-RPC URL (required unless ``DRY_RUN``).
- ``PRIVATE_KEY``: Private key of the account holding the USDC (required unless ``DRY_RUN``).
- ``RECIPIENT``: Aptos account address, ``0x`` + 64 hex characters (required).
- ``AMOUNT``: USDC amount, default ``1``.
- ``IDEMPOTENCY_KEY``: Transfer key, default derived from recipient and amount.
- ``DRY_RUN``: ``true`` to run against simulated chains.
- ``NETWORK``, ``IRIS_API_URL``, ``CHECKPOINT_DIR``, ``ATTESTATION_TIMEOUT``,
  ``CONFIRMATION_TIMEOUT``: see :py:meth:`usdc_bridge.cctp.config.BridgeConfig.from_environment`.
- ``LOG_LEVEL``: Logging level (default: ``info``).

Usage::

    JSON_RPC_BASE=https://sepolia.base.org \\
    PRIVATE_KEY=0x... \\
    RECIPIENT=0x... \\
    AMOUNT=10.5 \\
    poetry run python scripts/cctp/bridge-usdc-base-aptos.py

    # Simulated chains
    DRY_RUN=true RECIPIENT=0x... poetry run python scripts/cctp/bridge-usdc-base-aptos.py
"""

import asyncio
import logging
import os

from eth_account import Account
from tabulate import tabulate
from web3 import Web3

from usdc_bridge.cctp.attestation import IrisAttestationAuthority
from usdc_bridge.cctp.checkpoint import FileCheckpointStore
from usdc_bridge.cctp.config import BridgeConfig
from usdc_bridge.cctp.errors import ErrorKind
from usdc_bridge.cctp.evm import Web3ChainSigner
from usdc_bridge.cctp.orchestrator import BridgeCapabilities, CrossChainTransferService
from usdc_bridge.cctp.progress import TransferProgressBar
from usdc_bridge.cctp.registry import create_testnet_registry
from usdc_bridge.cctp.session import create_iris_session
from usdc_bridge.cctp.testing import create_simulated_capabilities
from usdc_bridge.cctp.validation import TransferRequest
from usdc_bridge.utils import get_url_domain, setup_console_logging

logger = logging.getLogger(__name__)


async def run():
    dry_run = os.environ.get("DRY_RUN", "").lower() == "true"

    recipient = os.environ.get("RECIPIENT")
    assert recipient, "RECIPIENT environment variable required"

    amount = os.environ.get("AMOUNT", "1")
    idempotency_key = os.environ.get("IDEMPOTENCY_KEY", f"base-aptos-{recipient}-{amount}")

    config = BridgeConfig.from_environment()
    registry = create_testnet_registry()

    if dry_run:
        capabilities = create_simulated_capabilities(registry, pending_polls=2)
    else:
        json_rpc_url = os.environ.get("JSON_RPC_BASE")
        assert json_rpc_url, "JSON_RPC_BASE environment variable required"

        private_key = os.environ.get("PRIVATE_KEY")
        assert private_key, "PRIVATE_KEY environment variable required"

        web3 = Web3(Web3.HTTPProvider(json_rpc_url))
        print(f"Base RPC: {get_url_domain(json_rpc_url)}")
        base = registry.get_chain("base")
        assert web3.eth.chain_id == base.native_chain_id, f"JSON_RPC_BASE is chain {web3.eth.chain_id}, expected {base.native_chain_id}"

        account = Account.from_key(private_key)
        session = create_iris_session(
            api_url=config.iris_api_url,
            requests_per_second=config.iris_requests_per_second,
        )
        capabilities = BridgeCapabilities(
            signers={"base": Web3ChainSigner(web3, base, account=account)},
            authority=IrisAttestationAuthority(session),
        )

    store = FileCheckpointStore(config.checkpoint_dir)
    service = CrossChainTransferService(registry, capabilities, store=store, config=config)

    request = TransferRequest.create(amount, "base", "aptos", recipient, idempotency_key=idempotency_key)
    estimate = service.estimate_transfer(request)

    print(f"Network: {config.network}, dry run: {dry_run}")
    print(f"Iris API: {config.iris_api_url}")
    print(f"Checkpoints: {store.path}")
    print(
        tabulate(
            [
                ["Amount", f"{estimate.amount} USDC"],
                ["Received", f"{estimate.received_amount} USDC"],
                ["Base gas", f"~{estimate.source_network_fee} {estimate.source_fee_token}"],
                ["Aptos gas", f"~{estimate.destination_network_fee} {estimate.destination_fee_token}"],
                ["Estimated time", f"{estimate.estimated_seconds / 60:.0f} min"],
            ],
            tablefmt="simple",
        )
    )

    transfer_id = await service.submit_transfer(request)
    checkpoint = await service.get_checkpoint(transfer_id)
    if checkpoint.is_failed and checkpoint.is_resumable:
        await service.resume_transfer(transfer_id)
    elif not checkpoint.is_completed and not checkpoint.is_failed and not service.is_running(transfer_id):
        await service.resume_transfer(transfer_id)

    progress_bar = TransferProgressBar(transfer_id)
    service.subscribe_progress(transfer_id, callback=progress_bar)
    checkpoint = await service.wait_for_transfer(transfer_id)
    progress_bar.close()

    base = registry.get_chain("base")
    aptos = registry.get_chain("aptos")
    rows = [
        ["Transfer", checkpoint.transfer_id],
        ["Stage", checkpoint.stage.value],
        ["Failed at", checkpoint.failed_stage.value if checkpoint.failed_stage else "-"],
        ["Error", checkpoint.error_kind.value if checkpoint.error_kind else "-"],
        ["Burn tx", base.get_explorer_link(checkpoint.burn_tx_id) if checkpoint.burn_tx_id else "-"],
        ["Message hash", checkpoint.message_hash or "-"],
        ["Mint tx", aptos.get_explorer_link(checkpoint.mint_tx_id) if checkpoint.mint_tx_id else "-"],
        ["Attempts", ", ".join(f"{k}: {v}" for k, v in checkpoint.attempts.items())],
    ]
    print(tabulate(rows, tablefmt="simple"))

    if checkpoint.error_kind == ErrorKind.wallet_capability_error and checkpoint.attestation_signature:
        print("\nRelay with the Aptos wallet, receive_usdc(message, attestation):")
        print(f"message: 0x{checkpoint.message_bytes.hex()}")
        print(f"attestation: 0x{checkpoint.attestation_signature.hex()}")
        print("Once relayed the USDC is delivered. Resuming with an Aptos signer connected marks the transfer completed without minting again.")
    elif checkpoint.is_failed:
        print(f"\nTransfer failed: {checkpoint.last_error}")
        if checkpoint.resumable:
            print("Run again with the same IDEMPOTENCY_KEY to resume.")


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)
    asyncio.run(run())


if __name__ == "__main__":
    main()
