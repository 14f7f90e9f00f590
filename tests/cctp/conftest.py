"""Shared fixtures for CCTP bridge tests.

Everything runs against simulated chains and a simulated attestation authority,
see :py:mod:`usdc_bridge.cctp.testing`.
"""

import pytest

from usdc_bridge.cctp.config import BridgeConfig
from usdc_bridge.cctp.orchestrator import BridgeCapabilities, CrossChainTransferService
from usdc_bridge.cctp.registry import ChainRegistry, create_testnet_registry
from usdc_bridge.cctp.signer import SignerLocks
from usdc_bridge.cctp.testing import SimulatedAttestationAuthority, SimulatedChain, SimulatedSigner, create_aptos_address, create_simulated_capabilities
from usdc_bridge.cctp.validation import TransferRequest


@pytest.fixture()
def registry() -> ChainRegistry:
    return create_testnet_registry()


@pytest.fixture()
def recipient() -> str:
    """Aptos account receiving the minted USDC."""
    return create_aptos_address()


@pytest.fixture()
def capabilities(registry) -> BridgeCapabilities:
    """Simulated Base and Aptos with 1000 USDC on the Base account, two pending polls per message."""
    return create_simulated_capabilities(registry, sender_balance=1_000 * 10**6, pending_polls=2)


@pytest.fixture()
def base_signer(capabilities) -> SimulatedSigner:
    return capabilities.signers["base"]


@pytest.fixture()
def aptos_signer(capabilities) -> SimulatedSigner:
    return capabilities.signers["aptos"]


@pytest.fixture()
def base_chain(base_signer) -> SimulatedChain:
    return base_signer.chain


@pytest.fixture()
def aptos_chain(aptos_signer) -> SimulatedChain:
    return aptos_signer.chain


@pytest.fixture()
def authority(capabilities) -> SimulatedAttestationAuthority:
    return capabilities.authority


@pytest.fixture()
def signer_locks() -> SignerLocks:
    return SignerLocks()


@pytest.fixture()
def config() -> BridgeConfig:
    return BridgeConfig.create_test_config()


@pytest.fixture()
def service(registry, capabilities, config) -> CrossChainTransferService:
    return CrossChainTransferService(registry, capabilities, config=config)


@pytest.fixture()
def request_10_5(recipient) -> TransferRequest:
    """10.5 USDC from Base to Aptos."""
    return TransferRequest.create("10.5", "base", "aptos", recipient, idempotency_key="transfer-10.5")
