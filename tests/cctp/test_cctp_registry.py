"""Chain registry lookups."""

from decimal import Decimal

import pytest

from usdc_bridge.cctp.constants import CCTP_DOMAIN_APTOS, CCTP_DOMAIN_BASE
from usdc_bridge.cctp.registry import APTOS_ADDRESS_FORMAT, EVM_ADDRESS_FORMAT, ChainDescriptor, ChainRole, TransferRoute


def test_testnet_chains(registry):
    base = registry.get_chain("base")
    aptos = registry.get_chain("aptos")

    assert base.domain == CCTP_DOMAIN_BASE
    assert aptos.domain == CCTP_DOMAIN_APTOS
    assert base.can_send and not base.can_receive
    assert aptos.can_receive and not aptos.can_send
    assert base.requires_approval
    assert base.decimals == aptos.decimals == 6
    assert registry.get_chain_by_domain(CCTP_DOMAIN_APTOS) is aptos


def test_unknown_chain(registry):
    with pytest.raises(KeyError):
        registry.get_chain("solana")


def test_routes_are_directed(registry):
    """Only base → aptos is supported."""
    route = registry.get_route("base", "aptos")
    assert route.minimum == Decimal("0.1")
    assert registry.get_route("aptos", "base") is None
    assert len(registry.get_supported_routes()) == 1


def test_destination_only_chain_cannot_be_a_source(registry):
    with pytest.raises(AssertionError):
        registry.add_route(TransferRoute(source="aptos", destination="base", minimum=Decimal(1), maximum=Decimal(2)))


def test_chain_registered_twice(registry):
    with pytest.raises(AssertionError):
        registry.add_chain(
            ChainDescriptor(
                chain_id="base",
                display_name="Base again",
                role=ChainRole.both,
                token_address="0x0",
                domain=6,
                confirmations=1,
            )
        )


def test_address_formats():
    assert EVM_ADDRESS_FORMAT.matches("0x" + "Ab" * 20)
    assert not EVM_ADDRESS_FORMAT.matches("0x" + "ab" * 32)
    assert APTOS_ADDRESS_FORMAT.matches("0x" + "ab" * 32)
    assert not APTOS_ADDRESS_FORMAT.matches("0x" + "ab" * 20)
    assert not APTOS_ADDRESS_FORMAT.matches(None)


def test_raw_amounts(registry):
    base = registry.get_chain("base")
    assert base.to_raw_amount(Decimal("10.5")) == 10_500_000
    assert base.to_raw_amount(Decimal("0.000001")) == 1
    with pytest.raises(ValueError):
        base.to_raw_amount(Decimal("0.0000001"))


def test_explorer_link(registry):
    assert registry.get_chain("base").get_explorer_link("0x1234") == "https://sepolia.basescan.org/tx/0x1234"


def test_estimate_transfer_seconds(registry):
    """Base finality plus Aptos finality."""
    assert registry.estimate_transfer_seconds("base", "aptos") == 180
