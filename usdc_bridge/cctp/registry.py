"""Directory of CCTP chains and supported transfer routes.

The registry is read-only data loaded once at start up and injected into
the validator and executors. It knows:

- which chains exist and in which role (source, destination or both)
- the USDC contract, CCTP domain and confirmation depth of each chain
- how a recipient address looks on each chain
- which directed routes are supported, with their min/max amounts

A route being supported in one direction says nothing about the reverse
direction. The default testnet registry only supports ``base → aptos``.

Example::

    from usdc_bridge.cctp.registry import create_testnet_registry

    registry = create_testnet_registry()
    route = registry.get_route("base", "aptos")
    print(route.minimum, route.maximum)
"""

import enum
import re
from dataclasses import dataclass, field
from decimal import Decimal

from usdc_bridge.cctp.constants import (
    APTOS_TESTNET_MESSAGE_TRANSMITTER,
    APTOS_TESTNET_TOKEN_MESSENGER,
    APTOS_TESTNET_USDC,
    BASE_SEPOLIA_CHAIN_ID,
    BASE_SEPOLIA_MESSAGE_TRANSMITTER,
    BASE_SEPOLIA_TOKEN_MESSENGER,
    BASE_SEPOLIA_USDC,
    CCTP_DOMAIN_APTOS,
    CCTP_DOMAIN_BASE,
    MAXIMUM_TRANSFER_AMOUNT,
    MINIMUM_TRANSFER_AMOUNT,
    USDC_DECIMALS,
)


class ChainRole(enum.Enum):
    """Which side of a transfer a chain can take."""

    source = "source"
    destination = "destination"
    both = "both"


@dataclass(slots=True, frozen=True)
class AddressFormat:
    """Textual address format of a chain.

    EVM: ``0x`` + 40 hex characters. Aptos: ``0x`` + 64 hex characters.
    """

    #: Required prefix
    prefix: str = "0x"

    #: Number of hex characters after the prefix
    hex_length: int = 40

    def matches(self, address: str) -> bool:
        if not isinstance(address, str) or not address.startswith(self.prefix):
            return False
        body = address[len(self.prefix) :]
        return len(body) == self.hex_length and re.fullmatch(r"[0-9a-fA-F]*", body) is not None


#: EVM address format
EVM_ADDRESS_FORMAT = AddressFormat(prefix="0x", hex_length=40)

#: Aptos account address format
APTOS_ADDRESS_FORMAT = AddressFormat(prefix="0x", hex_length=64)


@dataclass(slots=True, frozen=True)
class ChainDescriptor:
    """Static description of one CCTP-enabled chain."""

    #: Short identifier used in requests, e.g. ``"base"``
    chain_id: str

    #: Human-readable name
    display_name: str

    #: Source, destination or both
    role: ChainRole

    #: USDC contract (EVM) or fungible asset address (Aptos)
    token_address: str

    #: CCTP domain identifier
    domain: int

    #: Confirmations to wait before a transaction counts as final
    confirmations: int

    #: How recipient addresses look on this chain
    address_format: AddressFormat = EVM_ADDRESS_FORMAT

    #: Token decimals
    decimals: int = USDC_DECIMALS

    #: Native chain id for EVM chains, ``None`` otherwise
    native_chain_id: int | None = None

    #: TokenMessenger contract / package
    token_messenger: str | None = None

    #: MessageTransmitter contract / package
    message_transmitter: str | None = None

    #: Does ``depositForBurn`` need an ERC-20 approval first
    requires_approval: bool = False

    #: Block explorer base URL, transaction links are ``{explorer_url}/tx/{tx_id}``
    explorer_url: str | None = None

    #: Rough time to finality, used for transfer time estimates
    estimated_finality_minutes: float = 1.0

    #: Symbol of the token paying for gas
    native_token_symbol: str = "ETH"

    #: Typical gas cost of one bridge transaction, in the native token
    estimated_network_fee: Decimal = Decimal(0)

    @property
    def can_send(self) -> bool:
        return self.role in (ChainRole.source, ChainRole.both)

    @property
    def can_receive(self) -> bool:
        return self.role in (ChainRole.destination, ChainRole.both)

    def to_raw_amount(self, amount: Decimal) -> int:
        """Convert human USDC units to raw token units.

        :raise ValueError:
            If the amount has more precision than the token.
        """
        raw = amount.scaleb(self.decimals)
        if raw != raw.to_integral_value():
            raise ValueError(f"Amount {amount} has more than {self.decimals} decimals for {self.chain_id}")
        return int(raw)

    def get_explorer_link(self, tx_id: str) -> str | None:
        if self.explorer_url is None:
            return None
        return f"{self.explorer_url}/tx/{tx_id}"


@dataclass(slots=True, frozen=True)
class TransferRoute:
    """A supported transfer direction and its amount bounds (inclusive)."""

    source: str

    destination: str

    minimum: Decimal

    maximum: Decimal


@dataclass(slots=True)
class ChainRegistry:
    """Supported chains and routes.

    Construct once and pass to the components that need it.
    """

    chains: dict[str, ChainDescriptor] = field(default_factory=dict)

    routes: dict[tuple[str, str], TransferRoute] = field(default_factory=dict)

    def add_chain(self, descriptor: ChainDescriptor):
        assert descriptor.chain_id not in self.chains, f"Chain registered twice: {descriptor.chain_id}"
        self.chains[descriptor.chain_id] = descriptor

    def add_route(self, route: TransferRoute):
        source = self.get_chain(route.source)
        destination = self.get_chain(route.destination)
        assert source.can_send, f"{source.chain_id} cannot be a source chain"
        assert destination.can_receive, f"{destination.chain_id} cannot be a destination chain"
        assert route.minimum <= route.maximum, f"Bad bounds: {route}"
        self.routes[(route.source, route.destination)] = route

    def get_chain(self, chain_id: str) -> ChainDescriptor:
        """Get a chain by its id.

        :raise KeyError:
            Unknown chain
        """
        try:
            return self.chains[chain_id]
        except KeyError as e:
            raise KeyError(f"Unknown chain {chain_id}, we have {list(self.chains.keys())}") from e

    def get_chain_by_domain(self, domain: int) -> ChainDescriptor | None:
        for chain in self.chains.values():
            if chain.domain == domain:
                return chain
        return None

    def get_route(self, source: str, destination: str) -> TransferRoute | None:
        """Get a supported route, or ``None`` if this direction is not supported."""
        return self.routes.get((source, destination))

    def get_supported_routes(self) -> list[TransferRoute]:
        return list(self.routes.values())

    def estimate_transfer_seconds(self, source: str, destination: str) -> float:
        """Rough wall clock estimate for a full transfer.

        Source finality dominates, as the attestation is signed only after it.
        """
        source_chain = self.get_chain(source)
        destination_chain = self.get_chain(destination)
        return (source_chain.estimated_finality_minutes + destination_chain.estimated_finality_minutes) * 60


def create_testnet_registry(
    minimum: Decimal = MINIMUM_TRANSFER_AMOUNT,
    maximum: Decimal = MAXIMUM_TRANSFER_AMOUNT,
) -> ChainRegistry:
    """Create the Base Sepolia → Aptos testnet registry.

    Only the ``base → aptos`` direction is supported.
    """
    registry = ChainRegistry()
    registry.add_chain(
        ChainDescriptor(
            chain_id="base",
            display_name="Base Sepolia",
            role=ChainRole.source,
            token_address=BASE_SEPOLIA_USDC,
            domain=CCTP_DOMAIN_BASE,
            confirmations=1,
            address_format=EVM_ADDRESS_FORMAT,
            native_chain_id=BASE_SEPOLIA_CHAIN_ID,
            token_messenger=BASE_SEPOLIA_TOKEN_MESSENGER,
            message_transmitter=BASE_SEPOLIA_MESSAGE_TRANSMITTER,
            requires_approval=True,
            explorer_url="https://sepolia.basescan.org",
            estimated_finality_minutes=2,
            native_token_symbol="ETH",
            estimated_network_fee=Decimal("0.001"),
        )
    )
    registry.add_chain(
        ChainDescriptor(
            chain_id="aptos",
            display_name="Aptos testnet",
            role=ChainRole.destination,
            token_address=APTOS_TESTNET_USDC,
            domain=CCTP_DOMAIN_APTOS,
            confirmations=1,
            address_format=APTOS_ADDRESS_FORMAT,
            token_messenger=APTOS_TESTNET_TOKEN_MESSENGER,
            message_transmitter=APTOS_TESTNET_MESSAGE_TRANSMITTER,
            explorer_url="https://explorer.aptoslabs.com",
            estimated_finality_minutes=1,
            native_token_symbol="APT",
            estimated_network_fee=Decimal("0.0005"),
        )
    )
    registry.add_route(TransferRoute(source="base", destination="aptos", minimum=minimum, maximum=maximum))
    return registry
