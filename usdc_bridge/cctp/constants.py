"""Circle CCTP constants for the Base → Aptos bridge.

CCTP moves USDC with burn-and-mint:

1. Source chain: ``depositForBurn()`` on TokenMessenger burns USDC and emits ``MessageSent(bytes)``
2. Circle's Iris attestation service signs ``keccak256(message)``
3. Destination chain: ``receiveMessage(message, attestation)`` on MessageTransmitter mints USDC

CCTP uses its own domain identifiers, not EVM chain ids.

- `CCTP documentation <https://developers.circle.com/cctp>`_
- `Supported domains <https://developers.circle.com/cctp/supported-domains>`_
"""

from decimal import Decimal

#: CCTP domain ID for Ethereum mainnet
CCTP_DOMAIN_ETHEREUM = 0

#: CCTP domain ID for Avalanche C-chain
CCTP_DOMAIN_AVALANCHE = 1

#: CCTP domain ID for OP Mainnet
CCTP_DOMAIN_OPTIMISM = 2

#: CCTP domain ID for Arbitrum One
CCTP_DOMAIN_ARBITRUM = 3

#: CCTP domain ID for Base
CCTP_DOMAIN_BASE = 6

#: CCTP domain ID for Polygon PoS
CCTP_DOMAIN_POLYGON = 7

#: CCTP domain ID for Aptos
CCTP_DOMAIN_APTOS = 9

#: Mapping from CCTP domain ID to human-readable chain name.
CCTP_DOMAIN_NAMES: dict[int, str] = {
    CCTP_DOMAIN_ETHEREUM: "Ethereum",
    CCTP_DOMAIN_AVALANCHE: "Avalanche",
    CCTP_DOMAIN_OPTIMISM: "Optimism",
    CCTP_DOMAIN_ARBITRUM: "Arbitrum",
    CCTP_DOMAIN_BASE: "Base",
    CCTP_DOMAIN_POLYGON: "Polygon",
    CCTP_DOMAIN_APTOS: "Aptos",
}

#: Circle Iris attestation API base URL (mainnet).
IRIS_API_BASE_URL = "https://iris-api.circle.com"

#: Circle Iris attestation API base URL (testnets).
IRIS_API_SANDBOX_URL = "https://iris-api-sandbox.circle.com"

#: Iris allows 35 requests/second, exceeding it blocks the IP for 5 minutes.
#: Stay well below.
IRIS_REQUESTS_PER_SECOND = 10.0

#: Base Sepolia chain id
BASE_SEPOLIA_CHAIN_ID = 84532

#: Base Sepolia USDC
BASE_SEPOLIA_USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"

#: Base Sepolia TokenMessenger
BASE_SEPOLIA_TOKEN_MESSENGER = "0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"

#: Base Sepolia MessageTransmitter
BASE_SEPOLIA_MESSAGE_TRANSMITTER = "0x7865fAfC2db2093669d92c0F33AeEF291086BEFD"

#: Aptos testnet USDC fungible asset
APTOS_TESTNET_USDC = "0x69091fbab5f7d635ee7ac5098cf0c1efbe31d68fec0f2cd565e8d168daf52832"

#: Aptos testnet MessageTransmitter package
APTOS_TESTNET_MESSAGE_TRANSMITTER = "0x081e86cebf457a0c6004f35bd648a2794698f52e0dde09a48619dcd3d4cc23d9"

#: Aptos testnet TokenMessengerMinter package
APTOS_TESTNET_TOKEN_MESSENGER = "0x5f9b937419dda90aa06c1836b7847f65bbbe3f1217567758dc2488be31a477b9"

#: Smallest amount accepted on the Base → Aptos route, in USDC
MINIMUM_TRANSFER_AMOUNT = Decimal("0.1")

#: Largest amount accepted on the Base → Aptos route, in USDC
MAXIMUM_TRANSFER_AMOUNT = Decimal("1000000")

#: USDC has 6 decimals on every CCTP chain
USDC_DECIMALS = 6

#: ``MessageSent(bytes)`` event signature emitted by MessageTransmitter on burn
MESSAGE_SENT_EVENT_SIGNATURE = "MessageSent(bytes)"

#: ``MintAndWithdraw(address,uint256,address)`` event signature emitted by TokenMinter on mint
MINT_AND_WITHDRAW_EVENT_SIGNATURE = "MintAndWithdraw(address,uint256,address)"
