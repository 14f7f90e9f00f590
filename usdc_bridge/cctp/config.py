"""Bridge configuration.

Production defaults live in the dataclasses; tests use
:py:meth:`BridgeConfig.create_test_config`, command line tools use
:py:meth:`BridgeConfig.from_environment`.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from usdc_bridge.cctp.attestation import AttestationPollConfig
from usdc_bridge.cctp.constants import IRIS_API_BASE_URL, IRIS_API_SANDBOX_URL, IRIS_REQUESTS_PER_SECOND

logger = logging.getLogger(__name__)

#: Where command line tools keep checkpoints unless ``CHECKPOINT_DIR`` says otherwise
DEFAULT_CHECKPOINT_DIR = Path("~/.cache/usdc-bridge/checkpoints")


@dataclass(slots=True)
class BridgeConfig:
    """Configuration for :py:class:`~usdc_bridge.cctp.orchestrator.CrossChainTransferService`.

    Example:

    .. code-block:: python

        # Production (default)
        config = BridgeConfig()

        # From IRIS_API_URL, NETWORK, CHECKPOINT_DIR, ... environment variables
        config = BridgeConfig.from_environment()

        # Fast polling for tests
        config = BridgeConfig.create_test_config()
    """

    #: ``mainnet`` or ``testnet``
    network: str = "mainnet"

    #: Circle Iris API base URL
    iris_api_url: str = IRIS_API_BASE_URL

    #: Iris requests per second, shared by all transfers
    iris_requests_per_second: float = IRIS_REQUESTS_PER_SECOND

    #: Attestation polling schedule
    attestation: AttestationPollConfig = field(default_factory=AttestationPollConfig)

    #: Seconds to wait for the burn confirmation depth
    burn_confirmation_timeout: float = 600.0

    #: Seconds to wait for the mint confirmation depth
    mint_confirmation_timeout: float = 600.0

    #: Directory for :py:class:`~usdc_bridge.cctp.checkpoint.FileCheckpointStore`, ``None`` keeps checkpoints in memory
    checkpoint_dir: Path | None = None

    #: Progress history kept in memory for this many finished transfers, for late subscribers
    finished_channel_cache_size: int = 256

    @classmethod
    def create_test_config(cls) -> "BridgeConfig":
        """Config for unit tests: millisecond polling, short timeouts, in-memory checkpoints."""
        return cls(
            network="testnet",
            iris_api_url=IRIS_API_SANDBOX_URL,
            attestation=AttestationPollConfig.create_test_config(),
            burn_confirmation_timeout=1.0,
            mint_confirmation_timeout=1.0,
            checkpoint_dir=None,
        )

    @classmethod
    def from_environment(cls, environ: dict | None = None) -> "BridgeConfig":
        """Read configuration from environment variables.

        - ``NETWORK``: ``testnet`` (default) or ``mainnet``, picks the Iris URL
        - ``IRIS_API_URL``: override the Iris URL
        - ``CHECKPOINT_DIR``: checkpoint directory, default ``~/.cache/usdc-bridge/checkpoints``
        - ``ATTESTATION_TIMEOUT``: seconds, default 300
        - ``CONFIRMATION_TIMEOUT``: seconds for burn and mint confirmations, default 600
        """
        if environ is None:
            environ = os.environ

        network = environ.get("NETWORK", "testnet").lower()
        assert network in ("testnet", "mainnet"), f"NETWORK must be testnet or mainnet, got {network}"

        default_url = IRIS_API_SANDBOX_URL if network == "testnet" else IRIS_API_BASE_URL
        iris_api_url = environ.get("IRIS_API_URL", default_url).rstrip("/")

        attestation = AttestationPollConfig()
        if "ATTESTATION_TIMEOUT" in environ:
            attestation.timeout = float(environ["ATTESTATION_TIMEOUT"])

        confirmation_timeout = float(environ.get("CONFIRMATION_TIMEOUT", 600.0))

        checkpoint_dir = Path(environ.get("CHECKPOINT_DIR", str(DEFAULT_CHECKPOINT_DIR))).expanduser()

        config = cls(
            network=network,
            iris_api_url=iris_api_url,
            attestation=attestation,
            burn_confirmation_timeout=confirmation_timeout,
            mint_confirmation_timeout=confirmation_timeout,
            checkpoint_dir=checkpoint_dir,
        )
        logger.info("Bridge config: %s, Iris %s, checkpoints in %s", network, iris_api_url, checkpoint_dir)
        return config
