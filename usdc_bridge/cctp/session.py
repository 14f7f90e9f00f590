"""HTTP session management for Circle's Iris attestation API.

This module provides session creation with retry logic and rate limiting
for Iris API requests.

Iris allows 35 requests per second per IP and blocks offenders for
5 minutes, so every session is rate limited well below that. When many
transfers are polled from several processes, pass ``rate_limit_db_path``
to share the rate limit state through SQLite.

The :py:class:`IrisSession` carries the API URL so that downstream
functions do not need a separate ``api_url`` argument.
"""

import logging
from pathlib import Path

from pyrate_limiter import SQLiteBucket
from requests import Session
from requests_ratelimiter import LimiterAdapter

from usdc_bridge.cctp.constants import IRIS_API_BASE_URL, IRIS_REQUESTS_PER_SECOND
from usdc_bridge.logging_retry import LoggingRetry

logger = logging.getLogger(__name__)

#: Default number of retries for API requests
DEFAULT_RETRIES = 5

#: Default backoff factor for retries (seconds)
DEFAULT_BACKOFF_FACTOR = 0.5


class IrisSession(Session):
    """A :py:class:`requests.Session` subclass that carries the Iris API URL.

    Use :py:func:`create_iris_session` to create instances.
    """

    #: Iris API base URL (e.g. ``https://iris-api.circle.com``).
    api_url: str

    def __init__(self, api_url: str = IRIS_API_BASE_URL):
        super().__init__()
        self.api_url = api_url

    def __repr__(self) -> str:
        return f"<IrisSession api_url={self.api_url!r}>"


def create_iris_session(
    api_url: str = IRIS_API_BASE_URL,
    retries: int = DEFAULT_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    requests_per_second: float = IRIS_REQUESTS_PER_SECOND,
    pool_maxsize: int = 32,
    rate_limit_db_path: Path | None = None,
) -> IrisSession:
    """Create a :py:class:`IrisSession` configured for the attestation API.

    The session is configured with:

    - The API URL stored in :py:attr:`IrisSession.api_url`
    - Rate limiting to stay under the Iris 35 requests/second limit
    - Retry logic for handling transient errors using exponential backoff

    HTTP 404 is not retried here: Iris answers 404 for messages it has not
    indexed yet, and the attestation poller treats that as "pending".

    Example::

        from usdc_bridge.cctp.constants import IRIS_API_SANDBOX_URL
        from usdc_bridge.cctp.session import create_iris_session

        # Testnet
        session = create_iris_session(api_url=IRIS_API_SANDBOX_URL)

    :param api_url:
        Iris API base URL. Defaults to mainnet.
    :param retries:
        Maximum number of retry attempts for failed requests
    :param backoff_factor:
        Backoff factor for exponential retry delays
    :param requests_per_second:
        Maximum requests per second to avoid the Iris IP block.
    :param pool_maxsize:
        Maximum number of connections to keep in the connection pool.
    :param rate_limit_db_path:
        Path to SQLite database for storing rate limit state across processes.
        In-memory rate limiting when not given.
    :return:
        Configured :py:class:`IrisSession` with rate limiting and retry logic
    """
    session = IrisSession(api_url=api_url)

    retry_policy = LoggingRetry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        respect_retry_after_header=True,
        logger=logger,
    )

    adapter_kwargs = {}
    if rate_limit_db_path is not None:
        rate_limit_db_path.parent.mkdir(parents=True, exist_ok=True)
        adapter_kwargs = {
            "bucket_class": SQLiteBucket,
            "bucket_kwargs": {"path": str(rate_limit_db_path)},
        }

    adapter = LimiterAdapter(
        per_second=requests_per_second,
        max_retries=retry_policy,
        pool_connections=pool_maxsize,
        pool_maxsize=pool_maxsize,
        **adapter_kwargs,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    logger.info("Created Iris session for %s, %.1f requests/s", api_url, requests_per_second)
    return session
