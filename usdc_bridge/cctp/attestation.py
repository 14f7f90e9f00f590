"""Circle CCTP attestation retrieval.

After the burn is final on the source chain, Circle's attestation service
(Iris) signs the keccak256 hash of the ``MessageSent`` message. The signature
is what the destination chain's ``receiveMessage()`` wants.

Polling is read-only towards Iris, so it is always safe to retry or resume.
Polling backs off exponentially from ``initial_interval`` up to
``max_interval`` and gives up after ``timeout`` seconds.

Concurrent requests for the same message hash share one poller: Iris sees
one request per poll interval no matter how many transfers wait on it, and
all waiters get the same statuses and the same final result.

Example::

    from usdc_bridge.cctp.attestation import AttestationClient, IrisAttestationAuthority
    from usdc_bridge.cctp.constants import IRIS_API_SANDBOX_URL
    from usdc_bridge.cctp.session import create_iris_session

    session = create_iris_session(api_url=IRIS_API_SANDBOX_URL)
    client = AttestationClient(IrisAttestationAuthority(session))

    attestation = await client.fetch_attestation(message_hash)
    print(attestation.signature.hex())
"""

import abc
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

import requests

from usdc_bridge.cctp.errors import AttestationFailed, AttestationTimeout, TransientNetworkError
from usdc_bridge.cctp.message import hash_message
from usdc_bridge.cctp.session import IrisSession

logger = logging.getLogger(__name__)

#: HTTP 404 status code indicating the message is not indexed yet
HTTP_NOT_FOUND = 404

#: Attestation value Iris uses before the signature exists
PENDING_ATTESTATION = "PENDING"


class AttestationState(enum.Enum):
    """Outcome of one poll."""

    #: Not indexed, or waiting for source chain finality
    pending = "pending"

    #: Signed
    complete = "complete"

    #: The authority refused to sign, or answered with garbage
    error = "error"


@dataclass(slots=True, frozen=True)
class AttestationStatus:
    """What the authority said on one poll."""

    state: AttestationState

    #: Attestation signature, when ``complete``
    signature: bytes | None = None

    #: Message bytes, if the authority returns them
    message_bytes: bytes | None = None

    #: Raw status string or error description
    detail: str | None = None


@dataclass(slots=True, frozen=True)
class AttestationPoll:
    """One poll as seen by :py:meth:`AttestationClient.watch` subscribers."""

    message_hash: str

    #: 1-based poll count
    attempt: int

    #: Seconds since polling started
    elapsed: float

    status: AttestationStatus


@dataclass(slots=True, frozen=True)
class Attestation:
    """Validated attestation for a message hash."""

    message_hash: str

    signature: bytes

    #: Message bytes, if the authority returned them
    message_bytes: bytes | None = None


@dataclass(slots=True)
class AttestationPollConfig:
    """Polling schedule for :py:class:`AttestationClient`.

    Defaults poll every 2 seconds at first and give up after 5 minutes,
    which is how long Base finality plus Iris signing takes on a bad day.
    """

    #: First wait between polls, seconds
    initial_interval: float = 2.0

    #: Each wait is this much longer than the previous one
    backoff_multiplier: float = 2.0

    #: Cap for a single wait, seconds
    max_interval: float = 30.0

    #: Overall bound, seconds
    timeout: float = 300.0

    def get_interval(self, attempt: int) -> float:
        """Wait after the given 1-based poll attempt."""
        interval = self.initial_interval * (self.backoff_multiplier ** (attempt - 1))
        return min(interval, self.max_interval)

    @classmethod
    def create_test_config(cls) -> "AttestationPollConfig":
        """Millisecond schedule for unit tests."""
        return cls(
            initial_interval=0.01,
            backoff_multiplier=1.5,
            max_interval=0.05,
            timeout=2.0,
        )


class AttestationAuthority(abc.ABC):
    """Something that signs CCTP messages.

    Implementations:

    - :py:class:`IrisAttestationAuthority`
    - :py:class:`usdc_bridge.cctp.testing.SimulatedAttestationAuthority`
    """

    @abc.abstractmethod
    async def fetch_status(self, message_hash: str) -> AttestationStatus:
        """Ask once.

        :raise TransientNetworkError:
            Authority unreachable.
        """


class IrisAttestationAuthority(AttestationAuthority):
    """Circle Iris API, ``GET /v1/attestations/{messageHash}``.

    Iris answers:

    - **404** while the message is not indexed yet
    - ``{"status": "pending_confirmations", "attestation": "PENDING"}`` while
      the burn waits for finality
    - ``{"status": "complete", "attestation": "0x..."}`` once signed
    - ``{"status": "failed"}`` if it will never sign
    """

    def __init__(self, session: IrisSession, request_timeout: float = 30.0):
        self.session = session
        self.request_timeout = request_timeout

    def __repr__(self):
        return f"<IrisAttestationAuthority {self.session.api_url}>"

    def get_attestation_url(self, message_hash: str) -> str:
        return f"{self.session.api_url}/v1/attestations/{message_hash}"

    def fetch_status_sync(self, message_hash: str) -> AttestationStatus:
        """Blocking version of :py:meth:`fetch_status`."""
        url = self.get_attestation_url(message_hash)
        try:
            response = self.session.get(url, timeout=self.request_timeout)
        except requests.RequestException as e:
            raise TransientNetworkError(f"Iris API request failed: {url}: {e}") from e

        if response.status_code == HTTP_NOT_FOUND:
            return AttestationStatus(state=AttestationState.pending, detail="not_indexed")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(f"Iris API returned HTTP {response.status_code} for {url}")

        if response.status_code != 200:
            return AttestationStatus(state=AttestationState.error, detail=f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            return AttestationStatus(state=AttestationState.error, detail="Response is not JSON")

        if not isinstance(data, dict):
            return AttestationStatus(state=AttestationState.error, detail=f"Unexpected response: {data!r}")

        status = data.get("status")
        attestation_hex = data.get("attestation")

        if status == "complete":
            if not attestation_hex or attestation_hex == PENDING_ATTESTATION:
                return AttestationStatus(state=AttestationState.pending, detail=status)
            try:
                signature = bytes.fromhex(attestation_hex.removeprefix("0x"))
            except (ValueError, AttributeError):
                return AttestationStatus(state=AttestationState.error, detail=f"Attestation is not hex: {attestation_hex!r}")
            return AttestationStatus(state=AttestationState.complete, signature=signature, detail=status)

        if status == "failed":
            return AttestationStatus(state=AttestationState.error, detail="Attestation failed")

        return AttestationStatus(state=AttestationState.pending, detail=status)

    async def fetch_status(self, message_hash: str) -> AttestationStatus:
        return await asyncio.to_thread(self.fetch_status_sync, message_hash)


class _SharedPoll:
    """Poller state for one message hash, shared by all its waiters."""

    def __init__(self, message_hash: str):
        self.message_hash = message_hash
        self.history: list[AttestationPoll] = []
        self.listeners: set[asyncio.Queue] = set()
        self.result: asyncio.Future = asyncio.get_running_loop().create_future()
        self.task: asyncio.Task | None = None

    def publish(self, poll: AttestationPoll):
        self.history.append(poll)
        for queue in self.listeners:
            queue.put_nowait(poll)

    def close(self):
        for queue in self.listeners:
            queue.put_nowait(None)

    def subscribe(self) -> asyncio.Queue:
        queue = asyncio.Queue()
        for poll in self.history:
            queue.put_nowait(poll)
        if self.result.done():
            queue.put_nowait(None)
        self.listeners.add(queue)
        return queue


class AttestationClient:
    """Poll an :py:class:`AttestationAuthority` until a message is signed.

    One instance is shared by all transfers in a process.
    """

    def __init__(self, authority: AttestationAuthority, config: AttestationPollConfig | None = None):
        self.authority = authority
        self.config = config or AttestationPollConfig()
        self._inflight: dict[str, _SharedPoll] = {}

    def __repr__(self):
        return f"<AttestationClient {self.authority}>"

    def get_inflight_count(self) -> int:
        """Number of message hashes being polled right now."""
        return len(self._inflight)

    async def check_status(self, message_hash: str) -> AttestationStatus:
        """Ask the authority once, without polling."""
        return await self.authority.fetch_status(message_hash)

    async def watch(self, message_hash: str) -> AsyncIterator[AttestationPoll]:
        """Follow the polling of a message hash.

        Joins the running poller for this hash, or starts one. Yields every
        poll, including the ones that happened before joining.

        The iterator ends when the attestation is ready. If polling failed,
        the failure is raised from the iterator.

        :raise AttestationFailed:
            Authority reported an error or returned an invalid attestation.

        :raise AttestationTimeout:
            Not signed within the configured timeout.
        """
        shared = self._get_or_start(message_hash)
        async for poll in self._follow(shared):
            yield poll
        shared.result.result()

    async def fetch_attestation(
        self,
        message_hash: str,
        on_poll: Callable[[AttestationPoll], None] | None = None,
    ) -> Attestation:
        """Poll until the message is signed.

        :param message_hash:
            ``0x`` prefixed keccak256 of the message bytes.

        :param on_poll:
            Called with every :py:class:`AttestationPoll`.

        :return:
            Validated attestation.

        :raise AttestationFailed:
            Authority reported an error or returned an invalid attestation.

        :raise AttestationTimeout:
            Not signed within the configured timeout.
        """
        shared = self._get_or_start(message_hash)
        async for poll in self._follow(shared):
            if on_poll is not None:
                on_poll(poll)
        return shared.result.result()

    def _get_or_start(self, message_hash: str) -> _SharedPoll:
        shared = self._inflight.get(message_hash)
        if shared is None:
            shared = _SharedPoll(message_hash)
            self._inflight[message_hash] = shared
            shared.task = asyncio.create_task(self._run(shared), name=f"attestation-poll-{message_hash[:10]}")
        else:
            logger.debug("Joining in-flight attestation poll for %s", message_hash)
        return shared

    async def _follow(self, shared: _SharedPoll) -> AsyncIterator[AttestationPoll]:
        queue = shared.subscribe()
        try:
            while True:
                poll = await queue.get()
                if poll is None:
                    break
                yield poll
        finally:
            shared.listeners.discard(queue)
            # Nobody left waiting for this hash
            if not shared.listeners and shared.task is not None and not shared.task.done():
                logger.info("Attestation poll for %s abandoned by all waiters", shared.message_hash)
                shared.task.cancel()

    async def _run(self, shared: _SharedPoll):
        message_hash = shared.message_hash
        loop = asyncio.get_running_loop()
        started_at = loop.time()
        attempt = 0

        logger.info("Waiting for attestation of %s, timeout %.0fs", message_hash, self.config.timeout)

        try:
            while True:
                attempt += 1
                elapsed = loop.time() - started_at

                # First poll at INFO so the user sees polling started
                log_level = logging.INFO if attempt == 1 else logging.DEBUG
                logger.log(log_level, "Polling attestation %s, attempt=%d, elapsed=%.1fs", message_hash, attempt, elapsed)

                try:
                    status = await self.authority.fetch_status(message_hash)
                except TransientNetworkError as e:
                    logger.warning("Attestation poll %d for %s failed, will retry: %s", attempt, message_hash, e)
                    status = AttestationStatus(state=AttestationState.pending, detail=str(e))

                shared.publish(AttestationPoll(message_hash=message_hash, attempt=attempt, elapsed=elapsed, status=status))

                if status.state == AttestationState.complete:
                    attestation = self._validate(message_hash, status)
                    logger.info("Attestation for %s ready after %d polls, %.1fs", message_hash, attempt, elapsed)
                    shared.result.set_result(attestation)
                    return

                if status.state == AttestationState.error:
                    raise AttestationFailed(f"Attestation service failed {message_hash}: {status.detail}")

                remaining = self.config.timeout - (loop.time() - started_at)
                if remaining <= 0:
                    raise AttestationTimeout(f"Attestation for {message_hash} not ready after {self.config.timeout}s, {attempt} polls")

                await asyncio.sleep(min(self.config.get_interval(attempt), remaining))

        except asyncio.CancelledError:
            shared.result.cancel()
            raise
        except Exception as e:
            logger.warning("Attestation polling for %s ended with %s: %s", message_hash, type(e).__name__, e)
            shared.result.set_exception(e)
        finally:
            shared.close()
            if self._inflight.get(message_hash) is shared:
                del self._inflight[message_hash]

    def _validate(self, message_hash: str, status: AttestationStatus) -> Attestation:
        if not status.signature:
            raise AttestationFailed(f"Attestation for {message_hash} has an empty signature")

        if status.message_bytes is not None:
            actual = hash_message(status.message_bytes)
            if actual.lower() != message_hash.lower():
                raise AttestationFailed(f"Attestation service returned a message hashing to {actual}, expected {message_hash}")

        return Attestation(
            message_hash=message_hash,
            signature=status.signature,
            message_bytes=status.message_bytes,
        )
