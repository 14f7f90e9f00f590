"""Transfer progress events.

Each transfer owns one :py:class:`ProgressChannel`. The orchestrator
publishes a :py:class:`ProgressEvent` on every stage transition and every
attestation poll; callers subscribe with a callback, as an async iterator,
or both.

Example::

    subscription = service.subscribe_progress(transfer_id)
    async for event in subscription:
        print(event.stage.value, event.message)

Iteration ends after a ``completed`` or ``failed`` event. A resumed transfer
keeps publishing on the same channel, so subscribe again to iterate it.
Callbacks keep following until the transfer completes or fails for good.
"""

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Callable

from tqdm_loggable.auto import tqdm

from usdc_bridge.cctp.checkpoint import TransferStage
from usdc_bridge.cctp.errors import ErrorKind

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """Something happened to a transfer."""

    transfer_id: str

    #: Stage after the transition, ``failed`` for failures
    stage: TransferStage

    #: Human-readable description
    message: str

    #: UTC, naive
    timestamp: datetime.datetime

    #: Strictly increasing per transfer, starting from 1
    sequence: int

    #: Related transaction, if any
    tx_id: str | None = None

    #: Explorer link for ``tx_id``
    explorer_link: str | None = None

    #: Set for failures
    error_kind: ErrorKind | None = None

    #: Stage the failure happened in
    failed_stage: TransferStage | None = None

    #: Can the failed transfer be resumed
    resumable: bool | None = None

    @property
    def is_final(self) -> bool:
        """Does the driver stop after this event."""
        return self.stage in (TransferStage.completed, TransferStage.failed)

    @property
    def is_terminal(self) -> bool:
        """Nothing can follow this event: completed, or failed for good."""
        return self.stage == TransferStage.completed or (self.stage == TransferStage.failed and not self.resumable)

    def to_dict(self) -> dict:
        return {
            "transfer_id": self.transfer_id,
            "stage": self.stage.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
            "tx_id": self.tx_id,
            "explorer_link": self.explorer_link,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "resumable": self.resumable,
        }


#: Subscriber callback
ProgressCallback = Callable[[ProgressEvent], None]


class Subscription:
    """A subscriber of one :py:class:`ProgressChannel`.

    Async-iterable. Iteration ends after the next final event. Events are
    queued only once iteration starts, so a callback-only subscriber holds
    nothing. It leaves the channel after a terminal event.
    """

    def __init__(self, channel: "ProgressChannel", callback: ProgressCallback | None = None, first_sequence: int = 1):
        self.channel = channel
        self.callback = callback

        #: First event this subscriber sees
        self.first_sequence = first_sequence

        #: Iteration stops after this event
        self.end_sequence: int | None = None

        #: Created on the first ``__aiter__``
        self.queue: asyncio.Queue[ProgressEvent | None] | None = None

        self.closed = False

    def __repr__(self):
        return f"<Subscription {self.channel.transfer_id}>"

    def __aiter__(self):
        if self.queue is None:
            self.queue = asyncio.Queue()
            last = self.end_sequence or len(self.channel.history)
            for event in self.channel.history[self.first_sequence - 1 : last]:
                self.queue.put_nowait(event)
            if self.end_sequence is not None:
                self.queue.put_nowait(None)
        return self

    async def __anext__(self) -> ProgressEvent:
        self.__aiter__()
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def deliver(self, event: ProgressEvent, live: bool = True):
        if self.end_sequence is None:
            if self.queue is not None:
                self.queue.put_nowait(event)
            if live and event.is_final:
                self.end_sequence = event.sequence
                if self.queue is not None:
                    self.queue.put_nowait(None)

        if self.callback is not None:
            try:
                self.callback(event)
            except Exception as e:
                logger.exception("Progress callback %s failed for event %d of %s: %s", self.callback, event.sequence, event.transfer_id, e)

        # Iterator-only subscribers are done after a final event, callbacks
        # keep following resumes until the transfer cannot go on
        if live and (event.is_terminal or (event.is_final and self.callback is None)):
            self.close()

    def close(self):
        if not self.closed:
            self.closed = True
            self.channel.unsubscribe(self)
            if self.end_sequence is None:
                self.end_sequence = len(self.channel.history)
                if self.queue is not None:
                    self.queue.put_nowait(None)


class ProgressChannel:
    """Ordered, append-only event log of one transfer with fan-out to subscribers."""

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        self.history: list[ProgressEvent] = []
        self.subscriptions: list[Subscription] = []

    def __repr__(self):
        return f"<ProgressChannel {self.transfer_id} events:{len(self.history)} subscribers:{len(self.subscriptions)}>"

    @property
    def last_event(self) -> ProgressEvent | None:
        return self.history[-1] if self.history else None

    def publish(
        self,
        stage: TransferStage,
        message: str,
        tx_id: str | None = None,
        explorer_link: str | None = None,
        error_kind: ErrorKind | None = None,
        failed_stage: TransferStage | None = None,
        resumable: bool | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            transfer_id=self.transfer_id,
            stage=stage,
            message=message,
            timestamp=datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None),
            sequence=len(self.history) + 1,
            tx_id=tx_id,
            explorer_link=explorer_link,
            error_kind=error_kind,
            failed_stage=failed_stage,
            resumable=resumable,
        )
        self.history.append(event)
        for subscription in list(self.subscriptions):
            subscription.deliver(event)
        return event

    def subscribe(self, callback: ProgressCallback | None = None, replay: bool = True) -> Subscription:
        """Start receiving events.

        :param callback:
            Called synchronously for every event.

        :param replay:
            Deliver the events published so far first.
            If the last of them is final, iteration ends after the replay.
        """
        subscription = Subscription(self, callback, first_sequence=1 if replay else len(self.history) + 1)
        if replay:
            for event in self.history:
                subscription.deliver(event, live=False)
            if self.history and self.history[-1].is_final:
                subscription.end_sequence = len(self.history)

        if self.last_event is not None and self.last_event.is_terminal:
            # Nothing more will be published
            subscription.closed = True
            if subscription.end_sequence is None:
                subscription.end_sequence = len(self.history)
            return subscription

        self.subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription in self.subscriptions:
            self.subscriptions.remove(subscription)


#: Stages counted by :py:class:`TransferProgressBar`
_BAR_STAGES = [
    TransferStage.validating,
    TransferStage.burning,
    TransferStage.awaiting_attestation,
    TransferStage.attested,
    TransferStage.minting,
    TransferStage.completed,
]


class TransferProgressBar:
    """Follow a transfer on a ``tqdm`` progress bar.

    Pass the instance as a progress callback. ``tqdm_loggable`` turns the bar
    into log lines when not attached to a terminal.
    """

    def __init__(self, transfer_id: str, disable: bool = False):
        self.progress_bar = tqdm(
            total=len(_BAR_STAGES),
            desc=f"USDC transfer {transfer_id[:8]}",
            unit="stage",
            disable=disable,
        )
        self.done = 0
        self.polls = 0

    def __call__(self, event: ProgressEvent):
        if event.stage == TransferStage.failed:
            self.progress_bar.set_description(f"Failed at {event.failed_stage.value if event.failed_stage else '?'}")
            self.progress_bar.set_postfix_str(event.error_kind.value if event.error_kind else "")
            self.progress_bar.refresh()
            return

        if event.stage == TransferStage.awaiting_attestation:
            self.polls += 1

        if event.stage in _BAR_STAGES:
            position = _BAR_STAGES.index(event.stage) + 1
            if position > self.done:
                self.progress_bar.update(position - self.done)
                self.done = position

        self.progress_bar.set_description(event.stage.value)
        self.progress_bar.set_postfix_str(f"events: {event.sequence}, polls: {self.polls}")

    def close(self):
        self.progress_bar.close()
