"""Durable transfer checkpoints.

A :py:class:`Checkpoint` is the only durable state of a transfer. It is
written before every stage starts its side effect and after every side
effect is confirmed, so a crashed process can pick the transfer up where it
left off.

Rules enforced here:

- ``stage`` only moves forward, or to ``failed``; ``failed_stage`` keeps the
  stage the failure happened in
- ``message_hash`` is set once, when the burn is confirmed, and never changes
- checkpoints survive a JSON round trip exactly

Two stores are provided. :py:class:`MemoryCheckpointStore` for tests and
single process use, :py:class:`FileCheckpointStore` keeping one JSON file per
transfer on disk. Both make :py:meth:`CheckpointStore.update` an atomic
read-modify-write.
"""

import abc
import asyncio
import copy
import datetime
import enum
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from filelock import FileLock

from usdc_bridge.cctp.errors import ErrorKind, UnknownTransfer
from usdc_bridge.cctp.validation import TransferRequest
from usdc_bridge.utils import from_unix_timestamp, to_unix_timestamp

logger = logging.getLogger(__name__)

#: Bump when the persisted layout changes
CHECKPOINT_FORMAT_VERSION = 1


class TransferStage(enum.Enum):
    """Stages of the transfer state machine, in order."""

    created = "created"
    validating = "validating"
    burning = "burning"
    awaiting_attestation = "awaiting_attestation"
    attested = "attested"
    minting = "minting"
    completed = "completed"

    #: Marker. The stage where it happened is in :py:attr:`Checkpoint.failed_stage`.
    failed = "failed"

    @property
    def order(self) -> int:
        return _STAGE_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self == TransferStage.completed


_STAGE_ORDER = {
    TransferStage.created: 0,
    TransferStage.validating: 1,
    TransferStage.burning: 2,
    TransferStage.awaiting_attestation: 3,
    TransferStage.attested: 4,
    TransferStage.minting: 5,
    TransferStage.completed: 6,
}


class CheckpointViolation(Exception):
    """Attempt to move a checkpoint backwards or rebind its message hash."""


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None, microsecond=0)


def _bytes_to_hex(value: bytes | None) -> str | None:
    return None if value is None else "0x" + value.hex()


def _hex_to_bytes(value: str | None) -> bytes | None:
    return None if value is None else bytes.fromhex(value.removeprefix("0x"))


@dataclass(slots=True)
class Checkpoint:
    """Persisted state of one transfer.

    Do not mutate directly outside the orchestrator; go through
    :py:meth:`CheckpointStore.update` and the helper methods below.
    """

    #: Unique transfer id
    transfer_id: str

    #: The accepted request
    request: TransferRequest

    #: Current stage
    stage: TransferStage = TransferStage.created

    #: ``keccak256(message_bytes)`` as ``0x`` hex. Bound forever once set.
    message_hash: str | None = None

    #: CCTP message emitted by the burn
    message_bytes: bytes | None = None

    #: Signed attestation over :py:attr:`message_hash`
    attestation_signature: bytes | None = None

    #: Burn transaction id. Set on submission, before confirmation.
    burn_tx_id: str | None = None

    #: Mint transaction id. Set on submission, before confirmation.
    mint_tx_id: str | None = None

    #: Entries per stage value, e.g. ``{"burning": 2}``
    attempts: dict[str, int] = field(default_factory=dict)

    #: Human-readable description of the last error
    last_error: str | None = None

    #: Stage where the transfer failed, when ``stage == failed``
    failed_stage: TransferStage | None = None

    #: Kind of the last failure
    error_kind: ErrorKind | None = None

    #: Can :py:meth:`~usdc_bridge.cctp.orchestrator.CrossChainTransferService.resume_transfer` continue it
    resumable: bool | None = None

    #: Recipient balance before the mint was submitted, raw units
    recipient_balance_before: int | None = None

    #: UTC, naive
    created_at: datetime.datetime = field(default_factory=_now)

    #: UTC, naive
    updated_at: datetime.datetime = field(default_factory=_now)

    @property
    def is_failed(self) -> bool:
        return self.stage == TransferStage.failed

    @property
    def is_completed(self) -> bool:
        return self.stage == TransferStage.completed

    @property
    def is_resumable(self) -> bool:
        """Can a driver pick this transfer up again."""
        if self.is_completed:
            return False
        if self.is_failed:
            return bool(self.resumable)
        return True

    @property
    def effective_stage(self) -> TransferStage:
        """The stage the transfer is in, looking through a failure marker."""
        if self.is_failed:
            assert self.failed_stage is not None
            return self.failed_stage
        return self.stage

    @property
    def burn_confirmed(self) -> bool:
        """Past the point of no return."""
        return self.message_hash is not None

    def advance(self, stage: TransferStage) -> "Checkpoint":
        """Move to a later stage.

        Re-entering the current stage (or the stage a failure happened in)
        is allowed and clears the failure marker.

        :raise CheckpointViolation:
            On any backwards move.
        """
        assert stage != TransferStage.failed, "Use fail()"
        current = self.effective_stage
        if self.is_completed or stage.order < current.order:
            raise CheckpointViolation(f"Transfer {self.transfer_id} cannot go from {self.stage.value} to {stage.value}")
        self.stage = stage
        self.failed_stage = None
        self.resumable = None
        self.updated_at = _now()
        return self

    def fail(self, kind: ErrorKind, message: str, resumable: bool) -> "Checkpoint":
        """Move to the ``failed`` marker, keeping the stage we were in."""
        if self.is_completed:
            raise CheckpointViolation(f"Transfer {self.transfer_id} is completed, cannot fail")
        self.failed_stage = self.effective_stage
        self.stage = TransferStage.failed
        self.error_kind = kind
        self.last_error = message
        self.resumable = resumable
        self.updated_at = _now()
        return self

    def bind_message(self, message_hash: str, message_bytes: bytes) -> "Checkpoint":
        """Record the burn message.

        :raise CheckpointViolation:
            A different message is already bound to this transfer.
        """
        if self.message_hash is not None and self.message_hash != message_hash:
            raise CheckpointViolation(f"Transfer {self.transfer_id} already bound to message {self.message_hash}, refusing {message_hash}")
        self.message_hash = message_hash
        self.message_bytes = message_bytes
        self.updated_at = _now()
        return self

    def count_attempt(self, stage: TransferStage) -> int:
        count = self.attempts.get(stage.value, 0) + 1
        self.attempts[stage.value] = count
        return count

    def to_dict(self) -> dict:
        """Serialise to a JSON-compatible dict."""
        return {
            "version": CHECKPOINT_FORMAT_VERSION,
            "transfer_id": self.transfer_id,
            "request": self.request.to_dict(),
            "stage": self.stage.value,
            "message_hash": self.message_hash,
            "message_bytes": _bytes_to_hex(self.message_bytes),
            "attestation_signature": _bytes_to_hex(self.attestation_signature),
            "burn_tx_id": self.burn_tx_id,
            "mint_tx_id": self.mint_tx_id,
            "attempts": dict(self.attempts),
            "last_error": self.last_error,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "resumable": self.resumable,
            "recipient_balance_before": str(self.recipient_balance_before) if self.recipient_balance_before is not None else None,
            "created_at": to_unix_timestamp(self.created_at),
            "updated_at": to_unix_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        version = data.get("version")
        assert version == CHECKPOINT_FORMAT_VERSION, f"Unsupported checkpoint format version: {version}"
        balance_before = data.get("recipient_balance_before")
        return cls(
            transfer_id=data["transfer_id"],
            request=TransferRequest.from_dict(data["request"]),
            stage=TransferStage(data["stage"]),
            message_hash=data.get("message_hash"),
            message_bytes=_hex_to_bytes(data.get("message_bytes")),
            attestation_signature=_hex_to_bytes(data.get("attestation_signature")),
            burn_tx_id=data.get("burn_tx_id"),
            mint_tx_id=data.get("mint_tx_id"),
            attempts={k: int(v) for k, v in data.get("attempts", {}).items()},
            last_error=data.get("last_error"),
            failed_stage=TransferStage(data["failed_stage"]) if data.get("failed_stage") else None,
            error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
            resumable=data.get("resumable"),
            recipient_balance_before=int(balance_before) if balance_before is not None else None,
            created_at=from_unix_timestamp(data["created_at"]),
            updated_at=from_unix_timestamp(data["updated_at"]),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "Checkpoint":
        return cls.from_dict(json.loads(text))


#: Function passed to :py:meth:`CheckpointStore.update`
CheckpointMutator = Callable[[Checkpoint], Checkpoint | None]


def apply_mutator(transfer_id: str, checkpoint: Checkpoint, mutator: CheckpointMutator) -> Checkpoint:
    result = mutator(checkpoint)
    if result is not None:
        checkpoint = result
    assert checkpoint.transfer_id == transfer_id, "Mutator changed the transfer id"
    return checkpoint


class CheckpointStore(abc.ABC):
    """Storage for checkpoints, one live checkpoint per transfer id."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, transfer_id: str) -> asyncio.Lock:
        lock = self._locks.get(transfer_id)
        if lock is None:
            lock = self._locks[transfer_id] = asyncio.Lock()
        return lock

    @abc.abstractmethod
    async def _read(self, transfer_id: str) -> Checkpoint | None:
        """Load a checkpoint, or ``None``."""

    @abc.abstractmethod
    async def _write(self, checkpoint: Checkpoint):
        """Persist a checkpoint."""

    @abc.abstractmethod
    async def list_transfer_ids(self) -> list[str]:
        """All stored transfer ids."""

    async def get(self, transfer_id: str) -> Checkpoint:
        """Read a copy of a checkpoint.

        :raise UnknownTransfer:
            No checkpoint for this id.
        """
        checkpoint = await self._read(transfer_id)
        if checkpoint is None:
            raise UnknownTransfer(transfer_id)
        return checkpoint

    async def find(self, transfer_id: str) -> Checkpoint | None:
        return await self._read(transfer_id)

    async def create(self, checkpoint: Checkpoint) -> bool:
        """Store a new checkpoint.

        :return:
            ``False`` if a checkpoint with this id already exists. Nothing is written then.
        """
        async with self._get_lock(checkpoint.transfer_id):
            existing = await self._read(checkpoint.transfer_id)
            if existing is not None:
                return False
            await self._write(checkpoint)
            return True

    async def update(self, transfer_id: str, mutator: CheckpointMutator) -> Checkpoint:
        """Atomically read, modify and write a checkpoint.

        ``mutator`` gets a private copy; whatever it raises aborts the update
        without writing.

        :return:
            The stored checkpoint after the update.
        """
        async with self._get_lock(transfer_id):
            checkpoint = await self._read(transfer_id)
            if checkpoint is None:
                raise UnknownTransfer(transfer_id)
            checkpoint = apply_mutator(transfer_id, checkpoint, mutator)
            await self._write(checkpoint)
            return copy.deepcopy(checkpoint)


class MemoryCheckpointStore(CheckpointStore):
    """Keep checkpoints in a dict.

    Stores serialised copies, so callers can never alias the stored state,
    and every write goes through the same JSON layout as the file store.
    """

    def __init__(self):
        super().__init__()
        self._data: dict[str, dict] = {}

    async def _read(self, transfer_id: str) -> Checkpoint | None:
        data = self._data.get(transfer_id)
        if data is None:
            return None
        return Checkpoint.from_dict(copy.deepcopy(data))

    async def _write(self, checkpoint: Checkpoint):
        self._data[checkpoint.transfer_id] = checkpoint.to_dict()

    async def list_transfer_ids(self) -> list[str]:
        return sorted(self._data.keys())


class FileCheckpointStore(CheckpointStore):
    """One ``<transfer_id>.json`` file per transfer.

    - Writes go to a temporary file first and are moved in place with
      :py:func:`os.replace`, so a crash never leaves a half written checkpoint
    - :py:meth:`create` and :py:meth:`update` hold a :py:class:`filelock.FileLock`
      next to the checkpoint for the whole read-modify-write, so stores in
      other processes never lose each other's updates
    """

    def __init__(self, path: Path, lock_timeout: float = 60.0):
        super().__init__()
        assert isinstance(path, Path), f"Not a Path: {path}"
        self.path = path.expanduser()
        self.path.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout

    def __repr__(self):
        return f"<FileCheckpointStore {self.path}>"

    def get_checkpoint_path(self, transfer_id: str) -> Path:
        assert "/" not in transfer_id and ".." not in transfer_id, f"Bad transfer id: {transfer_id}"
        return self.path / f"{transfer_id}.json"

    def _file_lock(self, transfer_id: str) -> FileLock:
        checkpoint_path = self.get_checkpoint_path(transfer_id)
        return FileLock(checkpoint_path.parent / (checkpoint_path.name + ".lock"), timeout=self.lock_timeout)

    def _read_sync(self, transfer_id: str) -> Checkpoint | None:
        checkpoint_path = self.get_checkpoint_path(transfer_id)
        if not checkpoint_path.exists():
            return None
        return Checkpoint.from_json(checkpoint_path.read_text(encoding="utf-8"))

    def _replace_file(self, checkpoint: Checkpoint):
        """Write the checkpoint file. The caller holds the file lock."""
        checkpoint_path = self.get_checkpoint_path(checkpoint.transfer_id)
        fd, temp_name = tempfile.mkstemp(dir=self.path, prefix=f".{checkpoint.transfer_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                out.write(checkpoint.to_json())
                out.flush()
                os.fsync(out.fileno())
            os.replace(temp_name, checkpoint_path)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise
        logger.debug("Checkpoint %s written: %s", checkpoint.transfer_id, checkpoint.stage.value)

    def _write_sync(self, checkpoint: Checkpoint):
        with self._file_lock(checkpoint.transfer_id):
            self._replace_file(checkpoint)

    def _create_sync(self, checkpoint: Checkpoint) -> bool:
        with self._file_lock(checkpoint.transfer_id):
            if self.get_checkpoint_path(checkpoint.transfer_id).exists():
                return False
            self._replace_file(checkpoint)
            return True

    def _update_sync(self, transfer_id: str, mutator: CheckpointMutator) -> Checkpoint:
        with self._file_lock(transfer_id):
            checkpoint = self._read_sync(transfer_id)
            if checkpoint is None:
                raise UnknownTransfer(transfer_id)
            checkpoint = apply_mutator(transfer_id, checkpoint, mutator)
            self._replace_file(checkpoint)
            return checkpoint

    async def _read(self, transfer_id: str) -> Checkpoint | None:
        return await asyncio.to_thread(self._read_sync, transfer_id)

    async def _write(self, checkpoint: Checkpoint):
        await asyncio.to_thread(self._write_sync, copy.deepcopy(checkpoint))

    async def create(self, checkpoint: Checkpoint) -> bool:
        async with self._get_lock(checkpoint.transfer_id):
            return await asyncio.to_thread(self._create_sync, copy.deepcopy(checkpoint))

    async def update(self, transfer_id: str, mutator: CheckpointMutator) -> Checkpoint:
        # The mutator runs in the worker thread, under the file lock
        async with self._get_lock(transfer_id):
            return await asyncio.to_thread(self._update_sync, transfer_id, mutator)

    async def list_transfer_ids(self) -> list[str]:
        return sorted(p.stem for p in self.path.glob("*.json"))
