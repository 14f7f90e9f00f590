"""Error taxonomy for cross-chain USDC transfers.

Every failure that can end a transfer stage is a subclass of
:py:class:`TransferError`. Each class carries a machine-readable
:py:class:`ErrorKind` and a ``retryable`` flag, so the orchestrator can turn
any raised error into a ``failed`` checkpoint without guessing.

- Validation errors are raised synchronously before any chain interaction
  and are never retried: the caller must fix the request and submit it
  under a new idempotency key.
- Burn errors before confirmation are safe to retry; once the burn is
  confirmed the transfer can only move forward.
- Attestation errors are always resumable, as attestation polling is read-only.
- :py:class:`MintVerificationMismatch` is the only fatal error after
  the burn: the destination chain credited a different amount and an
  operator must reconcile by hand.
"""

import enum


class ErrorKind(enum.Enum):
    """Machine-readable failure kind.

    The value is what ends up in persisted checkpoints and progress events.
    """

    #: Chain pair is not a supported direction
    unsupported_direction = "UnsupportedDirection"

    #: Amount below the route minimum (or not positive)
    amount_below_minimum = "AmountBelowMinimum"

    #: Amount above the route maximum
    amount_above_maximum = "AmountAboveMaximum"

    #: Recipient address does not match the destination chain format
    malformed_recipient = "MalformedRecipient"

    #: RPC node or attestation API unreachable
    transient_network_error = "TransientNetworkError"

    #: No signer connected for a chain, or the signer refused to sign
    wallet_capability_error = "WalletCapabilityError"

    #: Source account does not hold enough USDC
    insufficient_balance = "InsufficientBalance"

    #: Burn transaction rejected before inclusion, no funds moved
    burn_submission_failed = "BurnSubmissionFailed"

    #: Burn submitted but its confirmation was not observed in time
    burn_confirmation_timeout = "BurnConfirmationTimeout"

    #: Burn confirmed but the receipt has no ``MessageSent`` event
    burn_message_missing = "BurnMessageMissing"

    #: Attestation authority did not sign within the polling timeout
    attestation_timeout = "AttestationTimeout"

    #: Attestation authority reported an error or returned garbage
    attestation_failed = "AttestationFailed"

    #: Message bytes or signature do not belong to the checkpoint's message hash
    attestation_mismatch = "AttestationMismatch"

    #: Mint transaction rejected or not confirmed, attestation still usable
    mint_submission_failed = "MintSubmissionFailed"

    #: Mint confirmed but the credited amount disagrees with the request
    mint_verification_mismatch = "MintVerificationMismatch"

    #: Caller cancelled the transfer before the burn was submitted
    cancelled = "Cancelled"

    #: Bug or unclassified exception
    unexpected = "Unexpected"


#: Failure kinds produced by :py:class:`~usdc_bridge.cctp.validation.Validator`
VALIDATION_ERROR_KINDS = frozenset(
    {
        ErrorKind.unsupported_direction,
        ErrorKind.amount_below_minimum,
        ErrorKind.amount_above_maximum,
        ErrorKind.malformed_recipient,
    }
)


class TransferError(Exception):
    """Base class for all typed transfer failures."""

    #: Machine-readable kind recorded in the checkpoint
    kind: ErrorKind = ErrorKind.unexpected

    #: Can the same transfer id be resumed after this error
    retryable: bool = False

    def __init__(self, message: str, *, tx_id: str | None = None):
        super().__init__(message)
        self.tx_id = tx_id


class InvalidRequest(TransferError):
    """Transfer request rejected by pre-flight validation.

    ``reason`` is one of :py:data:`VALIDATION_ERROR_KINDS`.
    """

    retryable = False

    def __init__(self, reason: ErrorKind, message: str):
        assert reason in VALIDATION_ERROR_KINDS, f"Not a validation error kind: {reason}"
        super().__init__(message)
        self.reason = reason
        self.kind = reason


class TransientNetworkError(TransferError):
    """RPC or HTTP failure that may go away on its own."""

    kind = ErrorKind.transient_network_error
    retryable = True


class WalletCapabilityError(TransferError):
    """Signer missing or unusable. Reconnect the wallet and resume."""

    kind = ErrorKind.wallet_capability_error
    retryable = True


class InsufficientBalance(TransferError):
    kind = ErrorKind.insufficient_balance
    retryable = True


class BurnSubmissionFailed(TransferError):
    """Burn never made it on-chain, or reverted. Nothing was burned."""

    kind = ErrorKind.burn_submission_failed
    retryable = True


class BurnConfirmationTimeout(TransferError):
    """Burn submitted, confirmation not observed within the bound.

    The burn may or may not have landed. Resuming re-queries the chain
    for :py:attr:`tx_id` before anything is resubmitted.
    """

    kind = ErrorKind.burn_confirmation_timeout
    retryable = True


class BurnMessageMissing(TransferError):
    """Burn transaction confirmed without a ``MessageSent`` log.

    Funds may have left the account. Needs a human.
    """

    kind = ErrorKind.burn_message_missing
    retryable = False


class AttestationTimeout(TransferError):
    kind = ErrorKind.attestation_timeout
    retryable = True


class AttestationFailed(TransferError):
    kind = ErrorKind.attestation_failed
    retryable = True


class AttestationMismatch(TransferError):
    """Message bytes or attestation do not match the stored message hash."""

    kind = ErrorKind.attestation_mismatch
    retryable = False


class MintSubmissionFailed(TransferError):
    """Mint rejected or not confirmed. The attestation stays valid."""

    kind = ErrorKind.mint_submission_failed
    retryable = True


class MintVerificationMismatch(TransferError):
    """Mint confirmed but the credited amount is wrong.

    Never retried automatically.
    """

    kind = ErrorKind.mint_verification_mismatch
    retryable = False

    def __init__(self, message: str, *, expected: int, observed: int | None, tx_id: str | None = None):
        super().__init__(message, tx_id=tx_id)
        self.expected = expected
        self.observed = observed


class TransferCancelled(TransferError):
    kind = ErrorKind.cancelled
    retryable = False


class UnknownTransfer(KeyError):
    """No checkpoint exists for the given transfer id."""


class TransferNotResumable(Exception):
    """Transfer is completed, running or failed with a non-resumable error."""


class IdempotencyConflict(ValueError):
    """Idempotency key reused with a different request."""
