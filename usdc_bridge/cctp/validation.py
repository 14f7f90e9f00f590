"""Transfer requests and pre-flight validation.

Validation is synchronous and pure: it looks at the request and the
:py:class:`~usdc_bridge.cctp.registry.ChainRegistry` only. A rejected
request never touches a chain or the attestation API.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from usdc_bridge.cctp.errors import ErrorKind, InvalidRequest
from usdc_bridge.cctp.registry import ChainRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TransferRequest:
    """What the caller wants to move, and where.

    Immutable once accepted.
    """

    #: Amount in human USDC units, e.g. ``Decimal("10.5")``
    amount: Decimal

    #: Source chain id in the registry, e.g. ``"base"``
    source_chain: str

    #: Destination chain id in the registry, e.g. ``"aptos"``
    destination_chain: str

    #: Recipient address in the destination chain format
    recipient: str

    #: Caller-chosen key. Submitting the same key twice returns the same transfer.
    idempotency_key: str

    @classmethod
    def create(
        cls,
        amount: str | Decimal,
        source_chain: str,
        destination_chain: str,
        recipient: str,
        idempotency_key: str,
    ) -> "TransferRequest":
        """Create a request from user input.

        Amounts given as strings are parsed with :py:class:`~decimal.Decimal`
        so ``"10.5"`` stays exact. Unparseable amounts become ``NaN``
        and fail validation.
        """
        if isinstance(amount, Decimal):
            parsed = amount
        else:
            try:
                parsed = Decimal(str(amount).strip())
            except InvalidOperation:
                parsed = Decimal("NaN")

        return cls(
            amount=parsed,
            source_chain=source_chain.strip().lower(),
            destination_chain=destination_chain.strip().lower(),
            recipient=recipient.strip(),
            idempotency_key=idempotency_key,
        )

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "source_chain": self.source_chain,
            "destination_chain": self.destination_chain,
            "recipient": self.recipient,
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransferRequest":
        return cls(
            amount=Decimal(data["amount"]),
            source_chain=data["source_chain"],
            destination_chain=data["destination_chain"],
            recipient=data["recipient"],
            idempotency_key=data["idempotency_key"],
        )


class Validator:
    """Pre-flight checks for :py:class:`TransferRequest`.

    Checks, in order:

    1. the route is a supported direction
    2. the amount is within the route bounds
    3. the recipient matches the destination address format
    """

    def __init__(self, registry: ChainRegistry):
        self.registry = registry

    def validate(self, request: TransferRequest) -> TransferRequest:
        """Validate a request.

        :return:
            The same request, now known good.

        :raise InvalidRequest:
            With ``reason`` telling which check failed.
        """
        route = self.registry.get_route(request.source_chain, request.destination_chain)
        if route is None:
            raise InvalidRequest(
                ErrorKind.unsupported_direction,
                f"Transfers from {request.source_chain} to {request.destination_chain} are not supported",
            )

        amount = request.amount
        if not amount.is_finite() or amount <= 0 or amount < route.minimum:
            raise InvalidRequest(
                ErrorKind.amount_below_minimum,
                f"Minimum transfer amount is {route.minimum} USDC, got {amount}",
            )

        if amount > route.maximum:
            raise InvalidRequest(
                ErrorKind.amount_above_maximum,
                f"Maximum transfer amount is {route.maximum} USDC, got {amount}",
            )

        source = self.registry.get_chain(request.source_chain)
        try:
            source.to_raw_amount(amount)
        except ValueError as e:
            raise InvalidRequest(ErrorKind.amount_below_minimum, str(e)) from e

        destination = self.registry.get_chain(request.destination_chain)
        address_format = destination.address_format
        if not address_format.matches(request.recipient):
            raise InvalidRequest(
                ErrorKind.malformed_recipient,
                f"Invalid {destination.display_name} address format, should be {address_format.prefix} + {address_format.hex_length} hex characters",
            )

        logger.debug("Transfer request %s validated", request.idempotency_key)
        return request
