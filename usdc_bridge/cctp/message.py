"""CCTP message codec.

A burn emits ``MessageSent(bytes message)``. The message is what Circle
attests and what the destination chain's ``receiveMessage()`` consumes.
Its hash, ``keccak256(message)``, identifies the transfer towards the
attestation service.

Message header (116 bytes, ``abi.encodePacked``):

- ``uint32 version`` (4 bytes)
- ``uint32 sourceDomain`` (4 bytes)
- ``uint32 destinationDomain`` (4 bytes)
- ``uint64 nonce`` (8 bytes)
- ``bytes32 sender`` (32 bytes), TokenMessenger on source
- ``bytes32 recipient`` (32 bytes), TokenMessenger on destination
- ``bytes32 destinationCaller`` (32 bytes), zero for anyone

Burn message body (132 bytes):

- ``uint32 version`` (4 bytes)
- ``bytes32 burnToken`` (32 bytes)
- ``bytes32 mintRecipient`` (32 bytes)
- ``uint256 amount`` (32 bytes)
- ``bytes32 messageSender`` (32 bytes)

See `Circle's CCTP message format <https://developers.circle.com/cctp/technical-guide#message-format>`__.
"""

import struct
from dataclasses import dataclass

from eth_abi import decode
from eth_utils import keccak

from usdc_bridge.cctp.constants import MESSAGE_SENT_EVENT_SIGNATURE, MINT_AND_WITHDRAW_EVENT_SIGNATURE

#: CCTP message version
CCTP_MESSAGE_VERSION = 0

#: Burn message body version
BURN_MESSAGE_VERSION = 0

#: Packed header size
MESSAGE_HEADER_LENGTH = 116

#: Packed burn body size
BURN_MESSAGE_BODY_LENGTH = 132

#: ``topics[0]`` of the ``MessageSent`` event
MESSAGE_SENT_TOPIC = "0x" + keccak(text=MESSAGE_SENT_EVENT_SIGNATURE).hex()

#: ``topics[0]`` of the ``MintAndWithdraw`` event
MINT_AND_WITHDRAW_TOPIC = "0x" + keccak(text=MINT_AND_WITHDRAW_EVENT_SIGNATURE).hex()


@dataclass(slots=True, frozen=True)
class BurnMessage:
    """Decoded CCTP message with a burn body."""

    version: int
    source_domain: int
    destination_domain: int
    nonce: int
    sender: bytes
    recipient: bytes
    destination_caller: bytes

    burn_token: bytes
    mint_recipient: bytes
    amount: int
    message_sender: bytes


def hash_message(message: bytes) -> str:
    """Message hash as the attestation API wants it: ``0x`` + 64 hex characters."""
    return "0x" + keccak(message).hex()


def get_nonce_key(source_domain: int, nonce: int) -> bytes:
    """Key of ``MessageTransmitter.usedNonces``: ``keccak256(abi.encodePacked(uint32 sourceDomain, uint64 nonce))``."""
    return keccak(struct.pack(">IQ", source_domain, nonce))


def encode_address_bytes32(address: str) -> bytes:
    """Left-pad an address to 32 bytes.

    Works for both 20-byte EVM addresses and 32-byte Aptos addresses.

    :raise ValueError:
        Not hex, or longer than 32 bytes.
    """
    clean = address.lower().removeprefix("0x")
    if len(clean) > 64:
        raise ValueError(f"Address longer than 32 bytes: {address}")
    return bytes.fromhex(clean.zfill(64))


def decode_address_bytes32(value: bytes, hex_length: int = 64) -> str:
    """Inverse of :py:func:`encode_address_bytes32`.

    :param hex_length:
        40 for EVM addresses, 64 for Aptos.
    """
    assert len(value) == 32, f"Expected 32 bytes, got {len(value)}"
    return "0x" + value.hex()[-hex_length:]


def encode_burn_message(
    *,
    source_domain: int,
    destination_domain: int,
    nonce: int,
    sender: bytes,
    recipient: bytes,
    burn_token: bytes,
    mint_recipient: bytes,
    amount: int,
    message_sender: bytes,
    destination_caller: bytes = b"\x00" * 32,
) -> bytes:
    """Pack a CCTP message carrying a burn body.

    Used by the simulated chains; real messages come from ``MessageSent`` logs.
    """
    for name, value in (
        ("sender", sender),
        ("recipient", recipient),
        ("destination_caller", destination_caller),
        ("burn_token", burn_token),
        ("mint_recipient", mint_recipient),
        ("message_sender", message_sender),
    ):
        assert len(value) == 32, f"{name} must be bytes32, got {len(value)} bytes"

    body = struct.pack(">I", BURN_MESSAGE_VERSION)
    body += burn_token
    body += mint_recipient
    body += amount.to_bytes(32, byteorder="big")
    body += message_sender

    header = struct.pack(">III", CCTP_MESSAGE_VERSION, source_domain, destination_domain)
    header += struct.pack(">Q", nonce)
    header += sender
    header += recipient
    header += destination_caller

    message = header + body
    assert len(message) == MESSAGE_HEADER_LENGTH + BURN_MESSAGE_BODY_LENGTH
    return message


def decode_burn_message(message: bytes) -> BurnMessage:
    """Unpack a CCTP message with a burn body.

    :raise ValueError:
        Message too short to hold a header and a burn body.
    """
    if len(message) < MESSAGE_HEADER_LENGTH + BURN_MESSAGE_BODY_LENGTH:
        raise ValueError(f"CCTP burn message too short: {len(message)} bytes")

    version, source_domain, destination_domain = struct.unpack(">III", message[0:12])
    (nonce,) = struct.unpack(">Q", message[12:20])
    sender = message[20:52]
    recipient = message[52:84]
    destination_caller = message[84:116]

    body = message[MESSAGE_HEADER_LENGTH:]
    (body_version,) = struct.unpack(">I", body[0:4])
    burn_token = body[4:36]
    mint_recipient = body[36:68]
    amount = int.from_bytes(body[68:100], byteorder="big")
    message_sender = body[100:132]

    return BurnMessage(
        version=version,
        source_domain=source_domain,
        destination_domain=destination_domain,
        nonce=nonce,
        sender=sender,
        recipient=recipient,
        destination_caller=destination_caller,
        burn_token=burn_token,
        mint_recipient=mint_recipient,
        amount=amount,
        message_sender=message_sender,
    )


def extract_message_sent(logs: list) -> bytes | None:
    """Find the ``MessageSent(bytes)`` payload in receipt logs.

    :param logs:
        :py:class:`~usdc_bridge.cctp.signer.ReceiptLog` entries.

    :return:
        Message bytes, or ``None`` if the receipt has no such event.
    """
    for log in logs:
        if log.topics and log.topics[0].lower() == MESSAGE_SENT_TOPIC:
            (message,) = decode(["bytes"], log.data)
            return message
    return None


def extract_minted_amount(logs: list, mint_recipient: bytes | None = None) -> int | None:
    """Sum ``MintAndWithdraw`` amounts in receipt logs.

    :param mint_recipient:
        If given, only count mints to this bytes32 recipient (``topics[1]``).

    :return:
        Raw minted amount, or ``None`` if the receipt has no mint event.
    """
    total = None
    for log in logs:
        if not log.topics or log.topics[0].lower() != MINT_AND_WITHDRAW_TOPIC:
            continue
        if mint_recipient is not None and len(log.topics) > 1:
            if bytes.fromhex(log.topics[1].removeprefix("0x").zfill(64)) != mint_recipient:
                continue
        (amount,) = decode(["uint256"], log.data)
        total = (total or 0) + amount
    return total
