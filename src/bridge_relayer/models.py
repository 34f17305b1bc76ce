"""
Shared data models for the bridge relayer.

This module contains the data classes and enums used across the relayer
components: ledger records, decoded chain events, settlement requests and
CCTP bridge transactions.
"""

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from hexbytes import HexBytes

# JavaScript-safe integer range; anything larger is written to disk as a string.
MAX_SAFE_INTEGER = 2**53 - 1


def normalize_nonce(value: Any) -> int:
    """Convert a nonce from any on-chain representation to a canonical int.

    Source and destination chains do not agree on how a nonce is carried:
    a plain ``uint256`` argument decodes to ``int``, an indexed argument is a
    left-padded 32-byte topic (``bytes``/``HexBytes``), JSON APIs hand back
    decimal or ``0x`` strings. Every nonce entering the ledger goes through
    this function so the ledger only ever stores one representation.

    Raises:
        ValueError: If the value is negative, empty or not a recognised format
    """
    match value:
        case bool():
            raise ValueError(f"Invalid nonce: {value!r}")
        case int():
            nonce = value
        case bytes() | bytearray():
            if not value:
                raise ValueError("Invalid nonce: empty bytes")
            nonce = int.from_bytes(bytes(value), byteorder="big")
        case str():
            text = value.strip()
            if text.startswith(("0x", "0X")):
                nonce = int(text, 16)
            elif text:
                nonce = int(text, 10)
            else:
                raise ValueError("Invalid nonce: empty string")
        case _:
            raise ValueError(f"Unsupported nonce type: {type(value).__name__}")

    if nonce < 0:
        raise ValueError(f"Invalid nonce: {nonce} is negative")
    return nonce


def to_hex_str(value: Any) -> str:
    """Render a hash (bytes, HexBytes or str) as a lowercase 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + HexBytes(value).hex().removeprefix("0x")
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def encode_big_int(value: int) -> int | str:
    """Keep small integers numeric, stringify values a JSON reader may truncate."""
    return value if -MAX_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER else str(value)


def decode_big_int(value: int | str | None, default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


class Chain(str, Enum):
    """Chains watched by the relayer; also the ledger cursor keys."""
    SOURCE = "source"
    DESTINATION = "destination"


class DepositStatus(Enum):
    """Lifecycle of a deposit; values match the escrow contract encoding."""
    PENDING = 0
    PROCESSED = 1
    EXPIRED = 2

    @classmethod
    def from_chain(cls, value: int) -> "DepositStatus":
        return cls(int(value))


class SettlementDirection(str, Enum):
    """Which side of the bridge a settlement writes to."""
    MINT = "mint"        # source deposit -> destination mint
    RELEASE = "release"  # destination burn -> source release


class BridgeStatus(str, Enum):
    """CCTP transfer progress. Declaration order is the transition order."""
    SENT = "sent"
    PENDING_ATTESTATION = "pending_attestation"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return list(BridgeStatus).index(self)


@dataclass
class DepositRecord:
    """One locked-asset event on the source chain awaiting settlement.

    Attributes:
        nonce: Escrow-assigned nonce, the idempotency key
        depositor: Address that locked the collateral
        amount: Amount in the asset's smallest unit
        observed_at: Unix timestamp when the relayer first saw the deposit
        status: Current lifecycle status
        source_tx_hash: Transaction that emitted the Deposited event
        attempts: Number of settlement attempts made so far
        last_attempt_at: Unix timestamp of the most recent attempt
        last_error: Reason of the most recent failed attempt
        settled_tx_hash: Destination transaction that minted the deposit
        settled_at: Unix timestamp of the confirmed mint
    """
    nonce: int
    depositor: str
    amount: int
    observed_at: float = field(default_factory=time.time)
    status: DepositStatus = DepositStatus.PENDING
    source_tx_hash: str | None = None
    attempts: int = 0
    last_attempt_at: float | None = None
    last_error: str | None = None
    settled_tx_hash: str | None = None
    settled_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {
            "nonce": encode_big_int(self.nonce),
            "depositor": self.depositor,
            "amount": str(self.amount),
            "observedAt": self.observed_at,
            "status": self.status.name,
            "sourceTxHash": self.source_tx_hash,
            "attempts": self.attempts,
            "lastAttemptAt": self.last_attempt_at,
            "lastError": self.last_error,
            "settledTxHash": self.settled_tx_hash,
            "settledAt": self.settled_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DepositRecord":
        return cls(
            nonce=decode_big_int(data["nonce"]),
            depositor=data["depositor"],
            amount=decode_big_int(data["amount"]),
            observed_at=float(data.get("observedAt") or time.time()),
            status=DepositStatus[data.get("status", "PENDING")],
            source_tx_hash=data.get("sourceTxHash"),
            attempts=int(data.get("attempts", 0)),
            last_attempt_at=data.get("lastAttemptAt"),
            last_error=data.get("lastError"),
            settled_tx_hash=data.get("settledTxHash"),
            settled_at=data.get("settledAt"),
        )


@dataclass(frozen=True, slots=True)
class DecodedEvent:
    """A contract log decoded against a known event signature.

    Attributes:
        name: Event name (e.g. "Deposited")
        args: Decoded event arguments
        block_number: Block where the log was emitted
        log_index: Position of the log within the block
        transaction_hash: 0x-prefixed hash of the emitting transaction
        address: Contract address that emitted the log
    """
    name: str
    args: Mapping[str, Any]
    block_number: int
    log_index: int
    transaction_hash: str
    address: str

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def event_id(self) -> str:
        """Unique id of this log: ``<transactionHash>:<logIndex>``."""
        return f"{self.transaction_hash}:{self.log_index}"

    def __str__(self) -> str:
        return (
            f"{self.name}(block={self.block_number}, "
            f"log={self.log_index}, tx={self.transaction_hash[:10]}...)"
        )


@dataclass(frozen=True, slots=True)
class SettlementRequest:
    """The destination-side call a source-side event asks for.

    Attributes:
        direction: MINT on the destination chain or RELEASE on the source chain
        nonce: Deposit nonce, passed to the contract for replay protection
        recipient: Address receiving the minted or released funds
        amount: Amount in the asset's smallest unit
        source_tx_hash: Transaction that triggered the settlement
        burn_id: Id of the Burned log for RELEASE requests
    """
    direction: SettlementDirection
    nonce: int
    recipient: str
    amount: int
    source_tx_hash: str | None = None
    burn_id: str | None = None

    @classmethod
    def mint_for(cls, deposit: DepositRecord) -> "SettlementRequest":
        return cls(
            direction=SettlementDirection.MINT,
            nonce=deposit.nonce,
            recipient=deposit.depositor,
            amount=deposit.amount,
            source_tx_hash=deposit.source_tx_hash,
        )


@dataclass
class BridgeTransaction:
    """One outbound CCTP transfer awaiting its attestation."""
    transaction_hash: str
    nonce: int
    sender: str
    destination_domain: int
    amount: int
    status: BridgeStatus = BridgeStatus.SENT
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    message_hash: str | None = None
    message: str | None = None
    attestation: str | None = None
    is_delayed: bool = False

    @property
    def is_complete(self) -> bool:
        return self.status is BridgeStatus.COMPLETE

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactionHash": self.transaction_hash,
            "messageHash": self.message_hash,
            "nonce": str(self.nonce),
            "sender": self.sender,
            "destinationDomain": self.destination_domain,
            "amount": str(self.amount),
            "status": self.status.value,
            "createdAt": self.created_at,
            "completedAt": self.completed_at,
            "isDelayed": self.is_delayed,
        }
