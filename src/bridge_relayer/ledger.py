"""
Persisted idempotency ledger for the bridge relayer.

The ledger is the single owner of durable relayer state: per-chain cursors,
the settled nonce sets, the deposit audit trail and the active deposit index
used to match burns to deposits. It makes no network calls.

All mutating methods are synchronous and must be called from the event loop
thread, so a check followed by a mark never interleaves with another loop.
"""

import json
import logging
import os
import tempfile
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any

from .exceptions import CursorRegressionError
from .models import (
    Chain,
    DepositRecord,
    DepositStatus,
    SettlementDirection,
    decode_big_int,
    encode_big_int,
    normalize_nonce,
)

logger = logging.getLogger(__name__)

# Persisted key for each chain cursor.
_CURSOR_KEYS: dict[Chain, str] = {
    Chain.SOURCE: "lastSourceBlock",
    Chain.DESTINATION: "lastDestBlock",
}

# Persisted key for each direction's settled nonce set.
_SETTLED_KEYS: dict[SettlementDirection, str] = {
    SettlementDirection.MINT: "processedNonces",
    SettlementDirection.RELEASE: "releasedNonces",
}


class Ledger:
    """
    Relayer progress and idempotency state with JSON persistence.

    Uses plain sets for O(1) settled-nonce lookups and an OrderedDict for the
    deposit audit trail so records keep their observation order on disk.
    """

    def __init__(self, path: str | Path | None = None):
        """
        Initialize an empty ledger.

        Args:
            path: File the ledger is persisted to (None keeps it in memory only)
        """
        self.path = Path(path) if path is not None else None

        self._cursors: dict[Chain, int] = {chain: 0 for chain in Chain}
        self._settled: dict[SettlementDirection, set[int]] = {
            direction: set() for direction in SettlementDirection
        }
        self._deposits: OrderedDict[int, DepositRecord] = OrderedDict()
        self._active_deposits: dict[str, dict[str, Any]] = {}
        self._processed_burns: set[str] = set()

        # Not persisted: nothing is in flight after a restart.
        self._in_flight: set[tuple[SettlementDirection, int]] = set()

        self.last_persist_ok: bool | None = None

    # -- Loading ----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "Ledger":
        """
        Load a ledger from disk.

        A missing file yields a fresh ledger. An unreadable file is logged and
        also yields a fresh ledger; the destination contract's own nonce check
        keeps a replay from that state from double minting.

        Args:
            path: Ledger file path

        Returns:
            Ledger instance bound to ``path``
        """
        ledger = cls(path)
        file_path = Path(path)
        if not file_path.exists():
            logger.info("ledger.fresh", extra={"data": {"file": str(file_path)}})
            return ledger

        try:
            with file_path.open(encoding="utf-8") as file:
                raw = json.load(file)
            ledger._restore(raw)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(
                "ledger.load_failed",
                extra={"data": {"file": str(file_path)}, "error": str(e)},
            )
            return cls(path)

        logger.info(
            "ledger.loaded",
            extra={"data": {
                "file": str(file_path),
                "lastSourceBlock": ledger.get_cursor(Chain.SOURCE),
                "lastDestBlock": ledger.get_cursor(Chain.DESTINATION),
                "processedNonces": len(ledger._settled[SettlementDirection.MINT]),
                "deposits": len(ledger._deposits),
            }},
        )
        return ledger

    def _restore(self, raw: dict[str, Any]) -> None:
        for chain, key in _CURSOR_KEYS.items():
            self._cursors[chain] = decode_big_int(raw.get(key))

        for direction, key in _SETTLED_KEYS.items():
            self._settled[direction] = {decode_big_int(n) for n in raw.get(key, [])}

        self._processed_burns = set(raw.get("processedBurns", []))

        for depositor, entry in raw.get("activeDeposits", {}).items():
            self._active_deposits[depositor.lower()] = {
                "nonce": decode_big_int(entry["nonce"]),
                "amount": decode_big_int(entry["amount"]),
                "depositor": entry["depositor"],
            }

        for entry in raw.get("deposits", []):
            record = DepositRecord.from_dict(entry)
            self._deposits[record.nonce] = record

    # -- Persistence ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize the full ledger to a JSON-safe dictionary."""
        data: dict[str, Any] = {
            key: encode_big_int(self._cursors[chain]) for chain, key in _CURSOR_KEYS.items()
        }
        for direction, key in _SETTLED_KEYS.items():
            data[key] = [encode_big_int(n) for n in sorted(self._settled[direction])]
        data["processedBurns"] = sorted(self._processed_burns)
        data["activeDeposits"] = {
            depositor: {
                "nonce": encode_big_int(entry["nonce"]),
                "amount": str(entry["amount"]),
                "depositor": entry["depositor"],
            }
            for depositor, entry in self._active_deposits.items()
        }
        data["deposits"] = [record.to_dict() for record in self._deposits.values()]
        return data

    def persist(self) -> bool:
        """
        Write the ledger to disk atomically.

        Failures are logged as warnings and reported through the return value;
        the in-memory state stays authoritative until the next successful write.

        Returns:
            True if the ledger was written (or there is no file to write)
        """
        if self.path is None:
            return True

        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(self.to_dict(), indent=2)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                file.write(payload)
                file.flush()
                os.fsync(file.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            logger.warning(
                "ledger.persist_failed",
                extra={"data": {"file": str(self.path)}, "error": str(e)},
            )
            self.last_persist_ok = False
            return False
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        self.last_persist_ok = True
        return True

    # -- Settled nonces ---------------------------------------------------

    def is_settled(
        self, nonce: Any, direction: SettlementDirection = SettlementDirection.MINT
    ) -> bool:
        """Check whether settlement of ``nonce`` has been confirmed."""
        return normalize_nonce(nonce) in self._settled[direction]

    def mark_settled(
        self,
        nonce: Any,
        direction: SettlementDirection = SettlementDirection.MINT,
        tx_hash: str | None = None,
    ) -> None:
        """
        Record a confirmed settlement. Idempotent.

        For mints the deposit record becomes PROCESSED and is indexed as the
        depositor's active deposit so a later burn can be matched to it.

        Args:
            nonce: Deposit nonce in any supported representation
            direction: Settlement direction that was confirmed
            tx_hash: Transaction that performed the settlement
        """
        nonce = normalize_nonce(nonce)
        settled = self._settled[direction]
        if nonce in settled:
            return
        settled.add(nonce)

        if direction is not SettlementDirection.MINT:
            return

        record = self._deposits.get(nonce)
        if record is None:
            return
        record.status = DepositStatus.PROCESSED
        record.settled_tx_hash = tx_hash
        record.settled_at = time.time()
        record.last_error = None
        self.track_active_deposit(nonce, record.depositor, record.amount)

    def settled_nonces(
        self, direction: SettlementDirection = SettlementDirection.MINT
    ) -> frozenset[int]:
        return frozenset(self._settled[direction])

    # -- In-flight markers ------------------------------------------------

    def begin_attempt(self, direction: SettlementDirection, nonce: Any) -> bool:
        """
        Claim a nonce for one settlement attempt.

        Returns:
            False if an attempt for this direction and nonce is already running
        """
        key = (direction, normalize_nonce(nonce))
        if key in self._in_flight:
            return False
        self._in_flight.add(key)
        return True

    def end_attempt(self, direction: SettlementDirection, nonce: Any) -> None:
        self._in_flight.discard((direction, normalize_nonce(nonce)))

    def is_in_flight(self, direction: SettlementDirection, nonce: Any) -> bool:
        return (direction, normalize_nonce(nonce)) in self._in_flight

    # -- Deposits ---------------------------------------------------------

    def record_deposit(
        self,
        nonce: Any,
        depositor: str,
        amount: int,
        source_tx_hash: str | None = None,
    ) -> DepositRecord:
        """
        Track a deposit as PENDING unless it is already tracked.

        Args:
            nonce: Deposit nonce in any supported representation
            depositor: Address that locked the funds
            amount: Amount in the asset's smallest unit
            source_tx_hash: Transaction that emitted the Deposited event

        Returns:
            The new or existing DepositRecord
        """
        nonce = normalize_nonce(nonce)
        if (record := self._deposits.get(nonce)) is not None:
            return record

        record = DepositRecord(
            nonce=nonce,
            depositor=depositor,
            amount=int(amount),
            source_tx_hash=source_tx_hash,
        )
        if nonce in self._settled[SettlementDirection.MINT]:
            # Settled before this record existed (e.g. confirmed on-chain).
            record.status = DepositStatus.PROCESSED
        self._deposits[nonce] = record
        return record

    def get_deposit(self, nonce: Any) -> DepositRecord | None:
        return self._deposits.get(normalize_nonce(nonce))

    def pending_deposits(self) -> list[DepositRecord]:
        """Deposits still waiting for a confirmed mint, oldest first."""
        return [
            record for record in self._deposits.values()
            if record.status is DepositStatus.PENDING
            and record.nonce not in self._settled[SettlementDirection.MINT]
        ]

    def note_attempt(self, nonce: Any, error: str | None = None) -> None:
        """Record a settlement attempt (and its failure reason) on the deposit."""
        record = self._deposits.get(normalize_nonce(nonce))
        if record is None:
            return
        record.attempts += 1
        record.last_attempt_at = time.time()
        record.last_error = error

    def expire_stale_deposits(
        self, max_age_seconds: float, now: float | None = None
    ) -> list[DepositRecord]:
        """
        Move PENDING deposits older than ``max_age_seconds`` to EXPIRED.

        Returns:
            The deposits that expired in this call
        """
        now = time.time() if now is None else now
        expired = []
        for record in self.pending_deposits():
            if now - record.observed_at > max_age_seconds:
                record.status = DepositStatus.EXPIRED
                expired.append(record)
        return expired

    def replay_deposit(self, nonce: Any) -> DepositRecord:
        """
        Manually put an EXPIRED deposit back into automatic processing.

        Raises:
            KeyError: If the nonce is not tracked
            ValueError: If the deposit is already PROCESSED
        """
        nonce = normalize_nonce(nonce)
        record = self._deposits[nonce]
        if record.status is DepositStatus.PROCESSED:
            raise ValueError(f"Deposit {nonce} is already processed")
        record.status = DepositStatus.PENDING
        record.observed_at = time.time()
        record.attempts = 0
        record.last_error = None
        logger.info("deposit.replayed", extra={"data": {"nonce": nonce}})
        return record

    # -- Active deposits (burn -> release lookup) -------------------------

    def track_active_deposit(self, nonce: Any, depositor: str, amount: int) -> None:
        """Index ``nonce`` as the deposit a burn by ``depositor`` releases.

        One deposit per depositor: a newer deposit replaces an unreleased one,
        which is logged so the orphaned release can be handled by hand.
        """
        nonce = normalize_nonce(nonce)
        previous = self._active_deposits.get(depositor.lower())
        if previous is not None and previous["nonce"] != nonce:
            logger.warning(
                "ledger.active_deposit_replaced",
                extra={"data": {
                    "depositor": depositor,
                    "previousNonce": previous["nonce"],
                    "previousAmount": str(previous["amount"]),
                    "nonce": nonce,
                }},
            )
        self._active_deposits[depositor.lower()] = {
            "nonce": nonce,
            "amount": int(amount),
            "depositor": depositor,
        }

    def get_active_deposit(self, depositor: str) -> dict[str, Any] | None:
        return self._active_deposits.get(depositor.lower())

    def remove_active_deposit(self, depositor: str) -> None:
        self._active_deposits.pop(depositor.lower(), None)

    # -- Burns ------------------------------------------------------------

    def is_burn_processed(self, burn_id: str) -> bool:
        return burn_id.lower() in self._processed_burns

    def mark_burn_processed(self, burn_id: str) -> None:
        self._processed_burns.add(burn_id.lower())

    # -- Cursors ----------------------------------------------------------

    def get_cursor(self, chain: Chain) -> int:
        """Last processed block for ``chain`` (0 when nothing was processed yet)."""
        return self._cursors[Chain(chain)]

    def set_cursor(self, chain: Chain, block_number: int) -> None:
        """
        Advance the cursor for ``chain``.

        Raises:
            CursorRegressionError: If ``block_number`` is below the current cursor
        """
        chain = Chain(chain)
        current = self._cursors[chain]
        if block_number < current:
            logger.error(
                "ledger.cursor_regression",
                extra={"data": {
                    "chain": chain.value, "current": current, "requested": block_number,
                }},
            )
            raise CursorRegressionError(chain.value, current, block_number)
        self._cursors[chain] = block_number

    def get_stats(self) -> dict[str, Any]:
        """
        Get current ledger statistics.

        Returns:
            Dictionary with state metrics
        """
        statuses = {status.name.lower(): 0 for status in DepositStatus}
        for record in self._deposits.values():
            statuses[record.status.name.lower()] += 1
        return {
            "last_source_block": self._cursors[Chain.SOURCE],
            "last_dest_block": self._cursors[Chain.DESTINATION],
            "processed_nonces": len(self._settled[SettlementDirection.MINT]),
            "released_nonces": len(self._settled[SettlementDirection.RELEASE]),
            "active_deposits": len(self._active_deposits),
            "in_flight": len(self._in_flight),
            "deposits": statuses,
        }
