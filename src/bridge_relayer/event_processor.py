"""
Event processor for the bridge relayer.

This module turns decoded chain events into settlement requests, keeping the
bridge rules (deposit to mint, burn to release, CCTP transfer to attestation
tracking) separate from the watch loops and the orchestration.
"""

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .exceptions import DepositExpiredError, SettlementError
from .ledger import Ledger
from .models import (
    DecodedEvent,
    DepositRecord,
    DepositStatus,
    SettlementDirection,
    SettlementRequest,
    normalize_nonce,
)

if TYPE_CHECKING:
    from .settlement_executor import SettlementExecutor

logger = logging.getLogger(__name__)


class EventProcessor:
    """Processes bridge events from both chains.

    Every ``handle_*``/``process_*`` coroutine returns True once the event is
    resolved, meaning the watcher may move its cursor past it. A deposit is
    resolved once it is recorded in the ledger, because pending deposits are
    retried from the ledger. A burn is resolved once its release is settled
    or can no longer succeed.
    """

    def __init__(
        self,
        ledger: Ledger,
        mint_executor: "SettlementExecutor",
        release_executor: "SettlementExecutor",
        cctp_executor: "SettlementExecutor | None" = None,
        deposit_expiry_seconds: float = 3600,
        pending_retry_interval: float = 30,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the event processor.

        Args:
            ledger: Ledger holding deposits and settled nonces
            mint_executor: Executor minting on the destination chain
            release_executor: Executor releasing on the source chain
            cctp_executor: Executor owning the attestation tracker (optional)
            deposit_expiry_seconds: Age after which an unsettled deposit expires
            pending_retry_interval: Minimum seconds between attempts for one deposit
            should_stop: Returns True once shutdown was requested; checked between
                settlements so a stopping tick starts no new ones
        """
        self.ledger = ledger
        self.mint_executor = mint_executor
        self.release_executor = release_executor
        self.cctp_executor = cctp_executor
        self.deposit_expiry_seconds = deposit_expiry_seconds
        self.pending_retry_interval = pending_retry_interval
        self.should_stop = should_stop or (lambda: False)

        self.deposits_seen = 0
        self.burns_seen = 0
        self.cctp_seen = 0

    # -- Dispatch ---------------------------------------------------------

    async def handle_source_event(self, event: DecodedEvent) -> bool:
        match event.name:
            case "Deposited":
                return await self.process_deposit(event)
            case "Released":
                logger.info(
                    "release.observed",
                    extra={"data": {"txHash": event.transaction_hash, "block": event.block_number}},
                )
                return True
            case _:
                return True

    async def handle_destination_event(self, event: DecodedEvent) -> bool:
        match event.name:
            case "Burned":
                return await self.process_burn(event)
            case "Minted":
                logger.info(
                    "mint.observed",
                    extra={"data": {
                        "nonce": normalize_nonce(event.args["nonce"]),
                        "txHash": event.transaction_hash,
                    }},
                )
                return True
            case _:
                return True

    # -- Deposits ---------------------------------------------------------

    async def process_deposit(self, event: DecodedEvent) -> bool:
        """
        Record a Deposited event and mint for it.

        Args:
            event: Decoded ``Deposited`` event

        Returns:
            True once the deposit is tracked in the ledger
        """
        args = event.args
        nonce = normalize_nonce(args["nonce"])
        self.deposits_seen += 1

        record = self.ledger.record_deposit(
            nonce, args["depositor"], args["amount"], event.transaction_hash
        )

        match record.status:
            case DepositStatus.PROCESSED:
                logger.debug("deposit.skipped", extra={"data": {"nonce": nonce, "reason": "processed"}})
                return True
            case DepositStatus.EXPIRED:
                logger.debug("deposit.skipped", extra={"data": {"nonce": nonce, "reason": "expired"}})
                return True

        if record.attempts == 0:
            logger.info(
                "deposit.detected",
                extra={"data": {
                    "nonce": nonce,
                    "depositor": record.depositor,
                    "amount": str(record.amount),
                    "txHash": event.transaction_hash,
                    "block": event.block_number,
                }},
            )

        await self._mint(record)
        return True

    async def _mint(self, record: DepositRecord) -> str | None:
        try:
            return await self.mint_executor.settle(SettlementRequest.mint_for(record))
        except SettlementError:
            # Logged by the executor; the deposit stays pending for a later retry.
            return None

    async def retry_pending_deposits(self, now: float | None = None) -> int:
        """
        Retry deposits still pending whose last attempt is old enough.

        Returns:
            Number of deposits attempted
        """
        now = time.time() if now is None else now
        attempted = 0
        for record in self.ledger.pending_deposits():
            if self.should_stop():
                break
            if self.ledger.is_in_flight(SettlementDirection.MINT, record.nonce):
                continue
            if record.last_attempt_at is not None and now - record.last_attempt_at < self.pending_retry_interval:
                continue
            attempted += 1
            logger.info(
                "deposit.retry",
                extra={"data": {"nonce": record.nonce, "attempts": record.attempts}},
            )
            await self._mint(record)

        if attempted:
            self.ledger.persist()
        return attempted

    def expire_stale_deposits(self, now: float | None = None) -> list[DepositRecord]:
        """
        Expire pending deposits older than the configured expiry.

        Expired deposits need operator attention: they are logged at ERROR and
        are only retried after a manual replay.
        """
        expired = self.ledger.expire_stale_deposits(self.deposit_expiry_seconds, now)
        for record in expired:
            logger.error(
                "deposit.expired",
                extra={
                    "data": {
                        "nonce": record.nonce,
                        "depositor": record.depositor,
                        "amount": str(record.amount),
                        "attempts": record.attempts,
                    },
                    "error": record.last_error,
                },
            )
        if expired:
            self.ledger.persist()
        return expired

    async def run_maintenance(self) -> None:
        """Expire stale deposits, then retry the remaining pending ones."""
        self.expire_stale_deposits()
        await self.retry_pending_deposits()

    # -- Burns ------------------------------------------------------------

    async def process_burn(self, event: DecodedEvent) -> bool:
        """
        Release the burner's active deposit on the source chain.

        Args:
            event: Decoded ``Burned`` event

        Returns:
            True when the burn needs no further work, False to retry it
        """
        burn_id = event.event_id
        if self.ledger.is_burn_processed(burn_id):
            return True

        self.burns_seen += 1
        user: str = event.args["user"]
        burned: int = int(event.args["amount"])

        deposit = self.ledger.get_active_deposit(user)
        if deposit is None:
            logger.warning(
                "burn.no_active_deposit",
                extra={"data": {"user": user, "amount": str(burned), "burnId": burn_id}},
            )
            self.ledger.mark_burn_processed(burn_id)
            return True

        if burned < deposit["amount"]:
            logger.error(
                "burn.amount_mismatch",
                extra={"data": {
                    "user": user,
                    "burned": str(burned),
                    "deposited": str(deposit["amount"]),
                    "nonce": deposit["nonce"],
                    "burnId": burn_id,
                }},
            )
            self.ledger.mark_burn_processed(burn_id)
            return True

        logger.info(
            "burn.detected",
            extra={"data": {
                "user": user,
                "amount": str(burned),
                "nonce": deposit["nonce"],
                "txHash": event.transaction_hash,
            }},
        )

        request = SettlementRequest(
            direction=SettlementDirection.RELEASE,
            nonce=deposit["nonce"],
            recipient=deposit["depositor"],
            amount=deposit["amount"],
            source_tx_hash=event.transaction_hash,
            burn_id=burn_id,
        )
        try:
            await self.release_executor.settle(request)
        except DepositExpiredError:
            logger.error(
                "burn.deposit_expired",
                extra={
                    "data": {
                        "user": user,
                        "nonce": request.nonce,
                        "amount": str(request.amount),
                        "burnId": burn_id,
                    },
                    "error": "escrow deposit expired; release needs manual resolution",
                },
            )
            self.ledger.mark_burn_processed(burn_id)
            self.ledger.persist()
            return True
        except SettlementError:
            return False

        if not self.ledger.is_settled(request.nonce, SettlementDirection.RELEASE):
            # Another attempt for this nonce is still running.
            return False

        self.ledger.mark_burn_processed(burn_id)
        self.ledger.remove_active_deposit(user)
        return True

    # -- CCTP -------------------------------------------------------------

    async def process_cctp_event(self, event: DecodedEvent) -> bool:
        """Register a ``USDCBridged`` transfer with the attestation tracker."""
        if event.name != "USDCBridged":
            return True
        if self.cctp_executor is None or self.cctp_executor.attestation_tracker is None:
            logger.debug("cctp.untracked", extra={"data": {"txHash": event.transaction_hash}})
            return True

        self.cctp_seen += 1
        self.cctp_executor.track_cctp_transfer(event)
        return True

    def get_stats(self) -> dict[str, Any]:
        """
        Get current processor statistics.

        Returns:
            Dictionary with ledger metrics and event counters
        """
        return {
            **self.ledger.get_stats(),
            "deposits_seen": self.deposits_seen,
            "burns_seen": self.burns_seen,
            "cctp_seen": self.cctp_seen,
        }
