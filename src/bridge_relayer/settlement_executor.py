"""Settlement submission for one bridge direction.

A SettlementExecutor performs the write side of the bridge: ``mint`` on the
wrapped asset contract for deposits, or ``release`` on the escrow for burns.
It also submits and registers CCTP transfers with the attestation tracker.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from hexbytes import HexBytes
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.logs import DISCARD
from web3.types import TxReceipt

from .exceptions import DepositExpiredError, SettlementError
from .models import (
    BridgeTransaction,
    DecodedEvent,
    DepositStatus,
    SettlementDirection,
    SettlementRequest,
)
from .utils.retry import call_with_timeout

if TYPE_CHECKING:
    from .attestation import AttestationTracker
    from .ledger import Ledger
    from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class SettlementExecutor:
    """Submits settlement transactions exactly once per nonce and direction."""

    def __init__(
        self,
        ledger: "Ledger",
        contract_util: "ContractUtility",
        contract: Contract,
        direction: SettlementDirection,
        receipt_timeout: float = 120,
        request_timeout: float = 30,
        gas_limit: int = 300_000,
        attestation_tracker: "AttestationTracker | None" = None,
        cctp_contract: Contract | None = None,
    ) -> None:
        """
        Initialize the SettlementExecutor.

        Args:
            ledger: Ledger holding the settled nonce sets
            contract_util: Signing Web3 utility for the chain being written to
            contract: Wrapped asset contract (MINT) or escrow contract (RELEASE)
            direction: Settlement direction handled by this executor
            receipt_timeout: Seconds to wait for a transaction to be included
            request_timeout: Timeout for read calls and submission, in seconds
            gas_limit: Gas limit for settlement transactions
            attestation_tracker: Tracker receiving CCTP transfers (optional)
            cctp_contract: CCTP bridge contract for relayer-initiated transfers (optional)
        """
        self.ledger = ledger
        self.contract_util = contract_util
        self.w3: Web3 = contract_util.w3
        self.contract = contract
        self.direction = direction
        self.receipt_timeout = receipt_timeout
        self.request_timeout = request_timeout
        self.gas_limit = gas_limit
        self.attestation_tracker = attestation_tracker
        self.cctp_contract = cctp_contract

    @property
    def action(self) -> str:
        return self.direction.value

    async def settle(self, request: SettlementRequest) -> str | None:
        """
        Settle one request on chain.

        Args:
            request: Mint or release request for this executor's direction

        Returns:
            Transaction hash of the confirmed settlement, or None when the
            nonce is already settled or an attempt for it is in flight

        Raises:
            SettlementError: If the transaction reverted, timed out or could not be submitted
            ValueError: If the request's direction does not match this executor
        """
        if request.direction is not self.direction:
            raise ValueError(
                f"{self.action} executor cannot settle a {request.direction.value} request"
            )

        nonce = request.nonce
        if self.ledger.is_settled(nonce, self.direction):
            logger.info(f"{self.action}.skipped", extra={"data": {"nonce": nonce, "reason": "already_settled"}})
            return None

        if not self.ledger.begin_attempt(self.direction, nonce):
            logger.info(f"{self.action}.skipped", extra={"data": {"nonce": nonce, "reason": "in_flight"}})
            return None

        error: str | None = None
        try:
            return await self._settle(request)
        except SettlementError as e:
            error = e.reason
            logger.error(
                f"{self.action}.failed",
                extra={
                    "data": {
                        "nonce": nonce,
                        "recipient": request.recipient,
                        "amount": str(request.amount),
                        "txHash": e.tx_hash,
                    },
                    "error": e.reason,
                },
            )
            raise
        finally:
            if self.direction is SettlementDirection.MINT:
                self.ledger.note_attempt(nonce, error)
            self.ledger.end_attempt(self.direction, nonce)

    async def _settle(self, request: SettlementRequest) -> str | None:
        nonce = request.nonce

        if await self._already_settled_on_chain(nonce):
            logger.info(
                f"{self.action}.already_settled_on_chain", extra={"data": {"nonce": nonce}}
            )
            self.ledger.mark_settled(nonce, self.direction)
            self.ledger.persist()
            return None

        try:
            tx_hash: HexBytes = await call_with_timeout(
                self._submit, request, timeout=self.request_timeout
            )
        except ContractLogicError as e:
            raise SettlementError(nonce, f"reverted on submission: {e}") from e
        except Exception as e:
            raise SettlementError(nonce, f"submission failed: {e!r}") from e

        tx_hex = Web3.to_hex(tx_hash)
        logger.info(
            f"{self.action}.submitted",
            extra={"data": {
                "nonce": nonce,
                "recipient": request.recipient,
                "amount": str(request.amount),
                "txHash": tx_hex,
            }},
        )

        receipt = await self._wait_for_receipt(nonce, tx_hash)
        if (status := receipt.get("status", 0)) != 1:
            raise SettlementError(nonce, f"transaction reverted (status={status})", tx_hex)

        self.ledger.mark_settled(nonce, self.direction, tx_hex)
        self.ledger.persist()
        logger.info(
            f"{self.action}.confirmed",
            extra={"data": {"nonce": nonce, "txHash": tx_hex, "block": receipt.get("blockNumber")}},
        )
        return tx_hex

    async def _already_settled_on_chain(self, nonce: int) -> bool:
        """Cross-check the target contract's own replay protection."""
        try:
            match self.direction:
                case SettlementDirection.MINT:
                    return bool(await call_with_timeout(
                        self.contract.functions.isNonceProcessed(nonce).call,
                        timeout=self.request_timeout,
                    ))
                case SettlementDirection.RELEASE:
                    deposit: Any = await call_with_timeout(
                        self.contract.functions.getDeposit(nonce).call,
                        timeout=self.request_timeout,
                    )
        except Exception as e:
            raise SettlementError(nonce, f"on-chain check failed: {e!r}") from e

        match DepositStatus.from_chain(deposit[3]):
            case DepositStatus.PROCESSED:
                return True
            case DepositStatus.EXPIRED:
                raise DepositExpiredError(nonce)
            case _:
                return False

    def _submit(self, request: SettlementRequest) -> HexBytes:
        match request.direction:
            case SettlementDirection.MINT:
                fn = self.contract.functions.mint(request.recipient, request.amount, request.nonce)
            case SettlementDirection.RELEASE:
                fn = self.contract.functions.release(request.recipient, request.amount, request.nonce)
        return fn.transact({"gas": self.gas_limit, "gasPrice": self.w3.eth.gas_price})

    async def _wait_for_receipt(self, nonce: int, tx_hash: HexBytes) -> TxReceipt:
        tx_hex = Web3.to_hex(tx_hash)
        try:
            # Outer timeout leaves room for the provider's own polling to finish.
            return await call_with_timeout(
                self.w3.eth.wait_for_transaction_receipt,
                tx_hash,
                self.receipt_timeout,
                timeout=self.receipt_timeout + self.request_timeout,
            )
        except (TimeExhausted, asyncio.TimeoutError) as e:
            raise SettlementError(nonce, "confirmation timed out", tx_hex) from e
        except Exception as e:
            raise SettlementError(nonce, f"receipt lookup failed: {e!r}", tx_hex) from e

    # -- CCTP --------------------------------------------------------------

    def _require_tracker(self) -> "AttestationTracker":
        if self.attestation_tracker is None:
            raise RuntimeError("No attestation tracker configured for CCTP transfers")
        return self.attestation_tracker

    def track_cctp_transfer(self, event: DecodedEvent) -> BridgeTransaction:
        """Hand an observed ``USDCBridged`` event to the attestation tracker."""
        args = event.args
        return self._require_tracker().track_bridge(
            transaction_hash=event.transaction_hash,
            nonce=args["nonce"],
            sender=args["sender"],
            destination_domain=args["destinationDomain"],
            amount=args["amount"],
        )

    async def submit_cctp_transfer(
        self, amount: int, destination_domain: int, mint_recipient: str | bytes
    ) -> BridgeTransaction:
        """
        Burn USDC through the CCTP bridge contract and track the transfer.

        Library API for callers embedding the relayer; the service itself only
        tracks transfers it observes on chain.

        Args:
            amount: USDC amount in its smallest unit
            destination_domain: CCTP domain of the destination chain
            mint_recipient: Recipient address or its 32-byte encoding

        Returns:
            The tracked BridgeTransaction

        Raises:
            ValueError: If the destination domain is not supported by the bridge
            SettlementError: If the transfer reverted, timed out or could not be submitted
        """
        tracker = self._require_tracker()
        if self.cctp_contract is None:
            raise RuntimeError("No CCTP bridge contract configured")
        contract = self.cctp_contract

        supported = await call_with_timeout(
            contract.functions.isChainSupported(destination_domain).call,
            timeout=self.request_timeout,
        )
        if not supported:
            raise ValueError(f"CCTP destination domain {destination_domain} is not supported")

        recipient32 = self._to_bytes32(mint_recipient)

        def _send() -> HexBytes:
            return contract.functions.bridgeUSDC(amount, destination_domain, recipient32).transact({
                "gas": self.gas_limit,
                "gasPrice": self.w3.eth.gas_price,
            })

        try:
            tx_hash = await call_with_timeout(_send, timeout=self.request_timeout)
        except Exception as e:
            raise SettlementError(0, f"CCTP submission failed: {e!r}") from e

        receipt = await self._wait_for_receipt(0, tx_hash)
        tx_hex = Web3.to_hex(tx_hash)
        if receipt.get("status", 0) != 1:
            raise SettlementError(0, "CCTP transfer reverted", tx_hex)

        logs = contract.events.USDCBridged().process_receipt(receipt, errors=DISCARD)
        nonce = logs[0]["args"]["nonce"] if logs else 0
        sender = self.w3.eth.default_account

        logger.info(
            "cctp.submitted",
            extra={"data": {
                "txHash": tx_hex,
                "nonce": nonce,
                "destinationDomain": destination_domain,
                "amount": str(amount),
            }},
        )
        return tracker.track_bridge(
            transaction_hash=tx_hex,
            nonce=nonce,
            sender=str(sender),
            destination_domain=destination_domain,
            amount=amount,
        )

    @staticmethod
    def _to_bytes32(value: str | bytes) -> bytes:
        """Left-pad an address (or pass through 32 bytes) for CCTP's bytes32 recipient."""
        raw = bytes(HexBytes(value))
        if len(raw) > 32:
            raise ValueError(f"Recipient does not fit in bytes32: {value!r}")
        return raw.rjust(32, b"\x00")
