"""
CCTP attestation tracking.

Outbound USDC transfers are registered with the tracker when their
``bridgeUSDC`` transaction is observed or submitted. A polling loop then asks
Circle's attestation service for the message of each active transfer until
the attestation is complete.
"""

import asyncio
import logging
import time
from typing import Any

import httpx
from web3 import Web3

from .models import BridgeStatus, BridgeTransaction, normalize_nonce, to_hex_str

logger = logging.getLogger(__name__)


class AttestationTracker:
    """
    Owns the in-memory map of CCTP transfers and their attestation status.

    Status only ever moves forward (sent, pending_attestation, complete).
    Completed transfers are no longer polled and are evicted once they have
    been complete for longer than the retention window.
    """

    def __init__(
        self,
        api_base_url: str,
        delay_threshold: float = 300,
        request_timeout: float = 30,
        retention_seconds: float = 3600,
        source_domain: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the tracker.

        Args:
            api_base_url: Attestation service base URL
            delay_threshold: Age in seconds after which an incomplete transfer is flagged delayed
            request_timeout: Timeout for one attestation request in seconds
            retention_seconds: How long completed transfers are kept
            source_domain: CCTP domain of the burning chain; selects the domain-scoped endpoint
            client: HTTP client to use (one is created and owned when omitted)
        """
        self.api_base_url = api_base_url.rstrip("/")
        self.delay_threshold = delay_threshold
        self.request_timeout = request_timeout
        self.retention_seconds = retention_seconds
        self.source_domain = source_domain

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=request_timeout)

        self._bridges: dict[str, BridgeTransaction] = {}
        self._poller: asyncio.Task | None = None

    @staticmethod
    def _key(transaction_hash: str) -> str:
        return to_hex_str(transaction_hash)

    def track_bridge(
        self,
        transaction_hash: str,
        nonce: Any,
        sender: str,
        destination_domain: int,
        amount: int,
    ) -> BridgeTransaction:
        """
        Start tracking a transfer. Tracking the same transaction twice is a no-op.

        Returns:
            The tracked BridgeTransaction
        """
        key = self._key(transaction_hash)
        if (bridge := self._bridges.get(key)) is not None:
            return bridge

        bridge = BridgeTransaction(
            transaction_hash=key,
            nonce=normalize_nonce(nonce),
            sender=sender,
            destination_domain=int(destination_domain),
            amount=int(amount),
        )
        self._bridges[key] = bridge
        logger.info(
            "attestation.tracked",
            extra={"data": {
                "txHash": key,
                "nonce": bridge.nonce,
                "destinationDomain": bridge.destination_domain,
                "amount": str(bridge.amount),
            }},
        )
        return bridge

    def _messages_url(self) -> str:
        if self.source_domain is None:
            return f"{self.api_base_url}/v2/messages"
        return f"{self.api_base_url}/v2/messages/{self.source_domain}"

    def _advance(self, bridge: BridgeTransaction, status: BridgeStatus) -> None:
        if status.rank <= bridge.status.rank:
            return
        previous = bridge.status
        bridge.status = status
        if status is BridgeStatus.COMPLETE and bridge.completed_at is None:
            bridge.completed_at = time.time()
            bridge.is_delayed = False
        logger.info(
            "attestation.status_changed",
            extra={"data": {
                "txHash": bridge.transaction_hash,
                "from": previous.value,
                "to": status.value,
            }},
        )

    async def poll_attestation(self, transaction_hash: str) -> BridgeTransaction | None:
        """
        Query the attestation service once for a tracked transfer.

        A 404 or an empty message list means the attestation is not ready yet.
        Transport errors and unexpected responses leave the status unchanged.

        Returns:
            The updated BridgeTransaction, or None if the hash is not tracked
        """
        bridge = self._bridges.get(self._key(transaction_hash))
        if bridge is None:
            return None
        if bridge.is_complete:
            return bridge

        try:
            response = await self.client.get(
                self._messages_url(),
                params={"transactionHash": bridge.transaction_hash},
                timeout=self.request_timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "attestation.poll_failed",
                extra={"data": {"txHash": bridge.transaction_hash}, "error": repr(e)},
            )
            return bridge

        if response.status_code == 404:
            self._advance(bridge, BridgeStatus.PENDING_ATTESTATION)
            return bridge

        if not response.is_success:
            logger.warning(
                "attestation.poll_failed",
                extra={
                    "data": {"txHash": bridge.transaction_hash, "status": response.status_code},
                    "error": response.text[:200],
                },
            )
            return bridge

        try:
            payload = response.json()
        except ValueError as e:
            logger.warning(
                "attestation.invalid_response",
                extra={"data": {"txHash": bridge.transaction_hash}, "error": str(e)},
            )
            return bridge

        messages = (payload.get("messages") or []) if isinstance(payload, dict) else []
        if not messages:
            self._advance(bridge, BridgeStatus.PENDING_ATTESTATION)
            return bridge

        entry = messages[0]
        status = str(entry.get("status", "")).lower()
        message = entry.get("message")
        attestation = entry.get("attestation")

        match status:
            case "complete" if message and attestation and str(attestation).upper() != "PENDING":
                try:
                    message_hash = Web3.to_hex(Web3.keccak(hexstr=message))
                except ValueError as e:
                    logger.warning(
                        "attestation.invalid_response",
                        extra={"data": {"txHash": bridge.transaction_hash}, "error": f"bad message: {e}"},
                    )
                    message_hash = None
                bridge.message = message
                bridge.attestation = attestation
                bridge.message_hash = message_hash
                self._advance(bridge, BridgeStatus.COMPLETE)
            case _:
                self._advance(bridge, BridgeStatus.PENDING_ATTESTATION)

        return bridge

    def _refresh_delay(self, bridge: BridgeTransaction, now: float) -> None:
        delayed = not bridge.is_complete and now - bridge.created_at > self.delay_threshold
        if delayed and not bridge.is_delayed:
            logger.warning(
                "attestation.delayed",
                extra={"data": {
                    "txHash": bridge.transaction_hash,
                    "ageSeconds": int(now - bridge.created_at),
                }},
            )
        bridge.is_delayed = delayed

    async def poll_active(self) -> None:
        """One poll tick: query every incomplete transfer, then evict expired ones."""
        for bridge in self.get_active_bridges():
            try:
                await self.poll_attestation(bridge.transaction_hash)
            except Exception as e:
                logger.error(
                    "attestation.poll_failed",
                    extra={"data": {"txHash": bridge.transaction_hash}, "error": repr(e)},
                    exc_info=True,
                )
            self._refresh_delay(bridge, time.time())

        now = time.time()
        for key, bridge in list(self._bridges.items()):
            if bridge.completed_at is not None and now - bridge.completed_at > self.retention_seconds:
                del self._bridges[key]

    def get_bridge_status(self, transaction_hash: str) -> BridgeTransaction | None:
        return self._bridges.get(self._key(transaction_hash))

    def get_active_bridges(self) -> list[BridgeTransaction]:
        return [bridge for bridge in self._bridges.values() if not bridge.is_complete]

    def get_all_bridges(self) -> list[BridgeTransaction]:
        return list(self._bridges.values())

    def start_poller(self, interval: float = 15) -> asyncio.Task:
        """
        Run ``poll_active`` every ``interval`` seconds in a background task.

        Returns:
            The running task (returned again if already started)
        """
        if self._poller is not None and not self._poller.done():
            logger.warning("attestation.poller_already_running")
            return self._poller

        async def _loop() -> None:
            while True:
                try:
                    await self.poll_active()
                except Exception as e:
                    logger.error("attestation.poll_error", extra={"error": repr(e)})
                await asyncio.sleep(interval)

        self._poller = asyncio.create_task(_loop(), name="attestation-poller")
        return self._poller

    async def aclose(self) -> None:
        """Stop the background poller and close the HTTP client if owned."""
        if self._poller is not None and not self._poller.done():
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass  # Expected when cancelling
        if self._owns_client:
            await self.client.aclose()

    def get_stats(self) -> dict[str, Any]:
        return {
            "tracked": len(self._bridges),
            "active": len(self.get_active_bridges()),
            "delayed": sum(1 for bridge in self._bridges.values() if bridge.is_delayed),
        }
