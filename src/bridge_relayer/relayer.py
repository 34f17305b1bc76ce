"""
Bridge relayer implementation.

This module contains the main relayer service that wires the ledger, event
sources, settlement executors and attestation tracker together and runs the
polling loops on a shared scheduler.
"""

import asyncio
import logging
import signal
from collections.abc import Iterable
from typing import Any

from .attestation import AttestationTracker
from .chain_event_source import ChainEventSource
from .config import RelayerConfig
from .event_processor import EventProcessor
from .ledger import Ledger
from .models import Chain, SettlementDirection
from .scheduler import Scheduler
from .settlement_executor import SettlementExecutor
from .utils.contract_utility import ContractUtility
from .watcher import ChainWatcher

logger = logging.getLogger(__name__)


class BridgeRelayer:
    """
    Main relayer service that orchestrates event monitoring and settlement.

    This class focuses on wiring and lifecycle management, delegating event
    handling to the EventProcessor and loop timing to the Scheduler.
    """

    def __init__(
        self,
        config: RelayerConfig,
        ledger: Ledger | None = None,
        source_util: ContractUtility | None = None,
        destination_util: ContractUtility | None = None,
        attestation_tracker: AttestationTracker | None = None,
    ):
        """
        Initialize the Bridge Relayer.

        Args:
            config: Relayer configuration
            ledger: Ledger to use (loaded from the configured state file when omitted)
            source_util: Signing contract utility for the source chain
            destination_util: Signing contract utility for the destination chain
            attestation_tracker: CCTP attestation tracker
        """
        self.config = config
        self.ledger = ledger or Ledger.load(config.state_file_path)

        self.scheduler = Scheduler(shutdown_grace=config.monitoring.shutdown_grace)

        self._init_utilities(source_util, destination_util, attestation_tracker)
        self._init_components()
        self._register_loops()

    def _init_utilities(
        self,
        source_util: ContractUtility | None,
        destination_util: ContractUtility | None,
        attestation_tracker: AttestationTracker | None,
    ) -> None:
        """Initialize chain connections and the attestation client."""
        monitoring = self.config.monitoring
        self.source_util = source_util or ContractUtility(
            rpc_url=self.config.source_chain.rpc_url,
            secret=self.config.private_key,
            request_timeout=monitoring.request_timeout,
        )
        self.destination_util = destination_util or ContractUtility(
            rpc_url=self.config.destination_chain.rpc_url,
            secret=self.config.private_key,
            request_timeout=monitoring.request_timeout,
        )

        attestation = self.config.attestation
        self.attestation_tracker = attestation_tracker or AttestationTracker(
            api_base_url=attestation.api_url,
            delay_threshold=attestation.delay_threshold,
            request_timeout=monitoring.request_timeout,
            retention_seconds=attestation.retention_seconds,
            source_domain=attestation.source_domain,
        )

    def _init_components(self) -> None:
        """Build contracts, executors, event sources and watchers."""
        source = self.config.source_chain
        destination = self.config.destination_chain
        monitoring = self.config.monitoring

        escrow = self.source_util.get_contract("ETHEscrow", source.escrow_address)
        wrapped = self.destination_util.get_contract("BridgedETH", destination.wrapped_asset_address)
        cctp_bridge = (
            self.destination_util.get_contract("CCTPBridge", destination.cctp_bridge_address)
            if destination.cctp_bridge_address else None
        )

        executor_settings: dict[str, Any] = {
            "receipt_timeout": monitoring.receipt_timeout,
            "request_timeout": monitoring.request_timeout,
            "gas_limit": monitoring.gas_limit,
        }
        self.mint_executor = SettlementExecutor(
            self.ledger, self.destination_util, wrapped, SettlementDirection.MINT,
            attestation_tracker=self.attestation_tracker,
            cctp_contract=cctp_bridge,
            **executor_settings,
        )
        self.release_executor = SettlementExecutor(
            self.ledger, self.source_util, escrow, SettlementDirection.RELEASE,
            **executor_settings,
        )

        self.event_processor = EventProcessor(
            ledger=self.ledger,
            mint_executor=self.mint_executor,
            release_executor=self.release_executor,
            cctp_executor=self.mint_executor,
            deposit_expiry_seconds=monitoring.deposit_expiry_seconds,
            pending_retry_interval=monitoring.pending_retry_interval,
            should_stop=self._stop_requested,
        )

        self.source_watcher = ChainWatcher(
            name="source",
            source=self._event_source(
                self.source_util, source.escrow_address, "ETHEscrow", ["Deposited", "Released"], "source"
            ),
            ledger=self.ledger,
            chain=Chain.SOURCE,
            handler=self.event_processor.handle_source_event,
            overlap_window=monitoring.overlap_window,
            lookback_blocks=monitoring.lookback_blocks,
            should_stop=self._stop_requested,
        )
        self.destination_watcher = ChainWatcher(
            name="destination",
            source=self._event_source(
                self.destination_util, destination.wrapped_asset_address, "BridgedETH",
                ["Burned", "Minted"], "destination",
            ),
            ledger=self.ledger,
            chain=Chain.DESTINATION,
            handler=self.event_processor.handle_destination_event,
            overlap_window=monitoring.overlap_window,
            lookback_blocks=monitoring.lookback_blocks,
            should_stop=self._stop_requested,
        )

        self.cctp_watcher: ChainWatcher | None = None
        if destination.cctp_bridge_address:
            # The CCTP bridge shares the destination chain but not its cursor.
            self.cctp_watcher = ChainWatcher(
                name="cctp",
                source=self._event_source(
                    self.destination_util, destination.cctp_bridge_address, "CCTPBridge",
                    ["USDCBridged"], "cctp",
                ),
                ledger=self.ledger,
                chain=Chain.DESTINATION,
                handler=self.event_processor.process_cctp_event,
                overlap_window=monitoring.overlap_window,
                lookback_blocks=monitoring.lookback_blocks,
                should_stop=self._stop_requested,
                track_cursor=False,
            )

    def _stop_requested(self) -> bool:
        return self.scheduler.stop_requested

    def _event_source(
        self,
        util: ContractUtility,
        address: str,
        contract_name: str,
        event_names: list[str],
        label: str,
    ) -> ChainEventSource:
        monitoring = self.config.monitoring
        return ChainEventSource(
            w3=util.w3,
            contract_address=address,
            abi=ContractUtility.get_contract_abi(contract_name),
            event_names=event_names,
            confirmation_depth=monitoring.confirmation_depth,
            retry_count=monitoring.retry_count,
            retry_base_delay=monitoring.retry_base_delay,
            retry_max_delay=monitoring.retry_max_delay,
            request_timeout=monitoring.request_timeout,
            label=label,
        )

    def _register_loops(self) -> None:
        """Register every polling loop with the scheduler."""
        monitoring = self.config.monitoring
        self.scheduler.add_task(
            "source-watch", self.config.source_chain.polling_interval, self.source_watcher.poll
        )
        self.scheduler.add_task(
            "destination-watch",
            self.config.destination_chain.polling_interval,
            self.destination_watcher.poll,
        )
        self.scheduler.add_task(
            "deposit-retry", monitoring.pending_retry_interval, self.event_processor.run_maintenance
        )
        self.scheduler.add_task(
            "attestation",
            self.config.attestation.polling_interval,
            self.attestation_tracker.poll_active,
        )
        if self.cctp_watcher is not None:
            self.scheduler.add_task(
                "cctp-watch", self.config.destination_chain.polling_interval, self.cctp_watcher.poll
            )
        self.scheduler.add_task("status", monitoring.status_interval, self._log_status)

    @classmethod
    def from_env(cls, state_file_path: str | None = None) -> "BridgeRelayer":
        """
        Create a BridgeRelayer instance from environment variables.

        Args:
            state_file_path: Override for the ledger file location

        Returns:
            Configured BridgeRelayer instance

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayerConfig.from_env()
        if state_file_path:
            config = config.with_state_file(state_file_path)
        config.log_config()
        return cls(config)

    def replay_deposits(self, nonces: Iterable[int]) -> list[int]:
        """
        Put expired deposits back into automatic processing.

        Returns:
            The nonces that were replayed
        """
        replayed = []
        for nonce in nonces:
            try:
                self.ledger.replay_deposit(nonce)
            except KeyError:
                logger.error("deposit.replay_failed", extra={"data": {"nonce": nonce}, "error": "unknown nonce"})
                continue
            except ValueError as e:
                logger.error("deposit.replay_failed", extra={"data": {"nonce": nonce}, "error": str(e)})
                continue
            replayed.append(nonce)
        if replayed:
            self.ledger.persist()
        return replayed

    async def _log_status(self) -> None:
        """Log a heartbeat with ledger, loop and attestation metrics."""
        logger.info(
            "relayer.heartbeat",
            extra={"data": {
                **self.event_processor.get_stats(),
                "attestations": self.attestation_tracker.get_stats(),
                "loops": self.scheduler.get_status(),
                "lastPersistOk": self.ledger.last_persist_ok,
            }},
        )

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                continue  # Not supported on this platform / thread
            installed.append(sig)
        return installed

    async def run(self) -> None:
        """Main event loop for the relayer service."""
        logger.info(
            "relayer.starting",
            extra={"data": {
                "lastSourceBlock": self.ledger.get_cursor(Chain.SOURCE),
                "lastDestBlock": self.ledger.get_cursor(Chain.DESTINATION),
                "pendingDeposits": len(self.ledger.pending_deposits()),
                "cctp": self.cctp_watcher is not None,
            }},
        )
        installed = self._install_signal_handlers()
        try:
            self.scheduler.start()
            await self.scheduler.wait_stopped()
        finally:
            if self.scheduler.running:
                await self.scheduler.stop()
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
            self.ledger.persist()
            await self.attestation_tracker.aclose()
            logger.info("relayer.stopped")

    def stop(self) -> None:
        """Stop the relayer service."""
        self.scheduler.request_stop()
