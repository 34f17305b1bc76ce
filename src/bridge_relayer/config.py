"""
Configuration module for the bridge relayer.

This module provides type-safe configuration dataclasses with validation for
the relayer that watches an escrow contract on the source chain and a wrapped
asset contract on the destination chain. Configuration is loaded from
environment variables with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from urllib.parse import urlparse

from web3 import Web3

# Get logger for this module
logger = logging.getLogger(__name__)

# Circle attestation service (sandbox)
DEFAULT_ATTESTATION_API_URL = "https://iris-api-sandbox.circle.com"

# CCTP domain IDs for cross-chain USDC bridging
CCTP_DOMAINS: dict[str, int] = {
    "ETHEREUM": 0,
    "ARBITRUM": 3,
    "BASE": 6,
    "ARC_TESTNET": 26,
}


def _validate_rpc_url(rpc_url: str, label: str, env_var: str) -> None:
    if not rpc_url:
        raise ValueError(f"{label} RPC URL is required ({env_var})")

    parsed = urlparse(rpc_url)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(
            f"Invalid RPC URL scheme: {parsed.scheme}. Expected http or https"
        )


def _checksum(instance: object, attr: str, label: str, env_var: str) -> None:
    """Validate an address attribute and store it checksummed."""
    address = getattr(instance, attr)
    if not address:
        raise ValueError(f"{label} address is required ({env_var})")

    if not Web3.is_address(address):
        raise ValueError(f"Invalid {label.lower()} address: {address}")

    checksummed = Web3.to_checksum_address(address)
    if checksummed != address:
        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(instance, attr, checksummed)


@dataclass(frozen=True, slots=True)
class SourceChainConfig:
    """Configuration for the source chain holding the escrow.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint for the source chain
        escrow_address: Checksummed address of the escrow contract
        polling_interval: Seconds between source watch ticks (about one block time)
    """

    rpc_url: str
    escrow_address: str
    polling_interval: float = 12

    def __post_init__(self) -> None:
        """Validate source chain configuration."""
        _validate_rpc_url(self.rpc_url, "Source", "SOURCE_RPC_URL")
        _checksum(self, "escrow_address", "Escrow", "ESCROW_ADDRESS")
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")


@dataclass(frozen=True, slots=True)
class DestinationChainConfig:
    """Configuration for the destination chain minting the wrapped asset.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint for the destination chain
        wrapped_asset_address: Checksummed address of the wrapped asset contract
        cctp_bridge_address: Optional CCTP bridge contract whose transfers are tracked
        polling_interval: Seconds between destination watch ticks
    """

    rpc_url: str
    wrapped_asset_address: str
    cctp_bridge_address: str | None = None
    polling_interval: float = 6

    def __post_init__(self) -> None:
        """Validate destination chain configuration."""
        _validate_rpc_url(self.rpc_url, "Destination", "DESTINATION_RPC_URL")
        _checksum(self, "wrapped_asset_address", "Wrapped asset", "WRAPPED_ASSET_ADDRESS")
        if self.cctp_bridge_address:
            _checksum(self, "cctp_bridge_address", "CCTP bridge", "CCTP_BRIDGE_ADDRESS")
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for event monitoring and settlement."""
    # Sensible defaults for relayer operations
    confirmation_depth: int = 5  # blocks behind head treated as final
    overlap_window: int = 5  # blocks re-queried below the cursor each tick
    lookback_blocks: int = 100  # blocks to look back on a fresh start
    request_timeout: int = 30  # RPC request timeout in seconds
    receipt_timeout: int = 120  # wait for inclusion, in seconds
    retry_count: int = 3  # attempts per RPC call per tick
    retry_base_delay: float = 1.0  # seconds
    retry_max_delay: float = 60.0  # seconds
    gas_limit: int = 300_000
    deposit_expiry_seconds: int = 3600  # pending deposits older than this expire
    pending_retry_interval: float = 30.0  # min seconds between attempts for one deposit
    status_interval: float = 60.0  # heartbeat period
    shutdown_grace: float = 150.0  # max wait for in-flight ticks on shutdown

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.confirmation_depth < 0:
            raise ValueError(f"Confirmation depth must be non-negative, got {self.confirmation_depth}")

        if self.overlap_window < 0:
            raise ValueError(f"Overlap window must be non-negative, got {self.overlap_window}")
        if self.overlap_window > 100:
            raise ValueError(f"Overlap window too large (max 100), got {self.overlap_window}")

        if self.lookback_blocks <= 0:
            raise ValueError(f"Lookback blocks must be positive, got {self.lookback_blocks}")
        if self.lookback_blocks > 10_000:
            raise ValueError(f"Lookback blocks too high (max 10000), got {self.lookback_blocks}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")

        if self.retry_count < 1:
            raise ValueError(f"Retry count must be at least 1, got {self.retry_count}")
        if self.retry_count > 10:
            raise ValueError(f"Retry count too high (max 10), got {self.retry_count}")

        if self.deposit_expiry_seconds <= 0:
            raise ValueError(
                f"Deposit expiry must be positive, got {self.deposit_expiry_seconds}"
            )


@dataclass(frozen=True, slots=True)
class AttestationConfig:
    """Configuration for CCTP attestation polling."""
    api_url: str = DEFAULT_ATTESTATION_API_URL
    polling_interval: float = 15  # seconds
    delay_threshold: float = 300  # seconds before a transfer is flagged delayed
    retention_seconds: float = 3600  # how long completed transfers stay visible
    source_domain: int | None = None

    def __post_init__(self) -> None:
        """Validate attestation configuration."""
        parsed = urlparse(self.api_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid attestation API URL: {self.api_url}")
        if self.polling_interval <= 0:
            raise ValueError(
                f"Attestation polling interval must be positive, got {self.polling_interval}"
            )
        if self.delay_threshold <= 0:
            raise ValueError(f"Delay threshold must be positive, got {self.delay_threshold}")
        if self.source_domain is not None and self.source_domain < 0:
            raise ValueError(f"Invalid CCTP source domain: {self.source_domain}")


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the bridge relayer.

    Attributes:
        source_chain: Configuration for the source (escrow) chain
        destination_chain: Configuration for the destination (wrapped asset) chain
        private_key: Key signing mint and release transactions on both chains
        state_file_path: Where the ledger is persisted
        monitoring: Configuration for monitoring and settlement
        attestation: Configuration for CCTP attestation polling
    """

    source_chain: SourceChainConfig
    destination_chain: DestinationChainConfig
    private_key: str
    state_file_path: str = "./relayer-state.json"
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    attestation: AttestationConfig = field(default_factory=AttestationConfig)

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if not self.private_key:
            raise ValueError("RELAYER_PRIVATE_KEY environment variable is required")

        # Basic private key validation (64 hex chars, optionally with 0x prefix)
        key = self.private_key.removeprefix("0x")
        if len(key) != 64:
            raise ValueError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ValueError("Invalid private key format. Must be hexadecimal") from None

        if not self.state_file_path:
            raise ValueError("State file path must not be empty (STATE_FILE_PATH)")

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """
        Load configuration from environment variables.

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        source_chain = SourceChainConfig(
            rpc_url=os.environ.get("SOURCE_RPC_URL", ""),
            escrow_address=os.environ.get("ESCROW_ADDRESS", ""),
            polling_interval=float(os.environ.get("SOURCE_POLLING_INTERVAL", "12")),
        )

        destination_chain = DestinationChainConfig(
            rpc_url=os.environ.get("DESTINATION_RPC_URL", ""),
            wrapped_asset_address=os.environ.get("WRAPPED_ASSET_ADDRESS", ""),
            cctp_bridge_address=os.environ.get("CCTP_BRIDGE_ADDRESS") or None,
            polling_interval=float(os.environ.get("DESTINATION_POLLING_INTERVAL", "6")),
        )

        monitoring = MonitoringConfig(
            confirmation_depth=int(os.environ.get("CONFIRMATION_DEPTH", "5")),
            overlap_window=int(os.environ.get("OVERLAP_WINDOW", "5")),
            lookback_blocks=int(os.environ.get("LOOKBACK_BLOCKS", "100")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
            receipt_timeout=int(os.environ.get("RECEIPT_TIMEOUT", "120")),
            retry_count=int(os.environ.get("RETRY_COUNT", "3")),
            deposit_expiry_seconds=int(os.environ.get("DEPOSIT_EXPIRY_SECONDS", "3600")),
        )

        source_domain = os.environ.get("CCTP_SOURCE_DOMAIN")
        attestation = AttestationConfig(
            api_url=os.environ.get("ATTESTATION_API_URL", DEFAULT_ATTESTATION_API_URL),
            polling_interval=float(os.environ.get("ATTESTATION_POLLING_INTERVAL", "15")),
            delay_threshold=float(os.environ.get("ATTESTATION_DELAY_THRESHOLD", "300")),
            source_domain=int(source_domain) if source_domain else None,
        )

        return cls(
            source_chain=source_chain,
            destination_chain=destination_chain,
            private_key=os.environ.get("RELAYER_PRIVATE_KEY", ""),
            state_file_path=os.environ.get("STATE_FILE_PATH", "./relayer-state.json"),
            monitoring=monitoring,
            attestation=attestation,
        )

    def with_state_file(self, state_file_path: str) -> "RelayerConfig":
        """Create a new config pointing at a different ledger file."""
        return replace(self, state_file_path=state_file_path)

    def log_config(self) -> None:
        """Log the configuration (hiding sensitive data)."""
        logger.info(
            "relayer.config",
            extra={"data": {
                "sourceChain": {
                    "rpcUrl": self.source_chain.rpc_url,
                    "escrow": self.source_chain.escrow_address,
                    "pollingInterval": self.source_chain.polling_interval,
                },
                "destinationChain": {
                    "rpcUrl": self.destination_chain.rpc_url,
                    "wrappedAsset": self.destination_chain.wrapped_asset_address,
                    "cctpBridge": self.destination_chain.cctp_bridge_address,
                    "pollingInterval": self.destination_chain.polling_interval,
                },
                "monitoring": {
                    "confirmationDepth": self.monitoring.confirmation_depth,
                    "overlapWindow": self.monitoring.overlap_window,
                    "lookbackBlocks": self.monitoring.lookback_blocks,
                    "requestTimeout": self.monitoring.request_timeout,
                    "receiptTimeout": self.monitoring.receipt_timeout,
                    "retryCount": self.monitoring.retry_count,
                    "depositExpirySeconds": self.monitoring.deposit_expiry_seconds,
                },
                "attestation": {
                    "apiUrl": self.attestation.api_url,
                    "pollingInterval": self.attestation.polling_interval,
                    "delayThreshold": self.attestation.delay_threshold,
                },
                "stateFile": self.state_file_path,
                "privateKey": "[SET]" if self.private_key else "[NOT SET]",
            }},
        )
