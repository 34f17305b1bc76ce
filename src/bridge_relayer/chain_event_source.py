"""
Confirmed event source for one watched contract.

Queries raw logs for a contract address over a block range that stops
``confirmation_depth`` blocks behind the chain head, decodes them against the
known event signatures and returns them in chain order.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from hexbytes import HexBytes
from web3 import Web3
from web3.types import FilterParams, LogReceipt

from .models import DecodedEvent, to_hex_str
from .utils.retry import with_retry

logger = logging.getLogger(__name__)


def event_signature(event_abi: Mapping[str, Any]) -> str:
    """Canonical signature of an event ABI entry, e.g. ``Burned(address,uint256)``."""
    types = ",".join(inp["type"] for inp in event_abi.get("inputs", []))
    return f"{event_abi['name']}({types})"


class ChainEventSource:
    """
    Fetches and decodes contract events up to the confirmed (safe) head.

    Every RPC call runs in a worker thread with a timeout and is retried with
    exponential backoff on transient failures; once the retries are used up a
    ``TransientRPCError`` is raised and the caller defers to its next tick.
    """

    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        abi: list[dict[str, Any]],
        event_names: Iterable[str],
        confirmation_depth: int = 0,
        retry_count: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        request_timeout: float = 30,
        label: str = "chain",
    ):
        """
        Initialize the event source.

        Args:
            w3: Web3 connection for the chain
            contract_address: Address of the contract to watch
            abi: Contract ABI
            event_names: Names of the events to decode; other logs are skipped
            confirmation_depth: Blocks behind the head that count as final
            retry_count: Attempts per RPC call before giving up for this tick
            retry_base_delay: Initial backoff delay in seconds
            retry_max_delay: Upper bound for the backoff delay
            request_timeout: Timeout for a single RPC call in seconds
            label: Name used in log lines (e.g. "source", "destination")

        Raises:
            ValueError: If an event name is not present in the ABI
        """
        self.w3 = w3
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.confirmation_depth = confirmation_depth
        self.retry_count = retry_count
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.request_timeout = request_timeout
        self.label = label

        self.contract = w3.eth.contract(address=self.contract_address, abi=abi)

        # topic0 -> event name
        self._topics: dict[bytes, str] = {}
        for name in event_names:
            event_abi = next(
                (e for e in abi if e.get("type") == "event" and e.get("name") == name),
                None,
            )
            if event_abi is None:
                raise ValueError(f"Event {name} not found in contract ABI")
            topic = bytes(Web3.keccak(text=event_signature(event_abi)))
            self._topics[topic] = name

    @property
    def event_names(self) -> list[str]:
        return list(self._topics.values())

    def _get_head(self) -> int:
        return self.w3.eth.block_number

    def _get_logs(self, params: FilterParams) -> list[LogReceipt]:
        return self.w3.eth.get_logs(params)

    async def _call(self, operation: Callable[[], Any], action: str) -> Any:
        return await with_retry(
            operation,
            label=f"{self.label}.{action}",
            retry_count=self.retry_count,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            timeout=self.request_timeout,
        )

    async def get_safe_head(self) -> int:
        """
        Latest block considered final: chain head minus confirmation depth.

        Raises:
            TransientRPCError: If the head could not be read after all retries
        """
        head = await self._call(self._get_head, "get_head")
        return max(0, head - self.confirmation_depth)

    async def fetch_events(
        self, from_block: int, to_block: int | None = None
    ) -> list[DecodedEvent]:
        """
        Fetch decoded events in ``[from_block, to_block]``.

        Args:
            from_block: First block to query
            to_block: Last block to query; defaults to the safe head

        Returns:
            Decoded events sorted by (block number, log index); empty when
            ``to_block <= from_block`` (no new confirmed blocks yet)

        Raises:
            TransientRPCError: If the RPC kept failing for this tick
        """
        if to_block is None:
            to_block = await self.get_safe_head()
        if to_block <= from_block:
            return []

        params: FilterParams = {
            "address": self.contract_address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [[Web3.to_hex(topic) for topic in self._topics]],
        }
        logs = await self._call(lambda: self._get_logs(params), "get_logs")

        events = [event for log in logs if (event := self._decode(log)) is not None]
        events.sort(key=lambda event: event.sort_key)

        if events:
            logger.info(
                f"{self.label}.events_fetched",
                extra={"data": {
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "count": len(events),
                }},
            )
        return events

    def _decode(self, log: LogReceipt) -> DecodedEvent | None:
        """Decode one raw log, or return None if it is not a known event."""
        topics = log.get("topics") or []
        name = self._topics.get(bytes(HexBytes(topics[0]))) if topics else None
        if name is None:
            logger.debug(
                f"{self.label}.log_skipped",
                extra={"data": {
                    "reason": "unknown_signature",
                    "transactionHash": to_hex_str(log.get("transactionHash", b"")),
                    "logIndex": log.get("logIndex"),
                }},
            )
            return None

        try:
            decoded = getattr(self.contract.events, name)().process_log(log)
        except Exception as e:
            # Malformed or signature-colliding logs are skipped, not fatal.
            logger.debug(
                f"{self.label}.log_skipped",
                extra={
                    "data": {
                        "reason": "decode_failed",
                        "event": name,
                        "transactionHash": to_hex_str(log.get("transactionHash", b"")),
                        "logIndex": log.get("logIndex"),
                    },
                    "error": str(e),
                },
            )
            return None

        return DecodedEvent(
            name=name,
            args=dict(decoded["args"]),
            block_number=int(decoded["blockNumber"]),
            log_index=int(decoded["logIndex"]),
            transaction_hash=to_hex_str(decoded["transactionHash"]),
            address=decoded["address"],
        )
