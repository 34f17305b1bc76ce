"""
Cursor-driven watch loop for one contract.

Each poll fetches confirmed events from the ledger cursor (minus a small
overlap window), hands them to a handler in chain order and then advances the
cursor. The cursor never passes a block that still holds an unresolved event.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .chain_event_source import ChainEventSource
from .exceptions import TransientRPCError
from .ledger import Ledger
from .models import Chain, DecodedEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DecodedEvent], Awaitable[bool]]


class ChainWatcher:
    """Polls a ChainEventSource and drives the ledger cursor for its chain."""

    def __init__(
        self,
        name: str,
        source: ChainEventSource,
        ledger: Ledger,
        chain: Chain,
        handler: EventHandler,
        overlap_window: int = 5,
        lookback_blocks: int = 100,
        track_cursor: bool = True,
        should_stop: Callable[[], bool] | None = None,
    ):
        """
        Initialize the watcher.

        Args:
            name: Loop name used in log lines
            source: Event source for the watched contract
            ledger: Ledger owning the chain cursor
            chain: Which cursor this watcher drives
            handler: Async callable returning True once an event is resolved
            overlap_window: Blocks re-queried below the cursor on every poll
            lookback_blocks: Blocks scanned below the safe head on a fresh start
            track_cursor: Persist progress in the ledger cursor; when False the
                watcher keeps its own in-memory cursor
            should_stop: Returns True once shutdown was requested; the remaining
                events of the batch are then left for the next run
        """
        self.name = name
        self.source = source
        self.ledger = ledger
        self.chain = chain
        self.handler = handler
        self.overlap_window = overlap_window
        self.lookback_blocks = lookback_blocks
        self.track_cursor = track_cursor
        self.should_stop = should_stop or (lambda: False)

        self._memory_cursor = 0
        self.polls = 0
        self.events_seen = 0
        self.last_safe_head: int | None = None

    @property
    def cursor(self) -> int:
        return self.ledger.get_cursor(self.chain) if self.track_cursor else self._memory_cursor

    def _set_cursor(self, block_number: int) -> None:
        if self.track_cursor:
            self.ledger.set_cursor(self.chain, block_number)
        else:
            self._memory_cursor = max(self._memory_cursor, block_number)

    def start_block(self, safe_head: int) -> int:
        """First block to query for a poll reaching ``safe_head``."""
        cursor = self.cursor
        if cursor == 0:
            return max(0, safe_head - self.lookback_blocks)
        return max(0, cursor - self.overlap_window)

    async def poll(self) -> None:
        """
        Run one watch tick.

        Transient RPC failures defer the whole tick: nothing is handled and the
        cursor stays where it is.
        """
        self.polls += 1
        try:
            safe_head = await self.source.get_safe_head()
            self.last_safe_head = safe_head
            from_block = self.start_block(safe_head)
            events = await self.source.fetch_events(from_block, safe_head)
        except TransientRPCError as e:
            logger.warning(f"{self.name}.deferred", extra={"error": str(e)})
            return

        advance_to = safe_head
        for event in events:
            if self.should_stop():
                advance_to = min(advance_to, event.block_number - 1)
                logger.info(
                    f"{self.name}.interrupted",
                    extra={"data": {"block": event.block_number, "safeHead": safe_head}},
                )
                break
            self.events_seen += 1
            try:
                resolved = await self.handler(event)
            except Exception as e:
                logger.error(
                    f"{self.name}.handler_failed",
                    extra={"data": {"event": str(event)}, "error": repr(e)},
                    exc_info=True,
                )
                resolved = False
            if not resolved:
                advance_to = min(advance_to, event.block_number - 1)

        cursor = self.cursor
        if advance_to > cursor:
            self._set_cursor(advance_to)
        elif advance_to < safe_head:
            logger.info(
                f"{self.name}.cursor_held",
                extra={"data": {"cursor": cursor, "safeHead": safe_head}},
            )

        if self.track_cursor:
            self.ledger.persist()

    def get_status(self) -> dict[str, Any]:
        return {
            "cursor": self.cursor,
            "safe_head": self.last_safe_head,
            "polls": self.polls,
            "events_seen": self.events_seen,
        }
