#!/usr/bin/env python3
"""Tests for the cursor-driven ChainWatcher."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bridge_relayer.exceptions import TransientRPCError
from bridge_relayer.ledger import Ledger
from bridge_relayer.models import Chain, DecodedEvent
from bridge_relayer.scheduler import Scheduler
from bridge_relayer.watcher import ChainWatcher


def deposit_event(block, nonce, log_index=0):
    return DecodedEvent(
        name="Deposited",
        args={"depositor": "0xabc", "amount": 1, "nonce": nonce},
        block_number=block,
        log_index=log_index,
        transaction_hash=f"0x{block:064x}",
        address="0x1111111111111111111111111111111111111111",
    )


class FakeSource:
    """Serves events from a fixed list, honoring the requested range."""

    def __init__(self, safe_head, events=()):
        self.safe_head = safe_head
        self.events = list(events)
        self.ranges = []

    async def get_safe_head(self):
        return self.safe_head

    async def fetch_events(self, from_block, to_block=None):
        to_block = self.safe_head if to_block is None else to_block
        self.ranges.append((from_block, to_block))
        if to_block <= from_block:
            return []
        return [e for e in self.events if from_block <= e.block_number <= to_block]


@pytest.fixture
def ledger(tmp_path):
    return Ledger(tmp_path / "state.json")


def make_watcher(source, ledger, handler, **kwargs):
    return ChainWatcher(
        name="source",
        source=source,
        ledger=ledger,
        chain=Chain.SOURCE,
        handler=handler,
        overlap_window=kwargs.pop("overlap_window", 5),
        lookback_blocks=kwargs.pop("lookback_blocks", 100),
        **kwargs,
    )


class TestPoll:
    @pytest.mark.asyncio
    async def test_fresh_start_uses_lookback(self, ledger):
        source = FakeSource(safe_head=1005)
        watcher = make_watcher(source, ledger, AsyncMock(return_value=True))

        await watcher.poll()

        assert source.ranges == [(905, 1005)]
        assert ledger.get_cursor(Chain.SOURCE) == 1005

    @pytest.mark.asyncio
    async def test_overlap_window_requery(self, ledger):
        ledger.set_cursor(Chain.SOURCE, 1000)
        source = FakeSource(safe_head=1010)
        watcher = make_watcher(source, ledger, AsyncMock(return_value=True))

        await watcher.poll()

        assert source.ranges == [(995, 1010)]
        assert ledger.get_cursor(Chain.SOURCE) == 1010

    @pytest.mark.asyncio
    async def test_events_handled_in_order(self, ledger):
        events = [deposit_event(1001, 2, 1), deposit_event(1001, 1, 0), deposit_event(1003, 3)]
        source = FakeSource(safe_head=1005, events=sorted(events, key=lambda e: e.sort_key))
        handler = AsyncMock(return_value=True)
        ledger.set_cursor(Chain.SOURCE, 1000)

        await make_watcher(source, ledger, handler).poll()

        handled = [c.args[0].args["nonce"] for c in handler.call_args_list]
        assert handled == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_unresolved_event_holds_cursor(self, ledger):
        ledger.set_cursor(Chain.SOURCE, 1000)
        events = [deposit_event(1002, 1), deposit_event(1004, 2), deposit_event(1006, 3)]
        source = FakeSource(safe_head=1008, events=events)

        async def handler(event):
            return event.args["nonce"] != 2

        await make_watcher(source, ledger, handler).poll()

        assert ledger.get_cursor(Chain.SOURCE) == 1003

    @pytest.mark.asyncio
    async def test_handler_exception_is_unresolved(self, ledger):
        ledger.set_cursor(Chain.SOURCE, 1000)
        source = FakeSource(safe_head=1008, events=[deposit_event(1004, 1)])
        handler = AsyncMock(side_effect=RuntimeError("boom"))

        await make_watcher(source, ledger, handler).poll()

        assert ledger.get_cursor(Chain.SOURCE) == 1003

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, ledger):
        ledger.set_cursor(Chain.SOURCE, 1010)
        # Unresolved event inside the overlap window
        source = FakeSource(safe_head=1010, events=[deposit_event(1007, 1)])

        await make_watcher(source, ledger, AsyncMock(return_value=False)).poll()

        assert ledger.get_cursor(Chain.SOURCE) == 1010

    @pytest.mark.asyncio
    async def test_transient_error_defers_tick(self, ledger):
        ledger.set_cursor(Chain.SOURCE, 1000)
        source = MagicMock()
        source.get_safe_head = AsyncMock(side_effect=TransientRPCError("source.get_head", 3))
        handler = AsyncMock()

        await make_watcher(source, ledger, handler).poll()

        handler.assert_not_called()
        assert ledger.get_cursor(Chain.SOURCE) == 1000

    @pytest.mark.asyncio
    async def test_progress_is_persisted(self, ledger, tmp_path):
        source = FakeSource(safe_head=500)
        await make_watcher(source, ledger, AsyncMock(return_value=True)).poll()

        assert Ledger.load(tmp_path / "state.json").get_cursor(Chain.SOURCE) == 500

    @pytest.mark.asyncio
    async def test_untracked_cursor_stays_in_memory(self, ledger):
        source = FakeSource(safe_head=500)
        watcher = make_watcher(source, ledger, AsyncMock(return_value=True), track_cursor=False)

        await watcher.poll()

        assert watcher.cursor == 500
        assert ledger.get_cursor(Chain.SOURCE) == 0
        assert watcher.get_status()["polls"] == 1


class TestCrashRecovery:
    @pytest.mark.asyncio
    async def test_replay_after_restart_causes_no_duplicate_settlement(self, tmp_path):
        """Ledger state survives a restart; the re-scanned range only yields skips."""
        state = tmp_path / "state.json"
        events = [deposit_event(1000, 42)]
        settled_calls = []

        def make_handler(ledger):
            async def handler(event):
                nonce = event.args["nonce"]
                if not ledger.is_settled(nonce):
                    settled_calls.append(nonce)
                    ledger.mark_settled(nonce)
                return True
            return handler

        first = Ledger.load(state)
        await make_watcher(FakeSource(1010, events), first, make_handler(first)).poll()

        # Restart, cursor rewound far enough to replay the same block
        restarted = Ledger.load(state)
        assert restarted.is_settled(42)
        await make_watcher(
            FakeSource(1012, events), restarted, make_handler(restarted), overlap_window=20
        ).poll()

        assert settled_calls == [42]


class TestStopRequested:
    @pytest.mark.asyncio
    async def test_poll_stops_between_events(self, ledger):
        ledger.set_cursor(Chain.SOURCE, 1000)
        events = [deposit_event(1002, 1), deposit_event(1004, 2), deposit_event(1006, 3)]
        stop = False
        handled = []

        async def handler(event):
            nonlocal stop
            handled.append(event.args["nonce"])
            stop = True
            return True

        watcher = make_watcher(FakeSource(1008, events), ledger, handler, should_stop=lambda: stop)
        await watcher.poll()

        assert handled == [1]
        assert ledger.get_cursor(Chain.SOURCE) == 1003

    @pytest.mark.asyncio
    async def test_shutdown_lets_current_settlement_finish(self, ledger):
        """Only the settlement running at stop time completes; nothing is cancelled."""
        scheduler = Scheduler(shutdown_grace=2)
        events = [deposit_event(1002, 1), deposit_event(1004, 2)]
        started, completed = [], []

        async def settle(event):
            started.append(event.args["nonce"])
            await asyncio.sleep(0.1)
            completed.append(event.args["nonce"])
            return True

        ledger.set_cursor(Chain.SOURCE, 1000)
        watcher = make_watcher(
            FakeSource(1008, events), ledger, settle,
            should_stop=lambda: scheduler.stop_requested,
        )
        task = scheduler.add_task("source-watch", 10, watcher.poll)
        scheduler.start()
        while not started:
            await asyncio.sleep(0.01)

        await scheduler.stop()

        assert started == completed == [1]
        assert not task.current.cancelled()
        assert ledger.get_cursor(Chain.SOURCE) == 1003
