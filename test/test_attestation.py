#!/usr/bin/env python3
"""Tests for the CCTP AttestationTracker."""

import asyncio
import time

import httpx
import pytest
from web3 import Web3

from bridge_relayer.attestation import AttestationTracker
from bridge_relayer.models import BridgeStatus

API = "https://iris-api-sandbox.circle.com"
TX = "0x" + "de" * 32
MESSAGE = "0x" + "ab" * 40
ATTESTATION = "0x" + "cd" * 65


def complete_payload(**overrides):
    message = {
        "status": "complete",
        "attestation": ATTESTATION,
        "message": MESSAGE,
        "eventNonce": "7",
    }
    message.update(overrides)
    return {"messages": [message]}


class ScriptedApi:
    """Serves a fixed sequence of responses and records the requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_tracker(api, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    tracker = AttestationTracker(API, client=client, **kwargs)
    tracker.track_bridge(TX, nonce=7, sender="0xabc", destination_domain=6, amount=1_000_000)
    return tracker


class TestPollAttestation:
    """Tests for a single attestation poll."""

    @pytest.mark.asyncio
    async def test_404_three_times_then_complete(self):
        api = ScriptedApi(
            httpx.Response(404),
            httpx.Response(404),
            httpx.Response(404),
            httpx.Response(200, json=complete_payload()),
        )
        tracker = make_tracker(api)
        statuses = [tracker.get_bridge_status(TX).status]

        completed_at = []
        for _ in range(4):
            bridge = await tracker.poll_attestation(TX)
            statuses.append(bridge.status)
            completed_at.append(bridge.completed_at)

        assert statuses == [
            BridgeStatus.SENT,
            BridgeStatus.PENDING_ATTESTATION,
            BridgeStatus.PENDING_ATTESTATION,
            BridgeStatus.PENDING_ATTESTATION,
            BridgeStatus.COMPLETE,
        ]
        assert completed_at[:3] == [None, None, None]
        assert completed_at[3] is not None
        assert bridge.attestation == ATTESTATION
        assert bridge.message_hash == Web3.to_hex(Web3.keccak(hexstr=MESSAGE))
        assert api.requests[0].url.params["transactionHash"] == TX
        assert api.requests[0].url.path == "/v2/messages"

    @pytest.mark.asyncio
    async def test_complete_is_not_polled_again(self):
        api = ScriptedApi(httpx.Response(200, json=complete_payload()))
        tracker = make_tracker(api)

        bridge = await tracker.poll_attestation(TX)
        completed_at = bridge.completed_at
        await tracker.poll_attestation(TX)
        await tracker.poll_active()

        assert len(api.requests) == 1
        assert bridge.completed_at == completed_at
        assert tracker.get_active_bridges() == []

    @pytest.mark.asyncio
    async def test_pending_attestation_value_is_not_complete(self):
        api = ScriptedApi(httpx.Response(200, json=complete_payload(attestation="PENDING")))
        tracker = make_tracker(api)

        bridge = await tracker.poll_attestation(TX)

        assert bridge.status is BridgeStatus.PENDING_ATTESTATION
        assert bridge.completed_at is None

    @pytest.mark.asyncio
    async def test_empty_messages_is_pending(self):
        api = ScriptedApi(httpx.Response(200, json={"messages": []}))
        tracker = make_tracker(api)

        assert (await tracker.poll_attestation(TX)).status is BridgeStatus.PENDING_ATTESTATION

    @pytest.mark.asyncio
    async def test_errors_leave_status_unchanged(self):
        api = ScriptedApi(
            httpx.Response(404),
            httpx.ConnectError("connection refused"),
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, text="not json"),
        )
        tracker = make_tracker(api)

        await tracker.poll_attestation(TX)
        for _ in range(3):
            bridge = await tracker.poll_attestation(TX)
            assert bridge.status is BridgeStatus.PENDING_ATTESTATION

    @pytest.mark.asyncio
    async def test_status_never_regresses(self):
        api = ScriptedApi(
            httpx.Response(200, json={"messages": [{"status": "pending_confirmations"}]}),
            httpx.Response(200, json=complete_payload()),
            httpx.Response(404),
        )
        tracker = make_tracker(api)
        ranks = []
        for _ in range(3):
            bridge = await tracker.poll_attestation(TX)
            ranks.append(bridge.status.rank)

        assert ranks == sorted(ranks)
        assert bridge.status is BridgeStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_domain_scoped_endpoint(self):
        api = ScriptedApi(httpx.Response(404))
        tracker = make_tracker(api, source_domain=26)

        await tracker.poll_attestation(TX)

        assert api.requests[0].url.path == "/v2/messages/26"

    @pytest.mark.asyncio
    async def test_unknown_hash(self):
        tracker = make_tracker(ScriptedApi(httpx.Response(404)))
        assert await tracker.poll_attestation("0x1234") is None


class TestTracking:
    def test_track_bridge_is_idempotent(self):
        tracker = make_tracker(ScriptedApi(httpx.Response(404)))

        again = tracker.track_bridge(TX.upper().replace("0X", "0x"), 8, "0xdef", 3, 5)

        assert again.nonce == 7
        assert len(tracker.get_all_bridges()) == 1

    @pytest.mark.asyncio
    async def test_delay_flag(self):
        tracker = make_tracker(ScriptedApi(httpx.Response(404)), delay_threshold=300)
        bridge = tracker.get_bridge_status(TX)
        bridge.created_at = time.time() - 301

        await tracker.poll_active()

        assert bridge.is_delayed
        assert tracker.get_stats()["delayed"] == 1

    @pytest.mark.asyncio
    async def test_completed_bridges_are_evicted_after_retention(self):
        tracker = make_tracker(ScriptedApi(httpx.Response(200, json=complete_payload())), retention_seconds=60)
        await tracker.poll_active()
        bridge = tracker.get_bridge_status(TX)
        assert bridge.is_complete

        bridge.completed_at = time.time() - 61
        await tracker.poll_active()

        assert tracker.get_bridge_status(TX) is None

    @pytest.mark.asyncio
    async def test_start_poller_and_close(self):
        api = ScriptedApi(httpx.Response(404))
        tracker = make_tracker(api)

        task = tracker.start_poller(interval=0.01)
        assert tracker.start_poller(interval=0.01) is task
        while not api.requests:
            await asyncio.sleep(0.01)
        await tracker.aclose()

        assert task.done()
        assert tracker.get_bridge_status(TX).status is BridgeStatus.PENDING_ATTESTATION


class TestMalformedMessage:
    @pytest.mark.asyncio
    async def test_bad_message_does_not_stall_other_bridges(self):
        other = "0x" + "ef" * 32

        def api(request: httpx.Request) -> httpx.Response:
            if request.url.params["transactionHash"] == TX:
                return httpx.Response(200, json=complete_payload(attestation="0x...", message="0x..."))
            return httpx.Response(404)

        tracker = make_tracker(api)
        tracker.track_bridge(other, nonce=8, sender="0xabc", destination_domain=6, amount=1)

        await tracker.poll_active()

        bad = tracker.get_bridge_status(TX)
        assert bad.status is BridgeStatus.COMPLETE
        assert bad.message_hash is None
        assert tracker.get_bridge_status(other).status is BridgeStatus.PENDING_ATTESTATION

    @pytest.mark.asyncio
    async def test_poll_error_is_contained_per_bridge(self, monkeypatch):
        other = "0x" + "ef" * 32
        tracker = make_tracker(ScriptedApi(httpx.Response(404)))
        tracker.track_bridge(other, nonce=8, sender="0xabc", destination_domain=6, amount=1)
        original = tracker.poll_attestation

        async def poll(transaction_hash):
            if transaction_hash == TX:
                raise RuntimeError("boom")
            return await original(transaction_hash)

        monkeypatch.setattr(tracker, "poll_attestation", poll)

        await tracker.poll_active()

        assert tracker.get_bridge_status(other).status is BridgeStatus.PENDING_ATTESTATION
